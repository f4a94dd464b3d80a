"""Carrier gateway — fans quote requests out to candidate carriers and
collects their answers with per-carrier failure isolation.

Every candidate gets its own task; the tasks are joined with
``asyncio.wait`` so one carrier's timeout, HTTP error or unparseable body
never aborts its siblings.  Each failure is recorded as a
:class:`CarrierFailure`; the caller receives exactly one quote per carrier
that answered successfully.  With a ``deadline``, carriers still in flight
when it expires are cancelled and recorded with kind ``deadline`` while the
quotes already received are kept.

Per carrier call:

1. Optional sliding-window rate limit check (per carrier, off by default).
2. Bearer-token lookup (per carrier key, else the default sandbox key).
3. JSON ``POST`` to the carrier's ``quote_url``, bounded by the carrier's
   timeout.  Transient failures (5xx, 429, transport timeouts) are retried
   with exponential back-off when ``retry_attempts > 1``; the default is a
   single attempt.
4. Response parsed by the carrier's schema adapter into a canonical
   :class:`~coverline.schemas.Quote`.

Cancelling the caller cancels every in-flight carrier task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from coverline.carriers.adapters import AdapterContext, to_quote
from coverline.carriers.directory import CarrierDirectory, CarrierProfile, DirectorySnapshot
from coverline.carriers.matcher import CarrierMatch
from coverline.errors import (
    CarrierAuthError,
    CarrierDeadlineError,
    CarrierError,
    CarrierHTTPError,
    CarrierRateLimitedError,
    CarrierTimeoutError,
    MalformedCarrierResponse,
)
from coverline.ids import IdFactory
from coverline.observability import NullObserver, PipelineEvent, PipelineObserver
from coverline.schemas import Quote, QuoteRequest
from coverline.underwriting.pricing import PremiumBreakdown
from coverline.underwriting.risk import RiskAssessment

logger = logging.getLogger("coverline.carriers.gateway")

_DEFAULT_TIMEOUT = 5.0
_DEFAULT_RATE_LIMIT_MAX = 0
_DEFAULT_RATE_LIMIT_WINDOW = 60.0

# Synthetic submission used by connectivity checks
_CHECK_COVERAGE_AMOUNT = 100_000.0
_CHECK_DEDUCTIBLE = 1_000.0
_CHECK_REFERENCE_PREMIUM = 100.0


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CarrierFailure(BaseModel):
    carrier_id: str
    carrier_name: str = ""
    kind: str
    message: str

    model_config = {"frozen": True}


class GatewayResult(BaseModel):
    """Outcome of one fan-out.

    ``quotes`` keeps candidate order; ``len(quotes) + len(failures) ==
    requested`` always holds.  ``carrier_latency_ms`` maps each carrier to
    the time its call took, including failed and cancelled calls.
    """

    quotes: tuple[Quote, ...] = ()
    failures: tuple[CarrierFailure, ...] = ()
    requested: int = 0
    elapsed_ms: float = 0.0
    carrier_latency_ms: dict[str, float] = Field(default_factory=dict)

    model_config = {"frozen": True}


class CarrierCheckResult(BaseModel):
    """Outcome of a single connectivity check against one carrier."""

    carrier_id: str
    success: bool
    message: str
    response_time_ms: float
    test_type: str = "connectivity"
    kind: str | None = None
    checked_at: datetime

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# CarrierGateway
# ---------------------------------------------------------------------------


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, CarrierHTTPError):
        return exc.status_code >= 500 or exc.status_code == 429
    return isinstance(exc, CarrierTimeoutError)


class CarrierGateway:
    """Concurrent carrier quote client.

    Parameters
    ----------
    client:
        Shared ``httpx.AsyncClient``.  The gateway closes it in
        :meth:`aclose` only if it created it.
    api_keys:
        ``carrier_id → bearer token``.
    default_api_key:
        Token for carriers without a dedicated key; empty means such
        carriers fail with an auth error.
    timeout_seconds:
        Default per-carrier timeout (profiles may override).
    retry_attempts:
        Total attempts per carrier for transient failures.
    rate_limit_max, rate_limit_window:
        At most ``rate_limit_max`` calls per carrier per window (seconds).
        ``0`` disables the limiter.  When enabled, the windows are the only
        state shared between fan-outs.
    validity_days:
        Quote validity when the carrier does not state an expiry.
    clock:
        Returns "now" for quote expiry.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        api_keys: dict[str, str] | None = None,
        default_api_key: str = "",
        timeout_seconds: float = _DEFAULT_TIMEOUT,
        retry_attempts: int = 1,
        rate_limit_max: int = _DEFAULT_RATE_LIMIT_MAX,
        rate_limit_window: float = _DEFAULT_RATE_LIMIT_WINDOW,
        validity_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.api_keys = dict(api_keys or {})
        self.default_api_key = default_api_key
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = max(1, retry_attempts)
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window = rate_limit_window
        self.validity_days = validity_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # carrier_id -> call timestamps (monotonic seconds)
        self._rate_windows: dict[str, list[float]] = defaultdict(list)

    @classmethod
    def from_settings(
        cls,
        config: Any,
        directory: CarrierDirectory | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "CarrierGateway":
        """Build a gateway from :class:`~coverline.config.Settings`.

        In ``simulated`` carrier mode (the default) the HTTP client is wired
        to a :class:`SimulatedCarrierNetwork` over *directory*.
        """
        owns_client = False
        if client is None and config.carrier_mode == "simulated":
            from coverline.carriers.simulator import SimulatedCarrierNetwork

            network = SimulatedCarrierNetwork(directory or CarrierDirectory.default())
            client = httpx.AsyncClient(
                transport=network.transport(), timeout=config.carrier_timeout_seconds
            )
            owns_client = True

        gateway = cls(
            client,
            api_keys=config.carrier_api_keys,
            default_api_key=config.carrier_default_api_key,
            timeout_seconds=config.carrier_timeout_seconds,
            retry_attempts=config.carrier_retry_attempts,
            rate_limit_max=config.carrier_rate_limit_max,
            rate_limit_window=config.carrier_rate_limit_window,
            validity_days=config.quote_validity_days,
            clock=clock,
        )
        gateway._owns_client = gateway._owns_client or owns_client
        return gateway

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CarrierGateway":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def request_quotes(
        self,
        candidates: list[CarrierMatch],
        request: QuoteRequest,
        pricing: PremiumBreakdown,
        snapshot: DirectorySnapshot,
        assessment: RiskAssessment | None = None,
        *,
        request_id: str = "",
        ids: IdFactory | None = None,
        observer: PipelineObserver | None = None,
        deadline: float | None = None,
    ) -> GatewayResult:
        """Request a quote from every candidate concurrently.

        Parameters
        ----------
        candidates:
            Ranked carriers to ask.
        request:
            The applicant submission.
        pricing:
            Reference premium sent to every carrier.
        snapshot:
            Directory snapshot the candidates were matched against.
        assessment:
            Risk scores forwarded to carriers.
        request_id:
            Pipeline run id, forwarded as a correlation id.
        ids:
            Source of quote ids; ids are allocated in candidate order before
            fan-out so they do not depend on response timing.
        observer:
            Receives ``carrier.succeeded`` / ``carrier.failed`` events, each
            carrying the call's ``duration_ms``.
        deadline:
            Seconds to wait for the whole fan-out.  Carriers still in flight
            afterwards are cancelled and recorded with kind ``deadline``.

        Returns
        -------
        GatewayResult
            Never raises for carrier failures.
        """
        observer = observer or NullObserver()
        ids = ids or IdFactory()
        t0 = time.monotonic()

        quote_ids = [ids.new("quote") for _ in candidates]
        durations = [0.0] * len(candidates)
        tasks = [
            asyncio.ensure_future(
                self._timed(
                    self._quote_carrier(
                        match,
                        snapshot.get(match.carrier_id),
                        request,
                        pricing,
                        assessment,
                        request_id,
                        qid,
                    ),
                    durations,
                    index,
                )
            )
            for index, (match, qid) in enumerate(zip(candidates, quote_ids))
        ]

        pending: set[asyncio.Future] = set()
        if tasks:
            try:
                _, pending = await asyncio.wait(tasks, timeout=deadline)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(
                    "Gateway deadline of %.1fs expired with %d carrier(s) in flight",
                    deadline,
                    len(pending),
                )

        quotes: list[Quote] = []
        failures: list[CarrierFailure] = []
        for match, task, duration in zip(candidates, tasks, durations):
            if task in pending:
                result: BaseException | Quote = CarrierDeadlineError(
                    match.carrier_id, f"no answer before the {deadline:.1f}s gateway deadline"
                )
            elif task.cancelled():
                raise asyncio.CancelledError()
            else:
                result = task.exception() or task.result()

            if isinstance(result, Quote):
                quotes.append(result)
                observer.emit(
                    PipelineEvent(
                        name="carrier.succeeded",
                        request_id=request_id,
                        carrier_id=match.carrier_id,
                        duration_ms=duration,
                        attributes={"premium": result.premium},
                    )
                )
                continue
            if isinstance(result, CarrierError):
                failure = CarrierFailure(
                    carrier_id=match.carrier_id,
                    carrier_name=match.carrier_name,
                    kind=result.kind,
                    message=result.message,
                )
                logger.warning(
                    "Carrier %s failed (%s): %s", match.carrier_id, result.kind, result.message
                )
            elif isinstance(result, Exception):
                failure = CarrierFailure(
                    carrier_id=match.carrier_id,
                    carrier_name=match.carrier_name,
                    kind="error",
                    message=f"{type(result).__name__}: {result}",
                )
                logger.error(
                    "Unexpected error quoting carrier=%s", match.carrier_id, exc_info=result
                )
            else:
                # CancelledError and other BaseExceptions are not isolated.
                raise result
            failures.append(failure)
            observer.emit(
                PipelineEvent(
                    name="carrier.failed",
                    level="warning",
                    request_id=request_id,
                    carrier_id=match.carrier_id,
                    duration_ms=duration,
                    attributes={"kind": failure.kind},
                )
            )

        elapsed_ms = round((time.monotonic() - t0) * 1000, 1)
        logger.info(
            "Gateway fan-out complete: requested=%d quoted=%d failed=%d (%.1fms)",
            len(candidates),
            len(quotes),
            len(failures),
            elapsed_ms,
        )
        return GatewayResult(
            quotes=tuple(quotes),
            failures=tuple(failures),
            requested=len(candidates),
            elapsed_ms=elapsed_ms,
            carrier_latency_ms={m.carrier_id: d for m, d in zip(candidates, durations)},
        )

    # ------------------------------------------------------------------
    # Connectivity check
    # ------------------------------------------------------------------

    async def check_carrier(
        self,
        profile: CarrierProfile,
        test_type: str = "connectivity",
    ) -> CarrierCheckResult:
        """Send one synthetic quote request to *profile* and report the outcome.

        The check bypasses the rate limiter and never raises for carrier
        failures; the failure kind is returned instead.
        """
        coverage_type = profile.supported_coverage_types[0] if profile.supported_coverage_types else "auto"
        body = {
            "request_id": f"check-{profile.id}",
            "carrier_id": profile.id,
            "coverage_type": coverage_type,
            "coverage_amount": _CHECK_COVERAGE_AMOUNT,
            "deductible": _CHECK_DEDUCTIBLE,
            "risk_score": profile.risk_midpoint,
            "fraud_score": 0.0,
            "reference_monthly_premium": _CHECK_REFERENCE_PREMIUM,
            "test_type": test_type,
        }
        timeout = profile.timeout_seconds or self.timeout_seconds
        t0 = time.monotonic()
        kind: str | None = None
        try:
            try:
                payload = await asyncio.wait_for(self._post(profile, body), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise CarrierTimeoutError(profile.id, f"no response within {timeout:.1f}s") from exc
            ctx = AdapterContext(
                quote_id=f"check-{profile.id}",
                now=self._clock(),
                validity_days=self.validity_days,
                requested_deductible=_CHECK_DEDUCTIBLE,
            )
            to_quote(payload, profile, ctx)
        except CarrierError as exc:
            kind = exc.kind
            message = f"{test_type} test failed ({exc.kind}): {exc.message}"
        else:
            message = f"{test_type} test passed - carrier responding normally"
        elapsed = round((time.monotonic() - t0) * 1000, 1)

        logger.info("Carrier check %s: %s (%.1fms)", profile.id, "ok" if kind is None else kind, elapsed)
        return CarrierCheckResult(
            carrier_id=profile.id,
            success=kind is None,
            message=message,
            response_time_ms=elapsed,
            test_type=test_type,
            kind=kind,
            checked_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Single carrier
    # ------------------------------------------------------------------

    @staticmethod
    async def _timed(coro: Any, durations: list[float], index: int) -> Any:
        t0 = time.monotonic()
        try:
            return await coro
        finally:
            durations[index] = round((time.monotonic() - t0) * 1000, 2)

    async def _quote_carrier(
        self,
        match: CarrierMatch,
        profile: CarrierProfile | None,
        request: QuoteRequest,
        pricing: PremiumBreakdown,
        assessment: RiskAssessment | None,
        request_id: str,
        quote_id: str,
    ) -> Quote:
        if profile is None:
            raise CarrierError(match.carrier_id, "carrier not present in directory snapshot")

        self._check_rate_limit(profile.id)
        body = build_quote_body(request, pricing, assessment, profile, request_id)
        timeout = profile.timeout_seconds or self.timeout_seconds

        try:
            payload = await asyncio.wait_for(self._post_with_retry(profile, body), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CarrierTimeoutError(profile.id, f"no response within {timeout:.1f}s") from exc

        ctx = AdapterContext(
            quote_id=quote_id,
            now=self._clock(),
            validity_days=self.validity_days,
            requested_deductible=request.deductible,
        )
        return to_quote(payload, profile, ctx)

    async def _post_with_retry(self, profile: CarrierProfile, body: dict[str, Any]) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                logger.debug(
                    "Requesting quote from %s (attempt %d)",
                    profile.id,
                    attempt.retry_state.attempt_number,
                )
                return await self._post(profile, body)
        raise CarrierError(profile.id, "retry loop exited without a result")

    async def _post(self, profile: CarrierProfile, body: dict[str, Any]) -> Any:
        token = self.api_keys.get(profile.id) or self.default_api_key
        if not token:
            raise CarrierAuthError(profile.id, "no API key configured")

        try:
            response = await self._client.post(
                profile.quote_url,
                json=body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                    "X-Request-ID": str(body.get("request_id", "")),
                },
            )
        except httpx.TimeoutException as exc:
            raise CarrierTimeoutError(profile.id, f"transport timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise CarrierError(profile.id, f"transport error: {exc}") from exc

        if response.status_code in (401, 403):
            raise CarrierAuthError(profile.id, f"carrier rejected credentials (HTTP {response.status_code})")
        if not response.is_success:
            raise CarrierHTTPError(profile.id, response.status_code, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedCarrierResponse(profile.id, "response body is not JSON") from exc

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def _check_rate_limit(self, carrier_id: str) -> None:
        """Enforce ``rate_limit_max`` calls per sliding window per carrier."""
        if self.rate_limit_max <= 0:
            return
        now = time.monotonic()
        cutoff = now - self.rate_limit_window
        window = [t for t in self._rate_windows[carrier_id] if t > cutoff]
        if len(window) >= self.rate_limit_max:
            self._rate_windows[carrier_id] = window
            raise CarrierRateLimitedError(
                carrier_id,
                f"rate limit exceeded: {self.rate_limit_max} calls per {self.rate_limit_window:.0f}s",
            )
        window.append(now)
        self._rate_windows[carrier_id] = window


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_quote_body(
    request: QuoteRequest,
    pricing: PremiumBreakdown,
    assessment: RiskAssessment | None,
    profile: CarrierProfile,
    request_id: str,
) -> dict[str, Any]:
    """JSON body sent to a carrier's quote endpoint."""
    customer = request.customer
    return {
        "request_id": request_id,
        "carrier_id": profile.id,
        "coverage_type": request.coverage_type,
        "coverage_amount": request.coverage_amount,
        "deductible": request.deductible,
        "state": customer.address.state,
        "zip_code": customer.address.zip_code,
        "risk_score": assessment.risk_score if assessment else None,
        "fraud_score": assessment.fraud_score if assessment else None,
        "reference_monthly_premium": pricing.final_premium,
        "applicant": {
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "age": customer.age,
            "credit_score": customer.credit_score,
            "claims_count": len(request.claims),
        },
        "vehicle": request.vehicle.model_dump(mode="json") if request.vehicle else None,
        "property": request.property.model_dump(mode="json") if request.property else None,
    }
