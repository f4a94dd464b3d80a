"""Coverline FastAPI application — quote orchestration API.

Endpoints
---------
POST  /v1/quotes                 — run a submission through the quote pipeline
GET   /v1/carriers               — list the current carrier directory
POST  /v1/carriers/reload        — hot-reload the carrier directory
GET   /v1/carriers/{id}/status   — health and latency counters for one carrier
POST  /v1/carriers/{id}/test     — send one synthetic quote request to a carrier
GET   /v1/metrics                — in-memory pipeline and carrier counters
GET   /v1/health                 — system health check

Authentication is via the ``X-API-Key`` header.  Rate limiting enforces a
maximum of 100 requests per minute per API key using an in-memory sliding
window counter.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coverline import __version__
from coverline.api.schemas import (
    CarrierEntry,
    CarrierListResponse,
    CarrierStatusResponse,
    CarrierTestInput,
    CarrierTestResponse,
    DecisionSummary,
    DirectoryReloadInput,
    HealthResponse,
    MetricsResponse,
    QuoteResponse,
    ReloadResponse,
)
from coverline.carriers.directory import CarrierProfile
from coverline.config import settings
from coverline.errors import DirectoryError, QuoteRequestError
from coverline.observability import CarrierStats, CompositeObserver, LoggingObserver, MetricsRecorder
from coverline.orchestrator import PipelineResult, QuoteOrchestrator, build_orchestrator
from coverline.schemas import QuoteRequest

logger = logging.getLogger("coverline.api")

# ---------------------------------------------------------------------------
# In-memory rate limiter
# ---------------------------------------------------------------------------

# Maps api_key → list of request timestamps (monotonic seconds)
_rate_limit_windows: dict[str, list[float]] = defaultdict(list)

_RATE_LIMIT_MAX = 100       # requests
_RATE_LIMIT_WINDOW = 60.0   # seconds

# Carrier status bands, by success rate
_UP_SUCCESS_RATE = 0.9
_DEGRADED_SUCCESS_RATE = 0.5


def _check_rate_limit(api_key: str) -> None:
    """Enforce 100 requests / 60-second sliding window per API key.

    Raises HTTP 429 when the limit is exceeded.
    """
    now = time.monotonic()
    cutoff = now - _RATE_LIMIT_WINDOW
    _rate_limit_windows[api_key] = [t for t in _rate_limit_windows[api_key] if t > cutoff]
    if len(_rate_limit_windows[api_key]) >= _RATE_LIMIT_MAX:
        logger.warning("Rate limit exceeded for key=%s", api_key[:8])
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded: 100 requests per 60 seconds.",
        )
    _rate_limit_windows[api_key].append(now)


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------

_orchestrator: QuoteOrchestrator | None = None
_metrics: MetricsRecorder | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle handler.

    On startup: builds the carrier directory, gateway and
    :class:`QuoteOrchestrator` from settings, with a :class:`MetricsRecorder`
    attached.  On shutdown: closes the carrier HTTP client.
    """
    global _orchestrator, _metrics

    logger.info("Coverline API starting up (version=%s, carriers=%s)", __version__, settings.carrier_mode)

    _metrics = MetricsRecorder()
    _orchestrator = build_orchestrator(
        settings,
        observer=CompositeObserver(LoggingObserver(), _metrics),
    )
    logger.info("QuoteOrchestrator ready (%d carriers)", len(_orchestrator.directory))

    yield  # ← application runs here

    logger.info("Coverline API shutting down")
    if _orchestrator is not None:
        await _orchestrator.aclose()
    _orchestrator = None
    _metrics = None


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Coverline Quote Orchestration API",
    description=(
        "Risk scoring, carrier matching, concurrent carrier quoting and "
        "underwriting decisions for personal lines insurance."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS: allow any origin for internal service-to-service usage
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Middleware: request logging
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every inbound request with timing."""
    start = time.monotonic()
    response = await call_next(request)
    elapsed_ms = (time.monotonic() - start) * 1000
    logger.info(
        "%s %s → %d (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(QuoteRequestError)
async def quote_request_error_handler(request: Request, exc: QuoteRequestError) -> JSONResponse:
    errors = [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "errors": errors},
    )


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------


async def require_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Validate the ``X-API-Key`` header and enforce rate limiting.

    Parameters
    ----------
    x_api_key:
        Value of the ``X-API-Key`` request header.

    Returns
    -------
    str
        The validated API key.

    Raises
    ------
    HTTPException
        403 if the key is invalid; 429 if rate limit is exceeded.
    """
    if x_api_key != settings.coverline_api_key:
        logger.warning("Invalid API key attempt: %s...", x_api_key[:6])
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key.",
        )
    _check_rate_limit(x_api_key)
    return x_api_key


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_orchestrator() -> QuoteOrchestrator:
    """Return the application-level orchestrator or raise 503."""
    if _orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Quote orchestrator not initialised.",
        )
    return _orchestrator


def _get_carrier(carrier_id: str) -> CarrierProfile:
    """Return *carrier_id* from the current directory snapshot or raise 404."""
    profile = _get_orchestrator().directory.snapshot.get(carrier_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Carrier {carrier_id!r} not found.",
        )
    return profile


def _operational_status(stats: CarrierStats | None) -> str:
    if stats is None or stats.calls == 0:
        return "unknown"
    if stats.success_rate >= _UP_SUCCESS_RATE:
        return "up"
    if stats.success_rate >= _DEGRADED_SUCCESS_RATE:
        return "degraded"
    return "down"


def _result_to_response(result: PipelineResult) -> QuoteResponse:
    """Convert an internal :class:`PipelineResult` to an API response model."""
    decision = None
    if result.assessment is not None and result.decision is not None:
        decision = DecisionSummary(
            approved=result.decision.approved,
            basis=result.decision.basis,
            risk_score=result.assessment.risk_score,
            fraud_score=result.assessment.fraud_score,
            confidence=result.assessment.confidence,
            fraud_flags=list(result.assessment.fraud_flags),
            reasoning=list(result.decision.reasoning),
            conditions=list(result.decision.conditions),
            required_documents=list(result.decision.required_documents),
        )
    return QuoteResponse(
        request_id=result.request_id,
        quotes=list(result.quotes),
        issues=list(result.issues),
        recommendations=list(result.recommendations),
        metrics=result.metrics,
        decision=decision,
        reference_premium=result.pricing.final_premium if result.pricing else None,
        candidates=[m.carrier_id for m in result.candidates],
        directory_version=result.directory_version,
    )


def _carrier_entry(profile: CarrierProfile) -> CarrierEntry:
    return CarrierEntry(
        id=profile.id,
        name=profile.name,
        min_risk_score=profile.min_risk_score,
        max_risk_score=profile.max_risk_score,
        commission_rate=profile.commission_rate,
        accepted_states=list(profile.accepted_states),
        supported_coverage_types=list(profile.supported_coverage_types),
        turnaround_time=profile.turnaround_time,
        acceptance_rate=profile.acceptance_rate,
        response_schema=profile.response_schema,
        fallback=profile.fallback,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.post(
    "/v1/quotes",
    response_model=QuoteResponse,
    summary="Run the quote pipeline",
    tags=["Quotes"],
)
async def create_quotes(
    body: QuoteRequest,
    _key: str = Depends(require_api_key),
) -> QuoteResponse:
    """Score the applicant, match and quote carriers concurrently, and return
    the validated quotes with issues, recommendations and metrics.
    """
    orchestrator = _get_orchestrator()
    result = await orchestrator.orchestrate(body)
    return _result_to_response(result)


@app.get(
    "/v1/carriers",
    response_model=CarrierListResponse,
    summary="List carrier directory",
    tags=["Carriers"],
)
async def list_carriers(
    coverage: str | None = Query(default=None, description="Only carriers supporting this coverage type"),
    _key: str = Depends(require_api_key),
) -> CarrierListResponse:
    """Return every carrier in the current directory snapshot, fallbacks last."""
    snapshot = _get_orchestrator().directory.snapshot
    profiles = [p for p in snapshot.all() if coverage is None or p.supports(coverage)]
    return CarrierListResponse(
        version=snapshot.version,
        loaded_at=snapshot.loaded_at,
        source=snapshot.source,
        carriers=[_carrier_entry(p) for p in profiles],
    )


@app.post(
    "/v1/carriers/reload",
    response_model=ReloadResponse,
    summary="Hot-reload the carrier directory",
    tags=["Carriers"],
)
async def reload_carriers(
    body: DirectoryReloadInput | None = Body(default=None),
    _key: str = Depends(require_api_key),
) -> ReloadResponse:
    """Swap in a new directory snapshot.

    Runs already in flight keep the snapshot they started with.
    """
    directory = _get_orchestrator().directory
    try:
        if body is None:
            snapshot = directory.reload()
        else:
            snapshot = directory.reload(carriers=body.carriers, fallbacks=body.fallbacks)
    except DirectoryError as exc:
        logger.error("Carrier directory reload failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    return ReloadResponse(
        version=snapshot.version,
        carriers=len(snapshot.carriers),
        fallbacks=len(snapshot.fallbacks),
        loaded_at=snapshot.loaded_at,
    )


@app.get(
    "/v1/carriers/{carrier_id}/status",
    response_model=CarrierStatusResponse,
    summary="Carrier status",
    tags=["Carriers"],
)
async def carrier_status(
    carrier_id: str,
    _key: str = Depends(require_api_key),
) -> CarrierStatusResponse:
    """Report success/error rates and mean response time for one carrier,
    from the counters accumulated since startup.
    """
    profile = _get_carrier(carrier_id)
    stats = _metrics.carrier_stats(carrier_id) if _metrics is not None else None
    response = CarrierStatusResponse(
        carrier_id=profile.id,
        display_name=profile.name,
        operational_status=_operational_status(stats),
        supported_products=list(profile.supported_coverage_types),
    )
    if stats is None:
        return response
    return response.model_copy(
        update={
            "total_calls": stats.calls,
            "success": stats.success,
            "failure": stats.failure,
            "success_rate_percent": round(stats.success_rate * 100, 2),
            "error_rate_percent": round(stats.error_rate * 100, 2),
            "avg_response_time_ms": round(stats.mean_ms, 2),
            "last_successful_quote": stats.last_success_at,
            "failures_by_kind": dict(stats.failures_by_kind),
        }
    )


@app.post(
    "/v1/carriers/{carrier_id}/test",
    response_model=CarrierTestResponse,
    summary="Test carrier connectivity",
    tags=["Carriers"],
)
async def run_carrier_check(
    carrier_id: str,
    body: CarrierTestInput | None = Body(default=None),
    _key: str = Depends(require_api_key),
) -> CarrierTestResponse:
    """Send one synthetic quote request through the gateway and report
    whether the carrier answered with a usable quote.
    """
    profile = _get_carrier(carrier_id)
    test_type = body.test_type if body is not None else "connectivity"
    check = await _get_orchestrator().gateway.check_carrier(profile, test_type=test_type)
    return CarrierTestResponse(**check.model_dump())


@app.get(
    "/v1/metrics",
    response_model=MetricsResponse,
    summary="Pipeline metrics",
    tags=["System"],
)
async def get_metrics(
    _key: str = Depends(require_api_key),
) -> MetricsResponse:
    """Return per-stage latency and per-carrier success/failure counters
    accumulated since startup.
    """
    if _metrics is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Metrics recorder not initialised.",
        )
    return MetricsResponse(**_metrics.snapshot())


@app.get(
    "/v1/health",
    response_model=HealthResponse,
    summary="System health check",
    tags=["System"],
)
async def health_check(
    _key: str = Depends(require_api_key),
) -> HealthResponse:
    """Return directory statistics and the carrier mode."""
    if _orchestrator is None:
        return HealthResponse(status="error", version=__version__)

    snapshot = _orchestrator.directory.snapshot
    return HealthResponse(
        status="ok" if snapshot.carriers else "degraded",
        version=__version__,
        carrier_mode=settings.carrier_mode,
        carriers_loaded=len(snapshot.carriers),
        fallbacks_loaded=len(snapshot.fallbacks),
        directory_version=snapshot.version,
    )
