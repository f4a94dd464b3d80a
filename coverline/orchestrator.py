"""Quote orchestrator — the main entry point for the Coverline quote pipeline.

:class:`QuoteOrchestrator` runs one submission through six strictly
sequential stages:

    risk_score → match → price → gateway → validate → aggregate

Only the gateway stage fans out (one task per candidate carrier).  Every run
reaches ``aggregate`` and returns a :class:`PipelineResult`: carrier
failures, rule rejections, an empty directory or an unexpected stage error
all surface as :class:`~coverline.schemas.PolicyIssue` entries.  The single
exception that crosses :meth:`QuoteOrchestrator.orchestrate` is
:class:`~coverline.errors.QuoteRequestError`, raised for a submission that
fails shape validation before any stage runs.  Cancelling the call cancels
the in-flight carrier requests and returns nothing.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from pydantic import BaseModel, ValidationError

from coverline.carriers.directory import CarrierDirectory, DirectorySnapshot
from coverline.carriers.gateway import CarrierFailure, CarrierGateway
from coverline.carriers.matcher import CarrierMatch, CarrierMatcher
from coverline.errors import QuoteRequestError
from coverline.ids import IdFactory
from coverline.observability import NullObserver, PipelineEvent, PipelineObserver
from coverline.schemas import (
    IssueSeverity,
    IssueType,
    PipelineMetrics,
    PolicyIssue,
    Quote,
    QuoteRequest,
)
from coverline.underwriting.pricing import PremiumBreakdown, PricingEngine
from coverline.underwriting.profile import RiskProfileBuilder
from coverline.underwriting.risk import (
    RiskAssessment,
    RiskScorer,
    UnderwritingDecision,
    UnderwritingThresholds,
)
from coverline.validation.rules import BusinessRuleValidator, QuoteRejection

logger = logging.getLogger("coverline.orchestrator")

STAGES = ("risk_score", "match", "price", "gateway", "validate", "aggregate")

_UPSELLS: dict[str, tuple[str, ...]] = {
    "auto": ("Homeowners Insurance", "Umbrella Policy"),
    "home": ("Auto Insurance", "Life Insurance"),
    "homeowners": ("Auto Insurance", "Life Insurance"),
    "life": ("Disability Insurance", "Long-term Care"),
}
_HIGH_VALUE_PROPERTY = 500_000.0

_REJECTION_ISSUE_TYPE: dict[str, IssueType] = {
    "premium_bounds": "pricing",
    "state_license": "eligibility",
    "coverage_score": "eligibility",
}


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class PipelineResult(BaseModel):
    """Terminal aggregate returned to the caller.

    Attributes
    ----------
    request_id:
        Id of this pipeline run.
    quotes:
        Quotes that passed every business rule, in candidate order.
    issues:
        Advisory issues raised during the run.
    recommendations:
        Broker-facing suggestions derived from the surviving quotes.
    metrics:
        Aggregate figures and stage latencies.
    assessment:
        Risk/fraud scores (``None`` only if scoring itself failed).
    decision:
        Underwriting decision.
    pricing:
        Reference premium breakdown sent to carriers.
    candidates:
        Carriers that were asked to quote.
    directory_version:
        Version of the directory snapshot the run used.
    """

    request_id: str
    quotes: tuple[Quote, ...] = ()
    issues: tuple[PolicyIssue, ...] = ()
    recommendations: tuple[str, ...] = ()
    metrics: PipelineMetrics
    assessment: RiskAssessment | None = None
    decision: UnderwritingDecision | None = None
    pricing: PremiumBreakdown | None = None
    candidates: tuple[CarrierMatch, ...] = ()
    directory_version: int = 0

    model_config = {"frozen": True}

    @property
    def approved(self) -> bool:
        return self.decision is not None and self.decision.approved


@dataclass
class _Run:
    """Mutable per-invocation working state; never escapes the orchestrator."""

    request_id: str
    request: QuoteRequest
    snapshot: DirectorySnapshot
    started: float
    stage: str = ""
    assessment: RiskAssessment | None = None
    decision: UnderwritingDecision | None = None
    candidates: list[CarrierMatch] = field(default_factory=list)
    pricing: PremiumBreakdown | None = None
    gateway_quotes: list[Quote] = field(default_factory=list)
    failures: list[CarrierFailure] = field(default_factory=list)
    accepted: list[Quote] = field(default_factory=list)
    rejections: list[QuoteRejection] = field(default_factory=list)
    issues: list[PolicyIssue] = field(default_factory=list)
    latency_ms: dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# QuoteOrchestrator
# ---------------------------------------------------------------------------


class QuoteOrchestrator:
    """Sequences the quote pipeline.

    Usage::

        orchestrator = build_orchestrator()
        result = await orchestrator.orchestrate(request)

    Every collaborator is injected so tests can swap any stage, the gateway
    in particular.

    Parameters
    ----------
    scorer, profile_builder, matcher, pricing, gateway, validator:
        Stage implementations.
    directory:
        Carrier registry; one snapshot is captured per run.
    observer:
        Receives structured pipeline events.
    ids:
        Source of request, quote and issue ids.
    clock:
        Returns "now"; drives claim recency and quote expiry.
    pipeline_timeout:
        Deadline in seconds for the whole gateway stage.  Quotes received
        before it expires are kept; carriers still in flight are dropped.
    assumed_commission_rate:
        Commission used by the profitability metric.
    high_premium_threshold:
        Mean monthly premium above which a pricing issue is raised.
    """

    def __init__(
        self,
        scorer: RiskScorer,
        profile_builder: RiskProfileBuilder,
        matcher: CarrierMatcher,
        pricing: PricingEngine,
        gateway: CarrierGateway,
        validator: BusinessRuleValidator,
        directory: CarrierDirectory,
        *,
        observer: PipelineObserver | None = None,
        ids: IdFactory | None = None,
        clock: Callable[[], datetime] | None = None,
        pipeline_timeout: float = 15.0,
        assumed_commission_rate: float = 0.12,
        high_premium_threshold: float = 400.0,
    ) -> None:
        self.scorer = scorer
        self.profile_builder = profile_builder
        self.matcher = matcher
        self.pricing = pricing
        self.gateway = gateway
        self.validator = validator
        self.directory = directory
        self.observer: PipelineObserver = observer or NullObserver()
        self.ids = ids or IdFactory()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.pipeline_timeout = pipeline_timeout
        self.assumed_commission_rate = assumed_commission_rate
        self.high_premium_threshold = high_premium_threshold
        logger.info("QuoteOrchestrator initialised")

    async def aclose(self) -> None:
        await self.gateway.aclose()

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def orchestrate(self, request: QuoteRequest | dict[str, Any]) -> PipelineResult:
        """Run one submission through the full pipeline.

        Parameters
        ----------
        request:
            A :class:`QuoteRequest` or its plain-dict form.

        Returns
        -------
        PipelineResult
            Always returned once the input is valid, even when every
            carrier fails.

        Raises
        ------
        QuoteRequestError
            The input failed shape validation; no stage ran.
        """
        quote_request = _coerce_request(request)
        run = _Run(
            request_id=self.ids.new("req"),
            request=quote_request,
            snapshot=self.directory.snapshot,
            started=time.monotonic(),
        )
        self._emit(
            run,
            "pipeline.started",
            attributes={
                "coverage_type": quote_request.coverage_type,
                "state": quote_request.customer.address.state,
                "directory_version": run.snapshot.version,
            },
        )

        try:
            await self._run_stages(run)
        except Exception as exc:
            logger.exception("Pipeline %s failed in stage %s", run.request_id, run.stage)
            run.issues.append(
                self._issue(
                    "system",
                    "critical",
                    f"Internal error during {run.stage} stage: {type(exc).__name__}",
                    recommendations=("Retry the request", "Contact support if the problem persists"),
                )
            )

        with self._stage(run, "aggregate"):
            result = self._aggregate(run)

        result = result.model_copy(
            update={"metrics": result.metrics.model_copy(update={"stage_latency_ms": dict(run.latency_ms)})},
            deep=True,
        )
        self._emit(
            run,
            "pipeline.completed",
            duration_ms=result.metrics.processing_time_ms,
            attributes={
                "quotes": len(result.quotes),
                "issues": len(result.issues),
                "approved": result.approved,
            },
        )
        logger.info(
            "Pipeline %s complete: %d quotes, %d issues (%.1fms)",
            run.request_id,
            len(result.quotes),
            len(result.issues),
            result.metrics.processing_time_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stages(self, run: _Run) -> None:
        request = run.request
        coverage_type = request.coverage_type

        with self._stage(run, "risk_score"):
            factors = self.profile_builder.build(request)
            run.assessment = self.scorer.score(factors, coverage_type, as_of=self._clock().date())
            run.decision = self.scorer.decide(run.assessment, factors)
            if not run.decision.approved:
                run.issues.append(
                    self._issue(
                        "underwriting",
                        "high",
                        f"Application declined by underwriting rules ({run.decision.basis})",
                        recommendations=run.decision.reasoning + ("Refer to manual underwriting review",),
                    )
                )

        with self._stage(run, "match"):
            run.candidates = self.matcher.match(run.assessment, coverage_type, snapshot=run.snapshot)

        with self._stage(run, "price"):
            run.pricing = self.pricing.price(
                run.assessment.risk_score,
                coverage_type,
                request.coverage_amount,
                request.deductible,
                factors,
            )

        if not run.candidates:
            logger.warning("Pipeline %s: no candidate carriers for %s", run.request_id, coverage_type)
            return

        with self._stage(run, "gateway"):
            outcome = await self.gateway.request_quotes(
                run.candidates,
                request,
                run.pricing,
                run.snapshot,
                run.assessment,
                request_id=run.request_id,
                ids=self.ids,
                observer=self.observer,
                deadline=self.pipeline_timeout,
            )
            run.gateway_quotes = list(outcome.quotes)
            run.failures = list(outcome.failures)
            self._failure_issues(run)

        with self._stage(run, "validate"):
            report = self.validator.review(run.gateway_quotes, request, run.snapshot)
            run.accepted = list(report.accepted)
            run.rejections = list(report.rejections)
            for rejection in report.rejections:
                run.issues.append(
                    self._issue(
                        _REJECTION_ISSUE_TYPE[rejection.rule],
                        "low",
                        f"Quote from {rejection.carrier_id} filtered: {rejection.message}",
                        affected=(rejection.carrier_id,),
                    )
                )

    def _failure_issues(self, run: _Run) -> None:
        """One low issue per carrier failure; deadline and quota failures are
        platform-side and each collapse into a single system issue."""
        stragglers: list[str] = []
        throttled: list[str] = []
        for failure in run.failures:
            if failure.kind == "deadline":
                stragglers.append(failure.carrier_id)
                continue
            if failure.kind == "rate_limited":
                throttled.append(failure.carrier_id)
                continue
            run.issues.append(
                self._issue(
                    "system",
                    "low",
                    f"{failure.carrier_name or failure.carrier_id} did not return a quote "
                    f"({failure.kind}): {failure.message}",
                    affected=(failure.carrier_id,),
                )
            )

        if stragglers:
            logger.warning(
                "Pipeline %s: %d carrier(s) missed the %.1fs gateway deadline",
                run.request_id,
                len(stragglers),
                self.pipeline_timeout,
            )
            run.issues.append(
                self._issue(
                    "system",
                    "high",
                    f"Carrier quoting exceeded the {self.pipeline_timeout:g}s deadline "
                    f"for {len(stragglers)} carrier(s)",
                    affected=tuple(stragglers),
                    recommendations=("Retry the request",),
                )
            )
        if throttled:
            logger.warning(
                "Pipeline %s: carrier request quota exhausted for %d carrier(s)",
                run.request_id,
                len(throttled),
            )
            run.issues.append(
                self._issue(
                    "system",
                    "high",
                    f"Carrier request quota exhausted for {len(throttled)} carrier(s)",
                    affected=tuple(throttled),
                    recommendations=("Retry the request later",),
                )
            )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _aggregate(self, run: _Run) -> PipelineResult:
        quotes = run.accepted
        issues = list(run.issues)

        if not quotes:
            issues.append(
                self._issue(
                    "eligibility",
                    "critical",
                    "No carriers able to provide coverage",
                    affected=tuple(m.carrier_id for m in run.candidates),
                    recommendations=("Review eligibility criteria", "Consider alternative coverage options"),
                )
            )
        else:
            mean_premium = sum(q.premium for q in quotes) / len(quotes)
            if mean_premium > self.high_premium_threshold:
                issues.append(
                    self._issue(
                        "pricing",
                        "medium",
                        "Higher than average premiums detected",
                        recommendations=(
                            "Review risk factors",
                            "Consider coverage adjustments",
                            "Explore available discounts",
                        ),
                    )
                )
            if len(quotes) < 3:
                issues.append(
                    self._issue(
                        "eligibility",
                        "medium",
                        "Limited carrier options available",
                        recommendations=("Expand search criteria", "Consider surplus lines carriers"),
                    )
                )

        return PipelineResult(
            request_id=run.request_id,
            quotes=tuple(quotes),
            issues=tuple(issues),
            recommendations=tuple(self._recommendations(run.request, quotes)),
            metrics=self._metrics(run, quotes),
            assessment=run.assessment,
            decision=run.decision,
            pricing=run.pricing,
            candidates=tuple(run.candidates),
            directory_version=run.snapshot.version,
        )

    @staticmethod
    def _recommendations(request: QuoteRequest, quotes: list[Quote]) -> list[str]:
        recommendations: list[str] = []
        if quotes:
            best = quotes[0]
            for quote in quotes[1:]:
                if quote.coverage_score > best.coverage_score:
                    best = quote
            recommendations.append(
                f"Best value option: {best.carrier_name} with {best.coverage_score:.0f}% coverage score"
            )

        for product in _UPSELLS.get(request.coverage_type, ()):
            recommendations.append(f"Cross-sell opportunity: {product}")
        prop = request.property
        if prop is not None and (prop.value or 0.0) > _HIGH_VALUE_PROPERTY:
            recommendations.append("Cross-sell opportunity: High-Value Home Coverage")

        if request.coverage_type == "auto":
            recommendations.append("Consider defensive driving course for additional discounts")
        return recommendations

    def _metrics(self, run: _Run, quotes: list[Quote]) -> PipelineMetrics:
        total = len(quotes)
        mean_premium = sum(q.premium for q in quotes) / total if total else 0.0
        mean_annual = sum(q.annual_premium for q in quotes) / total if total else 0.0
        profitability = min(100.0, max(0.0, mean_annual * self.assumed_commission_rate / 1000 * 100))
        diversification = len({q.carrier_id for q in quotes}) / total if total else 0.0
        return PipelineMetrics(
            total_quotes=total,
            average_premium=round(mean_premium, 2),
            risk_adjusted_profitability=round(profitability, 2),
            carrier_diversification=round(diversification, 4),
            carriers_requested=len(run.candidates),
            carriers_failed=len(run.failures),
            quotes_rejected=len(run.rejections),
            stage_latency_ms=dict(run.latency_ms),
            processing_time_ms=round((time.monotonic() - run.started) * 1000, 1),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, run: _Run, name: str) -> Iterator[None]:
        run.stage = name
        t0 = time.monotonic()
        try:
            yield
        except Exception:
            elapsed = round((time.monotonic() - t0) * 1000, 2)
            run.latency_ms[name] = elapsed
            self._emit(run, "stage.failed", level="error", stage=name, duration_ms=elapsed)
            raise
        elapsed = round((time.monotonic() - t0) * 1000, 2)
        run.latency_ms[name] = elapsed
        self._emit(run, "stage.completed", level="debug", stage=name, duration_ms=elapsed)

    def _issue(
        self,
        issue_type: IssueType,
        severity: IssueSeverity,
        message: str,
        *,
        affected: tuple[str, ...] = (),
        recommendations: tuple[str, ...] = (),
    ) -> PolicyIssue:
        return PolicyIssue(
            issue_id=self.ids.new("issue"),
            type=issue_type,
            severity=severity,
            message=message,
            affected_carriers=affected,
            recommendations=recommendations,
        )

    def _emit(self, run: _Run, name: str, **kwargs: Any) -> None:
        self.observer.emit(PipelineEvent(name=name, request_id=run.request_id, **kwargs))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_orchestrator(
    config: Any = None,
    *,
    directory: CarrierDirectory | None = None,
    gateway: CarrierGateway | None = None,
    observer: PipelineObserver | None = None,
    ids: IdFactory | None = None,
    clock: Callable[[], datetime] | None = None,
) -> QuoteOrchestrator:
    """Wire a :class:`QuoteOrchestrator` from :class:`~coverline.config.Settings`.

    Any collaborator passed explicitly replaces the one built from *config*.
    """
    if config is None:
        from coverline.config import settings as config

    directory = directory or CarrierDirectory.from_settings(config)
    gateway = gateway or CarrierGateway.from_settings(config, directory=directory, clock=clock)
    return QuoteOrchestrator(
        scorer=RiskScorer(UnderwritingThresholds.from_settings(config), clock=clock),
        profile_builder=RiskProfileBuilder(clock=clock),
        matcher=CarrierMatcher(
            directory,
            min_candidates=config.min_candidates,
            max_candidates=config.max_candidates,
        ),
        pricing=PricingEngine(),
        gateway=gateway,
        validator=BusinessRuleValidator.from_settings(config),
        directory=directory,
        observer=observer,
        ids=ids or IdFactory(config.id_seed),
        clock=clock,
        pipeline_timeout=config.pipeline_timeout_seconds,
        assumed_commission_rate=config.assumed_commission_rate,
        high_premium_threshold=config.high_premium_threshold,
    )


def _coerce_request(request: QuoteRequest | dict[str, Any]) -> QuoteRequest:
    if isinstance(request, QuoteRequest):
        return request
    if not isinstance(request, dict):
        raise QuoteRequestError(f"Expected a quote request object, got {type(request).__name__}")
    try:
        return QuoteRequest.model_validate(request)
    except ValidationError as exc:
        raise QuoteRequestError(
            f"Invalid quote request: {exc.error_count()} validation error(s)",
            errors=exc.errors(include_url=False),
        ) from exc
