"""Pydantic schemas for the Coverline API request/response models.

Inbound quote submissions reuse :class:`~coverline.schemas.QuoteRequest`
directly; the response side is flattened so the public surface can evolve
independently of the pipeline's internal models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from coverline.carriers.directory import CarrierProfile
from coverline.schemas import PipelineMetrics, PolicyIssue, Quote


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class DirectoryReloadInput(BaseModel):
    """Body for POST /v1/carriers/reload.

    Attributes
    ----------
    carriers:
        Replacement primary carriers.  Omit to re-read the directory file.
    fallbacks:
        Replacement fallback carriers.  Omit to keep the current set (or the
        file's set when re-reading).
    """

    carriers: list[CarrierProfile] | None = None
    fallbacks: list[CarrierProfile] | None = None


class CarrierTestInput(BaseModel):
    """Body for POST /v1/carriers/{carrier_id}/test."""

    test_type: str = "connectivity"


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class DecisionSummary(BaseModel):
    approved: bool
    basis: str
    risk_score: float
    fraud_score: float
    confidence: float
    fraud_flags: list[str] = Field(default_factory=list)
    reasoning: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    required_documents: list[str] = Field(default_factory=list)


class QuoteResponse(BaseModel):
    """Response for POST /v1/quotes.

    Attributes
    ----------
    request_id:
        Pipeline run id.
    quotes:
        Validated carrier quotes, in candidate order.
    issues:
        Advisory issues raised during the run.
    recommendations:
        Broker-facing suggestions.
    metrics:
        Aggregate figures for the run.
    decision:
        Underwriting decision summary; ``None`` if scoring failed.
    reference_premium:
        Monthly premium computed by the pricing engine.
    candidates:
        Carrier ids that were asked to quote.
    directory_version:
        Carrier directory snapshot version used.
    """

    request_id: str
    quotes: list[Quote] = Field(default_factory=list)
    issues: list[PolicyIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    metrics: PipelineMetrics
    decision: DecisionSummary | None = None
    reference_premium: float | None = None
    candidates: list[str] = Field(default_factory=list)
    directory_version: int = 0


class CarrierEntry(BaseModel):
    id: str
    name: str
    min_risk_score: float
    max_risk_score: float
    commission_rate: float
    accepted_states: list[str]
    supported_coverage_types: list[str]
    turnaround_time: float
    acceptance_rate: float
    response_schema: str
    fallback: bool = False


class CarrierListResponse(BaseModel):
    version: int
    loaded_at: datetime
    source: str
    carriers: list[CarrierEntry] = Field(default_factory=list)


class ReloadResponse(BaseModel):
    version: int
    carriers: int
    fallbacks: int
    loaded_at: datetime


class CarrierStatusResponse(BaseModel):
    """Response for GET /v1/carriers/{carrier_id}/status.

    Attributes
    ----------
    operational_status:
        ``"up"`` (success rate of at least 90%), ``"degraded"`` (at least
        50%), ``"down"``, or ``"unknown"`` when no calls have been recorded.
    avg_response_time_ms:
        Mean gateway round trip over every timed call, failures included.
    last_successful_quote:
        When the carrier last returned a usable quote, if ever.
    """

    carrier_id: str
    display_name: str
    operational_status: str
    total_calls: int = 0
    success: int = 0
    failure: int = 0
    success_rate_percent: float = 0.0
    error_rate_percent: float = 0.0
    avg_response_time_ms: float = 0.0
    supported_products: list[str] = Field(default_factory=list)
    last_successful_quote: datetime | None = None
    failures_by_kind: dict[str, int] = Field(default_factory=dict)


class CarrierTestResponse(BaseModel):
    carrier_id: str
    test_type: str
    success: bool
    message: str
    response_time_ms: float
    kind: str | None = None
    checked_at: datetime


class MetricsResponse(BaseModel):
    runs: int = 0
    quotes_returned: int = 0
    stages: dict[str, Any] = Field(default_factory=dict)
    carriers: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response for GET /v1/health.

    Attributes
    ----------
    status:
        ``"ok"`` | ``"degraded"`` | ``"error"``.
    version:
        Coverline version string.
    carrier_mode:
        ``simulated`` or ``live``.
    carriers_loaded:
        Number of primary carriers in the current directory snapshot.
    fallbacks_loaded:
        Number of fallback carriers.
    directory_version:
        Current directory snapshot version.
    """

    status: str
    version: str
    carrier_mode: str = ""
    carriers_loaded: int = 0
    fallbacks_loaded: int = 0
    directory_version: int = 0
