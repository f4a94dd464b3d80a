"""Shared data model for the quote pipeline.

Inbound request records (:class:`QuoteRequest` and its sub-records) and the
outbound records that every stage shares (:class:`Quote`,
:class:`PolicyIssue`, :class:`PipelineMetrics`).  Stage-specific records live
beside the stage that produces them.

Every derived record is frozen so no stage can mutate another stage's output.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

CoverageType = Literal["auto", "home", "homeowners", "renters", "life"]
IssueType = Literal["eligibility", "underwriting", "pricing", "system"]
IssueSeverity = Literal["low", "medium", "high", "critical"]

# Coverage types that carry property risk (age brackets, weather term)
PROPERTY_COVERAGE_TYPES: frozenset[str] = frozenset({"home", "homeowners", "renters"})


# ---------------------------------------------------------------------------
# Request sub-records
# ---------------------------------------------------------------------------


class Address(BaseModel):
    street: str = ""
    city: str = ""
    state: str = Field(..., min_length=2, max_length=2, description="Two-letter state code")
    zip_code: str = Field(..., min_length=5, max_length=10, description="ZIP or ZIP+4")

    @field_validator("state")
    @classmethod
    def _upper_state(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("zip_code")
    @classmethod
    def _digits_zip(cls, value: str) -> str:
        value = value.strip()
        if not value[:5].isdigit():
            raise ValueError("zip_code must start with five digits")
        return value


class CustomerInfo(BaseModel):
    """Applicant identity and demographic data.

    Either ``age`` or ``date_of_birth`` may be supplied; when neither is the
    profile builder assumes a mid-range age.
    """

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = ""
    phone: str = ""
    age: int | None = Field(default=None, ge=16, le=120)
    date_of_birth: date | None = None
    credit_score: int | None = Field(default=None, ge=300, le=850)
    occupation: str | None = None
    marital_status: Literal["single", "married", "divorced", "widowed"] | None = None
    address: Address


class VehicleInfo(BaseModel):
    year: int = Field(..., ge=1900, le=2100)
    make: str = ""
    model: str = ""
    annual_mileage: int | None = Field(default=None, ge=0)
    safety_rating: float | None = Field(default=None, ge=0, le=5)


class PropertyInfo(BaseModel):
    year_built: int | None = Field(default=None, ge=1700, le=2100)
    property_type: str = "single_family"
    construction: str | None = None
    value: float | None = Field(default=None, ge=0)
    has_pool: bool = False
    has_security_system: bool = False
    has_fire_alarm: bool = False
    flood_zone: str | None = None


class Violation(BaseModel):
    violation_type: str = ""
    severity: Literal["minor", "major", "severe"] = "minor"
    occurred_on: date | None = None


class Accident(BaseModel):
    occurred_on: date | None = None
    at_fault: bool = False
    damage_amount: float = Field(default=0.0, ge=0)
    injuries: bool = False


class DrivingHistory(BaseModel):
    years_licensed: int = Field(default=5, ge=0)
    violations: list[Violation] = Field(default_factory=list)
    accidents: list[Accident] = Field(default_factory=list)
    dui_convictions: int = Field(default=0, ge=0)

    model_config = {"frozen": True}


class ClaimRecord(BaseModel):
    """A prior claim on the applicant's record.

    ``fraud_flag`` is the internal 0-10 fraud indicator attached to the claim
    by the claims system; above 8 the application is declined outright.
    """

    claim_id: str = ""
    claim_type: str = ""
    amount: float = Field(..., ge=0)
    claim_date: date
    at_fault: bool = False
    fraud_flag: float = Field(default=0.0, ge=0, le=10)

    model_config = {"frozen": True}


class WeatherExposure(BaseModel):
    hurricane_risk: float = Field(default=0.0, ge=0, le=10)
    earthquake_risk: float = Field(default=0.0, ge=0, le=10)
    wildfire_risk: float = Field(default=0.0, ge=0, le=10)
    flood_zone: Literal["low", "moderate", "high"] = "low"

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# QuoteRequest
# ---------------------------------------------------------------------------


class QuoteRequest(BaseModel):
    """Inbound quote submission.

    Attributes
    ----------
    customer:
        Applicant identity, demographics and address.
    coverage_type:
        Requested line (``auto``, ``home``, ``homeowners``, ``renters``,
        ``life``).
    coverage_amount:
        Requested limit in USD; must be positive.
    deductible:
        Requested deductible in USD; ``0 <= deductible < coverage_amount``.
    vehicle, property, driving_history:
        Optional asset and behavioural sub-records.
    claims:
        Prior claims on record.
    financial_stability:
        0-10 stability indicator (10 = most stable).  Defaults to 5.
    social_media_risk:
        Optional 0-10 social-signal risk indicator.
    weather:
        Optional weather/catastrophe exposure for the insured location.
    """

    customer: CustomerInfo
    coverage_type: CoverageType
    coverage_amount: float = Field(..., gt=0)
    deductible: float = Field(default=0.0, ge=0)
    vehicle: VehicleInfo | None = None
    property: PropertyInfo | None = None
    driving_history: DrivingHistory | None = None
    claims: list[ClaimRecord] = Field(default_factory=list)
    financial_stability: float = Field(default=5.0, ge=0, le=10)
    social_media_risk: float | None = Field(default=None, ge=0, le=10)
    weather: WeatherExposure | None = None

    @field_validator("coverage_type", mode="before")
    @classmethod
    def _lower_coverage(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _deductible_below_amount(self) -> "QuoteRequest":
        if self.deductible >= self.coverage_amount:
            raise ValueError("deductible must be lower than coverage_amount")
        return self


# ---------------------------------------------------------------------------
# Outbound records
# ---------------------------------------------------------------------------


class Discount(BaseModel):
    code: str
    description: str = ""
    amount: float = 0.0
    percentage: float | None = None

    model_config = {"frozen": True}


class Quote(BaseModel):
    """Canonical carrier quote.

    Attributes
    ----------
    id:
        Pipeline-assigned quote id.
    carrier_id, carrier_name:
        Quoting carrier.
    carrier_quote_ref:
        The carrier's own reference for the quote, when it sent one.
    premium:
        Monthly premium in USD.
    annual_premium:
        Annualised premium in USD.
    deductible:
        Deductible the carrier quoted against.
    coverage_score:
        0-100 adequacy of the quoted coverage relative to the request.
    discounts:
        Discounts the carrier applied.
    valid_until:
        Quote expiry.
    confidence:
        0-1 confidence in the quoted figure.
    """

    id: str
    carrier_id: str
    carrier_name: str
    carrier_quote_ref: str | None = None
    premium: float
    annual_premium: float
    deductible: float = 0.0
    coverage_score: float = Field(..., ge=0, le=100)
    discounts: tuple[Discount, ...] = ()
    valid_until: datetime
    confidence: float = Field(..., ge=0, le=1)

    model_config = {"frozen": True}


class PolicyIssue(BaseModel):
    issue_id: str
    type: IssueType
    severity: IssueSeverity
    message: str
    affected_carriers: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    model_config = {"frozen": True}


class PipelineMetrics(BaseModel):
    """Aggregate figures for one pipeline run.

    ``average_premium`` is the mean monthly premium of the returned quotes;
    ``risk_adjusted_profitability`` is the mean annual premium times the
    assumed commission rate, scaled per $1,000 into 0-100.
    """

    total_quotes: int = 0
    average_premium: float = 0.0
    risk_adjusted_profitability: float = 0.0
    carrier_diversification: float = 0.0
    carriers_requested: int = 0
    carriers_failed: int = 0
    quotes_rejected: int = 0
    stage_latency_ms: dict[str, float] = Field(default_factory=dict)
    processing_time_ms: float = 0.0

    model_config = {"frozen": True}
