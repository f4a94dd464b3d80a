"""Risk scorer — turns a normalised :class:`RiskFactors` record into a bounded
risk score, an independent fraud score and a data-confidence figure, then
applies the underwriting decision rules.

Risk scoring starts from a neutral baseline of 50 and applies one additive
delta per factor category:

    age bracket → credit band → claims history → location → property age
    → driving record (auto) → financial stability → weather (property)

The running score is clamped to [0, 100] after every step, so no category can
push an intermediate value out of range.  Per-category deltas are reported in
:attr:`RiskAssessment.components` for explainability.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, field_validator

from coverline.schemas import (
    PROPERTY_COVERAGE_TYPES,
    ClaimRecord,
    DrivingHistory,
    WeatherExposure,
)

logger = logging.getLogger("coverline.underwriting.risk")

_BASELINE = 50.0
_DEFAULT_CREDIT_SCORE = 650

# Claims history
_NO_CLAIMS_BONUS = -5.0
_CLAIM_AMOUNT_DIVISOR = 10_000.0
_PER_CLAIM_AMOUNT_CAP = 15.0
_AT_FAULT_CLAIM_PENALTY = 5.0
_FLAGGED_CLAIM_PENALTY = 10.0
_FLAGGED_CLAIM_THRESHOLD = 5.0
_CLAIMS_CAP = 30.0

# Location risk is 0-100; weighted into a 0-20 contribution
_LOCATION_WEIGHT = 0.2

# Driving record
_VIOLATION_POINTS: dict[str, float] = {"minor": 2.0, "major": 8.0, "severe": 15.0}
_AT_FAULT_ACCIDENT_PENALTY = 10.0
_INJURY_PENALTY = 5.0
_ACCIDENT_DAMAGE_CAP = 5.0
_EXPERIENCED_DRIVER_BONUS = -3.0
_DRIVING_FLOOR = -5.0
_DRIVING_CAP = 25.0

# Weather
_WEATHER_CAP = 15.0
_HIGH_FLOOD_PENALTY = 5.0

# Fraud flags
_RECENT_CLAIM_WINDOW = timedelta(days=365)
_RECENT_CLAIM_LIMIT = 3
_LARGE_CLAIM_AMOUNT = 50_000.0
_LARGE_CLAIM_LIMIT = 1
_SOCIAL_MEDIA_THRESHOLD = 7.0
_LOW_CREDIT = 500
_HIGH_PROPERTY_VALUE = 1_000_000.0

DecisionBasis = Literal[
    "fraud_decline",
    "risk_decline",
    "claim_fraud_decline",
    "auto_approval",
    "risk_threshold",
    "threshold_decline",
]


def clamp(value: float, low: float, high: float) -> float:
    """Clamp *value* to the closed interval [*low*, *high*]."""
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class RiskFactors(BaseModel):
    """Normalised risk inputs for one applicant.

    Built by :class:`~coverline.underwriting.profile.RiskProfileBuilder` from a
    :class:`~coverline.schemas.QuoteRequest`.  Index-style inputs are clamped
    on construction to their documented ranges: location indices to 0-100,
    stability and social-media indicators to 0-10, credit score to 300-850.
    """

    age: int = 35
    credit_score: int | None = None
    occupation: str | None = None

    crime_index: float = 50.0
    disaster_index: float = 50.0
    economic_index: float = 50.0
    location_risk: float = 50.0

    property_value: float | None = None
    property_age: int | None = None
    property_type: str | None = None
    vehicle_age: int | None = None

    claims: tuple[ClaimRecord, ...] = ()
    driving_record: DrivingHistory | None = None
    financial_stability: float = 5.0
    social_media_risk: float | None = None
    weather: WeatherExposure | None = None

    model_config = {"frozen": True}

    @field_validator("crime_index", "disaster_index", "economic_index", "location_risk", mode="before")
    @classmethod
    def _clamp_index(cls, value: Any) -> Any:
        return clamp(float(value), 0.0, 100.0) if value is not None else value

    @field_validator("financial_stability", "social_media_risk", mode="before")
    @classmethod
    def _clamp_indicator(cls, value: Any) -> Any:
        return clamp(float(value), 0.0, 10.0) if value is not None else value

    @field_validator("credit_score", mode="before")
    @classmethod
    def _clamp_credit(cls, value: Any) -> Any:
        return int(clamp(int(value), 300, 850)) if value is not None else value

    @field_validator("property_age", "vehicle_age", mode="before")
    @classmethod
    def _non_negative_age(cls, value: Any) -> Any:
        return max(0, int(value)) if value is not None else value


class RiskAssessment(BaseModel):
    """Risk, fraud and confidence scores for one pipeline run.

    Attributes
    ----------
    risk_score:
        0-100, lower is better.
    fraud_score:
        0-100, sum of fixed fraud-flag penalties.
    confidence:
        0-95, how much of the optional evidence was on file.
    components:
        Per-category contribution to ``risk_score`` after clamping.
    fraud_flags:
        Names of the fraud flags that fired.
    """

    risk_score: float = Field(..., ge=0, le=100)
    fraud_score: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=100)
    components: dict[str, float] = Field(default_factory=dict)
    fraud_flags: tuple[str, ...] = ()

    model_config = {"frozen": True}


class UnderwritingThresholds(BaseModel):
    auto_approve_max_risk: float = 30.0
    auto_approve_max_fraud: float = 10.0
    approve_max_risk: float = 70.0
    approve_max_fraud: float = 30.0
    decline_min_risk: float = 85.0
    decline_min_fraud: float = 50.0
    claim_fraud_flag_threshold: float = 8.0

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, config: Any) -> "UnderwritingThresholds":
        return cls(**{name: getattr(config, name) for name in cls.model_fields})


class UnderwritingDecision(BaseModel):
    approved: bool
    basis: DecisionBasis
    reasoning: tuple[str, ...] = ()
    conditions: tuple[str, ...] = ()
    required_documents: tuple[str, ...] = ()

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# RiskScorer
# ---------------------------------------------------------------------------


class RiskScorer:
    """Pure risk/fraud scorer and decision rule.

    Parameters
    ----------
    thresholds:
        Decision thresholds.  Defaults to the standard 30/10, 70/30, 85/50
        bands with a per-claim fraud flag threshold of 8.
    clock:
        Returns "now"; only used when :meth:`score` is called without
        ``as_of`` to evaluate claim recency.
    """

    def __init__(
        self,
        thresholds: UnderwritingThresholds | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.thresholds = thresholds or UnderwritingThresholds()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(
        self,
        factors: RiskFactors,
        coverage_type: str,
        as_of: date | None = None,
    ) -> RiskAssessment:
        """Score *factors* for *coverage_type*.

        Never raises for a well-formed :class:`RiskFactors`; missing optional
        evidence falls back to neutral defaults.

        Parameters
        ----------
        factors:
            Normalised applicant risk inputs.
        coverage_type:
            Requested line; selects the age bracket table and gates the
            driving-record and weather terms.
        as_of:
            Reference date for claim recency.  Defaults to the injected clock.

        Returns
        -------
        RiskAssessment
        """
        as_of = as_of or self._clock().date()
        coverage_type = coverage_type.lower()
        components: dict[str, float] = {}
        running = _BASELINE

        steps: list[tuple[str, float]] = [
            ("age", self._age_delta(factors.age, coverage_type)),
            ("credit", self._credit_delta(factors.credit_score)),
            ("claims", self._claims_delta(factors.claims)),
            ("location", factors.location_risk * _LOCATION_WEIGHT),
            ("property_age", 5.0 if (factors.property_age or 0) > 30 else 0.0),
            ("driving", self._driving_delta(factors.driving_record, coverage_type)),
            ("financial_stability", (10.0 - factors.financial_stability) * 2.0),
            ("weather", self._weather_delta(factors.weather, coverage_type)),
        ]
        for name, delta in steps:
            before = running
            running = clamp(running + delta, 0.0, 100.0)
            components[name] = round(running - before, 4)

        fraud_score, flags = self._fraud_score(factors, as_of)
        assessment = RiskAssessment(
            risk_score=round(running, 4),
            fraud_score=fraud_score,
            confidence=self._confidence(factors),
            components=components,
            fraud_flags=tuple(flags),
        )
        logger.debug(
            "Scored coverage=%s risk=%.2f fraud=%.1f confidence=%.0f",
            coverage_type,
            assessment.risk_score,
            assessment.fraud_score,
            assessment.confidence,
        )
        return assessment

    def decide(self, assessment: RiskAssessment, factors: RiskFactors) -> UnderwritingDecision:
        """Apply the underwriting decision rules to a scored applicant.

        Declines first (fraud, risk, any single claim flagged above the
        claim threshold), then low-risk auto-approval, then the combined
        risk/fraud threshold.
        """
        t = self.thresholds
        risk = assessment.risk_score
        fraud = assessment.fraud_score

        if fraud > t.decline_min_fraud:
            approved, basis = False, "fraud_decline"
        elif risk > t.decline_min_risk:
            approved, basis = False, "risk_decline"
        elif any(c.fraud_flag > t.claim_fraud_flag_threshold for c in factors.claims):
            approved, basis = False, "claim_fraud_decline"
        elif risk < t.auto_approve_max_risk and fraud < t.auto_approve_max_fraud:
            approved, basis = True, "auto_approval"
        elif risk < t.approve_max_risk and fraud < t.approve_max_fraud:
            approved, basis = True, "risk_threshold"
        else:
            approved, basis = False, "threshold_decline"

        return UnderwritingDecision(
            approved=approved,
            basis=basis,
            reasoning=tuple(self._reasoning(approved, risk, basis)),
            conditions=tuple(self._conditions(risk, factors)),
            required_documents=tuple(self._required_documents(risk, factors)),
        )

    # ------------------------------------------------------------------
    # Category deltas
    # ------------------------------------------------------------------

    @staticmethod
    def _age_delta(age: int, coverage_type: str) -> float:
        if coverage_type == "auto":
            if age < 25:
                return 15.0
            if age > 65:
                return 10.0
            if 30 <= age <= 50:
                return -5.0
        elif coverage_type in PROPERTY_COVERAGE_TYPES:
            if age < 30:
                return 8.0
            if age > 60:
                return -3.0
        return 0.0

    @staticmethod
    def _credit_delta(credit_score: int | None) -> float:
        credit = credit_score if credit_score is not None else _DEFAULT_CREDIT_SCORE
        if credit > 750:
            return -10.0
        if credit < 600:
            return 15.0
        if credit < 650:
            return 8.0
        return 0.0

    @staticmethod
    def _claims_delta(claims: tuple[ClaimRecord, ...]) -> float:
        if not claims:
            return _NO_CLAIMS_BONUS
        impact = 0.0
        for claim in claims:
            impact += min(_PER_CLAIM_AMOUNT_CAP, claim.amount / _CLAIM_AMOUNT_DIVISOR)
            if claim.at_fault:
                impact += _AT_FAULT_CLAIM_PENALTY
            if claim.fraud_flag > _FLAGGED_CLAIM_THRESHOLD:
                impact += _FLAGGED_CLAIM_PENALTY
        return min(_CLAIMS_CAP, impact)

    @staticmethod
    def _driving_delta(record: DrivingHistory | None, coverage_type: str) -> float:
        if record is None or coverage_type != "auto":
            return 0.0
        impact = sum(_VIOLATION_POINTS[v.severity] for v in record.violations)
        for accident in record.accidents:
            if accident.at_fault:
                impact += _AT_FAULT_ACCIDENT_PENALTY
            if accident.injuries:
                impact += _INJURY_PENALTY
            impact += min(_ACCIDENT_DAMAGE_CAP, accident.damage_amount / _CLAIM_AMOUNT_DIVISOR)
        if record.years_licensed > 10:
            impact += _EXPERIENCED_DRIVER_BONUS
        return clamp(impact, _DRIVING_FLOOR, _DRIVING_CAP)

    @staticmethod
    def _weather_delta(weather: WeatherExposure | None, coverage_type: str) -> float:
        if weather is None or coverage_type not in PROPERTY_COVERAGE_TYPES:
            return 0.0
        risk = (
            weather.hurricane_risk * 2.0
            + weather.earthquake_risk * 1.5
            + weather.wildfire_risk * 2.0
        )
        if weather.flood_zone == "high":
            risk += _HIGH_FLOOD_PENALTY
        return min(_WEATHER_CAP, risk)

    # ------------------------------------------------------------------
    # Fraud & confidence
    # ------------------------------------------------------------------

    @staticmethod
    def _fraud_score(factors: RiskFactors, as_of: date) -> tuple[float, list[str]]:
        score = 0.0
        flags: list[str] = []

        cutoff = as_of - _RECENT_CLAIM_WINDOW
        recent = [c for c in factors.claims if cutoff < c.claim_date <= as_of]
        if len(recent) > _RECENT_CLAIM_LIMIT:
            score += 30.0
            flags.append("claim_cluster")

        large = [c for c in factors.claims if c.amount > _LARGE_CLAIM_AMOUNT]
        if len(large) > _LARGE_CLAIM_LIMIT:
            score += 20.0
            flags.append("large_claims")

        if factors.social_media_risk is not None and factors.social_media_risk > _SOCIAL_MEDIA_THRESHOLD:
            score += 15.0
            flags.append("social_media")

        if (
            factors.credit_score is not None
            and factors.credit_score < _LOW_CREDIT
            and (factors.property_value or 0.0) > _HIGH_PROPERTY_VALUE
        ):
            score += 25.0
            flags.append("credit_asset_mismatch")

        return clamp(score, 0.0, 100.0), flags

    @staticmethod
    def _confidence(factors: RiskFactors) -> float:
        confidence = 50.0
        if factors.credit_score is not None:
            confidence += 10
        if factors.claims:
            confidence += 15
        if factors.driving_record is not None:
            confidence += 15
        if factors.social_media_risk is not None:
            confidence += 5
        if factors.weather is not None:
            confidence += 5
        return min(95.0, confidence)

    # ------------------------------------------------------------------
    # Decision narrative
    # ------------------------------------------------------------------

    @staticmethod
    def _reasoning(approved: bool, risk: float, basis: str) -> list[str]:
        reasons: list[str] = []
        if approved:
            reasons.append("Application meets underwriting guidelines")
            if risk < 40:
                reasons.append("Low risk profile identified")
        else:
            reasons.append("Application exceeds risk tolerance")
            if risk > 70:
                reasons.append("High risk score identified")
            if basis == "fraud_decline":
                reasons.append("Fraud indicators exceed tolerance")
            elif basis == "claim_fraud_decline":
                reasons.append("Prior claim carries a high internal fraud flag")
        return reasons

    @staticmethod
    def _conditions(risk: float, factors: RiskFactors) -> list[str]:
        conditions: list[str] = []
        if risk > 60:
            conditions.append("Annual risk assessment required")
        if len(factors.claims) > 2:
            conditions.append("Claims monitoring program enrollment required")
        if (factors.property_age or 0) > 40:
            conditions.append("Home inspection required within 30 days")
        return conditions

    @staticmethod
    def _required_documents(risk: float, factors: RiskFactors) -> list[str]:
        docs = ["Driver license copy", "Proof of address"]
        if risk > 50:
            docs.append("Credit report authorization")
        if factors.property_age is not None or factors.property_value is not None:
            docs.append("Property deed or mortgage statement")
            if (factors.property_age or 0) > 20:
                docs.append("Home inspection report")
        if risk > 70:
            docs.append("Financial statements")
            docs.append("Employment verification")
        return docs
