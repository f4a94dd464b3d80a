"""Pricing engine — computes a premium from coverage amount, deductible and a
per-mille rate table, then applies an ordered list of named adjustments.

The pricing pipeline is:

    rate_premium  = coverage_amount / 1000 × rate[coverage_type]
    base_premium  = rate_premium × risk_multiplier × deductible_factor
    final_premium = base_premium × Π (1 + adjustment_i)   (in generated order)

where ``risk_multiplier = 1 + (risk_score − 50) / 100`` and
``deductible_factor = max(0.5, 1 − (deductible / coverage_amount) × 2)``.

Premiums are monthly.  Rounding to cents happens exactly once, on
``final_premium``.  The reported ``base_premium`` is rounded for display
only; the adjustment chain runs on the unrounded value.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from coverline.errors import PricingError
from coverline.underwriting.risk import RiskFactors, clamp

logger = logging.getLogger("coverline.underwriting.pricing")

# Monthly premium per $1,000 of coverage
_RATE_TABLE: dict[str, float] = {
    "auto": 0.8,
    "home": 0.4,
    "homeowners": 0.4,
    "life": 0.2,
    "renters": 0.15,
}
_DEFAULT_RATE = 0.5

_DEDUCTIBLE_FLOOR = 0.5
_EXCELLENT_CREDIT = 750
_HIGH_RISK_LOCATION = 75.0


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class PremiumAdjustment(BaseModel):
    """One named discount (negative) or surcharge (positive) fraction."""

    factor: str
    adjustment: float
    reason: str

    model_config = {"frozen": True}


class PremiumBreakdown(BaseModel):
    """Priced premium with every intermediate factor.

    Attributes
    ----------
    coverage_type:
        Line the premium was priced for.
    base_rate:
        Per-mille rate looked up for the line.
    rate_premium:
        ``coverage_amount / 1000 × base_rate``.
    risk_multiplier:
        ``1 + (risk_score − 50) / 100``.
    deductible_factor:
        Deductible credit, floored at 0.5.
    base_premium:
        Premium before adjustments, rounded to cents for display.
    adjustments:
        Adjustments in the order they were applied.
    final_premium:
        Premium after adjustments, rounded to cents.
    """

    coverage_type: str
    base_rate: float
    rate_premium: float
    risk_multiplier: float
    deductible_factor: float
    base_premium: float
    adjustments: tuple[PremiumAdjustment, ...] = ()
    final_premium: float = Field(..., ge=0)

    model_config = {"frozen": True}

    @property
    def annual_premium(self) -> float:
        return round(self.final_premium * 12, 2)


# ---------------------------------------------------------------------------
# PricingEngine
# ---------------------------------------------------------------------------


class PricingEngine:
    """Deterministic premium calculator.

    The engine is stateless; identical inputs always produce identical
    breakdowns.
    """

    def __init__(self, rate_table: dict[str, float] | None = None) -> None:
        self.rate_table = dict(rate_table or _RATE_TABLE)

    def price(
        self,
        risk_score: float,
        coverage_type: str,
        coverage_amount: float,
        deductible: float,
        factors: RiskFactors | None = None,
    ) -> PremiumBreakdown:
        """Price a policy.

        Parameters
        ----------
        risk_score:
            0-100 applicant risk score (clamped if outside the range).
        coverage_type:
            Line of business; unknown lines use the default rate.
        coverage_amount:
            Requested limit, must be positive.
        deductible:
            Requested deductible, ``0 <= deductible < coverage_amount``.
        factors:
            Risk factors used to decide which adjustments apply.  Without
            them only the unconditional adjustments are generated.

        Returns
        -------
        PremiumBreakdown

        Raises
        ------
        PricingError
            If the coverage amount or deductible is out of range.
        """
        if coverage_amount <= 0:
            raise PricingError(f"coverage_amount must be positive, got {coverage_amount}")
        if deductible < 0 or deductible >= coverage_amount:
            raise PricingError(
                f"deductible must be in [0, {coverage_amount}), got {deductible}"
            )

        coverage_type = coverage_type.lower()
        base_rate = self.rate_table.get(coverage_type, _DEFAULT_RATE)
        rate_premium = coverage_amount / 1000.0 * base_rate
        multiplier = risk_multiplier(risk_score)
        ded_factor = deductible_factor(coverage_amount, deductible)
        base = rate_premium * multiplier * ded_factor

        adjustments = self.adjustments(factors)
        premium = base
        for adj in adjustments:
            premium *= 1.0 + adj.adjustment

        breakdown = PremiumBreakdown(
            coverage_type=coverage_type,
            base_rate=base_rate,
            rate_premium=rate_premium,
            risk_multiplier=multiplier,
            deductible_factor=ded_factor,
            base_premium=round(base, 2),
            adjustments=tuple(adjustments),
            final_premium=round(premium, 2),
        )
        logger.debug(
            "Priced %s amount=%.0f deductible=%.0f base=%.2f final=%.2f (%d adjustments)",
            coverage_type,
            coverage_amount,
            deductible,
            breakdown.base_premium,
            breakdown.final_premium,
            len(adjustments),
        )
        return breakdown

    @staticmethod
    def adjustments(factors: RiskFactors | None) -> list[PremiumAdjustment]:
        """Generate adjustments in their fixed application order."""
        result = [
            PremiumAdjustment(
                factor="multi_policy",
                adjustment=-0.10,
                reason="Multi-policy discount available",
            )
        ]
        if factors is not None:
            if factors.credit_score is not None and factors.credit_score > _EXCELLENT_CREDIT:
                result.append(
                    PremiumAdjustment(
                        factor="excellent_credit",
                        adjustment=-0.15,
                        reason="Excellent credit score bonus",
                    )
                )
            if not factors.claims:
                result.append(
                    PremiumAdjustment(
                        factor="claims_free",
                        adjustment=-0.20,
                        reason="Claims-free history bonus",
                    )
                )
            if factors.location_risk > _HIGH_RISK_LOCATION:
                result.append(
                    PremiumAdjustment(
                        factor="high_risk_location",
                        adjustment=0.25,
                        reason="High-risk geographic location",
                    )
                )
        result.append(
            PremiumAdjustment(
                factor="technology_adoption",
                adjustment=-0.05,
                reason="Technology adoption incentive",
            )
        )
        return result


# ---------------------------------------------------------------------------
# Factor helpers
# ---------------------------------------------------------------------------


def risk_multiplier(risk_score: float) -> float:
    """``1 + (risk − 50) / 100``; 50 is neutral, 100 doubles, 0 halves."""
    return 1.0 + (clamp(risk_score, 0.0, 100.0) - 50.0) / 100.0


def deductible_factor(coverage_amount: float, deductible: float) -> float:
    """Deductible credit, never below 0.5."""
    return max(_DEDUCTIBLE_FLOOR, 1.0 - (deductible / coverage_amount) * 2.0)
