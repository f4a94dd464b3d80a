"""Coverline underwriting package — risk profiling, scoring and pricing.

- :class:`RiskProfileBuilder` — derives :class:`RiskFactors` from a quote request
- :class:`RiskScorer` — risk/fraud scores and the underwriting decision
- :class:`PricingEngine` — base premium plus ordered adjustments
"""

from coverline.underwriting.risk import (
    RiskAssessment,
    RiskFactors,
    RiskScorer,
    UnderwritingDecision,
    UnderwritingThresholds,
)
from coverline.underwriting.profile import RiskProfileBuilder
from coverline.underwriting.pricing import PremiumAdjustment, PremiumBreakdown, PricingEngine

__all__ = [
    "RiskFactors",
    "RiskAssessment",
    "RiskScorer",
    "UnderwritingDecision",
    "UnderwritingThresholds",
    "RiskProfileBuilder",
    "PricingEngine",
    "PremiumAdjustment",
    "PremiumBreakdown",
]
