"""Coverline validation package — business-rule filtering of carrier quotes."""

from coverline.validation.rules import BusinessRuleValidator, QuoteRejection, ValidationReport

__all__ = ["BusinessRuleValidator", "QuoteRejection", "ValidationReport"]
