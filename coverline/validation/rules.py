"""Business rule validator — filters carrier quotes against acceptance rules.

Rules, checked in order (the first failing rule is reported):

1. ``premium_bounds`` — monthly premium within [premium_min, premium_max].
2. ``state_license`` — the carrier is licensed in the customer's state.
   A carrier missing from the directory counts as unlicensed.
3. ``coverage_score`` — coverage score strictly above the minimum.

Validation is a filter: it never raises and never reorders.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from coverline.schemas import Quote, QuoteRequest

logger = logging.getLogger("coverline.validation.rules")

RuleName = Literal["premium_bounds", "state_license", "coverage_score"]


class LicenseLookup(Protocol):
    def is_licensed(self, carrier_id: str, state: str) -> bool: ...


class QuoteRejection(BaseModel):
    """Why one quote was filtered out."""

    quote_id: str
    carrier_id: str
    rule: RuleName
    message: str

    model_config = {"frozen": True}


class ValidationReport(BaseModel):
    accepted: list[Quote] = Field(default_factory=list)
    rejections: list[QuoteRejection] = Field(default_factory=list)


class BusinessRuleValidator:
    """Applies the quote acceptance rules.

    Defaults are the standard 50-2000 monthly premium band and a coverage
    score floor of 60; all three are configurable.
    """

    def __init__(
        self,
        premium_min: float = 50.0,
        premium_max: float = 2000.0,
        min_coverage_score: float = 60.0,
    ) -> None:
        if premium_min > premium_max:
            raise ValueError("premium_min cannot exceed premium_max")
        self.premium_min = premium_min
        self.premium_max = premium_max
        self.min_coverage_score = min_coverage_score

    @classmethod
    def from_settings(cls, config: Any) -> "BusinessRuleValidator":
        return cls(
            premium_min=config.premium_min,
            premium_max=config.premium_max,
            min_coverage_score=config.min_coverage_score,
        )

    def validate(
        self,
        quotes: list[Quote],
        request: QuoteRequest,
        directory: LicenseLookup,
    ) -> list[Quote]:
        """Return the quotes that pass every rule, in their original order.

        Args:
            quotes: Canonical carrier quotes.
            request: The submission; supplies the customer's state.
            directory: Anything exposing ``is_licensed(carrier_id, state)``,
                normally the run's directory snapshot.

        Returns:
            The accepted subset of ``quotes``.
        """
        return self.review(quotes, request, directory).accepted

    def review(
        self,
        quotes: list[Quote],
        request: QuoteRequest,
        directory: LicenseLookup,
    ) -> ValidationReport:
        """Like :meth:`validate` but also reports each rejection."""
        state = request.customer.address.state
        report = ValidationReport()
        for quote in quotes:
            rejection = self._first_failure(quote, state, directory)
            if rejection is None:
                report.accepted.append(quote)
            else:
                logger.warning(
                    "Quote %s from %s rejected by %s: %s",
                    quote.id,
                    quote.carrier_id,
                    rejection.rule,
                    rejection.message,
                )
                report.rejections.append(rejection)
        return report

    def _first_failure(
        self, quote: Quote, state: str, directory: LicenseLookup
    ) -> QuoteRejection | None:
        if not self.premium_min <= quote.premium <= self.premium_max:
            return QuoteRejection(
                quote_id=quote.id,
                carrier_id=quote.carrier_id,
                rule="premium_bounds",
                message=(
                    f"Monthly premium {quote.premium:.2f} outside "
                    f"[{self.premium_min:.0f}, {self.premium_max:.0f}]"
                ),
            )
        if not directory.is_licensed(quote.carrier_id, state):
            return QuoteRejection(
                quote_id=quote.id,
                carrier_id=quote.carrier_id,
                rule="state_license",
                message=f"Carrier not licensed in {state}",
            )
        if quote.coverage_score <= self.min_coverage_score:
            return QuoteRejection(
                quote_id=quote.id,
                carrier_id=quote.carrier_id,
                rule="coverage_score",
                message=(
                    f"Coverage score {quote.coverage_score:.0f} does not exceed "
                    f"{self.min_coverage_score:.0f}"
                ),
            )
        return None
