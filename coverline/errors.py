"""Exception hierarchy for the quote pipeline.

Only :class:`QuoteRequestError` (and its subclass :class:`PricingError`) ever
crosses the orchestrator boundary.  Every :class:`CarrierError` is caught at
the carrier boundary and recorded as a per-carrier failure.
"""

from __future__ import annotations


class CoverlineError(Exception):
    """Base class for all Coverline errors."""


class QuoteRequestError(CoverlineError):
    """Inbound request failed shape validation before any stage ran."""

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class PricingError(QuoteRequestError):
    """Pricing inputs are out of range (coverage amount, deductible)."""


class DirectoryError(CoverlineError):
    """Carrier directory file could not be read or parsed."""


# ---------------------------------------------------------------------------
# Carrier errors
# ---------------------------------------------------------------------------


class CarrierError(CoverlineError):
    """A single carrier call failed.

    Attributes
    ----------
    carrier_id:
        Directory id of the failing carrier.
    kind:
        Short machine-readable failure category, used in metrics and issues.
    """

    kind = "error"

    def __init__(self, carrier_id: str, message: str) -> None:
        super().__init__(message)
        self.carrier_id = carrier_id
        self.message = message


class CarrierTimeoutError(CarrierError):
    kind = "timeout"


class CarrierHTTPError(CarrierError):
    kind = "http_status"

    def __init__(self, carrier_id: str, status_code: int, message: str = "") -> None:
        super().__init__(carrier_id, message or f"HTTP {status_code}")
        self.status_code = status_code


class MalformedCarrierResponse(CarrierError):
    kind = "malformed"


class CarrierDeclinedError(CarrierError):
    kind = "declined"


class CarrierAuthError(CarrierError):
    kind = "auth"


class CarrierRateLimitedError(CarrierError):
    kind = "rate_limited"


class CarrierDeadlineError(CarrierError):
    """The carrier was still in flight when the gateway deadline expired."""

    kind = "deadline"
