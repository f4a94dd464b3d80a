"""Carrier response adapters — one parser + converter per known carrier
payload schema.

Carriers answer quote requests in one of three shapes, selected by
:attr:`CarrierProfile.response_schema`:

``standard``
    Nested JSON: ``quoteId``, ``status``, ``premium.totalPremium`` (annual),
    optional ``premium.monthlyPremium``, ``coverage.score``, ``discounts[]``
    with code/description/amount/percentage/applied, ``validUntil``,
    ``underwritingInfo.confidence``.
``flat``
    Snake-case flat JSON: ``quote_id``, ``status``, ``monthly_premium``,
    ``coverage_score``, ``discounts[]`` as ``{name, amount}``, ``expires_at``.
``legacy``
    Pascal-case JSON from older rating systems: ``QuoteNumber``, ``Result``
    (``OK``/``DECLINE``), ``AnnualPremium`` (number or numeric string),
    ``AdequacyPct``, ``Credits`` as ``"CODE:amount;CODE:amount"``,
    ``ExpiryDays``.

Each payload is validated into its pydantic model (unknown fields are
dropped), then converted into the canonical :class:`~coverline.schemas.Quote`.
Validation failures raise :class:`MalformedCarrierResponse`; declines raise
:class:`CarrierDeclinedError`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from coverline.carriers.directory import CarrierProfile
from coverline.errors import CarrierDeclinedError, MalformedCarrierResponse
from coverline.schemas import Discount, Quote

logger = logging.getLogger("coverline.carriers.adapters")

_DEFAULT_COVERAGE_SCORE = 75.0
_DEFAULT_CONFIDENCE = 0.8


class AdapterContext(BaseModel):
    """Pipeline-side values an adapter needs to complete a quote."""

    quote_id: str
    now: datetime
    validity_days: int = 30
    requested_deductible: float = 0.0


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class StandardPremium(_Payload):
    total_premium: float = Field(..., alias="totalPremium", gt=0)
    monthly_premium: float | None = Field(default=None, alias="monthlyPremium", gt=0)


class StandardDiscount(_Payload):
    code: str
    description: str = ""
    amount: float = 0.0
    percentage: float | None = None
    applied: bool = True


class StandardCoverage(_Payload):
    score: float | None = Field(default=None, ge=0, le=100)
    deductible: float | None = Field(default=None, ge=0)


class StandardUnderwriting(_Payload):
    confidence: float | None = Field(default=None, ge=0, le=1)


class StandardResponse(_Payload):
    schema_tag: Literal["standard"] = "standard"
    quote_id: str = Field(..., alias="quoteId")
    status: Literal["quoted", "declined", "referred"] = "quoted"
    premium: StandardPremium | None = None
    coverage: StandardCoverage = Field(default_factory=StandardCoverage)
    discounts: list[StandardDiscount] = Field(default_factory=list)
    valid_until: datetime | None = Field(default=None, alias="validUntil")
    underwriting_info: StandardUnderwriting = Field(
        default_factory=StandardUnderwriting, alias="underwritingInfo"
    )
    message: str | None = None


class FlatDiscount(_Payload):
    name: str
    amount: float = 0.0


class FlatResponse(_Payload):
    schema_tag: Literal["flat"] = "flat"
    quote_id: str
    status: Literal["quoted", "declined", "referred"] = "quoted"
    monthly_premium: float | None = Field(default=None, gt=0)
    coverage_score: float | None = Field(default=None, ge=0, le=100)
    deductible: float | None = Field(default=None, ge=0)
    discounts: list[FlatDiscount] = Field(default_factory=list)
    expires_at: datetime | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)
    reason: str | None = None


class LegacyResponse(_Payload):
    schema_tag: Literal["legacy"] = "legacy"
    quote_number: str = Field(..., alias="QuoteNumber")
    result: Literal["OK", "DECLINE"] = Field(..., alias="Result")
    annual_premium: float | None = Field(default=None, alias="AnnualPremium", gt=0)
    adequacy_pct: float | None = Field(default=None, alias="AdequacyPct", ge=0, le=100)
    deductible: float | None = Field(default=None, alias="Deductible", ge=0)
    credits: str = Field(default="", alias="Credits")
    expiry_days: int | None = Field(default=None, alias="ExpiryDays", ge=0)
    message: str | None = Field(default=None, alias="Message")

    @field_validator("result", mode="before")
    @classmethod
    def _upper_result(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


CarrierResponse = StandardResponse | FlatResponse | LegacyResponse


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def _adapt_standard(payload: StandardResponse, profile: CarrierProfile, ctx: AdapterContext) -> Quote:
    if payload.status != "quoted":
        raise CarrierDeclinedError(profile.id, payload.message or f"Carrier {payload.status} the risk")
    if payload.premium is None:
        raise MalformedCarrierResponse(profile.id, "quoted response without premium")

    annual = payload.premium.total_premium
    monthly = payload.premium.monthly_premium or annual / 12
    return Quote(
        id=ctx.quote_id,
        carrier_id=profile.id,
        carrier_name=profile.name,
        carrier_quote_ref=payload.quote_id,
        premium=round(monthly, 2),
        annual_premium=round(annual, 2),
        deductible=_pick(payload.coverage.deductible, ctx.requested_deductible),
        coverage_score=_pick(payload.coverage.score, _DEFAULT_COVERAGE_SCORE),
        discounts=tuple(
            Discount(code=d.code, description=d.description, amount=d.amount, percentage=d.percentage)
            for d in payload.discounts
            if d.applied
        ),
        valid_until=payload.valid_until or ctx.now + timedelta(days=ctx.validity_days),
        confidence=_pick(payload.underwriting_info.confidence, _DEFAULT_CONFIDENCE),
    )


def _adapt_flat(payload: FlatResponse, profile: CarrierProfile, ctx: AdapterContext) -> Quote:
    if payload.status != "quoted":
        raise CarrierDeclinedError(profile.id, payload.reason or f"Carrier {payload.status} the risk")
    if payload.monthly_premium is None:
        raise MalformedCarrierResponse(profile.id, "quoted response without monthly_premium")

    monthly = payload.monthly_premium
    return Quote(
        id=ctx.quote_id,
        carrier_id=profile.id,
        carrier_name=profile.name,
        carrier_quote_ref=payload.quote_id,
        premium=round(monthly, 2),
        annual_premium=round(monthly * 12, 2),
        deductible=_pick(payload.deductible, ctx.requested_deductible),
        coverage_score=_pick(payload.coverage_score, _DEFAULT_COVERAGE_SCORE),
        discounts=tuple(
            Discount(code=_slug(d.name), description=d.name, amount=d.amount)
            for d in payload.discounts
        ),
        valid_until=payload.expires_at or ctx.now + timedelta(days=ctx.validity_days),
        confidence=_pick(payload.confidence, _DEFAULT_CONFIDENCE),
    )


def _adapt_legacy(payload: LegacyResponse, profile: CarrierProfile, ctx: AdapterContext) -> Quote:
    if payload.result == "DECLINE":
        raise CarrierDeclinedError(profile.id, payload.message or "Carrier declined the risk")
    if payload.annual_premium is None:
        raise MalformedCarrierResponse(profile.id, "OK result without AnnualPremium")

    annual = payload.annual_premium
    days = payload.expiry_days if payload.expiry_days is not None else ctx.validity_days
    return Quote(
        id=ctx.quote_id,
        carrier_id=profile.id,
        carrier_name=profile.name,
        carrier_quote_ref=payload.quote_number,
        premium=round(annual / 12, 2),
        annual_premium=round(annual, 2),
        deductible=_pick(payload.deductible, ctx.requested_deductible),
        coverage_score=_pick(payload.adequacy_pct, _DEFAULT_COVERAGE_SCORE),
        discounts=_parse_credits(profile.id, payload.credits),
        valid_until=ctx.now + timedelta(days=days),
        confidence=_DEFAULT_CONFIDENCE,
    )


_PARSERS: dict[str, tuple[type[BaseModel], Callable[..., Quote]]] = {
    "standard": (StandardResponse, _adapt_standard),
    "flat": (FlatResponse, _adapt_flat),
    "legacy": (LegacyResponse, _adapt_legacy),
}


def parse_response(payload: Any, profile: CarrierProfile) -> CarrierResponse:
    """Validate a decoded JSON body against the carrier's declared schema."""
    model, _ = _PARSERS[profile.response_schema]
    if not isinstance(payload, dict):
        raise MalformedCarrierResponse(
            profile.id, f"expected a JSON object, got {type(payload).__name__}"
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise MalformedCarrierResponse(
            profile.id,
            f"{profile.response_schema} payload failed validation: {exc.error_count()} error(s)",
        ) from exc


def to_quote(payload: Any, profile: CarrierProfile, ctx: AdapterContext) -> Quote:
    """Parse *payload* and convert it into a canonical :class:`Quote`.

    Raises
    ------
    MalformedCarrierResponse
        Payload does not fit the carrier's schema.
    CarrierDeclinedError
        Carrier declined or referred the risk.
    """
    parsed = parse_response(payload, profile)
    _, adapter = _PARSERS[profile.response_schema]
    try:
        return adapter(parsed, profile, ctx)
    except ValidationError as exc:
        # Values parsed but fall outside the canonical ranges.
        raise MalformedCarrierResponse(profile.id, f"quote out of range: {exc.error_count()} error(s)") from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pick(value: float | None, default: float) -> float:
    return default if value is None else value


def _slug(name: str) -> str:
    return "_".join(name.lower().split()) or "discount"


def _parse_credits(carrier_id: str, raw: str) -> tuple[Discount, ...]:
    discounts: list[Discount] = []
    for chunk in filter(None, (c.strip() for c in raw.split(";"))):
        code, sep, amount = chunk.partition(":")
        if not sep:
            raise MalformedCarrierResponse(carrier_id, f"unparseable credit entry {chunk!r}")
        try:
            value = float(amount)
        except ValueError as exc:
            raise MalformedCarrierResponse(carrier_id, f"non-numeric credit {chunk!r}") from exc
        discounts.append(Discount(code=code.strip().lower(), description=code.strip(), amount=value))
    return tuple(discounts)
