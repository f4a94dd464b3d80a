"""Risk profile builder — derives a normalised :class:`RiskFactors` record from
an inbound :class:`~coverline.schemas.QuoteRequest`.

Location risk is a weighted blend of four deterministic signals keyed by the
applicant's address:

    location_risk = zip_base × 0.4 + crime × 0.3 + disaster × 0.2 + economic × 0.1

clamped to [10, 95].  The zip base comes from a small table of known
catastrophe/crime ZIP codes; crime and economic indices are keyed by the
two-digit ZIP prefix; the disaster index by state exposure to flood,
earthquake, hurricane, tornado and wildfire perils.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable

from coverline.schemas import Address, QuoteRequest
from coverline.underwriting.risk import RiskFactors, clamp

logger = logging.getLogger("coverline.underwriting.profile")

_DEFAULT_AGE = 35
_DEFAULT_ZIP_BASE = 50.0

# Later entries win where a ZIP appears in more than one table.
_ZIP_BASE_RISK: list[tuple[frozenset[int], float]] = [
    (frozenset({90210, 90211, 90212, 33109, 33139, 33154}), 75.0),  # coastal / high value
    (frozenset({73301, 73344, 76706, 76710, 67202, 67203}), 70.0),  # tornado alley
    (frozenset({94102, 94103, 94104, 94105, 90028, 90038}), 68.0),  # earthquake
    (frozenset({70112, 70113, 33101, 33102, 33109, 33139}), 72.0),  # flood prone
    (frozenset({75201, 75202, 30309, 30327, 22101, 22102}), 35.0),  # stable suburban
]

_FLOOD_STATES = frozenset({"FL", "LA", "TX", "NC"})
_EARTHQUAKE_STATES = frozenset({"CA", "AK", "NV", "HI"})
_HURRICANE_STATES = frozenset({"FL", "TX", "LA", "NC", "SC", "GA"})
_TORNADO_STATES = frozenset({"TX", "OK", "KS", "NE", "AR"})
_WILDFIRE_STATES = frozenset({"CA", "OR", "WA", "CO", "MT"})


class RiskProfileBuilder:
    """Builds :class:`RiskFactors` from a :class:`QuoteRequest`.

    Parameters
    ----------
    clock:
        Returns "now"; used for applicant, vehicle and property ages.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build(self, request: QuoteRequest) -> RiskFactors:
        today = self._clock().date()
        address = request.customer.address

        crime = crime_index(address)
        disaster = disaster_index(address)
        economic = economic_index(address)
        location = clamp(
            round(
                zip_base_risk(address) * 0.4
                + crime * 0.3
                + disaster * 0.2
                + economic * 0.1
            ),
            10.0,
            95.0,
        )

        prop = request.property
        property_age = None
        if prop is not None and prop.year_built is not None:
            property_age = today.year - prop.year_built

        vehicle_age = None
        if request.vehicle is not None:
            vehicle_age = today.year - request.vehicle.year

        factors = RiskFactors(
            age=self._applicant_age(request, today),
            credit_score=request.customer.credit_score,
            occupation=request.customer.occupation,
            crime_index=crime,
            disaster_index=disaster,
            economic_index=economic,
            location_risk=location,
            property_value=prop.value if prop is not None else None,
            property_age=property_age,
            property_type=prop.property_type if prop is not None else None,
            vehicle_age=vehicle_age,
            claims=tuple(request.claims),
            driving_record=request.driving_history,
            financial_stability=request.financial_stability,
            social_media_risk=request.social_media_risk,
            weather=request.weather,
        )
        logger.debug(
            "Built risk profile zip=%s state=%s location_risk=%.0f",
            address.zip_code[:5],
            address.state,
            factors.location_risk,
        )
        return factors

    @staticmethod
    def _applicant_age(request: QuoteRequest, today: date) -> int:
        customer = request.customer
        if customer.age is not None:
            return customer.age
        dob = customer.date_of_birth
        if dob is not None:
            return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))
        return _DEFAULT_AGE


# ---------------------------------------------------------------------------
# Location signals
# ---------------------------------------------------------------------------


def _zip_prefix(address: Address) -> int:
    return int(address.zip_code[:2])


def zip_base_risk(address: Address) -> float:
    """Base location risk from the known-ZIP tables (50 when unlisted)."""
    zip5 = int(address.zip_code[:5])
    base = _DEFAULT_ZIP_BASE
    for zips, risk in _ZIP_BASE_RISK:
        if zip5 in zips:
            base = risk
    return base


def crime_index(address: Address) -> float:
    """Crime index 10-90 from overall, violent and property crime rates."""
    prefix = _zip_prefix(address)
    overall = 75 if prefix > 90 else 60 if prefix > 70 else 45
    violent = 20 if prefix > 95 else 15 if prefix > 80 else 8
    property_crime = 35 if prefix > 90 else 25 if prefix > 70 else 15
    return clamp(round(overall * 0.5 + violent * 0.3 + property_crime * 0.2), 10.0, 90.0)


def disaster_index(address: Address) -> float:
    """Disaster index 15-85: the worst single peril exposure for the state."""
    state = address.state
    perils = (
        70 if state in _FLOOD_STATES else 30,
        65 if state in _EARTHQUAKE_STATES else 15,
        75 if state in _HURRICANE_STATES else 10,
        80 if state in _TORNADO_STATES else 20,
        70 if state in _WILDFIRE_STATES else 25,
    )
    return clamp(float(max(perils)), 15.0, 85.0)


def economic_index(address: Address) -> float:
    """Economic index 20-80 from median income and unemployment bands."""
    prefix = _zip_prefix(address)
    median_income = 85_000 if prefix > 90 else 65_000 if prefix > 70 else 45_000
    unemployment = 3.2 if prefix > 90 else 4.8 if prefix > 70 else 6.5
    income_risk = 70 if median_income < 40_000 else 50 if median_income < 60_000 else 30
    unemployment_risk = 70 if unemployment > 7 else 50 if unemployment > 5 else 30
    return clamp(round((income_risk + unemployment_risk) / 2), 20.0, 80.0)
