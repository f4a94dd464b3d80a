"""
Tests for the risk profile builder and location signals.
"""

from datetime import date

import pytest

from coverline.schemas import Address, QuoteRequest
from coverline.underwriting.profile import (
    RiskProfileBuilder,
    crime_index,
    disaster_index,
    economic_index,
    zip_base_risk,
)


class TestLocationSignals:
    """Deterministic location lookups."""

    def test_known_zip_base(self):
        """Listed ZIPs use their table value; later tables win on overlap."""
        assert zip_base_risk(Address(state="TX", zip_code="75201")) == 35
        assert zip_base_risk(Address(state="CA", zip_code="94105")) == 68
        # 33139 is both coastal (75) and flood prone (72).
        assert zip_base_risk(Address(state="FL", zip_code="33139")) == 72
        assert zip_base_risk(Address(state="OH", zip_code="43004")) == 50

    def test_indices(self):
        dallas = Address(state="TX", zip_code="75201")
        assert crime_index(dallas) == 37
        assert disaster_index(dallas) == 80
        assert economic_index(dallas) == 30

    def test_disaster_index_low_exposure_state(self):
        assert disaster_index(Address(state="OH", zip_code="43004")) == 30

    @pytest.mark.parametrize(
        "state,zip_code",
        [("TX", "75201"), ("FL", "33139"), ("CA", "90210"), ("OH", "43004"), ("WA", "98101"), ("NY", "10001")],
    )
    def test_location_risk_bounded(self, clock, auto_payload, state, zip_code):
        """Location risk always lands in [10, 95]."""
        auto_payload["customer"]["address"] = {"state": state, "zip_code": zip_code}
        factors = RiskProfileBuilder(clock=clock).build(QuoteRequest.model_validate(auto_payload))
        assert 10 <= factors.location_risk <= 95


class TestRiskProfileBuilder:
    """Tests for RiskProfileBuilder.build."""

    def test_dallas_profile(self, auto_request, clock):
        factors = RiskProfileBuilder(clock=clock).build(auto_request)

        assert factors.location_risk == 44
        assert factors.age == 40
        assert factors.credit_score == 780
        assert factors.vehicle_age == 4
        assert factors.property_age is None
        assert factors.financial_stability == 8
        assert factors.driving_record.years_licensed == 15

    def test_miami_profile(self, home_request, clock):
        factors = RiskProfileBuilder(clock=clock).build(home_request)

        assert factors.location_risk == 57
        assert factors.property_age == 46
        assert factors.property_value == 650_000
        assert factors.weather.flood_zone == "high"

    def test_age_from_date_of_birth(self, auto_payload, clock):
        """Age is derived from date of birth when not given directly."""
        del auto_payload["customer"]["age"]
        auto_payload["customer"]["date_of_birth"] = date(1980, 6, 15).isoformat()
        factors = RiskProfileBuilder(clock=clock).build(QuoteRequest.model_validate(auto_payload))
        assert factors.age == 45

    def test_default_age(self, auto_payload, clock):
        del auto_payload["customer"]["age"]
        factors = RiskProfileBuilder(clock=clock).build(QuoteRequest.model_validate(auto_payload))
        assert factors.age == 35

    def test_missing_optional_evidence(self, auto_payload, clock):
        """Absent credit, claims and social signals stay empty rather than guessed."""
        del auto_payload["customer"]["credit_score"]
        del auto_payload["driving_history"]
        factors = RiskProfileBuilder(clock=clock).build(QuoteRequest.model_validate(auto_payload))

        assert factors.credit_score is None
        assert factors.driving_record is None
        assert factors.claims == ()
        assert factors.social_media_risk is None
