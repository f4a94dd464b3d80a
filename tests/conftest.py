"""
Pytest configuration and fixtures.
"""

from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio

from coverline.carriers.directory import CarrierDirectory, CarrierProfile
from coverline.carriers.gateway import CarrierGateway
from coverline.carriers.matcher import CarrierMatcher
from coverline.carriers.simulator import SimulatedCarrierNetwork
from coverline.ids import IdFactory
from coverline.observability import MetricsRecorder
from coverline.orchestrator import QuoteOrchestrator
from coverline.schemas import QuoteRequest
from coverline.underwriting.pricing import PricingEngine
from coverline.underwriting.profile import RiskProfileBuilder
from coverline.underwriting.risk import RiskScorer
from coverline.validation.rules import BusinessRuleValidator

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Clock pinned to 2026-03-01 12:00 UTC."""
    return lambda: FIXED_NOW


@pytest.fixture
def ids():
    return IdFactory(seed=42)


@pytest.fixture
def directory():
    """Fresh copy of the built-in carrier directory."""
    return CarrierDirectory.default()


@pytest.fixture
def make_profile():
    """Factory for carrier profiles writing every line in every state."""

    def _make(carrier_id, **overrides):
        data = {
            "id": carrier_id,
            "name": f"{carrier_id.replace('_', ' ').title()}",
            "min_risk_score": 0,
            "max_risk_score": 100,
            "commission_rate": 0.10,
            "accepted_states": ["ALL"],
            "supported_coverage_types": ["auto", "home", "homeowners", "renters", "life"],
            "turnaround_time": 2,
            "acceptance_rate": 0.8,
            "response_schema": "standard",
        }
        data.update(overrides)
        return CarrierProfile.model_validate(data)

    return _make


@pytest.fixture
def auto_payload():
    """Low-risk Dallas driver; scores 39.8 and prices at about $104/month."""
    return {
        "customer": {
            "first_name": "Dana",
            "last_name": "Whitfield",
            "email": "dana.whitfield@example.com",
            "age": 40,
            "credit_score": 780,
            "address": {"street": "1200 Main St", "city": "Dallas", "state": "tx", "zip_code": "75201"},
        },
        "coverage_type": "auto",
        "coverage_amount": 250000,
        "deductible": 500,
        "vehicle": {"year": 2022, "make": "Toyota", "model": "Camry"},
        "driving_history": {"years_licensed": 15},
        "financial_stability": 8,
    }


@pytest.fixture
def auto_request(auto_payload):
    return QuoteRequest.model_validate(auto_payload)


@pytest.fixture
def home_payload():
    """Miami homeowner with hurricane exposure."""
    return {
        "customer": {
            "first_name": "Luis",
            "last_name": "Ortega",
            "age": 62,
            "credit_score": 700,
            "address": {"city": "Miami", "state": "FL", "zip_code": "33139"},
        },
        "coverage_type": "homeowners",
        "coverage_amount": 400000,
        "deductible": 2500,
        "property": {"year_built": 1980, "value": 650000, "has_pool": True},
        "weather": {"hurricane_risk": 6, "flood_zone": "high"},
    }


@pytest.fixture
def home_request(home_payload):
    return QuoteRequest.model_validate(home_payload)


@pytest_asyncio.fixture
async def gateway_factory(clock):
    """Build gateways wired to a :class:`SimulatedCarrierNetwork`.

    Returns ``(gateway, network)``; clients are closed at teardown.
    """
    clients = []

    def _make(directory, failures=None, latency=0.0, timeout_delay=60.0, **kwargs):
        network = SimulatedCarrierNetwork(
            directory, failures=failures, latency=latency, timeout_delay=timeout_delay
        )
        client = httpx.AsyncClient(transport=network.transport())
        clients.append(client)
        kwargs.setdefault("default_api_key", "test-token")
        kwargs.setdefault("clock", clock)
        return CarrierGateway(client, **kwargs), network

    yield _make

    for client in clients:
        await client.aclose()


@pytest.fixture
def orchestrator_factory(gateway_factory, clock):
    """Build a fully wired :class:`QuoteOrchestrator` over *directory*."""

    def _make(directory, failures=None, pipeline_timeout=15.0, gateway_kwargs=None, observer=None):
        gateway, network = gateway_factory(directory, failures=failures, **(gateway_kwargs or {}))
        orchestrator = QuoteOrchestrator(
            scorer=RiskScorer(clock=clock),
            profile_builder=RiskProfileBuilder(clock=clock),
            matcher=CarrierMatcher(directory),
            pricing=PricingEngine(),
            gateway=gateway,
            validator=BusinessRuleValidator(),
            directory=directory,
            observer=observer or MetricsRecorder(),
            ids=IdFactory(seed=7),
            clock=clock,
            pipeline_timeout=pipeline_timeout,
        )
        return orchestrator, network

    return _make
