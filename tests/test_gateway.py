"""
Tests for the carrier gateway fan-out.
"""

import asyncio

import pytest

from coverline.carriers.gateway import CarrierGateway, build_quote_body
from coverline.carriers.matcher import CarrierMatcher
from coverline.config import Settings
from coverline.ids import IdFactory
from coverline.observability import MetricsRecorder
from coverline.underwriting.pricing import PricingEngine
from coverline.underwriting.profile import RiskProfileBuilder
from coverline.underwriting.risk import RiskScorer

EXPECTED_ORDER = ["guardian_auto", "reliable_coverage", "premier_ins", "budget_auto"]


@pytest.fixture
def prepared(auto_request, directory, clock):
    """Assessment, ranked candidates and reference pricing for the Dallas driver."""
    factors = RiskProfileBuilder(clock=clock).build(auto_request)
    assessment = RiskScorer().score(factors, "auto", as_of=clock().date())
    candidates = CarrierMatcher(directory).match(assessment, "auto")
    pricing = PricingEngine().price(
        assessment.risk_score, "auto", auto_request.coverage_amount, auto_request.deductible, factors
    )
    return assessment, candidates, pricing


async def _fan_out(gateway, prepared, request, directory, **kwargs):
    assessment, candidates, pricing = prepared
    return await gateway.request_quotes(
        candidates, request, pricing, directory.snapshot, assessment, **kwargs
    )


class TestGatewaySuccess:
    """All carriers answer."""

    @pytest.mark.asyncio
    async def test_every_schema_quotes(self, gateway_factory, directory, auto_request, prepared):
        """Standard, flat and legacy carriers all produce canonical quotes in candidate order."""
        gateway, network = gateway_factory(directory)
        result = await _fan_out(gateway, prepared, auto_request, directory, request_id="req_test")

        assert [q.carrier_id for q in result.quotes] == EXPECTED_ORDER
        assert result.failures == ()
        assert result.requested == 4
        assert sorted(network.calls) == sorted(EXPECTED_ORDER)

        reference = prepared[2].final_premium
        by_id = {q.carrier_id: q for q in result.quotes}
        assert by_id["guardian_auto"].premium == pytest.approx(reference * 0.95, abs=0.01)
        assert by_id["reliable_coverage"].premium == pytest.approx(reference * 1.05, abs=0.01)
        assert by_id["premier_ins"].carrier_quote_ref == "PREMIER_INS-req_test"
        assert all(q.coverage_score > 60 for q in result.quotes)

    @pytest.mark.asyncio
    async def test_quote_ids_allocated_in_candidate_order(self, gateway_factory, directory, auto_request, prepared):
        """Quote ids follow candidate order, independent of response timing."""
        gateway, _ = gateway_factory(directory)
        result = await _fan_out(gateway, prepared, auto_request, directory, ids=IdFactory(seed=3))

        expected = IdFactory(seed=3)
        assert [q.id for q in result.quotes] == [expected.new("quote") for _ in range(4)]

    @pytest.mark.asyncio
    async def test_latency_reported_per_carrier(self, gateway_factory, directory, auto_request, prepared):
        """Every carrier gets a duration, on the result and on its event."""
        gateway, _ = gateway_factory(directory, latency=0.02)
        metrics = MetricsRecorder()
        result = await _fan_out(gateway, prepared, auto_request, directory, observer=metrics)

        assert set(result.carrier_latency_ms) == set(EXPECTED_ORDER)
        assert all(ms >= 15 for ms in result.carrier_latency_ms.values())
        assert metrics.carrier_stats("guardian_auto").timed_calls == 1
        assert metrics.snapshot()["carriers"]["guardian_auto"]["avg_response_ms"] >= 15

    @pytest.mark.asyncio
    async def test_events_reach_observer(self, gateway_factory, directory, auto_request, prepared):
        gateway, _ = gateway_factory(directory, failures={"budget_auto": "decline"})
        metrics = MetricsRecorder()
        await _fan_out(gateway, prepared, auto_request, directory, observer=metrics)

        snapshot = metrics.snapshot()
        assert snapshot["carriers"]["guardian_auto"]["success"] == 1
        assert snapshot["carriers"]["budget_auto"]["failure"] == 1
        assert snapshot["carriers"]["budget_auto"]["failures_by_kind"] == {"declined": 1}


class TestGatewayFailureIsolation:
    """One carrier's failure never affects its siblings."""

    @pytest.mark.asyncio
    async def test_partial_failure(self, gateway_factory, directory, auto_request, prepared):
        """With K of N carriers failing, exactly N - K quotes come back."""
        gateway, _ = gateway_factory(directory, failures={"guardian_auto": "error", "budget_auto": "malformed"})
        result = await _fan_out(gateway, prepared, auto_request, directory)

        assert [q.carrier_id for q in result.quotes] == ["reliable_coverage", "premier_ins"]
        assert {f.carrier_id: f.kind for f in result.failures} == {
            "guardian_auto": "http_status",
            "budget_auto": "malformed",
        }
        assert len(result.quotes) + len(result.failures) == result.requested

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "mode,kind",
        [
            ("timeout", "timeout"),
            ("error", "http_status"),
            ("unauthorized", "auth"),
            ("malformed", "malformed"),
            ("non_json", "malformed"),
            ("decline", "declined"),
        ],
    )
    async def test_failure_kinds(self, gateway_factory, directory, auto_request, prepared, mode, kind):
        gateway, _ = gateway_factory(directory, failures={"premier_ins": mode}, timeout_seconds=0.05)
        result = await _fan_out(gateway, prepared, auto_request, directory)

        assert len(result.quotes) == 3
        assert [(f.carrier_id, f.kind) for f in result.failures] == [("premier_ins", kind)]
        assert result.failures[0].carrier_name == "Premier Insurance Group"

    @pytest.mark.asyncio
    async def test_all_time_out(self, gateway_factory, directory, auto_request, prepared):
        failures = {carrier_id: "timeout" for carrier_id in EXPECTED_ORDER}
        gateway, _ = gateway_factory(directory, failures=failures, timeout_seconds=0.05)
        result = await _fan_out(gateway, prepared, auto_request, directory)

        assert result.quotes == ()
        assert [f.kind for f in result.failures] == ["timeout"] * 4

    @pytest.mark.asyncio
    async def test_carrier_missing_from_snapshot(self, gateway_factory, directory, auto_request, prepared):
        assessment, candidates, pricing = prepared
        ghost = candidates[0].model_copy(update={"carrier_id": "ghost"})
        gateway, _ = gateway_factory(directory)
        result = await gateway.request_quotes(
            [ghost] + candidates[1:], auto_request, pricing, directory.snapshot, assessment
        )

        assert len(result.quotes) == 3
        assert result.failures[0].carrier_id == "ghost"
        assert result.failures[0].kind == "error"


class TestGatewayAuthAndLimits:
    """Credentials, rate limiting and retries."""

    @pytest.mark.asyncio
    async def test_missing_api_key(self, gateway_factory, directory, auto_request, prepared):
        """Carriers without a key fail with an auth error and are never called."""
        gateway, network = gateway_factory(directory, default_api_key="", api_keys={"guardian_auto": "k-123"})
        result = await _fan_out(gateway, prepared, auto_request, directory)

        assert [q.carrier_id for q in result.quotes] == ["guardian_auto"]
        assert {f.kind for f in result.failures} == {"auth"}
        assert network.calls == ["guardian_auto"]

    @pytest.mark.asyncio
    async def test_rate_limit(self, gateway_factory, directory, auto_request, prepared):
        gateway, network = gateway_factory(directory, rate_limit_max=1, rate_limit_window=60)
        first = await _fan_out(gateway, prepared, auto_request, directory)
        second = await _fan_out(gateway, prepared, auto_request, directory)

        assert len(first.quotes) == 4
        assert second.quotes == ()
        assert {f.kind for f in second.failures} == {"rate_limited"}
        assert len(network.calls) == 4

    @pytest.mark.asyncio
    async def test_rate_limit_off_by_default(self, gateway_factory, directory, auto_request, prepared):
        gateway, network = gateway_factory(directory)
        assert gateway.rate_limit_max == 0
        for _ in range(3):
            result = await _fan_out(gateway, prepared, auto_request, directory)
            assert len(result.quotes) == 4
        assert len(network.calls) == 12

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, gateway_factory, directory, auto_request, prepared):
        """5xx responses are retried up to retry_attempts; auth errors are not."""
        gateway, network = gateway_factory(
            directory,
            failures={"guardian_auto": "error", "premier_ins": "unauthorized"},
            retry_attempts=2,
        )
        result = await _fan_out(gateway, prepared, auto_request, directory)

        assert network.calls.count("guardian_auto") == 2
        assert network.calls.count("premier_ins") == 1
        assert {f.carrier_id: f.kind for f in result.failures} == {
            "guardian_auto": "http_status",
            "premier_ins": "auth",
        }

    @pytest.mark.asyncio
    async def test_single_attempt_by_default(self, gateway_factory, directory, auto_request, prepared):
        gateway, network = gateway_factory(directory, failures={"guardian_auto": "error"})
        await _fan_out(gateway, prepared, auto_request, directory)
        assert network.calls.count("guardian_auto") == 1


class TestGatewayDeadline:
    """The fan-out deadline keeps whatever arrived in time."""

    @pytest.mark.asyncio
    async def test_stragglers_recorded_as_deadline(self, gateway_factory, directory, auto_request, prepared):
        gateway, _ = gateway_factory(
            directory,
            failures={"guardian_auto": "timeout", "premier_ins": "timeout"},
            timeout_seconds=30,
        )
        result = await _fan_out(gateway, prepared, auto_request, directory, deadline=0.1)

        assert [q.carrier_id for q in result.quotes] == ["reliable_coverage", "budget_auto"]
        assert [(f.carrier_id, f.kind) for f in result.failures] == [
            ("guardian_auto", "deadline"),
            ("premier_ins", "deadline"),
        ]
        assert len(result.quotes) + len(result.failures) == result.requested
        assert set(result.carrier_latency_ms) == set(EXPECTED_ORDER)
        assert result.carrier_latency_ms["guardian_auto"] >= 50

    @pytest.mark.asyncio
    async def test_no_stragglers(self, gateway_factory, directory, auto_request, prepared):
        gateway, _ = gateway_factory(directory)
        result = await _fan_out(gateway, prepared, auto_request, directory, deadline=5)
        assert len(result.quotes) == 4
        assert result.failures == ()


class TestGatewayCancellation:
    """Cancelling the caller cancels in-flight carrier calls."""

    @pytest.mark.asyncio
    async def test_cancel_propagates(self, gateway_factory, directory, auto_request, prepared):
        failures = {carrier_id: "timeout" for carrier_id in EXPECTED_ORDER}
        gateway, network = gateway_factory(directory, failures=failures, timeout_seconds=30)

        task = asyncio.create_task(_fan_out(gateway, prepared, auto_request, directory))
        await asyncio.sleep(0.05)
        assert len(network.calls) == 4

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestGatewayConstruction:
    """Settings wiring and request bodies."""

    @pytest.mark.asyncio
    async def test_from_settings_simulated(self, directory, auto_request, prepared, clock):
        config = Settings(carrier_mode="simulated", carrier_default_api_key="sandbox", carrier_timeout_seconds=2)
        async with CarrierGateway.from_settings(config, directory=directory, clock=clock) as gateway:
            assert gateway.timeout_seconds == 2
            result = await _fan_out(gateway, prepared, auto_request, directory)
        assert len(result.quotes) == 4

    def test_quote_body(self, auto_request, directory, prepared):
        assessment, _, pricing = prepared
        body = build_quote_body(auto_request, pricing, assessment, directory.get("premier_ins"), "req_1")

        assert body["request_id"] == "req_1"
        assert body["carrier_id"] == "premier_ins"
        assert body["state"] == "TX"
        assert body["risk_score"] == assessment.risk_score
        assert body["reference_monthly_premium"] == pricing.final_premium
        assert body["applicant"]["claims_count"] == 0
        assert body["vehicle"]["make"] == "Toyota"
        assert body["property"] is None


class TestCarrierCheck:
    """Single synthetic request used by the carrier test endpoint."""

    @pytest.mark.asyncio
    async def test_healthy_carrier(self, gateway_factory, directory):
        gateway, network = gateway_factory(directory)
        check = await gateway.check_carrier(directory.get("premier_ins"))

        assert check.success is True
        assert check.kind is None
        assert check.test_type == "connectivity"
        assert "carrier responding normally" in check.message
        assert network.calls == ["premier_ins"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode,kind", [("error", "http_status"), ("timeout", "timeout"), ("malformed", "malformed")])
    async def test_failing_carrier(self, gateway_factory, directory, mode, kind):
        gateway, _ = gateway_factory(directory, failures={"premier_ins": mode}, timeout_seconds=0.05)
        check = await gateway.check_carrier(directory.get("premier_ins"), test_type="quote_format")

        assert check.success is False
        assert check.kind == kind
        assert check.message.startswith(f"quote_format test failed ({kind})")

    @pytest.mark.asyncio
    async def test_ignores_rate_limit(self, gateway_factory, directory):
        gateway, network = gateway_factory(directory, rate_limit_max=1)
        profile = directory.get("guardian_auto")
        first = await gateway.check_carrier(profile)
        second = await gateway.check_carrier(profile)

        assert first.success and second.success
        assert network.calls == ["guardian_auto", "guardian_auto"]
