"""
End-to-end tests for the quote orchestrator.
"""

import asyncio

import pytest

from coverline.carriers.directory import CarrierDirectory
from coverline.config import Settings
from coverline.errors import QuoteRequestError
from coverline.observability import MetricsRecorder
from coverline.orchestrator import STAGES, build_orchestrator

EXPECTED_ORDER = ["guardian_auto", "reliable_coverage", "premier_ins", "budget_auto"]


@pytest.fixture
def five_carriers(make_profile):
    """Five auto carriers and no fallbacks."""
    return CarrierDirectory([make_profile(f"carrier_{i}", supported_coverage_types=["auto"]) for i in range(1, 6)])


class TestHappyPath:
    """Every carrier answers."""

    @pytest.mark.asyncio
    async def test_auto_submission(self, orchestrator_factory, directory, auto_payload):
        orchestrator, _ = orchestrator_factory(directory)
        result = await orchestrator.orchestrate(auto_payload)

        assert [q.carrier_id for q in result.quotes] == EXPECTED_ORDER
        assert result.issues == ()
        assert result.approved
        assert result.decision.basis == "risk_threshold"
        assert result.assessment.risk_score == pytest.approx(39.8)
        assert [m.carrier_id for m in result.candidates] == EXPECTED_ORDER
        assert result.directory_version == 1

    @pytest.mark.asyncio
    async def test_recommendations(self, orchestrator_factory, directory, auto_request):
        orchestrator, _ = orchestrator_factory(directory)
        result = await orchestrator.orchestrate(auto_request)

        assert result.recommendations == (
            "Best value option: Reliable Coverage Inc with 98% coverage score",
            "Cross-sell opportunity: Homeowners Insurance",
            "Cross-sell opportunity: Umbrella Policy",
            "Consider defensive driving course for additional discounts",
        )

    @pytest.mark.asyncio
    async def test_metrics(self, orchestrator_factory, directory, auto_request):
        orchestrator, _ = orchestrator_factory(directory)
        result = await orchestrator.orchestrate(auto_request)
        metrics = result.metrics

        premiums = [q.premium for q in result.quotes]
        annual = [q.annual_premium for q in result.quotes]
        assert metrics.total_quotes == 4
        assert metrics.average_premium == pytest.approx(sum(premiums) / 4, abs=0.01)
        assert metrics.risk_adjusted_profitability == pytest.approx(sum(annual) / 4 * 0.12 / 10, abs=0.01)
        assert metrics.carrier_diversification == 1.0
        assert metrics.carriers_requested == 4
        assert metrics.carriers_failed == 0
        assert metrics.quotes_rejected == 0
        assert set(metrics.stage_latency_ms) == set(STAGES)
        assert metrics.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_observer_receives_pipeline_events(self, orchestrator_factory, directory, auto_request):
        metrics = MetricsRecorder()
        orchestrator, _ = orchestrator_factory(directory, observer=metrics)
        await orchestrator.orchestrate(auto_request)

        snapshot = metrics.snapshot()
        assert snapshot["runs"] == 1
        assert snapshot["quotes_returned"] == 4
        assert set(snapshot["stages"]) == set(STAGES)
        assert snapshot["carriers"]["premier_ins"]["success_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_ids_are_reproducible(self, orchestrator_factory, directory, auto_request):
        """Orchestrators seeded alike assign identical request and quote ids."""
        first, _ = orchestrator_factory(directory)
        second, _ = orchestrator_factory(directory)
        a = await first.orchestrate(auto_request)
        b = await second.orchestrate(auto_request)

        assert a.request_id == b.request_id
        assert a.request_id.startswith("req_000001_")
        assert [q.id for q in a.quotes] == [q.id for q in b.quotes]


class TestUnderwritingDecline:
    """A declined decision is advisory; quoting still runs."""

    @pytest.mark.asyncio
    async def test_declined_homeowner(self, orchestrator_factory, directory, home_payload):
        orchestrator, _ = orchestrator_factory(directory)
        result = await orchestrator.orchestrate(home_payload)

        assert result.decision.approved is False
        assert result.decision.basis == "threshold_decline"
        assert [(i.type, i.severity) for i in result.issues] == [("underwriting", "high")]
        assert [q.carrier_id for q in result.quotes] == [
            "national_general",
            "carrier-fallback-001",
            "carrier-fallback-002",
        ]
        assert [m.padded for m in result.candidates] == [False, True, True]
        assert result.recommendations == (
            "Best value option: National General with 95% coverage score",
            "Cross-sell opportunity: Auto Insurance",
            "Cross-sell opportunity: Life Insurance",
            "Cross-sell opportunity: High-Value Home Coverage",
        )


class TestPartialFailure:
    """Carrier failures become issues, not errors."""

    @pytest.mark.asyncio
    async def test_two_carriers_fail(self, orchestrator_factory, directory, auto_request):
        orchestrator, _ = orchestrator_factory(
            directory,
            failures={"guardian_auto": "error", "premier_ins": "timeout"},
            gateway_kwargs={"timeout_seconds": 0.05},
        )
        result = await orchestrator.orchestrate(auto_request)

        assert [q.carrier_id for q in result.quotes] == ["reliable_coverage", "budget_auto"]
        assert [(i.type, i.severity) for i in result.issues] == [
            ("system", "low"),
            ("system", "low"),
            ("eligibility", "medium"),
        ]
        assert result.issues[0].affected_carriers == ("guardian_auto",)
        assert result.issues[1].affected_carriers == ("premier_ins",)
        assert result.issues[2].message == "Limited carrier options available"
        assert result.metrics.carriers_failed == 2
        assert result.metrics.total_quotes == 2

    @pytest.mark.asyncio
    async def test_all_five_time_out(self, orchestrator_factory, five_carriers, auto_request):
        """Five timeouts yield no quotes and exactly one critical eligibility issue."""
        failures = {f"carrier_{i}": "timeout" for i in range(1, 6)}
        orchestrator, _ = orchestrator_factory(
            five_carriers, failures=failures, gateway_kwargs={"timeout_seconds": 0.05}
        )
        result = await orchestrator.orchestrate(auto_request)

        assert result.quotes == ()
        critical = [i for i in result.issues if i.severity == "critical"]
        assert len(critical) == 1
        assert critical[0].type == "eligibility"
        assert "No carriers able to provide coverage" in critical[0].message
        assert len(critical[0].affected_carriers) == 5
        assert sum(1 for i in result.issues if i.type == "system") == 5
        assert result.metrics.carriers_failed == 5
        assert result.metrics.average_premium == 0
        assert result.metrics.carrier_diversification == 0

    @pytest.mark.asyncio
    async def test_rejected_quotes_reported(self, orchestrator_factory, directory, auto_payload):
        """Quotes outside the premium band are filtered and raise pricing issues."""
        auto_payload["coverage_amount"] = 60_000
        orchestrator, _ = orchestrator_factory(directory)
        result = await orchestrator.orchestrate(auto_payload)

        assert result.quotes == ()
        assert result.metrics.quotes_rejected == 4
        pricing_issues = [i for i in result.issues if i.type == "pricing"]
        assert len(pricing_issues) == 4
        assert {i.severity for i in pricing_issues} == {"low"}


class TestDeadlinesAndCancellation:
    """Overall deadline and cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_pipeline_deadline(self, orchestrator_factory, five_carriers, auto_request):
        failures = {f"carrier_{i}": "timeout" for i in range(1, 6)}
        orchestrator, _ = orchestrator_factory(
            five_carriers,
            failures=failures,
            pipeline_timeout=0.05,
            gateway_kwargs={"timeout_seconds": 30},
        )
        result = await orchestrator.orchestrate(auto_request)

        assert result.quotes == ()
        assert [(i.type, i.severity) for i in result.issues] == [
            ("system", "high"),
            ("eligibility", "critical"),
        ]

    @pytest.mark.asyncio
    async def test_deadline_keeps_received_quotes(self, orchestrator_factory, five_carriers, auto_request):
        """Quotes that arrived before the deadline survive; only stragglers become an issue."""
        orchestrator, _ = orchestrator_factory(
            five_carriers,
            failures={"carrier_1": "timeout", "carrier_2": "timeout"},
            pipeline_timeout=0.2,
            gateway_kwargs={"timeout_seconds": 30},
        )
        result = await orchestrator.orchestrate(auto_request)

        assert [q.carrier_id for q in result.quotes] == ["carrier_3", "carrier_4", "carrier_5"]
        assert [(i.type, i.severity) for i in result.issues] == [("system", "high")]
        assert result.issues[0].affected_carriers == ("carrier_1", "carrier_2")
        assert "deadline" in result.issues[0].message
        assert result.metrics.carriers_failed == 2
        assert result.metrics.total_quotes == 3

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, orchestrator_factory, five_carriers, auto_request):
        """Cancelling orchestrate cancels in-flight carrier calls and returns nothing."""
        failures = {f"carrier_{i}": "timeout" for i in range(1, 6)}
        orchestrator, network = orchestrator_factory(
            five_carriers, failures=failures, gateway_kwargs={"timeout_seconds": 30}
        )
        task = asyncio.create_task(orchestrator.orchestrate(auto_request))
        await asyncio.sleep(0.05)
        assert len(network.calls) == 5

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestRepeatedRuns:
    """Back-to-back runs on one orchestrator are independent."""

    @pytest.mark.asyncio
    async def test_many_runs_all_quoted(self, auto_payload, clock):
        """The default settings never throttle carriers across runs."""
        config = Settings(carrier_default_api_key="sandbox")
        orchestrator = build_orchestrator(config, clock=clock)
        try:
            results = [await orchestrator.orchestrate(auto_payload) for _ in range(65)]
        finally:
            await orchestrator.aclose()

        assert orchestrator.gateway.rate_limit_max == 0
        for result in results:
            assert [q.carrier_id for q in result.quotes] == EXPECTED_ORDER
            assert result.issues == ()

    @pytest.mark.asyncio
    async def test_exhausted_quota_is_one_system_issue(self, orchestrator_factory, directory, auto_request):
        """With the limiter switched on, an exhausted window is reported once."""
        orchestrator, network = orchestrator_factory(directory, gateway_kwargs={"rate_limit_max": 1})
        first = await orchestrator.orchestrate(auto_request)
        second = await orchestrator.orchestrate(auto_request)

        assert len(first.quotes) == 4
        assert second.quotes == ()
        assert [(i.type, i.severity) for i in second.issues] == [
            ("system", "high"),
            ("eligibility", "critical"),
        ]
        assert "quota exhausted for 4 carrier(s)" in second.issues[0].message
        assert second.issues[0].affected_carriers == tuple(EXPECTED_ORDER)
        assert not [i for i in second.issues if i.severity == "low"]
        assert len(network.calls) == 4


class TestDirectoryReloadDuringRun:
    """A hot reload never changes a run that is already in flight."""

    @pytest.mark.asyncio
    async def test_in_flight_run_keeps_its_snapshot(self, orchestrator_factory, directory, auto_request):
        orchestrator, network = orchestrator_factory(directory, gateway_kwargs={"latency": 0.2})

        task = asyncio.create_task(orchestrator.orchestrate(auto_request))
        await asyncio.sleep(0.05)
        assert len(network.calls) == 4

        directory.reload(carriers=[p for p in directory.snapshot.carriers if p.id != "premier_ins"])
        assert directory.snapshot.version == 2

        result = await task
        assert result.directory_version == 1
        assert [q.carrier_id for q in result.quotes] == EXPECTED_ORDER
        assert result.issues == ()

        later = await orchestrator.orchestrate(auto_request)
        assert later.directory_version == 2
        assert "premier_ins" not in [q.carrier_id for q in later.quotes]


class TestInputAndStageErrors:
    """Invalid input raises; stage errors become issues."""

    @pytest.mark.asyncio
    async def test_invalid_submission(self, orchestrator_factory, directory, auto_payload):
        auto_payload["deductible"] = 300_000
        orchestrator, network = orchestrator_factory(directory)

        with pytest.raises(QuoteRequestError) as exc_info:
            await orchestrator.orchestrate(auto_payload)
        assert exc_info.value.errors
        assert network.calls == []

    @pytest.mark.asyncio
    async def test_missing_customer(self, orchestrator_factory, directory, auto_payload):
        del auto_payload["customer"]
        orchestrator, _ = orchestrator_factory(directory)
        with pytest.raises(QuoteRequestError) as exc_info:
            await orchestrator.orchestrate(auto_payload)
        assert exc_info.value.errors[0]["loc"] == ("customer",)

    @pytest.mark.asyncio
    async def test_non_mapping_submission(self, orchestrator_factory, directory):
        orchestrator, _ = orchestrator_factory(directory)
        with pytest.raises(QuoteRequestError):
            await orchestrator.orchestrate("not a request")

    @pytest.mark.asyncio
    async def test_stage_exception_becomes_issue(self, orchestrator_factory, directory, auto_request, mocker):
        orchestrator, network = orchestrator_factory(directory)
        mocker.patch.object(orchestrator.pricing, "price", side_effect=RuntimeError("rate table offline"))

        result = await orchestrator.orchestrate(auto_request)

        assert result.quotes == ()
        assert result.pricing is None
        assert [(i.type, i.severity) for i in result.issues] == [
            ("system", "critical"),
            ("eligibility", "critical"),
        ]
        assert "price stage" in result.issues[0].message
        assert network.calls == []
        assert "gateway" not in result.metrics.stage_latency_ms

    @pytest.mark.asyncio
    async def test_no_carriers_write_the_line(self, orchestrator_factory, auto_request):
        orchestrator, network = orchestrator_factory(CarrierDirectory([], []))
        result = await orchestrator.orchestrate(auto_request)

        assert result.quotes == ()
        assert result.candidates == ()
        assert [(i.type, i.severity) for i in result.issues] == [("eligibility", "critical")]
        assert network.calls == []


class TestBuildOrchestrator:
    """Wiring from settings."""

    @pytest.mark.asyncio
    async def test_build_from_settings(self, auto_payload, clock):
        config = Settings(id_seed=11, carrier_default_api_key="sandbox")
        orchestrator = build_orchestrator(config, clock=clock)
        try:
            result = await orchestrator.orchestrate(auto_payload)
        finally:
            await orchestrator.aclose()

        assert [q.carrier_id for q in result.quotes] == EXPECTED_ORDER
        assert orchestrator.pipeline_timeout == config.pipeline_timeout_seconds
