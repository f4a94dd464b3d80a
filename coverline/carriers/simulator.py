"""Simulated carrier network for sandbox runs and tests.

:class:`SimulatedCarrierNetwork` is an ``httpx.MockTransport`` handler that
answers ``POST /{carrier_id}/v1/quotes`` for every carrier in a
:class:`CarrierDirectory`, in that carrier's own response schema.

Pricing is deterministic: the carrier's monthly premium is the pipeline's
reference premium times the carrier's ``market_adjustment``.  Coverage score
falls as the applicant moves away from the centre of the carrier's appetite
band and as the deductible grows.

Failure modes can be injected per carrier::

    network = SimulatedCarrierNetwork(directory, failures={"guardian_auto": "timeout"})
    client = httpx.AsyncClient(transport=network.transport())
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Literal

import httpx

from coverline.carriers.directory import CarrierDirectory, CarrierProfile
from coverline.underwriting.risk import clamp

logger = logging.getLogger("coverline.carriers.simulator")

FailureMode = Literal["timeout", "error", "unauthorized", "malformed", "non_json", "decline"]

_SIMULATED_LATENCY = 0.01
_TIMEOUT_DELAY = 60.0


class SimulatedCarrierNetwork:
    """Deterministic in-process carrier endpoints.

    Parameters
    ----------
    directory:
        Carriers to answer for; read on every request so reloads apply.
    failures:
        ``carrier_id → failure mode`` for carriers that should misbehave.
    latency:
        Seconds every response is delayed by.
    timeout_delay:
        Seconds a ``"timeout"`` carrier hangs before answering.
    """

    def __init__(
        self,
        directory: CarrierDirectory,
        failures: dict[str, FailureMode] | None = None,
        latency: float = _SIMULATED_LATENCY,
        timeout_delay: float = _TIMEOUT_DELAY,
    ) -> None:
        self.directory = directory
        self.failures: dict[str, FailureMode] = dict(failures or {})
        self.latency = latency
        self.timeout_delay = timeout_delay
        self.calls: list[str] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        carrier_id = request.url.path.strip("/").split("/")[0]
        self.calls.append(carrier_id)
        profile = self.directory.get(carrier_id)
        if profile is None:
            return httpx.Response(404, json={"error": f"unknown carrier {carrier_id}"})

        if not request.headers.get("Authorization", "").startswith("Bearer "):
            return httpx.Response(401, json={"error": "missing bearer token"})

        mode = self.failures.get(carrier_id)
        if mode == "timeout":
            await asyncio.sleep(self.timeout_delay)
        elif self.latency:
            await asyncio.sleep(self.latency)

        if mode == "error":
            return httpx.Response(503, json={"error": "rating service unavailable"})
        if mode == "unauthorized":
            return httpx.Response(401, json={"error": "token rejected"})
        if mode == "non_json":
            return httpx.Response(200, text="<html>maintenance</html>")
        if mode == "malformed":
            return httpx.Response(200, json={"unexpected": True, "carrier": carrier_id})

        body = json.loads(request.content or b"{}")
        return httpx.Response(200, json=self._quote_payload(profile, body, decline=mode == "decline"))

    # ------------------------------------------------------------------
    # Payload builders
    # ------------------------------------------------------------------

    def _quote_payload(self, profile: CarrierProfile, body: dict[str, Any], decline: bool) -> dict[str, Any]:
        raw_risk = body.get("risk_score")
        risk = 50.0 if raw_risk is None else float(raw_risk)
        coverage_amount = float(body.get("coverage_amount") or 1.0)
        deductible = float(body.get("deductible") or 0.0)
        reference = float(body.get("reference_monthly_premium") or 0.0)
        monthly = round(reference * profile.market_adjustment, 2)
        coverage_score = round(
            clamp(
                100 - abs(profile.risk_midpoint - risk) * 0.5 - (deductible / coverage_amount) * 100,
                40.0,
                98.0,
            ),
            1,
        )
        quote_ref = f"{profile.id.upper()}-{body.get('request_id', 'SIM')}"
        discount = round(monthly * 0.05, 2)

        if profile.response_schema == "flat":
            return {
                "quote_id": quote_ref,
                "status": "declined" if decline else "quoted",
                "monthly_premium": monthly,
                "coverage_score": coverage_score,
                "deductible": deductible,
                "discounts": [{"name": "Paperless Billing", "amount": discount}],
                "confidence": 0.85,
                "reason": "Outside underwriting appetite" if decline else None,
                "carrier_internal_tier": "B2",
            }
        if profile.response_schema == "legacy":
            return {
                "QuoteNumber": quote_ref,
                "Result": "DECLINE" if decline else "OK",
                "AnnualPremium": f"{monthly * 12:.2f}",
                "AdequacyPct": coverage_score,
                "Deductible": deductible,
                "Credits": f"SAFE:{discount:.2f}",
                "ExpiryDays": 30,
                "Message": "Risk declined by rating engine" if decline else "",
            }
        return {
            "quoteId": quote_ref,
            "status": "declined" if decline else "quoted",
            "premium": {
                "totalPremium": round(monthly * 12, 2),
                "monthlyPremium": monthly,
                "taxes": round(monthly * 12 * 0.03, 2),
            },
            "coverage": {"score": coverage_score, "deductible": deductible},
            "discounts": [
                {
                    "code": "MULTI_POLICY",
                    "description": "Multi-policy discount",
                    "amount": discount,
                    "percentage": 5.0,
                    "applied": True,
                }
            ],
            "underwritingInfo": {"confidence": 0.9, "riskScore": risk},
            "message": "Declined: outside appetite" if decline else None,
        }
