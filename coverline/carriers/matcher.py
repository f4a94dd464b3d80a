"""Carrier matcher — filters and ranks directory carriers for one applicant.

Scoring per surviving carrier:

- commission_rate × 100 — what the placement is worth to the MGA
- acceptance_rate × 50 — how likely the carrier is to bind
- (5 − turnaround_days) × 10 — speed to quote
- 50 − |band_midpoint − risk_score| — how centrally the applicant sits in
  the carrier's appetite band

Survivors are sorted by score (desc), then acceptance probability (desc),
then turnaround (asc), then id.  A sparse list is padded to the candidate
floor with fallback carriers, then with any other primary carrier writing
the line.  The result is capped at the candidate ceiling.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from coverline.carriers.directory import CarrierDirectory, CarrierProfile, DirectorySnapshot
from coverline.underwriting.risk import RiskAssessment, clamp

logger = logging.getLogger("coverline.carriers.matcher")

_MIN_CANDIDATES = 3
_MAX_CANDIDATES = 5

_ACCEPTANCE_FLOOR = 0.10
_ACCEPTANCE_CEILING = 0.95


class CarrierMatch(BaseModel):
    """One ranked candidate carrier.

    Attributes:
        carrier_id: Directory id.
        carrier_name: Display name.
        match_score: Composite score; higher is better.
        acceptance_probability: Estimated bind probability (0.10-0.95).
        commission: Carrier commission rate.
        turnaround_time: Average days to quote.
        fallback: True when the carrier is a directory fallback entry.
        padded: True when the carrier was added by the padding rule rather
            than by matching the appetite band.
    """

    carrier_id: str
    carrier_name: str
    match_score: float
    acceptance_probability: float = Field(..., ge=0, le=1)
    commission: float
    turnaround_time: float
    fallback: bool = False
    padded: bool = False

    model_config = {"frozen": True}


class CarrierMatcher:
    """Ranks :class:`CarrierDirectory` entries for an applicant risk score.

    Parameters
    ----------
    directory:
        Carrier registry; a fresh snapshot is read on every call unless one
        is passed explicitly.
    min_candidates:
        Floor enforced by fallback padding.
    max_candidates:
        Cap on the returned list.
    """

    def __init__(
        self,
        directory: CarrierDirectory,
        min_candidates: int = _MIN_CANDIDATES,
        max_candidates: int = _MAX_CANDIDATES,
    ) -> None:
        if min_candidates > max_candidates:
            raise ValueError("min_candidates cannot exceed max_candidates")
        self.directory = directory
        self.min_candidates = min_candidates
        self.max_candidates = max_candidates

    def match(
        self,
        assessment: RiskAssessment,
        coverage_type: str,
        snapshot: DirectorySnapshot | None = None,
    ) -> list[CarrierMatch]:
        """Return ranked candidates for *coverage_type*.

        Parameters
        ----------
        assessment:
            Scored applicant; only ``risk_score`` is used.
        coverage_type:
            Requested line.
        snapshot:
            Directory snapshot to read.  Defaults to the current one.

        Returns
        -------
        list[CarrierMatch]
            Between ``min(min_candidates, available)`` and
            ``max_candidates`` entries; ranked survivors first, padding
            after them in padding order.
        """
        snap = snapshot or self.directory.snapshot
        coverage_type = coverage_type.lower()
        risk = assessment.risk_score

        survivors = [
            self._to_match(p, risk)
            for p in snap.carriers
            if p.covers_risk(risk) and p.supports(coverage_type)
        ]
        survivors.sort(
            key=lambda m: (-m.match_score, -m.acceptance_probability, m.turnaround_time, m.carrier_id)
        )
        candidates = survivors[: self.max_candidates]

        if len(candidates) < self.min_candidates:
            chosen = {m.carrier_id for m in candidates}
            padding_pool = [p for p in snap.fallbacks if p.supports(coverage_type)]
            padding_pool += snap.supporting(coverage_type)
            for profile in padding_pool:
                if len(candidates) >= self.min_candidates:
                    break
                if profile.id in chosen:
                    continue
                candidates.append(self._to_match(profile, risk, padded=True))
                chosen.add(profile.id)
            logger.info(
                "Padded candidate list for coverage=%s risk=%.1f: %d matched, %d after padding",
                coverage_type,
                risk,
                len(survivors),
                len(candidates),
            )

        logger.debug(
            "Matched %d candidates for coverage=%s risk=%.1f: %s",
            len(candidates),
            coverage_type,
            risk,
            [m.carrier_id for m in candidates],
        )
        return candidates

    @staticmethod
    def _to_match(profile: CarrierProfile, risk: float, padded: bool = False) -> CarrierMatch:
        return CarrierMatch(
            carrier_id=profile.id,
            carrier_name=profile.name,
            match_score=round(match_score(profile, risk), 4),
            acceptance_probability=round(acceptance_probability(profile, risk), 4),
            commission=profile.commission_rate,
            turnaround_time=profile.turnaround_time,
            fallback=profile.fallback,
            padded=padded,
        )


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def match_score(profile: CarrierProfile, risk_score: float) -> float:
    commission_score = profile.commission_rate * 100
    acceptance_score = profile.acceptance_rate * 50
    speed_score = (5 - profile.turnaround_time) * 10
    risk_fit = 50 - abs(profile.risk_midpoint - risk_score)
    return commission_score + acceptance_score + speed_score + risk_fit


def acceptance_probability(profile: CarrierProfile, risk_score: float) -> float:
    """Lower risk and a higher historical acceptance rate both raise the odds."""
    raw = (100 - risk_score) / 100 * profile.acceptance_rate
    return clamp(raw, _ACCEPTANCE_FLOOR, _ACCEPTANCE_CEILING)
