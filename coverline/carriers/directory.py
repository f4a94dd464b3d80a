"""Carrier directory — the registry of carrier partners and their appetite.

Profiles are plain data loaded at startup from a JSON file (see
``default_directory.json`` for the layout)::

    {"carriers": [{...}, ...], "fallbacks": [{...}, ...]}

Entries under ``fallbacks`` are real, quotable carriers (assigned-risk pools,
surplus-lines partners) that the matcher only uses to pad a sparse candidate
list.

All reads go through an immutable :class:`DirectorySnapshot`.  :meth:`reload`
builds a new snapshot and swaps the reference in one assignment, so a
pipeline run that captured the previous snapshot keeps seeing it unchanged.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from coverline.errors import DirectoryError

logger = logging.getLogger("coverline.carriers.directory")

DEFAULT_DIRECTORY_PATH = Path(__file__).resolve().parent / "default_directory.json"

_ALL_STATES = "ALL"
_QUOTE_URL_TEMPLATE = "https://carriers.coverline.test/{carrier_id}/v1/quotes"

ResponseSchema = Literal["standard", "flat", "legacy"]


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CarrierProfile(BaseModel):
    """Reference data for one carrier partner.

    Attributes
    ----------
    id:
        Directory key, also the path segment of the carrier's quote URL.
    name:
        Display name.
    min_risk_score, max_risk_score:
        Inclusive risk-score appetite band.
    commission_rate:
        Commission paid to the MGA as a fraction of premium.
    accepted_states:
        Two-letter states the carrier is licensed in; ``"ALL"`` matches any.
    supported_coverage_types:
        Lines the carrier writes.
    turnaround_time:
        Average days to a bindable quote.
    acceptance_rate:
        Historical share of submissions the carrier accepts (0-1).
    market_adjustment:
        Carrier's pricing position relative to the reference premium.
    quote_url:
        Quote endpoint; derived from ``id`` when omitted.
    response_schema:
        Which response adapter parses this carrier's payloads.
    timeout_seconds:
        Per-carrier timeout override.
    special_programs:
        Named programs the carrier offers.
    fallback:
        True for carriers used only to pad sparse candidate lists.
    """

    id: str = Field(..., min_length=1)
    name: str
    min_risk_score: float = Field(default=0.0, ge=0, le=100)
    max_risk_score: float = Field(default=100.0, ge=0, le=100)
    commission_rate: float = Field(..., ge=0, le=1)
    accepted_states: tuple[str, ...] = (_ALL_STATES,)
    supported_coverage_types: tuple[str, ...] = ()
    turnaround_time: float = Field(default=3.0, ge=0)
    acceptance_rate: float = Field(default=0.8, ge=0, le=1)
    market_adjustment: float = Field(default=1.0, gt=0)
    quote_url: str = Field(default="", validate_default=True)
    response_schema: ResponseSchema = "standard"
    timeout_seconds: float | None = Field(default=None, gt=0)
    special_programs: tuple[str, ...] = ()
    fallback: bool = False

    model_config = {"frozen": True}

    @field_validator("accepted_states", mode="before")
    @classmethod
    def _upper_states(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(str(s).strip().upper() for s in value)
        return value

    @field_validator("supported_coverage_types", mode="before")
    @classmethod
    def _lower_types(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return tuple(str(s).strip().lower() for s in value)
        return value

    @field_validator("quote_url")
    @classmethod
    def _default_url(cls, value: str, info: ValidationInfo) -> str:
        if value or "id" not in info.data:
            return value
        return _QUOTE_URL_TEMPLATE.format(carrier_id=info.data["id"])

    @model_validator(mode="after")
    def _check_band(self) -> "CarrierProfile":
        if self.min_risk_score > self.max_risk_score:
            raise ValueError(
                f"min_risk_score {self.min_risk_score} exceeds max_risk_score {self.max_risk_score}"
            )
        return self

    @property
    def risk_midpoint(self) -> float:
        return (self.min_risk_score + self.max_risk_score) / 2

    def covers_risk(self, risk_score: float) -> bool:
        return self.min_risk_score <= risk_score <= self.max_risk_score

    def supports(self, coverage_type: str) -> bool:
        return coverage_type.lower() in self.supported_coverage_types

    def licensed_in(self, state: str) -> bool:
        return _ALL_STATES in self.accepted_states or state.upper() in self.accepted_states


class DirectorySnapshot(BaseModel):
    """Immutable view of the directory at one point in time."""

    version: int
    loaded_at: datetime
    source: str
    carriers: tuple[CarrierProfile, ...] = ()
    fallbacks: tuple[CarrierProfile, ...] = ()

    model_config = {"frozen": True}

    def all(self) -> tuple[CarrierProfile, ...]:
        return self.carriers + self.fallbacks

    def get(self, carrier_id: str) -> CarrierProfile | None:
        for profile in self.all():
            if profile.id == carrier_id:
                return profile
        return None

    def supporting(self, coverage_type: str) -> list[CarrierProfile]:
        return [p for p in self.carriers if p.supports(coverage_type)]

    def is_licensed(self, carrier_id: str, state: str) -> bool:
        """Unknown carriers are never licensed."""
        profile = self.get(carrier_id)
        return profile is not None and profile.licensed_in(state)


# ---------------------------------------------------------------------------
# CarrierDirectory
# ---------------------------------------------------------------------------


class CarrierDirectory:
    """Hot-reloadable carrier registry.

    Parameters
    ----------
    carriers:
        Primary carrier profiles.
    fallbacks:
        Fallback carrier profiles, in padding order.
    source:
        File the profiles were read from; :meth:`reload` re-reads it.
    """

    def __init__(
        self,
        carriers: Iterable[CarrierProfile] = (),
        fallbacks: Iterable[CarrierProfile] = (),
        source: str | Path | None = None,
    ) -> None:
        self._source = Path(source) if source else None
        self._version = 0
        self._snapshot = self._build(carriers, fallbacks)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: str | Path) -> "CarrierDirectory":
        carriers, fallbacks = _read_directory_file(Path(path))
        return cls(carriers, fallbacks, source=path)

    @classmethod
    def default(cls) -> "CarrierDirectory":
        return cls.from_file(DEFAULT_DIRECTORY_PATH)

    @classmethod
    def from_settings(cls, config: Any) -> "CarrierDirectory":
        path = getattr(config, "carrier_directory_path", "")
        return cls.from_file(path) if path else cls.default()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> DirectorySnapshot:
        return self._snapshot

    def get(self, carrier_id: str) -> CarrierProfile | None:
        return self._snapshot.get(carrier_id)

    def is_licensed(self, carrier_id: str, state: str) -> bool:
        return self._snapshot.is_licensed(carrier_id, state)

    def __len__(self) -> int:
        return len(self._snapshot.carriers)

    # ------------------------------------------------------------------
    # Reload
    # ------------------------------------------------------------------

    def reload(
        self,
        carriers: Iterable[CarrierProfile] | None = None,
        fallbacks: Iterable[CarrierProfile] | None = None,
    ) -> DirectorySnapshot:
        """Swap in a new snapshot.

        With no arguments the source file is re-read.  Explicit *carriers*
        replace the primaries; *fallbacks* defaults to the current set.

        Raises
        ------
        DirectoryError
            If there is nothing to reload from or the file is invalid.  The
            current snapshot is left in place.
        """
        if carriers is None:
            if self._source is None:
                raise DirectoryError("Directory has no source file to reload from")
            carriers, file_fallbacks = _read_directory_file(self._source)
            if fallbacks is None:
                fallbacks = file_fallbacks
        if fallbacks is None:
            fallbacks = self._snapshot.fallbacks

        snapshot = self._build(carriers, fallbacks)
        self._snapshot = snapshot
        logger.info(
            "Carrier directory reloaded: version=%d carriers=%d fallbacks=%d",
            snapshot.version,
            len(snapshot.carriers),
            len(snapshot.fallbacks),
        )
        return snapshot

    def _build(
        self,
        carriers: Iterable[CarrierProfile],
        fallbacks: Iterable[CarrierProfile],
    ) -> DirectorySnapshot:
        primary = tuple(p.model_copy(update={"fallback": False}) for p in carriers)
        padding = tuple(p.model_copy(update={"fallback": True}) for p in fallbacks)
        seen: set[str] = set()
        for profile in primary + padding:
            if profile.id in seen:
                raise DirectoryError(f"Duplicate carrier id in directory: {profile.id}")
            seen.add(profile.id)
        self._version += 1
        return DirectorySnapshot(
            version=self._version,
            loaded_at=datetime.now(timezone.utc),
            source=str(self._source) if self._source else "<memory>",
            carriers=primary,
            fallbacks=padding,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_directory_file(path: Path) -> tuple[list[CarrierProfile], list[CarrierProfile]]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DirectoryError(f"Cannot read carrier directory {path}: {exc}") from exc

    if isinstance(raw, list):
        raw = {"carriers": raw}
    try:
        carriers = [CarrierProfile.model_validate(item) for item in raw.get("carriers", [])]
        fallbacks = [CarrierProfile.model_validate(item) for item in raw.get("fallbacks", [])]
    except ValidationError as exc:
        raise DirectoryError(f"Invalid carrier profile in {path}: {exc}") from exc

    logger.debug("Read %d carriers and %d fallbacks from %s", len(carriers), len(fallbacks), path)
    return carriers, fallbacks
