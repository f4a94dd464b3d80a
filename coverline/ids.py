"""Identifier generation for pipeline runs, quotes and issues.

Ids combine a monotonically increasing counter with a UUID drawn from a
seedable PRNG, so a factory built with a fixed seed yields an exactly
reproducible sequence::

    ids = IdFactory(seed=7)
    ids.new("quote")   # 'quote_000001_<hex>'
"""

from __future__ import annotations

import itertools
import random
import uuid


class IdFactory:
    """Counter + seeded-UUID id source.

    Parameters
    ----------
    seed:
        Seed for the internal PRNG.  ``None`` seeds from system entropy.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)
        self._counter = itertools.count(1)

    def uuid(self) -> uuid.UUID:
        """Return a version-4 UUID drawn from the factory's PRNG."""
        return uuid.UUID(int=self._rng.getrandbits(128), version=4)

    def new(self, prefix: str) -> str:
        """Return the next id for *prefix* (``<prefix>_<seq>_<hex12>``)."""
        seq = next(self._counter)
        return f"{prefix}_{seq:06d}_{self.uuid().hex[:12]}"
