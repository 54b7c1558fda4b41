"""
commonsgov/protocol/reputation.py

Reputation multipliers applied on top of capped participation weight.

A multiplier scales a contributor's capped weight AFTER the per-entity cap;
it is never folded into the decay/quadratic/cap formula. Multipliers are
versioned: every change appends a new entry and reads pick the latest entry
effective at the requested instant.

Multiplier Ranges:
    1.0:       Full weight (default for every contributor)
    0.0 - 1.0: Reduced weight (e.g. flagged behavior under review)
    0.0:       Weight suspended

Usage:
    from commonsgov.protocol.reputation import ReputationTable

    reputation = ReputationTable(store)
    reputation.set_multiplier("pool-a", 0.5, reason="stat mismatch")
    effective = reputation.apply("pool-a", capped_weight=2.0)   # 1.0
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .storage import GovernanceStore, TABLE_MULTIPLIERS

logger = logging.getLogger("commonsgov.protocol.reputation")

# Multiplier bounds
MULTIPLIER_MIN = 0.0
MULTIPLIER_MAX = 1.0
DEFAULT_MULTIPLIER = 1.0


@dataclass(frozen=True)
class MultiplierEntry:
    """One version of a contributor's multiplier."""
    contributor_id: str
    multiplier: float
    version: int
    effective_at: int
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "contributor_id": self.contributor_id,
            "multiplier": self.multiplier,
            "version": self.version,
            "effective_at": self.effective_at,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MultiplierEntry":
        return cls(
            contributor_id=data["contributor_id"],
            multiplier=float(data["multiplier"]),
            version=int(data["version"]),
            effective_at=int(data["effective_at"]),
            reason=data.get("reason", ""),
        )


class ReputationTable:
    """Versioned multiplier table keyed by contributor_id."""

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store or GovernanceStore.in_memory()
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.Lock()
        self._entries: Dict[str, List[MultiplierEntry]] = {}

        for entry in self._store.load(TABLE_MULTIPLIERS, MultiplierEntry.from_dict):
            self._entries.setdefault(entry.contributor_id, []).append(entry)
        for history in self._entries.values():
            history.sort(key=lambda e: (e.effective_at, e.version))

    def set_multiplier(
        self,
        contributor_id: str,
        multiplier: float,
        effective_at: Optional[int] = None,
        reason: str = "",
    ) -> MultiplierEntry:
        """
        Append a new multiplier version.

        Values outside [0, 1] are clamped.

        Returns:
            The stored MultiplierEntry
        """
        clamped = max(MULTIPLIER_MIN, min(MULTIPLIER_MAX, float(multiplier)))
        if clamped != multiplier:
            logger.warning(
                f"Clamped multiplier for {contributor_id}: {multiplier} -> {clamped}"
            )

        with self._lock:
            history = self._entries.setdefault(contributor_id, [])
            version = max((e.version for e in history), default=0) + 1
            entry = MultiplierEntry(
                contributor_id=contributor_id,
                multiplier=clamped,
                version=version,
                effective_at=self._clock() if effective_at is None else effective_at,
                reason=reason,
            )
            self._store.append(TABLE_MULTIPLIERS, entry)
            history.append(entry)
            history.sort(key=lambda e: (e.effective_at, e.version))

        logger.info(
            f"Multiplier for {contributor_id} set to {clamped} (v{version})"
            + (f": {reason}" if reason else "")
        )
        return entry

    def get_multiplier(self, contributor_id: str, at: Optional[int] = None) -> float:
        """Latest multiplier effective at `at` (1.0 if none)."""
        with self._lock:
            history = list(self._entries.get(contributor_id, []))
        for entry in reversed(history):
            if at is None or entry.effective_at <= at:
                return entry.multiplier
        return DEFAULT_MULTIPLIER

    def apply(self, contributor_id: str, capped_weight: float, at: Optional[int] = None) -> float:
        return capped_weight * self.get_multiplier(contributor_id, at)

    def history(self, contributor_id: str) -> List[MultiplierEntry]:
        with self._lock:
            return list(self._entries.get(contributor_id, []))
