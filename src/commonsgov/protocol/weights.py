"""
commonsgov/protocol/weights.py

Weight Calculator - turns contribution history into capped, decayed,
quadratic voting weight.

Per-contribution pipeline (evaluated at one instant `now`):
1. Cooling-off: a single contribution >= 0.1 BTC counts for nothing
   until it is 30 days old
2. Decay: effective = amount * max(1 - age/decay_period, min_retention)
3. Sum effective amounts per component, then across components

Per-contributor:
- raw_weight = sqrt(decayed_total_btc / normalization_factor)
  (ONE square root over the combined total, never a sum of per-type roots)
- Qualified contributors get at least MINIMUM_WEIGHT; unqualified get 0

Per-run (two passes over one ledger snapshot):
- Pass 1: raw weight for every contributor, summed into system_total_weight
- Pass 2: capped_weight = min(raw_weight, system_total_weight * cap_percentage)

Per-proposal zaps:
- zap_weight = sqrt(amount_btc / normalization_factor), no decay, no cap
  per zap (the aggregator caps each voter's summed zap weight)

Results are published as immutable SnapshotSets versioned by computed_at.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..config import GovernanceConfig, SATS_PER_BTC, SECONDS_PER_DAY
from .ledger import Contribution, LedgerSnapshot
from .storage import GovernanceStore, TABLE_WEIGHT_SNAPSHOTS

logger = logging.getLogger("commonsgov.protocol.weights")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def quadratic_weight(amount_btc: float, normalization_factor: float = 1.0) -> float:
    """Square-root weighting; non-positive amounts weigh nothing."""
    if amount_btc <= 0:
        return 0.0
    return math.sqrt(amount_btc / normalization_factor)


def age_in_days(occurred_at: int, now: int) -> float:
    return max(0, now - occurred_at) / SECONDS_PER_DAY


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class WeightSnapshot:
    """Cached weight for one contributor from one computation run."""
    contributor_id: str
    components: Dict[str, float]      # component -> decayed sats
    raw_total_sats: int               # Undecayed sum of counted contributions
    raw_weight: float
    capped_weight: float
    system_total_weight_at_computation: float
    computed_at: int
    qualified: bool = True
    over_cap_since: Optional[int] = None

    @property
    def decayed_total_sats(self) -> float:
        return sum(self.components.values())

    @property
    def decayed_total_btc(self) -> float:
        return self.decayed_total_sats / SATS_PER_BTC

    def to_dict(self) -> dict:
        return {
            "kind": "snapshot",
            "contributor_id": self.contributor_id,
            "components": dict(self.components),
            "raw_total_sats": self.raw_total_sats,
            "raw_weight": self.raw_weight,
            "capped_weight": self.capped_weight,
            "system_total_weight_at_computation": self.system_total_weight_at_computation,
            "computed_at": self.computed_at,
            "qualified": self.qualified,
            "over_cap_since": self.over_cap_since,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WeightSnapshot":
        return cls(
            contributor_id=data["contributor_id"],
            components={k: float(v) for k, v in data.get("components", {}).items()},
            raw_total_sats=int(data.get("raw_total_sats", 0)),
            raw_weight=float(data["raw_weight"]),
            capped_weight=float(data["capped_weight"]),
            system_total_weight_at_computation=float(data["system_total_weight_at_computation"]),
            computed_at=int(data["computed_at"]),
            qualified=bool(data.get("qualified", True)),
            over_cap_since=data.get("over_cap_since"),
        )


@dataclass(frozen=True)
class SnapshotSet:
    """All contributor snapshots produced by one two-pass run."""
    computed_at: int
    system_total_weight: float
    snapshots: Dict[str, WeightSnapshot] = field(default_factory=dict)

    def get(self, contributor_id: str) -> Optional[WeightSnapshot]:
        return self.snapshots.get(contributor_id)

    def capped_weight(self, contributor_id: str) -> float:
        """Capped weight, 0.0 for contributors absent from the run."""
        snapshot = self.snapshots.get(contributor_id)
        return snapshot.capped_weight if snapshot else 0.0

    def header(self) -> dict:
        return {
            "kind": "run",
            "computed_at": self.computed_at,
            "system_total_weight": self.system_total_weight,
            "contributors": len(self.snapshots),
        }


@dataclass
class ContributorBreakdown:
    """Per-component view of one contributor's weight (for reporting)."""
    contributor_id: str
    evaluated_at: int
    components: Dict[str, float] = field(default_factory=dict)
    cooling_off_sats: int = 0         # Amount still waiting out cooling-off
    qualified: bool = False
    raw_weight: float = 0.0

    def to_dict(self) -> dict:
        return {
            "contributor_id": self.contributor_id,
            "evaluated_at": self.evaluated_at,
            "components": dict(self.components),
            "cooling_off_sats": self.cooling_off_sats,
            "qualified": self.qualified,
            "raw_weight": self.raw_weight,
        }


# ============================================================================
# WEIGHT CALCULATOR
# ============================================================================

class WeightCalculator:
    """
    Pure weight functions plus the two-pass batch computation.

    Holds no mutable state; every method is a function of its arguments
    and the configuration.
    """

    def __init__(self, config: Optional[GovernanceConfig] = None):
        self.config = config or GovernanceConfig()

    # ------------------------------------------------------------------
    # Per-contribution rules
    # ------------------------------------------------------------------

    def decay_factor(self, age_days: float, decay_period_days: float) -> float:
        """Linear decay down to the retention floor."""
        return max(1.0 - age_days / decay_period_days, self.config.min_retention)

    def is_cooling_off(self, amount_sats: int, age_days: float) -> bool:
        """True if a large contribution is still inside its cooling-off period."""
        return (
            amount_sats >= self.config.cooling_off_threshold_sats
            and age_days < self.config.cooling_off_period_days
        )

    def effective_amount(self, contribution: Contribution, now: int) -> float:
        """
        Decayed value of one contribution in sats at `now`.

        Unknown types and contributions from the future count for nothing.
        """
        spec = self.config.get_contribution_type(contribution.contribution_type)
        if spec is None or contribution.occurred_at > now:
            return 0.0

        age_days = age_in_days(contribution.occurred_at, now)
        if spec.cooling_off and self.is_cooling_off(contribution.amount_sats, age_days):
            return 0.0

        return contribution.amount_sats * self.decay_factor(age_days, spec.decay_period_days)

    def decayed_components(
        self,
        contributions: Iterable[Contribution],
        now: int,
    ) -> Dict[str, float]:
        """Sum effective amounts per snapshot component."""
        components = {name: 0.0 for name in self.config.components}
        for contribution in contributions:
            spec = self.config.get_contribution_type(contribution.contribution_type)
            if spec is None:
                continue
            components[spec.component] = (
                components.get(spec.component, 0.0) + self.effective_amount(contribution, now)
            )
        return components

    def is_qualified(self, contributions: Iterable[Contribution], now: int) -> bool:
        """
        Qualification over the rolling window: enough BTC OR enough
        distinct verified contributions.

        Contributions still inside their cooling-off period count toward
        neither the amount nor the count.
        """
        window_start = now - self.config.qualification_window_days * SECONDS_PER_DAY
        total = 0
        ids = set()
        for c in contributions:
            if not c.verified or c.occurred_at < window_start or c.occurred_at > now:
                continue
            spec = self.config.get_contribution_type(c.contribution_type)
            if spec is None:
                continue
            if spec.cooling_off and self.is_cooling_off(
                c.amount_sats, age_in_days(c.occurred_at, now)
            ):
                continue
            total += c.amount_sats
            ids.add(c.contribution_id or c.proof_reference)

        return (
            total >= self.config.qualification_min_total_sats
            or len(ids) >= self.config.qualification_min_contributions
        )

    # ------------------------------------------------------------------
    # Per-contributor weight
    # ------------------------------------------------------------------

    def participation_weight(self, decayed_total_sats: float, qualified: bool = True) -> float:
        """
        Quadratic weight over the combined decayed total.

        Args:
            decayed_total_sats: Sum of decayed amounts across ALL types
            qualified: Whether the contributor passed qualification

        Returns:
            raw_weight (0.0 if unqualified, at least minimum_weight otherwise)
        """
        if not qualified:
            return 0.0
        weight = quadratic_weight(
            decayed_total_sats / SATS_PER_BTC,
            self.config.normalization_factor_btc,
        )
        return max(weight, self.config.minimum_weight)

    def raw_weight_for(
        self,
        contributions: Iterable[Contribution],
        now: int,
    ) -> Tuple[Dict[str, float], int, float, bool]:
        """
        Pass-1 computation for one contributor.

        Returns:
            (components, raw_total_sats, raw_weight, qualified)
        """
        contributions = list(contributions)
        components = self.decayed_components(contributions, now)
        qualified = self.is_qualified(contributions, now)
        raw_total = sum(
            c.amount_sats for c in contributions
            if self.effective_amount(c, now) > 0
        )
        raw_weight = self.participation_weight(sum(components.values()), qualified)
        return components, raw_total, raw_weight, qualified

    def apply_cap(self, raw_weight: float, system_total_weight: float) -> float:
        """Cap one entity at cap_percentage of the system total."""
        return min(raw_weight, system_total_weight * self.config.cap_percentage)

    def zap_weight(self, amount_sats: int) -> float:
        """Per-zap weight; independent of decay and cap."""
        return quadratic_weight(
            amount_sats / SATS_PER_BTC,
            self.config.normalization_factor_btc,
        )

    def contributor_breakdown(
        self,
        contributor_id: str,
        contributions: Iterable[Contribution],
        now: int,
    ) -> ContributorBreakdown:
        """Reporting view of how a contributor's weight is made up."""
        contributions = list(contributions)
        breakdown = ContributorBreakdown(contributor_id=contributor_id, evaluated_at=now)
        breakdown.components, _, breakdown.raw_weight, breakdown.qualified = (
            self.raw_weight_for(contributions, now)
        )
        for c in contributions:
            spec = self.config.get_contribution_type(c.contribution_type)
            if spec and spec.cooling_off and c.occurred_at <= now and self.is_cooling_off(
                c.amount_sats, age_in_days(c.occurred_at, now)
            ):
                breakdown.cooling_off_sats += c.amount_sats
        return breakdown

    # ------------------------------------------------------------------
    # Batch computation
    # ------------------------------------------------------------------

    def _glide_capped_weight(
        self,
        raw_weight: float,
        cap: float,
        since: int,
        now: int,
    ) -> float:
        """Linear ramp from raw weight down to the cap."""
        glide_seconds = self.config.glide_path_days * SECONDS_PER_DAY
        if glide_seconds <= 0:
            return cap
        progress = min(1.0, max(0, now - since) / glide_seconds)
        return raw_weight - (raw_weight - cap) * progress

    def compute_snapshot_set(
        self,
        ledger_snapshot: LedgerSnapshot,
        computed_at: Optional[int] = None,
        previous: Optional[SnapshotSet] = None,
    ) -> SnapshotSet:
        """
        Two-pass computation over one consistent ledger snapshot.

        Args:
            ledger_snapshot: Consistent ledger read
            computed_at: Evaluation instant (defaults to the snapshot time)
            previous: Prior run, used only by the grandfathering glide path

        Returns:
            Immutable SnapshotSet
        """
        now = ledger_snapshot.taken_at if computed_at is None else computed_at

        # Pass 1: raw weights and the system total
        pass_one: List[Tuple[str, Dict[str, float], int, float, bool]] = []
        system_total = 0.0
        for contributor_id in ledger_snapshot.contributors():
            components, raw_total, raw_weight, qualified = self.raw_weight_for(
                ledger_snapshot.contributions_for(contributor_id), now
            )
            pass_one.append((contributor_id, components, raw_total, raw_weight, qualified))
            system_total += raw_weight

        # Pass 2: cap against the pass-1 total (no re-normalization)
        cap = system_total * self.config.cap_percentage
        snapshots: Dict[str, WeightSnapshot] = {}
        capped_count = 0
        for contributor_id, components, raw_total, raw_weight, qualified in pass_one:
            over_cap_since = None
            capped_weight = self.apply_cap(raw_weight, system_total)

            if raw_weight > cap:
                capped_count += 1
                over_cap_since = now
                if previous is not None:
                    prior = previous.get(contributor_id)
                    if prior is not None and prior.over_cap_since is not None:
                        over_cap_since = prior.over_cap_since
                if self.config.glide_path_enabled:
                    capped_weight = self._glide_capped_weight(
                        raw_weight, cap, over_cap_since, now
                    )

            snapshots[contributor_id] = WeightSnapshot(
                contributor_id=contributor_id,
                components=components,
                raw_total_sats=raw_total,
                raw_weight=raw_weight,
                capped_weight=capped_weight,
                system_total_weight_at_computation=system_total,
                computed_at=now,
                qualified=qualified,
                over_cap_since=over_cap_since,
            )

        logger.info(
            f"Computed weights for {len(snapshots)} contributors at {now}: "
            f"system_total={system_total:.6f}, capped={capped_count}"
        )
        return SnapshotSet(
            computed_at=now,
            system_total_weight=system_total,
            snapshots=snapshots,
        )


# ============================================================================
# SNAPSHOT STORE
# ============================================================================

class WeightSnapshotStore:
    """
    Versioned history of SnapshotSets.

    Sets are never mutated; readers pick the latest set computed at or
    before the instant they care about.
    """

    def __init__(self, store: Optional[GovernanceStore] = None):
        self._store = store or GovernanceStore.in_memory()
        self._runs: List[SnapshotSet] = []
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        headers: Dict[int, float] = {}
        rows: Dict[int, Dict[str, WeightSnapshot]] = {}
        for record in self._store.backend.scan(TABLE_WEIGHT_SNAPSHOTS):
            try:
                if record.get("kind") == "run":
                    headers[int(record["computed_at"])] = float(record["system_total_weight"])
                else:
                    snapshot = WeightSnapshot.from_dict(record)
                    rows.setdefault(snapshot.computed_at, {})[snapshot.contributor_id] = snapshot
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable snapshot record: {e}")

        for computed_at in sorted(headers):
            self._runs.append(SnapshotSet(
                computed_at=computed_at,
                system_total_weight=headers[computed_at],
                snapshots=rows.get(computed_at, {}),
            ))
        if self._runs:
            logger.info(f"Loaded {len(self._runs)} weight snapshot runs")

    def publish(self, snapshot_set: SnapshotSet) -> None:
        """Persist and publish a completed run."""
        with self._lock:
            if self._runs and snapshot_set.computed_at < self._runs[-1].computed_at:
                logger.warning(
                    f"Publishing out-of-order snapshot run {snapshot_set.computed_at} "
                    f"(latest {self._runs[-1].computed_at})"
                )
            for snapshot in snapshot_set.snapshots.values():
                self._store.append(TABLE_WEIGHT_SNAPSHOTS, snapshot)
            # Header last: a run without its header is ignored on reload
            self._store.append(TABLE_WEIGHT_SNAPSHOTS, snapshot_set.header())
            self._runs.append(snapshot_set)
            self._runs.sort(key=lambda s: s.computed_at)

    def latest(self, at: Optional[int] = None) -> Optional[SnapshotSet]:
        """Latest run computed at or before `at` (or overall)."""
        with self._lock:
            for snapshot_set in reversed(self._runs):
                if at is None or snapshot_set.computed_at <= at:
                    return snapshot_set
        return None

    def prune(self, before: int) -> int:
        """
        Drop runs no round can still select.

        Keeps every run computed at or after `before` plus the latest run
        before it, so latest(at) for any at >= before is unchanged.

        Returns:
            Number of runs dropped
        """
        with self._lock:
            older = [s for s in self._runs if s.computed_at < before]
            if len(older) <= 1:
                return 0
            dropped = older[:-1]
            self._runs = self._runs[len(dropped):]

            records: List[dict] = []
            for snapshot_set in self._runs:
                records.extend(s.to_dict() for s in snapshot_set.snapshots.values())
                records.append(snapshot_set.header())
            self._store.rewrite(TABLE_WEIGHT_SNAPSHOTS, records)

        logger.info(
            f"Pruned {len(dropped)} weight snapshot runs older than {before}, "
            f"{len(self._runs)} kept"
        )
        return len(dropped)

    def runs(self) -> List[SnapshotSet]:
        with self._lock:
            return list(self._runs)

    def __len__(self) -> int:
        return len(self._runs)
