"""
commonsgov/protocol/aggregator.py

Vote Aggregator - tallies one round of one proposal into a RoundResult.

Inputs (all frozen at round close):
- Zap votes inside the round's vote window that target the proposal's events
- The active economic node signal per node as of round close
- The latest weight snapshot set as of round close

Algorithm:
1. Sum each voter's zap weights, cap the sum at cap_percentage of the
   snapshot's system total, and split the capped weight back over the
   voter's vote types in proportion to their uncapped weights
2. Add each node signal's weight_at_signal_time to its bucket
3. total = support + veto + abstain
4. threshold_met = total >= tier threshold
5. Veto policy, each check against its OWN denominator:
   - mining veto   >= 30% of mining-classified signal weight
   - economic veto >= 40% of economic-classified signal weight
   - zap veto      >= 40% of total (capped) zap weight
   An empty denominator never vetoes.

A voter who both zaps and signals as a node is counted once per source.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..config import GovernanceConfig
from ..errors import StaleSnapshotError
from .economic_nodes import EconomicNodeVote, NodeClass
from .weights import SnapshotSet, WeightSnapshotStore
from .zap_votes import VoteType, ZapVote

logger = logging.getLogger("commonsgov.protocol.aggregator")

# Absorbs representation error when a veto share sits exactly on its threshold
VETO_TOLERANCE = 1e-12


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class RoundResult:
    """Immutable outcome of one closed round."""
    proposal_id: str
    round_number: int
    support_weight: float
    veto_weight: float
    abstain_weight: float
    total_weight: float
    threshold: float
    threshold_met: bool
    veto_blocked: bool
    opens_at: int = 0
    closes_at: int = 0
    closed_at: int = 0
    window_start: int = 0
    snapshot_computed_at: int = 0
    zap_vote_count: int = 0
    node_vote_count: int = 0
    mining_total: float = 0.0
    mining_veto: float = 0.0
    economic_total: float = 0.0
    economic_veto: float = 0.0
    zap_total: float = 0.0
    zap_veto: float = 0.0
    veto_reasons: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.threshold_met and not self.veto_blocked

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "round_number": self.round_number,
            "support_weight": self.support_weight,
            "veto_weight": self.veto_weight,
            "abstain_weight": self.abstain_weight,
            "total_weight": self.total_weight,
            "threshold": self.threshold,
            "threshold_met": self.threshold_met,
            "veto_blocked": self.veto_blocked,
            "opens_at": self.opens_at,
            "closes_at": self.closes_at,
            "closed_at": self.closed_at,
            "window_start": self.window_start,
            "snapshot_computed_at": self.snapshot_computed_at,
            "zap_vote_count": self.zap_vote_count,
            "node_vote_count": self.node_vote_count,
            "mining_total": self.mining_total,
            "mining_veto": self.mining_veto,
            "economic_total": self.economic_total,
            "economic_veto": self.economic_veto,
            "zap_total": self.zap_total,
            "zap_veto": self.zap_veto,
            "veto_reasons": list(self.veto_reasons),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RoundResult":
        fields = cls.__dataclass_fields__
        kwargs = {k: v for k, v in data.items() if k in fields}
        kwargs["veto_reasons"] = list(data.get("veto_reasons", []))
        return cls(**kwargs)


@dataclass
class VetoDecision:
    """Which veto checks fired."""
    mining: bool = False
    economic: bool = False
    zap: bool = False

    @property
    def blocked(self) -> bool:
        return self.mining or self.economic or self.zap

    def reasons(self) -> List[str]:
        return [name for name in ("mining", "economic", "zap") if getattr(self, name)]


# ============================================================================
# VETO POLICY
# ============================================================================

@dataclass(frozen=True)
class VetoPolicy:
    """Veto thresholds, each applied to its own bucket."""
    mining_percent: float
    economic_percent: float
    zap_percent: float

    @classmethod
    def from_config(cls, config: GovernanceConfig) -> "VetoPolicy":
        return cls(
            mining_percent=config.veto_mining_percent,
            economic_percent=config.veto_economic_percent,
            zap_percent=config.veto_zap_percent,
        )

    @staticmethod
    def share_reached(veto: float, total: float, percent: float) -> bool:
        if total <= 0:
            return False
        return veto / total + VETO_TOLERANCE >= percent

    def evaluate(
        self,
        mining_veto: float,
        mining_total: float,
        economic_veto: float,
        economic_total: float,
        zap_veto: float,
        zap_total: float,
    ) -> VetoDecision:
        return VetoDecision(
            mining=self.share_reached(mining_veto, mining_total, self.mining_percent),
            economic=self.share_reached(economic_veto, economic_total, self.economic_percent),
            zap=self.share_reached(zap_veto, zap_total, self.zap_percent),
        )


# ============================================================================
# VOTE AGGREGATOR
# ============================================================================

class VoteAggregator:
    """Stateless per-round tally."""

    def __init__(self, config: Optional[GovernanceConfig] = None):
        self.config = config or GovernanceConfig()
        self.policy = VetoPolicy.from_config(self.config)

    def select_snapshot(
        self,
        snapshots: WeightSnapshotStore,
        proposal_id: str,
        round_number: int,
        opens_at: int,
        closing_at: int,
    ) -> SnapshotSet:
        """
        Latest snapshot set computed at or before closing_at.

        Raises:
            StaleSnapshotError: None exists, or the latest predates the round opening
        """
        snapshot_set = snapshots.latest(closing_at)
        if snapshot_set is None or snapshot_set.computed_at < opens_at:
            latest = snapshot_set.computed_at if snapshot_set else None
            logger.warning(
                f"Stale snapshot for {proposal_id} round {round_number}: "
                f"latest {latest}, round opened {opens_at}"
            )
            raise StaleSnapshotError(proposal_id, round_number, latest)
        return snapshot_set

    def capped_zap_weights(
        self,
        zap_votes: Iterable[ZapVote],
        system_total_weight: float,
    ) -> Dict[str, Dict[VoteType, float]]:
        """
        Per-voter zap weight by vote type after the per-voter cap.

        No cap applies when the system total is zero.
        """
        per_voter: Dict[str, Dict[VoteType, float]] = {}
        for vote in zap_votes:
            buckets = per_voter.setdefault(vote.voter_id, {})
            buckets[vote.vote_type] = buckets.get(vote.vote_type, 0.0) + vote.weight

        if system_total_weight <= 0:
            return per_voter

        cap = system_total_weight * self.config.cap_percentage
        for voter_id, buckets in per_voter.items():
            voter_total = sum(buckets.values())
            if voter_total > cap:
                scale = cap / voter_total
                per_voter[voter_id] = {t: w * scale for t, w in buckets.items()}
                logger.debug(f"Capped zap weight for {voter_id}: {voter_total:.6f} -> {cap:.6f}")
        return per_voter

    def tally(
        self,
        proposal_id: str,
        round_number: int,
        threshold: float,
        zap_votes: List[ZapVote],
        node_votes: List[EconomicNodeVote],
        snapshot_set: SnapshotSet,
        opens_at: int = 0,
        closes_at: int = 0,
        closed_at: int = 0,
        window_start: int = 0,
    ) -> RoundResult:
        """
        Tally one round.

        Args:
            proposal_id: Proposal being tallied
            round_number: 1-based round number
            threshold: Tier threshold for total weight
            zap_votes: Zap votes inside the round window
            node_votes: Active node signals as of close
            snapshot_set: Snapshot used for the zap cap base
            window_start: Inclusive start of the zap vote window

        Returns:
            RoundResult
        """
        buckets = {VoteType.SUPPORT: 0.0, VoteType.VETO: 0.0, VoteType.ABSTAIN: 0.0}

        # Zap votes (deterministic order: by voter id)
        zap_weights = self.capped_zap_weights(zap_votes, snapshot_set.system_total_weight)
        zap_total = 0.0
        zap_veto = 0.0
        for voter_id in sorted(zap_weights):
            for vote_type, weight in zap_weights[voter_id].items():
                buckets[vote_type] += weight
                zap_total += weight
                if vote_type == VoteType.VETO:
                    zap_veto += weight

        # Node signals
        class_totals = {NodeClass.MINING: 0.0, NodeClass.ECONOMIC: 0.0}
        class_vetoes = {NodeClass.MINING: 0.0, NodeClass.ECONOMIC: 0.0}
        for vote in sorted(node_votes, key=lambda v: v.node_id):
            weight = max(vote.weight_at_signal_time, 0.0)
            buckets[vote.signal_type] += weight
            class_totals[vote.node_class] += weight
            if vote.signal_type == VoteType.VETO:
                class_vetoes[vote.node_class] += weight

        support = buckets[VoteType.SUPPORT]
        veto = buckets[VoteType.VETO]
        abstain = buckets[VoteType.ABSTAIN]
        total = support + veto + abstain

        decision = self.policy.evaluate(
            mining_veto=class_vetoes[NodeClass.MINING],
            mining_total=class_totals[NodeClass.MINING],
            economic_veto=class_vetoes[NodeClass.ECONOMIC],
            economic_total=class_totals[NodeClass.ECONOMIC],
            zap_veto=zap_veto,
            zap_total=zap_total,
        )

        result = RoundResult(
            proposal_id=proposal_id,
            round_number=round_number,
            support_weight=support,
            veto_weight=veto,
            abstain_weight=abstain,
            total_weight=total,
            threshold=threshold,
            threshold_met=total > 0 and total >= threshold,
            veto_blocked=decision.blocked,
            opens_at=opens_at,
            closes_at=closes_at,
            closed_at=closed_at,
            window_start=window_start,
            snapshot_computed_at=snapshot_set.computed_at,
            zap_vote_count=len(zap_votes),
            node_vote_count=len(node_votes),
            mining_total=class_totals[NodeClass.MINING],
            mining_veto=class_vetoes[NodeClass.MINING],
            economic_total=class_totals[NodeClass.ECONOMIC],
            economic_veto=class_vetoes[NodeClass.ECONOMIC],
            zap_total=zap_total,
            zap_veto=zap_veto,
            veto_reasons=decision.reasons(),
        )

        logger.info(
            f"Tallied {proposal_id} round {round_number}: total={total:.6f}/"
            f"{threshold} support={support:.6f} veto={veto:.6f} "
            f"abstain={abstain:.6f} blocked={decision.blocked}"
        )
        return result
