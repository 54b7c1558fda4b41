"""
commonsgov/engine.py

GovernanceEngine - wires the ledger, weight calculator, vote sources,
aggregator and round controller over one store.

This is the boundary external collaborators talk to:
- Verifiers:          submit_contribution()
- Zap ingestion:      record_zap_vote()
- Economic nodes:     register_node(), signal()
- Proposal source:    open_proposal(), close_round(), withdraw_proposal()
- Consumers:          get_latest_result()

Background work (trio):
- Periodic weight recompute
- Round deadline checks

Usage:
    from commonsgov import GovernanceEngine

    engine = GovernanceEngine(storage_dir="~/.commonsgov/storage")
    engine.submit_contribution("pool-a", "merge_mining", 2_500_000, t, "coinbase:ab..")
    engine.recompute_weights()
    engine.open_proposal("prop-42", tier=1, originator="alice")

    # Long-running service
    trio.run(engine.run)
"""

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

import trio

from .config import GovernanceConfig
from .errors import InvalidVoteError, ProposalStateError, UnknownProposalError
from .protocol.aggregator import RoundResult, VoteAggregator
from .protocol.controller import (
    Proposal,
    ProposalResult,
    ProposalStatus,
    VotingRoundController,
)
from .protocol.economic_nodes import (
    EconomicNode,
    EconomicNodeRegistry,
    EconomicNodeVote,
    NodeType,
)
from .protocol.ledger import (
    BatchOutcome,
    Contribution,
    ContributionLedger,
    ContributorType,
)
from .protocol.reputation import ReputationTable
from .protocol.storage import GovernanceStore
from .protocol.weights import (
    ContributorBreakdown,
    SnapshotSet,
    WeightCalculator,
    WeightSnapshotStore,
)
from .protocol.zap_votes import VoteType, ZapVote, ZapVoteBook

logger = logging.getLogger("commonsgov.engine")


class GovernanceEngine:
    """Single-process governance evaluator."""

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        storage_dir: Optional[Union[str, Path]] = None,
        store: Optional[GovernanceStore] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize GovernanceEngine.

        Args:
            config: Governance configuration (defaults if omitted)
            storage_dir: Directory for JSON-lines tables; in-memory if omitted
            store: Explicit store (overrides storage_dir)
            clock: Returns the current unix time
        """
        self.config = config or GovernanceConfig()
        self._clock = clock or (lambda: int(time.time()))

        if store is None:
            store = (
                GovernanceStore.on_disk(Path(storage_dir).expanduser())
                if storage_dir else GovernanceStore.in_memory()
            )
        self.store = store

        self.ledger = ContributionLedger(self.store, self.config, self._clock)
        self.calculator = WeightCalculator(self.config)
        self.snapshots = WeightSnapshotStore(self.store)
        self.reputation = ReputationTable(self.store, self._clock)
        self.zap_votes = ZapVoteBook(self.store, self.calculator, self._clock)
        self.nodes = EconomicNodeRegistry(
            self.store, self.snapshots, self.reputation, self._clock, config=self.config
        )
        self.aggregator = VoteAggregator(self.config)
        self.controller = VotingRoundController(
            config=self.config,
            store=self.store,
            zap_votes=self.zap_votes,
            node_registry=self.nodes,
            snapshots=self.snapshots,
            aggregator=self.aggregator,
            clock=self._clock,
            recompute=self.recompute_weights,
        )

    # ========================================================================
    # CONTRIBUTIONS AND WEIGHTS
    # ========================================================================

    def submit_contribution(
        self,
        contributor_id: str,
        contribution_type: str,
        amount_sats: int,
        occurred_at: int,
        proof_reference: str,
        contributor_type: Optional[ContributorType] = None,
    ) -> str:
        return self.ledger.submit_contribution(
            contributor_id,
            contribution_type,
            amount_sats,
            occurred_at,
            proof_reference,
            contributor_type=contributor_type,
        )

    def record_contributions(self, contributions: Iterable[Contribution]) -> List[BatchOutcome]:
        return self.ledger.record_batch(contributions)

    def recompute_weights(self, at: Optional[int] = None) -> SnapshotSet:
        """
        Run the two-pass weight computation and publish the result.

        Runs no open round can still select are pruned afterwards.

        Args:
            at: Evaluation instant (defaults to now)

        Returns:
            The published SnapshotSet
        """
        at = self._clock() if at is None else at
        ledger_snapshot = self.ledger.snapshot(at)
        snapshot_set = self.calculator.compute_snapshot_set(
            ledger_snapshot,
            computed_at=at,
            previous=self.snapshots.latest(at),
        )
        self.snapshots.publish(snapshot_set)

        earliest_round = self.controller.earliest_open_round_start()
        keep_from = at if earliest_round is None else min(at, earliest_round)
        self.snapshots.prune(keep_from)
        return snapshot_set

    def participation_weight(self, contributor_id: str, at: Optional[int] = None) -> float:
        """Capped weight x reputation multiplier from the latest snapshot."""
        snapshot_set = self.snapshots.latest(at)
        if snapshot_set is None:
            return 0.0
        return self.reputation.apply(
            contributor_id, snapshot_set.capped_weight(contributor_id), at
        )

    def contributor_breakdown(self, contributor_id: str, at: Optional[int] = None) -> ContributorBreakdown:
        at = self._clock() if at is None else at
        return self.calculator.contributor_breakdown(
            contributor_id, self.ledger.query(contributor_id, end=at), at
        )

    def set_multiplier(self, contributor_id: str, multiplier: float, reason: str = "") -> float:
        return self.reputation.set_multiplier(contributor_id, multiplier, reason=reason).multiplier

    # ========================================================================
    # VOTES
    # ========================================================================

    def _require_open(self, proposal_id: str) -> Proposal:
        proposal = self.controller.get_proposal(proposal_id)
        if proposal is None:
            raise UnknownProposalError(f"Unknown proposal: {proposal_id}")
        if proposal.status != ProposalStatus.OPEN:
            raise ProposalStateError(
                f"Proposal {proposal_id} is {proposal.status.value}, not accepting votes"
            )
        return proposal

    def record_zap_vote(
        self,
        proposal_id: str,
        governance_event_id: str,
        voter_id: str,
        amount_sats: int,
        vote_type: Union[VoteType, str],
        occurred_at: int,
        receipt_id: Optional[str] = None,
    ) -> ZapVote:
        """
        Record a zap matched to one of the proposal's governance events.

        Zaps dated before the current vote window (round 1's opening, or
        the previous round's close) are rejected.

        Raises:
            UnknownProposalError, ProposalStateError, InvalidVoteError
        """
        proposal = self._require_open(proposal_id)
        if governance_event_id not in proposal.governance_event_ids:
            raise InvalidVoteError(
                f"Event {governance_event_id} does not belong to proposal {proposal_id}"
            )
        window_start = self.controller.vote_window_start(proposal_id)
        if occurred_at < window_start:
            raise InvalidVoteError(
                f"Zap at {occurred_at} predates the current vote window of "
                f"{proposal_id} (starts {window_start})"
            )
        return self.zap_votes.record_zap_vote(
            proposal_id,
            governance_event_id,
            voter_id,
            amount_sats,
            vote_type,
            occurred_at,
            receipt_id=receipt_id,
        )

    def register_node(
        self,
        node_id: str,
        node_type: Union[NodeType, str],
        weight: float = 0.0,
        contributor_id: str = "",
    ) -> EconomicNode:
        return self.nodes.register_node(node_id, node_type, weight, contributor_id)

    def suspend_node(self, node_id: str, reason: str = "") -> EconomicNode:
        return self.nodes.suspend_node(node_id, reason)

    def signal(
        self,
        proposal_id: str,
        node_id: str,
        signal_type: Union[VoteType, str],
        signed_at: Optional[int] = None,
    ) -> EconomicNodeVote:
        self._require_open(proposal_id)
        return self.nodes.signal(proposal_id, node_id, signal_type, signed_at)

    # ========================================================================
    # PROPOSALS
    # ========================================================================

    def open_proposal(
        self,
        proposal_id: str,
        tier: int,
        originator: str = "",
        governance_event_ids: Optional[List[str]] = None,
        scheduled_rounds: Optional[int] = None,
        opened_at: Optional[int] = None,
        voting_window_seconds: Optional[int] = None,
    ) -> Proposal:
        return self.controller.open_proposal(
            proposal_id,
            tier,
            originator=originator,
            opened_at=opened_at,
            governance_event_ids=governance_event_ids,
            voting_window_seconds=voting_window_seconds,
            scheduled_rounds=scheduled_rounds,
        )

    def close_round(self, proposal_id: str, now: Optional[int] = None) -> RoundResult:
        return self.controller.close_round(proposal_id, now)

    def withdraw_proposal(self, proposal_id: str, requester_id: str) -> Proposal:
        return self.controller.withdraw(proposal_id, requester_id)

    def get_latest_result(self, proposal_id: str) -> ProposalResult:
        return self.controller.get_latest_result(proposal_id)

    # ========================================================================
    # SERVICE
    # ========================================================================

    async def _recompute_loop(self, interval: float) -> None:
        logger.info("Weight recompute loop started")
        try:
            while True:
                snapshot_set = self.recompute_weights()
                logger.debug(f"Recomputed weights at {snapshot_set.computed_at}")
                await trio.sleep(interval)
        finally:
            logger.info("Weight recompute loop stopped")

    async def run(
        self,
        recompute_interval: Optional[float] = None,
        deadline_interval: Optional[float] = None,
    ) -> None:
        """Run recompute and deadline loops until cancelled."""
        async with trio.open_nursery() as nursery:
            nursery.start_soon(
                self._recompute_loop,
                recompute_interval or self.config.recompute_interval_seconds,
            )
            nursery.start_soon(
                self.controller.run_deadline_loop,
                deadline_interval or self.config.deadline_check_interval_seconds,
            )

    def now(self) -> int:
        return self._clock()

    def get_stats(self) -> dict:
        latest = self.snapshots.latest()
        return {
            "ledger": self.ledger.get_stats(),
            "proposals": self.controller.get_stats(),
            "snapshots": {
                "runs": len(self.snapshots),
                "latest_computed_at": latest.computed_at if latest else None,
                "system_total_weight": latest.system_total_weight if latest else 0.0,
            },
            "zap_votes": self.zap_votes.count(),
            "economic_nodes": len(self.nodes.nodes(active_only=True)),
            "node_signals": self.nodes.signal_count(),
            "storage": self.store.get_stats(),
        }

    def close(self) -> None:
        self.store.close()
