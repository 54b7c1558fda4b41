"""
commonsgov/protocol/controller.py

Voting Round Controller - per-proposal state machine over one or more rounds.

Round lifecycle:
    SCHEDULED(n) -> OPEN(n) -> CLOSED(n) -> SCHEDULED(n+1) | PASSED | VETOED | EXPIRED

Tier rules:
- Tier 1-3: one round
- Tier 4:   two rounds opened 30 days apart, both must pass
- Tier 5:   three rounds opened 60 days apart, all must pass
A failed round is terminal: VETOED if veto-blocked, otherwise EXPIRED.

Round n opens at opened_at + (n-1) * round_spacing and closes one voting
window later. A round closes when its close time passes (deadline loop) or
on an explicit close_round() call; votes and weights are frozen at that
instant and the RoundResult is never recomputed.

Zap vote windows are contiguous: round 1 counts zaps from its opening,
round n+1 from the instant round n closed. Zaps landing between two
rounds count toward the later one.

Withdrawal: only the originator, only before any round has closed.

Usage:
    from commonsgov.protocol.controller import VotingRoundController

    controller = VotingRoundController(config, store, zap_book, registry, snapshots)
    controller.open_proposal("prop-42", tier=4, originator="alice")
    result = controller.close_round("prop-42")
    status = controller.get_latest_result("prop-42")
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config import GovernanceConfig, SECONDS_PER_DAY
from ..errors import (
    InvalidProposalError,
    ProposalStateError,
    StaleSnapshotError,
    UnknownProposalError,
)
from .aggregator import RoundResult, VoteAggregator
from .economic_nodes import EconomicNodeRegistry
from .storage import GovernanceStore, TABLE_PROPOSALS, TABLE_ROUND_RESULTS
from .weights import WeightSnapshotStore
from .zap_votes import ZapVoteBook

logger = logging.getLogger("commonsgov.protocol.controller")


# ============================================================================
# ENUMS
# ============================================================================

class ProposalStatus(Enum):
    """Proposal lifecycle status."""
    OPEN = "open"
    PASSED = "passed"
    VETOED = "vetoed"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class RoundState(Enum):
    SCHEDULED = "scheduled"
    OPEN = "open"
    CLOSED = "closed"


TERMINAL_STATUSES = (
    ProposalStatus.PASSED,
    ProposalStatus.VETOED,
    ProposalStatus.EXPIRED,
    ProposalStatus.WITHDRAWN,
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Proposal:
    """A governance proposal and its round schedule."""
    proposal_id: str
    tier: int
    opened_at: int
    voting_window_seconds: int
    required_rounds: int
    round_spacing_days: int
    threshold: float
    status: ProposalStatus = ProposalStatus.OPEN
    originator: str = ""
    governance_event_ids: List[str] = field(default_factory=list)
    status_changed_at: int = 0

    def round_opens_at(self, round_number: int) -> int:
        return self.opened_at + (round_number - 1) * self.round_spacing_days * SECONDS_PER_DAY

    def round_closes_at(self, round_number: int) -> int:
        return self.round_opens_at(round_number) + self.voting_window_seconds

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "tier": self.tier,
            "opened_at": self.opened_at,
            "voting_window_seconds": self.voting_window_seconds,
            "required_rounds": self.required_rounds,
            "round_spacing_days": self.round_spacing_days,
            "threshold": self.threshold,
            "status": self.status.value,
            "originator": self.originator,
            "governance_event_ids": list(self.governance_event_ids),
            "status_changed_at": self.status_changed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Proposal":
        return cls(
            proposal_id=data["proposal_id"],
            tier=int(data["tier"]),
            opened_at=int(data["opened_at"]),
            voting_window_seconds=int(data["voting_window_seconds"]),
            required_rounds=int(data["required_rounds"]),
            round_spacing_days=int(data["round_spacing_days"]),
            threshold=float(data["threshold"]),
            status=ProposalStatus(data.get("status", "open")),
            originator=data.get("originator", ""),
            governance_event_ids=list(data.get("governance_event_ids", [])),
            status_changed_at=int(data.get("status_changed_at", 0)),
        )


@dataclass
class VotingRound:
    """Read-only view of one round's schedule and state."""
    proposal_id: str
    round_number: int
    opens_at: int
    closes_at: int
    state: RoundState
    result: Optional[RoundResult] = None


@dataclass
class ProposalResult:
    """Status and round history returned to downstream consumers."""
    proposal_id: str
    tier: int
    status: ProposalStatus
    rounds: List[RoundResult] = field(default_factory=list)
    required_rounds: int = 1

    @property
    def next_round(self) -> Optional[int]:
        if self.status != ProposalStatus.OPEN:
            return None
        return len(self.rounds) + 1

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "tier": self.tier,
            "status": self.status.value,
            "required_rounds": self.required_rounds,
            "next_round": self.next_round,
            "rounds": [r.to_dict() for r in self.rounds],
        }


# ============================================================================
# CONTROLLER
# ============================================================================

class VotingRoundController:
    """
    Drives proposals through their rounds.

    Status transitions happen only here.
    """

    def __init__(
        self,
        config: Optional[GovernanceConfig] = None,
        store: Optional[GovernanceStore] = None,
        zap_votes: Optional[ZapVoteBook] = None,
        node_registry: Optional[EconomicNodeRegistry] = None,
        snapshots: Optional[WeightSnapshotStore] = None,
        aggregator: Optional[VoteAggregator] = None,
        clock: Optional[Callable[[], int]] = None,
        recompute: Optional[Callable[[int], object]] = None,
    ):
        """
        Initialize VotingRoundController.

        Args:
            config: Governance configuration (tier table)
            store: Persistence layer (in-memory if omitted)
            zap_votes: Source of zap votes
            node_registry: Source of economic node signals
            snapshots: Weight snapshot history
            aggregator: Per-round tally
            clock: Returns the current unix time
            recompute: Publishes a snapshot as of the given instant; called
                once when a round close finds no usable snapshot
        """
        self.config = config or GovernanceConfig()
        self._store = store if store is not None else GovernanceStore.in_memory()
        self._clock = clock or (lambda: int(time.time()))
        self._snapshots = snapshots if snapshots is not None else WeightSnapshotStore(self._store)
        self._zap_votes = (
            zap_votes if zap_votes is not None
            else ZapVoteBook(self._store, clock=self._clock)
        )
        self._nodes = (
            node_registry if node_registry is not None
            else EconomicNodeRegistry(
                self._store, self._snapshots, clock=self._clock, config=self.config
            )
        )
        self._aggregator = aggregator if aggregator is not None else VoteAggregator(self.config)
        self._recompute = recompute
        self._lock = threading.RLock()

        self._proposals: Dict[str, Proposal] = {}
        self._results: Dict[str, List[RoundResult]] = {}
        self._load()

    def _load(self) -> None:
        for proposal in self._store.load(TABLE_PROPOSALS, Proposal.from_dict):
            self._proposals[proposal.proposal_id] = proposal
        for result in self._store.load(TABLE_ROUND_RESULTS, RoundResult.from_dict):
            rounds = self._results.setdefault(result.proposal_id, [])
            if all(r.round_number != result.round_number for r in rounds):
                rounds.append(result)
        for rounds in self._results.values():
            rounds.sort(key=lambda r: r.round_number)
        if self._proposals:
            logger.info(f"Loaded {len(self._proposals)} proposals")

    def _persist(self, proposal: Proposal) -> None:
        self._store.append(TABLE_PROPOSALS, proposal)
        self._proposals[proposal.proposal_id] = proposal

    def _require(self, proposal_id: str) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise UnknownProposalError(f"Unknown proposal: {proposal_id}")
        return proposal

    # ========================================================================
    # PROPOSALS
    # ========================================================================

    def open_proposal(
        self,
        proposal_id: str,
        tier: int,
        originator: str = "",
        opened_at: Optional[int] = None,
        governance_event_ids: Optional[List[str]] = None,
        voting_window_seconds: Optional[int] = None,
        scheduled_rounds: Optional[int] = None,
    ) -> Proposal:
        """
        Open a proposal and schedule its rounds.

        Args:
            proposal_id: Unique proposal id
            tier: Proposal tier 1..5
            originator: Identity allowed to withdraw the proposal
            opened_at: Round 1 opening time (defaults to now)
            governance_event_ids: Events zap votes may target (defaults to [proposal_id])
            voting_window_seconds: Override of the tier's default window
            scheduled_rounds: Must match the tier's round count if given

        Raises:
            InvalidTierError: Unrecognized tier
            InvalidProposalError: Duplicate id or inconsistent schedule
        """
        requirements = self.config.get_tier(tier)
        if not proposal_id:
            raise InvalidProposalError("proposal_id is required")
        if scheduled_rounds is not None and scheduled_rounds != requirements.required_rounds:
            raise InvalidProposalError(
                f"Tier {tier} requires {requirements.required_rounds} rounds, "
                f"got {scheduled_rounds}"
            )

        window = (
            requirements.voting_window_days * SECONDS_PER_DAY
            if voting_window_seconds is None else int(voting_window_seconds)
        )
        if window <= 0:
            raise InvalidProposalError(f"Voting window must be positive, got {window}")
        if (
            requirements.required_rounds > 1
            and window > requirements.round_spacing_days * SECONDS_PER_DAY
        ):
            raise InvalidProposalError(
                f"Voting window exceeds the {requirements.round_spacing_days}-day round spacing"
            )

        now = self._clock() if opened_at is None else opened_at
        proposal = Proposal(
            proposal_id=proposal_id,
            tier=requirements.tier,
            opened_at=now,
            voting_window_seconds=window,
            required_rounds=requirements.required_rounds,
            round_spacing_days=requirements.round_spacing_days,
            threshold=requirements.threshold,
            originator=originator,
            governance_event_ids=list(governance_event_ids or [proposal_id]),
            status_changed_at=now,
        )

        with self._lock:
            if proposal_id in self._proposals:
                raise InvalidProposalError(f"Proposal already exists: {proposal_id}")
            self._persist(proposal)
            self._results[proposal_id] = []

        logger.info(
            f"Opened tier {proposal.tier} proposal {proposal_id}: "
            f"{proposal.required_rounds} round(s), threshold {proposal.threshold}"
        )
        return proposal

    def withdraw(self, proposal_id: str, requester_id: str, now: Optional[int] = None) -> Proposal:
        """
        Withdraw a proposal before any round has closed.

        Raises:
            UnknownProposalError: No such proposal
            ProposalStateError: Not the originator, already decided, or a round closed
        """
        with self._lock:
            proposal = self._require(proposal_id)
            if requester_id != proposal.originator:
                raise ProposalStateError(
                    f"Only the originator may withdraw proposal {proposal_id}"
                )
            if proposal.status != ProposalStatus.OPEN:
                raise ProposalStateError(
                    f"Proposal {proposal_id} is already {proposal.status.value}"
                )
            if self._results.get(proposal_id):
                raise ProposalStateError(
                    f"Proposal {proposal_id} has closed rounds and cannot be withdrawn"
                )
            proposal = replace(
                proposal,
                status=ProposalStatus.WITHDRAWN,
                status_changed_at=self._clock() if now is None else now,
            )
            self._persist(proposal)

        logger.info(f"Proposal {proposal_id} withdrawn by {requester_id}")
        return proposal

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        return self._proposals.get(proposal_id)

    def proposals(self, status: Optional[ProposalStatus] = None) -> List[Proposal]:
        with self._lock:
            proposals = list(self._proposals.values())
        if status is not None:
            proposals = [p for p in proposals if p.status == status]
        return sorted(proposals, key=lambda p: (p.opened_at, p.proposal_id))

    # ========================================================================
    # ROUNDS
    # ========================================================================

    @staticmethod
    def _window_start(proposal: Proposal, results: List[RoundResult]) -> int:
        if not results:
            return proposal.round_opens_at(1)
        return results[-1].closed_at

    def vote_window_start(self, proposal_id: str) -> int:
        """Earliest occurred_at a zap vote can have and still be counted."""
        with self._lock:
            proposal = self._require(proposal_id)
            return self._window_start(proposal, self._results.get(proposal_id, []))

    def earliest_open_round_start(self) -> Optional[int]:
        """Opening time of the earliest unclosed round of any open proposal."""
        with self._lock:
            starts = [
                p.round_opens_at(len(self._results.get(p.proposal_id, [])) + 1)
                for p in self._proposals.values()
                if p.status == ProposalStatus.OPEN
            ]
        return min(starts) if starts else None

    def rounds(self, proposal_id: str, now: Optional[int] = None) -> List[VotingRound]:
        """Schedule and state of every round of a proposal."""
        proposal = self._require(proposal_id)
        now = self._clock() if now is None else now
        results = {r.round_number: r for r in self._results.get(proposal_id, [])}

        views = []
        for n in range(1, proposal.required_rounds + 1):
            result = results.get(n)
            if result is not None:
                state = RoundState.CLOSED
            elif proposal.is_terminal or now < proposal.round_opens_at(n):
                state = RoundState.SCHEDULED
            else:
                state = RoundState.OPEN
            views.append(VotingRound(
                proposal_id=proposal_id,
                round_number=n,
                opens_at=proposal.round_opens_at(n),
                closes_at=proposal.round_closes_at(n),
                state=state,
                result=result,
            ))
        return views

    def close_round(self, proposal_id: str, now: Optional[int] = None) -> RoundResult:
        """
        Close the earliest unclosed round of a proposal.

        Closing before the scheduled close time freezes votes at `now`.
        Zap votes count from the previous round's close (round 1: its
        opening) up to the close, so no zap falls between two rounds.
        Without a usable snapshot the recompute hook, if set, is called
        once with the closing instant before giving up.

        Raises:
            UnknownProposalError: No such proposal
            ProposalStateError: Proposal decided, or next round not yet open
            StaleSnapshotError: No snapshot at or after the round opening, even
                after recomputing
        """
        now = self._clock() if now is None else now

        with self._lock:
            proposal = self._require(proposal_id)
            if proposal.status != ProposalStatus.OPEN:
                raise ProposalStateError(
                    f"Proposal {proposal_id} is {proposal.status.value}, no round to close"
                )

            results = self._results.setdefault(proposal_id, [])
            round_number = len(results) + 1
            opens_at = proposal.round_opens_at(round_number)
            closes_at = proposal.round_closes_at(round_number)
            if now < opens_at:
                raise ProposalStateError(
                    f"Round {round_number} of {proposal_id} opens at {opens_at}"
                )
            closing_at = min(now, closes_at)
            window_start = self._window_start(proposal, results)

            try:
                snapshot_set = self._aggregator.select_snapshot(
                    self._snapshots, proposal_id, round_number, opens_at, closing_at
                )
            except StaleSnapshotError:
                if self._recompute is None:
                    raise
                logger.info(
                    f"Recomputing weights at {closing_at} for {proposal_id} round {round_number}"
                )
                self._recompute(closing_at)
                snapshot_set = self._aggregator.select_snapshot(
                    self._snapshots, proposal_id, round_number, opens_at, closing_at
                )
            zap_votes = self._zap_votes.votes_for_proposal(
                proposal_id, proposal.governance_event_ids, start=window_start, end=closing_at
            )
            node_votes = self._nodes.active_votes(proposal_id, as_of=closing_at)

            result = self._aggregator.tally(
                proposal_id=proposal_id,
                round_number=round_number,
                threshold=proposal.threshold,
                zap_votes=zap_votes,
                node_votes=node_votes,
                snapshot_set=snapshot_set,
                opens_at=opens_at,
                closes_at=closes_at,
                closed_at=closing_at,
                window_start=window_start,
            )
            self._store.append(TABLE_ROUND_RESULTS, result)
            results.append(result)

            status = ProposalStatus.OPEN
            if result.veto_blocked:
                status = ProposalStatus.VETOED
            elif not result.threshold_met:
                status = ProposalStatus.EXPIRED
            elif round_number >= proposal.required_rounds:
                status = ProposalStatus.PASSED

            if status != ProposalStatus.OPEN:
                self._persist(replace(proposal, status=status, status_changed_at=closing_at))

        if status == ProposalStatus.OPEN:
            logger.info(
                f"Proposal {proposal_id} round {round_number}/{proposal.required_rounds} "
                f"passed, next round opens at {proposal.round_opens_at(round_number + 1)}"
            )
        else:
            logger.info(f"Proposal {proposal_id} {status.value.upper()} after round {round_number}")
        return result

    def close_due_rounds(self, now: Optional[int] = None) -> List[RoundResult]:
        """
        Close every round whose scheduled close time has passed.

        Rounds blocked by a stale snapshot stay open for the next pass.
        """
        now = self._clock() if now is None else now
        closed = []
        for proposal in self.proposals(ProposalStatus.OPEN):
            while True:
                current = self._proposals[proposal.proposal_id]
                if current.status != ProposalStatus.OPEN:
                    break
                round_number = len(self._results.get(current.proposal_id, [])) + 1
                if current.round_closes_at(round_number) > now:
                    break
                try:
                    closed.append(self.close_round(current.proposal_id, now))
                except StaleSnapshotError as e:
                    logger.warning(f"Round close deferred: {e}")
                    break
        return closed

    async def run_deadline_loop(self, interval: Optional[float] = None) -> None:
        """Background loop closing rounds at their deadlines."""
        import trio
        interval = interval or self.config.deadline_check_interval_seconds
        logger.info("Round deadline loop started")
        try:
            while True:
                await trio.sleep(interval)
                closed = self.close_due_rounds()
                if closed:
                    logger.info(f"Deadline loop closed {len(closed)} round(s)")
        finally:
            logger.info("Round deadline loop stopped")

    # ========================================================================
    # RESULTS
    # ========================================================================

    def get_latest_result(self, proposal_id: str) -> ProposalResult:
        """Status and every closed round of a proposal. Read-only."""
        with self._lock:
            proposal = self._require(proposal_id)
            rounds = list(self._results.get(proposal_id, []))
        return ProposalResult(
            proposal_id=proposal_id,
            tier=proposal.tier,
            status=proposal.status,
            rounds=rounds,
            required_rounds=proposal.required_rounds,
        )

    def get_stats(self) -> dict:
        with self._lock:
            by_status = {s.value: 0 for s in ProposalStatus}
            for proposal in self._proposals.values():
                by_status[proposal.status.value] += 1
            results = [r for rounds in self._results.values() for r in rounds]
        return {
            "proposals": len(self._proposals),
            "by_status": by_status,
            "rounds_closed": len(results),
            "rounds_veto_blocked": sum(1 for r in results if r.veto_blocked),
        }
