"""
Tests for commonsgov/protocol/controller.py

Tests the per-proposal round state machine through the engine facade.
"""

import pytest

from commonsgov.engine import GovernanceEngine
from commonsgov.errors import (
    InvalidProposalError,
    InvalidTierError,
    InvalidVoteError,
    ProposalStateError,
    StaleSnapshotError,
    UnknownProposalError,
)
from commonsgov.protocol.controller import ProposalStatus, RoundState, VotingRoundController
from commonsgov.protocol.economic_nodes import NodeType


DAY = 86400
T0 = 1_700_000_000


# ============================================================================
# TEST DATA
# ============================================================================

class FakeClock:
    """Settable clock returning unix seconds."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return GovernanceEngine(clock=clock)


def signal_at(engine, clock, when, proposal_id, node_id, signal_type, weight=None):
    """Advance the clock, optionally re-register weight, then signal."""
    clock.now = when
    if weight is not None:
        engine.register_node(node_id, NodeType.EXCHANGE, weight=weight)
    return engine.signal(proposal_id, node_id, signal_type)


def recompute_at(engine, clock, when):
    clock.now = when
    return engine.recompute_weights()


# ============================================================================
# OPEN PROPOSAL TESTS
# ============================================================================

class TestOpenProposal:
    """Tests for opening proposals."""

    def test_tier_defaults(self, engine):
        """Test tier requirements are applied at open time."""
        proposal = engine.open_proposal("p4", tier=4, originator="alice")
        assert proposal.required_rounds == 2
        assert proposal.round_spacing_days == 30
        assert proposal.threshold == 2500.0
        assert proposal.voting_window_seconds == 14 * DAY
        assert proposal.governance_event_ids == ["p4"]
        assert proposal.status == ProposalStatus.OPEN

    @pytest.mark.parametrize("tier", [0, 6, "x", None])
    def test_invalid_tier(self, engine, tier):
        """Test unrecognized tiers fail at open time."""
        with pytest.raises(InvalidTierError):
            engine.open_proposal("bad", tier=tier)

    def test_scheduled_rounds_must_match_tier(self, engine):
        """Test a schedule inconsistent with the tier is rejected."""
        with pytest.raises(InvalidProposalError):
            engine.open_proposal("p", tier=5, scheduled_rounds=2)
        assert engine.open_proposal("p", tier=5, scheduled_rounds=3).required_rounds == 3

    def test_window_longer_than_spacing_rejected(self, engine):
        """Test a multi-round window may not overlap the next round."""
        with pytest.raises(InvalidProposalError):
            engine.open_proposal("p", tier=4, voting_window_seconds=31 * DAY)

    def test_duplicate_id(self, engine):
        """Test proposal ids are unique."""
        engine.open_proposal("p", tier=1)
        with pytest.raises(InvalidProposalError):
            engine.open_proposal("p", tier=2)


# ============================================================================
# SINGLE ROUND TESTS
# ============================================================================

class TestSingleRound:
    """Tests for tier 1-3 proposals."""

    def test_pass(self, engine, clock):
        """Test a tier 1 proposal meeting its threshold passes."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=150.0)
        engine.open_proposal("p1", tier=1)
        signal_at(engine, clock, T0 + DAY, "p1", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)

        result = engine.close_round("p1", now=T0 + 7 * DAY)
        assert result.threshold_met and not result.veto_blocked
        assert result.closed_at == T0 + 7 * DAY
        assert engine.get_latest_result("p1").status == ProposalStatus.PASSED

    def test_expired(self, engine, clock):
        """Test a proposal missing its threshold expires."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=50.0)
        engine.open_proposal("p1", tier=1)
        signal_at(engine, clock, T0 + DAY, "p1", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)

        engine.close_round("p1", now=T0 + 7 * DAY)
        assert engine.get_latest_result("p1").status == ProposalStatus.EXPIRED

    def test_vetoed(self, engine, clock):
        """Test an economic veto over 40% vetoes the proposal."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=200.0)
        engine.register_node("ex-2", NodeType.CUSTODIAN, weight=150.0)
        engine.open_proposal("p1", tier=1)
        signal_at(engine, clock, T0 + DAY, "p1", "ex-1", "support")
        signal_at(engine, clock, T0 + DAY, "p1", "ex-2", "veto")
        recompute_at(engine, clock, T0 + DAY)

        result = engine.close_round("p1", now=T0 + 7 * DAY)
        assert result.threshold_met
        assert result.veto_blocked
        assert engine.get_latest_result("p1").status == ProposalStatus.VETOED

    def test_last_signal_wins(self, engine, clock):
        """Test a node changing its signal only counts once."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=150.0)
        engine.open_proposal("p1", tier=1)
        signal_at(engine, clock, T0 + DAY, "p1", "ex-1", "veto")
        signal_at(engine, clock, T0 + 2 * DAY, "p1", "ex-1", "support")
        recompute_at(engine, clock, T0 + 2 * DAY)

        result = engine.close_round("p1", now=T0 + 7 * DAY)
        assert result.support_weight == 150.0
        assert result.veto_weight == 0.0

    def test_zap_votes_counted(self, engine, clock):
        """Test zap votes inside the window are tallied."""
        engine.open_proposal("p1", tier=1, governance_event_ids=["evt-a", "evt-b"])
        for i in range(20):
            engine.record_zap_vote("p1", "evt-a", f"v{i}", 2_500 * 10_000, "support", T0 + i)
        recompute_at(engine, clock, T0 + DAY)

        result = engine.close_round("p1", now=T0 + 7 * DAY)
        # 0.25 BTC per zap weighs 0.5; 20 voters, no snapshot weight so no cap
        assert result.support_weight == pytest.approx(10.0)
        assert result.zap_vote_count == 20

    def test_zap_to_foreign_event_rejected(self, engine):
        """Test zaps must target one of the proposal's events."""
        engine.open_proposal("p1", tier=1, governance_event_ids=["evt-a"])
        with pytest.raises(InvalidVoteError):
            engine.record_zap_vote("p1", "evt-z", "v", 1_000, "support", T0)

    def test_zap_to_unknown_proposal(self, engine):
        """Test zaps to unknown proposals are rejected."""
        with pytest.raises(UnknownProposalError):
            engine.record_zap_vote("nope", "nope", "v", 1_000, "support", T0)

    def test_early_close_freezes_votes(self, engine, clock):
        """Test votes dated after an early close are not counted."""
        engine.open_proposal("p1", tier=1)
        engine.record_zap_vote("p1", "p1", "early", 1_000_000, "support", T0 + DAY)
        engine.record_zap_vote("p1", "p1", "late", 1_000_000, "support", T0 + 4 * DAY)
        recompute_at(engine, clock, T0 + DAY)

        result = engine.close_round("p1", now=T0 + 3 * DAY)
        assert result.zap_vote_count == 1
        assert result.closed_at == T0 + 3 * DAY

    def test_stale_snapshot_recomputed_at_close(self, engine, clock):
        """Test a close without a fresh snapshot recomputes as of the close."""
        recompute_at(engine, clock, T0 - DAY)
        clock.now = T0
        engine.open_proposal("p1", tier=1)

        result = engine.close_round("p1", now=T0 + 7 * DAY)
        assert result.snapshot_computed_at == T0 + 7 * DAY
        assert engine.snapshots.latest().computed_at == T0 + 7 * DAY
        assert engine.get_latest_result("p1").status == ProposalStatus.EXPIRED

    def test_recompute_excludes_later_contributions(self, engine, clock):
        """Test the recovery snapshot only sees contributions recorded by the close."""
        for i in range(2):
            engine.submit_contribution(f"c-{i}", "merge_mining", 100_000_000, T0 - 30 * DAY, f"old-{i}")
        recompute_at(engine, clock, T0 - DAY)
        clock.now = T0
        engine.open_proposal("p1", tier=1)

        clock.now = T0 + 10 * DAY
        engine.submit_contribution("late", "merge_mining", 100_000_000, T0 + 9 * DAY, "late-0")

        result = engine.close_round("p1", now=T0 + 10 * DAY)
        snapshot_set = engine.snapshots.latest(result.snapshot_computed_at)
        assert result.snapshot_computed_at == T0 + 7 * DAY
        assert snapshot_set.get("late") is None
        assert snapshot_set.get("c-0") is not None

    def test_stale_snapshot_without_recompute(self, clock):
        """Test a bare controller refuses to close on a stale snapshot."""
        controller = VotingRoundController(clock=clock)
        controller.open_proposal("p1", tier=1, opened_at=T0)

        with pytest.raises(StaleSnapshotError):
            controller.close_round("p1", now=T0 + 7 * DAY)
        assert controller.get_latest_result("p1").rounds == []
        assert controller.get_latest_result("p1").status == ProposalStatus.OPEN

    def test_recompute_that_stays_stale(self, clock):
        """Test a recompute hook that publishes nothing still raises."""
        calls = []
        controller = VotingRoundController(clock=clock, recompute=calls.append)
        controller.open_proposal("p1", tier=1, opened_at=T0)

        with pytest.raises(StaleSnapshotError):
            controller.close_round("p1", now=T0 + 7 * DAY)
        assert calls == [T0 + 7 * DAY]

    def test_close_decided_proposal(self, engine, clock):
        """Test a decided proposal has no round to close."""
        engine.open_proposal("p1", tier=1)
        recompute_at(engine, clock, T0 + DAY)
        engine.close_round("p1", now=T0 + 7 * DAY)
        with pytest.raises(ProposalStateError):
            engine.close_round("p1", now=T0 + 8 * DAY)

    def test_unknown_proposal(self, engine):
        """Test closing an unknown proposal."""
        with pytest.raises(UnknownProposalError):
            engine.close_round("missing")


# ============================================================================
# MULTI-ROUND TESTS
# ============================================================================

class TestMultiRound:
    """Tests for tier 4 and tier 5 proposals."""

    def _setup_tier(self, engine, clock, tier, weight):
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=weight)
        engine.open_proposal("p", tier=tier, originator="alice")
        signal_at(engine, clock, T0 + DAY, "p", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)

    def test_tier4_pass_then_fail_threshold(self, engine, clock):
        """Test passing round 1 then missing round 2 expires the proposal."""
        self._setup_tier(engine, clock, 4, 3000.0)

        first = engine.close_round("p", now=T0 + 14 * DAY)
        assert first.passed
        assert engine.get_latest_result("p").status == ProposalStatus.OPEN

        signal_at(engine, clock, T0 + 31 * DAY, "p", "ex-1", "support", weight=100.0)
        recompute_at(engine, clock, T0 + 31 * DAY)
        second = engine.close_round("p", now=T0 + 44 * DAY)

        latest = engine.get_latest_result("p")
        assert not second.threshold_met
        assert latest.status == ProposalStatus.EXPIRED
        assert [r.round_number for r in latest.rounds] == [1, 2]

    def test_tier4_round_two_vetoed(self, engine, clock):
        """Test a veto in round 2 vetoes the whole proposal."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 14 * DAY)

        engine.register_node("ex-2", NodeType.MAJOR_HOLDER, weight=2500.0)
        signal_at(engine, clock, T0 + 31 * DAY, "p", "ex-2", "veto")
        recompute_at(engine, clock, T0 + 31 * DAY)
        second = engine.close_round("p", now=T0 + 44 * DAY)

        assert second.threshold_met and second.veto_blocked
        assert engine.get_latest_result("p").status == ProposalStatus.VETOED

    def test_tier4_both_pass(self, engine, clock):
        """Test signals persist across rounds and both rounds pass."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 14 * DAY)
        recompute_at(engine, clock, T0 + 31 * DAY)
        engine.close_round("p", now=T0 + 44 * DAY)
        assert engine.get_latest_result("p").status == ProposalStatus.PASSED

    def test_tier5_three_rounds(self, engine, clock):
        """Test tier 5 needs three passing rounds 60 days apart."""
        self._setup_tier(engine, clock, 5, 6000.0)

        for n in range(3):
            opens = T0 + n * 60 * DAY
            recompute_at(engine, clock, opens + DAY)
            engine.close_round("p", now=opens + 30 * DAY)
            expected = ProposalStatus.PASSED if n == 2 else ProposalStatus.OPEN
            assert engine.get_latest_result("p").status == expected

    def test_round_not_yet_open(self, engine, clock):
        """Test round 2 cannot close before it opens."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 14 * DAY)
        with pytest.raises(ProposalStateError):
            engine.close_round("p", now=T0 + 20 * DAY)

    def test_zaps_between_rounds_count_toward_next(self, engine, clock):
        """Test vote windows are contiguous across rounds."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.record_zap_vote("p", "p", "v1", 1_000_000, "support", T0 + DAY)
        engine.record_zap_vote("p", "p", "v2", 1_000_000, "support", T0 + 20 * DAY)
        engine.record_zap_vote("p", "p", "v3", 1_000_000, "support", T0 + 32 * DAY)

        first = engine.close_round("p", now=T0 + 14 * DAY)
        assert first.zap_vote_count == 1
        assert first.window_start == T0

        recompute_at(engine, clock, T0 + 31 * DAY)
        second = engine.close_round("p", now=T0 + 44 * DAY)
        assert second.zap_vote_count == 2
        assert second.window_start == T0 + 14 * DAY
        assert second.opens_at == T0 + 30 * DAY

    def test_early_close_moves_next_window(self, engine, clock):
        """Test zaps after an early close count toward the next round."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 5 * DAY)
        engine.record_zap_vote("p", "p", "v1", 1_000_000, "support", T0 + 6 * DAY)

        recompute_at(engine, clock, T0 + 31 * DAY)
        second = engine.close_round("p", now=T0 + 44 * DAY)
        assert second.window_start == T0 + 5 * DAY
        assert second.zap_vote_count == 1

    def test_zap_before_current_window_rejected(self, engine, clock):
        """Test a zap dated inside an already closed round is rejected."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 14 * DAY)
        assert engine.controller.vote_window_start("p") == T0 + 14 * DAY

        with pytest.raises(InvalidVoteError):
            engine.record_zap_vote("p", "p", "v1", 1_000_000, "support", T0 + 13 * DAY)
        vote = engine.record_zap_vote("p", "p", "v1", 1_000_000, "support", T0 + 14 * DAY)
        assert vote.occurred_at == T0 + 14 * DAY

    def test_zap_before_opening_rejected(self, engine):
        """Test a zap dated before round 1 opens is rejected."""
        engine.open_proposal("p", tier=1)
        with pytest.raises(InvalidVoteError):
            engine.record_zap_vote("p", "p", "v1", 1_000_000, "support", T0 - 1)

    def test_round_views(self, engine, clock):
        """Test round schedule and state reporting."""
        self._setup_tier(engine, clock, 4, 3000.0)
        engine.close_round("p", now=T0 + 14 * DAY)

        rounds = engine.controller.rounds("p", now=T0 + 20 * DAY)
        assert [r.state for r in rounds] == [RoundState.CLOSED, RoundState.SCHEDULED]
        assert rounds[1].opens_at == T0 + 30 * DAY
        assert rounds[1].closes_at == T0 + 44 * DAY


# ============================================================================
# WITHDRAWAL TESTS
# ============================================================================

class TestWithdraw:
    """Tests for proposal withdrawal."""

    def test_originator_withdraws(self, engine):
        """Test the originator may withdraw before any round closes."""
        engine.open_proposal("p", tier=2, originator="alice")
        proposal = engine.withdraw_proposal("p", "alice")
        assert proposal.status == ProposalStatus.WITHDRAWN
        with pytest.raises(ProposalStateError):
            engine.record_zap_vote("p", "p", "v", 1_000, "support", T0)

    def test_non_originator_rejected(self, engine):
        """Test only the originator may withdraw."""
        engine.open_proposal("p", tier=2, originator="alice")
        with pytest.raises(ProposalStateError):
            engine.withdraw_proposal("p", "mallory")

    def test_no_withdraw_after_round_closed(self, engine, clock):
        """Test withdrawal is impossible once a round has closed."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=3000.0)
        engine.open_proposal("p", tier=4, originator="alice")
        signal_at(engine, clock, T0 + DAY, "p", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)
        engine.close_round("p", now=T0 + 14 * DAY)

        with pytest.raises(ProposalStateError):
            engine.withdraw_proposal("p", "alice")
        assert engine.get_latest_result("p").status == ProposalStatus.OPEN


# ============================================================================
# DEADLINE AND PERSISTENCE TESTS
# ============================================================================

class TestDeadlines:
    """Tests for closing rounds at their scheduled time."""

    def test_close_due_rounds(self, engine, clock):
        """Test only rounds past their close time are closed."""
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=150.0)
        engine.open_proposal("short", tier=1)
        engine.open_proposal("long", tier=3)
        signal_at(engine, clock, T0 + DAY, "short", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)

        closed = engine.controller.close_due_rounds(now=T0 + 8 * DAY)
        assert [r.proposal_id for r in closed] == ["short"]
        assert closed[0].closed_at == T0 + 7 * DAY
        assert engine.get_latest_result("short").status == ProposalStatus.PASSED
        assert engine.get_latest_result("long").status == ProposalStatus.OPEN

    def test_stale_rounds_deferred(self, clock):
        """Test a due round without a snapshot stays open when nothing can recompute."""
        controller = VotingRoundController(clock=clock)
        controller.open_proposal("p", tier=1, opened_at=T0)
        assert controller.close_due_rounds(now=T0 + 8 * DAY) == []
        assert controller.get_latest_result("p").status == ProposalStatus.OPEN

    def test_stale_rounds_recomputed(self, engine):
        """Test the engine's deadline pass recomputes instead of deferring."""
        engine.open_proposal("p", tier=1)
        closed = engine.controller.close_due_rounds(now=T0 + 8 * DAY)
        assert [r.snapshot_computed_at for r in closed] == [T0 + 7 * DAY]
        assert engine.get_latest_result("p").status == ProposalStatus.EXPIRED


class TestPersistence:
    """Tests for proposal state across restarts."""

    def test_results_survive_restart(self, tmp_path, clock):
        """Test status and round history reload from disk."""
        engine = GovernanceEngine(storage_dir=tmp_path, clock=clock)
        engine.register_node("ex-1", NodeType.EXCHANGE, weight=3000.0)
        engine.open_proposal("p", tier=4, originator="alice")
        signal_at(engine, clock, T0 + DAY, "p", "ex-1", "support")
        recompute_at(engine, clock, T0 + DAY)
        engine.close_round("p", now=T0 + 14 * DAY)
        engine.close()

        reopened = GovernanceEngine(storage_dir=tmp_path, clock=clock)
        latest = reopened.get_latest_result("p")
        assert latest.status == ProposalStatus.OPEN
        assert len(latest.rounds) == 1
        assert latest.next_round == 2

        recompute_at(reopened, clock, T0 + 31 * DAY)
        reopened.close_round("p", now=T0 + 44 * DAY)
        assert reopened.get_latest_result("p").status == ProposalStatus.PASSED

    def test_result_to_dict(self, engine, clock):
        """Test the consumer view serializes."""
        engine.open_proposal("p", tier=1)
        recompute_at(engine, clock, T0 + DAY)
        engine.close_round("p", now=T0 + 7 * DAY)
        data = engine.get_latest_result("p").to_dict()
        assert data["status"] == "expired"
        assert data["next_round"] is None
        assert data["rounds"][0]["threshold"] == 100.0
