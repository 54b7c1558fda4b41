"""
Tests for commonsgov/protocol/ledger.py

Tests the append-only contribution ledger and its replay protection.
"""

import threading

import pytest

from commonsgov.errors import (
    DuplicateProofError,
    InvalidContributionError,
    ProofConflictError,
)
from commonsgov.protocol.ledger import (
    Contribution,
    ContributionLedger,
    ContributionType,
    ContributorType,
)
from commonsgov.protocol.storage import GovernanceStore, TABLE_AUDIT_LOG


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


def create_test_contribution(
    contributor_id: str = "miner-1",
    contribution_type: str = "merge_mining",
    amount_sats: int = 1_000_000,
    occurred_at: int = T0,
    proof_reference: str = "proof-1",
    verified: bool = True,
) -> Contribution:
    """Create a test contribution."""
    return Contribution(
        contributor_id=contributor_id,
        contributor_type=ContributorType.MERGE_MINER,
        contribution_type=contribution_type,
        amount_sats=amount_sats,
        occurred_at=occurred_at,
        verified=verified,
        proof_reference=proof_reference,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return ContributionLedger(clock=clock)


# ============================================================================
# RECORD TESTS
# ============================================================================

class TestRecord:
    """Tests for recording contributions."""

    def test_submit_returns_id(self, ledger):
        """Test submit_contribution returns a ContributionId."""
        contribution_id = ledger.submit_contribution(
            "miner-1", "merge_mining", 2_500_000, T0, "coinbase:aa"
        )
        assert contribution_id
        stored = ledger.get(contribution_id)
        assert stored.amount_sats == 2_500_000
        assert stored.contributor_type == ContributorType.MERGE_MINER
        assert stored.recorded_at == T0

    def test_submit_accepts_enum_type(self, ledger):
        """Test the contribution type may be given as an enum."""
        contribution_id = ledger.submit_contribution(
            "zapper", ContributionType.ZAP, 10_000, T0, "zap:1"
        )
        assert ledger.get(contribution_id).contribution_type == "zap"
        assert ledger.get(contribution_id).contributor_type == ContributorType.ZAP_USER

    def test_identical_replay_returns_same_id(self, ledger):
        """Test replaying a proof with identical fields is idempotent."""
        first = ledger.submit_contribution("miner-1", "merge_mining", 500, T0, "p")
        second = ledger.submit_contribution("miner-1", "merge_mining", 500, T0, "p")
        assert first == second
        assert len(ledger.query("miner-1")) == 1
        assert ledger.duplicates_seen == 1

    def test_record_raises_duplicate(self, ledger):
        """Test record() reports a replay as DuplicateProofError."""
        contribution_id = ledger.record(create_test_contribution())
        with pytest.raises(DuplicateProofError) as exc_info:
            ledger.record(create_test_contribution())
        assert exc_info.value.contribution_id == contribution_id

    def test_conflicting_replay(self, ledger):
        """Test same proof with a different amount is a conflict."""
        ledger.record(create_test_contribution(amount_sats=1_000))
        with pytest.raises(ProofConflictError):
            ledger.record(create_test_contribution(amount_sats=2_000))
        assert ledger.conflicts_seen == 1
        assert ledger.query("miner-1")[0].amount_sats == 1_000

    def test_conflict_not_swallowed_by_submit(self, ledger):
        """Test submit_contribution re-raises conflicts."""
        ledger.submit_contribution("miner-1", "merge_mining", 500, T0, "p")
        with pytest.raises(ProofConflictError):
            ledger.submit_contribution("miner-2", "merge_mining", 500, T0, "p")

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_invalid_amounts(self, ledger, amount):
        """Test non-positive and non-integer amounts are rejected."""
        with pytest.raises(InvalidContributionError):
            ledger.record(create_test_contribution(amount_sats=amount))
        assert ledger.rejected == 1

    def test_unverified_rejected(self, ledger):
        """Test unverified contributions are rejected."""
        with pytest.raises(InvalidContributionError):
            ledger.record(create_test_contribution(verified=False))

    def test_unknown_type_rejected(self, ledger):
        """Test contribution types outside the registry are rejected."""
        with pytest.raises(InvalidContributionError):
            ledger.record(create_test_contribution(contribution_type="staking"))

    def test_missing_proof_rejected(self, ledger):
        """Test an empty proof reference is rejected."""
        with pytest.raises(InvalidContributionError):
            ledger.record(create_test_contribution(proof_reference=""))

    def test_audit_row_written(self, clock):
        """Test each record appends an audit row keyed by proof."""
        store = GovernanceStore.in_memory()
        ledger = ContributionLedger(store, clock=clock)
        ledger.record(create_test_contribution(proof_reference="p-audit"))
        rows = store.backend.scan(TABLE_AUDIT_LOG)
        assert [r["proof_reference"] for r in rows] == ["p-audit"]


class TestRecordBatch:
    """Tests for batch recording."""

    def test_batch_continues_after_failures(self, ledger):
        """Test one bad item never aborts the batch."""
        ledger.record(create_test_contribution(proof_reference="dup"))
        outcomes = ledger.record_batch([
            create_test_contribution(proof_reference="a"),
            create_test_contribution(proof_reference="bad", amount_sats=0),
            create_test_contribution(proof_reference="dup"),
            create_test_contribution(proof_reference="b"),
        ])
        assert [o.ok for o in outcomes] == [True, False, False, True]
        assert isinstance(outcomes[1].error, InvalidContributionError)
        assert isinstance(outcomes[2].error, DuplicateProofError)
        assert outcomes[2].contribution_id is not None
        assert len(ledger.query("miner-1")) == 3


# ============================================================================
# READ TESTS
# ============================================================================

class TestQuery:
    """Tests for ledger reads."""

    def test_query_ordered_by_occurred_at(self, ledger):
        """Test results come back ordered regardless of arrival order."""
        for i, offset in enumerate([5, 1, 3]):
            ledger.record(create_test_contribution(
                occurred_at=T0 + offset * DAY, proof_reference=f"p{i}"
            ))
        history = ledger.query("miner-1")
        assert [c.occurred_at for c in history] == [T0 + DAY, T0 + 3 * DAY, T0 + 5 * DAY]

    def test_query_filters(self, ledger):
        """Test type and inclusive time-range filters."""
        ledger.record(create_test_contribution(occurred_at=T0, proof_reference="a"))
        ledger.record(create_test_contribution(
            occurred_at=T0 + DAY, proof_reference="b", contribution_type="fee_forwarding"
        ))
        ledger.record(create_test_contribution(occurred_at=T0 + 2 * DAY, proof_reference="c"))

        assert len(ledger.query("miner-1", contribution_type="merge_mining")) == 2
        assert len(ledger.query("miner-1", start=T0 + DAY, end=T0 + 2 * DAY)) == 2
        assert ledger.query("nobody") == []

    def test_snapshot_excludes_later_writes(self, ledger, clock):
        """Test a snapshot only sees rows recorded at or before its cut."""
        ledger.record(create_test_contribution(proof_reference="early"))
        clock.now = T0 + 100
        ledger.record(create_test_contribution(proof_reference="late"))

        snapshot = ledger.snapshot(at=T0 + 50)
        assert len(snapshot.contributions_for("miner-1")) == 1
        assert len(ledger.snapshot().contributions_for("miner-1")) == 2

    def test_totals(self, ledger):
        """Test raw per-type totals."""
        ledger.record(create_test_contribution(amount_sats=100, proof_reference="a"))
        ledger.record(create_test_contribution(
            amount_sats=50, proof_reference="b", contribution_type="zap"
        ))
        totals = ledger.totals("miner-1")
        assert totals.by_type_sats == {"merge_mining": 100, "zap": 50}
        assert totals.total_sats == 150
        assert totals.count == 2


class TestRestart:
    """Tests for replay protection across restarts."""

    def test_replay_after_restart(self, tmp_path, clock):
        """Test the audit log survives a restart."""
        ledger = ContributionLedger(GovernanceStore.on_disk(tmp_path), clock=clock)
        original = ledger.submit_contribution("miner-1", "merge_mining", 700, T0, "p")

        reopened = ContributionLedger(GovernanceStore.on_disk(tmp_path), clock=clock)
        assert reopened.submit_contribution("miner-1", "merge_mining", 700, T0, "p") == original
        with pytest.raises(ProofConflictError):
            reopened.submit_contribution("miner-1", "merge_mining", 701, T0, "p")
        assert len(reopened.query("miner-1")) == 1

    def test_missing_audit_row_restored(self, tmp_path, clock):
        """Test a contribution persisted without its audit row is still protected."""
        store = GovernanceStore.on_disk(tmp_path)
        contribution = create_test_contribution()
        stored = Contribution.from_dict({
            **contribution.to_dict(),
            "contribution_id": Contribution.generate_id(contribution.proof_reference),
            "recorded_at": T0,
        })
        store.append("contributions", stored)

        ledger = ContributionLedger(GovernanceStore.on_disk(tmp_path), clock=clock)
        with pytest.raises(DuplicateProofError):
            ledger.record(contribution)


class TestConcurrentWriters:
    """Tests for many verifiers submitting at once."""

    WRITERS = 8

    def _run_writers(self, target):
        barrier = threading.Barrier(self.WRITERS)
        errors = []

        def worker(i):
            barrier.wait()
            try:
                target(i)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.WRITERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []

    def test_same_and_distinct_proofs(self, clock):
        """Test replays race to one record while distinct proofs all land."""
        store = GovernanceStore.in_memory()
        ledger = ContributionLedger(store, clock=clock)
        shared_ids = []
        own_ids = {}

        def submit(i):
            shared_ids.append(ledger.submit_contribution(
                "miner-1", "merge_mining", 5_000, T0, "shared-proof"
            ))
            own_ids[i] = ledger.submit_contribution(
                f"miner-{i}", "fee_forwarding", 1_000 + i, T0, f"own-proof-{i}"
            )

        self._run_writers(submit)

        assert len(shared_ids) == self.WRITERS
        assert len(set(shared_ids)) == 1
        assert len(set(own_ids.values())) == self.WRITERS

        proofs = [r["proof_reference"] for r in store.backend.scan(TABLE_AUDIT_LOG)]
        assert sorted(proofs) == sorted(
            ["shared-proof"] + [f"own-proof-{i}" for i in range(self.WRITERS)]
        )
        assert ledger.get_stats()["contributions"] == self.WRITERS + 1
        assert ledger.get_stats()["duplicates_seen"] == self.WRITERS - 1
        merge = ledger.query("miner-1", contribution_type="merge_mining")
        assert [c.contribution_id for c in merge] == [shared_ids[0]]
        for i in range(self.WRITERS):
            fee = ledger.query(f"miner-{i}", contribution_type="fee_forwarding")
            assert [c.amount_sats for c in fee] == [1_000 + i]

    def test_conflicting_replays_keep_first_writer(self, clock):
        """Test exactly one of several conflicting submissions wins."""
        ledger = ContributionLedger(clock=clock)
        accepted = []
        conflicts = []

        def submit(i):
            try:
                accepted.append(ledger.submit_contribution(
                    "miner-1", "merge_mining", 1_000 + i, T0, "contested-proof"
                ))
            except ProofConflictError:
                conflicts.append(i)

        self._run_writers(submit)

        assert len(accepted) == 1
        assert len(conflicts) == self.WRITERS - 1
        assert len(ledger.query("miner-1")) == 1
