"""
commonsgov/protocol/ledger.py

Contribution Ledger - durable, append-only store of verified contributions.

External verifiers (merge-mining coinbase checker, fee-forwarding on-chain
checker, Lightning zap-receipt checker) validate proofs and then call
submit_contribution(). The ledger performs no decay, capping or proof
verification; it only enforces field validity and replay protection.

Replay protection:
- Each proof_reference may be consumed once
- Re-submitting a proof with identical fields is idempotent
- Re-submitting a proof with different fields is a conflict for review

Concurrency:
- Writers coordinate only on their proof_reference stripe and their
  contributor stripe; there is no ledger-wide write lock

Usage:
    from commonsgov.protocol.ledger import ContributionLedger

    ledger = ContributionLedger(store)
    contribution_id = ledger.submit_contribution(
        contributor_id="pool-a",
        contribution_type="merge_mining",
        amount_sats=2_500_000,
        occurred_at=1735689600,
        proof_reference="coinbase:abcd...",
    )
    history = ledger.query("pool-a", contribution_type="merge_mining")
"""

import bisect
import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..config import GovernanceConfig, SATS_PER_BTC
from ..errors import (
    DuplicateProofError,
    GovernanceError,
    InvalidContributionError,
    ProofConflictError,
)
from .storage import GovernanceStore, TABLE_AUDIT_LOG, TABLE_CONTRIBUTIONS

logger = logging.getLogger("commonsgov.protocol.ledger")


# ============================================================================
# CONSTANTS
# ============================================================================

LOCK_STRIPES = 64                     # Independent write stripes


# ============================================================================
# ENUMS
# ============================================================================

class ContributorType(Enum):
    """Role under which a contributor earned weight."""
    MERGE_MINER = "merge_miner"
    FEE_FORWARDER = "fee_forwarder"
    ZAP_USER = "zap_user"
    ECONOMIC_NODE = "economic_node"


class ContributionType(Enum):
    """Built-in contribution types (the registry may add more)."""
    MERGE_MINING = "merge_mining"
    FEE_FORWARDING = "fee_forwarding"
    ZAP = "zap"


DEFAULT_CONTRIBUTOR_TYPES = {
    ContributionType.MERGE_MINING.value: ContributorType.MERGE_MINER,
    ContributionType.FEE_FORWARDING.value: ContributorType.FEE_FORWARDER,
    ContributionType.ZAP.value: ContributorType.ZAP_USER,
}


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class Contribution:
    """An immutable, verified contribution fact."""
    contributor_id: str
    contributor_type: ContributorType
    contribution_type: str            # Key into the contribution type registry
    amount_sats: int
    occurred_at: int                  # Unix timestamp
    verified: bool
    proof_reference: str              # Opaque handle to the external proof
    recorded_at: int = 0
    contribution_id: str = ""

    @property
    def amount_btc(self) -> float:
        return self.amount_sats / SATS_PER_BTC

    def fingerprint(self) -> str:
        """Hash of the fields that must match on a replayed proof."""
        content = (
            f"{self.contributor_id}:{self.contribution_type}:"
            f"{self.amount_sats}:{self.occurred_at}"
        )
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> dict:
        return {
            "contribution_id": self.contribution_id,
            "contributor_id": self.contributor_id,
            "contributor_type": self.contributor_type.value,
            "contribution_type": self.contribution_type,
            "amount_sats": self.amount_sats,
            "occurred_at": self.occurred_at,
            "verified": self.verified,
            "proof_reference": self.proof_reference,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Contribution":
        return cls(
            contributor_id=data["contributor_id"],
            contributor_type=ContributorType(data["contributor_type"]),
            contribution_type=data["contribution_type"],
            amount_sats=int(data["amount_sats"]),
            occurred_at=int(data["occurred_at"]),
            verified=bool(data["verified"]),
            proof_reference=data["proof_reference"],
            recorded_at=int(data.get("recorded_at", 0)),
            contribution_id=data.get("contribution_id", ""),
        )

    @staticmethod
    def generate_id(proof_reference: str) -> str:
        """Contribution IDs are derived from the proof so replays map to one ID."""
        return hashlib.sha256(proof_reference.encode()).hexdigest()[:16]


@dataclass
class AuditEntry:
    """Replay-protection record keyed by proof_reference."""
    proof_reference: str
    contribution_id: str
    fingerprint: str
    recorded_at: int

    def to_dict(self) -> dict:
        return {
            "proof_reference": self.proof_reference,
            "contribution_id": self.contribution_id,
            "fingerprint": self.fingerprint,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        return cls(
            proof_reference=data["proof_reference"],
            contribution_id=data["contribution_id"],
            fingerprint=data["fingerprint"],
            recorded_at=int(data.get("recorded_at", 0)),
        )


@dataclass
class BatchOutcome:
    """Result of one item in record_batch()."""
    proof_reference: str
    contribution_id: Optional[str] = None
    error: Optional[GovernanceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ContributorTotals:
    """Raw (undecayed) totals for reporting."""
    contributor_id: str
    by_type_sats: Dict[str, int] = field(default_factory=dict)
    count: int = 0

    @property
    def total_sats(self) -> int:
        return sum(self.by_type_sats.values())

    @property
    def total_btc(self) -> float:
        return self.total_sats / SATS_PER_BTC

    def to_dict(self) -> dict:
        return {
            "contributor_id": self.contributor_id,
            "by_type_sats": dict(self.by_type_sats),
            "count": self.count,
            "total_sats": self.total_sats,
        }


@dataclass(frozen=True)
class LedgerSnapshot:
    """Consistent read of the ledger as of one instant."""
    taken_at: int
    by_contributor: Dict[str, Tuple[Contribution, ...]]

    def contributors(self) -> List[str]:
        return sorted(self.by_contributor)

    def contributions_for(self, contributor_id: str) -> Tuple[Contribution, ...]:
        return self.by_contributor.get(contributor_id, ())


def _order_key(c: Contribution) -> Tuple[int, str]:
    return (c.occurred_at, c.contribution_id)


# ============================================================================
# CONTRIBUTION LEDGER
# ============================================================================

class ContributionLedger:
    """
    Append-only store of verified contributions.

    Owns the contribution set exclusively; the weight calculator and the
    aggregator only read snapshots.
    """

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize ContributionLedger.

        Args:
            store: Persistence layer (in-memory if omitted)
            config: Governance configuration (for the type registry)
            clock: Returns the current unix time
        """
        self._store = store or GovernanceStore.in_memory()
        self._config = config or GovernanceConfig()
        self._clock = clock or (lambda: int(time.time()))

        self._proof_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._contributor_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

        # proof_reference -> AuditEntry
        self._audit: Dict[str, AuditEntry] = {}
        # contribution_id -> Contribution
        self._by_id: Dict[str, Contribution] = {}
        # contributor_id -> contributions ordered by occurred_at
        self._by_contributor: Dict[str, List[Contribution]] = {}

        # Counters for metrics
        self.duplicates_seen = 0
        self.conflicts_seen = 0
        self.rejected = 0

        self._load()

    def _load(self) -> None:
        """Rebuild indexes from persisted rows."""
        for entry in self._store.load(TABLE_AUDIT_LOG, AuditEntry.from_dict):
            self._audit.setdefault(entry.proof_reference, entry)

        for contribution in self._store.load(TABLE_CONTRIBUTIONS, Contribution.from_dict):
            if contribution.contribution_id in self._by_id:
                continue
            self._index(contribution)
            if contribution.proof_reference not in self._audit:
                # Crash between the two appends; restore the audit row
                entry = AuditEntry(
                    proof_reference=contribution.proof_reference,
                    contribution_id=contribution.contribution_id,
                    fingerprint=contribution.fingerprint(),
                    recorded_at=contribution.recorded_at,
                )
                self._store.append(TABLE_AUDIT_LOG, entry)
                self._audit[entry.proof_reference] = entry

        if self._by_id:
            logger.info(
                f"Loaded {len(self._by_id)} contributions from "
                f"{len(self._by_contributor)} contributors"
            )

    def _index(self, contribution: Contribution) -> None:
        self._by_id[contribution.contribution_id] = contribution
        history = self._by_contributor.setdefault(contribution.contributor_id, [])
        bisect.insort(history, contribution, key=_order_key)

    def _stripe(self, locks: List[threading.Lock], key: str) -> threading.Lock:
        digest = hashlib.sha256(key.encode()).digest()
        return locks[digest[0] % len(locks)]

    # ========================================================================
    # WRITES
    # ========================================================================

    def validate(self, contribution: Contribution) -> None:
        """Raise InvalidContributionError if the contribution is malformed."""
        if not contribution.contributor_id:
            raise InvalidContributionError("contributor_id is required")
        if not contribution.proof_reference:
            raise InvalidContributionError("proof_reference is required")
        if not contribution.verified:
            raise InvalidContributionError(
                f"Unverified contribution: {contribution.proof_reference}"
            )
        amount = contribution.amount_sats
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidContributionError(
                f"amount_sats must be an integer number of satoshis, got {amount!r}"
            )
        if amount <= 0:
            raise InvalidContributionError(f"amount_sats must be positive, got {amount}")
        if not isinstance(contribution.occurred_at, int) or contribution.occurred_at < 0:
            raise InvalidContributionError(
                f"occurred_at must be a unix timestamp, got {contribution.occurred_at!r}"
            )
        if self._config.get_contribution_type(contribution.contribution_type) is None:
            raise InvalidContributionError(
                f"Unknown contribution type: {contribution.contribution_type}"
            )

    def record(self, contribution: Contribution) -> str:
        """
        Record a verified contribution.

        Args:
            contribution: Contribution with verified=True

        Returns:
            ContributionId

        Raises:
            InvalidContributionError: Malformed, non-positive or unverified
            DuplicateProofError: Proof already recorded with identical fields
            ProofConflictError: Proof already recorded with different fields
        """
        try:
            self.validate(contribution)
        except InvalidContributionError as e:
            self.rejected += 1
            logger.warning(f"Rejected contribution: {e}")
            raise

        fingerprint = contribution.fingerprint()

        with self._stripe(self._proof_locks, contribution.proof_reference):
            existing = self._audit.get(contribution.proof_reference)
            if existing is not None:
                if existing.fingerprint == fingerprint:
                    self.duplicates_seen += 1
                    logger.debug(f"Duplicate proof {contribution.proof_reference}")
                    raise DuplicateProofError(
                        contribution.proof_reference, existing.contribution_id
                    )
                self.conflicts_seen += 1
                logger.error(
                    f"Proof conflict for {contribution.proof_reference}: "
                    f"existing {existing.contribution_id} differs from new submission "
                    f"by {contribution.contributor_id} ({contribution.amount_sats} sats)"
                )
                raise ProofConflictError(
                    contribution.proof_reference,
                    existing.contribution_id,
                    "fields differ from the recorded contribution",
                )

            recorded_at = self._clock()
            stored = Contribution(
                contributor_id=contribution.contributor_id,
                contributor_type=contribution.contributor_type,
                contribution_type=contribution.contribution_type,
                amount_sats=contribution.amount_sats,
                occurred_at=contribution.occurred_at,
                verified=True,
                proof_reference=contribution.proof_reference,
                recorded_at=recorded_at,
                contribution_id=Contribution.generate_id(contribution.proof_reference),
            )
            entry = AuditEntry(
                proof_reference=stored.proof_reference,
                contribution_id=stored.contribution_id,
                fingerprint=fingerprint,
                recorded_at=recorded_at,
            )

            self._store.append(TABLE_CONTRIBUTIONS, stored)
            self._store.append(TABLE_AUDIT_LOG, entry)
            self._audit[stored.proof_reference] = entry

            with self._stripe(self._contributor_locks, stored.contributor_id):
                self._index(stored)

        logger.info(
            f"Recorded {stored.contribution_type} contribution {stored.contribution_id}: "
            f"{stored.amount_sats} sats for {stored.contributor_id}"
        )
        return stored.contribution_id

    def submit_contribution(
        self,
        contributor_id: str,
        contribution_type: str,
        amount_sats: int,
        occurred_at: int,
        proof_reference: str,
        contributor_type: Optional[ContributorType] = None,
    ) -> str:
        """
        Verifier boundary: record an already-verified contribution.

        An identical replay returns the original ContributionId.

        Raises:
            InvalidContributionError, ProofConflictError
        """
        if isinstance(contribution_type, ContributionType):
            contribution_type = contribution_type.value
        if contributor_type is None:
            contributor_type = DEFAULT_CONTRIBUTOR_TYPES.get(
                contribution_type, ContributorType.ECONOMIC_NODE
            )

        contribution = Contribution(
            contributor_id=contributor_id,
            contributor_type=contributor_type,
            contribution_type=contribution_type,
            amount_sats=amount_sats,
            occurred_at=occurred_at,
            verified=True,
            proof_reference=proof_reference,
        )
        try:
            return self.record(contribution)
        except DuplicateProofError as e:
            return e.contribution_id

    def record_batch(self, contributions: Iterable[Contribution]) -> List[BatchOutcome]:
        """
        Record many contributions; one failure never aborts the rest.

        Returns:
            One BatchOutcome per input, in order
        """
        outcomes = []
        for contribution in contributions:
            outcome = BatchOutcome(proof_reference=contribution.proof_reference)
            try:
                outcome.contribution_id = self.record(contribution)
            except DuplicateProofError as e:
                outcome.contribution_id = e.contribution_id
                outcome.error = e
            except GovernanceError as e:
                outcome.error = e
            outcomes.append(outcome)

        failed = sum(1 for o in outcomes if o.error is not None)
        logger.info(f"Batch recorded {len(outcomes) - failed}/{len(outcomes)} contributions")
        return outcomes

    # ========================================================================
    # READS
    # ========================================================================

    def query(
        self,
        contributor_id: str,
        contribution_type: Optional[str] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Contribution]:
        """
        Contributions for one contributor ordered by occurred_at ascending.

        Args:
            contributor_id: Contributor to read
            contribution_type: Optional type filter
            start: Inclusive lower bound on occurred_at
            end: Inclusive upper bound on occurred_at
        """
        if isinstance(contribution_type, ContributionType):
            contribution_type = contribution_type.value

        with self._stripe(self._contributor_locks, contributor_id):
            history = list(self._by_contributor.get(contributor_id, []))

        return [
            c for c in history
            if (contribution_type is None or c.contribution_type == contribution_type)
            and (start is None or c.occurred_at >= start)
            and (end is None or c.occurred_at <= end)
        ]

    def get(self, contribution_id: str) -> Optional[Contribution]:
        return self._by_id.get(contribution_id)

    def contributors(self) -> List[str]:
        return sorted(self._by_contributor)

    def snapshot(self, at: Optional[int] = None) -> LedgerSnapshot:
        """
        Consistent read of every contribution recorded at or before `at`.

        Writes that land after the cut are picked up by the next snapshot.
        """
        at = self._clock() if at is None else at
        by_contributor: Dict[str, Tuple[Contribution, ...]] = {}
        for contributor_id in list(self._by_contributor):
            with self._stripe(self._contributor_locks, contributor_id):
                rows = tuple(
                    c for c in self._by_contributor.get(contributor_id, [])
                    if c.recorded_at <= at
                )
            if rows:
                by_contributor[contributor_id] = rows
        return LedgerSnapshot(taken_at=at, by_contributor=by_contributor)

    def totals(
        self,
        contributor_id: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> ContributorTotals:
        """Raw per-type totals over a time range."""
        totals = ContributorTotals(contributor_id=contributor_id)
        for c in self.query(contributor_id, start=start, end=end):
            totals.by_type_sats[c.contribution_type] = (
                totals.by_type_sats.get(c.contribution_type, 0) + c.amount_sats
            )
            totals.count += 1
        return totals

    def get_stats(self) -> dict:
        return {
            "contributions": len(self._by_id),
            "contributors": len(self._by_contributor),
            "duplicates_seen": self.duplicates_seen,
            "conflicts_seen": self.conflicts_seen,
            "rejected": self.rejected,
        }
