"""
commonsgov/protocol/zap_votes.py

Zap vote ingestion - per-proposal directed votes paid with Lightning zaps.

The Nostr-layer collaborator matches a verified zap receipt to a governance
event and then calls record_zap_vote(). Every zap becomes its own immutable
ZapVote; a second zap from the same voter is an additional vote with its
own quadratic weight (raw amounts are never summed before the square root).

Replayed zap receipts (same receipt_id) return the vote already recorded.

Usage:
    from commonsgov.protocol.zap_votes import ZapVoteBook, VoteType

    book = ZapVoteBook(store, calculator)
    vote = book.record_zap_vote(
        proposal_id="prop-42",
        governance_event_id="nostr:evt1",
        voter_id="npub1...",
        amount_sats=1_000_000,
        vote_type=VoteType.SUPPORT,
        occurred_at=1735689600,
    )
    votes = book.votes_for_proposal("prop-42", start=opens_at, end=closes_at)
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..errors import InvalidVoteError
from .storage import GovernanceStore, TABLE_ZAP_VOTES
from .weights import WeightCalculator

logger = logging.getLogger("commonsgov.protocol.zap_votes")


class VoteType(Enum):
    """Direction of a zap vote or node signal."""
    SUPPORT = "support"
    VETO = "veto"
    ABSTAIN = "abstain"

    @classmethod
    def parse(cls, value: Union["VoteType", str]) -> "VoteType":
        """Accept an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidVoteError(f"Unknown vote type: {value!r}")


@dataclass(frozen=True)
class ZapVote:
    """A single zap directed at a governance event."""
    vote_id: str
    proposal_id: str
    governance_event_id: str
    voter_id: str
    amount_sats: int
    vote_type: VoteType
    occurred_at: int
    weight: float                     # sqrt(amount_btc), before the per-voter cap
    receipt_id: str = ""
    recorded_at: int = 0

    def to_dict(self) -> dict:
        return {
            "vote_id": self.vote_id,
            "proposal_id": self.proposal_id,
            "governance_event_id": self.governance_event_id,
            "voter_id": self.voter_id,
            "amount_sats": self.amount_sats,
            "vote_type": self.vote_type.value,
            "occurred_at": self.occurred_at,
            "weight": self.weight,
            "receipt_id": self.receipt_id,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ZapVote":
        return cls(
            vote_id=data["vote_id"],
            proposal_id=data["proposal_id"],
            governance_event_id=data["governance_event_id"],
            voter_id=data["voter_id"],
            amount_sats=int(data["amount_sats"]),
            vote_type=VoteType(data["vote_type"]),
            occurred_at=int(data["occurred_at"]),
            weight=float(data["weight"]),
            receipt_id=data.get("receipt_id", ""),
            recorded_at=int(data.get("recorded_at", 0)),
        )


class ZapVoteBook:
    """Append-only book of zap votes, indexed by proposal."""

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        calculator: Optional[WeightCalculator] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Initialize ZapVoteBook.

        Args:
            store: Persistence layer (in-memory if omitted)
            calculator: Weight calculator used for per-zap weight
            clock: Returns the current unix time
        """
        self._store = store or GovernanceStore.in_memory()
        self._calculator = calculator or WeightCalculator()
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.Lock()

        self._by_proposal: Dict[str, List[ZapVote]] = {}
        self._by_receipt: Dict[str, ZapVote] = {}
        self._sequence = 0

        for vote in self._store.load(TABLE_ZAP_VOTES, ZapVote.from_dict):
            self._index(vote)
        if self._sequence:
            logger.info(f"Loaded {self._sequence} zap votes")

    def _index(self, vote: ZapVote) -> None:
        self._by_proposal.setdefault(vote.proposal_id, []).append(vote)
        if vote.receipt_id:
            self._by_receipt[vote.receipt_id] = vote
        self._sequence += 1

    def _generate_id(self, *parts: object) -> str:
        content = ":".join(str(p) for p in parts) + f":{self._sequence}"
        return hashlib.sha256(content.encode()).hexdigest()[:16]

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
        Record a zap already matched to a governance event.

        Raises:
            InvalidVoteError: Missing ids, non-positive amount, unknown vote type,
                or a replayed receipt with different fields
        """
        if not proposal_id or not governance_event_id or not voter_id:
            raise InvalidVoteError("proposal_id, governance_event_id and voter_id are required")
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
            raise InvalidVoteError(f"amount_sats must be a positive integer, got {amount_sats!r}")
        vote_type = VoteType.parse(vote_type)

        with self._lock:
            if receipt_id and receipt_id in self._by_receipt:
                existing = self._by_receipt[receipt_id]
                if (
                    existing.proposal_id != proposal_id
                    or existing.voter_id != voter_id
                    or existing.amount_sats != amount_sats
                    or existing.vote_type != vote_type
                ):
                    logger.error(
                        f"Zap receipt {receipt_id} replayed with different fields "
                        f"(existing vote {existing.vote_id})"
                    )
                    raise InvalidVoteError(f"Conflicting replay of zap receipt {receipt_id}")
                logger.debug(f"Duplicate zap receipt {receipt_id}")
                return existing

            vote = ZapVote(
                vote_id=self._generate_id(
                    proposal_id, governance_event_id, voter_id, amount_sats, occurred_at
                ),
                proposal_id=proposal_id,
                governance_event_id=governance_event_id,
                voter_id=voter_id,
                amount_sats=amount_sats,
                vote_type=vote_type,
                occurred_at=occurred_at,
                weight=self._calculator.zap_weight(amount_sats),
                receipt_id=receipt_id or "",
                recorded_at=self._clock(),
            )
            self._store.append(TABLE_ZAP_VOTES, vote)
            self._index(vote)

        logger.info(
            f"Zap vote {vote.vote_id}: {voter_id} {vote_type.value} "
            f"{amount_sats} sats on {proposal_id} (weight {vote.weight:.6f})"
        )
        return vote

    def votes_for_proposal(
        self,
        proposal_id: str,
        governance_event_ids: Optional[Iterable[str]] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[ZapVote]:
        """
        Zap votes for a proposal ordered by occurred_at.

        Args:
            proposal_id: Proposal to read
            governance_event_ids: Only votes targeting one of these events
            start: Inclusive lower bound on occurred_at
            end: Exclusive upper bound on occurred_at
        """
        events = set(governance_event_ids) if governance_event_ids is not None else None
        with self._lock:
            votes = list(self._by_proposal.get(proposal_id, []))

        selected = [
            v for v in votes
            if (events is None or v.governance_event_id in events)
            and (start is None or v.occurred_at >= start)
            and (end is None or v.occurred_at < end)
        ]
        selected.sort(key=lambda v: (v.occurred_at, v.vote_id))
        return selected

    def count(self, proposal_id: Optional[str] = None) -> int:
        with self._lock:
            if proposal_id is None:
                return sum(len(v) for v in self._by_proposal.values())
            return len(self._by_proposal.get(proposal_id, []))
