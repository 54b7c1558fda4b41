"""
commonsgov/protocol/economic_nodes.py

Economic node registry and node signals.

Economic nodes are mining pools, exchanges, custodians, major holders and
commons contributors acting in that capacity. Their qualification proofs
(hashpower, holdings, on-chain contributions) are verified externally; the
registry records the resulting weight and tracks suspension.

Each signal is tagged with a NodeClass at signal time so the aggregator
can bucket mining and economic weight without inspecting node types:
- MINING: mining pools, and commons contributors whose largest weight
  component is merge mining
- ECONOMIC: everyone else

Signal weight:
- Registered nodes: the weight recorded at registration, capped at
  cap_percentage of the latest snapshot's system total
- Commons contributors: capped participation weight x reputation
  multiplier from the latest snapshot at signal time

One active signal per node per proposal; the signal with the latest
signed_at (as of the read instant) wins.

Usage:
    from commonsgov.protocol.economic_nodes import EconomicNodeRegistry, NodeType

    registry = EconomicNodeRegistry(store, snapshots, reputation)
    registry.register_node("pool-a", NodeType.MINING_POOL, weight=12.5)
    registry.signal("prop-42", "pool-a", VoteType.VETO)
    active = registry.active_votes("prop-42", as_of=close_time)
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..config import GovernanceConfig
from ..errors import InvalidNodeError, UnknownNodeError
from .reputation import ReputationTable
from .storage import GovernanceStore, TABLE_ECONOMIC_NODES, TABLE_ECONOMIC_NODE_VOTES
from .weights import WeightSnapshotStore
from .zap_votes import VoteType

logger = logging.getLogger("commonsgov.protocol.economic_nodes")


# ============================================================================
# ENUMS
# ============================================================================

class NodeType(Enum):
    """Kinds of economic node."""
    MINING_POOL = "mining_pool"
    EXCHANGE = "exchange"
    CUSTODIAN = "custodian"
    MAJOR_HOLDER = "major_holder"
    COMMONS_CONTRIBUTOR = "commons_contributor"


class NodeClass(Enum):
    """Veto bucket a signal counts toward."""
    MINING = "mining"
    ECONOMIC = "economic"


MINING_COMPONENT = "merge_mining"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class EconomicNode:
    """Registered economic node (latest record per node_id wins)."""
    node_id: str
    node_type: NodeType
    weight: float = 0.0               # Externally verified weight
    contributor_id: str = ""          # Ledger identity for commons contributors
    registered_at: int = 0
    active: bool = True
    status_changed_at: int = 0
    status_reason: str = ""

    @property
    def participation_id(self) -> str:
        return self.contributor_id or self.node_id

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type.value,
            "weight": self.weight,
            "contributor_id": self.contributor_id,
            "registered_at": self.registered_at,
            "active": self.active,
            "status_changed_at": self.status_changed_at,
            "status_reason": self.status_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EconomicNode":
        return cls(
            node_id=data["node_id"],
            node_type=NodeType(data["node_type"]),
            weight=float(data.get("weight", 0.0)),
            contributor_id=data.get("contributor_id", ""),
            registered_at=int(data.get("registered_at", 0)),
            active=bool(data.get("active", True)),
            status_changed_at=int(data.get("status_changed_at", 0)),
            status_reason=data.get("status_reason", ""),
        )


@dataclass(frozen=True)
class EconomicNodeVote:
    """A node's signal on a proposal."""
    proposal_id: str
    node_id: str
    signal_type: VoteType
    weight_at_signal_time: float
    signed_at: int
    node_class: NodeClass
    recorded_at: int = 0

    def to_dict(self) -> dict:
        return {
            "proposal_id": self.proposal_id,
            "node_id": self.node_id,
            "signal_type": self.signal_type.value,
            "weight_at_signal_time": self.weight_at_signal_time,
            "signed_at": self.signed_at,
            "node_class": self.node_class.value,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EconomicNodeVote":
        return cls(
            proposal_id=data["proposal_id"],
            node_id=data["node_id"],
            signal_type=VoteType(data["signal_type"]),
            weight_at_signal_time=float(data["weight_at_signal_time"]),
            signed_at=int(data["signed_at"]),
            node_class=NodeClass(data["node_class"]),
            recorded_at=int(data.get("recorded_at", 0)),
        )


# ============================================================================
# REGISTRY
# ============================================================================

class EconomicNodeRegistry:
    """Registered economic nodes and their per-proposal signals."""

    def __init__(
        self,
        store: Optional[GovernanceStore] = None,
        snapshots: Optional[WeightSnapshotStore] = None,
        reputation: Optional[ReputationTable] = None,
        clock: Optional[Callable[[], int]] = None,
        config: Optional[GovernanceConfig] = None,
    ):
        """
        Initialize EconomicNodeRegistry.

        Args:
            store: Persistence layer (in-memory if omitted)
            snapshots: Weight snapshots for signal weight and the per-entity cap
            reputation: Multipliers applied to commons-contributor weight
            clock: Returns the current unix time
            config: Governance configuration (cap percentage)
        """
        self._store = store or GovernanceStore.in_memory()
        self._snapshots = snapshots if snapshots is not None else WeightSnapshotStore(self._store)
        self._reputation = reputation if reputation is not None else ReputationTable(self._store)
        self.config = config or GovernanceConfig()
        self._clock = clock or (lambda: int(time.time()))
        self._lock = threading.Lock()

        self._nodes: Dict[str, EconomicNode] = {}
        # proposal_id -> node_id -> signals in arrival order
        self._signals: Dict[str, Dict[str, List[EconomicNodeVote]]] = {}

        for node in self._store.load(TABLE_ECONOMIC_NODES, EconomicNode.from_dict):
            self._nodes[node.node_id] = node
        for vote in self._store.load(TABLE_ECONOMIC_NODE_VOTES, EconomicNodeVote.from_dict):
            self._signals.setdefault(vote.proposal_id, {}).setdefault(vote.node_id, []).append(vote)

        if self._nodes:
            logger.info(f"Loaded {len(self._nodes)} economic nodes")

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_node(
        self,
        node_id: str,
        node_type: Union[NodeType, str],
        weight: float = 0.0,
        contributor_id: str = "",
        registered_at: Optional[int] = None,
    ) -> EconomicNode:
        """
        Register (or re-register) a node whose qualification was verified externally.

        Args:
            node_id: Node identity
            node_type: NodeType or its string value
            weight: Verified voting weight (ignored for commons contributors)
            contributor_id: Ledger identity for a commons contributor
            registered_at: Registration time (defaults to now)

        Raises:
            InvalidNodeError: Missing id, unknown type or negative weight
        """
        if not node_id:
            raise InvalidNodeError("node_id is required")
        try:
            node_type = NodeType(node_type) if not isinstance(node_type, NodeType) else node_type
        except ValueError:
            raise InvalidNodeError(f"Unknown node type: {node_type!r}")
        if weight < 0:
            raise InvalidNodeError(f"Node weight must be non-negative, got {weight}")

        now = self._clock() if registered_at is None else registered_at
        node = EconomicNode(
            node_id=node_id,
            node_type=node_type,
            weight=float(weight),
            contributor_id=contributor_id,
            registered_at=now,
            active=True,
            status_changed_at=now,
        )
        with self._lock:
            previous = self._nodes.get(node_id)
            self._store.append(TABLE_ECONOMIC_NODES, node)
            self._nodes[node_id] = node

        action = "Re-registered" if previous else "Registered"
        logger.info(f"{action} {node_type.value} node {node_id} (weight {node.weight})")
        return node

    def _set_active(self, node_id: str, active: bool, reason: str, at: Optional[int]) -> EconomicNode:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                raise UnknownNodeError(f"Unknown economic node: {node_id}")
            node = replace(
                node,
                active=active,
                status_changed_at=self._clock() if at is None else at,
                status_reason=reason,
            )
            self._store.append(TABLE_ECONOMIC_NODES, node)
            self._nodes[node_id] = node
        return node

    def suspend_node(self, node_id: str, reason: str = "", at: Optional[int] = None) -> EconomicNode:
        """Suspend a node; its signals stop counting from `at` on."""
        node = self._set_active(node_id, False, reason, at)
        logger.warning(f"Suspended economic node {node_id}: {reason or 'no reason given'}")
        return node

    def reinstate_node(self, node_id: str, at: Optional[int] = None) -> EconomicNode:
        node = self._set_active(node_id, True, "", at)
        logger.info(f"Reinstated economic node {node_id}")
        return node

    def get_node(self, node_id: str) -> Optional[EconomicNode]:
        return self._nodes.get(node_id)

    def nodes(self, active_only: bool = False) -> List[EconomicNode]:
        with self._lock:
            nodes = list(self._nodes.values())
        if active_only:
            nodes = [n for n in nodes if n.active]
        return sorted(nodes, key=lambda n: n.node_id)

    # ========================================================================
    # SIGNALS
    # ========================================================================

    def _weight_and_class(self, node: EconomicNode, at: int) -> Tuple[float, NodeClass]:
        """
        Signal weight and veto bucket for a node at signal time.

        Registered weights are capped at cap_percentage of the latest
        snapshot's system total, the same cap zap voters get. There is no
        cap while the system total is zero.
        """
        snapshot_set = self._snapshots.latest(at)

        if node.node_type != NodeType.COMMONS_CONTRIBUTOR:
            node_class = (
                NodeClass.MINING if node.node_type == NodeType.MINING_POOL
                else NodeClass.ECONOMIC
            )
            weight = node.weight
            if snapshot_set is not None and snapshot_set.system_total_weight > 0:
                cap = snapshot_set.system_total_weight * self.config.cap_percentage
                if weight > cap:
                    logger.info(
                        f"Capped signal weight for node {node.node_id}: "
                        f"{weight:.6f} -> {cap:.6f}"
                    )
                    weight = cap
            return weight, node_class

        # Commons contributors carry the cap in their snapshot already
        snapshot = snapshot_set.get(node.participation_id) if snapshot_set else None
        if snapshot is None:
            logger.warning(f"No weight snapshot for commons contributor {node.node_id} at {at}")
            return 0.0, NodeClass.ECONOMIC

        weight = self._reputation.apply(node.participation_id, snapshot.capped_weight, at)
        components = snapshot.components
        node_class = NodeClass.ECONOMIC
        if components and components.get(MINING_COMPONENT, 0.0) > 0:
            if max(components, key=components.get) == MINING_COMPONENT:
                node_class = NodeClass.MINING
        return weight, node_class

    def signal(
        self,
        proposal_id: str,
        node_id: str,
        signal_type: Union[VoteType, str],
        signed_at: Optional[int] = None,
    ) -> EconomicNodeVote:
        """
        Record a node's signal; a later signal replaces the earlier one.

        Raises:
            UnknownNodeError: Node not registered or suspended
            InvalidVoteError: Unknown signal type
        """
        signal_type = VoteType.parse(signal_type)
        node = self._nodes.get(node_id)
        if node is None:
            raise UnknownNodeError(f"Unknown economic node: {node_id}")
        if not node.active:
            raise UnknownNodeError(f"Economic node {node_id} is suspended")

        signed_at = self._clock() if signed_at is None else signed_at
        weight, node_class = self._weight_and_class(node, signed_at)
        vote = EconomicNodeVote(
            proposal_id=proposal_id,
            node_id=node_id,
            signal_type=signal_type,
            weight_at_signal_time=weight,
            signed_at=signed_at,
            node_class=node_class,
            recorded_at=self._clock(),
        )
        with self._lock:
            self._store.append(TABLE_ECONOMIC_NODE_VOTES, vote)
            self._signals.setdefault(proposal_id, {}).setdefault(node_id, []).append(vote)

        logger.info(
            f"Node {node_id} ({node_class.value}) signaled {signal_type.value} "
            f"on {proposal_id} with weight {weight:.6f}"
        )
        return vote

    def active_votes(self, proposal_id: str, as_of: Optional[int] = None) -> List[EconomicNodeVote]:
        """
        Latest signal per node with signed_at <= as_of.

        Nodes suspended at or before as_of are excluded.
        """
        with self._lock:
            per_node = {
                node_id: list(votes)
                for node_id, votes in self._signals.get(proposal_id, {}).items()
            }

        active = []
        for node_id, votes in sorted(per_node.items()):
            node = self._nodes.get(node_id)
            if node is not None and not node.active and (
                as_of is None or node.status_changed_at <= as_of
            ):
                continue

            latest = None
            for vote in votes:
                if as_of is not None and vote.signed_at > as_of:
                    continue
                # Ties on signed_at go to the later arrival
                if latest is None or vote.signed_at >= latest.signed_at:
                    latest = vote
            if latest is not None:
                active.append(latest)
        return active

    def signal_count(self) -> int:
        with self._lock:
            return sum(
                len(votes)
                for per_node in self._signals.values()
                for votes in per_node.values()
            )
