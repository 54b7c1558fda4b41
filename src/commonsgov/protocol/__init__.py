"""
commonsgov/protocol/

Ledger, weighting, vote sources, aggregation and round control.
"""

from .storage import GovernanceStore, MemoryBackend, FileBackend, StorageBackend
from .ledger import (
    Contribution,
    ContributionLedger,
    ContributionType,
    ContributorType,
    LedgerSnapshot,
)
from .weights import (
    WeightCalculator,
    WeightSnapshot,
    WeightSnapshotStore,
    SnapshotSet,
    quadratic_weight,
)
from .reputation import ReputationTable, MultiplierEntry
from .zap_votes import ZapVote, ZapVoteBook, VoteType
from .economic_nodes import (
    EconomicNode,
    EconomicNodeRegistry,
    EconomicNodeVote,
    NodeClass,
    NodeType,
)
from .aggregator import RoundResult, VetoPolicy, VoteAggregator
from .controller import (
    Proposal,
    ProposalResult,
    ProposalStatus,
    RoundState,
    VotingRound,
    VotingRoundController,
)

__all__ = [
    "GovernanceStore",
    "MemoryBackend",
    "FileBackend",
    "StorageBackend",
    "Contribution",
    "ContributionLedger",
    "ContributionType",
    "ContributorType",
    "LedgerSnapshot",
    "WeightCalculator",
    "WeightSnapshot",
    "WeightSnapshotStore",
    "SnapshotSet",
    "quadratic_weight",
    "ReputationTable",
    "MultiplierEntry",
    "ZapVote",
    "ZapVoteBook",
    "VoteType",
    "EconomicNode",
    "EconomicNodeRegistry",
    "EconomicNodeVote",
    "NodeClass",
    "NodeType",
    "RoundResult",
    "VetoPolicy",
    "VoteAggregator",
    "Proposal",
    "ProposalResult",
    "ProposalStatus",
    "RoundState",
    "VotingRound",
    "VotingRoundController",
]
