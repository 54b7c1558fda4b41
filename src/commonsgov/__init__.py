"""
commonsgov - Contribution-weighted governance voting engine

Converts verified contributions (merge mining, fee forwarding, Lightning
zaps) into voting weight and decides proposals with:
- Quadratic weighting over decayed contribution totals
- Per-entity cap at 5% of system weight
- Cooling-off for large single contributions
- Zap votes and economic node signals per proposal
- Independent mining, economic and zap veto checks
- Multi-round voting for high-tier proposals

Usage:
    from commonsgov import GovernanceEngine, load_config

    engine = GovernanceEngine(config=load_config("governance.json"),
                              storage_dir="~/.commonsgov/storage")

    engine.submit_contribution("pool-a", "merge_mining", 2_500_000,
                               occurred_at, "coinbase:...")
    engine.recompute_weights()

    engine.open_proposal("prop-42", tier=4, originator="alice")
    engine.record_zap_vote("prop-42", "prop-42", "npub1...", 1_000_000,
                           "support", occurred_at)
    result = engine.close_round("prop-42")
    status = engine.get_latest_result("prop-42")

Service Usage:
    import trio

    trio.run(engine.run)

Metrics Usage:
    from commonsgov.metrics import MetricsCollector

    metrics = MetricsCollector(engine)
    prometheus_output = metrics.collect()
"""

from .config import GovernanceConfig, ContributionTypeSpec, TierRequirements, load_config
from .errors import (
    GovernanceError,
    ConfigError,
    InvalidContributionError,
    DuplicateProofError,
    ProofConflictError,
    StaleSnapshotError,
    InvalidTierError,
    InvalidVoteError,
    InvalidProposalError,
    InvalidNodeError,
    UnknownProposalError,
    UnknownNodeError,
    ProposalStateError,
)
from .engine import GovernanceEngine
from .metrics import MetricsCollector
from .protocol import (
    ContributionType,
    ContributorType,
    NodeClass,
    NodeType,
    ProposalStatus,
    RoundResult,
    VoteType,
)

__version__ = "0.1.0"

__all__ = [
    "GovernanceConfig",
    "ContributionTypeSpec",
    "TierRequirements",
    "load_config",
    "GovernanceError",
    "ConfigError",
    "InvalidContributionError",
    "DuplicateProofError",
    "ProofConflictError",
    "StaleSnapshotError",
    "InvalidTierError",
    "InvalidVoteError",
    "InvalidProposalError",
    "InvalidNodeError",
    "UnknownProposalError",
    "UnknownNodeError",
    "ProposalStateError",
    "GovernanceEngine",
    "MetricsCollector",
    "ContributionType",
    "ContributorType",
    "NodeClass",
    "NodeType",
    "ProposalStatus",
    "RoundResult",
    "VoteType",
]
