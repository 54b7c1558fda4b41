"""
commonsgov/errors.py

Exception types raised by the governance engine.
"""

from typing import Optional


class GovernanceError(Exception):
    """Base class for all engine errors."""
    pass


class ConfigError(GovernanceError):
    """Configuration value is missing or out of range."""
    pass


class InvalidContributionError(GovernanceError):
    """Contribution is malformed, non-positive or unverified."""
    pass


class DuplicateProofError(GovernanceError):
    """Proof reference was already consumed with identical fields."""

    def __init__(self, proof_reference: str, contribution_id: str):
        super().__init__(f"Proof already recorded: {proof_reference}")
        self.proof_reference = proof_reference
        self.contribution_id = contribution_id


class ProofConflictError(GovernanceError):
    """Same proof reference submitted with different fields."""

    def __init__(self, proof_reference: str, existing_id: str, detail: str = ""):
        message = f"Conflicting submission for proof {proof_reference}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.proof_reference = proof_reference
        self.existing_id = existing_id


class StaleSnapshotError(GovernanceError):
    """No weight snapshot recent enough to close a round."""

    def __init__(self, proposal_id: str, round_number: int, latest_computed_at: Optional[int] = None):
        super().__init__(
            f"No weight snapshot for proposal {proposal_id} round {round_number} "
            f"(latest: {latest_computed_at})"
        )
        self.proposal_id = proposal_id
        self.round_number = round_number
        self.latest_computed_at = latest_computed_at


class InvalidTierError(GovernanceError):
    """Unrecognized proposal tier."""
    pass


class InvalidVoteError(GovernanceError):
    """Zap vote or node signal is malformed."""
    pass


class InvalidProposalError(GovernanceError):
    """Proposal parameters are inconsistent or the id is taken."""
    pass


class UnknownProposalError(GovernanceError):
    """No proposal with the given id."""
    pass


class ProposalStateError(GovernanceError):
    """Operation is not allowed in the proposal's current state."""
    pass


class UnknownNodeError(GovernanceError):
    """Economic node is not registered or not active."""
    pass


class InvalidNodeError(GovernanceError):
    """Economic node registration is malformed."""
    pass
