"""
govtally Governance Core

Provides:
  - parse_weight / round_half_up / InvalidWeight             (weight.py)
  - ProposalStatus / Proposal / ProposalFilters              (proposals.py)
  - VoteChoice / Vote / VoteAcceptance                       (voting.py)
  - TallyResult / ResolutionEngine / ResolutionOutcome       (tally.py)
  - GovernanceMetrics / MetricsAggregator                    (metrics.py)
  - AuditEntry / AuditFilters / AuditPage / AuditReconciler  (audit.py)
  - GovernanceService                                        (service.py)
"""

from ..exceptions import GovernanceError
from .weight import (
    InvalidWeight,
    format_weight,
    parse_positive_weight,
    parse_weight,
    round_half_up,
)
from .proposals import (
    InvalidFilter,
    InvalidProposalError,
    InvalidTransition,
    Proposal,
    ProposalClosed,
    ProposalFilters,
    ProposalNotFound,
    ProposalStatus,
)
from .voting import (
    DeadlinePassed,
    DuplicateVote,
    InvalidVoteChoice,
    Vote,
    VoteAcceptance,
    VoteChoice,
    VotingError,
)
from .tally import (
    ResolutionEngine,
    ResolutionOutcome,
    TallyResult,
    compute_tally,
    decide,
)
from .metrics import GovernanceMetrics, MetricsAggregator
from .audit import AuditEntry, AuditFilters, AuditPage, AuditReconciler, AuditSource
from .service import (
    GovernanceParameters,
    GovernanceService,
    ProposalCreated,
    ProposalPage,
    VoteCast,
    VotePage,
)

__all__ = [
    # Errors
    "GovernanceError",
    "InvalidWeight",
    "InvalidFilter",
    "InvalidProposalError",
    "InvalidTransition",
    "ProposalClosed",
    "ProposalNotFound",
    "DeadlinePassed",
    "DuplicateVote",
    "InvalidVoteChoice",
    "VotingError",
    # Weights
    "format_weight",
    "parse_positive_weight",
    "parse_weight",
    "round_half_up",
    # Proposals
    "Proposal",
    "ProposalFilters",
    "ProposalStatus",
    # Voting
    "Vote",
    "VoteAcceptance",
    "VoteChoice",
    # Tally
    "ResolutionEngine",
    "ResolutionOutcome",
    "TallyResult",
    "compute_tally",
    "decide",
    # Metrics
    "GovernanceMetrics",
    "MetricsAggregator",
    # Audit
    "AuditEntry",
    "AuditFilters",
    "AuditPage",
    "AuditReconciler",
    "AuditSource",
    # Service
    "GovernanceParameters",
    "GovernanceService",
    "ProposalCreated",
    "ProposalPage",
    "VoteCast",
    "VotePage",
]
