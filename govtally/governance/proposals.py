"""
Governance Proposals

Defines the proposal lifecycle states, the legal transitions between them,
the Proposal record, and the filter structure used to list proposals.
"""

import time
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Set

from ..constants import (
    DEFAULT_PAGE_SIZE,
    MAX_DESCRIPTION_LENGTH,
    MAX_PAGE_SIZE,
    MAX_TITLE_LENGTH,
)
from ..exceptions import GovernanceError
from ..logger import get_logger
from .weight import format_weight, parse_positive_weight

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class InvalidProposalError(GovernanceError):
    """Raised when proposal data is invalid."""


class InvalidFilter(GovernanceError, ValueError):
    """Raised on unknown or malformed filter / pagination values."""


class ProposalNotFound(GovernanceError):
    """No proposal with the requested id."""

    def __init__(self, proposal_id: str):
        self.proposal_id = proposal_id
        super().__init__(f"Proposal not found: {proposal_id}")


class ProposalClosed(GovernanceError):
    """The proposal no longer accepts votes."""

    def __init__(self, proposal_id: str, status: "ProposalStatus"):
        self.proposal_id = proposal_id
        self.status = status
        super().__init__(
            f"Cannot vote on proposal {proposal_id} with status: {status.name}"
        )


class InvalidTransition(GovernanceError):
    """Raised on illegal state transitions."""

    def __init__(
        self,
        proposal_id: str,
        current: "ProposalStatus",
        requested: "ProposalStatus",
    ):
        self.proposal_id = proposal_id
        self.current = current
        self.requested = requested
        allowed = sorted(s.name for s in _VALID_TRANSITIONS.get(current, set()))
        super().__init__(
            f"Proposal {proposal_id}: cannot transition from {current.name} → "
            f"{requested.name}. Allowed: {allowed}"
        )


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class ProposalStatus(IntEnum):
    """Lifecycle stage."""
    OPEN = 0        # Accepting votes
    PASSED = 1      # Deadline passed, quorum met, for > against
    REJECTED = 2    # Deadline passed without quorum, or for <= against
    EXECUTED = 3    # Execution confirmed on-chain

    @classmethod
    def parse(cls, value: Any) -> "ProposalStatus":
        if isinstance(value, ProposalStatus):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        valid = ", ".join(s.name for s in cls)
        raise InvalidFilter(f"Invalid status {value!r}. Must be one of: {valid}")


# Valid forward transitions
_VALID_TRANSITIONS: Dict[ProposalStatus, Set[ProposalStatus]] = {
    ProposalStatus.OPEN:     {ProposalStatus.PASSED, ProposalStatus.REJECTED},
    ProposalStatus.PASSED:   {ProposalStatus.EXECUTED},
    # Terminal states: no further transitions
    ProposalStatus.REJECTED: set(),
    ProposalStatus.EXECUTED: set(),
}


def is_valid_transition(current: ProposalStatus, new: ProposalStatus) -> bool:
    return new in _VALID_TRANSITIONS.get(current, set())


def ensure_transition(proposal_id: str, current: ProposalStatus, new: ProposalStatus) -> None:
    """Raise InvalidTransition unless current → new is a legal edge."""
    if not is_valid_transition(current, new):
        raise InvalidTransition(proposal_id, current, new)


# ══════════════════════════════════════════════════════════════════════
#  PROPOSAL
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Proposal:
    """
    Governance proposal as persisted by the store.

    Fields:
        id:                 Store-assigned opaque identifier
        title:              Short title
        description:        Detailed description / rationale
        proposer_id:        Identity of the submitter
        quorum:             Minimum total participating weight (> 0)
        created_at:         Creation timestamp (epoch seconds)
        deadline:           End of the voting window, strictly after created_at
        status:             Current lifecycle stage
        contract_id:        Optional on-chain contract / action reference
        status_updated_at:  Timestamp of the last status change
        executed_tx:        On-chain reference recorded on EXECUTED
    """
    id: str
    title: str
    description: str
    proposer_id: str
    quorum: Decimal
    created_at: float = field(default_factory=time.time)
    deadline: Optional[float] = None
    status: ProposalStatus = ProposalStatus.OPEN
    contract_id: Optional[str] = None
    status_updated_at: Optional[float] = None
    executed_tx: Optional[str] = None

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise InvalidProposalError("Proposal title cannot be empty")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise InvalidProposalError(
                f"Proposal title exceeds {MAX_TITLE_LENGTH} characters"
            )
        if not self.description or not self.description.strip():
            raise InvalidProposalError("Proposal description cannot be empty")
        if len(self.description) > MAX_DESCRIPTION_LENGTH:
            raise InvalidProposalError(
                f"Proposal description exceeds {MAX_DESCRIPTION_LENGTH} characters"
            )
        if not self.proposer_id:
            raise InvalidProposalError("Proposer identity is required")
        self.quorum = parse_positive_weight(self.quorum)
        if self.deadline is not None and self.deadline <= self.created_at:
            raise InvalidProposalError(
                "Proposal deadline must be strictly after its creation time"
            )

    # ── Properties ────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return not _VALID_TRANSITIONS[self.status]

    @property
    def is_votable(self) -> bool:
        return self.status == ProposalStatus.OPEN

    def deadline_passed(self, now: float) -> bool:
        """True once *now* is strictly past the deadline. Never true without one."""
        return self.deadline is not None and now > self.deadline

    def is_due(self, now: float) -> bool:
        """OPEN with its voting window over: the next evaluate() will resolve it."""
        return self.is_votable and self.deadline_passed(now)

    # ── Serialization ─────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "proposerId": self.proposer_id,
            "quorum": format_weight(self.quorum),
            "createdAt": self.created_at,
            "deadline": self.deadline,
            "status": self.status.name,
            "contractId": self.contract_id,
            "statusUpdatedAt": self.status_updated_at,
            "executedTx": self.executed_tx,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Proposal":
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            proposer_id=row["proposer_id"],
            quorum=Decimal(row["quorum"]),
            created_at=row["created_at"],
            deadline=row["deadline"],
            status=ProposalStatus[row["status"]],
            contract_id=row["contract_id"],
            status_updated_at=row["status_updated_at"],
            executed_tx=row["executed_tx"],
        )

    def __repr__(self) -> str:
        return f"<Proposal {self.id} '{self.title}' status={self.status.name}>"


# ══════════════════════════════════════════════════════════════════════
#  FILTERS
# ══════════════════════════════════════════════════════════════════════

def parse_limit(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidFilter("limit must be a positive number")
    try:
        limit = int(value)
    except (TypeError, ValueError):
        raise InvalidFilter("limit must be a positive number") from None
    if limit < 1:
        raise InvalidFilter("limit must be a positive number")
    if limit > MAX_PAGE_SIZE:
        raise InvalidFilter(f"limit must not exceed {MAX_PAGE_SIZE}")
    return limit


def parse_offset(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise InvalidFilter("offset must be a non-negative number")
    try:
        offset = int(value)
    except (TypeError, ValueError):
        raise InvalidFilter("offset must be a non-negative number") from None
    if offset < 0:
        raise InvalidFilter("offset must be a non-negative number")
    return offset


@dataclass(frozen=True)
class ProposalFilters:
    """
    Recognised proposal list filters.

    Unknown keys passed to ``from_dict`` are rejected rather than ignored, so
    a misspelt filter never silently widens a query.
    """
    status: Optional[ProposalStatus] = None
    proposer_id: Optional[str] = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    _ALIASES = {"proposerId": "proposer_id"}

    def __post_init__(self):
        if self.status is not None:
            object.__setattr__(self, "status", ProposalStatus.parse(self.status))
        if self.proposer_id is not None and not isinstance(self.proposer_id, str):
            raise InvalidFilter("proposer_id must be a string")
        object.__setattr__(self, "limit", parse_limit(self.limit, DEFAULT_PAGE_SIZE))
        object.__setattr__(self, "offset", parse_offset(self.offset))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ProposalFilters":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name not in known:
                raise InvalidFilter(
                    f"Unknown proposal filter {key!r}. "
                    f"Recognised: {', '.join(sorted(known))}"
                )
            if value is None or value == "":
                continue
            kwargs[name] = value
        return cls(**kwargs)
