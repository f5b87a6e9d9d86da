"""
Weighted Vote Acceptance

Implements:
  - Vote choices: For / Against / Abstain (abstain counts toward quorum)
  - One vote per voter per proposal, enforced by the store's unique index
  - Status and deadline preconditions checked in the same atomic write
  - Synchronous re-evaluation of the proposal after each accepted vote
"""

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Union

from ..exceptions import GovernanceError, StoreUnavailable
from ..logger import get_logger
from .weight import WeightInput, format_weight, parse_positive_weight

if TYPE_CHECKING:
    from ..database_sqlite import GovernanceStore
    from .tally import ResolutionEngine

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════

class VotingError(GovernanceError):
    """Base voting error."""


class InvalidVoteChoice(VotingError, ValueError):
    """Choice is not For / Against / Abstain."""


class DeadlinePassed(VotingError):
    """Vote arrived after the proposal's deadline."""

    def __init__(self, proposal_id: str, deadline: float, now: float):
        self.proposal_id = proposal_id
        self.deadline = deadline
        self.now = now
        super().__init__(
            f"Voting deadline has passed for proposal {proposal_id} "
            f"(deadline={deadline}, now={now}, late by {now - deadline:.3f}s)"
        )


class DuplicateVote(VotingError):
    """Voter already cast a vote on this proposal."""

    def __init__(self, proposal_id: str, voter_id: str):
        self.proposal_id = proposal_id
        self.voter_id = voter_id
        super().__init__(
            f"{voter_id} has already voted on proposal {proposal_id}"
        )


# ══════════════════════════════════════════════════════════════════════
#  VOTE DATA
# ══════════════════════════════════════════════════════════════════════

class VoteChoice(IntEnum):
    FOR = 1
    AGAINST = 2
    ABSTAIN = 3

    @classmethod
    def parse(cls, value: Union["VoteChoice", str, bool]) -> "VoteChoice":
        """
        Accept a VoteChoice, its name, YES/NO, or a boolean
        (True = FOR, False = AGAINST).
        """
        if isinstance(value, VoteChoice):
            return value
        if isinstance(value, bool):
            return cls.FOR if value else cls.AGAINST
        if isinstance(value, str):
            key = value.strip().upper()
            key = _CHOICE_ALIASES.get(key, key)
            if key in cls.__members__:
                return cls[key]
        raise InvalidVoteChoice(
            f"Invalid vote choice: {value!r}. Must be FOR, AGAINST or ABSTAIN"
        )


_CHOICE_ALIASES = {"YES": "FOR", "NO": "AGAINST"}


@dataclass(frozen=True)
class Vote:
    """An individual vote. Immutable once accepted."""
    id: str
    proposal_id: str
    voter_id: str
    choice: VoteChoice
    weight: Decimal
    cast_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposalId": self.proposal_id,
            "voterId": self.voter_id,
            "choice": self.choice.name,
            "weight": format_weight(self.weight),
            "castAt": self.cast_at,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Vote":
        return cls(
            id=row["id"],
            proposal_id=row["proposal_id"],
            voter_id=row["voter_id"],
            choice=VoteChoice[row["choice"]],
            weight=Decimal(row["weight"]),
            cast_at=row["cast_at"],
        )


# ══════════════════════════════════════════════════════════════════════
#  ACCEPTANCE
# ══════════════════════════════════════════════════════════════════════

class VoteAcceptance:
    """
    Accepts votes against the current persisted state.

    Weight and choice are validated up front. Proposal existence, OPEN
    status, the deadline and voter uniqueness are all decided by a single
    conditional insert in the store, so concurrent submissions of the same
    (proposal, voter) pair produce exactly one vote and DuplicateVote for
    everyone else.
    """

    def __init__(
        self,
        store: "GovernanceStore",
        engine: Optional["ResolutionEngine"] = None,
        clock: Callable[[], float] = time.time,
        evaluate_on_vote: bool = True,
    ):
        """
        Args:
            store:            Open GovernanceStore
            engine:           ResolutionEngine run after each accepted vote
            clock:            Callable() → float  (epoch seconds)
            evaluate_on_vote: Re-evaluate the proposal synchronously on success
        """
        self.store = store
        self.engine = engine
        self._clock = clock
        self.evaluate_on_vote = evaluate_on_vote

    async def submit_vote(
        self,
        proposal_id: str,
        voter_id: str,
        choice: Union[VoteChoice, str, bool],
        weight: WeightInput,
    ) -> Vote:
        """
        Cast a weighted vote.

        Raises:
            InvalidVoteChoice / InvalidWeight / VotingError: bad input
            ProposalNotFound, ProposalClosed, DeadlinePassed, DuplicateVote:
                rejected by the store's current state
            StoreUnavailable: the store did not answer; nothing was persisted
        """
        if not voter_id or not str(voter_id).strip():
            raise VotingError("Voter identity is required")
        vote_choice = VoteChoice.parse(choice)
        vote_weight = parse_positive_weight(weight)

        candidate = Vote(
            id=uuid.uuid4().hex,
            proposal_id=proposal_id,
            voter_id=voter_id,
            choice=vote_choice,
            weight=vote_weight,
            cast_at=self._clock(),
        )

        try:
            vote = await self.store.insert_vote_if_absent(candidate)
        except DuplicateVote:
            logger.info(f"Duplicate vote rejected: {voter_id} on Proposal {proposal_id}")
            raise

        logger.info(
            f"Vote: {voter_id} → {vote.choice.name} on Proposal {proposal_id} "
            f"(weight={format_weight(vote.weight)})"
        )

        if self.engine is not None and self.evaluate_on_vote:
            try:
                await self.engine.evaluate(proposal_id)
            except StoreUnavailable as e:
                # The vote is durable; resolution happens on the next read.
                logger.warning(
                    f"Post-vote evaluation of Proposal {proposal_id} deferred: {e}"
                )
        return vote
