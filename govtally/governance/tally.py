"""
Tally & Resolution Engine

Implements:
  - Order-independent tally: for / against / abstain weight
  - Quorum: total participating weight (abstain included) ≥ proposal quorum
  - Resolution only after the deadline; no early close on quorum alone
  - Tie (for == against) rejects
  - Compare-and-swap status writes keyed on the vote count of the snapshot
  - PASSED → EXECUTED only on explicit external confirmation
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional

from ..constants import EVALUATE_MAX_ATTEMPTS
from ..logger import get_logger
from .proposals import (
    InvalidTransition,
    Proposal,
    ProposalNotFound,
    ProposalStatus,
    ensure_transition,
)
from .voting import Vote, VoteChoice
from .weight import ZERO, format_weight, sum_weights

if TYPE_CHECKING:
    from ..database_sqlite import GovernanceStore

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  TALLY
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TallyResult:
    """Aggregated weights for one proposal snapshot."""
    proposal_id: str
    quorum: Decimal
    votes_for: Decimal = ZERO
    votes_against: Decimal = ZERO
    votes_abstain: Decimal = ZERO
    vote_count: int = 0

    @property
    def total_weight(self) -> Decimal:
        """Total participating weight (including abstain)."""
        return sum_weights((self.votes_for, self.votes_against, self.votes_abstain))

    @property
    def quorum_met(self) -> bool:
        return self.total_weight >= self.quorum

    @property
    def majority_for(self) -> bool:
        """Strictly more FOR than AGAINST weight. Abstain is ignored."""
        return self.votes_for > self.votes_against

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "votesFor": format_weight(self.votes_for),
            "votesAgainst": format_weight(self.votes_against),
            "votesAbstain": format_weight(self.votes_abstain),
            "totalWeight": format_weight(self.total_weight),
            "voteCount": self.vote_count,
            "quorum": format_weight(self.quorum),
            "quorumMet": self.quorum_met,
        }


def compute_tally(proposal: Proposal, votes: Iterable[Vote]) -> TallyResult:
    """Sum weights per choice. The result does not depend on vote order."""
    buckets: Dict[VoteChoice, List[Decimal]] = {choice: [] for choice in VoteChoice}
    count = 0
    for vote in votes:
        buckets[vote.choice].append(vote.weight)
        count += 1
    return TallyResult(
        proposal_id=proposal.id,
        quorum=proposal.quorum,
        votes_for=sum_weights(buckets[VoteChoice.FOR]),
        votes_against=sum_weights(buckets[VoteChoice.AGAINST]),
        votes_abstain=sum_weights(buckets[VoteChoice.ABSTAIN]),
        vote_count=count,
    )


def decide(tally: TallyResult, deadline_passed: bool) -> Optional[ProposalStatus]:
    """
    Outcome for an OPEN proposal, or None while it must stay OPEN.

    Before the deadline the tally is never decisive, whatever it shows.
    """
    if not deadline_passed:
        return None
    if not tally.quorum_met:
        return ProposalStatus.REJECTED
    if tally.majority_for:
        return ProposalStatus.PASSED
    return ProposalStatus.REJECTED


@dataclass
class ResolutionOutcome:
    """Result of one evaluate() call."""
    proposal_id: str
    status: ProposalStatus
    previous_status: ProposalStatus
    tally: TallyResult
    deadline_passed: bool
    transitioned: bool = False
    evaluated_at: float = field(default_factory=time.time)

    @property
    def quorum_met(self) -> bool:
        return self.tally.quorum_met

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal_id,
            "status": self.status.name,
            "previousStatus": self.previous_status.name,
            "transitioned": self.transitioned,
            "deadlinePassed": self.deadline_passed,
            "quorumMet": self.quorum_met,
            "tally": self.tally.to_dict(),
            "evaluatedAt": self.evaluated_at,
        }


# ══════════════════════════════════════════════════════════════════════
#  RESOLUTION ENGINE
# ══════════════════════════════════════════════════════════════════════

class ResolutionEngine:
    """
    Decides and enacts proposal status transitions.

    Holds no state of its own: every call reads the store, evaluates, and
    writes back through a compare-and-swap, so any number of engines may
    evaluate the same proposal concurrently.
    """

    def __init__(
        self,
        store: "GovernanceStore",
        clock: Callable[[], float] = time.time,
        max_attempts: int = EVALUATE_MAX_ATTEMPTS,
    ):
        """
        Args:
            store:        Open GovernanceStore
            clock:        Callable() → float  (epoch seconds)
            max_attempts: CAS attempts per evaluate() before deferring
        """
        self.store = store
        self._clock = clock
        self.max_attempts = max(1, max_attempts)

    async def _load(self, proposal_id: str):
        proposal = await self.store.find_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        votes, _ = await self.store.list_votes(proposal_id)
        return proposal, compute_tally(proposal, votes)

    async def evaluate(self, proposal_id: str) -> ResolutionOutcome:
        """
        Evaluate a proposal and apply the decision rule.

        Idempotent: a proposal that is no longer OPEN is returned unchanged
        without any write.
        """
        for attempt in range(1, self.max_attempts + 1):
            now = self._clock()
            proposal, tally = await self._load(proposal_id)
            passed = proposal.deadline_passed(now)

            if proposal.status != ProposalStatus.OPEN:
                return ResolutionOutcome(
                    proposal_id=proposal_id,
                    status=proposal.status,
                    previous_status=proposal.status,
                    tally=tally,
                    deadline_passed=passed,
                    evaluated_at=now,
                )

            decision = decide(tally, passed)
            if decision is None:
                return ResolutionOutcome(
                    proposal_id=proposal_id,
                    status=ProposalStatus.OPEN,
                    previous_status=ProposalStatus.OPEN,
                    tally=tally,
                    deadline_passed=passed,
                    evaluated_at=now,
                )

            applied = await self.store.update_proposal_status(
                proposal_id,
                expected_status=ProposalStatus.OPEN,
                new_status=decision,
                updated_at=now,
                expected_vote_count=tally.vote_count,
            )
            if applied:
                logger.info(
                    f"Proposal {proposal_id}: OPEN → {decision.name} "
                    f"(for={format_weight(tally.votes_for)}, "
                    f"against={format_weight(tally.votes_against)}, "
                    f"total={format_weight(tally.total_weight)}, "
                    f"quorum={format_weight(tally.quorum)})"
                )
                return ResolutionOutcome(
                    proposal_id=proposal_id,
                    status=decision,
                    previous_status=ProposalStatus.OPEN,
                    tally=tally,
                    deadline_passed=passed,
                    transitioned=True,
                    evaluated_at=now,
                )

            logger.debug(
                f"Proposal {proposal_id}: snapshot changed during evaluation "
                f"(attempt {attempt}/{self.max_attempts}), re-reading"
            )

        logger.warning(
            f"Proposal {proposal_id}: not resolved after {self.max_attempts} attempts; "
            f"deferred to the next evaluation"
        )
        return ResolutionOutcome(
            proposal_id=proposal_id,
            status=proposal.status,
            previous_status=proposal.status,
            tally=tally,
            deadline_passed=passed,
            evaluated_at=now,
        )

    async def evaluate_due(self) -> List[ResolutionOutcome]:
        """Evaluate every OPEN proposal whose deadline has passed."""
        due = await self.store.list_due_proposals(self._clock())
        outcomes = []
        for proposal in due:
            outcomes.append(await self.evaluate(proposal.id))
        if due:
            resolved = sum(1 for o in outcomes if o.transitioned)
            logger.info(f"Scheduled evaluation: {resolved}/{len(due)} due proposals resolved")
        return outcomes

    async def confirm_execution(
        self,
        proposal_id: str,
        executed_by: str,
        tx_ref: Optional[str] = None,
    ) -> Proposal:
        """
        PASSED → EXECUTED after the external executor confirmed the action.

        Raises:
            ProposalNotFound: unknown proposal
            InvalidTransition: proposal is not PASSED
        """
        proposal = await self.store.find_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        ensure_transition(proposal_id, proposal.status, ProposalStatus.EXECUTED)

        applied = await self.store.update_proposal_status(
            proposal_id,
            expected_status=ProposalStatus.PASSED,
            new_status=ProposalStatus.EXECUTED,
            updated_at=self._clock(),
            updated_by=executed_by,
            executed_tx=tx_ref,
        )
        current = await self.store.find_proposal(proposal_id)
        if not applied:
            # Another confirmation got there first
            raise InvalidTransition(proposal_id, current.status, ProposalStatus.EXECUTED)

        logger.info(
            f"Proposal {proposal_id}: PASSED → EXECUTED by {executed_by}"
            + (f" (tx={tx_ref})" if tx_ref else "")
        )
        return current
