"""
Governance service.

Single entry point for front ends (the CLI here, an HTTP or RPC layer
elsewhere). Wires the vote acceptance protocol, the resolution engine, the
metrics aggregator and the audit reconciler around one injected store, and
returns an unsigned transaction alongside every record a caller has to anchor
on-chain.
"""

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Union

from ..chain.events import (
    HTTPEventSource,
    OnChainEventSource,
    StaticEventSource,
    parse_timestamp,
)
from ..chain.transactions import (
    OP_CAST_VOTE,
    OP_CREATE_PROPOSAL,
    EnvelopeTransactionBuilder,
    TransactionBuilder,
    TransactionIntent,
    UnsignedTransaction,
)
from ..constants import (
    AVERAGE_WEIGHT_DECIMALS,
    DEFAULT_VOTES_PAGE_SIZE,
    EVALUATE_MAX_ATTEMPTS,
    RATE_DECIMALS,
)
from ..exceptions import OnChainSourceUnavailable
from ..logger import get_logger
from .audit import AuditFilters, AuditPage, AuditReconciler
from .metrics import GovernanceMetrics, MetricsAggregator
from .proposals import (
    InvalidProposalError,
    Proposal,
    ProposalFilters,
    ProposalNotFound,
    parse_limit,
    parse_offset,
)
from .tally import ResolutionEngine, ResolutionOutcome
from .voting import Vote, VoteAcceptance, VoteChoice
from .weight import WeightInput, format_weight, parse_positive_weight

if TYPE_CHECKING:
    from ..config.loader import GovtallyConfig
    from ..database_sqlite import GovernanceStore

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  RESULTS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class ProposalCreated:
    proposal: Proposal
    transaction: UnsignedTransaction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposalId": self.proposal.id,
            "proposal": self.proposal.to_dict(),
            "transaction": self.transaction.to_dict(),
        }


@dataclass
class VoteCast:
    vote: Vote
    transaction: UnsignedTransaction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vote": self.vote.to_dict(),
            "transaction": self.transaction.to_dict(),
        }


@dataclass
class ProposalPage:
    proposals: List[Proposal]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [p.to_dict() for p in self.proposals],
            "meta": {"total": self.total, "limit": self.limit, "offset": self.offset},
        }


@dataclass
class VotePage:
    votes: List[Vote]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [v.to_dict() for v in self.votes],
            "meta": {"total": self.total, "limit": self.limit, "offset": self.offset},
        }


@dataclass
class GovernanceParameters:
    """Local parameters overlaid with whatever the contract reports."""
    local: Dict[str, Any]
    on_chain: Dict[str, Any]
    degraded: bool = False
    degraded_reason: Optional[str] = None

    @property
    def effective(self) -> Dict[str, Any]:
        return {**self.local, **self.on_chain}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameters": self.effective,
            "local": self.local,
            "onChain": self.on_chain,
            "degraded": self.degraded,
            "degradedReason": self.degraded_reason,
        }


# ══════════════════════════════════════════════════════════════════════
#  SERVICE
# ══════════════════════════════════════════════════════════════════════

class GovernanceService:
    """
    Facade over the governance core.

    Reads are never stale: an OPEN proposal whose deadline has passed is
    evaluated before it is served, so a scheduler running ``evaluate_due``
    only shortens the window in which the stored status lags.
    """

    def __init__(
        self,
        store: "GovernanceStore",
        event_source: Optional[OnChainEventSource] = None,
        tx_builder: Optional[TransactionBuilder] = None,
        clock: Callable[[], float] = time.time,
        evaluate_on_vote: bool = True,
        max_attempts: int = EVALUATE_MAX_ATTEMPTS,
        weight_places: int = AVERAGE_WEIGHT_DECIMALS,
        rate_places: int = RATE_DECIMALS,
        parameters: Optional[Mapping[str, Any]] = None,
    ):
        self.store = store
        self.event_source = event_source or StaticEventSource()
        self.tx_builder = tx_builder or EnvelopeTransactionBuilder()
        self._clock = clock
        self.local_parameters = dict(parameters or {})

        self.engine = ResolutionEngine(store, clock=clock, max_attempts=max_attempts)
        self.voting = VoteAcceptance(
            store, engine=self.engine, clock=clock, evaluate_on_vote=evaluate_on_vote
        )
        self.metrics = MetricsAggregator(store, weight_places, rate_places)
        self.audit = AuditReconciler(store, self.event_source)

    @classmethod
    def from_config(
        cls,
        store: "GovernanceStore",
        config: "GovtallyConfig",
        event_source: Optional[OnChainEventSource] = None,
        clock: Callable[[], float] = time.time,
    ) -> "GovernanceService":
        """Build a service from loaded configuration."""
        if event_source is None:
            if config.chain.events_url:
                event_source = HTTPEventSource(
                    config.chain.events_url, timeout=config.chain.request_timeout
                )
            else:
                event_source = StaticEventSource()
        gov = config.governance
        return cls(
            store,
            event_source=event_source,
            tx_builder=EnvelopeTransactionBuilder(
                network=config.chain.network,
                contract_id=config.chain.contract_id or None,
            ),
            clock=clock,
            evaluate_on_vote=gov.evaluate_on_vote,
            max_attempts=gov.evaluate_max_attempts,
            weight_places=gov.average_weight_decimals,
            rate_places=gov.rate_decimals,
            parameters=gov.parameters(),
        )

    async def close(self) -> None:
        """Release the event source. The store belongs to the caller."""
        await self.event_source.close()

    # ── Proposals ─────────────────────────────────────────────────────

    def _parse_deadline(self, deadline: Any, now: float) -> Optional[float]:
        if deadline is None or deadline == "":
            return None
        try:
            value = parse_timestamp(deadline)
        except ValueError:
            raise InvalidProposalError(
                f"deadline must be epoch seconds or an ISO-8601 date, got {deadline!r}"
            ) from None
        if value <= now:
            raise InvalidProposalError("deadline must be in the future")
        return value

    async def create_proposal(
        self,
        title: str,
        description: str,
        proposer_id: str,
        quorum: WeightInput,
        deadline: Union[float, str, None] = None,
        contract_id: Optional[str] = None,
    ) -> ProposalCreated:
        """
        Create an OPEN proposal and the unsigned transaction anchoring it.

        Raises:
            InvalidProposalError: missing fields or a deadline not in the future
            InvalidWeight: quorum is not a positive weight
        """
        now = self._clock()
        quorum_weight = parse_positive_weight(quorum)
        deadline_ts = self._parse_deadline(deadline, now)

        proposal = await self.store.insert_proposal(
            title=title,
            description=description,
            proposer_id=proposer_id,
            quorum=quorum_weight,
            created_at=now,
            deadline=deadline_ts,
            contract_id=contract_id,
        )
        logger.info(
            f"Proposal {proposal.id} created by {proposer_id}: '{proposal.title}' "
            f"(quorum={format_weight(proposal.quorum)})"
        )

        transaction = self.tx_builder.build(TransactionIntent(
            operation=OP_CREATE_PROPOSAL,
            source=proposer_id,
            contract_id=contract_id,
            arguments={
                "proposalId": proposal.id,
                "title": proposal.title,
                "quorum": format_weight(proposal.quorum),
                "deadline": proposal.deadline,
            },
        ))
        return ProposalCreated(proposal=proposal, transaction=transaction)

    async def _refresh(self, proposal: Proposal) -> Proposal:
        """Resolve a due proposal before it is served."""
        if not proposal.is_due(self._clock()):
            return proposal
        outcome = await self.engine.evaluate(proposal.id)
        if outcome.status == proposal.status:
            return proposal
        refreshed = await self.store.find_proposal(proposal.id)
        return refreshed or proposal

    async def list_proposals(
        self, filters: Union[ProposalFilters, Mapping[str, Any], None] = None
    ) -> ProposalPage:
        """
        Newest first. Due proposals on the page are resolved first, and the
        page is re-read if that moved any of them out of the filtered status.

        Raises:
            InvalidFilter: unknown filter key or bad value
        """
        if not isinstance(filters, ProposalFilters):
            filters = ProposalFilters.from_dict(filters)

        proposals, total = await self.store.list_proposals(filters)
        now = self._clock()
        due = [p for p in proposals if p.is_due(now)]
        if due:
            for proposal in due:
                await self.engine.evaluate(proposal.id)
            proposals, total = await self.store.list_proposals(filters)

        return ProposalPage(
            proposals=proposals, total=total, limit=filters.limit, offset=filters.offset
        )

    async def get_proposal(self, proposal_id: str) -> Proposal:
        proposal = await self.store.find_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFound(proposal_id)
        return await self._refresh(proposal)

    async def get_proposal_votes(
        self, proposal_id: str, limit: Any = None, offset: Any = None
    ) -> VotePage:
        limit = parse_limit(limit, DEFAULT_VOTES_PAGE_SIZE)
        offset = parse_offset(offset)
        if await self.store.find_proposal(proposal_id) is None:
            raise ProposalNotFound(proposal_id)
        votes, total = await self.store.list_votes(proposal_id, limit=limit, offset=offset)
        return VotePage(votes=votes, total=total, limit=limit, offset=offset)

    # ── Votes ─────────────────────────────────────────────────────────

    async def submit_vote(
        self,
        proposal_id: str,
        voter_id: str,
        choice: Union[VoteChoice, str, bool],
        weight: WeightInput,
    ) -> VoteCast:
        vote = await self.voting.submit_vote(proposal_id, voter_id, choice, weight)
        proposal = await self.store.find_proposal(proposal_id)
        transaction = self.tx_builder.build(TransactionIntent(
            operation=OP_CAST_VOTE,
            source=voter_id,
            contract_id=proposal.contract_id if proposal else None,
            arguments={
                "proposalId": proposal_id,
                "voteId": vote.id,
                "choice": vote.choice.name,
                "weight": format_weight(vote.weight),
            },
        ))
        return VoteCast(vote=vote, transaction=transaction)

    # ── Resolution ────────────────────────────────────────────────────

    async def evaluate(self, proposal_id: str) -> ResolutionOutcome:
        return await self.engine.evaluate(proposal_id)

    async def evaluate_due(self) -> List[ResolutionOutcome]:
        return await self.engine.evaluate_due()

    async def confirm_execution(
        self, proposal_id: str, executed_by: str, tx_ref: Optional[str] = None
    ) -> Proposal:
        return await self.engine.confirm_execution(proposal_id, executed_by, tx_ref)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_metrics(self) -> GovernanceMetrics:
        return await self.metrics.collect()

    async def get_audit_log(
        self,
        filters: Union[AuditFilters, Mapping[str, Any], None] = None,
        limit: Any = None,
        offset: Any = None,
    ) -> AuditPage:
        if not isinstance(filters, AuditFilters):
            filters = AuditFilters.from_dict(filters)
        return await self.audit.get_audit_log(filters, limit=limit, offset=offset)

    async def get_parameters(self) -> GovernanceParameters:
        try:
            on_chain = await self.event_source.get_parameters()
        except OnChainSourceUnavailable as e:
            logger.warning(f"On-chain parameters unavailable, serving local only (degraded): {e}")
            return GovernanceParameters(
                local=dict(self.local_parameters),
                on_chain={},
                degraded=True,
                degraded_reason=str(e),
            )
        return GovernanceParameters(local=dict(self.local_parameters), on_chain=on_chain)
