"""
Audit Log Reconciliation

Merges two independently sourced streams into one ordered trail:
  - off-chain actions journalled by the store alongside the writes they record
  - on-chain events reported by the observation collaborator

Entries are never deduplicated: a vote recorded locally and later observed
on-chain appears twice, once per source. When the on-chain source is down the
off-chain portion is still served and the page is flagged as degraded.
"""

import heapq
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from ..constants import DEFAULT_AUDIT_PAGE_SIZE
from ..exceptions import OnChainSourceUnavailable
from ..logger import get_logger
from .proposals import InvalidFilter, parse_limit, parse_offset

if TYPE_CHECKING:
    from ..chain.events import OnChainEvent, OnChainEventSource
    from ..database_sqlite import GovernanceStore

logger = get_logger(__name__)


class AuditSource(Enum):
    OFF_CHAIN = "off-chain"
    ON_CHAIN = "on-chain"


_SOURCE_RANK = {AuditSource.OFF_CHAIN: 0, AuditSource.ON_CHAIN: 1}


@dataclass(frozen=True)
class AuditEntry:
    source: AuditSource
    entry_id: str
    timestamp: float
    actor: str
    kind: str
    proposal_id: str
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: "OnChainEvent") -> "AuditEntry":
        details = dict(event.details)
        details["txHash"] = event.tx_hash
        details["ledger"] = event.ledger
        return cls(
            source=AuditSource.ON_CHAIN,
            entry_id=event.event_id,
            timestamp=event.timestamp,
            actor=event.actor,
            kind=event.kind,
            proposal_id=event.proposal_id,
            details=details,
        )

    @property
    def sort_key(self) -> Tuple:
        """
        Newest first; on equal timestamps off-chain precedes on-chain. Within
        the off-chain stream the journal sequence breaks ties (newest first),
        within the on-chain stream the event id does.
        """
        if self.source is AuditSource.OFF_CHAIN:
            tiebreak: Any = -int(self.entry_id)
        else:
            tiebreak = self.entry_id
        return (-self.timestamp, _SOURCE_RANK[self.source], tiebreak)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "id": self.entry_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "kind": self.kind,
            "proposalId": self.proposal_id,
            "details": self.details,
        }


@dataclass(frozen=True)
class AuditFilters:
    """Recognised audit filters. Unknown keys are rejected."""
    proposal_id: Optional[str] = None
    actor_id: Optional[str] = None
    since: Optional[float] = None

    _ALIASES = {"proposalId": "proposal_id", "actorId": "actor_id"}

    def __post_init__(self):
        for name in ("proposal_id", "actor_id"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise InvalidFilter(f"{name} must be a string")
        if self.since is not None:
            if isinstance(self.since, bool):
                raise InvalidFilter("since must be epoch seconds")
            try:
                since = float(self.since)
            except (TypeError, ValueError):
                raise InvalidFilter("since must be epoch seconds") from None
            if since != since or since < 0:
                raise InvalidFilter("since must be epoch seconds")
            object.__setattr__(self, "since", since)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AuditFilters":
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in dict(data or {}).items():
            name = cls._ALIASES.get(key, key)
            if name not in known:
                raise InvalidFilter(
                    f"Unknown audit filter {key!r}. "
                    f"Recognised: {', '.join(sorted(known))}"
                )
            if value is None or value == "":
                continue
            kwargs[name] = value
        return cls(**kwargs)

    def matches(self, entry: AuditEntry) -> bool:
        if self.proposal_id is not None and entry.proposal_id != self.proposal_id:
            return False
        if self.actor_id is not None and entry.actor != self.actor_id:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        return True


@dataclass
class AuditPage:
    entries: List[AuditEntry]
    on_chain_count: int
    total: int
    limit: int
    offset: int
    degraded: bool = False
    degraded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "meta": {
                "onChainEvents": self.on_chain_count,
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "degraded": self.degraded,
                "degradedReason": self.degraded_reason,
            },
        }


class AuditReconciler:
    """Builds merged, paginated audit pages."""

    def __init__(self, store: "GovernanceStore", event_source: "OnChainEventSource"):
        self.store = store
        self.event_source = event_source

    async def _on_chain_entries(self, filters: AuditFilters) -> List[AuditEntry]:
        events = await self.event_source.list_events(
            proposal_id=filters.proposal_id, since=filters.since
        )
        entries = [AuditEntry.from_event(e) for e in events]
        # The source only filters by proposal and time
        entries = [e for e in entries if filters.matches(e)]
        entries.sort(key=lambda e: e.sort_key)
        return entries

    async def get_audit_log(
        self,
        filters: Optional[AuditFilters] = None,
        limit: Any = None,
        offset: Any = None,
    ) -> AuditPage:
        """
        One page of the merged trail.

        ``total`` counts every matching entry of both sources and
        ``on_chain_count`` the matching on-chain events, independent of
        pagination.

        Raises:
            InvalidFilter: bad limit / offset
            StoreUnavailable: the off-chain journal cannot be read
        """
        filters = filters or AuditFilters()
        limit = parse_limit(limit, DEFAULT_AUDIT_PAGE_SIZE)
        offset = parse_offset(offset)
        window = offset + limit

        off_chain, off_chain_total = await self.store.page_actions(filters, limit=window)

        degraded_reason = None
        try:
            on_chain = await self._on_chain_entries(filters)
        except OnChainSourceUnavailable as e:
            logger.warning(f"On-chain source unavailable, serving off-chain audit only (degraded): {e}")
            on_chain = []
            degraded_reason = str(e)

        merged = list(heapq.merge(off_chain, on_chain, key=lambda e: e.sort_key))
        return AuditPage(
            entries=merged[offset:window],
            on_chain_count=len(on_chain),
            total=off_chain_total + len(on_chain),
            limit=limit,
            offset=offset,
            degraded=degraded_reason is not None,
            degraded_reason=degraded_reason,
        )
