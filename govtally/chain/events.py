"""
On-Chain Event Observation

The tally engine never talks to the ledger itself. It asks an
OnChainEventSource for the governance events an indexer has observed
(proposal anchors, vote submissions, execution receipts) and for the
governance parameters the contract currently enforces.

Two sources are provided:
  - StaticEventSource: in-memory, for offline nodes and tests
  - HTTPEventSource:   JSON over HTTP from an indexer, via httpx
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from ..constants import EVENTS_REQUEST_TIMEOUT
from ..exceptions import OnChainSourceUnavailable
from ..logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OnChainEvent:
    """A governance action confirmed on the ledger."""
    event_id: str
    proposal_id: str
    kind: str
    actor: str
    timestamp: float
    tx_hash: Optional[str] = None
    ledger: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "proposalId": self.proposal_id,
            "kind": self.kind,
            "actor": self.actor,
            "timestamp": self.timestamp,
            "txHash": self.tx_hash,
            "ledger": self.ledger,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OnChainEvent":
        """
        Parse the indexer's JSON form. ``timestamp`` may be epoch seconds or
        an ISO-8601 string.
        """
        return cls(
            event_id=str(data["id"]),
            proposal_id=str(data["proposalId"]),
            kind=str(data["kind"]),
            actor=str(data.get("actor") or ""),
            timestamp=parse_timestamp(data["timestamp"]),
            tx_hash=data.get("txHash"),
            ledger=int(data["ledger"]) if data.get("ledger") is not None else None,
            details=dict(data.get("details") or {}),
        )


def parse_timestamp(value: Any) -> float:
    """Epoch seconds from a number or an ISO-8601 string. NaN and infinities are refused."""
    try:
        seconds = _epoch_seconds(value)
    except OverflowError:
        raise ValueError(f"Invalid timestamp: {value!r}") from None
    if not math.isfinite(seconds):
        raise ValueError(f"Invalid timestamp: {value!r}")
    return seconds


def _epoch_seconds(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    raise ValueError(f"Invalid timestamp: {value!r}")


def _select(
    events: Iterable[OnChainEvent],
    proposal_id: Optional[str],
    since: Optional[float],
) -> List[OnChainEvent]:
    selected = [
        e for e in events
        if (proposal_id is None or e.proposal_id == proposal_id)
        and (since is None or e.timestamp >= since)
    ]
    selected.sort(key=lambda e: (e.timestamp, e.event_id))
    return selected


class OnChainEventSource(ABC):
    """Observation collaborator consumed by the audit reconciler."""

    @abstractmethod
    async def list_events(
        self,
        proposal_id: Optional[str] = None,
        since: Optional[float] = None,
    ) -> List[OnChainEvent]:
        """
        Events ordered by timestamp ascending.

        Raises:
            OnChainSourceUnavailable: the source cannot be queried right now
        """

    async def get_parameters(self) -> Dict[str, Any]:
        """Governance parameters enforced on-chain (empty if unknown)."""
        return {}

    async def close(self) -> None:
        return None


class StaticEventSource(OnChainEventSource):
    """In-memory event source."""

    def __init__(
        self,
        events: Optional[Iterable[OnChainEvent]] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        self._events: List[OnChainEvent] = list(events or [])
        self._parameters = dict(parameters or {})
        self.available = True

    def add(self, event: OnChainEvent) -> None:
        self._events.append(event)

    async def list_events(self, proposal_id=None, since=None) -> List[OnChainEvent]:
        if not self.available:
            raise OnChainSourceUnavailable("Static event source marked unavailable")
        return _select(self._events, proposal_id, since)

    async def get_parameters(self) -> Dict[str, Any]:
        if not self.available:
            raise OnChainSourceUnavailable("Static event source marked unavailable")
        return dict(self._parameters)


class HTTPEventSource(OnChainEventSource):
    """
    Reads events from an indexer exposing:

        GET {base_url}/events?proposalId=...&since=...  → [event, ...]
        GET {base_url}/parameters                       → {name: value}

    Transport failures, non-2xx answers and malformed payloads all surface
    as OnChainSourceUnavailable so the reconciler can degrade.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = EVENTS_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip('/')
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.RequestError as e:
            logger.warning(f"Event source {url} unreachable: {e}")
            raise OnChainSourceUnavailable(f"Event source unreachable: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(f"Event source {url} answered {e.response.status_code}")
            raise OnChainSourceUnavailable(
                f"Event source answered HTTP {e.response.status_code}"
            ) from e
        except ValueError as e:
            raise OnChainSourceUnavailable(f"Event source returned invalid JSON: {e}") from e

    async def list_events(self, proposal_id=None, since=None) -> List[OnChainEvent]:
        params: Dict[str, Any] = {}
        if proposal_id is not None:
            params["proposalId"] = proposal_id
        if since is not None:
            params["since"] = since

        payload = await self._get("/events", params)
        raw_events = payload.get("events", []) if isinstance(payload, dict) else payload
        if not isinstance(raw_events, list):
            raise OnChainSourceUnavailable("Event source returned a non-list payload")
        try:
            events = [OnChainEvent.from_dict(item) for item in raw_events]
        except (KeyError, TypeError, ValueError) as e:
            raise OnChainSourceUnavailable(f"Malformed on-chain event: {e}") from e
        # Filter again locally: indexers are not trusted to honour the query.
        return _select(events, proposal_id, since)

    async def get_parameters(self) -> Dict[str, Any]:
        payload = await self._get("/parameters")
        if not isinstance(payload, dict):
            raise OnChainSourceUnavailable("Event source returned non-object parameters")
        return payload

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
