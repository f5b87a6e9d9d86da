"""
On-chain collaborators: the HTTP event source (against httpx.MockTransport)
and the unsigned transaction builder.
"""

import base64
import hashlib
import json

import httpx
import pytest

from govtally.chain.events import (
    HTTPEventSource,
    OnChainEvent,
    StaticEventSource,
    parse_timestamp,
)
from govtally.chain.transactions import (
    OP_CAST_VOTE,
    EnvelopeTransactionBuilder,
    TransactionIntent,
)
from govtally.exceptions import OnChainSourceUnavailable, TransientError

INDEXER = "http://indexer.test"

RAW_EVENTS = [
    {"id": "e2", "proposalId": "p1", "kind": "VOTE_SUBMITTED", "actor": "bob",
     "timestamp": "2023-11-14T22:13:30Z", "txHash": "bb", "ledger": 12},
    {"id": "e1", "proposalId": "p1", "kind": "PROPOSAL_ANCHORED", "actor": "alice",
     "timestamp": 1700000000, "txHash": "aa", "ledger": 11},
    {"id": "e3", "proposalId": "p2", "kind": "PROPOSAL_ANCHORED", "actor": "alice",
     "timestamp": 1700000050.5},
]


def _source(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HTTPEventSource(INDEXER + "/", client=client), client


class TestParseTimestamp:

    @pytest.mark.parametrize("raw,expected", [
        (1700000000, 1700000000.0),
        (1.5, 1.5),
        ("1700000000.25", 1700000000.25),
        ("2023-11-14T22:13:20Z", 1700000000.0),
        ("2023-11-14T22:13:20+00:00", 1700000000.0),
        ("2023-11-14T22:13:20", 1700000000.0),
    ])
    def test_accepted(self, raw, expected):
        assert parse_timestamp(raw) == expected

    @pytest.mark.parametrize("raw", [
        True, None, "next tuesday", [1],
        "NaN", "inf", "-Infinity", float("nan"), float("inf"), 10 ** 400,
    ])
    def test_rejected(self, raw):
        with pytest.raises(ValueError):
            parse_timestamp(raw)


class TestOnChainEvent:

    def test_from_dict(self):
        event = OnChainEvent.from_dict(RAW_EVENTS[0])
        assert event.event_id == "e2"
        assert event.timestamp == 1700000010.0
        assert event.ledger == 12
        assert event.to_dict()["txHash"] == "bb"

    def test_missing_field(self):
        with pytest.raises(KeyError):
            OnChainEvent.from_dict({"id": "x", "kind": "VOTE_SUBMITTED", "timestamp": 1})


@pytest.mark.asyncio
class TestStaticEventSource:

    async def test_filters_and_orders(self):
        source = StaticEventSource([OnChainEvent.from_dict(e) for e in RAW_EVENTS])
        events = await source.list_events(proposal_id="p1")
        assert [e.event_id for e in events] == ["e1", "e2"]
        assert [e.event_id for e in await source.list_events(since=1700000010)] == ["e2", "e3"]

    async def test_unavailable(self):
        source = StaticEventSource()
        source.available = False
        with pytest.raises(OnChainSourceUnavailable):
            await source.list_events()


@pytest.mark.asyncio
class TestHTTPEventSource:

    async def test_list_events(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=RAW_EVENTS)

        source, client = _source(handler)
        try:
            events = await source.list_events(proposal_id="p1", since=1700000000)
        finally:
            await client.aclose()

        assert [e.event_id for e in events] == ["e1", "e2"]
        assert seen[0].url.path == "/events"
        assert seen[0].url.params["proposalId"] == "p1"
        assert seen[0].url.params["since"] == "1700000000"

    async def test_wrapped_payload(self):
        source, client = _source(lambda request: httpx.Response(200, json={"events": RAW_EVENTS}))
        try:
            events = await source.list_events()
        finally:
            await client.aclose()
        assert len(events) == 3

    async def test_untrusted_indexer_is_filtered_locally(self):
        # The indexer ignores the query and returns everything.
        source, client = _source(lambda request: httpx.Response(200, json=RAW_EVENTS))
        try:
            events = await source.list_events(proposal_id="p2")
        finally:
            await client.aclose()
        assert [e.event_id for e in events] == ["e3"]

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        source, client = _source(handler)
        try:
            with pytest.raises(OnChainSourceUnavailable) as exc:
                await source.list_events()
        finally:
            await client.aclose()
        assert isinstance(exc.value, TransientError)

    async def test_server_error(self):
        source, client = _source(lambda request: httpx.Response(503, text="busy"))
        try:
            with pytest.raises(OnChainSourceUnavailable, match="503"):
                await source.list_events()
        finally:
            await client.aclose()

    @pytest.mark.parametrize("body", [
        b"not json",
        json.dumps({"events": "nope"}).encode(),
        json.dumps([{"id": "e1"}]).encode(),
        json.dumps([{"id": "e1", "proposalId": "p1", "kind": "X", "timestamp": "soon"}]).encode(),
    ])
    async def test_malformed_payload(self, body):
        source, client = _source(lambda request: httpx.Response(200, content=body))
        try:
            with pytest.raises(OnChainSourceUnavailable):
                await source.list_events()
        finally:
            await client.aclose()

    @pytest.mark.parametrize("timestamp", [b'"NaN"', b"NaN", b'"inf"', b"-Infinity"])
    async def test_non_finite_timestamp(self, timestamp):
        body = (
            b'[{"id": "e1", "proposalId": "p1", "kind": "VOTE_SUBMITTED", "timestamp": '
            + timestamp
            + b'}, {"id": "e2", "proposalId": "p1", "kind": "VOTE_SUBMITTED", "timestamp": 1700000050}]'
        )
        source, client = _source(lambda request: httpx.Response(200, content=body))
        try:
            with pytest.raises(OnChainSourceUnavailable, match="Malformed on-chain event"):
                await source.list_events()
        finally:
            await client.aclose()

    async def test_get_parameters(self):
        def handler(request):
            assert request.url.path == "/parameters"
            return httpx.Response(200, json={"quorumFloor": "10", "votingPeriod": 7200})

        source, client = _source(handler)
        try:
            assert await source.get_parameters() == {"quorumFloor": "10", "votingPeriod": 7200}
        finally:
            await client.aclose()

    async def test_get_parameters_requires_object(self):
        source, client = _source(lambda request: httpx.Response(200, json=[1, 2]))
        try:
            with pytest.raises(OnChainSourceUnavailable):
                await source.get_parameters()
        finally:
            await client.aclose()

    async def test_borrowed_client_left_open(self):
        source, client = _source(lambda request: httpx.Response(200, json=[]))
        await source.close()
        assert not client.is_closed
        await client.aclose()

    async def test_owned_client_closed(self):
        source = HTTPEventSource(INDEXER)
        await source.close()
        assert source.client.is_closed


class TestEnvelopeTransactionBuilder:

    def _intent(self, **overrides):
        fields = dict(
            operation=OP_CAST_VOTE,
            source="bob",
            arguments={"proposalId": "p1", "choice": "FOR", "weight": "40.0000000"},
        )
        fields.update(overrides)
        return TransactionIntent(**fields)

    def test_payload_is_canonical_json(self):
        builder = EnvelopeTransactionBuilder(network="testnet", contract_id="CGOV")
        tx = builder.build(self._intent())

        raw = base64.b64decode(tx.payload)
        assert raw == (
            b'{"args":{"choice":"FOR","proposalId":"p1","weight":"40.0000000"},'
            b'"contract":"CGOV","network":"testnet","operation":"cast_vote","source":"bob"}'
        )
        assert tx.digest == hashlib.sha256(raw).hexdigest()
        assert tx.encoding == "base64+json"
        assert tx.operation == OP_CAST_VOTE

    def test_deterministic(self):
        builder = EnvelopeTransactionBuilder()
        assert builder.build(self._intent()) == builder.build(self._intent())

    def test_intent_contract_overrides_default(self):
        builder = EnvelopeTransactionBuilder(contract_id="CGOV")
        raw = base64.b64decode(builder.build(self._intent(contract_id="COTHER")).payload)
        assert json.loads(raw)["contract"] == "COTHER"

    def test_network_changes_digest(self):
        intent = self._intent()
        a = EnvelopeTransactionBuilder(network="testnet").build(intent)
        b = EnvelopeTransactionBuilder(network="mainnet").build(intent)
        assert a.digest != b.digest
