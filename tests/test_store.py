"""
SQLite store: schema guards, action journal and failure mapping.
"""

import asyncio
import sqlite3
from decimal import Decimal

import pytest

from conftest import T0
from govtally.database_sqlite import GovernanceStore
from govtally.exceptions import StoreUnavailable, TransientError
from govtally.governance.audit import AuditFilters, AuditSource
from govtally.governance.proposals import ProposalFilters, ProposalStatus
from govtally.governance.voting import DuplicateVote, Vote, VoteChoice


async def _proposal(store, deadline=T0 + 100):
    return await store.insert_proposal(
        "Title", "Description", "alice", Decimal("10"), created_at=T0, deadline=deadline,
    )


def _vote(proposal_id, voter_id="bob", cast_at=T0 + 1, vote_id=None):
    return Vote(
        id=vote_id or f"{proposal_id}-{voter_id}",
        proposal_id=proposal_id,
        voter_id=voter_id,
        choice=VoteChoice.FOR,
        weight=Decimal("2.5"),
        cast_at=cast_at,
    )


@pytest.mark.asyncio
class TestGovernanceStore:

    async def test_round_trip(self, store):
        created = await _proposal(store)
        found = await store.find_proposal(created.id)
        assert found == created
        assert await store.find_proposal("missing") is None

    async def test_vote_persisted_with_exact_weight(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id))
        votes, total = await store.list_votes(proposal.id)
        assert total == 1
        assert votes[0].weight == Decimal("2.5000000")
        assert votes[0].choice == VoteChoice.FOR

    async def test_unique_voter_per_proposal(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id, vote_id="v1"))
        with pytest.raises(DuplicateVote):
            await store.insert_vote_if_absent(_vote(proposal.id, vote_id="v2"))

    async def test_same_voter_on_two_proposals(self, store):
        a = await _proposal(store)
        b = await _proposal(store)
        await store.insert_vote_if_absent(_vote(a.id))
        await store.insert_vote_if_absent(_vote(b.id))
        assert await store.count_votes() == 2

    async def test_illegal_status_update_blocked(self, store):
        proposal = await _proposal(store)
        with pytest.raises(sqlite3.IntegrityError, match="illegal proposal status transition"):
            await store.connection.execute(
                "UPDATE proposals SET status = 'EXECUTED' WHERE id = ?", (proposal.id,)
            )

    async def test_terminal_status_cannot_reopen(self, store):
        proposal = await _proposal(store)
        assert await store.update_proposal_status(
            proposal.id, ProposalStatus.OPEN, ProposalStatus.REJECTED, updated_at=T0 + 200,
        )
        with pytest.raises(sqlite3.IntegrityError):
            await store.connection.execute(
                "UPDATE proposals SET status = 'OPEN' WHERE id = ?", (proposal.id,)
            )

    async def test_cas_on_stale_status(self, store):
        proposal = await _proposal(store)
        assert not await store.update_proposal_status(
            proposal.id, ProposalStatus.PASSED, ProposalStatus.EXECUTED, updated_at=T0 + 200,
        )
        assert (await store.find_proposal(proposal.id)).status == ProposalStatus.OPEN

    async def test_deletes_blocked(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id))
        with pytest.raises(sqlite3.IntegrityError, match="votes are immutable"):
            await store.connection.execute("DELETE FROM votes")
        with pytest.raises(sqlite3.IntegrityError, match="retained for audit"):
            await store.connection.execute("DELETE FROM proposals")

    async def test_votes_immutable(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id))
        with pytest.raises(sqlite3.IntegrityError, match="votes are immutable"):
            await store.connection.execute("UPDATE votes SET weight = '1000'")

    async def test_journal_records_every_write(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id))
        await store.update_proposal_status(
            proposal.id, ProposalStatus.OPEN, ProposalStatus.PASSED,
            updated_at=T0 + 200, expected_vote_count=1,
        )

        actions = await store.list_actions(AuditFilters())
        assert [a.kind for a in actions] == ["STATUS_CHANGED", "VOTE_CAST", "PROPOSAL_CREATED"]
        assert all(a.source is AuditSource.OFF_CHAIN for a in actions)
        assert actions[0].actor == "engine"
        assert actions[0].details == {"from": "OPEN", "to": "PASSED", "executedTx": None}
        assert actions[2].details["quorum"] == "10.0000000"
        assert await store.count_actions(AuditFilters(actor_id="bob")) == 1
        assert await store.count_actions(AuditFilters(since=T0 + 1)) == 2

    async def test_due_proposals(self, store):
        due = await _proposal(store, deadline=T0 + 10)
        await _proposal(store, deadline=T0 + 1000)
        await _proposal(store, deadline=None)
        assert [p.id for p in await store.list_due_proposals(T0 + 11)] == [due.id]
        # A deadline equal to now is not yet due
        assert await store.list_due_proposals(T0 + 10) == []

    async def test_metrics_snapshot(self, store):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id))
        snapshot = await store.metrics_snapshot()
        assert snapshot["total"] == 1
        assert snapshot["open"] == 1
        assert snapshot["votes"] == 1
        assert snapshot["weight_units"] == 25_000_000

    async def test_average_vote_weight(self, store):
        assert await store.average_vote_weight(7) == Decimal("0")
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id, "bob"))
        await store.insert_vote_if_absent(_vote(proposal.id, "carol"))
        await store.insert_vote_if_absent(_vote(proposal.id, "dave"))
        # 7.5 / 3
        assert await store.average_vote_weight(2) == Decimal("2.50")

    async def test_closed_store_unavailable(self):
        store = await GovernanceStore.open(":memory:")
        await store.close()
        with pytest.raises(StoreUnavailable) as exc:
            await store.find_proposal("p1")
        assert isinstance(exc.value, TransientError)

    async def test_file_database_persists(self, tmp_path):
        path = str(tmp_path / "nested" / "gov.db")
        async with await GovernanceStore.open(path) as store:
            proposal = await _proposal(store)

        async with await GovernanceStore.open(path) as store:
            assert (await store.find_proposal(proposal.id)).title == "Title"
            assert await store.count_actions(AuditFilters()) == 1

    async def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises((StoreUnavailable, OSError)):
            await GovernanceStore.open(str(blocker / "gov.db"))

    async def test_weight_sum_past_64_bits(self, store):
        proposal = await _proposal(store)
        for voter in ("bob", "carol"):
            await store.insert_vote_if_absent(Vote(
                id=f"{proposal.id}-{voter}", proposal_id=proposal.id, voter_id=voter,
                choice=VoteChoice.FOR, weight=Decimal("900000000000"), cast_at=T0 + 1,
            ))
        snapshot = await store.metrics_snapshot()
        assert snapshot["weight_units"] == 18_000_000_000_000_000_000
        assert snapshot["votes"] == 2
        assert await store.average_vote_weight(0) == Decimal("900000000000")


@pytest.mark.asyncio
class TestReadSnapshots:
    """A page and its total come from the same state even with writers waiting."""

    @staticmethod
    def _count_while_writing(store, monkeypatch, write):
        count = store._count
        writers = []

        async def counting(query, params):
            writer = asyncio.create_task(write())
            writers.append(writer)
            await asyncio.sleep(0.05)
            assert not writer.done()
            return await count(query, params)

        monkeypatch.setattr(store, "_count", counting)
        return writers

    async def test_proposal_page(self, store, monkeypatch):
        await _proposal(store)
        writers = self._count_while_writing(store, monkeypatch, lambda: _proposal(store))

        proposals, total = await store.list_proposals(ProposalFilters(limit=10))
        assert total == len(proposals) == 1

        await asyncio.gather(*writers)
        monkeypatch.undo()
        assert (await store.list_proposals(ProposalFilters(limit=10)))[1] == 2

    async def test_action_page(self, store, monkeypatch):
        proposal = await _proposal(store)
        writers = self._count_while_writing(
            store, monkeypatch, lambda: store.insert_vote_if_absent(_vote(proposal.id))
        )

        entries, total = await store.page_actions(AuditFilters(), limit=10)
        assert total == len(entries) == 1

        await asyncio.gather(*writers)
        monkeypatch.undo()
        assert (await store.page_actions(AuditFilters()))[1] == 2

    async def test_vote_page(self, store, monkeypatch):
        proposal = await _proposal(store)
        await store.insert_vote_if_absent(_vote(proposal.id, "bob"))
        writers = self._count_while_writing(
            store, monkeypatch, lambda: store.insert_vote_if_absent(_vote(proposal.id, "carol"))
        )

        votes, total = await store.list_votes(proposal.id, limit=10)
        assert total == len(votes) == 1

        await asyncio.gather(*writers)
        monkeypatch.undo()
        assert (await store.list_votes(proposal.id, limit=10))[1] == 2

    async def test_failed_read_releases_snapshot(self, store, monkeypatch):
        async def broken(query, params):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_count", broken)
        with pytest.raises(StoreUnavailable):
            await store.list_proposals(ProposalFilters())
        monkeypatch.undo()

        # The transaction was rolled back and the lock released
        await _proposal(store)
        assert (await store.list_proposals(ProposalFilters()))[1] == 1
