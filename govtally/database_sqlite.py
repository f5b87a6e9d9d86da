"""
SQLite Proposal Store

Durable home of proposals, votes and the off-chain action journal.

Every invariant that matters under concurrency is enforced by SQLite itself:
  - UNIQUE(proposal_id, voter_id) on votes
  - vote insertion is one INSERT ... SELECT conditioned on status/deadline
  - status changes are compare-and-swap UPDATEs
  - triggers journal creations, votes and status changes in the same
    statement, forbid illegal transitions, and make votes/proposals
    undeletable

The connection runs in autocommit mode: each write is its own atomic
statement. Reads that combine several statements (a page and its total,
the metrics snapshot) run inside one deferred read transaction, and writes
wait for it to finish so they never land inside it.
"""
import asyncio
import contextlib
import functools
import json
import os
import sqlite3
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .exceptions import StoreUnavailable
from .governance.audit import AuditEntry, AuditFilters, AuditSource
from .governance.proposals import (
    Proposal,
    ProposalClosed,
    ProposalFilters,
    ProposalNotFound,
    ProposalStatus,
)
from .governance.voting import DeadlinePassed, DuplicateVote, Vote
from .governance.weight import (
    average,
    format_weight,
    from_units,
    to_units,
)
from .logger import get_logger

logger = get_logger(__name__)

BUSY_TIMEOUT_MS = 5000

SCHEMA = """
CREATE TABLE IF NOT EXISTS proposals (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    proposer_id TEXT NOT NULL,
    quorum TEXT NOT NULL,
    quorum_units INTEGER NOT NULL CHECK (quorum_units > 0),
    created_at REAL NOT NULL,
    deadline REAL CHECK (deadline IS NULL OR deadline > created_at),
    status TEXT NOT NULL DEFAULT 'OPEN'
        CHECK (status IN ('OPEN', 'PASSED', 'REJECTED', 'EXECUTED')),
    contract_id TEXT,
    status_updated_at REAL,
    status_updated_by TEXT,
    executed_tx TEXT
);

CREATE TABLE IF NOT EXISTS votes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    proposal_id TEXT NOT NULL,
    voter_id TEXT NOT NULL,
    choice TEXT NOT NULL CHECK (choice IN ('FOR', 'AGAINST', 'ABSTAIN')),
    weight TEXT NOT NULL,
    weight_units INTEGER NOT NULL CHECK (weight_units > 0),
    cast_at REAL NOT NULL,
    FOREIGN KEY (proposal_id) REFERENCES proposals(id)
);

CREATE TABLE IF NOT EXISTS governance_actions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    proposal_id TEXT NOT NULL,
    actor TEXT NOT NULL,
    timestamp REAL NOT NULL,
    details TEXT NOT NULL DEFAULT '{}'
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_votes_proposal_voter ON votes(proposal_id, voter_id);
CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status);
CREATE INDEX IF NOT EXISTS idx_proposals_proposer ON proposals(proposer_id);
CREATE INDEX IF NOT EXISTS idx_proposals_due ON proposals(status, deadline);
CREATE INDEX IF NOT EXISTS idx_actions_timestamp ON governance_actions(timestamp);
CREATE INDEX IF NOT EXISTS idx_actions_proposal ON governance_actions(proposal_id, timestamp);

CREATE TRIGGER IF NOT EXISTS trg_proposal_created AFTER INSERT ON proposals
BEGIN
    INSERT INTO governance_actions (kind, proposal_id, actor, timestamp, details)
    VALUES ('PROPOSAL_CREATED', NEW.id, NEW.proposer_id, NEW.created_at,
            json_object('title', NEW.title, 'quorum', NEW.quorum,
                        'deadline', NEW.deadline, 'contractId', NEW.contract_id));
END;

CREATE TRIGGER IF NOT EXISTS trg_vote_cast AFTER INSERT ON votes
BEGIN
    INSERT INTO governance_actions (kind, proposal_id, actor, timestamp, details)
    VALUES ('VOTE_CAST', NEW.proposal_id, NEW.voter_id, NEW.cast_at,
            json_object('voteId', NEW.id, 'choice', NEW.choice, 'weight', NEW.weight));
END;

CREATE TRIGGER IF NOT EXISTS trg_status_monotonic BEFORE UPDATE OF status ON proposals
WHEN NOT (
    (OLD.status = 'OPEN' AND NEW.status IN ('PASSED', 'REJECTED'))
    OR (OLD.status = 'PASSED' AND NEW.status = 'EXECUTED')
)
BEGIN
    SELECT RAISE(ABORT, 'illegal proposal status transition');
END;

CREATE TRIGGER IF NOT EXISTS trg_status_changed AFTER UPDATE OF status ON proposals
BEGIN
    INSERT INTO governance_actions (kind, proposal_id, actor, timestamp, details)
    VALUES ('STATUS_CHANGED', NEW.id, COALESCE(NEW.status_updated_by, 'engine'),
            NEW.status_updated_at,
            json_object('from', OLD.status, 'to', NEW.status, 'executedTx', NEW.executed_tx));
END;

CREATE TRIGGER IF NOT EXISTS trg_proposals_no_delete BEFORE DELETE ON proposals
BEGIN
    SELECT RAISE(ABORT, 'proposals are retained for audit');
END;

CREATE TRIGGER IF NOT EXISTS trg_votes_immutable BEFORE UPDATE ON votes
BEGIN
    SELECT RAISE(ABORT, 'votes are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_votes_no_delete BEFORE DELETE ON votes
BEGIN
    SELECT RAISE(ABORT, 'votes are immutable');
END;
"""

_DUPLICATE_VOTE_MARKER = "votes.proposal_id, votes.voter_id"


def _store_call(func):
    """Map driver-level failures to StoreUnavailable."""
    @functools.wraps(func)
    async def wrapper(self: "GovernanceStore", *args, **kwargs):
        if self.connection is None:
            raise StoreUnavailable(f"{func.__name__}: store is not open")
        try:
            return await func(self, *args, **kwargs)
        except (sqlite3.OperationalError, sqlite3.InterfaceError) as e:
            raise StoreUnavailable(f"{func.__name__}: {e}") from e
    return wrapper


class GovernanceStore:
    """aiosqlite-backed proposal store. Construct with ``await GovernanceStore.open(path)``."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, db_path: str, wal_mode: bool = True) -> "GovernanceStore":
        """Open (creating if needed) the database and initialise the schema."""
        self = cls(db_path)

        if db_path != ":memory:":
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        try:
            self.connection = await aiosqlite.connect(db_path, isolation_level=None)
            self.connection.row_factory = aiosqlite.Row

            if wal_mode and db_path != ":memory:":
                await self.connection.execute("PRAGMA journal_mode=WAL")
                await self.connection.execute("PRAGMA synchronous=NORMAL")
            await self.connection.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
            await self.connection.execute("PRAGMA foreign_keys=ON")

            await self.connection.executescript(SCHEMA)
        except sqlite3.Error as e:
            await self.close()
            raise StoreUnavailable(f"Cannot open store {db_path}: {e}") from e

        logger.info(f"Governance store opened: {db_path}")
        return self

    async def close(self):
        """Close database connection"""
        if self.connection is not None:
            connection, self.connection = self.connection, None
            await connection.close()
            logger.info(f"Governance store closed: {self.db_path}")

    async def __aenter__(self) -> "GovernanceStore":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @contextlib.asynccontextmanager
    async def _read_snapshot(self):
        """Every SELECT issued inside the block sees the same database state."""
        async with self._lock:
            await self.connection.execute("BEGIN")
            try:
                yield
            except BaseException:
                await self.connection.execute("ROLLBACK")
                raise
            await self.connection.execute("COMMIT")

    async def _write(self, query: str, params) -> aiosqlite.Cursor:
        async with self._lock:
            return await self.connection.execute(query, params)

    # ── Proposals ─────────────────────────────────────────────────────

    @_store_call
    async def find_proposal(self, proposal_id: str) -> Optional[Proposal]:
        cursor = await self.connection.execute(
            "SELECT * FROM proposals WHERE id = ?", (proposal_id,)
        )
        row = await cursor.fetchone()
        return Proposal.from_row(row) if row else None

    @_store_call
    async def insert_proposal(
        self,
        title: str,
        description: str,
        proposer_id: str,
        quorum: Decimal,
        created_at: float,
        deadline: Optional[float] = None,
        contract_id: Optional[str] = None,
    ) -> Proposal:
        """Persist a new OPEN proposal. The id is assigned here."""
        proposal = Proposal(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            proposer_id=proposer_id,
            quorum=quorum,
            created_at=created_at,
            deadline=deadline,
            status=ProposalStatus.OPEN,
            contract_id=contract_id,
        )
        await self._write(
            """
            INSERT INTO proposals (id, title, description, proposer_id, quorum,
                                   quorum_units, created_at, deadline, status, contract_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'OPEN', ?)
            """,
            (
                proposal.id, proposal.title, proposal.description, proposal.proposer_id,
                format_weight(proposal.quorum), to_units(proposal.quorum),
                proposal.created_at, proposal.deadline, proposal.contract_id,
            ),
        )
        return proposal

    @_store_call
    async def update_proposal_status(
        self,
        proposal_id: str,
        expected_status: ProposalStatus,
        new_status: ProposalStatus,
        updated_at: float,
        updated_by: str = "engine",
        executed_tx: Optional[str] = None,
        expected_vote_count: Optional[int] = None,
    ) -> bool:
        """
        Compare-and-swap the proposal status.

        Applies only if the status is still *expected_status* and, when
        *expected_vote_count* is given, the proposal still has exactly that
        many votes. Returns False when the precondition failed.
        """
        query = """
            UPDATE proposals
               SET status = ?, status_updated_at = ?, status_updated_by = ?,
                   executed_tx = COALESCE(?, executed_tx)
             WHERE id = ? AND status = ?
        """
        params: List[Any] = [
            new_status.name, updated_at, updated_by, executed_tx,
            proposal_id, expected_status.name,
        ]
        if expected_vote_count is not None:
            query += " AND (SELECT COUNT(*) FROM votes WHERE proposal_id = ?) = ?"
            params += [proposal_id, expected_vote_count]

        cursor = await self._write(query, params)
        return cursor.rowcount == 1

    @_store_call
    async def list_proposals(self, filters: ProposalFilters) -> Tuple[List[Proposal], int]:
        """Newest first, with the total count ignoring pagination."""
        where, params = self._proposal_where(filters.status, filters.proposer_id)
        async with self._read_snapshot():
            cursor = await self.connection.execute(
                f"SELECT * FROM proposals {where} "
                f"ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
                (*params, filters.limit, filters.offset),
            )
            rows = await cursor.fetchall()
            total = await self._count(f"SELECT COUNT(*) FROM proposals {where}", params)
        return [Proposal.from_row(r) for r in rows], total

    @_store_call
    async def list_due_proposals(self, now: float) -> List[Proposal]:
        """OPEN proposals whose deadline is strictly before *now*."""
        cursor = await self.connection.execute(
            "SELECT * FROM proposals WHERE status = 'OPEN' AND deadline IS NOT NULL "
            "AND deadline < ? ORDER BY deadline ASC",
            (now,),
        )
        return [Proposal.from_row(r) for r in await cursor.fetchall()]

    @_store_call
    async def count_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        proposer_id: Optional[str] = None,
    ) -> int:
        where, params = self._proposal_where(status, proposer_id)
        return await self._count(f"SELECT COUNT(*) FROM proposals {where}", params)

    @staticmethod
    def _proposal_where(
        status: Optional[ProposalStatus], proposer_id: Optional[str]
    ) -> Tuple[str, List[Any]]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.name)
        if proposer_id is not None:
            clauses.append("proposer_id = ?")
            params.append(proposer_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    # ── Votes ─────────────────────────────────────────────────────────

    @_store_call
    async def insert_vote_if_absent(self, vote: Vote) -> Vote:
        """
        Atomically insert *vote* if the proposal exists, is OPEN, its deadline
        (if any) is not before ``vote.cast_at``, and the voter has not voted.

        Raises:
            ProposalNotFound, ProposalClosed, DeadlinePassed, DuplicateVote
        """
        try:
            cursor = await self._write(
                """
                INSERT INTO votes (id, proposal_id, voter_id, choice, weight, weight_units, cast_at)
                SELECT ?, p.id, ?, ?, ?, ?, ?
                  FROM proposals p
                 WHERE p.id = ?
                   AND p.status = 'OPEN'
                   AND (p.deadline IS NULL OR p.deadline >= ?)
                """,
                (
                    vote.id, vote.voter_id, vote.choice.name,
                    format_weight(vote.weight), to_units(vote.weight), vote.cast_at,
                    vote.proposal_id, vote.cast_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            if _DUPLICATE_VOTE_MARKER in str(e):
                raise DuplicateVote(vote.proposal_id, vote.voter_id) from None
            raise

        if cursor.rowcount == 1:
            return vote

        # Nothing inserted: explain why. Every failing condition is
        # monotonic (never deleted, status never reopens, deadline fixed),
        # so this read cannot contradict the insert.
        proposal = await self.find_proposal(vote.proposal_id)
        if proposal is None:
            raise ProposalNotFound(vote.proposal_id)
        if proposal.status != ProposalStatus.OPEN:
            raise ProposalClosed(proposal.id, proposal.status)
        if proposal.deadline is not None and vote.cast_at > proposal.deadline:
            raise DeadlinePassed(proposal.id, proposal.deadline, vote.cast_at)
        raise StoreUnavailable(
            f"Vote on proposal {vote.proposal_id} was not persisted for an unknown reason"
        )

    @_store_call
    async def list_votes(
        self,
        proposal_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[Vote], int]:
        """Newest first. ``limit=None`` returns every vote."""
        async with self._read_snapshot():
            cursor = await self.connection.execute(
                "SELECT * FROM votes WHERE proposal_id = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
                (proposal_id, -1 if limit is None else limit, offset),
            )
            votes = [Vote.from_row(r) for r in await cursor.fetchall()]
            if limit is None and offset == 0:
                return votes, len(votes)
            total = await self._count(
                "SELECT COUNT(*) FROM votes WHERE proposal_id = ?", [proposal_id]
            )
        return votes, total

    @_store_call
    async def count_votes(self, proposal_id: Optional[str] = None) -> int:
        if proposal_id is None:
            return await self._count("SELECT COUNT(*) FROM votes", [])
        return await self._count(
            "SELECT COUNT(*) FROM votes WHERE proposal_id = ?", [proposal_id]
        )

    async def _vote_weight_units(self) -> Tuple[int, int]:
        """
        (vote count, exact sum of weight units). Summed here because the
        total of several capped weights can exceed SQLite's 64-bit SUM.
        """
        count = units = 0
        cursor = await self.connection.execute("SELECT weight_units FROM votes")
        async for row in cursor:
            count += 1
            units += row[0]
        return count, units

    @_store_call
    async def average_vote_weight(self, places: int) -> Decimal:
        """Exact unit sum / count, rounded half-up to *places* digits."""
        async with self._read_snapshot():
            count, units = await self._vote_weight_units()
        return average(from_units(units), count, places)

    @_store_call
    async def metrics_snapshot(self) -> Dict[str, int]:
        """
        Proposal counts per status plus vote count and weight sum, all read
        in one transaction so the figures describe the same instant.
        """
        async with self._read_snapshot():
            cursor = await self.connection.execute(
                "SELECT status, COUNT(*) AS n FROM proposals GROUP BY status"
            )
            by_status = {row["status"]: row["n"] for row in await cursor.fetchall()}
            votes, weight_units = await self._vote_weight_units()

        snapshot = {"total": sum(by_status.values())}
        for status in ProposalStatus:
            snapshot[status.name.lower()] = by_status.get(status.name, 0)
        snapshot["votes"] = votes
        snapshot["weight_units"] = weight_units
        return snapshot

    # ── Action journal ────────────────────────────────────────────────

    @staticmethod
    def _action_where(filters: AuditFilters) -> Tuple[str, List[Any]]:
        clauses, params = [], []
        if filters.proposal_id is not None:
            clauses.append("proposal_id = ?")
            params.append(filters.proposal_id)
        if filters.actor_id is not None:
            clauses.append("actor = ?")
            params.append(filters.actor_id)
        if filters.since is not None:
            clauses.append("timestamp >= ?")
            params.append(filters.since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def _select_actions(
        self, filters: AuditFilters, limit: Optional[int]
    ) -> List[AuditEntry]:
        where, params = self._action_where(filters)
        cursor = await self.connection.execute(
            f"SELECT * FROM governance_actions {where} "
            f"ORDER BY timestamp DESC, seq DESC LIMIT ?",
            (*params, -1 if limit is None else limit),
        )
        return [
            AuditEntry(
                source=AuditSource.OFF_CHAIN,
                entry_id=str(row["seq"]),
                timestamp=row["timestamp"],
                actor=row["actor"],
                kind=row["kind"],
                proposal_id=row["proposal_id"],
                details=json.loads(row["details"]),
            )
            for row in await cursor.fetchall()
        ]

    @_store_call
    async def list_actions(
        self, filters: AuditFilters, limit: Optional[int] = None
    ) -> List[AuditEntry]:
        """Journal entries, newest first."""
        return await self._select_actions(filters, limit)

    @_store_call
    async def page_actions(
        self, filters: AuditFilters, limit: Optional[int] = None
    ) -> Tuple[List[AuditEntry], int]:
        """The newest *limit* matching entries and the count of all matches, from one snapshot."""
        where, params = self._action_where(filters)
        async with self._read_snapshot():
            entries = await self._select_actions(filters, limit)
            total = await self._count(
                f"SELECT COUNT(*) FROM governance_actions {where}", params
            )
        return entries, total

    @_store_call
    async def count_actions(self, filters: AuditFilters) -> int:
        where, params = self._action_where(filters)
        return await self._count(f"SELECT COUNT(*) FROM governance_actions {where}", params)

    # ── Helpers ───────────────────────────────────────────────────────

    async def _count(self, query: str, params) -> int:
        cursor = await self.connection.execute(query, tuple(params))
        row = await cursor.fetchone()
        return row[0] if row else 0
