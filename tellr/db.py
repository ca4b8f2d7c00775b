"""SQLite persistence with WAL mode.

Ballots (``votes``) and vote receipts (``vote_records``) live in separate
tables on purpose: a ballot row carries no voter column, so nothing stored
can link a choice back to the participant who made it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import aiosqlite

from .models import (
    Ballot,
    DisclosureLevel,
    Election,
    Participant,
    Role,
    Round,
    RoundStatus,
    VoteReceipt,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS elections (
    id TEXT PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    body_size INTEGER,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS participants (
    id TEXT PRIMARY KEY,
    election_id TEXT NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('teller', 'voter')),
    token TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rounds (
    id TEXT PRIMARY KEY,
    election_id TEXT NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    office TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL CHECK (status IN ('voting', 'closed', 'revealed', 'cancelled')),
    disclosure_level TEXT CHECK (disclosure_level IN ('all', 'top', 'top_no_count', 'none')),
    created_at TEXT NOT NULL,
    CHECK ((status = 'revealed') = (disclosure_level IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS votes (
    id TEXT PRIMARY KEY,
    round_id TEXT NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
    candidate_id TEXT
) WITHOUT ROWID;

CREATE TABLE IF NOT EXISTS vote_records (
    id TEXT PRIMARY KEY,
    round_id TEXT NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
    participant_id TEXT NOT NULL REFERENCES participants(id) ON DELETE CASCADE,
    voted_at TEXT NOT NULL,
    UNIQUE (round_id, participant_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_rounds_one_active
    ON rounds(election_id) WHERE status IN ('voting', 'closed');
CREATE INDEX IF NOT EXISTS idx_participants_election ON participants(election_id);
CREATE INDEX IF NOT EXISTS idx_rounds_election ON rounds(election_id);
CREATE INDEX IF NOT EXISTS idx_votes_round ON votes(round_id);
CREATE INDEX IF NOT EXISTS idx_vote_records_round ON vote_records(round_id);
CREATE INDEX IF NOT EXISTS idx_elections_expires ON elections(expires_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Database:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        # Autocommit mode: transactions are opened explicitly in transaction().
        self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self, immediate: bool = True) -> AsyncIterator["Database"]:
        """Serialize a guard-and-write sequence into one atomic unit.

        Holds the writer lock for the whole block, so callers must not nest
        transactions or call other transactional helpers inside one.
        """
        async with self._lock:
            await self._conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            else:
                await self._conn.execute("COMMIT")

    # ---------------------------------------------------------------
    # Elections
    # ---------------------------------------------------------------

    async def insert_election(self, election: Election) -> None:
        if not election.created_at:
            election.created_at = _now()
        await self._conn.execute(
            """INSERT INTO elections (id, code, name, body_size, created_at, expires_at)
               VALUES (?,?,?,?,?,?)""",
            (
                election.id, election.code, election.name, election.body_size,
                election.created_at, election.expires_at,
            ),
        )

    async def get_election(self, election_id: str) -> Election | None:
        cursor = await self._conn.execute(
            "SELECT * FROM elections WHERE id = ?", (election_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_election(row) if row else None

    async def get_election_by_code(self, code: str) -> Election | None:
        cursor = await self._conn.execute(
            "SELECT * FROM elections WHERE code = ?", (code,)
        )
        row = await cursor.fetchone()
        return self._row_to_election(row) if row else None

    async def update_body_size(self, election_id: str, body_size: int | None) -> None:
        await self._conn.execute(
            "UPDATE elections SET body_size = ? WHERE id = ?",
            (body_size, election_id),
        )

    async def delete_expired_elections(self, now: str | None = None) -> int:
        """Delete expired elections; everything below them cascades."""
        cursor = await self._conn.execute(
            "DELETE FROM elections WHERE expires_at < ?", (now or _now(),)
        )
        return cursor.rowcount

    # ---------------------------------------------------------------
    # Participants
    # ---------------------------------------------------------------

    async def insert_participant(self, participant: Participant) -> None:
        if not participant.created_at:
            participant.created_at = _now()
        await self._conn.execute(
            """INSERT INTO participants (id, election_id, name, role, token, created_at)
               VALUES (?,?,?,?,?,?)""",
            (
                participant.id, participant.election_id, participant.name,
                participant.role.value, participant.token, participant.created_at,
            ),
        )

    async def get_participant_by_token(self, token: str) -> Participant | None:
        cursor = await self._conn.execute(
            "SELECT * FROM participants WHERE token = ?", (token,)
        )
        row = await cursor.fetchone()
        return self._row_to_participant(row) if row else None

    async def get_participant(self, election_id: str, participant_id: str) -> Participant | None:
        cursor = await self._conn.execute(
            "SELECT * FROM participants WHERE id = ? AND election_id = ?",
            (participant_id, election_id),
        )
        row = await cursor.fetchone()
        return self._row_to_participant(row) if row else None

    async def list_participants(self, election_id: str) -> list[Participant]:
        cursor = await self._conn.execute(
            "SELECT * FROM participants WHERE election_id = ? ORDER BY created_at, rowid",
            (election_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_participant(r) for r in rows]

    async def count_participants(self, election_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM participants WHERE election_id = ?", (election_id,)
        )
        (count,) = await cursor.fetchone()
        return count

    async def count_tellers(self, election_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM participants WHERE election_id = ? AND role = ?",
            (election_id, Role.TELLER.value),
        )
        (count,) = await cursor.fetchone()
        return count

    async def update_participant_name(self, participant_id: str, name: str) -> None:
        await self._conn.execute(
            "UPDATE participants SET name = ? WHERE id = ?", (name, participant_id)
        )

    async def update_participant_role(self, participant_id: str, role: Role) -> None:
        await self._conn.execute(
            "UPDATE participants SET role = ? WHERE id = ?", (role.value, participant_id)
        )

    # ---------------------------------------------------------------
    # Rounds
    # ---------------------------------------------------------------

    async def insert_round(self, rnd: Round) -> None:
        if not rnd.created_at:
            rnd.created_at = _now()
        await self._conn.execute(
            """INSERT INTO rounds
               (id, election_id, office, description, status, disclosure_level, created_at)
               VALUES (?,?,?,?,?,?,?)""",
            (
                rnd.id, rnd.election_id, rnd.office, rnd.description,
                rnd.status.value,
                rnd.disclosure_level.value if rnd.disclosure_level else None,
                rnd.created_at,
            ),
        )

    async def get_round(self, election_id: str, round_id: str) -> Round | None:
        cursor = await self._conn.execute(
            "SELECT * FROM rounds WHERE id = ? AND election_id = ?",
            (round_id, election_id),
        )
        row = await cursor.fetchone()
        return self._row_to_round(row) if row else None

    async def get_active_round(self, election_id: str) -> Round | None:
        cursor = await self._conn.execute(
            "SELECT * FROM rounds WHERE election_id = ? AND status IN (?, ?)",
            (election_id, RoundStatus.VOTING.value, RoundStatus.CLOSED.value),
        )
        row = await cursor.fetchone()
        return self._row_to_round(row) if row else None

    async def list_rounds(self, election_id: str) -> list[Round]:
        """All rounds of an election, oldest first."""
        cursor = await self._conn.execute(
            "SELECT * FROM rounds WHERE election_id = ? ORDER BY created_at, rowid",
            (election_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_round(r) for r in rows]

    async def update_round_status(
        self,
        round_id: str,
        status: RoundStatus,
        disclosure_level: DisclosureLevel | None = None,
    ) -> None:
        await self._conn.execute(
            "UPDATE rounds SET status = ?, disclosure_level = ? WHERE id = ?",
            (
                status.value,
                disclosure_level.value if disclosure_level else None,
                round_id,
            ),
        )

    # ---------------------------------------------------------------
    # Ballots and receipts
    # ---------------------------------------------------------------

    async def insert_vote(self, ballot: Ballot, receipt: VoteReceipt) -> None:
        """Insert a ballot and its receipt. Call inside transaction()."""
        if not receipt.voted_at:
            receipt.voted_at = _now()
        await self._conn.execute(
            "INSERT INTO votes (id, round_id, candidate_id) VALUES (?,?,?)",
            (ballot.id, ballot.round_id, ballot.candidate_id),
        )
        await self._conn.execute(
            """INSERT INTO vote_records (id, round_id, participant_id, voted_at)
               VALUES (?,?,?,?)""",
            (receipt.id, receipt.round_id, receipt.participant_id, receipt.voted_at),
        )

    async def list_ballots(self, round_id: str) -> list[Ballot]:
        cursor = await self._conn.execute(
            "SELECT * FROM votes WHERE round_id = ? ORDER BY id", (round_id,)
        )
        rows = await cursor.fetchall()
        return [
            Ballot(id=r["id"], round_id=r["round_id"], candidate_id=r["candidate_id"])
            for r in rows
        ]

    async def list_receipts(self, round_id: str) -> list[VoteReceipt]:
        cursor = await self._conn.execute(
            "SELECT * FROM vote_records WHERE round_id = ? ORDER BY voted_at, rowid",
            (round_id,),
        )
        rows = await cursor.fetchall()
        return [
            VoteReceipt(
                id=r["id"],
                round_id=r["round_id"],
                participant_id=r["participant_id"],
                voted_at=r["voted_at"],
            )
            for r in rows
        ]

    async def has_receipt(self, round_id: str, participant_id: str) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM vote_records WHERE round_id = ? AND participant_id = ?",
            (round_id, participant_id),
        )
        return await cursor.fetchone() is not None

    async def count_receipts(self, round_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM vote_records WHERE round_id = ?", (round_id,)
        )
        (count,) = await cursor.fetchone()
        return count

    async def count_ballots(self, round_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM votes WHERE round_id = ?", (round_id,)
        )
        (count,) = await cursor.fetchone()
        return count

    async def delete_round_votes(self, round_id: str) -> None:
        await self._conn.execute("DELETE FROM votes WHERE round_id = ?", (round_id,))
        await self._conn.execute("DELETE FROM vote_records WHERE round_id = ?", (round_id,))

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    @staticmethod
    def _row_to_election(row) -> Election:
        return Election(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            body_size=row["body_size"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    @staticmethod
    def _row_to_participant(row) -> Participant:
        return Participant(
            id=row["id"],
            election_id=row["election_id"],
            name=row["name"],
            role=Role(row["role"]),
            token=row["token"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_round(row) -> Round:
        return Round(
            id=row["id"],
            election_id=row["election_id"],
            office=row["office"],
            description=row["description"],
            status=RoundStatus(row["status"]),
            disclosure_level=(
                DisclosureLevel(row["disclosure_level"]) if row["disclosure_level"] else None
            ),
            created_at=row["created_at"],
        )
