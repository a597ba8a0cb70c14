"""SQLite implementation of the JobStore protocol."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from bounty_sync.errors import PermanentError
from bounty_sync.interfaces.store import Mutation, Snapshot
from bounty_sync.models.records import Job, JobStatus, find_job
from bounty_sync.models.reports import ArchivalReport, SyncReport
from bounty_sync.sync.status import normalize_job_document

log = logging.getLogger(__name__)

SCHEMA = """
-- Mirror jobs, one row per job in list order
CREATE TABLE IF NOT EXISTS jobs (
    position INTEGER PRIMARY KEY,
    job_id INTEGER NOT NULL,
    contract_address TEXT,
    status TEXT NOT NULL,
    creator TEXT,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_job_id ON jobs(job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

-- Next local job id
CREATE TABLE IF NOT EXISTS store_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    next_id INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Last chain block read by the reconciler
CREATE TABLE IF NOT EXISTS sync_cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_block INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Reconciler and archival cycle history
CREATE TABLE IF NOT EXISTS cycle_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL,
    body TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_cycle_reports_kind ON cycle_reports(kind);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteJobStore:
    """SQLite-backed implementation of the JobStore protocol.

    The job list is stored row-per-job but always read and written whole.
    One asyncio.Lock serializes every snapshot read and write, so callers never
    observe a half-written list.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self.write_count = 0

    async def initialize(self) -> None:
        path = self._db_path
        if path != ":memory:":
            path = str(Path(path).expanduser())
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    # ── Snapshot discipline ────────────────────────────────

    async def read_snapshot(self) -> Snapshot:
        async with self._lock:
            return await self._load()

    async def write(self, jobs: list[Job], next_id: int) -> None:
        async with self._lock:
            await self._commit(jobs, next_id)

    async def update(self, fn: Mutation) -> Snapshot:
        async with self._lock:
            jobs, next_id = await self._load()
            result = fn(jobs, next_id)
            if result is None:
                return jobs, next_id
            new_jobs, new_next_id = result
            await self._commit(new_jobs, new_next_id)
            return new_jobs, new_next_id

    async def _load(self) -> Snapshot:
        docs: list[dict[str, Any]] = []
        async with self.db.execute("SELECT body FROM jobs ORDER BY position") as cur:
            async for row in cur:
                try:
                    docs.append(json.loads(row["body"]))
                except json.JSONDecodeError as e:
                    raise PermanentError(f"Corrupt job row: {e}") from e

        async with self.db.execute("SELECT next_id FROM store_meta WHERE id=1") as cur:
            row = await cur.fetchone()
            next_id = row["next_id"] if row else 0

        normalized = 0
        for doc in docs:
            if normalize_job_document(doc):
                normalized += 1

        try:
            jobs = [Job.from_dict(doc) for doc in docs]
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentError(f"Unreadable job document: {e}") from e

        if normalized:
            log.info("Normalized statuses on %d job(s), re-persisting", normalized)
            await self._commit(jobs, next_id)
        return jobs, next_id

    async def _commit(self, jobs: list[Job], next_id: int) -> None:
        # Serialize first so an encoding error never reaches the database
        try:
            rows = [
                (
                    position,
                    job.job_id,
                    job.contract_address,
                    job.status.value,
                    job.creator.lower() if job.creator else None,
                    json.dumps(job.to_dict(), sort_keys=True),
                )
                for position, job in enumerate(jobs)
            ]
        except (TypeError, ValueError) as e:
            raise PermanentError(f"Job snapshot not serializable: {e}") from e

        try:
            await self.db.execute("DELETE FROM jobs")
            await self.db.executemany(
                "INSERT INTO jobs (position, job_id, contract_address, status, creator, body)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            )
            await self.db.execute(
                "INSERT INTO store_meta (id, next_id, updated_at) VALUES (1, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET next_id=excluded.next_id,"
                " updated_at=excluded.updated_at",
                (next_id, _now()),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            await self.db.rollback()
            raise PermanentError(f"Snapshot commit failed: {e}") from e
        self.write_count += 1

    # ── Convenience reads ──────────────────────────────────

    async def get_job(self, job_id: int, contract_address: str | None = None) -> Job | None:
        jobs, _ = await self.read_snapshot()
        return find_job(jobs, job_id, contract_address)

    async def list_jobs(
        self, status: JobStatus | None = None, creator: str | None = None
    ) -> list[Job]:
        jobs, _ = await self.read_snapshot()
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if creator:
            jobs = [j for j in jobs if j.creator.lower() == creator.lower()]
        return jobs

    # ── Cursor ─────────────────────────────────────────────

    async def get_cursor(self) -> int | None:
        async with self.db.execute("SELECT last_block FROM sync_cursor WHERE id=1") as cur:
            row = await cur.fetchone()
            return row["last_block"] if row else None

    async def set_cursor(self, block_number: int) -> None:
        async with self._lock:
            try:
                await self.db.execute(
                    "INSERT INTO sync_cursor (id, last_block, updated_at) VALUES (1, ?, ?)"
                    " ON CONFLICT(id) DO UPDATE SET last_block=excluded.last_block,"
                    " updated_at=excluded.updated_at",
                    (block_number, _now()),
                )
                await self.db.commit()
            except aiosqlite.Error as e:
                raise PermanentError(f"Cursor write failed: {e}") from e

    # ── Cycle history ──────────────────────────────────────

    async def save_sync_report(self, report: SyncReport) -> None:
        await self._save_report("sync", report.started_at, report.duration_ms, report.to_dict())

    async def save_archival_report(self, report: ArchivalReport) -> None:
        await self._save_report("archive", report.started_at, report.duration_ms, report.to_dict())

    async def _save_report(
        self, kind: str, started_at: int, duration_ms: int, body: dict[str, Any]
    ) -> None:
        async with self._lock:
            try:
                await self.db.execute(
                    "INSERT INTO cycle_reports (kind, started_at, duration_ms, body)"
                    " VALUES (?, ?, ?, ?)",
                    (kind, started_at, duration_ms, json.dumps(body)),
                )
                await self.db.commit()
            except aiosqlite.Error as e:
                raise PermanentError(f"Report write failed: {e}") from e

    async def get_cycle_history(self, kind: str | None = None, limit: int = 10) -> list[dict]:
        if kind:
            query = "SELECT * FROM cycle_reports WHERE kind=? ORDER BY id DESC LIMIT ?"
            params: tuple = (kind, limit)
        else:
            query = "SELECT * FROM cycle_reports ORDER BY id DESC LIMIT ?"
            params = (limit,)
        async with self.db.execute(query, params) as cur:
            return [
                {"id": row["id"], "kind": row["kind"], **json.loads(row["body"])}
                async for row in cur
            ]
