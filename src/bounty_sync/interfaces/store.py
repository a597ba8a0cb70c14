"""JobStore protocol - the single-writer home of every Job record."""

from __future__ import annotations

from typing import Callable, Protocol

from bounty_sync.models.records import Job, JobStatus
from bounty_sync.models.reports import ArchivalReport, SyncReport

Snapshot = tuple[list[Job], int]
Mutation = Callable[[list[Job], int], "Snapshot | None"]


class JobStore(Protocol):
    """Durable ordered job list plus the next local id, written whole."""

    # ── Lifecycle ──────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        ...

    async def close(self) -> None:
        ...

    # ── Snapshot discipline ────────────────────────────────

    async def read_snapshot(self) -> Snapshot:
        """Consistent deep copy of (jobs, next_id), statuses normalized."""
        ...

    async def write(self, jobs: list[Job], next_id: int) -> None:
        """Replace the whole snapshot atomically."""
        ...

    async def update(self, fn: Mutation) -> Snapshot:
        """Read-modify-write under the write lock. fn returns None to skip the write."""
        ...

    # ── Convenience reads ──────────────────────────────────

    async def get_job(self, job_id: int, contract_address: str | None = None) -> Job | None:
        ...

    async def list_jobs(
        self, status: JobStatus | None = None, creator: str | None = None
    ) -> list[Job]:
        ...

    # ── Cursor & history ───────────────────────────────────

    async def get_cursor(self) -> int | None:
        ...

    async def set_cursor(self, block_number: int) -> None:
        ...

    async def save_sync_report(self, report: SyncReport) -> None:
        ...

    async def save_archival_report(self, report: ArchivalReport) -> None:
        ...

    async def get_cycle_history(self, kind: str | None = None, limit: int = 10) -> list[dict]:
        ...
