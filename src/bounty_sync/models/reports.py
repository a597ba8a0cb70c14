"""Cycle reports produced by the reconciler and the archival sweeper."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class SyncReport:
    """Outcome of one reconciler cycle."""

    started_at: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    orphaned: int = 0
    removed: int = 0
    total_on_chain: int = 0
    block_number: int = 0
    duration_ms: int = 0
    error: str | None = None
    added_ids: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def changed(self) -> bool:
        return bool(self.added or self.updated or self.orphaned or self.removed)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ArchivalReport:
    """Outcome of one archival sweep."""

    started_at: int = 0
    verified: int = 0
    repinned: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    errors: int = 0
    duration_ms: int = 0

    @property
    def checked(self) -> int:
        return self.verified + self.repinned + self.failed

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ArchiveView:
    """Archive state of one submission, for status displays."""

    job_id: int
    submission_id: int
    hunter_cid: str | None
    archive_status: str
    archived_at: int | None
    archive_verified_at: int | None
    archive_expires_at: int | None
    last_repinned_at: int | None
    retrieved_by_poster: bool
    retrieved_at: int | None
    is_expired: bool
    days_until_expiry: int | None
