"""Archival sweeper - keeps hunter submissions pinned until their archive expires.

Retention policy:
- a submission is archived for ``ttl_days`` after its bounty's submission close
- once the poster retrieves it, expiry moves to ``after_retrieval_days`` from then
- expired archives are only marked; unpinning is left to the pinning service
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from bounty_sync.errors import NotFound
from bounty_sync.interfaces.pins import PinService
from bounty_sync.interfaces.store import JobStore
from bounty_sync.models.config import ArchiveConfig
from bounty_sync.models.records import ArchiveStatus, Job, JobStatus, Submission, find_job
from bounty_sync.models.reports import ArchivalReport, ArchiveView

log = logging.getLogger(__name__)

DAY = 86400
PIN_SOURCE = "bounty-sync-archival"

SubmissionKey = tuple[str | None, int, int]


@dataclass
class _Outcome:
    """Archival fields to stamp onto one submission."""

    key: SubmissionKey
    hunter_cid: str
    fields: dict[str, Any] = field(default_factory=dict)


def _key(job: Job, sub: Submission) -> SubmissionKey:
    return (job.contract_address, job.job_id, sub.submission_id)


def _view(job: Job, sub: Submission, now: int) -> ArchiveView:
    expires = sub.archive_expires_at
    return ArchiveView(
        job_id=job.job_id,
        submission_id=sub.submission_id,
        hunter_cid=sub.hunter_cid,
        archive_status=sub.archive_status.value,
        archived_at=sub.archived_at,
        archive_verified_at=sub.archive_verified_at,
        archive_expires_at=expires,
        last_repinned_at=sub.last_repinned_at,
        retrieved_by_poster=sub.retrieved_by_poster,
        retrieved_at=sub.retrieved_at,
        is_expired=expires is not None and now > expires,
        days_until_expiry=max(0, math.ceil((expires - now) / DAY)) if expires is not None else None,
    )


class ArchivalSweeper:
    """Verifies that hunter CIDs are still pinned and repins the missing ones.

    Each sweep:
    1. Reads a snapshot of the job store
    2. Marks expired archives, skips recently verified ones
    3. Verifies the rest against the pin service, repinning on a miss
    4. Commits only the archival fields onto the fresh records
    5. Records the sweep report
    """

    def __init__(
        self,
        store: JobStore,
        pins: PinService,
        config: ArchiveConfig | None = None,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._pins = pins
        self._config = config or ArchiveConfig()
        self._clock = clock or (lambda: int(time.time()))

        self.is_running = False
        self.last_run_time: int | None = None
        self.last_report: ArchivalReport | None = None

    def get_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "last_run_time": self.last_run_time,
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "ttl_days": self._config.ttl_days,
            "after_retrieval_days": self._config.after_retrieval_days,
            "verify_interval_hours": self._config.verify_interval_hours,
            "rate_limit_ms": self._config.rate_limit_ms,
        }

    # ── Sweep ──────────────────────────────────────────────

    async def run_sweep(self) -> ArchivalReport:
        """Run one archival pass. Raises only when the store fails."""
        if self.is_running:
            log.debug("Archival sweep already running, skipping")
            return self.last_report or ArchivalReport()

        self.is_running = True
        start = time.monotonic()
        now = self._clock()
        report = ArchivalReport(started_at=now)
        try:
            jobs, _ = await self._store.read_snapshot()
            outcomes: list[_Outcome] = []

            for job in jobs:
                if job.status == JobStatus.ORPHANED or not job.submissions:
                    continue
                for sub in job.submissions:
                    if not sub.hunter_cid:
                        continue

                    if now > self._expiry(job, sub, now):
                        if sub.archive_status != ArchiveStatus.EXPIRED:
                            outcomes.append(_Outcome(
                                _key(job, sub), sub.hunter_cid,
                                {"archive_status": ArchiveStatus.EXPIRED},
                            ))
                            report.expired += 1
                            log.info(
                                "Archive expired for job %d submission %d (%s)",
                                job.job_id, sub.submission_id, sub.hunter_cid[:16],
                            )
                        continue

                    if self._recently_verified(sub, now):
                        report.skipped += 1
                        continue

                    try:
                        outcome = await self._check(job, sub, now)
                    except Exception as exc:
                        report.errors += 1
                        log.error(
                            "Archival check failed for job %d submission %d: %s",
                            job.job_id, sub.submission_id, exc, exc_info=True,
                        )
                    else:
                        outcomes.append(outcome)
                        status = outcome.fields["archive_status"]
                        if status == ArchiveStatus.VERIFIED:
                            report.verified += 1
                        elif status == ArchiveStatus.REPINNED:
                            report.repinned += 1
                        else:
                            report.failed += 1

                    if self._config.rate_limit_ms > 0:
                        await asyncio.sleep(self._config.rate_limit_ms / 1000)

            if outcomes:
                await self._commit(outcomes)
        finally:
            report.duration_ms = int((time.monotonic() - start) * 1000)
            self.is_running = False

        self.last_run_time = now
        self.last_report = report
        await self._store.save_archival_report(report)
        log.info(
            "Archival sweep complete: %d verified, %d repinned, %d failed, "
            "%d skipped, %d expired, %d errors in %dms",
            report.verified, report.repinned, report.failed,
            report.skipped, report.expired, report.errors, report.duration_ms,
        )
        return report

    def _expiry(self, job: Job, sub: Submission, now: int) -> int:
        if sub.archive_expires_at is not None:
            return sub.archive_expires_at
        return self._default_expiry(job, now)

    def _default_expiry(self, job: Job, now: int) -> int:
        close = job.submission_close_time or job.created_at or now
        return close + self._config.ttl_days * DAY

    def _recently_verified(self, sub: Submission, now: int) -> bool:
        last = sub.archive_verified_at or 0
        return now - last < self._config.verify_interval_hours * 3600

    async def _check(self, job: Job, sub: Submission, now: int) -> _Outcome:
        """Verify one submission's pin, repinning if the service lost it."""
        assert sub.hunter_cid is not None
        outcome = _Outcome(_key(job, sub), sub.hunter_cid)
        if sub.archive_expires_at is None:
            outcome.fields["archive_expires_at"] = self._default_expiry(job, now)
        if sub.archived_at is None:
            outcome.fields["archived_at"] = now

        if await self._pins.verify_pin(sub.hunter_cid):
            outcome.fields["archive_status"] = ArchiveStatus.VERIFIED
            outcome.fields["archive_verified_at"] = now
            return outcome

        log.warning(
            "Pin missing for job %d submission %d (%s), repinning",
            job.job_id, sub.submission_id, sub.hunter_cid[:16],
        )
        meta = {
            "name": f"submission-{job.job_id}-{sub.submission_id}",
            "keyvalues": {
                "jobId": job.job_id,
                "submissionId": sub.submission_id,
                "hunter": sub.hunter,
                "archivedAt": outcome.fields.get("archived_at", sub.archived_at),
                "source": PIN_SOURCE,
            },
        }
        if await self._pins.pin_by_hash(sub.hunter_cid, meta):
            outcome.fields["archive_status"] = ArchiveStatus.REPINNED
            outcome.fields["archive_verified_at"] = now
            outcome.fields["last_repinned_at"] = now
            log.info("Repinned %s", sub.hunter_cid[:16])
        else:
            outcome.fields["archive_status"] = ArchiveStatus.FAILED
            outcome.fields["last_failed_at"] = now
            log.error(
                "Repin failed for job %d submission %d (%s), content may be lost",
                job.job_id, sub.submission_id, sub.hunter_cid[:16],
            )
        return outcome

    async def _commit(self, outcomes: list[_Outcome]) -> None:
        by_key = {o.key: o for o in outcomes}

        def apply(jobs: list[Job], next_id: int):
            applied = 0
            for job in jobs:
                for sub in job.submissions:
                    outcome = by_key.get(_key(job, sub))
                    # The CID may have changed since the snapshot
                    if outcome is None or sub.hunter_cid != outcome.hunter_cid:
                        continue
                    for name, value in outcome.fields.items():
                        setattr(sub, name, value)
                    applied += 1
            if not applied:
                return None
            return jobs, next_id

        await self._store.update(apply)

    # ── Single submission ──────────────────────────────────

    async def mark_as_retrieved(
        self,
        job_id: int,
        submission_id: int,
        poster: str,
        contract_address: str | None = None,
    ) -> Submission:
        """Record that the poster fetched the work; expiry moves to the short window."""
        now = self._clock()
        result: list[Submission] = []

        def apply(jobs: list[Job], next_id: int):
            job, sub = _locate(jobs, job_id, submission_id, contract_address)
            sub.retrieved_by_poster = True
            sub.retrieved_at = now
            sub.retriever_address = poster
            sub.archive_expires_at = now + self._config.after_retrieval_days * DAY
            result.append(sub)
            return jobs, next_id

        await self._store.update(apply)
        log.info(
            "Job %d submission %d retrieved by %s, archive expires at %d",
            job_id, submission_id, poster[:10], result[0].archive_expires_at,
        )
        return result[0]

    async def get_archive_status(
        self, job_id: int, submission_id: int, contract_address: str | None = None
    ) -> ArchiveView:
        jobs, _ = await self._store.read_snapshot()
        job, sub = _locate(jobs, job_id, submission_id, contract_address)
        return _view(job, sub, self._clock())

    async def force_verify(
        self, job_id: int, submission_id: int, contract_address: str | None = None
    ) -> ArchiveView:
        """Verify one submission now, ignoring the verify interval."""
        now = self._clock()
        jobs, _ = await self._store.read_snapshot()
        job, sub = _locate(jobs, job_id, submission_id, contract_address)
        if not sub.hunter_cid:
            raise NotFound(f"Submission {submission_id} of job {job_id} has no hunter CID")

        outcome = await self._check(job, sub, now)
        await self._commit([outcome])
        for name, value in outcome.fields.items():
            setattr(sub, name, value)
        return _view(job, sub, now)


def _locate(
    jobs: list[Job], job_id: int, submission_id: int, contract_address: str | None
) -> tuple[Job, Submission]:
    job = find_job(jobs, job_id, contract_address)
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    sub = job.find_submission(submission_id)
    if sub is None:
        raise NotFound(f"Submission {submission_id} not found in job {job_id}")
    return job, sub

