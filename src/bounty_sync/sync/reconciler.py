"""Reconciler - mirrors on-chain bounties into the local job store.

One cycle:
1. snapshot every bounty on chain (polling ``bountyCount``)
2. index local jobs by (contractAddress, jobId)
3. per bounty: exact match, pending link, concurrent link, or a new job
4. orphan pass over jobs the chain no longer vouches for
5. duplicate pass
6. commit through the race-safe merge
7. fire completion hooks (the archival sweeper subscribes here)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from typing import Awaitable, Callable

from bounty_sync.errors import BountySyncError
from bounty_sync.interfaces.chain import ChainReader
from bounty_sync.interfaces.metadata import MetadataSource
from bounty_sync.interfaces.store import JobStore
from bounty_sync.models.chain import BountyStruct, SubmissionStruct
from bounty_sync.models.records import (
    PENDING_SUBMISSION_STATUSES,
    PLACEHOLDER_DESCRIPTION,
    PLACEHOLDER_WORK_PRODUCT_TYPE,
    Job,
    JobStatus,
    OrphanReason,
    Submission,
)
from bounty_sync.models.reports import SyncReport
from bounty_sync.sync.merge import (
    JobKey,
    MergePlan,
    UpdatedJob,
    dedupe,
    is_local_draft,
    merge_into_fresh,
)
from bounty_sync.sync.status import apply_submission_status, bounty_effective_status

log = logging.getLogger(__name__)

CompletionHook = Callable[[SyncReport], Awaitable[object]]

WEAK_LINK_WINDOW = 60  # seconds between local close time and chain deadline
TERMINAL_STATUSES = frozenset({JobStatus.ORPHANED, JobStatus.CLOSED})


def placeholder_title(job_id: int) -> str:
    return f"Bounty #{job_id}"


def _comparable(job: Job) -> dict:
    doc = job.to_dict()
    doc.pop("lastSyncedAt", None)
    return doc


def apply_chain_submission(sub: Submission, raw: SubmissionStruct) -> None:
    """Overwrite chain-owned fields of ``sub``; local-only fields are untouched."""
    sub.hunter = raw.hunter
    sub.evaluation_cid = raw.evaluation_cid or None
    sub.hunter_cid = raw.hunter_cid or None
    sub.eval_wallet = raw.eval_wallet
    sub.verdikta_agg_id = raw.verdikta_agg_id
    sub.acceptance = raw.acceptance
    sub.rejection = raw.rejection
    sub.justification_cids = raw.justification_cids
    sub.submitted_at = raw.submitted_at or None
    sub.finalized_at = raw.finalized_at or None


class Reconciler:
    """Keeps the local mirror consistent with the authoritative escrow.

    ``sync_now`` never raises. Failures bump ``consecutive_errors``; once
    ``max_consecutive_errors`` is reached the reconciler disables itself until
    a manual sync.
    """

    def __init__(
        self,
        store: JobStore,
        chain: ChainReader,
        metadata: MetadataSource,
        *,
        max_in_flight: int = 8,
        max_consecutive_errors: int = 5,
        interval_minutes: float = 2,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._metadata = metadata
        self._max_in_flight = max_in_flight
        self._max_consecutive_errors = max_consecutive_errors
        self._interval_minutes = interval_minutes
        self._clock = clock or (lambda: int(time.time()))
        self._hooks: list[CompletionHook] = []
        self._hook_tasks: set[asyncio.Task] = set()

        self.is_syncing = False
        self.enabled = True
        self.consecutive_errors = 0
        self.last_sync_time: int | None = None
        self.last_report: SyncReport | None = None

    @property
    def contract_address(self) -> str:
        return self._chain.contract_address

    def resume(self) -> None:
        """Re-enable after a run of failures."""
        self.enabled = True
        self.consecutive_errors = 0

    def add_completion_hook(self, hook: CompletionHook) -> None:
        self._hooks.append(hook)

    def get_status(self) -> dict:
        return {
            "is_syncing": self.is_syncing,
            "enabled": self.enabled,
            "last_sync_time": self.last_sync_time,
            "consecutive_errors": self.consecutive_errors,
            "interval_minutes": self._interval_minutes,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    # ── Cycle ──────────────────────────────────────────────

    async def sync_now(self, manual: bool = False) -> SyncReport:
        if self.is_syncing:
            log.info("Sync already in progress, skipping")
            return self.last_report or SyncReport(error="sync already in progress")
        if not self.enabled:
            if not manual:
                return SyncReport(error="reconciler disabled")
            log.info("Manual sync re-enables the reconciler")
            self.resume()

        self.is_syncing = True
        start = time.monotonic()
        report = SyncReport(started_at=self._clock())
        try:
            await self._run_cycle(report)
        except Exception as exc:
            report.error = str(exc) or type(exc).__name__
            self.consecutive_errors += 1
            log.error(
                "Sync cycle failed (%d consecutive): %s",
                self.consecutive_errors, report.error, exc_info=True,
            )
            if self.consecutive_errors >= self._max_consecutive_errors:
                self.enabled = False
                log.error(
                    "Reconciler disabled after %d consecutive failures; "
                    "a manual sync re-enables it",
                    self.consecutive_errors,
                )
        else:
            self.consecutive_errors = 0
            self.last_sync_time = report.started_at
            log.info(
                "Sync complete: %d added, %d updated, %d unchanged, %d orphaned, "
                "%d removed (%d on chain, block %d)",
                report.added, report.updated, report.unchanged, report.orphaned,
                report.removed, report.total_on_chain, report.block_number,
            )
        finally:
            report.duration_ms = int((time.monotonic() - start) * 1000)
            self.is_syncing = False
            self.last_report = report

        try:
            await self._store.save_sync_report(report)
        except BountySyncError as exc:
            log.warning("Could not record sync report: %s", exc)

        if report.ok:
            self._fire_hooks(report)
        return report

    def _fire_hooks(self, report: SyncReport) -> None:
        for hook in self._hooks:
            task = asyncio.create_task(self._run_hook(hook, report))
            self._hook_tasks.add(task)
            task.add_done_callback(self._hook_tasks.discard)

    async def _run_hook(self, hook: CompletionHook, report: SyncReport) -> None:
        try:
            await hook(report)
        except Exception:
            log.error("Sync completion hook %r failed", hook, exc_info=True)

    async def wait_for_hooks(self) -> None:
        """Wait for completion hooks started by earlier cycles."""
        if self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)

    async def _run_cycle(self, report: SyncReport) -> None:
        now = self._clock()
        current = self.contract_address

        # Step 1: chain snapshot
        snapshot = await self._chain.list_bounties(self._max_in_flight)
        report.total_on_chain = len(snapshot.bounties)
        report.block_number = snapshot.block_number

        # Step 2: local index
        jobs, next_id = await self._store.read_snapshot()
        index: dict[JobKey, Job] = {}
        for job in jobs:
            held = index.get(job.key)
            if held is None or (job.synced_from_blockchain and not held.synced_from_blockchain):
                index[job.key] = job
        baseline = {id(job): _comparable(job) for job in jobs}
        original_keys = {id(job): job.key for job in jobs}
        original_synced = {id(job): job.synced_from_blockchain for job in jobs}

        plan = MergePlan(next_id=next_id)
        claimed: set[int] = set()  # id() of local jobs matched this cycle
        touched: dict[int, Job] = {}  # id() of original -> reconciled copy
        unmatched: list[BountyStruct] = []

        # Step 3: per bounty
        for bounty in sorted(snapshot.bounties, key=lambda b: b.bounty_id):
            plan.next_id = max(plan.next_id, bounty.bounty_id + 1)
            local = self._match(jobs, index, bounty, current, claimed)
            if local is None:
                unmatched.append(bounty)
                continue
            claimed.add(id(local))
            if not self._needs_update(local, bounty, current, now):
                report.unchanged += 1
                continue
            try:
                candidate = await self._reconcile_job(copy.deepcopy(local), bounty, current, now)
            except BountySyncError as exc:
                log.warning("Bounty %d left as is this cycle: %s", bounty.bounty_id, exc)
                report.unchanged += 1
                continue
            if _comparable(candidate) == baseline[id(local)]:
                report.unchanged += 1
            else:
                touched[id(local)] = candidate
                report.updated += 1

        # Links written by a mutator after our snapshot
        if unmatched:
            fresh, _ = await self._store.read_snapshot()
            for bounty in unmatched:
                linked = self._concurrent_link(fresh, bounty, current)
                try:
                    if linked is not None:
                        log.info("Bounty %d was linked concurrently", bounty.bounty_id)
                        reconciled = await self._reconcile_job(
                            copy.deepcopy(linked), bounty, current, now
                        )
                        plan.updated.append(
                            UpdatedJob(linked.key, reconciled, linked.synced_from_blockchain)
                        )
                        report.updated += 1
                    else:
                        job = await self._create_job(bounty, current, now)
                        plan.added.append(job)
                        report.added += 1
                        report.added_ids.append(bounty.bounty_id)
                except BountySyncError as exc:
                    log.warning("Bounty %d not mirrored this cycle: %s", bounty.bounty_id, exc)

        # Unlinked local drafts that sit on a bounty's id move out of the way
        mirrored = {job.key for job in jobs if job.synced_from_blockchain}
        bounty_keys = {
            (current, bounty.bounty_id) for bounty in snapshot.bounties
        } - mirrored
        displaced: set[int] = set()
        for job in jobs:
            if (
                job.key in bounty_keys
                and id(job) not in claimed
                and not job.synced_from_blockchain
                and not job.on_chain
            ):
                plan.updated.append(UpdatedJob(job.key, job, False, renumber=True))
                displaced.add(id(job))

        # Step 4: orphan pass
        seen_ids = snapshot.seen_ids
        for job in jobs:
            if id(job) in claimed or id(job) in touched or id(job) in displaced:
                continue
            if job.status in TERMINAL_STATUSES:
                continue
            reason = self._orphan_reason(job, current, seen_ids, now)
            if reason is None:
                continue
            orphan = copy.deepcopy(job)
            orphan.status = JobStatus.ORPHANED
            orphan.orphan_reason = reason
            orphan.orphaned_at = now
            touched[id(job)] = orphan
            report.orphaned += 1
            log.info("Job %d orphaned: %s", job.job_id, reason.value)

        for key, candidate in touched.items():
            plan.updated.append(UpdatedJob(original_keys[key], candidate, original_synced[key]))

        # Step 5: duplicate pass over the post-cycle view
        projected = [
            touched.get(id(job), job) for job in jobs if id(job) not in displaced
        ] + plan.added
        _, removed = dedupe(projected)
        plan.removed = removed
        report.removed = removed
        report.orphaned += removed

        # Step 6: commit
        if plan.empty and plan.next_id <= next_id:
            log.debug("No changes this cycle, skipping write")
        else:
            await self._store.update(lambda fresh, fresh_next: merge_into_fresh(fresh, fresh_next, plan))
        await self._store.set_cursor(snapshot.block_number)

    # ── Matching ───────────────────────────────────────────

    def _match(
        self,
        jobs: list[Job],
        index: dict[JobKey, Job],
        bounty: BountyStruct,
        current: str,
        claimed: set[int],
    ) -> Job | None:
        # Exact match on (current contract, bounty id)
        job = index.get((current, bounty.bounty_id))
        if job is not None and id(job) not in claimed and (
            job.synced_from_blockchain
            or job.on_chain
            or job.evaluation_cid == bounty.evaluation_cid
        ):
            return job

        # Legacy record carrying the chain index under an alias
        for job in jobs:
            if id(job) in claimed or job.contract_address not in (None, current):
                continue
            if job.legacy_chain_id() == bounty.bounty_id:
                return job

        # Pending link: an unsynced local job waiting for its chain id
        candidates = [
            j for j in jobs
            if id(j) not in claimed
            and not j.synced_from_blockchain
            and j.status != JobStatus.ORPHANED
            and j.contract_address in (None, current)
        ]
        for job in candidates:
            if job.evaluation_cid and job.evaluation_cid == bounty.evaluation_cid:
                return job
        for job in candidates:
            if (
                job.creator
                and job.creator.lower() == bounty.creator.lower()
                and job.submission_close_time is not None
                and abs(job.submission_close_time - bounty.submission_deadline) < WEAK_LINK_WINDOW
            ):
                return job
        return None

    def _concurrent_link(self, fresh: list[Job], bounty: BountyStruct, current: str) -> Job | None:
        for job in fresh:
            if job.contract_address not in (None, current):
                continue
            if job.job_id == bounty.bounty_id and (job.on_chain or job.synced_from_blockchain):
                return job
            if (
                bounty.evaluation_cid
                and job.evaluation_cid == bounty.evaluation_cid
                and not job.synced_from_blockchain
            ):
                return job
        return None

    def _needs_update(self, job: Job, bounty: BountyStruct, current: str, now: int) -> bool:
        chain_status = bounty_effective_status(bounty, now)
        if job.status != chain_status:
            return True
        if job.submission_count != bounty.submission_count or job.winner != bounty.winner:
            return True
        if job.description == PLACEHOLDER_DESCRIPTION:
            return True
        if len(job.submissions) < bounty.submission_count:
            return True
        if any(
            s.status in PENDING_SUBMISSION_STATUSES or s.on_chain_status == "PendingVerdikta"
            for s in job.submissions
        ):
            return True
        if job.status == JobStatus.EXPIRED and job.submissions:
            return True
        if job.contract_address is None or job.legacy_aliases:
            return True
        if job.evaluation_cid != bounty.evaluation_cid:
            return True
        return job.job_id != bounty.bounty_id or not job.synced_from_blockchain

    def _orphan_reason(
        self, job: Job, current: str, seen_ids: set[int], now: int
    ) -> OrphanReason | None:
        if job.contract_address and job.contract_address != current:
            return OrphanReason.DIFFERENT_CONTRACT
        if job.on_chain or job.synced_from_blockchain:
            if job.job_id not in seen_ids:
                return OrphanReason.NOT_FOUND_ON_CHAIN
            return None
        if job.submission_close_time is not None and now > job.submission_close_time:
            return OrphanReason.NEVER_DEPLOYED
        return None

    # ── Update & create ────────────────────────────────────

    async def _reconcile_job(
        self, job: Job, bounty: BountyStruct, current: str, now: int
    ) -> Job:
        """Update path. Operates on a private copy; raises to abandon it."""
        job.status = bounty_effective_status(bounty, now)
        job.orphaned_at = None
        job.orphan_reason = None
        job.submission_count = bounty.submission_count
        job.winner = bounty.winner
        job.submission_close_time = bounty.submission_deadline
        if job.job_id != bounty.bounty_id:
            log.info("Reconciling local job %d to chain id %d", job.job_id, bounty.bounty_id)
            job.job_id = bounty.bounty_id
        if job.legacy_aliases:
            log.debug("Dropping legacy aliases %s from job %d", sorted(job.legacy_aliases), job.job_id)
            job.legacy_aliases = {}
        if job.evaluation_cid != bounty.evaluation_cid:
            job.evaluation_cid = bounty.evaluation_cid
        if job.contract_address is None:
            job.contract_address = current
        job.on_chain = True
        job.synced_from_blockchain = True
        job.creator = job.creator or bounty.creator
        job.threshold = bounty.threshold
        job.class_id = bounty.class_id
        job.bounty_amount = bounty.bounty_amount
        job.created_at = job.created_at or bounty.created_at

        if job.description == PLACEHOLDER_DESCRIPTION or not job.title:
            await self._refill_metadata(job)

        job.submissions = await self._sync_submissions(job, bounty)
        job.last_synced_at = now
        return job

    async def _create_job(self, bounty: BountyStruct, current: str, now: int) -> Job:
        job = Job(
            job_id=bounty.bounty_id,
            on_chain=True,
            contract_address=current,
            creator=bounty.creator,
            title=placeholder_title(bounty.bounty_id),
            description=PLACEHOLDER_DESCRIPTION,
            work_product_type=PLACEHOLDER_WORK_PRODUCT_TYPE,
            bounty_amount=bounty.bounty_amount,
            threshold=bounty.threshold,
            evaluation_cid=bounty.evaluation_cid,
            class_id=bounty.class_id,
            submission_open_time=bounty.created_at,
            submission_close_time=bounty.submission_deadline,
            created_at=bounty.created_at,
            status=bounty_effective_status(bounty, now),
            winner=bounty.winner,
            submission_count=bounty.submission_count,
            synced_from_blockchain=True,
            last_synced_at=now,
        )
        await self._refill_metadata(job)
        job.submissions = await self._sync_submissions(job, bounty)
        log.info("Mirrored new bounty %d (%s)", job.job_id, job.title)
        return job

    async def _refill_metadata(self, job: Job) -> None:
        if not job.evaluation_cid:
            return
        meta = await self._metadata.fetch(job.evaluation_cid)
        if meta is None:
            if not job.title:
                job.title = placeholder_title(job.job_id)
            return
        if meta.title and (not job.title or job.title == placeholder_title(job.job_id)):
            job.title = meta.title
        if meta.description:
            job.description = meta.description
        if meta.work_product_type and job.work_product_type in ("", PLACEHOLDER_WORK_PRODUCT_TYPE):
            job.work_product_type = meta.work_product_type

    async def _sync_submissions(self, job: Job, bounty: BountyStruct) -> list[Submission]:
        """Chain submissions merged over local ones, then surviving local drafts."""
        local_by_id = {s.submission_id: s for s in job.submissions}
        merged: list[Submission] = []
        for sid in range(bounty.submission_count):
            local = local_by_id.get(sid)
            try:
                raw = await self._chain.get_submission(bounty.bounty_id, sid)
            except BountySyncError as exc:
                if local is None:
                    raise
                log.warning(
                    "Keeping local submission %d/%d, chain read failed: %s",
                    bounty.bounty_id, sid, exc,
                )
                merged.append(local)
                continue

            existing = local.status if local is not None else None
            sub = local if local is not None else Submission(submission_id=sid)
            apply_chain_submission(sub, raw)
            await apply_submission_status(sub, raw.raw_status, job.threshold, self._chain, existing)
            merged.append(sub)

        for sub in job.submissions:
            if sub.submission_id >= bounty.submission_count and is_local_draft(sub):
                merged.append(sub)
        return merged
