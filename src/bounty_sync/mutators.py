"""Local write paths: job creation, chain linking, single-submission edits.

Every write goes through ``JobStore.update`` so it composes with a reconciler
cycle running at the same time. Chain reads happen before the update, never
while the store lock is held.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Callable

from bounty_sync.errors import BountySyncError, InvalidInput, InvalidState, NotFound
from bounty_sync.interfaces.chain import ChainReader
from bounty_sync.interfaces.store import JobStore
from bounty_sync.models.chain import SubmissionStruct
from bounty_sync.models.records import (
    Job,
    JobRequest,
    JobStatus,
    OrphanReason,
    ResolveHints,
    ResolveResult,
    Submission,
    SubmissionFile,
    SubmissionStatus,
)
from bounty_sync.sync.merge import is_local_draft
from bounty_sync.sync.reconciler import apply_chain_submission
from bounty_sync.sync.status import apply_submission_status

log = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
CID_RE = re.compile(
    r"^(Qm[1-9A-HJ-NP-Za-km-z]{44}|b[a-z2-7]{58,}|B[A-Z2-7]{58,}"
    r"|z[1-9A-HJ-NP-Za-km-z]{48,}|F[0-9A-F]{50,})$"
)

RESOLVE_BATCH = 40


def _check_address(value: str, what: str) -> None:
    if not ADDRESS_RE.match(value or ""):
        raise InvalidInput(f"Invalid {what} address: {value!r}")


def _check_cid(value: str | None, what: str) -> None:
    if value is not None and not CID_RE.match(value):
        raise InvalidInput(f"Invalid {what} CID: {value!r}")


def _find_local(jobs: list[Job], job_id: int) -> Job:
    """The record a caller means by ``job_id``, preferring the unsynced one."""
    matches = [j for j in jobs if j.job_id == job_id]
    if not matches:
        raise NotFound(f"Job {job_id} not found")
    matches.sort(key=lambda j: j.synced_from_blockchain)
    return matches[0]


def _find_synced(jobs: list[Job], job_id: int) -> Job:
    matches = [j for j in jobs if j.job_id == job_id]
    if not matches:
        raise NotFound(f"Job {job_id} not found")
    matches.sort(key=lambda j: not (j.synced_from_blockchain or j.on_chain))
    return matches[0]


class LocalMutators:
    """Write operations invoked by the API layer and the CLI."""

    def __init__(
        self,
        store: JobStore,
        chain: ChainReader,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._clock = clock or (lambda: int(time.time()))

    # ── Jobs ───────────────────────────────────────────────

    async def create_local_job(self, request: JobRequest) -> Job:
        """Store a job that is not on chain yet. Returns the stored record."""
        if not request.title or not request.description:
            raise InvalidInput("title and description are required")
        _check_address(request.creator, "creator")
        if not 0 <= request.threshold <= 100:
            raise InvalidInput(f"Threshold must be within 0..100, got {request.threshold}")
        if request.bounty_amount <= 0:
            raise InvalidInput(f"Bounty amount must be positive, got {request.bounty_amount}")
        _check_cid(request.evaluation_cid, "evaluation")
        _check_cid(request.primary_cid, "primary")

        now = self._clock()
        open_time = request.submission_open_time or now
        if request.submission_close_time <= open_time:
            raise InvalidInput("Submission close time must be after the open time")

        current = self._chain.contract_address
        created: list[Job] = []

        def apply(jobs: list[Job], next_id: int):
            job = Job(
                job_id=next_id,
                on_chain=False,
                contract_address=current or None,
                creator=request.creator,
                title=request.title,
                description=request.description,
                work_product_type=request.work_product_type,
                bounty_amount=request.bounty_amount,
                bounty_amount_usd=request.bounty_amount_usd,
                threshold=request.threshold,
                evaluation_cid=request.evaluation_cid,
                primary_cid=request.primary_cid,
                class_id=request.class_id,
                jury_nodes=list(request.jury_nodes),
                submission_open_time=open_time,
                submission_close_time=request.submission_close_time,
                created_at=now,
                status=JobStatus.OPEN,
            )
            created.append(job)
            return jobs + [job], next_id + 1

        await self._store.update(apply)
        log.info("Created local job %d (%s) for %s", created[0].job_id, created[0].title, request.creator[:10])
        return created[0]

    async def attach_bounty_id(
        self,
        job_id: int,
        bounty_id: int,
        tx_hash: str | None = None,
        block_number: int | None = None,
    ) -> Job:
        """Link a local job to its confirmed on-chain bounty."""
        if bounty_id < 0:
            raise InvalidInput(f"Bounty id must be non-negative, got {bounty_id}")
        current = self._chain.contract_address
        result: list[Job] = []

        def apply(jobs: list[Job], next_id: int):
            job = _find_local(jobs, job_id)
            if job.contract_address is None:
                job.contract_address = current
            target_key = (job.contract_address, bounty_id)
            next_id = max(next_id, bounty_id + 1)
            for other in jobs:
                if other is job or other.key != target_key:
                    continue
                if other.synced_from_blockchain:
                    log.warning(
                        "Bounty %d is already mirrored; the duplicate pass keeps the synced record",
                        bounty_id,
                    )
                elif not other.on_chain:
                    # Another draft sitting on the bounty's id moves to a fresh one
                    log.info("Local job %d renumbered to %d to make room for bounty %d",
                             other.job_id, next_id, bounty_id)
                    other.job_id = next_id
                    next_id += 1
            job.job_id = bounty_id
            job.on_chain = True
            if tx_hash is not None:
                job.tx_hash = tx_hash
            if block_number is not None:
                job.block_number = block_number
            result.append(job)
            return jobs, next_id

        await self._store.update(apply)
        log.info("Linked local job %d to bounty %d", job_id, bounty_id)
        return result[0]

    async def resolve_bounty_id(
        self,
        job_id: int,
        hints: ResolveHints,
        *,
        lookback: int = 300,
        tolerance: int = 300,
    ) -> ResolveResult:
        """Find the bounty a local job became, then link it.

        Fast path reads the creation receipt; the slow path scans the most
        recent ``lookback`` bounties for the creator, evaluation CID and a
        deadline within ``tolerance`` seconds, closest deadline first. With no
        match the job is marked off chain and NotFound is raised.
        """
        _check_address(hints.creator, "creator")
        jobs, _ = await self._store.read_snapshot()
        _find_local(jobs, job_id)

        result: ResolveResult | None = None
        if hints.tx_hash:
            try:
                bounty_id = await self._chain.get_receipt_bounty_id(hints.tx_hash)
            except BountySyncError as exc:
                log.warning("Receipt lookup for %s failed, scanning state: %s", hints.tx_hash[:12], exc)
                bounty_id = None
            if bounty_id is not None:
                result = ResolveResult(bounty_id=bounty_id, method="tx")

        if result is None:
            result = await self._scan(hints, lookback, tolerance)

        if result is None:
            await self._mark_off_chain(job_id)
            raise NotFound(f"No matching bounty found for job {job_id}")

        await self.attach_bounty_id(job_id, result.bounty_id, tx_hash=hints.tx_hash)
        log.info(
            "Resolved job %d to bounty %d via %s (delta %ds)",
            job_id, result.bounty_id, result.method, result.delta,
        )
        return result

    async def _scan(self, hints: ResolveHints, lookback: int, tolerance: int) -> ResolveResult | None:
        total = await self._chain.bounty_count()
        if total <= 0:
            return None
        want_creator = hints.creator.lower()
        ids = list(range(total - 1, max(-1, total - 1 - max(1, lookback)), -1))

        async def probe(bounty_id: int) -> int | None:
            try:
                bounty = await self._chain.get_bounty(bounty_id)
            except BountySyncError as exc:
                log.debug("Skipping bounty %d during scan: %s", bounty_id, exc)
                return None
            if bounty.creator.lower() != want_creator:
                return None
            if hints.evaluation_cid and bounty.evaluation_cid != hints.evaluation_cid:
                return None
            delta = abs(bounty.submission_deadline - hints.submission_deadline)
            return delta if delta <= tolerance else None

        best: ResolveResult | None = None
        for start in range(0, len(ids), RESOLVE_BATCH):
            batch = ids[start:start + RESOLVE_BATCH]
            deltas = await asyncio.gather(*(probe(i) for i in batch))
            for bounty_id, delta in zip(batch, deltas):
                if delta is None:
                    continue
                if best is None or delta < best.delta:
                    best = ResolveResult(bounty_id=bounty_id, method="state", delta=delta)
            if best is not None and best.delta == 0:
                break
        return best

    async def _mark_off_chain(self, job_id: int) -> None:
        def apply(jobs: list[Job], next_id: int):
            job = _find_local(jobs, job_id)
            if job.synced_from_blockchain or not job.on_chain:
                return None
            job.on_chain = False
            return jobs, next_id

        await self._store.update(apply)

    async def cleanup_orphans(self, reason: OrphanReason | None = None) -> list[int]:
        """Delete ORPHANED jobs that carry no submissions. Returns their ids."""
        removed: list[int] = []

        def apply(jobs: list[Job], next_id: int):
            keep: list[Job] = []
            for job in jobs:
                if (
                    job.status == JobStatus.ORPHANED
                    and not job.submissions
                    and (reason is None or job.orphan_reason == reason)
                ):
                    removed.append(job.job_id)
                else:
                    keep.append(job)
            if not removed:
                return None
            return keep, next_id

        await self._store.update(apply)
        if removed:
            log.info("Removed %d orphaned job(s): %s", len(removed), removed)
        return removed

    # ── Submissions ────────────────────────────────────────

    async def add_submission(
        self,
        job_id: int,
        hunter: str,
        files: list[SubmissionFile],
        hunter_cid: str | None = None,
        evaluation_cid: str | None = None,
    ) -> Submission:
        """Append a local draft submission in state Prepared."""
        _check_address(hunter, "hunter")
        _check_cid(hunter_cid, "hunter")
        _check_cid(evaluation_cid, "evaluation")
        now = self._clock()
        result: list[Submission] = []

        def apply(jobs: list[Job], next_id: int):
            job = _find_synced(jobs, job_id)
            if job.status != JobStatus.OPEN:
                raise InvalidState(f"Job {job_id} is {job.status.value}, not accepting submissions")
            sub = Submission(
                submission_id=len(job.submissions),
                hunter=hunter,
                hunter_cid=hunter_cid,
                evaluation_cid=evaluation_cid,
                status=SubmissionStatus.PREPARED,
                files=list(files),
                submitted_at=now,
            )
            job.submissions.append(sub)
            job.submission_count = max(job.submission_count, len(job.submissions))
            result.append(sub)
            return jobs, next_id

        await self._store.update(apply)
        log.info("Prepared submission %d on job %d for %s", result[0].submission_id, job_id, hunter[:10])
        return result[0]

    async def _read_chain_submission(self, job: Job, submission_id: int) -> tuple[Submission, SubmissionStruct]:
        raw = await self._chain.get_submission(job.job_id, submission_id)
        local = job.find_submission(submission_id)
        sub = local if local is not None else Submission(submission_id=submission_id)
        apply_chain_submission(sub, raw)
        await apply_submission_status(
            sub, raw.raw_status, job.threshold, self._chain,
            local.status if local is not None else None,
        )
        return sub, raw

    async def refresh_submission(self, job_id: int, submission_id: int) -> Submission:
        """Re-read one submission from chain, including its oracle evaluation.

        Lower ids missing from the local record are read too, so the stored
        list stays indexed by submission id.
        """
        jobs, _ = await self._store.read_snapshot()
        job = _find_synced(jobs, job_id)
        if not (job.on_chain or job.synced_from_blockchain):
            raise InvalidState(f"Job {job_id} has no on-chain bounty id yet")

        sub, raw = await self._read_chain_submission(job, submission_id)
        fetched = {submission_id: (sub, raw)}
        for missing in range(submission_id):
            if job.find_submission(missing) is None:
                fetched[missing] = await self._read_chain_submission(job, missing)
        key = job.key

        def apply(fresh: list[Job], next_id: int):
            target = next((j for j in fresh if j.key == key), None)
            if target is None:
                raise NotFound(f"Job {job_id} disappeared during refresh")
            for sid, (read, raw_read) in fetched.items():
                current = target.find_submission(sid)
                if current is None:
                    target.submissions.append(read)
                    continue
                apply_chain_submission(current, raw_read)
                current.status = read.status
                current.on_chain_status = read.on_chain_status
                current.acceptance = read.acceptance
                current.rejection = read.rejection
                current.justification_cids = read.justification_cids
            target.submissions.sort(key=lambda s: s.submission_id)
            if [s.submission_id for s in target.submissions] != list(range(len(target.submissions))):
                raise InvalidState(f"Submissions of job {job_id} changed during refresh, retry")
            target.submission_count = max(target.submission_count, submission_id + 1)
            return fresh, next_id

        await self._store.update(apply)
        log.info("Refreshed job %d submission %d: %s", job_id, submission_id, sub.status.value)
        return sub

    async def cancel_submission(self, job_id: int, submission_id: int) -> None:
        """Drop a Prepared draft. Any other state raises InvalidState."""

        def apply(jobs: list[Job], next_id: int):
            job = _find_synced(jobs, job_id)
            sub = job.find_submission(submission_id)
            if sub is None:
                raise NotFound(f"Submission {submission_id} not found in job {job_id}")
            if sub.status.value.lower() != SubmissionStatus.PREPARED.value.lower():
                raise InvalidState(
                    f"Only Prepared submissions can be cancelled, "
                    f"submission {submission_id} is {sub.status.value}"
                )
            job.submissions.remove(sub)
            # Later drafts move down to keep ids dense
            for other in job.submissions:
                if other.submission_id > submission_id and is_local_draft(other):
                    other.submission_id -= 1
            job.submission_count = max(0, job.submission_count - 1)
            return jobs, next_id

        await self._store.update(apply)
        log.info("Cancelled submission %d on job %d", submission_id, job_id)
