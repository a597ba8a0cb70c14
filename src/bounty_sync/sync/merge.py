"""Race-safe merge of a reconciler cycle onto the freshly stored snapshot.

The reconciler works on a snapshot taken before its network reads. By the time
it commits, local mutators may have linked jobs, stamped transaction data,
added drafts, or recorded archival results. ``merge_into_fresh`` is applied
inside ``JobStore.update`` and keeps those concurrent writes:

- txHash, blockNumber and contractAddress: a non-null fresh value wins
- onChain: a true fresh value wins
- submission files and archival fields always come from the fresh record
- Prepared drafts come from the fresh record (added or cancelled meanwhile)

Everything else the reconciler produced replaces the fresh record.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from bounty_sync.models.records import Job, JobStatus, Submission, SubmissionStatus

log = logging.getLogger(__name__)

JobKey = tuple[str | None, int]

LOCAL_SUBMISSION_FIELDS = (
    "files",
    "archive_status",
    "archived_at",
    "archive_verified_at",
    "archive_expires_at",
    "last_repinned_at",
    "last_failed_at",
    "retrieved_by_poster",
    "retrieved_at",
    "retriever_address",
)


@dataclass
class UpdatedJob:
    """A job the reconciler changed, with the key it had in the snapshot."""

    original_key: JobKey
    job: Job
    was_synced: bool = False
    renumber: bool = False  # local draft displaced by a chain bounty with its id


@dataclass
class MergePlan:
    """Everything one reconciler cycle wants to commit."""

    updated: list[UpdatedJob] = field(default_factory=list)
    added: list[Job] = field(default_factory=list)
    removed: int = 0  # unsynced duplicates dropped
    next_id: int = 0

    @property
    def empty(self) -> bool:
        return not (self.updated or self.added or self.removed)


def is_local_draft(sub: Submission) -> bool:
    return sub.status == SubmissionStatus.PREPARED and sub.on_chain_status is None


def _locate(fresh: list[Job], item: UpdatedJob) -> int | None:
    """Index of the fresh record matching a reconciled job, or None."""
    job = item.job
    orig_contract, orig_id = item.original_key

    def same_origin(candidate: Job) -> bool:
        return candidate.job_id == orig_id and candidate.contract_address in (
            orig_contract, job.contract_address,
        )

    for i, candidate in enumerate(fresh):
        if same_origin(candidate) and candidate.synced_from_blockchain == item.was_synced:
            return i
    for i, candidate in enumerate(fresh):
        if same_origin(candidate):
            return i
    for i, candidate in enumerate(fresh):
        if candidate.key == job.key:
            return i
    if job.evaluation_cid:
        for i, candidate in enumerate(fresh):
            if (
                candidate.evaluation_cid == job.evaluation_cid
                and not candidate.synced_from_blockchain
                and candidate.contract_address in (None, job.contract_address)
            ):
                return i
    return None


def _locate_draft(fresh: list[Job], item: UpdatedJob) -> int | None:
    """Index of the unlinked draft a renumbering targets, or None."""
    drafts = [
        i for i, candidate in enumerate(fresh)
        if candidate.key == item.original_key
        and not (candidate.synced_from_blockchain or candidate.on_chain)
    ]
    for i in drafts:
        if fresh[i].evaluation_cid == item.job.evaluation_cid:
            return i
    return drafts[0] if drafts else None


def _locate_linked(fresh: list[Job], job: Job) -> int | None:
    """Fresh record already holding a newly seen bounty, or None."""
    for i, candidate in enumerate(fresh):
        if candidate.key == job.key and (candidate.synced_from_blockchain or candidate.on_chain):
            return i
    if job.evaluation_cid:
        for i, candidate in enumerate(fresh):
            if (
                candidate.evaluation_cid == job.evaluation_cid
                and not candidate.synced_from_blockchain
                and candidate.contract_address in (None, job.contract_address)
            ):
                return i
    return None


def _merge_submissions(reconciled: Job, fresh: Job) -> list[Submission]:
    fresh_by_id = {s.submission_id: s for s in fresh.submissions}
    merged: list[Submission] = []
    for sub in reconciled.submissions:
        local = fresh_by_id.get(sub.submission_id)
        if is_local_draft(sub):
            if local is not None:
                merged.append(local)
            continue
        if local is not None:
            for name in LOCAL_SUBMISSION_FIELDS:
                setattr(sub, name, copy.deepcopy(getattr(local, name)))
        merged.append(sub)

    seen = {s.submission_id for s in merged}
    for sub in fresh.submissions:
        if sub.submission_id not in seen and is_local_draft(sub):
            merged.append(sub)
    merged.sort(key=lambda s: s.submission_id)
    return merged


def merge_job(reconciled: Job, fresh: Job) -> Job:
    """Reconciler values onto a fresh record, keeping patch-preserve fields."""
    merged = copy.deepcopy(reconciled)
    if fresh.tx_hash is not None:
        merged.tx_hash = fresh.tx_hash
    if fresh.block_number is not None:
        merged.block_number = fresh.block_number
    if fresh.contract_address is not None:
        merged.contract_address = fresh.contract_address
    if fresh.on_chain:
        merged.on_chain = True
    merged.submissions = _merge_submissions(merged, fresh)
    return merged


def dedupe(jobs: list[Job]) -> tuple[list[Job], int]:
    """Keep one record per (contractAddress, jobId), preferring the synced one."""
    winners: dict[JobKey, int] = {}
    for i, job in enumerate(jobs):
        current = winners.get(job.key)
        if current is None:
            winners[job.key] = i
        elif job.synced_from_blockchain and not jobs[current].synced_from_blockchain:
            winners[job.key] = i
    keep = set(winners.values())
    result = [job for i, job in enumerate(jobs) if i in keep]
    removed = len(jobs) - len(result)
    if removed:
        log.info("Dropped %d duplicate job record(s)", removed)
    return result, removed


def merge_into_fresh(
    fresh: list[Job], fresh_next_id: int, plan: MergePlan
) -> tuple[list[Job], int]:
    """Apply ``plan`` to the stored snapshot. Pure; runs under the store lock."""
    jobs = list(fresh)
    next_id = max(fresh_next_id, plan.next_id)

    # Displaced drafts move first so they cannot be mistaken for the bounty
    ordered = sorted(plan.updated, key=lambda item: not item.renumber)
    for item in ordered:
        idx = _locate_draft(jobs, item) if item.renumber else _locate(jobs, item)
        if idx is None:
            if item.renumber or item.job.status == JobStatus.ORPHANED:
                continue  # removed locally meanwhile
            log.warning("Job %d vanished before commit, re-adding", item.job.job_id)
            jobs.append(copy.deepcopy(item.job))
            continue
        if item.renumber:
            log.info("Renumbering local job %d to %d", jobs[idx].job_id, next_id)
            jobs[idx] = copy.deepcopy(jobs[idx])
            jobs[idx].job_id = next_id
            next_id += 1
        else:
            jobs[idx] = merge_job(item.job, jobs[idx])

    for job in plan.added:
        # A concurrent link may already hold this bounty
        idx = _locate_linked(jobs, job)
        if idx is None:
            jobs.append(copy.deepcopy(job))
        else:
            log.info("Bounty %d was linked concurrently, merging", job.job_id)
            jobs[idx] = merge_job(job, jobs[idx])

    jobs, _ = dedupe(jobs)
    return jobs, next_id
