"""Status mapping between raw chain enums and the canonical mirror statuses.

Everything here is pure except ``apply_submission_status``, which may ask the
oracle for an evaluation when a submission is waiting on one.
"""

from __future__ import annotations

import logging
from typing import Any

from bounty_sync.errors import BountySyncError, EvaluationNotReady
from bounty_sync.interfaces.chain import ChainReader
from bounty_sync.models.chain import BountyStruct
from bounty_sync.models.records import (
    RAW_SUBMISSION_STATUSES,
    JobStatus,
    Submission,
    SubmissionStatus,
)

log = logging.getLogger(__name__)

RAW_BOUNTY_OPEN = 0
RAW_BOUNTY_AWARDED = 1
RAW_BOUNTY_CLOSED = 2

RAW_SUB_PREPARED = 0
RAW_SUB_PENDING_VERDIKTA = 1
RAW_SUB_FAILED = 2
RAW_SUB_PASSED_PAID = 3
RAW_SUB_PASSED_UNPAID = 4

# Older documents used these spellings
_JOB_STATUS_ALIASES = {
    "COMPLETED": JobStatus.AWARDED,
    "PAID": JobStatus.AWARDED,
}

_SUBMISSION_STATUS_ALIASES = {
    "PREPARED": SubmissionStatus.PREPARED,
    "PENDING": SubmissionStatus.PENDING_EVALUATION,
    "PENDINGVERDIKTA": SubmissionStatus.PENDING_EVALUATION,
    "PASSED": SubmissionStatus.APPROVED,
    "PASSEDPAID": SubmissionStatus.APPROVED,
    "PASSEDUNPAID": SubmissionStatus.APPROVED,
    "FAILED": SubmissionStatus.REJECTED,
}


# ── Bounty status ──────────────────────────────────────────


def bounty_effective_status(bounty: BountyStruct, now: int) -> JobStatus:
    if bounty.raw_status == RAW_BOUNTY_AWARDED:
        return JobStatus.AWARDED
    if bounty.raw_status == RAW_BOUNTY_CLOSED:
        return JobStatus.CLOSED
    if now > bounty.submission_deadline:
        return JobStatus.EXPIRED
    return JobStatus.OPEN


def is_accepting_submissions(bounty: BountyStruct, now: int) -> bool:
    return bounty.raw_status == RAW_BOUNTY_OPEN and now <= bounty.submission_deadline


def can_be_closed(bounty: BountyStruct, now: int) -> bool:
    """Local approximation only. The contract performs the full check."""
    return bounty.raw_status == RAW_BOUNTY_OPEN and now > bounty.submission_deadline


# ── Normalization ──────────────────────────────────────────


def normalize_job_status(value: Any) -> JobStatus:
    text = str(value or "").strip().upper()
    if text in _JOB_STATUS_ALIASES:
        return _JOB_STATUS_ALIASES[text]
    try:
        return JobStatus(text)
    except ValueError:
        log.warning("Unknown job status %r, treating as OPEN", value)
        return JobStatus.OPEN


def normalize_submission_status(value: Any) -> SubmissionStatus:
    text = str(value or "").strip()
    if text == SubmissionStatus.PREPARED.value:
        return SubmissionStatus.PREPARED
    upper = text.upper()
    try:
        return SubmissionStatus(upper)
    except ValueError:
        pass
    return _SUBMISSION_STATUS_ALIASES.get(upper.replace("_", ""), SubmissionStatus.UNKNOWN)


def normalize_job_document(doc: dict[str, Any]) -> bool:
    """Canonicalize statuses of a raw job document in place.

    Returns True when anything changed, so the caller can re-persist.
    """
    changed = False
    status = normalize_job_status(doc.get("status"))
    if doc.get("status") != status.value:
        doc["status"] = status.value
        changed = True
    for sub in doc.get("submissions") or []:
        raw = sub.get("status", SubmissionStatus.PREPARED.value)
        canonical = normalize_submission_status(raw)
        if raw != canonical.value:
            sub["status"] = canonical.value
            changed = True
    return changed


# ── Submission status ──────────────────────────────────────


def raw_submission_name(raw_status: int) -> str | None:
    if 0 <= raw_status < len(RAW_SUBMISSION_STATUSES):
        return RAW_SUBMISSION_STATUSES[raw_status]
    return None


async def apply_submission_status(
    sub: Submission,
    raw_status: int,
    threshold: int,
    chain: ChainReader,
    existing: SubmissionStatus | None = None,
) -> Submission:
    """Set ``sub.status`` from the raw chain enum, consulting the oracle when needed.

    ``existing`` is the status of the local record before the chain fields were
    merged in, or None when the submission was never seen locally. A successful
    evaluation copies acceptance, rejection and justification CIDs onto ``sub``.
    """
    sub.on_chain_status = raw_submission_name(raw_status)

    if raw_status == RAW_SUB_PREPARED:
        sub.status = existing if existing is not None else SubmissionStatus.PENDING_EVALUATION
    elif raw_status == RAW_SUB_PENDING_VERDIKTA:
        sub.status = SubmissionStatus.PENDING_EVALUATION
        if sub.has_agg_id:
            await _apply_evaluation(sub, threshold, chain)
    elif raw_status == RAW_SUB_FAILED:
        sub.status = SubmissionStatus.REJECTED
    elif raw_status in (RAW_SUB_PASSED_PAID, RAW_SUB_PASSED_UNPAID):
        sub.status = SubmissionStatus.APPROVED
    else:
        sub.status = SubmissionStatus.UNKNOWN
    return sub


async def _apply_evaluation(sub: Submission, threshold: int, chain: ChainReader) -> None:
    assert sub.verdikta_agg_id is not None
    try:
        evaluation = await chain.get_evaluation(sub.verdikta_agg_id)
    except EvaluationNotReady:
        log.debug("Evaluation %s not ready", sub.verdikta_agg_id[:12])
        return
    except BountySyncError as e:
        log.warning("Evaluation lookup failed for %s: %s", sub.verdikta_agg_id[:12], e)
        return

    if not evaluation.complete:
        return

    sub.acceptance = evaluation.acceptance
    sub.rejection = evaluation.rejection
    sub.justification_cids = evaluation.justification_cids
    if sub.acceptance >= threshold:
        sub.status = SubmissionStatus.ACCEPTED_PENDING_CLAIM
    else:
        sub.status = SubmissionStatus.REJECTED_PENDING_FINALIZATION
