"""Data models for the bounty_sync service."""

from bounty_sync.models.chain import (
    BountyClosed,
    BountyCreated,
    BountyStruct,
    ChainSnapshot,
    ContractEvent,
    Evaluation,
    LinkRefunded,
    PayoutSent,
    SubmissionFinalized,
    SubmissionPrepared,
    SubmissionStruct,
    WorkSubmitted,
)
from bounty_sync.models.config import ArchiveConfig, SyncConfig
from bounty_sync.models.records import (
    ArchiveStatus,
    Job,
    JobMetadata,
    JobRequest,
    JobStatus,
    OrphanReason,
    ResolveHints,
    ResolveResult,
    Submission,
    SubmissionFile,
    SubmissionStatus,
    find_job,
)
from bounty_sync.models.reports import ArchivalReport, ArchiveView, SyncReport

__all__ = [
    "BountyStruct", "SubmissionStruct", "Evaluation", "ChainSnapshot",
    "ContractEvent", "BountyCreated", "BountyClosed", "SubmissionPrepared",
    "WorkSubmitted", "SubmissionFinalized", "PayoutSent", "LinkRefunded",
    "ArchiveConfig", "SyncConfig",
    "Job", "Submission", "SubmissionFile", "JobMetadata", "JobRequest",
    "ResolveHints", "ResolveResult", "find_job",
    "JobStatus", "SubmissionStatus", "OrphanReason", "ArchiveStatus",
    "SyncReport", "ArchivalReport", "ArchiveView",
]
