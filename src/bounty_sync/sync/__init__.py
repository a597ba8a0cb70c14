"""Chain-to-mirror reconciliation."""

from bounty_sync.sync.merge import MergePlan, merge_into_fresh
from bounty_sync.sync.reconciler import Reconciler
from bounty_sync.sync.status import (
    apply_submission_status,
    bounty_effective_status,
    can_be_closed,
    is_accepting_submissions,
    normalize_job_status,
    normalize_submission_status,
)

__all__ = [
    "Reconciler", "MergePlan", "merge_into_fresh",
    "bounty_effective_status", "is_accepting_submissions", "can_be_closed",
    "apply_submission_status", "normalize_job_status", "normalize_submission_status",
]
