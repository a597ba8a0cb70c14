"""Mirror records: jobs, their embedded submissions, and mutator inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_AGG_ID = "0x" + "0" * 64

PLACEHOLDER_DESCRIPTION = "Fetched from blockchain"
PLACEHOLDER_WORK_PRODUCT_TYPE = "On-chain Bounty"

# Keys older documents used for the on-chain index. Never written back.
LEGACY_ALIAS_KEYS = ("onChainId", "legacyJobId", "bountyId", "onChainBountyId")

# Contract enum order for Submission.status
RAW_SUBMISSION_STATUSES = ("Prepared", "PendingVerdikta", "Failed", "PassedPaid", "PassedUnpaid")


class JobStatus(str, Enum):
    OPEN = "OPEN"
    EXPIRED = "EXPIRED"
    AWARDED = "AWARDED"
    CLOSED = "CLOSED"
    ORPHANED = "ORPHANED"
    CANCELLED = "CANCELLED"


class SubmissionStatus(str, Enum):
    PREPARED = "Prepared"  # local draft, not started on chain
    PENDING_EVALUATION = "PENDING_EVALUATION"
    ACCEPTED_PENDING_CLAIM = "ACCEPTED_PENDING_CLAIM"
    REJECTED_PENDING_FINALIZATION = "REJECTED_PENDING_FINALIZATION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    UNKNOWN = "UNKNOWN"


PENDING_SUBMISSION_STATUSES = frozenset({
    SubmissionStatus.PENDING_EVALUATION,
    SubmissionStatus.ACCEPTED_PENDING_CLAIM,
    SubmissionStatus.REJECTED_PENDING_FINALIZATION,
})


class OrphanReason(str, Enum):
    DIFFERENT_CONTRACT = "different_contract"
    NOT_FOUND_ON_CHAIN = "not_found_on_chain"
    NEVER_DEPLOYED = "never_deployed"


class ArchiveStatus(str, Enum):
    VERIFIED = "verified"
    REPINNED = "repinned"
    FAILED = "failed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class SubmissionFile:
    """A file the hunter uploaded with a submission (local only)."""

    name: str
    size: int = 0
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "size": self.size, "description": self.description}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmissionFile:
        return cls(
            name=str(data.get("name", "")),
            size=int(data.get("size") or 0),
            description=str(data.get("description") or ""),
        )


@dataclass
class Submission:
    """A hunter's attempt against a bounty, indexed 0-based like the chain."""

    submission_id: int
    hunter: str = ""
    evaluation_cid: str | None = None
    hunter_cid: str | None = None
    eval_wallet: str | None = None
    verdikta_agg_id: str | None = None
    status: SubmissionStatus = SubmissionStatus.PREPARED
    on_chain_status: str | None = None  # raw enum name last seen on chain
    acceptance: float = 0
    rejection: float = 0
    justification_cids: str = ""
    submitted_at: int | None = None
    finalized_at: int | None = None
    files: list[SubmissionFile] = field(default_factory=list)

    # Archival
    archive_status: ArchiveStatus = ArchiveStatus.UNKNOWN
    archived_at: int | None = None
    archive_verified_at: int | None = None
    archive_expires_at: int | None = None
    last_repinned_at: int | None = None
    last_failed_at: int | None = None
    retrieved_by_poster: bool = False
    retrieved_at: int | None = None
    retriever_address: str | None = None

    @property
    def has_agg_id(self) -> bool:
        return bool(self.verdikta_agg_id) and int(self.verdikta_agg_id, 16) != 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "submissionId": self.submission_id,
            "hunter": self.hunter,
            "evaluationCid": self.evaluation_cid,
            "hunterCid": self.hunter_cid,
            "evalWallet": self.eval_wallet,
            "verdiktaAggId": self.verdikta_agg_id,
            "status": self.status.value,
            "onChainStatus": self.on_chain_status,
            "acceptance": self.acceptance,
            "rejection": self.rejection,
            "justificationCids": self.justification_cids,
            "submittedAt": self.submitted_at,
            "finalizedAt": self.finalized_at,
            "files": [f.to_dict() for f in self.files],
            "archiveStatus": self.archive_status.value,
            "archivedAt": self.archived_at,
            "archiveVerifiedAt": self.archive_verified_at,
            "archiveExpiresAt": self.archive_expires_at,
            "lastRepinnedAt": self.last_repinned_at,
            "lastFailedAt": self.last_failed_at,
            "retrievedByPoster": self.retrieved_by_poster,
            "retrievedAt": self.retrieved_at,
            "retrieverAddress": self.retriever_address,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Submission:
        """Build from a canonical document. Status must already be normalized."""
        return cls(
            submission_id=int(data["submissionId"]),
            hunter=data.get("hunter") or "",
            evaluation_cid=data.get("evaluationCid"),
            hunter_cid=data.get("hunterCid"),
            eval_wallet=data.get("evalWallet"),
            verdikta_agg_id=data.get("verdiktaAggId"),
            status=SubmissionStatus(data.get("status", SubmissionStatus.PREPARED.value)),
            on_chain_status=data.get("onChainStatus"),
            acceptance=data.get("acceptance") or 0,
            rejection=data.get("rejection") or 0,
            justification_cids=data.get("justificationCids") or "",
            submitted_at=data.get("submittedAt"),
            finalized_at=data.get("finalizedAt"),
            files=[SubmissionFile.from_dict(f) for f in data.get("files") or []],
            archive_status=ArchiveStatus(data.get("archiveStatus") or ArchiveStatus.UNKNOWN.value),
            archived_at=data.get("archivedAt"),
            archive_verified_at=data.get("archiveVerifiedAt"),
            archive_expires_at=data.get("archiveExpiresAt"),
            last_repinned_at=data.get("lastRepinnedAt"),
            last_failed_at=data.get("lastFailedAt"),
            retrieved_by_poster=bool(data.get("retrievedByPoster", False)),
            retrieved_at=data.get("retrievedAt"),
            retriever_address=data.get("retrieverAddress"),
        )


@dataclass
class Job:
    """Local mirror of one on-chain bounty, or a purely local draft."""

    job_id: int
    on_chain: bool = False
    contract_address: str | None = None
    creator: str = ""
    title: str = ""
    description: str = ""
    work_product_type: str = ""
    bounty_amount: float = 0.0
    bounty_amount_usd: float | None = None
    threshold: int = 0
    evaluation_cid: str | None = None
    primary_cid: str | None = None
    class_id: int = 0
    jury_nodes: list[Any] = field(default_factory=list)
    submission_open_time: int | None = None
    submission_close_time: int | None = None
    created_at: int | None = None
    status: JobStatus = JobStatus.OPEN
    winner: str | None = None
    submission_count: int = 0
    submissions: list[Submission] = field(default_factory=list)
    synced_from_blockchain: bool = False
    last_synced_at: int | None = None
    orphaned_at: int | None = None
    orphan_reason: OrphanReason | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    legacy_aliases: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str | None, int]:
        return (self.contract_address, self.job_id)

    def find_submission(self, submission_id: int) -> Submission | None:
        for sub in self.submissions:
            if sub.submission_id == submission_id:
                return sub
        return None

    def legacy_chain_id(self) -> int | None:
        """On-chain index recorded under a legacy alias, if any."""
        for k in LEGACY_ALIAS_KEYS:
            value = self.legacy_aliases.get(k)
            if value is not None:
                try:
                    return int(value)
                except (TypeError, ValueError):
                    continue
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "onChain": self.on_chain,
            "contractAddress": self.contract_address,
            "creator": self.creator,
            "title": self.title,
            "description": self.description,
            "workProductType": self.work_product_type,
            "bountyAmount": self.bounty_amount,
            "bountyAmountUSD": self.bounty_amount_usd,
            "threshold": self.threshold,
            "evaluationCid": self.evaluation_cid,
            "primaryCid": self.primary_cid,
            "classId": self.class_id,
            "juryNodes": list(self.jury_nodes),
            "submissionOpenTime": self.submission_open_time,
            "submissionCloseTime": self.submission_close_time,
            "createdAt": self.created_at,
            "status": self.status.value,
            "winner": self.winner,
            "submissionCount": self.submission_count,
            "submissions": [s.to_dict() for s in self.submissions],
            "syncedFromBlockchain": self.synced_from_blockchain,
            "lastSyncedAt": self.last_synced_at,
            "orphanedAt": self.orphaned_at,
            "orphanReason": self.orphan_reason.value if self.orphan_reason else None,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            **self.legacy_aliases,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Build from a canonical document. Statuses must already be normalized."""
        contract = data.get("contractAddress")
        reason = data.get("orphanReason")
        return cls(
            job_id=int(data["jobId"]),
            on_chain=bool(data.get("onChain", False)),
            contract_address=contract.lower() if contract else None,
            creator=data.get("creator") or "",
            title=data.get("title") or "",
            description=data.get("description") or "",
            work_product_type=data.get("workProductType") or "",
            bounty_amount=float(data.get("bountyAmount") or 0),
            bounty_amount_usd=data.get("bountyAmountUSD"),
            threshold=int(data.get("threshold") or 0),
            evaluation_cid=data.get("evaluationCid"),
            primary_cid=data.get("primaryCid"),
            class_id=int(data.get("classId") or 0),
            jury_nodes=list(data.get("juryNodes") or []),
            submission_open_time=data.get("submissionOpenTime"),
            submission_close_time=data.get("submissionCloseTime"),
            created_at=data.get("createdAt"),
            status=JobStatus(data.get("status", JobStatus.OPEN.value)),
            winner=data.get("winner"),
            submission_count=int(data.get("submissionCount") or 0),
            submissions=[Submission.from_dict(s) for s in data.get("submissions") or []],
            synced_from_blockchain=bool(data.get("syncedFromBlockchain", False)),
            last_synced_at=data.get("lastSyncedAt"),
            orphaned_at=data.get("orphanedAt"),
            orphan_reason=OrphanReason(reason) if reason else None,
            tx_hash=data.get("txHash"),
            block_number=data.get("blockNumber"),
            legacy_aliases={k: data[k] for k in LEGACY_ALIAS_KEYS if data.get(k) is not None},
        )


@dataclass
class JobMetadata:
    """Human-readable fields recovered from an evaluation package."""

    title: str | None = None
    description: str | None = None
    work_product_type: str | None = None


@dataclass
class JobRequest:
    """Input for LocalMutators.create_local_job."""

    creator: str
    title: str
    description: str
    work_product_type: str
    bounty_amount: float
    threshold: int
    submission_close_time: int
    evaluation_cid: str | None = None
    primary_cid: str | None = None
    class_id: int = 0
    bounty_amount_usd: float | None = None
    jury_nodes: list[Any] = field(default_factory=list)
    submission_open_time: int | None = None


@dataclass
class ResolveHints:
    """What the caller knows about a bounty it just created on chain."""

    creator: str
    submission_deadline: int
    evaluation_cid: str | None = None
    tx_hash: str | None = None


@dataclass
class ResolveResult:
    """Outcome of LocalMutators.resolve_bounty_id."""

    bounty_id: int
    method: str  # "tx" | "state"
    delta: int = 0


def find_job(jobs: list[Job], job_id: int, contract_address: str | None = None) -> Job | None:
    """Job with ``job_id``, preferring the synced record when ids collide."""
    matches = [
        j for j in jobs
        if j.job_id == job_id
        and (contract_address is None or j.contract_address == contract_address.lower())
    ]
    if not matches:
        return None
    matches.sort(key=lambda j: not j.synced_from_blockchain)
    return matches[0]
