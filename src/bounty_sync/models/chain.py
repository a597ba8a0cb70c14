"""Decoded chain structs and contract events."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

WEI_PER_ETH = 10**18
SCORE_SCALE = 10_000  # 6-decimal fixed point -> 0..100 percentages


@dataclass(frozen=True)
class BountyStruct:
    """One entry of the escrow's bounty array, as returned by getBounty."""

    bounty_id: int
    creator: str
    evaluation_cid: str
    class_id: int
    threshold: int
    payout_wei: int
    created_at: int
    submission_deadline: int
    raw_status: int  # 0=Open 1=Awarded 2=Closed
    winner: str | None
    submission_count: int

    @property
    def bounty_amount(self) -> float:
        return self.payout_wei / WEI_PER_ETH


@dataclass(frozen=True)
class SubmissionStruct:
    bounty_id: int
    submission_id: int
    hunter: str
    evaluation_cid: str
    hunter_cid: str
    eval_wallet: str
    verdikta_agg_id: str
    raw_status: int  # 0..4, see RAW_SUBMISSION_STATUSES
    acceptance: int = 0
    rejection: int = 0
    justification_cids: str = ""
    submitted_at: int = 0
    finalized_at: int = 0


@dataclass(frozen=True)
class Evaluation:
    """Oracle verdict. scores[0] is rejection, scores[1] is acceptance."""

    scores: tuple[int, ...] = ()
    justification_cids: str = ""
    ok: bool = False

    @property
    def complete(self) -> bool:
        return self.ok and len(self.scores) >= 2

    @property
    def rejection(self) -> float:
        return self.scores[0] / SCORE_SCALE

    @property
    def acceptance(self) -> float:
        return self.scores[1] / SCORE_SCALE


# ── Events ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ContractEvent:
    block_number: int
    tx_hash: str
    log_index: int = 0

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """Event arguments without the log position fields."""
        doc = asdict(self)
        for key in ("block_number", "tx_hash", "log_index"):
            doc.pop(key)
        return doc


@dataclass(frozen=True)
class BountyCreated(ContractEvent):
    bounty_id: int = 0
    creator: str = ""
    evaluation_cid: str = ""
    class_id: int = 0
    threshold: int = 0
    payout_wei: int = 0
    submission_deadline: int = 0


@dataclass(frozen=True)
class BountyClosed(ContractEvent):
    bounty_id: int = 0
    creator: str = ""
    refund_wei: int = 0


@dataclass(frozen=True)
class SubmissionPrepared(ContractEvent):
    bounty_id: int = 0
    submission_id: int = 0
    hunter: str = ""
    eval_wallet: str = ""
    evaluation_cid: str = ""
    link_max_budget: int = 0


@dataclass(frozen=True)
class WorkSubmitted(ContractEvent):
    bounty_id: int = 0
    submission_id: int = 0
    verdikta_agg_id: str = ""


@dataclass(frozen=True)
class SubmissionFinalized(ContractEvent):
    bounty_id: int = 0
    submission_id: int = 0
    passed: bool = False
    acceptance: int = 0
    rejection: int = 0
    justification_cids: str = ""


@dataclass(frozen=True)
class PayoutSent(ContractEvent):
    bounty_id: int = 0
    winner: str = ""
    amount_wei: int = 0


@dataclass(frozen=True)
class LinkRefunded(ContractEvent):
    bounty_id: int = 0
    submission_id: int = 0
    amount: int = 0


EVENT_TYPES: dict[str, type[ContractEvent]] = {
    cls.__name__: cls
    for cls in (
        BountyCreated,
        BountyClosed,
        SubmissionPrepared,
        WorkSubmitted,
        SubmissionFinalized,
        PayoutSent,
        LinkRefunded,
    )
}


@dataclass
class ChainSnapshot:
    """Every bounty visible on chain, and the block they were read at.

    ``skipped_ids`` exist on chain but could not be read this time; they are
    neither updated nor treated as missing.
    """

    bounties: list[BountyStruct] = field(default_factory=list)
    block_number: int = 0
    skipped_ids: list[int] = field(default_factory=list)

    @property
    def seen_ids(self) -> set[int]:
        return {b.bounty_id for b in self.bounties} | set(self.skipped_ids)
