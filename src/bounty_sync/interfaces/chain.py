"""ChainReader protocol - read-only access to the escrow and oracle contracts."""

from __future__ import annotations

from typing import Protocol

from bounty_sync.models.chain import (
    BountyStruct,
    ChainSnapshot,
    ContractEvent,
    Evaluation,
    SubmissionStruct,
)


class ChainReader(Protocol):
    """Thin, retry-aware reader for the authoritative escrow contract."""

    @property
    def contract_address(self) -> str:
        """Lower-cased authoritative escrow address."""
        ...

    async def block_number(self) -> int:
        ...

    async def bounty_count(self) -> int:
        ...

    async def get_bounty(self, bounty_id: int) -> BountyStruct:
        ...

    async def get_submission(self, bounty_id: int, submission_id: int) -> SubmissionStruct:
        ...

    async def get_evaluation(self, agg_id: str) -> Evaluation:
        """Raises EvaluationNotReady while the oracle has no verdict."""
        ...

    async def get_logs(self, from_block: int, to_block: int | str = "latest") -> list[ContractEvent]:
        ...

    async def get_receipt_bounty_id(self, tx_hash: str) -> int | None:
        """Bounty id from a BountyCreated log in the receipt, if any."""
        ...

    async def list_bounties(self, max_in_flight: int = 8) -> ChainSnapshot:
        ...
