"""web3 reader for the BountyEscrow contract and its oracle aggregator."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Sequence

import aiohttp
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from bounty_sync.chain.abi import AGGREGATOR_ABI, ESCROW_ABI, ESCROW_EVENTS, event_signature
from bounty_sync.errors import BountySyncError, EvaluationNotReady, NotFound, PermanentError, TransientError
from bounty_sync.models.chain import (
    EVENT_TYPES,
    BountyCreated,
    BountyStruct,
    ChainSnapshot,
    ContractEvent,
    Evaluation,
    SubmissionStruct,
)

log = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

# topic0 -> event name
_TOPICS = {bytes(Web3.keccak(text=event_signature(e))): e["name"] for e in ESCROW_EVENTS}


def _snake(name: str) -> str:
    return _CAMEL.sub("_", name).lower()


def _hex32(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _address_or_none(value: str) -> str | None:
    if not value or int(value, 16) == 0:
        return None
    return value


def is_retryable(exc: BaseException) -> bool:
    """Rate limiting, 5xx, timeouts and dropped connections are worth retrying."""
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status == 429 or exc.status >= 500
    if isinstance(exc, (TimeoutError, aiohttp.ClientConnectionError, ConnectionError)):
        return True
    text = str(exc).lower()
    return "rate limit" in text or "too many requests" in text or "429" in text


# Errors a read can fail with before we classify them
_READ_ERRORS = (aiohttp.ClientError, TimeoutError, OSError, ValueError, Web3Exception)


class Web3ChainAdapter:
    """Read-only access to the authoritative escrow.

    Single reads map network failures to TransientError and decoding failures
    to PermanentError. Only ``get_logs`` retries; evaluation lookups never do.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        aggregator_address: str = "",
        *,
        w3: AsyncWeb3 | None = None,
        request_timeout: float = 30,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
    ) -> None:
        self._w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)},
            )
        )
        self._contract_address = contract_address.lower()
        self._escrow = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=ESCROW_ABI
        )
        self._aggregator_address = aggregator_address
        self._aggregator = None
        self._retry_delays = tuple(retry_delays)

    @property
    def contract_address(self) -> str:
        return self._contract_address

    async def _read(self, call: Awaitable[Any], what: str) -> Any:
        """Await a chain read. Reverts and missing transactions propagate untouched."""
        try:
            return await call
        except (ContractLogicError, TransactionNotFound):
            raise
        except _READ_ERRORS as e:
            if is_retryable(e):
                raise TransientError(f"{what}: {e}") from e
            raise PermanentError(f"{what}: {e}") from e

    # ── Bounties ───────────────────────────────────────────

    async def block_number(self) -> int:
        return int(await self._read(self._w3.eth.block_number, "blockNumber"))

    async def bounty_count(self) -> int:
        return int(await self._read(self._escrow.functions.bountyCount().call(), "bountyCount"))

    async def get_bounty(self, bounty_id: int) -> BountyStruct:
        try:
            raw = await self._read(
                self._escrow.functions.getBounty(bounty_id).call(), f"getBounty({bounty_id})"
            )
        except ContractLogicError as e:
            raise NotFound(f"Bounty {bounty_id} not on chain") from e
        try:
            (creator, evaluation_cid, class_id, threshold, payout_wei,
             created_at, deadline, status, winner, submissions) = raw
        except (TypeError, ValueError) as e:
            raise PermanentError(f"Unexpected getBounty({bounty_id}) shape: {raw!r}") from e
        return BountyStruct(
            bounty_id=bounty_id,
            creator=creator,
            evaluation_cid=evaluation_cid,
            class_id=int(class_id),
            threshold=int(threshold),
            payout_wei=int(payout_wei),
            created_at=int(created_at),
            submission_deadline=int(deadline),
            raw_status=int(status),
            winner=_address_or_none(winner),
            submission_count=int(submissions),
        )

    async def list_bounties(self, max_in_flight: int = 8) -> ChainSnapshot:
        """Read every bounty with at most ``max_in_flight`` calls outstanding.

        A bounty whose read fails is reported in ``skipped_ids`` instead of
        failing the whole snapshot.
        """
        block = await self.block_number()
        count = await self.bounty_count()
        sem = asyncio.Semaphore(max(1, max_in_flight))
        skipped: list[int] = []

        async def fetch(bounty_id: int) -> BountyStruct | None:
            async with sem:
                try:
                    return await self.get_bounty(bounty_id)
                except BountySyncError as e:
                    log.warning("Skipping bounty %d this cycle: %s", bounty_id, e)
                    skipped.append(bounty_id)
                    return None

        results = await asyncio.gather(*(fetch(i) for i in range(count)))
        bounties = [b for b in results if b is not None]
        log.debug("Read %d/%d bounties at block %d", len(bounties), count, block)
        return ChainSnapshot(bounties=bounties, block_number=block, skipped_ids=sorted(skipped))

    # ── Submissions & evaluations ──────────────────────────

    async def get_submission(self, bounty_id: int, submission_id: int) -> SubmissionStruct:
        what = f"getSubmission({bounty_id}, {submission_id})"
        try:
            raw = await self._read(
                self._escrow.functions.getSubmission(bounty_id, submission_id).call(), what
            )
        except ContractLogicError as e:
            raise NotFound(f"Submission {bounty_id}/{submission_id} not on chain") from e
        try:
            hunter, evaluation_cid, hunter_cid, eval_wallet, agg_id, status, \
                acceptance, rejection, justification_cids, submitted_at, finalized_at = raw[:11]
        except (TypeError, ValueError) as e:
            raise PermanentError(f"Unexpected {what} shape: {raw!r}") from e
        return SubmissionStruct(
            bounty_id=bounty_id,
            submission_id=submission_id,
            hunter=hunter,
            evaluation_cid=evaluation_cid,
            hunter_cid=hunter_cid,
            eval_wallet=eval_wallet,
            verdikta_agg_id=_hex32(agg_id),
            raw_status=int(status),
            acceptance=int(acceptance),
            rejection=int(rejection),
            justification_cids=justification_cids,
            submitted_at=int(submitted_at),
            finalized_at=int(finalized_at),
        )

    async def _aggregator_contract(self):
        if self._aggregator is None:
            address = self._aggregator_address
            if not address:
                address = await self._read(self._escrow.functions.verdikta().call(), "verdikta")
                log.info("Discovered oracle aggregator %s", address)
            self._aggregator = self._w3.eth.contract(
                address=Web3.to_checksum_address(address), abi=AGGREGATOR_ABI
            )
        return self._aggregator

    async def get_evaluation(self, agg_id: str) -> Evaluation:
        aggregator = await self._aggregator_contract()
        key = bytes.fromhex(agg_id[2:] if agg_id.startswith("0x") else agg_id)
        try:
            scores, justification_cids, ok = await self._read(
                aggregator.functions.getEvaluation(key).call(), "getEvaluation"
            )
        except ContractLogicError as e:
            raise EvaluationNotReady(f"No evaluation for {agg_id[:12]} yet") from e
        return Evaluation(
            scores=tuple(int(s) for s in scores),
            justification_cids=justification_cids,
            ok=bool(ok),
        )

    # ── Events ─────────────────────────────────────────────

    async def _with_retry(self, make_call: Callable[[], Awaitable[Any]], what: str) -> Any:
        attempt = 0
        while True:
            try:
                return await make_call()
            except _READ_ERRORS as e:
                if not is_retryable(e):
                    raise PermanentError(f"{what}: {e}") from e
                if attempt >= len(self._retry_delays):
                    raise TransientError(f"{what} failed after {attempt} retries: {e}") from e
                delay = self._retry_delays[attempt]
                attempt += 1
                log.warning("%s failed (%s), retry %d in %.1fs", what, e, attempt, delay)
                await asyncio.sleep(delay)

    async def get_logs(self, from_block: int, to_block: int | str = "latest") -> list[ContractEvent]:
        params = {
            "address": self._escrow.address,
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        raw_logs = await self._with_retry(lambda: self._w3.eth.get_logs(params), "getLogs")
        events = []
        for entry in raw_logs:
            event = self._parse_log(entry)
            if event is not None:
                events.append(event)
        return events

    async def get_receipt_bounty_id(self, tx_hash: str) -> int | None:
        try:
            receipt = await self._read(
                self._w3.eth.get_transaction_receipt(tx_hash), "getTransactionReceipt"
            )
        except TransactionNotFound:
            return None
        for entry in receipt["logs"]:
            if str(entry["address"]).lower() != self._contract_address:
                continue
            event = self._parse_log(entry)
            if isinstance(event, BountyCreated):
                return event.bounty_id
        return None

    def _parse_log(self, entry: Any) -> ContractEvent | None:
        """Decode one raw log into an event model, or None if it is not ours."""
        topics = entry.get("topics") or []
        if not topics:
            return None
        name = _TOPICS.get(bytes(topics[0]))
        if name is None:
            return None
        try:
            decoded = getattr(self._escrow.events, name)().process_log(entry)
        except Web3Exception:
            log.warning("Could not decode %s log in tx %s", name, _hex32(entry.get("transactionHash", b"")))
            return None

        fields = {}
        for key, value in decoded["args"].items():
            if isinstance(value, (bytes, bytearray)):
                value = _hex32(value)
            fields[_snake(key)] = value
        return EVENT_TYPES[name](
            block_number=int(decoded["blockNumber"]),
            tx_hash=_hex32(decoded["transactionHash"]),
            log_index=int(decoded["logIndex"]),
            **fields,
        )


__all__ = ["Web3ChainAdapter", "is_retryable"]
