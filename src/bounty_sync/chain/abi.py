"""JSON ABIs for the BountyEscrow contract and the oracle aggregator."""

from __future__ import annotations

from typing import Any


def _param(name: str, type_: str, indexed: bool | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"name": name, "type": type_}
    if indexed is not None:
        entry["indexed"] = indexed
    return entry


def _event(name: str, *inputs: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [_param(n, t, i) for n, t, i in inputs],
    }


def _view(name: str, inputs: list[dict], outputs: list[dict]) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


BOUNTY_TUPLE = {
    "name": "",
    "type": "tuple",
    "components": [
        _param("creator", "address"),
        _param("evaluationCid", "string"),
        _param("requestedClass", "uint64"),
        _param("threshold", "uint8"),
        _param("payoutWei", "uint256"),
        _param("createdAt", "uint256"),
        _param("submissionDeadline", "uint64"),
        _param("status", "uint8"),
        _param("winner", "address"),
        _param("submissions", "uint256"),
    ],
}

SUBMISSION_TUPLE = {
    "name": "",
    "type": "tuple",
    "components": [
        _param("hunter", "address"),
        _param("evaluationCid", "string"),
        _param("hunterCid", "string"),
        _param("evalWallet", "address"),
        _param("verdiktaAggId", "bytes32"),
        _param("status", "uint8"),
        _param("acceptance", "uint256"),
        _param("rejection", "uint256"),
        _param("justificationCids", "string"),
        _param("submittedAt", "uint256"),
        _param("finalizedAt", "uint256"),
        _param("linkMaxBudget", "uint256"),
        _param("maxOracleFee", "uint256"),
        _param("alpha", "uint256"),
        _param("estimatedBaseCost", "uint256"),
        _param("maxFeeBasedScaling", "uint256"),
        _param("addendum", "string"),
    ],
}

ESCROW_EVENTS = [
    _event(
        "BountyCreated",
        ("bountyId", "uint256", True),
        ("creator", "address", True),
        ("evaluationCid", "string", False),
        ("classId", "uint64", False),
        ("threshold", "uint8", False),
        ("payoutWei", "uint256", False),
        ("submissionDeadline", "uint64", False),
    ),
    _event(
        "BountyClosed",
        ("bountyId", "uint256", True),
        ("creator", "address", True),
        ("refundWei", "uint256", False),
    ),
    _event(
        "SubmissionPrepared",
        ("bountyId", "uint256", True),
        ("submissionId", "uint256", True),
        ("hunter", "address", True),
        ("evalWallet", "address", False),
        ("evaluationCid", "string", False),
        ("linkMaxBudget", "uint256", False),
    ),
    _event(
        "WorkSubmitted",
        ("bountyId", "uint256", True),
        ("submissionId", "uint256", True),
        ("verdiktaAggId", "bytes32", False),
    ),
    _event(
        "SubmissionFinalized",
        ("bountyId", "uint256", True),
        ("submissionId", "uint256", True),
        ("passed", "bool", False),
        ("acceptance", "uint256", False),
        ("rejection", "uint256", False),
        ("justificationCids", "string", False),
    ),
    _event(
        "PayoutSent",
        ("bountyId", "uint256", True),
        ("winner", "address", True),
        ("amountWei", "uint256", False),
    ),
    _event(
        "LinkRefunded",
        ("bountyId", "uint256", True),
        ("submissionId", "uint256", True),
        ("amount", "uint256", False),
    ),
]

ESCROW_ABI: list[dict[str, Any]] = [
    _view("bountyCount", [], [_param("", "uint256")]),
    _view("getBounty", [_param("bountyId", "uint256")], [BOUNTY_TUPLE]),
    _view(
        "getSubmission",
        [_param("bountyId", "uint256"), _param("submissionId", "uint256")],
        [SUBMISSION_TUPLE],
    ),
    _view("verdikta", [], [_param("", "address")]),
    *ESCROW_EVENTS,
]

AGGREGATOR_ABI: list[dict[str, Any]] = [
    _view(
        "getEvaluation",
        [_param("aggId", "bytes32")],
        [
            _param("scores", "uint256[]"),
            _param("justificationCids", "string"),
            _param("ok", "bool"),
        ],
    ),
]


def event_signature(abi: dict[str, Any]) -> str:
    """Canonical signature, e.g. ``BountyClosed(uint256,address,uint256)``."""
    types = ",".join(p["type"] for p in abi["inputs"])
    return f"{abi['name']}({types})"


EVENT_NAMES = [e["name"] for e in ESCROW_EVENTS]
