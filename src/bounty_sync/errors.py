"""Error taxonomy shared by every bounty_sync component."""

from __future__ import annotations


class BountySyncError(Exception):
    """Base class for all errors raised by bounty_sync."""


class NotFound(BountySyncError):
    """Job or submission id absent locally or on chain."""


class InvalidState(BountySyncError):
    """The action is precluded by the record's current state."""


class InvalidInput(BountySyncError):
    """Malformed CID, address, or out-of-range value."""


class TransientError(BountySyncError):
    """Network timeout, rate limiting, or gateway failure. Safe to retry."""


class EvaluationNotReady(TransientError):
    """The oracle has not produced an evaluation for this aggregator id yet."""


class PermanentError(BountySyncError):
    """Unparseable chain response or persistence failure."""
