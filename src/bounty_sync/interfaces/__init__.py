"""Protocol interfaces for all bounty_sync components."""

from bounty_sync.interfaces.chain import ChainReader
from bounty_sync.interfaces.metadata import MetadataSource
from bounty_sync.interfaces.pins import PinService
from bounty_sync.interfaces.store import JobStore

__all__ = ["ChainReader", "JobStore", "MetadataSource", "PinService"]
