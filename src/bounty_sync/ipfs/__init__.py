"""IPFS gateway and pinning service clients."""

from bounty_sync.ipfs.metadata import GatewayMetadataFetcher, parse_evaluation_archive
from bounty_sync.ipfs.pinning import PinataPinService

__all__ = ["GatewayMetadataFetcher", "PinataPinService", "parse_evaluation_archive"]
