"""MetadataSource protocol - best-effort job metadata from IPFS."""

from __future__ import annotations

from typing import Protocol

from bounty_sync.models.records import JobMetadata


class MetadataSource(Protocol):
    async def fetch(self, cid: str) -> JobMetadata | None:
        """Title/description/work product type, or None on any failure. Never raises."""
        ...
