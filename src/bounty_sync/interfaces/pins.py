"""PinService protocol - retention checks against a remote pinning API."""

from __future__ import annotations

from typing import Any, Protocol


class PinService(Protocol):
    """Operates a remote pinning service."""

    async def verify_pin(self, cid: str) -> bool:
        """False only when the service explicitly reports the CID unpinned."""
        ...

    async def pin_by_hash(self, cid: str, meta: dict[str, Any] | None = None) -> bool:
        """Ask the service to pin an existing CID. True on a 2xx response."""
        ...
