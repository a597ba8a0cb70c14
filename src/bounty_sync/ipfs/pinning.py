"""Pinata pin service - verifies and restores retention of hunter CIDs."""

from __future__ import annotations

import logging
from typing import Any

import httpx

log = logging.getLogger(__name__)


class PinataPinService:
    """Pinning API client using the Pinata REST endpoints.

    Verification is conservative: only a 2xx response that explicitly lists
    no pins counts as "not pinned". Anything else is reported as pinned so the
    sweeper never repins on the strength of a failed request.
    """

    def __init__(
        self,
        base_url: str = "https://api.pinata.cloud",
        token: str = "",
        timeout: float = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def verify_pin(self, cid: str) -> bool:
        if not self._token:
            log.warning("No pin service token configured, assuming %s is pinned", cid[:16])
            return True

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(
                    f"{self._base_url}/data/pinList",
                    params={"hashContains": cid, "status": "pinned"},
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            log.warning("Pin check for %s unreachable: %s", cid[:16], exc)
            return True

        if not resp.is_success:
            log.warning("Pin check for %s returned HTTP %d", cid[:16], resp.status_code)
            return True

        try:
            body = resp.json()
        except ValueError:
            log.warning("Pin check for %s returned a non-JSON body", cid[:16])
            return True
        if not isinstance(body, dict):
            return True

        if "count" in body:
            try:
                return int(body["count"]) > 0
            except (TypeError, ValueError):
                return True
        rows = body.get("rows")
        if isinstance(rows, list):
            return bool(rows)
        return True

    async def pin_by_hash(self, cid: str, meta: dict[str, Any] | None = None) -> bool:
        if not self._token:
            log.warning("No pin service token configured, cannot repin %s", cid[:16])
            return False

        meta = meta or {}
        payload = {
            "hashToPin": cid,
            "pinataMetadata": {
                "name": meta.get("name") or cid,
                "keyvalues": {
                    k: str(v) for k, v in (meta.get("keyvalues") or {}).items() if v is not None
                },
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/pinning/pinByHash",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            log.error("pinByHash failed for %s: %s", cid[:16], exc)
            return False

        if not resp.is_success:
            log.error("pinByHash for %s returned HTTP %d: %s", cid[:16], resp.status_code, resp.text[:200])
            return False
        log.info("Requested repin of %s", cid[:16])
        return True
