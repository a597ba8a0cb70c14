"""Best-effort job metadata from evaluation packages on IPFS gateways.

An evaluation package is a ZIP holding ``manifest.json`` and the primary query
file it names (normally ``primary_query.json``). Two layouts exist:

- new: top-level ``title`` / ``description`` / ``workProductType`` keys
- legacy: a free-text ``query`` with ``Task Title:``, ``Task Description:``
  and ``Work Product Type:`` lines
"""

from __future__ import annotations

import io
import json
import logging
import re
import zipfile
import zlib
from typing import Any, Sequence

import httpx

from bounty_sync.models.records import JobMetadata

log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
DEFAULT_PRIMARY = "primary_query.json"
MANIFEST_NAME_SUFFIX = " - Evaluation for Payment Release"
MAX_ARCHIVE_BYTES = 10 * 1024 * 1024

_LEGACY_TITLE = re.compile(r"^\s*Task Title:\s*(.+?)\s*$", re.MULTILINE)
_LEGACY_TYPE = re.compile(r"^\s*Work Product Type:\s*(.+?)\s*$", re.MULTILINE)
_LEGACY_DESCRIPTION = re.compile(
    r"^\s*Task Description:\s*(.*?)\s*(?=\n\s*\n|\n\s*===|\Z)", re.MULTILINE | re.DOTALL
)


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_json(zf: zipfile.ZipFile, name: str) -> Any:
    try:
        return json.loads(zf.read(name).decode("utf-8"))
    except (
        KeyError, ValueError, EOFError, RuntimeError, NotImplementedError,
        zipfile.BadZipFile, zlib.error,
    ) as e:
        log.debug("Unreadable %s in evaluation package: %s", name, e)
        return None


def _parse_legacy_query(query: str) -> JobMetadata:
    def first(pattern: re.Pattern[str]) -> str | None:
        m = pattern.search(query)
        return _text(m.group(1)) if m else None

    return JobMetadata(
        title=first(_LEGACY_TITLE),
        description=first(_LEGACY_DESCRIPTION),
        work_product_type=first(_LEGACY_TYPE),
    )


def _fill(meta: JobMetadata, doc: Any) -> None:
    if not isinstance(doc, dict):
        return
    meta.title = meta.title or _text(doc.get("title"))
    meta.description = meta.description or _text(doc.get("description"))
    meta.work_product_type = meta.work_product_type or _text(doc.get("workProductType"))


def parse_evaluation_archive(data: bytes) -> JobMetadata | None:
    """Extract metadata from a ZIP evaluation package. None when nothing usable."""
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        return None

    with zf:
        names = zf.namelist()
        manifest_name = next(
            (n for n in names if n.rsplit("/", 1)[-1] == MANIFEST_NAME), None
        )
        if manifest_name is None:
            return None
        manifest = _load_json(zf, manifest_name)
        if not isinstance(manifest, dict):
            return None

        primary_ref = manifest.get("primary")
        primary_file = (
            _text(primary_ref.get("filename")) if isinstance(primary_ref, dict) else None
        ) or DEFAULT_PRIMARY
        folder = manifest_name.rsplit("/", 1)[0] + "/" if "/" in manifest_name else ""
        primary_name = folder + primary_file
        primary = _load_json(zf, primary_name) if primary_name in names else None

    meta = JobMetadata()
    _fill(meta, primary)
    _fill(meta, manifest)

    if isinstance(primary, dict) and isinstance(primary.get("query"), str):
        legacy = _parse_legacy_query(primary["query"])
        meta.title = meta.title or legacy.title
        meta.description = meta.description or legacy.description
        meta.work_product_type = meta.work_product_type or legacy.work_product_type

    if not meta.title:
        name = _text(manifest.get("name"))
        if name and name.endswith(MANIFEST_NAME_SUFFIX):
            name = _text(name[: -len(MANIFEST_NAME_SUFFIX)])
        meta.title = name

    if not (meta.title or meta.description or meta.work_product_type):
        return None
    return meta


class GatewayMetadataFetcher:
    """Tries each configured gateway in order; returns None on any failure."""

    def __init__(
        self,
        gateways: Sequence[str],
        timeout: float = 15,
        synthetic_prefixes: Sequence[str] = ("QmDev", "dev-"),
        max_archive_bytes: int = MAX_ARCHIVE_BYTES,
    ) -> None:
        self._gateways = [g.rstrip("/") for g in gateways if g]
        self._timeout = timeout
        self._synthetic_prefixes = tuple(synthetic_prefixes)
        self._max_archive_bytes = max_archive_bytes

    def is_synthetic(self, cid: str) -> bool:
        return cid.startswith(self._synthetic_prefixes)

    async def _download(self, client: httpx.AsyncClient, url: str, cid: str) -> bytes | None:
        """Body of ``url``, or None once it grows past the size cap."""
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            declared = resp.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self._max_archive_bytes:
                log.warning("Evaluation package %s too large (%s bytes)", cid[:16], declared)
                return None
            buf = bytearray()
            async for chunk in resp.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > self._max_archive_bytes:
                    log.warning(
                        "Evaluation package %s exceeds %d bytes, giving up",
                        cid[:16], self._max_archive_bytes,
                    )
                    return None
            return bytes(buf)

    async def fetch(self, cid: str) -> JobMetadata | None:
        if not cid or self.is_synthetic(cid):
            log.debug("Skipping metadata fetch for synthetic CID %s", cid)
            return None

        for gateway in self._gateways:
            url = f"{gateway}/ipfs/{cid}"
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self._timeout, connect=min(self._timeout, 10)),
                    follow_redirects=True,
                ) as client:
                    body = await self._download(client, url, cid)
            except httpx.HTTPError as exc:
                log.warning("Metadata fetch from %s failed for %s: %s", gateway, cid[:16], exc)
                continue

            if body is None:
                return None

            try:
                meta = parse_evaluation_archive(body)
            except Exception:
                log.warning("Could not parse evaluation package %s", cid[:16], exc_info=True)
                return None
            if meta is None:
                log.info("No usable metadata in evaluation package %s", cid[:16])
            else:
                log.debug("Metadata for %s: %r", cid[:16], meta.title)
            return meta

        return None
