"""Tier 2 fixtures: local aiohttp servers standing in for IPFS gateways and Pinata."""

from __future__ import annotations

import io
import json
import zipfile

import pytest
from aiohttp import web

from bounty_sync.ipfs.metadata import GatewayMetadataFetcher
from bounty_sync.ipfs.pinning import PinataPinService
from tests.conftest import make_test_config

GATEWAY_PORT = 9301
FALLBACK_PORT = 9303
PINNING_PORT = 9302


def make_package(manifest: dict | None, files: dict[str, object] | None = None, folder: str = "") -> bytes:
    """ZIP evaluation package with a manifest and JSON (or raw text) members."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        if manifest is not None:
            zf.writestr(folder + "manifest.json", json.dumps(manifest))
        for name, body in (files or {}).items():
            data = body if isinstance(body, str) else json.dumps(body)
            zf.writestr(folder + name, data)
    return buf.getvalue()


async def _serve(app: web.Application, port: int):
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    return runner


@pytest.fixture
async def gateway_server():
    """Gateway serving packages from a mutable map at /ipfs/{cid}.

    A list value is sent chunked, without a Content-Length header.
    Returns (base_url, content_map, hits).
    """
    content_map: dict[str, bytes | list[bytes]] = {}
    hits: list[str] = []

    async def handle_ipfs(request):
        cid = request.match_info["cid"]
        hits.append(cid)
        body = content_map.get(cid)
        if isinstance(body, list):
            resp = web.StreamResponse()
            resp.enable_chunked_encoding()
            await resp.prepare(request)
            for chunk in body:
                await resp.write(chunk)
            await resp.write_eof()
            return resp
        if body is not None:
            return web.Response(body=body)
        return web.Response(status=404)

    app = web.Application()
    app.router.add_get("/ipfs/{cid}", handle_ipfs)
    runner = await _serve(app, GATEWAY_PORT)
    yield f"http://127.0.0.1:{GATEWAY_PORT}", content_map, hits
    await runner.cleanup()


@pytest.fixture
async def failing_gateway():
    """Gateway that answers 502 to everything."""
    async def handle(request):
        return web.Response(status=502, text="bad gateway")

    app = web.Application()
    app.router.add_get("/ipfs/{cid}", handle)
    runner = await _serve(app, FALLBACK_PORT)
    yield f"http://127.0.0.1:{FALLBACK_PORT}"
    await runner.cleanup()


@pytest.fixture
async def pinning_server():
    """Pinata-like API. Returns (base_url, state).

    ``state["pinned"]`` is the set of pinned CIDs, ``state["requests"]`` records
    (path, authorization header, params-or-body). Setting ``state["list_status"]`` or
    ``state["pin_status"]`` forces an HTTP status; ``state["list_body"]`` forces
    a raw pinList body.
    """
    state: dict = {
        "pinned": set(),
        "requests": [],
        "list_status": 200,
        "pin_status": 200,
        "list_body": None,
    }

    async def pin_list(request):
        state["requests"].append(("pinList", request.headers.get("Authorization"), dict(request.query)))
        if state["list_status"] != 200:
            return web.Response(status=state["list_status"])
        if state["list_body"] is not None:
            return web.Response(text=state["list_body"], content_type="application/json")
        cid = request.query.get("hashContains", "")
        rows = [{"ipfs_pin_hash": c} for c in state["pinned"] if c == cid]
        return web.json_response({"count": len(rows), "rows": rows})

    async def pin_by_hash(request):
        body = await request.json()
        state["requests"].append(("pinByHash", request.headers.get("Authorization"), body))
        if state["pin_status"] != 200:
            return web.Response(status=state["pin_status"], text="quota exceeded")
        state["pinned"].add(body["hashToPin"])
        return web.json_response({"id": "req-1", "ipfsHash": body["hashToPin"], "status": "prechecking"})

    app = web.Application()
    app.router.add_get("/data/pinList", pin_list)
    app.router.add_post("/pinning/pinByHash", pin_by_hash)
    runner = await _serve(app, PINNING_PORT)
    yield f"http://127.0.0.1:{PINNING_PORT}", state
    await runner.cleanup()


@pytest.fixture
def fetcher(gateway_server):
    base_url, _, _ = gateway_server
    cfg = make_test_config(gateways=[base_url])
    return GatewayMetadataFetcher(
        cfg.gateways, timeout=cfg.gateway_timeout, synthetic_prefixes=cfg.synthetic_cid_prefixes,
    )


@pytest.fixture
def pin_service(pinning_server):
    base_url, _ = pinning_server
    cfg = make_test_config(pinning_base_url=base_url)
    return PinataPinService(cfg.pinning_base_url, cfg.pin_service_token, timeout=5)
