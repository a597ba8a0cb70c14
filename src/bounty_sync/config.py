"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Mapping

from bounty_sync.models.config import ArchiveConfig, SyncConfig


def _split(value: str | list) -> list[str]:
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in value.split(",") if part.strip()]


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncConfig:
    """Load service configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (RPC_URL, CONTRACT_ADDRESS, etc.)
        2. TOML config file
        3. Defaults from SyncConfig
    """
    env = os.environ if environ is None else environ
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    cfg = SyncConfig()

    # ── Chain section ──────────────────────────────────────
    chain = raw.get("chain", {})
    if v := chain.get("rpc_url"):
        cfg.rpc_url = str(v)
    if v := chain.get("contract_address"):
        cfg.contract_address = str(v)
    if v := chain.get("aggregator_address"):
        cfg.aggregator_address = str(v)
    if v := chain.get("max_in_flight"):
        cfg.max_in_flight = int(v)

    # ── Sync section ───────────────────────────────────────
    sync = raw.get("sync", {})
    if v := sync.get("interval_minutes"):
        cfg.interval_minutes = float(v)
    if v := sync.get("max_consecutive_errors"):
        cfg.max_consecutive_errors = int(v)
    if v := sync.get("log_level"):
        cfg.log_level = str(v)

    # ── Archive section ────────────────────────────────────
    archive_raw = raw.get("archive", {})
    defaults = ArchiveConfig()
    cfg.archive = ArchiveConfig(
        ttl_days=int(archive_raw.get("ttl_days", defaults.ttl_days)),
        after_retrieval_days=int(
            archive_raw.get("after_retrieval_days", defaults.after_retrieval_days)
        ),
        verify_interval_hours=float(
            archive_raw.get("verify_interval_hours", defaults.verify_interval_hours)
        ),
        rate_limit_ms=int(archive_raw.get("rate_limit_ms", defaults.rate_limit_ms)),
    )

    # ── IPFS section ───────────────────────────────────────
    ipfs = raw.get("ipfs", {})
    if v := ipfs.get("gateways"):
        cfg.gateways = _split(v)
    if v := ipfs.get("gateway_timeout"):
        cfg.gateway_timeout = float(v)
    if v := ipfs.get("pinning_base_url"):
        cfg.pinning_base_url = str(v)
    if v := ipfs.get("pin_service_token"):
        cfg.pin_service_token = str(v)
    if "synthetic_cid_prefixes" in ipfs:
        cfg.synthetic_cid_prefixes = _split(ipfs["synthetic_cid_prefixes"])

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.db_path = str(v)

    # ── Environment variable overrides (highest priority) ──
    if v := env.get("RPC_URL"):
        cfg.rpc_url = v
    if v := env.get("CONTRACT_ADDRESS"):
        cfg.contract_address = v
    if v := env.get("VERDIKTA_AGGREGATOR_ADDRESS"):
        cfg.aggregator_address = v
    if v := env.get("SYNC_INTERVAL_MINUTES"):
        cfg.interval_minutes = float(v)
    if v := env.get("ARCHIVE_TTL_DAYS"):
        cfg.archive.ttl_days = int(v)
    if v := env.get("ARCHIVE_AFTER_RETRIEVAL_DAYS"):
        cfg.archive.after_retrieval_days = int(v)
    if v := env.get("PIN_VERIFY_INTERVAL_HOURS"):
        cfg.archive.verify_interval_hours = float(v)
    if v := env.get("VERIFICATION_RATE_LIMIT_MS"):
        cfg.archive.rate_limit_ms = int(v)
    if v := env.get("IPFS_GATEWAYS"):
        cfg.gateways = _split(v)
    if v := env.get("PIN_SERVICE_TOKEN"):
        cfg.pin_service_token = v
    if v := env.get("PINNING_SERVICE_URL"):
        cfg.pinning_base_url = v
    if v := env.get("BOUNTY_SYNC_DB_PATH"):
        cfg.db_path = v
    if v := env.get("LOG_LEVEL"):
        cfg.log_level = v

    cfg.contract_address = cfg.contract_address.lower()
    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())

    return cfg
