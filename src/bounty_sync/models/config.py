"""Configuration models for the sync service."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ArchiveConfig:
    """Archival sweeper configuration."""

    ttl_days: int = 30  # retention from bounty close
    after_retrieval_days: int = 7  # retention once the poster has the work
    verify_interval_hours: float = 1
    rate_limit_ms: int = 250  # minimum delay between pinning API calls


@dataclass
class SyncConfig:
    """Complete service configuration."""

    # Chain
    rpc_url: str = "http://127.0.0.1:8545"
    contract_address: str = ""  # authoritative BountyEscrow, lower-cased
    aggregator_address: str = ""  # discovered via verdikta() when empty
    max_in_flight: int = 8  # concurrent chain reads during a snapshot

    # Sync
    interval_minutes: float = 2
    max_consecutive_errors: int = 5
    log_level: str = "info"

    # IPFS
    gateways: list[str] = field(
        default_factory=lambda: ["https://ipfs.io", "https://cloudflare-ipfs.com"]
    )
    gateway_timeout: float = 15  # seconds per gateway
    pinning_base_url: str = "https://api.pinata.cloud"
    pin_service_token: str = ""  # loaded from env var PIN_SERVICE_TOKEN
    synthetic_cid_prefixes: list[str] = field(default_factory=lambda: ["QmDev", "dev-"])

    # Storage
    db_path: str = "~/.bounty_sync/state.db"

    # Archival
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
