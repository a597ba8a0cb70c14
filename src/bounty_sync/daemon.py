"""Main daemon loop - wires all components together."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

from bounty_sync.archival.sweeper import ArchivalSweeper
from bounty_sync.chain.adapter import Web3ChainAdapter
from bounty_sync.errors import BountySyncError
from bounty_sync.ipfs.metadata import GatewayMetadataFetcher
from bounty_sync.ipfs.pinning import PinataPinService
from bounty_sync.models.config import SyncConfig
from bounty_sync.models.reports import SyncReport
from bounty_sync.mutators import LocalMutators
from bounty_sync.storage.sqlite import SQLiteJobStore
from bounty_sync.sync.reconciler import Reconciler

log = logging.getLogger(__name__)


class SyncScheduler:
    """Fires the reconciler every ``interval_minutes``.

    Ticks are skipped while the reconciler has disabled itself; ``resume``
    turns it back on and the next tick fires normally.
    """

    def __init__(self, reconciler: Reconciler, interval_minutes: float = 2) -> None:
        self._reconciler = reconciler
        self._interval = interval_minutes * 60
        self._running = False
        self._task: asyncio.Task | None = None
        self._paused_logged = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        log.info("Sync scheduler started (every %.1f min)", self._interval / 60)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Sync scheduler stopped")

    def resume(self) -> None:
        log.info("Resuming scheduled sync")
        self._reconciler.resume()
        self._paused_logged = False

    async def tick(self) -> SyncReport | None:
        """One scheduled firing. None when the reconciler is disabled."""
        if not self._reconciler.enabled:
            if not self._paused_logged:
                log.warning("Reconciler disabled, scheduled syncs paused until resumed")
                self._paused_logged = True
            return None
        return await self._reconciler.sync_now()

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("Scheduled sync error: %s", exc, exc_info=True)

            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break


class BountySyncDaemon:
    """Mirror service for the bounty escrow.

    Runs the reconciler on a schedule and the archival sweeper after every
    successful reconciler cycle.
    """

    def __init__(self, cfg: SyncConfig, clock: Callable[[], int] | None = None) -> None:
        self._cfg = cfg
        self._stop = asyncio.Event()

        self.store = SQLiteJobStore(cfg.db_path)
        self.chain = Web3ChainAdapter(cfg.rpc_url, cfg.contract_address, cfg.aggregator_address)
        self.metadata = GatewayMetadataFetcher(
            cfg.gateways, cfg.gateway_timeout, cfg.synthetic_cid_prefixes,
        )
        self.pins = self.pin_service(cfg)
        self.reconciler = Reconciler(
            self.store, self.chain, self.metadata,
            max_in_flight=cfg.max_in_flight,
            max_consecutive_errors=cfg.max_consecutive_errors,
            interval_minutes=cfg.interval_minutes,
            clock=clock,
        )
        self.sweeper = ArchivalSweeper(self.store, self.pins, cfg.archive, clock=clock)
        self.mutators = LocalMutators(self.store, self.chain, clock=clock)
        self.scheduler = SyncScheduler(self.reconciler, cfg.interval_minutes)

        self.reconciler.add_completion_hook(self._after_sync)

    @staticmethod
    def pin_service(cfg: SyncConfig) -> PinataPinService:
        return PinataPinService(cfg.pinning_base_url, cfg.pin_service_token)

    async def _after_sync(self, report: SyncReport) -> None:
        try:
            await self.sweeper.run_sweep()
        except BountySyncError as exc:
            log.error("Archival sweep aborted: %s", exc)

    async def start(self) -> None:
        """Initialize components and run until stopped."""
        log.info("Starting bounty_sync daemon")
        log.info("  Contract: %s", self._cfg.contract_address)
        log.info("  RPC: %s", self._cfg.rpc_url)
        log.info("  Gateways: %s", ", ".join(self._cfg.gateways))
        log.info("  Pinning: %s", "configured" if self._cfg.pin_service_token else "not configured")

        await self.store.initialize()
        last_block = await self.store.get_cursor()
        if last_block is not None:
            log.info("Last synced at block %d", last_block)

        await self.scheduler.start()
        try:
            await self._stop.wait()
        finally:
            await self.scheduler.stop()
            await self.reconciler.wait_for_hooks()
            await self.store.close()
            log.info("Daemon shut down cleanly")

    async def stop(self) -> None:
        """Signal the daemon to stop gracefully."""
        log.info("Stop requested")
        self._stop.set()


async def run_daemon(cfg: SyncConfig) -> None:
    """Entry point for running the daemon."""
    daemon = BountySyncDaemon(cfg)

    loop = asyncio.get_running_loop()

    def _signal_handler():
        asyncio.ensure_future(daemon.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    await daemon.start()
