"""CLI entry point for the bounty_sync service."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import click

from bounty_sync.archival.sweeper import ArchivalSweeper
from bounty_sync.config import load_config
from bounty_sync.daemon import BountySyncDaemon, run_daemon
from bounty_sync.errors import BountySyncError
from bounty_sync.models.config import SyncConfig
from bounty_sync.models.records import JobStatus, OrphanReason, ResolveHints
from bounty_sync.storage.sqlite import SQLiteJobStore


def _ts(value: int | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _require_contract(cfg: SyncConfig) -> None:
    """Exit with error if no contract address is configured."""
    if not cfg.contract_address:
        click.echo("Error: No contract address configured.", err=True)
        click.echo("Set CONTRACT_ADDRESS env var or [chain] contract_address in config.", err=True)
        sys.exit(1)


def _run(coro: Awaitable[Any]) -> Any:
    """Run a command coroutine, turning service errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except BountySyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


async def _with_service(cfg: SyncConfig, fn: Callable[[BountySyncDaemon], Awaitable[Any]]) -> Any:
    service = BountySyncDaemon(cfg)
    await service.store.initialize()
    try:
        return await fn(service)
    finally:
        await service.reconciler.wait_for_hooks()
        await service.store.close()


async def _with_store(cfg: SyncConfig, fn: Callable[[SQLiteJobStore], Awaitable[Any]]) -> Any:
    store = SQLiteJobStore(cfg.db_path)
    await store.initialize()
    try:
        return await fn(store)
    finally:
        await store.close()


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """bounty-sync - local mirror of the on-chain bounty escrow."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Daemon ─────────────────────────────────────────────


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the sync daemon."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)
    if not ctx.obj["verbose"]:
        logging.getLogger().setLevel(cfg.log_level.upper())

    click.echo(f"Starting bounty-sync daemon (every {cfg.interval_minutes:g} min)")
    asyncio.run(run_daemon(cfg))


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Run one reconciler cycle and print its report."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)

    async def _sync(service: BountySyncDaemon):
        return await service.reconciler.sync_now(manual=True)

    report = _run(_with_service(cfg, _sync))
    click.echo(
        f"On chain: {report.total_on_chain} (block {report.block_number})  "
        f"added={report.added} updated={report.updated} unchanged={report.unchanged} "
        f"orphaned={report.orphaned} removed={report.removed} in {report.duration_ms}ms"
    )
    if report.error:
        click.echo(f"Error: {report.error}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Run one archival pass over stored submissions."""
    cfg = load_config(ctx.obj["config_path"])

    async def _sweep(store: SQLiteJobStore):
        sweeper = ArchivalSweeper(store, BountySyncDaemon.pin_service(cfg), cfg.archive)
        return await sweeper.run_sweep()

    report = _run(_with_store(cfg, _sweep))
    click.echo(
        f"verified={report.verified} repinned={report.repinned} failed={report.failed} "
        f"skipped={report.skipped} expired={report.expired} errors={report.errors} "
        f"in {report.duration_ms}ms"
    )


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration and the last recorded cycles."""
    cfg = load_config(ctx.obj["config_path"])
    click.echo(f"RPC URL:     {cfg.rpc_url}")
    click.echo(f"Contract:    {cfg.contract_address or '(not set)'}")
    click.echo(f"Aggregator:  {cfg.aggregator_address or '(discovered)'}")
    click.echo(f"Interval:    {cfg.interval_minutes:g} min")
    click.echo(f"Gateways:    {', '.join(cfg.gateways)}")
    click.echo(f"Pinning:     {cfg.pinning_base_url}")
    click.echo(f"Pin token:   {'***configured***' if cfg.pin_service_token else '(not set)'}")
    click.echo(f"Archive TTL: {cfg.archive.ttl_days}d ({cfg.archive.after_retrieval_days}d after retrieval)")
    click.echo(f"DB path:     {cfg.db_path}")

    async def _history(store: SQLiteJobStore):
        return await store.get_cursor(), await store.get_cycle_history(limit=2)

    cursor, history = _run(_with_store(cfg, _history))
    click.echo(f"Last block:  {cursor if cursor is not None else '-'}")
    for entry in history:
        outcome = f"error: {entry['error']}" if entry.get("error") else "ok"
        click.echo(f"  [{entry['kind']:7s}] at={_ts(entry['started_at'])} {outcome}")


@cli.command()
@click.option("--status", "filter_status", default=None,
              type=click.Choice([s.value for s in JobStatus], case_sensitive=False),
              help="Filter by job status")
@click.option("--creator", default=None, help="Filter by creator address")
@click.pass_context
def jobs(ctx: click.Context, filter_status: str | None, creator: str | None) -> None:
    """List mirrored jobs."""
    cfg = load_config(ctx.obj["config_path"])
    wanted = JobStatus(filter_status.upper()) if filter_status else None

    async def _jobs(store: SQLiteJobStore):
        return await store.list_jobs(wanted, creator)

    found = _run(_with_store(cfg, _jobs))
    if not found:
        click.echo("No jobs.")
        return
    for job in found:
        origin = "chain" if job.synced_from_blockchain else ("linked" if job.on_chain else "local")
        click.echo(
            f"  #{job.job_id:<5d} [{job.status.value:9s}] {origin:6s} "
            f"subs={job.submission_count} closes={_ts(job.submission_close_time)} {job.title}"
        )


@cli.command()
@click.option("--from-block", type=int, required=True, help="First block to scan")
@click.option("--to-block", default="latest", help="Last block to scan (default latest)")
@click.pass_context
def events(ctx: click.Context, from_block: int, to_block: str) -> None:
    """Print decoded escrow events in a block range."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)
    end: int | str = int(to_block) if to_block.isdigit() else to_block

    async def _events(service: BountySyncDaemon):
        return await service.chain.get_logs(from_block, end)

    found = _run(_with_service(cfg, _events))
    if not found:
        click.echo("No events.")
        return
    for event in found:
        click.echo(f"  {event.block_number}:{event.log_index} {event.name} {json.dumps(event.to_dict())}")


# ── Linking ────────────────────────────────────────────


@cli.command()
@click.argument("job_id", type=int)
@click.option("--creator", required=True, help="Creator address of the bounty")
@click.option("--deadline", type=int, required=True, help="Submission deadline (unix seconds)")
@click.option("--cid", default=None, help="Evaluation package CID")
@click.option("--tx-hash", default=None, help="Creation transaction hash")
@click.pass_context
def resolve(
    ctx: click.Context, job_id: int, creator: str, deadline: int,
    cid: str | None, tx_hash: str | None,
) -> None:
    """Find the on-chain bounty a local job became and link it."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)
    hints = ResolveHints(creator=creator, submission_deadline=deadline, evaluation_cid=cid, tx_hash=tx_hash)

    async def _resolve(service: BountySyncDaemon):
        return await service.mutators.resolve_bounty_id(job_id, hints)

    result = _run(_with_service(cfg, _resolve))
    click.echo(f"Job {job_id} -> bounty {result.bounty_id} (via {result.method}, delta {result.delta}s)")


@cli.command()
@click.argument("job_id", type=int)
@click.argument("bounty_id", type=int)
@click.option("--tx-hash", default=None, help="Creation transaction hash")
@click.option("--block", "block_number", type=int, default=None, help="Block the bounty was created in")
@click.pass_context
def attach(
    ctx: click.Context, job_id: int, bounty_id: int,
    tx_hash: str | None, block_number: int | None,
) -> None:
    """Link a local job to a known on-chain bounty id."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)

    async def _attach(service: BountySyncDaemon):
        return await service.mutators.attach_bounty_id(job_id, bounty_id, tx_hash, block_number)

    job = _run(_with_service(cfg, _attach))
    click.echo(f"Job {job_id} linked to bounty {job.job_id} on {job.contract_address}")


@cli.command("cleanup-orphans")
@click.option("--reason", default=None,
              type=click.Choice([r.value for r in OrphanReason]),
              help="Only remove orphans with this reason")
@click.pass_context
def cleanup_orphans(ctx: click.Context, reason: str | None) -> None:
    """Delete orphaned jobs that have no submissions."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)

    async def _cleanup(service: BountySyncDaemon):
        return await service.mutators.cleanup_orphans(OrphanReason(reason) if reason else None)

    removed = _run(_with_service(cfg, _cleanup))
    click.echo(f"Removed {len(removed)} orphaned job(s){': ' + str(removed) if removed else ''}")


# ── Submissions ────────────────────────────────────────


@cli.command()
@click.argument("job_id", type=int)
@click.argument("submission_id", type=int)
@click.pass_context
def refresh(ctx: click.Context, job_id: int, submission_id: int) -> None:
    """Re-read one submission from chain now."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)

    async def _refresh(service: BountySyncDaemon):
        return await service.mutators.refresh_submission(job_id, submission_id)

    sub = _run(_with_service(cfg, _refresh))
    click.echo(
        f"Submission {job_id}/{submission_id}: {sub.status.value} "
        f"(acceptance {sub.acceptance}, rejection {sub.rejection})"
    )


@cli.command()
@click.argument("job_id", type=int)
@click.argument("submission_id", type=int)
@click.pass_context
def cancel(ctx: click.Context, job_id: int, submission_id: int) -> None:
    """Cancel a Prepared submission."""
    cfg = load_config(ctx.obj["config_path"])
    _require_contract(cfg)

    async def _cancel(service: BountySyncDaemon):
        await service.mutators.cancel_submission(job_id, submission_id)

    _run(_with_service(cfg, _cancel))
    click.echo(f"Cancelled submission {job_id}/{submission_id}")


@cli.command()
@click.argument("job_id", type=int)
@click.argument("submission_id", type=int)
@click.argument("poster")
@click.pass_context
def retrieved(ctx: click.Context, job_id: int, submission_id: int, poster: str) -> None:
    """Record that the poster retrieved a submission."""
    cfg = load_config(ctx.obj["config_path"])

    async def _retrieved(store: SQLiteJobStore):
        sweeper = ArchivalSweeper(store, BountySyncDaemon.pin_service(cfg), cfg.archive)
        return await sweeper.mark_as_retrieved(job_id, submission_id, poster)

    sub = _run(_with_store(cfg, _retrieved))
    click.echo(f"Submission {job_id}/{submission_id} archive now expires {_ts(sub.archive_expires_at)}")


@cli.command("archive-status")
@click.argument("job_id", type=int)
@click.argument("submission_id", type=int)
@click.pass_context
def archive_status(ctx: click.Context, job_id: int, submission_id: int) -> None:
    """Show the archive state of one submission."""
    cfg = load_config(ctx.obj["config_path"])

    async def _status(store: SQLiteJobStore):
        sweeper = ArchivalSweeper(store, BountySyncDaemon.pin_service(cfg), cfg.archive)
        return await sweeper.get_archive_status(job_id, submission_id)

    view = _run(_with_store(cfg, _status))
    click.echo(f"CID:       {view.hunter_cid or '-'}")
    click.echo(f"Status:    {view.archive_status}")
    click.echo(f"Archived:  {_ts(view.archived_at)}")
    click.echo(f"Verified:  {_ts(view.archive_verified_at)}")
    click.echo(f"Expires:   {_ts(view.archive_expires_at)}"
               + (" (expired)" if view.is_expired else
                  f" ({view.days_until_expiry}d left)" if view.days_until_expiry is not None else ""))
    click.echo(f"Retrieved: {'yes, ' + _ts(view.retrieved_at) if view.retrieved_by_poster else 'no'}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
