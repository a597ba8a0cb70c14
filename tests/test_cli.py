"""CLI commands against a temporary SQLite database."""

from __future__ import annotations

import asyncio

import pytest
from click.testing import CliRunner

from bounty_sync.cli import cli
from bounty_sync.models.records import ArchiveStatus, JobStatus, OrphanReason, SubmissionStatus
from bounty_sync.storage.sqlite import SQLiteJobStore

from tests.factories import HUNTER_CID, POSTER, make_job, make_submission
from tests.mocks import CONTRACT


def _seed(db_path: str, jobs, next_id: int) -> None:
    async def write():
        store = SQLiteJobStore(db_path)
        await store.initialize()
        try:
            await store.write(jobs, next_id)
        finally:
            await store.close()

    asyncio.run(write())


def _read(db_path: str):
    async def read():
        store = SQLiteJobStore(db_path)
        await store.initialize()
        try:
            return await store.read_snapshot()
        finally:
            await store.close()

    return asyncio.run(read())


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.db")


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()
    env = {
        "BOUNTY_SYNC_DB_PATH": db_path,
        "CONTRACT_ADDRESS": CONTRACT,
        "PIN_SERVICE_TOKEN": None,
        "RPC_URL": "http://127.0.0.1:8545",
    }

    def run(*args, **overrides):
        return runner.invoke(cli, list(args), env={**env, **overrides})

    return run


def test_status_shows_config(invoke, db_path):
    result = invoke("status")
    assert result.exit_code == 0, result.output
    assert f"Contract:    {CONTRACT}" in result.output
    assert "Pin token:   (not set)" in result.output
    assert f"DB path:     {db_path}" in result.output
    assert "Last block:  -" in result.output


def test_jobs_lists_and_filters(invoke, db_path):
    _seed(db_path, [
        make_job(0, synced=True, on_chain=True, title="Mirrored"),
        make_job(1, title="Draft"),
        make_job(2, status=JobStatus.EXPIRED, title="Late"),
    ], 3)

    result = invoke("jobs")
    assert result.exit_code == 0, result.output
    assert "Mirrored" in result.output and "Draft" in result.output
    assert "chain" in result.output and "local" in result.output

    result = invoke("jobs", "--status", "expired")
    assert result.exit_code == 0, result.output
    assert "Late" in result.output
    assert "Draft" not in result.output


def test_jobs_empty(invoke):
    result = invoke("jobs")
    assert result.exit_code == 0
    assert "No jobs." in result.output


def test_sync_requires_contract(invoke):
    result = invoke("sync", CONTRACT_ADDRESS=None)
    assert result.exit_code == 1
    assert "No contract address configured" in result.output


def test_attach_links_job(invoke, db_path):
    _seed(db_path, [make_job(3)], 4)

    result = invoke("attach", "3", "8", "--tx-hash", "0xfeed")

    assert result.exit_code == 0, result.output
    assert "linked to bounty 8" in result.output
    jobs, next_id = _read(db_path)
    assert jobs[0].job_id == 8
    assert jobs[0].tx_hash == "0xfeed"
    assert next_id == 9


def test_attach_unknown_job_exits_with_error(invoke):
    result = invoke("attach", "3", "8")
    assert result.exit_code == 1
    assert "Error: Job 3 not found" in result.output


def test_cleanup_orphans(invoke, db_path):
    _seed(db_path, [
        make_job(0, status=JobStatus.ORPHANED, orphan_reason=OrphanReason.NEVER_DEPLOYED),
        make_job(1, status=JobStatus.ORPHANED, orphan_reason=OrphanReason.DIFFERENT_CONTRACT),
    ], 2)

    result = invoke("cleanup-orphans", "--reason", "never_deployed")

    assert result.exit_code == 0, result.output
    assert "Removed 1 orphaned job(s): [0]" in result.output
    assert [j.job_id for j in _read(db_path)[0]] == [1]


def test_cancel_prepared(invoke, db_path):
    _seed(db_path, [make_job(0, submission_count=1, submissions=[make_submission(0)])], 1)

    result = invoke("cancel", "0", "0")

    assert result.exit_code == 0, result.output
    assert _read(db_path)[0][0].submissions == []


def test_cancel_non_prepared_fails(invoke, db_path):
    sub = make_submission(0, status=SubmissionStatus.APPROVED, on_chain_status="PassedPaid")
    _seed(db_path, [make_job(0, submissions=[sub])], 1)

    result = invoke("cancel", "0", "0")

    assert result.exit_code == 1
    assert "Only Prepared submissions can be cancelled" in result.output


def test_retrieved_then_archive_status(invoke, db_path):
    sub = make_submission(0, archive_status=ArchiveStatus.VERIFIED)
    _seed(db_path, [make_job(0, synced=True, on_chain=True, submissions=[sub])], 1)

    result = invoke("retrieved", "0", "0", POSTER)
    assert result.exit_code == 0, result.output
    assert "archive now expires" in result.output

    result = invoke("archive-status", "0", "0")
    assert result.exit_code == 0, result.output
    assert HUNTER_CID in result.output
    assert "Status:    verified" in result.output
    assert "Retrieved: yes" in result.output
    assert "7d left" in result.output


def test_archive_status_unknown_submission(invoke, db_path):
    _seed(db_path, [make_job(0)], 1)
    result = invoke("archive-status", "0", "3")
    assert result.exit_code == 1
    assert "not found" in result.output
