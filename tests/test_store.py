"""SQLite job store: snapshot discipline, normalization on read, history."""

from __future__ import annotations

import json

import pytest

from bounty_sync.errors import PermanentError
from bounty_sync.models.records import JobStatus, SubmissionStatus
from bounty_sync.models.reports import ArchivalReport, SyncReport

from tests.factories import CREATOR, make_job, make_submission
from tests.mocks import CONTRACT


async def _insert_raw(store, position: int, doc: dict, next_id: int = 10) -> None:
    await store.db.execute(
        "INSERT INTO jobs (position, job_id, contract_address, status, creator, body)"
        " VALUES (?, ?, ?, ?, ?, ?)",
        (position, doc["jobId"], doc.get("contractAddress"), doc["status"], None, json.dumps(doc)),
    )
    await store.db.execute(
        "INSERT INTO store_meta (id, next_id) VALUES (1, ?)"
        " ON CONFLICT(id) DO UPDATE SET next_id=excluded.next_id",
        (next_id,),
    )
    await store.db.commit()


async def test_empty_store_snapshot(store):
    jobs, next_id = await store.read_snapshot()
    assert jobs == []
    assert next_id == 0


async def test_write_then_read_preserves_order_and_next_id(store):
    first = make_job(3, submissions=[make_submission(0)])
    second = make_job(1, contract_address=None)
    await store.write([first, second], 7)

    jobs, next_id = await store.read_snapshot()
    assert [j.job_id for j in jobs] == [3, 1]
    assert next_id == 7
    assert jobs[0].submissions[0].status == SubmissionStatus.PREPARED
    assert jobs[1].contract_address is None
    assert store.write_count == 1


async def test_snapshot_is_a_copy(store):
    await store.write([make_job(0)], 1)
    jobs, _ = await store.read_snapshot()
    jobs[0].title = "changed in memory"

    again, _ = await store.read_snapshot()
    assert again[0].title == "Write a haiku"


async def test_update_commits_mutation(store):
    await store.write([make_job(0)], 1)

    def add(jobs, next_id):
        return jobs + [make_job(next_id)], next_id + 1

    jobs, next_id = await store.update(add)
    assert [j.job_id for j in jobs] == [0, 1]
    assert next_id == 2
    assert len((await store.read_snapshot())[0]) == 2


async def test_update_returning_none_skips_write(store):
    await store.write([make_job(0)], 1)
    writes = store.write_count
    await store.update(lambda jobs, next_id: None)
    assert store.write_count == writes


async def test_update_exception_leaves_snapshot_untouched(store):
    await store.write([make_job(0)], 1)

    def explode(jobs, next_id):
        jobs[0].title = "half done"
        raise ValueError("boom")

    with pytest.raises(ValueError):
        await store.update(explode)
    jobs, _ = await store.read_snapshot()
    assert jobs[0].title == "Write a haiku"


async def test_unserializable_snapshot_is_permanent_error(store):
    await store.write([make_job(0)], 1)
    bad = make_job(1)
    bad.jury_nodes = [object()]

    with pytest.raises(PermanentError):
        await store.write([make_job(0), bad], 2)
    jobs, next_id = await store.read_snapshot()
    assert [j.job_id for j in jobs] == [0]
    assert next_id == 1


async def test_status_drift_is_normalized_and_repersisted(store):
    doc = make_job(4, synced=True, on_chain=True).to_dict()
    doc["status"] = "completed"
    doc["submissions"] = [
        dict(make_submission(0).to_dict(), status="PASSED"),
        dict(make_submission(1).to_dict(), status="failed"),
        dict(make_submission(2).to_dict(), status="PREPARED"),
        dict(make_submission(3).to_dict(), status="PendingVerdikta"),
        dict(make_submission(4).to_dict(), status="something odd"),
    ]
    await _insert_raw(store, 0, doc)

    jobs, next_id = await store.read_snapshot()
    assert next_id == 10
    assert jobs[0].status == JobStatus.AWARDED
    assert [s.status for s in jobs[0].submissions] == [
        SubmissionStatus.APPROVED,
        SubmissionStatus.REJECTED,
        SubmissionStatus.PREPARED,
        SubmissionStatus.PENDING_EVALUATION,
        SubmissionStatus.UNKNOWN,
    ]
    assert store.write_count == 1

    async with store.db.execute("SELECT status, body FROM jobs") as cur:
        row = await cur.fetchone()
    assert row["status"] == "AWARDED"
    assert json.loads(row["body"])["submissions"][0]["status"] == "APPROVED"


async def test_canonical_snapshot_is_not_rewritten_on_read(store):
    await store.write([make_job(0)], 1)
    await store.read_snapshot()
    await store.read_snapshot()
    assert store.write_count == 1


async def test_legacy_aliases_are_collected(store):
    doc = make_job(2, contract_address=None).to_dict()
    doc["onChainId"] = 9
    await _insert_raw(store, 0, doc)

    jobs, _ = await store.read_snapshot()
    assert jobs[0].legacy_aliases == {"onChainId": 9}
    assert jobs[0].legacy_chain_id() == 9


async def test_corrupt_row_is_permanent_error(store):
    await store.db.execute(
        "INSERT INTO jobs (position, job_id, status, body) VALUES (0, 0, 'OPEN', '{not json')"
    )
    await store.db.commit()
    with pytest.raises(PermanentError):
        await store.read_snapshot()


async def test_get_job_prefers_synced_record(store):
    local = make_job(5, title="local draft")
    synced = make_job(5, synced=True, on_chain=True, title="from chain", contract_address=None)
    await store.write([local, synced], 6)

    job = await store.get_job(5)
    assert job.title == "from chain"
    job = await store.get_job(5, CONTRACT.upper().replace("0X", "0x"))
    assert job.title == "local draft"
    assert await store.get_job(99) is None


async def test_list_jobs_filters(store):
    other = "0x" + "99" * 20
    await store.write([
        make_job(0),
        make_job(1, status=JobStatus.EXPIRED),
        make_job(2, creator=other),
    ], 3)

    assert [j.job_id for j in await store.list_jobs()] == [0, 1, 2]
    assert [j.job_id for j in await store.list_jobs(JobStatus.EXPIRED)] == [1]
    assert [j.job_id for j in await store.list_jobs(creator=CREATOR.upper().replace("0X", "0x"))] == [0, 1]


async def test_cursor_round_trip(store):
    assert await store.get_cursor() is None
    await store.set_cursor(123)
    await store.set_cursor(456)
    assert await store.get_cursor() == 456


async def test_cycle_history_newest_first(store):
    await store.save_sync_report(SyncReport(started_at=1, added=2))
    await store.save_archival_report(ArchivalReport(started_at=2, verified=3))
    await store.save_sync_report(SyncReport(started_at=3, error="rpc down"))

    history = await store.get_cycle_history()
    assert [h["kind"] for h in history] == ["sync", "archive", "sync"]
    assert history[0]["error"] == "rpc down"

    syncs = await store.get_cycle_history("sync", limit=1)
    assert len(syncs) == 1
    assert syncs[0]["started_at"] == 3

    archives = await store.get_cycle_history("archive")
    assert archives[0]["verified"] == 3
