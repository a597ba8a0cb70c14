"""Reconciler cycles against a mocked escrow."""

from __future__ import annotations

import pytest

from bounty_sync.errors import TransientError
from bounty_sync.models.chain import Evaluation
from bounty_sync.models.records import (
    PLACEHOLDER_DESCRIPTION,
    JobMetadata,
    JobStatus,
    OrphanReason,
    SubmissionStatus,
)

from tests.factories import (
    CREATOR,
    DAY,
    EVAL_CID,
    HUNTER_CID,
    NOW,
    OTHER_EVAL_CID,
    agg_id,
    make_bounty,
    make_chain_submission,
    make_job,
    make_submission,
)
from tests.mocks import CONTRACT

OTHER_CONTRACT = "0x" + "99" * 20
STRANGER = "0x" + "77" * 20


async def _jobs(store):
    jobs, _ = await store.read_snapshot()
    return jobs


# ── New bounties ───────────────────────────────────────────


class TestNewBounties:
    async def test_new_bounty_is_mirrored(self, reconciler, chain, metadata, store):
        metadata.by_cid[EVAL_CID] = JobMetadata(
            title="Haiku contest", description="Write one", work_product_type="Poem",
        )
        chain.add_bounty(make_bounty(0))

        report = await reconciler.sync_now()

        assert report.ok
        assert report.added == 1
        assert report.added_ids == [0]
        jobs, next_id = await store.read_snapshot()
        assert next_id == 1
        job = jobs[0]
        assert job.job_id == 0
        assert job.on_chain and job.synced_from_blockchain
        assert job.contract_address == CONTRACT
        assert job.status == JobStatus.OPEN
        assert job.title == "Haiku contest"
        assert job.description == "Write one"
        assert job.bounty_amount == 0.5
        assert job.last_synced_at == NOW

    async def test_metadata_miss_uses_placeholders(self, reconciler, chain, store):
        chain.add_bounty(make_bounty(0))
        await reconciler.sync_now()

        job = (await _jobs(store))[0]
        assert job.title == "Bounty #0"
        assert job.description == PLACEHOLDER_DESCRIPTION

    async def test_next_id_covers_highest_bounty(self, reconciler, chain, store):
        chain.add_bounty(make_bounty(4))
        await reconciler.sync_now()
        _, next_id = await store.read_snapshot()
        assert next_id == 5

    async def test_submissions_are_mirrored_with_evaluation(self, reconciler, chain, store):
        chain.add_bounty(make_bounty(0, submission_count=2))
        chain.add_submission(make_chain_submission(0, 0, raw_status=2))
        chain.add_submission(make_chain_submission(0, 1, verdikta_agg_id=agg_id(5)))
        chain.evaluations[agg_id(5)] = Evaluation(scores=(100_000, 900_000), ok=True)

        await reconciler.sync_now()

        subs = (await _jobs(store))[0].submissions
        assert [s.status for s in subs] == [
            SubmissionStatus.REJECTED,
            SubmissionStatus.ACCEPTED_PENDING_CLAIM,
        ]
        assert subs[1].acceptance == 90
        assert subs[0].hunter_cid == HUNTER_CID

    async def test_submission_failure_defers_new_bounty(self, reconciler, chain, store):
        chain.add_bounty(make_bounty(0, submission_count=1))
        chain.failing_submissions.add((0, 0))

        report = await reconciler.sync_now()

        assert report.ok
        assert report.added == 0
        assert await _jobs(store) == []

        chain.failing_submissions.clear()
        chain.add_submission(make_chain_submission(0, 0))
        report = await reconciler.sync_now()
        assert report.added == 1


# ── Updates ────────────────────────────────────────────────


class TestUpdates:
    async def test_second_cycle_is_a_no_op(self, reconciler, chain, metadata, store):
        metadata.by_cid[EVAL_CID] = JobMetadata(title="T", description="D")
        chain.add_bounty(make_bounty(0))
        await reconciler.sync_now()
        writes = store.write_count

        report = await reconciler.sync_now()

        assert report.unchanged == 1
        assert report.updated == 0
        assert store.write_count == writes

    async def test_placeholder_job_without_metadata_stays_unchanged(self, reconciler, chain, store):
        chain.add_bounty(make_bounty(0))
        await reconciler.sync_now()
        writes = store.write_count

        report = await reconciler.sync_now()

        assert report.unchanged == 1
        assert store.write_count == writes

    async def test_awarded_on_chain(self, reconciler, chain, store):
        await store.write([make_job(0, synced=True, on_chain=True)], 1)
        chain.add_bounty(make_bounty(0, raw_status=1, winner=CREATOR))

        report = await reconciler.sync_now()

        assert report.updated == 1
        job = (await _jobs(store))[0]
        assert job.status == JobStatus.AWARDED
        assert job.winner == CREATOR

    async def test_deadline_passing_expires_job(self, reconciler, chain, store, clock):
        await store.write([make_job(0, synced=True, on_chain=True)], 1)
        chain.add_bounty(make_bounty(0))
        clock.advance(2 * DAY)

        await reconciler.sync_now()

        assert (await _jobs(store))[0].status == JobStatus.EXPIRED

    async def test_evaluation_cid_mismatch_takes_chain_value(self, reconciler, chain, store):
        await store.write([make_job(0, synced=True, on_chain=True, evaluation_cid=OTHER_EVAL_CID)], 1)
        chain.add_bounty(make_bounty(0))

        await reconciler.sync_now()

        assert (await _jobs(store))[0].evaluation_cid == EVAL_CID

    async def test_prepared_draft_survives_sync(self, reconciler, chain, store):
        job = make_job(
            0, synced=True, on_chain=True, submission_count=1,
            submissions=[
                make_submission(0, status=SubmissionStatus.PENDING_EVALUATION,
                                on_chain_status="PendingVerdikta"),
                make_submission(1),
            ],
        )
        await store.write([job], 1)
        chain.add_bounty(make_bounty(0, submission_count=1))
        chain.add_submission(make_chain_submission(0, 0, raw_status=3))

        await reconciler.sync_now()

        subs = (await _jobs(store))[0].submissions
        assert [s.submission_id for s in subs] == [0, 1]
        assert subs[0].status == SubmissionStatus.APPROVED
        assert subs[1].status == SubmissionStatus.PREPARED
        assert subs[1].on_chain_status is None

    async def test_failed_submission_read_keeps_local_copy(self, reconciler, chain, store):
        job = make_job(
            0, synced=True, on_chain=True, submission_count=1,
            submissions=[make_submission(0, status=SubmissionStatus.PENDING_EVALUATION,
                                         on_chain_status="PendingVerdikta")],
        )
        await store.write([job], 1)
        chain.add_bounty(make_bounty(0, raw_status=1, winner=CREATOR, submission_count=1))
        chain.failing_submissions.add((0, 0))

        await reconciler.sync_now()

        job = (await _jobs(store))[0]
        assert job.status == JobStatus.AWARDED
        assert job.submissions[0].status == SubmissionStatus.PENDING_EVALUATION


# ── Linking local jobs ─────────────────────────────────────


class TestLinking:
    async def test_pending_link_by_evaluation_cid(self, reconciler, chain, store):
        await store.write([make_job(5)], 6)
        chain.add_bounty(make_bounty(0))

        report = await reconciler.sync_now()

        assert report.added == 0
        jobs, next_id = await store.read_snapshot()
        assert len(jobs) == 1
        assert jobs[0].job_id == 0
        assert jobs[0].synced_from_blockchain
        assert jobs[0].title == "Write a haiku"
        assert next_id == 6

    async def test_weak_link_by_creator_and_deadline(self, reconciler, chain, store):
        local = make_job(3, evaluation_cid=None, submission_close_time=NOW + DAY + 30)
        await store.write([local], 4)
        chain.add_bounty(make_bounty(1))

        await reconciler.sync_now()

        jobs = await _jobs(store)
        assert [(j.job_id, j.synced_from_blockchain) for j in jobs] == [(1, True)]
        assert jobs[0].evaluation_cid == EVAL_CID

    async def test_legacy_alias_links_and_is_dropped(self, reconciler, chain, store):
        local = make_job(7, contract_address=None, evaluation_cid=OTHER_EVAL_CID,
                         creator=STRANGER, legacy_aliases={"onChainId": 0})
        await store.write([local], 8)
        chain.add_bounty(make_bounty(0))

        await reconciler.sync_now()

        jobs = await _jobs(store)
        assert len(jobs) == 1
        assert jobs[0].job_id == 0
        assert jobs[0].contract_address == CONTRACT
        assert jobs[0].legacy_aliases == {}
        assert "onChainId" not in jobs[0].to_dict()

    async def test_colliding_draft_is_renumbered(self, reconciler, chain, store):
        draft = make_job(0, evaluation_cid=OTHER_EVAL_CID, creator=STRANGER)
        await store.write([draft], 1)
        chain.add_bounty(make_bounty(0))

        report = await reconciler.sync_now()

        assert report.added == 1
        jobs, next_id = await store.read_snapshot()
        by_id = {j.job_id: j for j in jobs}
        assert by_id[0].synced_from_blockchain
        assert by_id[1].creator == STRANGER
        assert not by_id[1].synced_from_blockchain
        assert next_id == 2

    async def test_linked_draft_does_not_evict_draft_on_its_id(self, reconciler, chain, store):
        await store.write([
            make_job(0, evaluation_cid=OTHER_EVAL_CID, creator=STRANGER, title="User A draft"),
            make_job(1, title="User B draft"),
        ], 2)
        chain.add_bounty(make_bounty(0))

        report = await reconciler.sync_now()

        assert report.removed == 0
        jobs, next_id = await store.read_snapshot()
        assert sorted((j.job_id, j.synced_from_blockchain) for j in jobs) == [(0, True), (2, False)]
        first = next(j for j in jobs if j.job_id == 2)
        assert (first.creator, first.title) == (STRANGER, "User A draft")
        assert next_id == 3

    async def test_attached_draft_then_sync_keeps_both(self, reconciler, mutators, chain, store):
        await store.write([
            make_job(0, evaluation_cid=OTHER_EVAL_CID, creator=STRANGER, title="User A draft"),
            make_job(1, title="User B draft"),
        ], 2)
        chain.add_bounty(make_bounty(0))

        await mutators.attach_bounty_id(1, 0, tx_hash="0xfeed")
        await reconciler.sync_now()

        jobs = await _jobs(store)
        assert sorted((j.job_id, j.synced_from_blockchain) for j in jobs) == [(0, True), (2, False)]
        linked = next(j for j in jobs if j.job_id == 0)
        assert linked.tx_hash == "0xfeed"
        assert next(j for j in jobs if j.job_id == 2).creator == STRANGER


# ── Orphans & duplicates ───────────────────────────────────


class TestOrphans:
    async def test_different_contract(self, reconciler, store):
        await store.write([make_job(0, contract_address=OTHER_CONTRACT)], 1)

        report = await reconciler.sync_now()

        job = (await _jobs(store))[0]
        assert report.orphaned == 1
        assert job.status == JobStatus.ORPHANED
        assert job.orphan_reason == OrphanReason.DIFFERENT_CONTRACT
        assert job.orphaned_at == NOW

    async def test_not_found_on_chain(self, reconciler, chain, store):
        await store.write([make_job(3, synced=True, on_chain=True)], 4)
        chain.add_bounty(make_bounty(0, evaluation_cid=OTHER_EVAL_CID))

        await reconciler.sync_now()

        job = next(j for j in await _jobs(store) if j.job_id == 3)
        assert job.orphan_reason == OrphanReason.NOT_FOUND_ON_CHAIN

    async def test_never_deployed_only_after_close(self, reconciler, store):
        stale = make_job(0, submission_close_time=NOW - 10)
        fresh = make_job(1, submission_close_time=NOW + 10, evaluation_cid=OTHER_EVAL_CID)
        await store.write([stale, fresh], 2)

        await reconciler.sync_now()

        jobs = {j.job_id: j for j in await _jobs(store)}
        assert jobs[0].orphan_reason == OrphanReason.NEVER_DEPLOYED
        assert jobs[1].status == JobStatus.OPEN

    async def test_unreadable_bounty_is_not_orphaned(self, reconciler, chain, store):
        await store.write([
            make_job(0, synced=True, on_chain=True),
            make_job(1, synced=True, on_chain=True, evaluation_cid=OTHER_EVAL_CID),
        ], 2)
        chain.add_bounty(make_bounty(0))
        chain.add_bounty(make_bounty(1, evaluation_cid=OTHER_EVAL_CID))
        chain.failing_bounties.add(1)

        report = await reconciler.sync_now()

        assert report.ok
        assert report.orphaned == 0
        assert all(j.status == JobStatus.OPEN for j in await _jobs(store))

    async def test_orphaned_jobs_are_not_reorphaned(self, reconciler, store):
        job = make_job(0, contract_address=OTHER_CONTRACT, status=JobStatus.ORPHANED,
                       orphan_reason=OrphanReason.DIFFERENT_CONTRACT, orphaned_at=NOW - DAY)
        await store.write([job], 1)
        writes = store.write_count

        report = await reconciler.sync_now()

        assert report.orphaned == 0
        assert store.write_count == writes
        assert (await _jobs(store))[0].orphaned_at == NOW - DAY

    async def test_unsynced_duplicate_is_dropped(self, reconciler, chain, store):
        await store.write([
            make_job(0, evaluation_cid=OTHER_EVAL_CID, title="stale copy"),
            make_job(0, synced=True, on_chain=True),
        ], 1)
        chain.add_bounty(make_bounty(0))

        report = await reconciler.sync_now()

        assert report.removed == 1
        jobs = await _jobs(store)
        assert len(jobs) == 1
        assert jobs[0].synced_from_blockchain


# ── Failure handling & hooks ───────────────────────────────


class TestFailures:
    async def test_disabled_after_consecutive_failures(self, reconciler, chain):
        chain.fail_snapshot = TransientError("rpc down")
        for _ in range(3):
            report = await reconciler.sync_now()
            assert report.error == "rpc down"
        assert not reconciler.enabled
        assert reconciler.consecutive_errors == 3

        report = await reconciler.sync_now()
        assert report.error == "reconciler disabled"

    async def test_manual_sync_re_enables(self, reconciler, chain):
        chain.fail_snapshot = TransientError("rpc down")
        for _ in range(3):
            await reconciler.sync_now()
        chain.fail_snapshot = None

        report = await reconciler.sync_now(manual=True)

        assert report.ok
        assert reconciler.enabled
        assert reconciler.consecutive_errors == 0

    async def test_success_resets_error_count(self, reconciler, chain):
        chain.fail_snapshot = TransientError("rpc down")
        await reconciler.sync_now()
        chain.fail_snapshot = None
        await reconciler.sync_now()
        assert reconciler.consecutive_errors == 0
        assert reconciler.last_sync_time == NOW

    async def test_overlapping_cycle_is_skipped(self, reconciler, chain):
        reconciler.is_syncing = True
        report = await reconciler.sync_now()
        assert report.error == "sync already in progress"

    async def test_cursor_and_history_recorded(self, reconciler, chain, store):
        chain.block = 4242
        await reconciler.sync_now()
        assert await store.get_cursor() == 4242
        history = await store.get_cycle_history("sync")
        assert history[0]["block_number"] == 4242

    async def test_status_reports_last_cycle(self, reconciler, chain):
        chain.add_bounty(make_bounty(0))
        await reconciler.sync_now()
        status = reconciler.get_status()
        assert status["enabled"]
        assert status["last_report"]["added"] == 1


class TestHooks:
    async def test_hook_runs_after_successful_cycle(self, reconciler, chain):
        seen = []

        async def hook(report):
            seen.append(report.added)

        reconciler.add_completion_hook(hook)
        chain.add_bounty(make_bounty(0))
        await reconciler.sync_now()
        await reconciler.wait_for_hooks()
        assert seen == [1]

    async def test_hook_skipped_on_failure(self, reconciler, chain):
        seen = []

        async def hook(report):
            seen.append(report)

        reconciler.add_completion_hook(hook)
        chain.fail_snapshot = TransientError("rpc down")
        await reconciler.sync_now()
        await reconciler.wait_for_hooks()
        assert seen == []

    async def test_failing_hook_does_not_break_sync(self, reconciler, chain):
        async def hook(report):
            raise RuntimeError("hook exploded")

        reconciler.add_completion_hook(hook)
        report = await reconciler.sync_now()
        await reconciler.wait_for_hooks()
        assert report.ok
        assert reconciler.enabled


@pytest.mark.parametrize("raw_status,expected", [
    (0, JobStatus.OPEN),
    (1, JobStatus.AWARDED),
    (2, JobStatus.CLOSED),
])
async def test_chain_status_wins(reconciler, chain, store, raw_status, expected):
    await store.write([make_job(0, synced=True, on_chain=True, status=JobStatus.EXPIRED)], 1)
    chain.add_bounty(make_bounty(0, raw_status=raw_status))

    await reconciler.sync_now()

    assert (await _jobs(store))[0].status == expected
