"""Tests for the database-backed render job queue."""

import threading
import time

from sqlalchemy import update

from src.models.render_job import CANCELLED, COMPLETED, FAILED, PROCESSING, QUEUED, RenderJob
from src.services.job_queue import effective_priority


def enqueue(queue, priority=2, user_id="user-1", project_id="proj-1"):
    return queue.enqueue(
        user_id=user_id,
        project_id=project_id,
        project_snapshot={"projectId": project_id},
        render_settings={"quality": "standard"},
        priority=priority,
        scene_count=1,
    )


def set_values(database, job_id, **values):
    with database.session() as session:
        session.execute(update(RenderJob).where(RenderJob.id == job_id).values(**values))


class TestEffectivePriority:
    """Tests for priority aging."""

    def test_no_wait(self):
        assert effective_priority(2, sequence_ns=1_000, now_ns=1_000, aging_s=60) == 2

    def test_one_level_per_interval(self):
        """Waiting 150s at 60s per level adds two levels."""
        assert effective_priority(1, sequence_ns=0, now_ns=150 * 10**9, aging_s=60) == 3

    def test_aging_disabled(self):
        assert effective_priority(1, sequence_ns=0, now_ns=10**15, aging_s=0) == 1


class TestEnqueue:
    """Tests for creating jobs."""

    def test_new_job_is_queued(self, queue):
        job = enqueue(queue)
        stored = queue.get(job.id)
        assert stored.status == QUEUED
        assert stored.progress == 0
        assert stored.retry_count == 0
        assert stored.project_snapshot == {"projectId": "proj-1"}

    def test_enqueue_wakes_workers(self, queue):
        queue.wakeup.clear()
        enqueue(queue)
        assert queue.wakeup.is_set()

    def test_sequences_increase(self, queue):
        first = enqueue(queue)
        second = enqueue(queue)
        assert second.sequence > first.sequence

    def test_unknown_job(self, queue):
        assert queue.get("missing") is None


class TestClaim:
    """Tests for claim ordering and exclusivity."""

    def test_empty_queue(self, queue):
        assert queue.claim_next("w0") is None

    def test_claim_marks_processing(self, queue):
        job = enqueue(queue)
        claimed = queue.claim_next("w0")
        assert claimed.id == job.id
        assert claimed.status == PROCESSING
        assert claimed.claimed_by == "w0"
        assert claimed.started_at is not None
        assert claimed.heartbeat_at is not None

    def test_higher_priority_first(self, queue):
        low = enqueue(queue, priority=1)
        high = enqueue(queue, priority=4)
        assert queue.claim_next("w0").id == high.id
        assert queue.claim_next("w0").id == low.id

    def test_fifo_within_priority(self, queue):
        jobs = [enqueue(queue, priority=2) for _ in range(3)]
        claimed = [queue.claim_next("w0").id for _ in range(3)]
        assert claimed == [job.id for job in jobs]

    def test_aged_job_overtakes(self, queue, database):
        """A low priority job waiting long enough outranks a fresh high one."""
        old = enqueue(queue, priority=1)
        set_values(database, old.id, sequence=time.time_ns() - 200 * 10**9)
        enqueue(queue, priority=3)
        # 1 + floor(200 / 60) = 4 > 3
        assert queue.claim_next("w0").id == old.id

    def test_concurrent_claims_are_exclusive(self, queue):
        """Every job is claimed by exactly one of many racing workers."""
        jobs = {enqueue(queue).id for _ in range(6)}
        claimed: list[str] = []
        lock = threading.Lock()

        def worker(worker_id):
            while True:
                job = queue.claim_next(worker_id)
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert sorted(claimed) == sorted(jobs)

    def test_cancelled_job_not_claimed(self, queue):
        job = enqueue(queue)
        assert queue.cancel_queued(job.id)
        assert queue.claim_next("w0") is None


class TestTransitions:
    """Tests for progress and terminal transitions."""

    def test_progress_only_moves_forward(self, queue):
        job = enqueue(queue)
        queue.claim_next("w0")
        assert queue.update_progress(job.id, 50, "rendering_scenes 1/2")
        assert not queue.update_progress(job.id, 30, "fetching_media")
        stored = queue.get(job.id)
        assert stored.progress == 50
        assert stored.current_stage == "rendering_scenes 1/2"

    def test_progress_requires_processing(self, queue):
        job = enqueue(queue)
        assert not queue.update_progress(job.id, 10)
        assert queue.get(job.id).progress == 0

    def test_completed(self, queue):
        job = enqueue(queue)
        queue.claim_next("w0")
        assert queue.mark_completed(job.id, "renders/p/out.mp4", "http://x/out.mp4", 123)
        stored = queue.get(job.id)
        assert stored.status == COMPLETED
        assert stored.progress == 100
        assert stored.output_url == "http://x/out.mp4"
        assert stored.output_size == 123
        assert stored.completed_at is not None

    def test_terminal_rows_are_immutable(self, queue):
        """Nothing moves a job out of a terminal status."""
        job = enqueue(queue)
        queue.claim_next("w0")
        queue.mark_failed(job.id, "boom", "EXECUTION_FAILED")

        assert not queue.mark_completed(job.id, "k", "u")
        assert not queue.mark_cancelled(job.id)
        assert not queue.cancel_queued(job.id)
        assert not queue.request_cancel(job.id)
        assert not queue.update_progress(job.id, 99)
        assert not queue.record_attempt(job.id, 2)

        stored = queue.get(job.id)
        assert stored.status == FAILED
        assert stored.error_message == "boom"
        assert stored.error_code == "EXECUTION_FAILED"

    def test_queued_job_can_fail(self, queue):
        """A queued job can fail without being claimed."""
        job = enqueue(queue)
        assert queue.mark_failed(job.id, "bad snapshot")
        assert queue.get(job.id).status == FAILED

    def test_record_attempt(self, queue):
        job = enqueue(queue)
        queue.claim_next("w0")
        assert queue.record_attempt(job.id, 2)
        assert queue.get(job.id).retry_count == 2


class TestCancel:
    """Tests for cancel requests."""

    def test_cancel_queued(self, queue):
        job = enqueue(queue)
        assert queue.cancel_queued(job.id)
        stored = queue.get(job.id)
        assert stored.status == CANCELLED
        assert stored.cancel_requested

    def test_request_cancel_only_for_processing(self, queue):
        job = enqueue(queue)
        assert not queue.request_cancel(job.id)
        queue.claim_next("w0")
        assert queue.request_cancel(job.id)
        assert queue.is_cancel_requested(job.id)
        assert queue.get(job.id).status == PROCESSING

    def test_cancel_requested_among(self, queue):
        first = enqueue(queue)
        second = enqueue(queue)
        queue.claim_next("w0")
        queue.claim_next("w1")
        queue.request_cancel(second.id)
        assert queue.cancel_requested_among([first.id, second.id]) == [second.id]
        assert queue.cancel_requested_among([]) == []


class TestRecovery:
    """Tests for orphaned job recovery."""

    def test_orphan_requeued_keeping_progress(self, queue):
        """A job whose worker is gone goes back to the queue."""
        job = enqueue(queue)
        queue.claim_next("dead-w0")
        queue.update_progress(job.id, 40, "rendering_scenes 1/2")

        result = queue.recover_orphans(set())

        assert result.requeued == [job.id]
        stored = queue.get(job.id)
        assert stored.status == QUEUED
        assert stored.claimed_by is None
        assert stored.progress == 40
        assert queue.claim_next("w1").id == job.id

    def test_live_worker_jobs_untouched(self, queue):
        job = enqueue(queue)
        queue.claim_next("w0")
        result = queue.recover_orphans({"w0"})
        assert result.requeued == []
        assert queue.get(job.id).status == PROCESSING

    def test_fresh_heartbeat_not_stale(self, queue):
        """With a staleness window, recently heartbeated jobs are left alone."""
        job = enqueue(queue)
        queue.claim_next("other-process-w0")
        queue.heartbeat([job.id])
        result = queue.recover_orphans(set(), stale_after_s=60)
        assert result.requeued == []

    def test_orphan_with_cancel_request_is_cancelled(self, queue):
        job = enqueue(queue)
        queue.claim_next("dead-w0")
        queue.request_cancel(job.id)
        result = queue.recover_orphans(set())
        assert result.cancelled == [job.id]
        assert queue.get(job.id).status == CANCELLED


class TestReads:
    """Tests for stats and listings."""

    def test_stats(self, queue):
        queued = enqueue(queue)
        running = enqueue(queue)
        done = enqueue(queue)
        set_values(queue.db, running.id, status=PROCESSING)
        set_values(queue.db, done.id, status=COMPLETED)
        queue.cancel_queued(queued.id)

        stats = queue.stats()
        assert (stats.waiting, stats.active, stats.completed, stats.cancelled) == (0, 1, 1, 1)
        assert stats.to_dict()["total"] == 3

    def test_list_for_user(self, queue):
        """Users see only their own jobs, newest first."""
        first = enqueue(queue, user_id="alice")
        second = enqueue(queue, user_id="alice")
        enqueue(queue, user_id="bob")

        jobs = queue.list_for_user("alice")
        assert [job.id for job in jobs] == [second.id, first.id]
        assert len(queue.list_for_user("alice", limit=1)) == 1
