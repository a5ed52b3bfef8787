"""Thread pool of render workers pulling from the job queue.

Each worker thread loops: claim the best queued job, run it to a terminal
state, repeat. A separate heartbeat thread refreshes ``heartbeat_at`` for
in-flight jobs, relays cancel requests recorded in the database (so an API
process can cancel jobs running in a worker process), and requeues jobs
orphaned by workers that went away.
"""

import logging
import os
import socket
import threading
import uuid

from sqlalchemy.exc import SQLAlchemyError

from src.config import get_settings
from src.services.job_queue import JobQueue
from src.tasks.render_task import RenderTask

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        task: RenderTask,
        concurrency: int | None = None,
        poll_interval_s: float | None = None,
        heartbeat_interval_s: float | None = None,
        orphan_stale_after_s: float | None = None,
    ):
        settings = get_settings()
        self.queue = queue
        self.task = task
        self.concurrency = max(1, concurrency or settings.render_worker_concurrency)
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.render_poll_interval_s
        self.heartbeat_interval_s = (
            heartbeat_interval_s if heartbeat_interval_s is not None else settings.render_heartbeat_interval_s
        )
        self.orphan_stale_after_s = (
            orphan_stale_after_s if orphan_stale_after_s is not None else settings.render_orphan_stale_after_s
        )

        pool_id = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.worker_ids = [f"{pool_id}-w{i}" for i in range(self.concurrency)]

        self._stopping = threading.Event()
        self._interrupt = threading.Event()
        self._threads: list[threading.Thread] = []
        self._tokens: dict[str, threading.Event] = {}
        self._tokens_lock = threading.Lock()
        # Jobs a crashed run left processing under a live worker id
        self._unsettled: set[str] = set()

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stopping.is_set()

    @property
    def live_worker_ids(self) -> set[str]:
        return set(self.worker_ids) if self.running else set()

    def in_flight(self) -> list[str]:
        with self._tokens_lock:
            return list(self._tokens)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._threads:
            return
        self._stopping.clear()
        self._interrupt.clear()

        recovered = self.queue.recover_orphans(set(), self.orphan_stale_after_s)
        if recovered.requeued or recovered.cancelled:
            logger.info(
                f"[WORKER] Recovered {len(recovered.requeued)} orphaned jobs, "
                f"cancelled {len(recovered.cancelled)}"
            )

        for worker_id in self.worker_ids:
            thread = threading.Thread(target=self._worker_loop, args=(worker_id,), name=worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)

        heartbeat = threading.Thread(target=self._heartbeat_loop, name="render-heartbeat", daemon=True)
        heartbeat.start()
        self._threads.append(heartbeat)
        logger.info(f"[WORKER] Pool started with {self.concurrency} workers")

    def stop(self, timeout: float | None = None, interrupt_running: bool = False) -> None:
        """Stop claiming new jobs and wait for workers to exit.

        With ``interrupt_running`` in-flight renders are stopped and their
        jobs go back to the queue for the next pool to pick up. Jobs with a
        pending cancel request still end cancelled. Otherwise in-flight jobs
        run to completion first.
        """
        self._stopping.set()
        self.queue.wakeup.set()
        if interrupt_running:
            self._interrupt.set()
            with self._tokens_lock:
                for token in self._tokens.values():
                    token.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self._release_unsettled()
        logger.info("[WORKER] Pool stopped")

    def cancel(self, job_id: str) -> bool:
        """Signal the worker running ``job_id``. False if it is not running here."""
        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token is None:
            return False
        if not token.is_set():
            token.set()
            logger.info(f"[WORKER] Cancel signalled for job {job_id}")
        return True

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = self.queue.claim_next(worker_id)
            except SQLAlchemyError:
                logger.exception(f"[WORKER] {worker_id} failed to claim a job")
                self._stopping.wait(self.poll_interval_s)
                continue

            if job is None:
                self.queue.wakeup.wait(self.poll_interval_s)
                self.queue.wakeup.clear()
                continue

            token = threading.Event()
            with self._tokens_lock:
                self._tokens[job.id] = token
                # stop() may have signalled in-flight jobs before this one registered
                if self._interrupt.is_set():
                    token.set()
            try:
                # A cancel may have landed between the claim and token registration
                if self.queue.is_cancel_requested(job.id):
                    token.set()
                status = self.task.run(job, token, self._interrupt)
                logger.info(f"[WORKER] {worker_id} finished job {job.id}: {status}")
            except Exception:
                logger.exception(f"[WORKER] {worker_id} lost track of job {job.id}; returning it to the queue")
                self._release(job.id)
            finally:
                with self._tokens_lock:
                    self._tokens.pop(job.id, None)

    def _release(self, job_id: str) -> None:
        """Requeue a job whose run ended without a recorded outcome.

        The row still names a live worker, so orphan recovery would skip it.
        Failed attempts are retried from the heartbeat loop.
        """
        try:
            self.queue.release(job_id)
        except SQLAlchemyError:
            logger.exception(f"[WORKER] Could not requeue job {job_id}; will retry")
            with self._tokens_lock:
                self._unsettled.add(job_id)
            return
        with self._tokens_lock:
            self._unsettled.discard(job_id)

    def _release_unsettled(self) -> None:
        with self._tokens_lock:
            pending = list(self._unsettled)
        for job_id in pending:
            self._release(job_id)

    def _heartbeat_loop(self) -> None:
        while not self._stopping.wait(self.heartbeat_interval_s):
            try:
                self._heartbeat_tick()
            except SQLAlchemyError:
                logger.exception("[WORKER] Heartbeat failed")

    def _heartbeat_tick(self) -> None:
        self._release_unsettled()
        job_ids = self.in_flight()
        self.queue.heartbeat(job_ids)
        for job_id in self.queue.cancel_requested_among(job_ids):
            self.cancel(job_id)
        if self.orphan_stale_after_s > 0:
            self.queue.recover_orphans(self.live_worker_ids, self.orphan_stale_after_s)
