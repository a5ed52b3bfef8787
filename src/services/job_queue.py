"""Durable render job queue on the render_jobs table.

Every state transition is a single conditional UPDATE committed before the
caller moves on, so the table is the authoritative job state and concurrent
workers (threads or processes) cannot both win the same job.

Lifecycle::

    queued ──claim──> processing ──> completed
       │                  │    └───> failed
       └──> cancelled <───┘

Terminal rows (completed, failed, cancelled) are never updated again.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update

from src.config import get_settings
from src.models.base import as_utc, utcnow
from src.models.database import Database
from src.models.render_job import (
    ACTIVE_STATUSES,
    CANCELLED,
    COMPLETED,
    FAILED,
    PROCESSING,
    QUEUED,
    RenderJob,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.cancelled

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "total": self.total,
        }


@dataclass(frozen=True)
class RecoveryResult:
    requeued: list[str]
    cancelled: list[str]


def effective_priority(base: int, sequence_ns: int, now_ns: int, aging_s: float) -> int:
    """Base priority plus one level per ``aging_s`` seconds spent waiting."""
    if aging_s <= 0:
        return base
    wait_s = max(0, now_ns - sequence_ns) / 1e9
    return base + math.floor(wait_s / aging_s)


class JobQueue:
    def __init__(self, db: Database, aging_s: float | None = None):
        self.db = db
        self.aging_s = aging_s if aging_s is not None else get_settings().render_priority_aging_s
        # Set on enqueue so idle workers wake without waiting out their poll interval
        self.wakeup = threading.Event()
        self._seq_lock = threading.Lock()
        self._last_sequence = 0

    # ------------------------------------------------------------------
    # Enqueue / read
    # ------------------------------------------------------------------

    def _next_sequence(self) -> int:
        # Enqueue time in ns, strictly increasing within this process
        with self._seq_lock:
            self._last_sequence = max(time.time_ns(), self._last_sequence + 1)
            return self._last_sequence

    def enqueue(
        self,
        user_id: str,
        project_id: str,
        project_snapshot: dict[str, Any],
        render_settings: dict[str, Any],
        priority: int,
        scene_count: int = 0,
    ) -> RenderJob:
        job = RenderJob(
            user_id=user_id,
            project_id=project_id,
            status=QUEUED,
            progress=0,
            priority=priority,
            sequence=self._next_sequence(),
            project_snapshot=project_snapshot,
            render_settings=render_settings,
            scene_count=scene_count,
        )
        with self.db.session() as session:
            session.add(job)
        logger.info(f"[QUEUE] Job {job.id} queued for project {project_id} (priority {priority})")
        self.wakeup.set()
        return job

    def get(self, job_id: str) -> RenderJob | None:
        with self.db.session() as session:
            return session.get(RenderJob, job_id)

    def list_for_user(self, user_id: str, limit: int = 50) -> list[RenderJob]:
        with self.db.session() as session:
            result = session.execute(
                select(RenderJob)
                .where(RenderJob.user_id == user_id)
                .order_by(RenderJob.created_at.desc(), RenderJob.sequence.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    def is_cancel_requested(self, job_id: str) -> bool:
        with self.db.session() as session:
            result = session.execute(
                select(RenderJob.cancel_requested).where(RenderJob.id == job_id)
            ).scalar_one_or_none()
            return bool(result)

    def stats(self) -> QueueStats:
        with self.db.session() as session:
            rows = session.execute(
                select(RenderJob.status, func.count(RenderJob.id)).group_by(RenderJob.status)
            ).all()
        counts = {status: count for status, count in rows}
        return QueueStats(
            waiting=counts.get(QUEUED, 0),
            active=counts.get(PROCESSING, 0),
            completed=counts.get(COMPLETED, 0),
            failed=counts.get(FAILED, 0),
            cancelled=counts.get(CANCELLED, 0),
        )

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _ordered_candidates(self) -> list[str]:
        with self.db.session() as session:
            rows = session.execute(
                select(RenderJob.id, RenderJob.priority, RenderJob.sequence)
                .where(RenderJob.status == QUEUED)
                .order_by(RenderJob.sequence)
            ).all()
        now_ns = time.time_ns()
        ranked = sorted(
            rows,
            key=lambda row: (-effective_priority(row.priority, row.sequence, now_ns, self.aging_s), row.sequence),
        )
        return [row.id for row in ranked]

    def claim_next(self, worker_id: str) -> RenderJob | None:
        """Atomically move the best queued job to processing for ``worker_id``.

        Returns None when nothing is queued. A candidate taken by another
        worker between the read and the update is skipped.
        """
        for job_id in self._ordered_candidates():
            now = utcnow()
            with self.db.session() as session:
                result = session.execute(
                    update(RenderJob)
                    .where(RenderJob.id == job_id, RenderJob.status == QUEUED)
                    .values(
                        status=PROCESSING,
                        claimed_by=worker_id,
                        started_at=now,
                        heartbeat_at=now,
                        current_stage="claimed",
                        updated_at=now,
                    )
                )
            if result.rowcount == 1:
                logger.info(f"[QUEUE] Job {job_id} claimed by {worker_id}")
                return self.get(job_id)
        return None

    # ------------------------------------------------------------------
    # Transitions (all conditional, all single-statement)
    # ------------------------------------------------------------------

    def _transition(self, job_id: str, allowed: tuple[str, ...], **values: Any) -> bool:
        values.setdefault("updated_at", utcnow())
        with self.db.session() as session:
            result = session.execute(
                update(RenderJob)
                .where(RenderJob.id == job_id, RenderJob.status.in_(allowed))
                .values(**values)
            )
        return result.rowcount == 1

    def update_progress(self, job_id: str, progress: int, stage: str | None = None) -> bool:
        """Raise progress on a processing job. Never moves progress backwards."""
        progress = max(0, min(100, int(progress)))
        now = utcnow()
        with self.db.session() as session:
            result = session.execute(
                update(RenderJob)
                .where(
                    RenderJob.id == job_id,
                    RenderJob.status == PROCESSING,
                    RenderJob.progress <= progress,
                )
                .values(progress=progress, current_stage=stage, heartbeat_at=now, updated_at=now)
            )
        return result.rowcount == 1

    def record_attempt(self, job_id: str, retry_count: int) -> bool:
        return self._transition(job_id, (PROCESSING,), retry_count=retry_count)

    def mark_completed(
        self,
        job_id: str,
        output_key: str,
        output_url: str,
        output_size: int | None = None,
    ) -> bool:
        ok = self._transition(
            job_id,
            (PROCESSING,),
            status=COMPLETED,
            progress=100,
            current_stage="complete",
            output_key=output_key,
            output_url=output_url,
            output_size=output_size,
            completed_at=utcnow(),
        )
        if ok:
            logger.info(f"[QUEUE] Job {job_id} completed: {output_url}")
        return ok

    def mark_failed(self, job_id: str, error_message: str, error_code: str | None = None) -> bool:
        ok = self._transition(
            job_id,
            ACTIVE_STATUSES,
            status=FAILED,
            current_stage="failed",
            error_message=error_message,
            error_code=error_code,
            completed_at=utcnow(),
        )
        if ok:
            logger.error(f"[QUEUE] Job {job_id} failed: {error_message}")
        return ok

    def mark_cancelled(self, job_id: str) -> bool:
        ok = self._transition(
            job_id,
            ACTIVE_STATUSES,
            status=CANCELLED,
            current_stage="cancelled",
            completed_at=utcnow(),
        )
        if ok:
            logger.info(f"[QUEUE] Job {job_id} cancelled")
        return ok

    def cancel_queued(self, job_id: str) -> bool:
        """Cancel a job that no worker has claimed yet."""
        ok = self._transition(
            job_id,
            (QUEUED,),
            status=CANCELLED,
            current_stage="cancelled",
            cancel_requested=True,
            completed_at=utcnow(),
        )
        if ok:
            logger.info(f"[QUEUE] Job {job_id} cancelled before processing")
        return ok

    def request_cancel(self, job_id: str) -> bool:
        """Flag a processing job; its worker finishes the transition."""
        ok = self._transition(job_id, (PROCESSING,), cancel_requested=True)
        if ok:
            logger.info(f"[QUEUE] Cancel requested for processing job {job_id}")
        return ok

    def heartbeat(self, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        with self.db.session() as session:
            result = session.execute(
                update(RenderJob)
                .where(RenderJob.id.in_(job_ids), RenderJob.status == PROCESSING)
                .values(heartbeat_at=utcnow())
            )
        return result.rowcount

    def cancel_requested_among(self, job_ids: list[str]) -> list[str]:
        """Which of ``job_ids`` have a pending cancel request."""
        if not job_ids:
            return []
        with self.db.session() as session:
            rows = session.execute(
                select(RenderJob.id).where(
                    RenderJob.id.in_(job_ids),
                    RenderJob.cancel_requested.is_(True),
                )
            ).all()
        return [row.id for row in rows]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_orphans(self, live_worker_ids: set[str], stale_after_s: float = 0.0) -> RecoveryResult:
        """Requeue processing jobs abandoned by a worker that is gone.

        A job is an orphan when its claiming worker is not in
        ``live_worker_ids`` and its last heartbeat is older than
        ``stale_after_s``. Orphans with a pending cancel request are
        cancelled instead of requeued.
        """
        cutoff = utcnow() - timedelta(seconds=stale_after_s)
        with self.db.session() as session:
            rows = session.execute(
                select(
                    RenderJob.id,
                    RenderJob.claimed_by,
                    RenderJob.heartbeat_at,
                    RenderJob.cancel_requested,
                ).where(RenderJob.status == PROCESSING)
            ).all()

        requeued: list[str] = []
        cancelled: list[str] = []
        for row in rows:
            if row.claimed_by in live_worker_ids:
                continue
            heartbeat_at = as_utc(row.heartbeat_at)
            if stale_after_s > 0 and heartbeat_at is not None and heartbeat_at > cutoff:
                continue

            if row.cancel_requested:
                if self.mark_cancelled(row.id):
                    cancelled.append(row.id)
                continue

            if self._requeue(row.id, row.claimed_by, match_claim=True):
                requeued.append(row.id)
                logger.warning(f"[QUEUE] Requeued orphaned job {row.id} (was claimed by {row.claimed_by})")

        if requeued:
            self.wakeup.set()
        return RecoveryResult(requeued=requeued, cancelled=cancelled)

    def release(self, job_id: str) -> bool:
        """Hand a processing job back to the queue, keeping its progress.

        Used when a worker stops without finishing a job nobody cancelled.
        """
        if not self._requeue(job_id):
            return False
        logger.info(f"[QUEUE] Job {job_id} released back to the queue")
        self.wakeup.set()
        return True

    def _requeue(self, job_id: str, claimed_by: str | None = None, match_claim: bool = False) -> bool:
        conditions = [RenderJob.id == job_id, RenderJob.status == PROCESSING]
        if match_claim:
            conditions.append(
                RenderJob.claimed_by.is_(None) if claimed_by is None else RenderJob.claimed_by == claimed_by
            )
        with self.db.session() as session:
            result = session.execute(
                update(RenderJob)
                .where(*conditions)
                .values(
                    status=QUEUED,
                    claimed_by=None,
                    heartbeat_at=None,
                    started_at=None,
                    current_stage=None,
                    updated_at=utcnow(),
                )
            )
        return result.rowcount == 1
