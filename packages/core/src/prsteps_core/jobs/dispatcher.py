"""Job dispatcher: enqueue with idempotency, run handlers, chain, retry.

The pipeline topology is plain data (PIPELINE). A handler returns the
NextJobs it wants enqueued; the dispatcher checks each one against the
topology before chaining, so a stage can never start work the graph does
not allow.

Status bookkeeping lives here rather than in the stages, so a session's or
step's status always matches the outcome of the job that touched it:

    ingest_pr           running → session "ingesting"
    generate_steps      running → session "clustering"; success → "building_context"
    build_context_pack  running → step "context_building"; success → "ready"
    session-scoped job  final failure → session "error" with the reason code
    build_context_pack  final failure → step "error"

After every step transition the session status is recomputed as the worst
step status. Guidance jobs never change a session's status.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from prsteps_core.errors import PipelineError, QueueUnavailable
from prsteps_store.base import BaseJobQueue, BaseStore
from prsteps_store.models import JOB_TYPES, Job, utcnow

logger = logging.getLogger(__name__)

PIPELINE: dict[str, tuple[str, ...]] = {
    "ingest_pr": ("generate_steps", "gather_repo_context"),
    "generate_steps": ("build_context_pack",),
    "build_context_pack": ("generate_ai_guidance",),
    # Step guidance chains to the session wrap-up once every step is done.
    "generate_ai_guidance": ("generate_ai_guidance",),
    "gather_repo_context": (),
}

# Jobs whose failure means the whole session failed.
SESSION_SCOPED = ("ingest_pr", "generate_steps")

# Duplicate suppression. A plain enqueue is dropped when the same unit of
# work is waiting, running or already done. A forced enqueue (regeneration,
# stage chaining) only collapses into a copy that has not started yet.
SUPPRESS_DEFAULT = ("queued", "active", "completed")
SUPPRESS_FORCED = ("queued",)


@dataclass(frozen=True)
class NextJob:
    type: str
    payload: dict = field(default_factory=dict)
    force: bool = True


class Stages(Protocol):
    def handler_for(self, job_type: str) -> Callable[[Job], list[NextJob] | None]: ...

    def on_exhausted(self, job: Job, error: BaseException) -> list[NextJob] | None: ...


def idempotency_key(job_type: str, payload: dict) -> str:
    """(sessionId, type, stepId) for pipeline work; (repo, commit) for indexing."""
    if job_type == "gather_repo_context":
        return f"{job_type}:{payload.get('repoId', '')}@{payload.get('commitSha', '')}"
    return f"{payload.get('sessionId', '')}:{job_type}:{payload.get('stepId', '')}"


def backoff_delay(attempts: int, base: float, ceiling: float) -> float:
    """Exponential backoff after the given number of attempts: base, 2*base, 4*base ... capped."""
    return min(base * 2 ** max(attempts - 1, 0), ceiling)


def _reason(error: BaseException) -> str:
    return error.reason if isinstance(error, PipelineError) else type(error).__name__


class Dispatcher:
    def __init__(
        self,
        store: BaseStore,
        queue: BaseJobQueue,
        stages: Stages,
        config: dict,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.queue = queue
        self.stages = stages
        self.max_attempts = config.get("max_attempts", 5)
        self.backoff_seconds = config.get("backoff_seconds", 1.0)
        self.max_backoff_seconds = config.get("max_backoff_seconds", 60.0)
        self.clock = clock
        self.sleep = sleep
        # Serialises read-modify-write of session and step statuses across worker threads.
        self._status_lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Enqueue                                                              #
    # ------------------------------------------------------------------ #

    def enqueue(self, job_type: str, payload: dict, force: bool = False) -> str:
        """Add a job and return its id, or the id of the duplicate that suppressed it."""
        if job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {job_type!r}")
        job = Job(type=job_type, payload=dict(payload), idempotency_key=idempotency_key(job_type, payload))
        job.available_at = self.clock()
        suppress = SUPPRESS_FORCED if force else SUPPRESS_DEFAULT
        if job_type == "gather_repo_context" and not payload.get("commitSha"):
            # Resolved to the current head only when it runs, so a finished
            # build says nothing about a later head.
            suppress = SUPPRESS_FORCED
        try:
            stored, created = self.queue.add(job, suppress_statuses=suppress)
        except Exception as e:
            raise QueueUnavailable(f"Could not enqueue {job_type}: {e}") from e
        if created:
            logger.debug("Enqueued %s %s (%s).", job_type, stored.id, stored.idempotency_key)
        else:
            logger.info("Suppressed duplicate %s: %s is already %s.", job_type, stored.id, stored.status)
        return stored.id

    # ------------------------------------------------------------------ #
    # Running                                                              #
    # ------------------------------------------------------------------ #

    def run_once(self) -> bool:
        """Claim and run one runnable job. Returns False when none was runnable."""
        job = self.queue.claim(self.clock())
        if job is None:
            return False
        self.run_job(job)
        return True

    def run_until_idle(self, timeout: float | None = None) -> None:
        """Run jobs until the queue holds nothing runnable now or later.

        Waits out backoff delays. With a timeout, stops once that many
        seconds have passed even if delayed jobs remain.
        """
        deadline = None if timeout is None else self.clock() + timeout
        while True:
            if self.run_once():
                continue
            next_at = self.queue.next_available_at()
            if next_at is None:
                return
            now = self.clock()
            if deadline is not None and now >= deadline:
                logger.info("Stopping with delayed jobs still queued.")
                return
            wait = next_at - now
            if deadline is not None:
                wait = min(wait, deadline - now)
            if wait > 0:
                self.sleep(wait)

    def run_job(self, job: Job) -> None:
        logger.info("Running %s %s (attempt %d/%d).", job.type, job.id, job.attempts, self.max_attempts)
        handler = self.stages.handler_for(job.type)
        self._mark_running(job)
        try:
            next_jobs = handler(job) or []
        except Exception as e:
            self._handle_failure(job, e)
            return

        # Chain before completing: a job only becomes terminal once its
        # follow-on work is safely queued.
        if self.queue.has_newer(job):
            # A regeneration of the same unit is waiting; it will chain itself.
            logger.info("Not chaining from %s %s: superseded by a newer job.", job.type, job.id)
        else:
            try:
                self._chain(job, next_jobs)
            except QueueUnavailable as e:
                self._handle_failure(job, e)
                return
            except ValueError as e:
                self.queue.fail(job.id, f"{type(e).__name__}: {e}")
                raise

        self.queue.complete(job.id)
        self._mark_succeeded(job)
        logger.info("Completed %s %s.", job.type, job.id)

    def _chain(self, job: Job, next_jobs: list[NextJob]) -> None:
        allowed = PIPELINE.get(job.type, ())
        for nxt in next_jobs:
            if nxt.type not in allowed:
                raise ValueError(f"{job.type} may not chain to {nxt.type}; allowed: {allowed}")
        for nxt in next_jobs:
            self.enqueue(nxt.type, nxt.payload, force=nxt.force)

    def _handle_failure(self, job: Job, error: Exception) -> None:
        retryable = getattr(error, "retryable", True)
        message = f"{_reason(error)}: {error}"
        if retryable and job.attempts < self.max_attempts:
            delay = backoff_delay(job.attempts, self.backoff_seconds, self.max_backoff_seconds)
            self.queue.reschedule(job.id, message, self.clock() + delay)
            logger.warning(
                "%s %s failed (attempt %d/%d): %s. Retrying in %.1fs.",
                job.type,
                job.id,
                job.attempts,
                self.max_attempts,
                message,
                delay,
            )
            return

        self.queue.fail(job.id, message)
        if retryable:
            logger.error("%s %s failed after %d attempts: %s", job.type, job.id, job.attempts, message)
        else:
            logger.error("%s %s failed: %s", job.type, job.id, message)
        self._mark_failed(job, error)
        self._chain(job, self.stages.on_exhausted(job, error) or [])

    # ------------------------------------------------------------------ #
    # Status transitions                                                   #
    # ------------------------------------------------------------------ #

    def _mark_running(self, job: Job) -> None:
        if job.type == "ingest_pr":
            self._set_session_status(job.payload.get("sessionId"), "ingesting")
        elif job.type == "generate_steps":
            self._set_session_status(job.payload.get("sessionId"), "clustering")
        elif job.type == "build_context_pack":
            self._set_step_status(job.payload.get("stepId"), "context_building")

    def _mark_succeeded(self, job: Job) -> None:
        if job.type == "generate_steps":
            session_id = job.payload.get("sessionId")
            self._set_session_status(session_id, "building_context")
            self.refresh_session_status(session_id)
        elif job.type == "build_context_pack":
            self._set_step_status(job.payload.get("stepId"), "ready")

    def _mark_failed(self, job: Job, error: BaseException) -> None:
        if job.type in SESSION_SCOPED:
            self._set_session_status(job.payload.get("sessionId"), "error", _reason(error))
        elif job.type == "build_context_pack":
            self._set_step_status(job.payload.get("stepId"), "error", _reason(error))

    def _set_session_status(self, session_id: str | None, status: str, reason: str | None = None) -> None:
        with self._status_lock:
            session = self.store.get_session(session_id) if session_id else None
            if session is None:
                return
            session.status = status
            session.error_reason = reason
            session.updated_at = utcnow()
            self.store.save_session(session)
        logger.debug("Session %s -> %s%s", session_id, status, f" ({reason})" if reason else "")

    def _set_step_status(self, step_id: str | None, status: str, reason: str | None = None) -> None:
        with self._status_lock:
            step = self.store.get_step(step_id) if step_id else None
            if step is None:
                return
            step.status = status
            step.error_reason = reason
            step.updated_at = utcnow()
            self.store.save_steps([step])
            self.refresh_session_status(step.session_id)

    def refresh_session_status(self, session_id: str | None) -> None:
        """Recompute the session status as the worst status among its steps."""
        with self._status_lock:
            session = self.store.get_session(session_id) if session_id else None
            if session is None or session.status in ("pending", "ingesting", "clustering"):
                return
            steps = self.store.list_steps(session_id)
            if not steps:
                status, reason = ("error", session.error_reason) if session.status == "error" else ("ready", None)
            elif any(s.status == "error" for s in steps):
                failed = next(s for s in steps if s.status == "error")
                status, reason = "error", failed.error_reason
            elif all(s.status == "ready" for s in steps):
                status, reason = "ready", None
            else:
                status, reason = "building_context", None
            if (status, reason) != (session.status, session.error_reason):
                self._set_session_status(session_id, status, reason)
