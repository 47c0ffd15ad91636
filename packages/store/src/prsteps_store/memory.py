"""In-process store and queue: the default for tests and one-shot CLI runs.

Nothing survives the process. Records are copied on the way in and out so a
caller mutating a returned object never changes stored state behind the
pipeline's back.
"""

from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING

from prsteps_store.base import BaseJobQueue, BaseStore
from prsteps_store.models import utcnow

if TYPE_CHECKING:
    from prsteps_store.models import (
        CodebaseSummary,
        ContextPack,
        Guidance,
        Job,
        PullRequest,
        PullRequestSnapshot,
        RepoContextIndex,
        ReviewSession,
        ReviewStep,
    )


class MemoryStore(BaseStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._prs: dict[str, PullRequest] = {}
        self._sessions: dict[str, ReviewSession] = {}
        self._snapshots: dict[str, PullRequestSnapshot] = {}
        self._steps: dict[str, ReviewStep] = {}
        self._packs: dict[str, ContextPack] = {}
        self._guidance: dict[str, Guidance] = {}
        self._indexes: dict[tuple[str, str], RepoContextIndex] = {}
        self._summaries: dict[tuple[str, str], CodebaseSummary] = {}

    def save_pull_request(self, pr: PullRequest) -> None:
        with self._lock:
            self._prs[pr.id] = copy.deepcopy(pr)

    def get_pull_request(self, pr_id: str) -> PullRequest | None:
        with self._lock:
            return copy.deepcopy(self._prs.get(pr_id))

    def find_pull_request(self, repo_id: str, number: int) -> PullRequest | None:
        with self._lock:
            for pr in self._prs.values():
                if pr.repo_id == repo_id and pr.number == number:
                    return copy.deepcopy(pr)
        return None

    def save_session(self, session: ReviewSession) -> None:
        with self._lock:
            self._sessions[session.id] = copy.deepcopy(session)

    def get_session(self, session_id: str) -> ReviewSession | None:
        with self._lock:
            return copy.deepcopy(self._sessions.get(session_id))

    def list_sessions(self, pull_request_id: str | None = None) -> list[ReviewSession]:
        with self._lock:
            sessions = [
                copy.deepcopy(s)
                for s in self._sessions.values()
                if pull_request_id is None or s.pull_request_id == pull_request_id
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    def save_snapshot(self, snapshot: PullRequestSnapshot) -> None:
        with self._lock:
            self._snapshots.setdefault(snapshot.id, copy.deepcopy(snapshot))

    def get_snapshot(self, snapshot_id: str) -> PullRequestSnapshot | None:
        with self._lock:
            return copy.deepcopy(self._snapshots.get(snapshot_id))

    def save_steps(self, steps: list[ReviewStep]) -> None:
        with self._lock:
            for step in steps:
                self._steps[step.id] = copy.deepcopy(step)

    def get_step(self, step_id: str) -> ReviewStep | None:
        with self._lock:
            return copy.deepcopy(self._steps.get(step_id))

    def list_steps(self, session_id: str) -> list[ReviewStep]:
        with self._lock:
            session = self._sessions.get(session_id)
            snapshot_id = session.snapshot_id if session else None
            steps = [
                copy.deepcopy(s)
                for s in self._steps.values()
                if s.session_id == session_id and s.snapshot_id == snapshot_id
            ]
        return sorted(steps, key=lambda s: s.order_index)

    def save_context_pack(self, pack: ContextPack) -> None:
        with self._lock:
            self._packs[pack.step_id] = copy.deepcopy(pack)

    def get_context_pack(self, step_id: str) -> ContextPack | None:
        with self._lock:
            return copy.deepcopy(self._packs.get(step_id))

    def save_guidance(self, guidance: Guidance) -> None:
        with self._lock:
            self._guidance[guidance.target_id] = copy.deepcopy(guidance)

    def get_guidance(self, target_id: str) -> Guidance | None:
        with self._lock:
            return copy.deepcopy(self._guidance.get(target_id))

    def get_repo_index(self, repo_id: str, commit_sha: str) -> RepoContextIndex | None:
        with self._lock:
            return self._indexes.get((repo_id, commit_sha))

    def save_repo_index(self, index: RepoContextIndex) -> RepoContextIndex:
        # Indexes are immutable and shared read-only, so no copy is needed.
        with self._lock:
            return self._indexes.setdefault(index.key, index)

    def save_codebase_summary(self, summary: CodebaseSummary) -> None:
        with self._lock:
            self._summaries[(summary.repo_id, summary.commit_sha)] = copy.deepcopy(summary)

    def get_codebase_summary(self, repo_id: str, commit_sha: str) -> CodebaseSummary | None:
        with self._lock:
            return copy.deepcopy(self._summaries.get((repo_id, commit_sha)))


class MemoryJobQueue(BaseJobQueue):
    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}  # insertion order == creation order

    def add(self, job: Job, suppress_statuses: tuple[str, ...] = ()) -> tuple[Job, bool]:
        with self._lock:
            if suppress_statuses:
                for existing in reversed(list(self._jobs.values())):
                    if existing.idempotency_key == job.idempotency_key and existing.status in suppress_statuses:
                        return copy.deepcopy(existing), False
            self._jobs[job.id] = copy.deepcopy(job)
            return copy.deepcopy(job), True

    def claim(self, now: float) -> Job | None:
        with self._lock:
            for job in self._jobs.values():
                if job.status == "queued" and job.available_at <= now:
                    job.status = "active"
                    job.attempts += 1
                    _touch(job)
                    return copy.deepcopy(job)
        return None

    def complete(self, job_id: str) -> None:
        self._set(job_id, status="completed")

    def reschedule(self, job_id: str, error: str, available_at: float) -> None:
        self._set(job_id, status="queued", last_error=error, available_at=available_at)

    def fail(self, job_id: str, error: str) -> None:
        self._set(job_id, status="failed", last_error=error)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return copy.deepcopy(self._jobs.get(job_id))

    def list_jobs(self, status: str | None = None) -> list[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._jobs.values() if status is None or j.status == status]

    def has_newer(self, job: Job) -> bool:
        with self._lock:
            seen = False
            for other in self._jobs.values():
                if other.id == job.id:
                    seen = True
                    continue
                if seen and other.idempotency_key == job.idempotency_key and other.status in ("queued", "active"):
                    return True
        return False

    def requeue_active(self) -> int:
        with self._lock:
            stale = [j for j in self._jobs.values() if j.status == "active"]
            for job in stale:
                job.status = "queued"
                _touch(job)
        return len(stale)

    def next_available_at(self) -> float | None:
        with self._lock:
            times = [j.available_at for j in self._jobs.values() if j.status == "queued"]
        return min(times) if times else None

    def _set(self, job_id: str, **changes) -> None:
        with self._lock:
            job = self._jobs[job_id]
            for name, value in changes.items():
                setattr(job, name, value)
            _touch(job)


def _touch(job: Job) -> None:
    job.updated_at = utcnow()
