"""Abstract persistence and job-queue interfaces.

The pipeline depends on BaseStore and BaseJobQueue, never on a concrete
backend, so the in-memory and SQLite implementations are swappable without
touching pipeline code. Both must give read-your-writes consistency within
a single process.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

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


class BaseStore(ABC):
    """Records written and read by the pipeline stages."""

    @abstractmethod
    def save_pull_request(self, pr: PullRequest) -> None:
        """Insert or replace a pull request record."""

    @abstractmethod
    def get_pull_request(self, pr_id: str) -> PullRequest | None:
        """Return the pull request or None."""

    @abstractmethod
    def find_pull_request(self, repo_id: str, number: int) -> PullRequest | None:
        """Return the pull request recorded for (repo, number) or None."""

    @abstractmethod
    def save_session(self, session: ReviewSession) -> None:
        """Insert or replace a session record."""

    @abstractmethod
    def get_session(self, session_id: str) -> ReviewSession | None:
        """Return the session or None."""

    @abstractmethod
    def list_sessions(self, pull_request_id: str | None = None) -> list[ReviewSession]:
        """Return sessions ordered by creation time, optionally for one pull request."""

    @abstractmethod
    def save_snapshot(self, snapshot: PullRequestSnapshot) -> None:
        """Persist a snapshot. Snapshots are immutable once written."""

    @abstractmethod
    def get_snapshot(self, snapshot_id: str) -> PullRequestSnapshot | None:
        """Return the snapshot or None."""

    @abstractmethod
    def save_steps(self, steps: list[ReviewStep]) -> None:
        """Insert or replace steps by id."""

    @abstractmethod
    def get_step(self, step_id: str) -> ReviewStep | None:
        """Return the step or None."""

    @abstractmethod
    def list_steps(self, session_id: str) -> list[ReviewStep]:
        """Return the steps of the session's current snapshot, ordered by order_index.

        Returns an empty list when the session has no steps and never raises.
        """

    @abstractmethod
    def save_context_pack(self, pack: ContextPack) -> None:
        """Persist a pack, replacing any prior pack for the same step."""

    @abstractmethod
    def get_context_pack(self, step_id: str) -> ContextPack | None:
        """Return the current pack for a step or None."""

    @abstractmethod
    def save_guidance(self, guidance: Guidance) -> None:
        """Persist guidance, replacing any prior guidance for the same target."""

    @abstractmethod
    def get_guidance(self, target_id: str) -> Guidance | None:
        """Return the current guidance for a step or session id, or None."""

    @abstractmethod
    def get_repo_index(self, repo_id: str, commit_sha: str) -> RepoContextIndex | None:
        """Return the index for (repo, commit) or None."""

    @abstractmethod
    def save_repo_index(self, index: RepoContextIndex) -> RepoContextIndex:
        """Insert the index if absent and return the stored entry.

        An existing entry for the same (repo, commit) is never overwritten;
        the already-stored index is returned instead.
        """

    @abstractmethod
    def save_codebase_summary(self, summary: CodebaseSummary) -> None:
        """Persist a summary, replacing any prior summary for the same (repo, commit)."""

    @abstractmethod
    def get_codebase_summary(self, repo_id: str, commit_sha: str) -> CodebaseSummary | None:
        """Return the summary for (repo, commit) or None."""

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Optional; subclasses that need cleanup should override this.
        """


class BaseJobQueue(ABC):
    """Durable job queue with at-least-once delivery.

    All state changes are atomic with respect to concurrent workers: a job
    is handed out by claim() to exactly one caller at a time.
    """

    @abstractmethod
    def add(self, job: Job, suppress_statuses: tuple[str, ...] = ()) -> tuple[Job, bool]:
        """Add a job unless one with the same idempotency key is in suppress_statuses.

        Returns (job, created). When suppressed, the existing job is returned
        with created=False.
        """

    @abstractmethod
    def claim(self, now: float) -> Job | None:
        """Move the oldest runnable queued job to active and return it."""

    @abstractmethod
    def complete(self, job_id: str) -> None:
        """Mark an active job completed."""

    @abstractmethod
    def reschedule(self, job_id: str, error: str, available_at: float) -> None:
        """Return an active job to the queue for another attempt."""

    @abstractmethod
    def fail(self, job_id: str, error: str) -> None:
        """Mark a job permanently failed."""

    @abstractmethod
    def get(self, job_id: str) -> Job | None:
        """Return the job or None."""

    @abstractmethod
    def list_jobs(self, status: str | None = None) -> list[Job]:
        """Return jobs in creation order, optionally filtered by status."""

    @abstractmethod
    def has_newer(self, job: Job) -> bool:
        """True when a later job with the same idempotency key is queued or active."""

    @abstractmethod
    def requeue_active(self) -> int:
        """Return jobs left active by a crashed worker to the queue. Returns the count."""

    @abstractmethod
    def next_available_at(self) -> float | None:
        """Earliest available_at among queued jobs, or None when nothing is queued."""

    def counts(self) -> dict[str, int]:
        result = {}
        for job in self.list_jobs():
            result[job.status] = result.get(job.status, 0) + 1
        return result

    def close(self) -> None:
        """Release backend resources. Default is a no-op."""
