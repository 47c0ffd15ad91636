"""Stage handlers: the work behind each job type.

Handlers read and write records but never touch session or step status
(see dispatcher.py). Each returns the NextJobs to chain; the dispatcher
validates them against PIPELINE and enqueues them.
"""

from __future__ import annotations

import logging
from typing import Callable

from prsteps_core.clustering import cluster_hunks, to_review_steps
from prsteps_core.codebase import read_key_files
from prsteps_core.config import load_guidelines
from prsteps_core.context_pack import build_context_pack
from prsteps_core.errors import (
    EmptyDiffError,
    IndexUnavailableError,
    RepoTooLargeError,
    SessionNotFound,
    StepNotFound,
    UpstreamFetchError,
)
from prsteps_core.jobs.dispatcher import NextJob
from prsteps_core.providers.base import BaseGuide, fallback_guidance
from prsteps_core.repo_index import RepoIndexCache
from prsteps_core.utils.code import is_excluded
from prsteps_core.utils.diff import build_raw_diff, changed_lines, hunks_from_files, split_raw_diff
from prsteps_core.utils.symbols import IdentifierExtractor
from prsteps_store.base import BaseStore
from prsteps_store.models import CodebaseSummary, Job, PullRequestSnapshot, ReviewSession, ReviewStep, utcnow

logger = logging.getLogger(__name__)


class PipelineStages:
    def __init__(
        self,
        store: BaseStore,
        host,
        index_cache: RepoIndexCache,
        config: dict,
        extractor: IdentifierExtractor,
        guide_factory: Callable[[], BaseGuide],
    ):
        self.store = store
        self.host = host
        self.index_cache = index_cache
        self.config = config
        self.extractor = extractor
        self._guide_factory = guide_factory
        self._guide: BaseGuide | None = None
        self.guidelines = load_guidelines(config)
        self._handlers = {
            "ingest_pr": self.ingest_pr,
            "generate_steps": self.generate_steps,
            "build_context_pack": self.build_context_pack,
            "generate_ai_guidance": self.generate_ai_guidance,
            "gather_repo_context": self.gather_repo_context,
        }

    @property
    def guide(self) -> BaseGuide:
        # Created on first use so workers that never reach guidance need no API key.
        if self._guide is None:
            self._guide = self._guide_factory()
        return self._guide

    def handler_for(self, job_type: str) -> Callable[[Job], list[NextJob]]:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise ValueError(f"No handler for job type {job_type!r}")

    # ------------------------------------------------------------------ #
    # Lookups                                                              #
    # ------------------------------------------------------------------ #

    def _session(self, session_id: str | None) -> ReviewSession:
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise SessionNotFound(f"Session {session_id!r} not found")
        return session

    def _step(self, step_id: str | None) -> ReviewStep:
        step = self.store.get_step(step_id) if step_id else None
        if step is None:
            raise StepNotFound(f"Step {step_id!r} not found")
        return step

    # ------------------------------------------------------------------ #
    # ingest_pr                                                            #
    # ------------------------------------------------------------------ #

    def ingest_pr(self, job: Job) -> list[NextJob]:
        session = self._session(job.payload.get("sessionId"))
        pr = self.store.get_pull_request(session.pull_request_id)
        if pr is None:
            raise SessionNotFound(f"Session {session.id} has no pull request record")

        meta = self.host.fetch_pull(pr.repo_id, pr.number)
        for name, value in meta.items():
            setattr(pr, name, value)
        self.store.save_pull_request(pr)

        exclude = self.config.get("exclude", [])
        files = []
        for f in self.host.fetch_files(pr.repo_id, pr.number):
            if is_excluded(f["filename"], exclude):
                logger.info("  Skipping excluded file: %s", f["filename"])
                continue
            files.append(f)

        patches = self._missing_patches(pr, files)
        kept = []
        for f in files:
            if not f.get("patch"):
                patch = patches.get(f["filename"])
                if not patch:
                    logger.info("  Skipping file without a textual diff: %s", f["filename"])
                    continue
                f = {**f, "patch": patch}
            kept.append(f)

        hunks = hunks_from_files(kept)
        if changed_lines(hunks) == 0:
            raise EmptyDiffError(f"{pr.repo_id}#{pr.number} has no changed lines: nothing to review")

        snapshot = PullRequestSnapshot(
            repo_id=pr.repo_id,
            pr_number=pr.number,
            base_sha=pr.base_sha,
            head_sha=pr.head_sha,
            raw_diff=build_raw_diff(kept),
            changed_files=kept,
        )
        self.store.save_snapshot(snapshot)

        session = self._session(session.id)
        session.snapshot_id = snapshot.id
        session.is_stale = False
        session.updated_at = utcnow()
        self.store.save_session(session)
        self._mark_stale_siblings(session, pr.head_sha)

        logger.info(
            "Ingested %s#%d at %s: %d file(s), %d hunk(s).",
            pr.repo_id,
            pr.number,
            pr.head_sha[:7],
            len(kept),
            len(hunks),
        )
        return [
            NextJob(
                "generate_steps",
                {"sessionId": session.id, "snapshotId": snapshot.id, "diff": snapshot.raw_diff, "files": kept},
            ),
            # Warm the index while clustering runs; context builds join it.
            NextJob("gather_repo_context", {"repoId": pr.repo_id, "commitSha": pr.head_sha}, force=False),
        ]

    def _missing_patches(self, pr, files: list[dict]) -> dict[str, str]:
        """Patches for files listed without one, taken from the full diff."""
        if all(f.get("patch") for f in files):
            return {}
        try:
            raw = self.host.fetch_diff(pr.repo_id, pr.number)
        except UpstreamFetchError as e:
            if e.retryable:
                raise
            logger.warning(
                "Full diff of %s#%d unavailable (%s); using per-file patches only.", pr.repo_id, pr.number, e
            )
            return {}
        return split_raw_diff(raw)

    def _mark_stale_siblings(self, session: ReviewSession, head_sha: str) -> None:
        for other in self.store.list_sessions(session.pull_request_id):
            if other.id == session.id or other.is_stale or not other.snapshot_id:
                continue
            snapshot = self.store.get_snapshot(other.snapshot_id)
            if snapshot is not None and snapshot.head_sha != head_sha:
                other.is_stale = True
                other.updated_at = utcnow()
                self.store.save_session(other)
                logger.info("Session %s is stale: the pull request moved to %s.", other.id, head_sha[:7])

    # ------------------------------------------------------------------ #
    # generate_steps                                                       #
    # ------------------------------------------------------------------ #

    def generate_steps(self, job: Job) -> list[NextJob]:
        session = self._session(job.payload.get("sessionId"))
        snapshot_id = job.payload.get("snapshotId") or session.snapshot_id
        files = job.payload.get("files")
        if files is None:
            snapshot = self.store.get_snapshot(snapshot_id) if snapshot_id else None
            if snapshot is None:
                raise SessionNotFound(f"Session {session.id} has no snapshot to cluster")
            files = snapshot.changed_files

        plans = cluster_hunks(hunks_from_files(files), self.config, self.extractor)
        steps = to_review_steps(plans, session.id, snapshot_id)
        self.store.save_steps(steps)
        logger.info("Session %s: %d step(s).", session.id, len(steps))
        return [NextJob("build_context_pack", {"sessionId": session.id, "stepId": step.id}) for step in steps]

    # ------------------------------------------------------------------ #
    # build_context_pack / gather_repo_context                             #
    # ------------------------------------------------------------------ #

    def build_context_pack(self, job: Job) -> list[NextJob]:
        step = self._step(job.payload.get("stepId"))
        snapshot = self.store.get_snapshot(step.snapshot_id) if step.snapshot_id else None
        if snapshot is None:
            raise StepNotFound(f"Step {step.id} has no snapshot")

        try:
            index = self.index_cache.get_or_build(snapshot.repo_id, snapshot.head_sha)
        except (UpstreamFetchError, RepoTooLargeError) as e:
            raise IndexUnavailableError(
                f"Index for {snapshot.repo_id}@{snapshot.head_sha[:7]} unavailable: {e}",
                retryable=e.retryable,
            ) from e

        pack = build_context_pack(step, index, self.config, self.extractor)
        self.store.save_context_pack(pack)
        logger.info("Step %s: context pack with %d symbol(s).", step.id, len(pack.symbols))
        return [NextJob("generate_ai_guidance", {"sessionId": step.session_id, "stepId": step.id})]

    def gather_repo_context(self, job: Job) -> list[NextJob]:
        repo_id = job.payload["repoId"]
        commit_sha = job.payload.get("commitSha") or self.host.resolve_commit(repo_id)
        index = self.index_cache.get_or_build(repo_id, commit_sha)
        if not self.config.get("codebase_summary", True):
            return []

        existing = self.store.get_codebase_summary(repo_id, commit_sha)
        if existing is not None and existing.status == "ready":
            logger.info("Codebase summary for %s@%s already exists.", repo_id, commit_sha[:7])
            return []
        key_files = read_key_files(self.host, repo_id, commit_sha, index.key_files)
        summary = self.guide.codebase_summary(index, key_files)
        self.store.save_codebase_summary(summary)
        logger.info(
            "Codebase summary for %s@%s from %d key file(s): %s.",
            repo_id,
            commit_sha[:7],
            len(key_files),
            summary.status,
        )
        return []

    # ------------------------------------------------------------------ #
    # generate_ai_guidance                                                 #
    # ------------------------------------------------------------------ #

    def generate_ai_guidance(self, job: Job) -> list[NextJob]:
        step_id = job.payload.get("stepId")
        if step_id:
            step = self._step(step_id)
            pack = self.store.get_context_pack(step.id)
            codebase = self._codebase(step.snapshot_id)
            guidance = self.guide.step_guidance(step, pack, self.guidelines, codebase)
            self.store.save_guidance(guidance)
            if guidance.status != "ready":
                logger.warning("Step %s: AI guidance unavailable; stored fallback.", step.id)
            return self._wrap_up_when_done(step.session_id)

        session = self._session(job.payload.get("sessionId"))
        pr = self.store.get_pull_request(session.pull_request_id)
        steps = self.store.list_steps(session.id)
        by_step = {}
        for step in steps:
            g = self.store.get_guidance(step.id)
            if g is not None:
                by_step[step.id] = g
        title = pr.title if pr else ""
        codebase = self._codebase(session.snapshot_id)
        guidance = self.guide.session_guidance(session.id, title, steps, by_step, self.guidelines, codebase)
        self.store.save_guidance(guidance)
        logger.info("Session %s: wrap-up guidance %s.", session.id, guidance.status)
        return []

    def _codebase(self, snapshot_id: str | None) -> CodebaseSummary | None:
        snapshot = self.store.get_snapshot(snapshot_id) if snapshot_id else None
        if snapshot is None:
            return None
        return self.store.get_codebase_summary(snapshot.repo_id, snapshot.head_sha)

    def _wrap_up_when_done(self, session_id: str) -> list[NextJob]:
        """Chain the session wrap-up once every step has current guidance or has failed.

        Guidance older than its step (the step was re-clustered or its context
        rebuilt since) does not count.
        """
        steps = self.store.list_steps(session_id)
        if not steps:
            return []
        for step in steps:
            if step.status == "error":
                continue
            guidance = self.store.get_guidance(step.id)
            if guidance is None or guidance.generated_at < step.updated_at:
                return []
        return [NextJob("generate_ai_guidance", {"sessionId": session_id})]

    # ------------------------------------------------------------------ #
    # Final failure hook                                                   #
    # ------------------------------------------------------------------ #

    def on_exhausted(self, job: Job, error: BaseException) -> list[NextJob]:
        """Degrade instead of failing: called once a job will not be retried."""
        if job.type == "generate_ai_guidance":
            step_id = job.payload.get("stepId")
            session_id = job.payload.get("sessionId")
            if step_id:
                self.store.save_guidance(fallback_guidance(step_id, "step"))
                step = self.store.get_step(step_id)
                return self._wrap_up_when_done(step.session_id) if step else []
            if session_id:
                self.store.save_guidance(fallback_guidance(session_id, "session"))
            return []
        if job.type == "build_context_pack":
            step = self.store.get_step(job.payload.get("stepId"))
            return self._wrap_up_when_done(step.session_id) if step else []
        return []
