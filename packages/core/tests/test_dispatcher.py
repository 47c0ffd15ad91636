"""Tests for the job dispatcher: idempotency, chaining, retries and status bookkeeping."""

from unittest.mock import MagicMock

import pytest

from prsteps_core.errors import EmptyDiffError, QueueUnavailable, StepNotFound, UpstreamFetchError
from prsteps_core.jobs.dispatcher import PIPELINE, Dispatcher, NextJob, backoff_delay, idempotency_key
from prsteps_store.memory import MemoryJobQueue, MemoryStore
from prsteps_store.models import PullRequest, ReviewSession, ReviewStep

CONFIG = {"max_attempts": 3, "backoff_seconds": 1.0, "max_backoff_seconds": 60.0}


class _Clock:
    def __init__(self):
        self.now = 1000.0
        self.slept = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.slept.append(seconds)
        self.now += seconds


class _FlakyQueue(MemoryJobQueue):
    """Refuses the next `failures` adds, like a broker that drops out briefly."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def add(self, job, suppress_statuses=()):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("broker down")
        return super().add(job, suppress_statuses)


class _Stages:
    """Handlers keyed by job type; records what on_exhausted saw."""

    def __init__(self, **handlers):
        self.handlers = handlers
        self.calls = []
        self.exhausted = []

    def handler_for(self, job_type):
        handler = self.handlers.get(job_type, lambda job: [])

        def run(job):
            self.calls.append((job.type, dict(job.payload)))
            return handler(job)

        return run

    def on_exhausted(self, job, error):
        self.exhausted.append((job.type, error))
        return []


def _dispatcher(stages=None, store=None, queue=None):
    clock = _Clock()
    dispatcher = Dispatcher(
        store or MemoryStore(),
        queue or MemoryJobQueue(),
        stages or _Stages(),
        CONFIG,
        clock=clock,
        sleep=clock.sleep,
    )
    return dispatcher, clock


def _session_with_steps(store, n=2):
    pr = PullRequest(repo_id="owner/repo", number=1)
    store.save_pull_request(pr)
    session = ReviewSession(pull_request_id=pr.id, created_by_user_id="alice", snapshot_id="snap-1")
    store.save_session(session)
    steps = [
        ReviewStep(session_id=session.id, order_index=i, title=f"step {i}", id=f"step-{i}", snapshot_id="snap-1")
        for i in range(n)
    ]
    store.save_steps(steps)
    return session, steps


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_idempotency_key_for_pipeline_work(self):
        key = idempotency_key("build_context_pack", {"sessionId": "s1", "stepId": "st1"})
        assert key == "s1:build_context_pack:st1"
        assert idempotency_key("ingest_pr", {"sessionId": "s1"}) == "s1:ingest_pr:"

    def test_idempotency_key_for_indexing(self):
        key = idempotency_key("gather_repo_context", {"repoId": "owner/repo", "commitSha": "abc"})
        assert key == "gather_repo_context:owner/repo@abc"

    def test_backoff_doubles_and_caps(self):
        assert backoff_delay(1, 1.0, 60.0) == 1.0
        assert backoff_delay(3, 1.0, 60.0) == 4.0
        assert backoff_delay(10, 1.0, 60.0) == 60.0

    def test_topology(self):
        assert PIPELINE["ingest_pr"] == ("generate_steps", "gather_repo_context")
        assert PIPELINE["gather_repo_context"] == ()


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    def test_unknown_type_rejected(self):
        dispatcher, _ = _dispatcher()
        with pytest.raises(ValueError):
            dispatcher.enqueue("send_email", {})

    def test_duplicate_suppressed(self):
        dispatcher, _ = _dispatcher()
        first = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        second = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        assert first == second
        assert len(dispatcher.queue.list_jobs()) == 1

    def test_completed_work_suppresses_plain_enqueue(self):
        dispatcher, _ = _dispatcher()
        first = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        assert dispatcher.enqueue("ingest_pr", {"sessionId": "s1"}) == first

    def test_forced_enqueue_reruns_completed_work(self):
        dispatcher, _ = _dispatcher()
        first = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        assert dispatcher.enqueue("ingest_pr", {"sessionId": "s1"}, force=True) != first

    def test_forced_enqueue_collapses_into_queued_copy(self):
        dispatcher, _ = _dispatcher()
        first = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"}, force=True)
        assert dispatcher.enqueue("ingest_pr", {"sessionId": "s1"}, force=True) == first

    def test_queue_failure_is_queue_unavailable(self):
        queue = MagicMock()
        queue.add.side_effect = RuntimeError("database is locked")
        dispatcher, _ = _dispatcher(queue=queue)
        with pytest.raises(QueueUnavailable) as exc_info:
            dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        assert exc_info.value.retryable is True

    def test_commit_less_index_request_reruns_after_completion(self):
        dispatcher, _ = _dispatcher()
        first = dispatcher.enqueue("gather_repo_context", {"repoId": "owner/repo"})
        assert dispatcher.enqueue("gather_repo_context", {"repoId": "owner/repo"}) == first
        dispatcher.run_until_idle()
        second = dispatcher.enqueue("gather_repo_context", {"repoId": "owner/repo"})
        assert second != first

    def test_pinned_index_request_stays_suppressed(self):
        dispatcher, _ = _dispatcher()
        payload = {"repoId": "owner/repo", "commitSha": "abc"}
        first = dispatcher.enqueue("gather_repo_context", payload)
        dispatcher.run_until_idle()
        assert dispatcher.enqueue("gather_repo_context", payload) == first


# ---------------------------------------------------------------------------
# Running and chaining
# ---------------------------------------------------------------------------


class TestRunning:
    def test_run_once_on_empty_queue(self):
        dispatcher, _ = _dispatcher()
        assert dispatcher.run_once() is False

    def test_chains_next_jobs(self):
        stages = _Stages(
            generate_steps=lambda job: [NextJob("build_context_pack", {"sessionId": "s1", "stepId": "a"})],
        )
        dispatcher, _ = _dispatcher(stages)
        dispatcher.enqueue("generate_steps", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        assert [c[0] for c in stages.calls] == ["generate_steps", "build_context_pack"]
        assert all(j.status == "completed" for j in dispatcher.queue.list_jobs())

    def test_disallowed_chain_rejected(self):
        stages = _Stages(gather_repo_context=lambda job: [NextJob("ingest_pr", {"sessionId": "s1"})])
        dispatcher, _ = _dispatcher(stages)
        job_id = dispatcher.enqueue("gather_repo_context", {"repoId": "owner/repo", "commitSha": "abc"})
        with pytest.raises(ValueError):
            dispatcher.run_once()
        assert dispatcher.queue.get(job_id).status == "failed"
        assert [j.type for j in dispatcher.queue.list_jobs()] == ["gather_repo_context"]

    def test_superseded_job_does_not_chain(self):
        dispatcher = None

        def context(job):
            if len([c for c in stages.calls if c[0] == "build_context_pack"]) == 1:
                # A regeneration arrives while the first build is running.
                dispatcher.enqueue("build_context_pack", job.payload, force=True)
            return [NextJob("generate_ai_guidance", job.payload)]

        stages = _Stages(build_context_pack=context)
        dispatcher, _ = _dispatcher(stages)
        dispatcher.enqueue("build_context_pack", {"sessionId": "s1", "stepId": "a"})
        dispatcher.run_until_idle()
        assert [c[0] for c in stages.calls] == ["build_context_pack", "build_context_pack", "generate_ai_guidance"]

    def test_queue_outage_while_chaining_retries_the_job(self):
        queue = _FlakyQueue()
        stages = _Stages(ingest_pr=lambda job: [NextJob("generate_steps", job.payload)])
        dispatcher, clock = _dispatcher(stages, queue=queue)
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})

        queue.failures = 1
        dispatcher.run_once()
        job = queue.get(job_id)
        assert job.status == "queued"
        assert job.last_error.startswith("QueueUnavailable")
        assert [j.type for j in queue.list_jobs()] == ["ingest_pr"]

        dispatcher.run_until_idle()
        assert queue.get(job_id).status == "completed"
        assert [c[0] for c in stages.calls] == ["ingest_pr", "ingest_pr", "generate_steps"]
        assert clock.slept == [1.0]


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    def test_retryable_failure_rescheduled_with_backoff(self):
        stages = _Stages(ingest_pr=MagicMock(side_effect=UpstreamFetchError("502", status=502)))
        dispatcher, clock = _dispatcher(stages)
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_once()
        job = dispatcher.queue.get(job_id)
        assert job.status == "queued"
        assert job.available_at == clock.now + 1.0
        assert job.last_error.startswith("UpstreamFetchError")
        assert dispatcher.run_once() is False

    def test_gives_up_after_max_attempts(self):
        stages = _Stages(ingest_pr=MagicMock(side_effect=UpstreamFetchError("502", status=502)))
        dispatcher, clock = _dispatcher(stages)
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        job = dispatcher.queue.get(job_id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert clock.slept == [1.0, 2.0]
        assert [t for t, _ in stages.exhausted] == ["ingest_pr"]

    def test_terminal_failure_not_retried(self):
        stages = _Stages(ingest_pr=MagicMock(side_effect=EmptyDiffError("nothing")))
        dispatcher, clock = _dispatcher(stages)
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        assert dispatcher.queue.get(job_id).attempts == 1
        assert dispatcher.queue.get(job_id).status == "failed"
        assert clock.slept == []

    def test_unexpected_exception_is_retryable(self):
        stages = _Stages(ingest_pr=MagicMock(side_effect=[KeyError("boom"), []]))
        dispatcher, _ = _dispatcher(stages)
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle()
        job = dispatcher.queue.get(job_id)
        assert job.status == "completed"
        assert job.attempts == 2

    def test_run_until_idle_respects_timeout(self):
        stages = _Stages(ingest_pr=MagicMock(side_effect=UpstreamFetchError("502", status=502)))
        dispatcher = Dispatcher(MemoryStore(), MemoryJobQueue(), stages, {**CONFIG, "backoff_seconds": 30.0})
        clock = _Clock()
        dispatcher.clock = clock
        dispatcher.sleep = clock.sleep
        job_id = dispatcher.enqueue("ingest_pr", {"sessionId": "s1"})
        dispatcher.run_until_idle(timeout=10)
        assert dispatcher.queue.get(job_id).status == "queued"
        assert clock.slept == [10.0]


# ---------------------------------------------------------------------------
# Status bookkeeping
# ---------------------------------------------------------------------------


class TestStatuses:
    def test_session_scoped_failure_sets_reason(self):
        store = MemoryStore()
        session, _ = _session_with_steps(store, n=0)
        stages = _Stages(ingest_pr=MagicMock(side_effect=EmptyDiffError("nothing")))
        dispatcher, _ = _dispatcher(stages, store=store)
        dispatcher.enqueue("ingest_pr", {"sessionId": session.id})
        dispatcher.run_until_idle()
        loaded = store.get_session(session.id)
        assert loaded.status == "error"
        assert loaded.error_reason == "EmptyDiffError"

    def test_ingest_marks_session_ingesting(self):
        store = MemoryStore()
        session, _ = _session_with_steps(store, n=0)
        seen = []
        stages = _Stages(ingest_pr=lambda job: seen.append(store.get_session(session.id).status))
        dispatcher, _ = _dispatcher(stages, store=store)
        dispatcher.enqueue("ingest_pr", {"sessionId": session.id})
        dispatcher.run_until_idle()
        assert seen == ["ingesting"]

    def test_steps_generated_then_all_ready(self):
        store = MemoryStore()
        session, steps = _session_with_steps(store)
        dispatcher, _ = _dispatcher(store=store)
        dispatcher.enqueue("generate_steps", {"sessionId": session.id})
        dispatcher.run_until_idle()
        assert store.get_session(session.id).status == "building_context"

        for step in steps:
            dispatcher.enqueue("build_context_pack", {"sessionId": session.id, "stepId": step.id})
        dispatcher.run_until_idle()
        assert [s.status for s in store.list_steps(session.id)] == ["ready", "ready"]
        assert store.get_session(session.id).status == "ready"

    def test_step_failure_makes_session_error(self):
        store = MemoryStore()
        session, steps = _session_with_steps(store)
        session.status = "building_context"
        store.save_session(session)

        def context(job):
            if job.payload["stepId"] == "step-1":
                raise StepNotFound("gone")
            return []

        stages = _Stages(build_context_pack=context)
        dispatcher, _ = _dispatcher(stages, store=store)
        for step in steps:
            dispatcher.enqueue("build_context_pack", {"sessionId": session.id, "stepId": step.id})
        dispatcher.run_until_idle()

        assert store.get_step("step-0").status == "ready"
        failed = store.get_step("step-1")
        assert failed.status == "error"
        assert failed.error_reason == "StepNotFound"
        loaded = store.get_session(session.id)
        assert loaded.status == "error"
        assert loaded.error_reason == "StepNotFound"

    def test_guidance_failure_leaves_session_alone(self):
        store = MemoryStore()
        session, _ = _session_with_steps(store)
        session.status = "ready"
        store.save_session(session)
        stages = _Stages(generate_ai_guidance=MagicMock(side_effect=ValueError("bad reply")))
        dispatcher, _ = _dispatcher(stages, store=store)
        dispatcher.enqueue("generate_ai_guidance", {"sessionId": session.id, "stepId": "step-0"})
        dispatcher.run_until_idle()
        assert store.get_session(session.id).status == "ready"
        assert [t for t, _ in stages.exhausted] == ["generate_ai_guidance"]
