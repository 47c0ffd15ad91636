"""Pipeline wiring and the externally triggered operations.

build_pipeline() assembles the host client, guidance provider, index cache,
stages and dispatcher from config. The resulting Pipeline is what the CLI
(or a webhook handler) talks to: start a session, regenerate a stage, run
the queue.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from prsteps_core.errors import RegenerationForbidden, SessionNotFound, StepNotFound
from prsteps_core.gh.pull_request import GitHubHost
from prsteps_core.jobs.dispatcher import Dispatcher
from prsteps_core.jobs.stages import PipelineStages
from prsteps_core.jobs.worker import WorkerPool
from prsteps_core.providers.anthropic import AnthropicGuide
from prsteps_core.providers.base import BaseGuide
from prsteps_core.providers.openai import OpenAIGuide
from prsteps_core.repo_index import RepoIndexCache, build_repo_index
from prsteps_core.utils.symbols import IdentifierExtractor, RegexIdentifierExtractor
from prsteps_store.base import BaseJobQueue, BaseStore
from prsteps_store.models import PullRequest, ReviewSession

logger = logging.getLogger(__name__)

REGENERATE_STAGES = ("ingest", "steps", "context", "guidance")


def get_guide(config: dict) -> BaseGuide:
    model = config["model"]
    if model == "anthropic":
        return AnthropicGuide(
            api_key=config.get("anthropic_api_key"),
            model=config.get("llm_model"),
            timeout=config.get("request_timeout", 60),
        )
    if model == "openai":
        return OpenAIGuide(
            api_key=config.get("openai_api_key"),
            model=config.get("llm_model"),
            base_url=config.get("llm_base_url"),
            timeout=config.get("request_timeout", 60),
        )
    raise ValueError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")


@dataclass
class Pipeline:
    store: BaseStore
    queue: BaseJobQueue
    dispatcher: Dispatcher
    stages: PipelineStages
    config: dict

    def start_session(self, repo_id: str, pr_number: int, user_id: str) -> ReviewSession:
        """Record the pull request, open a pending session for user_id, enqueue ingestion."""
        pr = self._pull_request(repo_id, pr_number)
        session = ReviewSession(pull_request_id=pr.id, created_by_user_id=user_id)
        self.store.save_session(session)
        self.dispatcher.enqueue("ingest_pr", {"sessionId": session.id})
        logger.info("Started session %s for %s#%d (%s).", session.id, repo_id, pr_number, user_id)
        return session

    def _pull_request(self, repo_id: str, pr_number: int) -> PullRequest:
        pr = self.store.find_pull_request(repo_id, pr_number)
        if pr is None:
            pr = PullRequest(repo_id=repo_id, number=pr_number)
            self.store.save_pull_request(pr)
        return pr

    def regenerate(self, session_id: str, user_id: str, stage: str, step_id: str | None = None) -> list[str]:
        """Re-run one stage for a session (or one of its steps) and return the job ids.

        Only the session's creator may regenerate. Already-successful
        upstream stages are not re-run; downstream stages follow by chaining.
        """
        if stage not in REGENERATE_STAGES:
            raise ValueError(f"Unknown stage {stage!r}. Choose one of: {', '.join(REGENERATE_STAGES)}")
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id!r} not found")
        if session.created_by_user_id != user_id:
            logger.warning("Regeneration of session %s refused for %s.", session_id, user_id)
            raise RegenerationForbidden(f"Only {session.created_by_user_id} may regenerate session {session_id}")

        if step_id is not None:
            step = self.store.get_step(step_id)
            if step is None or step.session_id != session_id:
                raise StepNotFound(f"Step {step_id!r} not found in session {session_id}")
            if stage not in ("context", "guidance"):
                raise ValueError(f"Stage {stage!r} cannot target a single step")

        payload = {"sessionId": session_id}
        if stage == "ingest":
            return [self.dispatcher.enqueue("ingest_pr", payload, force=True)]
        if stage == "steps":
            return [self.dispatcher.enqueue("generate_steps", payload, force=True)]

        job_type = "build_context_pack" if stage == "context" else "generate_ai_guidance"
        step_ids = [step_id] if step_id else [s.id for s in self.store.list_steps(session_id)]
        return [self.dispatcher.enqueue(job_type, {**payload, "stepId": sid}, force=True) for sid in step_ids]

    def run_until_idle(self, timeout: float | None = None) -> None:
        self.dispatcher.run_until_idle(timeout)

    def worker_pool(self, workers: int | None = None) -> WorkerPool:
        return WorkerPool(self.dispatcher, workers or self.config.get("workers", 4))


def build_pipeline(
    config: dict,
    store: BaseStore,
    queue: BaseJobQueue,
    host=None,
    guide: BaseGuide | None = None,
    extractor: IdentifierExtractor | None = None,
) -> Pipeline:
    host = host or GitHubHost(config.get("github_token"), timeout=config.get("request_timeout", 60))
    extractor = extractor or RegexIdentifierExtractor()
    cache = RepoIndexCache(store, lambda repo_id, sha: build_repo_index(host, repo_id, sha, config, extractor))
    stages = PipelineStages(
        store=store,
        host=host,
        index_cache=cache,
        config=config,
        extractor=extractor,
        guide_factory=(lambda: guide) if guide is not None else (lambda: get_guide(config)),
    )
    dispatcher = Dispatcher(store, queue, stages, config)
    return Pipeline(store=store, queue=queue, dispatcher=dispatcher, stages=stages, config=config)
