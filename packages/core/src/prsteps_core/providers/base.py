"""Base guide implementing the Template Method pattern.

All providers share the same guidance algorithm:
    step_guidance() / session_guidance() / codebase_summary()
        → _build_system_prompt() + _build_*_prompt()
        → _call_api()   ← only this differs per provider
        → strict parse, one reformat retry, then fallback

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call and return the text response, raising
    ModelUnavailableError on transport or timeout failures

Retrying transport failures is the dispatcher's job (with backoff across
attempts), so a provider makes exactly one call per attempt here.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

from prsteps_core.codebase import render_codebase_section, render_layout
from prsteps_core.context_pack import render_context_section
from prsteps_core.errors import ModelUnavailableError, is_retryable_status
from prsteps_store.models import RISK_LEVELS, CodebaseSummary, Guidance

if TYPE_CHECKING:
    from prsteps_store.models import ContextPack, RepoContextIndex, ReviewStep

logger = logging.getLogger(__name__)

_MAX_TOKENS = 2048
_MAX_DIFF_CHARS = 40_000

FALLBACK_SUMMARY = "AI guidance unavailable"

_REFORMAT_INSTRUCTION = """Your previous reply could not be parsed:

{error}

Reply again with ONLY the JSON object described above. No prose, no markdown
fences, no keys other than the ones listed. Previous reply:

{previous}"""


class GuidanceFormatError(ValueError):
    """The model's reply did not match the response contract."""


def _load_object(raw: str) -> dict:
    # Strip only an outer ```json ... ``` fence, never backticks inside values.
    cleaned = re.sub(r"^```(?:json)?\s*", "", (raw or "").strip())
    cleaned = re.sub(r"\s*```$", "", cleaned.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GuidanceFormatError(f"not valid JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise GuidanceFormatError("top-level value must be a JSON object")
    return data


def _string_list(data: dict, key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise GuidanceFormatError(f'"{key}" must be a list of strings')
    return [item.strip() for item in value if item.strip()]


def parse_step_guidance(raw: str) -> dict:
    """Validate {"riskLevel", "summary", "checklist"} and return normalised fields."""
    data = _load_object(raw)
    risk = data.get("riskLevel")
    if not isinstance(risk, str) or risk.strip().lower() not in RISK_LEVELS:
        raise GuidanceFormatError(f'"riskLevel" must be one of {", ".join(RISK_LEVELS)}')
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        raise GuidanceFormatError('"summary" must be a non-empty string')
    return {
        "risk_level": risk.strip().lower(),
        "summary": summary.strip(),
        "checklist": _string_list(data, "checklist"),
    }


def parse_session_guidance(raw: str) -> dict:
    """Like parse_step_guidance, plus a "keyChanges" list of strings."""
    fields = parse_step_guidance(raw)
    fields["key_changes"] = _string_list(_load_object(raw), "keyChanges")
    return fields


_SUMMARY_TEXT_FIELDS = (
    ("architecture", "architecture"),
    ("conventions", "conventions"),
    ("testingApproach", "testing_approach"),
)


def parse_codebase_summary(raw: str) -> dict:
    """Validate {"description", "techStack", "architecture", "conventions", "testingApproach"}."""
    data = _load_object(raw)
    description = data.get("description")
    if not isinstance(description, str) or not description.strip():
        raise GuidanceFormatError('"description" must be a non-empty string')
    fields = {"description": description.strip(), "tech_stack": _string_list(data, "techStack")}
    for key, name in _SUMMARY_TEXT_FIELDS:
        value = data.get(key, "")
        if not isinstance(value, str):
            raise GuidanceFormatError(f'"{key}" must be a string')
        fields[name] = value.strip()
    return fields


def model_error(provider: str, exc: Exception, status: int | None = None) -> ModelUnavailableError:
    """Wrap an SDK failure; a non-auth 4xx from the provider will not succeed on retry."""
    return ModelUnavailableError(f"{provider}: {exc}", retryable=is_retryable_status(status))


class BaseGuide(ABC):
    MODEL: str = ""
    MAX_TOKENS: int = _MAX_TOKENS

    def __init__(self, model: str | None = None):
        self.model = model or self.MODEL

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def step_guidance(
        self,
        step: ReviewStep,
        pack: ContextPack | None,
        guidelines: str = "",
        codebase: CodebaseSummary | None = None,
    ) -> Guidance:
        """Risk level, summary and checklist for one review step."""
        system = self._build_system_prompt(guidelines)
        user = self._build_step_prompt(step, pack, codebase)
        fields = self._generate(system, user, parse_step_guidance, _STEP_FORMAT)
        return self._to_guidance(step.id, "step", fields)

    def session_guidance(
        self,
        session_id: str,
        title: str,
        steps: list[ReviewStep],
        step_guidance: dict[str, Guidance],
        guidelines: str = "",
        codebase: CodebaseSummary | None = None,
    ) -> Guidance:
        """Wrap-up over all steps of a session: overall risk, summary, key changes."""
        system = self._build_system_prompt(guidelines)
        user = self._build_session_prompt(title, steps, step_guidance, codebase)
        fields = self._generate(system, user, parse_session_guidance, _SESSION_FORMAT)
        return self._to_guidance(session_id, "session", fields)

    def codebase_summary(self, index: RepoContextIndex, key_files: list[tuple[str, str]]) -> CodebaseSummary:
        """Describe the repository at index.commit_sha from its layout and key files.

        Two unparseable replies give a summary with status "unavailable",
        which prompts leave out.
        """
        user = self._build_codebase_prompt(index, key_files)
        fields = self._generate(_SUMMARY_SYSTEM_PROMPT, user, parse_codebase_summary, _SUMMARY_FORMAT)
        if fields is None:
            return CodebaseSummary(
                repo_id=index.repo_id, commit_sha=index.commit_sha, model=self.model, status="unavailable"
            )
        return CodebaseSummary(repo_id=index.repo_id, commit_sha=index.commit_sha, model=self.model, **fields)

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str) -> str:
        """Make a single API call and return the raw text response.

        Raise ModelUnavailableError on transport errors and timeouts.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _generate(self, system: str, user: str, parse: Callable[[str], dict], fmt: str) -> dict | None:
        """Call the model, parse strictly, and retry once with a reformat instruction.

        Returns None when both replies are unparseable. ModelUnavailableError
        from _call_api propagates untouched.
        """
        prompt = f"{user}\n\n{fmt}"
        raw = self._call_api(system, prompt)
        try:
            return parse(raw)
        except GuidanceFormatError as e:
            logger.warning("%s: unparseable guidance (%s); asking for a reformat.", self.__class__.__name__, e)
            retry = f"{prompt}\n\n" + _REFORMAT_INSTRUCTION.format(error=e, previous=(raw or "")[:2000])

        raw = self._call_api(system, retry)
        try:
            return parse(raw)
        except GuidanceFormatError as e:
            logger.warning(
                "%s: guidance still unparseable after reformat (%s): %s",
                self.__class__.__name__,
                e,
                (raw or "")[:200],
            )
            return None

    def _to_guidance(self, target_id: str, target_type: str, fields: dict | None) -> Guidance:
        if fields is None:
            return fallback_guidance(target_id, target_type, self.model)
        return Guidance(target_id=target_id, target_type=target_type, model=self.model, status="ready", **fields)

    def _build_system_prompt(self, guidelines: str) -> str:
        prompt = """You are a senior engineer helping a colleague review a pull request one step at a time.
Each step is a small group of related hunks. Your job is to tell the reviewer
where the risk is and what to check, not to review the code yourself.

Rules:
- Judge risk from what the change can break: data, security, concurrency, public APIs.
- Consider removed lines (starting with '-') as carefully as added ones.
- Checklist items are questions the reviewer should answer by reading the code.
- Be concise. Never invent code that is not in the diff or context."""
        if guidelines:
            prompt += f"\n\nProject guidelines:\n{guidelines}"
        return prompt

    def _build_step_prompt(
        self, step: ReviewStep, pack: ContextPack | None, codebase: CodebaseSummary | None = None
    ) -> str:
        diff = step.diff_text()
        if len(diff) > _MAX_DIFF_CHARS:
            diff = diff[:_MAX_DIFF_CHARS] + "\n... [diff truncated]"
        tags = f"\nRisk tags: {', '.join(step.risk_tags)}" if step.risk_tags else ""
        section = render_codebase_section(codebase)
        about = f"\n\n{section}" if section else ""
        return f"""## Step {step.order_index + 1}: {step.title}
Category: {step.category}
Complexity: {step.complexity}{tags}{about}
{render_context_section(pack)}
## Diff
{diff}"""

    def _build_session_prompt(
        self,
        title: str,
        steps: list[ReviewStep],
        step_guidance: dict[str, Guidance],
        codebase: CodebaseSummary | None = None,
    ) -> str:
        lines = []
        for step in steps:
            g = step_guidance.get(step.id)
            if g is None or g.status != "ready":
                lines.append(f"- {step.title} ({step.category}): no guidance")
            else:
                lines.append(f"- {step.title} ({step.category}) [{g.risk_level}]: {g.summary}")
        section = render_codebase_section(codebase)
        about = f"\n\n{section}" if section else ""
        return f"""## Pull Request
{title}

## Steps
{chr(10).join(lines)}{about}"""

    def _build_codebase_prompt(self, index: RepoContextIndex, key_files: list[tuple[str, str]]) -> str:
        files = "\n\n".join(f"### {path}\n```\n{text}\n```" for path, text in key_files)
        return f"""## Repository
{index.repo_id} at {index.commit_sha[:7]}

## Directory Structure
{render_layout(index.layout, index.truncated) or "Not available"}

## Key Files
{files or "No key files found"}"""


_STEP_FORMAT = """### Output Format:
Respond with **only** a valid JSON object:

{
  "riskLevel": "<low|medium|high>",
  "summary": "<2-3 sentences on what this step changes and why it matters>",
  "checklist": ["<question the reviewer should answer>", ...]
}

Do not return any text outside the JSON object."""

_SESSION_FORMAT = """### Output Format:
Respond with **only** a valid JSON object:

{
  "riskLevel": "<low|medium|high>",
  "summary": "<2-3 sentence overview of the pull request's goals>",
  "keyChanges": ["<important change>", ...],
  "checklist": ["<question to answer before approving>", ...]
}

Do not return any text outside the JSON object."""


_SUMMARY_SYSTEM_PROMPT = """You are an expert software engineer analysing a codebase for a colleague who is
about to review a pull request in it.

Rules:
- Be specific and concrete: name the files, packages and patterns you see.
- Never state anything the directory structure and key files do not support.
- When there is no testing information, say so in "testingApproach"."""

_SUMMARY_FORMAT = """### Output Format:
Respond with **only** a valid JSON object:

{
  "description": "<2-3 sentences on what this project does>",
  "techStack": ["<language, framework or key library>", ...],
  "architecture": "<how the code is organised: layers, packages, entry points>",
  "conventions": "<coding, linting and formatting conventions observed>",
  "testingApproach": "<test frameworks and patterns in use>"
}

Do not return any text outside the JSON object."""

def fallback_guidance(target_id: str, target_type: str = "step", model: str = "") -> Guidance:
    return Guidance(
        target_id=target_id,
        target_type=target_type,
        risk_level="unknown",
        summary=FALLBACK_SUMMARY,
        model=model,
        status="unavailable",
    )
