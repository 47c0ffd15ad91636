"""Review pipeline records.

Plain dataclasses shared by the pipeline (prsteps_core) and the persistence
backends. Every record round-trips through ``to_dict``/``from_dict`` so the
SQLite backend can keep nested fields in JSON columns.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone

# Session / step / job lifecycles.
SESSION_STATUSES = ("pending", "ingesting", "clustering", "building_context", "ready", "error")
STEP_STATUSES = ("pending", "context_building", "ready", "error")
JOB_STATUSES = ("queued", "active", "completed", "failed")
RISK_LEVELS = ("low", "medium", "high")

# The five stage names a Job can carry.
JOB_TYPES = ("ingest_pr", "generate_steps", "build_context_pack", "generate_ai_guidance", "gather_repo_context")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class _Record:
    """Dict conversion shared by all records."""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


@dataclass
class PullRequest(_Record):
    repo_id: str  # "owner/name"
    number: int
    id: str = field(default_factory=new_id)
    title: str = ""
    author: str = ""
    base_ref: str = ""
    head_ref: str = ""
    base_sha: str = ""
    head_sha: str = ""


@dataclass
class ReviewSession(_Record):
    """One review attempt over one pull request, owned by its creator."""

    pull_request_id: str
    created_by_user_id: str
    id: str = field(default_factory=new_id)
    status: str = "pending"
    snapshot_id: str | None = None
    error_reason: str | None = None
    is_stale: bool = False
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)


@dataclass
class PullRequestSnapshot(_Record):
    """Immutable diff content captured at ingestion time."""

    repo_id: str
    pr_number: int
    base_sha: str
    head_sha: str
    raw_diff: str
    id: str = field(default_factory=new_id)
    # Entries: {"filename", "status", "additions", "deletions", "patch"}
    changed_files: list[dict] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)


@dataclass(frozen=True)
class Hunk(_Record):
    """A contiguous block of changed lines within one file's diff."""

    path: str
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    patch: str  # includes the @@ header
    additions: int = 0
    deletions: int = 0
    file_status: str = "modified"

    @property
    def changed_lines(self) -> int:
        return self.additions + self.deletions

    @property
    def start(self) -> int:
        return self.new_start

    @property
    def end(self) -> int:
        # Pure deletions have new_lines == 0 but still occupy a position.
        return self.new_start + max(self.new_lines, 1) - 1

    @property
    def key(self) -> tuple[str, int, int, int, int]:
        return (self.path, self.old_start, self.old_lines, self.new_start, self.new_lines)


@dataclass
class ReviewStep(_Record):
    """A clustered group of hunks presented as one reviewable unit."""

    session_id: str
    order_index: int
    title: str
    id: str = field(default_factory=new_id)
    snapshot_id: str | None = None
    # [[path, start, end], ...] in traversal order.
    file_scope: list[list] = field(default_factory=list)
    hunks: list[Hunk] = field(default_factory=list)
    symbols: list[str] = field(default_factory=list)
    changed_lines: int = 0
    category: str = "Modification"
    complexity: str = "S"
    risk_tags: list[str] = field(default_factory=list)
    status: str = "pending"
    error_reason: str | None = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, d: dict) -> ReviewStep:
        step = super().from_dict(d)
        step.hunks = [h if isinstance(h, Hunk) else Hunk.from_dict(h) for h in step.hunks]
        step.file_scope = [list(entry) for entry in step.file_scope]
        return step

    @property
    def paths(self) -> list[str]:
        return sorted({h.path for h in self.hunks})

    def diff_text(self) -> str:
        blocks = []
        for path in self.paths:
            patches = "\n".join(h.patch.rstrip("\n") for h in self.hunks if h.path == path)
            blocks.append(f"File: {path}\n{patches}")
        return "\n\n".join(blocks)


@dataclass
class SymbolLocation(_Record):
    path: str
    line: int


@dataclass
class SymbolContext(_Record):
    name: str
    definition: SymbolLocation | None = None
    references: list[SymbolLocation] = field(default_factory=list)
    related_tests: list[str] = field(default_factory=list)
    in_diff: bool = True

    @classmethod
    def from_dict(cls, d: dict) -> SymbolContext:
        ctx = super().from_dict(d)
        if isinstance(ctx.definition, dict):
            ctx.definition = SymbolLocation.from_dict(ctx.definition)
        ctx.references = [r if isinstance(r, SymbolLocation) else SymbolLocation.from_dict(r) for r in ctx.references]
        return ctx


@dataclass
class ContextPack(_Record):
    """Symbol definitions, references and tests assembled for one step."""

    step_id: str
    id: str = field(default_factory=new_id)
    commit_sha: str = ""
    symbols: list[SymbolContext] = field(default_factory=list)
    index_truncated: bool = False
    confidence: str = "high"
    generated_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, d: dict) -> ContextPack:
        pack = super().from_dict(d)
        pack.symbols = [s if isinstance(s, SymbolContext) else SymbolContext.from_dict(s) for s in pack.symbols]
        return pack


@dataclass
class Guidance(_Record):
    """AI risk assessment and checklist for a step, or a wrap-up for a session."""

    target_id: str  # step id, or session id for a wrap-up
    target_type: str = "step"  # "step" | "session"
    id: str = field(default_factory=new_id)
    risk_level: str = "unknown"
    summary: str = ""
    checklist: list[str] = field(default_factory=list)
    key_changes: list[str] = field(default_factory=list)
    model: str = ""
    status: str = "ready"  # "ready" | "unavailable"
    generated_at: str = field(default_factory=utcnow)


@dataclass
class Job(_Record):
    type: str
    payload: dict = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    idempotency_key: str = ""
    status: str = "queued"
    attempts: int = 0
    last_error: str | None = None
    available_at: float = 0.0  # epoch seconds; backoff delays push this forward
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)


@dataclass
class RepoContextIndex(_Record):
    """Symbol index for one (repository, commit). Written once, never mutated."""

    repo_id: str
    commit_sha: str
    # name -> [[path, line], ...]
    definitions: dict[str, list[list]] = field(default_factory=dict)
    references: dict[str, list[list]] = field(default_factory=dict)
    # path -> imported module names
    imports: dict[str, list[str]] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)
    # top two levels of the tree, directories suffixed with "/"
    layout: list[str] = field(default_factory=list)
    # README, manifests and CI files present at this commit
    key_files: list[str] = field(default_factory=list)
    truncated: bool = False
    built_at: str = field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.repo_id, self.commit_sha)


@dataclass
class CodebaseSummary(_Record):
    """What the repository is and how it is built, summarised once per (repository, commit)."""

    repo_id: str
    commit_sha: str
    id: str = field(default_factory=new_id)
    description: str = ""
    tech_stack: list[str] = field(default_factory=list)
    architecture: str = ""
    conventions: str = ""
    testing_approach: str = ""
    model: str = ""
    status: str = "ready"  # "ready" | "unavailable"
    generated_at: str = field(default_factory=utcnow)
