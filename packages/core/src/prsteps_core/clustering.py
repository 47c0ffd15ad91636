"""Change-unit clustering: partition a snapshot's hunks into ordered review steps.

The algorithm runs in four passes:

1. Intra-file merge. Hunks in one file whose new-file line ranges are at
   most ``proximity_lines`` apart become one candidate.
2. Cross-file grouping. Candidates in different files that mention the same
   identifier are joined (union-find). Identifiers shared by more than
   ``symbol_fanout_limit`` candidates are too generic to mean anything and
   are ignored.
3. Size capping. A group over ``max_step_lines`` changed lines is split into
   its files, then its candidates, then runs of hunks, until every piece
   fits. A single hunk over the cap is emitted on its own and tagged
   ``oversized``.
4. Ordering by (earliest path touched, earliest line in that path).

Every input hunk ends up in exactly one step, and the same hunk set always
produces the same steps in the same order.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from prsteps_core.errors import ClusteringError
from prsteps_core.utils.diff import split_changed_and_context
from prsteps_core.utils.symbols import IdentifierExtractor, RegexIdentifierExtractor
from prsteps_store.models import Hunk, ReviewStep

logger = logging.getLogger(__name__)

_HIGH_IMPACT_ADDITIONS = 50
_TITLE_FILES = 3
_TITLE_SYMBOLS = 2


@dataclass
class Candidate:
    """Hunks of one file close enough to be read together."""

    path: str
    hunks: list[Hunk] = field(default_factory=list)
    identifiers: set[str] = field(default_factory=set)

    @property
    def changed_lines(self) -> int:
        return sum(h.changed_lines for h in self.hunks)

    @property
    def end(self) -> int:
        return max(h.end for h in self.hunks)


@dataclass
class StepPlan:
    """One clustered step before it is bound to a session."""

    hunks: list[Hunk]
    title: str = ""
    symbols: list[str] = field(default_factory=list)
    category: str = "Modification"
    complexity: str = "S"
    risk_tags: list[str] = field(default_factory=list)

    @property
    def changed_lines(self) -> int:
        return sum(h.changed_lines for h in self.hunks)

    @property
    def sort_key(self) -> tuple:
        first_path = min(h.path for h in self.hunks)
        first_line = min(h.start for h in self.hunks if h.path == first_path)
        return (first_path, first_line, sorted(h.key for h in self.hunks))

    @property
    def file_scope(self) -> list[list]:
        return [[h.path, h.start, h.end] for h in _ordered(self.hunks)]


class _DisjointSet:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Lower index wins so roots do not depend on union order.
            self.parent[max(ra, rb)] = min(ra, rb)


def _ordered(hunks: list[Hunk]) -> list[Hunk]:
    return sorted(hunks, key=lambda h: (h.path, h.new_start, h.old_start, h.new_lines, h.old_lines))


def _validate(hunks: list[Hunk]) -> None:
    seen: set[tuple] = set()
    for h in hunks:
        if not h.path:
            raise ClusteringError("Hunk without a file path")
        if min(h.old_start, h.old_lines, h.new_start, h.new_lines) < 0:
            raise ClusteringError(f"Hunk in {h.path!r} has a negative line range")
        if not h.patch.startswith("@@"):
            raise ClusteringError(f"Hunk in {h.path!r} does not start with a hunk header")
        if h.key in seen:
            raise ClusteringError(f"Duplicate hunk {h.key!r}")
        seen.add(h.key)


def hunk_text(hunk: Hunk) -> str:
    """The text identifiers are extracted from: changed lines plus the header's scope hint.

    Git puts the enclosing function signature after the closing ``@@``, so a
    change inside ``def login`` still mentions ``login`` even when the def
    line itself is unchanged context.
    """
    header = hunk.patch.split("\n", 1)[0]
    scope = header.split("@@", 2)[-1] if header.count("@@") >= 2 else ""
    changed, _ = split_changed_and_context(hunk.patch)
    return "\n".join([scope, *changed])


def merge_nearby(hunks: list[Hunk], proximity_lines: int) -> list[Candidate]:
    """Pass 1: merge same-file hunks separated by at most proximity_lines lines."""
    candidates: list[Candidate] = []
    current: Candidate | None = None
    for hunk in _ordered(hunks):
        if current is not None and current.path == hunk.path and hunk.start - current.end - 1 <= proximity_lines:
            current.hunks.append(hunk)
            continue
        current = Candidate(path=hunk.path, hunks=[hunk])
        candidates.append(current)
    return candidates


def group_by_symbols(candidates: list[Candidate], fanout_limit: int) -> list[list[Candidate]]:
    """Pass 2: join candidates in different files that share an identifier."""
    owners: dict[str, list[int]] = {}
    for i, cand in enumerate(candidates):
        for name in cand.identifiers:
            owners.setdefault(name, []).append(i)

    sets = _DisjointSet(len(candidates))
    for name in sorted(owners):
        members = owners[name]
        if len(members) < 2 or len(members) > fanout_limit:
            continue
        # Only cross-file overlap links; same-file candidates stay apart unless
        # a candidate elsewhere shares the name with both.
        if len({candidates[i].path for i in members}) < 2:
            continue
        for other in members[1:]:
            sets.union(members[0], other)

    groups: dict[int, list[Candidate]] = {}
    for i, cand in enumerate(candidates):
        groups.setdefault(sets.find(i), []).append(cand)
    return [groups[root] for root in sorted(groups)]


def _split_hunk_runs(hunks: list[Hunk], cap: int) -> list[list[Hunk]]:
    runs: list[list[Hunk]] = []
    current: list[Hunk] = []
    size = 0
    for hunk in _ordered(hunks):
        if current and size + hunk.changed_lines > cap:
            runs.append(current)
            current, size = [], 0
        current.append(hunk)
        size += hunk.changed_lines
    if current:
        runs.append(current)
    return runs


def cap_group(group: list[Candidate], cap: int) -> list[list[Hunk]]:
    """Pass 3: split a group until no piece exceeds cap (single hunks excepted)."""
    hunks = [h for cand in group for h in cand.hunks]
    if sum(h.changed_lines for h in hunks) <= cap:
        return [hunks]

    pieces: list[list[Hunk]] = []
    by_file: dict[str, list[Candidate]] = {}
    for cand in group:
        by_file.setdefault(cand.path, []).append(cand)
    for path in sorted(by_file):
        file_cands = by_file[path]
        file_hunks = [h for cand in file_cands for h in cand.hunks]
        if sum(h.changed_lines for h in file_hunks) <= cap:
            pieces.append(file_hunks)
            continue
        for cand in file_cands:
            if cand.changed_lines <= cap:
                pieces.append(list(cand.hunks))
            else:
                pieces.extend(_split_hunk_runs(cand.hunks, cap))
    return pieces


def _category(hunks: list[Hunk]) -> str:
    statuses = {h.file_status for h in hunks}
    if statuses == {"added"}:
        return "New File"
    if statuses == {"removed"}:
        return "Deletion"
    if statuses & {"added", "removed"}:
        return "Mixed"
    return "Modification"


def _complexity(changed: int) -> str:
    if changed > 100:
        return "L"
    if changed > 30:
        return "M"
    return "S"


def _symbols_for(hunks: list[Hunk], extractor: IdentifierExtractor, shared: set[str]) -> list[str]:
    """Rank a step's symbols: defined in the change first, then cross-file links, then by frequency."""
    defined: list[str] = []
    counts: Counter[str] = Counter()
    for hunk in _ordered(hunks):
        text = hunk_text(hunk)
        for name, _ in extractor.definitions(text):
            if name not in defined:
                defined.append(name)
        counts.update(extractor.identifiers(text))
    linked = sorted(n for n in shared if n in counts and n not in defined)
    by_frequency = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    rest = [n for n, _ in by_frequency if n not in defined and n not in linked]
    return defined + linked + rest


def _title(hunks: list[Hunk], symbols: list[str]) -> str:
    names: list[str] = []
    for h in _ordered(hunks):
        name = PurePosixPath(h.path).name
        if name not in names:
            names.append(name)
    files = ", ".join(names[:_TITLE_FILES])
    if len(names) > _TITLE_FILES:
        files += f" +{len(names) - _TITLE_FILES} more"
    if symbols:
        return f"{files}: {', '.join(symbols[:_TITLE_SYMBOLS])}"
    return files


def _plan(hunks: list[Hunk], extractor: IdentifierExtractor, shared: set[str], cap: int) -> StepPlan:
    symbols = _symbols_for(hunks, extractor, shared)
    plan = StepPlan(hunks=_ordered(hunks), symbols=symbols)
    plan.title = _title(plan.hunks, symbols)
    plan.category = _category(plan.hunks)
    plan.complexity = _complexity(plan.changed_lines)
    if sum(h.additions for h in plan.hunks) > _HIGH_IMPACT_ADDITIONS:
        plan.risk_tags.append("high-impact")
    if plan.changed_lines > cap:
        plan.risk_tags.append("oversized")
    return plan


def cluster_hunks(hunks: list[Hunk], config: dict, extractor: IdentifierExtractor | None = None) -> list[StepPlan]:
    """Partition hunks into ordered step plans.

    Raises ClusteringError only on malformed input. An empty hunk list
    yields no steps.
    """
    extractor = extractor or RegexIdentifierExtractor()
    _validate(hunks)
    if not hunks:
        return []

    proximity = config.get("proximity_lines", 10)
    cap = config.get("max_step_lines", 400)
    fanout = config.get("symbol_fanout_limit", 8)

    candidates = merge_nearby(hunks, proximity)
    for cand in candidates:
        for hunk in cand.hunks:
            cand.identifiers.update(extractor.identifiers(hunk_text(hunk)))

    groups = group_by_symbols(candidates, fanout)

    plans: list[StepPlan] = []
    for group in groups:
        shared = _shared_identifiers(group)
        for piece in cap_group(group, cap):
            plans.append(_plan(piece, extractor, shared, cap))

    plans.sort(key=lambda p: p.sort_key)
    logger.debug(
        "Clustered %d hunk(s) into %d candidate(s), %d group(s), %d step(s).",
        len(hunks),
        len(candidates),
        len(groups),
        len(plans),
    )
    return plans


def _shared_identifiers(group: list[Candidate]) -> set[str]:
    seen: Counter[str] = Counter()
    for cand in group:
        seen.update(cand.identifiers)
    return {name for name, n in seen.items() if n > 1}


def step_id(snapshot_id: str, order_index: int) -> str:
    """Deterministic step id, so re-clustering a snapshot overwrites its steps."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"prsteps:{snapshot_id}:{order_index}"))


def to_review_steps(plans: list[StepPlan], session_id: str, snapshot_id: str) -> list[ReviewStep]:
    return [
        ReviewStep(
            id=step_id(snapshot_id, i),
            session_id=session_id,
            snapshot_id=snapshot_id,
            order_index=i,
            title=plan.title,
            file_scope=plan.file_scope,
            hunks=plan.hunks,
            symbols=plan.symbols,
            changed_lines=plan.changed_lines,
            category=plan.category,
            complexity=plan.complexity,
            risk_tags=plan.risk_tags,
        )
        for i, plan in enumerate(plans)
    ]
