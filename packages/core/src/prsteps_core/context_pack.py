"""Context packs: what a reviewer needs to know about the symbols a step touches.

For every symbol a step mentions that the repo index knows a definition
for, a pack records the definition site, other reference sites, and the
test files likely to exercise it. Symbols named on changed lines come
first; symbols only seen in surrounding context lines fill the remaining
room up to ``max_context_symbols``.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath

from prsteps_core.clustering import hunk_text
from prsteps_core.utils.code import is_test_file, paired_test_names, source_stem
from prsteps_core.utils.diff import split_changed_and_context
from prsteps_core.utils.symbols import IdentifierExtractor, RegexIdentifierExtractor
from prsteps_store.models import ContextPack, RepoContextIndex, ReviewStep, SymbolContext, SymbolLocation

logger = logging.getLogger(__name__)

# Hard ceiling on the rendered pack injected into a guidance prompt.
_MAX_CONTEXT_CHARS = 12_000


def _touched_symbols(step: ReviewStep, extractor: IdentifierExtractor) -> tuple[list[str], list[str]]:
    """Return (primary, secondary) identifiers: changed lines first, context lines after."""
    primary: dict[str, None] = {}
    secondary: dict[str, None] = {}
    for hunk in step.hunks:
        for name in extractor.identifiers(hunk_text(hunk)):
            primary.setdefault(name, None)
        _, context = split_changed_and_context(hunk.patch)
        for name in extractor.identifiers("\n".join(context)):
            if name not in primary:
                secondary.setdefault(name, None)
    return list(primary), list(secondary)


def _pick_definition(sites: list[list], step_paths: set[str]) -> SymbolLocation:
    ordered = sorted(sites, key=lambda s: (s[0] not in step_paths, s[0], s[1]))
    path, line = ordered[0]
    return SymbolLocation(path=path, line=line)


def _related_tests(name: str, definition: SymbolLocation, index: RepoContextIndex, step_paths: set[str]) -> list[str]:
    tests: set[str] = set()

    paired = paired_test_names(definition.path)
    for path in step_paths:
        paired |= paired_test_names(path)
    tests.update(p for p in index.files if PurePosixPath(p).name in paired)

    tests.update(path for path, _ in index.references.get(name, []) if is_test_file(path))

    stems = {source_stem(definition.path)} | {source_stem(p) for p in step_paths}
    for path, imported in index.imports.items():
        if is_test_file(path) and stems.intersection(imported):
            tests.add(path)

    return sorted(tests)


def build_context_pack(
    step: ReviewStep,
    index: RepoContextIndex,
    config: dict,
    extractor: IdentifierExtractor | None = None,
) -> ContextPack:
    extractor = extractor or RegexIdentifierExtractor()
    max_symbols = config.get("max_context_symbols", 50)
    max_refs = config.get("max_references_per_symbol", 20)

    primary, secondary = _touched_symbols(step, extractor)
    step_paths = set(step.paths)

    ranked = [(name, True) for name in primary if name in index.definitions]
    ranked += [(name, False) for name in secondary if name in index.definitions]
    if len(ranked) > max_symbols:
        logger.debug("Step %s touches %d indexed symbols; keeping %d.", step.id, len(ranked), max_symbols)
        ranked = ranked[:max_symbols]

    symbols = []
    for name, in_diff in ranked:
        definition = _pick_definition(index.definitions[name], step_paths)
        refs = [
            SymbolLocation(path=path, line=line)
            for path, line in index.references.get(name, [])
            if not (path == definition.path and line == definition.line)
        ]
        symbols.append(
            SymbolContext(
                name=name,
                definition=definition,
                references=refs[:max_refs],
                related_tests=_related_tests(name, definition, index, step_paths),
                in_diff=in_diff,
            )
        )

    if index.truncated:
        logger.warning("Context pack for step %s built from a truncated index; confidence is low.", step.id)
    return ContextPack(
        step_id=step.id,
        commit_sha=index.commit_sha,
        symbols=symbols,
        index_truncated=index.truncated,
        confidence="low" if index.truncated else "high",
    )


def render_context_section(pack: ContextPack | None) -> str:
    """Render a context pack into a prompt section.

    Symbols are rendered in pack order (diff symbols first). Rendering stops
    at the first symbol that would push the section past _MAX_CONTEXT_CHARS.
    """
    if pack is None or not pack.symbols:
        return ""

    header = "## Codebase Context\n"
    if pack.index_truncated:
        header += "_The repository index is partial; some references may be missing._\n"

    blocks: list[str] = []
    size = len(header)
    for sym in pack.symbols:
        lines = [f"### `{sym.name}`" + ("" if sym.in_diff else " (nearby)")]
        if sym.definition is not None:
            lines.append(f"- Defined at `{sym.definition.path}:{sym.definition.line}`")
        if sym.references:
            sites = ", ".join(f"`{r.path}:{r.line}`" for r in sym.references)
            lines.append(f"- Referenced at {sites}")
        if sym.related_tests:
            lines.append(f"- Tests: {', '.join(f'`{t}`' for t in sym.related_tests)}")
        block = "\n".join(lines)
        if size + len(block) + 2 > _MAX_CONTEXT_CHARS:
            logger.debug("Context section truncated at %d of %d symbols.", len(blocks), len(pack.symbols))
            break
        blocks.append(block)
        size += len(block) + 2

    return "\n\n" + header + "\n" + "\n\n".join(blocks) + "\n"
