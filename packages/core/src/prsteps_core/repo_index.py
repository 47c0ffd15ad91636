"""Repository symbol index, built once per (repo, commit).

The index walks the tree at a pinned commit and records where each symbol
is defined, where it is referenced, and what every file imports. It is the
only structure shared between concurrent context-pack builds: it is written
once, never mutated, and guarded by a single-flight cache so concurrent
requests for the same commit trigger exactly one build.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from prsteps_core.codebase import directory_layout, find_key_files
from prsteps_core.errors import RepoTooLargeError, UpstreamFetchError
from prsteps_core.utils.code import detect_language, is_code_file
from prsteps_core.utils.symbols import IdentifierExtractor, RegexIdentifierExtractor
from prsteps_store.base import BaseStore
from prsteps_store.models import RepoContextIndex

logger = logging.getLogger(__name__)

# Languages whose files carry no symbols worth indexing.
_UNINDEXED_LANGUAGES = {"text", "markdown", "json", "yaml", "toml"}

# Per-symbol reference ceiling. Context packs use far fewer; this only keeps
# very common names from dominating the stored index.
_MAX_INDEX_REFERENCES = 500


def _indexable(path: str) -> bool:
    return is_code_file(path) and detect_language(path) not in _UNINDEXED_LANGUAGES


def build_repo_index(
    host,
    repo_id: str,
    commit_sha: str,
    config: dict,
    extractor: IdentifierExtractor | None = None,
) -> RepoContextIndex:
    """Walk the tree at commit_sha and index definitions, references and imports.

    The top two levels of the tree and the key files present are recorded
    alongside, for the codebase summary.

    At most ``max_indexed_files`` files are read; when the cap is hit, or the
    host itself truncated the tree listing, the index is returned with
    ``truncated=True``. A file the host refuses for good (deleted, too large
    for the contents API) is skipped and also marks the index truncated;
    transient host failures propagate so the build is retried.
    RepoTooLargeError is raised only when the host gave up without listing
    anything usable.
    """
    extractor = extractor or RegexIdentifierExtractor()
    max_files = config.get("max_indexed_files", 2000)
    max_bytes = config.get("max_file_bytes", 200_000)

    entries, truncated = host.list_tree(repo_id, commit_sha)
    if truncated and not entries:
        raise RepoTooLargeError(f"{repo_id}@{commit_sha[:7]}: tree too large to list")
    all_paths = [path for path, _ in entries]

    paths = sorted(path for path, size in entries if _indexable(path) and size <= max_bytes)
    if len(paths) > max_files:
        logger.warning(
            "Indexing %d of %d files for %s@%s (max_indexed_files).", max_files, len(paths), repo_id, commit_sha[:7]
        )
        paths = paths[:max_files]
        truncated = True

    definitions: dict[str, list[list]] = {}
    mentions: dict[str, list[list]] = {}
    imports: dict[str, list[str]] = {}

    indexed = []
    for path in paths:
        try:
            text = host.read_file(repo_id, path, commit_sha)
        except UpstreamFetchError as e:
            if e.retryable:
                raise
            logger.warning("Skipping %s in index of %s@%s: %s", path, repo_id, commit_sha[:7], e)
            truncated = True
            continue
        indexed.append(path)
        for name, line in extractor.definitions(text):
            definitions.setdefault(name, []).append([path, line])
        for lineno, line in enumerate(text.splitlines(), 1):
            for name in extractor.identifiers(line):
                mentions.setdefault(name, []).append([path, lineno])
        file_imports = extractor.imports(text)
        if file_imports:
            imports[path] = file_imports

    references: dict[str, list[list]] = {}
    for name, sites in definitions.items():
        def_sites = {tuple(site) for site in sites}
        refs = [site for site in mentions.get(name, []) if tuple(site) not in def_sites]
        if refs:
            references[name] = refs[:_MAX_INDEX_REFERENCES]

    logger.info(
        "Indexed %s@%s: %d file(s), %d symbol(s)%s.",
        repo_id,
        commit_sha[:7],
        len(indexed),
        len(definitions),
        " (truncated)" if truncated else "",
    )
    return RepoContextIndex(
        repo_id=repo_id,
        commit_sha=commit_sha,
        definitions=definitions,
        references=references,
        imports=imports,
        files=indexed,
        layout=directory_layout(all_paths),
        key_files=find_key_files(all_paths),
        truncated=truncated,
    )


class _Flight:
    def __init__(self):
        self.done = threading.Event()
        self.result: RepoContextIndex | None = None
        self.error: Exception | None = None


class RepoIndexCache:
    """Single-flight access to repo indexes.

    The first caller for a (repo, commit) builds the index; callers arriving
    while that build is in flight block until it publishes its result or
    fails, and then share the outcome. Failures are not cached: the next
    caller after a failed flight starts a fresh build.
    """

    def __init__(self, store: BaseStore, builder: Callable[[str, str], RepoContextIndex]):
        self.store = store
        self.builder = builder
        self.builds = 0
        self._lock = threading.Lock()
        self._flights: dict[tuple[str, str], _Flight] = {}

    def get_or_build(self, repo_id: str, commit_sha: str) -> RepoContextIndex:
        existing = self.store.get_repo_index(repo_id, commit_sha)
        if existing is not None:
            return existing

        key = (repo_id, commit_sha)
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = self._flights[key] = _Flight()

        if not leader:
            logger.debug("Waiting for in-flight index build of %s@%s.", repo_id, commit_sha[:7])
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            # A flight that finished between our store check and taking the
            # lock has already published.
            index = self.store.get_repo_index(repo_id, commit_sha)
            if index is None:
                self.builds += 1
                index = self.store.save_repo_index(self.builder(repo_id, commit_sha))
            flight.result = index
            return index
        except Exception as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                del self._flights[key]
            flight.done.set()
