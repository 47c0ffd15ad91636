"""Repository-level context: key files, the top of the tree, and the summary.

The summary tells the model what kind of project it is looking at (purpose,
stack, layout, conventions, tests) before it sees any single step. It is
built once per (repo, commit) from the files listed in KEY_FILES and the
first two levels of the tree.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prsteps_core.errors import UpstreamFetchError

if TYPE_CHECKING:
    from prsteps_store.models import CodebaseSummary

logger = logging.getLogger(__name__)

KEY_FILES = (
    # Documentation
    "README.md",
    "README",
    "README.rst",
    "CONTRIBUTING.md",
    "ARCHITECTURE.md",
    "docs/ARCHITECTURE.md",
    # JS/TS
    "package.json",
    "tsconfig.json",
    "biome.json",
    ".eslintrc.json",
    ".eslintrc.js",
    ".prettierrc",
    ".prettierrc.json",
    # Python
    "pyproject.toml",
    "requirements.txt",
    "setup.py",
    "setup.cfg",
    # Rust, Go, JVM, Ruby
    "Cargo.toml",
    "go.mod",
    "build.gradle",
    "build.gradle.kts",
    "pom.xml",
    "Gemfile",
    # Docker and CI
    "Dockerfile",
    "docker-compose.yml",
    "docker-compose.yaml",
    ".github/workflows/ci.yml",
    ".github/workflows/ci.yaml",
)

MAX_KEY_FILE_CHARS = 5000
_MAX_LAYOUT_ENTRIES = 300
_MAX_SECTION_CHARS = 4000


def directory_layout(paths: list[str], depth: int = 2) -> list[str]:
    """Entries of the tree down to ``depth`` levels, directories suffixed with '/'."""
    entries = set()
    for path in paths:
        parts = path.split("/")
        for level in range(1, min(len(parts), depth) + 1):
            is_dir = level < len(parts)
            entries.add("/".join(parts[:level]) + ("/" if is_dir else ""))
    return sorted(entries, key=lambda e: e.rstrip("/"))


def find_key_files(paths: list[str]) -> list[str]:
    present = set(paths)
    return [path for path in KEY_FILES if path in present]


def read_key_files(host, repo_id: str, commit_sha: str, paths: list[str]) -> list[tuple[str, str]]:
    """Read each key file, cut to MAX_KEY_FILE_CHARS.

    A file the host refuses for good is left out; transient failures
    propagate so the caller is retried.
    """
    gathered = []
    for path in paths:
        try:
            text = host.read_file(repo_id, path, commit_sha)
        except UpstreamFetchError as e:
            if e.retryable:
                raise
            logger.warning("Skipping key file %s of %s@%s: %s", path, repo_id, commit_sha[:7], e)
            continue
        if len(text) > MAX_KEY_FILE_CHARS:
            text = text[:MAX_KEY_FILE_CHARS] + "\n... (truncated)"
        gathered.append((path, text))
    return gathered


def render_layout(layout: list[str], truncated: bool = False) -> str:
    lines = layout[:_MAX_LAYOUT_ENTRIES]
    if len(layout) > _MAX_LAYOUT_ENTRIES or truncated:
        lines = lines + ["... (tree truncated)"]
    return "\n".join(lines)


def render_codebase_section(summary: CodebaseSummary | None) -> str:
    """Prompt section describing the repository, or "" when no usable summary exists."""
    if summary is None or summary.status != "ready":
        return ""
    parts = ["## Project Overview", summary.description]
    if summary.tech_stack:
        parts.append(f"Tech stack: {', '.join(summary.tech_stack)}")
    if summary.architecture:
        parts.append(f"Architecture: {summary.architecture}")
    if summary.conventions:
        parts.append(f"Conventions: {summary.conventions}")
    if summary.testing_approach:
        parts.append(f"Testing: {summary.testing_approach}")
    section = "\n".join(parts)
    if len(section) > _MAX_SECTION_CHARS:
        section = section[:_MAX_SECTION_CHARS] + "\n... [codebase summary truncated]"
    return section
