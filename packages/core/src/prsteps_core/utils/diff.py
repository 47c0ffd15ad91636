"""Unified-diff handling: split file patches into hunks and rebuild raw diffs.

GitHub returns one patch per changed file without the ``diff --git`` /
``---`` / ``+++`` preamble, and omits it entirely for very large files;
split_raw_diff recovers those from the full pull request diff. Each patch is
a sequence of hunks, each opened by an
``@@ -old_start,old_lines +new_start,new_lines @@`` header. Hunks are split
strictly on those headers; merging nearby hunks is the clustering engine's
job, not ingestion's.
"""

from __future__ import annotations

import re

from prsteps_core.errors import ClusteringError
from prsteps_store.models import Hunk

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_DIFF_GIT_RE = re.compile(r"^diff --git a/(.+?) b/(.+)$")
_PREAMBLE_PREFIXES = (
    "diff ",
    "index ",
    "--- ",
    "+++ ",
    "new file",
    "deleted file",
    "similarity",
    "rename ",
    "old mode",
    "new mode",
    "Binary files",
)


def parse_patch(path: str, patch: str, file_status: str = "modified") -> list[Hunk]:
    """Split one file's patch into hunks.

    Lines before the first header are tolerated only when they are file
    preamble (``diff --git``, ``index``, ``---``, ``+++`` ...). Anything else
    means the patch is not a unified diff and raises ClusteringError.
    """
    hunks: list[Hunk] = []
    header: re.Match | None = None
    body: list[str] = []

    def flush():
        if header is None:
            return
        old_start = int(header.group(1))
        old_lines = int(header.group(2)) if header.group(2) is not None else 1
        new_start = int(header.group(3))
        new_lines = int(header.group(4)) if header.group(4) is not None else 1
        additions = sum(1 for line in body if line.startswith("+"))
        deletions = sum(1 for line in body if line.startswith("-"))
        hunks.append(
            Hunk(
                path=path,
                old_start=old_start,
                old_lines=old_lines,
                new_start=new_start,
                new_lines=new_lines,
                patch="\n".join([header.string, *body]),
                additions=additions,
                deletions=deletions,
                file_status=file_status,
            )
        )

    for line in (patch or "").splitlines():
        match = _HUNK_HEADER_RE.match(line)
        if match:
            flush()
            header, body = match, []
            continue
        if header is None:
            if not line or line.startswith(_PREAMBLE_PREFIXES):
                continue
            raise ClusteringError(f"Malformed patch for {path!r}: content before first hunk header")
        body.append(line)
    flush()
    return hunks


def hunks_from_files(files: list[dict]) -> list[Hunk]:
    """Parse every file entry ({"filename", "status", "patch"}) into hunks.

    Files without a patch (binary files, pure renames) contribute no hunks.
    The result is ordered by path, then by position in the file.
    """
    hunks: list[Hunk] = []
    for f in sorted(files, key=lambda f: f.get("filename") or ""):
        path = f.get("filename")
        if not path:
            raise ClusteringError("File entry without a filename")
        patch = f.get("patch")
        if not patch:
            continue
        hunks.extend(parse_patch(path, patch, f.get("status") or "modified"))
    return hunks


def split_raw_diff(raw: str) -> dict[str, str]:
    """Split a multi-file git diff into {path: hunks}, preamble dropped.

    Files with no hunks (binary files, pure renames and mode changes) are
    left out.
    """
    patches: dict[str, str] = {}
    path: str | None = None
    body: list[str] = []

    def flush():
        if path is not None and body:
            patches[path] = "\n".join(body)

    for line in (raw or "").splitlines():
        match = _DIFF_GIT_RE.match(line)
        if match:
            flush()
            path, body = match.group(2), []
            continue
        if path is not None and (body or _HUNK_HEADER_RE.match(line)):
            body.append(line)
    flush()
    return patches


def build_raw_diff(files: list[dict]) -> str:
    """Reassemble a git-style unified diff from per-file patches."""
    blocks = []
    for f in files:
        path = f["filename"]
        old_path = f.get("previous_filename") or path
        status = f.get("status") or "modified"
        header = [f"diff --git a/{old_path} b/{path}"]
        if status == "added":
            header += ["new file mode 100644", "--- /dev/null", f"+++ b/{path}"]
        elif status == "removed":
            header += ["deleted file mode 100644", f"--- a/{old_path}", "+++ /dev/null"]
        else:
            header += [f"--- a/{old_path}", f"+++ b/{path}"]
        patch = f.get("patch")
        if patch:
            header.append(patch.rstrip("\n"))
        else:
            header.append(f"Binary files a/{old_path} and b/{path} differ")
        blocks.append("\n".join(header))
    return "\n".join(blocks) + ("\n" if blocks else "")


def changed_lines(hunks: list[Hunk]) -> int:
    return sum(h.changed_lines for h in hunks)


def split_changed_and_context(patch: str) -> tuple[list[str], list[str]]:
    """Return (changed, context) line texts from a hunk patch, markers stripped."""
    changed: list[str] = []
    context: list[str] = []
    for line in patch.splitlines():
        if line.startswith("@@") or line.startswith("\\"):
            continue
        if line.startswith(("+", "-")):
            changed.append(line[1:])
        elif line.startswith(" "):
            context.append(line[1:])
    return changed, context
