"""Lightweight identifier extraction.

Clustering and context building need to know which symbol names a piece of
code touches, defines and imports. This module answers that with regular
expressions over source text, without parsing, which keeps it
language-agnostic and cheap enough to run over a whole repository tree.

The strategy is pluggable: clustering, indexing and context packs all take
an IdentifierExtractor, so a stronger analyzer (tree-sitter, libcst, an LSP)
can be dropped in without touching those modules.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

_IDENT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")

_DEFINITION_RES = [
    re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)"),  # Python
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)"),
    re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)"),  # JS / TS
    re.compile(r"^\s*(?:export\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?="),  # JS / TS
    re.compile(r"^\s*func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)"),  # Go
    re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?fn\s+([A-Za-z_]\w*)"),  # Rust
    re.compile(r"^\s*(?:export\s+)?(?:pub\s+)?(?:interface|type|struct|enum|trait)\s+([A-Za-z_]\w*)"),
    re.compile(r"^([A-Z][A-Z0-9_]{2,})\s*(?::[^=]+)?=(?!=)"),  # module-level constants
]

_IMPORT_RES = [
    re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)"),  # Python: import a.b, c
    re.compile(r"^\s*from\s+([\w.]+)\s+import\b"),  # Python: from a.b import c
    re.compile(r"""\bfrom\s+['"]([^'"]+)['"]"""),  # JS / TS: import x from "./auth"
    re.compile(r"""\brequire\(\s*['"]([^'"]+)['"]\s*\)"""),  # CommonJS
    re.compile(r"""^\s*import\s+['"]([^'"]+)['"]"""),  # Go / side-effect imports
]

# Keywords and ubiquitous names across the languages we care about. Matching
# on these would link every change to every other change.
STOPWORDS = frozenset(
    """
    and as assert async await break case catch class const continue def default del delete do elif else
    enum except export extends false final finally for from func function global go if impl import in
    instanceof interface is lambda let match mod mut new nil none nonlocal not null or package pass pub
    raise return self static struct super switch this throw throws true try type typeof undefined use var
    void while with yield cls args kwargs int str bool float dict list set tuple bytes object string number
    boolean any print len range isinstance fmt err error console log string println
    """.split()
)


class IdentifierExtractor(ABC):
    """Strategy interface for finding symbol names in source text."""

    @abstractmethod
    def identifiers(self, text: str) -> list[str]:
        """Return meaningful identifiers in first-seen order, without duplicates."""

    @abstractmethod
    def definitions(self, text: str) -> list[tuple[str, int]]:
        """Return (name, 1-based line) for every symbol defined in text."""

    def imports(self, text: str) -> list[str]:
        """Return the base names of modules imported by text. Optional."""
        return []


class RegexIdentifierExtractor(IdentifierExtractor):
    def __init__(self, min_length: int = 3, stopwords: frozenset[str] = STOPWORDS):
        self.min_length = min_length
        self.stopwords = stopwords

    def is_meaningful(self, name: str) -> bool:
        return len(name) >= self.min_length and name.lower() not in self.stopwords and not name.startswith("__")

    def identifiers(self, text: str) -> list[str]:
        seen: dict[str, None] = {}
        for name in _IDENT_RE.findall(text):
            if name not in seen and self.is_meaningful(name):
                seen[name] = None
        return list(seen)

    def definitions(self, text: str) -> list[tuple[str, int]]:
        found = []
        for lineno, line in enumerate(text.splitlines(), 1):
            for pattern in _DEFINITION_RES:
                match = pattern.match(line)
                if match and self.is_meaningful(match.group(1)):
                    found.append((match.group(1), lineno))
                    break
        return found

    def imports(self, text: str) -> list[str]:
        names: dict[str, None] = {}
        for line in text.splitlines():
            for pattern in _IMPORT_RES:
                match = pattern.search(line)
                if not match:
                    continue
                for module in match.group(1).split(","):
                    base = _module_base(module.strip())
                    if base:
                        names[base] = None
        return list(names)


def _module_base(module: str) -> str:
    """"a.b.auth" -> "auth", "./lib/auth.js" -> "auth", "@scope/pkg" -> "pkg"."""
    module = module.rstrip("/")
    if "/" in module:
        module = module.rsplit("/", 1)[-1]
        module = module.split(".", 1)[0]
    else:
        module = module.rsplit(".", 1)[-1]
    return module
