from __future__ import annotations

import fnmatch
from pathlib import PurePosixPath

NON_CODE_EXTENSIONS = {
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".svg",
    ".ico",
    ".webp",
    ".bmp",
    ".pdf",
    ".woff",
    ".woff2",
    ".ttf",
    ".eot",
    ".otf",
    ".mp4",
    ".mp3",
    ".wav",
    ".ogg",
    ".zip",
    ".tar",
    ".gz",
    ".rar",
    ".7z",
    ".lock",  # e.g. package-lock.json, Pipfile.lock
}

# Test/spec filename patterns covering the dominant conventions across ecosystems.
# {stem} = filename without extension, {suffix} = extension including the dot.
TEST_PATTERNS = [
    "test_{stem}{suffix}",  # Python:      test_auth.py
    "{stem}_test{suffix}",  # Go / Rust / Python: auth_test.go
    "{stem}.test{suffix}",  # JS / TS:     auth.test.ts
    "{stem}.spec{suffix}",  # JS / TS:     auth.spec.js
    "{stem}_spec{suffix}",  # Ruby:        auth_spec.rb
    "{stem}Test{suffix}",  # Java / Kotlin: AuthTest.java
]

_TEST_DIRS = {"test", "tests", "spec", "specs", "__tests__"}

_LANGUAGES = {
    "py": "python",
    "ts": "typescript",
    "tsx": "tsx",
    "js": "javascript",
    "jsx": "jsx",
    "mjs": "javascript",
    "cjs": "javascript",
    "svelte": "svelte",
    "vue": "vue",
    "go": "go",
    "rs": "rust",
    "rb": "ruby",
    "php": "php",
    "java": "java",
    "kt": "kotlin",
    "scala": "scala",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cs": "csharp",
    "swift": "swift",
    "sql": "sql",
    "sh": "bash",
    "md": "markdown",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
}


def is_code_file(file_name: str) -> bool:
    return not any(file_name.lower().endswith(ext) for ext in NON_CODE_EXTENSIONS)


def is_test_file(path: str) -> bool:
    """True when the path looks like a test or spec file by name or directory."""
    p = PurePosixPath(path)
    name = p.name
    stem = name.split(".", 1)[0]
    if stem.startswith("test_") or stem.endswith(("_test", "_spec", "Test")):
        return True
    if ".test." in name or ".spec." in name:
        return True
    return any(part in _TEST_DIRS for part in p.parts[:-1])


def paired_test_names(path: str) -> set[str]:
    """Return the test file basenames that would pair with a source file."""
    p = PurePosixPath(path)
    return {pattern.format(stem=p.stem, suffix=p.suffix) for pattern in TEST_PATTERNS}


def source_stem(path: str) -> str:
    """The importable base name of a file: "src/auth/tokens.py" -> "tokens"."""
    return PurePosixPath(path).name.split(".", 1)[0]


def detect_language(path: str) -> str:
    name = PurePosixPath(path).name.lower()
    if name == "dockerfile" or name.startswith("dockerfile."):
        return "dockerfile"
    if "." not in name:
        return "text"
    return _LANGUAGES.get(name.rsplit(".", 1)[-1], "text")


def is_excluded(filename: str, patterns: list[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*.lock", "*.min.js"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False
