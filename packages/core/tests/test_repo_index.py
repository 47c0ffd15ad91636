"""Tests for the repository symbol index and its single-flight cache."""

import threading

import pytest

from prsteps_core.errors import RepoTooLargeError, UpstreamFetchError
from prsteps_core.repo_index import RepoIndexCache, build_repo_index
from prsteps_store.memory import MemoryStore
from prsteps_store.models import RepoContextIndex

TREE = {
    "src/auth.py": "def refresh_token(user):\n    return user\n",
    "src/api.py": "from auth import refresh_token\n\ndef handler(req):\n    return refresh_token(req.user)\n",
    "tests/test_auth.py": "from src.auth import refresh_token\n\ndef test_refresh():\n    assert refresh_token(None)\n",
    "README.md": "# refresh_token docs\n",
    "logo.png": "",
}


class _Host:
    def __init__(self, tree=None, truncated=False, sizes=None, read_errors=None):
        self.tree = TREE if tree is None else tree
        self.truncated = truncated
        self.sizes = sizes or {}
        self.read_errors = read_errors or {}
        self.reads = []

    def list_tree(self, repo_id, sha):
        return [(path, self.sizes.get(path, len(text))) for path, text in self.tree.items()], self.truncated

    def read_file(self, repo_id, path, sha):
        self.reads.append(path)
        if path in self.read_errors:
            raise self.read_errors[path]
        return self.tree[path]


# ---------------------------------------------------------------------------
# build_repo_index
# ---------------------------------------------------------------------------


class TestBuildRepoIndex:
    def test_definitions_references_and_imports(self):
        index = build_repo_index(_Host(), "owner/repo", "abc1234", {})
        assert index.definitions["refresh_token"] == [["src/auth.py", 1]]
        assert index.definitions["handler"] == [["src/api.py", 3]]
        assert index.references["refresh_token"] == [
            ["src/api.py", 1],
            ["src/api.py", 4],
            ["tests/test_auth.py", 1],
            ["tests/test_auth.py", 4],
        ]
        assert index.imports == {"src/api.py": ["auth"], "tests/test_auth.py": ["auth"]}
        assert index.truncated is False

    def test_non_code_files_not_indexed(self):
        host = _Host()
        index = build_repo_index(host, "owner/repo", "abc1234", {})
        assert index.files == ["src/api.py", "src/auth.py", "tests/test_auth.py"]
        assert "README.md" not in host.reads
        assert "logo.png" not in host.reads

    def test_large_files_skipped(self):
        host = _Host(sizes={"src/api.py": 10_000_000})
        index = build_repo_index(host, "owner/repo", "abc1234", {"max_file_bytes": 1000})
        assert "src/api.py" not in index.files
        assert "handler" not in index.definitions

    def test_file_cap_marks_truncated(self):
        index = build_repo_index(_Host(), "owner/repo", "abc1234", {"max_indexed_files": 2})
        assert index.files == ["src/api.py", "src/auth.py"]
        assert index.truncated is True

    def test_host_truncation_propagates(self):
        index = build_repo_index(_Host(truncated=True), "owner/repo", "abc1234", {})
        assert index.truncated is True
        assert "refresh_token" in index.definitions

    def test_truncated_and_empty_tree_too_large(self):
        with pytest.raises(RepoTooLargeError):
            build_repo_index(_Host(tree={}, truncated=True), "owner/repo", "abc1234", {})

    def test_unreadable_file_skipped_and_marks_truncated(self):
        host = _Host(read_errors={"src/api.py": UpstreamFetchError("Not Found", status=404)})
        index = build_repo_index(host, "owner/repo", "abc1234", {})
        assert index.files == ["src/auth.py", "tests/test_auth.py"]
        assert index.truncated is True
        assert index.definitions["refresh_token"] == [["src/auth.py", 1]]
        assert "handler" not in index.definitions

    def test_transient_read_failure_propagates(self):
        host = _Host(read_errors={"src/api.py": UpstreamFetchError("Bad Gateway", status=502)})
        with pytest.raises(UpstreamFetchError):
            build_repo_index(host, "owner/repo", "abc1234", {})

    def test_empty_tree_is_an_empty_index(self):
        index = build_repo_index(_Host(tree={}), "owner/repo", "abc1234", {})
        assert index.definitions == {}
        assert index.truncated is False

    def test_layout_and_key_files_recorded(self):
        index = build_repo_index(_Host(), "owner/repo", "abc1234", {})
        assert index.layout == [
            "README.md",
            "logo.png",
            "src/",
            "src/api.py",
            "src/auth.py",
            "tests/",
            "tests/test_auth.py",
        ]
        assert index.key_files == ["README.md"]

    def test_layout_includes_unindexed_files(self):
        host = _Host(sizes={"src/api.py": 10_000_000})
        index = build_repo_index(host, "owner/repo", "abc1234", {"max_indexed_files": 1})
        assert "src/api.py" in index.layout
        assert index.files == ["src/auth.py"]


# ---------------------------------------------------------------------------
# RepoIndexCache
# ---------------------------------------------------------------------------


class TestRepoIndexCache:
    def test_store_hit_skips_build(self):
        store = MemoryStore()
        store.save_repo_index(RepoContextIndex(repo_id="owner/repo", commit_sha="abc"))
        builder_calls = []
        cache = RepoIndexCache(store, lambda repo, sha: builder_calls.append(sha))
        assert cache.get_or_build("owner/repo", "abc").commit_sha == "abc"
        assert builder_calls == []
        assert cache.builds == 0

    def test_builds_once_and_persists(self):
        store = MemoryStore()
        cache = RepoIndexCache(store, lambda repo, sha: RepoContextIndex(repo_id=repo, commit_sha=sha))
        cache.get_or_build("owner/repo", "abc")
        cache.get_or_build("owner/repo", "abc")
        assert cache.builds == 1
        assert store.get_repo_index("owner/repo", "abc") is not None

    def test_different_commits_build_separately(self):
        cache = RepoIndexCache(MemoryStore(), lambda repo, sha: RepoContextIndex(repo_id=repo, commit_sha=sha))
        cache.get_or_build("owner/repo", "abc")
        cache.get_or_build("owner/repo", "def")
        assert cache.builds == 2

    def test_concurrent_requests_share_one_build(self):
        started = threading.Event()
        release = threading.Event()

        def slow_builder(repo, sha):
            started.set()
            release.wait(5)
            return RepoContextIndex(repo_id=repo, commit_sha=sha, definitions={"login": [["a.py", 1]]})

        cache = RepoIndexCache(MemoryStore(), slow_builder)
        results = []

        def fetch():
            results.append(cache.get_or_build("owner/repo", "abc"))

        leader = threading.Thread(target=fetch)
        leader.start()
        assert started.wait(5)
        followers = [threading.Thread(target=fetch) for _ in range(4)]
        for t in followers:
            t.start()
        release.set()
        for t in [leader, *followers]:
            t.join(5)

        assert cache.builds == 1
        assert len(results) == 5
        assert all(r.definitions == {"login": [["a.py", 1]]} for r in results)

    def test_failures_are_not_cached(self):
        outcomes = [UpstreamFetchError("502", status=502), None]

        def flaky(repo, sha):
            error = outcomes.pop(0)
            if error is not None:
                raise error
            return RepoContextIndex(repo_id=repo, commit_sha=sha)

        cache = RepoIndexCache(MemoryStore(), flaky)
        with pytest.raises(UpstreamFetchError):
            cache.get_or_build("owner/repo", "abc")
        assert cache.get_or_build("owner/repo", "abc").commit_sha == "abc"
        assert cache.builds == 2
