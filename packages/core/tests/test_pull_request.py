"""Tests for the GitHub host client."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests
from github import GithubException

from prsteps_core.errors import UpstreamFetchError
from prsteps_core.gh.pull_request import GitHubHost

SHA = "a" * 40
SHA2 = "b" * 40


def _host(mocker, repo=None):
    repo = repo or MagicMock()
    get_repo = mocker.patch("prsteps_core.gh.pull_request.get_repo", return_value=repo)
    return GitHubHost("token"), repo, get_repo


def _file(name, patch="@@ -1 +1 @@\n-a\n+b", status="modified"):
    return SimpleNamespace(
        filename=name, status=status, additions=1, deletions=1, patch=patch, previous_filename=None
    )


class TestFetch:
    def test_fetch_pull_metadata(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_pull.return_value = SimpleNamespace(
            title="Fix auth",
            user=SimpleNamespace(login="alice"),
            base=SimpleNamespace(ref="main", sha=SHA),
            head=SimpleNamespace(ref="fix-auth", sha=SHA2),
        )
        meta = host.fetch_pull("owner/repo", 7)
        assert meta == {
            "title": "Fix auth",
            "author": "alice",
            "base_ref": "main",
            "head_ref": "fix-auth",
            "base_sha": SHA,
            "head_sha": SHA2,
        }
        repo.get_pull.assert_called_once_with(7)

    def test_fetch_files(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_pull.return_value.get_files.return_value = [_file("a.py"), _file("logo.png", patch=None)]
        files = host.fetch_files("owner/repo", 7)
        assert [f["filename"] for f in files] == ["a.py", "logo.png"]
        assert files[1]["patch"] is None

    def test_repository_cached(self, mocker):
        host, repo, get_repo = _host(mocker)
        repo.get_pull.return_value.get_files.return_value = []
        host.fetch_files("owner/repo", 1)
        host.fetch_files("owner/repo", 2)
        get_repo.assert_called_once_with("owner/repo", "token", 60)

    def test_resolve_default_branch(self, mocker):
        host, repo, _ = _host(mocker)
        repo.default_branch = "main"
        repo.get_branch.return_value.commit.sha = SHA
        assert host.resolve_commit("owner/repo") == SHA
        repo.get_branch.assert_called_once_with("main")


class TestTree:
    def test_list_tree_blobs_only(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_git_tree.return_value = SimpleNamespace(
            tree=[
                SimpleNamespace(path="src", type="tree", size=None),
                SimpleNamespace(path="src/auth.py", type="blob", size=120),
            ],
            raw_data={"truncated": False},
        )
        entries, truncated = host.list_tree("owner/repo", SHA)
        assert entries == [("src/auth.py", 120)]
        assert truncated is False
        repo.get_git_tree.assert_called_once_with(SHA, recursive=True)

    def test_list_tree_truncated(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_git_tree.return_value = SimpleNamespace(tree=[], raw_data={"truncated": True})
        assert host.list_tree("owner/repo", SHA) == ([], True)

    def test_read_file_pinned_to_sha(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_contents.return_value.decoded_content = b"def login(): pass\n"
        assert host.read_file("owner/repo", "src/auth.py", SHA) == "def login(): pass\n"
        repo.get_contents.assert_called_once_with("src/auth.py", ref=SHA)


class TestDiff:
    def test_fetch_diff_requests_diff_media_type(self, mocker):
        get = mocker.patch("prsteps_core.gh.pull_request.requests.get")
        get.return_value.text = "diff --git a/a.py b/a.py\n"
        raw = GitHubHost("token", timeout=5).fetch_diff("owner/repo", 7)
        assert raw == "diff --git a/a.py b/a.py\n"
        url = get.call_args.args[0]
        headers = get.call_args.kwargs["headers"]
        assert url == "https://api.github.com/repos/owner/repo/pulls/7"
        assert headers["Accept"] == "application/vnd.github.v3.diff"
        assert headers["Authorization"] == "Bearer token"
        assert get.call_args.kwargs["timeout"] == 5

    def test_fetch_diff_without_token_is_anonymous(self, mocker):
        get = mocker.patch("prsteps_core.gh.pull_request.requests.get")
        get.return_value.text = ""
        GitHubHost(None).fetch_diff("owner/repo", 7)
        assert "Authorization" not in get.call_args.kwargs["headers"]

    def test_fetch_diff_not_found_is_terminal(self, mocker):
        response = requests.Response()
        response.status_code = 404
        get = mocker.patch("prsteps_core.gh.pull_request.requests.get")
        get.return_value.raise_for_status.side_effect = requests.exceptions.HTTPError("404", response=response)
        with pytest.raises(UpstreamFetchError) as exc_info:
            GitHubHost("token").fetch_diff("owner/repo", 7)
        assert exc_info.value.status == 404
        assert exc_info.value.retryable is False


class TestErrors:
    def test_not_found_is_terminal(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_pull.side_effect = GithubException(404, {"message": "Not Found"}, None)
        with pytest.raises(UpstreamFetchError) as exc_info:
            host.fetch_pull("owner/repo", 7)
        assert exc_info.value.status == 404
        assert exc_info.value.retryable is False

    def test_server_error_is_retryable(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_git_tree.side_effect = GithubException(502, {"message": "Bad Gateway"}, None)
        with pytest.raises(UpstreamFetchError) as exc_info:
            host.list_tree("owner/repo", SHA)
        assert exc_info.value.retryable is True

    def test_auth_failure_is_retryable(self, mocker):
        host, repo, _ = _host(mocker)
        repo.get_contents.side_effect = GithubException(403, {"message": "rate limited"}, None)
        with pytest.raises(UpstreamFetchError) as exc_info:
            host.read_file("owner/repo", "a.py", SHA)
        assert exc_info.value.retryable is True

    def test_network_error_is_retryable(self, mocker):
        mocker.patch("prsteps_core.gh.pull_request.get_repo", side_effect=requests.exceptions.ConnectTimeout("slow"))
        with pytest.raises(UpstreamFetchError) as exc_info:
            GitHubHost("token").fetch_pull("owner/repo", 7)
        assert exc_info.value.status is None
        assert exc_info.value.retryable is True
