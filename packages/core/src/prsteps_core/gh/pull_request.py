"""Repository host access over PyGithub.

Every read is pinned to an explicit commit SHA so the diff, the tree and
any file content always come from the same immutable snapshot.
"""

from __future__ import annotations

import logging
import threading

import requests
from github import Github, GithubException

from prsteps_core.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
# GitHub drops per-file patches for large files; the diff media type does not.
_DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


def get_repo(repo_name: str, token: str | None, timeout: int = 60):
    return Github(token, timeout=timeout).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_diff(pr):
    return pr.get_files()


class GitHubHost:
    """The repository-host collaborator used by the pipeline stages.

    Host failures surface as UpstreamFetchError carrying the HTTP status, so
    the dispatcher can tell a missing pull request (terminal) from a rate
    limit or an outage (retryable).
    """

    def __init__(self, token: str | None, timeout: int = 60):
        self.token = token
        self.timeout = timeout
        self._repos: dict[str, object] = {}
        self._lock = threading.Lock()

    def _repo(self, repo_id: str):
        with self._lock:
            repo = self._repos.get(repo_id)
        if repo is None:
            repo = self._call(f"get repository {repo_id}", get_repo, repo_id, self.token, self.timeout)
            with self._lock:
                self._repos.setdefault(repo_id, repo)
        return repo

    @staticmethod
    def _call(what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except GithubException as e:
            raise UpstreamFetchError(f"Could not {what}: {e}", status=e.status) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise UpstreamFetchError(f"Could not {what}: {e}", status=status) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamFetchError(f"Could not {what}: {e}") from e

    def fetch_pull(self, repo_id: str, number: int) -> dict:
        repo = self._repo(repo_id)
        pr = self._call(f"fetch {repo_id}#{number}", get_pull, repo, number)
        return {
            "title": pr.title or "",
            "author": pr.user.login if pr.user else "",
            "base_ref": pr.base.ref,
            "head_ref": pr.head.ref,
            "base_sha": pr.base.sha,
            "head_sha": pr.head.sha,
        }

    def fetch_files(self, repo_id: str, number: int) -> list[dict]:
        repo = self._repo(repo_id)

        def _files():
            pr = get_pull(repo, number)
            return [
                {
                    "filename": f.filename,
                    "status": f.status,
                    "additions": f.additions,
                    "deletions": f.deletions,
                    "patch": f.patch,
                    "previous_filename": f.previous_filename,
                }
                # PaginatedList: iterating pulls every page inside this call.
                for f in get_diff(pr)
            ]

        return self._call(f"list files of {repo_id}#{number}", _files)

    def fetch_diff(self, repo_id: str, number: int) -> str:
        """Return the pull request as one unified diff.

        Unlike fetch_files, this covers large files that GitHub lists without
        a patch.
        """
        headers = {"Accept": _DIFF_MEDIA_TYPE}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        def _diff():
            response = requests.get(
                f"{API_URL}/repos/{repo_id}/pulls/{number}", headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
            return response.text

        return self._call(f"fetch diff of {repo_id}#{number}", _diff)

    def resolve_commit(self, repo_id: str, ref: str | None = None) -> str:
        """Resolve a branch name (default branch when None) to a commit SHA."""
        repo = self._repo(repo_id)

        def _resolve():
            return repo.get_branch(ref or repo.default_branch).commit.sha

        return self._call(f"resolve {ref or 'default branch'} of {repo_id}", _resolve)

    def list_tree(self, repo_id: str, sha: str) -> tuple[list[tuple[str, int]], bool]:
        """Return ([(path, size), ...], truncated) for every blob at sha.

        GitHub silently truncates recursive trees beyond its own limits and
        flags that in the raw payload.
        """
        repo = self._repo(repo_id)
        tree = self._call(f"list tree {sha[:7]} of {repo_id}", repo.get_git_tree, sha, recursive=True)
        entries = [(e.path, e.size or 0) for e in tree.tree if e.type == "blob"]
        truncated = bool((getattr(tree, "raw_data", None) or {}).get("truncated", False))
        if truncated:
            logger.warning("Host returned a truncated tree for %s@%s (%d entries).", repo_id, sha[:7], len(entries))
        return entries, truncated

    def read_file(self, repo_id: str, path: str, sha: str) -> str:
        repo = self._repo(repo_id)
        contents = self._call(f"read {path}@{sha[:7]}", repo.get_contents, path, ref=sha)
        return contents.decoded_content.decode("utf-8", errors="replace")
