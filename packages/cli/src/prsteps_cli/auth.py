"""GitHub token and reviewer identity resolution with gh CLI fallback.

Token resolution order (stops at first success):
  1. GITHUB_TOKEN environment variable (CI / explicit override)
  2. `gh auth token` (GitHub CLI session, works after `gh auth login`)

Reviewer identity (who owns a session and may regenerate it):
  1. --user on the command line
  2. PRSTEPS_USER environment variable
  3. `gh api user` login of the current GitHub CLI session
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger(__name__)


def _gh(*args: str) -> str | None:
    """Run a gh subcommand and return its stripped stdout, or None."""
    try:
        result = subprocess.run(["gh", *args], capture_output=True, text=True, timeout=5)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        # gh is not installed or timed out.
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def resolve_github_token() -> str | None:
    """Return a GitHub token or None if no valid source is available.

    Never raises; callers should check for None and emit a UsageError.
    """
    token = os.environ.get("GITHUB_TOKEN")
    if token:
        return token

    gh_token = _gh("auth", "token")
    if gh_token:
        logger.debug("Resolved GitHub token via gh CLI session.")
    return gh_token


def resolve_user(explicit: str | None = None) -> str | None:
    """Return the reviewer identity or None when it cannot be determined."""
    if explicit:
        return explicit
    user = os.environ.get("PRSTEPS_USER")
    if user:
        return user
    login = _gh("api", "user", "--jq", ".login")
    if login:
        logger.debug("Resolved reviewer %s via gh CLI session.", login)
    return login
