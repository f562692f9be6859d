"""Token provider for the GitHub gateway.

Sources, first hit wins:
  1. GITHUB_TOKEN, then GH_TOKEN
  2. `gh auth token --hostname <host>` for a logged-in GitHub CLI session

The gateway calls the provider before building a client, so a token
rotated in the environment is picked up after the next 401. Tokens are
never written to the cache.
"""

from __future__ import annotations

import logging
import os
import subprocess
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")


def api_hostname(api_url: str | None) -> str:
    """Host name `gh` knows the session under: github.com or the Enterprise host."""
    if not api_url:
        return "github.com"
    host = urlparse(api_url).hostname or "github.com"
    return "github.com" if host == "api.github.com" else host


def _gh_cli_token(hostname: str) -> str | None:
    try:
        result = subprocess.run(
            ["gh", "auth", "token", "--hostname", hostname],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        logger.debug("gh auth token failed for %s: %s", hostname, result.stderr.strip())
        return None
    return result.stdout.strip() or None


def resolve_github_token(api_url: str | None = None) -> str | None:
    """Return a token, or None when no source has one.

    Never raises: a missing token becomes AuthExpired on the first remote
    call, so commands that only read the cache keep working offline.
    """
    for name in _ENV_VARS:
        token = os.environ.get(name)
        if token:
            return token

    token = _gh_cli_token(api_hostname(api_url))
    if token:
        logger.debug("Using the gh CLI session token.")
    return token
