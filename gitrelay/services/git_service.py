"""Git service: shallow clone and hard-reset refresh of tracked repositories."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from gitrelay.exceptions import GitSyncError

logger = logging.getLogger(__name__)

_REDACTED = "***"


@dataclass(frozen=True)
class CloneResult:
    """Outcome of a successful sync."""

    local_path: Path
    commit_sha: str
    branch: str


def authenticated_url(url: str, token: str | None) -> str:
    """Embed a token as ``x-access-token:{token}@`` in an HTTPS URL."""
    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit(
        (parts.scheme, f"x-access-token:{token}@{host}", parts.path, parts.query, parts.fragment)
    )


def redact(text: str, token: str | None) -> str:
    """Remove a secret token from text destined for logs or stored errors."""
    if not token:
        return text
    return text.replace(token, _REDACTED)


class GitService:
    """Wraps git CLI operations on the local clones under ``repos_base_path``."""

    def __init__(self, repos_base_path: Path, *, timeout: float = 300.0) -> None:
        self.repos_base_path = repos_base_path
        self.timeout = timeout

    def local_path(self, owner: str, name: str) -> Path:
        return self.repos_base_path / owner / name

    def _run(
        self,
        *args: str,
        cwd: Path | None = None,
        token: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command, converting every failure into GitSyncError."""
        try:
            return subprocess.run(
                ["git", *args],
                cwd=cwd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=_git_env(),
            )
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr.strip() if exc.stderr else "no stderr"
            msg = f"git {args[0]} failed (exit {exc.returncode}): {stderr}"
            raise GitSyncError(redact(msg, token)) from None
        except subprocess.TimeoutExpired:
            msg = f"git {args[0]} timed out after {self.timeout:g}s"
            raise GitSyncError(msg) from None
        except FileNotFoundError as exc:
            msg = f"git executable not available: {exc}"
            raise GitSyncError(msg) from None

    def clone_or_pull(
        self,
        github_url: str,
        owner: str,
        name: str,
        token: str | None = None,
    ) -> CloneResult:
        """Bring the local clone to the remote default branch head.

        A fresh checkout is a shallow single-branch clone. An existing one
        refreshes its remote URL, fetches HEAD and hard-resets to it, so any
        local drift is discarded.
        """
        path = self.local_path(owner, name)
        remote = authenticated_url(github_url, token)

        if (path / ".git").is_dir():
            logger.info("Refreshing existing clone of %s/%s", owner, name)
            self._run("remote", "set-url", "origin", remote, cwd=path, token=token)
            self._run("fetch", "--depth", "1", "origin", "HEAD", cwd=path, token=token)
            self._run("reset", "--hard", "FETCH_HEAD", cwd=path, token=token)
        else:
            if path.exists():
                shutil.rmtree(path)
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("Cloning %s/%s into %s", owner, name, path)
            self._run(
                "clone", "--depth", "1", "--single-branch", remote, str(path), token=token
            )

        commit_sha = self._run("rev-parse", "HEAD", cwd=path).stdout.strip()
        branch = self._run("rev-parse", "--abbrev-ref", "HEAD", cwd=path).stdout.strip()
        return CloneResult(local_path=path, commit_sha=commit_sha, branch=branch)

    async def sync(
        self,
        github_url: str,
        owner: str,
        name: str,
        token: str | None = None,
    ) -> CloneResult:
        """Run clone_or_pull in a worker thread."""
        return await asyncio.to_thread(self.clone_or_pull, github_url, owner, name, token)

    def remove_local_clone(self, owner: str, name: str) -> bool:
        """Delete a local clone. Returns False when there was nothing to delete."""
        path = self.local_path(owner, name)
        if not path.exists():
            return False
        shutil.rmtree(path)
        logger.info("Removed local clone %s", path)
        owner_dir = path.parent
        if owner_dir.is_dir() and not any(owner_dir.iterdir()):
            owner_dir.rmdir()
        return True


def _git_env() -> dict[str, str]:
    """Environment for git subprocesses: never prompt for credentials."""
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env
