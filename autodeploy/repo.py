"""
Local git collaborator.

Read-only lookups of the checked-out branch and the origin remote, plus the
cancellable `git pull` that every deploy attempt starts with.
"""

import asyncio
import logging
import re
import subprocess
from pathlib import Path

from .errors import LifetimeCancelled, RepoError
from .state import DeployLifetime

logger = logging.getLogger(__name__)

_REMOTE_PATTERNS = [
    re.compile(r"^git@[^:]+:(?P<slug>.+)$"),
    re.compile(r"^(?:https?|ssh|git)://(?:[^@/]+@)?[^/]+/(?P<slug>.+)$"),
]


def parse_remote_slug(url: str) -> str:
    """
    Extract "owner/repo" from a remote URL.

    Accepts scp-style (git@github.com:owner/repo.git) and URL-style
    (https://github.com/owner/repo, ssh://git@github.com/owner/repo.git)
    remotes.
    """
    url = url.strip()
    for pattern in _REMOTE_PATTERNS:
        match = pattern.match(url)
        if match:
            slug = match.group("slug").rstrip("/")
            slug = slug.removesuffix(".git")
            if slug.count("/") == 1 and all(slug.split("/")):
                return slug
            break
    raise RepoError(f"Cannot parse owner/repo from remote URL: {url!r}")


class GitRepo:
    """A git working copy."""

    def __init__(self, path: Path | str = "."):
        self.path = Path(path)

    def _git(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RepoError(f"git {' '.join(args)} failed: {e}") from e

        if result.returncode != 0:
            raise RepoError(
                f"git {' '.join(args)} exited with {result.returncode}",
                output=result.stderr.strip(),
            )
        return result.stdout.strip()

    def current_branch(self) -> str:
        branch = self._git("rev-parse", "--abbrev-ref", "HEAD")
        if not branch or branch == "HEAD":
            raise RepoError("HEAD is detached, no branch to track")
        return branch

    def remote_url(self, remote: str = "origin") -> str:
        url = self._git("config", "--get", f"remote.{remote}.url")
        if not url:
            raise RepoError(f"Remote {remote} has no URL")
        return url

    def remote_slug(self, remote: str = "origin") -> str:
        return parse_remote_slug(self.remote_url(remote))

    async def pull(self, lifetime: DeployLifetime) -> None:
        """
        Run `git pull` bound to lifetime.

        Raises RepoError on failure and LifetimeCancelled if the lifetime is
        cancelled first (the git process is killed).
        """
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                "pull",
                cwd=self.path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise RepoError(f"git pull could not start: {e}") from e

        try:
            output, _ = await lifetime.guard(process.communicate())
        except LifetimeCancelled:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise

        text = output.decode("utf-8", errors="replace").strip() if output else ""
        if process.returncode != 0:
            raise RepoError(f"git pull exited with {process.returncode}", output=text)
        if text:
            logger.debug(f"git pull: {text}")
