"""
Change detection against the hosting service.

Resolves the tip commit of the checked-out branch through the GitHub REST
API and compares it with the last commit the supervisor has seen.
"""

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from .config import config
from .errors import RepoError
from .repo import GitRepo
from .state import SupervisorState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    """Outcome of a successful poll."""

    commit: str
    changed: bool


class ChangeDetector:
    """Polls the hosting service for the tip of the tracked branch."""

    def __init__(
        self,
        state: SupervisorState,
        repo: GitRepo,
        token: str,
        api_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._state = state
        self.repo = repo
        self.token = token
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.timeout = min(timeout or config.request_timeout, 15.0)
        self._transport = transport

    def commits_url(self, slug: str, branch: str) -> str:
        return f"{self.api_url}/repos/{slug}/commits/{quote(branch, safe='/')}"

    async def _resolve_target(self) -> tuple[str, str] | None:
        try:
            branch = await asyncio.to_thread(self.repo.current_branch)
        except RepoError as e:
            logger.error(f"Cannot get current branch: {e}")
            return None
        try:
            slug = await asyncio.to_thread(self.repo.remote_slug)
        except RepoError as e:
            logger.error(f"Cannot get repo owner/name: {e}")
            return None
        return slug, branch

    async def fetch_tip(self) -> str | None:
        """Fetch the tip commit of the tracked branch. Returns None on any failure."""
        target = await self._resolve_target()
        if target is None:
            return None
        url = self.commits_url(*target)

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {self.token}",
                        "Accept": "application/vnd.github+json",
                    },
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.error(f"Request error for {url}: {e}")
            return None

        if response.status_code != 200:
            logger.error(f"Bad status from {url}: {response.status_code} {response.reason_phrase}")
            return None

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Decode error: {e}")
            return None

        sha = data.get("sha") if isinstance(data, dict) else None
        if not isinstance(sha, str) or not sha.strip():
            logger.error("Decode error: response has no commit sha")
            return None
        return sha.strip()

    async def poll(self) -> PollResult | None:
        """
        Fetch the tip commit and record it if it moved.

        Returns None when the cycle was skipped. Only a successful poll with
        a different commit mutates the shared state.
        """
        commit = await self.fetch_tip()
        if commit is None:
            return None

        changed = self._state.observe_commit(commit)
        if changed:
            logger.info(f"New commit detected: {commit}")
        return PollResult(commit=commit, changed=changed)
