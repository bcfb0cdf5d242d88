"""
Deploy runner: pull, launch, wait, retry.

Each run is bound to one DeployLifetime and walks an explicit state machine
until the deploy command exits cleanly (Done) or the lifetime is cancelled
(Cancelled). Failures never end a run; they back off and start over from
the pull.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable

from .config import config
from .errors import LaunchError, LifetimeCancelled, RepoError
from .process import ProcessGroupController
from .repo import GitRepo
from .state import DeployLifetime

logger = logging.getLogger(__name__)


class DeployState(Enum):
    PULLING_SOURCE = "pulling_source"
    LAUNCHING = "launching"
    RUNNING = "running"
    RETRY_BACKOFF = "retry_backoff"
    CANCELLED = "cancelled"
    DONE = "done"


TERMINAL_STATES = frozenset({DeployState.CANCELLED, DeployState.DONE})


class DeployRunner:
    """Runs the deploy command for one lifetime at a time."""

    def __init__(
        self,
        repo: GitRepo,
        controller: ProcessGroupController,
        command: str,
        retry_delay: float | None = None,
    ):
        self.repo = repo
        self.controller = controller
        self.command = command
        self.retry_delay = config.retry_delay if retry_delay is None else retry_delay
        self._on_transition: Callable[[DeployLifetime, DeployState], None] = None

    def set_transition_callback(self, callback: Callable[[DeployLifetime, DeployState], None]):
        """Set callback for state changes: callback(lifetime, new_state)."""
        self._on_transition = callback

    async def run(self, lifetime: DeployLifetime) -> None:
        """Drive the state machine until Done or Cancelled."""
        state = DeployState.PULLING_SOURCE
        attempt = 0
        tree = None
        self._enter(lifetime, state)

        while state not in TERMINAL_STATES:
            try:
                if state is DeployState.PULLING_SOURCE:
                    attempt += 1
                    state = await self._pull(lifetime, attempt)
                elif state is DeployState.LAUNCHING:
                    tree, state = await self._launch(lifetime)
                elif state is DeployState.RUNNING:
                    state = await self._wait(lifetime, tree)
                    tree = None
                elif state is DeployState.RETRY_BACKOFF:
                    state = await self._backoff(lifetime)
            except LifetimeCancelled:
                state = DeployState.CANCELLED
            except Exception:
                logger.exception(f"Deploy #{lifetime.seq} hit an unexpected error")
                state = DeployState.RETRY_BACKOFF
            self._enter(lifetime, state)

        lifetime.finish(state)
        if state is DeployState.CANCELLED:
            logger.info(f"Deploy #{lifetime.seq} cancelled")
        else:
            logger.info(f"Deploy #{lifetime.seq} finished successfully")

    def _enter(self, lifetime: DeployLifetime, state: DeployState):
        logger.debug(f"Deploy #{lifetime.seq} -> {state.value}")
        if self._on_transition:
            self._on_transition(lifetime, state)

    async def _pull(self, lifetime: DeployLifetime, attempt: int) -> DeployState:
        if lifetime.cancelled:
            return DeployState.CANCELLED

        logger.info(f"Starting deploy #{lifetime.seq} (attempt {attempt})...")
        try:
            await self.repo.pull(lifetime)
        except RepoError as e:
            logger.error(f"git pull failed: {e}")
            if e.output:
                logger.error(e.output)
            return DeployState.RETRY_BACKOFF
        return DeployState.LAUNCHING

    async def _launch(self, lifetime: DeployLifetime):
        try:
            tree = await self.controller.launch(self.command, lifetime)
        except LaunchError as e:
            logger.error(str(e))
            return None, DeployState.RETRY_BACKOFF
        return tree, DeployState.RUNNING

    async def _wait(self, lifetime: DeployLifetime, tree) -> DeployState:
        returncode = await lifetime.guard(asyncio.to_thread(tree.wait))

        # The group kill of a teardown can land before the cancel is observed
        if lifetime.cancelled:
            return DeployState.CANCELLED
        if returncode != 0:
            logger.error(f"Deploy command failed with exit code {returncode}")
            return DeployState.RETRY_BACKOFF
        return DeployState.DONE

    async def _backoff(self, lifetime: DeployLifetime) -> DeployState:
        logger.info(f"Retrying deploy #{lifetime.seq} in {self.retry_delay}s")
        if not await lifetime.sleep(self.retry_delay):
            return DeployState.CANCELLED
        return DeployState.PULLING_SOURCE
