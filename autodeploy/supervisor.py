"""
Supervisor loop.

Polls for new commits on a fixed interval. Every detected change retires
the current deploy (cancel its lifetime, kill its process tree) and starts a
fresh deploy run in the background.
"""

import asyncio
import logging

from .config import config
from .detector import ChangeDetector
from .process import ProcessGroupController
from .runner import DeployRunner
from .state import SupervisorState

logger = logging.getLogger(__name__)


class Supervisor:
    """Ties change detection, teardown and deploy runs together."""

    def __init__(
        self,
        state: SupervisorState,
        detector: ChangeDetector,
        controller: ProcessGroupController,
        runner: DeployRunner,
        poll_interval: float | None = None,
    ):
        self.state = state
        self.detector = detector
        self.controller = controller
        self.runner = runner
        self.poll_interval = config.poll_interval if poll_interval is None else poll_interval
        self._deploys: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def deploy_tasks(self) -> set[asyncio.Task]:
        return set(self._deploys)

    async def tick(self) -> asyncio.Task | None:
        """Run one poll cycle. Returns the deploy task if one was started."""
        result = await self.detector.poll()
        if result is None or not result.changed:
            return None
        return await self.redeploy(result.commit)

    async def redeploy(self, commit: str | None = None) -> asyncio.Task:
        """Retire the current deploy and start a new one."""
        previous_tree = self.state.retire_current()
        if previous_tree is not None:
            logger.info("Killing previous deploy process group...")
        try:
            await self.controller.teardown(previous_tree)
        except Exception as e:
            logger.error(f"Failed to tear down previous deploy: {e}")

        lifetime = self.state.install_lifetime(commit)
        task = asyncio.create_task(self.runner.run(lifetime), name=f"deploy-{lifetime.seq}")
        self._deploys.add(task)
        task.add_done_callback(self._deploy_done)
        return task

    def _deploy_done(self, task: asyncio.Task):
        self._deploys.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Deploy task {task.get_name()} crashed: {task.exception()!r}")

    async def run_forever(self):
        """Tick until stop() is called."""
        logger.info(f"Watching for new commits every {self.poll_interval}s")
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in supervisor tick: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        await self.shutdown()

    def stop(self):
        self._stopping.set()

    async def shutdown(self):
        """Cancel the current deploy and kill its process tree."""
        logger.info("Shutting down autodeploy...")
        tree = self.state.retire_current()
        await self.controller.teardown(tree, release_ports=False)

        if self._deploys:
            await asyncio.wait(self._deploys, timeout=self.poll_interval)
