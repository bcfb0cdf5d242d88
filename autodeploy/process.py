"""
Process group controller for the deployment command.

Starts the deploy command as the leader of a new process group so that a
single signal reaches everything it forks, forwards its output into the
supervisor log, and tears the whole group down before the next deploy.
"""

import asyncio
import logging
import os
import signal
import subprocess
import threading
from datetime import datetime
from pathlib import Path

import psutil

from .config import config
from .errors import LaunchError, LifetimeCancelled
from .state import DeployLifetime, SupervisorState

logger = logging.getLogger(__name__)
deploy_logger = logging.getLogger("autodeploy.deploy")


class ProcessTree:
    """A deploy process and every descendant in its process group."""

    def __init__(self, process: subprocess.Popen, command: str):
        self.process = process
        self.command = command
        self.pid = process.pid
        # start_new_session makes the leader's pid the group id
        self.pgid = process.pid
        self.started_at = datetime.now()

    def __repr__(self) -> str:
        return f"<ProcessTree pgid={self.pgid} command={self.command!r}>"

    @property
    def returncode(self) -> int | None:
        return self.process.poll()

    def group_members(self) -> list[psutil.Process]:
        """Live processes in the group, including ones reparented after the leader exited."""
        members = []
        for proc in psutil.process_iter():
            try:
                if os.getpgid(proc.pid) == self.pgid:
                    members.append(proc)
            except (ProcessLookupError, PermissionError, psutil.Error):
                continue
        return members

    def terminate_all(self) -> bool:
        """SIGKILL the whole group. Returns False if nothing was left to signal."""
        try:
            os.killpg(self.pgid, signal.SIGKILL)
        except ProcessLookupError:
            return False
        return True

    def wait(self) -> int:
        return self.process.wait()

    def reap(self, timeout: float | None = None) -> int | None:
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Leader {self.pid} not reaped after {timeout}s")
            return None


class ProcessGroupController:
    """Owns at most one active deploy process tree at a time."""

    def __init__(
        self,
        state: SupervisorState,
        cwd: Path | str | None = None,
        shell: str | None = None,
        port_release_delay: float | None = None,
        descendant_wait_timeout: float | None = None,
    ):
        self._state = state
        self.cwd = cwd
        self.shell = shell or config.deploy_shell
        self.port_release_delay = (
            config.port_release_delay if port_release_delay is None else port_release_delay
        )
        self.descendant_wait_timeout = (
            config.descendant_wait_timeout
            if descendant_wait_timeout is None
            else descendant_wait_timeout
        )

    async def teardown(self, tree, release_ports: bool = True) -> None:
        """
        Kill a previous process tree and wait until it is gone.

        A missing tree is a no-op. A tree that already exited is not an error.
        """
        if tree is None:
            return

        members = await asyncio.to_thread(tree.group_members)
        if not members and tree.returncode is not None:
            # The pgid is free once the reaped leader has no group left; it may be reused.
            logger.info(f"Process group {tree.pgid} already exited, nothing to kill")
            return

        logger.info(
            f"Killing process group {tree.pgid} ({len(members)} live processes, "
            f"up {datetime.now() - tree.started_at})"
        )

        if not tree.terminate_all():
            logger.info(f"Process group {tree.pgid} had already exited")

        await asyncio.to_thread(tree.reap, self.descendant_wait_timeout)

        if members:
            _, alive = await asyncio.to_thread(
                psutil.wait_procs, members, timeout=self.descendant_wait_timeout
            )
            if alive:
                logger.warning(
                    f"{len(alive)} processes of group {tree.pgid} still alive: "
                    f"{[p.pid for p in alive]}"
                )

        if release_ports and self.port_release_delay > 0:
            # Ports held by the killed tree are not released instantly.
            await asyncio.sleep(self.port_release_delay)

    async def launch(self, command: str, lifetime: DeployLifetime) -> ProcessTree:
        """
        Start command in a new process group and register it as active.

        A tree left by an earlier attempt of the same lifetime is torn down
        first, so children it backgrounded cannot outlive it.

        Raises LaunchError if the process cannot be started and
        LifetimeCancelled if the lifetime was superseded meanwhile (the new
        tree is killed before anyone can see it).
        """
        if lifetime.cancelled:
            raise LifetimeCancelled(f"deploy #{lifetime.seq} cancelled before launch")

        await self.teardown(self._state.detach_tree(lifetime))
        if lifetime.cancelled:
            raise LifetimeCancelled(f"deploy #{lifetime.seq} cancelled before launch")

        try:
            process = subprocess.Popen(
                [self.shell, "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=self.cwd,
                env=os.environ.copy(),
                start_new_session=True,  # Create new process group
            )
        except OSError as e:
            raise LaunchError(f"Failed to start deploy command: {e}") from e

        tree = ProcessTree(process, command)
        threading.Thread(
            target=self._capture_output,
            args=(tree,),
            name=f"deploy-output-{tree.pid}",
            daemon=True,
        ).start()

        if not self._state.register_tree(tree, lifetime):
            tree.terminate_all()
            tree.reap(self.descendant_wait_timeout)
            raise LifetimeCancelled(f"deploy #{lifetime.seq} superseded during launch")

        logger.info(f"Started deploy #{lifetime.seq} with PID {tree.pid}")
        return tree

    def _capture_output(self, tree: ProcessTree):
        """Forward merged stdout/stderr of the deploy command into the log."""
        stream = tree.process.stdout
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    deploy_logger.info(decoded)
        except (OSError, ValueError) as e:
            logger.error(f"Error in log capture for PID {tree.pid}: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass
