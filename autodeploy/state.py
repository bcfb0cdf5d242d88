"""
Shared supervisor state and deploy lifetimes.

A DeployLifetime is the cancellation token handed to every blocking step of
a deploy run. SupervisorState holds the last seen commit, the current
lifetime and the active process tree behind a single lock.
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, Protocol, TypeVar

from .errors import LifetimeCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TrackedTree(Protocol):
    """What the state needs to know about a process tree."""

    pid: int


class DeployLifetime:
    """Permission for one deploy run to keep going, revocable exactly once."""

    def __init__(self, seq: int, commit: str | None = None):
        self.seq = seq
        self.commit = commit
        self.created_at = datetime.now()
        self.outcome: object | None = None
        self._cancelled = asyncio.Event()

    def __repr__(self) -> str:
        return f"<DeployLifetime #{self.seq} commit={self.commit} cancelled={self.cancelled}>"

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def cancel(self) -> bool:
        """Cancel the lifetime. Returns True only for the call that cancelled it."""
        if self.cancelled or self.finished:
            return False
        self._cancelled.set()
        return True

    def finish(self, outcome: object) -> None:
        """Record the terminal state reached by the run bound to this lifetime."""
        if self.outcome is None:
            self.outcome = outcome

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns False if cancelled first."""
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def guard(self, aw: Awaitable[T]) -> T:
        """
        Await aw unless the lifetime is cancelled first.

        Raises LifetimeCancelled when cancellation wins; the pending
        awaitable is cancelled in that case.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise LifetimeCancelled(f"deploy #{self.seq} cancelled")

        work = asyncio.ensure_future(aw)
        watcher = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()

        if self.cancelled:
            work.cancel()
            raise LifetimeCancelled(f"deploy #{self.seq} cancelled")
        return work.result()


class SupervisorState:
    """Process-wide mutable state. All field access goes through the lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last_commit: str | None = None
        self._lifetime: DeployLifetime | None = None
        self._active_tree: Any = None
        self._seq = 0

    @property
    def last_commit(self) -> str | None:
        with self._lock:
            return self._last_commit

    @property
    def lifetime(self) -> DeployLifetime | None:
        with self._lock:
            return self._lifetime

    @property
    def active_tree(self):
        with self._lock:
            return self._active_tree

    def observe_commit(self, commit: str) -> bool:
        """Store commit if it differs from the last one. Returns True on change."""
        with self._lock:
            if commit == self._last_commit:
                return False
            self._last_commit = commit
            return True

    def retire_current(self):
        """
        Cancel the current lifetime and detach the active process tree.

        Returns the detached tree (or None) so the caller can tear it down
        outside the lock.
        """
        with self._lock:
            if self._lifetime is not None and self._lifetime.cancel():
                age = datetime.now() - self._lifetime.created_at
                logger.info(f"Cancelling previous deploy #{self._lifetime.seq} (started {age} ago)")
            tree, self._active_tree = self._active_tree, None
            return tree

    def install_lifetime(self, commit: str | None = None) -> DeployLifetime:
        """Create and publish a fresh lifetime. The previous one must be retired."""
        with self._lock:
            previous = self._lifetime
            if previous is not None and not (previous.cancelled or previous.finished):
                raise RuntimeError(f"deploy #{previous.seq} is still live")
            self._seq += 1
            self._lifetime = DeployLifetime(self._seq, commit)
            return self._lifetime

    def detach_tree(self, lifetime: DeployLifetime):
        """
        Take the active tree back on behalf of the lifetime that registered it.

        Returns None when lifetime is no longer current; its tree then
        belongs to whoever retired it.
        """
        with self._lock:
            if lifetime.cancelled or lifetime is not self._lifetime:
                return None
            tree, self._active_tree = self._active_tree, None
            return tree

    def register_tree(self, tree: TrackedTree, lifetime: DeployLifetime) -> bool:
        """
        Make tree the active process tree on behalf of lifetime.

        Refused (returns False) when the lifetime was cancelled or replaced,
        so a superseded run can never publish its tree.
        """
        with self._lock:
            if lifetime.cancelled or lifetime is not self._lifetime:
                return False
            self._active_tree = tree
            return True

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "last_commit": self._last_commit,
                "lifetime": self._lifetime.seq if self._lifetime else None,
                "active_pid": self._active_tree.pid if self._active_tree else None,
            }
