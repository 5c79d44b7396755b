"""
Cleanup Stack

Ordered registry of teardown actions.

- register() returns a handle that can later be removed
- run_all() unwinds last-registered-first, once per action
- a failing action is recorded and the unwind continues
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from .errors import TeardownError
from .metrics import METRICS

logger = logging.getLogger("convergence_harness.cleanup")


@dataclass(frozen=True)
class CleanupHandle:
    """Identifies one registered action. The generation tag keeps handles
    from different stacks (or reused indexes) from colliding."""

    index: int
    generation: int


@dataclass
class CleanupAction:
    handle: CleanupHandle
    description: str
    fn: Callable[[], None]
    removed: bool = False
    executed: bool = False

    @property
    def pending(self) -> bool:
        return not (self.removed or self.executed)


class CleanupStack:
    """
    One stack per scenario. The lock makes a shared instance safe, but
    scenarios running in parallel should each own their stack.

    Usable as a context manager: leaving the block always unwinds.
    """

    _generations = 0
    _generations_lock = threading.Lock()

    def __init__(self):
        with CleanupStack._generations_lock:
            CleanupStack._generations += 1
            self._generation = CleanupStack._generations
        self._lock = threading.RLock()
        self._actions: List[CleanupAction] = []
        self.errors: List[TeardownError] = []

    def register(self, fn: Callable[[], None], description: str = "") -> CleanupHandle:
        with self._lock:
            handle = CleanupHandle(index=len(self._actions), generation=self._generation)
            self._actions.append(
                CleanupAction(handle=handle, description=description or fn.__name__, fn=fn)
            )
        logger.debug("registered cleanup action %s: %s", handle.index, description)
        return handle

    def remove(self, handle: CleanupHandle) -> bool:
        """Skip the action for good. Unknown or already-run handles are ignored."""
        with self._lock:
            action = self._lookup(handle)
            if action is None or not action.pending:
                return False
            action.removed = True
            return True

    def pending(self) -> int:
        with self._lock:
            return sum(1 for a in self._actions if a.pending)

    def _lookup(self, handle: CleanupHandle) -> Optional[CleanupAction]:
        if handle.generation != self._generation:
            return None
        if 0 <= handle.index < len(self._actions):
            return self._actions[handle.index]
        return None

    def _pop_next(self) -> Optional[CleanupAction]:
        with self._lock:
            for action in reversed(self._actions):
                if action.pending:
                    action.executed = True
                    return action
            return None

    def run_all(self) -> List[TeardownError]:
        """
        Execute every pending action in LIFO order.

        Actions registered while unwinding run too. Returns the errors of
        this unwind; they are also accumulated on self.errors.
        """
        errors: List[TeardownError] = []
        while True:
            action = self._pop_next()
            if action is None:
                break
            logger.info("Running cleanup action: %s", action.description)
            try:
                action.fn()
            except Exception as e:
                error = TeardownError(action.description, e)
                logger.error("%s", error)
                METRICS["cleanup_failures"].inc()
                errors.append(error)
        self.errors.extend(errors)
        return errors

    def __enter__(self) -> "CleanupStack":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.run_all()
        return False
