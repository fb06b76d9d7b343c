"""Thread-safe git operations coordinator for parallel execution.

Operations that mutate shared repository metadata (worktree registration,
branch creation, merges into staging) run from several scheduler threads.
They are serialized through one process-wide re-entrant lock.
"""

from __future__ import annotations

import functools
import threading
from typing import Any, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class GitCoordinator:
    """Serialize git operations on the shared repository."""

    _instance: Optional[GitCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> GitCoordinator:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._git_lock = threading.RLock()
        return cls._instance

    def execute_git_operation(
        self,
        operation: Callable[[], T],
        operation_name: str = "git operation",
    ) -> T:
        """Execute a git operation with the global lock.

        Args:
            operation: Function that performs the git operation.
            operation_name: Name of the operation for logging.

        Returns:
            Result of the operation.
        """
        thread_id = threading.current_thread().name
        logger.trace("Thread {} waiting for git lock ({})", thread_id, operation_name)
        with self._git_lock:
            logger.trace("Thread {} acquired git lock ({})", thread_id, operation_name)
            return operation()


_git_coordinator = GitCoordinator()


def get_git_coordinator() -> GitCoordinator:
    return _git_coordinator


def with_git_lock(func: Callable[..., T]) -> Callable[..., T]:
    """Decorator to run a function under the git lock."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        return get_git_coordinator().execute_git_operation(
            lambda: func(*args, **kwargs),
            operation_name=func.__name__,
        )

    return wrapper
