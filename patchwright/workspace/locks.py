"""Per-project mutual exclusion for branch-mutating git calls."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ProjectLocks:
    """
    One re-entrant lock per project id.

    Held only around git mutations (branch creation, apply, commit, push).
    Model calls and preflight never run under it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, project_id: str) -> threading.RLock:
        with self._guard:
            if project_id not in self._locks:
                self._locks[project_id] = threading.RLock()
            return self._locks[project_id]

    @contextmanager
    def hold(self, project_id: str) -> Iterator[None]:
        with self.lock_for(project_id):
            yield
