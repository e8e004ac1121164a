"""
Per-plan mutation locks.

Mutating engine runs for the same plan (builder, status transitions, monitor
alert writes, adaptation, remediation, cleanup) serialize on the plan's lock;
runs for different plans proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class PlanLockRegistry:
    """Hands out one re-entrant lock per plan id"""

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, plan_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(plan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[plan_id] = lock
            return lock

    @contextmanager
    def hold(self, plan_id: int) -> Iterator[None]:
        lock = self.lock_for(plan_id)
        with lock:
            yield


_plan_locks = None


def get_plan_locks() -> PlanLockRegistry:
    """Get the process-wide plan lock registry"""
    global _plan_locks
    if _plan_locks is None:
        _plan_locks = PlanLockRegistry()
    return _plan_locks
