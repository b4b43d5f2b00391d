"""
Per-report locks serializing every mutation of a report's workflow state
within one process. Cross-process safety comes from compare-and-swap state
saves and history idempotency keys.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List


class ReportLockManager:
    """
    Hands out one re-entrant lock per report id.

    Entries are reference counted and dropped once the last holder (or
    waiter) leaves, so the map only covers reports currently in use.
    """

    def __init__(self):
        # report_id -> [lock, holders]
        self._locks: Dict[str, List] = {}
        self._guard = threading.Lock()

    def _acquire_entry(self, report_id: str) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(report_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[report_id] = entry
            entry[1] += 1
            return entry[0]

    def _release_entry(self, report_id: str) -> None:
        with self._guard:
            entry = self._locks[report_id]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[report_id]

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, report_id: str):
        lock = self._acquire_entry(report_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(report_id)
