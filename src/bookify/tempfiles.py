"""Ownership of files in the shared temp directory."""

import os
import threading
from typing import Dict, Set


class TempFileRegistry:
    """Temp files currently owned by in-flight jobs.

    The processor claims a job's input and output paths while it runs and
    releases them at the terminal write; the cleanup sweeper skips claimed
    paths regardless of their age.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._owned: Dict[str, Set[str]] = {}

    def claim(self, job_id: str, *paths: str) -> None:
        with self._lock:
            owned = self._owned.setdefault(job_id, set())
            owned.update(os.path.abspath(p) for p in paths)

    def release(self, job_id: str) -> None:
        with self._lock:
            self._owned.pop(job_id, None)

    def is_claimed(self, path: str) -> bool:
        target = os.path.abspath(path)
        with self._lock:
            return any(target in paths for paths in self._owned.values())
