"""In-memory Commit Log.

Used when the commit log is disabled in configuration, and by tests. It
keeps records for the life of the process only.
"""

from __future__ import annotations

import copy
import threading
from typing import Iterator

from reldb.ports.outbound.commit_log import CommitRecord, SyncMode


class InMemoryCommitLog:
    """Volatile implementation of the CommitLog protocol."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[CommitRecord] = []
        self._closed = False

    @property
    def sync_mode(self) -> SyncMode:
        return SyncMode.NONE

    def append(self, record: CommitRecord) -> None:
        with self._lock:
            if self._closed:
                raise IOError("commit log is closed")
            # Values dicts are shared with live row versions.
            self._records.append(copy.deepcopy(record))

    def read_all(self) -> Iterator[CommitRecord]:
        with self._lock:
            records = list(self._records)
        yield from records

    def record_count(self) -> int:
        with self._lock:
            return len(self._records)

    def close(self) -> None:
        with self._lock:
            self._closed = True
