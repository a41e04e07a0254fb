"""Outbound adapters - implementations of outbound ports.

Both adapters implement the CommitLog port: a length-prefixed, checksummed
file and an in-memory list for engines that need no durability.
"""

from reldb.adapters.outbound.file_commit_log import FileCommitLog
from reldb.adapters.outbound.memory_commit_log import InMemoryCommitLog

__all__ = [
    "FileCommitLog",
    "InMemoryCommitLog",
]
