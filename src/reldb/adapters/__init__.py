"""Adapters layer - concrete implementations of port interfaces.

Adapters provide the actual implementations:
- Inbound adapters: turn incoming requests into engine calls (SQL text, REST)
- Outbound adapters: implement external dependencies (commit log storage)
"""

from reldb.adapters.outbound import FileCommitLog, InMemoryCommitLog

__all__ = [
    # Outbound adapters
    "FileCommitLog",
    "InMemoryCommitLog",
]
