"""File-based Commit Log implementation.

This adapter implements the CommitLog protocol with a single append-only
file. Each committed transaction becomes one JSON document.

File Format:
    - File Header (12 bytes): magic, version
    - Records: [length(4) + json_bytes + CRC32(4)] ...

A record whose length, payload or checksum is incomplete or wrong marks a
torn tail left by a crash during append; reading stops there and the file
is truncated to the last good record when it is reopened for writing.

Typed column values are tagged so they survive the JSON round trip:
``{"$decimal": "12.50"}``, ``{"$date": "2024-01-31"}`` and
``{"$timestamp": "2024-01-31T10:00:00"}``.

Thread Safety:
    Appends are serialized internally.
"""

from __future__ import annotations

import json
import os
import struct
import threading
import zlib
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, BinaryIO, Iterator

from reldb.domain.value_objects import RowId, TableId, Timestamp, TransactionId
from reldb.infrastructure.logging import get_logger
from reldb.ports.outbound.commit_log import (
    CommitRecord,
    OperationKind,
    RowOperation,
    SyncMode,
)


logger = get_logger(__name__, component="commit_log")

FILE_MAGIC = b"RELDBLOG"
FILE_VERSION = 1
FILE_HEADER_FORMAT = ">8sI"  # magic, version
FILE_HEADER_SIZE = struct.calcsize(FILE_HEADER_FORMAT)

# Record wrapper format: length(4) + data + crc32(4)
RECORD_LENGTH_FORMAT = ">I"
RECORD_CRC_FORMAT = ">I"
RECORD_OVERHEAD = 8


def encode_value(value: Any) -> Any:
    """JSON-compatible form of a column value."""
    if isinstance(value, Decimal):
        return {"$decimal": str(value)}
    # datetime is a subclass of date: test it first.
    if isinstance(value, datetime):
        return {"$timestamp": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict) and len(value) == 1:
        (tag, text), = value.items()
        if tag == "$decimal":
            return Decimal(text)
        if tag == "$timestamp":
            return datetime.fromisoformat(text)
        if tag == "$date":
            return date.fromisoformat(text)
    return value


def record_to_bytes(record: CommitRecord) -> bytes:
    payload = {
        "txn_id": record.txn_id,
        "commit_ts": record.commit_ts,
        "catalog": record.catalog,
        "ops": [
            [
                op.kind.value,
                op.table_id,
                op.row_id,
                None if op.values is None else {k: encode_value(v) for k, v in op.values.items()},
            ]
            for op in record.operations
        ],
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def record_from_bytes(data: bytes) -> CommitRecord:
    payload = json.loads(data.decode("utf-8"))
    operations = [
        RowOperation(
            kind=OperationKind(kind),
            table_id=TableId(table_id),
            row_id=RowId(row_id),
            values=None if values is None else {k: decode_value(v) for k, v in values.items()},
        )
        for kind, table_id, row_id, values in payload["ops"]
    ]
    return CommitRecord(
        txn_id=TransactionId(payload["txn_id"]),
        commit_ts=Timestamp(payload["commit_ts"]),
        operations=operations,
        catalog=payload.get("catalog"),
    )


class FileCommitLog:
    """File-based implementation of the CommitLog protocol.

    Attributes:
        path: The log file.
        sync_mode: How appends are made durable.
    """

    def __init__(self, path: str | Path, sync_mode: SyncMode = SyncMode.FSYNC) -> None:
        """Open (or create) the commit log.

        Args:
            path: Log file path; parent directories are created.
            sync_mode: Sync mode for durability.
        """
        self._path = Path(path)
        self._sync_mode = sync_mode
        self._lock = threading.Lock()
        self._closed = False
        self._record_count = 0

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file: BinaryIO | None = None
        self._open()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def sync_mode(self) -> SyncMode:
        """Return the current sync mode."""
        return self._sync_mode

    def _open(self) -> None:
        if not self._path.exists() or self._path.stat().st_size < FILE_HEADER_SIZE:
            self._file = open(self._path, "w+b")
            self._file.write(struct.pack(FILE_HEADER_FORMAT, FILE_MAGIC, FILE_VERSION))
            self._sync()
            return

        self._check_header()
        good_end = FILE_HEADER_SIZE
        for end, _ in self._scan():
            good_end = end
            self._record_count += 1

        self._file = open(self._path, "r+b")
        if good_end < self._path.stat().st_size:
            logger.warning(
                "commit_log_tail_truncated",
                path=str(self._path),
                offset=good_end,
                size=self._path.stat().st_size,
            )
            self._file.truncate(good_end)
        self._file.seek(good_end)

    def _check_header(self) -> None:
        with open(self._path, "rb") as f:
            header = f.read(FILE_HEADER_SIZE)
        magic, version = struct.unpack(FILE_HEADER_FORMAT, header)
        if magic != FILE_MAGIC:
            raise ValueError(f"Invalid commit log magic: {magic!r}")
        if version != FILE_VERSION:
            raise ValueError(f"Unsupported commit log version: {version}")

    def _scan(self) -> Iterator[tuple[int, bytes]]:
        """Yield (end offset, payload) of each intact record."""
        with open(self._path, "rb") as f:
            f.seek(FILE_HEADER_SIZE)
            while True:
                length_data = f.read(4)
                if len(length_data) < 4:
                    return
                (length,) = struct.unpack(RECORD_LENGTH_FORMAT, length_data)
                if length == 0:
                    return

                data = f.read(length)
                crc_data = f.read(4)
                if len(data) < length or len(crc_data) < 4:
                    return

                (stored_crc,) = struct.unpack(RECORD_CRC_FORMAT, crc_data)
                if stored_crc != zlib.crc32(data) & 0xFFFFFFFF:
                    return
                yield f.tell(), data

    def _sync(self) -> None:
        if self._file is None or self._sync_mode == SyncMode.NONE:
            return
        self._file.flush()
        if self._sync_mode == SyncMode.FSYNC:
            os.fsync(self._file.fileno())

    def append(self, record: CommitRecord) -> None:
        """Append a commit record and sync it per the sync mode.

        Raises:
            IOError: If the write fails or the log is closed.
        """
        data = record_to_bytes(record)
        crc = zlib.crc32(data) & 0xFFFFFFFF
        wrapped = (
            struct.pack(RECORD_LENGTH_FORMAT, len(data))
            + data
            + struct.pack(RECORD_CRC_FORMAT, crc)
        )

        with self._lock:
            if self._closed or self._file is None:
                raise IOError("commit log is closed")
            self._file.write(wrapped)
            self._sync()
            self._record_count += 1

    def read_all(self) -> Iterator[CommitRecord]:
        """Read all intact records in append order."""
        with self._lock:
            if self._file is not None:
                self._file.flush()
        for _, data in self._scan():
            yield record_from_bytes(data)

    def record_count(self) -> int:
        return self._record_count

    def close(self) -> None:
        """Close the log and release resources."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._file is not None:
                self._file.flush()
                if self._sync_mode != SyncMode.NONE:
                    os.fsync(self._file.fileno())
                self._file.close()
                self._file = None

    def __enter__(self) -> FileCommitLog:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
