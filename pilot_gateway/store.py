"""SQLite-backed append-only store of decoded telemetry samples."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .core.models import TelemetrySample
from .errors import StorageError

LOGGER = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS telemetry (
    timestamp INTEGER PRIMARY KEY,
    latitude REAL,
    longitude REAL,
    altitude REAL,
    elevation REAL,
    attitude_pitch REAL,
    attitude_roll REAL,
    attitude_head REAL,
    horizontal_speed REAL,
    vertical_speed REAL,
    received_at INTEGER
)
"""

_COLUMNS = (
    "timestamp",
    "latitude",
    "longitude",
    "altitude",
    "elevation",
    "attitude_pitch",
    "attitude_roll",
    "attitude_head",
    "horizontal_speed",
    "vertical_speed",
    "received_at",
)

_UPSERT = (
    f"INSERT INTO telemetry ({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(timestamp) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _COLUMNS[1:])
)

_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM telemetry"

Row = Tuple[object, ...]


def _to_row(sample: TelemetrySample) -> Row:
    return (
        sample.timestamp,
        sample.latitude,
        sample.longitude,
        sample.altitude,
        sample.elevation,
        sample.attitude_pitch,
        sample.attitude_roll,
        sample.attitude_heading,
        sample.horizontal_speed,
        sample.vertical_speed,
        sample.received_at,
    )


def _from_row(row: Sequence[object]) -> TelemetrySample:
    return TelemetrySample(
        timestamp=int(row[0]),  # type: ignore[arg-type]
        latitude=row[1],  # type: ignore[arg-type]
        longitude=row[2],  # type: ignore[arg-type]
        altitude=row[3],  # type: ignore[arg-type]
        elevation=row[4],  # type: ignore[arg-type]
        attitude_pitch=row[5],  # type: ignore[arg-type]
        attitude_roll=row[6],  # type: ignore[arg-type]
        attitude_heading=row[7],  # type: ignore[arg-type]
        horizontal_speed=row[8],  # type: ignore[arg-type]
        vertical_speed=row[9],  # type: ignore[arg-type]
        received_at=int(row[10]) if row[10] is not None else 0,  # type: ignore[arg-type]
    )


class TelemetryRange:
    """Restartable view over the rows selected when the range was requested.

    Iterating twice yields the same samples; later appends are not visible.
    """

    def __init__(self, rows: List[Row]) -> None:
        self._rows = rows

    def __iter__(self) -> Iterator[TelemetrySample]:
        for row in self._rows:
            yield _from_row(row)

    def __len__(self) -> int:
        return len(self._rows)


class TelemetryStore:
    """Durable telemetry table keyed by sample timestamp.

    A single connection is shared across threads; every statement runs under
    ``_lock`` so concurrent upserts of the same timestamp cannot interleave.
    """

    def __init__(self, path: Union[str, Path] = ":memory:") -> None:
        self._path = str(path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._open()

    def _open(self) -> None:
        if self._path != ":memory:":
            Path(self._path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self._path, check_same_thread=False, timeout=10)
            if self._path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(_SCHEMA)
            conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open telemetry store {self._path}: {exc}") from exc
        self._conn = conn
        LOGGER.info("Telemetry store ready at %s", self._path)

    @property
    def path(self) -> str:
        return self._path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Telemetry store is closed")
        return self._conn

    def append(self, sample: TelemetrySample) -> None:
        """Insert ``sample``, replacing any sample with the same timestamp."""

        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute(_UPSERT, _to_row(sample))
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError(
                    f"Failed to store sample {sample.timestamp}: {exc}"
                ) from exc

    def latest(self) -> Optional[TelemetrySample]:
        with self._lock:
            conn = self._connection()
            try:
                row = conn.execute(
                    f"{_SELECT} ORDER BY timestamp DESC LIMIT 1"
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to read latest sample: {exc}") from exc
        return _from_row(row) if row else None

    def range(
        self, from_ts: Optional[int] = None, to_ts: Optional[int] = None
    ) -> TelemetryRange:
        """Samples with ``from_ts <= timestamp <= to_ts`` ordered by timestamp."""

        clauses = []
        params: List[int] = []
        if from_ts is not None:
            clauses.append("timestamp >= ?")
            params.append(int(from_ts))
        if to_ts is not None:
            clauses.append("timestamp <= ?")
            params.append(int(to_ts))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            conn = self._connection()
            try:
                rows = conn.execute(
                    f"{_SELECT}{where} ORDER BY timestamp ASC", params
                ).fetchall()
            except (sqlite3.Error, OverflowError) as exc:
                raise StorageError(f"Failed to read telemetry range: {exc}") from exc
        return TelemetryRange(rows)

    def count(self) -> int:
        with self._lock:
            conn = self._connection()
            try:
                (value,) = conn.execute("SELECT COUNT(*) FROM telemetry").fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to count samples: {exc}") from exc
        return int(value)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
