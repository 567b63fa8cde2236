from __future__ import annotations

import csv
import json
import logging
import sqlite3
import struct
import threading
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Protocol, Sequence

from cellular_telemetry_logger.entry import LogEntry, format_rfc3339_nano
from cellular_telemetry_logger.errors import (
    AggregateError,
    CellularLogError,
    CloseError,
    ConfigurationError,
    WriteError,
    combine_errors,
)


LOGGER = logging.getLogger("cellular_telemetry_logger.writers")
CSV_HEADER: tuple[str, ...] = (
    "index",
    "message_type",
    "message_id",
    "timestamp",
    "success",
    "data",
    "error",
    "request_time",
    "response_time",
    "duration_ms",
)
_LENGTH_PREFIX = struct.Struct("<I")


class Writer(Protocol):
    def write(self, entries: Sequence[LogEntry]) -> None: ...

    def close(self) -> None: ...


def _open_output(path: str | Path, mode: str, **kwargs: Any):
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    return output_path, output_path.open(mode, **kwargs)


class JsonWriter:
    """JSON Lines: one LogEntry object per line."""

    def __init__(self, path: str | Path) -> None:
        self._path, self._file = _open_output(path, "w", encoding="utf-8")
        self._lock = threading.Lock()

    def write(self, entries: Sequence[LogEntry]) -> None:
        with self._lock:
            try:
                for entry in entries:
                    self._file.write(entry.to_json() + "\n")
                self._file.flush()
            except (OSError, TypeError, ValueError) as error:
                raise WriteError(f"failed to write JSON entry to {self._path}: {error}") from error

    def close(self) -> None:
        with self._lock:
            try:
                self._file.close()
            except OSError as error:
                raise CloseError(f"failed to close {self._path}: {error}") from error


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def csv_row(entry: LogEntry) -> list[str]:
    return [
        str(entry.index),
        entry.message_type,
        _cell(entry.message_id),
        format_rfc3339_nano(entry.timestamp),
        _cell(entry.success),
        _cell(entry.data),
        entry.error or "",
        format_rfc3339_nano(entry.request_time),
        format_rfc3339_nano(entry.response_time),
        f"{entry.duration_ms:.2f}",
    ]


class CsvWriter:
    def __init__(self, path: str | Path) -> None:
        self._path, self._file = _open_output(path, "w", encoding="utf-8", newline="")
        self._writer = csv.writer(self._file)
        self._header_written = False
        self._lock = threading.Lock()

    def write(self, entries: Sequence[LogEntry]) -> None:
        with self._lock:
            try:
                if not self._header_written:
                    self._writer.writerow(CSV_HEADER)
                    self._header_written = True
                self._writer.writerows(csv_row(entry) for entry in entries)
                self._file.flush()
            except (OSError, ValueError, csv.Error) as error:
                raise WriteError(f"failed to write CSV rows to {self._path}: {error}") from error

    def close(self) -> None:
        with self._lock:
            try:
                self._file.close()
            except OSError as error:
                raise CloseError(f"failed to close {self._path}: {error}") from error


class BinaryWriter:
    """Length-prefixed record stream: ``<uint32 LE length><JSON entry>`` repeated."""

    def __init__(self, path: str | Path) -> None:
        self._path, self._file = _open_output(path, "wb")
        self._lock = threading.Lock()

    def write(self, entries: Sequence[LogEntry]) -> None:
        with self._lock:
            try:
                for entry in entries:
                    payload = entry.to_json().encode("utf-8")
                    self._file.write(_LENGTH_PREFIX.pack(len(payload)))
                    self._file.write(payload)
                self._file.flush()
            except (OSError, TypeError, ValueError, struct.error) as error:
                raise WriteError(f"failed to write binary record to {self._path}: {error}") from error

    def close(self) -> None:
        with self._lock:
            try:
                self._file.close()
            except OSError as error:
                raise CloseError(f"failed to close {self._path}: {error}") from error


class MultiWriter:
    def __init__(self, writers: Sequence[Writer]) -> None:
        self._writers = list(writers)

    @property
    def writers(self) -> list[Writer]:
        return list(self._writers)

    def write(self, entries: Sequence[LogEntry]) -> None:
        error: BaseException | None = None
        for writer in self._writers:
            try:
                writer.write(entries)
            except (CellularLogError, OSError) as exc:
                error = combine_errors(error, exc)
        if error is not None:
            raise error if isinstance(error, AggregateError) else AggregateError([error])

    def close(self) -> None:
        error: BaseException | None = None
        for writer in self._writers:
            try:
                writer.close()
            except (CellularLogError, OSError) as exc:
                error = combine_errors(error, exc)
        if error is not None:
            raise error if isinstance(error, AggregateError) else AggregateError([error])


class SqliteWriter:
    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS log_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_index INTEGER NOT NULL,
                    message_type TEXT NOT NULL,
                    message_id TEXT,
                    success INTEGER NOT NULL,
                    data TEXT,
                    error TEXT,
                    metadata TEXT,
                    request_time_ns INTEGER NOT NULL,
                    response_time_ns INTEGER NOT NULL,
                    duration_ns INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_log_entries_type_time
                    ON log_entries (message_type, request_time_ns);
                """
            )
            self._conn.commit()

    def write(self, entries: Sequence[LogEntry]) -> None:
        rows = [
            (
                entry.index,
                entry.message_type,
                json.dumps(entry.message_id),
                1 if entry.success else 0,
                json.dumps(entry.data, default=str) if entry.data is not None else None,
                entry.error,
                json.dumps(entry.metadata, default=str) if entry.metadata else None,
                entry.request_time,
                entry.response_time,
                entry.duration,
            )
            for entry in entries
        ]
        with self._lock:
            try:
                self._conn.executemany(
                    """
                    INSERT INTO log_entries (
                        entry_index, message_type, message_id, success, data, error,
                        metadata, request_time_ns, response_time_ns, duration_ns
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                self._conn.commit()
            except sqlite3.Error as error:
                raise WriteError(f"failed to insert entries into {self._db_path}: {error}") from error

    def count_entries(self, *, message_type: str | None = None) -> int:
        with self._lock:
            if message_type is None:
                row = self._conn.execute("SELECT COUNT(*) FROM log_entries").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM log_entries WHERE message_type = ?",
                    (message_type,),
                ).fetchone()
        return int(row[0] if row else 0)

    def read_entries(self, *, message_type: str) -> list[LogEntry]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT entry_index, message_type, message_id, success, data, error,
                       metadata, request_time_ns, response_time_ns, duration_ns
                FROM log_entries
                WHERE message_type = ?
                ORDER BY id
                """,
                (message_type,),
            ).fetchall()
        return [
            LogEntry(
                index=int(index),
                message_type=str(row_type),
                message_id=json.loads(message_id) if message_id is not None else None,
                success=bool(success),
                data=json.loads(data) if data is not None else None,
                error=error,
                metadata=json.loads(metadata) if metadata is not None else None,
                request_time=int(request_time),
                response_time=int(response_time),
                duration=int(duration),
            )
            for index, row_type, message_id, success, data, error, metadata, request_time, response_time, duration in rows
        ]

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as error:
                raise CloseError(f"failed to close {self._db_path}: {error}") from error


def iter_binary_records(stream: BinaryIO) -> Iterator[LogEntry]:
    """Decode a length-prefixed stream; a truncated final record ends it."""
    while True:
        header = stream.read(_LENGTH_PREFIX.size)
        if not header:
            return
        if len(header) < _LENGTH_PREFIX.size:
            LOGGER.warning("truncated record header at end of stream (%d bytes)", len(header))
            return
        (length,) = _LENGTH_PREFIX.unpack(header)
        payload = stream.read(length)
        if len(payload) < length:
            LOGGER.warning("truncated record at end of stream (%d of %d bytes)", len(payload), length)
            return
        yield LogEntry.from_dict(json.loads(payload.decode("utf-8")))


def read_binary_log(path: str | Path) -> list[LogEntry]:
    with Path(path).open("rb") as stream:
        return list(iter_binary_records(stream))


def read_json_log(path: str | Path) -> list[LogEntry]:
    entries: list[LogEntry] = []
    with Path(path).open("r", encoding="utf-8") as stream:
        for line in stream:
            line = line.strip()
            if line:
                entries.append(LogEntry.from_dict(json.loads(line)))
    return entries


_FORMATS: dict[str, tuple[str, type]] = {
    "json": (".json", JsonWriter),
    "csv": (".csv", CsvWriter),
    "binary": (".bin", BinaryWriter),
    "sqlite": (".db", SqliteWriter),
}


def supported_formats() -> list[str]:
    return list(_FORMATS)


def create_single_writer(output_format: str, file_prefix: str) -> Writer:
    try:
        extension, factory = _FORMATS[output_format.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"unsupported output format: {output_format}") from None
    return factory(file_prefix + extension)


def create_writer(output_formats: str | Sequence[str], file_prefix: str) -> Writer:
    if isinstance(output_formats, str):
        output_formats = output_formats.split(",")
    formats = [fmt.strip() for fmt in output_formats if fmt.strip()]
    if not formats:
        raise ConfigurationError("no output format specified")
    if len(formats) == 1:
        return create_single_writer(formats[0], file_prefix)

    writers: list[Writer] = []
    for output_format in formats:
        try:
            writers.append(create_single_writer(output_format, file_prefix))
        except (ConfigurationError, OSError, sqlite3.Error):
            for writer in writers:
                try:
                    writer.close()
                except CloseError as error:
                    LOGGER.warning("error closing writer: %s", error)
            raise
    return MultiWriter(writers)
