from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator

from cellular_telemetry_logger.entry import LogEntry
from cellular_telemetry_logger.errors import (
    AggregateError,
    CellularLogError,
    CloseError,
    ConfigurationError,
    RequestCancelledError,
    RequestError,
    combine_errors,
)
from cellular_telemetry_logger.messages import Message, MessageKey, RequestKind

if TYPE_CHECKING:
    from cellular_telemetry_logger.exporter import ProcessorMetricsPublisher
    from cellular_telemetry_logger.requesters import Requester
    from cellular_telemetry_logger.writers import Writer


LOGGER = logging.getLogger("cellular_telemetry_logger.processor")
DEFAULT_FLUSH_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class TickResult:
    entries: list[LogEntry] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MessageStatistics:
    message_type: str
    total: int
    successful: int
    success_rate: float
    average_response_time: float


def _next_deadline(previous: float, period: float, now: float) -> float:
    # Missed ticks collapse into one instead of firing back to back.
    deadline = previous + period
    if deadline <= now:
        deadline += ((now - deadline) // period + 1) * period
    return deadline


def _without_cancellations(error: BaseException | None) -> BaseException | None:
    if error is None or isinstance(error, RequestCancelledError):
        return None
    if isinstance(error, AggregateError):
        remaining = [item for item in error.errors if not isinstance(item, RequestCancelledError)]
        if not remaining:
            return None
        return remaining[0] if len(remaining) == 1 else AggregateError(remaining)
    return error


class Processor:
    """Polls registered messages on a background thread and batches their entries.

    Three timing domains are involved: ``interval`` between request ticks,
    ``flush_interval`` between unconditional flushes, and each requester's own
    per-request timeout. Requests run one after another on the worker thread,
    so a slow backend stretches the tick rather than dropping messages.
    """

    def __init__(
        self,
        interval: float,
        writer: Writer,
        batch_size: int,
        messages: Iterable[Message] = (),
        *,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        metrics: ProcessorMetricsPublisher | None = None,
    ) -> None:
        if interval <= 0:
            raise ConfigurationError("request interval must be positive")
        if flush_interval <= 0:
            raise ConfigurationError("flush interval must be positive")
        if batch_size < 1:
            raise ConfigurationError("batch size must be at least 1")

        self.telemetry: Requester | None = None
        self.modem: Requester | None = None

        self._interval = interval
        self._flush_interval = flush_interval
        self._writer = writer
        self._batch_size = batch_size
        self._metrics = metrics

        self._messages: dict[MessageKey, Message] = {}
        self._messages_lock = threading.Lock()

        self._buffer: list[LogEntry] = []
        self._buffer_lock = threading.Lock()

        self._cancelled = threading.Event()
        self._worker: threading.Thread | None = None
        self._outstanding_error: BaseException | None = None

        self._close_lock = threading.Lock()
        self._closed = False
        self._close_error: BaseException | None = None

        for message in messages:
            self.add_message(message)

    @property
    def cancelled(self) -> threading.Event:
        return self._cancelled

    def requester_for(self, kind: RequestKind) -> Requester | None:
        if kind is RequestKind.TELEMETRY:
            return self.telemetry
        return self.modem

    def add_message(self, message: Message) -> Message:
        """Register ``message``; if its identity is already polled the existing one is kept and returned."""
        with self._messages_lock:
            return self._messages.setdefault(message.key, message)

    def remove_message(self, message: Message) -> None:
        with self._messages_lock:
            self._messages.pop(message.key, None)

    def get_messages(self) -> list[Message]:
        with self._messages_lock:
            return list(self._messages.values())

    def buffered_entries(self) -> int:
        with self._buffer_lock:
            return len(self._buffer)

    def start(self) -> None:
        if self._cancelled.is_set():
            raise RuntimeError("processor is closed")
        if self._worker is not None:
            raise RuntimeError("processor already started")
        self._worker = threading.Thread(target=self._loop, name="cellular-log-processor", daemon=True)
        self._worker.start()
        LOGGER.info(
            "processor started: %d messages, interval %.3fs, batch size %d",
            len(self.get_messages()),
            self._interval,
            self._batch_size,
        )

    def _loop(self) -> None:
        started = time.monotonic()
        next_request = started + self._interval
        next_flush = started + self._flush_interval

        while True:
            wait_for = max(0.0, min(next_request, next_flush) - time.monotonic())
            if self._cancelled.wait(wait_for):
                self.flush()
                return

            if time.monotonic() >= next_request:
                self._run_tick()
                next_request = _next_deadline(next_request, self._interval, time.monotonic())

            if time.monotonic() >= next_flush:
                self.flush()
                next_flush = _next_deadline(next_flush, self._flush_interval, time.monotonic())

    def _run_tick(self) -> None:
        try:
            result = self.poll_once()
        except Exception:
            LOGGER.exception("unexpected error during request tick. Continuing...")
            return
        if result.error is None:
            return
        if self._cancelled.is_set():
            self._outstanding_error = _without_cancellations(result.error)
        LOGGER.warning("error processing: %s. Continuing...", result.error)

    def poll_once(self) -> TickResult:
        """Request every registered message once, in snapshot order, buffering each entry."""
        entries: list[LogEntry] = []
        error: BaseException | None = None
        for message in self.get_messages():
            try:
                entry = message.request(self)
            except RequestError as exc:
                error = combine_errors(error, exc)
                if exc.entry is None:
                    continue
                entry = exc.entry
            except Exception as exc:
                LOGGER.exception("unexpected error requesting %s", message.get_type())
                error = combine_errors(error, exc)
                continue
            entries.append(entry)
            if self._metrics is not None:
                self._metrics.apply_entry(entry)
            self._add_log_entry(entry)

        if self._metrics is not None:
            self._metrics.apply_tick(observed_at=time.time(), messages_total=len(entries))
        return TickResult(entries=entries, error=error)

    def _add_log_entry(self, entry: LogEntry) -> None:
        with self._buffer_lock:
            self._buffer.append(entry)
            if len(self._buffer) >= self._batch_size:
                self._flush_locked()
            elif self._metrics is not None:
                self._metrics.set_buffered(len(self._buffer))

    def flush(self) -> None:
        with self._buffer_lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        ok = True
        try:
            self._writer.write(batch)
        except (CellularLogError, OSError) as error:
            ok = False
            LOGGER.error("error writing logs: %s", error)
        except Exception:
            ok = False
            LOGGER.exception("error writing logs")
        if self._metrics is not None:
            self._metrics.apply_flush(entries=len(batch), success=ok)
            self._metrics.set_buffered(0)

    def close(self) -> None:
        """Stop polling, flush, and close the writer.

        Runs once; every later call raises the same error (or returns) without
        doing anything.
        """
        with self._close_lock:
            if not self._closed:
                self._closed = True
                self._close_error = self._shutdown()
        if self._close_error is not None:
            raise self._close_error

    def _shutdown(self) -> BaseException | None:
        self._cancelled.set()
        if self._worker is not None:
            self._worker.join()
        else:
            self.flush()

        error = self._outstanding_error
        try:
            self._writer.close()
        except (CellularLogError, OSError) as exc:
            error = combine_errors(error, CloseError(f"error closing writer: {exc}"))

        LOGGER.info("processor stopped")
        if error is None:
            return None
        close_error = CloseError(f"error while closing processor: {error}")
        close_error.__cause__ = error
        return close_error

    def __enter__(self) -> "Processor":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _matching_entries(self, message_type: str) -> Iterator[LogEntry]:
        for message in self.get_messages():
            if message.get_type() == message_type:
                yield from message.get_all_entries()

    def get_success_rate(self, message_type: str) -> float:
        total = 0
        successful = 0
        for entry in self._matching_entries(message_type):
            total += 1
            if entry.success:
                successful += 1
        if total == 0:
            return 0.0
        return successful / total * 100

    def get_average_response_time(self, message_type: str) -> float:
        """Mean duration in seconds of successful responses; 0 when there are none."""
        durations = [
            entry.duration
            for entry in self._matching_entries(message_type)
            if entry.success and entry.duration > 0
        ]
        if not durations:
            return 0.0
        return sum(durations) / len(durations) / 1e9

    def get_statistics(self) -> list[MessageStatistics]:
        statistics: list[MessageStatistics] = []
        for message in sorted(self.get_messages(), key=lambda item: item.get_type()):
            entries = message.get_all_entries()
            successful = [entry for entry in entries if entry.success]
            timed = [entry.duration for entry in successful if entry.duration > 0]
            statistics.append(
                MessageStatistics(
                    message_type=message.get_type(),
                    total=len(entries),
                    successful=len(successful),
                    success_rate=(len(successful) / len(entries) * 100) if entries else 0.0,
                    average_response_time=(sum(timed) / len(timed) / 1e9) if timed else 0.0,
                )
            )
        return statistics
