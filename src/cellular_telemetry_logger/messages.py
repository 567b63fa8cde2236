from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, NoReturn, cast

from cellular_telemetry_logger.entry import LogEntry
from cellular_telemetry_logger.errors import (
    BackendTypeMismatchError,
    BackendUnavailableError,
    ProtocolError,
    RequestCancelledError,
    RequestError,
    RequestTimeoutError,
    StreamClosedError,
)

if TYPE_CHECKING:
    from cellular_telemetry_logger.decoders import Decoder
    from cellular_telemetry_logger.processor import Processor
    from cellular_telemetry_logger.requesters import ModemBackend, Requester, TelemetryBackend


LOGGER = logging.getLogger("cellular_telemetry_logger.messages")


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class RequestKind(Enum):
    TELEMETRY = "mavlink"
    MODEM = "at"


# Members of TelemetryBackend / ModemBackend a requester needs beyond ``kind``.
_BACKEND_MEMBERS: dict[RequestKind, tuple[str, ...]] = {
    RequestKind.TELEMETRY: ("send_request", "next_frame", "timeout", "poll_interval"),
    RequestKind.MODEM: ("execute",),
}


@dataclass(frozen=True)
class MessageKey:
    kind: RequestKind
    identity: int | str


@dataclass(frozen=True)
class TelemetryFrame:
    message_id: int
    payload: dict[str, Any]


class Message:
    """A pollable unit: one MAVLink message id or one AT command.

    The message owns its own history. ``request`` routes it to the backend the
    processor holds for its kind; the requester calls back into ``process``,
    which performs the exchange and records exactly one LogEntry per call,
    whatever the outcome.
    """

    def __init__(
        self,
        kind: RequestKind,
        identity: int | str,
        *,
        decoder: Decoder,
        name: str | None = None,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        if kind is RequestKind.TELEMETRY and (isinstance(identity, bool) or not isinstance(identity, int)):
            raise TypeError(f"telemetry message identity must be an int, got {identity!r}")
        if kind is RequestKind.MODEM and not isinstance(identity, str):
            raise TypeError(f"modem message identity must be a command string, got {identity!r}")
        self.key = MessageKey(kind, identity)
        self.decoder = decoder
        self.name = name
        self._clock = clock
        self._index = 0
        self._entries: list[LogEntry] = []
        self._lock = threading.Lock()

    @property
    def kind(self) -> RequestKind:
        return self.key.kind

    @property
    def identity(self) -> int | str:
        return self.key.identity

    def get_type(self) -> str:
        return f"{self.kind.value}-{self.identity}"

    def get_all_entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def __repr__(self) -> str:
        return f"Message({self.get_type()!r}, name={self.name!r})"

    def request(self, processor: Processor) -> LogEntry:
        requester = processor.requester_for(self.kind)
        if requester is None:
            self._fail(
                BackendUnavailableError,
                f"no {self.kind.value} backend configured for {self.get_type()}",
                request_time=self._clock(),
            )
        return requester.process(self, processor.cancelled)

    def process(self, requester: Requester, cancel: threading.Event | None = None) -> LogEntry:
        request_time = self._clock()
        requester_kind = getattr(requester, "kind", None)
        if requester_kind is not self.kind:
            self._fail(
                BackendTypeMismatchError,
                f"backend type mismatch: {self.get_type()} cannot be processed by "
                f"{type(requester).__name__} ({getattr(requester_kind, 'value', 'unknown')})",
                request_time=request_time,
            )

        missing = [name for name in _BACKEND_MEMBERS[self.kind] if not hasattr(requester, name)]
        if missing:
            self._fail(
                BackendTypeMismatchError,
                f"backend type mismatch: {type(requester).__name__} cannot process {self.get_type()} "
                f"(missing {', '.join(missing)})",
                request_time=request_time,
            )

        if self.kind is RequestKind.TELEMETRY:
            return self._process_telemetry(cast("TelemetryBackend", requester), request_time, cancel)
        return self._process_modem(cast("ModemBackend", requester), request_time)

    def _process_telemetry(
        self,
        requester: TelemetryBackend,
        request_time: int,
        cancel: threading.Event | None,
    ) -> LogEntry:
        try:
            requester.send_request(int(self.identity))
        except ProtocolError as error:
            self._fail(ProtocolError, f"failed to send request: {error}", request_time=request_time)
        except Exception as error:
            self._fail(ProtocolError, f"failed to send request: {_describe(error)}", request_time=request_time)

        deadline = time.monotonic() + requester.timeout
        skipped = 0
        while True:
            # Shutdown wins over the per-request deadline.
            if cancel is not None and cancel.is_set():
                self._fail(RequestCancelledError, "context cancelled", request_time=request_time)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._fail(RequestTimeoutError, "request timeout", request_time=request_time)

            try:
                frame = requester.next_frame(min(remaining, requester.poll_interval))
            except StreamClosedError as error:
                self._fail(StreamClosedError, f"telemetry stream closed: {error}", request_time=request_time)
            except Exception as error:
                self._fail(
                    ProtocolError,
                    f"error while reading telemetry: {_describe(error)}",
                    request_time=request_time,
                )

            if frame is None:
                continue
            if frame.message_id != self.identity:
                skipped += 1
                continue

            response_time = self._clock()
            if skipped:
                LOGGER.debug("%s: skipped %d unrelated frames", self.get_type(), skipped)
            data = self._decode(frame.payload, request_time=request_time)
            return self._record(
                success=True,
                data=data,
                request_time=request_time,
                response_time=response_time,
            )

    def _process_modem(self, requester: ModemBackend, request_time: int) -> LogEntry:
        try:
            lines = requester.execute(str(self.identity))
        except ProtocolError as error:
            self._fail(ProtocolError, f"error while sending AT commands: {error}", request_time=request_time)
        except Exception as error:
            self._fail(
                ProtocolError,
                f"error while sending AT commands: {_describe(error)}",
                request_time=request_time,
            )

        response_time = self._clock()
        data = self._decode(lines, request_time=request_time)
        return self._record(
            success=True,
            data=data,
            request_time=request_time,
            response_time=response_time,
        )

    def _decode(self, raw: Any, *, request_time: int) -> Any:
        try:
            return self.decoder.decode(raw)
        except Exception as error:
            self._fail(
                ProtocolError,
                f"failed to decode {self.get_type()} response: {error}",
                request_time=request_time,
            )

    def _metadata(self) -> dict[str, Any]:
        metadata: dict[str, Any] = {"protocol": self.kind.value}
        if self.name:
            metadata["name"] = self.name
        return metadata

    def _record(
        self,
        *,
        success: bool,
        request_time: int,
        data: Any = None,
        error: str | None = None,
        response_time: int = 0,
    ) -> LogEntry:
        with self._lock:
            entry = LogEntry(
                index=self._index,
                message_type=self.get_type(),
                success=success,
                message_id=self.identity,
                data=data,
                error=error,
                metadata=self._metadata(),
                request_time=request_time,
                response_time=response_time,
                duration=(response_time - request_time) if response_time else 0,
            )
            self._entries.append(entry)
            self._index += 1
        return entry

    def _fail(self, error_type: type[RequestError], reason: str, *, request_time: int) -> NoReturn:
        entry = self._record(success=False, error=reason, request_time=request_time)
        raise error_type(reason, entry=entry)
