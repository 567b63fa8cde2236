from __future__ import annotations

import threading
from typing import Protocol

from cellular_telemetry_logger.entry import LogEntry
from cellular_telemetry_logger.errors import ProtocolError, StreamClosedError
from cellular_telemetry_logger.messages import Message, RequestKind, TelemetryFrame


class TelemetryLink(Protocol):
    def send_request(self, message_id: int) -> None: ...

    def receive(self, timeout: float) -> TelemetryFrame | None:
        """Next incoming frame, None if nothing arrived within ``timeout``.

        Raises StreamClosedError once the stream is gone.
        """
        ...

    def close(self) -> None: ...


class ModemLink(Protocol):
    def command(self, command: str) -> list[str]:
        """Run ``AT<command>``; return the information lines or raise ProtocolError."""
        ...

    def close(self) -> None: ...


class Requester(Protocol):
    """What the processor routes messages to.

    A requester of kind TELEMETRY must also be a TelemetryBackend and one of
    kind MODEM a ModemBackend; ``Message.process`` records a mismatch entry
    otherwise.
    """

    kind: RequestKind

    def process(self, message: Message, cancel: threading.Event | None = None) -> LogEntry: ...


class TelemetryBackend(Protocol):
    timeout: float
    poll_interval: float

    def send_request(self, message_id: int) -> None: ...

    def next_frame(self, timeout: float) -> TelemetryFrame | None: ...


class ModemBackend(Protocol):
    def execute(self, command: str) -> list[str]: ...


class TelemetryRequester:
    kind = RequestKind.TELEMETRY

    def __init__(self, link: TelemetryLink, timeout: float = 5.0, poll_interval: float = 0.05) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._link = link
        self.timeout = timeout
        self.poll_interval = max(0.001, poll_interval)

    def process(self, message: Message, cancel: threading.Event | None = None) -> LogEntry:
        return message.process(self, cancel)

    def send_request(self, message_id: int) -> None:
        try:
            self._link.send_request(message_id)
        except OSError as error:
            raise ProtocolError(f"failed to write request frame: {error}") from error

    def next_frame(self, timeout: float) -> TelemetryFrame | None:
        try:
            return self._link.receive(timeout)
        except OSError as error:
            raise StreamClosedError(str(error)) from error

    def close(self) -> None:
        self._link.close()


class ModemRequester:
    kind = RequestKind.MODEM

    def __init__(self, link: ModemLink) -> None:
        self._link = link

    def process(self, message: Message, cancel: threading.Event | None = None) -> LogEntry:
        # AT commands are synchronous; the link's own timeout bounds them.
        return message.process(self, cancel)

    def execute(self, command: str) -> list[str]:
        try:
            return list(self._link.command(command))
        except OSError as error:
            raise ProtocolError(f"modem interface error: {error}") from error

    def close(self) -> None:
        self._link.close()
