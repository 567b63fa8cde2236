import queue
import threading
import time
from typing import Any, Callable

import pytest

from cellular_telemetry_logger.catalog import MessageCatalog
from cellular_telemetry_logger.errors import CloseError, ProtocolError, WriteError
from cellular_telemetry_logger.messages import TelemetryFrame


class FakeTelemetryLink:
    """Queues the configured frames whenever a message id is requested."""

    def __init__(self, responses: dict[int, list[TelemetryFrame]] | None = None) -> None:
        self.responses = responses or {}
        self.requests: list[int] = []
        self.closed = False
        self._frames: queue.Queue[TelemetryFrame] = queue.Queue()

    def send_request(self, message_id: int) -> None:
        self.requests.append(message_id)
        for frame in self.responses.get(message_id, []):
            self._frames.put(frame)

    def push(self, frame: TelemetryFrame) -> None:
        self._frames.put(frame)

    def receive(self, timeout: float) -> TelemetryFrame | None:
        if self.closed:
            raise OSError("port closed")
        try:
            return self._frames.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class FakeModemLink:
    """Scripted AT responses; each call consumes one result, the last one repeats."""

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self._responses = {command: list(results) for command, results in (responses or {}).items()}
        self.commands: list[str] = []
        self.closed = False

    def command(self, command: str) -> list[str]:
        self.commands.append(command)
        results = self._responses.get(command)
        if not results:
            raise ProtocolError(f"AT{command} failed: ERROR")
        result = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(result, BaseException):
            raise result
        return list(result)

    def close(self) -> None:
        self.closed = True


class FakeSerialPort:
    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = list(chunks)
        self.written: list[bytes] = []
        self.resets = 0
        self.closed = False

    def reset_input_buffer(self) -> None:
        self.resets += 1

    def write(self, data: bytes) -> int:
        self.written.append(data)
        return len(data)

    def readline(self) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        return b""

    def close(self) -> None:
        self.closed = True


class RecordingWriter:
    def __init__(self) -> None:
        self.batches: list[list[Any]] = []
        self.close_calls = 0
        self._lock = threading.Lock()

    def write(self, entries) -> None:
        with self._lock:
            self.batches.append(list(entries))

    def close(self) -> None:
        self.close_calls += 1

    @property
    def entries(self) -> list[Any]:
        with self._lock:
            return [entry for batch in self.batches for entry in batch]


class FailingWriter(RecordingWriter):
    def __init__(self, *, fail_write: bool = True, fail_close: bool = False) -> None:
        super().__init__()
        self.fail_write = fail_write
        self.fail_close = fail_close

    def write(self, entries) -> None:
        super().write(entries)
        if self.fail_write:
            raise WriteError("disk full")

    def close(self) -> None:
        super().close()
        if self.fail_close:
            raise CloseError("close failed")


class StepClock:
    def __init__(self, values: list[int]) -> None:
        self._values = list(values)

    def __call__(self) -> int:
        return self._values.pop(0)


def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def catalog() -> MessageCatalog:
    return MessageCatalog()
