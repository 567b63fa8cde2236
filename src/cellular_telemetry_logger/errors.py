from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cellular_telemetry_logger.entry import LogEntry


class CellularLogError(Exception):
    """Base class for every error raised by the logger."""


class ConfigurationError(CellularLogError):
    """Invalid message list, output format or backend wiring."""


class RequestError(CellularLogError):
    """A request failed; ``entry`` is the failed LogEntry already recorded in history."""

    def __init__(self, message: str, *, entry: LogEntry | None = None) -> None:
        super().__init__(message)
        self.entry = entry


class BackendUnavailableError(RequestError):
    pass


class BackendTypeMismatchError(RequestError):
    pass


class RequestTimeoutError(RequestError):
    pass


class RequestCancelledError(RequestError):
    pass


class ProtocolError(RequestError):
    pass


class StreamClosedError(ProtocolError):
    pass


class WriteError(CellularLogError):
    pass


class CloseError(CellularLogError):
    pass


class AggregateError(CellularLogError):
    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors))

    def __iter__(self):
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


def combine_errors(current: BaseException | None, new: BaseException | None) -> BaseException | None:
    if new is None:
        return current
    if current is None:
        return new
    collected: list[BaseException] = []
    for error in (current, new):
        if isinstance(error, AggregateError):
            collected.extend(error.errors)
        else:
            collected.append(error)
    return AggregateError(collected)
