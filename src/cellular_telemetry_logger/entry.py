from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


_NANOS_PER_SECOND = 1_000_000_000
ZERO_TIME = "0001-01-01T00:00:00Z"
_RFC3339 = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})$")


def format_rfc3339_nano(timestamp_ns: int) -> str:
    """Render nanoseconds since the epoch as UTC RFC3339, trailing zeros trimmed."""
    if not timestamp_ns:
        return ZERO_TIME
    seconds, nanos = divmod(timestamp_ns, _NANOS_PER_SECOND)
    rendered = datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    if nanos:
        rendered += "." + f"{nanos:09d}".rstrip("0")
    return rendered + "Z"


def parse_rfc3339_nano(text: str) -> int:
    if not text or text == ZERO_TIME:
        return 0
    matched = _RFC3339.match(text.strip())
    if not matched:
        raise ValueError(f"invalid RFC3339 timestamp: {text!r}")
    base, fraction, offset = matched.groups()
    if offset == "Z":
        offset = "+00:00"
    moment = datetime.fromisoformat(base + offset)
    nanos = int(fraction.ljust(9, "0")) if fraction else 0
    return int(moment.timestamp()) * _NANOS_PER_SECOND + nanos


@dataclass(frozen=True)
class LogEntry:
    """One request/response cycle of a Message.

    Timestamps and ``duration`` are integer nanoseconds; zero means the
    value was never observed (a failure that got no response).
    """

    index: int
    message_type: str
    success: bool = False
    message_id: Any = None
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None
    request_time: int = 0
    response_time: int = 0
    duration: int = 0

    def __post_init__(self) -> None:
        if self.success and self.error is not None:
            raise ValueError("successful entry cannot carry an error")
        if not self.success and (self.error is None or self.data is not None):
            raise ValueError("failed entry needs an error and no data")

    @property
    def timestamp(self) -> int:
        return self.response_time or self.request_time

    @property
    def duration_ms(self) -> float:
        return self.duration / 1e6

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "index": self.index,
            "message_type": self.message_type,
        }
        if self.message_id is not None and self.message_id != "":
            payload["message_id"] = self.message_id
        payload["success"] = self.success
        if self.data is not None:
            payload["data"] = self.data
        if self.error:
            payload["error"] = self.error
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        payload["request_time"] = format_rfc3339_nano(self.request_time)
        payload["response_time"] = format_rfc3339_nano(self.response_time)
        payload["duration"] = self.duration
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LogEntry":
        return cls(
            index=int(payload["index"]),
            message_type=str(payload["message_type"]),
            success=bool(payload.get("success", False)),
            message_id=payload.get("message_id"),
            data=payload.get("data"),
            error=payload.get("error"),
            metadata=payload.get("metadata"),
            request_time=parse_rfc3339_nano(payload.get("request_time", "")),
            response_time=parse_rfc3339_nano(payload.get("response_time", "")),
            duration=int(payload.get("duration", 0)),
        )
