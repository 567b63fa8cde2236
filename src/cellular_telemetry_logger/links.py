from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any

import serial
from pymavlink import mavutil

from cellular_telemetry_logger.errors import ProtocolError, StreamClosedError
from cellular_telemetry_logger.messages import TelemetryFrame


LOGGER = logging.getLogger("cellular_telemetry_logger.links")
_AT_FINAL_ERROR = re.compile(r"^(ERROR|\+CME ERROR:.*|\+CMS ERROR:.*|NO CARRIER|BUSY|NO ANSWER|NO DIALTONE)$")
_SOURCE_SYSTEM_ID = 10


class MavlinkLink:
    """Request/receive adapter over a pymavlink connection."""

    def __init__(self, connection: Any, *, target_system: int = 1, target_component: int = 0) -> None:
        self._connection = connection
        self._target_system = target_system
        self._target_component = target_component
        self._closed = False

    @classmethod
    def open(cls, device: str, baud: int, *, dialect: str = "ardupilotmega") -> "MavlinkLink":
        LOGGER.info("opening MAVLink link on %s at %d baud", device, baud)
        connection = mavutil.mavlink_connection(
            device,
            baud=baud,
            source_system=_SOURCE_SYSTEM_ID,
            dialect=dialect,
        )
        return cls(connection)

    def send_request(self, message_id: int) -> None:
        if self._closed:
            raise StreamClosedError("telemetry link closed")
        self._connection.mav.command_long_send(
            self._target_system,
            self._target_component,
            mavutil.mavlink.MAV_CMD_REQUEST_MESSAGE,
            0,
            float(message_id),
            0,
            0,
            0,
            0,
            0,
            0,
        )

    def receive(self, timeout: float) -> TelemetryFrame | None:
        if self._closed:
            raise StreamClosedError("telemetry link closed")
        message = self._connection.recv_match(blocking=True, timeout=timeout)
        if message is None:
            return None
        if message.get_type() == "BAD_DATA":
            return None
        return TelemetryFrame(message_id=int(message.get_msgId()), payload=message.to_dict())

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connection.close()


class SerialModemLink:
    """Minimal AT command channel: one command in flight, lines until a final result code."""

    def __init__(self, port: Any, *, timeout: float = 5.0) -> None:
        self._port = port
        self._timeout = timeout
        self._lock = threading.Lock()

    @classmethod
    def open(cls, device: str, baud: int, *, timeout: float = 5.0) -> "SerialModemLink":
        LOGGER.info("opening AT command port %s at %d baud", device, baud)
        port = serial.Serial(device, baudrate=baud, timeout=0.1)
        link = cls(port, timeout=timeout)
        link.initialize()
        return link

    def initialize(self) -> None:
        self.command("Z")
        self.command("E0")

    def command(self, command: str) -> list[str]:
        request = f"AT{command}"
        with self._lock:
            self._port.reset_input_buffer()
            self._port.write((request + "\r").encode("ascii"))
            return self._read_response(request)

    def _read_response(self, request: str) -> list[str]:
        deadline = time.monotonic() + self._timeout
        info: list[str] = []
        pending = b""
        while time.monotonic() < deadline:
            chunk = self._port.readline()
            if not chunk:
                continue
            pending += chunk
            if not pending.endswith(b"\n"):
                continue
            line = pending.decode("ascii", errors="replace").strip()
            pending = b""
            if not line or line == request:
                continue
            if line == "OK":
                return info
            if _AT_FINAL_ERROR.match(line):
                raise ProtocolError(f"{request} failed: {line}")
            info.append(line)
        raise ProtocolError(f"{request} timed out after {self._timeout:.1f}s")

    def close(self) -> None:
        self._port.close()
