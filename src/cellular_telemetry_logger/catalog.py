from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable

from cellular_telemetry_logger.decoders import DecoderRegistry, register_modem_decoders, telemetry_fields
from cellular_telemetry_logger.errors import ConfigurationError
from cellular_telemetry_logger.messages import Message, MessageKey, RequestKind


@dataclass(frozen=True)
class MavlinkDefinition:
    name: str
    message_id: int
    fields: tuple[str, ...]


_IMU_FIELDS = ("time_boot_ms", "xacc", "yacc", "zacc", "xgyro", "ygyro", "zgyro", "xmag", "ymag", "zmag")
_GPS_FIELDS = ("time_usec", "fix_type", "lat", "lon", "alt", "eph", "epv", "vel", "cog", "satellites_visible")
_TARGET_FIELDS = ("time_boot_ms", "coordinate_frame", "type_mask")

# Messages useful for positioning and link analysis.
MAVLINK_MESSAGES: tuple[MavlinkDefinition, ...] = (
    MavlinkDefinition("HEARTBEAT", 0, ("type", "autopilot", "base_mode", "custom_mode", "system_status", "mavlink_version")),
    MavlinkDefinition(
        "SYS_STATUS",
        1,
        (
            "onboard_control_sensors_health",
            "load",
            "voltage_battery",
            "current_battery",
            "battery_remaining",
            "drop_rate_comm",
            "errors_comm",
        ),
    ),
    MavlinkDefinition("GPS_RAW_INT", 24, _GPS_FIELDS),
    MavlinkDefinition(
        "GPS_STATUS",
        25,
        (
            "satellites_visible",
            "satellite_prn",
            "satellite_used",
            "satellite_elevation",
            "satellite_azimuth",
            "satellite_snr",
        ),
    ),
    MavlinkDefinition("SCALED_IMU", 26, _IMU_FIELDS),
    MavlinkDefinition("RAW_IMU", 27, ("time_usec", *_IMU_FIELDS[1:])),
    MavlinkDefinition("SCALED_PRESSURE", 29, ("time_boot_ms", "press_abs", "press_diff", "temperature")),
    MavlinkDefinition("ATTITUDE", 30, ("time_boot_ms", "roll", "pitch", "yaw", "rollspeed", "pitchspeed", "yawspeed")),
    MavlinkDefinition(
        "ATTITUDE_QUATERNION",
        31,
        ("time_boot_ms", "q1", "q2", "q3", "q4", "rollspeed", "pitchspeed", "yawspeed"),
    ),
    MavlinkDefinition("LOCAL_POSITION_NED", 32, ("time_boot_ms", "x", "y", "z", "vx", "vy", "vz")),
    MavlinkDefinition(
        "GLOBAL_POSITION_INT",
        33,
        ("time_boot_ms", "lat", "lon", "alt", "relative_alt", "vx", "vy", "vz", "hdg"),
    ),
    MavlinkDefinition(
        "NAV_CONTROLLER_OUTPUT",
        62,
        (
            "nav_roll",
            "nav_pitch",
            "nav_bearing",
            "target_bearing",
            "wp_dist",
            "alt_error",
            "aspd_error",
            "xtrack_error",
        ),
    ),
    MavlinkDefinition("POSITION_TARGET_LOCAL_NED", 85, (*_TARGET_FIELDS, "x", "y", "z", "vx", "vy", "vz")),
    MavlinkDefinition("POSITION_TARGET_GLOBAL_INT", 87, (*_TARGET_FIELDS, "lat_int", "lon_int", "alt", "vx", "vy", "vz")),
    MavlinkDefinition(
        "LOCAL_POSITION_NED_SYSTEM_GLOBAL_OFFSET",
        89,
        ("time_boot_ms", "x", "y", "z", "roll", "pitch", "yaw"),
    ),
    MavlinkDefinition(
        "OPTICAL_FLOW",
        100,
        ("time_usec", "sensor_id", "flow_x", "flow_y", "flow_comp_m_x", "flow_comp_m_y", "quality", "ground_distance"),
    ),
    MavlinkDefinition(
        "OPTICAL_FLOW_RAD",
        106,
        (
            "time_usec",
            "sensor_id",
            "integration_time_us",
            "integrated_x",
            "integrated_y",
            "integrated_xgyro",
            "integrated_ygyro",
            "integrated_zgyro",
            "temperature",
            "quality",
            "time_delta_distance_us",
            "distance",
        ),
    ),
    MavlinkDefinition("SCALED_IMU2", 116, _IMU_FIELDS),
    MavlinkDefinition("GPS2_RAW", 124, (*_GPS_FIELDS, "dgps_numch", "dgps_age")),
    MavlinkDefinition("SCALED_IMU3", 129, _IMU_FIELDS),
    MavlinkDefinition(
        "AHRS",
        163,
        ("omegaIx", "omegaIy", "omegaIz", "accel_weight", "renorm_val", "error_rp", "error_yaw"),
    ),
    MavlinkDefinition("AHRS2", 178, ("roll", "pitch", "yaw", "altitude", "lat", "lng")),
    MavlinkDefinition(
        "MAG_CAL_REPORT",
        192,
        ("compass_id", "cal_mask", "cal_status", "autosaved", "fitness", "ofs_x", "ofs_y", "ofs_z"),
    ),
    MavlinkDefinition(
        "EKF_STATUS_REPORT",
        193,
        (
            "flags",
            "velocity_variance",
            "pos_horiz_variance",
            "pos_vert_variance",
            "compass_variance",
            "terrain_alt_variance",
        ),
    ),
    MavlinkDefinition(
        "HIGH_LATENCY",
        234,
        (
            "base_mode",
            "custom_mode",
            "landed_state",
            "roll",
            "pitch",
            "heading",
            "throttle",
            "latitude",
            "longitude",
            "altitude_amsl",
            "airspeed",
            "groundspeed",
            "climb_rate",
            "gps_nsat",
            "gps_fix_type",
            "battery_remaining",
            "wp_num",
            "wp_distance",
        ),
    ),
    MavlinkDefinition(
        "HIGH_LATENCY2",
        235,
        (
            "timestamp",
            "type",
            "autopilot",
            "custom_mode",
            "latitude",
            "longitude",
            "altitude",
            "target_altitude",
            "heading",
            "target_heading",
            "target_distance",
            "throttle",
            "airspeed",
            "groundspeed",
            "battery",
            "wp_num",
            "failure_flags",
        ),
    ),
)

EXAMPLE_AT_COMMANDS: tuple[str, ...] = ("I", "+GCAP", "+CNMI=?", "+CREG?", "+CSQ", "+CPIN?", "+COPS?")


class MessageCatalog:
    """Name → message table, built once and handed to whoever creates messages."""

    def __init__(
        self,
        definitions: Iterable[MavlinkDefinition] = MAVLINK_MESSAGES,
        *,
        clock: Callable[[], int] = time.time_ns,
    ) -> None:
        self._by_name: dict[str, MavlinkDefinition] = {}
        self._by_id: dict[int, MavlinkDefinition] = {}
        self._clock = clock
        self.decoders = DecoderRegistry()
        for definition in definitions:
            self._by_name[definition.name] = definition
            self._by_id[definition.message_id] = definition
            self.decoders.register(
                MessageKey(RequestKind.TELEMETRY, definition.message_id),
                telemetry_fields(*definition.fields),
            )
        register_modem_decoders(self.decoders)

    def mavlink_names(self) -> list[str]:
        return sorted(self._by_name)

    def mavlink_definition(self, name: str) -> MavlinkDefinition | None:
        return self._by_name.get(name.strip().upper())

    def create_mavlink(self, name: str) -> Message:
        definition = self.mavlink_definition(name)
        if definition is None:
            try:
                message_id = int(name.strip())
            except ValueError:
                raise ConfigurationError(f"unknown MAVLink message: {name}") from None
            if message_id < 0:
                raise ConfigurationError(f"invalid MAVLink message id: {name}")
            definition = self._by_id.get(message_id)
            if definition is None:
                return self._build(RequestKind.TELEMETRY, message_id, name=None)
        return self._build(RequestKind.TELEMETRY, definition.message_id, name=definition.name)

    def create_at(self, command: str) -> Message:
        command = command.strip()
        if command.upper().startswith("AT"):
            command = command[2:]
        if not command:
            raise ConfigurationError("empty AT command")
        if not command.isascii():
            raise ConfigurationError(f"AT command must be ASCII: {command}")
        return self._build(RequestKind.MODEM, command, name=None)

    def _build(self, kind: RequestKind, identity: int | str, *, name: str | None) -> Message:
        decoder = self.decoders.lookup(MessageKey(kind, identity))
        return Message(kind, identity, decoder=decoder, name=name, clock=self._clock)

    def describe(self) -> str:
        lines = ["Available Messages:", "", "MAVLink Messages:"]
        lines.extend(f"  mavlink:{name}" for name in self.mavlink_names())
        lines.extend(["", "AT Commands:"])
        lines.extend(f"  at:{command}" for command in EXAMPLE_AT_COMMANDS)
        lines.append("  (Any valid AT command)")
        lines.extend(["", "Example usage:", '  cellular-telemetry-logger --messages "mavlink:ATTITUDE,mavlink:33,at:+CSQ"'])
        return "\n".join(lines)


def parse_message_list(text: str, catalog: MessageCatalog) -> list[Message]:
    """Parse ``kind:name`` items, e.g. ``mavlink:SCALED_IMU2,mavlink:33,at:+CSQ``."""
    if not text or not text.strip():
        raise ConfigurationError("empty message string")

    messages: list[Message] = []
    seen: set[MessageKey] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        kind_name, separator, name = part.partition(":")
        if not separator:
            raise ConfigurationError(f"invalid message format: {part} (expected type:name)")
        kind_name = kind_name.strip().lower()
        name = name.strip()
        if kind_name == RequestKind.TELEMETRY.value:
            message = catalog.create_mavlink(name)
        elif kind_name == RequestKind.MODEM.value:
            message = catalog.create_at(name)
        else:
            raise ConfigurationError(f"unknown message type: {kind_name} (supported: mavlink, at)")
        if message.key in seen:
            continue
        seen.add(message.key)
        messages.append(message)

    if not messages:
        raise ConfigurationError("no valid messages specified")
    return messages


def needs_backend(messages: Iterable[Message], kind: RequestKind) -> bool:
    return any(message.kind is kind for message in messages)
