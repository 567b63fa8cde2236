"""Per-protocol response decoders.

Every decoder declares the fields it produces, so the decoded value of a
message always has the same keys in the same order whatever the payload
actually carried. Missing fields come out as ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from cellular_telemetry_logger.messages import MessageKey, RequestKind


@dataclass(frozen=True)
class Decoder:
    fields: tuple[str, ...]
    decode: Callable[[Any], Any]


def telemetry_fields(*fields: str) -> Decoder:
    def decode(payload: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise TypeError(f"expected a dict payload, got {type(payload).__name__}")
        return {name: payload.get(name) for name in fields}

    return Decoder(fields=tuple(fields), decode=decode)


def _decode_telemetry_passthrough(payload: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TypeError(f"expected a dict payload, got {type(payload).__name__}")
    return {key: payload[key] for key in sorted(payload) if key != "mavpackettype"}


# Used for numeric ids outside the catalog; the field set is whatever the
# dialect defines for that id.
TELEMETRY_PASSTHROUGH = Decoder(fields=(), decode=_decode_telemetry_passthrough)


def _coerce(raw: str) -> int | float | str:
    value = raw.strip()
    if value.startswith('"'):
        return value.strip('"')
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def _info_values(lines: list[str], prefix: str) -> list[str]:
    marker = prefix + ":"
    for line in lines:
        if line.startswith(marker):
            return line[len(marker) :].split(",")
    raise ValueError(f"no {prefix} line in response {lines!r}")


def modem_fields(prefix: str, *fields: str) -> Decoder:
    """Decoder for ``+XXX: a,b,c`` style information responses."""

    def decode(lines: list[str]) -> dict[str, Any]:
        values = [_coerce(value) for value in _info_values(list(lines), prefix)]
        decoded: dict[str, Any] = {}
        for position, name in enumerate(fields):
            decoded[name] = values[position] if position < len(values) else None
        return decoded

    return Decoder(fields=tuple(fields), decode=decode)


def _decode_modem_lines(lines: list[str]) -> dict[str, Any]:
    return {"lines": [str(line) for line in lines]}


MODEM_LINES = Decoder(fields=("lines",), decode=_decode_modem_lines)

_MODEM_DECODERS: dict[str, Decoder] = {
    "+CSQ": modem_fields("+CSQ", "rssi", "ber"),
    "+CREG?": modem_fields("+CREG", "n", "stat", "lac", "ci", "act"),
    "+CGREG?": modem_fields("+CGREG", "n", "stat", "lac", "ci", "act"),
    "+CEREG?": modem_fields("+CEREG", "n", "stat", "tac", "ci", "act"),
    "+CPIN?": modem_fields("+CPIN", "code"),
    "+COPS?": modem_fields("+COPS", "mode", "format", "oper", "act"),
}


def default_decoder(kind: RequestKind) -> Decoder:
    if kind is RequestKind.TELEMETRY:
        return TELEMETRY_PASSTHROUGH
    return MODEM_LINES


class DecoderRegistry:
    """Maps a message identity to its decoder; built once at configuration time."""

    def __init__(self) -> None:
        self._decoders: dict[MessageKey, Decoder] = {}

    def register(self, key: MessageKey, decoder: Decoder) -> None:
        self._decoders[key] = decoder

    def lookup(self, key: MessageKey) -> Decoder:
        decoder = self._decoders.get(key)
        if decoder is None:
            return default_decoder(key.kind)
        return decoder

    def __contains__(self, key: object) -> bool:
        return key in self._decoders


def register_modem_decoders(registry: DecoderRegistry) -> None:
    for command, decoder in _MODEM_DECODERS.items():
        registry.register(MessageKey(RequestKind.MODEM, command), decoder)
