import pytest

from cellular_telemetry_logger.decoders import (
    MODEM_LINES,
    TELEMETRY_PASSTHROUGH,
    DecoderRegistry,
    modem_fields,
    register_modem_decoders,
    telemetry_fields,
)
from cellular_telemetry_logger.messages import MessageKey, RequestKind


def test_telemetry_fields_projects_declared_fields_in_order() -> None:
    decoder = telemetry_fields("roll", "pitch", "yaw")

    decoded = decoder.decode({"mavpackettype": "ATTITUDE", "yaw": 1.5, "roll": 0.25, "extra": 7})

    assert list(decoded) == ["roll", "pitch", "yaw"]
    assert decoded == {"roll": 0.25, "pitch": None, "yaw": 1.5}


def test_telemetry_passthrough_drops_packet_type() -> None:
    decoded = TELEMETRY_PASSTHROUGH.decode({"mavpackettype": "X", "b": 2, "a": 1})
    assert decoded == {"a": 1, "b": 2}


def test_telemetry_decoder_rejects_non_dict_payload() -> None:
    with pytest.raises(TypeError):
        telemetry_fields("roll").decode(["roll"])


def test_modem_fields_coerces_values_and_keeps_quoted_strings() -> None:
    decoder = modem_fields("+CREG", "n", "stat", "lac", "ci", "act")

    decoded = decoder.decode(['+CREG: 2,1,"1E10","01C3D4"'])

    assert decoded == {"n": 2, "stat": 1, "lac": "1E10", "ci": "01C3D4", "act": None}


def test_modem_fields_requires_information_line() -> None:
    with pytest.raises(ValueError, match="no \\+CSQ line"):
        modem_fields("+CSQ", "rssi", "ber").decode(["OK"])


def test_modem_lines_keeps_raw_response() -> None:
    assert MODEM_LINES.decode(["Quectel", "EC25"]) == {"lines": ["Quectel", "EC25"]}


def test_registry_falls_back_to_protocol_default() -> None:
    registry = DecoderRegistry()
    register_modem_decoders(registry)

    csq = registry.lookup(MessageKey(RequestKind.MODEM, "+CSQ"))

    assert MessageKey(RequestKind.MODEM, "+CSQ") in registry
    assert csq.fields == ("rssi", "ber")
    assert csq.decode(["+CSQ: 23,99"]) == {"rssi": 23, "ber": 99}
    assert registry.lookup(MessageKey(RequestKind.MODEM, "I")) is MODEM_LINES
    assert registry.lookup(MessageKey(RequestKind.TELEMETRY, 9999)) is TELEMETRY_PASSTHROUGH
