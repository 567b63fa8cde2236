import pytest

from cellular_telemetry_logger.catalog import MessageCatalog, needs_backend, parse_message_list
from cellular_telemetry_logger.decoders import TELEMETRY_PASSTHROUGH
from cellular_telemetry_logger.errors import ConfigurationError
from cellular_telemetry_logger.messages import RequestKind


def test_parse_message_list_resolves_names_ids_and_commands(catalog: MessageCatalog) -> None:
    messages = parse_message_list("mavlink:ATTITUDE, mavlink:33, at:+CSQ", catalog)

    assert [message.get_type() for message in messages] == ["mavlink-30", "mavlink-33", "at-+CSQ"]
    assert messages[0].name == "ATTITUDE"
    assert messages[1].name == "GLOBAL_POSITION_INT"
    assert messages[0].decoder.fields[:2] == ("time_boot_ms", "roll")
    assert messages[2].decoder.fields == ("rssi", "ber")


def test_parse_message_list_drops_duplicate_identities(catalog: MessageCatalog) -> None:
    messages = parse_message_list("mavlink:ATTITUDE,mavlink:30,at:+CSQ,at:AT+CSQ", catalog)
    assert [message.get_type() for message in messages] == ["mavlink-30", "at-+CSQ"]


def test_unknown_numeric_id_uses_passthrough_decoder(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("9999")

    assert message.get_type() == "mavlink-9999"
    assert message.name is None
    assert message.decoder is TELEMETRY_PASSTHROUGH


@pytest.mark.parametrize(
    "text, reason",
    [
        ("", "empty message string"),
        ("ATTITUDE", "invalid message format"),
        ("radio:ATTITUDE", "unknown message type"),
        ("mavlink:NOT_A_MESSAGE", "unknown MAVLink message"),
        ("mavlink:-1", "invalid MAVLink message id"),
        ("at:AT", "empty AT command"),
        ('at:+CSPN="Télé2"', "must be ASCII"),
        (" , ,", "no valid messages"),
    ],
)
def test_parse_message_list_rejects_bad_input(catalog: MessageCatalog, text: str, reason: str) -> None:
    with pytest.raises(ConfigurationError, match=reason):
        parse_message_list(text, catalog)


def test_needs_backend_checks_message_kinds(catalog: MessageCatalog) -> None:
    messages = parse_message_list("at:I", catalog)

    assert needs_backend(messages, RequestKind.MODEM)
    assert not needs_backend(messages, RequestKind.TELEMETRY)


def test_describe_lists_messages_and_examples(catalog: MessageCatalog) -> None:
    listing = catalog.describe()

    assert listing.startswith("Available Messages:")
    assert "  mavlink:SCALED_IMU2" in listing
    assert "  at:+CSQ" in listing
    assert "(Any valid AT command)" in listing
    assert catalog.mavlink_names() == sorted(catalog.mavlink_names())
