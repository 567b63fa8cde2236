import threading
import time

import pytest

from cellular_telemetry_logger.catalog import MessageCatalog
from cellular_telemetry_logger.decoders import MODEM_LINES
from cellular_telemetry_logger.errors import (
    BackendTypeMismatchError,
    BackendUnavailableError,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    StreamClosedError,
)
from cellular_telemetry_logger.messages import Message, RequestKind, TelemetryFrame
from cellular_telemetry_logger.processor import Processor
from cellular_telemetry_logger.requesters import ModemRequester, TelemetryRequester

from conftest import FakeModemLink, FakeTelemetryLink, RecordingWriter, StepClock


def test_modem_message_decodes_response() -> None:
    catalog = MessageCatalog(clock=StepClock([1_000, 5_000]))
    message = catalog.create_at("+CSQ")
    requester = ModemRequester(FakeModemLink({"+CSQ": [["+CSQ: 20,99"]]}))

    entry = message.process(requester)

    assert entry.success
    assert entry.index == 0
    assert entry.message_type == "at-+CSQ"
    assert entry.message_id == "+CSQ"
    assert entry.data == {"rssi": 20, "ber": 99}
    assert entry.metadata == {"protocol": "at"}
    assert (entry.request_time, entry.response_time, entry.duration) == (1_000, 5_000, 4_000)
    assert message.get_all_entries() == [entry]


def test_modem_error_is_recorded_and_raised(catalog: MessageCatalog) -> None:
    message = catalog.create_at("+CSQ")
    requester = ModemRequester(FakeModemLink({"+CSQ": [ProtocolError("AT+CSQ failed: ERROR")]}))

    with pytest.raises(ProtocolError) as excinfo:
        message.process(requester)

    entry = excinfo.value.entry
    assert entry is not None
    assert not entry.success
    assert entry.data is None
    assert entry.error == "error while sending AT commands: AT+CSQ failed: ERROR"
    assert entry.response_time == 0
    assert entry.duration == 0
    assert message.get_all_entries() == [entry]


def test_modem_interface_error_becomes_protocol_error(catalog: MessageCatalog) -> None:
    message = catalog.create_at("I")
    requester = ModemRequester(FakeModemLink({"I": [OSError("device unplugged")]}))

    with pytest.raises(ProtocolError, match="device unplugged"):
        message.process(requester)


def test_undecodable_response_fails_the_request(catalog: MessageCatalog) -> None:
    message = catalog.create_at("+CSQ")
    requester = ModemRequester(FakeModemLink({"+CSQ": [["+CME ERROR: 10"]]}))

    with pytest.raises(ProtocolError, match="failed to decode at-\\+CSQ response"):
        message.process(requester)

    assert message.get_all_entries()[0].data is None


def test_telemetry_message_skips_unrelated_frames(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("ATTITUDE")
    link = FakeTelemetryLink(
        {
            30: [
                TelemetryFrame(33, {"lat": 1}),
                TelemetryFrame(0, {"type": 2}),
                TelemetryFrame(30, {"mavpackettype": "ATTITUDE", "roll": 0.5, "pitch": -0.1, "yaw": 3.0}),
            ]
        }
    )
    requester = TelemetryRequester(link, timeout=2.0)

    entry = message.process(requester)

    assert link.requests == [30]
    assert entry.success
    assert entry.message_id == 30
    assert entry.metadata == {"protocol": "mavlink", "name": "ATTITUDE"}
    assert entry.data["roll"] == 0.5
    assert entry.data["time_boot_ms"] is None
    assert entry.duration == entry.response_time - entry.request_time


def test_telemetry_request_times_out(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("ATTITUDE")
    requester = TelemetryRequester(FakeTelemetryLink({30: [TelemetryFrame(33, {})]}), timeout=0.05, poll_interval=0.01)

    with pytest.raises(RequestTimeoutError) as excinfo:
        message.process(requester)

    assert excinfo.value.entry.error == "request timeout"
    assert excinfo.value.entry.response_time == 0


def test_cancellation_takes_precedence_over_timeout(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("ATTITUDE")
    requester = TelemetryRequester(FakeTelemetryLink(), timeout=5.0, poll_interval=0.01)
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    started = time.monotonic()
    with pytest.raises(RequestCancelledError) as excinfo:
        message.process(requester, cancel)
    timer.cancel()

    assert time.monotonic() - started < 2.0
    assert excinfo.value.entry.error == "context cancelled"


def test_closed_stream_fails_the_request(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("33")
    link = FakeTelemetryLink()
    link.close()

    with pytest.raises(StreamClosedError, match="telemetry stream closed"):
        message.process(TelemetryRequester(link, timeout=1.0))


def test_unexpected_link_error_fails_the_request(catalog: MessageCatalog) -> None:
    class GlitchingLink(FakeTelemetryLink):
        def receive(self, timeout: float):
            raise RuntimeError("frame parser crashed")

    message = catalog.create_mavlink("ATTITUDE")

    with pytest.raises(ProtocolError) as excinfo:
        message.process(TelemetryRequester(GlitchingLink(), timeout=1.0))

    assert excinfo.value.entry.error == "error while reading telemetry: RuntimeError: frame parser crashed"
    assert message.get_all_entries() == [excinfo.value.entry]


def test_backend_type_mismatch_is_recorded(catalog: MessageCatalog) -> None:
    message = catalog.create_mavlink("ATTITUDE")

    with pytest.raises(BackendTypeMismatchError) as excinfo:
        message.process(ModemRequester(FakeModemLink()))

    assert "backend type mismatch" in excinfo.value.entry.error
    assert len(message.get_all_entries()) == 1


def test_request_without_backend_records_failure(catalog: MessageCatalog) -> None:
    processor = Processor(1.0, RecordingWriter(), 10)
    message = catalog.create_mavlink("ATTITUDE")

    with pytest.raises(BackendUnavailableError, match="no mavlink backend"):
        message.request(processor)

    assert message.get_all_entries()[0].error.startswith("no mavlink backend")


def test_request_routes_to_matching_backend(catalog: MessageCatalog) -> None:
    processor = Processor(1.0, RecordingWriter(), 10)
    processor.modem = ModemRequester(FakeModemLink({"I": [["Quectel", "EC25"]]}))

    entry = catalog.create_at("ATI").request(processor)

    assert entry.data == {"lines": ["Quectel", "EC25"]}


def test_index_increments_across_successes_and_failures(catalog: MessageCatalog) -> None:
    message = catalog.create_at("+CSQ")
    requester = ModemRequester(
        FakeModemLink({"+CSQ": [["+CSQ: 20,99"], ProtocolError("AT+CSQ failed: ERROR"), ["+CSQ: 21,99"]]})
    )

    outcomes = []
    for _ in range(3):
        try:
            outcomes.append(message.process(requester))
        except ProtocolError as error:
            outcomes.append(error.entry)

    assert [entry.index for entry in outcomes] == [0, 1, 2]
    assert [entry.success for entry in outcomes] == [True, False, True]
    assert message.get_all_entries() == outcomes


def test_message_identity_must_match_kind() -> None:
    with pytest.raises(TypeError):
        Message(RequestKind.TELEMETRY, "30", decoder=MODEM_LINES)
    with pytest.raises(TypeError):
        Message(RequestKind.MODEM, 30, decoder=MODEM_LINES)
