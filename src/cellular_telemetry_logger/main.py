from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from dataclasses import dataclass

from prometheus_client import start_http_server

from cellular_telemetry_logger.catalog import MessageCatalog, needs_backend, parse_message_list
from cellular_telemetry_logger.errors import CellularLogError
from cellular_telemetry_logger.exporter import ProcessorMetricsPublisher
from cellular_telemetry_logger.links import MavlinkLink, SerialModemLink
from cellular_telemetry_logger.messages import Message, RequestKind
from cellular_telemetry_logger.processor import Processor
from cellular_telemetry_logger.requesters import ModemRequester, TelemetryRequester
from cellular_telemetry_logger.writers import create_writer, supported_formats


LOGGER = logging.getLogger("cellular_telemetry_logger")


@dataclass(frozen=True)
class AppConfig:
    messages: str
    output_format: str
    output_file: str
    buffer_size: int
    interval_seconds: float
    mav_device: str
    mav_baud: int
    mav_timeout_seconds: float
    at_device: str
    at_baud: int
    at_timeout_seconds: float
    listen_address: str
    listen_port: int
    list_messages: bool
    log_level: str


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    return int(value)


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Poll MAVLink telemetry and modem AT commands into log files")
    parser.add_argument(
        "--messages",
        default=os.getenv("CELLULAR_LOG_MESSAGES", ""),
        help='comma-separated list of messages, for example: "mavlink:SCALED_IMU2,mavlink:33,at:+CSQ"',
    )
    parser.add_argument(
        "--list",
        dest="list_messages",
        action="store_true",
        help="list available messages and exit",
    )
    parser.add_argument(
        "--output",
        default=os.getenv("CELLULAR_LOG_OUTPUT", "json"),
        help=f"output format ({', '.join(supported_formats())}) or a comma-separated combination",
    )
    parser.add_argument(
        "--file",
        default=os.getenv("CELLULAR_LOG_FILE", "cellular_log"),
        help="output file prefix, the extension is added per format",
    )
    parser.add_argument(
        "--buffer",
        type=int,
        default=_int_env("CELLULAR_LOG_BUFFER", 100),
        help="log entries buffered before a flush",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=_float_env("CELLULAR_LOG_INTERVAL_SECONDS", 1.0),
        help="polling interval in seconds",
    )
    parser.add_argument(
        "--mav-device",
        default=os.getenv("CELLULAR_LOG_MAV_DEVICE", "/dev/ttyUSB0"),
        help="MAVLink serial device or pymavlink connection string",
    )
    parser.add_argument(
        "--mav-baud",
        type=int,
        default=_int_env("CELLULAR_LOG_MAV_BAUD", 57600),
        help="MAVLink baud rate",
    )
    parser.add_argument(
        "--mav-timeout",
        type=float,
        default=_float_env("CELLULAR_LOG_MAV_TIMEOUT_SECONDS", 5.0),
        help="MAVLink request timeout in seconds",
    )
    parser.add_argument(
        "--at-device",
        default=os.getenv("CELLULAR_LOG_AT_DEVICE", "/dev/ttyUSB1"),
        help="AT command serial device",
    )
    parser.add_argument(
        "--at-baud",
        type=int,
        default=_int_env("CELLULAR_LOG_AT_BAUD", 115200),
        help="AT command baud rate",
    )
    parser.add_argument(
        "--at-timeout",
        type=float,
        default=_float_env("CELLULAR_LOG_AT_TIMEOUT_SECONDS", 5.0),
        help="AT command timeout in seconds",
    )
    parser.add_argument(
        "--listen-address",
        default=os.getenv("CELLULAR_LOG_LISTEN_ADDRESS", "0.0.0.0"),
        help="http bind address for /metrics endpoint",
    )
    parser.add_argument(
        "--listen-port",
        type=int,
        default=_int_env("CELLULAR_LOG_LISTEN_PORT", 9109),
        help="http bind port for /metrics endpoint (0 disables it)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("CELLULAR_LOG_LEVEL", "INFO"),
        help="python logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--verbose",
        action=argparse.BooleanOptionalAction,
        default=_bool_env("CELLULAR_LOG_VERBOSE", False),
        help="shortcut for --log-level DEBUG",
    )
    return parser


def load_config(argv: list[str] | None = None) -> AppConfig:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if not args.list_messages and not args.messages.strip():
        parser.error('--messages is required, for example: --messages "mavlink:SCALED_IMU2,at:I"')
    return AppConfig(
        messages=args.messages,
        output_format=args.output,
        output_file=args.file,
        buffer_size=args.buffer,
        interval_seconds=args.interval,
        mav_device=args.mav_device,
        mav_baud=args.mav_baud,
        mav_timeout_seconds=args.mav_timeout,
        at_device=args.at_device,
        at_baud=args.at_baud,
        at_timeout_seconds=args.at_timeout,
        listen_address=args.listen_address,
        listen_port=args.listen_port,
        list_messages=bool(args.list_messages),
        log_level="DEBUG" if args.verbose else args.log_level.upper(),
    )


def _initialize_requesters(
    processor: Processor,
    config: AppConfig,
    messages: list[Message],
    opened: list[TelemetryRequester | ModemRequester],
) -> None:
    # ``opened`` is filled as links come up so a later failure still closes them.
    if needs_backend(messages, RequestKind.TELEMETRY):
        link = MavlinkLink.open(config.mav_device, config.mav_baud)
        telemetry = TelemetryRequester(link, timeout=config.mav_timeout_seconds)
        processor.telemetry = telemetry
        opened.append(telemetry)
    if needs_backend(messages, RequestKind.MODEM):
        modem = ModemRequester(SerialModemLink.open(config.at_device, config.at_baud, timeout=config.at_timeout_seconds))
        processor.modem = modem
        opened.append(modem)


def _log_statistics(processor: Processor) -> None:
    for stats in processor.get_statistics():
        LOGGER.info(
            "%s: %d/%d successful (%.2f%%), average response %.1fms",
            stats.message_type,
            stats.successful,
            stats.total,
            stats.success_rate,
            stats.average_response_time * 1000.0,
        )


def run(config: AppConfig, catalog: MessageCatalog) -> None:
    messages = parse_message_list(config.messages, catalog)
    writer = create_writer(config.output_format, config.output_file)
    metrics = ProcessorMetricsPublisher()
    processor = Processor(config.interval_seconds, writer, config.buffer_size, messages, metrics=metrics)

    requesters: list[TelemetryRequester | ModemRequester] = []
    stop = threading.Event()
    try:
        _initialize_requesters(processor, config, messages, requesters)
        if config.listen_port:
            start_http_server(port=config.listen_port, addr=config.listen_address, registry=metrics.registry)
            LOGGER.info("metrics server listening on http://%s:%d/metrics", config.listen_address, config.listen_port)

        signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
        processor.start()
        LOGGER.info("logging %d messages to %s (%s)", len(messages), config.output_file, config.output_format)
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        LOGGER.info("shutdown requested, exiting")
    finally:
        try:
            processor.close()
        finally:
            for requester in requesters:
                requester.close()
            _log_statistics(processor)


def main(argv: list[str] | None = None) -> None:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    catalog = MessageCatalog()
    if config.list_messages:
        print(catalog.describe())
        return

    try:
        run(config, catalog)
    except (CellularLogError, OSError) as error:
        LOGGER.error("%s", error)
        raise SystemExit(1) from error


if __name__ == "__main__":
    main()
