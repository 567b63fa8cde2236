from __future__ import annotations

from collections import defaultdict

from prometheus_client import CollectorRegistry, Counter, Gauge

from cellular_telemetry_logger.entry import LogEntry


class ProcessorMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry
        self._totals: dict[str, int] = defaultdict(int)
        self._successes: dict[str, int] = defaultdict(int)

        self.request_success = Gauge(
            "cellular_log_request_success",
            "Latest request status (1=success, 0=failure)",
            ["message_type"],
            registry=self.registry,
        )
        self.request_duration_seconds = Gauge(
            "cellular_log_request_duration_seconds",
            "Duration of the last successful request in seconds",
            ["message_type"],
            registry=self.registry,
        )
        self.requests = Counter(
            "cellular_log_requests",
            "Requests issued, by outcome",
            ["message_type", "outcome"],
            registry=self.registry,
        )
        self.success_rate_percent = Gauge(
            "cellular_log_success_rate_percent",
            "Share of successful requests since start, in percent",
            ["message_type"],
            registry=self.registry,
        )
        self.tick_timestamp_seconds = Gauge(
            "cellular_log_tick_timestamp_seconds",
            "Unix timestamp of the last completed request tick",
            registry=self.registry,
        )
        self.tick_messages = Gauge(
            "cellular_log_tick_messages",
            "Messages requested in the last tick",
            registry=self.registry,
        )
        self.flushes = Counter(
            "cellular_log_flushes",
            "Buffer flushes handed to the writer, by result",
            ["result"],
            registry=self.registry,
        )
        self.flushed_entries = Counter(
            "cellular_log_flushed_entries",
            "Log entries handed to the writer",
            registry=self.registry,
        )
        self.buffered_entries = Gauge(
            "cellular_log_buffered_entries",
            "Log entries waiting for the next flush",
            registry=self.registry,
        )

    def apply_entry(self, entry: LogEntry) -> None:
        message_type = entry.message_type
        self._totals[message_type] += 1
        self.request_success.labels(message_type=message_type).set(1.0 if entry.success else 0.0)
        if entry.success:
            self._successes[message_type] += 1
            self.requests.labels(message_type=message_type, outcome="success").inc()
            if entry.duration > 0:
                self.request_duration_seconds.labels(message_type=message_type).set(entry.duration / 1e9)
        else:
            self.requests.labels(message_type=message_type, outcome="failure").inc()
        self.success_rate_percent.labels(message_type=message_type).set(
            self._successes[message_type] / self._totals[message_type] * 100
        )

    def apply_tick(self, *, observed_at: float, messages_total: int) -> None:
        self.tick_timestamp_seconds.set(observed_at)
        self.tick_messages.set(float(messages_total))

    def apply_flush(self, *, entries: int, success: bool) -> None:
        self.flushes.labels(result="success" if success else "failure").inc()
        self.flushed_entries.inc(entries)

    def set_buffered(self, count: int) -> None:
        self.buffered_entries.set(float(count))
