"""
Telemetry: correlation ids, tagged logging and metric sinks.

Every completed execution emits one metric event (execution time, stage
count, confidence) tagged with the request's correlation id. Events are
routed to pluggable sinks:

- LoggingMetricsSink: Python logging (default)
- FileMetricsSink: append-only JSON Lines file
- MemoryMetricsSink: in-memory, for tests

Sink failures are logged and dropped. The engine never depends on a sink
being available to complete a reasoning run.
"""
import json
import logging
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional, TextIO

from reasoning.types import MetricEvent

logger = logging.getLogger(__name__)

METRICS_LOG_PATH = os.getenv("REASONING_METRICS_LOG", "")
METRICS_LOGGING_ENABLED = os.getenv("REASONING_METRICS_LOGGING", "true").lower() == "true"


def generate_correlation_id() -> str:
    """Request-scoped id: req_<epoch ms>_<9 hex chars>."""
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class CorrelationAdapter(logging.LoggerAdapter):
    """Prefixes every record with the correlation id it was created for."""

    def process(self, msg: Any, kwargs: dict) -> tuple[Any, dict]:
        return f"[{self.extra['correlation_id']}] {msg}", kwargs


def correlation_logger(name: str, correlation_id: str) -> CorrelationAdapter:
    """Logger for one request; all lines carry `correlation_id`."""
    return CorrelationAdapter(logging.getLogger(name), {"correlation_id": correlation_id})


# ═══════════════════════════════════════════════════════════════════════════════
# METRIC SINK INTERFACE
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsSink:
    """Abstract interface for metric sinks."""

    def write_event(self, event: MetricEvent) -> None:
        """Write a metric event."""
        raise NotImplementedError

    def close(self) -> None:
        """Close the sink."""
        pass


class LoggingMetricsSink(MetricsSink):
    """Metric sink that writes to Python logging."""

    def __init__(self, logger_name: str = "reasoning.metrics"):
        self.logger = logging.getLogger(logger_name)

    def write_event(self, event: MetricEvent) -> None:
        self.logger.info(
            "METRIC: %s %s=%s %s",
            event.correlation_id,
            event.name,
            event.value,
            json.dumps(event.tags, sort_keys=True, default=str),
        )


class FileMetricsSink(MetricsSink):
    """
    Append-only file-based metric sink.

    Writes one JSON object per line (JSON Lines format).
    Thread-safe for concurrent writes.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._file: Optional[TextIO] = None

    def _get_file(self) -> TextIO:
        if self._file is None or self._file.closed:
            self._file = open(self.path, "a", encoding="utf-8")
        return self._file

    def write_event(self, event: MetricEvent) -> None:
        """Write event as single JSON line."""
        with self._lock:
            f = self._get_file()
            f.write(event.to_json() + "\n")
            f.flush()

    def close(self) -> None:
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None


class MemoryMetricsSink(MetricsSink):
    """In-memory metric sink for testing."""

    def __init__(self):
        self.events: list[MetricEvent] = []
        self._lock = threading.Lock()

    def write_event(self, event: MetricEvent) -> None:
        with self._lock:
            self.events.append(event)

    def get_events(self, name: Optional[str] = None) -> list[MetricEvent]:
        with self._lock:
            return [e for e in self.events if name is None or e.name == name]


# ═══════════════════════════════════════════════════════════════════════════════
# TELEMETRY MANAGER
# ═══════════════════════════════════════════════════════════════════════════════

class TelemetryManager:
    """
    Routes metric events to every registered sink.

    Supports multiple sinks (e.g., file + logging).
    """

    def __init__(self):
        self.sinks: list[MetricsSink] = []
        self._lock = threading.Lock()

    def add_sink(self, sink: MetricsSink) -> None:
        with self._lock:
            self.sinks.append(sink)

    def write_event(self, event: MetricEvent) -> None:
        """Write event to all sinks; a failing sink never propagates."""
        with self._lock:
            sinks = list(self.sinks)
        for sink in sinks:
            try:
                sink.write_event(event)
            except Exception as e:
                logger.error(f"Metrics sink {sink} failed: {e}")

    def emit(
        self,
        name: str,
        value: float,
        correlation_id: str,
        **tags: Any,
    ) -> MetricEvent:
        """Create and route a metric event. Returns the event for reference."""
        event = MetricEvent.create(name, value, correlation_id, tags)
        self.write_event(event)
        return event

    def close(self) -> None:
        """Close all sinks."""
        with self._lock:
            for sink in self.sinks:
                try:
                    sink.close()
                except Exception as e:
                    logger.error(f"Failed to close metrics sink: {e}")


# Global telemetry manager
_telemetry: Optional[TelemetryManager] = None


def get_telemetry() -> TelemetryManager:
    """Get the global telemetry manager, configured from env on first use."""
    global _telemetry
    if _telemetry is None:
        _telemetry = configure_telemetry(
            file_path=METRICS_LOG_PATH or None,
            enable_logging=METRICS_LOGGING_ENABLED,
        )
    return _telemetry


def configure_telemetry(
    file_path: Optional[str] = None,
    enable_logging: bool = True,
) -> TelemetryManager:
    """
    Replace the global telemetry manager.

    Args:
        file_path: Path to a JSON Lines metrics file (optional)
        enable_logging: Enable the logging sink

    Returns:
        Configured TelemetryManager
    """
    global _telemetry
    if _telemetry is not None:
        _telemetry.close()

    _telemetry = TelemetryManager()
    if enable_logging:
        _telemetry.add_sink(LoggingMetricsSink())
    if file_path:
        try:
            _telemetry.add_sink(FileMetricsSink(file_path))
        except OSError as e:
            logger.error(f"Metrics file sink disabled, cannot use {file_path}: {e}")
    return _telemetry
