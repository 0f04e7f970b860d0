"""Prometheus metrics for the relay and the HTTP surface."""

from prometheus_client import Counter, Gauge, Histogram

from voice_relay.core.logging import get_logger

logger = get_logger(__name__)


def _safe_counter(*args, **kwargs):
    try:
        return Counter(*args, **kwargs)
    except ValueError:
        # Already registered (module re-imported under a different name)
        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def inc(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_histogram(*args, **kwargs):
    try:
        return Histogram(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def observe(self, *args, **kwargs):
                pass

        return DummyMetric()


def _safe_gauge(*args, **kwargs):
    try:
        return Gauge(*args, **kwargs)
    except ValueError:

        class DummyMetric:
            def labels(self, *args, **kwargs):
                return self

            def set(self, *args, **kwargs):
                pass

            def inc(self, *args, **kwargs):
                pass

            def dec(self, *args, **kwargs):
                pass

        return DummyMetric()


# HTTP
http_requests_total = _safe_counter(
    "voice_relay_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)
http_request_duration_seconds = _safe_histogram(
    "voice_relay_http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
)

# Relay
relay_connections_total = _safe_counter(
    "voice_relay_connections_total",
    "Realtime relay sockets accepted",
)
relay_active_connections = _safe_gauge(
    "voice_relay_active_connections",
    "Realtime relay sockets currently open",
)
relay_frames_received_total = _safe_counter(
    "voice_relay_frames_received_total",
    "Client frames received by type",
    ["frame_type"],
)
relay_frames_sent_total = _safe_counter(
    "voice_relay_frames_sent_total",
    "Frames sent to clients by type",
    ["frame_type"],
)
relay_interruptions_total = _safe_counter(
    "voice_relay_interruptions_total",
    "Interruptions of in-flight responses",
    ["source"],
)
relay_errors_total = _safe_counter(
    "voice_relay_errors_total",
    "Relay errors by category",
    ["category"],
)

# One-shot pipeline
speech_pipeline_duration_seconds = _safe_histogram(
    "voice_relay_speech_pipeline_duration_seconds",
    "Latency of the text -> speech pipeline stages",
    ["stage"],
)
