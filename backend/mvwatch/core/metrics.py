"""
Prometheus Metrics Registry

Provides Prometheus-compatible metrics for:
- HTTP request counts and latencies of the status API
- Inbound camera message handling and debounce decisions
- Snapshot acquisition attempts and outcomes
- Analysis provider calls
- Broker connection status
"""
import time
import logging
from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

_start_time = time.time()

# ============================================================================
# Application Info
# ============================================================================

app_info = Info(
    'app',
    'Application information',
    registry=REGISTRY
)

uptime_seconds = Gauge(
    'app_uptime_seconds',
    'Seconds since metrics were initialized',
    registry=REGISTRY
)

# ============================================================================
# HTTP Request Metrics
# ============================================================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status_code'],
    registry=REGISTRY
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=REGISTRY
)

# ============================================================================
# Camera Message Metrics
# ============================================================================

camera_messages_total = Counter(
    'camera_messages_total',
    'Inbound camera messages by handling outcome',
    ['outcome'],  # routed, no_action, ignored_topic, malformed
    registry=REGISTRY
)

debounce_decisions_total = Counter(
    'debounce_decisions_total',
    'Debounce ledger decisions',
    ['event_class', 'decision'],  # accepted, suppressed
    registry=REGISTRY
)

# ============================================================================
# Snapshot Acquisition Metrics
# ============================================================================

snapshot_url_attempts_total = Counter(
    'snapshot_url_attempts_total',
    'Snapshot URL generation attempts',
    ['status'],  # success, not_ready
    registry=REGISTRY
)

image_fetch_attempts_total = Counter(
    'image_fetch_attempts_total',
    'Snapshot image download attempts',
    ['status'],  # success, not_found, server_error, error
    registry=REGISTRY
)

acquisitions_total = Counter(
    'snapshot_acquisitions_total',
    'Snapshot acquisitions reaching a terminal state',
    ['event_class', 'outcome'],  # delivered, failed
    registry=REGISTRY
)

acquisitions_in_flight = Gauge(
    'snapshot_acquisitions_in_flight',
    'Snapshot acquisitions currently running',
    registry=REGISTRY
)

# ============================================================================
# Analysis Provider Metrics
# ============================================================================

provider_calls_total = Counter(
    'analysis_provider_calls_total',
    'Analysis provider calls',
    ['provider', 'status'],  # success, empty, error
    registry=REGISTRY
)

provider_duration_seconds = Histogram(
    'analysis_provider_duration_seconds',
    'Analysis provider call duration in seconds',
    ['provider'],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=REGISTRY
)

stolen_vehicle_matches_total = Counter(
    'stolen_vehicle_matches_total',
    'Recognized plates found in the stolen vehicle index',
    registry=REGISTRY
)

# ============================================================================
# MQTT Metrics
# ============================================================================

mqtt_connection_status = Gauge(
    'mqtt_connection_status',
    'MQTT broker connection status (1=connected, 0=disconnected)',
    registry=REGISTRY
)

mqtt_reconnect_attempts_total = Counter(
    'mqtt_reconnect_attempts_total',
    'Total MQTT reconnection attempts',
    registry=REGISTRY
)


def init_metrics(version: str = "1.0.0"):
    """
    Initialize metrics with application info.

    Args:
        version: Application version string
    """
    global _start_time
    _start_time = time.time()

    app_info.info({
        'version': version,
        'name': 'mvwatch'
    })

    logger.info("Prometheus metrics initialized", extra={"version": version})


def record_request_metrics(
    method: str,
    path: str,
    status_code: int,
    response_time_seconds: float
):
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status_code: Response status code
        response_time_seconds: Response time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status_code=str(status_code)
    ).inc()

    http_request_duration_seconds.labels(
        method=method,
        path=path
    ).observe(response_time_seconds)


def record_camera_message(outcome: str):
    """Record how an inbound broker message was handled."""
    camera_messages_total.labels(outcome=outcome).inc()


def record_debounce_decision(event_class: str, accepted: bool):
    """Record a debounce ledger decision for an event class."""
    decision = "accepted" if accepted else "suppressed"
    debounce_decisions_total.labels(event_class=event_class, decision=decision).inc()


def record_snapshot_url_attempt(status: str):
    """Record a Stage A snapshot URL attempt."""
    snapshot_url_attempts_total.labels(status=status).inc()


def record_image_fetch_attempt(status: str):
    """Record a Stage B image download attempt."""
    image_fetch_attempts_total.labels(status=status).inc()


def record_acquisition_started():
    acquisitions_in_flight.inc()


def record_acquisition_finished(event_class: str, outcome: str):
    """
    Record an acquisition reaching Delivered or Failed.

    Args:
        event_class: person or vehicle
        outcome: delivered or failed
    """
    acquisitions_in_flight.dec()
    acquisitions_total.labels(event_class=event_class, outcome=outcome).inc()


def record_provider_call(provider: str, status: str, duration_seconds: float):
    """
    Record an analysis provider call.

    Args:
        provider: Provider name (plate_recognizer, openalpr, aws_rekognition)
        status: Call status (success, empty, error)
        duration_seconds: Call duration
    """
    provider_calls_total.labels(provider=provider, status=status).inc()
    provider_duration_seconds.labels(provider=provider).observe(duration_seconds)


def record_stolen_vehicle_match():
    stolen_vehicle_matches_total.inc()


def update_mqtt_connection_status(connected: bool):
    """
    Update MQTT connection status metric.

    Args:
        connected: Whether MQTT is connected
    """
    mqtt_connection_status.set(1 if connected else 0)


def record_mqtt_reconnect_attempt():
    """Record an MQTT reconnect attempt."""
    mqtt_reconnect_attempts_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus metrics output.

    Returns:
        Prometheus text format metrics
    """
    uptime_seconds.set(time.time() - _start_time)
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
