"""Prometheus metrics for the video-processing pipeline.

Tracks submissions, delivery outcomes, dead letters and transcoder load.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
    start_http_server,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., several worker processes)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "vidpipe_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Producer Metrics
# ============================================
JOBS_SUBMITTED_TOTAL = Counter(
    "vidpipe_jobs_submitted_total",
    "Transcoding jobs submitted by result",
    ["result"],
    registry=REGISTRY,
)


# ============================================
# Consumer Metrics
# ============================================
DELIVERIES_TOTAL = Counter(
    "vidpipe_deliveries_total",
    "Deliveries processed by final state and reason",
    ["state", "reason"],
    registry=REGISTRY,
)

DEAD_LETTERS_TOTAL = Counter(
    "vidpipe_dead_letters_total",
    "Messages routed to the dead-letter stream",
    ["reason"],
    registry=REGISTRY,
)

JOBS_IN_FLIGHT = Gauge(
    "vidpipe_jobs_in_flight",
    "Deliveries currently held by this worker process",
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "vidpipe_job_duration_seconds",
    "Time from receipt to ack/nak of a delivery",
    ["state"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)


# ============================================
# Transcoding Engine Metrics
# ============================================
TRANSCODES_IN_PROGRESS = Gauge(
    "vidpipe_transcodes_in_progress",
    "Engine invocations currently running",
    registry=REGISTRY,
)

TRANSCODE_DURATION_SECONDS = Histogram(
    "vidpipe_transcode_duration_seconds",
    "Duration of one rendition transcode",
    ["quality", "status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)


# ============================================
# Callback Metrics
# ============================================
CALLBACKS_TOTAL = Counter(
    "vidpipe_callbacks_total",
    "Completion callbacks by result",
    ["result"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })


def start_metrics_server(port: int) -> None:
    """Expose the registry over HTTP from a worker process."""
    start_http_server(port, registry=REGISTRY)
