"""
Prometheus metrics for the transcoding engine.

Collected in-process; an embedding service exposes them with get_metrics()
in Prometheus text format.
"""

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("streamvio", "StreamVio transcoding engine information")

# =============================================================================
# Job Metrics
# =============================================================================

TRANSCODING_JOBS_TOTAL = Counter(
    "streamvio_transcoding_jobs_total",
    "Total transcoding jobs",
    ["kind", "status"],  # status: started, cached, completed, failed, cancelled
)

TRANSCODING_JOBS_ACTIVE = Gauge(
    "streamvio_transcoding_jobs_active",
    "Number of jobs currently holding a processing slot",
)

TRANSCODING_QUEUE_SIZE = Gauge(
    "streamvio_transcoding_queue_size",
    "Number of pending jobs waiting for a slot",
)

TRANSCODING_JOB_DURATION_SECONDS = Histogram(
    "streamvio_transcoding_job_duration_seconds",
    "Wall-clock time from processing to a terminal state",
    ["kind"],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200, 3600],
)

# =============================================================================
# Backend Metrics
# =============================================================================

BACKEND_FALLBACKS_TOTAL = Counter(
    "streamvio_backend_fallbacks_total",
    "Native commands retried on ffmpeg after a launch failure",
    ["operation"],
)

# =============================================================================
# Redis Metrics
# =============================================================================

REDIS_OPERATIONS_TOTAL = Counter(
    "streamvio_redis_operations_total",
    "Total Redis operations",
    ["operation", "result"],  # result: success, failed
)

REDIS_CIRCUIT_BREAKER_STATE = Gauge(
    "streamvio_redis_circuit_breaker_state",
    "Redis circuit breaker state (0=closed, 1=open)",
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "streamvio-transcode"})
