import logging
import os
import structlog
from datetime import datetime
from typing import Optional, Dict, Any
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
)
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    format="%(message)s",
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Prometheus metrics
REQUEST_COUNT = Counter(
    "http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"]
)
REQUEST_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency")
OPEN_STREAMS = Gauge("open_container_streams", "Log and stats streams not yet closed")
CONTAINER_OPERATIONS = Counter(
    "container_operations_total", "Container operations", ["operation", "status"]
)
IMAGE_PULL_DURATION = Histogram(
    "image_pull_duration_seconds", "Time spent waiting for image pulls"
)


def log_container_operation(
    operation: str, target: str, status: str, details: Dict[str, Any] = None
):
    """Log container operations with structured logging"""
    log = logger.info if status == "success" else logger.warning
    log(
        "Container operation",
        operation=operation,
        target=target,
        status=status,
        details=details or {},
    )
    CONTAINER_OPERATIONS.labels(operation=operation, status=status).inc()


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()


def health_check(orchestrator) -> Dict[str, Any]:
    """Health check that reports whether the container daemon answers"""
    try:
        daemon_up = orchestrator.ping()
    except DockmasterException as e:
        logger.error("Health check failed", error=e.message)
        return {
            "status": "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "error": e.message,
        }

    return {
        "status": "healthy" if daemon_up else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "services": {"docker": "healthy" if daemon_up else "unreachable"},
    }


# Error handling utilities
class DockmasterException(Exception):
    """Base exception for the orchestrator"""

    def __init__(
        self, message: str, error_code: Optional[str] = None, status_code: int = 500
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(self.message)


class InvalidSpecException(DockmasterException):
    """Container spec failed local validation; nothing was sent to the daemon"""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_SPEC", 422)


class NotFoundException(DockmasterException):
    """The daemon does not know the container, image or volume"""

    def __init__(self, message: str):
        super().__init__(message, "NOT_FOUND", 404)


class DaemonRejectedException(DockmasterException):
    """The daemon refused a state transition or hit a resource conflict"""

    def __init__(self, message: str):
        super().__init__(message, "DAEMON_REJECTED", 409)


class InUseException(DockmasterException):
    """Removal blocked because a container still references the resource"""

    def __init__(self, message: str):
        super().__init__(message, "IN_USE", 409)


class PullFailedException(DockmasterException):
    def __init__(self, message: str):
        super().__init__(message, "PULL_FAILED", 502)


class TransportException(DockmasterException):
    """Connection to the daemon was refused, broken or timed out"""

    def __init__(self, message: str):
        super().__init__(message, "TRANSPORT_ERROR", 503)


class DaemonAPIException(DockmasterException):
    """Raw daemon error as reported by a RuntimeClient.

    ``daemon_status`` carries the daemon's own status code (404, 409, 500, ...).
    The orchestrator translates these into the exceptions above.
    """

    def __init__(self, message: str, daemon_status: int = 500):
        self.daemon_status = daemon_status
        super().__init__(message, "DAEMON_ERROR", 502)


def log_request(request, response_time: float, status_code: int):
    """Log request details with structured logging"""
    logger.info(
        "HTTP request",
        method=request.method,
        url=str(request.url),
        status_code=status_code,
        response_time=response_time,
        user_agent=request.headers.get("user-agent"),
        client_ip=request.client.host if request.client else None,
    )
