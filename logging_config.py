"""
Logging configuration for the Playpark API
Provides structured logging for production monitoring
"""

import logging
import json
import sys
from datetime import datetime, timezone


# Extra fields copied from a record into the JSON log entry when present
_EXTRA_FIELDS = (
    "request_id",
    "lat",
    "lon",
    "radius_m",
    "endpoint",
    "stage",
    "tile",
    "generation",
    "element_count",
    "operation",
    "response_time",
    "error_type",
    "api_name",
    "status_code",
)


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        # Add exception info if present
        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Set up logging configuration for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Whether to use JSON formatting for structured logs
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Quiet the HTTP stacks; mirror failures are reported by our own loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    logging.getLogger("playpark").setLevel(numeric_level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(f"playpark.{name}")


def _structured(request_id: str = None, **fields) -> dict:
    """Build the `extra` dict for a structured record; None request ids are left out."""
    if request_id:
        fields["request_id"] = request_id
    return fields


def log_api_call(logger: logging.Logger, api_name: str, endpoint: str,
                 request_id: str = None, **kwargs):
    """
    Log an outbound call ("overpass", "backend") at DEBUG.

    Mirror attempts are frequent; failures are logged separately at WARNING
    by the fetchers, so successful calls stay out of INFO.
    """
    logger.debug(
        f"API call to {api_name}: {endpoint}",
        extra=_structured(request_id, api_name=api_name, endpoint=endpoint, **kwargs),
    )


def log_error(logger: logging.Logger, error_type: str, message: str,
              request_id: str = None, **kwargs):
    """Log an error tagged with `error_type` (e.g. "total_upstream_failure", "invalid_viewport")."""
    logger.error(message, extra=_structured(request_id, error_type=error_type, **kwargs))


def log_performance(logger: logging.Logger, operation: str, duration: float,
                    request_id: str = None, **kwargs):
    """Log how long `operation` took, in seconds."""
    logger.info(
        f"Performance: {operation} took {duration:.2f}s",
        extra=_structured(request_id, operation=operation, response_time=duration, **kwargs),
    )
