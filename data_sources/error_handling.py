"""
Error handling and fallback mechanisms for the Playpark API
Provides graceful degradation when external services fail
"""

import math
from typing import Any, Optional, Dict, Callable
from functools import wraps

from logging_config import get_logger

logger = get_logger(__name__)


class PlayparkError(Exception):
    """Base exception for Playpark errors."""
    pass


class APIError(PlayparkError):
    """Exception for API-related errors."""
    def __init__(self, message: str, api_name: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.api_name = api_name
        self.status_code = status_code


class UpstreamUnavailableError(APIError):
    """
    A single mirror attempt failed (non-2xx, network error, timeout or a
    body without an element list). Always recovered inside the fetcher.
    """
    def __init__(self, message: str, endpoint: str, status_code: Optional[int] = None):
        super().__init__(message, "overpass", status_code)
        self.endpoint = endpoint


class InvalidViewportError(PlayparkError):
    """Viewport input the planner must never see (NaN, out of range, radius <= 0)."""
    pass


class ConfigurationError(PlayparkError):
    """Misconfigured mirrors, timeouts or profiles."""
    pass


def _is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_viewport(lat: Any, lon: Any, zoom: Any = None, radius_m: Any = None) -> None:
    """
    Reject viewport input before it reaches the planner.

    Raises:
        InvalidViewportError: on non-numeric/NaN coordinates, coordinates out of
            range, a non-finite zoom or a non-positive radius.
    """
    if not _is_finite_number(lat) or not -90 <= lat <= 90:
        raise InvalidViewportError(f"latitude must be a finite number in [-90, 90], got {lat!r}")
    if not _is_finite_number(lon) or not -180 <= lon <= 180:
        raise InvalidViewportError(f"longitude must be a finite number in [-180, 180], got {lon!r}")
    if zoom is None and radius_m is None:
        raise InvalidViewportError("either zoom or radius_m is required")
    if zoom is not None and not _is_finite_number(zoom):
        raise InvalidViewportError(f"zoom must be a finite number, got {zoom!r}")
    if radius_m is not None and (not _is_finite_number(radius_m) or radius_m <= 0):
        raise InvalidViewportError(f"radius_m must be a positive number, got {radius_m!r}")


def with_fallback(fallback_value: Any, log_error: bool = True):
    """
    Decorator to provide fallback values when functions fail.

    Args:
        fallback_value: Value to return if function fails (callables are called
            so mutable fallbacks are not shared between calls)
        log_error: Whether to log the error
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if log_error:
                    logger.warning(f"Function {func.__name__} failed: {e}. Using fallback.")
                return fallback_value() if callable(fallback_value) else fallback_value
        return wrapper
    return decorator


def check_configuration(config) -> Dict[str, Any]:
    """
    Summarize what the resolution path is configured to talk to.

    Args:
        config: FetchConfig in use

    Returns:
        Dict suitable for the /health endpoint
    """
    return {
        "overpass_mirrors": list(config.mirrors),
        "mirror_count": len(config.mirrors),
        "full_timeout_ms": config.full_timeout_ms,
        "tile_timeout_ms": config.tile_timeout_ms,
        "backend_url": config.backend_url,
        "radius_profile": config.radius_profile,
    }
