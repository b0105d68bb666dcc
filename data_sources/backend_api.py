"""
Local Backend API Client
Queries user-contributed playground points from the Playpark backend
(GET /api/points). The backend is a second, independent source: when it is
down the OSM half of a result must still come through.
"""

import requests
from typing import Any, Dict, List, Mapping, Optional

from .error_handling import with_fallback
from .filters import normalize_filters
from .models import Center
from logging_config import get_logger, log_api_call

logger = get_logger(__name__)

DEFAULT_BACKEND_URL = "http://localhost:5000"


def _build_params(center: Center, radius_m: float, filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "lat": center.lat,
        "lon": center.lon,
        "radius": int(round(radius_m)),
    }
    params.update(normalize_filters(filters))
    return params


@with_fallback(list)
def fetch_backend_points(
    center: Center,
    radius_m: float,
    filters: Optional[Mapping[str, Any]] = None,
    base_url: str = DEFAULT_BACKEND_URL,
    timeout: float = 5.0,
    session: Optional[requests.Session] = None,
) -> List[Dict]:
    """
    Get raw backend points around a center.

    Args:
        center: Map center
        radius_m: Search radius in meters
        filters: Raw filter mapping, forwarded as query parameters
        base_url: Backend root (BACKEND_URL)
        timeout: Request timeout in seconds
        session: Optional requests.Session

    Returns:
        List of point dicts as served by the backend; [] on any failure
    """
    url = f"{base_url.rstrip('/')}/api/points"
    log_api_call(logger, "backend", url, lat=center.lat, lon=center.lon)

    http = session or requests
    response = http.get(url, params=_build_params(center, radius_m, filters), timeout=timeout)
    try:
        if response.status_code != 200:
            logger.warning(
                f"Backend API returned status {response.status_code}",
                extra={"api_name": "backend", "status_code": response.status_code, "endpoint": url},
            )
            return []

        data = response.json()
    finally:
        response.close()

    if not isinstance(data, list):
        logger.warning("Backend API returned a non-list body", extra={"api_name": "backend", "endpoint": url})
        return []
    return data
