"""
Geo query planner
Turns a map viewport and a filter set into an Overpass query plan.

Pure functions only: no I/O, no logging, no validation. Callers reject bad
viewports (see error_handling.validate_viewport) before planning; NaN input
simply propagates into the returned numbers.
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .filters import (
    BOOLEAN_FILTER_KEYS,
    VALUE_FILTER_KEYS,
    RATING_FILTER_KEY,
    normalize_filters,
)
from .models import BoundingBox, Center, QueryPlan, Viewport, ELEMENT_KINDS
from .radius_profiles import get_radius_profile
from .utils import EARTH_CIRCUMFERENCE_M, meters_to_lat_degrees, meters_to_lon_degrees

# 256px tiles: ground resolution at zoom z is C*cos(lat) / 2^(z+8) m/px
_TILE_SIZE_EXPONENT = 8
# Keeps the base span finite for any zoom
_MAX_EXPONENT = 900


def compute_radius(zoom: float, center_lat: float, profile: Optional[Dict[str, float]] = None) -> float:
    """
    Search radius in meters for a map zoom level.

    Ground resolution halves with every zoom step, so the radius shrinks as
    the user zooms in. The result is clamped to the profile's bounds.

    Args:
        zoom: Map zoom level (may be fractional)
        center_lat: Latitude of the map center
        profile: Radius profile dict (defaults to the web profile)

    Returns:
        Radius in meters within [min_radius_m, max_radius_m]
    """
    profile = profile or get_radius_profile()
    exponent = min(max(zoom + _TILE_SIZE_EXPONENT, -_MAX_EXPONENT), _MAX_EXPONENT)
    base_pixel_span = EARTH_CIRCUMFERENCE_M * math.cos(math.radians(center_lat)) / (2.0 ** exponent)
    radius = base_pixel_span * profile["coverage_factor"]
    return max(min(radius, profile["max_radius_m"]), profile["min_radius_m"])


def compute_bounding_box(center: Center, radius_m: float) -> BoundingBox:
    """
    Equirectangular box around `center` reaching `radius_m` in each direction.

    For radii too small to change a float coordinate the box is widened to
    the next representable value so it never collapses.
    """
    dlat = meters_to_lat_degrees(radius_m)
    dlon = meters_to_lon_degrees(radius_m, center.lat)

    south = center.lat - dlat
    north = center.lat + dlat
    west = center.lon - dlon
    east = center.lon + dlon

    if south >= center.lat:
        south = math.nextafter(center.lat, -math.inf)
    if north <= center.lat:
        north = math.nextafter(center.lat, math.inf)
    if west >= center.lon:
        west = math.nextafter(center.lon, -math.inf)
    if east <= center.lon:
        east = math.nextafter(center.lon, math.inf)

    return BoundingBox(south=south, west=west, north=north, east=east)


def subdivide_bbox(bbox: BoundingBox) -> List[BoundingBox]:
    """Four quadrants (SW, SE, NW, NE) covering `bbox` exactly."""
    return bbox.subdivide()


def _quote(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def build_filter_clauses(filters: Optional[Mapping[str, Any]]) -> List[str]:
    """
    One Overpass tag clause per active filter, in canonical key order.

    Unknown keys and empty/inactive values are ignored. A rating outside
    1-5 adds nothing; a rating becomes an `if:` evaluator on the `stars` tag,
    which untagged elements fail.
    """
    active = normalize_filters(filters)
    clauses: List[str] = []

    for key in BOOLEAN_FILTER_KEYS:
        if key in active:
            clauses.append(f'["{key}"="yes"]')

    for key in VALUE_FILTER_KEYS:
        if key in active:
            clauses.append(f'["{key}"="{_quote(active[key])}"]')

    if RATING_FILTER_KEY in active:
        clauses.append(f'(if: number(t["stars"]) >= {active[RATING_FILTER_KEY]})')

    return clauses


def build_plan(
    bbox: BoundingBox,
    filters: Optional[Mapping[str, Any]] = None,
    timeout_ms: int = 10000,
    element_kinds: Sequence[str] = ("node",),
) -> QueryPlan:
    """
    Assemble a QueryPlan from a bbox, filters and an attempt timeout.

    Args:
        bbox: Area to search
        filters: Raw filter mapping (see filters.normalize_filters)
        timeout_ms: Per-attempt timeout budget
        element_kinds: OSM element kinds to select; unknown kinds are dropped

    Returns:
        Immutable QueryPlan
    """
    kinds = tuple(kind for kind in ELEMENT_KINDS if kind in set(element_kinds)) or ("node",)
    return QueryPlan(
        bbox=bbox,
        tag_filters=tuple(build_filter_clauses(filters)),
        timeout_ms=int(timeout_ms),
        element_kinds=kinds,
    )


def effective_radius(viewport: Viewport, profile: Optional[Dict[str, float]] = None) -> float:
    """Explicit radius (capped to the profile maximum) or one derived from zoom."""
    profile = profile or get_radius_profile()
    if viewport.radius_m is not None:
        return min(viewport.radius_m, profile["max_radius_m"])
    return compute_radius(viewport.zoom, viewport.center.lat, profile)


def plan_viewport(
    viewport: Viewport,
    filters: Optional[Mapping[str, Any]] = None,
    timeout_ms: int = 10000,
    profile: Optional[Dict[str, float]] = None,
    element_kinds: Sequence[str] = ("node",),
) -> QueryPlan:
    """Viewport -> radius -> bbox -> QueryPlan in one call."""
    radius_m = effective_radius(viewport, profile)
    bbox = compute_bounding_box(viewport.center, radius_m)
    return build_plan(bbox, filters, timeout_ms, element_kinds)
