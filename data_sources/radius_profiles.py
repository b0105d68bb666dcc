"""
Centralized search-radius profiles per caller surface.

Each surface turns a map zoom level into a search radius the same way
(ground resolution at that zoom times a coverage factor) but with its own
factor and clamp bounds:

surface: one of {"web", "mobile"}; anything else falls back to "web".
"""

from typing import Dict

DEFAULT_SURFACE = "web"

RADIUS_PROFILES: Dict[str, Dict[str, float]] = {
    # Desktop map: wide viewport, generous cap
    "web": {
        "coverage_factor": 2.5,
        "min_radius_m": 1000,
        "max_radius_m": 100000,
    },
    # Phone map: smaller screen and slower links, keep queries tight
    "mobile": {
        "coverage_factor": 1.5,
        "min_radius_m": 500,
        "max_radius_m": 20000,
    },
}


def _normalize(surface: str | None) -> str:
    s = (surface or DEFAULT_SURFACE).strip().lower()
    if s not in RADIUS_PROFILES:
        s = DEFAULT_SURFACE
    return s


def get_radius_profile(surface: str | None = None) -> Dict[str, float]:
    """
    Return {coverage_factor, min_radius_m, max_radius_m} for a surface.

    Unknown or empty surfaces get the web profile. A copy is returned so
    callers can tweak it without touching the shared table.
    """
    return dict(RADIUS_PROFILES[_normalize(surface)])
