"""
Caller-side viewport resolution.

`resolve_viewport` is the single entry point into the planner + fetcher
core. `resolve_playgrounds` adds the local backend and produces display
records. `ViewportResolver` and `ViewportThrottle` are what an interactive
map needs on top: stale fetches are discarded by generation and network
triggers are rate limited.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .async_osm_api import AsyncResilientFetcher
from .backend_api import fetch_backend_points
from .error_handling import validate_viewport
from .fetch_config import FetchConfig, load_fetch_config
from .geo_planner import effective_radius, compute_bounding_box, build_plan
from .models import BoundingBox, Center, Element, PlaygroundRecord, QueryPlan, Viewport
from .normalization import (
    filter_records,
    merge_sources,
    normalize_backend_points,
    normalize_osm_element,
)
from .osm_api import CancelToken, ResilientFetcher
from .radius_profiles import get_radius_profile
from .utils import haversine_distance
from logging_config import get_logger, log_performance

logger = get_logger(__name__)


@dataclass
class PlaygroundResult:
    """Merged answer for one viewport."""
    radius_m: float
    bbox: BoundingBox
    playgrounds: List[PlaygroundRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": len(self.playgrounds),
            "radius_m": round(self.radius_m, 1),
            "bbox": self.bbox.to_dict(),
            "playgrounds": [p.to_dict() for p in self.playgrounds],
        }


def _plan(
    center: Center,
    zoom: Optional[float],
    radius_m: Optional[float],
    filters: Optional[Mapping[str, Any]],
    config: FetchConfig,
    profile: Optional[str],
    element_kinds: Sequence[str],
) -> Tuple[QueryPlan, float]:
    validate_viewport(center.lat, center.lon, zoom, radius_m)
    radius_profile = get_radius_profile(profile or config.radius_profile)
    radius = effective_radius(Viewport(center, zoom, radius_m), radius_profile)
    bbox = compute_bounding_box(center, radius)
    plan = build_plan(bbox, filters, config.full_timeout_ms, element_kinds)
    logger.debug(
        f"Planned viewport: radius {radius:.0f}m, bbox {bbox.to_overpass()}",
        extra={"lat": center.lat, "lon": center.lon, "radius_m": radius},
    )
    return plan, radius


def _fetch(
    plan: QueryPlan,
    fetcher: Optional[ResilientFetcher],
    config: FetchConfig,
    cancel_token: Optional[CancelToken],
) -> List[Element]:
    if fetcher is not None:
        return fetcher.fetch(plan, cancel_token=cancel_token)
    with ResilientFetcher.from_config(config) as owned:
        return owned.fetch(plan, cancel_token=cancel_token)


def resolve_viewport(
    center: Center,
    zoom: Optional[float] = None,
    filters: Optional[Mapping[str, Any]] = None,
    *,
    radius_m: Optional[float] = None,
    fetcher: Optional[ResilientFetcher] = None,
    config: Optional[FetchConfig] = None,
    profile: Optional[str] = None,
    element_kinds: Sequence[str] = ("node",),
    cancel_token: Optional[CancelToken] = None,
) -> List[Element]:
    """
    Resolve a map viewport to the playground elements inside it.

    Args:
        center: Map center
        zoom: Map zoom level (ignored when radius_m is given)
        filters: Raw filter mapping
        radius_m: Explicit search radius in meters
        fetcher: Fetcher to use; a temporary one is built from config otherwise
        config: FetchConfig (defaults to the environment)
        profile: Radius profile name ("web" / "mobile")
        element_kinds: OSM element kinds to select
        cancel_token: Stops the fetch from issuing further requests

    Returns:
        Deduplicated elements matching the filters; [] when Overpass is unreachable

    Raises:
        InvalidViewportError: for NaN/out-of-range coordinates or radius <= 0
    """
    config = config or load_fetch_config()
    plan, _ = _plan(center, zoom, radius_m, filters, config, profile, element_kinds)
    elements = _fetch(plan, fetcher, config, cancel_token)
    return filter_records(elements, filters)


async def resolve_viewport_async(
    center: Center,
    zoom: Optional[float] = None,
    filters: Optional[Mapping[str, Any]] = None,
    *,
    radius_m: Optional[float] = None,
    fetcher: Optional[AsyncResilientFetcher] = None,
    config: Optional[FetchConfig] = None,
    profile: Optional[str] = None,
    element_kinds: Sequence[str] = ("node",),
) -> List[Element]:
    """Async twin of resolve_viewport; cancelling the task cancels the fetch."""
    config = config or load_fetch_config()
    plan, _ = _plan(center, zoom, radius_m, filters, config, profile, element_kinds)

    if fetcher is not None:
        elements = await fetcher.fetch(plan)
    else:
        owned = AsyncResilientFetcher.from_config(config)
        try:
            elements = await owned.fetch(plan)
        finally:
            await owned.close()
    return filter_records(elements, filters)


def resolve_playgrounds(
    center: Center,
    zoom: Optional[float] = None,
    filters: Optional[Mapping[str, Any]] = None,
    *,
    radius_m: Optional[float] = None,
    include_backend: bool = True,
    fetcher: Optional[ResilientFetcher] = None,
    config: Optional[FetchConfig] = None,
    profile: Optional[str] = None,
    element_kinds: Sequence[str] = ("node",),
    cancel_token: Optional[CancelToken] = None,
) -> PlaygroundResult:
    """
    Full caller flow: Overpass elements plus local-backend points, merged
    into display records (backend first).

    Raises:
        InvalidViewportError: for invalid viewport input
    """
    start_time = time.time()
    config = config or load_fetch_config()
    plan, radius = _plan(center, zoom, radius_m, filters, config, profile, element_kinds)
    elements = _fetch(plan, fetcher, config, cancel_token)
    osm_records = [normalize_osm_element(e) for e in filter_records(elements, filters)]

    backend_records: List[PlaygroundRecord] = []
    if include_backend:
        points = fetch_backend_points(
            center, radius, filters,
            base_url=config.backend_url,
            timeout=config.backend_timeout_s,
        )
        backend_records = normalize_backend_points(points)

    playgrounds = merge_sources(backend_records, osm_records, filters)
    log_performance(
        logger, "resolve_playgrounds", time.time() - start_time,
        lat=center.lat, lon=center.lon, radius_m=radius, element_count=len(playgrounds),
    )
    return PlaygroundResult(radius_m=radius, bbox=plan.bbox, playgrounds=playgrounds)


class ViewportResolver:
    """
    Resolves successive viewports of one interactive map.

    Every call takes a new generation number. Starting a newer call cancels
    the previous one, and a call whose generation is no longer the latest
    when it finishes returns None instead of its (stale) result.
    """

    def __init__(
        self,
        fetcher: Optional[ResilientFetcher] = None,
        async_fetcher: Optional[AsyncResilientFetcher] = None,
        config: Optional[FetchConfig] = None,
        profile: Optional[str] = None,
    ):
        self.fetcher = fetcher
        self.async_fetcher = async_fetcher
        self.config = config or load_fetch_config()
        self.profile = profile
        self._lock = threading.Lock()
        self._generation = 0
        self._token: Optional[CancelToken] = None
        self._task: Optional[asyncio.Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _next_generation(self) -> Tuple[int, CancelToken]:
        with self._lock:
            self._generation += 1
            if self._token is not None:
                self._token.cancel()
            self._token = CancelToken()
            return self._generation, self._token

    def _discard(self, generation: int) -> None:
        logger.debug(
            f"Discarding stale viewport result (generation {generation}, latest {self._generation})",
            extra={"generation": generation},
        )

    def resolve(
        self,
        center: Center,
        zoom: Optional[float] = None,
        filters: Optional[Mapping[str, Any]] = None,
        radius_m: Optional[float] = None,
    ) -> Optional[List[Element]]:
        """Resolve a viewport; None when a newer viewport superseded this one."""
        generation, token = self._next_generation()
        elements = resolve_viewport(
            center, zoom, filters,
            radius_m=radius_m,
            fetcher=self.fetcher,
            config=self.config,
            profile=self.profile,
            cancel_token=token,
        )
        if not self.is_current(generation):
            self._discard(generation)
            return None
        return elements

    async def resolve_async(
        self,
        center: Center,
        zoom: Optional[float] = None,
        filters: Optional[Mapping[str, Any]] = None,
        radius_m: Optional[float] = None,
    ) -> Optional[List[Element]]:
        """Async resolve; a newer call cancels the in-flight request outright."""
        generation, _ = self._next_generation()
        if self._task is not None and not self._task.done():
            self._task.cancel()

        task = asyncio.ensure_future(resolve_viewport_async(
            center, zoom, filters,
            radius_m=radius_m,
            fetcher=self.async_fetcher,
            config=self.config,
            profile=self.profile,
        ))
        self._task = task
        try:
            elements = await task
        except asyncio.CancelledError:
            if self.is_current(generation):
                raise
            self._discard(generation)
            return None

        if not self.is_current(generation):
            self._discard(generation)
            return None
        return elements


class ViewportThrottle:
    """
    Rate limit for viewport-triggered fetches.

    A fetch is allowed when the zoom changed, or when at least
    `min_interval_ms` passed since the last allowed fetch and the center
    moved at least `min_movement_m`. Debouncing of raw pan events is left
    to the UI layer.
    """

    def __init__(
        self,
        min_interval_ms: int = 3000,
        min_movement_m: float = 100.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval_ms = min_interval_ms
        self.min_movement_m = min_movement_m
        self._clock = clock
        self._last_time: Optional[float] = None
        self._last_center: Optional[Center] = None
        self._last_zoom: Optional[float] = None

    def should_fetch(self, center: Center, zoom: Optional[float] = None) -> bool:
        now = self._clock()
        if self._last_time is not None and zoom == self._last_zoom:
            elapsed_ms = (now - self._last_time) * 1000.0
            if elapsed_ms < self.min_interval_ms:
                return False
            moved = haversine_distance(
                self._last_center.lat, self._last_center.lon, center.lat, center.lon
            )
            if moved < self.min_movement_m:
                return False

        self._last_time = now
        self._last_center = center
        self._last_zoom = zoom
        return True

    def reset(self) -> None:
        self._last_time = None
        self._last_center = None
        self._last_zoom = None
