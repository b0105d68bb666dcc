"""
Async OpenStreetMap API Client
Async version of the Overpass mirror resolution for callers that live on an
event loop (the HTTP API).

Each attempt runs under aiohttp.ClientTimeout(total=...): when it expires the
request is cancelled and its connection released. Cancelling the task that
awaits `fetch` stops the in-flight request the same way.
"""

import asyncio
import time
from typing import List, Optional, Sequence

import aiohttp

from .error_handling import UpstreamUnavailableError, ConfigurationError
from .fetch_config import FetchConfig, DEFAULT_USER_AGENT
from .geo_planner import subdivide_bbox
from .models import Element, QueryPlan
from .normalization import merge_elements
from .osm_api import (
    STAGE_FULL,
    STAGE_TILE,
    _FetchProgress,
    finish_fetch,
    parse_overpass_payload,
)
from .telemetry import OUTCOME_FULL, OUTCOME_SUBDIVIDED, OUTCOME_UNAVAILABLE, OUTCOME_CANCELLED
from logging_config import get_logger, log_api_call

logger = get_logger(__name__)


class AsyncResilientFetcher:
    """
    aiohttp twin of ResilientFetcher: same stages, same bounds.

    Args:
        mirrors: Endpoints in priority order
        full_timeout_ms: Per-attempt timeout for the whole-bbox query
        tile_timeout_ms: Per-attempt timeout for each quadrant query
        session: Optional aiohttp.ClientSession; one is created lazily otherwise
        user_agent: User-Agent header sent to the mirrors
    """

    def __init__(
        self,
        mirrors: Sequence[str],
        full_timeout_ms: int = 10000,
        tile_timeout_ms: int = 7000,
        session: Optional[aiohttp.ClientSession] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.mirrors = [m for m in mirrors if m]
        if not self.mirrors:
            raise ConfigurationError("AsyncResilientFetcher needs at least one mirror")
        if full_timeout_ms <= 0 or tile_timeout_ms <= 0:
            raise ConfigurationError("mirror timeouts must be > 0")
        self.full_timeout_ms = full_timeout_ms
        self.tile_timeout_ms = tile_timeout_ms
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: FetchConfig, session: Optional[aiohttp.ClientSession] = None) -> "AsyncResilientFetcher":
        return cls(
            mirrors=config.mirrors,
            full_timeout_ms=config.full_timeout_ms,
            tile_timeout_ms=config.tile_timeout_ms,
            session=session,
            user_agent=config.user_agent,
        )

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session for connection reuse."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, limit_per_host=4)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": self.user_agent},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this fetcher created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _attempt(self, endpoint: str, plan: QueryPlan, timeout_s: float) -> List[Element]:
        """
        One POST to one mirror.

        Raises:
            UpstreamUnavailableError: on non-2xx, timeout, network error or an
                unparseable body
        """
        session = await self.get_session()
        log_api_call(logger, "overpass", endpoint)
        try:
            async with session.post(
                endpoint,
                data={"data": plan.to_overpass_ql()},
                headers={"User-Agent": self.user_agent},
                timeout=aiohttp.ClientTimeout(total=timeout_s),
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise UpstreamUnavailableError(f"HTTP {resp.status}", endpoint, resp.status)
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise UpstreamUnavailableError(f"invalid JSON: {e}", endpoint) from e
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(f"timed out after {timeout_s:.1f}s", endpoint) from e
        except aiohttp.ClientError as e:
            raise UpstreamUnavailableError(f"network error: {e}", endpoint) from e

        return parse_overpass_payload(payload, endpoint)

    async def _mirror_loop(
        self,
        plan: QueryPlan,
        timeout_s: float,
        stage: str,
        progress: _FetchProgress,
        tile: Optional[int] = None,
    ) -> Optional[List[Element]]:
        require_non_empty = stage == STAGE_TILE
        for endpoint in self.mirrors:
            progress.attempts += 1
            try:
                elements = await self._attempt(endpoint, plan, timeout_s)
            except UpstreamUnavailableError as e:
                progress.failed_mirrors.append(endpoint)
                logger.warning(
                    f"Overpass mirror failed ({stage}): {endpoint}: {e}",
                    extra={"endpoint": endpoint, "stage": stage, "tile": tile,
                           "status_code": e.status_code, "error_type": "upstream_unavailable"},
                )
                continue

            progress.answers += 1
            if require_non_empty and not elements:
                continue

            progress.mirror_used = endpoint
            return elements
        return None

    async def fetch(self, plan: QueryPlan) -> List[Element]:
        """
        Resolve `plan` to a deduplicated element list; [] when every mirror
        failed at every stage. Task cancellation propagates to the caller.
        """
        start_time = time.time()
        progress = _FetchProgress()

        try:
            elements = await self._mirror_loop(plan, self.full_timeout_ms / 1000.0, STAGE_FULL, progress)
            if elements is not None:
                return finish_fetch(OUTCOME_FULL, merge_elements(elements), progress, start_time, len(self.mirrors))

            logger.warning(
                f"All {len(self.mirrors)} Overpass mirrors failed for full bbox, subdividing",
                extra={"stage": STAGE_TILE},
            )
            batches = []
            for index, quadrant in enumerate(subdivide_bbox(plan.bbox)):
                tile_plan = plan.with_bbox(quadrant, timeout_ms=self.tile_timeout_ms)
                tile_elements = await self._mirror_loop(
                    tile_plan, self.tile_timeout_ms / 1000.0, STAGE_TILE, progress, tile=index
                )
                if tile_elements:
                    batches.append(tile_elements)
                    progress.tiles_resolved += 1
        except asyncio.CancelledError:
            progress.cancelled = True
            finish_fetch(OUTCOME_CANCELLED, [], progress, start_time, len(self.mirrors))
            raise

        outcome = OUTCOME_SUBDIVIDED if progress.answers else OUTCOME_UNAVAILABLE
        return finish_fetch(outcome, merge_elements(*batches), progress, start_time, len(self.mirrors))
