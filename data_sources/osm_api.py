"""
OpenStreetMap API Client
Resolves playground query plans against a list of Overpass mirrors.

Mirrors are tried one after another (never in parallel) so a shared public
service is not hammered. When the whole bbox fails on every mirror the box
is split into four quadrants and each quadrant gets its own pass over the
mirror list with a shorter timeout. The worst case is therefore bounded at
5 x len(mirrors) requests; there are no retries and no backoff.
"""

import json
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import requests

from .error_handling import UpstreamUnavailableError, ConfigurationError
from .fetch_config import FetchConfig, DEFAULT_USER_AGENT
from .geo_planner import subdivide_bbox
from .models import Element, QueryPlan
from .normalization import parse_elements, merge_elements
from .telemetry import (
    FetchMetrics,
    record_fetch,
    OUTCOME_FULL,
    OUTCOME_SUBDIVIDED,
    OUTCOME_UNAVAILABLE,
    OUTCOME_CANCELLED,
)
from logging_config import get_logger, log_api_call, log_error

logger = get_logger(__name__)

STAGE_FULL = "full"
STAGE_TILE = "tile"

_CHUNK_SIZE = 16 * 1024


class CancelToken:
    """
    Cancellation handle for one fetch.

    Checked before every mirror attempt; once cancelled the fetch issues no
    further requests. The attempt already in flight is bounded by its own
    timeout and its connection is released when it returns.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class _FetchProgress:
    """Per-call bookkeeping for telemetry; never shared between calls."""
    attempts: int = 0
    mirror_used: Optional[str] = None
    failed_mirrors: List[str] = field(default_factory=list)
    tiles_resolved: int = 0
    answers: int = 0  # attempts that returned a valid body, empty or not
    cancelled: bool = False


def parse_overpass_payload(payload, endpoint: str) -> List[Element]:
    """
    Validate an Overpass JSON body and parse its elements.

    Raises:
        UpstreamUnavailableError: if the body is not an object with an
            `elements` list
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
        raise UpstreamUnavailableError("response has no element list", endpoint)
    if payload.get("remark"):
        logger.warning(f"Overpass remark from {endpoint}: {payload['remark']}", extra={"endpoint": endpoint})
    return parse_elements(payload["elements"])


def _shutdown_connection(resp) -> None:
    # Wakes a read blocked on the socket; closing alone waits for the read
    sock = getattr(getattr(resp.raw, "connection", None), "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer
        return


def _read_body(resp, deadline: float, endpoint: str, timeout_s: float) -> bytes:
    """
    Read a streamed body, giving up at `deadline` (time.monotonic()).

    A watchdog shuts the connection down when the deadline passes so a read
    that is still waiting for the next few bytes returns at once.

    Raises:
        UpstreamUnavailableError: when the deadline passes before the body ends
    """
    expired = threading.Event()

    def expire():
        expired.set()
        _shutdown_connection(resp)

    def timed_out() -> UpstreamUnavailableError:
        return UpstreamUnavailableError(f"timed out after {timeout_s:.1f}s (body incomplete)", endpoint)

    watchdog = threading.Timer(max(deadline - time.monotonic(), 0.0), expire)
    watchdog.daemon = True
    watchdog.start()
    chunks = []
    try:
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            if expired.is_set() or time.monotonic() > deadline:
                raise timed_out()
            chunks.append(chunk)
    except UpstreamUnavailableError:
        raise
    except Exception as e:
        if expired.is_set():
            raise timed_out() from e
        raise
    finally:
        watchdog.cancel()

    if expired.is_set():
        raise timed_out()
    return b"".join(chunks)


class ResilientFetcher:
    """
    Execute QueryPlans against an ordered list of Overpass mirrors.

    Args:
        mirrors: Endpoints in priority order
        full_timeout_ms: Per-attempt timeout for the whole-bbox query
        tile_timeout_ms: Per-attempt timeout for each quadrant query
        session: Optional requests.Session (tests pass a fake one)
        user_agent: User-Agent header sent to the mirrors
    """

    def __init__(
        self,
        mirrors: Sequence[str],
        full_timeout_ms: int = 10000,
        tile_timeout_ms: int = 7000,
        session: Optional[requests.Session] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.mirrors = [m for m in mirrors if m]
        if not self.mirrors:
            raise ConfigurationError("ResilientFetcher needs at least one mirror")
        if full_timeout_ms <= 0 or tile_timeout_ms <= 0:
            raise ConfigurationError("mirror timeouts must be > 0")
        self.full_timeout_ms = full_timeout_ms
        self.tile_timeout_ms = tile_timeout_ms
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.headers = {
            "User-Agent": user_agent,
            "Content-Type": "application/x-www-form-urlencoded",
        }

    @classmethod
    def from_config(cls, config: FetchConfig, session: Optional[requests.Session] = None) -> "ResilientFetcher":
        return cls(
            mirrors=config.mirrors,
            full_timeout_ms=config.full_timeout_ms,
            tile_timeout_ms=config.tile_timeout_ms,
            session=session,
            user_agent=config.user_agent,
        )

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _attempt(self, endpoint: str, plan: QueryPlan, timeout_s: float) -> List[Element]:
        """
        One POST to one mirror, bounded by `timeout_s` in total.

        requests only bounds connect and each socket read, so the body is
        streamed against a deadline; a mirror trickling bytes is cut off.

        Raises:
            UpstreamUnavailableError: on non-2xx, timeout, network error or an
                unparseable body
        """
        log_api_call(logger, "overpass", endpoint)
        deadline = time.monotonic() + timeout_s
        try:
            with self.session.post(
                endpoint,
                data={"data": plan.to_overpass_ql()},
                headers=self.headers,
                timeout=timeout_s,
                stream=True,
            ) as resp:
                if not 200 <= resp.status_code < 300:
                    raise UpstreamUnavailableError(
                        f"HTTP {resp.status_code}", endpoint, resp.status_code
                    )
                body = _read_body(resp, deadline, endpoint, timeout_s)
        except requests.exceptions.Timeout as e:
            raise UpstreamUnavailableError(f"timed out after {timeout_s:.1f}s", endpoint) from e
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailableError(f"network error: {e}", endpoint) from e

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise UpstreamUnavailableError(f"invalid JSON: {e}", endpoint) from e
        return parse_overpass_payload(payload, endpoint)

    def _mirror_loop(
        self,
        plan: QueryPlan,
        timeout_s: float,
        stage: str,
        progress: _FetchProgress,
        cancel_token: Optional[CancelToken] = None,
        tile: Optional[int] = None,
    ) -> Optional[List[Element]]:
        """
        Walk the mirror list once for `plan`.

        The full stage accepts any successful answer (an empty list included);
        the tile stage keeps going past empty answers.

        Returns:
            Elements from the first accepted answer, or None if no mirror gave one
        """
        require_non_empty = stage == STAGE_TILE
        for endpoint in self.mirrors:
            if cancel_token is not None and cancel_token.cancelled:
                progress.cancelled = True
                return None
            progress.attempts += 1
            try:
                elements = self._attempt(endpoint, plan, timeout_s)
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
                logger.debug(
                    f"Overpass mirror returned no elements for tile {tile}: {endpoint}",
                    extra={"endpoint": endpoint, "stage": stage, "tile": tile},
                )
                continue

            progress.mirror_used = endpoint
            return elements
        return None

    def fetch(self, plan: QueryPlan, cancel_token: Optional[CancelToken] = None) -> List[Element]:
        """
        Resolve `plan` to a deduplicated element list.

        Never raises for upstream trouble: when every mirror fails at every
        stage the result is an empty list (logged and recorded in telemetry).
        """
        start_time = time.time()
        progress = _FetchProgress()

        elements = self._mirror_loop(
            plan, self.full_timeout_ms / 1000.0, STAGE_FULL, progress, cancel_token
        )
        if elements is not None:
            outcome = OUTCOME_FULL
            result = merge_elements(elements)
        elif progress.cancelled:
            outcome = OUTCOME_CANCELLED
            result = []
        else:
            logger.warning(
                f"All {len(self.mirrors)} Overpass mirrors failed for full bbox, subdividing",
                extra={"stage": STAGE_TILE},
            )
            batches = []
            for index, quadrant in enumerate(subdivide_bbox(plan.bbox)):
                tile_plan = plan.with_bbox(quadrant, timeout_ms=self.tile_timeout_ms)
                tile_elements = self._mirror_loop(
                    tile_plan, self.tile_timeout_ms / 1000.0, STAGE_TILE, progress,
                    cancel_token, tile=index,
                )
                if progress.cancelled:
                    break
                if tile_elements:
                    batches.append(tile_elements)
                    progress.tiles_resolved += 1
            result = merge_elements(*batches)
            if progress.cancelled:
                outcome = OUTCOME_CANCELLED
                result = []
            elif progress.answers:
                # Some quadrants may be genuinely empty; the upstream answered
                outcome = OUTCOME_SUBDIVIDED
            else:
                outcome = OUTCOME_UNAVAILABLE

        return finish_fetch(outcome, result, progress, start_time, len(self.mirrors))


def finish_fetch(
    outcome: str,
    result: List[Element],
    progress: _FetchProgress,
    start_time: float,
    mirror_count: int,
) -> List[Element]:
    """Log how a fetch ended and record it in telemetry; returns `result`."""
    response_time = time.time() - start_time
    if outcome == OUTCOME_UNAVAILABLE:
        log_error(
            logger, "total_upstream_failure",
            f"Overpass unavailable: {len(progress.failed_mirrors)} of {progress.attempts} attempts "
            f"failed across {mirror_count} mirrors and 4 tiles",
            response_time=response_time,
        )
    else:
        logger.info(
            f"Overpass fetch {outcome}: {len(result)} elements in {response_time:.2f}s",
            extra={"stage": outcome, "element_count": len(result),
                   "response_time": response_time, "endpoint": progress.mirror_used},
        )

    record_fetch(FetchMetrics(
        timestamp=start_time,
        outcome=outcome,
        element_count=len(result),
        response_time=response_time,
        attempts=progress.attempts,
        mirror_used=progress.mirror_used,
        failed_mirrors=list(progress.failed_mirrors),
        tiles_resolved=progress.tiles_resolved,
    ))
    return result
