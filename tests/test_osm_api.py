import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest
import requests

from conftest import (
    MIRRORS,
    LISBON_BBOX,
    FakeResponse,
    FakeSession,
    bbox_in,
    node,
    overpass_ok,
)
from data_sources.error_handling import ConfigurationError, UpstreamUnavailableError
from data_sources.fetch_config import FetchConfig
from data_sources.geo_planner import build_plan, subdivide_bbox
from data_sources.osm_api import CancelToken, ResilientFetcher
from data_sources.telemetry import get_telemetry_stats


PLAN = build_plan(LISBON_BBOX, {"playground:slide": "yes"}, timeout_ms=10000)


def _fetcher(handler):
    session = FakeSession(handler)
    return ResilientFetcher(MIRRORS, full_timeout_ms=10000, tile_timeout_ms=7000, session=session), session


def test_third_mirror_answers_without_subdivision():
    def handler(url, query):
        if url == MIRRORS[0]:
            return FakeResponse(503)
        if url == MIRRORS[1]:
            return requests.exceptions.Timeout("read timed out")
        return overpass_ok(node(1, 38.72, -9.13), node(2, 38.71, -9.12))

    fetcher, session = _fetcher(handler)
    elements = fetcher.fetch(PLAN)

    assert [e.external_id for e in elements] == [1, 2]
    assert [c["url"] for c in session.calls] == MIRRORS
    assert all(bbox_in(c["query"], LISBON_BBOX) for c in session.calls)
    assert all(c["timeout"] == 10.0 for c in session.calls)

    stats = get_telemetry_stats()
    assert stats["outcomes"] == {"full": 1}
    assert stats["last_fetch"]["mirror_used"] == MIRRORS[2]


def test_quadrants_merged_when_full_query_fails_everywhere():
    sw, se, nw, ne = subdivide_bbox(LISBON_BBOX)
    tile_answers = {
        sw: overpass_ok(node(1, 38.705, -9.145), node(2, 38.715, -9.135)),
        se: overpass_ok(node(2, 38.715, -9.135), node(3, 38.705, -9.115)),
        nw: overpass_ok(node(4, 38.73, -9.14)),
        ne: overpass_ok(node(5, 38.73, -9.12), node(1, 38.705, -9.145)),
    }

    def handler(url, query):
        if bbox_in(query, LISBON_BBOX):
            return FakeResponse(504)
        for quadrant, response in tile_answers.items():
            if bbox_in(query, quadrant):
                return response
        raise AssertionError(f"unexpected query {query}")

    fetcher, session = _fetcher(handler)
    elements = fetcher.fetch(PLAN)

    assert [e.external_id for e in elements] == [1, 2, 3, 4, 5]
    # Three failed full attempts, then the first mirror answers each tile
    assert len(session.calls) == 3 + 4
    assert [c["timeout"] for c in session.calls[3:]] == [7.0] * 4
    assert "[timeout:7]" in session.calls[3]["query"]
    assert '["playground:slide"="yes"]' in session.calls[3]["query"]
    assert get_telemetry_stats()["outcomes"] == {"subdivided": 1}


def test_tile_stage_skips_empty_answers():
    def handler(url, query):
        if bbox_in(query, LISBON_BBOX):
            return requests.exceptions.ConnectionError("refused")
        if url == MIRRORS[0]:
            return overpass_ok()
        return overpass_ok(node(hash(query) % 1000, 38.72, -9.13))

    fetcher, session = _fetcher(handler)
    elements = fetcher.fetch(PLAN)

    assert elements
    # 3 full + 4 tiles x (empty mirror 1 + mirror 2)
    assert len(session.calls) == 3 + 8


def test_all_empty_quadrants_are_subdivided_not_unavailable(caplog):
    def handler(url, query):
        if bbox_in(query, LISBON_BBOX):
            return FakeResponse(504)
        return overpass_ok()

    fetcher, session = _fetcher(handler)
    assert fetcher.fetch(PLAN) == []
    # 3 full + 4 tiles x 3 mirrors, every tile answer empty
    assert len(session.calls) == 3 + 12

    stats = get_telemetry_stats()
    assert stats["outcomes"] == {"subdivided": 1}
    assert stats["mirror_failures"] == {m: 1 for m in MIRRORS}
    assert not [r for r in caplog.records if r.levelname == "ERROR"]

def test_empty_full_answer_is_a_success():
    fetcher, session = _fetcher(lambda url, query: overpass_ok())
    assert fetcher.fetch(PLAN) == []
    assert len(session.calls) == 1
    assert get_telemetry_stats()["outcomes"] == {"full": 1}


def test_total_failure_returns_empty_list():
    fetcher, session = _fetcher(lambda url, query: FakeResponse(429))
    assert fetcher.fetch(PLAN) == []
    assert len(session.calls) == len(MIRRORS) * 5

    stats = get_telemetry_stats()
    assert stats["outcomes"] == {"unavailable": 1}
    assert stats["mirror_failures"] == {m: 5 for m in MIRRORS}


@pytest.mark.parametrize("bad", [
    FakeResponse(200, {"remark": "runtime error: Query timed out"}),
    FakeResponse(200, ["not", "an", "object"]),
    FakeResponse(200, json_error=True),
])
def test_malformed_bodies_move_to_next_mirror(bad):
    def handler(url, query):
        return bad if url == MIRRORS[0] else overpass_ok(node(9, 38.72, -9.13))

    fetcher, session = _fetcher(handler)
    assert [e.external_id for e in fetcher.fetch(PLAN)] == [9]
    assert len(session.calls) == 2


def test_every_response_is_closed():
    def handler(url, query):
        return FakeResponse(500) if url == MIRRORS[0] else overpass_ok(node(1, 38.72, -9.13))

    fetcher, session = _fetcher(handler)
    fetcher.fetch(PLAN)
    assert session.responses and all(r.closed for r in session.responses)


def test_cancelled_token_issues_no_requests():
    token = CancelToken()
    token.cancel()
    fetcher, session = _fetcher(lambda url, query: overpass_ok(node(1, 38.72, -9.13)))

    assert fetcher.fetch(PLAN, cancel_token=token) == []
    assert session.calls == []
    assert get_telemetry_stats()["outcomes"] == {"cancelled": 1}


def test_cancel_during_fetch_stops_further_attempts():
    token = CancelToken()

    def handler(url, query):
        token.cancel()
        return FakeResponse(502)

    fetcher, session = _fetcher(handler)
    assert fetcher.fetch(PLAN, cancel_token=token) == []
    assert len(session.calls) == 1


def test_rejects_empty_mirror_list():
    with pytest.raises(ConfigurationError):
        ResilientFetcher([])
    with pytest.raises(ConfigurationError):
        ResilientFetcher(MIRRORS, full_timeout_ms=0)


def test_from_config_uses_configured_mirrors_and_user_agent():
    config = FetchConfig(mirrors=MIRRORS[:2], full_timeout_ms=4000, tile_timeout_ms=2000, user_agent="test-agent")
    session = FakeSession(lambda url, query: overpass_ok())
    fetcher = ResilientFetcher.from_config(config, session=session)

    fetcher.fetch(PLAN)
    assert fetcher.mirrors == MIRRORS[:2]
    assert session.calls[0]["timeout"] == 4.0
    assert session.calls[0]["headers"]["User-Agent"] == "test-agent"


class _TricklingHandler(BaseHTTPRequestHandler):
    """Sends a 56-byte body 4 bytes at a time, 0.4s apart."""

    body = b'{"version": 0.6, "elements": [], "pad": "xxxxxxxxxxxx"}\n'

    def do_POST(self):
        self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(self.body)))
        self.end_headers()
        try:
            for start in range(0, len(self.body), 4):
                self.wfile.write(self.body[start:start + 4])
                self.wfile.flush()
                time.sleep(0.4)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickling_mirror():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TricklingHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/api/interpreter"
    server.shutdown()
    server.server_close()


def test_attempt_timeout_bounds_the_whole_body(trickling_mirror):
    assert len(_TricklingHandler.body) == 56
    fetcher = ResilientFetcher([trickling_mirror], full_timeout_ms=1000)

    started = time.monotonic()
    with pytest.raises(UpstreamUnavailableError, match="timed out"):
        fetcher._attempt(trickling_mirror, PLAN, 1.0)
    elapsed = time.monotonic() - started
    fetcher.close()

    # Without a total deadline the body would take about 5.6s to arrive
    assert elapsed < 2.5
