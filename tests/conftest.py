"""
Shared fakes for the network-free test suite.

FakeSession stands in for requests.Session: every POST/GET is handed to a
handler(url, query) that returns a FakeResponse or an exception to raise.
"""

import json

import pytest

from data_sources.models import BoundingBox
from data_sources.telemetry import reset_telemetry


MIRRORS = [
    "https://mirror-1.test/api/interpreter",
    "https://mirror-2.test/api/interpreter",
    "https://mirror-3.test/api/interpreter",
]

LISBON_BBOX = BoundingBox(south=38.70, west=-9.15, north=38.74, east=-9.11)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, json_error=False):
        self.status_code = status_code
        self.payload = payload
        self.json_error = json_error
        self.closed = False
        self.raw = None

    def iter_content(self, chunk_size=1):
        body = b"<html>busy</html>" if self.json_error else json.dumps(self.payload).encode()
        for start in range(0, len(body), chunk_size):
            yield body[start:start + chunk_size]

    def json(self):
        if self.json_error:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeSession:
    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.responses = []

    def _dispatch(self, url, query):
        outcome = self.handler(url, query)
        if isinstance(outcome, Exception):
            raise outcome
        self.responses.append(outcome)
        return outcome

    def post(self, url, data=None, headers=None, timeout=None, stream=False):
        query = (data or {}).get("data", "")
        self.calls.append({"url": url, "query": query, "timeout": timeout, "headers": headers})
        return self._dispatch(url, query)

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        return self._dispatch(url, params)

    def close(self):
        pass


def node(element_id, lat, lon, **tags):
    return {"type": "node", "id": element_id, "lat": lat, "lon": lon, "tags": tags}


def overpass_ok(*elements):
    return FakeResponse(200, {"version": 0.6, "elements": list(elements)})


def bbox_in(query, bbox):
    """True when the serialized query targets exactly `bbox`."""
    return f"[bbox:{bbox.to_overpass()}]" in query


@pytest.fixture(autouse=True)
def clean_telemetry():
    reset_telemetry()
    yield
    reset_telemetry()
