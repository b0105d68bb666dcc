import pytest

from data_sources.models import Element, PlaygroundRecord
from data_sources.normalization import (
    DEFAULT_PLAYGROUND_NAME,
    matches_filters,
    merge_elements,
    merge_sources,
    normalize_backend_point,
    normalize_osm_element,
    parse_elements,
    resolve_coordinates,
)
from data_sources.filters import is_truthy_tag, normalize_filters


def _element(element_id, kind="node", **tags):
    return Element(external_id=element_id, kind=kind, lat=38.7, lon=-9.1, tags=tags)


class TestResolveCoordinates:
    def test_direct(self):
        assert resolve_coordinates({"lat": 38.7, "lon": -9.1, "center": {"lat": 1, "lon": 1}}) == (38.7, -9.1)

    def test_center_for_ways(self):
        assert resolve_coordinates({"type": "way", "center": {"lat": 38.7, "lon": -9.1}}) == (38.7, -9.1)

    def test_bounds_midpoint(self):
        raw = {"bounds": {"minlat": 38.0, "minlon": -10.0, "maxlat": 39.0, "maxlon": -9.0}}
        assert resolve_coordinates(raw) == (38.5, -9.5)

    def test_numeric_strings_accepted(self):
        assert resolve_coordinates({"lat": "38.7", "lon": "-9.1"}) == (38.7, -9.1)

    @pytest.mark.parametrize("raw", [
        {},
        {"lat": "nan", "lon": -9.1},
        {"lat": 91, "lon": 0},
        {"lat": 38.7},
        {"center": {"lat": None, "lon": 1}},
        {"bounds": {"minlat": 38.0, "minlon": -10.0}},
    ])
    def test_unresolvable(self, raw):
        assert resolve_coordinates(raw) is None

    def test_falls_through_bad_direct_to_center(self):
        raw = {"lat": "x", "lon": "y", "center": {"lat": 38.7, "lon": -9.1}}
        assert resolve_coordinates(raw) == (38.7, -9.1)


def test_parse_elements_drops_invalid_entries():
    raw = [
        {"type": "node", "id": 1, "lat": 38.7, "lon": -9.1, "tags": {"leisure": "playground"}},
        {"type": "way", "id": 2, "center": {"lat": 38.71, "lon": -9.12}},
        {"type": "node", "id": 3},
        {"type": "area", "id": 4, "lat": 1, "lon": 1},
        {"type": "node", "lat": 1, "lon": 1},
        "garbage",
    ]
    elements = parse_elements(raw)
    assert [e.key for e in elements] == [("node", 1), ("way", 2)]
    assert elements[0].tags == {"leisure": "playground"}
    assert elements[1].tags == {}


def test_merge_size_is_union_and_first_wins():
    a = [_element(1, name="first"), _element(2), _element(3)]
    b = [_element(3, name="second"), _element(4), _element(1), _element(1, kind="way")]

    merged = merge_elements(a, b)

    assert len(merged) == len({e.key for e in a} | {e.key for e in b})
    assert [e.key for e in merged] == [
        ("node", 1), ("node", 2), ("node", 3), ("node", 4), ("way", 1),
    ]
    assert merged[0].tags == {"name": "first"}


def test_merge_dedups_within_a_single_batch():
    assert len(merge_elements([_element(1), _element(1)])) == 1


def test_normalize_osm_element():
    record = normalize_osm_element(_element(42, name="Jardim", image="https://img/1.jpg", stars="4"))
    assert record.id == "osm_42"
    assert record.source == "osm"
    assert record.name == "Jardim"
    assert record.images == ["https://img/1.jpg"]
    assert record.rating == 4.0

    unnamed = normalize_osm_element(_element(43))
    assert unnamed.name == DEFAULT_PLAYGROUND_NAME
    assert unnamed.rating is None


class TestBackendPoint:
    def test_geojson_point(self):
        point = {
            "_id": "abc",
            "name": "Parque",
            "location": {"type": "Point", "coordinates": [-9.14, 38.72]},
            "tags": {"playground:swing": "yes"},
            "description": "Shady",
            "appData": {
                "images": [{"url": "https://img/a.jpg"}, {"url": ""}, {}],
                "rating": {"average": 4.5, "count": 12},
            },
        }
        record = normalize_backend_point(point)
        assert record.id == "backend_abc"
        assert record.source == "backend"
        assert (record.lat, record.lon) == (38.72, -9.14)
        assert record.images == ["https://img/a.jpg"]
        assert record.rating == 4.5
        assert record.rating_count == 12
        assert record.description == "Shady"

    def test_flat_lat_lon_fallback(self):
        record = normalize_backend_point({"_id": 7, "lat": "38.72", "lon": "-9.14"})
        assert (record.lat, record.lon) == (38.72, -9.14)
        assert record.name == DEFAULT_PLAYGROUND_NAME
        assert record.rating is None
        assert record.rating_count == 0

    def test_missing_ids_get_distinct_local_ids(self):
        first = normalize_backend_point({"lat": 38.72, "lon": -9.14})
        second = normalize_backend_point({"_id": None, "lat": 38.73, "lon": -9.15})
        assert first.id.startswith("backend_local_")
        assert second.id.startswith("backend_local_")
        assert first.id != second.id
        assert "None" not in second.id

    def test_zero_average_means_unrated(self):
        point = {"_id": 1, "lat": 1, "lon": 1, "appData": {"rating": {"average": 0, "count": 0}}}
        assert normalize_backend_point(point).rating is None

    @pytest.mark.parametrize("point", [
        {"_id": 1},
        {"_id": 1, "location": {"coordinates": [None, None]}},
        "not a point",
    ])
    def test_without_coordinates_dropped(self, point):
        assert normalize_backend_point(point) is None


@pytest.mark.parametrize("value,expected", [
    ("yes", True),
    ("YES", True),
    ("True", True),
    ("1", True),
    (True, True),
    (1, True),
    ("no", False),
    ("", False),
    (None, False),
    (False, False),
    (0, False),
    ("2", False),
])
def test_is_truthy_tag(value, expected):
    assert is_truthy_tag(value) is expected


def test_normalize_filters_prefers_canonical_key_over_alias():
    active = normalize_filters({"theme": "pirates", "playground:theme": "space"})
    assert active == {"playground:theme": "space"}


class TestMatchesFilters:
    def test_slide_filter_excludes_elements_without_slide(self):
        filters = {"playground:slide": "yes"}
        assert matches_filters(_element(1, **{"playground:slide": "yes"}), filters)
        assert matches_filters(_element(2, **{"playground:slide_yes": "true"}), filters)
        assert not matches_filters(_element(3, **{"playground:swing": "yes"}), filters)
        assert not matches_filters(_element(4, **{"playground:slide": "no"}), filters)

    def test_synonyms(self):
        assert matches_filters(_element(1, benches="yes"), {"bench": "yes"})
        assert matches_filters(_element(2, lighting="1"), {"lit": True})
        assert matches_filters(_element(3, **{"playground:climbingframe": "yes"}), {"playground:climb": "yes"})
        assert matches_filters(_element(4, natural="tree"), {"natural_shade": "yes"})

    def test_value_filter_trimmed(self):
        assert matches_filters(_element(1, surface=" sand"), {"surface": "sand "})
        assert not matches_filters(_element(2, surface="grass"), {"surface": "sand"})

    def test_rating_from_tags_or_record(self):
        assert matches_filters(_element(1, stars="4"), {"rating": 3})
        assert not matches_filters(_element(2, stars="2"), {"rating": 3})
        assert not matches_filters(_element(3), {"rating": 3})

        rated = PlaygroundRecord(id="backend_1", source="backend", lat=0, lon=0, name="x", rating=4.2)
        assert matches_filters(rated, {"min_rating": "4"})

    def test_no_active_filters_matches_everything(self):
        assert matches_filters(_element(1), {"playground:slide": "no", "unknown": "yes"})
        assert matches_filters(_element(1), None)


def test_merge_sources_backend_first_without_cross_source_dedup():
    backend = [PlaygroundRecord(id="backend_a", source="backend", lat=38.7, lon=-9.1, name="Parque")]
    osm = [normalize_osm_element(_element(1, name="Parque"))]

    merged = merge_sources(backend, osm)
    assert [r.id for r in merged] == ["backend_a", "osm_1"]


def test_merge_sources_refilters_both_sources():
    backend = [
        PlaygroundRecord(id="backend_a", source="backend", lat=0, lon=0, name="a", tags={"bench": "yes"}),
        PlaygroundRecord(id="backend_b", source="backend", lat=0, lon=0, name="b"),
    ]
    osm = [normalize_osm_element(_element(1, benches="yes")), normalize_osm_element(_element(2))]

    merged = merge_sources(backend, osm, {"bench": "yes"})
    assert [r.id for r in merged] == ["backend_a", "osm_1"]
