"""
Normalization helpers for turning raw Overpass elements and local-backend
points into display records.

Overpass elements resolve their coordinates from direct lat/lon, then the
`center` that `out center` adds to ways/relations, then the midpoint of
`bounds`. Anything still without coordinates is dropped.
"""

import math
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .filters import (
    BOOLEAN_FILTER_KEYS,
    VALUE_FILTER_KEYS,
    RATING_FILTER_KEY,
    TAG_SYNONYMS,
    is_truthy_tag,
    normalize_filters,
)
from .models import Element, PlaygroundRecord, ELEMENT_KINDS

DEFAULT_PLAYGROUND_NAME = "Playground"


def _as_coordinate(value: Any, limit: float) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or abs(number) > limit:
        return None
    return number


def _pair(lat: Any, lon: Any) -> Optional[Tuple[float, float]]:
    lat = _as_coordinate(lat, 90)
    lon = _as_coordinate(lon, 180)
    if lat is None or lon is None:
        return None
    return lat, lon


def resolve_coordinates(raw: Mapping[str, Any]) -> Optional[Tuple[float, float]]:
    """
    Resolve (lat, lon) for a raw Overpass element.

    Order: direct lat/lon, then center, then the midpoint of bounds.
    Returns None when nothing usable is present.
    """
    direct = _pair(raw.get("lat"), raw.get("lon"))
    if direct:
        return direct

    center = raw.get("center")
    if isinstance(center, Mapping):
        resolved = _pair(center.get("lat"), center.get("lon"))
        if resolved:
            return resolved

    bounds = raw.get("bounds")
    if isinstance(bounds, Mapping):
        south_west = _pair(bounds.get("minlat"), bounds.get("minlon"))
        north_east = _pair(bounds.get("maxlat"), bounds.get("maxlon"))
        if south_west and north_east:
            return (
                (south_west[0] + north_east[0]) / 2,
                (south_west[1] + north_east[1]) / 2,
            )

    return None


def _clean_tags(tags: Any) -> Dict[str, str]:
    if not isinstance(tags, Mapping):
        return {}
    return {str(k): v if isinstance(v, str) else str(v) for k, v in tags.items() if v is not None}


def parse_element(raw: Any) -> Optional[Element]:
    """One raw Overpass element -> Element, or None if it is unusable."""
    if not isinstance(raw, Mapping):
        return None
    kind = raw.get("type")
    external_id = raw.get("id")
    if kind not in ELEMENT_KINDS or external_id is None or isinstance(external_id, bool):
        return None
    coords = resolve_coordinates(raw)
    if coords is None:
        return None
    return Element(
        external_id=external_id,
        kind=kind,
        lat=coords[0],
        lon=coords[1],
        tags=_clean_tags(raw.get("tags")),
    )


def parse_elements(raw_elements: Iterable[Any]) -> List[Element]:
    """Parse a raw `elements` list, silently dropping invalid entries."""
    parsed = []
    for raw in raw_elements:
        element = parse_element(raw)
        if element is not None:
            parsed.append(element)
    return parsed


def merge_elements(*batches: Iterable[Element]) -> List[Element]:
    """
    Concatenate batches keeping the first element per (kind, external_id).
    Order follows the batches as given.
    """
    seen = set()
    merged: List[Element] = []
    for batch in batches:
        for element in batch:
            if element.key in seen:
                continue
            seen.add(element.key)
            merged.append(element)
    return merged


def normalize_osm_element(element: Element) -> PlaygroundRecord:
    tags = element.tags
    images = [tags["image"]] if tags.get("image") else []
    return PlaygroundRecord(
        id=f"osm_{element.external_id}",
        source="osm",
        lat=element.lat,
        lon=element.lon,
        name=tags.get("name") or DEFAULT_PLAYGROUND_NAME,
        tags=dict(tags),
        description=tags.get("description") or tags.get("name") or "",
        images=images,
        rating=_tag_rating(tags),
    )


def _backend_coordinates(point: Mapping[str, Any]) -> Optional[Tuple[float, float]]:
    location = point.get("location")
    if isinstance(location, Mapping):
        coordinates = location.get("coordinates")
        # GeoJSON order is [lon, lat]
        if isinstance(coordinates, (list, tuple)) and len(coordinates) >= 2:
            resolved = _pair(coordinates[1], coordinates[0])
            if resolved:
                return resolved
    return _pair(point.get("lat"), point.get("lon"))


def _backend_id(point: Mapping[str, Any]) -> str:
    # Points without an _id still need distinct ids in one result
    raw_id = point.get("_id")
    if raw_id is None or raw_id == "":
        return f"local_{uuid.uuid4().hex[:8]}"
    return str(raw_id)


def normalize_backend_point(point: Any) -> Optional[PlaygroundRecord]:
    """
    Map a local-backend point into a display record.

    Expected shape: {_id, name, location: {coordinates: [lon, lat]}, tags,
    description, appData: {images: [{url}], rating: {average, count}}}.
    Returns None when the point has no usable coordinates.
    """
    if not isinstance(point, Mapping):
        return None
    coords = _backend_coordinates(point)
    if coords is None:
        return None

    app_data = point.get("appData") if isinstance(point.get("appData"), Mapping) else {}
    images = []
    for image in app_data.get("images") or []:
        url = image.get("url") if isinstance(image, Mapping) else image
        if isinstance(url, str) and url:
            images.append(url)

    rating_info = app_data.get("rating") if isinstance(app_data.get("rating"), Mapping) else {}
    average = rating_info.get("average")
    count = rating_info.get("count")
    rating = float(average) if isinstance(average, (int, float)) and not isinstance(average, bool) and average > 0 else None

    tags = _clean_tags(point.get("tags"))
    return PlaygroundRecord(
        id=f"backend_{_backend_id(point)}",
        source="backend",
        lat=coords[0],
        lon=coords[1],
        name=point.get("name") or tags.get("name") or DEFAULT_PLAYGROUND_NAME,
        tags=tags,
        description=point.get("description") or "",
        images=images,
        rating=rating,
        rating_count=count if isinstance(count, int) and not isinstance(count, bool) else 0,
    )


def normalize_backend_points(points: Iterable[Any]) -> List[PlaygroundRecord]:
    records = []
    for point in points:
        record = normalize_backend_point(point)
        if record is not None:
            records.append(record)
    return records


def _tag_rating(tags: Mapping[str, str]) -> Optional[float]:
    for key in ("stars", "rating"):
        value = tags.get(key)
        if value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            return number
    return None


def _has_feature(tags: Mapping[str, Any], key: str) -> bool:
    if is_truthy_tag(tags.get(key)):
        return True
    if any(is_truthy_tag(tags.get(alt)) for alt in TAG_SYNONYMS.get(key, ())):
        return True
    if key == "natural_shade":
        return str(tags.get("natural", "")).strip().lower() == "tree"
    return False


def matches_filters(record: Any, filters: Optional[Mapping[str, Any]]) -> bool:
    """
    Re-apply a filter set to the tags of an Element or PlaygroundRecord.

    Uses the same active-filter definition as the Overpass clauses, widened
    by known tag synonyms. Rating compares against stars/rating tags or the
    backend rating; records with no rating fail an active rating filter.
    """
    active = normalize_filters(filters)
    if not active:
        return True

    tags = record.tags
    for key in BOOLEAN_FILTER_KEYS:
        if key in active and not _has_feature(tags, key):
            return False

    for key in VALUE_FILTER_KEYS:
        if key in active and str(tags.get(key, "")).strip() != active[key]:
            return False

    if RATING_FILTER_KEY in active:
        rating = getattr(record, "rating", None)
        if rating is None:
            rating = _tag_rating(tags)
        if rating is None or rating < active[RATING_FILTER_KEY]:
            return False

    return True


def filter_records(records: Iterable[Any], filters: Optional[Mapping[str, Any]]) -> List[Any]:
    return [record for record in records if matches_filters(record, filters)]


def merge_sources(
    backend_records: Iterable[PlaygroundRecord],
    osm_records: Iterable[PlaygroundRecord],
    filters: Optional[Mapping[str, Any]] = None,
) -> List[PlaygroundRecord]:
    """
    Backend records first, then OSM records.

    No cross-source deduplication: a playground known to both sources is
    listed twice. When `filters` is given every record is re-filtered.
    """
    merged = list(backend_records) + list(osm_records)
    if filters:
        merged = filter_records(merged, filters)
    return merged
