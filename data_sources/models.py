"""
Value types shared by the planner, fetchers and normalization layer.
Everything here lives for a single fetch and is never persisted.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


ELEMENT_KINDS = ("node", "way", "relation")


@dataclass(frozen=True)
class Center:
    """A map center in WGS84 degrees."""
    lat: float
    lon: float


@dataclass(frozen=True)
class Viewport:
    """
    What the map is showing: a center plus either a zoom level or an
    explicit radius. When both are given the radius wins.
    """
    center: Center
    zoom: Optional[float] = None
    radius_m: Optional[float] = None


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned lat/lon rectangle (degrees)."""
    south: float
    west: float
    north: float
    east: float

    @property
    def mid_lat(self) -> float:
        return (self.south + self.north) / 2

    @property
    def mid_lon(self) -> float:
        return (self.west + self.east) / 2

    def subdivide(self) -> List["BoundingBox"]:
        """
        Split into four quadrants at both midpoints.

        Order is SW, SE, NW, NE. Neighbouring quadrants share their edge
        values exactly, so the union is the original box.
        """
        mid_lat = self.mid_lat
        mid_lon = self.mid_lon
        return [
            BoundingBox(self.south, self.west, mid_lat, mid_lon),
            BoundingBox(self.south, mid_lon, mid_lat, self.east),
            BoundingBox(mid_lat, self.west, self.north, mid_lon),
            BoundingBox(mid_lat, mid_lon, self.north, self.east),
        ]

    def contains(self, lat: float, lon: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lon <= self.east

    def to_overpass(self) -> str:
        """Overpass bbox order: south,west,north,east."""
        return f"{self.south},{self.west},{self.north},{self.east}"

    def to_dict(self) -> Dict[str, float]:
        return {
            "south": self.south,
            "west": self.west,
            "north": self.north,
            "east": self.east,
        }


@dataclass(frozen=True)
class QueryPlan:
    """
    Fully resolved Overpass request: where to look, which tag clauses to
    apply and how long each attempt may take.
    """
    bbox: BoundingBox
    tag_filters: Tuple[str, ...] = ()
    timeout_ms: int = 10000
    element_kinds: Tuple[str, ...] = ("node",)

    @property
    def timeout_s(self) -> int:
        # Overpass [timeout:] takes whole seconds
        return max(1, int(math.ceil(self.timeout_ms / 1000.0)))

    def with_bbox(self, bbox: BoundingBox, timeout_ms: Optional[int] = None) -> "QueryPlan":
        """Same filters over a different area (used for quadrant queries)."""
        return QueryPlan(
            bbox=bbox,
            tag_filters=self.tag_filters,
            timeout_ms=self.timeout_ms if timeout_ms is None else timeout_ms,
            element_kinds=self.element_kinds,
        )

    def to_overpass_ql(self) -> str:
        clauses = "".join(self.tag_filters)
        selectors = "\n".join(
            f'  {kind}["leisure"="playground"]{clauses};' for kind in self.element_kinds
        )
        return (
            f"[out:json][timeout:{self.timeout_s}][bbox:{self.bbox.to_overpass()}];\n"
            f"(\n{selectors}\n);\n"
            f"out body center;"
        )


@dataclass(frozen=True)
class Element:
    """One point of interest returned by Overpass, with resolved coordinates."""
    external_id: int
    kind: str
    lat: float
    lon: float
    tags: Dict[str, str] = field(default_factory=dict, hash=False, compare=True)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.kind, self.external_id)


@dataclass
class PlaygroundRecord:
    """Display-ready record, tagged with the source it came from."""
    id: str
    source: str  # "osm" or "backend"
    lat: float
    lon: float
    name: str
    tags: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    images: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    rating_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "source": self.source,
            "lat": self.lat,
            "lon": self.lon,
            "name": self.name,
            "tags": dict(self.tags),
            "description": self.description,
            "images": list(self.images),
            "rating": self.rating,
            "rating_count": self.rating_count,
        }
