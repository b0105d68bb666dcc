"""
Playground filter vocabulary.

A FilterSet is a plain mapping coming from query parameters or a UI form.
`normalize_filters` reduces it to the active, canonical entries; the planner
turns those into Overpass clauses and the normalization layer re-applies the
same entries to tags, so both sides share one definition of "active".
"""

import math
from typing import Any, Dict, Mapping, Optional, Tuple

# Equipment and facility tags, filtered as tag == "yes"
BOOLEAN_FILTER_KEYS: Tuple[str, ...] = (
    "playground:slide",
    "playground:slide:double_deck",
    "playground:swing",
    "playground:seesaw",
    "playground:climb",
    "playground:climbing_net",
    "playground:slider",
    "playground:music",
    "bench",
    "covered",
    "natural_shade",
    "drinking_water",
    "wheelchair",
    "lit",
)

# Tags filtered by exact value
VALUE_FILTER_KEYS: Tuple[str, ...] = (
    "min_age",
    "max_age",
    "surface",
    "playground:theme",
)

RATING_FILTER_KEY = "rating"
MIN_RATING = 1
MAX_RATING = 5

# Accepted input spellings for canonical keys
FILTER_ALIASES: Dict[str, str] = {
    "theme": "playground:theme",
    "min_rating": RATING_FILTER_KEY,
}

# Alternative tag spellings found in OSM data for the same feature
TAG_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "playground:slide": ("playground:slide_yes",),
    "playground:slide:double_deck": ("playground:slide_double_deck",),
    "playground:climb": ("playground:climbingframe",),
    "bench": ("benches",),
    "lit": ("lighting",),
}

RECOGNIZED_FILTER_KEYS = frozenset(
    BOOLEAN_FILTER_KEYS + VALUE_FILTER_KEYS + (RATING_FILTER_KEY,) + tuple(FILTER_ALIASES)
)


def is_truthy_tag(value: Any) -> bool:
    """"yes"/"true"/"1" (any case), True and the number 1 count as set."""
    if value is True:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "true", "1")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 1
    return False


def parse_rating(value: Any) -> Optional[int]:
    """Whole-star rating threshold in [1, 5], or None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    rating = int(number)
    if MIN_RATING <= rating <= MAX_RATING:
        return rating
    return None


def _clean_value(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def normalize_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Reduce a raw filter mapping to its active canonical entries.

    Boolean keys map to "yes", value keys to their trimmed string, rating to
    an int. Unknown keys and inactive or empty values are dropped silently.
    The result is ordered by the canonical key order, not input order.
    """
    if not filters:
        return {}

    canonical: Dict[str, Any] = {}
    for raw_key, value in filters.items():
        key = FILTER_ALIASES.get(raw_key, raw_key)
        # An explicit canonical key beats its alias
        if key in canonical and raw_key != key:
            continue
        canonical[key] = value

    active: Dict[str, Any] = {}
    for key in BOOLEAN_FILTER_KEYS:
        if is_truthy_tag(canonical.get(key)):
            active[key] = "yes"
    for key in VALUE_FILTER_KEYS:
        value = _clean_value(canonical.get(key))
        if value is not None:
            active[key] = value
    rating = parse_rating(canonical.get(RATING_FILTER_KEY))
    if rating is not None:
        active[RATING_FILTER_KEY] = rating
    return active
