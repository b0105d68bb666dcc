#!/usr/bin/env python3
"""
Resolve one viewport against the live Overpass mirrors and print the result
as JSON. Handy for checking mirror health and filter behaviour by hand.

Run from project root:
  PYTHONPATH=. python3 scripts/fetch_playgrounds.py --lat 38.7169 --lon -9.1390 --zoom 15
  PYTHONPATH=. python3 scripts/fetch_playgrounds.py --lat 38.7169 --lon -9.1390 --radius 800 \
      --filter playground:slide=yes --no-backend --pretty
"""
import argparse
import json
import os
import sys
from typing import Dict, List

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(SCRIPT_DIR)
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


def parse_filter_args(pairs: List[str]) -> Dict[str, str]:
    """KEY=VALUE pairs -> filter mapping; a bare KEY means KEY=yes."""
    filters: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not key:
            continue
        filters[key] = value.strip() if sep else "yes"
    return filters


def main(argv=None) -> int:
    from dotenv import load_dotenv
    from logging_config import setup_logging
    from data_sources.error_handling import InvalidViewportError
    from data_sources.models import Center
    from data_sources.resolver import resolve_playgrounds
    from data_sources.telemetry import get_telemetry_stats

    parser = argparse.ArgumentParser(description="Fetch playgrounds around a point (JSON).")
    parser.add_argument("--lat", type=float, required=True, help="Latitude of the map center")
    parser.add_argument("--lon", type=float, required=True, help="Longitude of the map center")
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--zoom", type=float, help="Map zoom level")
    scope.add_argument("--radius", type=float, help="Search radius in meters")
    parser.add_argument("--profile", choices=["web", "mobile"], default=None, help="Radius profile")
    parser.add_argument(
        "--filter", action="append", default=[], metavar="KEY[=VALUE]",
        help="Filter entry, repeatable (e.g. playground:slide=yes, surface=sand, rating=4)",
    )
    parser.add_argument("--areas", action="store_true", help="Also select ways and relations")
    parser.add_argument("--no-backend", action="store_true", help="Skip the local backend")
    parser.add_argument("--telemetry", action="store_true", help="Include fetch telemetry in the output")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(level=args.log_level, json_format=False)

    kinds = ("node", "way", "relation") if args.areas else ("node",)
    try:
        result = resolve_playgrounds(
            Center(lat=args.lat, lon=args.lon),
            args.zoom,
            parse_filter_args(args.filter),
            radius_m=args.radius,
            include_backend=not args.no_backend,
            profile=args.profile,
            element_kinds=kinds,
        )
    except InvalidViewportError as e:
        print(f"Invalid viewport: {e}", file=sys.stderr)
        return 2

    output = result.to_dict()
    if args.telemetry:
        output["telemetry"] = get_telemetry_stats()
    print(json.dumps(output, indent=2 if args.pretty else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
