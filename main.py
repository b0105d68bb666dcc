from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
import os
import time
from typing import Optional, Dict, Any
from logging_config import get_logger, setup_logging, log_error

# Load environment variables
load_dotenv()

setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_format=os.getenv("LOG_FORMAT", "json").lower() == "json",
)
logger = get_logger(__name__)

from data_sources.error_handling import InvalidViewportError, check_configuration
from data_sources.fetch_config import load_fetch_config
from data_sources.filters import RECOGNIZED_FILTER_KEYS
from data_sources.models import Center
from data_sources.osm_api import ResilientFetcher
from data_sources.resolver import resolve_playgrounds
from data_sources.telemetry import get_telemetry_stats

VERSION = "1.0.0"

# One fetcher (and its connection pool) for the process
fetch_config = load_fetch_config()
fetcher = ResilientFetcher.from_config(fetch_config)


def parse_filter_params(query_params) -> Dict[str, Any]:
    """
    Pick filter entries out of the query string.

    Only recognized filter keys are kept; everything else (lat, lon, zoom...)
    belongs to the endpoint itself.
    """
    return {
        key: value
        for key, value in query_params.items()
        if key in RECOGNIZED_FILTER_KEYS
    }


app = FastAPI(
    title="Playpark API",
    description="Playground finder: resilient Overpass lookups merged with community points",
    version=VERSION
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    """Health check endpoint."""
    return {
        "service": "Playpark API",
        "status": "running",
        "version": VERSION,
        "endpoints": {
            "playgrounds": "/api/playgrounds?lat=LAT&lon=LON&zoom=ZOOM",
            "health": "/health",
            "telemetry": "/telemetry",
            "docs": "/docs"
        }
    }


@app.get("/api/playgrounds")
def get_playgrounds(request: Request,
                    lat: float,
                    lon: float,
                    zoom: Optional[float] = None,
                    radius: Optional[float] = None,
                    profile: Optional[str] = None,
                    include_backend: bool = True):
    """
    Find playgrounds around a map viewport.

    Parameters:
        lat, lon: Map center
        zoom: Map zoom level; the search radius is derived from it
        radius: Explicit search radius in meters (overrides zoom)
        profile: Radius profile ("web" or "mobile"), default from RADIUS_PROFILE
        include_backend: Merge community points from the local backend (default: True)
        Any recognized filter key (e.g. playground:slide=yes, surface=sand, rating=4)

    Returns:
        JSON with the resolved radius, bbox and merged playground list. An
        unreachable Overpass yields an empty list, not an error.
    """
    start_time = time.time()
    filters = parse_filter_params(request.query_params)
    logger.info(
        f"Playground request: ({lat}, {lon}) zoom={zoom} radius={radius}",
        extra={"lat": lat, "lon": lon, "radius_m": radius},
    )

    try:
        result = resolve_playgrounds(
            Center(lat=lat, lon=lon),
            zoom,
            filters,
            radius_m=radius,
            include_backend=include_backend,
            fetcher=fetcher,
            config=fetch_config,
            profile=profile,
        )
    except InvalidViewportError as e:
        log_error(logger, "invalid_viewport", str(e), lat=lat, lon=lon)
        raise HTTPException(status_code=400, detail=str(e))

    response = result.to_dict()
    response["filters"] = filters
    response["response_time"] = round(time.time() - start_time, 3)
    return response


@app.get("/health")
def health_check():
    """Detailed health check with the configured upstreams."""
    return {
        "status": "healthy",
        "version": VERSION,
        "config": check_configuration(fetch_config),
    }


@app.get("/telemetry")
def telemetry_endpoint():
    """Get telemetry and analytics data."""
    try:
        stats = get_telemetry_stats()
        return {
            "status": "success",
            "telemetry": stats
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Telemetry failed: {e}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
