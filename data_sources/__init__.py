"""
Data Sources Package
Overpass planning and fetching, the local backend client and result merging
"""

from . import geo_planner
from . import osm_api
from . import async_osm_api
from . import backend_api
from . import normalization
from . import resolver

__all__ = ['geo_planner', 'osm_api', 'async_osm_api', 'backend_api', 'normalization', 'resolver']
