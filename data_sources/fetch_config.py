"""
Centralized fetch configuration for the Overpass resolution path.
Mirror list, per-attempt timeouts and the local-backend location, read from
the environment once and then passed explicitly to fetchers.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Mapping

from .error_handling import ConfigurationError
from .radius_profiles import RADIUS_PROFILES, DEFAULT_SURFACE
from logging_config import get_logger

logger = get_logger(__name__)


DEFAULT_OVERPASS_URLS = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
)
DEFAULT_USER_AGENT = "Playpark/1.0"


def _dedupe_endpoints(endpoints: Sequence[Optional[str]]) -> List[str]:
    """Strip, drop blanks and deduplicate while preserving order."""
    ordered: List[str] = []
    for endpoint in endpoints:
        if not endpoint:
            continue
        endpoint = endpoint.strip()
        if endpoint and endpoint not in ordered:
            ordered.append(endpoint)
    return ordered


@dataclass
class FetchConfig:
    """Configuration for one resolution path (mirrors, timeouts, backend)."""
    mirrors: List[str] = field(default_factory=lambda: list(DEFAULT_OVERPASS_URLS))
    full_timeout_ms: int = 10000   # whole-bbox attempt
    tile_timeout_ms: int = 7000    # per-quadrant attempt
    backend_url: str = "http://localhost:5000"
    backend_timeout_ms: int = 5000
    radius_profile: str = DEFAULT_SURFACE
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self):
        """Validate configuration."""
        self.mirrors = _dedupe_endpoints(self.mirrors)
        if not self.mirrors:
            raise ConfigurationError("at least one Overpass mirror is required")
        if self.full_timeout_ms <= 0 or self.tile_timeout_ms <= 0:
            raise ConfigurationError("mirror timeouts must be > 0")
        if self.backend_timeout_ms <= 0:
            raise ConfigurationError("backend_timeout_ms must be > 0")
        if self.radius_profile not in RADIUS_PROFILES:
            raise ConfigurationError(
                f"unknown radius profile '{self.radius_profile}' "
                f"(expected one of {sorted(RADIUS_PROFILES)})"
            )
        self.backend_url = self.backend_url.rstrip("/")

    @property
    def full_timeout_s(self) -> float:
        return self.full_timeout_ms / 1000.0

    @property
    def tile_timeout_s(self) -> float:
        return self.tile_timeout_ms / 1000.0

    @property
    def backend_timeout_s(self) -> float:
        return self.backend_timeout_ms / 1000.0


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_fetch_config(env: Optional[Mapping[str, str]] = None) -> FetchConfig:
    """
    Build a FetchConfig from environment variables.

    OVERPASS_URLS is a comma separated, priority ordered mirror list. The
    legacy single OVERPASS_URL, when set, is tried first.
    """
    env = os.environ if env is None else env

    mirrors: List[Optional[str]] = [env.get("OVERPASS_URL")]
    raw_urls = env.get("OVERPASS_URLS")
    if raw_urls:
        mirrors.extend(raw_urls.split(","))
    else:
        mirrors.extend(DEFAULT_OVERPASS_URLS)

    config = FetchConfig(
        mirrors=_dedupe_endpoints(mirrors),
        full_timeout_ms=_int_env(env, "OVERPASS_TIMEOUT_MS", 10000),
        tile_timeout_ms=_int_env(env, "OVERPASS_TILE_TIMEOUT_MS", 7000),
        backend_url=env.get("BACKEND_URL") or "http://localhost:5000",
        backend_timeout_ms=_int_env(env, "BACKEND_TIMEOUT_MS", 5000),
        radius_profile=(env.get("RADIUS_PROFILE") or DEFAULT_SURFACE).strip().lower(),
        user_agent=env.get("USER_AGENT") or DEFAULT_USER_AGENT,
    )
    logger.debug(f"Loaded fetch config with {len(config.mirrors)} mirrors")
    return config
