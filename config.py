"""
Netatmo Crawler - Configuration
Station references, provider endpoints and run tuning, read from the environment.
"""

from dataclasses import dataclass
from typing import Mapping, Optional
import os

# ============================================================================
# PROVIDER ENDPOINTS
# ============================================================================

# Public weathermap token (no account needed)
NETATMO_TOKEN_URL = "https://auth.netatmo.com/weathermap/token"

# Latest measures for one public station
NETATMO_MEASURE_URL = "https://app.netatmo.net/api/getpublicmeasure"

# Host part every station locator must carry
NETATMO_WEATHERMAP_HOST = "weathermap.netatmo.com"

# ============================================================================
# NAMING POLICIES
# ============================================================================

NAMING_COUNTER = "counter"  # station1, station2, ...
NAMING_ID = "id"            # raw station id (70:ee:50:...)

ENV_PREFIX = "NETATMO_CRAWLER_"


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = str(env.get(ENV_PREFIX + name, "")).strip()
    return raw or default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = str(env.get(ENV_PREFIX + name, "")).strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = str(env.get(ENV_PREFIX + name, "")).strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


@dataclass
class CrawlerConfig:
    station_urls: str = ""
    naming: str = NAMING_COUNTER
    token_url: str = NETATMO_TOKEN_URL
    measure_url: str = NETATMO_MEASURE_URL
    request_timeout_seconds: float = 10.0
    token_timeout_seconds: float = 10.0
    token_lifetime_seconds: int = 3 * 3600
    max_in_flight: int = 4
    retry_delay_seconds: float = 5.0
    auth_retries: int = 1
    transient_retries: int = 1
    change_epsilon: float = 0.0
    interval_minutes: int = 10
    database_path: str = "netatmo_crawler.db"

    def __post_init__(self):
        naming = str(self.naming or "").strip().lower()
        self.naming = naming if naming in (NAMING_COUNTER, NAMING_ID) else NAMING_COUNTER
        self.max_in_flight = max(1, int(self.max_in_flight))
        self.auth_retries = max(0, int(self.auth_retries))
        self.transient_retries = max(0, int(self.transient_retries))
        self.retry_delay_seconds = max(0.0, float(self.retry_delay_seconds))
        self.change_epsilon = max(0.0, float(self.change_epsilon))
        self.interval_minutes = max(1, int(self.interval_minutes))


def load_config_from_env(env: Optional[Mapping[str, str]] = None) -> CrawlerConfig:
    """Build the run configuration. Read at startup and before each scheduled run."""
    env = os.environ if env is None else env
    defaults = CrawlerConfig()
    return CrawlerConfig(
        station_urls=str(env.get(ENV_PREFIX + "STATION_URLS", "")),
        naming=_env_str(env, "NAMING", defaults.naming),
        token_url=_env_str(env, "TOKEN_URL", defaults.token_url),
        measure_url=_env_str(env, "MEASURE_URL", defaults.measure_url),
        request_timeout_seconds=_env_float(env, "REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds),
        token_timeout_seconds=_env_float(env, "TOKEN_TIMEOUT_SECONDS", defaults.token_timeout_seconds),
        token_lifetime_seconds=_env_int(env, "TOKEN_LIFETIME_SECONDS", defaults.token_lifetime_seconds),
        max_in_flight=_env_int(env, "MAX_IN_FLIGHT", defaults.max_in_flight),
        retry_delay_seconds=_env_float(env, "RETRY_DELAY_SECONDS", defaults.retry_delay_seconds),
        auth_retries=_env_int(env, "AUTH_RETRIES", defaults.auth_retries),
        transient_retries=_env_int(env, "TRANSIENT_RETRIES", defaults.transient_retries),
        change_epsilon=_env_float(env, "CHANGE_EPSILON", defaults.change_epsilon),
        interval_minutes=_env_int(env, "INTERVAL_MINUTES", defaults.interval_minutes),
        database_path=_env_str(env, "DATABASE_PATH", defaults.database_path),
    )
