"""Configuration for the terminology gateway.

Static per-upstream settings (base URL, rate limit, timeout), cache TTL
classes, and the WHO credential pair, read from environment variables.
Invalid numeric values fall back to defaults rather than failing startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

WHO_API_URL = "https://id.who.int/icd"
WHO_TOKEN_URL = "https://icdaccessmanagement.who.int/connect/token"
LOINC_API_URL = "https://clinicaltables.nlm.nih.gov"
RXNORM_API_URL = "https://rxnav.nlm.nih.gov/REST"
MESH_API_URL = "https://id.nlm.nih.gov/mesh"
SNOMED_API_URL = "https://browser.ihtsdotools.org/snowstorm/snomed-ct"


def _env_float(name: str, default: float) -> float:
    """Parse a positive float from the environment, else ``default``."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class CacheTtlConfig:
    """TTL in seconds per data class.

    Attributes:
        static: Structural data such as ICD-11 chapters.
        lookup: Point lookups by code or identifier.
        search: Free-text search results.
        token: OAuth bearer tokens (WHO issues 60-minute tokens).
    """

    static: float = 86400
    lookup: float = 3600
    search: float = 600
    token: float = 3000

    @classmethod
    def from_env(cls) -> "CacheTtlConfig":
        """Read ``TERMINOLOGY_CACHE_TTL_<CLASS>`` overrides."""
        return cls(
            static=_env_float("TERMINOLOGY_CACHE_TTL_STATIC", cls.static),
            lookup=_env_float("TERMINOLOGY_CACHE_TTL_LOOKUP", cls.lookup),
            search=_env_float("TERMINOLOGY_CACHE_TTL_SEARCH", cls.search),
            token=_env_float("TERMINOLOGY_CACHE_TTL_TOKEN", cls.token),
        )


@dataclass(frozen=True)
class UpstreamConfig:
    """Static settings for one upstream service.

    Attributes:
        name: Upstream label (also the env var prefix, upper-cased).
        base_url: Root URL of the REST API.
        rate_limit: Sustained requests per second; also the bucket capacity.
        timeout: HTTP timeout in seconds.
    """

    name: str
    base_url: str
    rate_limit: float = 10.0
    timeout: float = 30.0

    @property
    def capacity(self) -> int:
        return max(1, int(self.rate_limit))

    @classmethod
    def from_env(
        cls, name: str, base_url: str, rate_limit: float, timeout: float = 30.0
    ) -> "UpstreamConfig":
        """Apply ``<NAME>_BASE_URL``, ``<NAME>_RATE_LIMIT``, ``<NAME>_TIMEOUT_SECONDS``."""
        prefix = name.upper()
        return cls(
            name=name,
            base_url=os.getenv(f"{prefix}_BASE_URL") or base_url,
            rate_limit=_env_float(f"{prefix}_RATE_LIMIT", rate_limit),
            timeout=_env_float(f"{prefix}_TIMEOUT_SECONDS", timeout),
        )


@dataclass(frozen=True)
class WhoCredentials:
    """OAuth2 client-credentials pair for the WHO ICD-11 API."""

    client_id: str = ""
    client_secret: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "WhoCredentials":
        return cls(
            client_id=os.getenv("WHO_CLIENT_ID", "").strip(),
            client_secret=os.getenv("WHO_CLIENT_SECRET", "").strip(),
        )


def _default_upstreams() -> dict[str, UpstreamConfig]:
    return {
        "who": UpstreamConfig("who", WHO_API_URL, rate_limit=5),
        "loinc": UpstreamConfig("loinc", LOINC_API_URL, rate_limit=10),
        "rxnorm": UpstreamConfig("rxnorm", RXNORM_API_URL, rate_limit=20),
        "mesh": UpstreamConfig("mesh", MESH_API_URL, rate_limit=10),
        "snomed": UpstreamConfig("snomed", SNOMED_API_URL, rate_limit=10, timeout=60),
    }


@dataclass(frozen=True)
class GatewayConfig:
    """Top-level configuration consumed by ``TerminologyGateway``."""

    upstreams: dict[str, UpstreamConfig] = field(default_factory=_default_upstreams)
    ttl: CacheTtlConfig = field(default_factory=CacheTtlConfig)
    who_credentials: WhoCredentials = field(default_factory=WhoCredentials)
    who_token_url: str = WHO_TOKEN_URL
    who_release_id: str = "2024-01"
    who_token_timeout: float = 15.0
    snomed_branch: str = "MAIN"
    cache_sweep_interval: float = 120.0
    cache_coalesce_misses: bool = False

    def upstream(self, name: str) -> UpstreamConfig:
        return self.upstreams[name]

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Create GatewayConfig from environment variables."""
        upstreams = {
            name: UpstreamConfig.from_env(
                name, default.base_url, default.rate_limit, default.timeout
            )
            for name, default in _default_upstreams().items()
        }
        return cls(
            upstreams=upstreams,
            ttl=CacheTtlConfig.from_env(),
            who_credentials=WhoCredentials.from_env(),
            who_token_url=os.getenv("WHO_TOKEN_URL") or WHO_TOKEN_URL,
            who_release_id=os.getenv("WHO_RELEASE_ID") or "2024-01",
            snomed_branch=os.getenv("SNOMED_BRANCH") or "MAIN",
            cache_sweep_interval=_env_float("TERMINOLOGY_CACHE_SWEEP_SECONDS", 120.0),
            cache_coalesce_misses=_env_bool("TERMINOLOGY_CACHE_COALESCE"),
        )
