"""Constants and startup configuration for the signed-URL service.

Single source of truth for the default bucket, signature lifetime, cache knobs
and batch throttling so they can be changed in one place. Everything here is
read from the environment once, at import/startup, and never hot-reloaded.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


# S3 bucket used when a request does not name one.
DEFAULT_BUCKET = os.environ.get("SIGNED_URL_BUCKET", "signed-url-assets")

# Validity window of issued signatures (seconds).
PRESIGNED_EXPIRES = _env_int("SIGNED_URL_EXPIRES", 3600)
# S3 rejects presigned URLs valid for more than 7 days.
MAX_PRESIGNED_EXPIRES = 7 * 24 * 3600

# Batch issuance: at most this many concurrent signing calls per wave.
BATCH_WAVE_SIZE = _env_int("SIGNED_URL_BATCH_WAVE_SIZE", 10)
BATCH_WAVE_DELAY = _env_float("SIGNED_URL_BATCH_WAVE_DELAY", 0.1)

# Every cache key starts with this; also scopes Redis scans and flushes.
CACHE_KEY_NAMESPACE = "signed-url"


@dataclass(frozen=True)
class CacheConfig:
    """Process-wide cache settings. Build once with ``CacheConfig.from_env()``."""

    ttl_seconds: int = 3000
    max_entries: int = 4096
    sweep_interval_seconds: float = 60.0
    redis_url: Optional[str] = None
    safety_buffer_seconds: float = 300.0
    redis_max_retries: int = 5
    redis_timeout_seconds: float = 2.0

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {self.max_entries}")
        if self.sweep_interval_seconds <= 0:
            raise ValueError(
                f"sweep_interval_seconds must be positive, got {self.sweep_interval_seconds}"
            )
        if self.safety_buffer_seconds < 0:
            raise ValueError(
                f"safety_buffer_seconds must not be negative, got {self.safety_buffer_seconds}"
            )

    @classmethod
    def from_env(cls) -> "CacheConfig":
        redis_url = os.environ.get("SIGNED_URL_REDIS_URL", "").strip() or None
        return cls(
            ttl_seconds=_env_int("SIGNED_URL_CACHE_TTL", 3000),
            max_entries=_env_int("SIGNED_URL_CACHE_MAX_ENTRIES", 4096),
            sweep_interval_seconds=_env_float("SIGNED_URL_CACHE_SWEEP_INTERVAL", 60.0),
            redis_url=redis_url,
            safety_buffer_seconds=_env_float("SIGNED_URL_SAFETY_BUFFER", 300.0),
            redis_max_retries=_env_int("SIGNED_URL_REDIS_MAX_RETRIES", 5),
            redis_timeout_seconds=_env_float("SIGNED_URL_REDIS_TIMEOUT", 2.0),
        )
