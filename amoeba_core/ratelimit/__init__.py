"""
Rate Limiting
=============

Keyed window counters, pluggable counter stores and tiered admission control.
"""

from amoeba_core.ratelimit.limiter import (
    InMemoryRateLimitStore,
    RateLimitEntry,
    RateLimiter,
    RateLimitExceeded,
    RateLimitResult,
    RateLimitStore,
    RedisRateLimitStore,
)
from amoeba_core.ratelimit.policies import (
    AI_GENERATION,
    DEFAULT_TIERS,
    GENEROUS,
    PUBLIC,
    STANDARD,
    STRICT,
    AdmissionController,
    RateLimitResponse,
    RateLimitTier,
    address_key,
    credential_key,
    default_key,
)

__all__ = [
    "InMemoryRateLimitStore",
    "RateLimitEntry",
    "RateLimiter",
    "RateLimitExceeded",
    "RateLimitResult",
    "RateLimitStore",
    "RedisRateLimitStore",
    "AI_GENERATION",
    "DEFAULT_TIERS",
    "GENEROUS",
    "PUBLIC",
    "STANDARD",
    "STRICT",
    "AdmissionController",
    "RateLimitResponse",
    "RateLimitTier",
    "address_key",
    "credential_key",
    "default_key",
]
