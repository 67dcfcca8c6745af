"""
Rate Limit Policies
===================

Named tiers, key strategies and the admission controller that gates
expensive operations (job creation included) before they enter the system.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from amoeba_core.ratelimit.limiter import RateLimiter, RateLimitExceeded, RateLimitResult

logger = structlog.get_logger(__name__)

KeyFunc = Callable[[Dict[str, Any]], str]

ONE_MINUTE_MS = 60 * 1000


# =============================================================================
# KEY STRATEGIES
# =============================================================================


def _address(context: Dict[str, Any]) -> str:
    return str(context.get("ip") or context.get("client_ip") or "unknown")


def default_key(context: Dict[str, Any]) -> str:
    """Network address combined with the authenticated subject"""
    subject = context.get("user_id") or "anonymous"
    return f"{_address(context)}:{subject}"


def address_key(context: Dict[str, Any]) -> str:
    """Network address only, for unauthenticated endpoints"""
    return _address(context)


def credential_key(context: Dict[str, Any]) -> str:
    """Per API credential, falling back to the default key"""
    api_key = context.get("api_key")
    if api_key:
        return f"apikey:{api_key}"
    return default_key(context)


# =============================================================================
# TIERS
# =============================================================================


@dataclass
class RateLimitTier:
    """A named rate budget"""

    name: str
    max_requests: int
    window_ms: int = ONE_MINUTE_MS
    message: str = "Too many requests, please try again later."
    key_func: KeyFunc = default_key

    def key_for(self, context: Dict[str, Any]) -> str:
        return f"{self.name}:{self.key_func(context)}"


STRICT = RateLimitTier(
    name="strict",
    max_requests=5,
    message="Too many requests for this operation, please try again later.",
)
STANDARD = RateLimitTier(name="standard", max_requests=60)
GENEROUS = RateLimitTier(name="generous", max_requests=120)
PUBLIC = RateLimitTier(
    name="public",
    max_requests=30,
    message="Too many requests from this address, please try again later.",
    key_func=address_key,
)
AI_GENERATION = RateLimitTier(
    name="ai_generation",
    max_requests=10,
    message="AI generation rate limit exceeded, please wait before generating more content.",
)

DEFAULT_TIERS: Dict[str, RateLimitTier] = {
    tier.name: tier for tier in (STRICT, STANDARD, GENEROUS, PUBLIC, AI_GENERATION)
}


@dataclass
class RateLimitResponse:
    """Response for rate-limited requests"""

    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: RateLimitResult, message: str) -> "RateLimitResponse":
        return cls(
            status_code=429,
            body={
                "error": message,
                "retry_after": result.retry_after,
            },
            headers=result.headers,
        )


# =============================================================================
# ADMISSION CONTROL
# =============================================================================


class AdmissionController:
    """
    Applies tiered budgets to caller contexts.

    Usage:
        admission = AdmissionController(RateLimiter())
        await admission.admit("strict", {"ip": "1.2.3.4", "user_id": "u1"})
    """

    def __init__(
        self,
        limiter: RateLimiter,
        tiers: Optional[Iterable[RateLimitTier]] = None,
    ):
        self.limiter = limiter
        self._tiers: Dict[str, RateLimitTier] = dict(DEFAULT_TIERS)
        for tier in tiers or ():
            self._tiers[tier.name] = tier
        self._logger = structlog.get_logger("admission_controller")

    def add_tier(self, tier: RateLimitTier) -> None:
        self._tiers[tier.name] = tier

    def get_tier(self, name: str) -> RateLimitTier:
        tier = self._tiers.get(name)
        if tier is None:
            raise KeyError(f"Unknown rate limit tier: {name!r}")
        return tier

    @property
    def tiers(self) -> Dict[str, RateLimitTier]:
        return dict(self._tiers)

    async def check(
        self,
        tier: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> RateLimitResult:
        """Count the request against the tier and return the decision"""
        policy = self.get_tier(tier)
        key = policy.key_for(context or {})
        result = await self.limiter.allow(key, policy.window_ms, policy.max_requests)

        if not result.allowed:
            self._logger.warning(
                "rate_limit_rejected",
                tier=policy.name,
                key=key,
                limit=result.limit,
                retry_after=result.retry_after,
            )
        return result

    async def admit(
        self,
        tier: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> RateLimitResult:
        """Like `check`, but raise RateLimitExceeded when denied"""
        result = await self.check(tier, context)
        if not result.allowed:
            raise RateLimitExceeded(
                message=self.get_tier(tier).message,
                limit=result.limit,
                remaining=result.remaining,
                reset_at=result.reset_at,
                retry_after=result.retry_after,
            )
        return result


__all__ = [
    "KeyFunc",
    "default_key",
    "address_key",
    "credential_key",
    "RateLimitTier",
    "STRICT",
    "STANDARD",
    "GENEROUS",
    "PUBLIC",
    "AI_GENERATION",
    "DEFAULT_TIERS",
    "RateLimitResponse",
    "AdmissionController",
]
