"""
Cached ride rule list.

Rules change rarely and the ride-service API is rate limited, so the list is
kept for a few minutes. A failed refresh keeps serving the previous list.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from onboarding_hub.features.provisioning.domain.models import RideRule
from onboarding_hub.infrastructure.observability.logging import get_logger
from onboarding_hub.infrastructure.scheduling.scheduler import Clock, SystemClock

logger = get_logger(__name__)

RULE_CACHE_TTL = timedelta(minutes=10)


class RuleCatalog:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[RideRule]]],
        ttl: timedelta = RULE_CACHE_TTL,
        clock: Clock | None = None,
    ):
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock or SystemClock()
        self._rules: list[RideRule] = []
        self._expires_at: datetime | None = None

    async def get_rules(self) -> list[RideRule]:
        now = self._clock.now()
        if self._rules and self._expires_at and now < self._expires_at:
            return self._rules

        try:
            rules = await self._fetch()
        except Exception as e:
            logger.warning(
                "Failed to refresh ride rules, serving cached list",
                error=str(e),
                cached_count=len(self._rules),
            )
            return self._rules

        self._rules = rules
        self._expires_at = now + self._ttl
        logger.info("Ride rules refreshed", rule_count=len(rules))
        return rules

    def invalidate(self) -> None:
        self._expires_at = None
