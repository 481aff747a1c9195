"""
Per-city push cadence.

Some offices want a card the moment somebody new shows up, others only on
fixed weekdays. Weekdays use 0=Sunday ... 6=Saturday (7 is also Sunday) and
are evaluated in the reference time zone, not the server's.
"""

from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from onboarding_hub.infrastructure.scheduling.scheduler import to_local

DAY_NAMES = {0: "Sun", 1: "Mon", 2: "Tue", 3: "Wed", 4: "Thu", 5: "Fri", 6: "Sat"}


class PushMode(str, Enum):
    REALTIME = "realtime"
    SCHEDULED = "scheduled"


@dataclass(frozen=True, slots=True)
class PushRule:
    mode: PushMode
    days: frozenset[int] = frozenset()

    @classmethod
    def realtime(cls) -> "PushRule":
        return cls(PushMode.REALTIME)

    @classmethod
    def scheduled(cls, days) -> "PushRule":
        return cls(PushMode.SCHEDULED, frozenset(int(day) % 7 for day in days))

    @classmethod
    def from_config(cls, data: dict[str, Any]) -> "PushRule":
        mode = PushMode(data.get("type", PushMode.REALTIME.value))
        if mode is PushMode.SCHEDULED:
            return cls.scheduled(data.get("days") or [])
        return cls.realtime()

    def describe(self) -> str:
        if self.mode is PushMode.REALTIME:
            return "pushed as soon as someone new appears"
        days = "/".join(DAY_NAMES[day] for day in sorted(self.days))
        return f"pushed every {days}" if days else "never pushed automatically"


class PushCadencePolicy:
    """Decides whether a group (city) gets a card right now."""

    def __init__(
        self,
        rules: dict[str, PushRule],
        default_rule: PushRule,
        timezone: tzinfo | str = "Asia/Shanghai",
    ):
        self.rules = dict(rules)
        self.default_rule = default_rule
        self.timezone = ZoneInfo(timezone) if isinstance(timezone, str) else timezone

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "PushCadencePolicy":
        """Build from Settings.get_push_rule_config()."""
        return cls(
            rules={key: PushRule.from_config(value) for key, value in config["rules"].items()},
            default_rule=PushRule.from_config(config["default"]),
            timezone=config["timezone"],
        )

    def rule_for(self, group_key: str | None) -> PushRule:
        return self.rules.get(group_key or "", self.default_rule)

    def local_weekday(self, now: datetime) -> int:
        return to_local(now, self.timezone).isoweekday() % 7

    def is_due(
        self, group_key: str | None, has_new: bool, now: datetime, force: bool = False
    ) -> bool:
        """
        Whether a push for ``group_key`` is due at ``now``.

        Realtime groups are due iff they have new records. Scheduled groups
        are due on their weekdays whether or not anything is new. ``force``
        bypasses the policy.
        """
        if force:
            return True

        rule = self.rule_for(group_key)
        if rule.mode is PushMode.REALTIME:
            return has_new
        return self.local_weekday(now) in rule.days

    def describe(self, group_key: str | None) -> str:
        return self.rule_for(group_key).describe()
