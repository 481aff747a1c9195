"""
Interactive card rendering.

Builds the Feishu message-card JSON for the bot: new-hire email cards,
ride-account cards, the daily digest, and the result card posted after a
provisioning run. Every button carries a serialized CardAction.
"""

from collections.abc import Iterable
from datetime import date, datetime, timedelta, tzinfo
from enum import IntEnum
from zoneinfo import ZoneInfo

from onboarding_hub.features.provisioning.domain.actions import (
    EmailTarget,
    ProvisionAllEmailAction,
    ProvisionAllRideAction,
    ProvisionEmailAction,
    ProvisionRideAction,
    RefreshAction,
    RideTarget,
    encode_action,
)
from onboarding_hub.features.provisioning.domain.models import EnrichedRecord, ItemResult
from onboarding_hub.infrastructure.scheduling.scheduler import Clock, SystemClock, to_local

BUTTONS_PER_ROW = 3
THIS_WEEK_DAYS = 7


class UrgencyTier(IntEnum):
    OVERDUE = 0
    TOMORROW = 1
    THIS_WEEK = 2
    LATER = 3


TIER_BADGES = {
    UrgencyTier.OVERDUE: "🔴",
    UrgencyTier.TOMORROW: "🟠",
    UrgencyTier.THIS_WEEK: "🟡",
    UrgencyTier.LATER: "🟢",
}

TIER_TITLES = {
    UrgencyTier.OVERDUE: "Today or overdue",
    UrgencyTier.TOMORROW: "Tomorrow",
    UrgencyTier.THIS_WEEK: "This week",
    UrgencyTier.LATER: "Later",
}


def urgency_tier(target: date | None, today: date) -> UrgencyTier:
    """Bucket a start date relative to today. Missing dates are not urgent."""
    if target is None:
        return UrgencyTier.LATER
    days_until = (target - today).days
    if days_until <= 0:
        return UrgencyTier.OVERDUE
    if days_until == 1:
        return UrgencyTier.TOMORROW
    if days_until <= THIS_WEEK_DAYS:
        return UrgencyTier.THIS_WEEK
    return UrgencyTier.LATER


def group_by_urgency(
    records: Iterable[EnrichedRecord], today: date
) -> dict[UrgencyTier, list[EnrichedRecord]]:
    """All four tiers, most urgent first, each keeping roster order."""
    groups: dict[UrgencyTier, list[EnrichedRecord]] = {tier: [] for tier in UrgencyTier}
    for record in records:
        groups[urgency_tier(record.onboarding_date, today)].append(record)
    return groups


def _cell(value) -> str:
    if value is None or value == "":
        return "-"
    return str(value).replace("|", "/")


def _markdown(content: str) -> dict:
    return {"tag": "markdown", "content": content}


def _table(headers: list[str], rows: list[list]) -> dict:
    lines = [
        "| " + " | ".join(headers) + " |",
        "| " + " | ".join("---" for _ in headers) + " |",
    ]
    lines.extend("| " + " | ".join(_cell(value) for value in row) + " |" for row in rows)
    return _markdown("\n".join(lines))


def _button(text: str, value: str | None = None, kind: str = "primary", **extra) -> dict:
    button = {"tag": "button", "text": {"tag": "plain_text", "content": text}, "type": kind}
    if value is not None:
        button["value"] = value
    button.update(extra)
    return button


def _confirm(title: str, text: str) -> dict:
    return {
        "title": {"tag": "plain_text", "content": title},
        "text": {"tag": "plain_text", "content": text},
    }


def _action_rows(buttons: list[dict]) -> list[dict]:
    return [
        {"tag": "action", "actions": buttons[i : i + BUTTONS_PER_ROW]}
        for i in range(0, len(buttons), BUTTONS_PER_ROW)
    ]


def _intern_tag(record: EnrichedRecord) -> str:
    return " (intern)" if record.is_intern else ""


class CardRenderer:
    """Renders bot cards. Dates and footers use the reference time zone."""

    def __init__(
        self,
        timezone: tzinfo | str = "Asia/Shanghai",
        dashboard_url: str | None = None,
        clock: Clock | None = None,
    ):
        self.timezone = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
        self.dashboard_url = dashboard_url
        self.clock = clock or SystemClock()

    def local_now(self) -> datetime:
        return to_local(self.clock.now(), self.timezone)

    def today(self) -> date:
        return self.local_now().date()

    def _card(self, title: str, template: str, elements: list[dict]) -> dict:
        return {
            "config": {"wide_screen_mode": True},
            "header": {"title": {"tag": "plain_text", "content": title}, "template": template},
            "elements": elements,
        }

    def _note(self, text: str) -> dict:
        stamp = self.local_now().strftime("%Y-%m-%d %H:%M")
        content = f"🕐 {stamp} · {text}" if text else f"🕐 {stamp}"
        return {"tag": "note", "elements": [{"tag": "plain_text", "content": content}]}

    def _date_label(self, target: date | None, today: date) -> str:
        if target is None:
            return "📅 Unknown date"
        tier = urgency_tier(target, today)
        badge = TIER_BADGES[tier]
        if tier is UrgencyTier.OVERDUE:
            return f"{badge} {target.isoformat()} (today or overdue)"
        if tier is UrgencyTier.TOMORROW:
            return f"{badge} {target.isoformat()} (tomorrow)"
        return f"{badge} {target.isoformat()} (in {(target - today).days} days)"

    # ==================== New-hire cards ====================

    def render_email_card(
        self,
        records: list[EnrichedRecord],
        today: date | None = None,
        group_key: str | None = None,
        cadence: str | None = None,
    ) -> dict:
        """Work email card for pre-boarding hires, grouped by start date."""
        today = today or self.today()
        city_label = f" · {group_key}" if group_key else ""

        overview = [f"**{len(records)}** upcoming hire(s) need a work email"]
        if cadence:
            overview.append(f"Cadence: {cadence}")
        elements: list[dict] = [_markdown("\n".join(overview)), {"tag": "hr"}]

        by_date: dict[date | None, list[EnrichedRecord]] = {}
        for record in records:
            by_date.setdefault(record.onboarding_date, []).append(record)

        for start_date in sorted(by_date, key=lambda d: (d is None, d or today)):
            group = by_date[start_date]
            elements.append(_markdown(f"**{self._date_label(start_date, today)}**"))
            elements.append(
                _table(
                    ["Name", "City", "Suggested email", "Phone"],
                    [
                        [
                            f"{r.name}{_intern_tag(r)}",
                            r.location,
                            r.suggested_email or r.email_error,
                            r.phone,
                        ]
                        for r in group
                    ],
                )
            )
            buttons = [
                _button(
                    f"📧 Provision {r.name}",
                    encode_action(
                        ProvisionEmailAction(id=r.id, name=r.name, email=r.suggested_email)
                    ),
                )
                for r in group
                if not r.email_error
            ]
            elements.extend(_action_rows(buttons))
            elements.append({"tag": "hr"})

        elements.append(
            {
                "tag": "action",
                "actions": [
                    self._provision_all_email_button(records),
                    _button("🔄 Refresh", encode_action(RefreshAction()), kind="default"),
                ],
            }
        )
        elements.append(self._note(f"{group_key or 'all cities'} · tap a button to provision"))

        overdue = any(
            urgency_tier(r.onboarding_date, today) is UrgencyTier.OVERDUE for r in records
        )
        return self._card(
            f"📧 Work email reminder{city_label} ({len(records)})",
            "red" if overdue else "blue",
            elements,
        )

    def _provision_all_email_button(self, records: list[EnrichedRecord]) -> dict:
        targets = [
            EmailTarget(id=r.id, name=r.name, email=r.suggested_email)
            for r in records
            if not r.email_error
        ]
        return _button(
            f"⚡ Provision all emails ({len(targets)})",
            encode_action(ProvisionAllEmailAction(users=targets)),
            kind="danger",
            confirm=_confirm(
                "Confirm batch provisioning",
                f"Work emails will be created for {len(targets)} hire(s). Continue?",
            ),
        )

    def render_ride_card(
        self,
        records: list[EnrichedRecord],
        group_key: str | None = None,
        cadence: str | None = None,
    ) -> dict:
        """Ride account card for onboarded, non-intern employees."""
        city_label = f" · {group_key}" if group_key else ""

        overview = [f"**{len(records)}** onboarded employee(s) need a ride account"]
        if cadence:
            overview.append(f"Cadence: {cadence}")
        elements: list[dict] = [_markdown("\n".join(overview)), {"tag": "hr"}]

        elements.append(
            _table(
                ["Name", "City", "Phone", "Ride rule"],
                [
                    [r.name, r.location, r.phone, r.suggested_rule_name or "unmatched"]
                    for r in records
                ],
            )
        )

        buttons = [
            _button(f"🚗 Provision {r.name}", encode_action(self._ride_action(r)))
            for r in records
            if r.suggested_rule_id
        ]
        elements.extend(_action_rows(buttons))
        elements.append({"tag": "hr"})

        provisionable = [r for r in records if r.suggested_rule_id and r.phone]
        if provisionable:
            elements.append(
                {
                    "tag": "action",
                    "actions": [
                        _button(
                            f"⚡ Provision all ride accounts ({len(provisionable)})",
                            encode_action(
                                ProvisionAllRideAction(
                                    users=[
                                        RideTarget(
                                            name=r.name,
                                            phone=r.phone,
                                            rule_id=r.suggested_rule_id,
                                            rule_name=r.suggested_rule_name,
                                        )
                                        for r in provisionable
                                    ]
                                )
                            ),
                            kind="danger",
                            confirm=_confirm(
                                "Confirm batch ride provisioning",
                                f"Ride accounts will be created for {len(provisionable)} "
                                "employee(s). Continue?",
                            ),
                        ),
                        _button("🔄 Refresh", encode_action(RefreshAction()), kind="default"),
                    ],
                }
            )

        elements.append(self._note(f"{group_key or 'all cities'} · onboarded non-interns only"))
        title = f"🚗 Ride account reminder{city_label} ({len(records)})"
        return self._card(title, "turquoise", elements)

    @staticmethod
    def _ride_action(record: EnrichedRecord) -> ProvisionRideAction:
        return ProvisionRideAction(
            name=record.name,
            phone=record.phone or None,
            rule_id=record.suggested_rule_id,
            rule_name=record.suggested_rule_name,
        )

    # ==================== Daily digest ====================

    def render_daily_digest(self, records: list[EnrichedRecord], today: date | None = None) -> dict:
        """Whole pending backlog split into urgency tiers."""
        today = today or self.today()
        if not records:
            return self.render_simple_card(
                "📊 Daily onboarding digest", "✅ Nobody is waiting for a work email.", "green"
            )

        tiers = group_by_urgency(records, today)
        overdue = tiers[UrgencyTier.OVERDUE]
        tomorrow = tiers[UrgencyTier.TOMORROW]

        counts = [
            f"{TIER_BADGES[tier]} {TIER_TITLES[tier]}: **{len(group)}**"
            for tier, group in tiers.items()
            if group
        ]
        elements: list[dict] = [
            _markdown(f"Pending total: **{len(records)}**\n" + " · ".join(counts)),
            {"tag": "hr"},
        ]

        if overdue:
            elements.append(
                _markdown(f"**🔴 Urgent: starting today or overdue ({len(overdue)})**")
            )
            elements.append(
                _table(
                    ["Name", "City", "Start date", "Suggested email"],
                    [
                        [
                            f"{r.name}{_intern_tag(r)}",
                            r.location,
                            r.onboarding_date,
                            r.suggested_email,
                        ]
                        for r in overdue
                    ],
                )
            )
            elements.extend(
                _action_rows(
                    [
                        _button(
                            f"📧 {r.name}",
                            encode_action(
                                ProvisionEmailAction(id=r.id, name=r.name, email=r.suggested_email)
                            ),
                            kind="danger",
                        )
                        for r in overdue
                        if not r.email_error
                    ]
                )
            )
            elements.append({"tag": "hr"})

        if tomorrow:
            elements.append(_markdown(f"**🟠 Starting tomorrow ({len(tomorrow)})**"))
            elements.append(
                _table(
                    ["Name", "City", "Suggested email"],
                    [
                        [f"{r.name}{_intern_tag(r)}", r.location, r.suggested_email]
                        for r in tomorrow
                    ],
                )
            )
            elements.append({"tag": "hr"})

        for tier in (UrgencyTier.THIS_WEEK, UrgencyTier.LATER):
            if tiers[tier]:
                names = ", ".join(f"{r.name}{_intern_tag(r)}" for r in tiers[tier])
                elements.append(
                    _markdown(
                        f"**{TIER_BADGES[tier]} {TIER_TITLES[tier]} ({len(tiers[tier])})**: {names}"
                    )
                )

        ordered = [r for group in tiers.values() for r in group]
        footer_buttons = [self._provision_all_email_button(ordered)]
        if self.dashboard_url:
            footer_buttons.append(
                _button("🌐 Open dashboard", kind="default", url=self.dashboard_url)
            )
        elements.append({"tag": "action", "actions": footer_buttons})
        elements.append(self._note("daily digest"))

        if overdue:
            template = "red"
        elif tomorrow:
            template = "orange"
        else:
            template = "blue"
        title = f"📊 Daily onboarding digest ({len(records)} pending)"
        return self._card(title, template, elements)

    # ==================== Result cards ====================

    def render_result_card(
        self, kind: str, results: list[ItemResult], operator: str = "IT"
    ) -> dict:
        """Summary of a provisioning run: successes and failures side by side."""
        successful = [r for r in results if r.success]
        failed = [r for r in results if not r.success]
        label = "Email" if kind == "email" else "Ride account"

        elements: list[dict] = [
            _markdown(
                f"Operator: **{operator}** · Total **{len(results)}** · "
                f"Succeeded **{len(successful)}** · Failed **{len(failed)}**"
            ),
            {"tag": "hr"},
        ]

        if successful:
            if kind == "email":
                rows = [
                    [
                        r.name,
                        f"✅ {r.email}",
                        f"{r.attempts} attempts" if r.attempts > 1 else "first try",
                    ]
                    for r in successful
                ]
                headers = ["Name", "Email", "Note"]
            else:
                rows = [
                    [
                        r.name,
                        f"✅ {r.rule_name or 'provisioned'}",
                        "already existed" if r.already_exists else "",
                    ]
                    for r in successful
                ]
                headers = ["Name", "Rule", "Note"]
            elements.append(_markdown(f"**✅ {label} provisioned**"))
            elements.append(_table(headers, rows))

        if failed:
            elements.append(_markdown(f"**❌ {label} failed**"))
            elements.append(
                _table(["Name", "Reason"], [[r.name, f"❌ {r.error}"] for r in failed])
            )

        elements.append(self._note(""))

        if not failed:
            title, template = f"✅ {label} provisioning done ({len(successful)})", "green"
        else:
            title = (
                f"⚠️ {label} provisioning result "
                f"({len(successful)} ok / {len(failed)} failed)"
            )
            template = "orange" if successful else "red"
        return self._card(title, template, elements)

    def render_simple_card(self, title: str, content: str, template: str = "blue") -> dict:
        return self._card(title, template, [_markdown(content), self._note("")])
