"""
Provisioning Orchestrator
Ties the roster poll, change detection, push cadence, card rendering and
callback handling together, and owns the two recurring jobs: the roster
poll and the daily digest.
"""

import asyncio
from collections.abc import Callable
from datetime import date, datetime, time
from typing import Any

from onboarding_hub.features.provisioning.cards.renderer import CardRenderer
from onboarding_hub.features.provisioning.domain.errors import ProvisioningError
from onboarding_hub.features.provisioning.domain.models import (
    COMPLETED,
    PREBOARDING,
    CategoryReport,
    CheckSummary,
    EnrichedRecord,
    RefreshResult,
    RosterRecord,
)
from onboarding_hub.features.provisioning.domain.protocols import (
    Messenger,
    RideProvisioner,
    RosterSource,
)
from onboarding_hub.features.provisioning.identity.allocator import IdentityAllocator
from onboarding_hub.features.provisioning.rules.catalog import RuleCatalog
from onboarding_hub.features.provisioning.rules.matcher import RuleMatcher
from onboarding_hub.features.provisioning.services.dispatcher import (
    CallbackAck,
    CallbackDispatcher,
    CallbackEvent,
)
from onboarding_hub.features.provisioning.tracking.change_detector import ChangeDetector
from onboarding_hub.features.provisioning.tracking.push_policy import PushCadencePolicy, PushMode
from onboarding_hub.features.provisioning.tracking.sent_messages import SentNotificationMap
from onboarding_hub.infrastructure.audit.audit_log import AuditEntry, AuditLog
from onboarding_hub.infrastructure.observability.logging import get_logger
from onboarding_hub.infrastructure.scheduling.scheduler import (
    Clock,
    ScheduleHandle,
    Scheduler,
    seconds_until,
    to_local,
)

logger = get_logger(__name__)

DIGEST_INTERVAL_SECONDS = 24 * 60 * 60


def _group_by_location(records: list[EnrichedRecord]) -> dict[str, list[EnrichedRecord]]:
    groups: dict[str, list[EnrichedRecord]] = {}
    for record in records:
        groups.setdefault(record.location, []).append(record)
    return groups


class ProvisioningOrchestrator:
    """
    Runs the onboarding bot.

    All tracking state (known ids, sent cards, scheduled pushes, audit
    trail) lives on this instance and on its dispatcher, in memory only.
    """

    def __init__(
        self,
        roster: RosterSource,
        ride: RideProvisioner,
        messenger: Messenger,
        allocator: IdentityAllocator,
        matcher: RuleMatcher,
        rule_catalog: RuleCatalog,
        dispatcher: CallbackDispatcher,
        policy: PushCadencePolicy,
        renderer: CardRenderer,
        scheduler: Scheduler,
        clock: Clock,
        check_interval: float = 1800.0,
        initial_delay: float = 10.0,
        digest_at: time = time(9, 0),
        sent_capacity: int = 50,
        detector: ChangeDetector | None = None,
    ):
        self.roster = roster
        self.ride = ride
        self.messenger = messenger
        self.allocator = allocator
        self.matcher = matcher
        self.rule_catalog = rule_catalog
        self.dispatcher = dispatcher
        self.policy = policy
        self.renderer = renderer
        self.scheduler = scheduler
        self.clock = clock
        self.check_interval = check_interval
        self.initial_delay = initial_delay
        self.digest_at = digest_at

        self.detector = detector or ChangeDetector()
        self.sent_messages = SentNotificationMap(sent_capacity)
        self._last_scheduled_push: dict[tuple[str, str], date] = {}
        self._poll_handle: ScheduleHandle | None = None
        self._digest_handle: ScheduleHandle | None = None
        self._last_check: CheckSummary | None = None
        self._last_check_at: datetime | None = None

        if self.dispatcher.on_refresh is None:
            self.dispatcher.on_refresh = self.refresh

    @property
    def audit_log(self) -> AuditLog:
        return self.dispatcher.audit_log

    def local_today(self, now: datetime | None = None) -> date:
        return to_local(now or self.clock.now(), self.policy.timezone).date()

    # ==================== Poll ====================

    async def check_and_notify(self, force: bool = False) -> CheckSummary:
        """
        Poll the roster and push cards for the groups that are due.

        Realtime groups get their new records. Scheduled groups get their
        whole backlog on their weekdays, at most once per local day.
        ``force`` pushes every group with all of its records.
        """
        now = self.clock.now()
        ride_enabled = self.ride.configured
        logger.info("Roster check started", force=force, ride_enabled=ride_enabled)

        try:
            if ride_enabled:
                preboarding, completed = await asyncio.gather(
                    self.roster.fetch_roster(PREBOARDING), self.roster.fetch_roster(COMPLETED)
                )
            else:
                preboarding, completed = await self.roster.fetch_roster(PREBOARDING), []
        except ProvisioningError as e:
            logger.error("Roster fetch failed", error=str(e), error_code=e.error_code)
            summary = CheckSummary(
                email=CategoryReport(reason="fetch_failed"),
                ride=CategoryReport(reason="fetch_failed"),
                error=e.user_message,
            )
            self._remember_check(summary, now)
            return summary

        email_report = await self._notify_email(preboarding, now, force)
        if ride_enabled:
            ride_report = await self._notify_ride(completed, now, force)
        else:
            ride_report = CategoryReport(reason="ride_not_configured")

        summary = CheckSummary(email=email_report, ride=ride_report)
        self._remember_check(summary, now)
        logger.info(
            "Roster check finished",
            sent=summary.sent,
            count=summary.count,
            email_groups=email_report.groups_sent,
            ride_groups=ride_report.groups_sent,
        )
        return summary

    async def _notify_email(
        self, preboarding: list[RosterRecord], now: datetime, force: bool
    ) -> CategoryReport:
        pending = [record for record in preboarding if not record.has_email]
        classification = self.detector.classify(PREBOARDING, [r.id for r in pending], force=force)
        if not pending:
            return CategoryReport(reason="no_pending")

        enriched = self.allocator.allocate_batch(pending)
        today = self.local_today(now)

        def render(records: list[EnrichedRecord], group_key: str) -> dict:
            return self.renderer.render_email_card(
                records, today, group_key=group_key, cadence=self.policy.describe(group_key)
            )

        return await self._push_groups(
            PREBOARDING, enriched, set(classification.new_ids), now, force, render
        )

    async def _notify_ride(
        self, completed: list[RosterRecord], now: datetime, force: bool
    ) -> CategoryReport:
        candidates = [record for record in completed if not record.is_intern]
        classification = self.detector.classify(COMPLETED, [r.id for r in candidates], force=force)
        if not candidates:
            return CategoryReport(reason="no_pending")

        enriched = await self._match_rules(candidates)

        def render(records: list[EnrichedRecord], group_key: str) -> dict:
            return self.renderer.render_ride_card(
                records, group_key=group_key, cadence=self.policy.describe(group_key)
            )

        return await self._push_groups(
            COMPLETED, enriched, set(classification.new_ids), now, force, render
        )

    async def _push_groups(
        self,
        category: str,
        records: list[EnrichedRecord],
        new_ids: set[str],
        now: datetime,
        force: bool,
        render: Callable[[list[EnrichedRecord], str], dict],
    ) -> CategoryReport:
        report = CategoryReport()
        today = self.local_today(now)

        for group_key, group in _group_by_location(records).items():
            new_in_group = [record for record in group if record.id in new_ids]

            if not self.policy.is_due(group_key, bool(new_in_group), now, force=force):
                report.groups_skipped.append(group_key)
                continue

            rule = self.policy.rule_for(group_key)
            if force:
                payload_records = group
            elif rule.mode is PushMode.REALTIME:
                payload_records = new_in_group
            elif self._last_scheduled_push.get((category, group_key)) == today:
                report.groups_skipped.append(group_key)
                continue
            else:
                payload_records = group

            try:
                message_id = await self.messenger.send_notification(
                    group_key, render(payload_records, group_key)
                )
            except ProvisioningError as e:
                logger.error(
                    "Failed to send roster card",
                    category=category,
                    group_key=group_key,
                    error=str(e),
                )
                report.groups_skipped.append(group_key)
                continue

            if rule.mode is PushMode.SCHEDULED:
                self._last_scheduled_push[(category, group_key)] = today
            self.sent_messages.remember(message_id, payload_records, now, category=category)
            report.groups_sent.append(group_key)
            report.count += len(payload_records)
            logger.info(
                "Roster card sent",
                category=category,
                group_key=group_key,
                records=len(payload_records),
                message_id=message_id,
            )

        report.sent = bool(report.groups_sent)
        if not report.sent:
            report.reason = "not_due"
        return report

    def _remember_check(self, summary: CheckSummary, now: datetime) -> None:
        self._last_check = summary
        self._last_check_at = now

    # ==================== Digest and refresh ====================

    async def _match_rules(self, candidates: list[RosterRecord]) -> list[EnrichedRecord]:
        rules = await self.rule_catalog.get_rules()
        return self.matcher.match_records(candidates, rules, self.roster.matching_location_label)

    async def _pending_email_records(self) -> list[EnrichedRecord]:
        roster = await self.roster.fetch_roster(PREBOARDING)
        return self.allocator.allocate_batch(record for record in roster if not record.has_email)

    async def _pending_ride_records(self) -> list[EnrichedRecord]:
        roster = await self.roster.fetch_roster(COMPLETED)
        return await self._match_rules([record for record in roster if not record.is_intern])

    async def send_daily_digest(self) -> int:
        """Post the whole pending backlog in urgency tiers. Returns the backlog size."""
        records = await self._pending_email_records()
        now = self.clock.now()
        card = self.renderer.render_daily_digest(records, self.local_today(now))
        message_id = await self.messenger.send_notification(None, card)
        self.sent_messages.remember(message_id, records, now)
        logger.info("Daily digest sent", pending=len(records), message_id=message_id)
        return len(records)

    async def refresh(self, message_id: str | None = None) -> RefreshResult:
        """
        Re-fetch the backlog and post a fresh card.

        Change detection state is left alone. A ride card is answered with
        a fresh ride card, anything else with a fresh email card. For an
        email card this process sent, the result also says how many of its
        hires have been handled since; the roster does not track ride
        accounts, so ride cards carry no such count.
        """
        stale = self.sent_messages.get(message_id)
        if stale is not None and stale.category == COMPLETED and self.ride.configured:
            return await self._refresh_ride()

        records = await self._pending_email_records()
        now = self.clock.now()

        resolved = None
        if stale is not None:
            pending_ids = {record.id for record in records}
            resolved = sum(1 for record in stale.records if record.id not in pending_ids)

        if records:
            card = self.renderer.render_email_card(records, self.local_today(now))
        else:
            card = self.renderer.render_simple_card(
                "✅ All handled", "Nobody is waiting for a work email right now.", "green"
            )
        new_message_id = await self.messenger.send_notification(None, card)
        self.sent_messages.remember(new_message_id, records, now)

        logger.info("Roster refreshed", pending=len(records), resolved_from_card=resolved)
        return RefreshResult(pending=len(records), resolved_from_card=resolved)

    async def _refresh_ride(self) -> RefreshResult:
        records = await self._pending_ride_records()
        now = self.clock.now()

        if records:
            card = self.renderer.render_ride_card(records)
        else:
            card = self.renderer.render_simple_card(
                "✅ All handled", "No onboarded employee is waiting for a ride account.", "green"
            )
        new_message_id = await self.messenger.send_notification(None, card)
        self.sent_messages.remember(new_message_id, records, now, category=COMPLETED)

        logger.info("Ride roster refreshed", pending=len(records))
        return RefreshResult(pending=len(records))

    # ==================== Callbacks and audit ====================

    async def handle_callback(self, event: CallbackEvent) -> CallbackAck:
        return await self.dispatcher.handle_callback(event)

    def get_audit_log(self, count: int = 50) -> list[AuditEntry]:
        return self.audit_log.recent(count)

    # ==================== Lifecycle ====================

    def schedule_poll(self) -> ScheduleHandle:
        if self._poll_handle is None:
            self._poll_handle = self.scheduler.schedule(
                self.check_interval,
                self.check_and_notify,
                initial_delay=self.initial_delay,
                name="roster_poll",
            )
        return self._poll_handle

    def schedule_digest(self) -> ScheduleHandle:
        if self._digest_handle is None:
            delay = seconds_until(self.clock.now(), self.digest_at, self.policy.timezone)
            self._digest_handle = self.scheduler.schedule(
                DIGEST_INTERVAL_SECONDS,
                self.send_daily_digest,
                initial_delay=delay,
                name="daily_digest",
            )
        return self._digest_handle

    def cancel_poll(self) -> bool:
        handle, self._poll_handle = self._poll_handle, None
        return handle is not None and self.scheduler.cancel(handle)

    def cancel_digest(self) -> bool:
        handle, self._digest_handle = self._digest_handle, None
        return handle is not None and self.scheduler.cancel(handle)

    @property
    def running(self) -> bool:
        return self._poll_handle is not None or self._digest_handle is not None

    def start(self) -> None:
        self.schedule_poll()
        self.schedule_digest()
        logger.info(
            "Onboarding bot started",
            check_interval_seconds=self.check_interval,
            digest_at=self.digest_at.strftime("%H:%M"),
        )

    async def stop(self) -> None:
        self.cancel_poll()
        self.cancel_digest()
        await self.dispatcher.wait_for_background()
        logger.info("Onboarding bot stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "check_interval_seconds": self.check_interval,
            "daily_digest_at": self.digest_at.strftime("%H:%M"),
            "timezone": str(self.policy.timezone),
            "ride_configured": self.ride.configured,
            "known": {
                category: len(self.detector.known_ids(category))
                for category in (PREBOARDING, COMPLETED)
                if self.detector.is_initialized(category)
            },
            "push_rules": {key: self.policy.describe(key) for key in self.policy.rules},
            "default_push_rule": self.policy.default_rule.describe(),
            "sent_messages": len(self.sent_messages),
            "audit_entries": len(self.audit_log),
            "pending_batches": self.dispatcher.pending_batches,
            "last_check_at": self._last_check_at.isoformat() if self._last_check_at else None,
            "last_check": self._last_check.to_dict() if self._last_check else None,
        }
