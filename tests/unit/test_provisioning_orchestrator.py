import json
from datetime import date, timedelta

import pytest

from onboarding_hub.features.provisioning.domain.actions import (
    ProvisionAllEmailAction,
    ProvisionRideAction,
    RefreshAction,
    encode_action,
    parse_action,
)
from onboarding_hub.features.provisioning.domain.errors import UpstreamError
from onboarding_hub.features.provisioning.domain.models import COMPLETED, PREBOARDING, RideRule
from onboarding_hub.features.provisioning.services.dispatcher import CallbackEvent

MONDAY = date(2026, 10, 19)


def card_text(card):
    return json.dumps(card, ensure_ascii=False)


def card_actions(card):
    return [
        parse_action(button["value"])
        for element in card["elements"]
        if element["tag"] == "action"
        for button in element["actions"]
        if "value" in button
    ]


@pytest.mark.asyncio
async def test_scheduled_group_end_to_end(harness, record_factory):
    bot = harness.orchestrator

    first = await bot.check_and_notify()
    assert first.sent is False
    assert first.email.reason == "no_pending"
    assert harness.messenger.notifications == []

    harness.roster.rosters[PREBOARDING] = [
        record_factory("x", "张三", location="北京", onboarding_date=MONDAY),
        record_factory("y", "李四", location="北京", onboarding_date=MONDAY + timedelta(days=8)),
    ]
    second = await bot.check_and_notify()

    assert second.email.sent is True
    assert second.email.count == 2
    assert second.email.groups_sent == ["北京"]
    [(group_key, card)] = harness.messenger.notifications
    assert group_key == "北京"
    assert card["header"]["template"] == "red"
    text = card_text(card)
    assert "zhangsan@example.com" in text
    assert "in 8 days" in text
    assert "pushed every Mon/Wed" in text

    harness.clock.advance(days=1)
    tuesday = await bot.check_and_notify()

    assert tuesday.sent is False
    assert tuesday.email.reason == "not_due"
    assert tuesday.email.groups_skipped == ["北京"]
    assert len(harness.messenger.notifications) == 1

    forced = await bot.check_and_notify(force=True)

    assert forced.email.count == 2
    assert len(harness.messenger.notifications) == 2


@pytest.mark.asyncio
async def test_scheduled_group_pushes_once_per_day(harness, record_factory):
    bot = harness.orchestrator
    harness.roster.rosters[PREBOARDING] = [record_factory("x", "张三", location="北京")]

    assert (await bot.check_and_notify()).email.sent is True

    harness.roster.rosters[PREBOARDING].append(record_factory("z", "王五", location="北京"))
    again = await bot.check_and_notify()

    assert again.email.sent is False
    assert len(harness.messenger.notifications) == 1

    harness.clock.advance(days=2)
    wednesday = await bot.check_and_notify()

    assert wednesday.email.count == 2
    assert len(harness.messenger.notifications) == 2


@pytest.mark.asyncio
async def test_realtime_group_only_gets_new_records(harness, record_factory):
    bot = harness.orchestrator
    harness.roster.rosters[PREBOARDING] = [record_factory("a", "张三")]

    assert (await bot.check_and_notify()).email.sent is False

    harness.roster.rosters[PREBOARDING].append(record_factory("b", "李四"))
    summary = await bot.check_and_notify()

    assert summary.email.groups_sent == ["武汉"]
    assert summary.email.count == 1
    [(group_key, card)] = harness.messenger.notifications
    assert group_key == "武汉"
    assert "李四" in card_text(card)
    assert "张三" not in card_text(card)

    assert (await bot.check_and_notify()).email.sent is False


@pytest.mark.asyncio
async def test_records_with_email_are_not_pending(harness, record_factory):
    harness.roster.rosters[PREBOARDING] = [
        record_factory("a", "张三", location="北京", work_email="zhangsan@example.com"),
        record_factory("b", "李四", location="北京", email_task_status="completed"),
    ]

    summary = await harness.orchestrator.check_and_notify()

    assert summary.email.reason == "no_pending"
    assert harness.messenger.notifications == []


@pytest.mark.asyncio
async def test_ride_card_skips_interns_and_suggests_rules(harness, record_factory):
    harness.ride.rules = [
        RideRule(id="1", name="公司通用", category="commute", is_default=True),
        RideRule(id="2", name="武汉-commute", category="commute"),
    ]
    harness.roster.rosters[COMPLETED] = [
        record_factory("c1", "张三", onboarding_status=COMPLETED),
        record_factory("c2", "实习生", onboarding_status=COMPLETED, is_intern=True),
    ]

    summary = await harness.orchestrator.check_and_notify(force=True)

    assert summary.ride.groups_sent == ["武汉"]
    assert summary.ride.count == 1
    [(_, card)] = harness.messenger.notifications
    singles = [a for a in card_actions(card) if isinstance(a, ProvisionRideAction)]
    assert [(a.name, a.rule_id) for a in singles] == [("张三", "2")]
    assert "实习生" not in card_text(card)


@pytest.mark.asyncio
async def test_ride_category_skipped_without_configuration(harness, record_factory):
    harness.ride._configured = False
    harness.roster.rosters[COMPLETED] = [record_factory("c1", "张三")]

    summary = await harness.orchestrator.check_and_notify(force=True)

    assert harness.roster.fetches == [PREBOARDING]
    assert summary.ride.reason == "ride_not_configured"
    assert not harness.orchestrator.detector.is_initialized(COMPLETED)


@pytest.mark.asyncio
async def test_fetch_failure_is_reported(harness):
    harness.roster.fail = True

    summary = await harness.orchestrator.check_and_notify()

    assert summary.sent is False
    assert summary.email.reason == "fetch_failed"
    assert "503" in summary.error
    assert not harness.orchestrator.detector.is_initialized(PREBOARDING)
    assert harness.orchestrator.status()["last_check"]["error"] == summary.error


@pytest.mark.asyncio
async def test_send_failure_skips_group(harness, record_factory):
    async def broken_send(group_key, payload):
        raise UpstreamError("Feishu API error: bot is not in the chat", error_code="230002")

    harness.messenger.send_notification = broken_send
    harness.roster.rosters[PREBOARDING] = [record_factory("x", "张三", location="北京")]

    summary = await harness.orchestrator.check_and_notify()

    assert summary.email.sent is False
    assert summary.email.groups_skipped == ["北京"]
    assert len(harness.orchestrator.sent_messages) == 0


@pytest.mark.asyncio
async def test_bulk_button_on_sent_card_provisions_everyone(harness, record_factory):
    harness.roster.rosters[PREBOARDING] = [
        record_factory("x", "张三", location="北京"),
        record_factory("y", "李四", location="北京"),
    ]
    await harness.orchestrator.check_and_notify()
    [(_, card)] = harness.messenger.notifications
    bulk = next(a for a in card_actions(card) if isinstance(a, ProvisionAllEmailAction))

    ack = await harness.orchestrator.handle_callback(
        CallbackEvent(action_value=encode_action(bulk), operator_id="ou_it")
    )
    [outcome] = await harness.dispatcher.wait_for_background()

    assert ack.type == "info"
    assert outcome.successful == 2
    assert harness.directory.commits == [("x", "zhangsan@example.com"), ("y", "lisi@example.com")]
    assert [e.action for e in harness.orchestrator.get_audit_log()] == [
        "provision_email",
        "provision_email",
        "provision_all_email",
    ]


@pytest.mark.asyncio
async def test_daily_digest_leaves_change_detection_alone(harness, record_factory):
    harness.roster.rosters[PREBOARDING] = [
        record_factory("x", "张三", onboarding_date=MONDAY),
        record_factory("y", "李四", work_email="lisi@example.com"),
    ]

    pending = await harness.orchestrator.send_daily_digest()

    assert pending == 1
    [(group_key, card)] = harness.messenger.notifications
    assert group_key is None
    assert "1 pending" in card["header"]["title"]["content"]
    assert not harness.orchestrator.detector.is_initialized(PREBOARDING)


@pytest.mark.asyncio
async def test_refresh_counts_resolved_records_from_card(harness, record_factory):
    harness.roster.rosters[PREBOARDING] = [
        record_factory("x", "张三"),
        record_factory("y", "李四"),
    ]
    await harness.orchestrator.send_daily_digest()

    harness.roster.rosters[PREBOARDING] = [
        record_factory("x", "张三", work_email="zhangsan@example.com"),
        record_factory("y", "李四"),
    ]
    ack = await harness.orchestrator.handle_callback(
        CallbackEvent(action_value=encode_action(RefreshAction()), message_id="om_1")
    )

    assert ack.type == "success"
    assert "1 hire(s) still pending" in ack.content
    assert "1 from this card already done" in ack.content
    assert len(harness.messenger.notifications) == 2


@pytest.mark.asyncio
async def test_refresh_on_ride_card_resends_ride_card(harness, record_factory):
    harness.ride.rules = [RideRule(id="1", name="公司通用", category="commute", is_default=True)]
    harness.roster.rosters[PREBOARDING] = [record_factory("p1", "王五")]
    harness.roster.rosters[COMPLETED] = [
        record_factory("c1", "张三", onboarding_status=COMPLETED),
        record_factory("c2", "李四", onboarding_status=COMPLETED),
    ]
    await harness.orchestrator.check_and_notify(force=True)
    ride_index = next(
        i
        for i, (_, card) in enumerate(harness.messenger.notifications)
        if card["header"]["title"]["content"].startswith("🚗")
    )

    ack = await harness.orchestrator.handle_callback(
        CallbackEvent(
            action_value=encode_action(RefreshAction()), message_id=f"om_{ride_index + 1}"
        )
    )

    assert ack.type == "success"
    assert "2 hire(s) still pending" in ack.content
    assert "from this card already done" not in ack.content
    group_key, card = harness.messenger.notifications[-1]
    assert group_key is None
    assert "Ride account reminder" in card["header"]["title"]["content"]
    assert "王五" not in card_text(card)
    refreshed = harness.orchestrator.sent_messages.get(f"om_{len(harness.messenger.notifications)}")
    assert refreshed.category == COMPLETED


@pytest.mark.asyncio
async def test_refresh_with_nothing_pending(harness):
    result = await harness.orchestrator.refresh()

    assert result.pending == 0
    assert result.resolved_from_card is None
    [(_, card)] = harness.messenger.notifications
    assert card["header"]["template"] == "green"


@pytest.mark.asyncio
async def test_start_schedules_poll_and_digest(harness, record_factory):
    bot = harness.orchestrator

    bot.start()
    bot.start()

    assert len(harness.scheduler.jobs) == 2
    poll = harness.scheduler.job("roster_poll")
    assert (poll["interval"], poll["initial_delay"]) == (1800, 10)
    digest = harness.scheduler.job("daily_digest")
    # 10:00 now, next 09:00 is tomorrow
    assert (digest["interval"], digest["initial_delay"]) == (86400, 23 * 3600)
    assert bot.running is True

    harness.roster.rosters[PREBOARDING] = [record_factory("x", "张三", location="北京")]
    summary = await harness.scheduler.run("roster_poll")
    assert summary.email.sent is True

    await bot.stop()

    assert sorted(harness.scheduler.cancelled) == ["daily_digest", "roster_poll"]
    assert bot.running is False
    assert bot.cancel_poll() is False


@pytest.mark.asyncio
async def test_status(harness, record_factory):
    harness.roster.rosters[PREBOARDING] = [record_factory("x", "张三", location="北京")]
    await harness.orchestrator.check_and_notify()

    status = harness.orchestrator.status()

    assert status["running"] is False
    assert status["check_interval_seconds"] == 1800
    assert status["daily_digest_at"] == "09:00"
    assert status["timezone"] == "Asia/Shanghai"
    assert status["known"] == {PREBOARDING: 1, COMPLETED: 0}
    assert status["push_rules"]["武汉"] == "pushed as soon as someone new appears"
    assert status["default_push_rule"] == "pushed every Mon/Wed"
    assert status["sent_messages"] == 1
    assert status["last_check"]["email"]["groups_sent"] == ["北京"]
    assert status["last_check_at"].startswith("2026-10-19T02:00")
