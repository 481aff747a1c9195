from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

import pytest

from onboarding_hub.features.provisioning.cards.renderer import CardRenderer
from onboarding_hub.features.provisioning.domain.errors import (
    RideProvisioningError,
    TransientUpstreamError,
)
from onboarding_hub.features.provisioning.domain.models import (
    COMPLETED,
    PREBOARDING,
    CommitResult,
    RideProvisionResult,
    RideRule,
    RosterRecord,
)
from onboarding_hub.features.provisioning.identity.allocator import IdentityAllocator
from onboarding_hub.features.provisioning.rules.catalog import RuleCatalog
from onboarding_hub.features.provisioning.rules.matcher import RuleMatcher
from onboarding_hub.features.provisioning.services.dispatcher import CallbackDispatcher
from onboarding_hub.features.provisioning.services.orchestrator import ProvisioningOrchestrator
from onboarding_hub.features.provisioning.tracking.push_policy import PushCadencePolicy, PushRule
from onboarding_hub.infrastructure.audit.audit_log import AuditLog
from onboarding_hub.infrastructure.scheduling.scheduler import ScheduleHandle, Scheduler

EMAIL_DOMAIN = "example.com"

# Monday 2026-10-19, 10:00 in Asia/Shanghai
MONDAY_MORNING = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)
MONDAY = date(2026, 10, 19)


class FakeClock:
    def __init__(self, now: datetime = MONDAY_MORNING):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeScheduler(Scheduler):
    def __init__(self):
        self.jobs: dict[int, dict] = {}
        self.cancelled: list[str] = []
        self._next_id = 0

    def schedule(self, interval, task, *, initial_delay=0.0, name="task"):
        self._next_id += 1
        handle = ScheduleHandle(id=self._next_id, name=name)
        self.jobs[handle.id] = {
            "handle": handle,
            "interval": interval,
            "task": task,
            "initial_delay": initial_delay,
        }
        return handle

    def cancel(self, handle):
        job = self.jobs.pop(handle.id, None)
        if job is None:
            return False
        self.cancelled.append(handle.name)
        return True

    def cancel_all(self):
        for job in list(self.jobs.values()):
            self.cancel(job["handle"])

    def job(self, name: str) -> dict | None:
        return next((job for job in self.jobs.values() if job["handle"].name == name), None)

    async def run(self, name: str):
        return await self.job(name)["task"]()


class FakeRosterSource:
    def __init__(self):
        self.rosters: dict[str, list[RosterRecord]] = {PREBOARDING: [], COMPLETED: []}
        self.fetches: list[str] = []
        self.fail = False

    async def fetch_roster(self, category):
        self.fetches.append(category)
        if self.fail:
            raise TransientUpstreamError("Feishu request failed: HTTP 503", status_code=503)
        return list(self.rosters[category])

    def matching_location_label(self, record):
        return record.location


class FakeEmailDirectory:
    def __init__(self):
        self.taken: set[str] = set()
        self.retired: set[str] = set()
        self.fail_for: dict[str, str] = {}
        self.explode_for: set[str] = set()
        self.commits: list[tuple[str, str]] = []

    async def is_email_taken(self, candidate):
        return candidate in self.taken

    async def commit_email(self, record_id, candidate):
        self.commits.append((record_id, candidate))
        if record_id in self.explode_for:
            raise RuntimeError("connection reset")
        if record_id in self.fail_for:
            return CommitResult.failed(self.fail_for[record_id])
        if candidate in self.retired:
            return CommitResult.duplicate("email already exists")
        self.taken.add(candidate)
        return CommitResult.ok()


class FakeRideProvisioner:
    def __init__(self, configured: bool = True):
        self._configured = configured
        self.rules: list[RideRule] = []
        self.existing_phones: set[str] = set()
        self.failing_names: set[str] = set()
        self.calls: list[tuple[str, str, str | None]] = []

    @property
    def configured(self):
        return self._configured

    async def fetch_rules(self):
        return list(self.rules)

    async def provision_ride_account(self, name, phone, rule_id, extras=None):
        self.calls.append((name, phone, rule_id))
        if name in self.failing_names:
            raise RideProvisioningError("Ride service error: invalid regulation", error_code="50001")
        if phone in self.existing_phones:
            return RideProvisionResult(success=True, already_exists=True, member_id="m-existing")
        self.existing_phones.add(phone)
        return RideProvisionResult(success=True, member_id=f"m-{len(self.calls)}")


class FakeMessenger:
    def __init__(self):
        self.notifications: list[tuple[str | None, dict]] = []
        self.followups: list[dict] = []

    async def send_notification(self, group_key, payload):
        self.notifications.append((group_key, payload))
        return f"om_{len(self.notifications)}"

    async def send_followup(self, payload):
        self.followups.append(payload)


def make_record(record_id: str, name: str, **overrides) -> RosterRecord:
    data = {"id": record_id, "name": name, "phone": "13800000000", "location": "武汉"}
    data.update(overrides)
    return RosterRecord(**data)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def roster():
    return FakeRosterSource()


@pytest.fixture
def directory():
    return FakeEmailDirectory()


@pytest.fixture
def ride():
    return FakeRideProvisioner()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def allocator():
    return IdentityAllocator(EMAIL_DOMAIN)


@pytest.fixture
def renderer(clock):
    return CardRenderer(timezone="Asia/Shanghai", dashboard_url="http://hub.local", clock=clock)


@pytest.fixture
def policy():
    return PushCadencePolicy(
        rules={"北京": PushRule.scheduled([1, 3]), "武汉": PushRule.realtime()},
        default_rule=PushRule.scheduled([1, 3]),
        timezone="Asia/Shanghai",
    )


@pytest.fixture
def dispatcher(allocator, directory, ride, messenger, renderer):
    return CallbackDispatcher(
        allocator=allocator,
        directory=directory,
        ride=ride,
        messenger=messenger,
        renderer=renderer,
        audit_log=AuditLog(capacity=200),
    )


@dataclass
class BotHarness:
    orchestrator: ProvisioningOrchestrator
    roster: FakeRosterSource
    directory: FakeEmailDirectory
    ride: FakeRideProvisioner
    messenger: FakeMessenger
    scheduler: FakeScheduler
    clock: FakeClock

    @property
    def dispatcher(self) -> CallbackDispatcher:
        return self.orchestrator.dispatcher


@pytest.fixture
def harness(
    roster, directory, ride, messenger, allocator, renderer, policy, dispatcher, fake_scheduler, clock
):
    orchestrator = ProvisioningOrchestrator(
        roster=roster,
        ride=ride,
        messenger=messenger,
        allocator=allocator,
        matcher=RuleMatcher("commute", "business"),
        rule_catalog=RuleCatalog(ride.fetch_rules, clock=clock),
        dispatcher=dispatcher,
        policy=policy,
        renderer=renderer,
        scheduler=fake_scheduler,
        clock=clock,
        check_interval=1800,
        initial_delay=10,
        digest_at=time(9, 0),
    )
    return BotHarness(
        orchestrator=orchestrator,
        roster=roster,
        directory=directory,
        ride=ride,
        messenger=messenger,
        scheduler=fake_scheduler,
        clock=clock,
    )
