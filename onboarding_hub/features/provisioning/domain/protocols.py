"""
Collaborator contracts consumed by the provisioning engine.

FeishuClient and RideServiceClient implement these for production; tests
pass in-memory fakes.
"""

from typing import Any, Protocol

from onboarding_hub.features.provisioning.domain.models import (
    CommitResult,
    RideProvisionResult,
    RideRule,
    RosterCategory,
    RosterRecord,
)


class RosterSource(Protocol):
    async def fetch_roster(self, category: RosterCategory) -> list[RosterRecord]: ...

    def matching_location_label(self, record: RosterRecord) -> str: ...


class EmailDirectory(Protocol):
    async def is_email_taken(self, candidate: str) -> bool: ...

    async def commit_email(self, record_id: str, candidate: str) -> CommitResult: ...


class RideProvisioner(Protocol):
    @property
    def configured(self) -> bool: ...

    async def fetch_rules(self) -> list[RideRule]: ...

    async def provision_ride_account(
        self, name: str, phone: str, rule_id: str | None, extras: dict[str, Any] | None = None
    ) -> RideProvisionResult: ...


class Messenger(Protocol):
    async def send_notification(self, group_key: str | None, payload: dict) -> str | None: ...

    async def send_followup(self, payload: dict) -> None: ...
