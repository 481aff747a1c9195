"""
Card callback dispatcher.

Feishu expects a reply to a card button press within a few seconds, so
single-person actions run inline and batch actions are acknowledged at once
and finished on a background task that posts a result card when done.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from onboarding_hub.features.provisioning.cards.renderer import CardRenderer
from onboarding_hub.features.provisioning.domain.actions import (
    EmailTarget,
    ProvisionAllEmailAction,
    ProvisionAllRideAction,
    ProvisionEmailAction,
    ProvisionRideAction,
    RefreshAction,
    RideTarget,
    parse_action,
)
from onboarding_hub.features.provisioning.domain.errors import (
    ActionParseError,
    ProvisioningError,
    RideProvisioningError,
    UnknownActionError,
)
from onboarding_hub.features.provisioning.domain.models import (
    BatchOutcome,
    ItemResult,
    RefreshResult,
)
from onboarding_hub.features.provisioning.domain.protocols import (
    EmailDirectory,
    Messenger,
    RideProvisioner,
)
from onboarding_hub.features.provisioning.identity.allocator import IdentityAllocator
from onboarding_hub.infrastructure.audit.audit_log import AuditLog
from onboarding_hub.infrastructure.observability.logging import (
    get_logger,
    log_provisioning_outcome,
)

logger = get_logger(__name__)

UNEXPECTED_ERROR = "Unexpected error"


@dataclass(slots=True)
class CallbackEvent:
    """A button press delivered by the chat platform."""

    action_value: Any
    operator_id: str = "unknown"
    message_id: str | None = None

    @classmethod
    def from_payload(cls, body: dict[str, Any]) -> "CallbackEvent":
        """
        Accept both card callback shapes Feishu sends.

        The legacy shape carries ``open_id``/``user_id``/``open_message_id``
        at the top level; schema 2.0 nests them under ``event``.
        """
        event = body.get("event") if isinstance(body.get("event"), dict) else body
        operator = event.get("operator") or {}
        context = event.get("context") or {}
        action = event.get("action") or {}

        operator_id = (
            operator.get("open_id")
            or operator.get("user_id")
            or event.get("open_id")
            or event.get("user_id")
            or "unknown"
        )
        message_id = context.get("open_message_id") or event.get("open_message_id")
        return cls(action_value=action.get("value"), operator_id=operator_id, message_id=message_id)


@dataclass(slots=True)
class CallbackAck:
    """Toast shown to the operator who pressed the button."""

    type: str
    content: str

    @classmethod
    def success(cls, content: str) -> "CallbackAck":
        return cls("success", content)

    @classmethod
    def info(cls, content: str) -> "CallbackAck":
        return cls("info", content)

    @classmethod
    def warning(cls, content: str) -> "CallbackAck":
        return cls("warning", content)

    @classmethod
    def error(cls, content: str) -> "CallbackAck":
        return cls("error", content)

    def to_dict(self) -> dict:
        return {"toast": {"type": self.type, "content": self.content}}


class CallbackDispatcher:
    """Resolves card actions against the allocator and the ride provisioner."""

    def __init__(
        self,
        allocator: IdentityAllocator,
        directory: EmailDirectory,
        ride: RideProvisioner,
        messenger: Messenger,
        renderer: CardRenderer,
        audit_log: AuditLog,
        on_refresh: Callable[[str | None], Awaitable[RefreshResult]] | None = None,
    ):
        self.allocator = allocator
        self.directory = directory
        self.ride = ride
        self.messenger = messenger
        self.renderer = renderer
        self.audit_log = audit_log
        self.on_refresh = on_refresh
        self._background: set[asyncio.Task] = set()

    async def handle_callback(self, event: CallbackEvent) -> CallbackAck:
        try:
            action = parse_action(event.action_value)
        except UnknownActionError as e:
            logger.info(
                "Ignoring unknown card action", action=e.action, operator_id=event.operator_id
            )
            return CallbackAck.info("Unknown action")
        except ActionParseError as e:
            logger.info(
                "Ignoring unparseable card action", error=str(e), operator_id=event.operator_id
            )
            return CallbackAck.info("Invalid action")

        logger.info("Card action received", action=action.action, operator_id=event.operator_id)

        if isinstance(action, ProvisionEmailAction):
            return await self._provision_email(action, event.operator_id)
        if isinstance(action, ProvisionRideAction):
            return await self._provision_ride(action, event.operator_id)
        if isinstance(action, ProvisionAllEmailAction):
            return self._start_email_batch(action.users, event.operator_id)
        if isinstance(action, ProvisionAllRideAction):
            return self._start_ride_batch(action.users, event.operator_id)
        if isinstance(action, RefreshAction):
            return await self._refresh(event.message_id)
        return CallbackAck.info("Unknown action")

    # ==================== Single actions ====================

    async def _provision_email(self, target: EmailTarget, operator_id: str) -> CallbackAck:
        item = await self._email_item(target, operator_id, action="provision_email")
        if not item.success:
            return CallbackAck.error(f"❌ {target.name}: email provisioning failed: {item.error}")

        note = (
            f"The first choice was taken, used a fallback after {item.attempts} attempts."
            if item.attempts > 1
            else "Provisioned on the first try."
        )
        await self._send_followup(
            self.renderer.render_simple_card(
                f"✅ Work email ready for {target.name}",
                f"**{target.name}** now has a work email: **{item.email}**\n\n{note}",
                "green",
            )
        )
        return CallbackAck.success(f"✅ {target.name}: {item.email}")

    async def _provision_ride(self, target: RideTarget, operator_id: str) -> CallbackAck:
        if not self.ride.configured:
            return CallbackAck.error("Ride service is not configured")
        if not target.phone:
            return CallbackAck.error(f"{target.name} has no phone number, cannot provision")

        item = await self._ride_item(target, operator_id, action="provision_ride")
        if not item.success:
            return CallbackAck.error(f"❌ {target.name}: ride provisioning failed: {item.error}")

        existed = "\n(The account already existed.)" if item.already_exists else ""
        await self._send_followup(
            self.renderer.render_simple_card(
                f"✅ Ride account ready for {target.name}",
                f"**{target.name}** has a ride account\n"
                f"Rule: **{target.rule_name or 'default'}**{existed}",
                "green",
            )
        )
        return CallbackAck.success(f"✅ {target.name}: ride account ready")

    async def _email_item(
        self, target: EmailTarget, operator_id: str, action: str, batch: bool = False
    ) -> ItemResult:
        try:
            result = await self.allocator.provision(target.id, target.name, self.directory)
        except ProvisioningError as e:
            item = ItemResult(
                name=target.name, success=False, record_id=target.id, error=e.user_message
            )
        except Exception:
            if not batch:
                raise
            logger.exception("Unexpected error provisioning email", record_id=target.id)
            item = ItemResult(
                name=target.name, success=False, record_id=target.id, error=UNEXPECTED_ERROR
            )
        else:
            item = ItemResult(
                name=target.name,
                success=True,
                record_id=target.id,
                email=result.email,
                attempts=result.attempts,
            )

        self.audit_log.record(
            action=action,
            operator_id=operator_id,
            success=item.success,
            subject=target.name,
            detail=item.email if item.success else item.error,
            metadata=(
                {"record_id": target.id, "attempts": item.attempts}
                if item.success
                else {"record_id": target.id}
            ),
        )
        log_provisioning_outcome(
            "email", target.name, item.success, operator_id, detail=item.email or item.error
        )
        return item

    async def _ride_item(
        self, target: RideTarget, operator_id: str, action: str, batch: bool = False
    ) -> ItemResult:
        try:
            if not target.phone:
                raise RideProvisioningError("No phone number", error_code="missing_phone")
            result = await self.ride.provision_ride_account(
                target.name, target.phone, target.rule_id
            )
        except ProvisioningError as e:
            item = ItemResult(
                name=target.name, success=False, rule_name=target.rule_name, error=e.user_message
            )
        except Exception:
            if not batch:
                raise
            logger.exception("Unexpected error provisioning ride account", subject=target.name)
            item = ItemResult(
                name=target.name, success=False, rule_name=target.rule_name, error=UNEXPECTED_ERROR
            )
        else:
            item = ItemResult(
                name=target.name,
                success=result.success,
                rule_name=target.rule_name,
                already_exists=result.already_exists,
                error=None if result.success else "Ride service rejected the account",
            )

        self.audit_log.record(
            action=action,
            operator_id=operator_id,
            success=item.success,
            subject=target.name,
            detail=(target.rule_name or "default rule") if item.success else item.error,
            metadata={"already_exists": True} if item.already_exists else None,
        )
        log_provisioning_outcome(
            "ride", target.name, item.success, operator_id, detail=item.rule_name or item.error
        )
        return item

    async def _send_followup(self, payload: dict) -> None:
        try:
            await self.messenger.send_followup(payload)
        except ProvisioningError as e:
            logger.error("Failed to send follow-up card", error=str(e))

    # ==================== Batch actions ====================

    def _start_email_batch(self, users: list[EmailTarget], operator_id: str) -> CallbackAck:
        if not users:
            return CallbackAck.warning("Nobody to provision")
        logger.info("Starting batch email provisioning", count=len(users), operator_id=operator_id)
        self._spawn(self._run_email_batch(list(users), operator_id))
        return CallbackAck.info(
            f"⏳ Provisioning work email for {len(users)} hire(s), a result card will follow..."
        )

    def _start_ride_batch(self, users: list[RideTarget], operator_id: str) -> CallbackAck:
        if not users:
            return CallbackAck.warning("Nobody to provision")
        if not self.ride.configured:
            return CallbackAck.error("Ride service is not configured")
        logger.info("Starting batch ride provisioning", count=len(users), operator_id=operator_id)
        self._spawn(self._run_ride_batch(list(users), operator_id))
        return CallbackAck.info(
            f"⏳ Provisioning ride accounts for {len(users)} employee(s), "
            "a result card will follow..."
        )

    async def _run_email_batch(self, users: list[EmailTarget], operator_id: str) -> BatchOutcome:
        results = []
        for user in users:
            item = await self._email_item(user, operator_id, action="provision_email", batch=True)
            results.append(item)
        outcome = BatchOutcome("email", results)
        return await self._finish_batch(outcome, "provision_all_email", operator_id)

    async def _run_ride_batch(self, users: list[RideTarget], operator_id: str) -> BatchOutcome:
        results = []
        for user in users:
            item = await self._ride_item(user, operator_id, action="provision_ride", batch=True)
            results.append(item)
        outcome = BatchOutcome("ride", results)
        return await self._finish_batch(outcome, "provision_all_ride", operator_id)

    async def _finish_batch(
        self, outcome: BatchOutcome, action: str, operator_id: str
    ) -> BatchOutcome:
        self.audit_log.record(
            action=action,
            operator_id=operator_id,
            success=outcome.failed == 0,
            detail=f"{outcome.successful}/{outcome.total} succeeded",
            metadata={
                "total": outcome.total,
                "successful": outcome.successful,
                "failed": outcome.failed,
            },
        )
        logger.info(
            "Batch provisioning finished",
            kind=outcome.kind,
            total=outcome.total,
            successful=outcome.successful,
            failed=outcome.failed,
        )
        await self._send_followup(
            self.renderer.render_result_card(outcome.kind, outcome.results, operator=operator_id)
        )
        return outcome

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background batch failed", error=str(task.exception()))

    @property
    def pending_batches(self) -> int:
        return len(self._background)

    async def wait_for_background(self) -> list[BatchOutcome]:
        """Wait for every in-flight batch. Used by tests and on shutdown."""
        outcomes: list[BatchOutcome] = []
        while self._background:
            done = await asyncio.gather(*list(self._background), return_exceptions=True)
            outcomes.extend(result for result in done if isinstance(result, BatchOutcome))
        return outcomes

    # ==================== Refresh ====================

    async def _refresh(self, message_id: str | None) -> CallbackAck:
        if self.on_refresh is None:
            return CallbackAck.info("Refresh is not available")
        try:
            result = await self.on_refresh(message_id)
        except ProvisioningError as e:
            logger.error("Refresh failed", error=str(e))
            return CallbackAck.error(f"Refresh failed: {e.user_message}")

        if result.pending == 0:
            return CallbackAck.success("Refreshed, nobody is waiting")
        content = f"Refreshed, {result.pending} hire(s) still pending"
        if result.resolved_from_card:
            content += f", {result.resolved_from_card} from this card already done"
        return CallbackAck.success(content)
