"""
AuditLog - Operator action trail for provisioning.

Every provisioning action triggered from a bot card (single or batch,
email or ride account) ends up here with its operator and outcome.

Usage:
    from onboarding_hub.infrastructure.audit import AuditLog

    audit_log = AuditLog(capacity=200)
    audit_log.record(
        action="provision_email",
        operator_id="ou_123",
        success=True,
        subject="张三",
        detail="zhangsan@example.com",
    )

Design Principles:
- Entries are immutable once appended
- Bounded ring buffer: past capacity the oldest entry is dropped first
- Every entry is also written to the structured logs, which outlive the
  in-memory buffer across restarts
"""

from collections import deque
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AUDIT_CAPACITY = 200


class AuditEntry(BaseModel):
    """One provisioning action and its outcome."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    action: str
    operator_id: str
    success: bool
    detail: str | None = None
    subject: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditLog:
    """
    In-memory audit trail with a fixed capacity.

    Owned by the callback dispatcher and only touched from the event loop.
    """

    def __init__(self, capacity: int = DEFAULT_AUDIT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: deque[AuditEntry] = deque(maxlen=capacity)

    def record(
        self,
        action: str,
        operator_id: str,
        success: bool,
        detail: str | None = None,
        subject: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append an audit entry and emit it as a structured log line.

        Args:
            action: Action kind (e.g., "provision_email", "provision_all_ride")
            operator_id: Chat user who pressed the button ("unknown" if absent)
            success: Outcome of the action
            detail: Short outcome text (address, rule name or failure reason)
            subject: Person the action was about, if any
            metadata: Additional context (e.g., batch counts)

        Returns:
            The appended entry
        """
        entry = AuditEntry(
            timestamp=datetime.now(UTC),
            action=action,
            operator_id=operator_id,
            success=success,
            detail=detail,
            subject=subject,
            metadata=dict(metadata or {}),
        )
        self._entries.append(entry)

        log = logger.info if success else logger.warning
        log(
            "Audit event",
            audit_action=action,
            operator_id=operator_id,
            success=success,
            subject=subject,
            detail=detail,
            metadata=entry.metadata or None,
        )
        return entry

    def recent(self, count: int = 50) -> list[AuditEntry]:
        """Most recent ``count`` entries, oldest first."""
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def __len__(self) -> int:
        return len(self._entries)
