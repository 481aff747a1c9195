"""
Bounded record of cards the bot has sent, keyed by message id.

Lets a later refresh find out which hires a stale card was about.
"""

from collections import OrderedDict
from datetime import datetime

from onboarding_hub.features.provisioning.domain.models import (
    PREBOARDING,
    EnrichedRecord,
    RosterCategory,
    SentNotification,
)

DEFAULT_SENT_MESSAGE_CAPACITY = 50


class SentNotificationMap:
    def __init__(self, capacity: int = DEFAULT_SENT_MESSAGE_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._messages: OrderedDict[str, SentNotification] = OrderedDict()

    def remember(
        self,
        message_id: str | None,
        records: list[EnrichedRecord],
        sent_at: datetime,
        category: RosterCategory = PREBOARDING,
    ) -> None:
        if not message_id:
            return
        self._messages[message_id] = SentNotification(
            records=list(records), sent_at=sent_at, category=category
        )
        self._messages.move_to_end(message_id)
        while len(self._messages) > self.capacity:
            self._messages.popitem(last=False)

    def get(self, message_id: str | None) -> SentNotification | None:
        if not message_id:
            return None
        return self._messages.get(message_id)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages
