"""
Tracking state for the bot: what was seen on the last poll, when each city
wants to hear about it, and which cards went out.
"""

from .change_detector import ChangeDetector, Classification
from .push_policy import PushCadencePolicy, PushRule
from .sent_messages import SentNotificationMap

__all__ = [
    "ChangeDetector",
    "Classification",
    "PushCadencePolicy",
    "PushRule",
    "SentNotificationMap",
]
