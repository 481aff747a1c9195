"""
Service layer for the onboarding provisioning feature.
"""

from .dispatcher import CallbackAck, CallbackDispatcher, CallbackEvent
from .orchestrator import ProvisioningOrchestrator

__all__ = [
    "CallbackAck",
    "CallbackDispatcher",
    "CallbackEvent",
    "ProvisioningOrchestrator",
]
