"""
Onboarding provisioning feature package.

This vertical slice keeps every layer of the onboarding bot co-located
(domain models, identity allocation, rule matching, tracking state, card
rendering, services, jobs and the API router).
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as bot_router  # noqa: F401
from .bootstrap import BotComponents, build_bot  # noqa: F401
from .services.orchestrator import ProvisioningOrchestrator  # noqa: F401
