"""
Job runners for the onboarding provisioning bot.
"""

from .bot_job import run_daily_digest, start_provisioning_bot

__all__ = ["start_provisioning_bot", "run_daily_digest"]
