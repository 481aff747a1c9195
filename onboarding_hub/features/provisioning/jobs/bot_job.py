"""
Onboarding bot job runners.

Run the bot without the HTTP server: either the long-lived poll plus
digest loop, or a single digest for a cron-style trigger. Card callbacks
still need the web app.
"""

import asyncio

from onboarding_hub.config import settings
from onboarding_hub.features.provisioning.bootstrap import build_bot
from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def start_provisioning_bot() -> None:
    """Start the poll and the daily digest and keep them running until cancelled."""
    if not settings.bot_enabled():
        logger.warning("Bot disabled: set FEISHU_BOT_CHAT_ID or FEISHU_BOT_WEBHOOK")
        return

    components = build_bot()
    components.orchestrator.start()
    try:
        await asyncio.Event().wait()
    finally:
        await components.aclose()


async def run_daily_digest() -> None:
    """Send one digest and exit."""
    components = build_bot()
    try:
        pending = await components.orchestrator.send_daily_digest()
        logger.info("One-off digest finished", pending=pending)
    finally:
        await components.aclose()


if __name__ == "__main__":
    asyncio.run(start_provisioning_bot())
