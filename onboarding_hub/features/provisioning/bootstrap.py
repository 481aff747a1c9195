"""
Wiring for the onboarding bot.

The only place that reads Settings for the provisioning feature; everything
below it receives its configuration through constructors.
"""

from dataclasses import dataclass
from datetime import time

from onboarding_hub.config import Settings, settings
from onboarding_hub.features.provisioning.cards.renderer import CardRenderer
from onboarding_hub.features.provisioning.identity.allocator import IdentityAllocator
from onboarding_hub.features.provisioning.rules.catalog import RuleCatalog
from onboarding_hub.features.provisioning.rules.matcher import RuleMatcher
from onboarding_hub.features.provisioning.services.dispatcher import CallbackDispatcher
from onboarding_hub.features.provisioning.services.orchestrator import ProvisioningOrchestrator
from onboarding_hub.features.provisioning.tracking.push_policy import PushCadencePolicy
from onboarding_hub.infrastructure.audit.audit_log import AuditLog
from onboarding_hub.infrastructure.observability.logging import get_logger
from onboarding_hub.infrastructure.scheduling.scheduler import (
    AsyncioScheduler,
    Clock,
    Scheduler,
    SystemClock,
)
from onboarding_hub.services.feishu_client import FeishuClient
from onboarding_hub.services.infrastructure.throttle_gate import ThrottleGate
from onboarding_hub.services.ride_client import RideServiceClient

logger = get_logger(__name__)


@dataclass
class BotComponents:
    orchestrator: ProvisioningOrchestrator
    feishu: FeishuClient
    ride: RideServiceClient

    async def aclose(self) -> None:
        await self.orchestrator.stop()
        await self.feishu.close()
        await self.ride.close()


def build_bot(
    config: Settings = settings,
    scheduler: Scheduler | None = None,
    clock: Clock | None = None,
) -> BotComponents:
    """Build the clients and the orchestrator from settings."""
    clock = clock or SystemClock()

    feishu = FeishuClient(
        app_id=config.FEISHU_APP_ID,
        app_secret=config.FEISHU_APP_SECRET,
        email_domain=config.EMAIL_DOMAIN,
        chat_id=config.FEISHU_BOT_CHAT_ID,
        webhook_url=config.FEISHU_BOT_WEBHOOK,
        timezone=config.REFERENCE_TIMEZONE,
    )
    ride = RideServiceClient(
        client_id=config.RIDE_CLIENT_ID,
        client_secret=config.RIDE_CLIENT_SECRET,
        access_token=config.RIDE_ACCESS_TOKEN,
        default_rule_id=config.RIDE_DEFAULT_RULE_ID,
        gate=ThrottleGate(config.RIDE_MIN_REQUEST_INTERVAL_SECONDS),
    )

    policy = PushCadencePolicy.from_config(config.get_push_rule_config())
    allocator = IdentityAllocator(config.EMAIL_DOMAIN)
    renderer = CardRenderer(
        timezone=policy.timezone,
        dashboard_url=config.DASHBOARD_URL,
        clock=clock,
    )
    dispatcher = CallbackDispatcher(
        allocator=allocator,
        directory=feishu,
        ride=ride,
        messenger=feishu,
        renderer=renderer,
        audit_log=AuditLog(config.AUDIT_LOG_CAPACITY),
    )
    orchestrator = ProvisioningOrchestrator(
        roster=feishu,
        ride=ride,
        messenger=feishu,
        allocator=allocator,
        matcher=RuleMatcher(config.RIDE_PRIMARY_RULE_CATEGORY, config.RIDE_SECONDARY_RULE_CATEGORY),
        rule_catalog=RuleCatalog(ride.fetch_rules, clock=clock),
        dispatcher=dispatcher,
        policy=policy,
        renderer=renderer,
        scheduler=scheduler or AsyncioScheduler(),
        clock=clock,
        check_interval=config.BOT_CHECK_INTERVAL_SECONDS,
        initial_delay=config.BOT_INITIAL_DELAY_SECONDS,
        digest_at=time(config.DAILY_DIGEST_HOUR, config.DAILY_DIGEST_MINUTE),
        sent_capacity=config.SENT_MESSAGE_CAPACITY,
    )

    logger.info(
        "Onboarding bot assembled",
        bot_enabled=config.bot_enabled(),
        ride_configured=ride.configured,
        email_domain=config.EMAIL_DOMAIN,
    )
    return BotComponents(orchestrator=orchestrator, feishu=feishu, ride=ride)
