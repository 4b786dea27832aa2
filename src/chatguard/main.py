"""Main entry point for ChatGuard."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import asyncpg

from chatguard import metrics
from chatguard.config import Settings, get_settings
from chatguard.detection.ai import AIThreatClassifier
from chatguard.detection.engine import ThreatScoringEngine
from chatguard.detection.reputation import TRANSIENT_ERRORS as REPUTATION_TRANSIENT_ERRORS
from chatguard.detection.reputation import (
    SafeBrowsingClient,
    VirusTotalClient,
    reputation_retry_policy,
)
from chatguard.discord.bot import ChatGuardBot
from chatguard.discord.platform import DiscordPlatform
from chatguard.guard import ChatGuard
from chatguard.incidents.dispatcher import IncidentAlertDispatcher
from chatguard.intel.client import TRANSIENT_ERRORS as INTEL_TRANSIENT_ERRORS
from chatguard.intel.client import intel_retry_policy
from chatguard.intel.misp import MISPClient
from chatguard.intel.opencti import OpenCTIClient
from chatguard.intel.service import ThreatIntelService
from chatguard.logging import get_logger, setup_logging
from chatguard.platform.base import PlatformGateway
from chatguard.raid.detector import RaidDetector
from chatguard.resilience import (
    CircuitBreaker,
    DependencyGuard,
    RateLimiter,
    RetryPolicy,
    SharedRateLimiter,
)
from chatguard.storage.base import CounterStore, IncidentStore
from chatguard.storage.postgres import PostgresIncidentStore
from chatguard.storage.redis_store import RedisCounterStore

log = get_logger("chatguard.main")


@dataclass
class Components:
    """Everything :func:`build_components` wires together."""

    engine: ThreatScoringEngine
    intel: ThreatIntelService
    raid: RaidDetector | None
    dispatcher: IncidentAlertDispatcher
    guard: ChatGuard

    async def close(self) -> None:
        await self.engine.close()
        await self.intel.close()


def _dependency_guard(
    settings: Settings,
    name: str,
    *,
    timeout: float,
    retry_policy: RetryPolicy | None = None,
    limiter: RateLimiter | None = None,
    failure_on: tuple[type[BaseException], ...] = (Exception,),
) -> DependencyGuard:
    return DependencyGuard(
        name,
        breaker=CircuitBreaker(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            success_threshold=settings.breaker_success_threshold,
            timeout=settings.breaker_timeout_seconds,
            failure_on=failure_on,
            on_state_change=metrics.circuit_breaker_state_changed,
        ),
        limiter=limiter,
        retry_policy=retry_policy,
        timeout=timeout,
    )


def build_engine(settings: Settings, counters: CounterStore | None) -> ThreatScoringEngine:
    """Create the scoring engine with whichever reputation sources are configured."""
    retry_policy = reputation_retry_policy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
    )

    safe_browsing = None
    if settings.safe_browsing_api_key:
        safe_browsing = SafeBrowsingClient(
            settings.safe_browsing_api_key.get_secret_value(),
            timeout=settings.safe_browsing_timeout,
            guard=_dependency_guard(
                settings,
                SafeBrowsingClient.name,
                timeout=settings.safe_browsing_timeout,
                retry_policy=retry_policy,
                failure_on=REPUTATION_TRANSIENT_ERRORS,
            ),
        )

    virustotal = None
    if settings.virustotal_api_key:
        budget = None
        if counters is not None:
            budget = SharedRateLimiter(
                counters,
                action="virustotal",
                limit=settings.virustotal_requests_per_minute,
                window_seconds=60,
            )
        virustotal = VirusTotalClient(
            settings.virustotal_api_key.get_secret_value(),
            timeout=settings.virustotal_timeout,
            guard=_dependency_guard(
                settings,
                VirusTotalClient.name,
                timeout=settings.virustotal_timeout,
                retry_policy=retry_policy,
                failure_on=REPUTATION_TRANSIENT_ERRORS,
            ),
            shared_budget=budget,
        )

    ai_classifier = None
    if settings.ai_classifier_enabled:
        ai_classifier = AIThreatClassifier(
            settings.ollama_url,
            settings.ollama_model,
            timeout=settings.ollama_timeout,
            guard=_dependency_guard(
                settings,
                AIThreatClassifier.name,
                timeout=settings.ollama_timeout,
                limiter=RateLimiter(
                    settings.ai_requests_per_minute, 60.0, name=AIThreatClassifier.name
                ),
            ),
        )

    log.info(
        "threat_engine_configured",
        safe_browsing=safe_browsing is not None,
        virustotal=virustotal is not None,
        shared_virustotal_budget=counters is not None,
        ai_classifier=ai_classifier is not None,
    )
    return ThreatScoringEngine(
        safe_browsing=safe_browsing, virustotal=virustotal, ai_classifier=ai_classifier
    )


def build_intel(settings: Settings) -> ThreatIntelService:
    retry_policy = intel_retry_policy(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
    )
    misp = None
    if settings.misp_enabled and settings.misp_url and settings.misp_api_key:
        misp = MISPClient(
            settings.misp_url,
            settings.misp_api_key.get_secret_value(),
            timeout=settings.intel_timeout,
            guard=_dependency_guard(
                settings,
                MISPClient.name,
                timeout=settings.intel_timeout,
                retry_policy=retry_policy,
                failure_on=INTEL_TRANSIENT_ERRORS,
            ),
        )
    opencti = None
    if settings.opencti_enabled and settings.opencti_url and settings.opencti_api_key:
        opencti = OpenCTIClient(
            settings.opencti_url,
            settings.opencti_api_key.get_secret_value(),
            timeout=settings.intel_timeout,
            guard=_dependency_guard(
                settings,
                OpenCTIClient.name,
                timeout=settings.intel_timeout,
                retry_policy=retry_policy,
                failure_on=INTEL_TRANSIENT_ERRORS,
            ),
        )
    log.info("threat_intel_configured", misp=misp is not None, opencti=opencti is not None)
    return ThreatIntelService(misp=misp, opencti=opencti)


def build_components(
    settings: Settings,
    platform: PlatformGateway,
    *,
    counters: CounterStore | None = None,
    incidents: IncidentStore | None = None,
) -> Components:
    """Wire detection, intel, raid and incident handling behind one router.

    Args:
        settings: Application settings.
        platform: Gateway used for every outbound platform call.
        counters: Shared counter store; anti-raid needs it.
        incidents: Incident persistence, or ``None`` to keep alerts in
            memory only.
    """
    engine = build_engine(settings, counters)
    intel = build_intel(settings)

    raid = None
    if settings.anti_raid_enabled:
        if counters is None:
            log.warning("anti_raid_disabled", reason="no counter store")
        else:
            raid = RaidDetector(
                counters,
                platform,
                join_threshold=settings.anti_raid_join_threshold,
                window_seconds=settings.anti_raid_window_seconds,
                min_account_age_days=settings.min_account_age_days,
                mitigation_ttl_seconds=settings.mitigation_ttl_seconds,
            )

    dispatcher = IncidentAlertDispatcher(
        platform,
        store=incidents,
        counters=counters,
        alert_threshold=settings.alert_threshold,
    )
    guard = ChatGuard(
        engine=engine,
        dispatcher=dispatcher,
        platform=platform,
        intel=intel,
        raid=raid,
        incidents=incidents,
        auto_action_threshold=settings.auto_action_threshold,
        draft_record_threshold=settings.draft_record_threshold,
        draft_records_enabled=settings.intel_draft_records_enabled,
        auto_kick_new_accounts=settings.auto_kick_new_accounts,
    )
    return Components(
        engine=engine, intel=intel, raid=raid, dispatcher=dispatcher, guard=guard
    )


async def main() -> None:
    """Main application entry point."""
    setup_logging()

    settings = get_settings()
    log.info("starting_chatguard", environment=settings.environment)

    if settings.metrics_enabled:
        try:
            metrics.start_metrics_server(settings.metrics_port)
        except OSError as e:
            log.warning("metrics_server_unavailable", port=settings.metrics_port, error=str(e))

    counters: RedisCounterStore | None = RedisCounterStore.from_url(settings.redis_url)
    if not await counters.ping():
        log.warning("redis_unavailable", note="shared counters disabled")
        await counters.close()
        counters = None

    incidents: PostgresIncidentStore | None = PostgresIncidentStore(settings.postgres_dsn)
    try:
        await incidents.initialize()  # type: ignore[union-attr]
    except (OSError, asyncpg.PostgresError) as e:
        log.warning("incident_store_unavailable", error=str(e))
        incidents = None

    bot = ChatGuardBot(max_attachment_bytes=settings.max_attachment_bytes)
    platform = DiscordPlatform(bot, alert_channel_id=settings.alert_channel_id)
    components = build_components(settings, platform, counters=counters, incidents=incidents)
    bot.attach_guard(components.guard)
    log.info("bot_created")

    try:
        await bot.start(settings.discord_token.get_secret_value())
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        await bot.close()
        await components.close()
        if incidents is not None:
            await incidents.close()
        if counters is not None:
            await counters.close()
        log.info("chatguard_stopped")


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
