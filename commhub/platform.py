"""Wiring of stores and services into one runtime container."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import requests

from .activity.logger import ActivityLogger, ActivityLogPump
from .activity.repository import (
    ActivityLogRepository,
    InMemoryActivityLogRepository,
    SqlAlchemyActivityLogRepository,
)
from .contacts.client import CustomerRecordClient
from .contacts.repository import (
    ContactRepository,
    InMemoryContactRepository,
    SqlAlchemyContactRepository,
)
from .contacts.resolver import ContactResolver
from .core.clock import Clock, utcnow
from .core.config import Settings, get_settings
from .core.runner import BackgroundRunner
from .interactions.repository import (
    InMemoryInteractionRepository,
    InteractionRepository,
    SqlAlchemyInteractionRepository,
)
from .interactions.service import InteractionService
from .models.session import create_schema, get_engine, get_sessionmaker
from .realtime.broadcaster import Broadcaster
from .routing.engine import RoutingEngine
from .routing.repository import (
    InMemoryRoutingRuleRepository,
    RoutingRuleRepository,
    SqlAlchemyRoutingRuleRepository,
)
from .scheduling.repository import InMemoryTaskStore, SqlAlchemyTaskStore, TaskStore
from .scheduling.scheduler import TaskScheduler
from .scheduling.timers import DeadlineTimer
from .webhooks.gateway import WebhookGateway
from .webhooks.ledger import IdempotencyLedger, InMemoryLedger, SqlAlchemyLedger
from .webhooks.signature import SignatureVerifier

logger = logging.getLogger(__name__)


@dataclass
class Platform:
    settings: Settings
    verifier: SignatureVerifier
    ledger: IdempotencyLedger
    interactions: InteractionService
    resolver: ContactResolver
    routing: RoutingEngine
    scheduler: TaskScheduler
    activity: ActivityLogger
    broadcaster: Broadcaster
    runner: BackgroundRunner
    timer: DeadlineTimer
    pump: ActivityLogPump
    gateway: WebhookGateway

    def start(self) -> None:
        """Start the deadline timer and the activity log pump threads."""

        self.timer.start()
        self.pump.start()

    def stop(self) -> None:
        self.pump.stop()
        self.timer.stop()
        self.runner.shutdown(wait_for_jobs=False)


def build_platform(
    settings: Settings | None = None,
    *,
    clock: Clock = utcnow,
    crm: CustomerRecordClient | None = None,
    crm_session: requests.Session | None = None,
    timer: DeadlineTimer | None = None,
) -> Platform:
    """Assemble every service for ``settings``.

    Stores are in memory unless ``DATABASE_URL`` is configured. ``crm`` replaces
    the HTTP customer-record client (tests pass a fake with the same two
    methods); otherwise a :class:`CustomerRecordClient` is built when the
    system is enabled and has a base URL.
    """

    settings = settings or get_settings()

    interaction_repo: InteractionRepository
    contact_repo: ContactRepository
    rule_repo: RoutingRuleRepository
    task_store: TaskStore
    activity_repo: ActivityLogRepository
    ledger: IdempotencyLedger
    if settings.database_url:
        engine = get_engine(settings.database_url)
        create_schema(engine)
        factory = get_sessionmaker(engine=engine)
        interaction_repo = SqlAlchemyInteractionRepository(factory)
        contact_repo = SqlAlchemyContactRepository(factory)
        rule_repo = SqlAlchemyRoutingRuleRepository(factory)
        task_store = SqlAlchemyTaskStore(factory)
        activity_repo = SqlAlchemyActivityLogRepository(factory)
        ledger = SqlAlchemyLedger(factory, clock=clock)
    else:
        interaction_repo = InMemoryInteractionRepository()
        contact_repo = InMemoryContactRepository()
        rule_repo = InMemoryRoutingRuleRepository()
        task_store = InMemoryTaskStore()
        activity_repo = InMemoryActivityLogRepository()
        ledger = InMemoryLedger(clock=clock)

    if crm is None and settings.crm_enabled and settings.crm_base_url:
        crm = CustomerRecordClient(
            settings.crm_base_url,
            api_token=settings.crm_api_token,
            timeout=settings.crm_timeout_seconds,
            session=crm_session,
        )
    if not settings.crm_enabled:
        crm = None
        logger.info("Customer-record system disabled; contacts resolve as degraded")

    broadcaster = Broadcaster()
    runner = BackgroundRunner(max_workers=settings.background_workers)
    timer = timer or DeadlineTimer(clock=clock)
    interactions = InteractionService(interaction_repo, clock=clock)
    resolver = ContactResolver(
        contact_repo,
        crm,
        ttl_seconds=settings.contact_cache_ttl_seconds,
        clock=clock,
    )
    routing = RoutingEngine(
        rule_repo,
        default_queue=settings.default_queue,
        timezone=settings.routing_timezone,
        topic_skills=settings.topic_skills,
        clock=clock,
    )
    scheduler = TaskScheduler(
        task_store,
        timer,
        reservation_timeout_seconds=settings.reservation_timeout_seconds,
        max_wait_seconds=settings.task_max_wait_seconds,
        max_rejections=settings.task_max_rejections,
        clock=clock,
    )
    activity = ActivityLogger(
        activity_repo,
        crm,
        interactions,
        resolver,
        broadcaster,
        max_attempts=settings.activity_log_max_attempts,
        backoff_seconds=settings.activity_log_backoff_seconds,
        max_backoff_seconds=settings.activity_log_max_backoff_seconds,
        settle_seconds=settings.activity_log_settle_seconds,
        clock=clock,
    )
    gateway = WebhookGateway(
        ledger=ledger,
        interactions=interactions,
        resolver=resolver,
        routing=routing,
        scheduler=scheduler,
        activity=activity,
        broadcaster=broadcaster,
        runner=runner,
        voicemail_queue=settings.voicemail_queue,
    )
    scheduler.add_listener(gateway.handle_task_event)

    return Platform(
        settings=settings,
        verifier=SignatureVerifier(settings.webhook_auth_token),
        ledger=ledger,
        interactions=interactions,
        resolver=resolver,
        routing=routing,
        scheduler=scheduler,
        activity=activity,
        broadcaster=broadcaster,
        runner=runner,
        timer=timer,
        pump=ActivityLogPump(activity, interval_seconds=settings.activity_log_poll_seconds),
        gateway=gateway,
    )


@lru_cache(maxsize=1)
def get_platform() -> Platform:
    """Process-wide platform; FastAPI routes depend on it."""

    return build_platform()


def reset_platform() -> None:
    """Stop and forget the cached platform; useful in tests."""

    if get_platform.cache_info().currsize:
        get_platform().stop()
    get_platform.cache_clear()
