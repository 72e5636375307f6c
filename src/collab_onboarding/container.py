"""
Service container.

Builds every component once, in dependency order, and hands them out by
reference. Tests build their own container with fakes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .analytics import OnboardingAnalytics
from .backend import RemoteBackend, SupabaseBackend, TimeoutBackend
from .config import OnboardingSettings, get_settings
from .coordinator import FlowCoordinator
from .events import EventBus
from .executor import StepExecutor
from .orchestrator import FlowOrchestrator
from .recovery import RecoveryEngine, RetryPolicy
from .session import SessionStore
from .steps import StepCatalog
from .storage import JsonFileStorage, LocalStorage

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: OnboardingSettings
    storage: LocalStorage
    backend: TimeoutBackend
    catalog: StepCatalog
    session_store: SessionStore
    executor: StepExecutor
    recovery: RecoveryEngine
    coordinator: FlowCoordinator
    events: EventBus
    analytics: OnboardingAnalytics
    orchestrator: FlowOrchestrator


def build_container(
    settings: OnboardingSettings | None = None,
    backend: RemoteBackend | None = None,
    storage: LocalStorage | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ServiceContainer:
    """
    Wire the onboarding services.

    Defaults: settings from the environment, Supabase backend, JSON file
    storage at settings.storage_path. The backend is always wrapped with
    the network timeout.
    """
    settings = settings or get_settings()
    storage = storage if storage is not None else JsonFileStorage(settings.storage_path)
    if backend is None:
        backend = SupabaseBackend(settings.supabase_url, settings.supabase_anon_key)
        if not settings.has_supabase:
            logger.warning("Supabase is not configured; only local-only sessions will work")
    bounded = TimeoutBackend(backend, settings.network_timeout_seconds)

    catalog = StepCatalog()
    session_store = SessionStore(storage, bounded, first_step=catalog.first_step.value)
    executor = StepExecutor(session_store, catalog, reference_cache_hours=settings.reference_cache_hours)
    recovery = RecoveryEngine(
        storage,
        session_store,
        policy=RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay_seconds,
        ),
        error_log_limit=settings.error_log_limit,
        synced_retention=settings.synced_queue_retention,
        sleep=sleep,
    )
    coordinator = FlowCoordinator(catalog, session_store)
    events = EventBus()
    analytics = OnboardingAnalytics(storage, limit=settings.analytics_event_limit)
    orchestrator = FlowOrchestrator(
        catalog,
        session_store,
        executor,
        recovery,
        coordinator,
        events=events,
        analytics=analytics,
        allow_local_identity=settings.allow_local_identity,
    )

    return ServiceContainer(
        settings=settings,
        storage=storage,
        backend=bounded,
        catalog=catalog,
        session_store=session_store,
        executor=executor,
        recovery=recovery,
        coordinator=coordinator,
        events=events,
        analytics=analytics,
        orchestrator=orchestrator,
    )
