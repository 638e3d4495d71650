"""Application factory for the sync engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from caseload.core.error_handler import GracefulShutdown, setup_global_exception_handler
from caseload.core.logging import configure_logging
from caseload.core.settings import Settings, get_settings
from caseload.jobs.cleanup import CLEANUP_JOB_NAME, build_cleanup_job
from caseload.jobs.scheduler import BackgroundScheduler
from caseload.remote.memory import InMemoryBackend
from caseload.remote.postgrest import PostgrestBackend
from caseload.services.categories import CategoryService, SubcategoryService
from caseload.services.contacts import ContactService
from caseload.services.interactions import InteractionService
from caseload.services.students import StudentService
from caseload.sync.invalidation import InvalidationGraph, build_default_graph
from caseload.sync.mutations import MutationExecutor
from caseload.sync.queries import QueryClient
from caseload.sync.store import CacheStore
from caseload.tokens.session import NavigationSession, TokenSessionStore, build_session_store
from caseload.tokens.validation_cache import TokenValidationCache

logger = logging.getLogger(__name__)

Backend = Union[PostgrestBackend, InMemoryBackend]


@dataclass
class SyncContainer:
    settings: Settings
    backend: Backend
    store: CacheStore
    graph: InvalidationGraph
    executor: MutationExecutor
    queries: QueryClient
    students: StudentService
    contacts: ContactService
    interactions: InteractionService
    categories: CategoryService
    subcategories: SubcategoryService
    token_cache: TokenValidationCache
    session_store: TokenSessionStore
    navigation: NavigationSession
    scheduler: BackgroundScheduler
    background: GracefulShutdown

    async def startup(self, *, configure_logs: bool = False) -> None:
        if configure_logs:
            configure_logging(self.settings)
        setup_global_exception_handler()
        if self.settings.cleanup_autostart:
            self.scheduler.start()
        logger.info(
            "caseload.started",
            extra={
                "environment": self.settings.environment,
                "backend": type(self.backend).__name__,
                "scheduler": self.scheduler.started,
            },
        )

    async def shutdown(self) -> None:
        self.scheduler.stop()
        await self.scheduler.wait_for_runs(timeout=self.background.timeout)
        await self.queries.close()
        await self.background.drain()
        await self.backend.close()
        await self.session_store.close()
        logger.info("caseload.stopped")

    async def run_cleanup(self):
        """Run the token cleanup job now (admin trigger)."""
        return await self.scheduler.run_once(CLEANUP_JOB_NAME)


def create_backend(settings: Settings) -> Backend:
    if settings.backend_url:
        return PostgrestBackend(
            settings.backend_url,
            api_key=settings.backend_api_key,
            timeout=settings.backend_timeout_seconds,
        )
    logger.warning("BACKEND_URL not set, using the in-memory backend")
    return InMemoryBackend()


def build_container(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[Backend] = None,
    session_store: Optional[TokenSessionStore] = None,
) -> SyncContainer:
    """Wire one engine instance: a single store shared by reads, writes and jobs."""

    settings = settings or get_settings()
    backend = backend if backend is not None else create_backend(settings)
    background = GracefulShutdown()

    store = CacheStore()
    graph = build_default_graph()
    executor = MutationExecutor(store, graph)
    queries = QueryClient(
        store,
        backend,
        stale_after=settings.stale_after_seconds,
        shutdown=background,
    )

    token_cache = TokenValidationCache(backend, ttl_seconds=settings.token_cache_ttl_seconds)
    if session_store is None:
        session_store = build_session_store(
            redis_url=settings.redis_url or None,
            ttl_seconds=int(settings.token_session_ttl_seconds),
        )
    navigation = NavigationSession(
        token_cache,
        session_store,
        session_ttl_seconds=settings.token_session_ttl_seconds,
    )

    scheduler = BackgroundScheduler(shutdown=background)
    scheduler.register(
        build_cleanup_job(
            backend,
            store,
            graph,
            pending_keys=executor.pending_keys,
            interval_seconds=settings.cleanup_interval_seconds,
        )
    )

    return SyncContainer(
        settings=settings,
        backend=backend,
        store=store,
        graph=graph,
        executor=executor,
        queries=queries,
        students=StudentService(executor, backend),
        contacts=ContactService(executor, backend),
        interactions=InteractionService(executor, backend),
        categories=CategoryService(executor, backend),
        subcategories=SubcategoryService(executor, backend),
        token_cache=token_cache,
        session_store=session_store,
        navigation=navigation,
        scheduler=scheduler,
        background=background,
    )


__all__ = ["SyncContainer", "build_container", "create_backend"]
