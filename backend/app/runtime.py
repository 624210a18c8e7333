"""Flow Engine runtime: wires the engine to its collaborators.

The host process (an HTTP app, a chat-gateway worker) owns the lifecycle:

    async with lifespan(gateway) as runtime:
        await runtime.router.handle_message(tenant_id, session_id, contact_id, payload)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from core.locks import LockManager, build_lock_manager
from core.logging_config import setup_logging
from db.database import close_db, create_db_engine, create_session_factory, init_db
from messaging.gateway import MessageDispatcher, MessagingGateway
from services.message_router import InboundMessageRouter
from workflow.engine import ExecutionEngine
from workflow.events import FanoutEventSink, JournalEventSink, LoggingEventSink
from workflow.recovery import RecoveryService

logger = structlog.get_logger(__name__)


@dataclass
class EngineRuntime:
    """Everything a running process needs to drive executions."""

    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    locks: LockManager
    engine: ExecutionEngine
    recovery: RecoveryService
    router: InboundMessageRouter
    journal: JournalEventSink


def build_runtime(
    gateway: MessagingGateway,
    settings: Settings,
    db_engine: AsyncEngine,
    locks: LockManager,
) -> EngineRuntime:
    session_factory = create_session_factory(db_engine)
    journal = JournalEventSink(session_factory)
    engine = ExecutionEngine(
        session_factory=session_factory,
        lock_manager=locks,
        dispatcher=MessageDispatcher.from_settings(gateway, settings),
        event_sink=FanoutEventSink([LoggingEventSink(), journal]),
        settings=settings,
    )
    return EngineRuntime(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        locks=locks,
        engine=engine,
        recovery=RecoveryService(engine, session_factory, settings),
        router=InboundMessageRouter(engine, session_factory),
        journal=journal,
    )


@asynccontextmanager
async def lifespan(
    gateway: MessagingGateway,
    settings: Optional[Settings] = None,
    locks: Optional[LockManager] = None,
) -> AsyncIterator[EngineRuntime]:
    """Engine startup and shutdown."""
    # Startup
    settings = settings or get_settings()
    setup_logging(settings)
    settings.validate_backends()

    db_engine = create_db_engine(settings)
    await init_db(db_engine)
    locks = locks or build_lock_manager(settings.LOCK_BACKEND, settings.REDIS_URL)
    runtime = build_runtime(gateway, settings, db_engine, locks)

    results = await runtime.recovery.recover_all()
    recovered = sum(1 for r in results if r.recovered)
    logger.info("Startup recovery done", pending=len(results), recovered=recovered)
    logger.info(
        "Engine started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        lock_backend=settings.LOCK_BACKEND,
    )

    try:
        yield runtime
    finally:
        # Shutdown
        await runtime.engine.shutdown()
        await locks.close()
        await close_db(db_engine)
        logger.info("Engine stopped")
