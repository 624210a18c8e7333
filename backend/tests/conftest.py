"""Shared pytest fixtures for the Flow Engine test suite.

Provides:
- In-memory async SQLite database (no PostgreSQL needed for tests)
- Async session factory
- Recording messaging gateway and event sink
- A fully wired ExecutionEngine with zero retry delays
- Workflow factory from plain node/edge dicts
"""

import os
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOCK_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from core.exceptions import SessionNotReadyError  # noqa: E402
from core.locks import InMemoryLockManager  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402
from messaging.gateway import MessageDispatcher, MessagingGateway  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from workflow.engine import ExecutionEngine  # noqa: E402
from workflow.events import EventSink, ExecutionEvent  # noqa: E402


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeGateway(MessagingGateway):
    """Records every send; can fail the next N sends with SessionNotReadyError."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.attempts = 0
        self.fail_next = 0
        self.error: Optional[Exception] = None

    async def _record(self, **message) -> dict:
        self.attempts += 1
        if self.error is not None:
            raise self.error
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SessionNotReadyError(message["session_id"])
        self.sent.append(message)
        return {"messageId": f"msg-{len(self.sent)}"}

    async def send_text(self, session_id, to, text):
        return await self._record(kind="text", session_id=session_id, to=to, text=text)

    async def send_media(self, session_id, to, media_type, url, caption=None, file_name=None,
                         send_audio_as_voice=False):
        return await self._record(
            kind="media", session_id=session_id, to=to, media_type=media_type,
            url=url, caption=caption, file_name=file_name,
        )

    async def send_buttons(self, session_id, to, text, buttons, footer=None):
        return await self._record(
            kind="buttons", session_id=session_id, to=to, text=text, buttons=buttons, footer=footer,
        )

    async def send_list(self, session_id, to, text, button_text, sections, footer=None, title=None):
        return await self._record(
            kind="list", session_id=session_id, to=to, text=text,
            button_text=button_text, sections=sections,
        )

    @property
    def texts(self) -> list[str]:
        return [m.get("text") for m in self.sent]


class RecordingEventSink(EventSink):
    def __init__(self):
        self.events: list[ExecutionEvent] = []

    async def emit(self, event: ExecutionEvent) -> None:
        self.events.append(event)

    def types(self, execution_id: Optional[str] = None) -> list[str]:
        return [
            e.type.value for e in self.events
            if execution_id is None or e.execution_id == execution_id
        ]

    def of_type(self, event_type: str) -> list[ExecutionEvent]:
        return [e for e in self.events if e.type.value == event_type]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test; StaticPool shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite+aiosqlite://",
        LOCK_BACKEND="memory",
        ENVIRONMENT="testing",
        SEND_RETRY_BASE_DELAY=0.0,
        TIMER_LOCK_RETRY_DELAY_SECONDS=0.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def locks() -> InMemoryLockManager:
    return InMemoryLockManager()


@pytest_asyncio.fixture
async def make_engine(session_factory, gateway, events, locks):
    """Factory for engines with per-test setting overrides."""
    engines: list[ExecutionEngine] = []

    def _make(**overrides) -> ExecutionEngine:
        cfg = make_settings(**overrides)
        engine = ExecutionEngine(
            session_factory=session_factory,
            lock_manager=locks,
            dispatcher=MessageDispatcher.from_settings(gateway, cfg),
            event_sink=events,
            settings=cfg,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        await engine.shutdown()


@pytest_asyncio.fixture
async def engine(make_engine) -> ExecutionEngine:
    return make_engine()


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def create_workflow(session_factory):
    """Persist a workflow from plain node/edge dicts."""

    async def _create(nodes, edges, tenant_id="tenant-1", name="Test Workflow", is_active=True):
        async with session_factory() as session:
            workflow = await WorkflowService(session).create_workflow(
                tenant_id=tenant_id,
                name=name,
                nodes=nodes,
                edges=edges,
                is_active=is_active,
            )
            await session.commit()
        return workflow

    return _create
