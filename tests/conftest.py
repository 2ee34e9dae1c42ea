from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import pytest
import pytest_asyncio

from browser_session_hub.config import EngineConfig
from browser_session_hub.coordinator.registry import EngineRegistry
from browser_session_hub.coordinator.service import SessionCoordinator
from browser_session_hub.engine.base import EngineBackend, EngineHandle
from browser_session_hub.models import ActionOutcome, ProjectRecord, UserRecord
from browser_session_hub.store.database import Datastore


class TickingClock:
    """Clock that advances one second on every read."""

    def __init__(self) -> None:
        self._now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self._now += timedelta(seconds=1)
        return self._now


class StubHandle(EngineHandle):
    def __init__(self, session_id: str, backend: "StubBackend") -> None:
        super().__init__(session_id)
        self._backend = backend
        self.navigated_to: Optional[str] = None
        self.instructions: list[str] = []
        self.extraction_scopes: list[tuple[Optional[str], bool]] = []
        self.closed = False

    @property
    def resource_id(self) -> Optional[str]:
        return f"stub-{self.session_id}"

    async def start(self) -> None:
        if self._backend.start_delay:
            await asyncio.sleep(self._backend.start_delay)
        if self._backend.start_error:
            raise self._backend.start_error

    async def navigate(self, url: str) -> None:
        if self._backend.navigate_error:
            raise self._backend.navigate_error
        self.navigated_to = url

    async def run_instruction(self, instruction: str) -> ActionOutcome:
        self.instructions.append(instruction)
        if self._backend.action_delay:
            await asyncio.sleep(self._backend.action_delay)
        if self._backend.action_error:
            raise self._backend.action_error
        return self._backend.outcome

    async def run_extraction(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> dict[str, Any]:
        self.instructions.append(instruction)
        self.extraction_scopes.append((selector, text_only))
        if self._backend.action_delay:
            await asyncio.sleep(self._backend.action_delay)
        if self._backend.action_error:
            raise self._backend.action_error
        return {"data": f"extracted: {instruction}", "schema_keys": sorted(schema)}

    async def shutdown(self) -> None:
        self._backend.shutdowns += 1
        self.closed = True
        if self._backend.shutdown_error:
            raise self._backend.shutdown_error


class StubBackend(EngineBackend):
    name = "stub"

    def __init__(self) -> None:
        super().__init__(EngineConfig(backend="stub"))
        self.created: list[StubHandle] = []
        self.shutdowns = 0
        self.start_delay = 0.0
        self.action_delay = 0.0
        self.start_error: Optional[BaseException] = None
        self.navigate_error: Optional[BaseException] = None
        self.action_error: Optional[BaseException] = None
        self.shutdown_error: Optional[BaseException] = None
        self.create_error: Optional[BaseException] = None
        self.outcome = ActionOutcome(success=True, message="Clicked the login link")

    def create(self, session_id: str) -> StubHandle:
        if self.create_error:
            raise self.create_error
        handle = StubHandle(session_id, self)
        self.created.append(handle)
        return handle


@pytest.fixture
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture
def registry(backend: StubBackend) -> EngineRegistry:
    return EngineRegistry(backend, launch_timeout=1.0, shutdown_timeout=1.0)


@pytest_asyncio.fixture
async def datastore(tmp_path: Path) -> Datastore:
    store = Datastore(f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}", clock=TickingClock())
    await store.create_all()
    yield store
    await store.dispose()


@pytest.fixture
def coordinator(datastore: Datastore, registry: EngineRegistry) -> SessionCoordinator:
    return SessionCoordinator(
        datastore,
        registry,
        default_start_url="https://example.com",
        init_timeout=1.0,
        action_timeout=1.0,
    )


@pytest_asyncio.fixture
async def user(datastore: Datastore) -> UserRecord:
    return await datastore.get_or_create_user("user-1", "owner@example.com")


@pytest_asyncio.fixture
async def other_user(datastore: Datastore) -> UserRecord:
    return await datastore.get_or_create_user("user-2", "other@example.com")


@pytest_asyncio.fixture
async def project(coordinator: SessionCoordinator, user: UserRecord) -> ProjectRecord:
    return await coordinator.create_project(user, "Checkout flows")
