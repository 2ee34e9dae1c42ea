"""Session lifecycle coordinator used by the HTTP route handlers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Set

from ..engine.base import EngineActionError
from ..errors import (
    EngineInitError,
    EngineTimeoutError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SessionHubError,
    UnauthorizedError,
    ValidationError,
)
from ..models import (
    ActionOutcome,
    ExtractionOutcome,
    ProjectRecord,
    ProjectSummary,
    SessionActionRecord,
    SessionRecord,
    SessionStatus,
    UserRecord,
)
from ..store.database import Datastore
from .dispatcher import ActionDispatcher
from .lifecycle import SessionStateMachine, ensure_initializable, ensure_terminable
from .registry import EngineRegistry

LOGGER = logging.getLogger(__name__)


class SessionCoordinator:
    """Coordinate the datastore, the state machine and the engine registry.

    Every operation checks the caller's ownership first, then the lifecycle
    state, and only then touches the registry.
    """

    def __init__(
        self,
        datastore: Datastore,
        registry: EngineRegistry,
        *,
        default_start_url: str = "https://example.com",
        init_timeout: Optional[float] = None,
        action_timeout: Optional[float] = None,
    ) -> None:
        self._datastore = datastore
        self._registry = registry
        self._state = SessionStateMachine(datastore)
        self._dispatcher = ActionDispatcher(
            datastore,
            registry,
            self._state,
            action_timeout=action_timeout,
        )
        self._default_start_url = default_start_url
        self._init_timeout = init_timeout
        self._initializing: Set[str] = set()
        self._claims = asyncio.Lock()

    @property
    def datastore(self) -> Datastore:
        return self._datastore

    @property
    def registry(self) -> EngineRegistry:
        return self._registry

    async def startup(self) -> None:
        await self._datastore.create_all()
        LOGGER.info("Session coordinator ready (backend: %s)", self._registry.backend_name)

    async def shutdown(self) -> None:
        await self._registry.release_all()
        await self._datastore.dispose()
        LOGGER.info("Session coordinator stopped")

    # Projects ----------------------------------------------------------------

    async def create_project(self, user: Optional[UserRecord], name: str) -> ProjectRecord:
        user = _require_user(user)
        if not name or not name.strip():
            raise ValidationError("Project name is required")
        return await self._datastore.create_project(user.id, name.strip())

    async def list_projects(self, user: Optional[UserRecord]) -> List[ProjectSummary]:
        user = _require_user(user)
        return await self._datastore.list_projects(user.id)

    async def get_project(self, user: Optional[UserRecord], project_id: str) -> ProjectRecord:
        user = _require_user(user)
        return await self._owned_project(user, project_id)

    async def delete_project(self, user: Optional[UserRecord], project_id: str) -> None:
        user = _require_user(user)
        await self._owned_project(user, project_id)
        for session_id in await self._datastore.list_project_session_ids(project_id):
            await self._release_quietly(session_id)
        await self._datastore.delete_project(project_id)
        LOGGER.info("Deleted project %s", project_id)

    # Sessions ----------------------------------------------------------------

    async def create_session(
        self,
        user: Optional[UserRecord],
        project_id: str,
        start_url: Optional[str] = None,
    ) -> SessionRecord:
        user = _require_user(user)
        if not project_id:
            raise ValidationError("projectId is required")
        await self._owned_project(user, project_id)
        session = await self._datastore.create_session(
            project_id,
            start_url or self._default_start_url,
        )
        LOGGER.info("Created session %s in project %s", session.id, project_id)
        return session

    async def get_session(self, user: Optional[UserRecord], session_id: str) -> SessionRecord:
        user = _require_user(user)
        return await self._owned_session(user, session_id)

    async def list_sessions(
        self,
        user: Optional[UserRecord],
        project_id: Optional[str] = None,
    ) -> List[SessionRecord]:
        user = _require_user(user)
        if project_id is not None:
            await self._owned_project(user, project_id)
        return await self._datastore.list_sessions(user.id, project_id=project_id)

    async def list_actions(
        self,
        user: Optional[UserRecord],
        session_id: str,
    ) -> List[SessionActionRecord]:
        user = _require_user(user)
        await self._owned_session(user, session_id)
        return await self._datastore.list_actions(session_id)

    async def initialize_session(
        self,
        user: Optional[UserRecord],
        session_id: str,
        start_url: Optional[str] = None,
    ) -> SessionRecord:
        """Launch the engine, navigate, and move the session ``created -> running``.

        Any failure releases the handle and leaves the session ``failed``; the
        session record is never deleted here.
        """

        user = _require_user(user)
        session = await self._owned_session(user, session_id)
        ensure_initializable(session)
        async with self._claims:
            if session_id in self._initializing or self._registry.lookup(session_id):
                raise InvalidStateError("Session initialization already in progress")
            self._initializing.add(session_id)
        try:
            return await self._initialize(session, start_url)
        finally:
            async with self._claims:
                self._initializing.discard(session_id)

    async def dispatch_action(
        self,
        user: Optional[UserRecord],
        session_id: str,
        instruction: str,
    ) -> ActionOutcome:
        instruction = _require_instruction(instruction, "Action instruction is required")
        user = _require_user(user)
        session = await self._owned_session(user, session_id)
        return await self._dispatcher.dispatch(session, instruction)

    async def dispatch_extraction(
        self,
        user: Optional[UserRecord],
        session_id: str,
        instruction: str,
        schema: Optional[dict[str, Any]] = None,
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> ExtractionOutcome:
        instruction = _require_instruction(instruction, "Instruction is required")
        if schema is not None and not isinstance(schema, dict):
            raise ValidationError("schema must be a JSON object")
        if selector is not None and not selector.strip():
            raise ValidationError("selector must not be blank")
        user = _require_user(user)
        session = await self._owned_session(user, session_id)
        return await self._dispatcher.dispatch_extraction(
            session,
            instruction,
            schema,
            selector=selector,
            text_only=text_only,
        )

    async def terminate_session(self, user: Optional[UserRecord], session_id: str) -> SessionRecord:
        user = _require_user(user)
        session = await self._owned_session(user, session_id)
        ensure_terminable(session)
        await self._release_quietly(session_id)
        return await self._state.transition(
            session_id,
            SessionStatus.RUNNING,
            SessionStatus.COMPLETED,
            container_id=None,
        )

    async def delete_session(self, user: Optional[UserRecord], session_id: str) -> None:
        """Release any live handle, then delete the session and its actions.

        Deleting a session that no longer exists still clears a stray handle
        and is not an error.
        """

        user = _require_user(user)
        found = await self._datastore.get_session_with_owner(session_id)
        if found is None:
            await self._release_quietly(session_id)
            LOGGER.info("Delete requested for unknown session %s", session_id)
            return
        _, owner_id = found
        if owner_id != user.id:
            raise ForbiddenError("Forbidden")
        await self._release_quietly(session_id)
        await self._datastore.delete_session(session_id)
        LOGGER.info("Deleted session %s", session_id)

    # Internals ---------------------------------------------------------------

    async def _initialize(self, session: SessionRecord, start_url: Optional[str]) -> SessionRecord:
        url = start_url or session.start_url or self._default_start_url
        try:
            handle = await self._registry.acquire_or_create(session.id)
            LOGGER.info("Navigating session %s to %s", session.id, url)
            try:
                await asyncio.wait_for(handle.navigate(url), timeout=self._init_timeout)
            except asyncio.TimeoutError:
                raise EngineTimeoutError(
                    f"Initial navigation to {url} timed out for session {session.id}"
                ) from None
            except EngineActionError as exc:
                raise EngineInitError(
                    f"Initial navigation to {url} failed for session {session.id}: {exc}"
                ) from exc
            except SessionHubError:
                raise
            except Exception as exc:
                raise EngineInitError(f"Initial navigation to {url} failed: {exc}") from exc
            return await self._state.transition(
                session.id,
                SessionStatus.CREATED,
                SessionStatus.RUNNING,
                container_id=handle.resource_id,
            )
        except BaseException as exc:
            LOGGER.error("Initialization failed for session %s: %s", session.id, exc)
            await self._release_quietly(session.id)
            if isinstance(exc, Exception) and not isinstance(
                exc, (InvalidStateError, NotFoundError)
            ):
                await self._state.mark_failed(session.id, SessionStatus.CREATED)
            raise

    async def _release_quietly(self, session_id: str) -> None:
        try:
            await self._registry.release(session_id)
        except Exception:
            LOGGER.exception("Error cleaning up engine for session %s", session_id)

    async def _owned_project(self, user: UserRecord, project_id: str) -> ProjectRecord:
        project = await self._datastore.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if project.user_id != user.id:
            raise ForbiddenError("Forbidden - Project does not belong to user")
        return project

    async def _owned_session(self, user: UserRecord, session_id: str) -> SessionRecord:
        if not session_id:
            raise ValidationError("Session ID is required")
        found = await self._datastore.get_session_with_owner(session_id)
        if found is None:
            raise NotFoundError("Session not found")
        session, owner_id = found
        if owner_id != user.id:
            raise ForbiddenError("Forbidden")
        return session


def _require_user(user: Optional[UserRecord]) -> UserRecord:
    if user is None:
        raise UnauthorizedError("Unauthorized")
    return user


def _require_instruction(value: Optional[str], message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message)
    return value.strip()
