"""FastAPI application exposing projects, sessions and session actions."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..auth import HeaderAuthProvider
from ..config import ServiceConfig
from ..coordinator.service import SessionCoordinator
from ..errors import SessionHubError
from ..factory import build_coordinator
from ..models import (
    ActionOutcome,
    ExtractionOutcome,
    ProjectRecord,
    ProjectSummary,
    SessionActionRecord,
    SessionRecord,
    UserRecord,
)

LOGGER = logging.getLogger(__name__)


# Request models --------------------------------------------------------------


class ProjectCreateRequest(BaseModel):
    name: str = ""


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(default="", alias="projectId")
    start_url: Optional[str] = Field(default=None, alias="startUrl")


class SessionInitializeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_url: Optional[str] = Field(default=None, alias="startUrl")


class ActionRequest(BaseModel):
    action: str = ""


class ExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instruction: str = ""
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    selector: Optional[str] = None
    use_text_extract: bool = Field(default=False, alias="useTextExtract")


# Dependencies ----------------------------------------------------------------


def get_coordinator(request: Request) -> SessionCoordinator:
    return request.app.state.coordinator


async def get_current_user(request: Request) -> Optional[UserRecord]:
    provider: HeaderAuthProvider = request.app.state.auth
    return await provider.current_user(request.headers)


async def _handle_hub_error(request: Request, exc: SessionHubError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.kind, "detail": exc.public_message()},
    )


# Routes ----------------------------------------------------------------------


def _build_router() -> APIRouter:
    router = APIRouter(prefix="/api/v1")

    @router.get("/projects", response_model=List[ProjectSummary])
    async def list_projects(
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> List[ProjectSummary]:
        return await coordinator.list_projects(user)

    @router.post("/projects", response_model=ProjectRecord, status_code=201)
    async def create_project(
        payload: ProjectCreateRequest,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> ProjectRecord:
        return await coordinator.create_project(user, payload.name)

    @router.get("/projects/{project_id}", response_model=ProjectRecord)
    async def get_project(
        project_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> ProjectRecord:
        return await coordinator.get_project(user, project_id)

    @router.delete("/projects/{project_id}", status_code=204)
    async def delete_project(
        project_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> Response:
        await coordinator.delete_project(user, project_id)
        return Response(status_code=204)

    @router.get("/sessions", response_model=List[SessionRecord])
    async def list_sessions(
        project_id: Optional[str] = None,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> List[SessionRecord]:
        return await coordinator.list_sessions(user, project_id)

    @router.post("/sessions", response_model=SessionRecord, status_code=201)
    async def create_session(
        payload: SessionCreateRequest,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> SessionRecord:
        return await coordinator.create_session(user, payload.project_id, payload.start_url)

    @router.get("/sessions/{session_id}", response_model=SessionRecord)
    async def get_session(
        session_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> SessionRecord:
        return await coordinator.get_session(user, session_id)

    @router.delete("/sessions/{session_id}", status_code=204)
    async def delete_session(
        session_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> Response:
        await coordinator.delete_session(user, session_id)
        return Response(status_code=204)

    @router.post("/sessions/{session_id}/initialize", response_model=SessionRecord)
    async def initialize_session(
        session_id: str,
        payload: Optional[SessionInitializeRequest] = None,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> SessionRecord:
        start_url = payload.start_url if payload else None
        return await coordinator.initialize_session(user, session_id, start_url)

    @router.post("/sessions/{session_id}/actions", response_model=ActionOutcome)
    async def perform_action(
        session_id: str,
        payload: ActionRequest,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> ActionOutcome:
        return await coordinator.dispatch_action(user, session_id, payload.action)

    @router.get("/sessions/{session_id}/actions", response_model=List[SessionActionRecord])
    async def list_actions(
        session_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> List[SessionActionRecord]:
        return await coordinator.list_actions(user, session_id)

    @router.post("/sessions/{session_id}/extract", response_model=ExtractionOutcome)
    async def extract(
        session_id: str,
        payload: ExtractRequest,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> ExtractionOutcome:
        return await coordinator.dispatch_extraction(
            user,
            session_id,
            payload.instruction,
            payload.output_schema,
            selector=payload.selector,
            text_only=payload.use_text_extract,
        )

    @router.post("/sessions/{session_id}/terminate", response_model=SessionRecord)
    async def terminate_session(
        session_id: str,
        user: Optional[UserRecord] = Depends(get_current_user),
        coordinator: SessionCoordinator = Depends(get_coordinator),
    ) -> SessionRecord:
        return await coordinator.terminate_session(user, session_id)

    return router


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    coordinator: Optional[SessionCoordinator] = None,
) -> FastAPI:
    """Build the API. The coordinator is created once and lives for the app's lifespan."""

    config = config or ServiceConfig()
    if coordinator is None:
        coordinator = build_coordinator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await coordinator.startup()
        try:
            yield
        finally:
            await coordinator.shutdown()

    app = FastAPI(title="Browser Session Hub", lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.auth = HeaderAuthProvider(coordinator.datastore, config.auth)
    app.add_exception_handler(SessionHubError, _handle_hub_error)  # type: ignore[arg-type]
    app.include_router(_build_router())

    @app.get("/health")
    def get_health() -> Dict[str, Any]:
        registry = coordinator.registry
        return {
            "status": "ok",
            "backend": registry.backend_name,
            "active_sessions": len(registry),
        }

    return app
