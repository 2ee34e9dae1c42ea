"""Standalone HTTP service hosting engine handles for remote callers."""

from __future__ import annotations

import asyncio
import logging
import platform
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from .config import ServiceConfig
from .coordinator.registry import EngineRegistry
from .engine.base import (
    DEFAULT_EXTRACTION_SCHEMA,
    EngineActionError,
    EngineHandle,
    EngineUnavailableError,
)
from .errors import EngineInitError, EngineTimeoutError, InvalidStateError
from .factory import build_registry
from .models import ActionOutcome

LOGGER = logging.getLogger(__name__)


# Request models --------------------------------------------------------------


class InitializeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_url: Optional[str] = Field(default=None, alias="startUrl")


class NavigateRequest(BaseModel):
    url: str


class ActionRequest(BaseModel):
    action: str = ""


class ExtractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instruction: str = ""
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="schema")
    selector: Optional[str] = None
    use_text_extract: bool = Field(default=False, alias="useTextExtract")


# Application -----------------------------------------------------------------


def create_engine_service(
    config: Optional[ServiceConfig] = None,
    *,
    registry: Optional[EngineRegistry] = None,
) -> FastAPI:
    """Build the engine service. Its registry only outlives requests, not the process."""

    config = config or ServiceConfig()
    if registry is None:
        registry = build_registry(config)
    action_timeout = config.action_timeout
    node = platform.node() or "engine-service"

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await registry.release_all()

    app = FastAPI(title="Browser Session Hub Engine Service", lifespan=lifespan)
    app.state.registry = registry

    def _active(session_id: str) -> EngineHandle:
        handle = registry.lookup(session_id)
        if handle is None:
            raise HTTPException(
                status_code=404,
                detail=f"Session {session_id} not initialized or already closed.",
            )
        return handle

    @app.get("/health")
    def get_health() -> Dict[str, Any]:
        return {"status": "ok", "backend": registry.backend_name, "active_sessions": len(registry)}

    @app.post("/sessions/{session_id}/initialize")
    async def initialize_session(
        session_id: str,
        payload: Optional[InitializeRequest] = None,
    ) -> Dict[str, Any]:
        try:
            handle = await registry.create_new(session_id)
        except InvalidStateError as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc
        except (EngineInitError, EngineTimeoutError) as exc:
            raise HTTPException(status_code=500, detail=exc.message) from exc
        if payload and payload.start_url:
            try:
                await asyncio.wait_for(handle.navigate(payload.start_url), timeout=action_timeout)
            except (EngineActionError, asyncio.TimeoutError) as exc:
                await registry.release(session_id)
                raise HTTPException(
                    status_code=500,
                    detail=f"Initial navigation to {payload.start_url} failed: {exc}",
                ) from exc
        return {
            "success": True,
            "message": "Session initialized successfully.",
            "resource_id": f"{node}:{session_id}",
        }

    @app.post("/sessions/{session_id}/navigate")
    async def navigate(session_id: str, payload: NavigateRequest) -> Dict[str, Any]:
        handle = _active(session_id)
        try:
            await asyncio.wait_for(handle.navigate(payload.url), timeout=action_timeout)
        except EngineUnavailableError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (EngineActionError, asyncio.TimeoutError) as exc:
            raise HTTPException(status_code=500, detail=f"Navigation failed: {exc}") from exc
        return {"success": True, "message": f"Navigated to {payload.url}"}

    @app.post("/sessions/{session_id}/actions", response_model=ActionOutcome)
    async def perform_action(session_id: str, payload: ActionRequest) -> ActionOutcome:
        if not payload.action.strip():
            raise HTTPException(status_code=400, detail="action is required in the request body")
        handle = _active(session_id)
        try:
            return await asyncio.wait_for(
                handle.run_instruction(payload.action),
                timeout=action_timeout,
            )
        except EngineUnavailableError as exc:
            await registry.release(session_id)
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise HTTPException(status_code=504, detail="Action timed out") from exc
        except Exception as exc:
            LOGGER.warning("Action failed for session %s: %s", session_id, exc)
            return ActionOutcome(success=False, message=str(exc))

    @app.post("/sessions/{session_id}/extract")
    async def extract(session_id: str, payload: ExtractRequest) -> Dict[str, Any]:
        if not payload.instruction.strip():
            raise HTTPException(status_code=400, detail="instruction is required")
        handle = _active(session_id)
        schema = payload.output_schema or DEFAULT_EXTRACTION_SCHEMA
        try:
            data = await asyncio.wait_for(
                handle.run_extraction(
                    payload.instruction,
                    schema,
                    selector=payload.selector,
                    text_only=payload.use_text_extract,
                ),
                timeout=action_timeout,
            )
        except EngineUnavailableError as exc:
            await registry.release(session_id)
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise HTTPException(status_code=504, detail="Extraction timed out") from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=f"Extraction failed: {exc}") from exc
        return {"success": True, "data": data}

    @app.delete("/sessions/{session_id}")
    async def terminate_session(session_id: str) -> Dict[str, Any]:
        await registry.release(session_id)
        return {"success": True, "message": "Session terminated successfully."}

    return app
