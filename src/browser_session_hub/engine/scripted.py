"""Offline engine that never launches a browser."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Optional

from ..models import ActionOutcome
from .base import DEFAULT_EXTRACTION_SCHEMA, EngineActionError, EngineBackend, EngineHandle

LOGGER = logging.getLogger(__name__)


class ScriptedEngineHandle(EngineHandle):
    """Replay configured outcomes; useful for local development and tests.

    ``parameters.outcomes`` is consumed in order for instructions and
    ``parameters.extractions`` for extractions. When a queue is empty the
    handle reports success and echoes the instruction.
    """

    def __init__(self, session_id: str, parameters: dict[str, Any]) -> None:
        super().__init__(session_id)
        self._outcomes: Deque[dict[str, Any]] = deque(parameters.get("outcomes", []))
        self._extractions: Deque[dict[str, Any]] = deque(parameters.get("extractions", []))
        self._fail_navigation = bool(parameters.get("fail_navigation", False))
        self.started = False
        self.current_url: Optional[str] = None
        self.instructions: list[str] = []
        self.extraction_scopes: list[tuple[Optional[str], bool]] = []

    async def start(self) -> None:
        self.started = True

    async def navigate(self, url: str) -> None:
        if self._fail_navigation:
            raise EngineActionError(f"Navigation to {url} failed")
        self.current_url = url

    async def run_instruction(self, instruction: str) -> ActionOutcome:
        self.instructions.append(instruction)
        if self._outcomes:
            return ActionOutcome.model_validate(self._outcomes.popleft())
        return ActionOutcome(success=True, message=f"Performed: {instruction}")

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
        if self._extractions:
            return dict(self._extractions.popleft())
        if schema == DEFAULT_EXTRACTION_SCHEMA:
            where = self.current_url or "about:blank"
            if selector:
                where = f"{where} {selector}"
            return {"data": f"{instruction} ({where})"}
        return {}

    async def shutdown(self) -> None:
        self.started = False


class ScriptedBackend(EngineBackend):
    name = "scripted"

    def create(self, session_id: str) -> ScriptedEngineHandle:
        LOGGER.debug("Creating scripted engine handle for session %s", session_id)
        return ScriptedEngineHandle(session_id, self._config.parameters)
