"""Scripted planner for tests and offline use."""

from __future__ import annotations

from collections import deque
from typing import Any, Deque, Iterable, Optional

from ..engine.base import PageContext
from ..models import ActionPlan
from .base import InstructionPlanner


class ScriptedPlanner(InstructionPlanner):
    """Return plans and extraction results from predefined sequences."""

    def __init__(
        self,
        plans: Iterable[ActionPlan],
        extractions: Optional[Iterable[dict[str, Any]]] = None,
    ) -> None:
        self._plans: Deque[ActionPlan] = deque(plans)
        self._extractions: Deque[dict[str, Any]] = deque(extractions or [])
        self.instructions: list[str] = []
        self.pages: list[PageContext] = []

    async def plan(self, instruction: str, page: PageContext) -> ActionPlan:
        self.instructions.append(instruction)
        if not self._plans:
            raise RuntimeError("ScriptedPlanner ran out of plans")
        return self._plans.popleft()

    async def extract(
        self,
        instruction: str,
        schema: dict[str, Any],
        page: PageContext,
    ) -> dict[str, Any]:
        self.instructions.append(instruction)
        self.pages.append(page)
        if not self._extractions:
            raise RuntimeError("ScriptedPlanner ran out of extraction results")
        return self._extractions.popleft()
