"""Planner interface for the natural-language action layer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..engine.base import PageContext
from ..models import ActionPlan


class InstructionPlanner(ABC):
    """Turn natural-language instructions into browser steps or structured data."""

    @abstractmethod
    async def plan(self, instruction: str, page: PageContext) -> ActionPlan:
        """Return the primitive browser actions that carry out ``instruction``."""

    @abstractmethod
    async def extract(
        self,
        instruction: str,
        schema: dict[str, Any],
        page: PageContext,
    ) -> dict[str, Any]:
        """Return data from ``page`` matching ``schema``."""

    async def aclose(self) -> None:
        return None
