"""Automation engine abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import EngineConfig
from ..models import ActionOutcome

DEFAULT_EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "data": {"type": "string", "description": "The extracted data"},
    },
    "required": ["data"],
}


@dataclass
class PageContext:
    """Snapshot of the page handed to the planner."""

    url: Optional[str] = None
    title: Optional[str] = None
    text: str = ""
    elements: list[str] = field(default_factory=list)


class EngineActionError(RuntimeError):
    """Raised when an instruction cannot be carried out by the engine."""


class EngineUnavailableError(EngineActionError):
    """Raised when the engine behind a handle is gone (browser closed, service lost it)."""


class EngineHandle(ABC):
    """Live connection to one running automation engine instance."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id

    @property
    def resource_id(self) -> Optional[str]:
        """Reference to an external backing resource, if any."""

        return None

    @abstractmethod
    async def start(self) -> None:
        """Launch the engine. Failures leave the handle safe to shut down."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Load ``url`` in the engine's page."""

    @abstractmethod
    async def run_instruction(self, instruction: str) -> ActionOutcome:
        """Carry out a natural-language instruction.

        An instruction the engine attempted but could not complete is reported
        as ``ActionOutcome(success=False)``; exceptions are reserved for engine
        faults.
        """

    @abstractmethod
    async def run_extraction(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> dict[str, Any]:
        """Return structured data shaped by ``schema``.

        ``selector`` limits the page content considered to one element.
        ``text_only`` hands the model the visible text without the element list.
        """

    @abstractmethod
    async def shutdown(self) -> None:
        """Release the engine. Must be safe to call on a partially started handle."""


class EngineBackend(ABC):
    """Factory for engine handles of one kind."""

    name: str = "base"

    def __init__(self, config: EngineConfig) -> None:
        self._config = config

    @property
    def config(self) -> EngineConfig:
        return self._config

    @abstractmethod
    def create(self, session_id: str) -> EngineHandle:
        """Construct an unstarted handle, validating configuration first."""


def missing_required_keys(schema: dict[str, Any], data: dict[str, Any]) -> list[str]:
    required = schema.get("required") or []
    return [key for key in required if key not in data]
