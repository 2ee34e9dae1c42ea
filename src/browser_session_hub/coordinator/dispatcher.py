"""Run instructions against live engine handles and keep the audit trail."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from ..engine.base import DEFAULT_EXTRACTION_SCHEMA, EngineHandle, EngineUnavailableError
from ..errors import EngineNotActiveError, EngineTimeoutError
from ..models import (
    ActionOutcome,
    ActionStatus,
    ActionType,
    ExtractionOutcome,
    SessionRecord,
    SessionStatus,
)
from ..store.database import Datastore
from .lifecycle import SessionStateMachine, ensure_dispatchable
from .registry import EngineRegistry

LOGGER = logging.getLogger(__name__)


class ActionDispatcher:
    """Dispatch one instruction per call and record exactly one action row.

    Callers are expected to have validated the instruction and authorized
    access to ``session`` already.
    """

    def __init__(
        self,
        datastore: Datastore,
        registry: EngineRegistry,
        state_machine: SessionStateMachine,
        *,
        action_timeout: Optional[float] = None,
    ) -> None:
        self._datastore = datastore
        self._registry = registry
        self._state_machine = state_machine
        self._action_timeout = action_timeout

    async def dispatch(self, session: SessionRecord, instruction: str) -> ActionOutcome:
        handle = self._require_handle(session)
        LOGGER.info("Action requested for session %s: %r", session.id, instruction)
        timed_out = False
        unavailable = False
        try:
            outcome = await asyncio.wait_for(
                handle.run_instruction(instruction),
                timeout=self._action_timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            outcome = ActionOutcome(
                success=False,
                message=f"Action timed out after {self._action_timeout} seconds",
            )
        except EngineUnavailableError as exc:
            unavailable = True
            outcome = ActionOutcome(success=False, message=str(exc))
        except Exception as exc:
            LOGGER.warning("Action failed for session %s: %s", session.id, exc)
            outcome = ActionOutcome(success=False, message=str(exc) or type(exc).__name__)

        await self._record(session.id, ActionType.NLP, instruction, outcome)
        await self._after_dispatch(session, timed_out=timed_out, unavailable=unavailable)
        LOGGER.info("Action completed for session %s. Success: %s", session.id, outcome.success)
        return outcome

    async def dispatch_extraction(
        self,
        session: SessionRecord,
        instruction: str,
        schema: Optional[dict[str, Any]] = None,
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> ExtractionOutcome:
        handle = self._require_handle(session)
        shape = schema or DEFAULT_EXTRACTION_SCHEMA
        LOGGER.info("Extraction requested for session %s: %r", session.id, instruction)
        timed_out = False
        unavailable = False
        try:
            data = await asyncio.wait_for(
                handle.run_extraction(
                    instruction,
                    shape,
                    selector=selector,
                    text_only=text_only,
                ),
                timeout=self._action_timeout,
            )
            outcome = ExtractionOutcome(success=True, message="Extraction completed", data=data)
        except asyncio.TimeoutError:
            timed_out = True
            outcome = ExtractionOutcome(
                success=False,
                message=f"Extraction timed out after {self._action_timeout} seconds",
            )
        except EngineUnavailableError as exc:
            unavailable = True
            outcome = ExtractionOutcome(success=False, message=str(exc))
        except Exception as exc:
            LOGGER.warning("Extraction failed for session %s: %s", session.id, exc)
            outcome = ExtractionOutcome(success=False, message=str(exc) or type(exc).__name__)

        await self._record(session.id, ActionType.EXTRACT, instruction, outcome)
        await self._after_dispatch(session, timed_out=timed_out, unavailable=unavailable)
        return outcome

    def _require_handle(self, session: SessionRecord) -> EngineHandle:
        ensure_dispatchable(session)
        handle = self._registry.lookup(session.id)
        if handle is None:
            LOGGER.warning("No active engine found for running session %s", session.id)
            raise EngineNotActiveError(
                f"Session {session.id} has no active engine; initialize a new session "
                "or terminate this one."
            )
        return handle

    async def _record(
        self,
        session_id: str,
        action_type: ActionType,
        instruction: str,
        outcome: ActionOutcome,
    ) -> None:
        await self._datastore.record_action(
            session_id,
            action_type=action_type.value,
            details=instruction,
            status=ActionStatus.SUCCESS if outcome.success else ActionStatus.FAILED,
            message=outcome.message,
        )

    async def _after_dispatch(
        self,
        session: SessionRecord,
        *,
        timed_out: bool,
        unavailable: bool,
    ) -> None:
        if unavailable:
            LOGGER.error("Engine for session %s is gone; marking session failed", session.id)
            await self._registry.release(session.id)
            await self._state_machine.mark_failed(session.id, SessionStatus.RUNNING)
        if timed_out:
            raise EngineTimeoutError(
                f"Action on session {session.id} timed out after {self._action_timeout} seconds"
            )
