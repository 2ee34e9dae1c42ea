"""Persisted session state machine."""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from ..errors import InvalidStateError, NotFoundError
from ..models import SessionRecord, SessionStatus
from ..store.database import Datastore

LOGGER = logging.getLogger(__name__)

TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


def can_transition(current: SessionStatus, new: SessionStatus) -> bool:
    return new in TRANSITIONS[current]


def is_terminal(status: SessionStatus) -> bool:
    return not TRANSITIONS[status]


def ensure_initializable(session: SessionRecord) -> None:
    if session.status != SessionStatus.CREATED:
        raise InvalidStateError(
            f"Session already initialized or in invalid state: {session.status.value}"
        )


def ensure_dispatchable(session: SessionRecord) -> None:
    if is_terminal(session.status):
        raise InvalidStateError(
            f"Session has ended (status: {session.status.value}). Cannot perform actions."
        )
    if session.status != SessionStatus.RUNNING:
        raise InvalidStateError(
            f"Session is not running (status: {session.status.value}). "
            "Cannot perform actions."
        )


def ensure_terminable(session: SessionRecord) -> None:
    if is_terminal(session.status):
        raise InvalidStateError(f"Session has already ended (status: {session.status.value})")
    if not can_transition(session.status, SessionStatus.COMPLETED):
        raise InvalidStateError(
            f"Only running sessions can be terminated (status: {session.status.value})"
        )


class SessionStateMachine:
    """Validate and persist status transitions.

    Each transition is a compare-and-set on the stored status, so two writers
    racing on the same session cannot both move it out of one state.
    """

    def __init__(self, datastore: Datastore) -> None:
        self._datastore = datastore

    async def transition(
        self,
        session_id: str,
        current: SessionStatus,
        new: SessionStatus,
        *,
        container_id: object = ...,
    ) -> SessionRecord:
        if not can_transition(current, new):
            raise InvalidStateError(
                f"Cannot move session from {current.value} to {new.value}"
            )
        kwargs = {} if container_id is ... else {"container_id": container_id}
        changed = await self._datastore.compare_and_set_status(
            session_id,
            expected=current,
            new=new,
            **kwargs,
        )
        if not changed:
            stored = await self._datastore.get_session(session_id)
            if stored is None:
                raise NotFoundError("Session not found")
            raise InvalidStateError(
                f"Session moved to {stored.status.value} while changing to {new.value}"
            )
        LOGGER.info("Session %s: %s -> %s", session_id, current.value, new.value)
        updated = await self._datastore.get_session(session_id)
        if updated is None:
            raise NotFoundError("Session not found")
        return updated

    async def mark_failed(
        self,
        session_id: str,
        current: SessionStatus,
    ) -> Optional[SessionRecord]:
        """Best-effort move to ``failed``; never raises."""

        try:
            return await self.transition(session_id, current, SessionStatus.FAILED)
        except Exception:
            LOGGER.exception("Failed to update session status for %s", session_id)
            return None
