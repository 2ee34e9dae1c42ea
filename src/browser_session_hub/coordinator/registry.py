"""Process-local registry of live engine handles keyed by session id."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple

from ..engine.base import EngineBackend, EngineHandle
from ..errors import EngineInitError, EngineTimeoutError, InvalidStateError, SessionHubError

LOGGER = logging.getLogger(__name__)


class EngineRegistry:
    """Own the lifetime of every engine handle in this process.

    Creation and release for one session id are serialised by a per-session
    lock, so concurrent callers never construct two handles for the same id.
    Different session ids never wait on each other.
    """

    def __init__(
        self,
        backend: EngineBackend,
        *,
        launch_timeout: Optional[float] = None,
        shutdown_timeout: Optional[float] = None,
    ) -> None:
        self._backend = backend
        self._launch_timeout = launch_timeout
        self._shutdown_timeout = shutdown_timeout
        self._handles: Dict[str, EngineHandle] = {}
        self._session_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}
        self._guard = asyncio.Lock()

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def lookup(self, session_id: str) -> Optional[EngineHandle]:
        return self._handles.get(session_id)

    def active_sessions(self) -> List[str]:
        return list(self._handles)

    def __len__(self) -> int:
        return len(self._handles)

    async def acquire_or_create(self, session_id: str) -> EngineHandle:
        """Return the live handle for ``session_id``, launching one if needed."""

        async with self._session_lock(session_id):
            existing = self._handles.get(session_id)
            if existing is not None:
                return existing
            return await self._launch(session_id)

    async def create_new(self, session_id: str) -> EngineHandle:
        """Launch a handle for ``session_id``; fail if one is already registered."""

        async with self._session_lock(session_id):
            if session_id in self._handles:
                raise InvalidStateError(f"Session {session_id} is already active")
            return await self._launch(session_id)

    async def release(self, session_id: str) -> None:
        """Shut down and forget the handle. Shutdown failures are only logged."""

        async with self._session_lock(session_id):
            handle = self._handles.pop(session_id, None)
            if handle is None:
                LOGGER.debug("No engine registered for session %s", session_id)
            else:
                await self._shutdown(handle)
                LOGGER.info("Engine released for session %s", session_id)

    async def release_all(self) -> None:
        for session_id in self.active_sessions():
            await self.release(session_id)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        async with self._guard:
            lock, users = self._session_locks.get(session_id, (asyncio.Lock(), 0))
            self._session_locks[session_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            async with self._guard:
                lock, users = self._session_locks[session_id]
                if users <= 1:
                    del self._session_locks[session_id]
                else:
                    self._session_locks[session_id] = (lock, users - 1)

    async def _launch(self, session_id: str) -> EngineHandle:
        # Caller holds the session lock.
        LOGGER.info("Launching %s engine for session %s", self._backend.name, session_id)
        try:
            handle = self._backend.create(session_id)
        except SessionHubError:
            raise
        except Exception as exc:
            LOGGER.error("Engine creation failed for session %s: %s", session_id, exc)
            raise EngineInitError(f"Engine could not be created: {exc}") from exc
        try:
            await asyncio.wait_for(handle.start(), timeout=self._launch_timeout)
        except asyncio.TimeoutError:
            await self._shutdown(handle)
            raise EngineTimeoutError(
                f"Engine launch for session {session_id} timed out"
            ) from None
        except SessionHubError:
            await self._shutdown(handle)
            raise
        except Exception as exc:
            LOGGER.error("Engine launch failed for session %s: %s", session_id, exc)
            await self._shutdown(handle)
            raise EngineInitError(f"Engine failed to start: {exc}") from exc
        self._handles[session_id] = handle
        LOGGER.info("Engine ready for session %s", session_id)
        return handle

    async def _shutdown(self, handle: EngineHandle) -> None:
        try:
            await asyncio.wait_for(handle.shutdown(), timeout=self._shutdown_timeout)
        except Exception:
            LOGGER.exception("Error closing engine for session %s", handle.session_id)
