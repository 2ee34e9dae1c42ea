"""Resolve the current user from the identity established upstream."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from .config import AuthConfig
from .models import UserRecord
from .store.database import Datastore

LOGGER = logging.getLogger(__name__)


class HeaderAuthProvider:
    """Read the authenticated user id from request headers.

    The service sits behind an identity-aware proxy that authenticates the
    caller and forwards the user id (and optionally email). A local user
    record is created on first sight.
    """

    def __init__(self, datastore: Datastore, config: Optional[AuthConfig] = None) -> None:
        self._datastore = datastore
        self._config = config or AuthConfig()

    async def current_user(self, headers: Mapping[str, str]) -> Optional[UserRecord]:
        user_id = (headers.get(self._config.user_header) or "").strip()
        if not user_id:
            return None
        email = (headers.get(self._config.email_header) or "").strip() or None
        return await self._datastore.get_or_create_user(user_id, email)
