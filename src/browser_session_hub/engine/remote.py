"""Engine handles hosted by a separate engine service over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import EngineConfig
from ..errors import EngineInitError
from ..models import ActionOutcome
from .base import EngineActionError, EngineBackend, EngineHandle, EngineUnavailableError

LOGGER = logging.getLogger(__name__)


class RemoteEngineHandle(EngineHandle):
    """Proxy for a handle living in the engine service's own registry."""

    def __init__(
        self,
        session_id: str,
        base_url: str,
        *,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(session_id)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )
        self._resource_id: Optional[str] = None

    @property
    def resource_id(self) -> Optional[str]:
        return self._resource_id

    async def start(self) -> None:
        response = await self._post(f"/sessions/{self.session_id}/initialize", {})
        if response.status_code >= 400:
            raise EngineInitError(
                f"Engine service failed to initialize session: {_detail(response)}"
            )
        self._resource_id = response.json().get("resource_id")

    async def navigate(self, url: str) -> None:
        response = await self._post(f"/sessions/{self.session_id}/navigate", {"url": url})
        self._raise_for_engine_error(response)

    async def run_instruction(self, instruction: str) -> ActionOutcome:
        response = await self._post(
            f"/sessions/{self.session_id}/actions",
            {"action": instruction},
        )
        self._raise_for_engine_error(response)
        return ActionOutcome.model_validate(response.json())

    async def run_extraction(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "instruction": instruction,
            "schema": schema,
            "useTextExtract": text_only,
        }
        if selector:
            payload["selector"] = selector
        response = await self._post(f"/sessions/{self.session_id}/extract", payload)
        self._raise_for_engine_error(response)
        return dict(response.json()["data"])

    async def shutdown(self) -> None:
        try:
            response = await self._client.delete(f"/sessions/{self.session_id}")
            if response.status_code >= 400 and response.status_code != 404:
                raise EngineActionError(f"Engine service refused shutdown: {_detail(response)}")
        except httpx.HTTPError as exc:
            raise EngineUnavailableError(f"Engine service unreachable: {exc}") from exc
        finally:
            await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise EngineUnavailableError(f"Engine service unreachable: {exc}") from exc

    @staticmethod
    def _raise_for_engine_error(response: httpx.Response) -> None:
        if response.status_code in (404, 409):
            raise EngineUnavailableError(
                f"Engine service has no active session: {_detail(response)}"
            )
        if response.status_code >= 400:
            raise EngineActionError(_detail(response))


class RemoteBackend(EngineBackend):
    """Delegate handle lifetimes to the engine service at ``service_url``."""

    name = "remote"

    def __init__(
        self,
        config: EngineConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(config)
        self._transport = transport

    def create(self, session_id: str) -> RemoteEngineHandle:
        if not self._config.service_url:
            raise EngineInitError("Engine service URL is not configured.")
        return RemoteEngineHandle(
            session_id,
            self._config.service_url,
            timeout=float(self._config.parameters.get("timeout", 120)),
            transport=self._transport,
        )


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"
