"""Planner backed by an OpenAI-compatible chat completion endpoint."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import EngineConfig
from ..engine.base import PageContext
from ..models import ActionPlan
from .base import InstructionPlanner
from .json_parser import extract_json_object, parse_plan
from .prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

_DEFAULT_SYSTEM_PROMPT = (
    "You are an automation agent that controls a web browser. "
    "Always respond with a strict JSON object."
)


class OpenAIChatPlanner(InstructionPlanner):
    """Call an OpenAI-compatible chat completion API to plan and extract."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ) -> None:
        self._config = config
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        self._client = httpx.AsyncClient(
            base_url=config.base_url or "https://api.openai.com/v1",
            timeout=config.parameters.get("timeout", 60),
            headers=headers,
            transport=transport,
        )
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._system_prompt = config.parameters.get("system_prompt", _DEFAULT_SYSTEM_PROMPT)
        self._temperature = config.parameters.get("temperature", 0.0)

    async def plan(self, instruction: str, page: PageContext) -> ActionPlan:
        prompt = self._prompt_builder.build_plan_prompt(instruction, page)
        content = await self._complete(prompt)
        return parse_plan(content)

    async def extract(
        self,
        instruction: str,
        schema: dict[str, Any],
        page: PageContext,
    ) -> dict[str, Any]:
        prompt = self._prompt_builder.build_extract_prompt(instruction, schema, page)
        content = await self._complete(prompt)
        return extract_json_object(content)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _complete(self, prompt: str) -> str:
        payload = {
            "model": self._config.model_name,
            "messages": [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
        }
        LOGGER.debug("Requesting completion from %s", self._config.model_name)
        response = await self._client.post("/chat/completions", json=payload)
        response.raise_for_status()
        data = response.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unexpected response format: {data}") from exc
