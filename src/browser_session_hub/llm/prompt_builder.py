"""Prompt construction for instruction planning and data extraction."""

from __future__ import annotations

import json
from textwrap import dedent
from typing import Any

from ..engine.base import PageContext
from ..models import BrowserAction, BrowserActionType

MAX_PAGE_TEXT = 6000
MAX_ELEMENTS = 80


class PromptBuilder:
    """Build prompts for the LLM based on the current page."""

    def build_plan_prompt(self, instruction: str, page: PageContext) -> str:
        prompt = dedent(
            f"""
            You control a web browser. Carry out this instruction on the current page:
            "{instruction}"

            {self._page_section(page)}

            Respond with a JSON object containing the keys:
            success, message, actions, failure_reason.
            The actions field must be a list where each item has keys matching this schema:
            {self._actions_schema()}

            Use CSS selectors taken from the interactive elements listed above.
            If the instruction cannot be carried out on this page, set success to false
            and explain why in failure_reason. Provide only valid JSON with double quotes.
            """
        ).strip()
        return prompt

    def build_extract_prompt(
        self,
        instruction: str,
        schema: dict[str, Any],
        page: PageContext,
    ) -> str:
        prompt = dedent(
            f"""
            Extract information from the current web page.
            Instruction: "{instruction}"

            {self._page_section(page)}

            Respond with a single JSON object that validates against this JSON schema:
            {json.dumps(schema)}

            Provide only valid JSON with double quotes.
            """
        ).strip()
        return prompt

    @staticmethod
    def _page_section(page: PageContext) -> str:
        elements = "\n".join(f"- {item}" for item in page.elements[:MAX_ELEMENTS])
        if not elements:
            elements = "(none found)"
        text = page.text[:MAX_PAGE_TEXT] or "(empty)"
        lines = [
            f"Current URL: {page.url or 'unknown'}",
            f"Page title: {page.title or 'unknown'}",
            "Interactive elements:",
            elements,
            "Visible text:",
            text,
        ]
        return "\n".join(lines)

    @staticmethod
    def _actions_schema() -> str:
        examples = [
            BrowserAction(type=BrowserActionType.NAVIGATE, url="https://example.com"),
            BrowserAction(type=BrowserActionType.CLICK, selector="#submit"),
            BrowserAction(
                type=BrowserActionType.TYPE,
                selector="input[name=email]",
                text="user@example.com",
            ),
            BrowserAction(type=BrowserActionType.PRESS, selector="input[name=q]", key="Enter"),
            BrowserAction(type=BrowserActionType.WAIT_FOR_SELECTOR, selector="#result", timeout=10),
            BrowserAction(type=BrowserActionType.WAIT, seconds=2),
            BrowserAction(type=BrowserActionType.SCROLL, scroll_by=600),
        ]
        return "\n".join(action.model_dump_json(exclude_none=True) for action in examples)
