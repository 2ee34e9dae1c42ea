"""Playwright-powered engine with an LLM planner for natural-language instructions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from playwright.async_api import Error, async_playwright

from ..config import EngineConfig
from ..errors import EngineInitError
from ..llm.base import InstructionPlanner
from ..models import ActionOutcome, BrowserAction, BrowserActionType
from .base import (
    EngineActionError,
    EngineBackend,
    EngineHandle,
    EngineUnavailableError,
    PageContext,
    missing_required_keys,
)

LOGGER = logging.getLogger(__name__)

_ELEMENTS_SCRIPT = """
() => Array.from(document.querySelectorAll('a, button, input, select, textarea, [role=button]'))
  .filter((el) => el.offsetParent !== null)
  .slice(0, 200)
  .map((el) => {
    let selector = el.tagName.toLowerCase();
    if (el.id) selector += '#' + el.id;
    else if (el.getAttribute('name')) selector += '[name="' + el.getAttribute('name') + '"]';
    const label = (el.innerText || el.value || el.getAttribute('aria-label') ||
      el.getAttribute('placeholder') || '').trim().slice(0, 80);
    return selector + (label ? ' "' + label + '"' : '');
  })
"""


class PlaywrightEngineHandle(EngineHandle):
    """Engine handle backed by a local Chromium instance."""

    def __init__(
        self,
        session_id: str,
        config: EngineConfig,
        planner: InstructionPlanner,
    ) -> None:
        super().__init__(session_id)
        self._config = config
        self._planner = planner
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def start(self) -> None:
        LOGGER.debug("Starting Playwright browser for session %s", self.session_id)
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._config.headless,
            args=list(self._config.launch_args),
        )
        viewport = {"width": self._config.viewport_width, "height": self._config.viewport_height}
        self._context = await self._browser.new_context(viewport=viewport)
        self._page = await self._context.new_page()

    async def shutdown(self) -> None:
        LOGGER.debug("Stopping Playwright browser for session %s", self.session_id)
        try:
            if self._context:
                await self._context.close()
        finally:
            try:
                if self._browser:
                    await self._browser.close()
            finally:
                if self._playwright:
                    await self._playwright.stop()
                await self._planner.aclose()
        self._context = None
        self._browser = None
        self._playwright = None
        self._page = None

    async def navigate(self, url: str) -> None:
        page = self._require_page()
        try:
            await page.goto(url, wait_until="domcontentloaded")
        except Error as exc:
            raise EngineActionError(f"Navigation to {url} failed: {exc}") from exc

    async def run_instruction(self, instruction: str) -> ActionOutcome:
        context = await self._snapshot()
        plan = await self._planner.plan(instruction, context)
        if not plan.success:
            return ActionOutcome(
                success=False,
                message=plan.failure_reason or plan.message or "Instruction could not be planned",
            )
        if not plan.actions:
            return ActionOutcome(success=False, message="No browser actions matched the instruction")
        for action in plan.actions:
            try:
                await self._execute(action)
            except EngineUnavailableError:
                raise
            except EngineActionError as exc:
                return ActionOutcome(success=False, message=str(exc))
        return ActionOutcome(
            success=True,
            message=plan.message or f"Performed {len(plan.actions)} action(s)",
        )

    async def run_extraction(
        self,
        instruction: str,
        schema: dict[str, Any],
        *,
        selector: Optional[str] = None,
        text_only: bool = False,
    ) -> dict[str, Any]:
        context = await self._snapshot(selector, with_elements=not text_only)
        data = await self._planner.extract(instruction, schema, context)
        missing = missing_required_keys(schema, data)
        if missing:
            raise EngineActionError(f"Extraction result is missing fields: {', '.join(missing)}")
        return data

    def _require_page(self):  # type: ignore[no-untyped-def]
        if not self._page or self._page.is_closed():
            raise EngineUnavailableError("Browser page is not available")
        return self._page

    async def _snapshot(
        self,
        selector: Optional[str] = None,
        *,
        with_elements: bool = True,
    ) -> PageContext:
        page = self._require_page()
        try:
            title = await page.title()
            elements = await page.evaluate(_ELEMENTS_SCRIPT) if with_elements else []
        except Error as exc:
            raise EngineUnavailableError(f"Could not read page state: {exc}") from exc
        try:
            text = await page.inner_text(selector or "body")
        except Error as exc:
            if page.is_closed():
                raise EngineUnavailableError(f"Could not read page state: {exc}") from exc
            raise EngineActionError(f"Could not read {selector or 'body'}: {exc}") from exc
        return PageContext(url=page.url, title=title, text=text, elements=elements)

    async def _execute(self, action: BrowserAction) -> None:
        page = self._require_page()
        LOGGER.info("Executing browser action %s", action.type.value)
        try:
            if action.type == BrowserActionType.NAVIGATE:
                if not action.url:
                    raise EngineActionError("Navigate action requires a URL")
                await page.goto(action.url, wait_until="domcontentloaded")
            elif action.type == BrowserActionType.CLICK:
                if not action.selector:
                    raise EngineActionError("Click action requires a selector")
                await page.click(action.selector, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.TYPE:
                if not action.selector:
                    raise EngineActionError("Type action requires a selector")
                if action.text is None:
                    raise EngineActionError("Type action requires text")
                await page.fill(action.selector, action.text, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.PRESS:
                if not action.selector or not action.key:
                    raise EngineActionError("Press action requires a selector and a key")
                await page.press(action.selector, action.key, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.WAIT_FOR_SELECTOR:
                if not action.selector:
                    raise EngineActionError("Wait action requires a selector")
                await page.wait_for_selector(action.selector, timeout=_to_timeout(action.timeout))
            elif action.type == BrowserActionType.WAIT:
                await page.wait_for_timeout((action.seconds or 0.0) * 1000)
            elif action.type == BrowserActionType.SCROLL:
                await page.mouse.wheel(0, action.scroll_by or 0)
            else:
                raise EngineActionError(f"Unsupported action type: {action.type}")
        except Error as exc:
            if page.is_closed():
                raise EngineUnavailableError(str(exc)) from exc
            raise EngineActionError(str(exc)) from exc


class PlaywrightBackend(EngineBackend):
    """Launch one local browser per session."""

    name = "playwright"

    def __init__(
        self,
        config: EngineConfig,
        planner_factory: Callable[[EngineConfig, str], InstructionPlanner],
    ) -> None:
        super().__init__(config)
        self._planner_factory = planner_factory

    def create(self, session_id: str) -> PlaywrightEngineHandle:
        api_key = self._config.resolve_api_key()
        if not api_key:
            raise EngineInitError("API key for the language model is not configured.")
        planner = self._planner_factory(self._config, api_key)
        return PlaywrightEngineHandle(session_id, self._config, planner)


def _to_timeout(timeout: Optional[float]) -> Optional[float]:
    if timeout is None:
        return None
    return timeout * 1000
