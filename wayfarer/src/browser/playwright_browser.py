"""
Playwright browser driver.

Free-text instructions are executed by extracting the page's interactive
elements and letting a planner pick ``{index, action, value}`` among them.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from wayfarer.src.exploration.models import ActOutcome
from wayfarer.src.utils.config import CONFIG, BrowserConfig

logger = logging.getLogger(__name__)

ELEMENTS_SCRIPT = """
() => {
    const elements = [];

    function isVisible(el) {
        const style = window.getComputedStyle(el);
        // SPA 애니메이션 중인 요소도 허용
        return style.display !== 'none' &&
            style.visibility !== 'hidden' &&
            parseFloat(style.opacity) > 0.1 &&
            el.offsetWidth > 0 &&
            el.offsetHeight > 0;
    }

    function getUniqueSelector(el) {
        if (el.id) {
            if (/[:\\.\\[\\]\\(\\)]/.test(el.id)) {
                return `[id="${el.id}"]`;
            }
            return `#${el.id}`;
        }
        if (el.name) return `${el.tagName.toLowerCase()}[name="${el.name}"]`;
        if (el.dataset && el.dataset.testid) return `[data-testid="${el.dataset.testid}"]`;
        if (el.getAttribute('aria-label')) {
            return `${el.tagName.toLowerCase()}[aria-label="${el.getAttribute('aria-label')}"]`;
        }
        if (el.tagName === 'INPUT' && el.placeholder) {
            return `${el.tagName.toLowerCase()}[placeholder="${el.placeholder}"]`;
        }
        const text = el.innerText?.trim();
        if (text && text.length < 50 && !text.includes('"')) {
            return `${el.tagName.toLowerCase()}:has-text("${text}")`;
        }
        const parent = el.parentElement;
        if (parent) {
            const index = Array.from(parent.children).indexOf(el) + 1;
            return `${el.tagName.toLowerCase()}:nth-child(${index})`;
        }
        return el.tagName.toLowerCase();
    }

    document.querySelectorAll('input, textarea, select').forEach(el => {
        if (!isVisible(el)) return;
        elements.push({
            tag: el.tagName.toLowerCase(),
            selector: getUniqueSelector(el),
            text: '',
            attributes: {
                type: el.type || 'text',
                name: el.name || null,
                placeholder: el.placeholder || '',
                'aria-label': el.getAttribute('aria-label') || ''
            },
            element_type: 'input'
        });
    });

    document.querySelectorAll(
        'button,[role="button"],[role="tab"],[role="menuitem"],[role="option"],[role="switch"],[role="link"],[type="submit"],input[type="button"]'
    ).forEach(el => {
        if (!isVisible(el)) return;
        let text = el.innerText?.trim() || el.value || '';
        if (!text) {
            text = el.getAttribute('aria-label') || el.getAttribute('title') || '';
        }
        elements.push({
            tag: el.tagName.toLowerCase(),
            selector: getUniqueSelector(el),
            text: text,
            attributes: {
                'aria-label': el.getAttribute('aria-label') || '',
                role: el.getAttribute('role') || ''
            },
            element_type: 'button'
        });
    });

    document.querySelectorAll('a[href]').forEach(el => {
        if (!isVisible(el)) return;
        const text = el.innerText?.trim() || el.getAttribute('aria-label') || '';
        if (!text) return;
        elements.push({
            tag: 'a',
            selector: getUniqueSelector(el),
            text: text,
            attributes: { href: el.href, target: el.target || '' },
            element_type: 'link'
        });
    });

    return elements;
}
"""

_SUPPORTED_ACTIONS = {"click", "fill", "select", "press", "hover"}


class ActionPlanner(Protocol):
    async def plan_action(self, instruction: str, url: str, elements: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]: ...


class PlaywrightBrowser:
    """BrowserDriver on a single Chromium page."""

    def __init__(self, planner: ActionPlanner, config: Optional[BrowserConfig] = None):
        self.planner = planner
        self.config = config or CONFIG.browser
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None

    async def start(self) -> "PlaywrightBrowser":
        if self._page is not None:
            return self
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
        self._page = await self._browser.new_page(
            viewport={"width": self.config.viewport_width, "height": self.config.viewport_height}
        )
        self._page.set_default_navigation_timeout(self.config.navigation_timeout_ms)
        logger.info("🌐 browser started (headless=%s)", self.config.headless)
        return self

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._browser = None
        self._playwright = None
        self._page = None

    async def __aenter__(self) -> "PlaywrightBrowser":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("browser not started")
        return self._page

    async def current_url(self) -> str:
        return self.page.url

    async def goto(self, url: str) -> None:
        await self.page.goto(url, wait_until="domcontentloaded")
        await self._settle()

    async def screenshot(self, full_page: bool = False) -> bytes:
        return await self.page.screenshot(full_page=full_page, type="png")

    async def interactive_elements(self) -> List[Dict[str, Any]]:
        """현재 페이지에서 상호작용 가능한 요소를 추출합니다."""
        try:
            elements = await self.page.evaluate(ELEMENTS_SCRIPT)
        except PlaywrightError as exc:
            logger.warning("⚠️ element extraction failed on %s: %s", self.page.url, exc)
            return []
        return elements if isinstance(elements, list) else []

    async def act(self, instruction: str) -> ActOutcome:
        elements = await self.interactive_elements()
        plan = await self.planner.plan_action(instruction, self.page.url, elements)
        if not plan:
            return ActOutcome(success=False, error="no action plan")

        try:
            index = int(plan.get("index", -1))
        except (TypeError, ValueError):
            index = -1
        action = str(plan.get("action") or "click").lower()
        value = plan.get("value")
        if index < 0 or index >= len(elements):
            return ActOutcome(success=False, error=f"no matching element ({plan.get('reasoning', '')})", detail=plan)
        if action not in _SUPPORTED_ACTIONS:
            return ActOutcome(success=False, error=f"unsupported action {action}", detail=plan)

        selector = elements[index].get("selector") or ""
        locator = self.page.locator(selector).first
        try:
            if action == "click":
                await locator.click(timeout=5000)
            elif action == "fill":
                await locator.fill(str(value or ""), timeout=5000)
            elif action == "select":
                await locator.select_option(str(value or ""), timeout=5000)
            elif action == "press":
                await locator.press(str(value or "Enter"), timeout=5000)
            elif action == "hover":
                await locator.hover(timeout=5000)
        except PlaywrightError as exc:
            logger.warning("⚠️ %s on %s failed: %s", action, selector, exc)
            return ActOutcome(success=False, error=str(exc), detail={"selector": selector, "action": action})

        await self._settle()
        return ActOutcome(success=True, detail={"selector": selector, "action": action, "value": value})

    async def _settle(self) -> None:
        try:
            await self.page.wait_for_load_state("networkidle", timeout=2000)
        except PlaywrightTimeoutError:
            await self.page.wait_for_timeout(500)
