import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from wayfarer.src.browser.playwright_browser import PlaywrightBrowser


class _Locator:
    def __init__(self, page, selector):
        self.page = page
        self.selector = selector

    @property
    def first(self):
        return self

    async def click(self, timeout=None):
        if self.selector in self.page.broken:
            raise PlaywrightError("element is not visible")
        self.page.calls.append(("click", self.selector, None))

    async def fill(self, value, timeout=None):
        self.page.calls.append(("fill", self.selector, value))


class _Page:
    def __init__(self, elements):
        self.url = "https://example.com/"
        self.elements = elements
        self.calls = []
        self.broken = set()

    async def evaluate(self, script):
        return self.elements

    def locator(self, selector):
        return _Locator(self, selector)

    async def wait_for_load_state(self, state, timeout=None):
        return None


class _Planner:
    def __init__(self, plan):
        self.plan = plan
        self.seen = []

    async def plan_action(self, instruction, url, elements):
        self.seen.append((instruction, url, len(elements)))
        return self.plan


ELEMENTS = [
    {"tag": "a", "text": "Pricing", "selector": "a:has-text(\"Pricing\")", "attributes": {}},
    {"tag": "input", "text": "", "selector": "input[name=\"q\"]", "attributes": {"type": "search"}},
]


def _browser(plan, elements=ELEMENTS):
    browser = PlaywrightBrowser(planner=_Planner(plan))
    browser._page = _Page(elements)
    return browser


def test_act_runs_planned_click():
    browser = _browser({"index": 0, "action": "click"})

    outcome = asyncio.run(browser.act("Click Pricing link"))

    assert outcome.success is True
    assert browser._page.calls == [("click", 'a:has-text("Pricing")', None)]
    assert browser.planner.seen == [("Click Pricing link", "https://example.com/", 2)]


def test_act_fills_value():
    browser = _browser({"index": "1", "action": "FILL", "value": "shoes"})

    outcome = asyncio.run(browser.act("Search for shoes"))

    assert outcome.success is True
    assert browser._page.calls == [("fill", 'input[name="q"]', "shoes")]


def test_act_reports_missing_element_and_bad_plans():
    assert asyncio.run(_browser({"index": -1, "reasoning": "no pricing link"}).act("x")).success is False
    assert asyncio.run(_browser({"index": 0, "action": "drag"}).act("x")).error == "unsupported action drag"
    assert asyncio.run(_browser(None).act("x")).error == "no action plan"


def test_act_turns_playwright_errors_into_failed_outcome():
    browser = _browser({"index": 0, "action": "click"})
    browser._page.broken.add('a:has-text("Pricing")')

    outcome = asyncio.run(browser.act("Click Pricing link"))

    assert outcome.success is False
    assert "not visible" in outcome.error


def test_page_requires_start():
    browser = PlaywrightBrowser(planner=_Planner(None))

    with pytest.raises(RuntimeError, match="not started"):
        browser.page
