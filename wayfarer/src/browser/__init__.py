"""Browser drivers."""
from wayfarer.src.browser.playwright_browser import PlaywrightBrowser

__all__ = ["PlaywrightBrowser"]
