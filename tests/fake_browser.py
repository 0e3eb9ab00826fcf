"""In-memory stand-in for the slice of the Playwright async page API Verax uses.

Elements are registered by exact selector string. Click handlers mutate the
page (HTML, URL) and may fire requests or console messages, which flow
through the same listeners and route guard a real page would call.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from verax.observe.engine import observe_page

ClickHandler = Callable[["FakePage"], Awaitable[None] | None]


@dataclass
class FakeElement:
    count: int = 1
    visible: bool = True
    enabled: bool = True
    attributes: dict[str, str] = field(default_factory=dict)
    on_click: ClickHandler | None = None
    on_press: ClickHandler | None = None
    click_timeout: bool = False
    checked: bool = False
    value: str = ""


@dataclass
class FakeRequest:
    url: str
    method: str = "GET"


@dataclass
class FakeResponse:
    request: FakeRequest
    status: int = 200


@dataclass
class FakeConsoleMessage:
    type: str
    text: str


class FakeRoute:
    def __init__(self, request: FakeRequest) -> None:
        self.request = request
        self.aborted: str | None = None
        self.continued = False

    async def abort(self, error_code: str = "failed") -> None:
        self.aborted = error_code

    async def continue_(self) -> None:
        self.continued = True


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def _element(self) -> FakeElement | None:
        return self.page.elements.get(self.selector)

    def _require(self) -> FakeElement:
        element = self._element
        if element is None or element.count == 0:
            raise PlaywrightTimeoutError(f"waiting for locator('{self.selector}')")
        return element

    @property
    def first(self) -> FakeLocator:
        return self

    async def count(self) -> int:
        element = self._element
        return element.count if element is not None else 0

    async def all(self) -> list[FakeLocator]:
        return [self] * await self.count()

    async def is_visible(self) -> bool:
        element = self._element
        return element is not None and element.visible

    async def is_enabled(self) -> bool:
        element = self._element
        return element is not None and element.enabled

    async def click(self, timeout: float | None = None, no_wait_after: bool = False) -> None:
        element = self._require()
        self.page.clicks.append(self.selector)
        if element.click_timeout:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded clicking {self.selector}")
        if element.on_click is not None:
            result = element.on_click(self.page)
            if inspect.isawaitable(result):
                await result

    async def press(self, key: str) -> None:
        element = self._require()
        self.page.presses.append((self.selector, key))
        if element.on_press is not None:
            result = element.on_press(self.page)
            if inspect.isawaitable(result):
                await result

    async def get_attribute(self, name: str) -> str | None:
        return self._require().attributes.get(name)

    async def fill(self, value: str) -> None:
        self._require().value = value
        self.page.fills.append((self.selector, value))

    async def is_checked(self) -> bool:
        return self._require().checked

    async def check(self) -> None:
        self._require().checked = True


class FakePage:
    """Scriptable page.

    Args:
        pages: URL to initial HTML, used by ``goto``.
        elements: Selector to element.
    """

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        elements: dict[str, FakeElement] | None = None,
    ) -> None:
        self.pages = dict(pages or {})
        self.elements = dict(elements or {})
        self.url = "about:blank"
        self.html = "<html><body></body></html>"
        self.handlers: dict[str, list[Callable[[Any], None]]] = {}
        self.route_handler: Callable[[FakeRoute], Awaitable[None]] | None = None
        self.routes: list[FakeRoute] = []
        self.clicks: list[str] = []
        self.presses: list[tuple[str, str]] = []
        self.fills: list[tuple[str, str]] = []
        self.gotos: list[str] = []
        self.waited_ms = 0.0
        self.goto_error: str | None = None
        self.screenshot_error: str | None = None
        self.content_error: str | None = None

    # Playwright surface

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    async def route(self, pattern: str, handler: Callable[[FakeRoute], Awaitable[None]]) -> None:
        self.route_handler = handler

    async def goto(self, url: str, wait_until: str | None = None, timeout: float | None = None):
        self.gotos.append(url)
        if self.goto_error is not None:
            raise PlaywrightError(self.goto_error)
        self.url = url
        self.html = self.pages.get(url, self.html)

    async def wait_for_load_state(self, state: str = "load", timeout: float | None = None) -> None:
        return None

    async def wait_for_timeout(self, timeout: float) -> None:
        self.waited_ms += timeout
        await asyncio.sleep(0.001)

    async def content(self) -> str:
        if self.content_error is not None:
            raise PlaywrightError(self.content_error)
        return self.html

    async def screenshot(self, path: str | None = None, full_page: bool = False) -> bytes:
        if self.screenshot_error is not None:
            raise PlaywrightError(self.screenshot_error)
        data = self.html.encode()
        if path is not None:
            Path(path).write_bytes(data)
        return data

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    # Test helpers

    def emit(self, event: str, payload: Any) -> None:
        for handler in self.handlers.get(event, []):
            handler(payload)

    async def fire_request(self, url: str, method: str = "GET", status: int = 200) -> FakeRoute:
        """Send a request through listeners and the route guard."""
        request = FakeRequest(url=url, method=method)
        self.emit("request", request)
        route = FakeRoute(request)
        self.routes.append(route)
        if self.route_handler is not None:
            await self.route_handler(route)
        else:
            route.continued = True
        if route.aborted is not None:
            self.emit("requestfailed", request)
        else:
            self.emit("response", FakeResponse(request=request, status=status))
            self.emit("requestfinished", request)
        return route

    def console(self, kind: str, text: str) -> None:
        self.emit("console", FakeConsoleMessage(type=kind, text=text))


def page_observer(page: FakePage):
    """An observation step that drives ``page`` instead of launching a browser."""

    async def observe(url, expectations, config, evidence_dir, *, started_at=None):
        return await observe_page(
            page, url, expectations, config, evidence_dir, started_at=started_at
        )

    return observe
