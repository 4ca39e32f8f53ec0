# resilient_ui/core/host.py
from __future__ import annotations

"""Host capability surface
--------------------------
The small set of capabilities the engine needs from a browser automation
library, expressed as protocols, plus the Playwright (async API) adapter.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Pattern, Protocol, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Page, Response

from resilient_ui.core.errors import HostError
from resilient_ui.selectors.strategy import LocatorStrategy, StrategyKind
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import get_logger

log = get_logger(__name__)


# ---------- network events ----------

@dataclass
class ResponseEvent:
    url: str
    method: str
    status: int
    raw: Any = None

    async def body(self) -> Optional[bytes]:
        if self.raw is None:
            return None
        return await self.raw.body()


ResponsePredicate = Callable[[ResponseEvent], bool]


class ResponseSubscription:
    """
    Buffers response events matching `predicate` from the moment it is created,
    so a response that arrives before anyone awaits `next()` is not lost.
    """

    def __init__(self, predicate: ResponsePredicate, on_close: Optional[Callable[[], None]] = None) -> None:
        self._predicate = predicate
        self._queue: "asyncio.Queue[ResponseEvent]" = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def offer(self, event: ResponseEvent) -> bool:
        if self.closed or not self._predicate(event):
            return False
        self._queue.put_nowait(event)
        return True

    async def next(self) -> ResponseEvent:
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()


# ---------- protocols ----------

class ElementHandle(Protocol):
    async def is_visible(self) -> bool: ...
    async def is_enabled(self) -> bool: ...
    async def is_attached(self) -> bool: ...
    async def is_checked(self) -> bool: ...
    async def click(self) -> None: ...
    async def fill(self, value: str) -> None: ...
    async def clear(self) -> None: ...
    async def select_option(self, value: str) -> None: ...
    async def check(self) -> None: ...
    async def uncheck(self) -> None: ...
    async def press(self, key: str) -> None: ...
    async def text_content(self) -> Optional[str]: ...
    async def input_value(self) -> str: ...


class PageHost(Protocol):
    async def navigate(self, url: str, wait_until: str = "domcontentloaded") -> None: ...
    def current_url(self) -> str: ...
    async def find_candidates(self, strategy: LocatorStrategy) -> List[ElementHandle]: ...
    def subscribe_responses(self, predicate: ResponsePredicate) -> ResponseSubscription: ...
    async def wait_for_load_state(self, state: str, timeout_ms: int) -> None: ...
    async def evaluate(self, script: str) -> Any: ...
    async def press_key(self, key: str) -> None: ...
    async def go_back(self) -> None: ...
    async def sleep(self, ms: int) -> None: ...


# ---------- Playwright adapter ----------

_REGEX_LITERAL = re.compile(r"^/(.+)/([i]?)$")


def _text_or_pattern(value: Optional[str]) -> Union[str, Pattern[str], None]:
    """'/save/i' → re.compile('save', re.I); anything else stays a string."""
    if value is None:
        return None
    m = _REGEX_LITERAL.match(value)
    if not m:
        return value
    return re.compile(m.group(1), re.IGNORECASE if m.group(2) else 0)


class PlaywrightHandle:
    """ElementHandle over a single (nth) Playwright locator."""

    def __init__(self, locator: Locator, page: Page, timeout_ms: int) -> None:
        self._locator = locator
        self._page = page
        self._timeout = timeout_ms

    async def _call(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return await fn()
        except PlaywrightError as e:
            raise HostError(f"{what} rejected: {e.message}") from e

    async def is_attached(self) -> bool:
        try:
            return await self._locator.count() > 0
        except PlaywrightError:
            return False

    async def is_visible(self) -> bool:
        try:
            return await self._locator.is_visible()
        except PlaywrightError:
            return False

    async def is_enabled(self) -> bool:
        # is_enabled waits for the element to exist; never let a probe block on that
        if not await self.is_attached():
            return False
        try:
            return await self._locator.is_enabled(timeout=self._timeout)
        except PlaywrightError:
            return False

    async def is_checked(self) -> bool:
        if not await self.is_attached():
            return False
        try:
            return await self._locator.is_checked(timeout=self._timeout)
        except PlaywrightError:
            return False

    async def click(self) -> None:
        await self._call("click", lambda: self._locator.click(timeout=self._timeout))

    async def fill(self, value: str) -> None:
        await self._call("fill", lambda: self._locator.fill(value, timeout=self._timeout))

    async def clear(self) -> None:
        await self._call("clear", lambda: self._locator.clear(timeout=self._timeout))

    async def check(self) -> None:
        await self._call("check", lambda: self._locator.check(timeout=self._timeout))

    async def uncheck(self) -> None:
        await self._call("uncheck", lambda: self._locator.uncheck(timeout=self._timeout))

    async def press(self, key: str) -> None:
        await self._call(f"press {key}", lambda: self._locator.press(key, timeout=self._timeout))

    async def select_option(self, value: str) -> None:
        tag = await self._call("select", lambda: self._locator.evaluate("el => el.tagName.toLowerCase()"))
        if tag == "select":
            await self._call("select", lambda: self._locator.select_option(value, timeout=self._timeout))
            return
        # custom dropdowns (mat-select and friends): open, then pick the option by role
        await self.click()
        option = self._page.get_by_role("option", name=_text_or_pattern(value), exact=True).first
        await self._call("select option", lambda: option.click(timeout=self._timeout))

    async def text_content(self) -> Optional[str]:
        return await self._call("text_content", lambda: self._locator.text_content(timeout=self._timeout))

    async def input_value(self) -> str:
        return await self._call("input_value", lambda: self._locator.input_value(timeout=self._timeout))


class PlaywrightHost:
    """PageHost backed by one Playwright page owned by one scenario."""

    def __init__(self, page: Page, settings: Optional[Settings] = None) -> None:
        self.page = page
        self.settings = settings or get_settings()

    def _locator_for(self, strategy: LocatorStrategy) -> Locator:
        page = self.page
        value = _text_or_pattern(strategy.value)
        kind = strategy.kind

        if kind == StrategyKind.test_id:
            return page.get_by_test_id(value)
        if kind == StrategyKind.role:
            kwargs: dict = {"exact": strategy.exact} if strategy.name else {}
            if strategy.name:
                kwargs["name"] = _text_or_pattern(strategy.name)
            return page.get_by_role(strategy.value, **kwargs)  # type: ignore[arg-type]
        if kind == StrategyKind.label:
            return page.get_by_label(value, exact=strategy.exact)
        if kind == StrategyKind.placeholder:
            return page.get_by_placeholder(value, exact=strategy.exact)
        if kind == StrategyKind.text:
            return page.get_by_text(value, exact=strategy.exact)
        if kind == StrategyKind.xpath:
            return page.locator(f"xpath={strategy.value}")
        return page.locator(strategy.value)

    async def navigate(self, url: str, wait_until: str = "domcontentloaded") -> None:
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=self.settings.PAGE_LOAD_TIMEOUT)  # type: ignore[arg-type]
        except PlaywrightError as e:
            raise HostError(f"navigation to {url} failed: {e.message}") from e

    def current_url(self) -> str:
        return self.page.url or ""

    async def find_candidates(self, strategy: LocatorStrategy) -> List[PlaywrightHandle]:
        try:
            locators = await self._locator_for(strategy).all()
        except PlaywrightError as e:
            log.debug(f"{strategy.describe()} could not be evaluated: {e.message}")
            return []
        return [PlaywrightHandle(loc, self.page, self.settings.ACTION_TIMEOUT_MS) for loc in locators]

    def subscribe_responses(self, predicate: ResponsePredicate) -> ResponseSubscription:
        page = self.page

        def _on_response(response: Response) -> None:
            sub.offer(ResponseEvent(
                url=response.url,
                method=response.request.method,
                status=response.status,
                raw=response,
            ))

        sub = ResponseSubscription(predicate, on_close=lambda: page.remove_listener("response", _on_response))
        page.on("response", _on_response)
        return sub

    async def wait_for_load_state(self, state: str, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_load_state(state, timeout=timeout_ms)  # type: ignore[arg-type]
        except PlaywrightError as e:
            raise HostError(f"load state {state!r} not reached: {e.message}") from e

    async def evaluate(self, script: str) -> Any:
        try:
            return await self.page.evaluate(script)
        except PlaywrightError as e:
            raise HostError(f"script evaluation failed: {e.message}") from e

    async def press_key(self, key: str) -> None:
        """Press `key` on whatever has focus, e.g. Escape to close an overlay."""
        try:
            await self.page.keyboard.press(key)
        except PlaywrightError as e:
            raise HostError(f"key press {key!r} failed: {e.message}") from e

    async def go_back(self) -> None:
        try:
            await self.page.go_back(wait_until="domcontentloaded", timeout=self.settings.PAGE_LOAD_TIMEOUT)
        except PlaywrightError as e:
            raise HostError(f"history back failed: {e.message}") from e

    async def sleep(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)
