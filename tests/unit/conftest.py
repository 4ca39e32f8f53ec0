import asyncio
import os
import tempfile
from typing import Callable, Dict, List, Optional

import pytest

# keep run output of the default settings out of the working tree
_TMP = tempfile.mkdtemp(prefix="resilient-ui-tests-")
os.environ.setdefault("OUTPUT_DIR", os.path.join(_TMP, "runs"))
os.environ.setdefault("STORAGE_STATE_DIR", os.path.join(_TMP, "storage_state"))

from resilient_ui.core.errors import HostError  # noqa: E402
from resilient_ui.core.host import ResponseEvent, ResponseSubscription  # noqa: E402
from resilient_ui.selectors.strategy import LocatorStrategy  # noqa: E402
from resilient_ui.utils.config import Settings  # noqa: E402


class FakeElement:
    """In-memory element. `fill` types into the field like a keyboard would (appends)."""

    def __init__(
        self,
        name: str = "el",
        *,
        visible: bool = True,
        enabled: bool = True,
        attached: bool = True,
        value: str = "",
        text: str = "",
        checked: bool = False,
        stale_fills: int = 0,
        fail_clicks: int = 0,
        on_click: Optional[Callable[[], None]] = None,
        on_select: Optional[Callable[[str], None]] = None,
        on_press: Optional[Callable[[str], None]] = None,
    ):
        self.name = name
        self.visible = visible
        self.enabled = enabled
        self.attached = attached
        self.value = value
        self.text = text
        self.checked = checked
        self.stale_fills = stale_fills
        self.fail_clicks = fail_clicks
        self.on_click = on_click
        self.on_select = on_select
        self.on_press = on_press
        self.clicks = 0
        self.toggles = 0
        self.calls: List[str] = []

    def __repr__(self) -> str:
        return f"FakeElement({self.name})"

    def _require_attached(self, what: str) -> None:
        if not self.attached:
            raise HostError(f"{what} rejected: element is not attached to the DOM")

    async def is_visible(self) -> bool:
        return self.attached and self.visible

    async def is_enabled(self) -> bool:
        return self.attached and self.enabled

    async def is_attached(self) -> bool:
        return self.attached

    async def is_checked(self) -> bool:
        return self.attached and self.checked

    async def click(self) -> None:
        self._require_attached("click")
        self.calls.append("click")
        if self.fail_clicks > 0:
            self.fail_clicks -= 1
            raise HostError("click rejected: element is intercepted by an overlay")
        self.clicks += 1
        if self.on_click is not None:
            self.on_click()

    async def fill(self, value: str) -> None:
        self._require_attached("fill")
        self.calls.append(f"fill:{value}")
        if self.stale_fills > 0:
            # slow re-render swallows the last keystroke
            self.stale_fills -= 1
            self.value += value[:-1]
        else:
            self.value += value

    async def clear(self) -> None:
        self._require_attached("clear")
        self.calls.append("clear")
        self.value = ""

    async def select_option(self, value: str) -> None:
        self._require_attached("select")
        self.calls.append(f"select:{value}")
        self.value = value
        if self.on_select is not None:
            self.on_select(value)

    async def check(self) -> None:
        self._require_attached("check")
        self.toggles += 1
        self.checked = True

    async def uncheck(self) -> None:
        self._require_attached("uncheck")
        self.toggles += 1
        self.checked = False

    async def press(self, key: str) -> None:
        self._require_attached("press")
        self.calls.append(f"press:{key}")
        if self.on_press is not None:
            self.on_press(key)

    async def text_content(self) -> Optional[str]:
        self._require_attached("text_content")
        return self.text

    async def input_value(self) -> str:
        self._require_attached("input_value")
        return self.value


class FakeHost:
    """PageHost over a registry of elements keyed by strategy description."""

    def __init__(self, url: str = "about:blank"):
        self.url = url
        self.registry: Dict[str, List[FakeElement]] = {}
        self.lookups: List[str] = []
        self.navigations: List[str] = []
        self.subscriptions: List[ResponseSubscription] = []
        self.load_states = {"load", "domcontentloaded"}
        self.script_result = None
        self.on_navigate: Optional[Callable[[str], None]] = None
        self.history: List[str] = []
        self.keys: List[str] = []
        self.on_key: Optional[Callable[[str], None]] = None

    # ---- test helpers ----

    def add(self, strategy: LocatorStrategy, *elements: FakeElement) -> None:
        self.registry.setdefault(strategy.describe(), []).extend(elements)

    def emit(self, url: str, status: int = 200, method: str = "GET") -> None:
        event = ResponseEvent(url=url, method=method, status=status)
        for sub in list(self.subscriptions):
            sub.offer(event)

    def later(self, ms: int, fn: Callable[[], None]) -> None:
        asyncio.get_running_loop().call_later(ms / 1000.0, fn)

    # ---- PageHost ----

    async def navigate(self, url: str, wait_until: str = "domcontentloaded") -> None:
        self.navigations.append(url)
        self.history.append(self.url)
        self.url = url
        if self.on_navigate is not None:
            self.on_navigate(url)

    def current_url(self) -> str:
        return self.url

    async def find_candidates(self, strategy: LocatorStrategy) -> List[FakeElement]:
        desc = strategy.describe()
        self.lookups.append(desc)
        return [e for e in self.registry.get(desc, []) if e.attached]

    def subscribe_responses(self, predicate) -> ResponseSubscription:
        sub = ResponseSubscription(predicate, on_close=lambda: self.subscriptions.remove(sub))
        self.subscriptions.append(sub)
        return sub

    async def wait_for_load_state(self, state: str, timeout_ms: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        while state not in self.load_states:
            if loop.time() >= deadline:
                raise HostError(f"load state {state!r} not reached")
            await asyncio.sleep(0.01)

    async def evaluate(self, script: str):
        if callable(self.script_result):
            return self.script_result()
        return self.script_result

    async def press_key(self, key: str) -> None:
        self.keys.append(key)
        if self.on_key is not None:
            self.on_key(key)

    async def go_back(self) -> None:
        if not self.history:
            raise HostError("history back failed: no previous page")
        self.url = self.history.pop()

    async def sleep(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000.0)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def settings() -> Settings:
    """Fast settings: short probes, no retry delay."""
    return Settings(
        DEFAULT_TIMEOUT_MS=1000,
        POLL_INTERVAL_MS=10,
        PROBE_TIMEOUT_MS=100,
        MAX_ATTEMPTS=3,
        VERIFY_RETRIES=1,
        RETRY_DELAY=0,
        CONTINUE_ON_ERROR=False,
        SCREENSHOT_ON_FAILURE=False,
    )
