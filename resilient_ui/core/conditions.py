# resilient_ui/core/conditions.py
from __future__ import annotations

"""Conditions
-------------
Re-evaluable predicates over observable page state. Probing a condition never
changes the page, so the waiter may evaluate it as often as it likes. Every
condition ends up with an explicit `timeout_ms` (the configured default is
filled in at construction when none is given).
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern, Tuple, Union

from resilient_ui.core.context import FormMode
from resilient_ui.core.errors import HostError
from resilient_ui.core.host import ElementHandle, PageHost, ResponseEvent
from resilient_ui.selectors.strategy import LocatorStrategy, Target
from resilient_ui.utils.config import get_settings


def _default_timeout() -> int:
    return get_settings().DEFAULT_TIMEOUT_MS


class Condition:
    """Base class; concrete conditions are dataclasses below."""

    timeout_ms: int

    def describe(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.describe()


class ElementStateKind(str, Enum):
    visible = "visible"
    hidden = "hidden"
    enabled = "enabled"
    disabled = "disabled"
    attached = "attached"
    detached = "detached"


class MatchMode(str, Enum):
    exact = "exact"
    contains = "contains"
    regex = "regex"


def text_matches(actual: Optional[str], expected: str, match: MatchMode = MatchMode.exact) -> bool:
    """
    Comparison shared by text conditions and verifications.

    Every mode is case-sensitive. `exact` and `contains` compare the
    whitespace-trimmed strings; `regex` searches the trimmed actual text and
    takes inline flags such as `(?i)` for case-insensitive matching.
    """
    got = (actual or "").strip()
    if match == MatchMode.regex:
        return re.search(expected, got) is not None
    if match == MatchMode.contains:
        return expected.strip() in got
    return got == expected.strip()


class AmbiguousMatch(Exception):
    """A strategy of a `unique` target matched more than one element."""

    def __init__(self, count: int) -> None:
        super().__init__(f"ambiguous: {count} elements match")
        self.count = count


async def match_strategy(
    host: PageHost,
    strategy: LocatorStrategy,
    *,
    unique: bool = False,
    require_visible: bool = True,
) -> Optional[ElementHandle]:
    """
    The strategy's first candidate when it is attached (and visible, unless
    `require_visible` is off), else None. Raises AmbiguousMatch when `unique`
    is set and several elements match.
    """
    candidates = await host.find_candidates(strategy)
    if not candidates:
        return None
    if unique and len(candidates) > 1:
        raise AmbiguousMatch(len(candidates))
    first = candidates[0]
    try:
        if not await first.is_attached():
            return None
        if require_visible and not await first.is_visible():
            return None
    except HostError:
        return None
    return first


async def first_match(
    host: PageHost,
    target: Target,
    mode: Optional[FormMode] = None,
    *,
    require_visible: bool = True,
) -> Optional[ElementHandle]:
    """Element the fallback locator would pick right now: strategies in order, ambiguous ones skipped."""
    for strategy in target.for_mode(mode):
        try:
            handle = await match_strategy(host, strategy, unique=target.unique, require_visible=require_visible)
        except AmbiguousMatch:
            continue
        if handle is not None:
            return handle
    return None


# ---------- element ----------

@dataclass(eq=False)
class ElementState(Condition):
    target: Target
    state: ElementStateKind = ElementStateKind.visible
    timeout_ms: Optional[int] = None  # type: ignore[assignment]
    handle: Optional[ElementHandle] = None
    mode: Optional[FormMode] = None

    def __post_init__(self) -> None:
        self.state = ElementStateKind(self.state)
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()

    def describe(self) -> str:
        return f"{self.target.description} is {self.state.value}"

    async def probe(self, host: PageHost) -> bool:
        st = self.state
        try:
            if self.handle is not None:
                return await self._probe_handle(self.handle)
            if st in (ElementStateKind.attached, ElementStateKind.detached):
                found = await first_match(host, self.target, self.mode, require_visible=False)
                return (found is not None) == (st == ElementStateKind.attached)
            handle = await first_match(host, self.target, self.mode)
            if st == ElementStateKind.visible:
                return handle is not None
            if st == ElementStateKind.hidden:
                return handle is None
            if handle is None:
                return False
            return await handle.is_enabled() == (st == ElementStateKind.enabled)
        except HostError:
            # a handle that went stale mid-probe is simply "not yet"
            return False

    async def _probe_handle(self, handle: ElementHandle) -> bool:
        st = self.state
        if st == ElementStateKind.attached:
            return await handle.is_attached()
        if st == ElementStateKind.detached:
            return not await handle.is_attached()
        if st == ElementStateKind.visible:
            return await handle.is_attached() and await handle.is_visible()
        if st == ElementStateKind.hidden:
            return not await handle.is_attached() or not await handle.is_visible()
        if st == ElementStateKind.enabled:
            return await handle.is_attached() and await handle.is_enabled()
        return await handle.is_attached() and not await handle.is_enabled()


@dataclass(eq=False)
class ElementText(Condition):
    target: Target
    expected: str
    match: MatchMode = MatchMode.exact
    timeout_ms: Optional[int] = None  # type: ignore[assignment]
    mode: Optional[FormMode] = None

    def __post_init__(self) -> None:
        self.match = MatchMode(self.match)
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()

    def describe(self) -> str:
        verb = {MatchMode.exact: "is", MatchMode.contains: "contains", MatchMode.regex: "matches"}[self.match]
        return f"text of {self.target.description} {verb} {self.expected!r}"

    async def probe(self, host: PageHost) -> bool:
        try:
            handle = await first_match(host, self.target, self.mode)
            if handle is None:
                return False
            return text_matches(await handle.text_content(), self.expected, self.match)
        except HostError:
            return False


# ---------- URL ----------

def glob_to_regex(glob: str) -> Pattern[str]:
    """
    Playwright-style URL glob: `**` matches anything, `*` matches anything but
    '/', every other character is literal (including '?').
    """
    out = []
    i = 0
    while i < len(glob):
        c = glob[i]
        if c == "*":
            if glob[i + 1:i + 2] == "*":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


UrlPattern = Union[str, Pattern[str], Callable[[str], bool]]


@dataclass(eq=False)
class UrlMatches(Condition):
    pattern: UrlPattern
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()
        if isinstance(self.pattern, str):
            self._test: Callable[[str], bool] = glob_to_regex(self.pattern).match  # type: ignore[assignment]
        elif isinstance(self.pattern, re.Pattern):
            self._test = self.pattern.search  # type: ignore[assignment]
        else:
            self._test = self.pattern

    def describe(self) -> str:
        if isinstance(self.pattern, str):
            shown = self.pattern
        elif isinstance(self.pattern, re.Pattern):
            shown = f"/{self.pattern.pattern}/"
        else:
            shown = getattr(self.pattern, "__name__", "<predicate>")
        return f"URL matches {shown}"

    def matches(self, url: str) -> bool:
        return bool(self._test(url))

    async def probe(self, host: PageHost) -> bool:
        return self.matches(host.current_url())


# ---------- network ----------

StatusPredicate = Union[int, Tuple[int, int], Callable[[int], bool], None]


@dataclass(eq=False)
class NetworkResponse(Condition):
    url_part: str
    method: Optional[str] = None
    status: StatusPredicate = 200
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()
        if self.method:
            self.method = self.method.upper()

    def _status_ok(self, status: int) -> bool:
        st = self.status
        if st is None:
            return True
        if isinstance(st, int):
            return status == st
        if isinstance(st, tuple):
            return st[0] <= status <= st[1]
        return bool(st(status))

    def matches(self, event: ResponseEvent) -> bool:
        if self.url_part not in event.url:
            return False
        if self.method and event.method.upper() != self.method:
            return False
        return self._status_ok(event.status)

    def describe(self) -> str:
        st = self.status
        if st is None:
            shown = "any status"
        elif isinstance(st, int):
            shown = f"status {st}"
        elif isinstance(st, tuple):
            shown = f"status {st[0]}-{st[1]}"
        else:
            shown = "matching status"
        return f"{self.method or 'any'} response from *{self.url_part}* with {shown}"


# ---------- page / script ----------

@dataclass(eq=False)
class LoadState(Condition):
    state: str = "networkidle"
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.state not in ("load", "domcontentloaded", "networkidle"):
            raise ValueError(f"unknown load state {self.state!r}")
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()

    def describe(self) -> str:
        return f"page reaches load state '{self.state}'"


@dataclass(eq=False)
class ScriptCondition(Condition):
    script: str
    description: Optional[str] = None
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.timeout_ms is None:
            self.timeout_ms = _default_timeout()

    def describe(self) -> str:
        if self.description:
            return self.description
        body = " ".join(self.script.split())
        return f"script {body[:60]!r} is truthy"

    async def probe(self, host: PageHost) -> bool:
        try:
            return bool(await host.evaluate(self.script))
        except HostError:
            return False


# ---------- composition / last resort ----------

@dataclass(eq=False)
class Composite(Condition):
    conditions: Tuple[Condition, ...]
    op: str = "and"
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        self.conditions = tuple(self.conditions)
        if not self.conditions:
            raise ValueError("a composite condition needs at least one sub-condition")
        if self.op not in ("and", "or"):
            raise ValueError(f"unknown composite operator {self.op!r}")
        if self.timeout_ms is None:
            self.timeout_ms = max(c.timeout_ms for c in self.conditions)

    def describe(self) -> str:
        joiner = " AND " if self.op == "and" else " OR "
        return "(" + joiner.join(c.describe() for c in self.conditions) + ")"


def all_of(*conditions: Condition, timeout_ms: Optional[int] = None) -> Composite:
    return Composite(conditions, op="and", timeout_ms=timeout_ms)


def any_of(*conditions: Condition, timeout_ms: Optional[int] = None) -> Composite:
    return Composite(conditions, op="or", timeout_ms=timeout_ms)


@dataclass(eq=False)
class Delay(Condition):
    """
    Pure delay. Only for places with no observable signal at all; `reason`
    documents why and shows up in logs and failure messages.
    """

    ms: int
    reason: str
    timeout_ms: Optional[int] = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.ms < 0:
            raise ValueError("delay must be >= 0 ms")
        if not self.reason or not self.reason.strip():
            raise ValueError("a fixed delay needs a documented reason")
        if self.timeout_ms is None:
            self.timeout_ms = self.ms + 1000
        elif self.timeout_ms <= self.ms:
            raise ValueError(f"timeout ({self.timeout_ms} ms) must exceed the delay ({self.ms} ms)")

    def describe(self) -> str:
        return f"fixed delay of {self.ms} ms ({self.reason})"
