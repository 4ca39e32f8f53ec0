# resilient_ui/core/actions.py
from __future__ import annotations

"""Action-verification sequencer
--------------------------------
Runs one logical user action (an ActionUnit) through

    LOCATING -> WAITING_PRE -> ACTING -> WAITING_POST -> VERIFYING

and retries the whole unit a bounded number of times. Failures surface as
typed InteractionErrors carrying the AttemptResult of the run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from resilient_ui.core.conditions import (
    Condition,
    ElementState,
    ElementStateKind,
    MatchMode,
    NetworkResponse,
    StatusPredicate,
    UrlMatches,
    UrlPattern,
    all_of,
    text_matches,
)
from resilient_ui.core.context import FormMode
from resilient_ui.core.errors import (
    ActionDispatchFailure,
    AttemptResult,
    HostError,
    InteractionError,
    LocatorExhausted,
    Phase,
    PostconditionTimeout,
    PreconditionTimeout,
    VerificationMismatch,
    WaitTimeout,
)
from resilient_ui.core.host import ElementHandle, PageHost, ResponseEvent
from resilient_ui.core.waiter import ReadinessWaiter
from resilient_ui.selectors.locator import FallbackLocator, ResolvedHandle
from resilient_ui.selectors.strategy import Target
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import get_logger, log_with_context
from resilient_ui.utils.timing import Stopwatch, async_sleep_ms, exp_backoff_delays_ms

__all__ = [
    "ActionKind",
    "VerifyRead",
    "Verification",
    "ActionUnit",
    "Sequencer",
    "click_and_wait_for_url",
    "fill_and_verify",
    "select_option_and_wait_for_network",
]

log = get_logger(__name__)


class ActionKind(str, Enum):
    click = "click"
    fill = "fill"
    select = "select"
    clear = "clear"
    check = "check"
    uncheck = "uncheck"
    press = "press"


# for press the value is the key, e.g. "Escape" or "Control+A"
_NEEDS_VALUE = (ActionKind.fill, ActionKind.select, ActionKind.press)


class VerifyRead(str, Enum):
    input_value = "input_value"
    text = "text"
    checked = "checked"


@dataclass
class Verification:
    """Expected state read back from the acted-on element."""

    expected: Any
    read: VerifyRead = VerifyRead.input_value
    match: MatchMode = MatchMode.exact

    def __post_init__(self) -> None:
        self.read = VerifyRead(self.read)
        self.match = MatchMode(self.match)

    def describe(self) -> str:
        if self.read == VerifyRead.checked:
            return f"checked is {bool(self.expected)}"
        verb = {MatchMode.exact: "is", MatchMode.contains: "contains", MatchMode.regex: "matches"}[self.match]
        return f"{self.read.value} {verb} {self.expected!r}"

    async def read_actual(self, handle: ElementHandle) -> Any:
        if self.read == VerifyRead.checked:
            return await handle.is_checked()
        if self.read == VerifyRead.text:
            return await handle.text_content()
        return await handle.input_value()

    def holds(self, actual: Any) -> bool:
        if self.read == VerifyRead.checked:
            return bool(actual) == bool(self.expected)
        return text_matches(actual, str(self.expected), self.match)


@dataclass
class ActionUnit:
    target: Target
    kind: ActionKind
    value: Optional[str] = None
    pre: Optional[Condition] = None
    post: Optional[Condition] = None
    verify: Optional[Verification] = None
    skip_if: Optional[Condition] = None
    mode: Optional[FormMode] = None
    name: Optional[str] = None
    locate_timeout_ms: Optional[int] = None

    def __post_init__(self) -> None:
        self.kind = ActionKind(self.kind)
        if self.kind in _NEEDS_VALUE and self.value is None:
            raise ValueError(f"{self.kind.value} on {self.target.description!r} needs a value")

    @property
    def label(self) -> str:
        return self.name or f"{self.kind.value} {self.target.description}"


# ---------- templates ----------

def click_and_wait_for_url(target: Target, pattern: UrlPattern, timeout_ms: Optional[int] = None, **kw: Any) -> ActionUnit:
    return ActionUnit(target=target, kind=ActionKind.click, post=UrlMatches(pattern, timeout_ms=timeout_ms), **kw)


def fill_and_verify(target: Target, value: str, **kw: Any) -> ActionUnit:
    return ActionUnit(
        target=target,
        kind=ActionKind.fill,
        value=value,
        verify=Verification(expected=value, read=VerifyRead.input_value),
        **kw,
    )


def select_option_and_wait_for_network(
    target: Target,
    value: str,
    url_part: str,
    method: Optional[str] = None,
    status: StatusPredicate = 200,
    timeout_ms: Optional[int] = None,
    **kw: Any,
) -> ActionUnit:
    return ActionUnit(
        target=target,
        kind=ActionKind.select,
        value=value,
        post=NetworkResponse(url_part, method=method, status=status, timeout_ms=timeout_ms),
        **kw,
    )


# ---------- sequencer ----------

class _Aborted(Exception):
    """Internal: the attempt failed with an error that must not be retried."""

    def __init__(self, error: InteractionError) -> None:
        super().__init__(str(error))
        self.error = error


class Sequencer:
    def __init__(
        self,
        host: PageHost,
        waiter: Optional[ReadinessWaiter] = None,
        locator: Optional[FallbackLocator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.host = host
        self.settings = settings or get_settings()
        self.waiter = waiter or ReadinessWaiter(host, self.settings)
        self.locator = locator or FallbackLocator(host, self.waiter, self.settings)

    async def execute(self, unit: ActionUnit, max_attempts: Optional[int] = None) -> AttemptResult:
        """
        Execute `unit` with at most `max_attempts` locate-act-verify cycles.

        Locator and dispatch failures are retried with backoff, verification
        mismatches are retried at most VERIFY_RETRIES times, pre/post-condition
        timeouts are surfaced at once. Raises the typed InteractionError with
        `.result` set; returns the AttemptResult on success.
        """
        n_max = self.settings.MAX_ATTEMPTS if max_attempts is None else max_attempts
        if n_max < 1:
            raise ValueError("max_attempts must be >= 1")

        desc = unit.target.description
        ulog = log_with_context(log, target=desc, action=unit.kind.value)
        result = AttemptResult(ok=False, attempts=0, target=desc, phases=[Phase.pending])
        delays = exp_backoff_delays_ms(n_max, initial_ms=self.settings.RETRY_DELAY, max_ms=max(self.settings.RETRY_DELAY, 2000))
        mismatches = 0
        error: Optional[InteractionError] = None

        with Stopwatch() as sw:
            if unit.skip_if is not None and await self.waiter.check(unit.skip_if):
                ulog.info(f"Skipping '{unit.label}': {unit.skip_if.describe()} already holds")
                result.ok = True
                result.skipped = True
                result.phases.append(Phase.done)
                return result

            for attempt in range(1, n_max + 1):
                result.attempts = attempt
                try:
                    await self._attempt(unit, result, ulog)
                except _Aborted as e:
                    error = e.error
                    break
                except VerificationMismatch as e:
                    error = e
                    mismatches += 1
                    if mismatches > self.settings.VERIFY_RETRIES:
                        break
                except (LocatorExhausted, ActionDispatchFailure) as e:
                    error = e
                else:
                    result.ok = True
                    result.elapsed_ms = sw.elapsed_ms()
                    result.phases.append(Phase.done)
                    ulog.info(f"'{unit.label}' done in {result.elapsed_ms} ms (attempt {attempt}/{n_max})")
                    return result

                if attempt < n_max:
                    delay = next(delays)
                    ulog.warning(f"'{unit.label}' attempt {attempt}/{n_max} failed: {error}; retrying in {delay} ms")
                    result.phases.append(Phase.retry)
                    await async_sleep_ms(delay)

            result.elapsed_ms = sw.elapsed_ms()

        assert error is not None
        result.phases.append(Phase.failed)
        result.cause = error.cause
        error.attempt = result.attempts
        error.max_attempts = n_max
        error.result = result
        ulog.error(f"'{unit.label}' failed after {result.attempts} attempt(s): {error}")
        raise error

    async def _attempt(
        self,
        unit: ActionUnit,
        result: AttemptResult,
        ulog: Any,
    ) -> None:
        desc = unit.target.description

        # LOCATING
        result.phases.append(Phase.locating)
        resolved: ResolvedHandle = await self.locator.resolve(unit.target, unit.locate_timeout_ms, mode=unit.mode)
        result.strategy = resolved.strategy.describe()
        handle = resolved.handle

        # WAITING_PRE
        result.phases.append(Phase.waiting_pre)
        ready_ms = self.settings.DEFAULT_TIMEOUT_MS
        pre = unit.pre or all_of(
            ElementState(unit.target, ElementStateKind.visible, timeout_ms=ready_ms, handle=handle),
            ElementState(unit.target, ElementStateKind.enabled, timeout_ms=ready_ms, handle=handle),
        )
        try:
            await self.waiter.wait(pre)
        except WaitTimeout as e:
            raise _Aborted(PreconditionTimeout(e.message, target=desc, condition=pre.describe())) from e

        if await self._already_done(unit, handle):
            ulog.info(f"'{desc}' already {unit.kind.value}ed, nothing to do")
            return

        armed = self.waiter.arm(unit.post) if unit.post is not None else None
        try:
            # ACTING
            result.phases.append(Phase.acting)
            try:
                await self._dispatch(unit, handle)
            except HostError as e:
                raise ActionDispatchFailure(f"{unit.kind.value} rejected: {e}", target=desc) from e

            # WAITING_POST
            if armed is not None:
                result.phases.append(Phase.waiting_post)
                try:
                    event: Optional[ResponseEvent] = await armed.wait()
                except WaitTimeout as e:
                    raise _Aborted(PostconditionTimeout(e.message, target=desc, condition=unit.post.describe())) from e  # type: ignore[union-attr]
                if event is not None:
                    result.response = event
        finally:
            if armed is not None:
                armed.disarm()

        # VERIFYING
        if unit.verify is not None:
            result.phases.append(Phase.verifying)
            await self._verify(unit, handle)

    async def _already_done(self, unit: ActionUnit, handle: ElementHandle) -> bool:
        if unit.kind not in (ActionKind.check, ActionKind.uncheck):
            return False
        try:
            checked = await handle.is_checked()
        except HostError:
            return False
        return checked == (unit.kind == ActionKind.check)

    async def _dispatch(self, unit: ActionUnit, handle: ElementHandle) -> None:
        kind = unit.kind
        if kind == ActionKind.click:
            await handle.click()
        elif kind == ActionKind.fill:
            # never append to whatever is already in the field
            await handle.clear()
            await handle.fill(unit.value or "")
        elif kind == ActionKind.select:
            await handle.select_option(unit.value or "")
        elif kind == ActionKind.clear:
            await handle.clear()
        elif kind == ActionKind.check:
            await handle.check()
        elif kind == ActionKind.uncheck:
            await handle.uncheck()
        elif kind == ActionKind.press:
            await handle.press(unit.value or "")
        else:
            raise NotImplementedError(f"Unsupported action: {kind}")

    async def _verify(self, unit: ActionUnit, handle: ElementHandle) -> None:
        verify = unit.verify
        assert verify is not None
        try:
            actual = await verify.read_actual(handle)
        except HostError as e:
            # the element was replaced under us; treat as a mismatch and relocate
            actual = f"<unreadable: {e}>"
        if not verify.holds(actual):
            raise VerificationMismatch(unit.target.description, verify.describe(), verify.expected, actual)

    # ---------- shortcuts ----------

    async def click_and_wait_for_url(self, target: Target, pattern: UrlPattern, timeout_ms: Optional[int] = None, **kw: Any) -> AttemptResult:
        return await self.execute(click_and_wait_for_url(target, pattern, timeout_ms, **kw))

    async def fill_and_verify(self, target: Target, value: str, **kw: Any) -> AttemptResult:
        return await self.execute(fill_and_verify(target, value, **kw))

    async def select_option_and_wait_for_network(
        self,
        target: Target,
        value: str,
        url_part: str,
        method: Optional[str] = None,
        status: StatusPredicate = 200,
        timeout_ms: Optional[int] = None,
        **kw: Any,
    ) -> AttemptResult:
        return await self.execute(
            select_option_and_wait_for_network(target, value, url_part, method, status, timeout_ms, **kw)
        )
