# resilient_ui/core/waiter.py
from __future__ import annotations

"""Readiness waiter
-------------------
Blocks the scenario until a Condition holds or its timeout expires.

Network conditions are event driven: `arm()` registers the response
subscriptions immediately, and the returned ArmedWait is awaited once the
triggering action has been issued. Everything else is polled at
POLL_INTERVAL_MS. Composite AND runs its children concurrently; OR returns on
the first child to hold and cancels the rest.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from resilient_ui.core.conditions import Composite, Condition, Delay, LoadState, NetworkResponse
from resilient_ui.core.errors import HostError, WaitTimeout
from resilient_ui.core.host import PageHost, ResponseEvent, ResponseSubscription
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import get_logger
from resilient_ui.utils.timing import Stopwatch, async_sleep_ms, async_wait_for, now_ms

T = TypeVar("T")

log = get_logger(__name__)

_TIMEOUTS = (asyncio.TimeoutError, TimeoutError)


class ArmedWait:
    """A condition whose network subscriptions are already live."""

    def __init__(self, waiter: "ReadinessWaiter", condition: Condition, subscriptions: Dict[int, ResponseSubscription]):
        self.waiter = waiter
        self.condition = condition
        self._subs = subscriptions
        self.responses: List[ResponseEvent] = []
        self._deadline_ms = 0

    async def __aenter__(self) -> "ArmedWait":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.disarm()

    def disarm(self) -> None:
        for sub in self._subs.values():
            sub.close()

    async def wait(self, timeout_ms: Optional[int] = None) -> Optional[ResponseEvent]:
        """
        Wait for the armed condition. Returns the first matched response for
        network conditions, None otherwise. Raises WaitTimeout.
        """
        cond = self.condition
        timeout = cond.timeout_ms if timeout_ms is None else timeout_ms
        log.debug(f"Waiting up to {timeout} ms for: {cond.describe()}")
        self._deadline_ms = now_ms() + max(0, timeout)
        with Stopwatch() as sw:
            try:
                await self._bounded(cond, timeout)
            except _TIMEOUTS:
                raise WaitTimeout(cond.describe(), timeout) from None
            finally:
                self.disarm()
        log.debug(f"Condition met after {sw.elapsed_ms()} ms: {cond.describe()}")
        return self.responses[0] if self.responses else None

    async def _run_child(self, cond: Condition) -> None:
        await self._bounded(cond, cond.timeout_ms)

    async def _bounded(self, cond: Condition, timeout_ms: int) -> None:
        if timeout_ms <= 0:
            # a zero budget still gets one evaluation
            if not await self.waiter.check(cond):
                raise TimeoutError(f"{cond.describe()} does not hold")
            return
        await asyncio.wait_for(self._run(cond), timeout=timeout_ms / 1000.0)

    async def _run(self, cond: Condition) -> None:
        host = self.waiter.host

        if isinstance(cond, Composite):
            if cond.op == "and":
                await self._all(cond)
            else:
                await self._any(cond)
            return

        if isinstance(cond, NetworkResponse):
            event = await self._subs[id(cond)].next()
            log.debug(f"Observed {event.method} {event.url} -> {event.status}")
            self.responses.append(event)
            return

        if isinstance(cond, Delay):
            log.debug(f"Fixed delay {cond.ms} ms: {cond.reason}")
            await host.sleep(cond.ms)
            return

        if isinstance(cond, LoadState):
            try:
                await host.wait_for_load_state(cond.state, max(1, self._deadline_ms - now_ms()))
            except HostError as e:
                raise TimeoutError(str(e)) from e
            return

        interval = self.waiter.settings.POLL_INTERVAL_MS
        while not await cond.probe(host):  # type: ignore[attr-defined]
            await async_sleep_ms(interval)

    async def _all(self, cond: Composite) -> None:
        tasks = [asyncio.ensure_future(self._run_child(c)) for c in cond.conditions]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for t in done:
                exc = t.exception()
                if exc is not None:
                    raise exc
        finally:
            await _cancel(tasks)

    async def _any(self, cond: Composite) -> None:
        tasks = [asyncio.ensure_future(self._run_child(c)) for c in cond.conditions]
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    if t.exception() is None:
                        return
            raise TimeoutError(f"no alternative held: {cond.describe()}")
        finally:
            await _cancel(tasks)


async def _cancel(tasks: List["asyncio.Future[Any]"]) -> None:
    live = [t for t in tasks if not t.done()]
    for t in live:
        t.cancel()
    if live:
        await asyncio.gather(*live, return_exceptions=True)


class ReadinessWaiter:
    def __init__(self, host: PageHost, settings: Optional[Settings] = None) -> None:
        self.host = host
        self.settings = settings or get_settings()

    def arm(self, condition: Condition) -> ArmedWait:
        """
        Register every network subscription in `condition` now. Call this
        before issuing the action that triggers the request.
        """
        subs: Dict[int, ResponseSubscription] = {}
        self._subscribe(condition, subs)
        return ArmedWait(self, condition, subs)

    def _subscribe(self, cond: Condition, subs: Dict[int, ResponseSubscription]) -> None:
        if isinstance(cond, NetworkResponse):
            subs[id(cond)] = self.host.subscribe_responses(cond.matches)
        elif isinstance(cond, Composite):
            for child in cond.conditions:
                self._subscribe(child, subs)

    async def wait(self, condition: Condition, timeout_ms: Optional[int] = None) -> Optional[ResponseEvent]:
        """Block until `condition` holds; raises WaitTimeout after `timeout_ms` (default: the condition's)."""
        async with self.arm(condition) as armed:
            return await armed.wait(timeout_ms)

    async def check(self, condition: Condition) -> bool:
        """
        Evaluate once without waiting. Conditions that can only be observed
        over time (network, delay, load state) report False.
        """
        if isinstance(condition, Composite):
            results = [await self.check(c) for c in condition.conditions]
            return all(results) if condition.op == "and" else any(results)
        probe = getattr(condition, "probe", None)
        if probe is None:
            return False
        return bool(await probe(self.host))

    async def poll(
        self,
        predicate: Callable[[], Union[T, Awaitable[T]]],
        timeout_ms: int,
        description: Optional[str] = None,
    ) -> T:
        """Poll an ad hoc predicate at the configured interval; raises WaitTimeout."""
        try:
            return await async_wait_for(
                predicate,
                timeout_ms=timeout_ms,
                interval_ms=self.settings.POLL_INTERVAL_MS,
                description=description,
            )
        except _TIMEOUTS:
            raise WaitTimeout(description or "predicate", timeout_ms) from None
