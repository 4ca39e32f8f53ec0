# resilient_ui/utils/timing.py
from __future__ import annotations

import asyncio
import functools
import inspect
import random
import time
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar, Union

from resilient_ui.utils.logger import get_logger

T = TypeVar("T")


def now_ms() -> int:
    """Monotonic clock in milliseconds."""
    return time.monotonic_ns() // 1_000_000


async def async_sleep_ms(ms: int) -> None:
    if ms > 0:
        await asyncio.sleep(ms / 1000.0)


class Stopwatch:
    """Elapsed milliseconds since `start()` or entering the `with` block."""

    def __init__(self) -> None:
        self.start_ms: Optional[int] = None

    def start(self) -> "Stopwatch":
        self.start_ms = now_ms()
        return self

    def elapsed_ms(self) -> int:
        return 0 if self.start_ms is None else max(0, now_ms() - self.start_ms)

    def __enter__(self) -> "Stopwatch":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def exp_backoff_delays_ms(
    attempts: int,
    initial_ms: int = 200,
    factor: float = 2.0,
    max_ms: int = 5000,
    jitter: float = 0.1,
) -> Iterator[int]:
    """
    Yield `attempts` retry delays: `initial_ms` growing by `factor`, capped
    at `max_ms`, each spread by +/- `jitter` of itself.
    """
    delay = float(max(0, initial_ms))
    for _ in range(max(1, attempts)):
        spread = delay * jitter
        yield int(min(max_ms, max(0.0, delay + random.uniform(-spread, spread))))
        delay = min(float(max_ms), delay * factor)


async def async_wait_for(
    predicate: Callable[[], Union[T, Awaitable[T]]],
    timeout_ms: int,
    interval_ms: int = 100,
    description: Optional[str] = None,
) -> T:
    """
    Re-evaluate `predicate` (sync or async) every `interval_ms` until it
    returns something truthy, and return that value.

    The predicate runs at least once and once more at the deadline, so the
    call gives up no later than `timeout_ms` plus one interval.

    Raises:
        TimeoutError when the deadline passes first.
    """
    deadline = now_ms() + max(0, timeout_ms)
    interval_ms = max(1, interval_ms)
    while True:
        value = predicate()
        if inspect.isawaitable(value):
            value = await value
        if value:
            return value
        remaining = deadline - now_ms()
        if remaining <= 0:
            what = f" waiting for {description}" if description else ""
            raise TimeoutError(f"timed out after {timeout_ms} ms{what}")
        await async_sleep_ms(min(interval_ms, remaining))


def measure(label: str = "", level: str = "DEBUG") -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Log how long each call of the decorated function or coroutine function took:

        @measure("resolve target")
        async def resolve(...): ...
    """
    log = get_logger(__name__)
    emit = getattr(log, level.lower(), log.debug)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        name = label or func.__qualname__

        def report(sw: Stopwatch) -> None:
            ms = sw.elapsed_ms()
            emit(f"{name} took {ms} ms" if ms < 1000 else f"{name} took {ms / 1000:.3f} s")

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with Stopwatch() as sw:
                    try:
                        return await func(*args, **kwargs)
                    finally:
                        report(sw)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with Stopwatch() as sw:
                try:
                    return func(*args, **kwargs)
                finally:
                    report(sw)
        return wrapper

    return decorator
