# resilient_ui/selectors/locator.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from resilient_ui.core.context import FormMode
from resilient_ui.core.conditions import AmbiguousMatch, match_strategy
from resilient_ui.core.errors import LocatorExhausted, WaitTimeout
from resilient_ui.core.host import ElementHandle, PageHost
from resilient_ui.core.waiter import ReadinessWaiter
from resilient_ui.selectors.strategy import LocatorStrategy, Target
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import get_logger, log_with_context
from resilient_ui.utils.timing import Stopwatch, measure

log = get_logger(__name__)


@dataclass
class ResolvedHandle:
    handle: ElementHandle
    strategy: LocatorStrategy
    index: int
    # strategies tried, the winning one included
    attempts: int
    elapsed_ms: int


class FallbackLocator:
    """
    Resolve a logical Target to one live element handle.

    Strategies are probed strictly in declared order, each with a short
    sub-timeout; the first one whose first candidate is attached and visible
    wins. Probing only reads the page.
    """

    def __init__(
        self,
        host: PageHost,
        waiter: Optional[ReadinessWaiter] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.host = host
        self.settings = settings or get_settings()
        self.waiter = waiter or ReadinessWaiter(host, self.settings)

    async def _probe(self, strategy: LocatorStrategy, unique: bool) -> Optional[ElementHandle]:
        return await match_strategy(self.host, strategy, unique=unique)

    @measure("resolve target")
    async def resolve(
        self,
        target: Target,
        timeout_ms: Optional[int] = None,
        *,
        mode: Optional[FormMode] = None,
    ) -> ResolvedHandle:
        """
        Returns the handle of the first strategy that yields a visible element.
        Raises LocatorExhausted listing every strategy tried and why it failed.
        """
        budget = self.settings.DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms
        probe_ms = self.settings.PROBE_TIMEOUT_MS
        tlog = log_with_context(log, target=target.description)

        strategies = target.for_mode(mode)
        tried: List[str] = []

        with Stopwatch() as sw:
            for n, strategy in enumerate(strategies, start=1):
                remaining = budget - sw.elapsed_ms()
                if budget > 0 and remaining <= 0:
                    tried.append(f"{strategy.describe()}: not tried, {budget} ms budget spent")
                    continue

                # a zero budget still looks at each strategy once
                sub_timeout = max(0, min(probe_ms, remaining))
                try:
                    handle = await self.waiter.poll(
                        lambda s=strategy: self._probe(s, target.unique),
                        timeout_ms=sub_timeout,
                        description=f"{target.description} via {strategy.describe()}",
                    )
                except AmbiguousMatch as e:
                    reason = str(e)
                except WaitTimeout:
                    reason = f"no visible element within {sub_timeout} ms"
                else:
                    tlog.info(f"Resolved '{target.description}' via {strategy.describe()} (strategy {n}/{len(strategies)})")
                    return ResolvedHandle(
                        handle=handle,
                        strategy=strategy,
                        index=n - 1,
                        attempts=n,
                        elapsed_ms=sw.elapsed_ms(),
                    )

                tried.append(f"{strategy.describe()}: {reason}")
                tlog.debug(f"Strategy {strategy.describe()} failed for '{target.description}': {reason}")

        tlog.warning(f"No strategy resolved '{target.description}' ({len(tried)} tried)")
        raise LocatorExhausted(target.description, tried)
