from __future__ import annotations

"""Scenario engine
------------------
Owns one isolated Playwright browser session per scenario, runs the
validated steps through the waiter and the sequencer within the scenario's
wall-clock budget, and writes run.log + result.json into a per-run directory.
"""

import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from resilient_ui.core.actions import ActionKind, ActionUnit, Sequencer, Verification, VerifyRead
from resilient_ui.core.conditions import Delay, ElementText, UrlMatches
from resilient_ui.core.context import ScenarioContext
from resilient_ui.core.errors import HostError, InteractionError, PostconditionTimeout, ScenarioTimeout, WaitTimeout
from resilient_ui.core.host import PageHost, PlaywrightHost
from resilient_ui.core.scenario_loader import (
    InteractionStep,
    Scenario,
    StepAssertText,
    StepAssertUrl,
    StepGoBack,
    StepGoto,
    StepPress,
    StepSleep,
    StepWait,
    VerifySpec,
    load_scenario,
)
from resilient_ui.core.waiter import ReadinessWaiter
from resilient_ui.utils.config import Settings, get_settings
from resilient_ui.utils.logger import attach_file_logger, detach_file_logger, get_logger, log_with_context
from resilient_ui.utils.timing import Stopwatch

log = get_logger(__name__)

SessionFactory = Callable[[Settings, Scenario, Path], AsyncContextManager[PageHost]]


def _ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d_%H-%M-%S_%f")


# ---------- browser session ----------

class BrowserSession:
    """
    One browser, one isolated context, one page; exclusively owned by a
    single scenario. Teardown always runs, also when the scenario is
    cancelled by its budget.
    """

    def __init__(self, settings: Settings, scenario: Scenario, run_dir: Path) -> None:
        self.settings = settings
        self.scenario = scenario
        self.run_dir = run_dir
        self._pw: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._tracing = False

    def _storage_state(self) -> Optional[Path]:
        p = self.scenario.storage_state
        if p is None:
            candidate = self.settings.STORAGE_STATE_DIR / f"{self.scenario.app}.json"
            p = candidate if candidate.exists() else None
        if p is not None and not p.exists():
            log.warning(f"Storage state {p} not found; starting from a clean context")
            return None
        return p

    async def __aenter__(self) -> PlaywrightHost:
        s = self.settings
        try:
            self._pw = await async_playwright().start()
            browser_type = getattr(self._pw, s.BROWSER_TYPE.value)
            self.browser = await browser_type.launch(**s.playwright_launch_kwargs())

            context_kwargs = s.playwright_context_kwargs()
            state = self._storage_state()
            if state is not None:
                context_kwargs["storage_state"] = str(state)
            self.context = await self.browser.new_context(**context_kwargs)
            self.context.set_default_timeout(s.ACTION_TIMEOUT_MS)
            self.context.set_default_navigation_timeout(s.PAGE_LOAD_TIMEOUT)

            if s.SAVE_TRACES:
                await self.context.tracing.start(screenshots=True, snapshots=True)
                self._tracing = True
            self.page = await self.context.new_page()
        except BaseException:
            await self.close()
            raise
        log.debug(f"Browser session ready ({s.BROWSER_TYPE.value}, headless={s.HEADLESS})")
        return PlaywrightHost(self.page, s)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc is not None and self.settings.SCREENSHOT_ON_FAILURE and self.page is not None:
                await self._failure_screenshot()
            if self._tracing and self.context is not None:
                trace = self.settings.TRACE_DIR / f"{self.scenario.app}_{self.scenario.name}_{_ts()}.zip"
                try:
                    await self.context.tracing.stop(path=str(trace))
                    log.info(f"Saved trace: {trace}")
                except PlaywrightError as e:
                    log.warning(f"Could not save trace: {e.message}")
        finally:
            await self.close()

    async def _failure_screenshot(self) -> None:
        path = self.run_dir / "failure.png"
        try:
            await self.page.screenshot(path=str(path), full_page=True)  # type: ignore[union-attr]
            log.info(f"Saved failure screenshot: {path}")
        except PlaywrightError as e:
            log.warning(f"Could not take failure screenshot: {e.message}")

    async def close(self) -> None:
        for what, closer in (
            ("context", self.context.close if self.context else None),
            ("browser", self.browser.close if self.browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except PlaywrightError as e:
                log.debug(f"Closing {what} failed: {e.message}")
        self.context = self.browser = self._pw = None
        self.page = None


def default_session_factory(settings: Settings, scenario: Scenario, run_dir: Path) -> BrowserSession:
    return BrowserSession(settings, scenario, run_dir)


# ---------- runner ----------

class ScenarioRunner:
    """Runs scenarios against a fresh browser session each and manages run artifacts."""

    def __init__(self, settings: Optional[Settings] = None, session_factory: Optional[SessionFactory] = None):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or default_session_factory
        self.last_run_dir: Optional[Path] = None

    def _prepare_run_dir(self, scenario: Scenario) -> Path:
        base = self.settings.OUTPUT_DIR / scenario.app / scenario.name / _ts()
        base.mkdir(parents=True, exist_ok=True)
        self.last_run_dir = base
        return base

    async def run(self, scenario: Scenario) -> Dict[str, Any]:
        """Execute all steps of a scenario and return a result dict.

        Returns {"ok": bool, "scenario": ..., "run_dir": ..., "steps": [...]}
        plus "error", "error_type" and "failed_step" on failure. The same
        document is written to result.json in the run directory.
        """
        s = self.settings
        run_dir = self._prepare_run_dir(scenario)
        handler = attach_file_logger(run_dir / "run.log", current_thread_only=True)
        slog = log_with_context(log, scenario=scenario.label)
        budget = scenario.timeout_ms or s.SCENARIO_TIMEOUT_MS

        steps: List[Dict[str, Any]] = []
        progress: Dict[str, Any] = {}
        result: Dict[str, Any] = {"ok": False, "scenario": scenario.label, "run_dir": str(run_dir), "steps": steps}

        slog.info(f"Starting scenario {scenario.label} (steps={len(scenario.steps)}, budget={budget} ms)")
        with Stopwatch() as sw:
            try:
                try:
                    await asyncio.wait_for(self._run_steps(scenario, run_dir, steps, progress), timeout=budget / 1000.0)
                except (asyncio.TimeoutError, TimeoutError):
                    raise ScenarioTimeout(f"scenario exceeded its {budget} ms budget", target=scenario.label) from None
                result["ok"] = True
                slog.info(f"Scenario {scenario.label} passed in {sw.elapsed_ms()} ms")
            except Exception as e:
                slog.exception("Scenario failed:")
                result["error"] = str(e)
                result["error_type"] = e.__class__.__name__
                if progress.get("current"):
                    result["failed_step"] = progress["current"]
            finally:
                result["elapsed_ms"] = sw.elapsed_ms()
                (run_dir / "result.json").write_text(json.dumps(result, indent=2, default=str), encoding="utf-8")
                detach_file_logger(handler)
        return result

    async def _run_steps(
        self,
        scenario: Scenario,
        run_dir: Path,
        steps: List[Dict[str, Any]],
        progress: Dict[str, Any],
    ) -> None:
        s = self.settings
        # fresh per scenario, dropped with it
        ctx = ScenarioContext(name=scenario.name, mode=scenario.mode, data=dict(scenario.data))
        slog = log_with_context(log, scenario=scenario.label)

        async with self.session_factory(s, scenario, run_dir) as host:
            waiter = ReadinessWaiter(host, s)
            sequencer = Sequencer(host, waiter=waiter, settings=s)

            for idx, step in enumerate(scenario.steps, start=1):
                label = step.name or step.action
                progress["current"] = {"index": idx, "action": step.action, "name": step.name}
                step_log = log_with_context(slog, step_index=idx, action=step.action)
                step_log.info(f"Step {idx}/{len(scenario.steps)}: {label}")

                record: Dict[str, Any] = {"index": idx, "action": step.action, "name": step.name}
                with Stopwatch() as sw:
                    try:
                        record.update(await self._execute_step(step, scenario, ctx, host, waiter, sequencer))
                    except (InteractionError, HostError, ValueError) as e:
                        record.update(status="failed", error=str(e), elapsed_ms=sw.elapsed_ms())
                        steps.append(record)
                        if step.optional or s.CONTINUE_ON_ERROR:
                            step_log.warning(f"Step failed but optional/continue_on_error set: {e}")
                            record["status"] = "warned"
                            continue
                        raise
                record.update(status="ok", elapsed_ms=sw.elapsed_ms())
                steps.append(record)

        progress.pop("current", None)

    async def _execute_step(
        self,
        step: Any,
        scenario: Scenario,
        ctx: ScenarioContext,
        host: PageHost,
        waiter: ReadinessWaiter,
        sequencer: Sequencer,
    ) -> Dict[str, Any]:
        if isinstance(step, StepGoto):
            return await self._goto(step, scenario, ctx, host, waiter)

        if isinstance(step, StepGoBack):
            return await self._go_back(step, scenario, ctx, host, waiter)

        if isinstance(step, StepPress) and step.target is None:
            key = ctx.resolve(step.key) or ""
            await self._page_action(lambda: host.press_key(key), f"key press {key}", step.wait_for, scenario, ctx, waiter)
            if step.remember_url:
                ctx.remember(step.remember_url, host.current_url())
            return {"key": key}

        if isinstance(step, InteractionStep):
            unit = self._unit_for(step, scenario, ctx)
            res = await sequencer.execute(unit, step.max_attempts)
            if step.remember_url:
                ctx.remember(step.remember_url, host.current_url())
            return {"attempts": res.attempts, "strategy": res.strategy, "skipped": res.skipped}

        if isinstance(step, StepWait):
            cond = step.condition.build(scenario.target, ctx, ctx.mode)
            await waiter.wait(cond, step.timeout_ms)
            return {"condition": cond.describe()}

        if isinstance(step, StepSleep):
            await waiter.wait(Delay(step.ms, step.reason))
            return {}

        if isinstance(step, StepAssertText):
            cond = ElementText(
                scenario.target(step.target),
                ctx.resolve(step.expect) or "",
                step.match,
                timeout_ms=step.timeout_ms,
                mode=ctx.mode,
            )
            await waiter.wait(cond)
            return {"condition": cond.describe()}

        if isinstance(step, StepAssertUrl):
            pattern = ctx.resolve(step.pattern) or ""
            cond = UrlMatches(re.compile(pattern) if step.regex else pattern, timeout_ms=step.timeout_ms)
            await waiter.wait(cond)
            return {"condition": cond.describe()}

        raise NotImplementedError(f"Unsupported action: {step.action}")

    def _absolute_url(self, url: str, scenario: Scenario) -> str:
        if url.startswith(("http://", "https://", "about:", "file:", "data:")):
            return url
        base = scenario.base_url or self.settings.BASE_URL
        if not base:
            raise ValueError(f"relative URL {url!r} needs base_url on the scenario or BASE_URL in settings")
        return base.rstrip("/") + "/" + url.lstrip("/")

    async def _goto(
        self,
        step: StepGoto,
        scenario: Scenario,
        ctx: ScenarioContext,
        host: PageHost,
        waiter: ReadinessWaiter,
    ) -> Dict[str, Any]:
        url = self._absolute_url(ctx.resolve(step.url) or "", scenario)
        await self._page_action(lambda: host.navigate(url), f"navigation to {url}", step.wait_for, scenario, ctx, waiter)
        if step.remember_url:
            ctx.remember(step.remember_url, host.current_url())
        return {"url": host.current_url()}

    async def _go_back(
        self,
        step: StepGoBack,
        scenario: Scenario,
        ctx: ScenarioContext,
        host: PageHost,
        waiter: ReadinessWaiter,
    ) -> Dict[str, Any]:
        await self._page_action(host.go_back, "history back", step.wait_for, scenario, ctx, waiter)
        if step.remember_url:
            ctx.remember(step.remember_url, host.current_url())
        return {"url": host.current_url()}

    async def _page_action(
        self,
        act: Callable[[], Any],
        label: str,
        wait_for: Any,
        scenario: Scenario,
        ctx: ScenarioContext,
        waiter: ReadinessWaiter,
    ) -> None:
        """Run a page-level action (no element to locate) with its post-condition armed first."""
        if wait_for is None:
            await act()
            return
        post = wait_for.build(scenario.target, ctx, ctx.mode)
        async with waiter.arm(post) as armed:
            await act()
            try:
                await armed.wait()
            except WaitTimeout as e:
                raise PostconditionTimeout(e.message, target=label, condition=post.describe()) from e

    def _unit_for(self, step: InteractionStep, scenario: Scenario, ctx: ScenarioContext) -> ActionUnit:
        kind = ActionKind(step.action)
        mode = step.mode or ctx.mode
        value = ctx.resolve(step.key if isinstance(step, StepPress) else getattr(step, "value", None))

        def build(spec):
            return spec.build(scenario.target, ctx, mode) if spec is not None else None

        return ActionUnit(
            target=scenario.target(step.target),
            kind=kind,
            value=value,
            pre=build(step.pre),
            post=build(step.wait_for),
            verify=self._verification_for(step.verify, kind, value, ctx),
            skip_if=build(step.skip_if),
            mode=mode,
            name=step.name,
        )

    @staticmethod
    def _verification_for(spec: Any, kind: ActionKind, value: Optional[str], ctx: ScenarioContext) -> Optional[Verification]:
        if spec is None or spec is False:
            return None
        if spec is True:
            if kind in (ActionKind.check, ActionKind.uncheck):
                return Verification(expected=kind == ActionKind.check, read=VerifyRead.checked)
            if kind == ActionKind.clear:
                return Verification(expected="")
            return Verification(expected=value)
        assert isinstance(spec, VerifySpec)
        expected = spec.expect if spec.expect is not None else value
        if isinstance(expected, str):
            expected = ctx.resolve(expected)
        return Verification(expected=expected, read=VerifyRead(spec.read), match=spec.match)


def run_scenario(scenario: Path | str | Scenario, settings: Optional[Settings] = None) -> dict:
    """Synchronous entry point: one event loop per call, so safe to use from worker threads."""
    sc = load_scenario(scenario) if isinstance(scenario, (str, Path)) else scenario
    runner = ScenarioRunner(settings=settings or get_settings())
    return asyncio.run(runner.run(sc))
