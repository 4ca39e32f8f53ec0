import asyncio
import logging

import pytest

from resilient_ui.core.context import FormMode
from resilient_ui.core.errors import LocatorExhausted
from resilient_ui.selectors.locator import FallbackLocator
from resilient_ui.selectors.strategy import Target, by_css, by_role, by_test_id

from conftest import FakeElement


def test_falls_back_to_second_strategy_and_logs_the_first_failure(host, settings, caplog):
    """Only the role strategy matches: its handle wins and strategy 1 is logged as failed."""
    save = FakeElement("save-by-role")
    host.add(by_role("button", "Save"), save)
    locator = FallbackLocator(host, settings=settings)
    target = Target.of("Save button", by_test_id("x"), by_role("button", "Save"))

    with caplog.at_level(logging.DEBUG, logger="resilient_ui"):
        resolved = asyncio.run(locator.resolve(target, timeout_ms=1000))

    assert resolved.handle is save
    assert resolved.strategy == by_role("button", "Save")
    assert resolved.index == 1 and resolved.attempts == 2
    assert "test_id=x failed" in caplog.text


def test_first_matching_strategy_wins_and_later_ones_are_never_probed(host, settings):
    first, second = FakeElement("first"), FakeElement("second")
    host.add(by_test_id("save"), first)
    host.add(by_css("button.save"), second)
    locator = FallbackLocator(host, settings=settings)
    target = Target.of("Save button", by_test_id("save"), by_css("button.save"))

    resolved = asyncio.run(locator.resolve(target))
    assert resolved.handle is first
    assert "css=button.save" not in host.lookups


def test_strategy_that_appears_within_its_probe_window_wins(host, settings):
    late = FakeElement("late", visible=False)
    host.add(by_test_id("save"), late)
    locator = FallbackLocator(host, settings=settings)
    target = Target.of("Save button", by_test_id("save"), by_css("button.save"))

    async def go():
        host.later(30, lambda: setattr(late, "visible", True))
        return await locator.resolve(target, timeout_ms=1000)

    assert asyncio.run(go()).handle is late


def test_exhaustion_lists_every_strategy(host, settings):
    host.add(by_css("button.save"), FakeElement("hidden", visible=False))
    locator = FallbackLocator(host, settings=settings)
    target = Target.of("Save button", by_test_id("save"), by_css("button.save"))

    with pytest.raises(LocatorExhausted) as ei:
        asyncio.run(locator.resolve(target, timeout_ms=1000))

    err = ei.value
    assert err.target == "Save button"
    assert len(err.tried) == 2
    assert err.tried[0].startswith("test_id=save")
    assert err.tried[1].startswith("css=button.save")
    assert "Save button:" in str(err)


def test_ambiguous_match_fails_the_strategy_when_uniqueness_requested(host, settings):
    host.add(by_css("button"), FakeElement("a"), FakeElement("b"))
    only = FakeElement("only")
    host.add(by_test_id("save"), only)
    locator = FallbackLocator(host, settings=settings)

    loose = Target.of("Save button", by_css("button"), by_test_id("save"))
    assert asyncio.run(locator.resolve(loose)).handle.name == "a"

    strict = Target.of("Save button", by_css("button"), by_test_id("save"), unique=True)
    resolved = asyncio.run(locator.resolve(strict))
    assert resolved.handle is only

    strict_only = Target.of("Save button", by_css("button"), unique=True)
    with pytest.raises(LocatorExhausted) as ei:
        asyncio.run(locator.resolve(strict_only))
    assert "ambiguous: 2 elements match" in ei.value.tried[0]


def test_probing_never_touches_the_elements(host, settings):
    hidden = FakeElement("hidden", visible=False)
    host.add(by_test_id("save"), hidden)
    host.add(by_css("button.save"), FakeElement("visible"))
    locator = FallbackLocator(host, settings=settings)

    asyncio.run(locator.resolve(Target.of("Save button", by_test_id("save"), by_css("button.save"))))
    assert hidden.calls == []


def test_mode_filters_strategies(host, settings):
    create, update = FakeElement("create"), FakeElement("update")
    host.add(by_test_id("create"), create)
    host.add(by_test_id("update"), update)
    locator = FallbackLocator(host, settings=settings)
    target = Target.of(
        "submit button",
        by_test_id("create", modes=(FormMode.add,)),
        by_test_id("update", modes=(FormMode.edit,)),
    )

    assert asyncio.run(locator.resolve(target, mode=FormMode.edit)).handle is update
    assert asyncio.run(locator.resolve(target, mode=FormMode.add)).handle is create


def test_zero_budget_looks_at_each_strategy_once(host, settings):
    field = FakeElement("last name")
    host.add(by_css("input.last"), field)
    locator = FallbackLocator(host, settings=settings)
    target = Target.of("last name", by_test_id("last-name"), by_css("input.last"))

    resolved = asyncio.run(locator.resolve(target, timeout_ms=0))
    assert resolved.handle is field
    assert host.lookups == ["test_id=last-name", "css=input.last"]

    missing = Target.of("middle name", by_test_id("middle-name"))
    with pytest.raises(LocatorExhausted):
        asyncio.run(locator.resolve(missing, timeout_ms=0))
