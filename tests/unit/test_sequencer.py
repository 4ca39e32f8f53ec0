import asyncio

import pytest

from resilient_ui.core.actions import (
    ActionKind,
    ActionUnit,
    Sequencer,
    Verification,
    click_and_wait_for_url,
    fill_and_verify,
    select_option_and_wait_for_network,
)
from resilient_ui.core.conditions import ElementState, NetworkResponse
from resilient_ui.core.errors import (
    ActionDispatchFailure,
    FailureCause,
    LocatorExhausted,
    Phase,
    PostconditionTimeout,
    PreconditionTimeout,
    VerificationMismatch,
)
from resilient_ui.selectors.strategy import Target, by_css, by_label, by_role, by_test_id

from conftest import FakeElement


LAST_NAME = Target.of("last name field", by_label("Last name"), by_css("input[name=lastName]"))


def test_fill_retries_once_on_stale_value_then_succeeds(host, settings):
    """The field keeps 'Smit' after the first fill; the retry reads back 'Smith'."""
    field = FakeElement("last-name", stale_fills=1)
    host.add(by_label("Last name"), field)
    seq = Sequencer(host, settings=settings)

    result = asyncio.run(seq.fill_and_verify(LAST_NAME, "Smith"))

    assert result.ok and result.attempts == 2
    assert field.value == "Smith"
    assert result.strategy == "label=Last name"
    assert Phase.retry in result.phases and result.phases[-1] == Phase.done


def test_fill_and_verify_twice_leaves_exactly_the_value(host, settings):
    field = FakeElement("last-name", value="Old")
    host.add(by_label("Last name"), field)
    seq = Sequencer(host, settings=settings)

    async def go():
        await seq.execute(fill_and_verify(LAST_NAME, "Smith"))
        await seq.execute(fill_and_verify(LAST_NAME, "Smith"))

    asyncio.run(go())
    assert field.value == "Smith"
    assert field.calls == ["clear", "fill:Smith", "clear", "fill:Smith"]


def test_click_waiting_for_url_fails_with_postcondition_timeout(host, settings):
    """The delete call fails with 500 so the app never navigates to the list."""
    host.url = "https://app.test/people/7"
    confirm = FakeElement(
        "confirm",
        on_click=lambda: host.later(10, lambda: host.emit("https://app.test/api/person/7", 500, "DELETE")),
    )
    host.add(by_test_id("confirm-delete"), confirm)
    seq = Sequencer(host, settings=settings)
    target = Target.of("delete confirm button", by_test_id("confirm-delete"))

    with pytest.raises(PostconditionTimeout) as ei:
        asyncio.run(seq.click_and_wait_for_url(target, "**/list", timeout_ms=200))

    err = ei.value
    assert err.target == "delete confirm button"
    assert err.condition == "URL matches **/list"
    assert err.result.cause == FailureCause.postcondition_timeout
    # not retried: a second click could delete something else
    assert confirm.clicks == 1 and err.result.attempts == 1
    assert "delete confirm button" in str(err) and "URL matches **/list" in str(err)


def test_click_waiting_for_url_succeeds_on_navigation(host, settings):
    host.url = "https://app.test/people/7"
    confirm = FakeElement("confirm", on_click=lambda: host.later(20, lambda: setattr(host, "url", "https://app.test/people/list")))
    host.add(by_test_id("confirm-delete"), confirm)
    seq = Sequencer(host, settings=settings)

    result = asyncio.run(seq.click_and_wait_for_url(Target.of("delete confirm button", by_test_id("confirm-delete")), "**/list", timeout_ms=500))
    assert result.ok and result.attempts == 1
    assert Phase.waiting_post in result.phases


def test_select_arms_network_wait_before_acting(host, settings):
    """The response is emitted synchronously inside the select call and still observed."""
    country = FakeElement(
        "country",
        on_select=lambda v: host.emit(f"https://app.test/api/regions?country={v}", 200, "GET"),
    )
    host.add(by_role("combobox", "Country"), country)
    seq = Sequencer(host, settings=settings)
    target = Target.of("country dropdown", by_role("combobox", "Country"))

    result = asyncio.run(seq.select_option_and_wait_for_network(target, "DE", "/api/regions", method="GET", timeout_ms=300))
    assert result.ok
    assert result.response is not None and "country=DE" in result.response.url
    assert host.subscriptions == []


def test_unresolvable_target_is_retried_then_exhausted(host, settings):
    seq = Sequencer(host, settings=settings)
    unit = ActionUnit(Target.of("Save button", by_test_id("save")), ActionKind.click)

    with pytest.raises(LocatorExhausted) as ei:
        asyncio.run(seq.execute(unit, max_attempts=2))
    assert ei.value.result.attempts == 2
    assert ei.value.attempt == 2 and ei.value.max_attempts == 2
    assert "(attempt 2/2)" in str(ei.value)


@pytest.mark.parametrize("max_attempts", [1, 3])
def test_retry_count_is_bounded(host, settings, max_attempts):
    button = FakeElement("save", fail_clicks=10)
    host.add(by_test_id("save"), button)
    seq = Sequencer(host, settings=settings)
    unit = ActionUnit(Target.of("Save button", by_test_id("save")), ActionKind.click)

    with pytest.raises(ActionDispatchFailure) as ei:
        asyncio.run(seq.execute(unit, max_attempts=max_attempts))
    assert 1 <= ei.value.result.attempts == max_attempts
    assert button.calls.count("click") == max_attempts


def test_transient_dispatch_failure_recovers(host, settings):
    button = FakeElement("save", fail_clicks=1)
    host.add(by_test_id("save"), button)
    seq = Sequencer(host, settings=settings)

    result = asyncio.run(seq.execute(ActionUnit(Target.of("Save button", by_test_id("save")), "click")))
    assert result.ok and result.attempts == 2 and button.clicks == 1


def test_verification_mismatch_is_bounded_by_verify_retries(host, settings):
    field = FakeElement("last-name", stale_fills=5)
    host.add(by_label("Last name"), field)
    seq = Sequencer(host, settings=settings)

    with pytest.raises(VerificationMismatch) as ei:
        asyncio.run(seq.execute(fill_and_verify(LAST_NAME, "Smith"), max_attempts=3))
    err = ei.value
    # VERIFY_RETRIES=1: one retry after the first mismatch
    assert err.result.attempts == 2
    assert err.expected == "Smith" and err.actual == "Smit"


def test_disabled_button_raises_precondition_timeout_without_clicking(host, settings):
    button = FakeElement("save", enabled=False)
    host.add(by_test_id("save"), button)
    short = settings.model_copy(update={"DEFAULT_TIMEOUT_MS": 100})
    seq = Sequencer(host, settings=short)

    with pytest.raises(PreconditionTimeout) as ei:
        asyncio.run(seq.execute(ActionUnit(Target.of("Save button", by_test_id("save")), ActionKind.click)))
    assert button.calls == []
    assert ei.value.result.attempts == 1
    assert "Save button is enabled" in ei.value.condition


def test_check_is_a_no_op_when_already_checked(host, settings):
    box = FakeElement("terms", checked=True)
    host.add(by_test_id("terms"), box)
    seq = Sequencer(host, settings=settings)
    target = Target.of("terms checkbox", by_test_id("terms"))

    async def go():
        await seq.execute(ActionUnit(target, ActionKind.check, verify=Verification(True, read="checked")))
        await seq.execute(ActionUnit(target, ActionKind.check))

    asyncio.run(go())
    assert box.toggles == 0 and box.checked


def test_skip_if_short_circuits_the_unit(host, settings):
    host.add(by_css(".banner-closed"), FakeElement("marker"))
    close = FakeElement("close")
    host.add(by_test_id("close-banner"), close)
    seq = Sequencer(host, settings=settings)
    unit = ActionUnit(
        Target.of("close banner button", by_test_id("close-banner")),
        ActionKind.click,
        skip_if=ElementState(Target.of("closed banner", by_css(".banner-closed")), "attached", timeout_ms=10),
    )

    result = asyncio.run(seq.execute(unit))
    assert result.ok and result.skipped and close.clicks == 0


def test_phases_follow_the_state_machine(host, settings):
    field = FakeElement("last-name")
    host.add(by_label("Last name"), field)
    seq = Sequencer(host, settings=settings)
    unit = ActionUnit(
        LAST_NAME,
        ActionKind.fill,
        value="Smith",
        post=NetworkResponse("/api/validate", timeout_ms=300),
        verify=Verification("Smith"),
    )

    async def go():
        task = asyncio.ensure_future(seq.execute(unit))
        await asyncio.sleep(0.05)
        host.emit("https://app.test/api/validate")
        return await task

    result = asyncio.run(go())
    assert result.phases == [
        Phase.pending,
        Phase.locating,
        Phase.waiting_pre,
        Phase.acting,
        Phase.waiting_post,
        Phase.verifying,
        Phase.done,
    ]


def test_fill_requires_a_value():
    with pytest.raises(ValueError):
        ActionUnit(LAST_NAME, ActionKind.fill)
    with pytest.raises(ValueError):
        ActionUnit(LAST_NAME, ActionKind.press)


def test_press_escape_closes_dropdown_and_waits_for_it_to_hide(host, settings):
    """Escape on the open state dropdown; the panel goes away a little later."""
    panel = FakeElement("options panel")
    host.add(by_css(".mat-select-panel"), panel)
    dropdown = FakeElement(
        "state dropdown",
        on_press=lambda key: host.later(30, lambda: setattr(panel, "visible", False)) if key == "Escape" else None,
    )
    host.add(by_test_id("state"), dropdown)
    seq = Sequencer(host, settings=settings)
    panel_target = Target.of("state options", by_css(".mat-select-panel"))

    result = asyncio.run(seq.execute(ActionUnit(
        Target.of("state dropdown", by_test_id("state")),
        ActionKind.press,
        value="Escape",
        post=ElementState(panel_target, "hidden", timeout_ms=500),
    )))

    assert result.ok and result.attempts == 1
    assert dropdown.calls == ["press:Escape"]
    assert panel.visible is False
