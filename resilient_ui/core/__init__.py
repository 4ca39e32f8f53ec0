"""
Core package for the resilient interaction engine.
Lightweight package init to avoid import cycles.

Consumers should import submodules directly, e.g.:
  from resilient_ui.core.waiter import ReadinessWaiter
  from resilient_ui.core.actions import Sequencer, fill_and_verify
  from resilient_ui.core.engine import ScenarioRunner, run_scenario
"""

__all__: list[str] = []
