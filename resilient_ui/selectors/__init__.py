# resilient_ui/selectors/__init__.py
"""
Selectors package
-----------------
Logical targets and their ordered locator strategies. The fallback locator
lives in `resilient_ui.selectors.locator` (import it directly; it depends on
the core waiter).
"""

from .strategy import (
    LocatorStrategy,
    StrategyKind,
    Target,
    by_css,
    by_label,
    by_placeholder,
    by_role,
    by_test_id,
    by_text,
    by_xpath,
    parse_strategy,
)

__all__ = [
    "LocatorStrategy",
    "StrategyKind",
    "Target",
    "by_css",
    "by_label",
    "by_placeholder",
    "by_role",
    "by_test_id",
    "by_text",
    "by_xpath",
    "parse_strategy",
]
