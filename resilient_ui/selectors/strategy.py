# resilient_ui/selectors/strategy.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

from resilient_ui.core.context import FormMode


class StrategyKind(str, Enum):
    test_id = "test_id"
    role = "role"
    label = "label"
    placeholder = "placeholder"
    text = "text"
    css = "css"
    xpath = "xpath"


@dataclass(frozen=True)
class LocatorStrategy:
    """
    One rule that turns a logical target into zero or more candidate elements.

    `value` and `name` accept `/pattern/` or `/pattern/i` for a regex match.
    `modes` restricts the rule to the given form modes (empty = always).
    """

    kind: StrategyKind
    value: str
    name: Optional[str] = None
    exact: bool = False
    modes: Tuple[FormMode, ...] = ()

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError(f"{self.kind.value} strategy needs a non-empty value")

    def applies_to(self, mode: Optional[FormMode]) -> bool:
        return not self.modes or mode is None or mode in self.modes

    def describe(self) -> str:
        if self.kind == StrategyKind.role and self.name:
            return f"role={self.value}[name={self.name!r}]"
        return f"{self.kind.value}={self.value}"

    def __str__(self) -> str:
        return self.describe()


# ---------- builders ----------

def by_test_id(value: str, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.test_id, value, **kw)


def by_role(role: str, name: Optional[str] = None, *, exact: bool = False, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.role, role, name=name, exact=exact, **kw)


def by_label(text: str, *, exact: bool = False, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.label, text, exact=exact, **kw)


def by_placeholder(text: str, *, exact: bool = False, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.placeholder, text, exact=exact, **kw)


def by_text(text: str, *, exact: bool = False, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.text, text, exact=exact, **kw)


def by_css(selector: str, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.css, selector, **kw)


def by_xpath(expr: str, **kw) -> LocatorStrategy:
    return LocatorStrategy(StrategyKind.xpath, expr, **kw)


def _parse_role_value(value: str) -> Tuple[str, Optional[str]]:
    """
    Accept a few simple role notations:

    - "button"                 → role="button"
    - "button|Save"            → role="button", name="Save"
    - "button name=Save"       → same as above (space syntax)

    Returns: (role, accessible_name_or_None)
    """
    v = value.strip()
    if "|" in v:
        role, name = v.split("|", 1)
        return role.strip(), name.strip() or None
    if " name=" in v:
        role, name = v.split(" name=", 1)
        return role.strip(), name.strip() or None
    return v, None


def parse_strategy(spec: str) -> LocatorStrategy:
    """
    Parse the `kind=value` shorthand used in scenario files, e.g.
    "test_id=save-btn", "role=button|Save", "css=button.primary".
    A string without a known prefix is treated as CSS.
    """
    kind, sep, rest = spec.partition("=")
    kind = kind.strip().lower().replace("-", "_")
    if not sep or kind not in StrategyKind.__members__:
        return by_css(spec.strip())
    if kind == StrategyKind.role.value:
        role, name = _parse_role_value(rest)
        return by_role(role, name)
    return LocatorStrategy(StrategyKind(kind), rest.strip())


# ---------- logical target ----------

@dataclass(frozen=True)
class Target:
    """A logical UI target ("the Save button") and the ordered rules that find it."""

    description: str
    strategies: Tuple[LocatorStrategy, ...]
    unique: bool = False

    def __post_init__(self) -> None:
        if not self.strategies:
            raise ValueError(f"target {self.description!r} needs at least one strategy")

    @classmethod
    def of(cls, description: str, *strategies: LocatorStrategy | str, unique: bool = False) -> "Target":
        rules = tuple(s if isinstance(s, LocatorStrategy) else parse_strategy(s) for s in strategies)
        return cls(description=description, strategies=rules, unique=unique)

    def for_mode(self, mode: Optional[FormMode]) -> Sequence[LocatorStrategy]:
        return [s for s in self.strategies if s.applies_to(mode)]

    def __str__(self) -> str:
        return self.description
