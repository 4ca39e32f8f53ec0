# resilient_ui/core/scenario_loader.py
from __future__ import annotations

"""Scenario schema and loader
-----------------------------
Defines the pydantic models for targets, conditions and steps and loads YAML
scenarios (multi-document files supported). `${VAR}` is substituted from the
environment at load time; `<KEY>` placeholders are left for the runner, which
resolves them from the per-scenario context.
"""

import os
import re
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.functional_validators import BeforeValidator

from resilient_ui.core.conditions import (
    Composite,
    Condition,
    Delay,
    ElementState,
    ElementStateKind,
    ElementText,
    LoadState,
    MatchMode,
    NetworkResponse,
    ScriptCondition,
    UrlMatches,
)
from resilient_ui.core.context import FormMode, ScenarioContext
from resilient_ui.selectors.strategy import LocatorStrategy, StrategyKind, Target, parse_strategy
from resilient_ui.utils.logger import get_logger

log = get_logger(__name__)


# ---------- Helpers ----------


def _to_abs_path(p: str | Path) -> Path:
    pth = Path(p) if not isinstance(p, Path) else p
    return pth if pth.is_absolute() else Path.cwd() / pth


AbsPath = Annotated[Path, BeforeValidator(_to_abs_path)]

_ENV_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _subst_env(obj: Any) -> Any:
    """Replace ${VAR} in every string; unknown variables are left as written."""
    if isinstance(obj, str):
        return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, list):
        return [_subst_env(x) for x in obj]
    if isinstance(obj, dict):
        return {k: _subst_env(v) for k, v in obj.items()}
    return obj


def _non_empty(v: str, what: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{what} cannot be empty")
    return v


# ---------- Targets ----------


class StrategySpec(BaseModel):
    """
    One locator rule. Written either as the `kind=value` shorthand
    ("test_id=save", "role=button|Save") or as a one-key mapping with options:

        - role: button
          name: Save
          exact: true
          modes: [edit]
    """

    model_config = ConfigDict(extra="forbid")

    kind: StrategyKind
    value: str
    name: Optional[str] = None
    exact: bool = False
    modes: List[FormMode] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            s = parse_strategy(data)
            return {"kind": s.kind, "value": s.value, "name": s.name}
        if isinstance(data, dict) and "kind" not in data:
            kinds = [k for k in data if k in StrategyKind.__members__]
            if len(kinds) != 1:
                raise ValueError(f"a strategy needs exactly one of: {', '.join(StrategyKind.__members__)}")
            data = dict(data)
            data["value"] = data.pop(kinds[0])
            data["kind"] = kinds[0]
        return data

    def build(self) -> LocatorStrategy:
        return LocatorStrategy(self.kind, self.value, name=self.name, exact=self.exact, modes=tuple(self.modes))


class TargetSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    strategies: List[StrategySpec] = Field(..., min_length=1)
    unique: bool = False

    def build(self, name: str) -> Target:
        return Target(
            description=self.description or name,
            strategies=tuple(s.build() for s in self.strategies),
            unique=self.unique,
        )


# a step or condition refers to a named target, or declares one inline
TargetRef = Union[str, TargetSpec]
TargetResolver = Callable[[TargetRef], Target]


# ---------- Conditions ----------


class _CondBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_ms: Optional[int] = Field(default=None, ge=0)


class ElementCond(_CondBase):
    target: TargetRef
    state: ElementStateKind = ElementStateKind.visible


class TextCond(_CondBase):
    target: TargetRef
    expect: str
    match: MatchMode = MatchMode.contains


class UrlCond(_CondBase):
    pattern: str
    regex: bool = Field(default=False, description="Treat pattern as a regex instead of a glob")


class ResponseCond(_CondBase):
    url: str = Field(..., description="Substring of the response URL")
    method: Optional[str] = None
    # int, [lo, hi] inclusive range, or null for any status
    status: Optional[Union[int, Tuple[int, int]]] = 200


LoadStateName = Literal["load", "domcontentloaded", "networkidle"]


class LoadStateCond(_CondBase):
    state: LoadStateName = "networkidle"


class ScriptCond(_CondBase):
    script: str
    description: Optional[str] = None


class DelayCond(_CondBase):
    ms: int = Field(..., ge=0)
    reason: str

    @field_validator("reason")
    @classmethod
    def _reason(cls, v: str) -> str:
        return _non_empty(v, "delay.reason")


_CONDITION_KEYS = ("element", "text", "url", "response", "load_state", "script", "delay", "all", "any")


class ConditionSpec(BaseModel):
    """A condition written as a one-key mapping, e.g. `{url: "**/list"}`."""

    model_config = ConfigDict(extra="forbid")

    element: Optional[ElementCond] = None
    text: Optional[TextCond] = None
    url: Optional[Union[str, UrlCond]] = None
    response: Optional[ResponseCond] = None
    load_state: Optional[Union[LoadStateName, LoadStateCond]] = None
    script: Optional[Union[str, ScriptCond]] = None
    delay: Optional[DelayCond] = None
    all: Optional[List["ConditionSpec"]] = None
    any: Optional[List["ConditionSpec"]] = None
    # only meaningful on all/any
    timeout_ms: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _exactly_one(self) -> "ConditionSpec":
        present = [k for k in _CONDITION_KEYS if getattr(self, k) is not None]
        if len(present) != 1:
            raise ValueError(f"a condition needs exactly one of: {', '.join(_CONDITION_KEYS)} (got {present or 'none'})")
        if self.timeout_ms is not None and present[0] not in ("all", "any"):
            raise ValueError("put timeout_ms inside the condition body")
        for k in ("all", "any"):
            children = getattr(self, k)
            if children is not None and not children:
                raise ValueError(f"'{k}' needs at least one condition")
        return self

    def target_refs(self) -> Iterator[TargetRef]:
        if self.element is not None:
            yield self.element.target
        if self.text is not None:
            yield self.text.target
        for child in (self.all or []) + (self.any or []):
            yield from child.target_refs()

    def build(self, resolve_target: TargetResolver, ctx: ScenarioContext, mode: Optional[FormMode] = None) -> Condition:
        r = ctx.resolve
        if self.element is not None:
            c = self.element
            return ElementState(resolve_target(c.target), c.state, timeout_ms=c.timeout_ms, mode=mode)
        if self.text is not None:
            c = self.text
            return ElementText(resolve_target(c.target), r(c.expect), c.match, timeout_ms=c.timeout_ms, mode=mode)
        if self.url is not None:
            u = self.url if isinstance(self.url, UrlCond) else UrlCond(pattern=self.url)
            pattern = r(u.pattern)
            return UrlMatches(re.compile(pattern) if u.regex else pattern, timeout_ms=u.timeout_ms)
        if self.response is not None:
            c = self.response
            status = tuple(c.status) if isinstance(c.status, (list, tuple)) else c.status
            return NetworkResponse(r(c.url), method=c.method, status=status, timeout_ms=c.timeout_ms)
        if self.load_state is not None:
            ls = self.load_state if isinstance(self.load_state, LoadStateCond) else LoadStateCond(state=self.load_state)
            return LoadState(ls.state, timeout_ms=ls.timeout_ms)
        if self.script is not None:
            sc = self.script if isinstance(self.script, ScriptCond) else ScriptCond(script=self.script)
            return ScriptCondition(sc.script, description=sc.description, timeout_ms=sc.timeout_ms)
        if self.delay is not None:
            return Delay(self.delay.ms, self.delay.reason, timeout_ms=self.delay.timeout_ms)
        op = "and" if self.all is not None else "or"
        children = [c.build(resolve_target, ctx, mode) for c in (self.all or self.any or [])]
        return Composite(tuple(children), op=op, timeout_ms=self.timeout_ms)


ConditionSpec.model_rebuild()


class VerifySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expect: Optional[Any] = Field(default=None, description="Defaults to the step's value")
    read: Literal["input_value", "text", "checked"] = "input_value"
    match: MatchMode = MatchMode.exact


# ---------- Step models (discriminated union by 'action') ----------


class StepBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, description="Human-friendly step label")
    optional: bool = Field(default=False, description="If true, log the failure as a warning and continue")

    def target_refs(self) -> Iterator[TargetRef]:
        return iter(())


class StepGoto(StepBase):
    action: Literal["goto"]
    url: str = Field(..., description="Absolute URL, or a path joined to base_url")
    wait_for: Optional[ConditionSpec] = None
    remember_url: Optional[str] = Field(default=None, description="Store the URL reached under this key")

    @field_validator("url")
    @classmethod
    def _url(cls, v: str) -> str:
        return _non_empty(v, "goto.url")

    def target_refs(self) -> Iterator[TargetRef]:
        if self.wait_for is not None:
            yield from self.wait_for.target_refs()


class _InteractionStep(StepBase):
    target: TargetRef
    pre: Optional[ConditionSpec] = None
    wait_for: Optional[ConditionSpec] = Field(default=None, description="Post-condition, armed before acting")
    skip_if: Optional[ConditionSpec] = None
    verify: Optional[Union[bool, VerifySpec]] = None
    mode: Optional[FormMode] = Field(default=None, description="Overrides the scenario's form mode")
    max_attempts: Optional[int] = Field(default=None, ge=1)
    remember_url: Optional[str] = None

    @model_validator(mode="after")
    def _verify_has_expectation(self) -> "_InteractionStep":
        # click and press leave no value behind to compare against
        if self.action not in ("click", "press"):
            return self
        if self.verify is True:
            raise ValueError(f"verify: true needs an expectation on {self.action}; use verify: {{expect: ..., read: ...}}")
        if isinstance(self.verify, VerifySpec) and self.verify.expect is None:
            raise ValueError(f"verify.expect is required on {self.action}")
        return self

    def target_refs(self) -> Iterator[TargetRef]:
        if self.target is not None:
            yield self.target
        for c in (self.pre, self.wait_for, self.skip_if):
            if c is not None:
                yield from c.target_refs()


class StepClick(_InteractionStep):
    action: Literal["click"]


class StepFill(_InteractionStep):
    action: Literal["fill"]
    value: str


class StepSelect(_InteractionStep):
    action: Literal["select"]
    value: str


class StepClear(_InteractionStep):
    action: Literal["clear"]


class StepCheck(_InteractionStep):
    action: Literal["check"]


class StepUncheck(_InteractionStep):
    action: Literal["uncheck"]


class StepPress(_InteractionStep):
    action: Literal["press"]
    key: str = Field(..., description="Playwright key name, e.g. 'Escape', 'Enter', 'Control+A'")
    target: Optional[TargetRef] = Field(default=None, description="Element to press on; omit to press on the page")

    @field_validator("key")
    @classmethod
    def _key(cls, v: str) -> str:
        return _non_empty(v, "press.key")

    @model_validator(mode="after")
    def _page_press_has_no_element_options(self) -> "StepPress":
        if self.target is None:
            extra = [f for f in ("pre", "skip_if", "verify", "max_attempts") if getattr(self, f) is not None]
            if extra:
                raise ValueError(f"press without a target does not take {', '.join(extra)}")
        return self


class StepGoBack(StepBase):
    action: Literal["go_back"]
    wait_for: Optional[ConditionSpec] = None
    remember_url: Optional[str] = None

    def target_refs(self) -> Iterator[TargetRef]:
        if self.wait_for is not None:
            yield from self.wait_for.target_refs()


class StepWait(StepBase):
    action: Literal["wait"]
    condition: ConditionSpec
    timeout_ms: Optional[int] = Field(default=None, ge=0)

    def target_refs(self) -> Iterator[TargetRef]:
        return self.condition.target_refs()


class StepSleep(StepBase):
    action: Literal["sleep"]
    ms: int = Field(..., ge=0)
    reason: str = Field(..., description="Why no observable signal can be waited for instead")

    @field_validator("reason")
    @classmethod
    def _reason(cls, v: str) -> str:
        return _non_empty(v, "sleep.reason")


class StepAssertText(StepBase):
    action: Literal["assert_text"]
    target: TargetRef
    expect: str
    match: MatchMode = MatchMode.contains
    timeout_ms: Optional[int] = Field(default=None, ge=0)

    def target_refs(self) -> Iterator[TargetRef]:
        yield self.target


class StepAssertUrl(StepBase):
    action: Literal["assert_url"]
    pattern: str
    regex: bool = False
    timeout_ms: Optional[int] = Field(default=None, ge=0)


Step = Annotated[
    Union[
        StepGoto,
        StepClick,
        StepFill,
        StepSelect,
        StepClear,
        StepCheck,
        StepUncheck,
        StepPress,
        StepGoBack,
        StepWait,
        StepSleep,
        StepAssertText,
        StepAssertUrl,
    ],
    Field(discriminator="action"),
]

InteractionStep = _InteractionStep


# ---------- Scenario model ----------


class Scenario(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1")
    name: str = Field(..., description="Scenario name, e.g. 'add_person'")
    app: str = Field(default="default", description="Application key, groups run output")
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    base_url: Optional[str] = Field(default=None, description="Overrides BASE_URL for relative goto URLs")
    mode: Optional[FormMode] = Field(default=None, description="Form mode for mode-specific strategies")
    timeout_ms: Optional[int] = Field(default=None, ge=1, description="Wall-clock budget, overrides SCENARIO_TIMEOUT_MS")
    storage_state: Optional[AbsPath] = Field(default=None, description="Playwright storage state to start from")

    data: Dict[str, Any] = Field(default_factory=dict, description="Values for <KEY> placeholders")
    targets: Dict[str, TargetSpec] = Field(default_factory=dict)
    steps: List[Step] = Field(..., min_length=1)

    source: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("name", "app")
    @classmethod
    def _strip(cls, v: str, info) -> str:
        return _non_empty(v, info.field_name)

    @model_validator(mode="after")
    def _targets_exist(self) -> "Scenario":
        for idx, step in enumerate(self.steps, start=1):
            for ref in step.target_refs():
                if isinstance(ref, str) and ref not in self.targets:
                    raise ValueError(f"step {idx} ({step.action}) refers to unknown target {ref!r}")
        return self

    def target(self, ref: TargetRef) -> Target:
        if isinstance(ref, str):
            return self.targets[ref].build(ref)
        return ref.build(ref.description or "inline target")

    @property
    def label(self) -> str:
        return f"{self.app}/{self.name}"

    def matches(self, app: Optional[str] = None, tags: Optional[Iterable[str]] = None) -> bool:
        """True when the scenario belongs to `app` and carries any of `tags` (unset filters match all)."""
        if app and self.app != app:
            return False
        wanted = set(tags or ())
        return not wanted or bool(wanted.intersection(self.tags))


# ---------- Public API ----------


def _format_errors(header: str, ve: ValidationError) -> str:
    lines = [header]
    for e in ve.errors():
        loc = ".".join(str(p) for p in e.get("loc", []))
        msg = e.get("msg", "invalid value")
        lines.append(f"  - {loc}: {msg}")
    return "\n".join(lines)


def _validate(data: Any, path: Path, where: str) -> Scenario:
    if not isinstance(data, dict):
        raise ValueError(f"{where} in {path} must be a mapping/object.")
    try:
        sc = Scenario.model_validate(_subst_env(data))
    except ValidationError as ve:
        raise ValueError(_format_errors(f"Invalid scenario '{path}' ({where}):", ve)) from ve
    sc.source = path
    return sc


def load_scenarios_file(path: Path | str) -> List[Scenario]:
    """Load one or more scenarios from a YAML file (supports multi-document)."""
    sc_path = Path(path)
    if not sc_path.exists():
        raise FileNotFoundError(f"Scenario file not found: {sc_path}")
    try:
        docs = list(yaml.safe_load_all(sc_path.read_text(encoding="utf-8")))
    except yaml.YAMLError as ye:
        raise ValueError(f"YAML parse error in {sc_path}: {ye}") from ye

    out = [_validate(data, sc_path, f"document {idx}") for idx, data in enumerate(docs, start=1) if data is not None]
    if not out:
        raise ValueError(f"No scenario documents found in {sc_path}")
    return out


def load_scenario(path: Path | str) -> Scenario:
    """Load a file holding exactly one scenario."""
    scenarios = load_scenarios_file(path)
    if len(scenarios) != 1:
        raise ValueError(f"{path} holds {len(scenarios)} scenarios; use load_scenarios_file")
    return scenarios[0]


def find_scenario_files(root: Path, recursive: bool = True) -> List[Path]:
    pattern = "**/*" if recursive else "*"
    return sorted(p for p in root.glob(pattern) if p.suffix in (".yaml", ".yml") and p.is_file())


class ScenarioLoader:
    def load_directory(
        self,
        root: Path,
        *,
        recursive: bool = True,
        filter_app: Optional[str] = None,
        tags: Optional[List[str]] = None,
        strict: bool = False,
    ) -> List[Scenario]:
        """
        Load every scenario under `root`. Invalid files are logged and skipped
        unless `strict` is set. `tags` keeps scenarios carrying any of them.
        """
        scenarios: List[Scenario] = []
        for fp in find_scenario_files(Path(root), recursive=recursive):
            try:
                loaded = load_scenarios_file(fp)
            except ValueError as e:
                if strict:
                    raise
                log.warning(f"Skipping {fp}: {e}")
                continue
            scenarios.extend(sc for sc in loaded if sc.matches(filter_app, tags))
        return scenarios


__all__ = [
    "StrategySpec",
    "TargetSpec",
    "ConditionSpec",
    "VerifySpec",
    "Step",
    "InteractionStep",
    "Scenario",
    "ScenarioLoader",
    "find_scenario_files",
    "load_scenario",
    "load_scenarios_file",
]
