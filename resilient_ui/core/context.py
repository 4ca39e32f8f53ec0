# resilient_ui/core/context.py
from __future__ import annotations

"""Per-scenario context
-----------------------
Explicit state for one scenario: test data for placeholder substitution and
the form mode chosen by the scenario. Created when a scenario starts and
dropped when it ends; nothing here is shared between scenarios.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class FormMode(str, Enum):
    add = "add"
    edit = "edit"


_PLACEHOLDER = re.compile(r"<([A-Z][A-Z0-9_]*)>")


@dataclass
class ScenarioContext:
    name: str
    mode: Optional[FormMode] = None
    data: Dict[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    # values captured by steps (e.g. the URL after a save) for later steps
    captured: Dict[str, Any] = field(default_factory=dict)

    def resolve(self, text: Optional[str]) -> Optional[str]:
        """
        Replace `<KEY>` placeholders from scenario data, captured values, then the
        environment. Unknown placeholders are left untouched so the failure
        message still shows what was asked for.
        """
        if text is None:
            return None

        def repl(m: re.Match) -> str:
            key = m.group(1)
            for source in (self.captured, self.data, self.env):
                if key in source and source[key] is not None:
                    return str(source[key])
            return m.group(0)

        return _PLACEHOLDER.sub(repl, text)

    def remember(self, key: str, value: Any) -> None:
        self.captured[key] = value
