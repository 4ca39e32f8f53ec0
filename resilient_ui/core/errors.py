# resilient_ui/core/errors.py
from __future__ import annotations

"""Failure taxonomy
-------------------
Typed errors raised by the waiter, locator and sequencer. Every message names
the logical target, the condition or verification that failed and the attempt
count, so a failure can be read without the raw automation stack trace.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional


class FailureCause(str, Enum):
    locator_exhausted = "LocatorExhausted"
    precondition_timeout = "PreconditionTimeout"
    postcondition_timeout = "PostconditionTimeout"
    verification_mismatch = "VerificationMismatch"
    action_dispatch_failure = "ActionDispatchFailure"


class Phase(str, Enum):
    pending = "PENDING"
    locating = "LOCATING"
    waiting_pre = "WAITING_PRE"
    acting = "ACTING"
    waiting_post = "WAITING_POST"
    verifying = "VERIFYING"
    retry = "RETRY"
    done = "DONE"
    failed = "FAILED"


@dataclass
class AttemptResult:
    """Outcome of one ActionUnit execution. Used for logging and propagation only."""

    ok: bool
    attempts: int
    target: str
    cause: Optional[FailureCause] = None
    phases: List[Phase] = field(default_factory=list)
    strategy: Optional[str] = None
    elapsed_ms: int = 0
    skipped: bool = False
    response: Any = None

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "attempts": self.attempts,
            "target": self.target,
            "cause": self.cause.value if self.cause else None,
            "strategy": self.strategy,
            "elapsed_ms": self.elapsed_ms,
            "skipped": self.skipped,
        }


class HostError(RuntimeError):
    """The host automation engine rejected a primitive (stale element, detached frame, ...)."""


class InteractionError(RuntimeError):
    """Base class of every typed failure surfaced to test code."""

    cause: Optional[FailureCause] = None

    def __init__(
        self,
        message: str,
        *,
        target: Optional[str] = None,
        condition: Optional[str] = None,
        attempt: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.target = target
        self.condition = condition
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.result: Optional[AttemptResult] = None

    def __str__(self) -> str:
        parts = [self.message]
        if self.target:
            parts.insert(0, f"{self.target}:")
        if self.attempt is not None:
            total = f"/{self.max_attempts}" if self.max_attempts else ""
            parts.append(f"(attempt {self.attempt}{total})")
        return " ".join(parts)


class WaitTimeout(InteractionError):
    """A condition did not hold within its timeout."""

    def __init__(self, condition: str, timeout_ms: int, **kw: Any) -> None:
        super().__init__(
            f"condition '{condition}' not met within {timeout_ms} ms",
            condition=condition,
            **kw,
        )
        self.timeout_ms = timeout_ms


class PreconditionTimeout(InteractionError):
    cause = FailureCause.precondition_timeout


class PostconditionTimeout(InteractionError):
    cause = FailureCause.postcondition_timeout


class LocatorExhausted(InteractionError):
    cause = FailureCause.locator_exhausted

    def __init__(self, target: str, tried: List[str], **kw: Any) -> None:
        listing = "\n  ".join(tried or ["<no strategy applies>"])
        super().__init__(f"no strategy matched a visible element. Tried:\n  {listing}", target=target, **kw)
        self.tried = list(tried)


class VerificationMismatch(InteractionError):
    cause = FailureCause.verification_mismatch

    def __init__(self, target: str, verification: str, expected: Any, actual: Any, **kw: Any) -> None:
        super().__init__(
            f"verification '{verification}' failed: expected {expected!r}, got {actual!r}",
            target=target,
            condition=verification,
            **kw,
        )
        self.expected = expected
        self.actual = actual


class ActionDispatchFailure(InteractionError):
    cause = FailureCause.action_dispatch_failure


class ScenarioTimeout(InteractionError):
    """The scenario's wall-clock budget ran out; the browser session is torn down."""
