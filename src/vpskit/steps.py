"""Step and run-report data model for the provisioning sequencer."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from vpskit.hoststate import HostState

class FailurePolicy(str, Enum):
    FATAL = "fatal"
    WARN = "warn-and-continue"

class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    WARNED = "warned"
    FAILED = "failed"

@dataclass(frozen=True)
class Step:
    """One idempotent unit of host configuration.

    ``check`` is a pure predicate over a ``HostState`` snapshot; when it
    holds, the step's target state is already reached and ``action`` is
    not run. ``action(host, ctx)`` raises ``CommandError`` when an
    external tool exits non-zero. ``observe`` picks the value reported
    after a successful run (usually an installed version).
    """
    name: str
    label: str
    check: Callable[[HostState], bool]
    action: Callable
    policy: FailurePolicy = FailurePolicy.FATAL
    confirm: str | None = None       # asked before running
    confirm_default: bool = False
    reinstall: str | None = None     # asked when already satisfied
    observe: Callable[[HostState], str | None] | None = None

@dataclass
class StepResult:
    name: str
    outcome: Outcome
    detail: str | None = None

@dataclass
class RunReport:
    """Ordered outcomes of one sequencer run."""
    results: list[StepResult] = field(default_factory=list)
    state: HostState | None = None  # last snapshot taken

    def record(self, name: str, outcome: Outcome, detail: str | None = None) -> None:
        self.results.append(StepResult(name, outcome, detail))

    @property
    def ok(self) -> bool:
        return self.failed is None

    @property
    def failed(self) -> StepResult | None:
        """The fatal failure that ended the run, if any."""
        for r in self.results:
            if r.outcome is Outcome.FAILED:
                return r
        return None

    def outcome_of(self, name: str) -> Outcome | None:
        for r in self.results:
            if r.name == name:
                return r.outcome
        return None
