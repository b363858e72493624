"""Provisioning sequencer.

Runs an ordered list of idempotent steps against a host:

1. Skip steps whose check already holds on the current snapshot
   (unless an interactive reinstall prompt says otherwise).
2. Ask optional steps for confirmation.
3. Run the action; a fatal failure ends the run, a warn-and-continue
   failure is recorded and the run moves on.
4. Re-detect host state after each successful action so later checks
   see the new snapshot.

Nothing is rolled back and nothing is retried.
"""
from typing import Callable, Iterable, Protocol

import typer

from vpskit import output
from vpskit.connection import CommandError, HostContext
from vpskit.hoststate import HostState
from vpskit.steps import FailurePolicy, Outcome, RunReport, Step

# Confirmation port

class Prompter(Protocol):
    def confirm(self, question: str, default: bool) -> bool: ...

class TerminalPrompter:
    """Ask yes/no questions on the terminal."""

    def confirm(self, question: str, default: bool) -> bool:
        return typer.confirm(question, default=default)

class DefaultPrompter:
    """Answer every question with its default."""

    def confirm(self, question: str, default: bool) -> bool:
        return default

# run_steps

def _first_line(exc: Exception) -> str:
    return str(exc).splitlines()[0]

def run_steps(
    host,
    steps: Iterable[Step],
    *,
    detect: Callable[..., HostState],
    prompter: Prompter | None = None,
    interactive: bool = True,
    ctx: HostContext | None = None,
    skip: Iterable[str] = (),
    state: HostState | None = None,
) -> RunReport:
    """Run *steps* in order and return the report.

    *detect* is called as ``detect(host)`` for the initial snapshot (unless
    *state* is given) and again after every successful action.
    """
    prompter = prompter or DefaultPrompter()
    skip = set(skip)
    report = RunReport()
    if state is None:
        state = detect(host)

    for step in steps:
        if step.name in skip:
            report.record(step.name, Outcome.SKIPPED, "disabled in config")
            continue

        if step.check(state):
            rerun = bool(interactive and step.reinstall
                         and prompter.confirm(step.reinstall, False))
            if not rerun:
                current = step.observe(state) if step.observe else None
                output.info(f"{step.label}: already done" + (f" ({current})" if current else ""))
                report.record(step.name, Outcome.SKIPPED, current or "already configured")
                continue
        elif step.confirm:
            wanted = prompter.confirm(step.confirm, step.confirm_default) if interactive else step.confirm_default
            if not wanted:
                output.info(f"{step.label}: skipped")
                report.record(step.name, Outcome.SKIPPED, "declined")
                continue

        output.info(f"{step.label}...")
        try:
            step.action(host, ctx)
        except CommandError as e:
            if step.policy is FailurePolicy.FATAL:
                output.error(f"{step.label} failed")
                output.console.print(str(e), markup=False, highlight=False)
                report.record(step.name, Outcome.FAILED, _first_line(e))
                break
            output.warn(f"{step.label} failed, continuing: {_first_line(e)}")
            report.record(step.name, Outcome.WARNED, _first_line(e))
            continue

        state = detect(host)
        observed = step.observe(state) if step.observe else None
        output.success(step.label + (f": {observed}" if observed else ""))
        report.record(step.name, Outcome.SUCCEEDED, observed)

    report.state = state
    return report
