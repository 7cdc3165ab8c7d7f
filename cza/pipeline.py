"""Post-generation pipeline.

Runs the steps that follow a successful render, in plan order:

    GitInit      -- ``git init`` + initial commit
    InstallDeps  -- ``mise install``
    SetupHooks   -- ``hk install``
    OpenEditor   -- ``$VISUAL`` / ``$EDITOR``

Each step is plain data (:class:`~cza.scaffolder.models.PlanStep`) handed to
a single executor.  Post-generation automation is best effort: a failing
step is recorded and the next one still runs.  The pipeline never raises;
``cza new`` succeeds as long as the render did.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import threading
import time
from collections.abc import Iterator, Mapping
from typing import Protocol

from rich.panel import Panel
from rich.table import Table

from cza.errors import CzaError
from cza.scaffolder.models import (
    GenerationPlan,
    PipelineReport,
    PlanStep,
    StepKind,
    StepOutcome,
    StepStatus,
)
from cza.scaffolder.planner import DISABLED_RATIONALE
from cza.utils import console, format_duration, print_info, print_step, print_warning, run_command

logger = logging.getLogger(__name__)

STEP_LABELS: dict[StepKind, str] = {
    StepKind.RENDER: "Render template",
    StepKind.GIT_INIT: "Initialise git repository",
    StepKind.INSTALL_DEPS: "Install dependencies (mise install)",
    StepKind.SETUP_HOOKS: "Set up git hooks (hk install)",
    StepKind.OPEN_EDITOR: "Open in editor",
}

STATUS_STYLES: dict[StepStatus, str] = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.FAILED: "yellow",
    StepStatus.SKIPPED: "dim",
}

DEFAULT_EDITOR = "code"

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PostGenStepError(CzaError):
    """A post-generation step failed.  Recorded per step, never fatal."""

    def __init__(self, kind: StepKind, message: str, hint: str = "") -> None:
        self.kind = kind
        super().__init__(message, hint=hint)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class StepExecutor(Protocol):
    """Carries out one enabled step or raises :class:`PostGenStepError`."""

    def __call__(self, step: PlanStep, plan: GenerationPlan) -> None: ...


class CommandStepExecutor:
    """Default executor: shells out to git, mise, hk and the user's editor.

    Attributes:
        env: Environment consulted for ``VISUAL``/``EDITOR``.
    """

    _STEP_METHODS: dict[StepKind, str] = {
        StepKind.GIT_INIT: "git_init",
        StepKind.INSTALL_DEPS: "install_deps",
        StepKind.SETUP_HOOKS: "setup_hooks",
        StepKind.OPEN_EDITOR: "open_editor",
    }

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self.env: Mapping[str, str] = os.environ if env is None else env

    def __call__(self, step: PlanStep, plan: GenerationPlan) -> None:
        method_name = self._STEP_METHODS.get(step.kind)
        if method_name is None:
            raise PostGenStepError(step.kind, f"No executor for step '{step.kind.value}'")
        getattr(self, method_name)(plan)

    def _run(
        self,
        kind: StepKind,
        cmd: list[str],
        plan: GenerationPlan,
        hint: str = "",
        capture: bool = True,
    ) -> None:
        try:
            returncode, _, stderr = run_command(cmd, cwd=plan.destination, capture=capture)
        except FileNotFoundError:
            raise PostGenStepError(kind, f"Could not run {cmd[0]}: command not found", hint) from None
        except OSError as exc:
            raise PostGenStepError(kind, f"Could not run {cmd[0]}: {exc}", hint) from exc
        if returncode != 0:
            detail = f": {stderr}" if stderr else ""
            raise PostGenStepError(
                kind, f"{' '.join(cmd[:2])} failed with status {returncode}{detail}", hint
            )

    def git_init(self, plan: GenerationPlan) -> None:
        hint = f"Run 'git init' inside {plan.destination} manually."
        self._run(StepKind.GIT_INIT, ["git", "init", "--quiet"], plan, hint)
        self._run(StepKind.GIT_INIT, ["git", "add", "-A"], plan, hint)

        identity: list[str] = []
        if plan.variables.get("author"):
            identity += ["-c", f"user.name={plan.variables['author']}"]
        if plan.variables.get("email"):
            identity += ["-c", f"user.email={plan.variables['email']}"]
        self._run(
            StepKind.GIT_INIT,
            ["git", *identity, "commit", "--quiet", "-m", "chore: initial commit"],
            plan,
            "Repository initialised; create the first commit yourself.",
        )

    def install_deps(self, plan: GenerationPlan) -> None:
        self._run(
            StepKind.INSTALL_DEPS,
            ["mise", "install"],
            plan,
            "Install mise from https://mise.jdx.dev, then run 'mise install' in the project.",
            capture=False,
        )

    def setup_hooks(self, plan: GenerationPlan) -> None:
        self._run(
            StepKind.SETUP_HOOKS,
            ["hk", "install"],
            plan,
            "Run 'hk install' in the project once hk is available (mise install provides it).",
            capture=False,
        )

    def open_editor(self, plan: GenerationPlan) -> None:
        editor = self.env.get("VISUAL") or self.env.get("EDITOR") or DEFAULT_EDITOR
        cmd = [*shlex.split(editor), str(plan.destination)]
        self._run(
            StepKind.OPEN_EDITOR,
            cmd,
            plan,
            "Set $VISUAL or $EDITOR to your editor command.",
            capture=False,
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class PostGenerationPipeline:
    """Executes a plan's post-generation steps with per-step failure containment.

    Interrupts are only honoured between steps: while :meth:`run` is active,
    SIGINT sets a flag instead of raising, the in-flight step is allowed to
    finish (or die from the same signal), and no further step is scheduled.
    Completed steps are not rolled back.
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        handle_interrupts: bool = True,
    ) -> None:
        self.executor: StepExecutor = executor or CommandStepExecutor()
        self.handle_interrupts = handle_interrupts
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling steps after the current one."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, plan: GenerationPlan) -> PipelineReport:
        """Run every post-generation step of *plan* and report the outcomes.

        Each run starts uncancelled; a cancel from an earlier run does not carry over.
        """
        self._cancelled.clear()
        outcomes: list[StepOutcome] = []

        with self._interrupt_guard():
            for step in plan.post_generation_steps:
                if self.cancelled:
                    logger.debug("Interrupted before %s; not scheduling further steps", step.kind.value)
                    break
                outcomes.append(self._run_step(step, plan))

        return PipelineReport(outcomes=tuple(outcomes), interrupted=self.cancelled)

    def _run_step(self, step: PlanStep, plan: GenerationPlan) -> StepOutcome:
        label = STEP_LABELS[step.kind]
        if not step.enabled:
            logger.debug("Skipping %s: %s", step.kind.value, step.rationale)
            return StepOutcome(step=step, status=StepStatus.SKIPPED, reason=DISABLED_RATIONALE)

        print_step(f"{label}...")
        started = time.monotonic()
        try:
            self.executor(step, plan)
        except PostGenStepError as exc:
            elapsed = time.monotonic() - started
            print_warning(f"  {label} failed: {exc}")
            if exc.hint:
                print_info(f"  {exc.hint}")
            return StepOutcome(
                step=step, status=StepStatus.FAILED, reason=str(exc), duration_seconds=elapsed
            )
        except Exception as exc:  # noqa: BLE001
            elapsed = time.monotonic() - started
            logger.debug("Step %s raised", step.kind.value, exc_info=True)
            print_warning(f"  {label} failed: {exc}")
            return StepOutcome(
                step=step, status=StepStatus.FAILED, reason=str(exc), duration_seconds=elapsed
            )

        elapsed = time.monotonic() - started
        logger.debug("%s completed in %s", step.kind.value, format_duration(elapsed))
        return StepOutcome(step=step, status=StepStatus.SUCCEEDED, duration_seconds=elapsed)

    @contextlib.contextmanager
    def _interrupt_guard(self) -> Iterator[None]:
        """Defer SIGINT to the next step boundary while the block runs."""
        if not self.handle_interrupts or threading.current_thread() is not threading.main_thread():
            yield
            return

        def _on_interrupt(signum: int, frame: object) -> None:
            print_warning("Interrupted -- finishing the current step, then stopping.")
            self.cancel()

        previous = signal.signal(signal.SIGINT, _on_interrupt)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def print_report(report: PipelineReport) -> None:
    """Print the post-generation outcomes as a table plus a warning footer."""
    if not report.outcomes and not report.interrupted:
        return

    table = Table(title="Post-generation", show_header=True, header_style="bold cyan")
    table.add_column("Step", no_wrap=True)
    table.add_column("Status")
    table.add_column("Time", justify="right")
    table.add_column("Details", style="dim")

    for outcome in report.outcomes:
        style = STATUS_STYLES[outcome.status]
        elapsed = format_duration(outcome.duration_seconds) if outcome.duration_seconds else ""
        table.add_row(
            STEP_LABELS[outcome.step.kind],
            f"[{style}]{outcome.status.value}[/{style}]",
            elapsed,
            outcome.reason,
        )

    console.print()
    console.print(table)

    if report.interrupted:
        console.print(
            Panel(
                "Interrupted: remaining post-generation steps were not run.",
                border_style="yellow",
            )
        )
    elif report.failed:
        print_warning(
            f"{len(report.failed)} post-generation step(s) failed; "
            "the project was still created."
        )
