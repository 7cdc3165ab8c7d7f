"""Generation planning.

:func:`plan` turns a :class:`GenerationRequest` plus the merged
:class:`Configuration` into an immutable :class:`GenerationPlan`.  Planning is
a pure function of its inputs: it reads the filesystem only to check whether
the destination already holds files, and never writes or starts processes.
"""

from __future__ import annotations

from pathlib import Path

from cza.config import Configuration
from cza.errors import EXIT_USAGE, CzaError

from .models import GenerationPlan, GenerationRequest, PlanStep, StepKind
from .registry import TemplateRegistry

DISABLED_RATIONALE = "disabled by configuration/flag"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class GenerationError(CzaError):
    """Base class for errors that abort ``cza new`` before post-generation."""


class NoTemplateSpecified(GenerationError):
    exit_code = EXIT_USAGE

    def __init__(self) -> None:
        super().__init__(
            "No template specified and user.default_template is not set",
            hint="Pass a template name or run 'cza config set user.default_template <name>'.",
        )


class InvalidProjectName(GenerationError):
    exit_code = EXIT_USAGE

    def __init__(self, name: str) -> None:
        self.name = name
        reason = (
            "Project name cannot be empty"
            if not name
            else f"Invalid project name '{name}': only alphanumeric characters, "
            "hyphens, and underscores are allowed"
        )
        super().__init__(reason)


class DestinationExists(GenerationError):
    """The destination holds files and overwriting was not authorised."""

    def __init__(self, destination: Path) -> None:
        self.destination = destination
        super().__init__(
            f"Destination '{destination}' already exists and is not empty",
            hint="Use --force to overwrite, or set development.confirm_overwrite to false.",
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_project_name(name: str) -> None:
    if not name or not all(ch.isalnum() or ch in "-_" for ch in name):
        raise InvalidProjectName(name)


def resolve_destination(request: GenerationRequest) -> Path:
    """``request.destination`` or ``./<project_name>``."""
    if request.destination is not None:
        return Path(request.destination)
    return Path(request.project_name)


def destination_blocked(destination: Path) -> bool:
    """True when rendering into *destination* would clobber existing content."""
    if not destination.exists():
        return False
    if not destination.is_dir():
        return True
    return any(destination.iterdir())


def _gated(kind: StepKind, enabled: bool, reason: str) -> PlanStep:
    return PlanStep(kind=kind, enabled=enabled, rationale=reason if enabled else DISABLED_RATIONALE)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


def plan(
    request: GenerationRequest,
    config: Configuration,
    registry: TemplateRegistry,
) -> GenerationPlan:
    """Compute the execution plan for *request*.

    Steps are always emitted in the same order; configuration and flags only
    flip ``enabled``.  A disabled step stays in the plan so dry-run output
    documents what would be skipped.

    Raises:
        NoTemplateSpecified: No template in the request or the configuration.
        TemplateNotFound: The template name is not registered.
        InvalidProjectName: The project name has unsupported characters.
        DestinationExists: The destination is non-empty and neither
            ``flags.force`` nor ``confirm_overwrite = false`` allow overwriting.
    """
    template_name = request.template_name or config.user.default_template
    if not template_name:
        raise NoTemplateSpecified()
    template = registry.lookup(template_name)

    validate_project_name(request.project_name)
    destination = resolve_destination(request)

    flags = request.flags
    overwrite_allowed = flags.force or not config.development.confirm_overwrite
    if destination_blocked(destination) and not overwrite_allowed:
        raise DestinationExists(destination)

    git_enabled = config.user.git_init and not flags.no_git
    steps = (
        PlanStep(
            kind=StepKind.RENDER,
            enabled=True,
            rationale=f"render '{template.key}' into {destination}",
        ),
        _gated(StepKind.GIT_INIT, git_enabled, "user.git_init is true"),
        _gated(
            StepKind.INSTALL_DEPS,
            config.post_generation.auto_install_deps,
            "post_generation.auto_install_deps is true",
        ),
        _gated(
            StepKind.SETUP_HOOKS,
            config.post_generation.auto_setup_hooks,
            "post_generation.auto_setup_hooks is true",
        ),
        _gated(
            StepKind.OPEN_EDITOR,
            config.post_generation.open_editor,
            "post_generation.open_editor is true",
        ),
    )

    return GenerationPlan(
        template=template,
        project_name=request.project_name,
        destination=destination,
        variables={"project_name": request.project_name, **request.variables},
        steps=steps,
    )
