"""Pydantic v2 models shared by the scaffolding components.

Defines templates, generation requests, execution plans and the
post-generation report.  Every model is frozen: a plan is computed once and
then either printed (dry run) or executed exactly once, and recorded step
outcomes are never edited.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field

_FROZEN = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StepKind(str, Enum):
    """Units of work in a generation plan, in their fixed execution order."""
    RENDER = "render"
    GIT_INIT = "git_init"
    INSTALL_DEPS = "install_deps"
    SETUP_HOOKS = "setup_hooks"
    OPEN_EDITOR = "open_editor"


class StepStatus(str, Enum):
    """Outcome of a single post-generation step."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateSource(BaseModel):
    """Where a template's files live."""
    model_config = _FROZEN

    repository: str = Field(..., description="Git URL of the repository holding the template")
    subfolder: str = Field(..., description="Directory inside the repository to render")


class TemplateDescriptor(BaseModel):
    """A named project skeleton from the registry."""
    model_config = _FROZEN

    key: str = Field(..., description="Lookup name, e.g. 'noir-vite'")
    name: str = Field(..., description="Display title")
    description: str = Field(default="")
    source: TemplateSource
    tags: frozenset[str] = Field(default_factory=frozenset, description="Frameworks and stacks")


# ---------------------------------------------------------------------------
# Requests & plans
# ---------------------------------------------------------------------------

class GenerationFlags(BaseModel):
    """Command-line switches of ``cza new``."""
    model_config = _FROZEN

    no_git: bool = False
    dry_run: bool = False
    force: bool = Field(
        default=False,
        description="Overwrite a non-empty destination (also set after interactive confirmation)",
    )


class GenerationRequest(BaseModel):
    """Everything the user asked ``cza new`` to do."""
    model_config = _FROZEN

    template_name: str | None = Field(default=None, description="Falls back to user.default_template")
    project_name: str
    destination: Path | None = Field(default=None, description="Defaults to ./<project_name>")
    variables: dict[str, str] = Field(default_factory=dict)
    flags: GenerationFlags = Field(default_factory=GenerationFlags)


class PlanStep(BaseModel):
    """One entry of a generation plan."""
    model_config = _FROZEN

    kind: StepKind
    enabled: bool
    rationale: str = ""


class GenerationPlan(BaseModel):
    """Ordered, immutable description of what ``cza new`` will do."""
    model_config = _FROZEN

    template: TemplateDescriptor
    project_name: str
    destination: Path
    variables: dict[str, str] = Field(default_factory=dict)
    steps: tuple[PlanStep, ...]

    @property
    def post_generation_steps(self) -> tuple[PlanStep, ...]:
        """Every step after ``Render``, enabled or not."""
        return self.steps[1:]

    def step(self, kind: StepKind) -> PlanStep:
        for candidate in self.steps:
            if candidate.kind is kind:
                return candidate
        raise KeyError(kind)


# ---------------------------------------------------------------------------
# Post-generation report
# ---------------------------------------------------------------------------

class StepOutcome(BaseModel):
    """Recorded result of one post-generation step."""
    model_config = _FROZEN

    step: PlanStep
    status: StepStatus
    reason: str = Field(default="", description="Failure reason or skip rationale")
    duration_seconds: float = Field(default=0.0, ge=0.0)


class PipelineReport(BaseModel):
    """Outcomes of a post-generation run, in execution order."""
    model_config = _FROZEN

    outcomes: tuple[StepOutcome, ...] = ()
    interrupted: bool = Field(default=False, description="SIGINT stopped the run between steps")

    @computed_field  # type: ignore[misc]
    @property
    def failed(self) -> tuple[StepOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status is StepStatus.FAILED)

    @computed_field  # type: ignore[misc]
    @property
    def all_succeeded(self) -> bool:
        """True when no step failed and the run was not interrupted."""
        return not self.failed and not self.interrupted
