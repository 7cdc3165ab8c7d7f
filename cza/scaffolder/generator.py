"""Project generation orchestrator.

Ties the registry, the planner, the renderer and the post-generation
pipeline together.  ``cza new`` runs exactly one plan, in two phases:

    1. Render        -- fatal on failure, destination left untouched
    2. Post-generate -- best effort, every outcome recorded
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from rich.table import Table

from cza.config import Configuration
from cza.pipeline import STEP_LABELS, PostGenerationPipeline
from cza.utils import console, format_duration, get_git_config, print_step, print_success

from .models import GenerationPlan, GenerationRequest, PipelineReport
from .planner import plan as compute_plan
from .registry import TemplateRegistry
from .renderer import GitTemplateRenderer, Renderer

logger = logging.getLogger(__name__)

FALLBACK_AUTHOR = "Developer"


def build_variables(
    author: str | None,
    email: str | None,
    defines: Mapping[str, str],
    config: Configuration,
    read_git_config: bool = True,
) -> dict[str, str]:
    """Assemble the template variables for a request.

    The author comes from ``--author``, then ``user.author``, then
    ``git config user.name``, then ``"Developer"``.  The email follows the
    same chain minus the final fallback and is omitted when nothing is found.
    ``--define`` pairs are applied last and win over everything.

    With *read_git_config* false, ``git config`` is never run.
    """

    def from_git(key: str) -> str | None:
        return get_git_config(key) if read_git_config else None

    variables: dict[str, str] = {
        "author": author or config.user.author or from_git("user.name") or FALLBACK_AUTHOR,
    }
    resolved_email = email or config.user.email or from_git("user.email")
    if resolved_email:
        variables["email"] = resolved_email
    variables.update(defines)
    return variables


class ProjectGenerator:
    """Plans and executes ``cza new``.

    Args:
        registry: Template catalogue; defaults to the packaged registry.
        renderer: Anything implementing :class:`Renderer`.
        pipeline: Post-generation pipeline.
    """

    def __init__(
        self,
        registry: TemplateRegistry | None = None,
        renderer: Renderer | None = None,
        pipeline: PostGenerationPipeline | None = None,
    ) -> None:
        self.registry = registry or TemplateRegistry.default()
        self.renderer: Renderer = renderer or GitTemplateRenderer()
        self.pipeline = pipeline or PostGenerationPipeline()

    def plan_for(self, request: GenerationRequest, config: Configuration) -> GenerationPlan:
        """Compute the plan for *request* without touching the filesystem."""
        return compute_plan(request, config, self.registry)

    def generate(self, plan: GenerationPlan) -> PipelineReport:
        """Render the template, then run the post-generation steps.

        Raises:
            RenderError: Rendering failed.  No post-generation step has run.
        """
        template = plan.template
        print_step(f"Generating {template.name} project '{plan.project_name}'...")
        logger.debug(
            "Rendering %s/%s into %s",
            template.source.repository,
            template.source.subfolder,
            plan.destination,
        )

        self.renderer.render(template.source, plan.destination, plan.variables)
        print_success(f"Created {plan.destination}")

        return self.pipeline.run(plan)


def print_plan(plan: GenerationPlan) -> None:
    """Print a dry-run view of *plan*: every step with its enabled state."""
    console.print(f"[bold]Dry run:[/bold] {plan.template.name} -> {plan.destination}")

    table = Table(title="Plan", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", no_wrap=True)
    table.add_column("Run")
    table.add_column("Why", style="dim")

    for index, step in enumerate(plan.steps, start=1):
        run = "[green]yes[/green]" if step.enabled else "[dim]skip[/dim]"
        table.add_row(str(index), STEP_LABELS[step.kind], run, step.rationale)

    console.print(table)

    if plan.variables:
        variables = Table(title="Variables", show_header=True, header_style="bold cyan")
        variables.add_column("Name", style="dim", no_wrap=True)
        variables.add_column("Value")
        for name, value in plan.variables.items():
            variables.add_row(name, value)
        console.print(variables)

    console.print("[dim]No files were written.[/dim]")


def print_next_steps(plan: GenerationPlan, report: PipelineReport, elapsed: float) -> None:
    """Footer printed after a successful ``cza new``."""
    console.print()
    print_success(f"Project '{plan.project_name}' ready in {format_duration(elapsed)}")
    console.print(f"  cd {plan.destination}")
    if not report.all_succeeded:
        console.print("  [dim]Re-run the failed steps above by hand when ready.[/dim]")
