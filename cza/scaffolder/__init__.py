"""Template catalogue, planning and rendering.

:mod:`cza.scaffolder.generator` is deliberately not imported here; it
depends on :mod:`cza.pipeline`, which itself imports this package.
"""

from .models import (
    GenerationFlags,
    GenerationPlan,
    GenerationRequest,
    PipelineReport,
    PlanStep,
    StepKind,
    StepOutcome,
    StepStatus,
    TemplateDescriptor,
    TemplateSource,
)
from .planner import (
    DestinationExists,
    GenerationError,
    InvalidProjectName,
    NoTemplateSpecified,
    plan,
)
from .registry import InvalidTemplate, TemplateError, TemplateNotFound, TemplateRegistry
from .renderer import GitTemplateRenderer, RenderError, Renderer, TemplateRenderer

__all__ = [
    "DestinationExists",
    "GenerationError",
    "GenerationFlags",
    "GenerationPlan",
    "GenerationRequest",
    "GitTemplateRenderer",
    "InvalidProjectName",
    "InvalidTemplate",
    "NoTemplateSpecified",
    "PipelineReport",
    "PlanStep",
    "RenderError",
    "Renderer",
    "StepKind",
    "StepOutcome",
    "StepStatus",
    "TemplateDescriptor",
    "TemplateError",
    "TemplateNotFound",
    "TemplateRegistry",
    "TemplateRenderer",
    "TemplateSource",
    "plan",
]
