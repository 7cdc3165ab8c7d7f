"""Template rendering.

The orchestrator consumes rendering through one capability::

    render(source, destination, variables)  # raises RenderError

:class:`GitTemplateRenderer` is the default implementation: it shallow-clones
the template repository, renders the template subfolder with Jinja2 into a
staging directory next to the destination, then publishes the staging tree.
Either the destination ends up fully populated or it is left untouched.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from jinja2 import StrictUndefined, TemplateError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

from cza.utils import program_available, run_command

from .models import TemplateSource
from .planner import GenerationError

logger = logging.getLogger(__name__)

# Never copied into a generated project.
_SKIP_NAMES = frozenset({".git", "cargo-generate.toml"})

CLONE_TIMEOUT_SECONDS = 300


class RenderError(GenerationError):
    """Raised when a template cannot be materialised; the destination is untouched."""


class Renderer(Protocol):
    """Capability boundary used by :class:`~cza.scaffolder.generator.ProjectGenerator`."""

    def render(
        self, source: TemplateSource, destination: Path, variables: Mapping[str, str]
    ) -> None: ...


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders template trees with Jinja2.

    File contents and path segments are both treated as templates.  Files
    that are not UTF-8 text, or whose content is not valid Jinja2 for the
    given variables (JSX ``{{ }}`` props, for instance), are copied verbatim.
    Templates come from remote repositories, so they run in Jinja2's sandbox;
    an unsafe operation or a runtime error in an expression raises
    :class:`RenderError`.
    """

    def __init__(self) -> None:
        self.env = SandboxedEnvironment(
            autoescape=False,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )
        self.env.filters["slugify"] = _slugify_filter
        self.env.filters["pascal_case"] = _pascal_case_filter
        self.env.filters["snake_case"] = _snake_case_filter
        self.env.filters["camel_case"] = _camel_case_filter

    def render_string(self, template_string: str, context: Mapping[str, Any]) -> str:
        """Render an inline template string with the provided context."""
        template = self.env.from_string(template_string)
        return template.render(**context)

    def _render_or_keep(self, text: str, context: Mapping[str, Any], origin: Path) -> str:
        if "{{" not in text and "{%" not in text:
            return text
        try:
            return self.render_string(text, context)
        except SecurityError as exc:
            raise RenderError(f"Template {origin.name} attempted an unsafe operation: {exc}") from exc
        except TemplateError as exc:
            logger.debug("Copying %s verbatim: %s", origin, exc)
            return text
        except Exception as exc:
            raise RenderError(f"Failed to render {origin.name}: {exc}") from exc

    def render_tree(
        self,
        template_dir: Path,
        output_dir: Path,
        context: Mapping[str, Any],
    ) -> list[Path]:
        """Render every file under *template_dir* into *output_dir*.

        The directory structure is preserved, with each relative path rendered
        as a template too (``{{ project_name }}/main.nr``).

        Returns:
            List of written file paths, in sorted source order.
        """
        written: list[Path] = []
        for source in sorted(template_dir.rglob("*")):
            rel = source.relative_to(template_dir)
            if any(part in _SKIP_NAMES for part in rel.parts):
                continue

            rel_rendered = self._render_or_keep(rel.as_posix(), context, source)
            target = output_dir / rel_rendered

            if source.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            raw = source.read_bytes()
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError:
                target.write_bytes(raw)
            else:
                target.write_text(self._render_or_keep(text, context, source), encoding="utf-8")
            shutil.copymode(source, target)
            written.append(target)

        return written


# ---------------------------------------------------------------------------
# GitTemplateRenderer
# ---------------------------------------------------------------------------


class GitTemplateRenderer:
    """Fetches templates with ``git`` and renders them with :class:`TemplateRenderer`."""

    def __init__(
        self,
        renderer: TemplateRenderer | None = None,
        clone_timeout: float = CLONE_TIMEOUT_SECONDS,
    ) -> None:
        self.renderer = renderer or TemplateRenderer()
        self.clone_timeout = clone_timeout

    def render(
        self, source: TemplateSource, destination: Path, variables: Mapping[str, str]
    ) -> None:
        if not program_available("git"):
            raise RenderError(
                "git is required to fetch templates but was not found on PATH",
                hint="Install git from https://git-scm.com and try again.",
            )

        with tempfile.TemporaryDirectory(prefix="cza-template-") as tmp:
            checkout = Path(tmp) / "repo"
            self._clone(source.repository, checkout)
            template_root = checkout / source.subfolder
            if not template_root.is_dir():
                raise RenderError(
                    f"Template subfolder '{source.subfolder}' not found in {source.repository}"
                )
            self.materialize(template_root, destination, variables)

    def _clone(self, repository: str, checkout: Path) -> None:
        logger.debug("Cloning %s", repository)
        returncode, _, stderr = run_command(
            ["git", "clone", "--depth", "1", "--quiet", repository, str(checkout)],
            timeout=self.clone_timeout,
        )
        if returncode != 0:
            raise RenderError(f"Failed to fetch template from {repository}: {stderr}")

    def materialize(
        self, template_root: Path, destination: Path, variables: Mapping[str, str]
    ) -> None:
        """Render *template_root* into *destination* through a staging directory."""
        destination = Path(destination)
        parent = destination.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
            staging = Path(
                tempfile.mkdtemp(prefix=f".{destination.name}.", suffix=".staging", dir=parent)
            )
            # mkdtemp creates 0o700; the published project must not be private.
            staging.chmod(0o755)
        except OSError as exc:
            raise RenderError(f"Cannot prepare {destination}: {exc}") from exc

        try:
            written = self.renderer.render_tree(template_root, staging, _template_context(variables))
            _publish(staging, destination)
            logger.debug("Rendered %d file(s) into %s", len(written), destination)
        except OSError as exc:
            raise RenderError(f"Failed to render template into {destination}: {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _template_context(variables: Mapping[str, str]) -> dict[str, Any]:
    """Expose the request variables plus cargo-generate style aliases."""
    context: dict[str, Any] = dict(variables)
    project_name = context.get("project_name", "")
    context.setdefault("crate_name", _snake_case_filter(project_name))
    if "author" in context:
        context.setdefault("authors", context["author"])
    return context


def _publish(staging: Path, destination: Path) -> None:
    """Move the staged tree into place.

    A fresh destination is a single rename.  An existing destination (forced
    overwrite) receives the staged files on top of what it already holds.
    """
    if not destination.exists():
        os.replace(staging, destination)
        return
    if not destination.is_dir():
        destination.unlink()
        os.replace(staging, destination)
        return
    shutil.copytree(staging, destination, dirs_exist_ok=True)


def _slugify_filter(value: str) -> str:
    """Convert a string to a URL/filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower().strip())
    return slug.strip("-")


def _pascal_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    parts = re.split(r"[-_\s]+", value)
    return "".join(word.capitalize() for word in parts if word)


def _snake_case_filter(value: str) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", value)
    s2 = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1)
    return re.sub(r"[-\s]+", "_", s2).lower()


def _camel_case_filter(value: str) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``someThing``."""
    pascal = _pascal_case_filter(value)
    if pascal:
        return pascal[0].lower() + pascal[1:]
    return ""
