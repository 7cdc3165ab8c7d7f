"""Template registry.

The catalogue of templates ships inside the package as ``templates.toml``.
It is parsed once per process into an immutable, insertion-ordered index;
lookups never re-read or re-parse the file.
"""

from __future__ import annotations

import functools
import logging
import tomllib
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from cza.errors import EXIT_USAGE, CzaError

from .models import TemplateDescriptor, TemplateSource

logger = logging.getLogger(__name__)

_DEFAULT_REGISTRY_FILE = Path(__file__).parent / "templates.toml"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TemplateError(CzaError):
    """Base class for registry problems."""


class TemplateNotFound(TemplateError):
    """Raised when no template is registered under the requested name."""

    exit_code = EXIT_USAGE

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Template '{name}' not found",
            hint="Use 'cza list' to see available templates.",
        )


class InvalidTemplate(TemplateError):
    """Raised when a registry entry is malformed."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_template(template: TemplateDescriptor) -> None:
    """Check that *template* points at something git can fetch.

    Raises:
        InvalidTemplate: If the repository URL is empty or not a git URL, or
            the subfolder is empty.
    """
    repository = template.source.repository
    if not repository:
        raise InvalidTemplate(f"Template '{template.key}': repository URL cannot be empty")
    if not template.source.subfolder:
        raise InvalidTemplate(f"Template '{template.key}': subfolder cannot be empty")
    if not (
        "github.com" in repository
        or repository.startswith("git@")
        or repository.startswith("https://")
    ):
        raise InvalidTemplate(
            f"Template '{template.key}': repository must be a valid git URL, got '{repository}'"
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TemplateRegistry:
    """Immutable, ordered catalogue of templates keyed by name.

    Iteration and :meth:`list` follow registration order so that output is
    reproducible across runs.
    """

    def __init__(self, templates: Iterable[TemplateDescriptor]) -> None:
        index: dict[str, TemplateDescriptor] = {}
        for template in templates:
            validate_template(template)
            if template.key in index:
                raise InvalidTemplate(f"Duplicate template key '{template.key}'")
            index[template.key] = template
        self._templates: Mapping[str, TemplateDescriptor] = MappingProxyType(index)

    # -- Construction ------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TemplateRegistry":
        """Build a registry from the parsed ``[templates.<key>]`` tables."""
        templates = data.get("templates", {})
        descriptors: list[TemplateDescriptor] = []
        for key, entry in templates.items():
            try:
                descriptors.append(
                    TemplateDescriptor(
                        key=key,
                        name=entry.get("name", key),
                        description=entry.get("description", ""),
                        source=TemplateSource(
                            repository=entry.get("repository", ""),
                            subfolder=entry.get("subfolder", ""),
                        ),
                        tags=frozenset(entry.get("frameworks", [])),
                    )
                )
            except (AttributeError, ValidationError) as exc:
                raise InvalidTemplate(f"Malformed registry entry '{key}': {exc}") from exc
        return cls(descriptors)

    @classmethod
    def from_file(cls, path: str | Path) -> "TemplateRegistry":
        """Parse a registry TOML file."""
        try:
            data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise InvalidTemplate(f"Failed to parse template registry {path}: {exc}") from exc
        registry = cls.from_mapping(data)
        logger.debug("Loaded %d template(s) from %s", len(registry), path)
        return registry

    @classmethod
    def default(cls) -> "TemplateRegistry":
        """The packaged registry, parsed on first use and shared afterwards."""
        return _load_default_registry()

    # -- Queries -----------------------------------------------------------

    def list(self, detailed: bool = False) -> tuple[TemplateDescriptor, ...]:
        """Every template in registration order.

        *detailed* only changes how callers present the result; the returned
        sequence is the same.
        """
        return tuple(self._templates.values())

    def lookup(self, name: str) -> TemplateDescriptor:
        """Return the template registered under *name*.

        Raises:
            TemplateNotFound: If *name* is unknown.  No fuzzy matching is done.
        """
        try:
            return self._templates[name]
        except KeyError:
            raise TemplateNotFound(name) from None

    def names(self) -> tuple[str, ...]:
        return tuple(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)


@functools.lru_cache(maxsize=1)
def _load_default_registry() -> TemplateRegistry:
    return TemplateRegistry.from_file(_DEFAULT_REGISTRY_FILE)
