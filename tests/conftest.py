"""Shared pytest fixtures for the cza test suite.

Provides reusable fixtures for:
- An isolated configuration directory (the real user config is never read)
- A small template registry and a local template tree
- Fake renderer and step executor seams
- Ready-made generation plans
- A fake installed executable for self-update tests
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from pathlib import Path

import pytest

from cza.config import ConfigStore, Configuration
from cza.pipeline import PostGenStepError
from cza.scaffolder.models import (
    GenerationFlags,
    GenerationPlan,
    GenerationRequest,
    PlanStep,
    TemplateDescriptor,
    TemplateSource,
)
from cza.scaffolder.planner import plan
from cza.scaffolder.registry import TemplateRegistry
from cza.scaffolder.renderer import RenderError


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point every ConfigStore at a throwaway directory and clear env knobs."""
    config_dir = tmp_path / "cza-config"
    monkeypatch.setenv("CZA_CONFIG_DIR", str(config_dir))
    for name in ("CZA_LOG", "NO_COLOR", "VISUAL", "EDITOR", "XDG_CONFIG_HOME"):
        monkeypatch.delenv(name, raising=False)
    yield config_dir

    # cli.main installs a RichHandler and stops propagation; undo it so caplog works.
    package_logger = logging.getLogger("cza")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


@pytest.fixture
def config_store(tmp_path: Path) -> ConfigStore:
    """ConfigStore writing to ``tmp_path/store/config.toml`` with an empty environment."""
    return ConfigStore(path=tmp_path / "store" / "config.toml", env={})


@pytest.fixture
def default_config() -> Configuration:
    return Configuration()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the test from an empty working directory."""
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return work


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


SAMPLE_REGISTRY_DATA = {
    "templates": {
        "noir-vite": {
            "name": "Noir + Vite",
            "description": "Noir circuit with a Vite frontend",
            "repository": "https://github.com/sripwoud/cza",
            "subfolder": "templates/noir-vite",
            "frameworks": ["noir", "vite"],
        },
        "circom-vite": {
            "name": "Circom + Vite",
            "description": "Circom circuit with a Vite frontend",
            "repository": "https://github.com/sripwoud/cza",
            "subfolder": "templates/circom-vite",
            "frameworks": ["circom", "vite"],
        },
    }
}


@pytest.fixture
def sample_registry() -> TemplateRegistry:
    return TemplateRegistry.from_mapping(SAMPLE_REGISTRY_DATA)


@pytest.fixture
def sample_descriptor(sample_registry: TemplateRegistry) -> TemplateDescriptor:
    return sample_registry.lookup("noir-vite")


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """A small on-disk template tree in the layout the renderer expects."""
    root = tmp_path / "template-src"
    (root / "circuits" / "src").mkdir(parents=True)
    (root / "web").mkdir()
    (root / "README.md").write_text("# {{ project_name }}\n\nBy {{ author }}\n", encoding="utf-8")
    (root / "circuits" / "Nargo.toml").write_text(
        '[package]\nname = "{{ crate_name }}"\nauthors = ["{{ authors }}"]\n',
        encoding="utf-8",
    )
    (root / "circuits" / "src" / "main.nr").write_text(
        "fn main(x: Field, y: pub Field) {\n    assert(x != y);\n}\n", encoding="utf-8"
    )
    (root / "web" / "App.tsx").write_text(
        "export const App = () => <div style={{ margin: 0 }}>hi</div>;\n", encoding="utf-8"
    )
    (root / "web" / "logo.bin").write_bytes(b"\x89PNG\r\n\x1a\n\xff\x00")
    (root / "cargo-generate.toml").write_text("[template]\n", encoding="utf-8")
    return root


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRenderer:
    """Records render calls; optionally fails or writes a marker file."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[TemplateSource, Path, dict[str, str]]] = []

    def render(
        self, source: TemplateSource, destination: Path, variables: Mapping[str, str]
    ) -> None:
        self.calls.append((source, destination, dict(variables)))
        if self.fail:
            raise RenderError("clone failed")
        destination.mkdir(parents=True, exist_ok=True)
        (destination / "README.md").write_text(f"# {variables['project_name']}\n", encoding="utf-8")


class FakeExecutor:
    """Step executor that records calls and fails the kinds it is told to."""

    def __init__(self, fail_kinds: tuple = (), on_call=None) -> None:
        self.fail_kinds = set(fail_kinds)
        self.on_call = on_call
        self.calls: list[PlanStep] = []

    def __call__(self, step: PlanStep, plan: GenerationPlan) -> None:
        self.calls.append(step)
        if self.on_call is not None:
            self.on_call(step)
        if step.kind in self.fail_kinds:
            raise PostGenStepError(step.kind, f"{step.kind.value} exploded", hint="try again")


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def failing_renderer() -> FakeRenderer:
    return FakeRenderer(fail=True)


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_executor():
    """``make_executor(fail_kinds=(...), on_call=...)`` builds a FakeExecutor."""
    return FakeExecutor


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@pytest.fixture
def make_plan(tmp_path: Path, sample_registry: TemplateRegistry):
    """Factory building a plan for ``noir-vite`` into ``tmp_path/<name>``."""

    def _make(
        config: Configuration | None = None,
        project_name: str = "demo",
        **flags: bool,
    ) -> GenerationPlan:
        request = GenerationRequest(
            template_name="noir-vite",
            project_name=project_name,
            destination=tmp_path / project_name,
            variables={"author": "Ada"},
            flags=GenerationFlags(**flags),
        )
        return plan(request, config or Configuration(), sample_registry)

    return _make


# ---------------------------------------------------------------------------
# Self-update
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_executable(tmp_path: Path) -> Path:
    """An "installed" cza binary the updater may replace."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    exe = bin_dir / "cza"
    exe.write_bytes(b"old binary contents")
    exe.chmod(0o755)
    return exe
