"""cza configuration.

Typed, layered configuration for the CLI.  Every setting is declared on one
of three Pydantic v2 section models, so each key has a known type and a
default.  :class:`ConfigStore` owns the persisted TOML file and produces a
frozen :class:`Configuration` by merging, in increasing precedence:

    defaults < config file < environment < CLI flags

A later layer only overrides the keys it explicitly sets.
"""

from __future__ import annotations

import logging
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError

from cza.errors import EXIT_USAGE, CzaError
from cza.utils import LOG_ENV_VAR, atomic_write_text

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV_VAR = "CZA_CONFIG_DIR"
CONFIG_FILE_NAME = "config.toml"
NOT_SET = "<not set>"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ConfigError(CzaError):
    """Base class for configuration problems."""


class UnknownKey(ConfigError):
    """Raised when a key is not part of the configuration schema."""

    exit_code = EXIT_USAGE

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(
            f"Unknown configuration key: {key}",
            hint="Run 'cza config list' to see every supported key.",
        )


class InvalidValue(ConfigError):
    """Raised when a value does not match the key's declared type."""

    exit_code = EXIT_USAGE

    def __init__(self, key: str, value: Any, expected: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid value {value!r} for {key}: expected {expected}")


class ConfigFileError(ConfigError):
    """Raised when the persisted configuration file cannot be read or parsed."""


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------

_SECTION_CONFIG = ConfigDict(frozen=True, extra="ignore")


class UserConfig(BaseModel):
    """User preferences."""

    model_config = _SECTION_CONFIG

    author: StrictStr | None = Field(default=None, description="Default author name for new projects")
    email: StrictStr | None = Field(default=None, description="Default email for project metadata")
    git_init: StrictBool = Field(default=True, description="Initialise a git repository after generation")
    default_template: StrictStr | None = Field(
        default=None, description="Template used when 'cza new' is given only a project name"
    )


class DevelopmentConfig(BaseModel):
    """Development settings."""

    model_config = _SECTION_CONFIG

    verbose: StrictBool = Field(default=False, description="Enable debug logging")
    color: StrictBool = Field(default=True, description="Colourise terminal output")
    confirm_overwrite: StrictBool = Field(
        default=True, description="Refuse to render into a non-empty directory without confirmation"
    )


class PostGenerationConfig(BaseModel):
    """Post-generation behaviour."""

    model_config = _SECTION_CONFIG

    auto_install_deps: StrictBool = Field(default=True, description="Run 'mise install' after generation")
    auto_setup_hooks: StrictBool = Field(default=True, description="Run 'hk install' after generation")
    open_editor: StrictBool = Field(default=False, description="Open the new project in $VISUAL/$EDITOR")


class Configuration(BaseModel):
    """Merged, read-only view of every configuration layer.

    Produced once by :meth:`ConfigStore.load` and passed explicitly to every
    component that needs it.  Instances are frozen.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    user: UserConfig = Field(default_factory=UserConfig)
    development: DevelopmentConfig = Field(default_factory=DevelopmentConfig)
    post_generation: PostGenerationConfig = Field(default_factory=PostGenerationConfig)

    def value(self, key: str) -> Any:
        """Return the value stored under a dotted *key* such as ``user.author``."""
        section, field = split_key(key)
        return getattr(getattr(self, section), field)


# ---------------------------------------------------------------------------
# Key schema
# ---------------------------------------------------------------------------


def _build_key_schema() -> dict[str, type]:
    schema: dict[str, type] = {}
    for section_name, section_field in Configuration.model_fields.items():
        section_model = section_field.annotation
        for field_name, field_info in section_model.model_fields.items():
            schema[f"{section_name}.{field_name}"] = (
                bool if field_info.annotation in (bool, StrictBool) else str
            )
    return schema


# Schema order is the declaration order above; ``config list`` relies on it.
KEY_TYPES: dict[str, type] = _build_key_schema()
CONFIG_KEYS: tuple[str, ...] = tuple(KEY_TYPES)


def split_key(key: str) -> tuple[str, str]:
    """Split a dotted key into ``(section, field)``, rejecting unknown keys."""
    if key not in KEY_TYPES:
        raise UnknownKey(key)
    section, field = key.split(".", 1)
    return section, field


def coerce_value(key: str, value: Any) -> Any:
    """Convert *value* to the declared type of *key* or raise :class:`InvalidValue`.

    Booleans accept ``True``/``False`` or the strings ``true``/``false``
    (case-insensitive).  String keys accept any ``str``.
    """
    expected = KEY_TYPES.get(key)
    if expected is None:
        raise UnknownKey(key)

    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise InvalidValue(key, value, "a boolean (true or false)")

    if isinstance(value, str):
        return value
    raise InvalidValue(key, value, "a string")


def format_value(value: Any) -> str:
    """Render a configuration value the way the CLI prints it."""
    if value is None:
        return NOT_SET
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def default_config_path(env: Mapping[str, str] | None = None) -> Path:
    """Return the per-user configuration file location.

    ``$CZA_CONFIG_DIR`` wins, then ``$XDG_CONFIG_HOME/cza``, then
    ``~/.config/cza``.
    """
    env = os.environ if env is None else env
    override = env.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser() / CONFIG_FILE_NAME
    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "cza" / CONFIG_FILE_NAME


def environment_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    """Translate recognised environment variables into flat key overrides.

    ``CZA_LOG`` controls log verbosity (``debug`` turns ``development.verbose``
    on, any other level turns it off).  A non-empty ``NO_COLOR`` disables
    colour.
    """
    overrides: dict[str, Any] = {}
    level = env.get(LOG_ENV_VAR, "").strip().lower()
    if level:
        overrides["development.verbose"] = level == "debug"
    if env.get("NO_COLOR"):
        overrides["development.color"] = False
    return overrides


def _apply_overrides(data: dict[str, dict[str, Any]], overrides: Mapping[str, Any]) -> None:
    for key, raw in overrides.items():
        section, field = split_key(key)
        data.setdefault(section, {})[field] = coerce_value(key, raw)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConfigStore:
    """Loads, merges and persists the layered configuration.

    The store is the only component that writes the configuration file.
    Writes go through a temporary file and an atomic rename, so an
    interrupted ``set`` never leaves a half-written file behind.  There is no
    inter-process lock: the last writer wins.
    """

    def __init__(
        self,
        path: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._env: Mapping[str, str] = os.environ if env is None else env
        self._path = Path(path) if path is not None else default_config_path(self._env)

    # -- Public API --------------------------------------------------------

    def path(self) -> Path:
        """Location of the persisted configuration file."""
        return self._path

    def load(self, cli_overrides: Mapping[str, Any] | None = None) -> Configuration:
        """Merge every layer into a frozen :class:`Configuration`.

        Args:
            cli_overrides: Flat ``{"section.key": value}`` mapping built from
                command-line flags.  Applied last.
        """
        data = self._read_file()
        _apply_overrides(data, environment_overrides(self._env))
        if cli_overrides:
            _apply_overrides(data, cli_overrides)
        return Configuration.model_validate(data)

    def persisted(self) -> Configuration:
        """Defaults plus the config file, without environment or CLI layers."""
        return Configuration.model_validate(self._read_file())

    def get(self, key: str) -> Any:
        """Return the persisted value of *key* (``None`` for unset optional keys)."""
        split_key(key)
        return self.persisted().value(key)

    def set(self, key: str, value: Any) -> Any:
        """Type-check *value*, store it under *key*, and persist atomically.

        Returns:
            The coerced value that was written.
        """
        coerced = coerce_value(key, value)
        section, field = split_key(key)
        data = self._read_file()
        data.setdefault(section, {})[field] = coerced
        self._write(Configuration.model_validate(data))
        logger.debug("Set %s = %r in %s", key, coerced, self._path)
        return coerced

    def unset(self, key: str) -> None:
        """Revert a single key to its default and persist."""
        section, field = split_key(key)
        data = self._read_file()
        data.get(section, {}).pop(field, None)
        self._write(Configuration.model_validate(data))
        logger.debug("Unset %s in %s", key, self._path)

    def list(self) -> list[tuple[str, str]]:
        """Every key with its persisted value formatted for display, in schema order."""
        config = self.persisted()
        return [(key, format_value(config.value(key))) for key in CONFIG_KEYS]

    def reset(self) -> None:
        """Delete the persisted file; subsequent reads see the defaults."""
        self._path.unlink(missing_ok=True)
        logger.debug("Removed configuration file %s", self._path)

    # -- Persistence -------------------------------------------------------

    def _ensure_file(self) -> None:
        """Create the configuration file with default values on first access."""
        if self._path.exists():
            return
        logger.debug("Creating default configuration at %s", self._path)
        try:
            self._write(Configuration())
        except OSError as exc:
            raise ConfigFileError(f"Cannot create configuration file {self._path}: {exc}") from exc

    def _read_file(self) -> dict[str, dict[str, Any]]:
        """Return the raw sections of the config file, validated against the schema."""
        self._ensure_file()
        try:
            raw = tomllib.loads(self._path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigFileError(f"Cannot read configuration file {self._path}: {exc}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigFileError(
                f"Failed to parse configuration file {self._path}: {exc}",
                hint="Fix the file by hand or run 'cza config reset'.",
            ) from exc

        data: dict[str, dict[str, Any]] = {}
        for section, values in raw.items():
            if section not in Configuration.model_fields or not isinstance(values, dict):
                logger.warning("Ignoring unknown section [%s] in %s", section, self._path)
                continue
            for field, value in values.items():
                key = f"{section}.{field}"
                if key not in KEY_TYPES:
                    logger.warning("Ignoring unknown key %s in %s", key, self._path)
                    continue
                data.setdefault(section, {})[field] = value

        try:
            Configuration.model_validate(data)
        except ValidationError as exc:
            raise ConfigFileError(
                f"Invalid configuration file {self._path}: {exc}",
                hint="Fix the file by hand or run 'cza config reset'.",
            ) from exc
        return data

    def _write(self, config: Configuration) -> None:
        content = tomli_w.dumps(config.model_dump(exclude_none=True))
        atomic_write_text(self._path, content)
