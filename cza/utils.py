"""Shared utility functions for cza.

Provides blocking command execution, git helpers, atomic file writes,
Rich-based console output, and logging setup.  Every command runs on the
calling thread: the CLI is strictly sequential.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

LOG_ENV_VAR = "CZA_LOG"

_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = None,
    capture: bool = True,
    env: dict[str, str] | None = None,
) -> tuple[int, str, str]:
    """Run a command and block until it exits.

    Args:
        cmd: Program and arguments.  Never passed through a shell.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
            ``None`` waits forever.
        capture: Whether to capture stdout/stderr (if ``False`` they inherit
            the parent's streams so interactive tools can draw progress).
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A ``(returncode, stdout, stderr)`` tuple.  If *capture* is ``False``
        the stdout/stderr strings will be empty.

    Raises:
        FileNotFoundError: If the program is not installed.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    logger.debug("Running command: %s (cwd=%s)", " ".join(cmd), cwd or ".")

    try:
        completed = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            capture_output=capture,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return (-1, "", f"Command timed out after {timeout}s: {' '.join(cmd)}")

    stdout_str = (completed.stdout or "").strip()
    stderr_str = (completed.stderr or "").strip()
    logger.debug("%s exited with status %s", cmd[0], completed.returncode)
    return (completed.returncode, stdout_str, stderr_str)


def program_available(program: str) -> bool:
    """Return ``True`` if *program* can be found on ``PATH``."""
    return shutil.which(program) is not None


def get_git_config(key: str) -> str | None:
    """Read a single ``git config`` value, or ``None`` when unset or git is missing."""
    try:
        returncode, stdout, _ = run_command(["git", "config", key], timeout=10)
    except FileNotFoundError:
        return None
    if returncode != 0 or not stdout:
        return None
    return stdout


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* so readers never observe a partial file.

    The data goes to a temporary file in the same directory, which is then
    renamed over *path*.  The temporary file is removed if anything fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def configure_consoles(color: bool) -> None:
    """Enable or disable colour on both shared consoles."""
    for target in (console, err_console):
        target.no_color = not color


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table.

    Args:
        data: Mapping of label -> value.
        title: Table title.
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Key", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message to stderr."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


def print_info(message: str) -> None:
    console.print(f"[blue]{message}[/blue]")


def print_step(message: str) -> None:
    console.print(f"[cyan]>[/cyan] {message}")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def resolve_log_level(verbose: bool) -> int:
    """Pick the root log level.

    ``CZA_LOG`` wins when it names a known level; otherwise *verbose* selects
    ``DEBUG`` and the default is ``WARNING`` so normal runs stay quiet.
    """
    raw = os.environ.get(LOG_ENV_VAR, "").strip().lower()
    if raw in _LOG_LEVELS:
        return _LOG_LEVELS[raw]
    return logging.DEBUG if verbose else logging.WARNING


def setup_logging(verbose: bool = False, color: bool = True) -> None:
    """Route the ``cza`` logger tree through a RichHandler on stderr."""
    configure_consoles(color)
    package_logger = logging.getLogger("cza")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)

    handler = RichHandler(
        console=err_console,
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(resolve_log_level(verbose))
    package_logger.propagate = False
