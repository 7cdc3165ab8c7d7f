"""Root of the cza exception hierarchy.

Component-specific errors live next to the component that raises them and
subclass :class:`CzaError`.  The CLI maps ``exit_code`` straight to the
process exit status.
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class CzaError(Exception):
    """Base class for every error the CLI knows how to report."""

    exit_code: int = EXIT_FAILURE

    def __init__(self, message: str, *, hint: str = "") -> None:
        self.hint = hint
        super().__init__(message)


class UsageError(CzaError):
    """The user asked for something that cannot be done as stated."""

    exit_code = EXIT_USAGE
