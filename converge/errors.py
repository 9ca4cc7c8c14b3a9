"""Error taxonomy for converge.

Operational failures derive from ``ConvergeError``. Calling a transaction
lifecycle method from the wrong state is a programming error and raises
``InvalidTransitionError`` instead, which sits outside that tree.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from converge.engine.validation import ValidationIssue
    from converge.models.operations import Operation


class ConvergeError(Exception):
    """Base class for every operational error raised by converge."""


class ConfigError(ConvergeError):
    """The configuration file is missing required keys or holds bad values."""


class ValidationError(ConvergeError):
    """A precondition failed before anything was mutated."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = list(issues)
        lines = [f"[{i.code}] {i.message}" for i in self.issues]
        super().__init__(
            f"Validation failed with {len(self.issues)} issue(s):\n  " + "\n  ".join(lines)
        )


class BackendUnavailableError(ConvergeError):
    """A required package or service backend is absent on this machine."""

    def __init__(self, category: str, detail: str = ""):
        self.category = category
        message = f"{category} backend is not available"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class OperationError(ConvergeError):
    """A single operation failed during commit.

    ``rollback`` holds the report of the automatic rollback that ``commit()``
    performed before raising.
    """

    def __init__(self, message: str, operation: Operation | None = None, rollback=None):
        self.operation = operation
        self.rollback = rollback
        super().__init__(message)


class OperationTimeoutError(OperationError):
    """A backend call did not finish within the configured timeout."""


class VerificationError(ConvergeError):
    """Post-commit state disagrees with what an operation intended."""

    def __init__(self, operation: Operation, message: str):
        self.operation = operation
        super().__init__(message)


class ResourceError(ConvergeError):
    """Staging directory, lock file or backup path could not be created."""


class ConcurrentTransactionError(ResourceError):
    """Another transaction already holds the state lock."""


class RollbackError(ConvergeError):
    """Rollback itself failed; the system may be left inconsistent.

    Carries everything a human needs for manual recovery.
    """

    def __init__(
        self,
        failures: list[tuple[Operation, str]],
        staging_dir: Path | None,
        backup_paths: list[Path],
        cause: BaseException | None = None,
    ):
        self.failures = failures
        self.staging_dir = staging_dir
        self.backup_paths = backup_paths
        self.cause = cause
        details = "; ".join(f"{op.describe()}: {err}" for op, err in failures)
        super().__init__(f"Rollback failed for {len(failures)} operation(s): {details}")


class InvalidTransitionError(RuntimeError):
    """A transaction method was called from a state that does not allow it."""
