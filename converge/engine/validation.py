"""Issues collected by transaction validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Severity(Enum):
    ERROR = "error"  # Blocks the transaction
    WARNING = "warning"  # Operation will be skipped


@dataclass
class ValidationIssue:
    """A single precondition problem."""

    severity: Severity
    code: str  # Machine-readable issue code
    message: str
    path: str = ""  # Destination or package the issue refers to


@dataclass
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not any(i.severity == Severity.ERROR for i in self.issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def error(self, code: str, message: str, path: str = "") -> None:
        self.issues.append(ValidationIssue(Severity.ERROR, code, message, path))

    def warn(self, code: str, message: str, path: str = "") -> None:
        self.issues.append(ValidationIssue(Severity.WARNING, code, message, path))

    def summary(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"[{status}] {len(self.errors)} error(s), {len(self.warnings)} warning(s)"
