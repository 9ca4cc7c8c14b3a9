"""Transactional application of a diff.

Lifecycle::

    txn = Transaction.begin(staging_root, backends, lock_path=lock)
    with txn:
        for op in diff.operations:
            txn.add_operation(op)
        txn.validate()
        txn.prepare()
        txn.commit()        # rolls back and raises on the first failure
        findings = txn.verify()

States only move forward: Started -> Prepared -> Committed -> Verified, with
RolledBack reachable from any non-terminal state. Calling a method from a
state that does not allow it raises ``InvalidTransitionError``.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable

from converge.capabilities.base import CommandResult
from converge.capabilities.selection import Backends
from converge.engine.lock import StateLock
from converge.engine.validation import ValidationResult
from converge.errors import (
    ConvergeError,
    InvalidTransitionError,
    OperationError,
    ResourceError,
    RollbackError,
    ValidationError,
    VerificationError,
)
from converge.models.operations import (
    FILE_OPERATIONS,
    PACKAGE_OPERATIONS,
    SERVICE_OPERATIONS,
    BackupAndReplace,
    CreateSymlink,
    DisableService,
    EnableService,
    InstallPackage,
    Operation,
    OperationResult,
    RemovePackage,
    RemoveSymlink,
    RollbackData,
    StartService,
    StopService,
)
from converge.models.state import LATEST, EntryType, ResolutionMode
from converge.utils.paths import link_text_for

logger = logging.getLogger(__name__)

LOCK_NAME = "converge.lock"


class TransactionState(Enum):
    STARTED = "started"
    PREPARED = "prepared"
    COMMITTED = "committed"
    VERIFIED = "verified"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (TransactionState.VERIFIED, TransactionState.ROLLED_BACK)


TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.STARTED: frozenset({TransactionState.PREPARED, TransactionState.ROLLED_BACK}),
    TransactionState.PREPARED: frozenset({TransactionState.COMMITTED, TransactionState.ROLLED_BACK}),
    TransactionState.COMMITTED: frozenset({TransactionState.VERIFIED, TransactionState.ROLLED_BACK}),
    TransactionState.VERIFIED: frozenset(),
    TransactionState.ROLLED_BACK: frozenset(),
}


@dataclass
class RollbackReport:
    """What a rollback undid and what it could not."""

    undone: list[Operation] = field(default_factory=list)
    failures: list[tuple[Operation, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class Transaction:
    """One atomic attempt to apply an ordered list of operations."""

    def __init__(
        self,
        transaction_id: str,
        staging_dir: Path,
        backends: Backends,
        lock: StateLock | None = None,
        metadata: dict | None = None,
    ):
        self.id = transaction_id
        self.staging_dir = staging_dir
        self.backends = backends
        self.metadata: dict = dict(metadata or {})
        self.state = TransactionState.STARTED
        self.findings: list[VerificationError] = []
        self.rollback_failed = False

        self._lock = lock
        self._operations: list[Operation] = []
        self._results: list[OperationResult] = []
        self._attempted: list[int] = []  # operation index of each result
        self._skipped: set[int] = set()
        self._staged: dict[int, Path] = {}
        self._link_texts: dict[int, str] = {}
        self._validated = False
        self._cleaned = False

    @classmethod
    def begin(
        cls,
        staging_root: Path,
        backends: Backends,
        *,
        lock_path: Path | None = None,
        transaction_id: str | None = None,
        metadata: dict | None = None,
    ) -> Transaction:
        """Take the state lock and create an exclusively owned staging directory.

        Raises:
            ConcurrentTransactionError: Another transaction holds the lock.
            ResourceError: The lock file or staging directory cannot be created.
        """
        staging_root = Path(staging_root)
        txn_id = transaction_id or uuid.uuid4().hex

        lock = StateLock(Path(lock_path) if lock_path else staging_root / LOCK_NAME)
        lock.acquire()

        staging_dir = staging_root / f"converge-{txn_id}"
        try:
            staging_dir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            lock.release()
            raise ResourceError(f"Cannot create staging directory {staging_dir}: {e}")

        meta = dict(metadata or {})
        meta.setdefault("started_at", datetime.now(timezone.utc).isoformat())
        logger.info("Transaction %s started (staging %s)", txn_id, staging_dir)
        return cls(txn_id, staging_dir, backends, lock=lock, metadata=meta)

    # --- State machine ---

    def _require(self, *states: TransactionState, action: str) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransitionError(
                f"Cannot {action} a transaction in state '{self.state.value}' (requires: {allowed})"
            )

    def _transition(self, new_state: TransactionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Invalid transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Transaction %s: %s -> %s", self.id, self.state.value, new_state.value)
        self.state = new_state

    @property
    def operations(self) -> tuple[Operation, ...]:
        return tuple(self._operations)

    def add_operation(self, op: Operation) -> None:
        self._require(TransactionState.STARTED, action="add an operation to")
        self._operations.append(op)
        self._validated = False

    def add_operations(self, ops: Iterable[Operation]) -> None:
        for op in ops:
            self.add_operation(op)

    # --- Validate ---

    def validate(self) -> ValidationResult:
        """Check every precondition without touching the system.

        All issues are collected before a single ``ValidationError`` is raised.
        Operations whose backend is unavailable are skipped with a warning when
        the backends tolerate it.
        """
        self._require(TransactionState.STARTED, action="validate")
        result = ValidationResult()
        self._skipped = set()

        self._validate_packages(result)
        self._validate_services(result)
        self._validate_files(result)

        if not result.passed:
            raise ValidationError(result.errors)

        for issue in result.warnings:
            logger.warning("[%s] %s", issue.code, issue.message)
        self._validated = True
        return result

    def _indexed(self, kinds: tuple) -> list[tuple[int, Operation]]:
        return [(i, op) for i, op in enumerate(self._operations) if isinstance(op, kinds)]

    def _check_backend(self, kinds: tuple, backend, category: str, result: ValidationResult) -> bool:
        ops = self._indexed(kinds)
        if not ops or backend.is_available():
            return True
        if self.backends.tolerate_missing:
            for index, op in ops:
                self._skipped.add(index)
                result.warn(
                    "backend-unavailable",
                    f"{category} backend '{backend.name}' unavailable, skipping: {op.describe()}",
                )
        else:
            result.error(
                "backend-unavailable",
                f"{category} backend '{backend.name}' is not available "
                f"({len(ops)} operation(s) need it)",
            )
        return False

    def _validate_packages(self, result: ValidationResult) -> None:
        ops = self._indexed(PACKAGE_OPERATIONS)
        for _, op in ops:
            if not op.name.strip():
                result.error("empty-package-name", "Package name must not be empty")
        if not self._check_backend(PACKAGE_OPERATIONS, self.backends.packages, "Package", result):
            return

        for _, op in ops:
            if not isinstance(op, InstallPackage) or not op.name.strip():
                continue
            try:
                conflicts = self.backends.packages.check_conflicts(op.name)
            except (ConvergeError, RuntimeError, OSError) as e:
                result.warn("conflict-check-failed", f"Could not check conflicts for {op.name}: {e}", op.name)
                continue
            if conflicts:
                result.error(
                    "package-conflict",
                    f"{op.name} conflicts with installed package(s): {', '.join(conflicts)}",
                    op.name,
                )

    def _validate_services(self, result: ValidationResult) -> None:
        for _, op in self._indexed(SERVICE_OPERATIONS):
            if not op.name.strip():
                result.error("empty-service-name", "Service name must not be empty")
        self._check_backend(SERVICE_OPERATIONS, self.backends.services, "Service", result)

    def _validate_files(self, result: ValidationResult) -> None:
        fs = self.backends.files
        destinations: set[Path] = set()
        backups: set[Path] = set()

        for _, op in self._indexed(FILE_OPERATIONS):
            where = str(op.target)
            if op.target in destinations:
                result.error("duplicate-destination", f"{op.target} is targeted more than once", where)
            destinations.add(op.target)

            if not fs.is_writable(op.target):
                result.error("not-writable", f"Destination is not writable: {op.target}", where)

            if isinstance(op, (CreateSymlink, BackupAndReplace)):
                source = _inspect(fs, op.source, result, where)
                if source is not None and not source.exists:
                    result.error("missing-source", f"Source does not exist: {op.source}", where)

            entry = _inspect(fs, op.target, result, where)
            if entry is None:
                continue
            if isinstance(op, CreateSymlink) and entry.kind == EntryType.REGULAR:
                result.error(
                    "destination-conflict",
                    f"A real {'directory' if entry.is_dir else 'file'} exists at {op.target}",
                    where,
                )
            elif isinstance(op, RemoveSymlink) and entry.kind == EntryType.REGULAR:
                result.error("destination-conflict", f"{op.target} is not a symlink", where)
            elif isinstance(op, BackupAndReplace):
                if not entry.exists:
                    result.error("destination-changed", f"Nothing to back up at {op.target}", where)
                if op.backup_path in backups:
                    result.error("duplicate-backup", f"Backup path used twice: {op.backup_path}", where)
                elif os.path.lexists(op.backup_path):
                    result.error("backup-exists", f"Backup path already exists: {op.backup_path}", where)
                elif not fs.is_writable(op.backup_path):
                    result.error("not-writable", f"Backup location is not writable: {op.backup_path}", where)
                backups.add(op.backup_path)

    # --- Prepare ---

    def prepare(self) -> None:
        """Stage copies for replace mode and pre-compute link texts."""
        self._require(TransactionState.STARTED, action="prepare")
        if not self._validated:
            raise InvalidTransitionError("validate() must succeed before prepare()")

        backups: set[Path] = set()
        for index, op in self._indexed(FILE_OPERATIONS):
            if index in self._skipped:
                continue
            if isinstance(op, BackupAndReplace):
                if op.backup_path in backups:
                    raise ResourceError(f"Backup path used twice: {op.backup_path}")
                backups.add(op.backup_path)
            if not isinstance(op, (CreateSymlink, BackupAndReplace)):
                continue
            if op.resolution == ResolutionMode.REPLACE:
                self._staged[index] = self._stage_copy(index, op.source)
            else:
                self._link_texts[index] = link_text_for(op.source, op.target, op.resolution)

        self._transition(TransactionState.PREPARED)

    def _stage_copy(self, index: int, source: Path) -> Path:
        staged = self.staging_dir / f"{index:04d}-{source.name}"
        try:
            if source.is_dir():
                shutil.copytree(source, staged, symlinks=True)
            else:
                shutil.copy2(source, staged)
        except OSError as e:
            raise ResourceError(f"Cannot stage {source}: {e}")
        return staged

    # --- Commit ---

    def commit(self) -> None:
        """Apply operations in order; on the first failure roll everything back.

        Raises:
            OperationError: An operation failed and the rollback succeeded.
            RollbackError: An operation failed and the rollback failed too.
        """
        self._require(TransactionState.PREPARED, action="commit")

        for index, op in enumerate(self._operations):
            if index in self._skipped:
                continue
            rollback = RollbackData()
            try:
                rollback = self._capture(op)
                outcome = self._execute(index, op)
                error = None if outcome.success else (outcome.message or "operation failed")
            except Exception as e:
                error = str(e) or type(e).__name__
                cause = e
            else:
                cause = None

            self._results.append(
                OperationResult(operation=op, success=error is None, error=error, rollback=rollback)
            )
            self._attempted.append(index)
            if error is None:
                logger.info("Applied: %s", op.describe())
                continue

            logger.error("Failed: %s: %s", op.describe(), error)
            report = self._undo_applied(cause=cause, failed=self._results[-1])
            err_cls = type(cause) if isinstance(cause, OperationError) else OperationError
            raise err_cls(f"{op.describe()} failed: {error}", operation=op, rollback=report) from cause

        self._transition(TransactionState.COMMITTED)

    def _capture(self, op: Operation) -> RollbackData:
        """Record what is needed to undo ``op``, just before it runs."""
        if isinstance(op, (InstallPackage, RemovePackage)):
            return RollbackData(prior_version=self.backends.packages.list_installed().get(op.name))
        if isinstance(op, (CreateSymlink, RemoveSymlink)):
            entry = self.backends.files.entry_kind(op.target)
            return RollbackData(prior_entry_kind=entry.kind.value, prior_link_target=entry.link_target)
        if isinstance(op, BackupAndReplace):
            entry = self.backends.files.entry_kind(op.target)
            return RollbackData(backup_path=op.backup_path, prior_entry_kind=entry.kind.value)
        status = self.backends.services.status(op.name, op.scope)
        return RollbackData(prior_enabled=status.enabled, prior_running=status.running)

    def _execute(self, index: int, op: Operation) -> CommandResult:
        pm, sm, fs = self.backends.packages, self.backends.services, self.backends.files

        if isinstance(op, InstallPackage):
            return pm.install(op.name, op.version)
        if isinstance(op, RemovePackage):
            return pm.remove(op.name)
        if isinstance(op, CreateSymlink):
            fs.create_symlink(op.source, op.target, op.resolution, staged=self._staged.get(index))
            return CommandResult.ok()
        if isinstance(op, RemoveSymlink):
            fs.remove_symlink(op.target)
            return CommandResult.ok()
        if isinstance(op, BackupAndReplace):
            fs.backup_and_replace(
                op.source, op.target, op.backup_path, op.resolution, staged=self._staged.get(index)
            )
            return CommandResult.ok()
        if isinstance(op, EnableService):
            return sm.enable(op.name, op.scope)
        if isinstance(op, DisableService):
            return sm.disable(op.name, op.scope)
        if isinstance(op, StartService):
            return sm.start(op.name, op.scope)
        if isinstance(op, StopService):
            return sm.stop(op.name, op.scope)
        raise TypeError(f"Unknown operation: {op!r}")

    # --- Rollback ---

    def rollback(self) -> RollbackReport:
        """Undo everything applied so far and end in ``RolledBack``.

        Raises:
            RollbackError: At least one undo step failed.
        """
        if self.state.terminal:
            raise InvalidTransitionError(
                f"Cannot roll back a transaction in state '{self.state.value}'"
            )
        return self._undo_applied()

    def _undo_applied(
        self, cause: BaseException | None = None, failed: OperationResult | None = None
    ) -> RollbackReport:
        report = RollbackReport()
        if failed is not None:
            self._repair_partial(failed.operation, report)
        for result in reversed(self._results):
            if not result.success:
                continue
            try:
                self._undo(result)
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error("Rollback of '%s' failed: %s", result.operation.describe(), message)
                report.failures.append((result.operation, message))
            else:
                result.rolled_back = True
                report.undone.append(result.operation)
                logger.info("Rolled back: %s", result.operation.describe())

        self._transition(TransactionState.ROLLED_BACK)

        if report.failures:
            self.rollback_failed = True
            raise RollbackError(
                report.failures,
                staging_dir=self.staging_dir,
                backup_paths=self.backup_paths(),
                cause=cause,
            )
        return report

    def _repair_partial(self, op: Operation, report: RollbackReport) -> None:
        """Put back a destination the failed operation removed before it failed."""
        if not isinstance(op, BackupAndReplace):
            return
        if os.path.lexists(op.target) or not os.path.lexists(op.backup_path):
            return
        try:
            self.backends.files.restore_backup(op.backup_path, op.target)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Could not restore %s from %s: %s", op.target, op.backup_path, message)
            report.failures.append((op, message))
        else:
            logger.info("Restored %s left missing by the failed operation", op.target)

    def _undo(self, result: OperationResult) -> None:
        op, data = result.operation, result.rollback
        pm, sm, fs = self.backends.packages, self.backends.services, self.backends.files

        if isinstance(op, InstallPackage):
            if data.prior_version is None:
                _check(pm.remove(op.name))
            else:
                _check(pm.install(op.name, data.prior_version))
        elif isinstance(op, RemovePackage):
            _check(pm.install(op.name, data.prior_version or LATEST))
        elif isinstance(op, (CreateSymlink, RemoveSymlink)):
            if isinstance(op, CreateSymlink) and op.resolution == ResolutionMode.REPLACE:
                fs.remove_entry(op.target)
            if data.prior_entry_kind == EntryType.SYMLINK.value and data.prior_link_target is not None:
                fs.restore_symlink(op.target, data.prior_link_target)
            elif data.prior_entry_kind == EntryType.ABSENT.value:
                fs.remove_entry(op.target)
        elif isinstance(op, BackupAndReplace):
            fs.restore_backup(op.backup_path, op.target)
        elif isinstance(op, EnableService):
            if not data.prior_enabled:
                _check(sm.disable(op.name, op.scope))
        elif isinstance(op, DisableService):
            if data.prior_enabled:
                _check(sm.enable(op.name, op.scope))
        elif isinstance(op, StartService):
            if not data.prior_running:
                _check(sm.stop(op.name, op.scope))
        elif isinstance(op, StopService):
            if data.prior_running:
                _check(sm.start(op.name, op.scope))

    # --- Verify ---

    def verify(self) -> list[VerificationError]:
        """Re-query each applied operation's target and report mismatches.

        Mismatches do not roll anything back; the transaction always ends in
        ``Verified`` and the findings are returned and kept on ``findings``.
        """
        self._require(TransactionState.COMMITTED, action="verify")
        findings: list[VerificationError] = []
        installed: dict[str, str] | None = None
        available = {
            "packages": self.backends.packages.is_available() if self._has(PACKAGE_OPERATIONS) else False,
            "services": self.backends.services.is_available() if self._has(SERVICE_OPERATIONS) else False,
        }

        for index, result in zip(self._attempted, self._results):
            op = result.operation
            if not result.success:
                continue
            try:
                if isinstance(op, PACKAGE_OPERATIONS):
                    if not available["packages"]:
                        logger.warning("Package backend unavailable, not verifying: %s", op.describe())
                        continue
                    if installed is None:
                        installed = self.backends.packages.list_installed()
                    problem = _verify_package(op, installed)
                elif isinstance(op, SERVICE_OPERATIONS):
                    if not available["services"]:
                        logger.warning("Service backend unavailable, not verifying: %s", op.describe())
                        continue
                    problem = self._verify_service(op)
                else:
                    problem = self._verify_file(index, op)
            except Exception as e:
                problem = f"could not be verified: {e}"
            if problem:
                findings.append(VerificationError(op, f"{op.describe()}: {problem}"))

        for finding in findings:
            logger.warning("Verification mismatch: %s", finding)
        self.findings = findings
        self._transition(TransactionState.VERIFIED)
        return findings

    def _has(self, kinds: tuple) -> bool:
        return any(isinstance(r.operation, kinds) and r.success for r in self._results)

    def _verify_service(self, op: Operation) -> str | None:
        status = self.backends.services.status(op.name, op.scope)
        if isinstance(op, EnableService) and not status.enabled:
            return "service is not enabled"
        if isinstance(op, DisableService) and status.enabled:
            return "service is still enabled"
        if isinstance(op, StartService) and not status.running:
            return "service is not running"
        if isinstance(op, StopService) and status.running:
            return "service is still running"
        return None

    def _verify_file(self, index: int, op: Operation) -> str | None:
        fs = self.backends.files
        entry = fs.entry_kind(op.target)
        if isinstance(op, RemoveSymlink):
            return "symlink still present" if entry.exists else None

        if isinstance(op, BackupAndReplace) and not os.path.lexists(op.backup_path):
            return f"backup missing at {op.backup_path}"

        if op.resolution == ResolutionMode.REPLACE:
            expected = fs.entry_kind(self._staged.get(index, op.source))
            if entry.kind != EntryType.REGULAR or entry.content_hash != expected.content_hash:
                return "destination content differs from source"
            return None

        if not entry.is_symlink:
            return f"expected a symlink, found {entry.describe()}"
        expected_text = self._link_texts.get(index) or link_text_for(op.source, op.target, op.resolution)
        if entry.link_target != expected_text:
            return f"link points to {entry.link_target}, expected {expected_text}"
        if entry.resolved != Path(os.path.realpath(op.source)) or not os.path.exists(op.target):
            return f"link does not resolve to {op.source}"
        return None

    # --- Reporting and cleanup ---

    def get_changes(self) -> list[OperationResult]:
        return list(self._results)

    def backup_paths(self) -> list[Path]:
        return [
            r.rollback.backup_path
            for r in self._results
            if r.rollback.backup_path is not None and os.path.lexists(r.rollback.backup_path)
        ]

    @property
    def skipped(self) -> list[Operation]:
        return [op for i, op in enumerate(self._operations) if i in self._skipped]

    def cleanup(self) -> None:
        """Remove the staging directory and release the lock. Safe to repeat.

        The staging directory is kept when rollback failed, for manual recovery.
        """
        if self._cleaned:
            return
        if self.rollback_failed:
            logger.warning("Keeping staging directory for recovery: %s", self.staging_dir)
        elif self.staging_dir.exists():
            shutil.rmtree(self.staging_dir, ignore_errors=True)
        if self._lock is not None:
            self._lock.release()
        self._cleaned = True

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None and self.state in (TransactionState.STARTED, TransactionState.PREPARED):
                # Nothing has been applied yet
                self._transition(TransactionState.ROLLED_BACK)
        finally:
            self.cleanup()

    def to_record(self) -> dict:
        """JSON-serialisable summary for an external history ledger."""
        return {
            "id": self.id,
            "state": self.state.value,
            "metadata": dict(self.metadata),
            "operations": [op.describe() for op in self._operations],
            "skipped": [op.describe() for op in self.skipped],
            "results": [r.to_dict() for r in self._results],
            "findings": [str(f) for f in self.findings],
            "rollback_failed": self.rollback_failed,
            "staging_dir": str(self.staging_dir),
        }


def _check(result: CommandResult) -> None:
    if not result.success:
        raise OperationError(result.message or "undo step failed")


def _inspect(fs, path: Path, result: ValidationResult, where: str):
    try:
        return fs.entry_kind(path)
    except ResourceError as e:
        result.error("unreadable", str(e), where)
        return None


def _verify_package(op: Operation, installed: dict[str, str]) -> str | None:
    version = installed.get(op.name)
    if isinstance(op, RemovePackage):
        return f"still installed ({version})" if version is not None else None
    if version is None:
        return "package is not installed"
    if op.version != LATEST and version != op.version:
        return f"installed version is {version}, expected {op.version}"
    return None
