"""Plan and apply: the glue between config, backends and the engine."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Callable

from converge.capabilities.selection import Backends
from converge.config.declared import load_declared_state
from converge.config.settings import Settings
from converge.engine.actual import query_actual_state
from converge.engine.diff import StateDiffEngine
from converge.engine.transaction import Transaction
from converge.errors import (
    ConvergeError,
    OperationError,
    ResourceError,
    RollbackError,
    ValidationError,
    VerificationError,
)
from converge.models.operations import StateDiff
from converge.models.state import ActualState, DeclaredState, ServiceScope
from converge.utils.git_ops import repo_metadata

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    FAILED = 1  # Validation, config or lock failure; nothing was changed
    ROLLED_BACK = 2
    ROLLBACK_FAILED = 3
    VERIFY_MISMATCH = 4


@dataclass
class Plan:
    transaction_id: str
    profile: str
    declared: DeclaredState
    actual: ActualState
    diff: StateDiff


@dataclass
class ApplyOutcome:
    exit_code: ExitCode
    plan: Plan
    cancelled: bool = False
    error: ConvergeError | None = None
    findings: list[VerificationError] = field(default_factory=list)
    record: dict | None = None
    """``Transaction.to_record()`` when a transaction was started."""

    @property
    def applied(self) -> bool:
        return self.record is not None and self.exit_code in (ExitCode.OK, ExitCode.VERIFY_MISMATCH)


def make_plan(
    config: dict,
    settings: Settings,
    backends: Backends,
    profile: str | None = None,
    home: Path | None = None,
    transaction_id: str | None = None,
    default_scope: ServiceScope = ServiceScope.USER,
) -> Plan:
    """Load the declared state, query the live system and diff the two."""
    profile = profile or settings.current_profile
    declared = load_declared_state(
        config, settings, profile=profile, home=home, default_scope=default_scope
    )
    actual = query_actual_state(declared, backends)
    txn_id = transaction_id or uuid.uuid4().hex
    engine = StateDiffEngine(settings.backup_dir, txn_id, home=home)
    return Plan(txn_id, profile, declared, actual, engine.compute(declared, actual))


def apply_plan(
    plan: Plan,
    settings: Settings,
    backends: Backends,
    *,
    dry_run: bool = False,
    confirm: Callable[[StateDiff], bool] | None = None,
    description: str = "",
) -> ApplyOutcome:
    """Run the plan's diff as one transaction and map the result to an exit code.

    A dry run, an empty diff or a declined confirmation never begins a
    transaction, so no staging directory, lock or results are created.
    """
    if plan.diff.is_empty or dry_run:
        return ApplyOutcome(ExitCode.OK, plan)
    if confirm is not None and not confirm(plan.diff):
        return ApplyOutcome(ExitCode.OK, plan, cancelled=True)

    metadata = {
        "description": description,
        "profile": plan.profile,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "repository": repo_metadata(settings.repo_path),
    }

    try:
        txn = Transaction.begin(
            settings.staging_root,
            backends,
            lock_path=settings.lock_path,
            transaction_id=plan.transaction_id,
            metadata=metadata,
        )
    except ResourceError as e:
        return ApplyOutcome(ExitCode.FAILED, plan, error=e)

    with txn:
        try:
            txn.add_operations(plan.diff.operations)
            txn.validate()
            txn.prepare()
            txn.commit()
        except ValidationError as e:
            txn.rollback()
            return _finish(txn, ExitCode.FAILED, plan, error=e)
        except RollbackError as e:
            return _finish(txn, ExitCode.ROLLBACK_FAILED, plan, error=e)
        except OperationError as e:
            return _finish(txn, ExitCode.ROLLED_BACK, plan, error=e)
        except ConvergeError as e:
            txn.rollback()
            return _finish(txn, ExitCode.FAILED, plan, error=e)

        findings = txn.verify()
        code = ExitCode.VERIFY_MISMATCH if findings else ExitCode.OK
        return _finish(txn, code, plan, findings=findings)


def _finish(txn: Transaction, code: ExitCode, plan: Plan, **kwargs) -> ApplyOutcome:
    if kwargs.get("error") is not None:
        logger.error("Transaction %s ended with %s: %s", txn.id, code.name, kwargs["error"])
    return ApplyOutcome(code, plan, record=txn.to_record(), **kwargs)
