"""Tests for planning and applying end to end with in-memory backends."""

import os
import tempfile
from pathlib import Path

from fakes import SYSTEM, FakePackageManager, FakeServiceManager, make_backends

from converge.apply import ExitCode, apply_plan, make_plan
from converge.config.settings import Settings
from converge.engine.lock import StateLock
from converge.errors import ConcurrentTransactionError, OperationError, ValidationError
from converge.models.state import ServiceStatus


def _setup(tmp):
    root = Path(os.path.realpath(tmp))
    repo = root / "repo"
    home = root / "home"
    (repo / "sway").mkdir(parents=True)
    (repo / "sway" / "config").write_text("managed")
    home.mkdir()
    settings = Settings(repo_path=repo, backup_dir=root / "backups", state_dir=root / "state")
    config = {
        "packages": {"git": "latest"},
        "services": {"sshd": {"enabled": True, "running": True, "scope": "system"}},
        "files": {"sway": {"source": "sway/config", "destination": ".config/sway/config"}},
    }
    return settings, config, home


def test_dry_run_shows_diff_without_side_effects():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        pm = FakePackageManager()
        backends = make_backends(pm)

        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends, dry_run=True)

        assert outcome.exit_code == ExitCode.OK
        assert outcome.record is None
        assert plan.diff.total_changes == 4
        assert pm.calls == []
        assert not settings.staging_root.exists()
        assert not os.path.lexists(home / ".config" / "sway" / "config")


def test_apply_then_status_is_clean():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        backends = make_backends()

        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends, description="initial setup")

        assert outcome.exit_code == ExitCode.OK
        assert outcome.applied
        assert outcome.record["state"] == "verified"
        assert outcome.record["metadata"]["description"] == "initial setup"
        assert outcome.record["metadata"]["repository"] == {}
        assert list(settings.staging_root.iterdir()) == []

        assert make_plan(config, settings, backends, home=home).diff.is_empty


def test_empty_diff_never_begins_a_transaction():
    with tempfile.TemporaryDirectory() as tmp:
        settings, _, home = _setup(tmp)
        backends = make_backends()
        plan = make_plan({}, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)
        assert outcome.exit_code == ExitCode.OK
        assert outcome.record is None
        assert not settings.staging_root.exists()


def test_declined_confirmation_changes_nothing():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        pm = FakePackageManager()
        backends = make_backends(pm)
        plan = make_plan(config, settings, backends, home=home)

        seen = []
        outcome = apply_plan(plan, settings, backends, confirm=lambda diff: seen.append(diff) or False)
        assert outcome.cancelled
        assert seen == [plan.diff]
        assert pm.calls == []


def test_validation_failure_exits_1():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        backends = make_backends(FakePackageManager(available=False))
        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)

        assert outcome.exit_code == ExitCode.FAILED
        assert isinstance(outcome.error, ValidationError)
        assert outcome.record["state"] == "rolled_back"
        assert not os.path.lexists(home / ".config" / "sway" / "config")


def test_skip_unavailable_applies_the_rest():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        backends = make_backends(FakePackageManager(available=False), tolerate_missing=True)
        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)

        assert outcome.exit_code == ExitCode.OK
        assert outcome.record["skipped"] == ["install package git (latest)"]
        assert (home / ".config" / "sway" / "config").is_symlink()


def test_commit_failure_rolls_back_and_exits_2():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        pm = FakePackageManager()
        sm = FakeServiceManager(fail_on={("start", "sshd")})
        backends = make_backends(pm, sm)
        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)

        assert outcome.exit_code == ExitCode.ROLLED_BACK
        assert isinstance(outcome.error, OperationError)
        assert "git" not in pm.installed
        assert sm.status("sshd", SYSTEM) == ServiceStatus(enabled=False, running=False)
        assert not os.path.lexists(home / ".config" / "sway" / "config")


def test_verification_mismatch_exits_4():
    with tempfile.TemporaryDirectory() as tmp:
        settings, _, home = _setup(tmp)
        pm = FakePackageManager()
        pm.installs_as["vim"] = "9.0"
        backends = make_backends(pm)
        plan = make_plan({"packages": {"vim": "9.1"}}, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)

        assert outcome.exit_code == ExitCode.VERIFY_MISMATCH
        assert len(outcome.findings) == 1


def test_lock_contention_exits_1():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        backends = make_backends()
        plan = make_plan(config, settings, backends, home=home)

        with StateLock(settings.lock_path):
            outcome = apply_plan(plan, settings, backends)
        assert outcome.exit_code == ExitCode.FAILED
        assert isinstance(outcome.error, ConcurrentTransactionError)
        assert outcome.record is None


class FlakyConflictPackageManager(FakePackageManager):
    def check_conflicts(self, name):
        raise RuntimeError("rpm query failed: rpmdb open failed")


def test_conflict_check_error_does_not_abort_apply():
    with tempfile.TemporaryDirectory() as tmp:
        settings, config, home = _setup(tmp)
        pm = FlakyConflictPackageManager()
        backends = make_backends(pm)
        plan = make_plan(config, settings, backends, home=home)
        outcome = apply_plan(plan, settings, backends)

        assert outcome.exit_code == ExitCode.OK
        assert pm.installed["git"] == "1.0"
