"""converge CLI — the main entry point for the system-state reconciler."""

import dataclasses
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from converge import __version__

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", count=True, help="-v for info, -vv for debug logging")
def main(verbose: int):
    """converge — declarative system-state reconciler.

    Compares the packages, services and dotfiles declared in your config
    against the live machine and applies the difference as one atomic
    transaction, rolling everything back if any step fails.
    """
    from converge.utils.log import setup_logging

    setup_logging(verbose)


# ── Apply ────────────────────────────────────────────────────────────


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would change without changing anything")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--profile", "-p", default=None, help="Profile to apply (default: general.current_profile)")
@click.option("--sudo", "use_sudo", is_flag=True, help="Prefix privileged commands with sudo")
@click.option(
    "--system-services/--user-services",
    "system_services",
    default=None,
    help="Default scope for services that do not set one",
)
@click.option(
    "--package-manager",
    type=click.Choice(["auto", "direct", "broker"]),
    default=None,
    help="dnf directly, PackageKit, or whichever is available",
)
@click.option("--description", "-m", default="", help="Note recorded with the transaction")
@click.option("--skip-unavailable", is_flag=True, help="Skip operations whose backend is missing")
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
def apply(
    dry_run: bool,
    yes: bool,
    profile: str | None,
    use_sudo: bool,
    system_services: bool | None,
    package_manager: str | None,
    description: str,
    skip_unavailable: bool,
    config_path: str | None,
):
    """Converge this machine to the declared state."""
    from converge.apply import ExitCode, apply_plan

    settings, config = _load(config_path, use_sudo, package_manager, skip_unavailable)
    plan, backends = _plan(settings, config, profile, system_services)

    console.print(f"\n[bold blue]converge[/] — profile [cyan]{plan.profile}[/]\n")
    _render_diff(plan.diff)

    if plan.diff.is_empty:
        console.print("[green]Nothing to do.[/]")
        sys.exit(int(ExitCode.OK))
    if dry_run:
        console.print("\n[yellow]Dry run — no changes made.[/]")
        sys.exit(int(ExitCode.OK))

    confirm = None if yes else (lambda diff: click.confirm("\nApply these changes?", default=False))
    outcome = apply_plan(plan, settings, backends, confirm=confirm, description=description)

    if outcome.cancelled:
        console.print("[yellow]Cancelled.[/]")
    else:
        _render_outcome(outcome)
    sys.exit(int(outcome.exit_code))


# ── Status ───────────────────────────────────────────────────────────


@main.command()
@click.option("--profile", "-p", default=None, help="Profile to compare against")
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
def status(profile: str | None, config_path: str | None):
    """Show drift between the declared state and this machine.

    Exits 0 when in sync and 1 when changes are pending.
    """
    settings, config = _load(config_path)
    plan, _ = _plan(settings, config, profile, None)

    console.print(f"\n[bold blue]converge[/] — status for profile [cyan]{plan.profile}[/]\n")
    _render_diff(plan.diff)
    if plan.diff.is_empty:
        console.print("[green]In sync.[/]")
        sys.exit(0)
    console.print(f"\n[yellow]{plan.diff.summary()}[/]")
    sys.exit(1)


# ── Helpers ──────────────────────────────────────────────────────────


def _load(config_path, use_sudo=False, package_manager=None, skip_unavailable=False):
    from converge.config.settings import load_settings
    from converge.errors import ConfigError

    try:
        settings, config = load_settings(config_path)
    except ConfigError as e:
        console.print(f"[red]Config error:[/] {escape(str(e))}")
        sys.exit(1)

    overrides = {}
    if use_sudo:
        overrides["use_sudo"] = use_sudo
    if package_manager is not None:
        overrides["package_backend"] = package_manager
    if skip_unavailable:
        overrides["tolerate_missing_backends"] = skip_unavailable
    return dataclasses.replace(settings, **overrides), config


def _plan(settings, config, profile, system_services):
    from converge.apply import make_plan
    from converge.errors import ConfigError, ConvergeError
    from converge.models.state import ServiceScope

    scope = ServiceScope.SYSTEM if system_services else ServiceScope.USER
    backends = settings.backend_selection().resolve()
    try:
        plan = make_plan(config, settings, backends, profile=profile, default_scope=scope)
    except ConfigError as e:
        console.print(f"[red]Config error:[/] {escape(str(e))}")
        sys.exit(1)
    except ConvergeError as e:
        console.print(f"[red]Error:[/] {escape(str(e))}")
        sys.exit(1)
    return plan, backends


def _render_diff(diff) -> None:
    from converge.models.operations import Phase

    for phase, ops in ((Phase.PACKAGES, diff.packages), (Phase.FILES, diff.files), (Phase.SERVICES, diff.services)):
        if not ops:
            continue
        table = Table(title=f"{phase.value.capitalize()} ({len(ops)})", title_justify="left")
        table.add_column("#", style="dim", width=3)
        table.add_column("Action", style="cyan")
        table.add_column("Change")
        for i, op in enumerate(ops):
            table.add_row(str(i + 1), type(op).__name__, escape(op.describe()))
        console.print(table)

    for note in diff.notes:
        console.print(f"  [yellow]![/] {escape(note)}")


def _render_outcome(outcome) -> None:
    from converge.apply import ExitCode
    from converge.errors import RollbackError, ValidationError

    code = outcome.exit_code
    txn_id = outcome.plan.transaction_id

    if code == ExitCode.OK:
        changes = len(outcome.record["results"]) if outcome.record else 0
        console.print(Panel(f"Applied {changes} change(s)\nTransaction {txn_id}", title="[green]Done[/]"))
        for skipped in (outcome.record or {}).get("skipped", []):
            console.print(f"  [yellow]skipped[/] {skipped}")
        return

    if code == ExitCode.VERIFY_MISMATCH:
        lines = "\n".join(f"x {f}" for f in outcome.findings)
        console.print(Panel(escape(lines), title="[yellow]Applied, but verification found mismatches[/]"))
        return

    error = outcome.error
    if isinstance(error, ValidationError):
        console.print("[red]Validation failed — nothing was changed:[/]")
        for issue in error.issues:
            console.print(f"  [red]x[/] {escape(f'[{issue.code}] {issue.message}')}")
    elif isinstance(error, RollbackError):
        body = [str(error), ""]
        if error.staging_dir:
            body.append(f"Staging directory: {error.staging_dir}")
        body.extend(f"Backup: {p}" for p in error.backup_paths)
        console.print(Panel(escape("\n".join(body)), title="[bold red]Rollback failed — manual recovery needed[/]"))
    elif code == ExitCode.ROLLED_BACK:
        console.print(Panel(escape(f"{error}\nAll applied changes were rolled back."), title="[red]Apply failed[/]"))
    else:
        console.print(f"[red]Error:[/] {escape(str(error))}")
