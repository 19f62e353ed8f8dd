"""
ftsetup: CLI entrypoint.

Usage:
    ftsetup --help
    ftsetup install --profile dedicated
    ftsetup --dry-run install --profile freqai
    ftsetup repair
    ftsetup step venv freqtrade
    ftsetup verify
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

import click

from ftsetup import __version__
from ftsetup.core.errors import Interrupted, ProvisionError
from ftsetup.core.observability.logging_config import prepare_log_file, setup_logging

logger = logging.getLogger("ftsetup")

REPAIR_PROFILE = "repair"


def _raise_interrupted(signum: int, frame: Any) -> None:
    raise Interrupted(f"signal {signum}")


@click.group()
@click.version_option(version=__version__, prog_name="ftsetup")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Only print errors.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option("--profile", "-p", default=None, help="Built-in profile name (default: dedicated).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to a profile YAML (overrides --profile).",
)
@click.option("--dry-run", is_flag=True, help="Log intended commands and writes without performing them.")
@click.option("--mock", is_flag=True, help="Use the mock runner (no real execution).")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    profile: str | None,
    config_path: str | None,
    dry_run: bool,
    mock: bool,
) -> None:
    """ftsetup: provision an Ubuntu server for the Freqtrade trading bot."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["profile"] = profile
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["dry_run"] = dry_run
    ctx.obj["mock"] = mock
    ctx.obj["log_file"] = None

    # ── Logging setup (console now, file once the profile is known) ──
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("FTSETUP_LOG_LEVEL", "INFO")
    ctx.obj["log_level"] = level
    setup_logging(level=level)

    signal.signal(signal.SIGTERM, _raise_interrupted)


# ── Helpers ─────────────────────────────────────────────────────


def _load(ctx: click.Context, default_profile: str | None = None, mutating: bool = False):
    """Load settings for this invocation and attach the run's log file.

    The superuser is refused before anything is written; ``mutating``
    commands also require sudo.
    """
    from ftsetup.core.services.preflight import refuse_root
    from ftsetup.core.use_cases.provision import check_invoker, load_settings

    try:
        refuse_root()
        settings = load_settings(
            profile=ctx.obj.get("profile") or default_profile,
            config_path=ctx.obj.get("config_path"),
        )
        if mutating:
            check_invoker(settings, dry_run=ctx.obj["dry_run"], mock=ctx.obj["mock"])
    except ProvisionError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    try:
        log_file = prepare_log_file(settings.log_dir, settings.log_retention_days)
    except OSError as e:
        logger.warning("No log file in %s: %s", settings.log_dir, e)
    else:
        setup_logging(level=ctx.obj["log_level"], log_file=log_file)
        ctx.obj["log_file"] = log_file
        logger.debug("Logging to %s", log_file)
    return settings


def _interrupted(ctx: click.Context) -> None:
    log_file = ctx.obj.get("log_file")
    logger.error("Interrupted. Log file: %s", log_file or "(none)")
    sys.exit(1)


def _mode_label(ctx: click.Context) -> str:
    if ctx.obj.get("dry_run"):
        return "[dry-run] "
    return "[mock] " if ctx.obj.get("mock") else ""


_STEP_STYLE = {
    "changed": ("✓", "green"),
    "unchanged": ("=", "white"),
    "skipped": ("⊘", "yellow"),
    "failed": ("✗", "red"),
}

_CHECK_STYLE = {
    "ok": ("✓", "green"),
    "warning": ("⚠", "yellow"),
    "fail": ("✗", "red"),
}


def _render_run(ctx: click.Context, run, title: str) -> None:
    report = run.report
    click.secho(f"\n⚡ {_mode_label(ctx)}{title} — {report.profile}", fg="cyan", bold=True)
    click.echo(f"   Run: {report.run_id}")
    click.echo()

    for result in report.results:
        marker, colour = _STEP_STYLE[result.status]
        click.secho(f"   {marker} {result.step}", fg=colour, nl=False)
        click.echo(f" ({result.duration_ms}ms)" if result.duration_ms else "")
        if result.error:
            click.echo(f"     │ {result.error}")
        if ctx.obj.get("verbose"):
            for message in result.messages:
                click.echo(f"     │ {message}")
        else:
            for message in result.messages:
                if message.startswith("WARNING"):
                    click.secho(f"     │ {message}", fg="yellow")

    if run.verification is not None:
        _render_checks(ctx, run.verification)

    click.echo()
    if report.failed_step:
        click.secho(f"   Failed at step '{report.failed_step}'", fg="red", bold=True)
    else:
        click.secho(
            f"   Result: {len(report.results)} step(s), {len(report.changed)} changed",
            fg="green", bold=True,
        )
        if report.verification_issues:
            click.secho(
                f"   ⚠ Verification reported {report.verification_issues} issue(s)",
                fg="yellow",
            )
    if ctx.obj.get("log_file"):
        click.echo(f"   Log: {ctx.obj['log_file']}")
    click.echo()


def _render_checks(ctx: click.Context, report) -> None:
    section = None
    for check in report.checks:
        if check.status == "ok" and ctx.obj.get("quiet"):
            continue
        if check.section != section:
            section = check.section
            click.echo()
            click.secho(f"   {section.capitalize()}", fg="white", bold=True)
        marker, colour = _CHECK_STYLE[check.status]
        click.secho(f"     {marker} {check.name}", fg=colour, nl=False)
        click.echo(f" — {check.message}" if check.message else "")
    click.echo()
    colour = "green" if report.issues == 0 else "red"
    click.secho(
        f"   {len(report.checks)} check(s): {report.issues} issue(s), {report.warnings} warning(s)",
        fg=colour, bold=True,
    )


def _run_pipeline(
    ctx: click.Context,
    title: str,
    as_json: bool,
    default_profile: str | None = None,
    only: list[str] | None = None,
) -> int:
    from ftsetup.core.use_cases.provision import run_provision

    settings = _load(ctx, default_profile, mutating=True)
    try:
        run = run_provision(
            settings, only=only, dry_run=ctx.obj["dry_run"], mock=ctx.obj["mock"],
        )
    except KeyboardInterrupt:
        _interrupted(ctx)

    if as_json:
        click.echo(json.dumps(run.to_dict(), indent=2))
        return run.exit_code

    if run.error:
        click.secho(f"❌ {run.error}", fg="red", err=True)
        return 1

    _render_run(ctx, run, title)
    return run.exit_code


# ── Pipeline commands ───────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def install(ctx: click.Context, as_json: bool) -> None:
    """Run every step of the selected profile."""
    sys.exit(_run_pipeline(ctx, "install", as_json))


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def repair(ctx: click.Context, as_json: bool) -> None:
    """Repair an existing install (the 'repair' profile by default)."""
    sys.exit(_run_pipeline(ctx, "repair", as_json, default_profile=REPAIR_PROFILE))


@cli.command("step")
@click.argument("names", nargs=-1, required=True)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run_steps(ctx: click.Context, names: tuple[str, ...], as_json: bool) -> None:
    """Run individual steps, in the order given.

    Examples:

        ftsetup step venv freqtrade

        ftsetup --profile repair step permissions
    """
    sys.exit(_run_pipeline(ctx, "step", as_json, only=list(names)))


@cli.command("steps")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_steps(ctx: click.Context, as_json: bool) -> None:
    """List every known step."""
    from ftsetup.core.engine.registry import known_steps

    steps = known_steps()
    if as_json:
        click.echo(json.dumps([
            {"name": s.name, "family": s.family, "description": s.description, "read_only": s.read_only}
            for s in steps.values()
        ], indent=2))
        return

    families = ["preflight", "system", "account", "runtime", "application", "verification"]
    click.secho("\n🧩 Steps", fg="cyan", bold=True)
    for family in families + sorted({s.family for s in steps.values()} - set(families)):
        members = [s for s in steps.values() if s.family == family]
        if not members:
            continue
        click.echo()
        click.secho(f"   {family.capitalize()}", fg="white", bold=True)
        for s in members:
            click.echo(f"     • {s.name:<14} {s.description}")
    click.echo()


# ── Read-only commands ──────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def verify(ctx: click.Context, as_json: bool) -> None:
    """Run the verification checklist. Exits 1 when there are issues."""
    from ftsetup.core.use_cases.provision import run_verify

    settings = _load(ctx)
    report = run_verify(settings, mock=ctx.obj["mock"])

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.secho(f"\n🔍 Verification — {report.profile}", fg="cyan", bold=True)
        _render_checks(ctx, report)
        click.echo()
    sys.exit(1 if report.issues else 0)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def diagnose(ctx: click.Context, as_json: bool) -> None:
    """Show identity, permissions and sudo access."""
    from ftsetup.core.use_cases.provision import run_diagnose

    settings = _load(ctx, REPAIR_PROFILE)
    report = run_diagnose(settings, mock=ctx.obj["mock"])

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.secho(f"\n🩺 Diagnostics — {report.profile}", fg="cyan", bold=True)
        _render_checks(ctx, report)
        click.echo()
    sys.exit(1 if report.issues else 0)


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def profiles(as_json: bool) -> None:
    """List the built-in profiles."""
    from ftsetup.core.config.loader import list_profiles

    available = list_profiles()
    if as_json:
        click.echo(json.dumps(available, indent=2))
        return

    click.secho("\n📋 Profiles", fg="cyan", bold=True)
    for name, description in available.items():
        click.echo(f"   • {name:<10} {description}")
    click.echo()


_RUN_STYLE = {
    "ok": ("✓", "green"),
    "failed": ("✗", "red"),
    "interrupted": ("⊘", "yellow"),
}


@cli.command()
@click.option("--lines", "-n", "count", default=20, type=int, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, count: int, as_json: bool) -> None:
    """Show recent provisioning runs from the run ledger."""
    from ftsetup.core.persistence.ledger import RunLedger

    settings = _load(ctx)
    ledger = RunLedger(log_dir=settings.log_dir)
    entries = ledger.read_recent(count)

    if as_json:
        click.echo(json.dumps({
            "total": ledger.entry_count(),
            "entries": [e.model_dump(mode="json") for e in entries],
        }, indent=2))
        return

    click.secho(f"\n📜 Run history — {ledger.path}", fg="cyan", bold=True)
    if not entries:
        click.echo("   No runs recorded yet.")
        click.echo()
        return

    click.echo()
    for entry in entries:
        marker, colour = _RUN_STYLE.get(entry.status, ("?", "white"))
        click.secho(f"   {marker} {entry.timestamp[:19]}  {entry.profile:<10} {entry.status:<11}", fg=colour, nl=False)
        if entry.failed_step:
            click.echo(f" failed at '{entry.failed_step}' ({entry.duration_ms}ms)")
        else:
            click.echo(f" {len(entry.steps)} step(s) ({entry.duration_ms}ms)")
    click.echo(f"\n   {len(entries)} of {ledger.entry_count()} run(s)")
    click.echo()


# ── Interactive menu ────────────────────────────────────────────

MENU: list[tuple[str, list[str] | None]] = [
    ("🔍 Full diagnostic", None),
    ("🔧 Fix permissions", ["permissions"]),
    ("🐍 Repair the Python environment", ["pyenv", "venv", "freqtrade"]),
    ("⚙️  Restore config and strategy", ["config", "strategy"]),
    ("🚀 Install the wrapper and helper scripts", ["wrapper", "scripts"]),
    ("✅ Verify the installation", ["verify"]),
    ("🔄 Full repair, then exit", []),
    ("❌ Quit", None),
]


@cli.command()
@click.pass_context
def menu(ctx: click.Context) -> None:
    """Interactive repair menu."""
    from ftsetup.core.use_cases.provision import run_diagnose, run_provision

    settings = _load(ctx, REPAIR_PROFILE, mutating=True)
    quit_choice = len(MENU)

    try:
        while True:
            click.secho(f"\n🛠  ftsetup — {settings.profile}", fg="cyan", bold=True)
            for number, (label, _) in enumerate(MENU, start=1):
                click.echo(f"   {number}. {label}")
            choice = click.prompt("\nChoice", type=click.IntRange(1, quit_choice))

            if choice == quit_choice:
                click.echo("👋 Bye")
                return

            label, steps = MENU[choice - 1]
            if choice == 1:
                report = run_diagnose(settings, mock=ctx.obj["mock"])
                _render_checks(ctx, report)
                continue

            run = run_provision(
                settings, only=steps or None,
                dry_run=ctx.obj["dry_run"], mock=ctx.obj["mock"],
            )
            if run.error:
                click.secho(f"❌ {run.error}", fg="red", err=True)
                continue
            _render_run(ctx, run, label.split(" ", 1)[1].strip())

            if steps == []:
                sys.exit(run.exit_code)
    except KeyboardInterrupt:
        _interrupted(ctx)


# ── Sub-groups ──────────────────────────────────────────────────

from ftsetup.ui.cli.service import service  # noqa: E402

cli.add_command(service)


if __name__ == "__main__":
    cli()
