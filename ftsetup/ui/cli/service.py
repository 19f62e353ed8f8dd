"""
CLI commands for the Freqtrade systemd service.

Thin wrappers over ``ftsetup.core.services.service_ctl``.

Usage::

    ftsetup service start
    ftsetup service status
    ftsetup service logs --lines 200
"""

from __future__ import annotations

import sys

import click


def _runner_and_settings(ctx: click.Context):
    from ftsetup.core.use_cases.provision import make_context
    from ftsetup.main import _load

    settings = _load(ctx)
    sctx = make_context(settings, dry_run=ctx.obj["dry_run"], mock=ctx.obj["mock"])
    return sctx.runner, settings


def _report(receipt, ok_message: str) -> None:
    if receipt.failed:
        click.secho(f"❌ {receipt.error}", fg="red", err=True)
        sys.exit(1)
    if receipt.status == "skipped":
        click.secho(f"⊘ {receipt.output}", fg="yellow")
        return
    click.secho(f"✅ {ok_message}", fg="green")


@click.group()
def service() -> None:
    """Service — start, stop and inspect the Freqtrade unit."""


def _action_command(action: str, verb: str) -> click.Command:
    @click.pass_context
    def command(ctx: click.Context) -> None:
        from ftsetup.core.errors import ConfigError
        from ftsetup.core.services import service_ctl

        runner, settings = _runner_and_settings(ctx)
        try:
            receipt = service_ctl.control(runner, settings, action)
        except ConfigError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(1)
        _report(receipt, f"{settings.service_name} {verb}")

    return click.Command(action, callback=command, help=f"systemctl {action} the service.")


for _action, _verb in (
    ("start", "started"),
    ("stop", "stopped"),
    ("restart", "restarted"),
    ("enable", "enabled at boot"),
    ("disable", "disabled at boot"),
):
    service.add_command(_action_command(_action, _verb))


@service.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the unit's state. Exits 3 when it is not active."""
    from ftsetup.core.errors import ConfigError
    from ftsetup.core.services import service_ctl

    runner, settings = _runner_and_settings(ctx)
    try:
        receipt = service_ctl.status(runner, settings)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    click.echo(receipt.output or receipt.error or "")
    if service_ctl.is_active(runner, settings):
        click.secho(f"✅ {settings.service_name} is active", fg="green")
        return
    click.secho(f"⚠ {settings.service_name} is not active", fg="yellow")
    # same exit status as systemctl for a stopped unit
    sys.exit(3)


@service.command()
@click.option("--lines", "-n", default=100, type=int, help="Number of journal lines.")
@click.pass_context
def logs(ctx: click.Context, lines: int) -> None:
    """Show the unit's recent journal."""
    from ftsetup.core.errors import ConfigError
    from ftsetup.core.services import service_ctl

    runner, settings = _runner_and_settings(ctx)
    try:
        receipt = service_ctl.logs(runner, settings, lines=lines)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    if receipt.failed:
        click.secho(f"❌ {receipt.error}", fg="red", err=True)
        sys.exit(1)
    click.echo(receipt.output)
