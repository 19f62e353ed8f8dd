"""
Service control: start, stop and inspect the Freqtrade systemd unit.

Thin wrappers over ``systemctl`` and ``journalctl``. Every function
returns the Receipt; the CLI decides how to present it.
"""

from __future__ import annotations

import logging

from ftsetup.adapters.base import Runner
from ftsetup.core.errors import ConfigError
from ftsetup.core.models.action import Command, Receipt
from ftsetup.core.models.settings import ProvisionSettings

logger = logging.getLogger(__name__)

ACTIONS = ("start", "stop", "restart", "enable", "disable")


def service_name(settings: ProvisionSettings) -> str:
    """The profile's unit name.

    Raises:
        ConfigError: If the profile defines no service.
    """
    if not settings.service_name:
        raise ConfigError(f"Profile '{settings.profile}' defines no systemd service")
    return settings.service_name


def control(runner: Runner, settings: ProvisionSettings, action: str) -> Receipt:
    """Run ``systemctl <action> <service>`` with sudo."""
    if action not in ACTIONS:
        raise ValueError(f"Unsupported service action: {action}")
    name = service_name(settings)
    logger.info("systemctl %s %s", action, name)
    return runner.run(Command(argv=["systemctl", action, name], sudo=True, label=f"{action} {name}"))


def status(runner: Runner, settings: ProvisionSettings) -> Receipt:
    """``systemctl status``. A stopped unit exits 3 but still reports."""
    name = service_name(settings)
    return runner.run(Command(argv=["systemctl", "status", name, "--no-pager"], probe=True))


def is_active(runner: Runner, settings: ProvisionSettings) -> bool:
    receipt = runner.run(Command(argv=["systemctl", "is-active", service_name(settings)], probe=True))
    return receipt.output.strip() == "active"


def logs(runner: Runner, settings: ProvisionSettings, lines: int = 100) -> Receipt:
    """The last ``lines`` journal lines of the unit."""
    name = service_name(settings)
    return runner.run(Command(
        argv=["journalctl", "-u", name, "-n", str(lines), "--no-pager"],
        sudo=True, probe=True,
    ))
