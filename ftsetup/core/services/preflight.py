"""
Preflight checks: everything that must hold before the first mutation.

Refuses to run as root, requires sudo, network reachability, enough
disk and RAM. An unexpected OS release is only a warning.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.errors import PreflightError
from ftsetup.core.models.step import StepResult

logger = logging.getLogger(__name__)

SUPPORTED_RELEASE = "24.04"

_MEMINFO = Path("/proc/meminfo")
_OS_RELEASE = Path("/etc/os-release")


# ── Host probes ─────────────────────────────────────────────────


def _current_euid() -> int:
    return os.geteuid()


def _disk_free_gb(path: str = "/") -> float:
    return shutil.disk_usage(path).free / 1024**3


def _total_ram_gb() -> float | None:
    """MemTotal from /proc/meminfo, or None when unavailable."""
    try:
        text = _MEMINFO.read_text(encoding="utf-8")
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            return int(line.split()[1]) / 1024**2
    return None


def read_os_release(path: Path | None = None) -> dict[str, str]:
    """Parse an os-release file into a dict (empty when unreadable)."""
    try:
        text = (path or _OS_RELEASE).read_text(encoding="utf-8")
    except OSError:
        return {}
    release: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            release[key.strip()] = value.strip().strip('"')
    return release


# ── Checks ──────────────────────────────────────────────────────


def refuse_root(euid: int | None = None) -> None:
    """Raise PreflightError for the superuser (the current process by default)."""
    if (_current_euid() if euid is None else euid) == 0:
        raise PreflightError(
            "Do not run ftsetup as root. Run it as a regular user with sudo rights."
        )


def check_not_root(ctx: StepContext) -> None:
    refuse_root(ctx.euid)


def check_sudo(ctx: StepContext, result: StepResult) -> None:
    if ctx.probe(["sudo", "-n", "true"]).ok:
        result.note("sudo available")
        return
    # Prompts for the password once; later sudo calls reuse the timestamp.
    if ctx.probe(["sudo", "-v"], timeout=120).ok:
        result.note("sudo authenticated")
        return
    raise PreflightError(f"User '{ctx.settings.invoking_user}' needs sudo rights")


def check_network(ctx: StepContext, result: StepResult) -> None:
    for host in ctx.settings.network_hosts:
        if not ctx.probe(["ping", "-c", "1", "-W", "5", host], timeout=15).ok:
            raise PreflightError(f"No network connectivity (cannot reach {host})")
    for url in ctx.settings.network_urls:
        receipt = ctx.probe(
            ["curl", "-s", "--max-time", "5", "-o", "/dev/null", url], timeout=15
        )
        if not receipt.ok:
            raise PreflightError(f"Cannot reach {url}")
    result.note("Network reachable")


def check_disk(ctx: StepContext, result: StepResult) -> None:
    free = _disk_free_gb()
    if free < ctx.settings.min_disk_gb:
        raise PreflightError(
            f"Insufficient disk space: {free:.1f} GB free, {ctx.settings.min_disk_gb:g} GB required"
        )
    result.note(f"Disk: {free:.1f} GB free")


def check_ram(ctx: StepContext, result: StepResult) -> None:
    total = _total_ram_gb()
    if total is None:
        logger.warning("Could not determine total RAM")
        result.note("WARNING: total RAM unknown")
        return
    if total < ctx.settings.min_ram_gb:
        raise PreflightError(
            f"Insufficient RAM: {total:.1f} GB, {ctx.settings.min_ram_gb:g} GB required"
        )
    if total < ctx.settings.recommended_ram_gb:
        logger.warning(
            "RAM is %.1f GB; %g GB recommended", total, ctx.settings.recommended_ram_gb
        )
        result.note(f"WARNING: RAM {total:.1f} GB below recommended {ctx.settings.recommended_ram_gb:g} GB")
        return
    result.note(f"RAM: {total:.1f} GB")


def check_release(result: StepResult) -> None:
    release = read_os_release()
    version = release.get("VERSION_ID")
    if version != SUPPORTED_RELEASE:
        logger.warning(
            "Designed for Ubuntu %s, detected %s", SUPPORTED_RELEASE,
            release.get("PRETTY_NAME", "an unknown system"),
        )
        result.note(f"WARNING: untested OS release {version or 'unknown'}")


@step("preflight", "Check user, sudo, network, disk, RAM and OS release", "preflight")
def preflight(ctx: StepContext, result: StepResult) -> None:
    check_not_root(ctx)
    check_sudo(ctx, result)
    check_network(ctx, result)
    check_disk(ctx, result)
    check_ram(ctx, result)
    check_release(result)
