"""
Provisioning settings: the immutable configuration every step receives.

Loaded from a profile YAML by the config loader, with every path
already resolved. Frozen: steps read it, nothing writes it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ftsetup.core.models.template import ArtifactSpec

Sensitivity = Literal["secret", "general"]


def parse_mode(value: int | str) -> int:
    """Octal strings (``"700"``, ``"0o700"``) from YAML; ints pass through."""
    if isinstance(value, int):
        return value
    return int(str(value).removeprefix("0o"), 8)


class DirectorySpec(BaseModel):
    """A managed directory with its expected owner and mode."""

    model_config = ConfigDict(frozen=True)

    path: Path
    mode: int = 0o755
    owner: str | None = None        # None = the service account
    sensitivity: Sensitivity = "general"

    @field_validator("mode", mode="before")
    @classmethod
    def _mode(cls, value: int | str) -> int:
        return parse_mode(value)


class ProvisionSettings(BaseModel):
    """Everything a provisioning run needs to know.

    Paths are absolute. ``service_user`` is the account that owns the
    installation; ``invoking_user`` is whoever runs ``ftsetup``. When
    they differ, privileged operations go through sudo.
    """

    model_config = ConfigDict(frozen=True)

    profile: str
    description: str = ""

    # ── Identity ────────────────────────────────────────────────
    service_user: str
    invoking_user: str
    extra_groups: tuple[str, ...] = ("docker",)
    login_shell: str = "/bin/bash"

    # ── Layout ──────────────────────────────────────────────────
    home: Path
    app_dir: Path
    venv_dir: Path
    user_data_dir: Path
    config_file: Path
    secrets_dir: Path | None = None
    directories: tuple[DirectorySpec, ...] = ()

    # ── Runtime ─────────────────────────────────────────────────
    python_version: str = "3.11.9"
    python_provider: Literal["pyenv", "system"] = "pyenv"
    python_ppa: str | None = None   # apt source for python3.X when the release lacks it
    framework_spec: str = "freqtrade[all]"
    pip_groups: tuple[str, ...] = ()

    # ── Application ─────────────────────────────────────────────
    strategy: str = "SampleStrategy"
    exchange: str = "binance"
    pair_whitelist: tuple[str, ...] | None = None
    freqai: bool = False
    artifacts: tuple[ArtifactSpec, ...] = ()
    service_name: str | None = None
    unit_dir: Path = Path("/etc/systemd/system")
    wrapper_dir: Path = Path("/usr/local/bin")
    system_owner: str = "root"

    # ── System ──────────────────────────────────────────────────
    keyboard_layout: str | None = None
    apt_groups: tuple[str, ...] = ()

    # ── Preflight ───────────────────────────────────────────────
    min_disk_gb: float = 10.0
    min_ram_gb: float = 1.0
    recommended_ram_gb: float = 2.0
    network_hosts: tuple[str, ...] = ("8.8.8.8",)
    network_urls: tuple[str, ...] = ("https://api.github.com",)

    # ── Reliability / logging ───────────────────────────────────
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)
    log_dir: Path = Path("/tmp")
    log_retention_days: int = 7

    steps: tuple[str, ...] = ()

    # ── Derived ─────────────────────────────────────────────────

    @property
    def use_sudo(self) -> bool:
        """Whether mutations under the service home need sudo."""
        return self.service_user != self.invoking_user

    @property
    def venv_python(self) -> Path:
        return self.venv_dir / "bin" / "python"

    @property
    def venv_pip(self) -> Path:
        return self.venv_dir / "bin" / "pip"

    @property
    def freqtrade_bin(self) -> Path:
        return self.venv_dir / "bin" / "freqtrade"

    @property
    def pyenv_root(self) -> Path:
        return self.home / ".pyenv"

    @property
    def strategies_dir(self) -> Path:
        return self.user_data_dir / "strategies"

    @property
    def unit_path(self) -> Path | None:
        if not self.service_name:
            return None
        return self.unit_dir / f"{self.service_name}.service"

    @property
    def python_minor(self) -> str:
        """``3.11.9`` -> ``3.11``."""
        return ".".join(self.python_version.split(".")[:2])

    def owner_of(self, spec: DirectorySpec) -> str:
        return spec.owner or self.service_user
