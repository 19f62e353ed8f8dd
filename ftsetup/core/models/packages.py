"""
Package catalog: named groups of apt and pip packages.

Profiles refer to groups by name; the catalog (``core/data/packages.yml``)
says what each group contains.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class AptGroup(BaseModel):
    """A set of system packages installed together."""

    model_config = ConfigDict(frozen=True)

    description: str = ""
    packages: tuple[str, ...] = ()
    services: tuple[str, ...] = ()       # enabled and started once installed


class PipGroup(BaseModel):
    """A set of Python packages installed into the virtual environment.

    ``optional`` groups log a warning on failure instead of failing
    the step (large ML wheels are not available on every platform).
    """

    model_config = ConfigDict(frozen=True)

    description: str = ""
    packages: tuple[str, ...] = ()
    optional: bool = False
    index_url: str | None = None


class PackageCatalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    apt_groups: dict[str, AptGroup] = Field(default_factory=dict)
    pip_groups: dict[str, PipGroup] = Field(default_factory=dict)
