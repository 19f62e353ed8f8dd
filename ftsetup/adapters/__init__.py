"""Adapters: bindings to external programs and the filesystem.

Public re-exports for convenient access.
"""

from ftsetup.adapters.base import Runner
from ftsetup.adapters.mock import MockRunner
from ftsetup.adapters.shell.command import RunAs, ShellCommandRunner
from ftsetup.adapters.shell.filesystem import FileStat, FilesystemAdapter

__all__ = [
    "FileStat",
    "FilesystemAdapter",
    "MockRunner",
    "RunAs",
    "Runner",
    "ShellCommandRunner",
]
