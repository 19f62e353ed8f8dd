"""
Filesystem adapter: ownership-aware file and directory operations.

Probes (exists, stat, read) are always attempted directly and fall
back to a sudo probe when the invoker lacks permission. Mutations
on paths owned by the invoking user use the local filesystem;
anything owned by another account goes through the runner with sudo.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import stat
from dataclasses import dataclass
from pathlib import Path

from ftsetup.adapters.base import Runner
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.action import Command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileStat:
    """The subset of stat(2) provisioning cares about."""

    owner: str
    group: str
    mode: int
    is_dir: bool
    is_file: bool

    @property
    def mode_str(self) -> str:
        return f"{self.mode:o}"

    @property
    def executable(self) -> bool:
        return bool(self.mode & stat.S_IXUSR)


def primary_group(user: str) -> str:
    """Primary group name of ``user`` (falls back to the user name)."""
    try:
        return grp.getgrgid(pwd.getpwnam(user).pw_gid).gr_name
    except KeyError:
        return user


def _name_of_uid(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _name_of_gid(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


class FilesystemAdapter:
    """File and directory operations with owner/mode guarantees.

    All mutating methods return ``True`` when they changed something
    (or would have, under dry-run) and raise ``ProvisionError`` when a
    privileged command fails.
    """

    def __init__(self, runner: Runner, invoking_user: str):
        self._runner = runner
        self._invoker = invoking_user

    @property
    def dry_run(self) -> bool:
        return self._runner.dry_run

    # ── Probes ──────────────────────────────────────────────────

    def exists(self, path: Path) -> bool:
        try:
            return path.exists()
        except PermissionError:
            receipt = self._runner.run(
                Command(argv=["test", "-e", str(path)], sudo=True, probe=True)
            )
            return receipt.ok

    def stat(self, path: Path) -> FileStat | None:
        """Return owner/mode info, or None when the path is missing."""
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        except PermissionError:
            return self._stat_privileged(path)
        return FileStat(
            owner=_name_of_uid(st.st_uid),
            group=_name_of_gid(st.st_gid),
            mode=stat.S_IMODE(st.st_mode),
            is_dir=stat.S_ISDIR(st.st_mode),
            is_file=stat.S_ISREG(st.st_mode),
        )

    def _stat_privileged(self, path: Path) -> FileStat | None:
        receipt = self._runner.run(
            Command(argv=["stat", "-c", "%U %G %a %F", str(path)], sudo=True, probe=True)
        )
        if not receipt.ok:
            return None
        owner, group, mode, kind = receipt.output.split(" ", 3)
        return FileStat(
            owner=owner,
            group=group,
            mode=int(mode, 8),
            is_dir=kind == "directory",
            is_file=kind.startswith("regular"),
        )

    def read_text(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except PermissionError:
            receipt = self._runner.run(
                Command(argv=["cat", str(path)], sudo=True, probe=True)
            )
            return receipt.output if receipt.ok else None

    # ── Mutations ───────────────────────────────────────────────

    def _local(self, owner: str) -> bool:
        return owner == self._invoker

    def _sudo(self, argv: list[str], label: str, input: str | None = None) -> None:
        receipt = self._runner.run(Command(argv=argv, sudo=True, input=input, label=label))
        if receipt.failed:
            raise ProvisionError(f"{label} failed: {receipt.error}")

    def ensure_dir(self, path: Path, owner: str, mode: int = 0o755) -> bool:
        """Create ``path`` if missing. Existing directories are left alone."""
        info = self.stat(path)
        if info is not None:
            if not info.is_dir:
                raise ProvisionError(f"{path} exists and is not a directory")
            return False

        if self.dry_run:
            logger.info("[dry-run] would create %s (%s, %o)", path, owner, mode)
            return True

        if self._local(owner):
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
        else:
            self._sudo(
                ["install", "-d", "-m", f"{mode:o}", "-o", owner,
                 "-g", primary_group(owner), str(path)],
                label=f"mkdir {path}",
            )
        logger.debug("Created directory %s", path)
        return True

    def write_file(self, path: Path, content: str, owner: str, mode: int) -> None:
        """Write ``content`` with the given owner and mode (parents created)."""
        if self.dry_run:
            logger.info("[dry-run] would write %s (%s, %o)", path, owner, mode)
            return

        self.ensure_dir(path.parent, owner, 0o755)
        if self._local(owner):
            # Created with the final mode: never world-readable, even briefly.
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(path, mode)
        else:
            self._sudo(
                ["install", "-m", f"{mode:o}", "-o", owner,
                 "-g", primary_group(owner), "/dev/stdin", str(path)],
                label=f"write {path}",
                input=content,
            )
        logger.debug("Wrote %s (%d bytes)", path, len(content))

    def set_mode(self, path: Path, mode: int, owner: str) -> bool:
        info = self.stat(path)
        if info is None or info.mode == mode:
            return False
        if self.dry_run:
            logger.info("[dry-run] would chmod %o %s", mode, path)
            return True
        if self._local(owner):
            os.chmod(path, mode)
        else:
            self._sudo(["chmod", f"{mode:o}", str(path)], label=f"chmod {path}")
        return True

    def set_owner(self, path: Path, owner: str, recursive: bool = False) -> bool:
        """chown to ``owner:primary-group``. Returns True if anything differed.

        Recursive mode first probes for a foreign-owned entry so a
        healthy tree is left untouched.
        """
        info = self.stat(path)
        if info is None:
            return False
        if recursive:
            probe = self._runner.run(Command(
                argv=["find", str(path), "!", "-user", owner, "-print", "-quit"],
                sudo=not self._local(owner),
                probe=True,
            ))
            if probe.ok and not probe.output.strip():
                return False
        elif info.owner == owner:
            return False

        if self.dry_run:
            logger.info("[dry-run] would chown %s %s", owner, path)
            return True
        argv = ["chown"] + (["-R"] if recursive else [])
        argv += [f"{owner}:{primary_group(owner)}", str(path)]
        self._sudo(argv, label=f"chown {path}")
        return True
