"""
Account provisioning: the service account, its group memberships and
the managed directory tree.

``directories`` creates what is missing and enforces owner and mode.
``permissions`` is the repair variant: it also reclaims ownership of
the whole tree, makes helper scripts executable and resets the mode of
existing artifacts. ``shell-aliases`` appends a marker-guarded alias
block to the .bashrc of the service account and of the invoking user.
"""

from __future__ import annotations

import grp
import logging
import pwd
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.models.step import StepResult
from ftsetup.core.services.artifacts import TemplateContext, expected_owner, render_template

logger = logging.getLogger(__name__)

ALIASES_TEMPLATE = "shell/aliases.bashrc.tmpl"
ALIASES_MARKER = "# >>> ftsetup shell aliases >>>"


def account_exists(user: str) -> bool:
    try:
        pwd.getpwnam(user)
    except KeyError:
        return False
    return True


def group_exists(group: str) -> bool:
    try:
        grp.getgrnam(group)
    except KeyError:
        return False
    return True


def home_of(user: str) -> Path | None:
    try:
        return Path(pwd.getpwnam(user).pw_dir)
    except KeyError:
        return None


def groups_of(user: str) -> set[str]:
    """Every group ``user`` belongs to, primary group included."""
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        return set()
    names = {g.gr_name for g in grp.getgrall() if user in g.gr_mem}
    try:
        names.add(grp.getgrgid(entry.pw_gid).gr_name)
    except KeyError:
        pass
    return names


# ═══════════════════════════════════════════════════════════════════
#  Steps
# ═══════════════════════════════════════════════════════════════════


@step("account", "Create the service account and add its groups", "account")
def account(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    user = s.service_user

    if account_exists(user):
        result.note(f"Account '{user}' exists")
    else:
        ctx.execute(
            ["useradd", "-m", "-s", s.login_shell, user], f"useradd {user}", sudo=True,
        )
        logger.info("Created account '%s'", user)
        result.note(f"Created account '{user}'", changed=True)

    member_of = groups_of(user)
    for group in s.extra_groups:
        if group in member_of:
            continue
        if not group_exists(group):
            logger.warning("Group '%s' does not exist yet; '%s' not added", group, user)
            result.note(f"WARNING: group '{group}' missing, membership skipped")
            continue
        ctx.execute(["usermod", "-aG", group, user], f"add {user} to {group}", sudo=True)
        result.note(f"Added '{user}' to '{group}'", changed=True)


def _enforce_directories(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    for spec in s.directories:
        owner = s.owner_of(spec)
        if ctx.fs.ensure_dir(spec.path, owner, spec.mode):
            result.note(f"Created {spec.path}", changed=True)
        if ctx.fs.set_owner(spec.path, owner):
            result.note(f"Owner of {spec.path} set to {owner}", changed=True)
        if ctx.fs.set_mode(spec.path, spec.mode, owner):
            result.note(f"Mode of {spec.path} set to {spec.mode:o}", changed=True)


@step("directories", "Create the directory tree with owners and modes", "account")
def directories(ctx: StepContext, result: StepResult) -> None:
    if not ctx.settings.directories:
        result.status = "skipped"
        result.note("No directories in profile")
        return
    _enforce_directories(ctx, result)


@step("permissions", "Repair ownership and modes of the installation", "account")
def permissions(ctx: StepContext, result: StepResult) -> None:
    s = ctx.settings
    _enforce_directories(ctx, result)

    tree = s.home if s.use_sudo else s.app_dir
    if ctx.fs.set_owner(tree, s.service_user, recursive=True):
        result.note(f"Ownership of {tree} reclaimed for {s.service_user}", changed=True)

    if ctx.fs.exists(s.app_dir):
        receipt = ctx.probe(
            ["find", str(s.app_dir), "-maxdepth", "1", "-name", "*.sh", "!", "-perm", "-u+x"],
            sudo=s.use_sudo,
        )
        for line in receipt.output.splitlines():
            script = Path(line.strip())
            if line.strip() and ctx.fs.set_mode(script, 0o755, s.service_user):
                result.note(f"Made {script.name} executable", changed=True)

    for spec in s.artifacts:
        if ctx.fs.set_mode(spec.dest, spec.mode, expected_owner(spec, s)):
            result.note(f"Mode of {spec.dest} reset to {spec.mode:o}", changed=True)


@step("shell-aliases", "Add the shell aliases block to the users' .bashrc", "account")
def shell_aliases(ctx: StepContext, result: StepResult) -> None:
    """Append the aliases block once, for the service account and the invoker."""
    s = ctx.settings
    homes = {s.service_user: s.home}
    if s.invoking_user != s.service_user:
        home = home_of(s.invoking_user)
        if home is None:
            logger.warning("No home directory for '%s'; aliases not added", s.invoking_user)
            result.note(f"WARNING: no home for '{s.invoking_user}'")
        else:
            homes[s.invoking_user] = home

    block = render_template(ALIASES_TEMPLATE, TemplateContext.from_settings(s))
    for user, home in homes.items():
        bashrc = home / ".bashrc"
        current = ctx.fs.read_text(bashrc) or ""
        if ALIASES_MARKER in current:
            result.note(f"Aliases present in {bashrc}")
            continue
        info = ctx.fs.stat(bashrc)
        mode = info.mode if info is not None else 0o644
        separator = "\n" if current and not current.endswith("\n") else ""
        ctx.fs.write_file(bashrc, current + separator + block, user, mode)
        result.note(f"Added shell aliases to {bashrc}", changed=True)
