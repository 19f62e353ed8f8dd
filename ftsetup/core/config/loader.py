"""
Profile loader: reads a profile YAML into ``ProvisionSettings``.

Built-in profiles live in ``core/data/profiles/<name>.yml``. A user
profile file may declare ``extends: <name>`` (a built-in name or a
path relative to the file) and override any key.

Resolution:
    1. Load the YAML and walk the ``extends`` chain
    2. Deep-merge base -> child -> overrides (mappings merge, lists replace)
    3. Resolve the accounts and expand ``{placeholder}`` paths
    4. Validate into frozen Pydantic models, check step and group names

Consumers never see ``extends`` or unexpanded paths.
"""

from __future__ import annotations

import getpass
import logging
import pwd
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ftsetup.core.engine.registry import validate_step_names
from ftsetup.core.errors import ConfigError
from ftsetup.core.models.packages import PackageCatalog
from ftsetup.core.models.settings import ProvisionSettings

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
PROFILES_DIR = DATA_DIR / "profiles"
CATALOG_FILE = DATA_DIR / "packages.yml"

DEFAULT_PROFILE = "dedicated"

# Path keys, in the order they may reference each other.
_PATH_KEYS = (
    "home",
    "app_dir",
    "venv_dir",
    "user_data_dir",
    "config_file",
    "secrets_dir",
    "unit_dir",
    "wrapper_dir",
    "log_dir",
)

_MAX_EXTENDS_DEPTH = 10


# ── YAML ────────────────────────────────────────────────────────


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Profile file not found: {path}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Nested mappings merge key by key; lists and scalars in ``override``
    replace the base value outright.
    """
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ── Discovery ───────────────────────────────────────────────────


def list_profiles() -> dict[str, str]:
    """Built-in profile names mapped to their descriptions."""
    profiles: dict[str, str] = {}
    for path in sorted(PROFILES_DIR.glob("*.yml")):
        try:
            data = _read_yaml(path)
        except ConfigError as e:
            logger.warning("Skipping profile %s: %s", path.name, e)
            continue
        profiles[path.stem] = str(data.get("description", ""))
    return profiles


def find_profile(name_or_path: str | Path) -> Path:
    """Resolve a built-in profile name or a profile file path.

    Raises:
        ConfigError: If neither exists.
    """
    candidate = Path(name_or_path)
    if candidate.suffix in (".yml", ".yaml") or candidate.is_file():
        if not candidate.is_file():
            raise ConfigError(f"Profile file not found: {candidate}")
        return candidate

    builtin = PROFILES_DIR / f"{name_or_path}.yml"
    if builtin.is_file():
        return builtin

    available = ", ".join(list_profiles()) or "none"
    raise ConfigError(f"Unknown profile '{name_or_path}'. Available: {available}")


def _load_chain(path: Path, depth: int = 0) -> dict[str, Any]:
    """Load ``path`` with its ``extends`` chain merged in."""
    if depth > _MAX_EXTENDS_DEPTH:
        raise ConfigError(f"Profile 'extends' chain too deep at {path}")

    data = _read_yaml(path)
    parent_ref = data.pop("extends", None)
    if not parent_ref:
        return data

    relative = path.parent / str(parent_ref)
    parent_path = relative if relative.is_file() else find_profile(str(parent_ref))
    if parent_path.resolve() == path.resolve():
        raise ConfigError(f"Profile {path} extends itself")

    logger.debug("Profile %s extends %s", path, parent_path)
    base = _load_chain(parent_path, depth + 1)
    base.pop("profile", None)
    base.pop("description", None)
    return deep_merge(base, data)


# ── Expansion ───────────────────────────────────────────────────


def _expand(value: Any, values: dict[str, str], where: str) -> str:
    try:
        return str(value).format_map(values)
    except KeyError as e:
        raise ConfigError(f"Unknown placeholder {{{e.args[0]}}} in {where}: {value}") from None
    except (ValueError, IndexError) as e:
        raise ConfigError(f"Malformed path in {where}: {value} ({e})") from None


def _home_of(user: str) -> str:
    try:
        return pwd.getpwnam(user).pw_dir
    except KeyError:
        # Account not created yet
        return f"/home/{user}"


def _resolve(data: dict[str, Any], invoking_user: str) -> dict[str, Any]:
    """Fill in accounts and expand every ``{placeholder}`` path."""
    data = dict(data)
    service_user = data.get("service_user") or invoking_user
    data["service_user"] = service_user
    data["invoking_user"] = invoking_user

    values: dict[str, str] = {
        "service_user": service_user,
        "invoking_user": invoking_user,
    }
    if not data.get("home"):
        data["home"] = _home_of(service_user)

    for key in _PATH_KEYS:
        if data.get(key) is None:
            default = ProvisionSettings.model_fields[key].default
            if not isinstance(default, Path):
                continue
            data[key] = str(default)
        data[key] = _expand(data[key], values, key)
        values[key] = data[key]

    if "user_data_dir" in values:
        values["strategies_dir"] = str(Path(values["user_data_dir"]) / "strategies")
    for key in ("service_name", "strategy"):
        if data.get(key):
            values[key] = str(data[key])

    directories = []
    for i, entry in enumerate(data.get("directories") or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"directories[{i}] must be a mapping")
        directories.append({**entry, "path": _expand(entry.get("path", ""), values, f"directories[{i}]")})
    data["directories"] = directories

    artifacts = []
    for i, entry in enumerate(data.get("artifacts") or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"artifacts[{i}] must be a mapping")
        artifacts.append({**entry, "dest": _expand(entry.get("dest", ""), values, f"artifacts[{i}]")})
    data["artifacts"] = artifacts

    return data


# ── Public API ──────────────────────────────────────────────────


def load_catalog(path: Path | None = None) -> PackageCatalog:
    """Load the apt/pip package group catalog."""
    path = path or CATALOG_FILE
    data = _read_yaml(path)
    try:
        return PackageCatalog.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid package catalog {path}: {e}") from e


def load_profile(
    name_or_path: str | Path = DEFAULT_PROFILE,
    overrides: dict[str, Any] | None = None,
    invoking_user: str | None = None,
    catalog: PackageCatalog | None = None,
) -> ProvisionSettings:
    """Load, merge, resolve and validate a profile.

    Args:
        name_or_path: Built-in profile name or path to a YAML file.
        overrides: Keys merged over the profile (highest precedence).
        invoking_user: Who runs ftsetup (default: the current login).
        catalog: Package catalog for group-name validation.

    Returns:
        Frozen, fully-resolved settings.

    Raises:
        ConfigError: If the profile is missing, malformed, or names an
            unknown step or package group.
    """
    path = find_profile(name_or_path)
    logger.debug("Loading profile from %s", path)

    top = _read_yaml(path)
    data = _load_chain(path)
    data["profile"] = top.get("profile") or path.stem
    if overrides:
        data = deep_merge(data, overrides)

    data = _resolve(data, invoking_user or getpass.getuser())

    try:
        settings = ProvisionSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid profile '{data['profile']}': {e}") from e

    validate_step_names(settings.steps)
    _validate_groups(settings, catalog or load_catalog())

    logger.info(
        "Loaded profile '%s' (%d steps, service account '%s')",
        settings.profile, len(settings.steps), settings.service_user,
    )
    return settings


def _validate_groups(settings: ProvisionSettings, catalog: PackageCatalog) -> None:
    unknown = [g for g in settings.apt_groups if g not in catalog.apt_groups]
    unknown += [g for g in settings.pip_groups if g not in catalog.pip_groups]
    if unknown:
        raise ConfigError(
            f"Profile '{settings.profile}' names unknown package group(s): {', '.join(unknown)}"
        )
