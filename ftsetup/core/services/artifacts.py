"""
Templated artifacts: config JSON, strategy, helper scripts, wrapper,
systemd unit and README.

Templates are package resources under ``ftsetup/templates``. They are
processed with two mechanisms:
  1. Conditional blocks:  __IF_FEATURE_xxx__ / __IF_NOT_FEATURE_xxx__ / __ENDIF__
  2. Placeholder substitution:  __PLACEHOLDER_NAME__

Markers may sit inside any comment syntax (``#``, ``<!-- -->``); the
whole marker line is dropped. Rendering is pure; ``materialize`` does
the I/O.

Lifecycle: an artifact that already exists is never overwritten. Its
mode and owner are checked and a mismatch is reported as a warning.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from ftsetup.core.engine.context import StepContext
from ftsetup.core.engine.registry import step
from ftsetup.core.errors import ProvisionError
from ftsetup.core.models.settings import ProvisionSettings
from ftsetup.core.models.step import StepResult
from ftsetup.core.models.template import ArtifactSpec

logger = logging.getLogger(__name__)


# ── Template directory ──────────────────────────────────────────────

TEMPLATES_DIR = Path(__file__).resolve().parents[2] / "templates"

_LEFTOVER = re.compile(r"__[A-Z][A-Z0-9_]*__")


# ═══════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════


@dataclass
class TemplateContext:
    """Values substituted into templates."""

    placeholders: dict[str, str] = field(default_factory=dict)
    features: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: ProvisionSettings) -> TemplateContext:
        config_rel = settings.config_file
        if config_rel.is_relative_to(settings.app_dir):
            config_rel = config_rel.relative_to(settings.app_dir)

        wrapper = settings.wrapper_dir / "freqtrade-wrapper"
        placeholders = {
            "__SERVICE_USER__": settings.service_user,
            "__HOME__": str(settings.home),
            "__APP_DIR__": str(settings.app_dir),
            "__VENV_DIR__": str(settings.venv_dir),
            "__USER_DATA_DIR__": str(settings.user_data_dir),
            "__STRATEGIES_DIR__": str(settings.strategies_dir),
            "__CONFIG_FILE__": str(settings.config_file),
            "__CONFIG_REL__": str(config_rel),
            "__STRATEGY__": settings.strategy,
            "__EXCHANGE__": settings.exchange,
            "__PYTHON_VERSION__": settings.python_version,
            "__SERVICE_NAME__": settings.service_name or "",
            "__SECRETS_DIR__": str(settings.secrets_dir or ""),
            "__WRAPPER_PATH__": str(wrapper),
            "__KEYBOARD_LAYOUT__": settings.keyboard_layout or "",
        }
        features = {
            "service": settings.service_name is not None,
            "freqai": settings.freqai,
            "secrets": settings.secrets_dir is not None,
        }
        return cls(placeholders=placeholders, features=features)


def process_template(
    content: str,
    features: dict[str, bool],
    placeholders: dict[str, str],
) -> str:
    """Process template text with conditional blocks and placeholders.

        # __IF_FEATURE_xxx__
        ... kept only if feature 'xxx' is enabled ...
        # __ENDIF__

    ``__IF_NOT_FEATURE_xxx__`` keeps the block when the feature is off.
    Blocks can be nested; they are resolved innermost first.
    """
    changed = True
    while changed:
        changed = False

        def _replace(m: re.Match) -> str:
            nonlocal changed
            changed = True
            negate, feat_key, body = m.group(1), m.group(2), m.group(3)
            enabled = features.get(feat_key, False)
            return body if enabled != bool(negate) else ""

        content = re.sub(
            r"^[^\n]*__IF_(NOT_)?FEATURE_(\w+?)__[^\n]*\n"
            r"((?:(?![^\n]*__IF_(?:NOT_)?FEATURE_)[^\n]*\n)*?)"
            r"[^\n]*__ENDIF__[^\n]*\n",
            _replace,
            content,
            flags=re.MULTILINE,
        )

    for key, value in placeholders.items():
        content = content.replace(key, value)

    # Clean up empty lines left by removed blocks (max 2 consecutive)
    content = re.sub(r"\n{3,}", "\n\n", content)
    return content


def render_template(template: str, tctx: TemplateContext) -> str:
    """Render a packaged template.

    Raises:
        ProvisionError: If the template is missing or a placeholder is
            left unresolved.
    """
    path = TEMPLATES_DIR / template
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProvisionError(f"Template {template} unavailable: {e}") from e

    rendered = process_template(raw, tctx.features, tctx.placeholders)
    leftover = sorted(set(_LEFTOVER.findall(rendered)))
    if leftover:
        raise ProvisionError(f"Template {template} has unresolved placeholders: {', '.join(leftover)}")
    return rendered


def patch_config(content: str, settings: ProvisionSettings) -> str:
    """Apply profile values to a Freqtrade config structurally.

    Raises:
        ProvisionError: If ``content`` is not a JSON object.
    """
    try:
        config = json.loads(content)
    except json.JSONDecodeError as e:
        raise ProvisionError(f"Config template is not valid JSON: {e}") from e
    if not isinstance(config, dict):
        raise ProvisionError("Config template must be a JSON object")

    exchange = config.setdefault("exchange", {})
    exchange["name"] = settings.exchange
    if settings.pair_whitelist is not None:
        exchange["pair_whitelist"] = list(settings.pair_whitelist)
    if "strategy" in config:
        config["strategy"] = settings.strategy
    if isinstance(config.get("freqai"), dict):
        config["freqai"]["enabled"] = settings.freqai

    return json.dumps(config, indent=4) + "\n"


# ═══════════════════════════════════════════════════════════════════
#  Materialization
# ═══════════════════════════════════════════════════════════════════


@dataclass
class ArtifactOutcome:
    name: str
    dest: Path
    created: bool = False
    warnings: list[str] = field(default_factory=list)


def expected_owner(spec: ArtifactSpec, settings: ProvisionSettings) -> str:
    return settings.system_owner if spec.root_owned else settings.service_user


def check_existing(spec: ArtifactSpec, ctx: StepContext) -> list[str]:
    """Mode/owner mismatches of an existing artifact, as warning messages."""
    info = ctx.fs.stat(spec.dest)
    if info is None:
        return []

    warnings = []
    if info.mode != spec.mode:
        warnings.append(f"{spec.dest} has mode {info.mode_str}, expected {spec.mode:o}")
    owner = expected_owner(spec, ctx.settings)
    if info.owner != owner:
        warnings.append(f"{spec.dest} is owned by {info.owner}, expected {owner}")
    return warnings


def materialize(
    spec: ArtifactSpec,
    ctx: StepContext,
    tctx: TemplateContext | None = None,
) -> ArtifactOutcome:
    """Create ``spec.dest`` from its template unless it already exists.

    Raises:
        ProvisionError: If rendering or writing fails.
    """
    outcome = ArtifactOutcome(name=spec.name, dest=spec.dest)

    if ctx.fs.exists(spec.dest):
        outcome.warnings = check_existing(spec, ctx)
        for warning in outcome.warnings:
            logger.warning("%s: %s", spec.name, warning)
        logger.debug("%s already present at %s, left untouched", spec.name, spec.dest)
        return outcome

    tctx = tctx or TemplateContext.from_settings(ctx.settings)
    content = render_template(spec.template, tctx)
    if spec.kind == "json":
        content = patch_config(content, ctx.settings)

    ctx.fs.write_file(spec.dest, content, expected_owner(spec, ctx.settings), spec.mode)
    logger.info("Created %s (%s, mode %o)", spec.dest, spec.name, spec.mode)
    outcome.created = True
    return outcome


def artifacts_in(settings: ProvisionSettings, group: str) -> list[ArtifactSpec]:
    return [a for a in settings.artifacts if a.group == group]


def _materialize_group(ctx: StepContext, result: StepResult, group: str) -> list[ArtifactOutcome]:
    specs = artifacts_in(ctx.settings, group)
    if not specs:
        result.status = "skipped"
        result.note(f"No {group} artifacts in profile '{ctx.settings.profile}'")
        return []

    tctx = TemplateContext.from_settings(ctx.settings)
    outcomes = []
    for spec in specs:
        outcome = materialize(spec, ctx, tctx)
        if outcome.created:
            result.note(f"Created {spec.dest}", changed=True)
        else:
            result.note(f"{spec.dest} already present")
        for warning in outcome.warnings:
            result.note(f"WARNING: {warning}")
        outcomes.append(outcome)
    return outcomes


# ═══════════════════════════════════════════════════════════════════
#  Steps
# ═══════════════════════════════════════════════════════════════════


@step("config", "Write the Freqtrade config JSON (mode 600)", "application")
def write_config(ctx: StepContext, result: StepResult) -> None:
    _materialize_group(ctx, result, "config")


@step("strategy", "Write the starter strategy", "application")
def write_strategy(ctx: StepContext, result: StepResult) -> None:
    _materialize_group(ctx, result, "strategy")


@step("scripts", "Write the helper scripts (mode 755)", "application")
def write_scripts(ctx: StepContext, result: StepResult) -> None:
    _materialize_group(ctx, result, "scripts")


@step("wrapper", "Install the freqtrade-wrapper command", "application")
def write_wrapper(ctx: StepContext, result: StepResult) -> None:
    _materialize_group(ctx, result, "wrapper")


@step("systemd", "Install the systemd unit", "application")
def write_unit(ctx: StepContext, result: StepResult) -> None:
    if not ctx.settings.service_name:
        result.status = "skipped"
        result.note("Profile defines no service")
        return

    outcomes = _materialize_group(ctx, result, "systemd")
    if any(o.created for o in outcomes):
        ctx.execute(["systemctl", "daemon-reload"], "systemctl daemon-reload", sudo=True)
        result.note("systemd reloaded")


@step("docs", "Write the README", "application")
def write_docs(ctx: StepContext, result: StepResult) -> None:
    _materialize_group(ctx, result, "docs")
