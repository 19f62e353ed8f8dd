"""
Step registry: name -> provisioning step.

Step modules register their functions with the ``@step`` decorator at
import time. Profiles and the CLI refer to steps by name only, so an
unknown name is caught when a profile is loaded, not halfway through
a run.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ftsetup.core.errors import ConfigError

if TYPE_CHECKING:
    from ftsetup.core.engine.context import StepContext
    from ftsetup.core.models.step import StepResult

logger = logging.getLogger(__name__)

StepFunc = Callable[["StepContext", "StepResult"], None]

# Modules whose import registers the built-in steps, in pipeline order.
_BUILTIN_MODULES = (
    "ftsetup.core.services.preflight",
    "ftsetup.core.services.system",
    "ftsetup.core.services.account",
    "ftsetup.core.services.runtime",
    "ftsetup.core.services.artifacts",
    "ftsetup.core.services.verify",
    "ftsetup.core.services.diagnose",
)


@dataclass(frozen=True)
class StepDefinition:
    """A registered step.

    ``read_only`` steps (verification, diagnostics) inspect the system
    and never abort the pipeline.
    """

    name: str
    func: StepFunc
    description: str
    family: str
    read_only: bool = False


_REGISTRY: dict[str, StepDefinition] = {}
_loaded = False


def step(
    name: str,
    description: str,
    family: str,
    read_only: bool = False,
) -> Callable[[StepFunc], StepFunc]:
    """Register the decorated function as the step ``name``."""

    def decorator(func: StepFunc) -> StepFunc:
        register(StepDefinition(name, func, description, family, read_only))
        return func

    return decorator


def register(definition: StepDefinition) -> None:
    if definition.name in _REGISTRY:
        raise ValueError(f"Step '{definition.name}' is already registered")
    _REGISTRY[definition.name] = definition


def _load_builtin() -> None:
    global _loaded
    if _loaded:
        return
    for module in _BUILTIN_MODULES:
        importlib.import_module(module)
    _loaded = True
    logger.debug("Registered %d steps", len(_REGISTRY))


def known_steps() -> dict[str, StepDefinition]:
    """All registered steps, in registration order."""
    _load_builtin()
    return dict(_REGISTRY)


def get_step(name: str) -> StepDefinition:
    """Look up a step by name.

    Raises:
        ConfigError: If no step has that name.
    """
    steps = known_steps()
    try:
        return steps[name]
    except KeyError:
        raise ConfigError(
            f"Unknown step '{name}'. Known steps: {', '.join(steps)}"
        ) from None


def validate_step_names(names: list[str] | tuple[str, ...]) -> None:
    """Raise ``ConfigError`` naming every unknown step in ``names``."""
    steps = known_steps()
    unknown = [n for n in names if n not in steps]
    if unknown:
        raise ConfigError(
            f"Unknown step(s): {', '.join(unknown)}. Known steps: {', '.join(steps)}"
        )
