"""
Step results: what a provisioning step reports back to the engine.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

StepStatus = Literal["changed", "unchanged", "failed", "skipped"]


class StepResult(BaseModel):
    """Outcome of one step.

    ``changed`` means the step mutated the system, ``unchanged`` means
    the desired state was already there. A second run of a healthy
    pipeline reports only ``unchanged`` (and ``skipped``) steps.
    """

    step: str
    status: StepStatus = "unchanged"
    messages: list[str] = Field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    @property
    def changed(self) -> bool:
        return self.status == "changed"

    def note(self, message: str, *, changed: bool = False) -> None:
        """Record a message; ``changed=True`` marks the step as mutating."""
        self.messages.append(message)
        if changed and self.status == "unchanged":
            self.status = "changed"
