"""
Error taxonomy for provisioning runs.

Adapters never raise (they return receipts). Steps raise these when a
desired state cannot be reached; the engine turns them into a failed
step and stops the pipeline.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for all provisioning failures."""


class ConfigError(ProvisionError):
    """Raised when a profile is missing or invalid."""


class PreflightError(ProvisionError):
    """A precondition is not met. Raised before any mutation."""


class RetryExhaustedError(ProvisionError):
    """A retried operation failed on every attempt."""

    def __init__(self, label: str, attempts: int, last_error: str = ""):
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"'{label}' failed after {attempts} attempt(s){detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class Interrupted(KeyboardInterrupt):
    """The run was stopped by SIGTERM. Unwinds exactly like Ctrl-C."""
