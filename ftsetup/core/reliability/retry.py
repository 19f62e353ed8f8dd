"""
Retry combinator: bounded re-attempts for flaky external operations.

Every network download and package-manager call goes through
``retry_call``. The policy is fixed-delay: a failed attempt waits
``delay`` seconds, then tries again, up to ``attempts`` in total.
Exhaustion raises ``RetryExhaustedError`` naming the operation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ftsetup.adapters.base import Runner
from ftsetup.core.errors import RetryExhaustedError
from ftsetup.core.models.action import Command, Receipt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait in between."""

    attempts: int = 3
    delay: float = 5.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.delay < 0:
            raise ValueError("delay must be >= 0")


def retry_call(
    operation: Callable[[], Receipt],
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> Receipt:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    A failed receipt and a raised exception both count as a failed
    attempt. Skipped receipts (dry-run) count as success.

    Returns:
        The first non-failed receipt.

    Raises:
        RetryExhaustedError: after ``policy.attempts`` failures.
    """
    last_error = ""
    for attempt in range(1, policy.attempts + 1):
        try:
            receipt = operation()
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
        else:
            if not receipt.failed:
                if attempt > 1:
                    logger.info("'%s' succeeded on attempt %d/%d", label, attempt, policy.attempts)
                return receipt
            last_error = receipt.error or f"exit code {receipt.return_code}"

        if attempt < policy.attempts:
            logger.warning(
                "'%s' failed (attempt %d/%d), retrying in %.0fs: %s",
                label, attempt, policy.attempts, policy.delay, _summary(last_error),
            )
            sleep(policy.delay)

    logger.error("'%s' failed after %d attempt(s)", label, policy.attempts)
    raise RetryExhaustedError(label, policy.attempts, _summary(last_error))


def run_with_retry(
    runner: Runner,
    command: Command,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> Receipt:
    """``retry_call`` specialised for a single Command."""
    return retry_call(lambda: runner.run(command), policy, command.name, sleep=sleep)


def _summary(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return lines[-1][:300] if lines else ""
