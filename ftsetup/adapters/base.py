"""
Runner base: the protocol contract between steps and external programs.

Steps never call ``subprocess`` directly. They build ``Command``
objects and hand them to a Runner, which returns a ``Receipt``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ftsetup.core.models.action import Command, Receipt


class Runner(ABC):
    """Abstract base class for command runners.

    Runners perform external side effects and return receipts.
    They NEVER raise exceptions; failures are captured in the Receipt.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The runner identifier (e.g., 'shell', 'mock')."""

    @property
    def dry_run(self) -> bool:
        return False

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the runner can execute anything at all. Never raises."""

    @abstractmethod
    def run(self, command: Command) -> Receipt:
        """Execute the command and return a receipt.

        MUST never raise exceptions. All failures are captured
        in the Receipt with status='failed'.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
