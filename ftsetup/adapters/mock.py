"""
Mock runner: universal test double for command execution.

Used by tests (and ``--mock`` runs) to simulate the system without
touching it. Returns success by default; responses can be scripted
per command, including sequences for retry scenarios.
"""

from __future__ import annotations

from collections.abc import Callable

from ftsetup.adapters.base import Runner
from ftsetup.core.models.action import Command, Receipt

Responder = Callable[[Command], Receipt]


class MockRunner(Runner):
    """Scripted runner.

    Responses are matched by substring against the command line
    (``Command.display``). A list of receipts is consumed in order and
    the last one repeats. A callable responder gets the Command.
    """

    def __init__(self, default_output: str = "", dry_run: bool = False):
        self._default_output = default_output
        self._dry_run = dry_run
        self._responses: list[tuple[str, list[Receipt] | Responder]] = []
        self._call_log: list[Command] = []
        self._executed: list[Command] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def call_log(self) -> list[Command]:
        """All commands this mock has received, in order."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls_matching(self, fragment: str) -> list[Command]:
        return [c for c in self._call_log if fragment in c.display]

    def is_available(self) -> bool:
        return True

    def set_response(self, match: str, *receipts: Receipt) -> None:
        """Script the receipts returned for commands containing ``match``."""
        self._responses.append((match, list(receipts)))

    def set_responder(self, match: str, responder: Responder) -> None:
        self._responses.append((match, responder))

    def set_output(self, match: str, output: str) -> None:
        self.set_response(match, Receipt.success(command=match, output=output))

    def set_failure(self, match: str, error: str = "Mock failure") -> None:
        self.set_response(match, Receipt.failure(command=match, error=error, return_code=1))

    @property
    def executed(self) -> list[Command]:
        """Commands that would have had an effect (not skipped by dry-run)."""
        return self._executed

    def run(self, command: Command) -> Receipt:
        self._call_log.append(command)

        if self._dry_run and not command.probe:
            return Receipt.skip(command=command.display, reason="[dry-run] not executed")
        self._executed.append(command)

        # Latest registration wins
        for match, response in reversed(self._responses):
            if match not in command.display:
                continue
            if callable(response):
                return response(command)
            if len(response) > 1:
                return response.pop(0)
            return response[0]

        return Receipt.success(
            command=command.display,
            output=self._default_output,
            metadata={"mock": True},
        )

    def reset(self) -> None:
        """Clear call log and scripted responses."""
        self._call_log.clear()
        self._executed.clear()
        self._responses.clear()
