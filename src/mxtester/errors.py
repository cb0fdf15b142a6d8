"""Domain errors for mx-tester."""

from typing import List


class TesterError(RuntimeError):
    """Raised when a phase cannot continue safely."""


class TeardownError(TesterError):
    """Raised by `down` once every teardown step has been attempted."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        details = "\n".join(f"- {error}" for error in self.errors)
        super().__init__(f"Teardown failed with {len(self.errors)} error(s):\n{details}")
