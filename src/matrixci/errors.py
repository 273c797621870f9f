# errors.py
from __future__ import annotations

from dataclasses import dataclass


class ConfigError(ValueError):
    """
    The pipeline definition cannot be run: malformed document, duplicate
    labels, variable collisions, bad or unknown condition references.

    Always raised before any job starts.
    """

    def __init__(self, message: str, location: str | None = None):
        self.message = message
        self.location = location
        super().__init__(message)

    def __str__(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


class ReportError(Exception):
    """A native test-result payload could not be converted."""

    def __init__(self, job: str, message: str, line: int | None = None):
        self.job = job
        self.message = message
        self.line = line
        super().__init__(message)

    def __str__(self) -> str:
        where = f" (line {self.line})" if self.line is not None else ""
        return f"[{self.job}] report conversion failed{where}: {self.message}"


@dataclass
class StepFailure(Exception):
    """Raised by `JobOutcome` consumers that want failures as exceptions."""
    job: str
    step: str
    status: str
    exit_code: int | None
    message: str | None = None

    def __str__(self) -> str:
        lines = [f"[{self.job}] step '{self.step}' {self.status} (exit={self.exit_code})"]
        if self.message:
            lines.append(self.message)
        return "\n".join(lines)
