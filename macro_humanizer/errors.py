"""Exception types raised by the macro humanizer engine."""

from typing import Optional


class MacroHumanizerError(Exception):
    """Base class for all engine errors."""


class ValidationError(MacroHumanizerError, ValueError):
    """Input rejected at the boundary (bad settings, too few files, ...)."""


class NotFoundError(MacroHumanizerError, KeyError):
    """Unknown pattern, profile, job or file id."""

    def __init__(self, kind: str, item_id):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} not found: {item_id}")

    def __str__(self) -> str:
        return self.args[0]


class ParseError(MacroHumanizerError, ValueError):
    """Malformed macro content."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class CacheUnavailable(MacroHumanizerError):
    """Cache backend could not be reached. Never leaves the cache module."""


class JobFailure(MacroHumanizerError):
    """A job exhausted its retry budget."""

    def __init__(self, job_id: str, message: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"job {job_id} failed after {attempts} attempt(s): {message}")
