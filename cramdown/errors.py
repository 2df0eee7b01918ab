from __future__ import annotations

# Error taxonomy.


class ParseError(Exception):
    """A document could not be parsed; no partial Document is produced."""

    def __init__(self, reason: str, *, line: int | None = None, path: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.line = line
        self.path = path

    def with_path(self, path: str | None) -> ParseError:
        if path is None or self.path is not None:
            return self
        return ParseError(self.reason, line=self.line, path=path)

    def __str__(self) -> str:
        location = self.path or "<document>"
        if self.line is not None:
            location = f"{location}:{self.line}"
        return f"{location}: {self.reason}"


class DecodeError(ValueError):
    pass


class ExecutionError(RuntimeError):
    """Running a single command failed before it produced a result."""


class SessionError(ExecutionError):
    """The shared shell session cannot be used any more."""


class InvariantViolation(AssertionError):
    """Engine bug; never caught by the engine itself."""
