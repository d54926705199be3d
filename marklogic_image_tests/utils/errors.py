"""Exceptions raised by the verification engine.

All of them are terminal for the running scenario. Pattern and value mismatches are also
`AssertionError` subclasses, so pytest reports them as test failures.
"""

import typing as tp

EXCERPT_LEN = 2000


def get_excerpt(text: str, *, length: int = EXCERPT_LEN) -> str:
    """Return the tail of the `text`, where the most recent log output is."""
    if len(text) <= length:
        return text
    return f"[...]{text[-length:]}"


class ScenarioError(Exception):
    pass


class ProcessFailure(ScenarioError):
    """External command failed, or produced stderr output where none was expected."""

    def __init__(
        self,
        msg: str,
        *,
        command: str = "",
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(msg)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ProcessTimeout(ProcessFailure):
    """External command didn't finish in time. Carries the partial output."""


class PollTimeout(ScenarioError):
    """Retry budget exhausted. The last observed failure is kept in `last_error`."""

    def __init__(
        self, msg: str, *, last_error: BaseException | None, attempts: int, elapsed: float
    ) -> None:
        super().__init__(msg)
        self.last_error = last_error
        self.attempts = attempts
        self.elapsed = elapsed


class PatternMismatch(ScenarioError, AssertionError):
    """Expected content is absent from a text blob."""

    def __init__(self, *, label: str, pattern: str, text: str, negate: bool = False) -> None:
        self.label = label
        self.pattern = pattern
        self.excerpt = get_excerpt(text)
        verb = "Unexpected" if negate else "No"
        msg = f"{verb} match for `{pattern}` in {label}.\n{label} content:\n{self.excerpt}"
        super().__init__(msg)


class AssertionMismatch(ScenarioError, AssertionError):
    """Parsed value is not equal to the expected literal."""

    def __init__(self, *, label: str, expected: tp.Any, actual: tp.Any) -> None:
        self.label = label
        self.expected = expected
        self.actual = actual
        super().__init__(f"Unexpected {label}: {actual!r}. Expected: {expected!r}")


class ResponseFormatError(ScenarioError):
    """Response body doesn't have the documented shape."""
