"""
errors.py
~~~~~~~~~

Exception hierarchy for the network core and its file format.
"""

from typing import Optional


class NetworkError(Exception):
    """Base class for every error raised by ffnet."""


class InvariantViolation(NetworkError):
    """
    A shape or precondition check failed.

    This is a programming error (e.g. an input batch whose column count
    differs from the input layer size). The operation aborts immediately.
    """


class FormatError(NetworkError, ValueError):
    """
    Serialized network text is malformed or truncated.

    Attributes:
        line: 1-based line number where parsing stopped
        expected: Description of the token that was expected
        found: The text actually found ('<end of file>' when truncated)
        path: File the text came from, if any
    """

    def __init__(
        self,
        line: int,
        expected: str,
        found: str,
        path: Optional[str] = None
    ):
        self.line = line
        self.expected = expected
        self.found = found
        self.path = path
        location = f"{path}:{line}" if path else f"line {line}"
        super().__init__(f"{location}: expected {expected}, found {found!r}")

    def to_dict(self) -> dict:
        """Return the error fields as a JSON-serializable dictionary."""
        return {
            'line': self.line,
            'expected': self.expected,
            'found': self.found,
            'path': self.path
        }


class NetworkIOError(NetworkError, OSError):
    """A network file could not be opened, read or written."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot access network file '{path}': {reason}")
