"""Planning error taxonomy.

Recoverable errors (generation and parse failures) are caught at each stage boundary
and replaced by that stage's deterministic fallback. Fatal errors abort an orchestration
run and surface as a failed result.
"""
from __future__ import annotations

from typing import Optional


class PlanningError(Exception):
    """Base class for planning pipeline failures."""

    fatal = False


class GenerationError(PlanningError):
    """The text-generation capability could not produce a response."""


class AllBackendsExhausted(GenerationError):
    """Every candidate model/attempt combination failed."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class UnparsableOutput(PlanningError):
    """Generated text did not contain a decodable JSON value."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class EmptyDecomposition(PlanningError):
    """No tasks could be synthesized for the goal."""

    fatal = True


class InvalidInput(PlanningError):
    """The caller supplied unusable input, e.g. an empty goal."""

    fatal = True


class MemoryConflict(PlanningError):
    """Another writer updated the user's memory since it was read."""
