"""Exception hierarchy for pytest-moonlight.

Coverage is observability, not correctness: every error defined here is
caught at a component boundary and turned into a Diagnostic on the
snapshot. None of them is allowed to abort the test run.
"""

from __future__ import annotations


class MoonlightError(Exception):
    """Base class for all coverage engine errors."""


class AnalysisError(MoonlightError):
    """Source text could not be lexed or its block structure is unbalanced.

    Attributes:
        line: 1-indexed line where the problem was detected.
        message: Human-readable description of the problem.
    """

    def __init__(self, line: int, message: str) -> None:
        super().__init__(f'line {line}: {message}')
        self.line = line
        self.message = message


class InstrumentationError(MoonlightError):
    """A file cannot be safely rewritten; it falls back to the hook tracker.

    Attributes:
        path: The file that could not be instrumented.
    """

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f'{path}: {message}')
        self.path = path
        self.message = message


class HookInstallError(MoonlightError):
    """The Lua runtime refused to install the execution hook."""


class MergeConflictError(MoonlightError):
    """Two snapshots disagree about the structure of the same file."""
