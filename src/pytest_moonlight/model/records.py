"""Frozen per-file coverage views.

These are the shapes that leave the coverage store: snapshots, serialized
worker files and report formatters all consume them. Nothing in here is
mutable, so a view can be shared between threads without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Mapping

    from pytest_moonlight.analysis.profile import BlockKind, LineKind


def percentage(covered: int, total: int) -> float:
    """Return ``covered / total`` as a percentage.

    Nothing to cover counts as fully covered, so an empty total yields 100.0.
    """
    if total == 0:
        return 100.0
    return covered / total * 100


@dataclass(frozen=True)
class FunctionInfo:
    """Coverage of one function definition.

    Attributes:
        function_id: Unique id within the file.
        name: Declared name, or ``'<anonymous>'``.
        start_line: Header line; the function is executed iff this line is.
        end_line: Line of the closing ``end``.
        executed: True if the function was entered at least once.
        call_count: Number of observed entries.
    """

    function_id: str
    name: str
    start_line: int
    end_line: int
    executed: bool = False
    call_count: int = 0


@dataclass(frozen=True)
class BlockInfo:
    """Coverage of one structural block.

    Attributes:
        block_id: Unique id within the file.
        kind: Block kind.
        start_line: Header line.
        end_line: Last line of the block.
        parent_id: Enclosing block, or None at chunk level.
        executed: True if an executable line owned by the block executed.
        entry_count: Observed body entries; only counted by the
            instrumentation tracker when block tracking is on.
    """

    block_id: str
    kind: BlockKind
    start_line: int
    end_line: int
    parent_id: str | None
    executed: bool = False
    entry_count: int = 0


@dataclass(frozen=True)
class FileRecord:
    """Immutable coverage record for one source file.

    Attributes:
        path: Absolute, normalized path.
        source_lines: Raw source lines; ``source_lines[0]`` is line 1.
        source_hash: SHA-256 of the source text, empty if unknown.
        executable: Lines that can execute.
        executed: Lines observed executing; always a subset of ``executable``.
        entry_lines: Executable lines marked when the function defined on
            them is entered.
        hit_counts: Observed executions per line.
        line_kinds: Kind of every analyzed line.
        statement_starts: Line a continuation line's statement starts on.
        functions: Function coverage, in source order.
        blocks: Block coverage, in source order.
        analyzable: False if static analysis failed for this file.
        analysis_error: ``(line, message)`` describing the analysis failure.
        ignored_hits: Hits reported for lines that cannot execute.
    """

    path: str
    source_lines: tuple[str, ...]
    source_hash: str
    executable: frozenset[int]
    executed: frozenset[int]
    entry_lines: frozenset[int] = frozenset()
    hit_counts: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    line_kinds: Mapping[int, LineKind] = field(default_factory=lambda: MappingProxyType({}))
    statement_starts: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    functions: tuple[FunctionInfo, ...] = ()
    blocks: tuple[BlockInfo, ...] = ()
    analyzable: bool = True
    analysis_error: tuple[int, str] | None = None
    ignored_hits: int = 0

    @property
    def executable_count(self) -> int:
        """Return the number of executable lines."""
        return len(self.executable)

    @property
    def executed_count(self) -> int:
        """Return the number of executed lines."""
        return len(self.executed)

    @property
    def missing(self) -> tuple[int, ...]:
        """Return executable lines that never ran, in order."""
        return tuple(sorted(self.executable - self.executed))

    @property
    def line_coverage_pct(self) -> float:
        """Return line coverage as a percentage."""
        return percentage(len(self.executed), len(self.executable))

    @property
    def function_coverage_pct(self) -> float:
        """Return function coverage as a percentage."""
        hit = sum(1 for function in self.functions if function.executed)
        return percentage(hit, len(self.functions))

    @property
    def block_coverage_pct(self) -> float:
        """Return block coverage as a percentage."""
        hit = sum(1 for block in self.blocks if block.executed)
        return percentage(hit, len(self.blocks))

    def function(self, name: str) -> FunctionInfo | None:
        """Look up a function by declared name or id."""
        for function in self.functions:
            if name in (function.name, function.function_id):
                return function
        return None

    def block(self, block_id: str) -> BlockInfo | None:
        """Look up a block by id."""
        for block in self.blocks:
            if block.block_id == block_id:
                return block
        return None
