"""Structural profile produced by the source analyzer.

A FileProfile is everything the coverage engine knows about a file without
running it: which lines can execute, where functions and blocks start and
end, which block owns each line, and where tracking calls may be injected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class LineKind(Enum):
    """Classification of a physical source line.

    Attributes:
        CODE: Starts a statement; the only executable kind.
        COMMENT: Holds nothing but comment text.
        BLANK: Whitespace only.
        STRUCTURE: Only block keywords or closers (``end``, ``else``, ``do``, ``end)``).
        CONTINUATION: Continues a statement begun on an earlier line.
        STRING: Inside a string that spans lines.
    """

    CODE = 'code'
    COMMENT = 'comment'
    BLANK = 'blank'
    STRUCTURE = 'structure'
    CONTINUATION = 'continuation'
    STRING = 'string'


class BlockKind(Enum):
    """Kinds of structural blocks."""

    IF = 'if'
    ELSEIF = 'elseif'
    ELSE = 'else'
    FOR = 'for'
    WHILE = 'while'
    REPEAT = 'repeat'
    FUNCTION = 'function'
    DO = 'do'


class InjectionStyle(Enum):
    """How a line-tracking call is fused onto a line.

    Attributes:
        STATEMENT: ``track(n); <statement>`` at the start of a statement.
        CONDITION: ``<keyword> track(n) and <condition>`` for loop and branch
            conditions that cannot take a statement prefix.
    """

    STATEMENT = 'statement'
    CONDITION = 'condition'


@dataclass(frozen=True)
class InjectionPoint:
    """Where the line-tracking call for an executable line goes.

    Attributes:
        line: 1-indexed line number.
        column: 0-indexed column at which the call is inserted.
        style: Statement prefix or condition prefix.
    """

    line: int
    column: int
    style: InjectionStyle


@dataclass(frozen=True)
class BlockSpan:
    """A structural block found by the analyzer.

    Attributes:
        block_id: Unique id within the file, e.g. ``'if@12'``.
        kind: The block kind.
        start_line: Line of the block header (``if``, ``else``, ``function`` ...).
        end_line: Last line of the block.
        parent_id: Id of the enclosing block, or None at chunk level.
        body_entry: ``(line, column)`` just after the token that opens the body.
    """

    block_id: str
    kind: BlockKind
    start_line: int
    end_line: int
    parent_id: str | None
    body_entry: tuple[int, int] | None = None


@dataclass(frozen=True)
class FunctionSpan:
    """A function definition found by the analyzer.

    Attributes:
        function_id: Unique id within the file, e.g. ``'M.add@4'`` or ``'anon@9'``.
        name: Declared name, or ``'<anonymous>'``.
        start_line: Line of the ``function`` keyword.
        end_line: Line of the matching ``end``.
        block_id: Id of the FUNCTION block for this function.
        body_entry: ``(line, column)`` just after the closing parenthesis of
            the parameter list.
    """

    function_id: str
    name: str
    start_line: int
    end_line: int
    block_id: str
    body_entry: tuple[int, int] | None = None

    @property
    def is_anonymous(self) -> bool:
        """Return True if the function has no declared name."""
        return self.function_id.startswith('anon@')


@dataclass(frozen=True)
class FileProfile:
    """Static structure of one source file.

    Attributes:
        line_kinds: Kind of every line, indexed by ``line - 1``.
        executable: Lines of kind CODE.
        entry_lines: Executable lines that are marked when a function defined
            on them is entered, rather than when the line itself runs.
        functions: Every function definition, in source order.
        blocks: Every block, in source order of their headers.
        line_owner: Innermost block owning each line that lies inside a block body.
        injections: Line-tracking injection point for each executable line
            that is not an entry line.
        statement_starts: For each continuation line, the executable line
            its statement starts on.
    """

    line_kinds: tuple[LineKind, ...]
    executable: frozenset[int]
    entry_lines: frozenset[int]
    functions: tuple[FunctionSpan, ...]
    blocks: tuple[BlockSpan, ...]
    line_owner: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))
    injections: Mapping[int, InjectionPoint] = field(default_factory=lambda: MappingProxyType({}))
    statement_starts: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def line_count(self) -> int:
        """Return the number of physical lines."""
        return len(self.line_kinds)

    def kind_of(self, line: int) -> LineKind:
        """Return the kind of a 1-indexed line (BLANK past the end of file)."""
        if 1 <= line <= len(self.line_kinds):
            return self.line_kinds[line - 1]
        return LineKind.BLANK

    def is_executable(self, line: int) -> bool:
        """Return True if the line holds an executable statement."""
        return line in self.executable

    def owner_of(self, line: int) -> str | None:
        """Return the id of the innermost block owning a line, if any."""
        return self.line_owner.get(line)

    def functions_at(self, line: int) -> tuple[FunctionSpan, ...]:
        """Return the functions whose header is on the given line."""
        return tuple(function for function in self.functions if function.start_line == line)

    def block(self, block_id: str) -> BlockSpan | None:
        """Look up a block by id."""
        for block in self.blocks:
            if block.block_id == block_id:
                return block
        return None


class BlockRange(Protocol):
    """Anything with a block id, a line range and a parent."""

    @property
    def block_id(self) -> str: ...

    @property
    def start_line(self) -> int: ...

    @property
    def end_line(self) -> int: ...

    @property
    def parent_id(self) -> str | None: ...


def paint_owners(blocks: Iterable[BlockRange]) -> dict[int, str]:
    """Assign every line inside a block body to its innermost block.

    A block's own header line belongs to the enclosing block, so each block
    paints ``start_line + 1 .. end_line``. Blocks are painted outermost first
    so nested blocks overwrite their parents.

    Args:
        blocks: Blocks of one file.

    Returns:
        Mapping of line number to the id of the block owning it.
    """
    by_id = {block.block_id: block for block in blocks}

    def depth(block: BlockRange) -> int:
        level = 0
        parent = block.parent_id
        while parent is not None and parent in by_id:
            level += 1
            parent = by_id[parent].parent_id
        return level

    owners: dict[int, str] = {}
    for block in sorted(by_id.values(), key=depth):
        for line in range(block.start_line + 1, block.end_line + 1):
            owners[line] = block.block_id
    return owners
