"""Same-line source instrumentation.

Every tracking call is fused onto the line it reports, so instrumented text
has exactly as many lines as the original and stack traces keep pointing at
the right place. A rewritten file looks like this::

    local __ml_l, __ml_e, __ml_b, __ml_c = __moonlight("/src/m.lua"); __ml_l(1); local M = {}
    function M.add(a, b) __ml_e(2, "M.add@2"); __ml_l(3); return a + b
    end
    __ml_l(5); while __ml_c(5) and running do
    ...

- ``__ml_l(n)`` is a statement placed before the statement starting line n.
- ``__ml_c(n) and`` prefixes ``elseif``, ``while`` and ``until`` conditions.
  The call returns true, so the condition's value is unchanged.
- ``__ml_e(line, id)`` runs first thing in a function body.
- ``__ml_b(id)`` runs first thing in a block body, when block tracking is on.

The four locals are bound once per chunk by calling the global
``__moonlight`` with the file's path.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING

from pytest_moonlight.analysis.analyzer import analyze
from pytest_moonlight.analysis.lexer import split_lines
from pytest_moonlight.analysis.profile import InjectionStyle
from pytest_moonlight.errors import AnalysisError, InstrumentationError
from pytest_moonlight.instrumentation.sourcemap import SourceMap


if TYPE_CHECKING:
    from pytest_moonlight.analysis.profile import FileProfile


logger = logging.getLogger(__name__)

BINDER = '__moonlight'
HEADER = 'local __ml_l, __ml_e, __ml_b, __ml_c = ' + BINDER + '({path}); '

_ESCAPES = {
    '\\': '\\\\',
    '"': '\\"',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
    '\0': '\\0',
}


def lua_quote(value: str) -> str:
    """Return a double-quoted Lua string literal holding value."""
    parts = []
    for char in value:
        if char in _ESCAPES:
            parts.append(_ESCAPES[char])
        elif ord(char) < 32 or ord(char) == 127:  # noqa: PLR2004
            parts.append(f'\\{ord(char):03d}')
        else:
            parts.append(char)
    return '"' + ''.join(parts) + '"'


def loadable_lines(source: str) -> list[str]:
    """Split source into lines that ``load`` accepts.

    Lua only skips a leading ``#`` line when it reads a file itself; chunks
    compiled from strings need the line commented out.
    """
    lines = list(split_lines(source))
    if lines and lines[0].startswith('#'):
        lines[0] = '--' + lines[0]
    return lines


def loadable_text(source: str) -> str:
    """Return source with a leading ``#`` line commented out."""
    return '\n'.join(loadable_lines(source)) + '\n'


@dataclass(frozen=True)
class InstrumentedSource:
    """Result of rewriting one file.

    Attributes:
        path: Normalized path of the original file.
        text: The rewritten source.
        source_map: Instrumented-to-original line mapping.
    """

    path: str
    text: str
    source_map: SourceMap


class _Insertions:
    """Collects text to insert, grouped by line and column.

    Texts at the same position are inserted in the order they were added.
    """

    def __init__(self) -> None:
        self._by_line: dict[int, dict[int, list[str]]] = defaultdict(lambda: defaultdict(list))

    def add(self, line: int, column: int, text: str) -> None:
        self._by_line[line][column].append(text)

    def apply(self, lines: list[str]) -> list[str]:
        result = list(lines)
        for line, columns in self._by_line.items():
            if not 1 <= line <= len(result):
                msg = f'insertion on line {line} is outside the file'
                raise ValueError(msg)
            text = result[line - 1]
            for column in sorted(columns, reverse=True):
                if column > len(text):
                    msg = f'insertion at {line}:{column} is past the end of the line'
                    raise ValueError(msg)
                text = text[:column] + ''.join(columns[column]) + text[column:]
            result[line - 1] = text
        return result


def instrument(
    path: str,
    source: str,
    profile: FileProfile | None = None,
    *,
    track_blocks: bool = False,
) -> InstrumentedSource:
    """Rewrite a Lua file so that it reports its own execution.

    Args:
        path: Normalized path of the file, passed to ``__moonlight``.
        source: Original source text.
        profile: Analyzer output for ``source``; computed if omitted.
        track_blocks: Also inject a call at the start of every block body.

    Returns:
        The instrumented text and its source map.

    Raises:
        InstrumentationError: If the source cannot be analyzed or a tracking
            call cannot be placed.
    """
    if profile is None:
        analyzed = analyze(source)
        if isinstance(analyzed, AnalysisError):
            raise InstrumentationError(path, f'cannot analyze source: {analyzed}')
        profile = analyzed

    lines = loadable_lines(source)
    if len(lines) != profile.line_count:
        raise InstrumentationError(path, 'profile does not match the source')
    if not lines:
        # An empty file still needs a line for the header.
        lines = ['']

    insertions = _Insertions()
    insertions.add(1, 0, HEADER.format(path=lua_quote(path)))

    if track_blocks:
        for block in profile.blocks:
            if block.body_entry is None:
                continue
            line, column = block.body_entry
            for function in profile.functions:
                if function.block_id == block.block_id:
                    insertions.add(line, column, f' __ml_e({function.start_line}, {lua_quote(function.function_id)});')
            insertions.add(line, column, f' __ml_b({lua_quote(block.block_id)});')
    else:
        for function in profile.functions:
            if function.body_entry is not None:
                line, column = function.body_entry
                insertions.add(line, column, f' __ml_e({function.start_line}, {lua_quote(function.function_id)});')

    for line, point in sorted(profile.injections.items()):
        if point.style is InjectionStyle.CONDITION:
            insertions.add(point.line, point.column, f' __ml_c({line}) and')
        else:
            insertions.add(point.line, point.column, f'__ml_l({line}); ')

    try:
        rewritten = insertions.apply(lines)
    except ValueError as error:
        raise InstrumentationError(path, str(error)) from error

    logger.debug('Instrumented %s: %d tracking points', path, len(profile.injections))
    return InstrumentedSource(path=path, text='\n'.join(rewritten) + '\n', source_map=SourceMap.identity())
