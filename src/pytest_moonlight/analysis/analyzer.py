"""Static source analyzer for Lua files.

The analyzer walks the token stream produced by the lexer once and answers
three questions about every line without running the code:

1. Is it executable? Only lines that start a statement are. Comments, blank
   lines, string interiors, lines holding nothing but block keywords
   (``end``, ``else``, ``end)``) and lines that continue a statement begun on
   an earlier line are not. The runtime may still report a continuation
   line; it is attributed to the line its statement starts on.
2. Which block owns it? Blocks are tracked with a stack: ``if``, ``for``,
   ``while``, ``repeat``, ``do`` and ``function`` push, their closers pop.
   ``elseif`` and ``else`` close the current branch and open a sibling.
3. Where can a tracking call be injected without shifting line numbers?

Function definitions deserve a note. The line ``function M.add(a, b)`` runs
when the module is loaded, but what users want to know is whether ``M.add``
was ever called. Lines whose statement is a function definition are therefore
*entry lines*: they count as executed when the function is entered.

Example:
    >>> profile = analyze('local x = 1\\n--[[\\nx = 2\\n]]\\nprint(x)\\n')
    >>> sorted(profile.executable)
    [1, 5]
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from types import MappingProxyType

from pytest_moonlight.analysis.lexer import LexResult, Token, TokenKind, tokenize
from pytest_moonlight.analysis.profile import (
    BlockKind,
    BlockSpan,
    FileProfile,
    FunctionSpan,
    InjectionPoint,
    InjectionStyle,
    LineKind,
    paint_owners,
)
from pytest_moonlight.errors import AnalysisError


logger = logging.getLogger(__name__)

ANONYMOUS = '<anonymous>'

BINARY_OPERATORS = frozenset({
    '+',
    '-',
    '*',
    '/',
    '//',
    '%',
    '^',
    '..',
    '==',
    '~=',
    '<',
    '<=',
    '>',
    '>=',
    '&',
    '|',
    '~',
    '<<',
    '>>',
})

# A statement cannot end right after one of these tokens.
CONTINUES_AFTER_OPERATORS = BINARY_OPERATORS | {'=', ',', '(', '{', '[', '.', ':', '#'}
CONTINUES_AFTER_KEYWORDS = frozenset({
    'and',
    'or',
    'not',
    'local',
    'return',
    'in',
    'until',
    'elseif',
    'while',
    'if',
    'for',
    'function',
    'goto',
})

# A statement cannot begin with one of these tokens.
LEADING_CONTINUATION_OPERATORS = BINARY_OPERATORS | {'=', ',', ')', ']', '}', '{', '[', '.', ':', '#', '...'}
LEADING_CONTINUATION_KEYWORDS = frozenset({'and', 'or', 'not', 'true', 'false', 'nil', 'in'})

STATEMENT_KEYWORDS = frozenset({'local', 'function', 'return', 'break', 'goto', 'if', 'while', 'for', 'repeat', 'do'})
LEADING_RUN_KEYWORDS = frozenset({'end', 'else', 'then', 'do', 'repeat'})
CLOSERS = frozenset({')', ']', '}', ',', ';'})
BRACKET_PAIRS = {')': '(', ']': '[', '}': '{'}


@dataclass
class _OpenBlock:
    block_id: str
    kind: BlockKind
    start_line: int
    parent_id: str | None
    order: int
    body_entry: tuple[int, int] | None = None
    function_id: str | None = None
    function_name: str | None = None


@dataclass
class _Frame:
    """Per-function scanning context.

    Brackets opened outside a function body do not make the lines inside the
    body continuations, so every function body gets a fresh frame whose
    ``base`` remembers the bracket depth it started at.
    """

    base: int
    block: _OpenBlock | None = None
    pending: str | None = None
    awaiting_params: bool = False
    prev: Token | None = None
    statement: int | None = None


class SourceAnalyzer:
    """Builds a FileProfile from a lexed file.

    Instances are single use: create one per LexResult and call run().
    """

    def __init__(self, lexed: LexResult) -> None:
        self._lexed = lexed
        self._tokens = lexed.tokens
        self._line_tokens: dict[int, list[Token]] = {}
        for token in self._tokens:
            self._line_tokens.setdefault(token.line, []).append(token)

        self._kinds: dict[int, LineKind] = {}
        self._entry_lines: set[int] = set()
        self._injections: dict[int, InjectionPoint] = {}
        self._statement_starts: dict[int, int] = {}

        self._frames: list[_Frame] = [_Frame(base=0)]
        self._brackets: list[Token] = []
        self._stack: list[_OpenBlock] = []
        self._blocks: list[tuple[int, BlockSpan]] = []
        self._functions: list[FunctionSpan] = []
        self._ids: set[str] = set()
        self._order = 0

    @property
    def _frame(self) -> _Frame:
        return self._frames[-1]

    def run(self) -> FileProfile:
        """Analyze the token stream.

        Returns:
            The FileProfile for the file.

        Raises:
            AnalysisError: If the block or bracket structure is unbalanced.
        """
        current_line = 0
        for index, token in enumerate(self._tokens):
            if token.line != current_line:
                current_line = token.line
                self._classify_line(index)
            self._consume(index)

        if self._brackets:
            opener = self._brackets[-1]
            raise AnalysisError(opener.line, f"unclosed '{opener.value}'")
        if self._stack:
            block = self._stack[-1]
            closer = 'until' if block.kind is BlockKind.REPEAT else 'end'
            raise AnalysisError(block.start_line, f"'{closer}' expected to close '{block.kind.value}'")

        return self._build_profile()

    # -- line classification -------------------------------------------------

    def _classify_line(self, index: int) -> None:
        token = self._tokens[index]
        line = token.line
        on_line = self._line_tokens[line]

        if token.is_keyword('elseif', 'until'):
            self._mark_code(line, InjectionPoint(line, token.end_col, InjectionStyle.CONDITION))
            return

        if token.is_keyword(*LEADING_RUN_KEYWORDS) or token.is_op(';'):
            rest = list(on_line)
            while rest and (rest[0].is_keyword(*LEADING_RUN_KEYWORDS) or rest[0].is_op(';')):
                rest.pop(0)
            if not rest or all(item.is_op(*CLOSERS) for item in rest):
                self._kinds[line] = LineKind.STRUCTURE
            elif self._starts_statement(rest[0]):
                self._statement_line(self._tokens.index(rest[0], index))
            else:
                self._continuation_line(line)
            return

        if self._continues(token):
            self._continuation_line(line)
            return

        if len(on_line) == 3 and on_line[0].is_op('::') and on_line[2].is_op('::'):
            self._kinds[line] = LineKind.STRUCTURE
            return

        self._statement_line(index)

    def _continues(self, token: Token) -> bool:
        frame = self._frame
        if len(self._brackets) > frame.base or frame.awaiting_params or frame.pending is not None:
            return True
        if token.kind is TokenKind.STRING or token.kind is TokenKind.NUMBER:
            return True
        if token.is_op(*LEADING_CONTINUATION_OPERATORS) or token.is_keyword(*LEADING_CONTINUATION_KEYWORDS):
            return True
        prev = frame.prev
        if prev is None:
            return False
        if prev.is_op(*CONTINUES_AFTER_OPERATORS) or prev.is_keyword(*CONTINUES_AFTER_KEYWORDS):
            return True
        # Lua reads a parenthesis after an expression as a call, even across lines.
        return token.is_op('(') and _ends_expression(prev)

    def _starts_statement(self, token: Token) -> bool:
        if token.kind is TokenKind.NAME:
            return True
        return token.is_keyword(*STATEMENT_KEYWORDS) or token.is_op('(', '::', ';')

    def _statement_line(self, index: int) -> None:
        token = self._tokens[index]
        line = token.line
        if self._defines_function(index):
            self._kinds[line] = LineKind.CODE
            self._entry_lines.add(line)
            self._frame.statement = line
        elif token.is_keyword('while'):
            self._mark_code(line, InjectionPoint(line, token.end_col, InjectionStyle.CONDITION))
        else:
            self._mark_code(line, InjectionPoint(line, token.col, InjectionStyle.STATEMENT))

    def _continuation_line(self, line: int) -> None:
        if any(token.is_keyword('function') for token in self._line_tokens[line]):
            self._kinds[line] = LineKind.CODE
            self._entry_lines.add(line)
        else:
            self._kinds[line] = LineKind.CONTINUATION
            if self._frame.statement is not None:
                self._statement_starts[line] = self._frame.statement

    def _mark_code(self, line: int, point: InjectionPoint) -> None:
        self._kinds[line] = LineKind.CODE
        self._injections[line] = point
        self._frame.statement = line

    def _defines_function(self, index: int) -> bool:
        """Return True if the statement at index is a function definition.

        Recognized forms, with ``function`` on the same line as the statement:
        ``function a.b:c()``, ``local function f()``, ``local f = function()``
        and ``a.b = function()``.
        """
        tokens = self._tokens
        first = tokens[index]
        if first.is_keyword('function'):
            return True

        cursor = index + 1
        if first.is_keyword('local'):
            if cursor < len(tokens) and tokens[cursor].is_keyword('function'):
                return tokens[cursor].line == first.line
            while cursor < len(tokens) and tokens[cursor].kind is TokenKind.NAME:
                cursor += 1
                if cursor < len(tokens) and tokens[cursor].is_op('<'):
                    cursor += 3
                if cursor < len(tokens) and tokens[cursor].is_op(','):
                    cursor += 1
                    continue
                break
        elif first.kind is TokenKind.NAME:
            while cursor + 1 < len(tokens) and tokens[cursor].is_op('.') and tokens[cursor + 1].kind is TokenKind.NAME:
                cursor += 2
        else:
            return False

        return (
            cursor + 1 < len(tokens)
            and tokens[cursor].is_op('=')
            and tokens[cursor + 1].is_keyword('function')
            and tokens[cursor + 1].line == first.line
        )

    # -- structure -----------------------------------------------------------

    def _consume(self, index: int) -> None:
        token = self._tokens[index]
        frame = self._frame

        if token.kind is TokenKind.OP:
            if token.value in ('(', '[', '{'):
                self._brackets.append(token)
            elif token.value in BRACKET_PAIRS:
                self._close_bracket(token)
                if token.value == ')' and frame.awaiting_params and len(self._brackets) == frame.base:
                    frame.awaiting_params = False
                    if frame.block is not None:
                        frame.block.body_entry = (token.line, token.end_col)
                    frame.prev = None
                    return
        elif token.kind is TokenKind.KEYWORD:
            handler = getattr(self, f'_on_{token.value}', None)
            if handler is not None:
                handler(index)

        self._frame.prev = token

    def _close_bracket(self, token: Token) -> None:
        if len(self._brackets) <= self._frame.base:
            raise AnalysisError(token.line, f"unexpected '{token.value}'")
        opener = self._brackets.pop()
        if opener.value != BRACKET_PAIRS[token.value]:
            msg = f"'{token.value}' does not close '{opener.value}' opened on line {opener.line}"
            raise AnalysisError(token.line, msg)

    def _on_function(self, index: int) -> None:
        token = self._tokens[index]
        name = self._function_name(index)
        block = self._open(BlockKind.FUNCTION, token.line)
        block.function_id = self._unique(f'{name}@{token.line}' if name else f'anon@{token.line}')
        block.function_name = name or ANONYMOUS
        self._frames.append(_Frame(base=len(self._brackets), block=block, awaiting_params=True))

    def _on_if(self, index: int) -> None:
        self._open(BlockKind.IF, self._tokens[index].line)
        self._frame.pending = 'then'

    def _on_then(self, index: int) -> None:
        token = self._tokens[index]
        if self._frame.pending != 'then':
            raise AnalysisError(token.line, "unexpected 'then'")
        self._frame.pending = None
        self._stack[-1].body_entry = (token.line, token.end_col)

    def _on_elseif(self, index: int) -> None:
        token = self._tokens[index]
        closed = self._close_branch(token)
        self._open(BlockKind.ELSEIF, token.line, parent_id=closed.parent_id)
        self._frame.pending = 'then'

    def _on_else(self, index: int) -> None:
        token = self._tokens[index]
        closed = self._close_branch(token)
        block = self._open(BlockKind.ELSE, token.line, parent_id=closed.parent_id)
        block.body_entry = (token.line, token.end_col)

    def _on_while(self, index: int) -> None:
        self._open(BlockKind.WHILE, self._tokens[index].line)
        self._frame.pending = 'do'

    def _on_for(self, index: int) -> None:
        self._open(BlockKind.FOR, self._tokens[index].line)
        self._frame.pending = 'do'

    def _on_do(self, index: int) -> None:
        token = self._tokens[index]
        if self._frame.pending == 'do':
            self._frame.pending = None
            self._stack[-1].body_entry = (token.line, token.end_col)
            return
        if self._frame.pending is not None:
            raise AnalysisError(token.line, f"'{self._frame.pending}' expected near 'do'")
        block = self._open(BlockKind.DO, token.line)
        block.body_entry = (token.line, token.end_col)

    def _on_repeat(self, index: int) -> None:
        token = self._tokens[index]
        block = self._open(BlockKind.REPEAT, token.line)
        block.body_entry = (token.line, token.end_col)

    def _on_until(self, index: int) -> None:
        token = self._tokens[index]
        self._check_block_close(token)
        if not self._stack or self._stack[-1].kind is not BlockKind.REPEAT:
            raise AnalysisError(token.line, "'until' without 'repeat'")
        self._finish(self._stack.pop(), token.line)

    def _on_end(self, index: int) -> None:
        token = self._tokens[index]
        frame = self._frame
        self._check_block_close(token)
        if not self._stack:
            raise AnalysisError(token.line, "'end' without an open block")
        block = self._stack[-1]
        if block.kind is BlockKind.REPEAT:
            raise AnalysisError(token.line, "'until' expected to close 'repeat'")
        self._stack.pop()
        self._finish(block, token.line)
        if block.kind is BlockKind.FUNCTION and frame.block is block:
            self._frames.pop()

    def _check_block_close(self, token: Token) -> None:
        frame = self._frame
        if frame.awaiting_params:
            raise AnalysisError(token.line, "'(' expected after 'function'")
        if frame.pending is not None:
            raise AnalysisError(token.line, f"'{frame.pending}' expected near '{token.value}'")
        if len(self._brackets) > frame.base:
            opener = self._brackets[-1]
            raise AnalysisError(opener.line, f"unclosed '{opener.value}'")

    def _close_branch(self, token: Token) -> _OpenBlock:
        self._check_block_close(token)
        if not self._stack or self._stack[-1].kind not in (BlockKind.IF, BlockKind.ELSEIF):
            raise AnalysisError(token.line, f"'{token.value}' without 'if'")
        block = self._stack.pop()
        # The branch keyword line is the header of the next sibling, not part of this branch.
        self._finish(block, max(block.start_line, token.line - 1))
        return block

    def _open(self, kind: BlockKind, line: int, parent_id: str | None = None) -> _OpenBlock:
        if parent_id is None and kind not in (BlockKind.ELSEIF, BlockKind.ELSE) and self._stack:
            parent_id = self._stack[-1].block_id
        block = _OpenBlock(
            block_id=self._unique(f'{kind.value}@{line}'),
            kind=kind,
            start_line=line,
            parent_id=parent_id,
            order=self._order,
        )
        self._order += 1
        self._stack.append(block)
        return block

    def _finish(self, block: _OpenBlock, end_line: int) -> None:
        span = BlockSpan(
            block_id=block.block_id,
            kind=block.kind,
            start_line=block.start_line,
            end_line=end_line,
            parent_id=block.parent_id,
            body_entry=block.body_entry,
        )
        self._blocks.append((block.order, span))
        if block.kind is BlockKind.FUNCTION and block.function_id is not None and block.body_entry is not None:
            self._functions.append(
                FunctionSpan(
                    function_id=block.function_id,
                    name=block.function_name or ANONYMOUS,
                    start_line=block.start_line,
                    end_line=end_line,
                    block_id=block.block_id,
                    body_entry=block.body_entry,
                )
            )

    def _unique(self, candidate: str) -> str:
        if candidate not in self._ids:
            self._ids.add(candidate)
            return candidate
        suffix = 2
        while f'{candidate}#{suffix}' in self._ids:
            suffix += 1
        unique = f'{candidate}#{suffix}'
        self._ids.add(unique)
        return unique

    def _function_name(self, index: int) -> str | None:
        tokens = self._tokens
        prev = self._frame.prev
        cursor = index + 1

        if prev is not None and prev.is_keyword('local'):
            if cursor < len(tokens) and tokens[cursor].kind is TokenKind.NAME:
                return tokens[cursor].value
            return None

        if cursor < len(tokens) and tokens[cursor].kind is TokenKind.NAME:
            parts = [tokens[cursor].value]
            cursor += 1
            while (
                cursor + 1 < len(tokens)
                and tokens[cursor].is_op('.', ':')
                and tokens[cursor + 1].kind is TokenKind.NAME
            ):
                parts.append(tokens[cursor].value + tokens[cursor + 1].value)
                cursor += 2
            return ''.join(parts)

        # Assigned function expression: `name = function` or `a.b = function`.
        if prev is not None and prev.is_op('=') and index >= 2 and tokens[index - 2].kind is TokenKind.NAME:
            cursor = index - 2
            parts = [tokens[cursor].value]
            while cursor >= 2 and tokens[cursor - 1].is_op('.', ':') and tokens[cursor - 2].kind is TokenKind.NAME:
                parts.insert(0, tokens[cursor - 2].value + tokens[cursor - 1].value)
                cursor -= 2
            return ''.join(parts)

        return None

    # -- assembly ------------------------------------------------------------

    def _build_profile(self) -> FileProfile:
        line_count = len(self._lexed.lines)
        kinds: list[LineKind] = []
        for line in range(1, line_count + 1):
            if line in self._kinds:
                kinds.append(self._kinds[line])
            elif line in self._lexed.string_lines:
                kinds.append(LineKind.STRING)
            elif line in self._lexed.comment_lines:
                kinds.append(LineKind.COMMENT)
            else:
                kinds.append(LineKind.BLANK)

        blocks = tuple(span for _, span in sorted(self._blocks, key=lambda item: item[0]))
        functions = tuple(sorted(self._functions, key=lambda function: (function.start_line, function.body_entry)))
        executable = frozenset(line for line, kind in enumerate(kinds, start=1) if kind is LineKind.CODE)

        return FileProfile(
            line_kinds=tuple(kinds),
            executable=executable,
            entry_lines=frozenset(self._entry_lines),
            functions=functions,
            blocks=blocks,
            line_owner=MappingProxyType(paint_owners(blocks)),
            injections=MappingProxyType({line: point for line, point in self._injections.items() if line in executable}),
            statement_starts=MappingProxyType({
                line: start for line, start in self._statement_starts.items() if start in executable
            }),
        )


def _ends_expression(token: Token) -> bool:
    if token.kind in (TokenKind.NAME, TokenKind.NUMBER, TokenKind.STRING):
        return True
    return token.is_op(')', ']', '}', '...') or token.is_keyword('true', 'false', 'nil')


def analyze(source: str) -> FileProfile | AnalysisError:
    """Classify the lines of a Lua source file and build its block tree.

    Never raises for bad input: lexical and structural problems are returned
    as an AnalysisError carrying the offending line.

    Args:
        source: Raw source text.

    Returns:
        The FileProfile, or an AnalysisError.
    """
    try:
        return SourceAnalyzer(tokenize(source)).run()
    except AnalysisError as error:
        logger.debug('Analysis failed at line %d: %s', error.line, error.message)
        return error
