"""Comment and string aware tokenizer for Lua source.

The lexer is a single forward scan driven by a small state machine. The
state survives line breaks, which is what lets multi-line comments and long
strings be classified correctly:

    NORMAL             tokens are being produced
    IN_LONG_COMMENT    inside --[==[ ... ]==], waiting for a closer of the same level
    IN_LONG_STRING     inside [==[ ... ]==], waiting for a closer of the same level
    IN_LINE_COMMENT    inside -- ..., ends with the line
    IN_SHORT_STRING    inside '...' or "..." continued with a backslash-newline

The level of a long bracket is the number of ``=`` signs between the
brackets. A closer only matches an opener of the same level, so ``]]`` inside
a ``--[=[`` comment does not end it.

Example:
    >>> result = tokenize('local x = 1 --[[ note ]] + 2')
    >>> [token.value for token in result.tokens]
    ['local', 'x', '=', '1', '+', '2']
    >>> sorted(result.comment_lines)
    [1]
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re

from pytest_moonlight.errors import AnalysisError


KEYWORDS = frozenset({
    'and',
    'break',
    'do',
    'else',
    'elseif',
    'end',
    'false',
    'for',
    'function',
    'goto',
    'if',
    'in',
    'local',
    'nil',
    'not',
    'or',
    'repeat',
    'return',
    'then',
    'true',
    'until',
    'while',
})

# Longest operators first so that '...' wins over '..' and '.'.
OPERATORS = (
    '...',
    '..',
    '==',
    '~=',
    '<=',
    '>=',
    '<<',
    '>>',
    '//',
    '::',
    '+',
    '-',
    '*',
    '/',
    '%',
    '^',
    '#',
    '&',
    '~',
    '|',
    '<',
    '>',
    '=',
    '(',
    ')',
    '{',
    '}',
    '[',
    ']',
    ';',
    ':',
    ',',
    '.',
)

_NAME = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_NUMBER = re.compile(
    r'0[xX](?:[0-9a-fA-F]*\.?[0-9a-fA-F]*)(?:[pP][+-]?\d+)?'
    r'|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?'
)
_WHITESPACE = ' \t\f\v'


class LexState(Enum):
    """States of the scanning state machine."""

    NORMAL = 'normal'
    IN_LONG_COMMENT = 'in_long_comment'
    IN_LONG_STRING = 'in_long_string'
    IN_LINE_COMMENT = 'in_line_comment'
    IN_SHORT_STRING = 'in_short_string'


class TokenKind(Enum):
    """Lexical category of a token."""

    NAME = 'name'
    KEYWORD = 'keyword'
    NUMBER = 'number'
    STRING = 'string'
    OP = 'op'


@dataclass(frozen=True)
class Token:
    """A single Lua token.

    Attributes:
        kind: Lexical category.
        value: Token text. Strings keep their quotes or brackets.
        line: 1-indexed line where the token starts.
        col: 0-indexed column where the token starts.
        end_line: Line where the token ends (differs from line for long strings).
        end_col: Column just past the last character of the token on end_line.
    """

    kind: TokenKind
    value: str
    line: int
    col: int
    end_line: int
    end_col: int

    def is_keyword(self, *values: str) -> bool:
        """Return True if this token is one of the given keywords."""
        return self.kind is TokenKind.KEYWORD and self.value in values

    def is_op(self, *values: str) -> bool:
        """Return True if this token is one of the given operators."""
        return self.kind is TokenKind.OP and self.value in values


@dataclass(frozen=True)
class LexResult:
    """Output of a full tokenizer pass.

    Attributes:
        lines: The source split into physical lines (1-indexed via line - 1).
        tokens: Every token outside comments, in source order.
        comment_lines: Lines that hold any part of a comment.
        string_lines: Lines after the first line of a string that spans lines.
    """

    lines: tuple[str, ...]
    tokens: tuple[Token, ...]
    comment_lines: frozenset[int]
    string_lines: frozenset[int]


def split_lines(source: str) -> tuple[str, ...]:
    """Split source into physical lines the way the Lua lexer counts them.

    ``\\r\\n`` and a lone ``\\r`` both count as one line break. A trailing
    line break does not open an extra empty line.

    Args:
        source: Raw source text.

    Returns:
        Tuple of lines without their terminators.
    """
    text = source.replace('\r\n', '\n').replace('\r', '\n')
    if not text:
        return ()
    lines = text.split('\n')
    if text.endswith('\n'):
        lines.pop()
    return tuple(lines)


def long_bracket_level(line: str, col: int) -> int:
    """Return the level of a long bracket opening at ``line[col]``.

    Args:
        line: The line being scanned.
        col: Column of a ``[`` character.

    Returns:
        The number of ``=`` signs for a valid opener, -1 if this is a plain
        ``[``, or -2 for ``[=`` that is not followed by a second ``[``.
    """
    cursor = col + 1
    while cursor < len(line) and line[cursor] == '=':
        cursor += 1
    if cursor < len(line) and line[cursor] == '[':
        return cursor - col - 1
    if cursor == col + 1:
        return -1
    return -2


class LuaLexer:
    """Tokenizer that keeps its state machine across line boundaries."""

    def __init__(self, source: str) -> None:
        self._lines = split_lines(source)
        self._tokens: list[Token] = []
        self._comment_lines: set[int] = set()
        self._string_lines: set[int] = set()
        self._state = LexState.NORMAL
        self._level = 0
        self._open_line = 0
        self._open_col = 0
        self._pieces: list[str] = []
        self._quote = ''
        self._skip_whitespace = False

    @property
    def state(self) -> LexState:
        """Return the current scanning state."""
        return self._state

    def run(self) -> LexResult:
        """Scan the whole source.

        Returns:
            The tokens and per-line comment/string information.

        Raises:
            AnalysisError: On lexical errors or unterminated constructs.
        """
        for number, line in enumerate(self._lines, start=1):
            self._scan_line(number, line)

        if self._state is LexState.IN_LONG_COMMENT:
            raise AnalysisError(self._open_line, 'unfinished long comment')
        if self._state is LexState.IN_LONG_STRING:
            raise AnalysisError(self._open_line, 'unfinished long string')
        if self._state is LexState.IN_SHORT_STRING:
            raise AnalysisError(self._open_line, 'unfinished string')

        return LexResult(
            lines=self._lines,
            tokens=tuple(self._tokens),
            comment_lines=frozenset(self._comment_lines),
            string_lines=frozenset(self._string_lines),
        )

    def _scan_line(self, number: int, line: str) -> None:
        if number == 1 and line.startswith('#'):
            # Shebang line, skipped by the Lua loader.
            self._comment_lines.add(number)
            return

        if self._state is LexState.IN_LINE_COMMENT:
            self._state = LexState.NORMAL

        col = 0
        if self._state in (LexState.IN_LONG_COMMENT, LexState.IN_LONG_STRING):
            col = self._continue_long(number, line)
        elif self._state is LexState.IN_SHORT_STRING:
            self._string_lines.add(number)
            col = self._continue_short(number, line)
        if col < 0:
            return

        length = len(line)
        while col < length:
            char = line[col]
            if char in _WHITESPACE:
                col += 1
            elif line.startswith('--', col):
                col = self._comment(number, line, col)
            elif char == '[':
                col = self._bracket(number, line, col)
            elif char in '\'"':
                col = self._open_short(number, line, col)
            elif char.isdigit() or (char == '.' and line[col + 1 : col + 2].isdigit()):
                col = self._number(number, line, col)
            elif char.isalpha() or char == '_':
                col = self._name(number, line, col)
            else:
                col = self._operator(number, line, col)

    def _comment(self, number: int, line: str, col: int) -> int:
        self._comment_lines.add(number)
        if line.startswith('[', col + 2):
            level = long_bracket_level(line, col + 2)
            if level >= 0:
                self._state = LexState.IN_LONG_COMMENT
                return self._open_long(number, line, col, level, prefix=2)
        self._state = LexState.IN_LINE_COMMENT
        return len(line)

    def _bracket(self, number: int, line: str, col: int) -> int:
        level = long_bracket_level(line, col)
        if level == -2:
            raise AnalysisError(number, 'invalid long string delimiter')
        if level < 0:
            self._emit(TokenKind.OP, '[', number, col, number, col + 1)
            return col + 1
        self._state = LexState.IN_LONG_STRING
        return self._open_long(number, line, col, level)

    def _open_long(self, number: int, line: str, col: int, level: int, prefix: int = 0) -> int:
        self._level = level
        self._open_line = number
        self._open_col = col
        body_start = col + prefix + level + 2
        closer = ']' + '=' * level + ']'
        end = line.find(closer, body_start)
        if end >= 0:
            stop = end + len(closer)
            if self._state is LexState.IN_LONG_STRING:
                self._emit(TokenKind.STRING, line[col:stop], number, col, number, stop)
            self._state = LexState.NORMAL
            return stop
        self._pieces = [line[col:]]
        return len(line)

    def _continue_long(self, number: int, line: str) -> int:
        if self._state is LexState.IN_LONG_COMMENT:
            self._comment_lines.add(number)
        else:
            self._string_lines.add(number)
        closer = ']' + '=' * self._level + ']'
        end = line.find(closer)
        if end < 0:
            self._pieces.append(line)
            return -1
        stop = end + len(closer)
        if self._state is LexState.IN_LONG_STRING:
            self._pieces.append(line[:stop])
            self._emit(
                TokenKind.STRING,
                '\n'.join(self._pieces),
                self._open_line,
                self._open_col,
                number,
                stop,
            )
        self._pieces = []
        self._state = LexState.NORMAL
        return stop

    def _open_short(self, number: int, line: str, col: int) -> int:
        self._quote = line[col]
        self._open_line = number
        self._open_col = col
        self._pieces = []
        self._skip_whitespace = False
        return self._short_body(number, line, col, col + 1)

    def _continue_short(self, number: int, line: str) -> int:
        cursor = 0
        if self._skip_whitespace:
            while cursor < len(line) and line[cursor] in _WHITESPACE:
                cursor += 1
            if cursor == len(line):
                return -1
            self._skip_whitespace = False
        self._state = LexState.NORMAL
        stop = self._short_body(number, line, 0, cursor)
        return -1 if self._state is LexState.IN_SHORT_STRING else stop

    def _short_body(self, number: int, line: str, start: int, cursor: int) -> int:
        length = len(line)
        while cursor < length:
            char = line[cursor]
            if char == '\\':
                if cursor + 1 == length:
                    # Escaped newline: the string continues on the next line.
                    self._pieces.append(line[start:])
                    self._state = LexState.IN_SHORT_STRING
                    return length
                if line[cursor + 1] == 'z':
                    cursor += 2
                    while cursor < length and line[cursor] in _WHITESPACE:
                        cursor += 1
                    if cursor == length:
                        self._pieces.append(line[start:])
                        self._skip_whitespace = True
                        self._state = LexState.IN_SHORT_STRING
                        return length
                    continue
                cursor += 2
                continue
            if char == self._quote:
                stop = cursor + 1
                self._pieces.append(line[start:stop])
                self._emit(
                    TokenKind.STRING,
                    '\n'.join(self._pieces),
                    self._open_line,
                    self._open_col,
                    number,
                    stop,
                )
                self._pieces = []
                return stop
            cursor += 1
        raise AnalysisError(number, 'unfinished string')

    def _number(self, number: int, line: str, col: int) -> int:
        match = _NUMBER.match(line, col)
        if match is None or match.end() == col:  # pragma: no cover - guarded by caller
            raise AnalysisError(number, 'malformed number')
        stop = match.end()
        if stop < len(line) and (line[stop].isalnum() or line[stop] == '_'):
            raise AnalysisError(number, f'malformed number near {line[col : stop + 1]!r}')
        self._emit(TokenKind.NUMBER, match.group(), number, col, number, stop)
        return stop

    def _name(self, number: int, line: str, col: int) -> int:
        match = _NAME.match(line, col)
        if match is None:
            raise AnalysisError(number, f'unexpected symbol {line[col]!r}')
        value = match.group()
        kind = TokenKind.KEYWORD if value in KEYWORDS else TokenKind.NAME
        self._emit(kind, value, number, col, number, match.end())
        return match.end()

    def _operator(self, number: int, line: str, col: int) -> int:
        for operator in OPERATORS:
            if line.startswith(operator, col):
                stop = col + len(operator)
                self._emit(TokenKind.OP, operator, number, col, number, stop)
                return stop
        msg = f'unexpected symbol {line[col]!r}'
        raise AnalysisError(number, msg)

    def _emit(self, kind: TokenKind, value: str, line: int, col: int, end_line: int, end_col: int) -> None:
        self._tokens.append(Token(kind, value, line, col, end_line, end_col))


def tokenize(source: str) -> LexResult:
    """Tokenize Lua source text.

    Args:
        source: Raw source text.

    Returns:
        LexResult with tokens and comment/string line sets.

    Raises:
        AnalysisError: On lexical errors.
    """
    return LuaLexer(source).run()
