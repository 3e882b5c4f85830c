"""Tests for the Lua tokenizer.

The lexer is a state machine that survives line boundaries, which is what
lets the analyzer tell comment and string interiors apart from code.
"""

import pytest

from pytest_moonlight.analysis.lexer import TokenKind, long_bracket_level, split_lines, tokenize
from pytest_moonlight.errors import AnalysisError


@pytest.mark.small
class TestSplitLines:
    """Tests for split_lines."""

    def test_trailing_newline_does_not_open_a_line(self):
        """A final line break does not count as an extra empty line."""
        assert split_lines('a\nb\n') == ('a', 'b')

    def test_crlf_and_cr_count_as_one_break(self):
        """Windows and old Mac line endings are single breaks."""
        assert split_lines('a\r\nb\rc') == ('a', 'b', 'c')

    def test_empty_source_has_no_lines(self):
        """Empty text has zero lines."""
        assert split_lines('') == ()


@pytest.mark.small
class TestLongBracketLevel:
    """Tests for long bracket detection."""

    @pytest.mark.parametrize(
        ('line', 'expected'),
        [
            ('[[', 0),
            ('[==[', 2),
            ('[x', -1),
            ('[=x', -2),
        ],
    )
    def test_levels(self, line, expected):
        """Levels count the equals signs between the brackets."""
        assert long_bracket_level(line, 0) == expected


@pytest.mark.small
class TestTokenize:
    """Tests for tokenize."""

    def test_keywords_and_names_are_distinct(self):
        """Reserved words become KEYWORD tokens, identifiers NAME tokens."""
        result = tokenize('local value = nil')

        kinds = [token.kind for token in result.tokens]
        assert kinds == [TokenKind.KEYWORD, TokenKind.NAME, TokenKind.OP, TokenKind.KEYWORD]

    def test_comment_text_produces_no_tokens(self):
        """Nothing inside a line comment is tokenized."""
        result = tokenize('x = 1 -- if then end\n')

        assert [token.value for token in result.tokens] == ['x', '=', '1']
        assert result.comment_lines == frozenset({1})

    def test_long_comment_marks_every_line(self):
        """Each line a long comment touches is a comment line."""
        result = tokenize('--[[\nx = 2\n]]\n')

        assert result.tokens == ()
        assert result.comment_lines == frozenset({1, 2, 3})

    def test_inner_closer_of_lower_level_does_not_end_comment(self):
        """A level-1 long comment ignores ``]]`` and ends only at ``]=]``."""
        result = tokenize('--[=[\na ]] b\n]=]\nreturn 1\n')

        assert [token.value for token in result.tokens] == ['return', '1']
        assert result.tokens[0].line == 4

    def test_long_string_is_one_token(self):
        """A multi-line long string is a single STRING token."""
        result = tokenize('local s = [[\nfirst\nsecond]]\n')

        strings = [token for token in result.tokens if token.kind is TokenKind.STRING]
        assert len(strings) == 1
        assert strings[0].line == 1
        assert strings[0].end_line == 3
        assert result.string_lines == frozenset({2, 3})

    def test_escaped_newline_continues_short_string(self):
        """A backslash at end of line carries a quoted string to the next line."""
        result = tokenize('local s = "a\\\nb"\nreturn s\n')

        assert result.string_lines == frozenset({2})
        assert [token.value for token in result.tokens][-2:] == ['return', 's']

    def test_shebang_line_is_skipped(self):
        """A leading ``#`` line is treated as a comment."""
        result = tokenize('#!/usr/bin/env lua\nprint(1)\n')

        assert result.comment_lines == frozenset({1})
        assert result.tokens[0].line == 2

    def test_operators_match_longest_first(self):
        """Multi-character operators are not split."""
        result = tokenize('a = b .. c ~= d // 2')

        assert [token.value for token in result.tokens if token.kind is TokenKind.OP] == ['=', '..', '~=', '//']

    @pytest.mark.parametrize(
        ('source', 'line', 'message'),
        [
            ('local s = "abc\n', 1, 'unfinished string'),
            ('x = 1\n--[[ open\n', 2, 'unfinished long comment'),
            ('x = [==[ open\n]]\n', 1, 'unfinished long string'),
            ('x = 1\ny = [=x\n', 2, 'invalid long string delimiter'),
        ],
    )
    def test_lexical_errors_carry_line(self, source, line, message):
        """Lexical errors raise AnalysisError with the offending line."""
        with pytest.raises(AnalysisError) as excinfo:
            tokenize(source)

        assert excinfo.value.line == line
        assert excinfo.value.message == message
