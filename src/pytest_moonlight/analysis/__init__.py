"""Static analysis of Lua source.

The analyzer decides which lines can execute and builds the block and
function tree used for finer-than-line coverage, without running the code.

Exports:
    analyze: Classify lines and build the block tree for one file.
    FileProfile: The result of a successful analysis.
    tokenize: The comment and string aware tokenizer underneath.
"""

from __future__ import annotations

from pytest_moonlight.analysis.analyzer import analyze
from pytest_moonlight.analysis.lexer import tokenize
from pytest_moonlight.analysis.profile import (
    BlockKind,
    BlockSpan,
    FileProfile,
    FunctionSpan,
    InjectionPoint,
    InjectionStyle,
    LineKind,
)


__all__ = [
    'BlockKind',
    'BlockSpan',
    'FileProfile',
    'FunctionSpan',
    'InjectionPoint',
    'InjectionStyle',
    'LineKind',
    'analyze',
    'tokenize',
]
