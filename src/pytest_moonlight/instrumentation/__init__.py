"""Instrumentation module for source-rewriting coverage.

This module contains the components that rewrite Lua sources so they report
their own execution, and the loader hooks that make Lua load the rewritten
text instead of the file on disk.

Every statement line gets a call to a line function, every function body a
call to an entry function, and (optionally) every block body a call to a
block function. The rewrite never adds or removes lines, so line numbers in
error messages stay valid.

Example usage:
    >>> result = instrument('/src/calc.lua', 'local x = 1\\nreturn x\\n')
    >>> result.source_map.is_identity
    True
"""

from __future__ import annotations

from pytest_moonlight.instrumentation.loaders import register_lua_loaders, unregister_lua_loaders
from pytest_moonlight.instrumentation.sourcemap import SourceMap
from pytest_moonlight.instrumentation.tracker import InstrumentationTracker
from pytest_moonlight.instrumentation.transformer import InstrumentedSource, instrument, lua_quote


__all__ = [
    'InstrumentationTracker',
    'InstrumentedSource',
    'SourceMap',
    'instrument',
    'lua_quote',
    'register_lua_loaders',
    'unregister_lua_loaders',
]
