"""Embedded Lua runtime.

LuaHost owns the lupa LuaRuntime that tests run their Lua code in. Both
trackers attach to the same host: the hook tracker through the ``debug``
library, the instrumentation tracker through the loaders it installs.

The helpers here paper over the differences between Lua 5.1 (``loadstring``,
``package.loaders``) and later versions (``load``, ``package.searchers``).
"""

from __future__ import annotations

import logging
from typing import Any

from lupa import LuaError, LuaRuntime


logger = logging.getLogger(__name__)

# Compiles a chunk without running it. Always returns two values: ok, message.
COMPILE_CHUNK = """
local compile = loadstring or load
return function(text, chunkname)
  local chunk, message = compile(text, chunkname)
  if chunk then
    return true, false
  end
  return false, tostring(message)
end
"""


class LuaHost:
    """A Lua interpreter shared by the code under test and the trackers.

    Example:
        >>> host = LuaHost()
        >>> host.execute('answer = 6 * 7')
        >>> host.globals().answer
        42
    """

    def __init__(self, runtime: LuaRuntime | None = None) -> None:
        """Initialize the host.

        Args:
            runtime: An existing runtime to adopt. A new one is created if omitted.
        """
        self.lua = runtime if runtime is not None else LuaRuntime(unpack_returned_tuples=True)
        self._compile = self.lua.execute(COMPILE_CHUNK)
        logger.debug('Started embedded %s', self.version)

    @property
    def version(self) -> str:
        """Return the Lua version string, e.g. ``'Lua 5.4'``."""
        return str(self.globals()._VERSION)  # noqa: SLF001

    def globals(self) -> Any:
        """Return the table of Lua globals."""
        return self.lua.globals()

    def execute(self, code: str) -> Any:
        """Run a chunk of Lua code and return its results."""
        return self.lua.execute(code)

    def eval(self, expression: str) -> Any:
        """Evaluate a Lua expression and return its value."""
        return self.lua.eval(expression)

    def table(self, *items: Any, **fields: Any) -> Any:
        """Create a Lua table from positional items and keyword fields."""
        return self.lua.table(*items, **fields)

    def table_from(self, mapping: dict[Any, Any]) -> Any:
        """Create a Lua table holding the items of a Python mapping."""
        return self.lua.table_from(mapping)

    def has_debug_hooks(self) -> bool:
        """Return True if ``debug.sethook`` is available."""
        debug = self.globals().debug
        return debug is not None and debug.sethook is not None and debug.getinfo is not None

    def compile_error(self, text: str | bytes, chunkname: str) -> str | None:
        """Compile a chunk without running it.

        Args:
            text: Lua source, as text or as raw bytes.
            chunkname: Chunk name used in error messages, e.g. ``'@/src/m.lua'``.

        Returns:
            None if the chunk compiles, otherwise Lua's error message.
        """
        try:
            ok, message = self._compile(text, chunkname)
        except LuaError as error:
            return str(error)
        return None if ok else str(message)
