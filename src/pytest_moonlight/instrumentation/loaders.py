"""Lua loader hooks that route tracked files through the coverage session.

The hooks work as follows:

1. A searcher is inserted at position 2 of ``package.searchers``
   (``package.loaders`` on Lua 5.1), right after the preload searcher.
2. ``dofile`` and ``loadfile`` are wrapped.
3. For every file Lua is about to load, the Python ``provide`` callback is
   asked for its text. It answers ``(text, chunkname)`` for tracked files
   (instrumented text, or the original for files that fell back to the hook
   tracker) and nil for everything else.
4. Files that ``provide`` declines load exactly as they would without the
   hooks.

Chunk names are always ``'@' + absolute path``, so error messages and the
hook tracker see the same name for a file however it was reached.

Example:
    >>> register_lua_loaders(host, session.provide)
    >>> host.execute('require("calc")')  # loads the tracked text
    >>> unregister_lua_loaders(host)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
import weakref


if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_moonlight.runtime import LuaHost


logger = logging.getLogger(__name__)

LOADER_FACTORY = """
local searchers = package.searchers or package.loaders
local compile = loadstring or load
local original_dofile, original_loadfile = dofile, loadfile

local function search(name, path)
  if package.searchpath then
    return (package.searchpath(name, path))
  end
  local file_name = name:gsub('%.', '/')
  for template in path:gmatch('[^;]+') do
    local candidate = template:gsub('%?', file_name)
    local handle = io.open(candidate, 'r')
    if handle then
      handle:close()
      return candidate
    end
  end
  return nil
end

return function(provide)
  local function searcher(name)
    local file = search(name, package.path)
    if not file then
      return nil
    end
    local text, chunkname = provide(file)
    if not text then
      return nil
    end
    local chunk, message = compile(text, chunkname)
    if not chunk then
      error(message, 0)
    end
    return chunk, file
  end

  local function tracked_loadfile(file, ...)
    if file ~= nil then
      -- Instrumented text cannot see __moonlight through a custom environment.
      local custom_env = select('#', ...) >= 2
      local text, chunkname = provide(file, custom_env)
      if text then
        if custom_env then
          local mode, env = ...
          return load(text, chunkname, mode, env)
        end
        return compile(text, chunkname)
      end
    end
    return original_loadfile(file, ...)
  end

  local function tracked_dofile(file)
    if file ~= nil then
      local text, chunkname = provide(file)
      if text then
        local chunk = assert(compile(text, chunkname))
        return chunk()
      end
    end
    return original_dofile(file)
  end

  table.insert(searchers, 2, searcher)
  loadfile = tracked_loadfile
  dofile = tracked_dofile

  return function()
    for index = #searchers, 1, -1 do
      if searchers[index] == searcher then
        table.remove(searchers, index)
      end
    end
    if loadfile == tracked_loadfile then
      loadfile = original_loadfile
    end
    if dofile == tracked_dofile then
      dofile = original_dofile
    end
  end
end
"""

# Uninstall functions of the hooks registered on each host.
_registered: weakref.WeakKeyDictionary[LuaHost, Any] = weakref.WeakKeyDictionary()


def register_lua_loaders(host: LuaHost, provide: Callable[[str, bool], tuple[bytes, str] | None]) -> None:
    """Install the loader hooks on a Lua host.

    Any hooks previously registered on the same host are removed first.

    Args:
        host: The Lua runtime to hook.
        provide: Called with the path Lua is about to load and whether the
            chunk gets a custom environment, in which case the untracked
            text is wanted. Returns ``(text, chunkname)`` to load instead,
            or None to decline.
    """
    unregister_lua_loaders(host)
    factory = host.execute(LOADER_FACTORY)
    _registered[host] = factory(provide)
    logger.debug('Lua loader hooks registered')


def unregister_lua_loaders(host: LuaHost) -> None:
    """Remove the loader hooks from a Lua host.

    Safe to call even if no hooks are registered.
    """
    uninstall = _registered.pop(host, None)
    if uninstall is not None:
        uninstall()
        logger.debug('Lua loader hooks unregistered')
