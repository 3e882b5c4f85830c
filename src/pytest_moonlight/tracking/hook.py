"""Coverage through the Lua debug hook.

The hook tracker installs ``debug.sethook`` with line and call masks. Every
event is first filtered in Lua: the chunk's source is resolved once through
Python and the answer is cached, so events from untracked chunks never
cross the language boundary.

Line events on *entry lines* (lines holding a named function definition) are
dropped; those lines are recorded from call events instead, which carry the
``linedefined`` of the function being entered.

Lua hooks are per thread. Coroutines created while the tracker is active get
the hook through wrapped ``coroutine.create`` and ``coroutine.wrap``;
coroutines created any other way can be handed to ``start()``.

Coverage from this tracker is a lower bound: the runtime may skip line events
(for example in JIT-compiled traces), and missed events are never guessed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from lupa import LuaError

from pytest_moonlight.errors import HookInstallError
from pytest_moonlight.model.store import normalize_path


if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_moonlight.model.store import CoverageStore
    from pytest_moonlight.runtime import LuaHost


logger = logging.getLogger(__name__)

HOOK_FACTORY = """
local sethook, getinfo = debug.sethook, debug.getinfo
local create, wrap, resume = coroutine.create, coroutine.wrap, coroutine.resume

return function(resolve, entry_lines_of, on_line, on_call)
  local decisions = {}
  local skipped = {}
  local hooked = setmetatable({}, {__mode = 'k'})

  local function lookup(source)
    local path = decisions[source]
    if path == nil then
      path = resolve(source)
      decisions[source] = path
      if path then
        skipped[path] = entry_lines_of(path)
      end
    end
    return path
  end

  local function hook(event, line)
    local info = getinfo(2, 'S')
    if info == nil then
      return
    end
    local path = lookup(info.source)
    if not path then
      return
    end
    if event == 'line' then
      if not skipped[path][line] then
        on_line(path, line)
      end
    elseif info.linedefined > 0 then
      on_call(path, info.linedefined, info.lastlinedefined)
    end
  end

  local function attach(co)
    if co == nil then
      sethook(hook, 'cl')
    elseif not hooked[co] then
      sethook(co, hook, 'cl')
      hooked[co] = true
    end
  end

  local function tracked_create(f)
    local co = create(f)
    attach(co)
    return co
  end

  local function pass(ok, ...)
    if not ok then
      error((...), 0)
    end
    return ...
  end

  local function tracked_wrap(f)
    local co = tracked_create(f)
    return function(...)
      return pass(resume(co, ...))
    end
  end

  local controls = {attach = attach}

  function controls.start()
    coroutine.create = tracked_create
    coroutine.wrap = tracked_wrap
    attach(nil)
  end

  function controls.stop()
    if coroutine.create == tracked_create then
      coroutine.create = create
    end
    if coroutine.wrap == tracked_wrap then
      coroutine.wrap = wrap
    end
    sethook()
    for co in pairs(hooked) do
      sethook(co)
      hooked[co] = nil
    end
  end

  function controls.forget()
    decisions = {}
    skipped = {}
  end

  return controls
end
"""


class HookTracker:
    """Tracks execution through ``debug.sethook``.

    Attributes:
        store: The coverage store hits are recorded into.

    Example:
        >>> tracker = HookTracker(host, store, accept=lambda path: path.endswith('.lua'))
        >>> tracker.start()
        >>> host.execute('dofile("calc.lua")')
        >>> tracker.stop()
    """

    def __init__(
        self,
        host: LuaHost,
        store: CoverageStore,
        accept: Callable[[str], bool] | None = None,
    ) -> None:
        """Initialize the tracker. Nothing is installed until start().

        Args:
            host: The Lua runtime to observe.
            store: Where hits are recorded.
            accept: Decides, once per chunk, whether a normalized path is
                tracked. Every file chunk is tracked if omitted.
        """
        self._host = host
        self.store = store
        self._accept = accept if accept is not None else (lambda _path: True)
        self._controls: Any = None
        self._active = False

    @property
    def is_active(self) -> bool:
        """Return True while the hook is installed."""
        return self._active

    def start(self, context: Any = None) -> None:
        """Install the hook.

        The first call hooks the main Lua thread and wraps coroutine
        creation. Passing a coroutine hooks that coroutine as well; doing so
        more than once is harmless.

        Args:
            context: A Lua coroutine created outside the wrapped constructors.

        Raises:
            HookInstallError: If the runtime has no usable debug library.
        """
        if self._controls is None:
            self._controls = self._install()
        try:
            if not self._active:
                self._controls.start()
                self._active = True
                logger.debug('Line hook installed on %s', self._host.version)
            if context is not None:
                self._controls.attach(context)
        except LuaError as error:
            msg = f'cannot install the line hook: {error}'
            raise HookInstallError(msg) from error

    def stop(self) -> None:
        """Remove the hook from every context it was installed on."""
        if not self._active:
            return
        self._controls.stop()
        self._active = False
        logger.debug('Line hook removed')

    def refresh(self) -> None:
        """Forget cached tracking decisions so ``accept`` is asked again."""
        if self._controls is not None:
            self._controls.forget()

    def _install(self) -> Any:
        if not self._host.has_debug_hooks():
            msg = f'{self._host.version} has no debug.sethook'
            raise HookInstallError(msg)
        try:
            factory = self._host.execute(HOOK_FACTORY)
            return factory(self._resolve, self._entry_lines, self._on_line, self._on_call)
        except LuaError as error:
            msg = f'cannot prepare the line hook: {error}'
            raise HookInstallError(msg) from error

    def _resolve(self, source: str | None) -> str | bool:
        # Only chunks loaded from files have a source starting with '@'.
        if not source or not source.startswith('@'):
            return False
        path = normalize_path(source[1:])
        return path if self._accept(path) else False

    def _entry_lines(self, path: str) -> Any:
        return self._host.table_from(dict.fromkeys(self.store.entry_lines(path), True))

    def _on_line(self, path: str, line: float) -> None:
        self.store.record_hit(path, int(line))

    def _on_call(self, path: str, first_line: float, last_line: float) -> None:
        self.store.record_function_entry(path, int(first_line), last_line=int(last_line))
