"""One coverage run over an embedded Lua runtime.

The session is the boundary between the test runner and the coverage engine:

- ``begin_run(config)`` creates the shared store and starts the configured
  tracker.
- ``notify_loaded(path)`` is called before a Lua file loads. The file is
  analyzed and, under the instrumentation strategy, rewritten. The loader
  hooks call it for every file Lua loads; callers that load Lua some other
  way can call it themselves.
- ``end_run()`` stops tracking and returns a frozen snapshot.

Nothing here raises into the test run once ``begin_run`` has returned: a
file that cannot be instrumented falls back to the hook tracker, a runtime
that refuses the hook runs untracked, and each such event is kept as a
diagnostic on the snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import sqlite3
import threading
from typing import TYPE_CHECKING, Any

from pytest_moonlight.cache.hasher import read_source, to_lua_bytes
from pytest_moonlight.cache.store import InstrumentedSourceStore
from pytest_moonlight.config import CoverageConfig
from pytest_moonlight.diagnostics import Diagnostic, DiagnosticKind, DiagnosticLog
from pytest_moonlight.errors import HookInstallError, InstrumentationError
from pytest_moonlight.instrumentation.loaders import register_lua_loaders, unregister_lua_loaders
from pytest_moonlight.instrumentation.tracker import InstrumentationTracker
from pytest_moonlight.instrumentation.transformer import loadable_text
from pytest_moonlight.model.store import CoverageStore, normalize_path
from pytest_moonlight.runtime import LuaHost
from pytest_moonlight.snapshot import CoverageSnapshot, export
from pytest_moonlight.tracking.hook import HookTracker


if TYPE_CHECKING:
    from lupa import LuaRuntime

    from pytest_moonlight.instrumentation.sourcemap import SourceMap


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PreparedFile:
    """Text the loader hooks hand to Lua for one tracked file."""

    text: str
    original: str
    source_map: SourceMap | None = None


class CoverageSession:
    """Drives one coverage run.

    Attributes:
        config: Configuration of the current or last run.
        store: Coverage store of the current or last run.
        diagnostics: Failures recorded during the run.

    Example:
        >>> session = CoverageSession()
        >>> session.begin_run(CoverageConfig(strategy='instrumentation'))
        >>> calc = session.load_file('src/calc.lua')
        >>> calc.add(1, 2)
        3
        >>> snapshot = session.end_run()
        >>> snapshot.summary.line_coverage_pct
        50.0
    """

    def __init__(self, host: LuaHost | None = None) -> None:
        """Initialize an idle session.

        Args:
            host: Lua runtime to run code in. Created on first use if omitted.
        """
        self._host = host
        self._lock = threading.RLock()
        self.config = CoverageConfig()
        self.diagnostics = DiagnosticLog()
        self.store = CoverageStore(self.diagnostics)
        self._running = False
        self._hook: HookTracker | None = None
        self._hook_broken = False
        self._instrumentation: InstrumentationTracker | None = None
        self._cache: InstrumentedSourceStore | None = None
        self._prepared: dict[str, _PreparedFile] = {}
        self._hook_paths: set[str] = set()

    @property
    def host(self) -> LuaHost:
        """Return the Lua host, creating it on first use."""
        if self._host is None:
            self._host = LuaHost()
        return self._host

    @property
    def lua(self) -> LuaRuntime:
        """Return the lupa runtime tests run their Lua code in."""
        return self.host.lua

    @property
    def is_running(self) -> bool:
        """Return True between begin_run() and end_run()."""
        return self._running

    def begin_run(self, config: CoverageConfig | None = None) -> None:
        """Start a coverage run.

        Args:
            config: Run configuration. Defaults apply if omitted.

        Raises:
            RuntimeError: If a run is already in progress.
        """
        if self._running:
            msg = 'a coverage run is already in progress'
            raise RuntimeError(msg)

        self.config = config if config is not None else CoverageConfig()
        self.diagnostics.clear()
        self.store = CoverageStore(self.diagnostics)
        self._instrumentation = None
        self._prepared.clear()
        self._hook_paths.clear()
        self._hook_broken = False

        host = self.host
        self._hook = HookTracker(host, self.store, accept=self._hook_accepts)
        if self.config.strategy == 'instrumentation':
            self._cache = self._open_cache()
            self._instrumentation = InstrumentationTracker(
                host,
                self.store,
                track_blocks=self.config.track_blocks,
                cache=self._cache,
            )
            self._instrumentation.start()
        else:
            self._start_hook()

        register_lua_loaders(host, self.provide)
        self._running = True
        logger.info('Coverage run started (strategy=%s, blocks=%s)', self.config.strategy, self.config.track_blocks)

    def _open_cache(self) -> InstrumentedSourceStore | None:
        if not self.config.use_cache:
            return None
        path = self.config.cache_path()
        try:
            return InstrumentedSourceStore(path)
        except (OSError, sqlite3.Error) as error:
            logger.warning('Instrumentation cache unavailable at %s: %s', path, error)
            return None

    def _hook_accepts(self, path: str) -> bool:
        if self.config.strategy == 'hook':
            return self.config.is_tracked(path)
        return path in self._hook_paths

    def _start_hook(self, context: Any = None) -> None:
        if self._hook is None or self._hook_broken:
            return
        try:
            self._hook.start(context)
        except HookInstallError as error:
            self._hook_broken = True
            logger.warning('Line hook unavailable, continuing without it: %s', error)
            self.diagnostics.add(Diagnostic(DiagnosticKind.HOOK_INSTALL, str(error)))

    def track_coroutine(self, coroutine: Any) -> None:
        """Install the line hook on a coroutine created outside Lua's constructors.

        Coroutines created with ``coroutine.create`` or ``coroutine.wrap``
        during the run are hooked automatically. Calling this more than once
        for the same coroutine is harmless.
        """
        if self._hook is not None and self._hook.is_active:
            self._start_hook(coroutine)

    def notify_loaded(self, path: str | os.PathLike[str]) -> None:
        """Prepare a file that is about to be loaded.

        Untracked paths and calls outside a run are ignored.

        Args:
            path: The file Lua is about to load.
        """
        key = normalize_path(path)
        if not self._running or not self.config.is_tracked(key):
            return
        with self._lock:
            if key not in self._prepared:
                prepared = self._prepare(key)
                if prepared is not None:
                    self._prepared[key] = prepared

    def _prepare(self, path: str) -> _PreparedFile | None:
        try:
            source = read_source(path)
        except OSError as error:
            # Lua reports the missing file itself when it tries to load it.
            logger.debug('Not preparing unreadable %s: %s', path, error)
            return None

        original = loadable_text(source)
        profile = self.store.ensure_record(path, source)

        if self._instrumentation is None or self.config.prefers_hook(path):
            self._use_hook_for(path)
            return _PreparedFile(text=original, original=original)

        try:
            result = self._instrumentation.prepare(path, source, profile)
        except InstrumentationError as error:
            logger.warning('Falling back to the line hook for %s: %s', path, error.message)
            self.diagnostics.add(Diagnostic(DiagnosticKind.INSTRUMENTATION, error.message, path=path))
            self._use_hook_for(path)
            return _PreparedFile(text=original, original=original)
        return _PreparedFile(text=result.text, original=original, source_map=result.source_map)

    def _use_hook_for(self, path: str) -> None:
        if self.config.strategy == 'hook':
            return
        self._hook_paths.add(path)
        if self._hook is not None:
            self._hook.refresh()
        self._start_hook()

    def provide(self, path: str, plain: bool = False) -> tuple[bytes, str] | None:  # noqa: FBT001, FBT002
        """Return the text Lua should load for a file.

        Called by the loader hooks for every file Lua loads.

        Args:
            path: The path Lua resolved.
            plain: Return the untracked text. Used for chunks loaded with a
                custom environment, which cannot reach the tracking functions.

        Returns:
            ``(text, chunkname)``, or None to let Lua load the file itself. The
            text is bytes so that Lua sees the file content byte for byte.
        """
        key = normalize_path(path)
        self.notify_loaded(key)
        with self._lock:
            prepared = self._prepared.get(key)
        if prepared is None:
            return None
        return to_lua_bytes(prepared.original if plain else prepared.text), '@' + key

    def load_file(self, path: str | os.PathLike[str]) -> Any:
        """Load and run a Lua file, returning its first result.

        Works outside a run too, in which case the file runs untracked.
        """
        return self.host.globals().dofile(str(path))

    def require(self, name: str) -> Any:
        """Load a Lua module through ``require`` and return it."""
        return self.host.globals().require(name)

    def translate_error(self, message: str) -> str:
        """Map line numbers in a Lua error back to the original sources."""
        with self._lock:
            maps = [(path, prepared.source_map) for path, prepared in self._prepared.items() if prepared.source_map]
        for path, source_map in maps:
            message = source_map.translate_error(message, path)
        return message

    def end_run(self) -> CoverageSnapshot:
        """Stop tracking and return the snapshot of the run.

        Safe to call at any point; hits recorded so far are kept. Calling it
        without a run in progress returns a snapshot of the last run.
        """
        if self._running:
            self._running = False
            if self._hook is not None:
                self._hook.stop()
            if self._instrumentation is not None:
                self._instrumentation.stop()
            if self._host is not None:
                unregister_lua_loaders(self._host)
            if self._cache is not None:
                self._cache.close()
                self._cache = None
            if self.config.discover_uncovered:
                self._discover_uncovered()
            logger.info('Coverage run finished: %d files', len(self.store))
        return export(self.store)

    def _discover_uncovered(self) -> None:
        """Add a zero-hit record for every tracked file the run never loaded."""
        root = os.path.abspath(self.config.root or os.getcwd())
        found = 0
        for directory, subdirs, files in os.walk(root):
            subdirs[:] = sorted(name for name in subdirs if not name.startswith('.'))
            for name in sorted(files):
                if not name.endswith('.lua'):
                    continue
                key = normalize_path(os.path.join(directory, name))
                if key in self.store or not self.config.is_tracked(key):
                    continue
                self.store.ensure_record(key)
                found += 1
        if found:
            logger.debug('Discovered %d tracked files that were never loaded', found)

    def reset(self) -> None:
        """Forget all coverage and diagnostics, e.g. between suite invocations."""
        self.store.reset()
        self.diagnostics.clear()
        with self._lock:
            self._prepared.clear()
