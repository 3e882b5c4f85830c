"""Coverage through source instrumentation.

The instrumentation tracker turns an analyzed file into self-reporting text
(see transformer.py), checks that the result still compiles, and caches it
by content. At run time, instrumented chunks bind their tracking functions
by calling the global ``__moonlight`` with their own path.

Any file this tracker cannot handle raises InstrumentationError from
prepare(); the session then loads that file's original text and tracks it
with the hook tracker instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pytest_moonlight.cache.hasher import ContentHasher, to_lua_bytes
from pytest_moonlight.errors import InstrumentationError
from pytest_moonlight.instrumentation.sourcemap import SourceMap
from pytest_moonlight.instrumentation.transformer import BINDER, InstrumentedSource, instrument


if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_moonlight.analysis.profile import FileProfile
    from pytest_moonlight.cache.store import InstrumentedSourceStore
    from pytest_moonlight.model.store import CoverageStore
    from pytest_moonlight.runtime import LuaHost


logger = logging.getLogger(__name__)


class InstrumentationTracker:
    """Tracks execution by rewriting sources before they load.

    Attributes:
        store: The coverage store hits are recorded into.
        track_blocks: Whether block entries are instrumented.
    """

    def __init__(
        self,
        host: LuaHost,
        store: CoverageStore,
        *,
        track_blocks: bool = False,
        cache: InstrumentedSourceStore | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            host: The Lua runtime instrumented chunks run in.
            store: Where hits are recorded.
            track_blocks: Inject a call at the start of every block body.
            cache: Persistent cache of instrumented sources, if any.
        """
        self._host = host
        self.store = store
        self.track_blocks = track_blocks
        self._cache = cache
        self._hasher = ContentHasher()
        self._active = False
        self._bound = False

    @property
    def is_active(self) -> bool:
        """Return True while instrumented chunks report execution."""
        return self._active

    def start(self, context: Any = None) -> None:  # noqa: ARG002
        """Start recording from instrumented chunks.

        Instrumented code reports from whatever coroutine it runs in, so
        ``context`` needs no special handling.
        """
        if not self._bound:
            self._host.globals()[BINDER] = self.bind
            self._bound = True
        self._active = True

    def stop(self) -> None:
        """Stop recording. Chunks already loaded keep running untracked."""
        self._active = False

    def prepare(self, path: str, source: str, profile: FileProfile | None = None) -> InstrumentedSource:
        """Return the instrumented form of a file, from cache when possible.

        Args:
            path: Normalized path of the file.
            source: Original source text.
            profile: Analyzer output for ``source``, if already known.

        Returns:
            Instrumented text that has been verified to compile.

        Raises:
            InstrumentationError: If the file cannot be safely rewritten.
        """
        key = self._hasher.cache_key(path, self._hasher.hash_string(source), track_blocks=self.track_blocks)
        cached = self._from_cache(path, key)
        if cached is not None:
            logger.debug('Instrumentation cache hit for %s', path)
            return cached

        result = instrument(path, source, profile, track_blocks=self.track_blocks)
        error = self._host.compile_error(to_lua_bytes(result.text), '@' + path)
        if error is not None:
            raise InstrumentationError(path, f'instrumented source does not compile: {error}')

        if self._cache is not None:
            self._cache.put(key, result.text, result.source_map.to_list())
        return result

    def _from_cache(self, path: str, key: str) -> InstrumentedSource | None:
        if self._cache is None:
            return None
        entry = self._cache.get(key)
        if entry is None:
            return None
        text, lines = entry
        try:
            source_map = SourceMap.from_list(lines)
        except ValueError:
            logger.debug('Discarding cached source map for %s', path)
            self._cache.delete(key)
            return None
        return InstrumentedSource(path=path, text=text, source_map=source_map)

    def bind(self, path: str) -> tuple[Callable[..., Any], ...]:
        """Return the tracking functions for one instrumented chunk.

        Called from Lua by the chunk header as ``__moonlight(path)``.

        Returns:
            The line, entry, block and condition functions, in that order.
        """
        store = self.store

        def line(number: float) -> None:
            if self._active:
                store.record_hit(path, int(number))

        def enter(number: float, function_id: str) -> None:
            if self._active:
                store.record_function_entry(path, int(number), function_id)

        def block(block_id: str) -> None:
            if self._active:
                store.record_block_entry(path, block_id)

        def condition(number: float) -> bool:
            if self._active:
                store.record_hit(path, int(number))
            return True

        return line, enter, block, condition
