"""Configuration loading for pytest-moonlight.

This module reads configuration from the pyproject.toml
[tool.pytest-moonlight] section and merges it with command-line options.

Example pyproject.toml section::

    [tool.pytest-moonlight]
    strategy = "instrumentation"
    track_blocks = true
    include = ["src/**/*.lua"]
    exclude = ["src/vendor/**"]
    hook_files = ["src/generated/*.lua"]
    discover_uncovered = true
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from fnmatch import fnmatchcase
import os
from pathlib import Path, PurePath
import tomllib
from typing import Any, Literal


Strategy = Literal['hook', 'instrumentation']
VALID_STRATEGIES: frozenset[str] = frozenset(('hook', 'instrumentation'))

DEFAULT_INCLUDE: tuple[str, ...] = ('**/*.lua',)
DEFAULT_EXCLUDE: tuple[str, ...] = ('*_test.lua', '*_spec.lua', '**/tests/**', '**/spec/**')


def _matches(relative: str, pattern: str) -> bool:
    """Match a root-relative POSIX path against a glob pattern.

    ``*`` crosses directory separators, and a leading ``**/`` also matches
    files at the top of the tree.
    """
    if fnmatchcase(relative, pattern):
        return True
    return pattern.startswith('**/') and fnmatchcase(relative, pattern[3:])


@dataclass(frozen=True)
class CoverageConfig:
    """Configuration of a coverage run.

    Attributes:
        strategy: ``'hook'`` or ``'instrumentation'``.
        track_blocks: Record block entries (instrumentation only).
        include: Glob patterns of files to measure, relative to ``root``.
        exclude: Glob patterns of files never measured; wins over ``include``.
        hook_files: Files measured with the hook tracker even when the
            strategy is instrumentation.
        cache_dir: Directory of the instrumented-source cache.
        use_cache: Whether instrumented sources are cached between runs.
        data_dir: Directory where parallel workers write their snapshots.
        root: Directory patterns are relative to. Defaults to the current
            working directory.
        discover_uncovered: Report tracked files under ``root`` that were
            never loaded, with every executable line missed.

    Example:
        >>> config = CoverageConfig(strategy='instrumentation', root='/project')
        >>> config.is_tracked('/project/src/calc.lua')
        True
        >>> config.is_tracked('/project/src/calc_spec.lua')
        False
    """

    strategy: Strategy = 'hook'
    track_blocks: bool = False
    include: tuple[str, ...] = DEFAULT_INCLUDE
    exclude: tuple[str, ...] = DEFAULT_EXCLUDE
    hook_files: tuple[str, ...] = ()
    cache_dir: str = '.moonlight_cache'
    use_cache: bool = True
    data_dir: str = '.moonlight_data'
    root: str | None = None
    discover_uncovered: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If any configuration value is invalid.
        """
        if self.strategy not in VALID_STRATEGIES:
            msg = f'Invalid strategy: {self.strategy!r}. Valid strategies are: {sorted(VALID_STRATEGIES)}'
            raise ValueError(msg)

        for name in ('include', 'exclude', 'hook_files'):
            patterns = getattr(self, name)
            if isinstance(patterns, str) or not all(isinstance(pattern, str) for pattern in patterns):
                msg = f'{name} must be a list of glob patterns, got {patterns!r}'
                raise ValueError(msg)

        if not self.cache_dir:
            msg = 'cache_dir must not be empty'
            raise ValueError(msg)

    def _relative(self, path: str) -> str | None:
        root = os.path.abspath(self.root or os.getcwd())
        try:
            relative = os.path.relpath(path, root)
        except ValueError:
            return None
        if relative == os.pardir or relative.startswith(os.pardir + os.sep):
            return None
        return PurePath(relative).as_posix()

    def is_tracked(self, path: str) -> bool:
        """Return True if an absolute path should be measured at all."""
        relative = self._relative(path)
        if relative is None:
            return False
        if any(_matches(relative, pattern) for pattern in self.exclude):
            return False
        return any(_matches(relative, pattern) for pattern in self.include)

    def prefers_hook(self, path: str) -> bool:
        """Return True if a file must be measured with the hook tracker."""
        if self.strategy == 'hook':
            return True
        relative = self._relative(path)
        return relative is not None and any(_matches(relative, pattern) for pattern in self.hook_files)

    def _resolve_dir(self, directory: str) -> Path:
        base = Path(directory)
        if not base.is_absolute() and self.root:
            base = Path(self.root) / base
        return base

    def cache_path(self) -> Path:
        """Return the location of the instrumented-source database."""
        return self._resolve_dir(self.cache_dir) / 'instrumented.db'

    def data_path(self) -> Path:
        """Return the directory parallel workers write snapshots to."""
        return self._resolve_dir(self.data_dir)


def _pattern_list(value: Any, name: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        msg = f'[tool.pytest-moonlight] {name} must be a list, got {value!r}'
        raise ValueError(msg)  # noqa: TRY004
    return tuple(value)


def load_config(rootdir: Path) -> CoverageConfig:
    """Load configuration from pyproject.toml.

    Reads the [tool.pytest-moonlight] section from pyproject.toml in the
    given directory. Returns default configuration if the file or section
    does not exist.

    Args:
        rootdir: Directory containing pyproject.toml.

    Returns:
        CoverageConfig with values from pyproject.toml or defaults.

    Raises:
        ValueError: If the section holds invalid values.
    """
    pyproject_path = rootdir / 'pyproject.toml'

    if not pyproject_path.exists():
        return CoverageConfig(root=str(rootdir))

    with pyproject_path.open('rb') as f:
        data = tomllib.load(f)

    tool_config = data.get('tool', {}).get('pytest-moonlight', {})

    values: dict[str, Any] = {'root': str(rootdir)}
    for name in ('strategy', 'cache_dir', 'data_dir'):
        if name in tool_config:
            values[name] = tool_config[name]
    for name in ('track_blocks', 'use_cache', 'discover_uncovered'):
        if name in tool_config:
            values[name] = bool(tool_config[name])
    for name in ('include', 'exclude', 'hook_files'):
        patterns = _pattern_list(tool_config.get(name), name)
        if patterns is not None:
            values[name] = patterns

    return CoverageConfig(**values)


def merge_configs(
    file_config: CoverageConfig,
    cli_strategy: str | None = None,
    cli_blocks: bool | None = None,
    cli_data_dir: str | None = None,
) -> CoverageConfig:
    """Merge CLI arguments with file configuration.

    CLI arguments take precedence over pyproject.toml configuration.
    Empty strings are treated as not provided.

    Args:
        file_config: Configuration loaded from pyproject.toml.
        cli_strategy: Strategy from --moonlight-strategy.
        cli_blocks: True if --moonlight-blocks was given.
        cli_data_dir: Directory from --moonlight-data-dir.

    Returns:
        CoverageConfig with CLI values overriding file config where provided.
    """
    overrides: dict[str, Any] = {}
    if cli_strategy and cli_strategy.strip():
        overrides['strategy'] = cli_strategy.strip()
    if cli_blocks:
        overrides['track_blocks'] = True
    if cli_data_dir and cli_data_dir.strip():
        overrides['data_dir'] = cli_data_dir.strip()
    return replace(file_config, **overrides)
