"""Tests for pyproject.toml configuration loading.

The config module reads [tool.pytest-moonlight] from pyproject.toml and
provides defaults when configuration is absent.
"""

import pytest

from pytest_moonlight.config import CoverageConfig, load_config


@pytest.mark.small
class TestLoadConfig:
    """Tests for load_config function."""

    def test_returns_defaults_when_no_pyproject_toml(self, tmp_path):
        """Returns default config rooted at the directory."""
        result = load_config(tmp_path)

        assert result == CoverageConfig(root=str(tmp_path))

    def test_returns_defaults_when_no_tool_section(self, tmp_path):
        """Returns default config when [tool.pytest-moonlight] is absent."""
        (tmp_path / 'pyproject.toml').write_text('[project]\nname = "test"\n')

        result = load_config(tmp_path)

        assert result.strategy == 'hook'
        assert result.root == str(tmp_path)

    def test_reads_all_config_options(self, tmp_path):
        """Reads every supported option."""
        (tmp_path / 'pyproject.toml').write_text(
            '[tool.pytest-moonlight]\n'
            'strategy = "instrumentation"\n'
            'track_blocks = true\n'
            'include = ["src/**/*.lua"]\n'
            'exclude = ["src/vendor/**"]\n'
            'hook_files = ["src/gen/*.lua"]\n'
            'cache_dir = ".cache"\n'
            'use_cache = false\n'
            'data_dir = ".data"\n'
        )

        result = load_config(tmp_path)

        assert result.strategy == 'instrumentation'
        assert result.track_blocks is True
        assert result.include == ('src/**/*.lua',)
        assert result.exclude == ('src/vendor/**',)
        assert result.hook_files == ('src/gen/*.lua',)
        assert result.cache_dir == '.cache'
        assert result.use_cache is False
        assert result.data_dir == '.data'

    def test_single_pattern_string_is_accepted(self, tmp_path):
        """A single pattern may be written as a string."""
        (tmp_path / 'pyproject.toml').write_text('[tool.pytest-moonlight]\ninclude = "lib/*.lua"\n')

        assert load_config(tmp_path).include == ('lib/*.lua',)

    def test_invalid_pattern_type_raises(self, tmp_path):
        """Non-list pattern values are rejected."""
        (tmp_path / 'pyproject.toml').write_text('[tool.pytest-moonlight]\nexclude = 3\n')

        with pytest.raises(ValueError, match='exclude must be a list'):
            load_config(tmp_path)

    def test_invalid_strategy_raises(self, tmp_path):
        """Invalid strategies in the file are rejected."""
        (tmp_path / 'pyproject.toml').write_text('[tool.pytest-moonlight]\nstrategy = "magic"\n')

        with pytest.raises(ValueError, match='Invalid strategy'):
            load_config(tmp_path)
