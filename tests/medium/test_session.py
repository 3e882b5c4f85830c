"""End-to-end tests for coverage runs through CoverageSession."""

import pytest
from lupa import LuaError

from pytest_moonlight.config import CoverageConfig
from pytest_moonlight.diagnostics import DiagnosticKind
from pytest_moonlight.errors import InstrumentationError
from pytest_moonlight.instrumentation import InstrumentationTracker
from pytest_moonlight.runtime import LuaHost
from pytest_moonlight.session import CoverageSession


STRATEGIES = ['hook', 'instrumentation']

LOOPS = """local total = 0
for i = 1, 3 do
  total = total + i
end
local n = 0
while n < 2 do
  n = n + 1
end
repeat
  n = n - 1
until n == 0
local function classify(v)
  if v > 0 then
    return 'positive'
  elseif v < 0 then
    return 'negative'
  end
  return 'zero'
end
return classify
"""


CONTINUED = """local acc = 0
for i = 1, 2 do
  acc = acc
    + i
end
return acc
"""


def config_for(tmp_path, strategy, **overrides):
    options = {'use_cache': False, 'discover_uncovered': False, **overrides}
    return CoverageConfig(strategy=strategy, root=str(tmp_path), **options)


def run_scenario(tmp_path, scenario_file, strategy):
    session = CoverageSession()
    session.begin_run(config_for(tmp_path, strategy))
    session.load_file(scenario_file)
    session.lua.globals().M.func1()
    return session.end_run()


@pytest.mark.medium
class TestScenario:
    """The two-function module under both strategies."""

    @pytest.mark.parametrize('strategy', STRATEGIES)
    def test_line_and_function_coverage(self, tmp_path, scenario_file, strategy):
        """Four of six lines and one of two functions are covered."""
        snapshot = run_scenario(tmp_path, scenario_file, strategy)

        record = snapshot.file(str(scenario_file))
        assert record.executable == frozenset({1, 2, 4, 5, 8, 9})
        assert record.executed == frozenset({1, 2, 4, 5})
        assert round(record.line_coverage_pct, 1) == 66.7
        assert record.function_coverage_pct == 50.0
        assert record.function('M.func1').executed
        assert not record.function('M.func2').executed
        assert snapshot.diagnostics == ()

    def test_strategies_agree(self, tmp_path, scenario_file):
        """Hook and instrumentation report the same executed lines and functions."""
        hook = run_scenario(tmp_path, scenario_file, 'hook').file(str(scenario_file))
        instrumented = run_scenario(tmp_path, scenario_file, 'instrumentation').file(str(scenario_file))

        assert hook.executed == instrumented.executed
        assert [f.executed for f in hook.functions] == [f.executed for f in instrumented.functions]

    @pytest.mark.parametrize('strategy', STRATEGIES)
    def test_loops_and_branches_agree(self, tmp_path, strategy):
        """Loop conditions and branches are covered by both strategies."""
        path = tmp_path / 'loops.lua'
        path.write_text(LOOPS)
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, strategy))

        classify = session.load_file(path)
        assert classify(5) == 'positive'
        record = session.end_run().file(str(path))

        assert {2, 3, 6, 7, 10, 11, 13, 14} <= record.executed
        assert not {15, 16, 18} & record.executed
        assert record.function('classify').executed

    @pytest.mark.parametrize('strategy', STRATEGIES)
    def test_continued_statement_credits_first_line(self, tmp_path, strategy):
        """A statement split over two lines is recorded on the line it starts on."""
        path = tmp_path / 'continued.lua'
        path.write_text(CONTINUED)
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, strategy))

        assert session.load_file(path) == 3
        record = session.end_run().file(str(path))

        assert record.executable == frozenset({1, 2, 3, 6})
        assert record.executed == frozenset({1, 2, 3, 6})
        assert record.line_coverage_pct == 100.0


@pytest.mark.medium
class TestLoading:
    """Tests for the ways Lua reaches tracked files."""

    @pytest.mark.parametrize('strategy', STRATEGIES)
    def test_require_is_tracked(self, tmp_path, scenario_file, strategy):
        """Modules found through package.path are tracked."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, strategy))
        session.lua.globals().package.path = f'{tmp_path}/?.lua;' + session.lua.globals().package.path

        session.require('calc')
        record = session.end_run().file(str(scenario_file))

        assert record.executed == frozenset({1, 2})

    @pytest.mark.parametrize('strategy', STRATEGIES)
    def test_non_utf8_bytes_reach_lua_unchanged(self, tmp_path, strategy):
        """A Latin-1 byte inside a string literal stays a single byte."""
        path = tmp_path / 'latin.lua'
        path.write_bytes(b'local s = "\xe9"\nreturn #s\n')
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, strategy))

        assert session.load_file(path) == 1
        record = session.end_run().file(str(path))

        assert record.executed == frozenset({1, 2})

    def test_excluded_files_are_not_tracked(self, tmp_path):
        """Files matching an exclude pattern load normally and are not recorded."""
        spec = tmp_path / 'calc_spec.lua'
        spec.write_text('return 42\n')
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'instrumentation'))

        assert session.load_file(spec) == 42
        assert session.end_run().files == {}

    def test_custom_environment_runs_untracked(self, tmp_path, scenario_file):
        """A chunk loaded with its own environment gets the original text."""
        session = CoverageSession()
        if session.host.version == 'Lua 5.1':
            pytest.skip('loadfile has no environment argument on Lua 5.1')
        session.begin_run(config_for(tmp_path, 'instrumentation'))

        result = session.lua.execute(
            f'local env = {{}}\n'
            f'local chunk = assert(loadfile("{scenario_file}", "t", env))\n'
            f'chunk()\n'
            f'return env.M.func1()\n'
        )
        record = session.end_run().file(str(scenario_file))

        assert result == 1
        assert record.executed == frozenset()

    def test_load_file_outside_a_run(self, scenario_file):
        """Without a run, files load untracked."""
        session = CoverageSession()

        session.load_file(scenario_file)

        assert session.lua.globals().M.func1() == 1
        assert session.end_run().files == {}


@pytest.mark.medium
class TestFallback:
    """Per-file fallback from instrumentation to the hook."""

    def test_failed_file_falls_back_to_hook(self, tmp_path, scenario_file, monkeypatch):
        """A file that cannot be instrumented is still covered, with a diagnostic."""
        other = tmp_path / 'other.lua'
        other.write_text('local value = 1\nreturn value\n')
        original = InstrumentationTracker.prepare

        def prepare(self, path, source, profile=None):
            if path.endswith('calc.lua'):
                raise InstrumentationError(path, 'simulated failure')
            return original(self, path, source, profile)

        monkeypatch.setattr(InstrumentationTracker, 'prepare', prepare)
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'instrumentation'))

        session.load_file(scenario_file)
        session.lua.globals().M.func1()
        assert session.load_file(other) == 1
        snapshot = session.end_run()

        assert snapshot.file(str(scenario_file)).executed == frozenset({1, 2, 4, 5})
        assert snapshot.file(str(other)).executed == frozenset({1, 2})
        assert [(d.kind, d.path) for d in snapshot.diagnostics] == [
            (DiagnosticKind.INSTRUMENTATION, str(scenario_file)),
        ]

    def test_hook_files_use_the_hook(self, tmp_path, scenario_file):
        """Files listed in hook_files are never rewritten."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'instrumentation', hook_files=('calc.lua',)))

        session.load_file(scenario_file)
        snapshot = session.end_run()

        assert snapshot.file(str(scenario_file)).executed == frozenset({1, 2})
        assert snapshot.diagnostics == ()

    def test_unanalyzable_file_is_flagged(self, tmp_path):
        """A file the analyzer rejects is reported, not dropped."""
        path = tmp_path / 'odd.lua'
        path.write_text('local x = 1\nif x then\n')
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook'))

        with pytest.raises(LuaError):
            session.load_file(path)
        snapshot = session.end_run()

        record = snapshot.file(str(path))
        assert not record.analyzable
        assert snapshot.summary.unanalyzable_files == 1
        assert [d.kind for d in snapshot.diagnostics] == [DiagnosticKind.ANALYSIS]

    def test_missing_debug_library_degrades(self, tmp_path, scenario_file):
        """A runtime that refuses the hook runs untracked with a diagnostic."""
        host = LuaHost()
        host.execute('debug = nil')
        session = CoverageSession(host)
        session.begin_run(config_for(tmp_path, 'hook'))

        session.load_file(scenario_file)
        snapshot = session.end_run()

        assert snapshot.file(str(scenario_file)).executed == frozenset()
        assert [d.kind for d in snapshot.diagnostics] == [DiagnosticKind.HOOK_INSTALL]


@pytest.mark.medium
class TestSessionLifecycle:
    """Tests for begin_run, end_run and reset."""

    def test_begin_run_twice_raises(self, tmp_path):
        """Only one run can be active at a time."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook'))

        with pytest.raises(RuntimeError, match='already in progress'):
            session.begin_run(config_for(tmp_path, 'hook'))
        session.end_run()

    def test_runs_are_independent(self, tmp_path, scenario_file):
        """A new run starts from an empty store."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook'))
        session.load_file(scenario_file)
        session.end_run()

        session.begin_run(config_for(tmp_path, 'hook'))
        snapshot = session.end_run()

        assert snapshot.files == {}

    def test_block_tracking_through_session(self, tmp_path):
        """track_blocks counts block entries under instrumentation."""
        path = tmp_path / 'loops.lua'
        path.write_text(LOOPS)
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'instrumentation', track_blocks=True))

        classify = session.load_file(path)
        classify(-1)
        record = session.end_run().file(str(path))

        assert record.block('for@2').entry_count == 3
        assert record.block('elseif@15').entry_count == 1
        assert record.block('if@13').entry_count == 0

    def test_cache_is_written(self, tmp_path, scenario_file):
        """The instrumentation strategy fills the on-disk cache."""
        session = CoverageSession()
        config = CoverageConfig(strategy='instrumentation', root=str(tmp_path))
        session.begin_run(config)
        session.load_file(scenario_file)
        session.end_run()

        assert config.cache_path().exists()

    def test_translate_error_keeps_identity_positions(self, tmp_path, scenario_file):
        """Same-line instrumentation leaves error positions untouched."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'instrumentation'))
        session.load_file(scenario_file)

        message = f'{scenario_file}:5: attempt to call a nil value'
        assert session.translate_error(message) == message
        session.end_run()

    def test_track_coroutine_is_harmless(self, tmp_path):
        """Handing an already hooked coroutine over again changes nothing."""
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook'))
        co = session.lua.eval('coroutine.create(function() end)')

        session.track_coroutine(co)
        session.track_coroutine(co)

        assert session.end_run().diagnostics == ()

    def test_unloaded_files_are_reported_uncovered(self, tmp_path, scenario_file):
        """Tracked files nobody loaded appear with every line missed."""
        unused = tmp_path / 'lib' / 'unused.lua'
        unused.parent.mkdir()
        unused.write_text('local x = 1\nreturn x\n')
        (tmp_path / 'lib' / 'unused_spec.lua').write_text('return true\n')
        (tmp_path / '.hidden').mkdir()
        (tmp_path / '.hidden' / 'skipped.lua').write_text('return 1\n')
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook', discover_uncovered=True))

        session.load_file(scenario_file)
        snapshot = session.end_run()

        assert sorted(snapshot.files) == sorted([str(scenario_file), str(unused)])
        record = snapshot.file(str(unused))
        assert record.executable == frozenset({1, 2})
        assert record.executed == frozenset()
        assert record.line_coverage_pct == 0.0
        assert snapshot.file(str(scenario_file)).executed == frozenset({1, 2, 4, 5})

    def test_discovery_can_be_disabled(self, tmp_path, scenario_file):
        """With discovery off only loaded files are reported."""
        (tmp_path / 'unused.lua').write_text('return 1\n')
        session = CoverageSession()
        session.begin_run(config_for(tmp_path, 'hook'))

        session.load_file(scenario_file)

        assert list(session.end_run().files) == [str(scenario_file)]
