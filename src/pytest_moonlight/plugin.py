"""pytest plugin for Lua coverage with moonlight.

This module provides the pytest plugin hooks that drive a coverage run
around the test session:

- ``pytest_configure`` loads configuration and begins the run.
- Tests run Lua code through the ``moonlight`` fixture.
- ``pytest_sessionfinish`` ends the run. Parallel workers write their
  snapshot to the data directory; the controller merges them.
- ``pytest_terminal_summary`` prints the coverage report.
"""

from __future__ import annotations

from io import StringIO
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from pytest_moonlight.config import VALID_STRATEGIES, load_config, merge_configs
from pytest_moonlight.model.serialization import write_snapshot
from pytest_moonlight.parallel.aggregator import SNAPSHOT_PATTERN, SnapshotAggregator, snapshot_file_name
from pytest_moonlight.reporting.console import ConsoleReporter
from pytest_moonlight.session import CoverageSession


if TYPE_CHECKING:
    from pytest_moonlight.config import CoverageConfig
    from pytest_moonlight.snapshot import CoverageSnapshot


logger = logging.getLogger(__name__)

WORKER_ENV_VAR = 'PYTEST_XDIST_WORKER'

session_key = pytest.StashKey['CoverageSession']()
config_key = pytest.StashKey['CoverageConfig']()
result_key = pytest.StashKey['CoverageSnapshot']()


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add command-line options for pytest-moonlight."""
    group = parser.getgroup('moonlight', 'Lua coverage with moonlight')
    group.addoption(
        '--moonlight',
        action='store_true',
        default=False,
        dest='moonlight',
        help='Measure coverage of the Lua files loaded by the tests',
    )
    group.addoption(
        '--moonlight-strategy',
        action='store',
        default=None,
        choices=sorted(VALID_STRATEGIES),
        dest='moonlight_strategy',
        help='Tracking strategy: hook or instrumentation (default: from pyproject.toml, else hook)',
    )
    group.addoption(
        '--moonlight-blocks',
        action='store_true',
        default=False,
        dest='moonlight_blocks',
        help='Record block entries (instrumentation strategy only)',
    )
    group.addoption(
        '--moonlight-data-dir',
        action='store',
        default=None,
        dest='moonlight_data_dir',
        help='Directory where parallel workers write their coverage snapshots',
    )


def _worker_id() -> str | None:
    return os.environ.get(WORKER_ENV_VAR)


def _clear_stale_snapshots(data_dir: Path) -> None:
    """Remove worker snapshots left behind by an earlier run."""
    if not data_dir.is_dir():
        return
    for stale in data_dir.glob(SNAPSHOT_PATTERN):
        logger.debug('Removing stale coverage snapshot %s', stale)
        stale.unlink(missing_ok=True)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest-moonlight based on command-line options."""
    if not config.option.moonlight:
        return

    file_config = load_config(Path(config.rootpath))
    coverage_config = merge_configs(
        file_config,
        cli_strategy=config.option.moonlight_strategy,
        cli_blocks=config.option.moonlight_blocks,
        cli_data_dir=config.option.moonlight_data_dir,
    )
    config.stash[config_key] = coverage_config

    if _worker_id() is None:
        _clear_stale_snapshots(coverage_config.data_path())

    session = CoverageSession()
    session.begin_run(coverage_config)
    config.stash[session_key] = session


def pytest_sessionfinish(session: pytest.Session) -> None:
    """End the coverage run and collect the results."""
    config = session.config
    coverage = config.stash.get(session_key, None)
    if coverage is None:
        return

    snapshot = coverage.end_run()
    coverage_config = config.stash[config_key]
    worker = _worker_id()

    if worker is not None:
        data_dir = coverage_config.data_path()
        data_dir.mkdir(parents=True, exist_ok=True)
        write_snapshot(snapshot, data_dir / snapshot_file_name(worker))
        return

    aggregator = SnapshotAggregator()
    aggregator.add(snapshot, origin='controller')
    aggregator.add_directory(coverage_config.data_path())
    config.stash[result_key] = aggregator.result()


def pytest_terminal_summary(terminalreporter: pytest.TerminalReporter) -> None:
    """Print the coverage report after the test summary."""
    snapshot = terminalreporter.config.stash.get(result_key, None)
    if snapshot is None:
        return

    buffer = StringIO()
    ConsoleReporter(output=buffer, root=str(terminalreporter.config.rootpath)).write_report(snapshot)
    terminalreporter.write(buffer.getvalue())


@pytest.fixture
def moonlight(request: pytest.FixtureRequest) -> CoverageSession:
    """Return the coverage session Lua code should run in.

    With ``--moonlight`` this is the session measuring the run. Without it,
    a fresh session is returned so the same tests run without coverage.
    """
    session = request.config.stash.get(session_key, None)
    if session is None:
        session = CoverageSession()
    return session
