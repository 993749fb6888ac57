"""
pytest fixtures providing a disposable postgres database.

Enable the plugin from a ``conftest.py``::

    pytest_plugins = ["with_postgres_ready.pytest_plugin"]

and request ``postgres_url`` in a test. One container is started per test
session. Override the ``postgres_runner`` fixture to customise the runner.
"""
import pytest

from .runner import Runner


def pytest_addoption(parser):
    group = parser.getgroup("with_postgres_ready")
    group.addoption(
        "--with-postgres-ready-config",
        action="store",
        default=None,
        help="Path to a TOML file configuring the disposable postgres database.",
    )


@pytest.fixture(scope="session")
def postgres_runner(request) -> Runner:
    """The runner used to provision the session database."""
    return Runner.from_config(request.config.getoption("--with-postgres-ready-config"))


@pytest.fixture(scope="session")
def postgres_url(postgres_runner):
    """
    Provides a connection URL to a containerized PostgreSQL instance that is
    ready to serve queries. The container is removed at the end of the session.
    """
    with postgres_runner.ready() as url:
        yield url
