import pytest
import docker
from docker.errors import DockerException
from unittest.mock import MagicMock

from with_postgres_ready.provisioner import ConnectionEndpoint, ContainerHandle

pytest_plugins = ["pytester"]


class FakeClock:
    """A monotonic clock that only moves when something sleeps or advances it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    async def async_sleep(self, seconds):
        self.sleep(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def endpoint():
    return ConnectionEndpoint(
        host="localhost",
        port=49153,
        user="postgres",
        password="postgres",
        database="postgres",
    )


@pytest.fixture
def handle(endpoint):
    """A handle to a container that only exists as a mock."""
    return ContainerHandle(
        container=MagicMock(),
        container_id="f00dfeedbeef0123456789",
        endpoint=endpoint,
    )


@pytest.fixture(scope="session")
def docker_available():
    """
    Skips integration tests when no Docker daemon can be reached.
    """
    try:
        client = docker.from_env()
        client.ping()
        client.close()
    except DockerException as e:
        pytest.skip(f"Docker daemon not available: {e}")
    return True
