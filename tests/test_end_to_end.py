import asyncio

import docker
import psycopg
import pytest
from docker.errors import NotFound

from with_postgres_ready import (
    ContainerProvisioner,
    ProvisionError,
    ReadinessTimeout,
    Runner,
    with_default_runner,
)

pytestmark = [pytest.mark.integration, pytest.mark.usefixtures("docker_available")]


class RecordingProvisioner(ContainerProvisioner):
    """Remembers the handles it hands out so tests can inspect them afterwards."""

    def __init__(self):
        super().__init__()
        self.handles = []

    def start(self, config):
        handle = super().start(config)
        self.handles.append(handle)
        return handle


def assert_container_removed(container_id):
    client = docker.from_env()
    try:
        with pytest.raises(NotFound):
            client.containers.get(container_id)
    finally:
        client.close()


def query_sum(url):
    with psycopg.connect(url) as conn:
        row = conn.execute("SELECT 1 + 2").fetchone()
    assert row == (3,)
    return row[0]


def test_default_runner_end_to_end():
    assert with_default_runner(query_sum) == 3


def test_container_is_removed_after_run():
    provisioner = RecordingProvisioner()
    Runner(provisioner=provisioner).run(query_sum)

    [handle] = provisioner.handles
    assert handle.stopped
    assert_container_removed(handle.container_id)


def test_container_is_removed_when_test_fails():
    provisioner = RecordingProvisioner()

    def failing_test(url):
        query_sum(url)
        raise AssertionError("the test itself failed")

    with pytest.raises(AssertionError, match="the test itself failed"):
        Runner(provisioner=provisioner).run(failing_test)

    assert_container_removed(provisioner.handles[0].container_id)


def test_can_use_bullseye_image():
    assert Runner.new().image("postgres:12.15-bullseye").run(query_sum) == 3


def test_async_test_logic():
    async def test_logic(url):
        async with await psycopg.AsyncConnection.connect(url) as conn:
            cursor = await conn.execute("SELECT 1 + 2")
            return (await cursor.fetchone())[0]

    assert Runner.new().run(test_logic) == 3
    assert asyncio.run(Runner.new().arun(test_logic)) == 3


def test_misconfigured_port_times_out_and_cleans_up():
    provisioner = RecordingProvisioner()
    runner = (
        Runner(provisioner=provisioner)
        .port(5433)  # postgres does not listen here
        .startup_timeout(3)
        .connection_timeout(1)
    )

    with pytest.raises(ReadinessTimeout) as exc_info:
        runner.run(query_sum)

    assert exc_info.value.attempts >= 1
    assert exc_info.value.last_error is not None
    assert_container_removed(provisioner.handles[0].container_id)


def test_missing_image_is_a_provision_error():
    with pytest.raises(ProvisionError):
        Runner.new().image("postgres:this-tag-does-not-exist").run(query_sum)
