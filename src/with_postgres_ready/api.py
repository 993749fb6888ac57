from typing import Any

from .runner import Runner, TestLogic


def with_default_runner(test_logic: TestLogic) -> Any:
    """
    Runs a test with a postgres container using the default configuration.

    The test is passed a postgres connection URL. It may be a plain function
    or a coroutine function. This is equivalent to
    ``Runner.new().run(test_logic)``.

    Example::

        def test_query():
            def check(url):
                with psycopg.connect(url) as conn:
                    assert conn.execute("SELECT 1 + 2").fetchone() == (3,)

            with_default_runner(check)

    :return: Whatever `test_logic` returns.
    :raises ProvisionError: If the container could not be started.
    :raises ReadinessTimeout: If postgres did not become ready in time.
    """
    return Runner.new().run(test_logic)


# Name kept for readers coming from the helper's documentation.
with_postgres_ready = with_default_runner


async def awith_default_runner(test_logic: TestLogic) -> Any:
    """Async counterpart of `with_default_runner`, for use inside a running event loop."""
    return await Runner.new().arun(test_logic)
