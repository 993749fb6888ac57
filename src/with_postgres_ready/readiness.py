import asyncio
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Optional

import psycopg

from .errors import ProbeFailed, ReadinessTimeout

logger = logging.getLogger(__name__)

# Failures that mean "not ready yet" rather than a bug in the caller.
PROBE_ERRORS = (psycopg.Error, OSError, ProbeFailed, asyncio.TimeoutError, TimeoutError)

HEALTH_QUERY = "SELECT 1;"


def _connect_options(connection_timeout: float) -> dict:
    # libpq only understands whole seconds and psycopg raises anything below
    # 2 to 2, so this is a backstop; the real bound is `asyncio.wait_for`.
    statement_timeout_ms = max(1, math.ceil(connection_timeout * 1000))
    return {
        "connect_timeout": max(2, math.ceil(connection_timeout)),
        "options": f"-c statement_timeout={statement_timeout_ms}",
    }


async def _check_connection_async(url: str, connection_timeout: float) -> None:
    conn = await psycopg.AsyncConnection.connect(url, **_connect_options(connection_timeout))
    async with conn:
        cursor = await conn.execute(HEALTH_QUERY)
        result = await cursor.fetchone()
    if not result or result[0] != 1:
        raise ProbeFailed(f"Health query returned {result!r}")


async def check_connection_async(url: str, connection_timeout: float) -> None:
    """
    Opens a connection to `url` and runs a trivial query.

    Authentication and a full round-trip are required, so a server that only
    accepts the socket (e.g. while initdb is still running) is not considered
    ready. The whole attempt, handshake and query included, is bounded by
    `connection_timeout`.

    :raises psycopg.Error: If the connection or the query fails.
    :raises asyncio.TimeoutError: If the attempt takes longer than `connection_timeout`.
    :raises ProbeFailed: If the query returns an unexpected result.
    """
    await asyncio.wait_for(_check_connection_async(url, connection_timeout), timeout=connection_timeout)


def check_connection(url: str, connection_timeout: float) -> None:
    """
    Blocking counterpart of `check_connection_async`, with the same bound.

    The attempt runs on a private event loop; when the calling thread already
    runs one, that loop lives in a worker thread instead.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(check_connection_async(url, connection_timeout))
        return
    with ThreadPoolExecutor(max_workers=1) as executor:
        executor.submit(asyncio.run, check_connection_async(url, connection_timeout)).result()


class ReadinessPoller:
    """
    Polls a database endpoint until it serves queries or a deadline passes.

    The probe, clock and sleep functions are injectable so the polling logic
    can be exercised without a database or real time passing.
    """

    def __init__(
        self,
        probe: Callable[[str, float], None] = check_connection,
        async_probe: Callable[[str, float], Awaitable[None]] = check_connection_async,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.probe = probe
        self.async_probe = async_probe
        self.clock = clock
        self.sleep = sleep
        self.async_sleep = async_sleep

    def wait_until_ready(
        self,
        url: str,
        startup_timeout: float,
        poll_interval: float,
        connection_timeout: float,
    ) -> int:
        """
        Blocks until `url` accepts connections and answers a query.

        :param url: The database URL to probe.
        :param startup_timeout: Seconds before giving up. Must be positive for
            any attempt to be made.
        :param poll_interval: Seconds to sleep between failed attempts.
        :param connection_timeout: Seconds allowed for a single attempt.
        :return: The number of attempts it took.
        :raises ReadinessTimeout: If no attempt succeeded before the deadline.
        """
        deadline = self.clock() + startup_timeout
        attempts = 0
        last_error: Optional[BaseException] = None

        while self.clock() < deadline:
            attempts += 1
            try:
                self.probe(url, connection_timeout)
            except PROBE_ERRORS as e:
                last_error = e
                self._log_attempt(attempts, e)
            else:
                if self._succeeded_in_time(deadline, attempts):
                    return attempts
                break

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            self.sleep(min(poll_interval, remaining))

        raise ReadinessTimeout(startup_timeout, attempts, last_error) from last_error

    async def wait_until_ready_async(
        self,
        url: str,
        startup_timeout: float,
        poll_interval: float,
        connection_timeout: float,
    ) -> int:
        """Async counterpart of `wait_until_ready`; yields to the event loop between attempts."""
        deadline = self.clock() + startup_timeout
        attempts = 0
        last_error: Optional[BaseException] = None

        while self.clock() < deadline:
            attempts += 1
            try:
                await self.async_probe(url, connection_timeout)
            except PROBE_ERRORS as e:
                last_error = e
                self._log_attempt(attempts, e)
            else:
                if self._succeeded_in_time(deadline, attempts):
                    return attempts
                break

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            await self.async_sleep(min(poll_interval, remaining))

        raise ReadinessTimeout(startup_timeout, attempts, last_error) from last_error

    def _succeeded_in_time(self, deadline: float, attempts: int) -> bool:
        if self.clock() > deadline:
            logger.warning(f"Attempt {attempts} succeeded only after the startup deadline had passed.")
            return False
        logger.info(f"Database ready after {attempts} attempt(s).")
        return True

    @staticmethod
    def _log_attempt(attempts: int, error: BaseException) -> None:
        error_msg = str(error).split('\n')[0]
        logger.debug(f"Attempt {attempts}: database not ready yet ({type(error).__name__}: {error_msg})")
