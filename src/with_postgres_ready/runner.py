import asyncio
import enum
import inspect
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncIterator, Callable, Iterator, List, Optional

from .config import Duration, RunnerConfig, load_config
from .provisioner import ContainerHandle, ContainerProvisioner
from .readiness import ReadinessPoller

logger = logging.getLogger(__name__)

TestLogic = Callable[[str], Any]


class RunnerState(enum.Enum):
    IDLE = "idle"
    PROVISIONING = "provisioning"
    POLLING = "polling"
    EXECUTING = "executing"
    TEARING_DOWN = "tearing down"
    DONE = "done"
    FAILED = "failed"


async def _await(awaitable):
    return await awaitable


class Runner:
    """
    Runs test logic against a disposable postgres database.

    Each run starts a fresh container, waits until postgres answers queries,
    hands the connection URL to the test logic and removes the container
    afterwards, whatever the outcome.

    Settings are chained before running::

        Runner.new().connection_timeout(5).run(lambda url: ...)

    Every setter returns a new Runner; a Runner is used for exactly one run.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        provisioner: Optional[ContainerProvisioner] = None,
        poller: Optional[ReadinessPoller] = None,
    ):
        self.config = config or RunnerConfig()
        self.provisioner = provisioner or ContainerProvisioner()
        self.poller = poller or ReadinessPoller()
        self.state = RunnerState.IDLE
        self.history: List[RunnerState] = [RunnerState.IDLE]
        self._handle: Optional[ContainerHandle] = None

    @classmethod
    def new(cls) -> "Runner":
        """Creates a runner with the default configuration."""
        return cls()

    @classmethod
    def from_config(cls, config_path: Optional[str] = None, **kwargs) -> "Runner":
        """
        Creates a runner from a TOML configuration file.

        :param config_path: Path to a TOML file overriding the packaged defaults.
        :param kwargs: Passed through to the `Runner` constructor.
        """
        config = RunnerConfig.from_mapping(load_config(config_path))
        return cls(config=config, **kwargs)

    # --- Fluent configuration ---

    def _with(self, **changes) -> "Runner":
        return Runner(self.config.with_options(**changes), self.provisioner, self.poller)

    def image(self, image: str) -> "Runner":
        """
        Set the postgres image to use, e.g. `postgres:16-alpine`.
        See <https://hub.docker.com/_/postgres> for available tags.

        Defaults to `postgres:15.3-alpine3.18`.
        """
        return self._with(image=image)

    def port(self, port: int) -> "Runner":
        """
        Set the port postgres listens on inside the container.

        Defaults to 5432.
        """
        return self._with(port=port)

    def startup_timeout(self, timeout: Duration) -> "Runner":
        """
        Set how long to wait for the database to become ready.

        Defaults to 30 seconds.
        """
        return self._with(startup_timeout=timeout)

    def connection_timeout(self, timeout: Duration) -> "Runner":
        """
        Set how long a single connection attempt may take.

        Defaults to 2 seconds.
        """
        return self._with(connection_timeout=timeout)

    def poll_interval(self, interval: Duration) -> "Runner":
        """
        Set the interval between connection attempts.

        Defaults to 100 milliseconds.
        """
        return self._with(poll_interval=interval)

    # --- Execution ---

    def _transition(self, state: RunnerState) -> None:
        logger.debug(f"Runner state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _begin(self) -> None:
        if self.state is not RunnerState.IDLE:
            raise RuntimeError(
                f"This Runner has already been used (state: {self.state.value}). Create a new one for each run."
            )
        logger.info(f"Preparing postgres '{self.config.image}' for test run...")
        self._transition(RunnerState.PROVISIONING)

    def _teardown(self, failed: bool) -> None:
        self._transition(RunnerState.TEARING_DOWN)
        handle, self._handle = self._handle, None
        try:
            self.provisioner.stop(handle)
        except Exception as e:
            # A teardown failure must not replace the outcome of the run.
            logger.error(f"Teardown failed: {e}", exc_info=True)
        self._transition(RunnerState.FAILED if failed else RunnerState.DONE)

    def _log_failure(self, error: BaseException) -> None:
        logger.error(f"Run failed while {self.state.value}: {type(error).__name__}: {error}")

    @contextmanager
    def ready(self) -> Iterator[str]:
        """
        Provisions a database and yields its URL once it is ready.

        The container is removed when the block exits, including when it
        raises. Exceptions from the block are re-raised unchanged.

        :raises ProvisionError: If the container could not be started.
        :raises ReadinessTimeout: If postgres did not become ready in time.
        """
        self._begin()
        config = self.config
        try:
            self._handle = self.provisioner.start(config)
        except BaseException as e:
            self._log_failure(e)
            self._transition(RunnerState.FAILED)
            raise

        url = self._handle.endpoint.url
        failed = False
        try:
            self._transition(RunnerState.POLLING)
            self.poller.wait_until_ready(
                url,
                config.startup_timeout,
                config.poll_interval,
                config.connection_timeout,
            )
            self._transition(RunnerState.EXECUTING)
            yield url
        except BaseException as e:
            failed = True
            self._log_failure(e)
            raise
        finally:
            self._teardown(failed)

    def run(self, test_logic: TestLogic) -> Any:
        """
        Runs `test_logic` with the URL of a ready database.

        `test_logic` may be a plain function or a coroutine function; a
        returned awaitable is driven to completion with `asyncio.run`, so
        from inside a running event loop use `arun` instead.

        :return: Whatever `test_logic` returns.
        :raises ProvisionError: If the container could not be started.
        :raises ReadinessTimeout: If postgres did not become ready in time.
        """
        with self.ready() as url:
            result = test_logic(url)
            if inspect.isawaitable(result):
                result = asyncio.run(_await(result))
            return result

    @asynccontextmanager
    async def aready(self) -> AsyncIterator[str]:
        """
        Async counterpart of `ready`.

        Provisioning and teardown talk to Docker from a worker thread and
        polling sleeps with `asyncio.sleep`, so the event loop is never blocked.
        """
        self._begin()
        config = self.config
        loop = asyncio.get_running_loop()
        starting = loop.run_in_executor(None, self.provisioner.start, config)
        try:
            self._handle = await asyncio.shield(starting)
        except asyncio.CancelledError as e:
            # The worker thread keeps going; remove whatever it manages to start.
            starting.add_done_callback(self._stop_orphan)
            self._log_failure(e)
            self._transition(RunnerState.FAILED)
            raise
        except BaseException as e:
            self._log_failure(e)
            self._transition(RunnerState.FAILED)
            raise

        url = self._handle.endpoint.url
        failed = False
        try:
            self._transition(RunnerState.POLLING)
            await self.poller.wait_until_ready_async(
                url,
                config.startup_timeout,
                config.poll_interval,
                config.connection_timeout,
            )
            self._transition(RunnerState.EXECUTING)
            yield url
        except BaseException as e:
            failed = True
            self._log_failure(e)
            raise
        finally:
            await self._await_teardown(loop, failed)

    async def arun(self, test_logic: TestLogic) -> Any:
        """Async counterpart of `run`; awaits `test_logic` if it returns an awaitable."""
        async with self.aready() as url:
            result = test_logic(url)
            if inspect.isawaitable(result):
                result = await result
            return result

    async def _await_teardown(self, loop: asyncio.AbstractEventLoop, failed: bool) -> None:
        """Runs teardown in a worker thread and waits for it even if cancelled again meanwhile."""
        teardown = loop.run_in_executor(None, self._teardown, failed)
        cancelled = False
        while not teardown.done():
            try:
                await asyncio.shield(teardown)
            except asyncio.CancelledError:
                cancelled = True
        if cancelled and not failed:
            raise asyncio.CancelledError()

    def _stop_orphan(self, future: "asyncio.Future[ContainerHandle]") -> None:
        if future.cancelled() or future.exception() is not None:
            return
        # Done-callbacks run on the event loop; Docker calls must not.
        future.get_loop().run_in_executor(None, self.provisioner.stop, future.result())
