from typing import Optional


class WithPostgresReadyError(Exception):
    """Base class for all errors raised by with_postgres_ready."""


class ProvisionError(WithPostgresReadyError):
    """
    The database container could not be started.

    Raised when the container runtime is unreachable, the image cannot be
    pulled, or the container exits right after starting. No resource exists
    when this is raised, so there is nothing to tear down.
    """


class ProbeFailed(WithPostgresReadyError):
    """A connection was opened but the verification query did not return the expected result."""


class ReadinessTimeout(WithPostgresReadyError):
    """
    The database did not become ready within the startup timeout.

    :param timeout: The startup timeout that elapsed, in seconds.
    :param attempts: How many connection attempts were made.
    :param last_error: The error of the final attempt, if it failed.
    """

    def __init__(self, timeout: float, attempts: int, last_error: Optional[BaseException] = None):
        self.timeout = timeout
        self.attempts = attempts
        self.last_error = last_error
        message = (
            f"Timed out waiting for postgres to be ready after {timeout:.2f} seconds "
            f"({attempts} attempt{'s' if attempts != 1 else ''})"
        )
        if last_error is not None:
            first_line = str(last_error).split('\n')[0]
            message += f": {type(last_error).__name__}: {first_line}"
        super().__init__(message)
