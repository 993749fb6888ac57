"""
Write tests that rely on a postgres database being ready to accept connections.

A disposable postgres container is started, polled until it answers
queries, handed to the test as a connection URL and removed afterwards.
"""
from .api import awith_default_runner, with_default_runner, with_postgres_ready
from .config import RunnerConfig, load_config
from .errors import ProbeFailed, ProvisionError, ReadinessTimeout, WithPostgresReadyError
from .provisioner import ConnectionEndpoint, ContainerHandle, ContainerProvisioner
from .readiness import ReadinessPoller, check_connection, check_connection_async
from .runner import Runner, RunnerState

__all__ = [
    "awith_default_runner",
    "with_default_runner",
    "with_postgres_ready",
    "RunnerConfig",
    "load_config",
    "ProbeFailed",
    "ProvisionError",
    "ReadinessTimeout",
    "WithPostgresReadyError",
    "ConnectionEndpoint",
    "ContainerHandle",
    "ContainerProvisioner",
    "ReadinessPoller",
    "check_connection",
    "check_connection_async",
    "Runner",
    "RunnerState",
]
