import dataclasses
import json
import logging
import os
import subprocess
from typing import Any, Dict, Optional, Tuple

import click

from .config import RunnerConfig, load_config
from .errors import WithPostgresReadyError
from .logging_utils import setup_logging
from .readiness import ReadinessPoller
from .runner import Runner

logger = logging.getLogger(__name__)


def _load_config(ctx) -> Dict[str, Any]:
    """Loads the configuration once per invocation and keeps it on the context."""
    if ctx.obj.get("CONFIG") is None:
        ctx.obj["CONFIG"] = load_config(ctx.obj["CONFIG_PATH"])
    return ctx.obj["CONFIG"]


def _runner_config(ctx) -> RunnerConfig:
    return RunnerConfig.from_mapping(_load_config(ctx))


def _setup_logging(ctx) -> None:
    config = _load_config(ctx)
    json_logs = ctx.obj["JSON_LOGS"] or config.get("logging", {}).get("json_format", False)
    level = logging.DEBUG if ctx.obj["VERBOSE"] else logging.INFO
    setup_logging(level=level, json_format=json_logs)


def timing_options(f):
    """Options shared by every command that polls a database."""
    f = click.option(
        "--poll-interval",
        type=float,
        help="Seconds between connection attempts. Overrides the config file.",
    )(f)
    f = click.option(
        "--connection-timeout",
        type=float,
        help="Seconds allowed for a single connection attempt. Overrides the config file.",
    )(f)
    f = click.option(
        "--startup-timeout",
        type=float,
        help="Seconds to wait for the database to become ready. Overrides the config file.",
    )(f)
    return f


def _apply_overrides(config: RunnerConfig, **overrides) -> RunnerConfig:
    changes = {k: v for k, v in overrides.items() if v is not None}
    return config.with_options(**changes) if changes else config


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True),
    help="Path to a custom config.toml file.",
)
@click.option(
    "--json-logs",
    is_flag=True,
    help="Output logs in JSON format. Overrides config file setting.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log every connection attempt.")
@click.pass_context
def cli(ctx, config_path, json_logs, verbose):
    """Run commands against a disposable, ready-to-use postgres database."""
    ctx.ensure_object(dict)
    ctx.obj["CONFIG_PATH"] = config_path
    ctx.obj["JSON_LOGS"] = json_logs
    ctx.obj["VERBOSE"] = verbose
    ctx.obj["CONFIG"] = None


@cli.command(context_settings={"ignore_unknown_options": True})
@click.option("--image", help="Postgres image to start. Overrides the config file.")
@click.option("--port", type=int, help="Port postgres listens on inside the container.")
@timing_options
@click.option(
    "--env-var",
    default="DATABASE_URL",
    show_default=True,
    help="Environment variable the connection URL is exported in.",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(
    ctx,
    image: Optional[str],
    port: Optional[int],
    startup_timeout: Optional[float],
    connection_timeout: Optional[float],
    poll_interval: Optional[float],
    env_var: str,
    command: Tuple[str],
):
    """
    Runs COMMAND with a ready postgres database.

    The connection URL is exported in the environment of COMMAND, and the
    container is removed when COMMAND exits. Use `--` to separate COMMAND
    from the options of this tool, e.g.:

        with-postgres-ready run -- pytest -x tests/
    """
    _setup_logging(ctx)
    config = _apply_overrides(
        _runner_config(ctx),
        image=image,
        port=port,
        startup_timeout=startup_timeout,
        connection_timeout=connection_timeout,
        poll_interval=poll_interval,
    )

    try:
        with Runner(config=config).ready() as url:
            click.secho(f"Postgres is ready, exporting it as ${env_var}.", fg="green", err=True)
            env = dict(os.environ, **{env_var: url})
            try:
                logger.info(f"Running command: {' '.join(command)}")
                completed = subprocess.run(list(command), env=env)
            except FileNotFoundError:
                click.secho(f"Command not found: {command[0]}", fg="red", err=True)
                returncode = 127
            else:
                returncode = completed.returncode
    except WithPostgresReadyError as e:
        click.secho(f"Could not provide a database: {e}", fg="red", err=True)
        raise click.Abort()

    ctx.exit(returncode)


@cli.command()
@timing_options
@click.argument("url")
@click.pass_context
def wait(
    ctx,
    startup_timeout: Optional[float],
    connection_timeout: Optional[float],
    poll_interval: Optional[float],
    url: str,
):
    """Waits until the database at URL accepts connections and answers queries."""
    _setup_logging(ctx)
    config = _apply_overrides(
        _runner_config(ctx),
        startup_timeout=startup_timeout,
        connection_timeout=connection_timeout,
        poll_interval=poll_interval,
    )

    try:
        attempts = ReadinessPoller().wait_until_ready(
            url,
            config.startup_timeout,
            config.poll_interval,
            config.connection_timeout,
        )
    except WithPostgresReadyError as e:
        click.secho(str(e), fg="red", err=True)
        raise click.Abort()
    click.secho(f"Database is ready (after {attempts} attempt(s)).", fg="green")


@cli.command(name="show-config")
@click.pass_context
def show_config(ctx):
    """Prints the runner configuration that would be used."""
    config = _runner_config(ctx)
    click.echo(click.style("[runner]", bold=True))
    for field in dataclasses.fields(config):
        value = getattr(config, field.name)
        if field.name == "password":
            value = "***"
        click.echo(f"{field.name} = {json.dumps(value)}")


if __name__ == "__main__":
    cli()
