import logging
import sys
from pythonjsonlogger.json import JsonFormatter

# Libraries that log every Docker API request at INFO/DEBUG.
NOISY_LOGGERS = ("testcontainers", "docker", "urllib3")


def setup_logging(level=logging.INFO, json_format=False, stream=None):
    """
    Configures the root logger for the with_postgres_ready CLI.

    Logs go to stderr by default so that they never mix with the output of
    the command being run against the database. Either standard text logging
    or structured JSON logging is used based on 'json_format'. Existing
    handlers are removed to ensure a clean setup.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)

    if json_format:
        formatter = JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s'
        )
        log_message = "Structured JSON logging initialized."
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        log_message = "Standard text logging initialized."
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Container runtime chatter is only useful when debugging.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)
    warnings_logger = logging.getLogger('py.warnings')
    warnings_logger.setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(log_message)
