"""
logging_config.py — Logging Setup for the Pharmacy Order Service

Console output is always on (containers collect stdout). A log file is added
when LOG_FILE is set, which is the default for local runs.

Service modules log through module-level loggers (logging.getLogger(__name__))
and prefix order-scoped messages with "[Order: <id>]" so one order's lifecycle
can be grepped across matching, coordinator, relay and listener output.
"""

import logging
import sys

from . import config

LOG_FORMAT = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

# Client libraries that log every request/heartbeat at INFO
QUIET_LOGGERS = ("pika", "httpx", "httpcore", "grpc")


def setup_logging(level=None, log_file=None):
    """
    Configures the root logger once for the whole process.

    Args:
        level (str | int): Log level; defaults to config.LOG_LEVEL.
        log_file (str): File to append to; defaults to config.LOG_FILE. Empty disables the file.
    """
    level = level or config.LOG_LEVEL
    log_file = config.LOG_FILE if log_file is None else log_file

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name):
    return logging.getLogger(name)
