"""
=============================================================================
LOGGING CONFIGURATION
=============================================================================

Every module logs through `logging.getLogger(__name__)`, so all records land
under the "echoserver" logger. This module decides what that logger's output
looks like.

=============================================================================
TWO OUTPUT FORMATS
=============================================================================

TEXT (default) - for humans at a terminal:

    2024-01-15 10:30:00 [INFO] echoserver.server: Server listening on 127.0.0.1:8080
    2024-01-15 10:30:02 [INFO] echoserver.core.session: [3f2a9c1e] 127.0.0.1:50312 connected

JSON - one object per line, for log aggregators (ELK, Loki, CloudWatch):

    {"timestamp": "2024-01-15T10:30:00", "level": "INFO",
     "logger": "echoserver.server", "thread": "echo-accept",
     "message": "Server listening on 127.0.0.1:8080"}

The thread name is part of the JSON record because with one worker per
session it is often the quickest way to follow a single conversation.

=============================================================================
"""

import json
import logging
from datetime import datetime


LOGGER_NAME = "echoserver"

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JSONFormatter(logging.Formatter):
    """Render each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """
    Configure the "echoserver" logger.

    Safe to call more than once: the handler installed by a previous call is
    replaced, not duplicated.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: "text" or "json".

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_echoserver_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT))
    handler._echoserver_handler = True
    logger.addHandler(handler)

    # Our handler prints it; don't print it twice through the root logger
    logger.propagate = False

    return logger
