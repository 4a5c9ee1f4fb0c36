import logging
import os
import sys

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for the CLI.

    Log records go to stderr so stdout stays reserved for command output
    (including ``--json`` documents).

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: WARNING.
    """
    env_level = os.getenv("LOG_LEVEL", "WARNING").upper()
    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.WARNING)

    root = logging.getLogger("skillhub")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(log_level)
    root.propagate = False
