"""
Logging utilities for the Keycloak migration engine.
"""

import logging
import sys

# HTTP and auth libraries log every request at DEBUG/INFO
NOISY_LOGGERS = ("urllib3", "google.auth", "google.auth.transport")


def setup_logging(
    verbose: bool = False, log_file: str = "keycloak-migration.log"
) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging, including HTTP client chatter
        log_file: Path to log file, or None to log to stdout only

    Returns:
        Logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)

    return logging.getLogger(__name__)
