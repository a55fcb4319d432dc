"""
Component logger factory.

Every BlogMailer module logs through a named stdlib logger under the
"BlogMailer" hierarchy. This module provides a factory returning the five
level functions so call sites stay terse and uniform across components.

Usage:
    from shared.log import create_logger
    log_trace, log_debug, log_info, log_warn, log_error = create_logger("Worker")
    log_info("Processed batch of 50")  # -> BlogMailer.Worker INFO Processed batch of 50
"""

import logging

ROOT_LOGGER_NAME = "BlogMailer"

# Finer than DEBUG, used for per-job chatter
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def get_logger(component: str = "") -> logging.Logger:
    """Return the stdlib logger for a component ("BlogMailer.<component>")."""
    name = f"{ROOT_LOGGER_NAME}.{component}" if component else ROOT_LOGGER_NAME
    return logging.getLogger(name)


def create_logger(component: str = ""):
    """Create log functions for a component.

    Args:
        component: Component name suffix. If provided, the logger is
                   "BlogMailer.{component}", otherwise "BlogMailer".

    Returns:
        Tuple of (log_trace, log_debug, log_info, log_warn, log_error) functions.
    """
    logger = get_logger(component)

    def log_trace(msg): logger.log(TRACE, msg)
    def log_debug(msg): logger.debug(msg)
    def log_info(msg): logger.info(msg)
    def log_warn(msg): logger.warning(msg)
    def log_error(msg): logger.error(msg)

    return log_trace, log_debug, log_info, log_warn, log_error
