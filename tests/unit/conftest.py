"""Shared fixtures for unit tests."""

import logging

import pytest


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them.

    Level and handlers are restored too, since configure_logging replaces them.
    """
    logger = logging.getLogger("static_server")
    old_propagate = logger.propagate
    old_level = logger.level
    old_handlers = list(logger.handlers)
    logger.propagate = True
    yield
    for handler in logger.handlers:
        if handler not in old_handlers:
            handler.close()
    logger.handlers[:] = old_handlers
    logger.setLevel(old_level)
    logger.propagate = old_propagate
