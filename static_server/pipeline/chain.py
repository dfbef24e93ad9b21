"""Assembly of the request handling chain."""

import logging
from typing import Optional, Protocol

from static_server.bootstrap.config import ServerConfig
from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.domain.http_types import HttpRequest, HttpResponse
from static_server.handlers.file_handler import StaticFileHandler
from static_server.security.basic_auth import BasicAuthGate
from static_server.security.credentials import Credentials

CHAIN_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.pipeline.chain"), {}
)


class RequestHandler(Protocol):  # pylint: disable=too-few-public-methods
    """Anything that turns a parsed request into a response."""

    def serve(self, request: HttpRequest) -> HttpResponse:
        ...


def build_handler_chain(
    config: ServerConfig, credentials: Optional[Credentials]
) -> RequestHandler:
    """Build the file handler, gated by Basic auth when credentials exist.

    The variant is chosen once here and never re-evaluated per request.
    """
    file_handler = StaticFileHandler(config.root_directory)
    if credentials is None:
        CHAIN_LOGGER.info(
            "Serving files without authentication",
            extra={
                "event": "handler_chain_built",
                "auth": "disabled",
                "directory": file_handler.root_directory,
            },
        )
        return file_handler

    CHAIN_LOGGER.info(
        "Serving files behind Basic authentication",
        extra={
            "event": "handler_chain_built",
            "auth": "basic",
            "realm": credentials.realm,
            "directory": file_handler.root_directory,
        },
    )
    return BasicAuthGate(file_handler, credentials)
