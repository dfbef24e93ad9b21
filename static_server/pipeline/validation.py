"""Request validation utilities for the static file server."""

import re
from typing import Optional

from static_server.domain.http_types import HttpRequest, HttpResponse
from static_server.domain.response_builders import (
    bad_request_response,
    forbidden_response,
)

_METHOD_TOKEN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")


class RequestEntityTooLarge(Exception):
    """Raised when a request body exceeds configured limits."""


class RequestHeadersTooLarge(Exception):
    """Raised when the request line and headers exceed configured limits."""


def enforce_method_token(request: HttpRequest) -> Optional[HttpResponse]:
    """Reject methods that are not valid HTTP tokens."""
    if _METHOD_TOKEN.fullmatch(request.method):
        return None
    return bad_request_response(request)


def enforce_safe_path(request: HttpRequest) -> Optional[HttpResponse]:
    """Validate that the path conforms to sandbox safety requirements."""
    if not request.path.startswith("/") or "\x00" in request.path:
        return bad_request_response(request)
    if ".." in request.path.split("/"):
        return forbidden_response(request)
    return None


def enforce_content_length(request: HttpRequest) -> Optional[HttpResponse]:
    """Ensure a declared Content-Length matches the body that was read."""
    declared = request.headers.get("content-length")
    if declared is None:
        return None
    try:
        expected = int(declared)
    except ValueError:
        return bad_request_response(request)
    if expected != len(request.body):
        return bad_request_response(request)
    return None


def validate_request(request: HttpRequest) -> Optional[HttpResponse]:
    """Return an error response when the request fails validation checks."""
    for check in (enforce_method_token, enforce_safe_path, enforce_content_length):
        error_response = check(request)
        if error_response is not None:
            return error_response
    return None
