"""Pure HTTP response builders."""

from typing import Iterable, Optional

from static_server.domain.http_types import HttpRequest, HttpResponse, should_close


def _keep_alive(request: Optional[HttpRequest]) -> bool:
    return request is not None and not should_close(request)


def _status_response(
    status_line: str,
    request: Optional[HttpRequest],
    headers: Optional[dict[str, str]] = None,
    body: bytes = b"",
) -> HttpResponse:
    """Build a response that closes the connection unless the request allows reuse."""
    return HttpResponse(
        status_line,
        dict(headers or {}),
        body,
        not _keep_alive(request),
    )


def not_found_response(request: HttpRequest) -> HttpResponse:
    """Return a 404 response reusing the connection preference."""
    return _status_response("HTTP/1.1 404 Not Found", request)


def forbidden_response(request: Optional[HttpRequest]) -> HttpResponse:
    """Produce a 403 response honoring the caller's connection preference."""
    return _status_response("HTTP/1.1 403 Forbidden", request)


def bad_request_response(request: Optional[HttpRequest]) -> HttpResponse:
    """Produce a 400 response honoring the caller's connection preference."""
    return _status_response("HTTP/1.1 400 Bad Request", request)


def entity_too_large_response() -> HttpResponse:
    """Produce a 413 response that always closes the connection."""
    return HttpResponse("HTTP/1.1 413 Payload Too Large", {}, b"", True)


def headers_too_large_response() -> HttpResponse:
    """Produce a 431 response that always closes the connection."""
    return HttpResponse(
        "HTTP/1.1 431 Request Header Fields Too Large", {}, b"", True
    )


def internal_error_response(request: Optional[HttpRequest]) -> HttpResponse:
    return _status_response("HTTP/1.1 500 Internal Server Error", request)


def draining_response() -> HttpResponse:
    """Produce a 503 response indicating the server is draining."""
    return HttpResponse(
        "HTTP/1.1 503 Service Unavailable",
        {"Content-Type": "text/plain"},
        b"draining",
        True,
    )


def method_not_allowed_response(
    request: HttpRequest, allowed_methods: Iterable[str]
) -> HttpResponse:
    """Produce a 405 response enumerating the supported HTTP methods."""
    return _status_response(
        "HTTP/1.1 405 Method Not Allowed",
        request,
        {"Allow": ", ".join(allowed_methods)},
    )


def options_response(
    request: HttpRequest, allowed_methods: Iterable[str]
) -> HttpResponse:
    """Answer OPTIONS with the methods the resource supports."""
    return _status_response(
        "HTTP/1.1 200 OK", request, {"Allow": ", ".join(allowed_methods)}
    )


def unauthorized_response(request: HttpRequest, realm: str) -> HttpResponse:
    """Produce a 401 Basic challenge for the given realm."""
    return _status_response(
        "HTTP/1.1 401 Unauthorized",
        request,
        {"WWW-Authenticate": f'Basic realm="{realm}"'},
    )


def redirect_response(request: HttpRequest, location: str) -> HttpResponse:
    """Produce a 302 response pointing at ``location``."""
    return _status_response("HTTP/1.1 302 Found", request, {"Location": location})


def not_modified_response(
    request: HttpRequest, validators: dict[str, str]
) -> HttpResponse:
    """Produce a 304 response carrying the representation's validators."""
    return _status_response("HTTP/1.1 304 Not Modified", request, validators)


def range_not_satisfiable_response(request: HttpRequest, size: int) -> HttpResponse:
    """Produce a 416 response advertising the current representation size."""
    return _status_response(
        "HTTP/1.1 416 Range Not Satisfiable",
        request,
        {"Content-Range": f"bytes */{size}"},
    )
