"""HTTP Basic authentication gate wrapped around the file handler."""

import base64
import binascii
import hmac
import logging
from typing import Optional

from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.domain.http_types import HttpRequest, HttpResponse
from static_server.domain.response_builders import unauthorized_response
from static_server.security.credentials import USER_ROLE, Credentials

AUTH_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.security.basic_auth"), {}
)

BASIC_SCHEME = "basic"


def decode_basic_authorization(header_value: str) -> Optional[tuple[str, str]]:
    """Extract ``(username, password)`` from a Basic Authorization value."""
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != BASIC_SCHEME or not token.strip():
        return None
    try:
        raw = base64.b64decode(token.strip(), validate=True)
    except (binascii.Error, ValueError):
        return None
    try:
        decoded = raw.decode("utf-8")
    except UnicodeDecodeError:
        decoded = raw.decode("iso-8859-1")
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


class BasicAuthGate:
    """Require the configured identity on every path before serving."""

    def __init__(
        self, inner, credentials: Credentials, required_role: str = USER_ROLE
    ) -> None:
        self._inner = inner
        self._credentials = credentials
        self._required_role = required_role

    @property
    def realm(self) -> str:
        return self._credentials.realm

    def _rejection_reason(self, request: HttpRequest) -> Optional[str]:
        header_value = request.headers.get("authorization")
        if header_value is None:
            return "missing_credentials"
        presented = decode_basic_authorization(header_value)
        if presented is None:
            return "malformed_credentials"
        username, password = presented
        # Password is checked even when the username differs.
        username_ok = hmac.compare_digest(
            username.encode("utf-8"), self._credentials.username.encode("utf-8")
        )
        password_ok = self._credentials.password.check(password)
        if not (username_ok and password_ok):
            return "invalid_credentials"
        if not self._credentials.has_role(self._required_role):
            return "missing_role"
        return None

    def serve(self, request: HttpRequest) -> HttpResponse:
        """Delegate to the wrapped handler or answer with a 401 challenge."""
        reason = self._rejection_reason(request)
        if reason is None:
            return self._inner.serve(request)

        if reason == "missing_credentials":
            if AUTH_LOGGER.logger.isEnabledFor(logging.DEBUG):
                AUTH_LOGGER.debug(
                    "Credentials required",
                    extra={"event": "auth_challenge", "route": request.path},
                )
        else:
            AUTH_LOGGER.warning(
                "Authentication failed",
                extra={
                    "event": "auth_failed",
                    "route": request.path,
                    "reason": reason,
                },
            )
        return unauthorized_response(request, self.realm)
