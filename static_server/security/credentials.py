"""Single-user credential record read once from the process environment."""

import hashlib
import hmac
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional

from static_server.domain.correlation_id import CorrelationLoggerAdapter

CREDENTIALS_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.security.credentials"), {}
)

USERNAME_ENV_VARIABLE = "USERNAME"
PASSWORD_ENV_VARIABLE = "PASSWORD"
DEFAULT_REALM = "static"
USER_ROLE = "user"

MD5_PREFIX = "MD5:"
_MD5_HEX = re.compile(r"[0-9A-Fa-f]{32}")


def _digest(algorithm: str, value: str, salt: bytes) -> bytes:
    hasher = hashlib.new(algorithm)
    hasher.update(salt)
    hasher.update(value.encode("utf-8"))
    return hasher.digest()


class PasswordCredential:
    """A password held only as a digest and checked in constant time.

    A configured value of the form ``MD5:<hex>`` is taken as a precomputed
    MD5 digest of the password. Any other value is the password itself and
    is stored as a salted SHA-256 digest.
    """

    def __init__(self, algorithm: str, digest: bytes, salt: bytes = b"") -> None:
        self._algorithm = algorithm
        self._digest = digest
        self._salt = salt

    @classmethod
    def from_configured(cls, value: str) -> "PasswordCredential":
        encoded = value[len(MD5_PREFIX) :]
        if value.startswith(MD5_PREFIX) and _MD5_HEX.fullmatch(encoded):
            return cls("md5", bytes.fromhex(encoded))
        salt = secrets.token_bytes(16)
        return cls("sha256", _digest("sha256", value, salt), salt)

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def check(self, candidate: str) -> bool:
        """Return True when ``candidate`` is the configured password."""
        return hmac.compare_digest(
            self._digest, _digest(self._algorithm, candidate, self._salt)
        )

    def __repr__(self) -> str:
        return f"PasswordCredential(algorithm={self._algorithm!r})"


@dataclass(frozen=True)
class Credentials:
    """The one identity allowed through the Basic authentication gate."""

    username: str
    password: PasswordCredential
    realm: str = DEFAULT_REALM
    roles: tuple[str, ...] = field(default=(USER_ROLE,))

    def has_role(self, role: str) -> bool:
        return role in self.roles


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


def load_credentials(
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[Credentials]:
    """Build Credentials when both USERNAME and PASSWORD are non-blank.

    Anything less, including only one of the two being set, disables
    authentication rather than failing startup.
    """
    source = os.environ if environ is None else environ
    username = source.get(USERNAME_ENV_VARIABLE)
    password = source.get(PASSWORD_ENV_VARIABLE)

    if _is_blank(username) or _is_blank(password):
        if not (_is_blank(username) and _is_blank(password)):
            CREDENTIALS_LOGGER.info(
                "Only one of USERNAME/PASSWORD is set; authentication disabled",
                extra={"event": "auth_partial_config", "auth": "disabled"},
            )
        return None

    return Credentials(
        username=username, password=PasswordCredential.from_configured(password)
    )
