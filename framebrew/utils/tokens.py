"""Fernet-signed principal tokens for the event stream and API.

Browsers cannot set headers on an EventSource, so the stream takes its token
from the query string. Tokens are Fernet ciphertexts of
``{"user_id": ..., "org_id": ...}`` with a time-to-live enforced on decrypt,
which keeps them opaque and tamper-proof without a session store.

The STREAM_TOKEN_KEY environment variable must contain a valid Fernet key
generated via ``Fernet.generate_key()``.

Usage:
    from framebrew.utils.tokens import StreamTokenService

    tokens = StreamTokenService(get_stream_token_key(), ttl_seconds=3600)
    token = tokens.issue(user_id="u1", org_id="org1")
    principal = tokens.verify(token)  # Principal(user_id="u1", org_id="org1")

Security Notes:
    - NEVER log tokens
    - Rotating STREAM_TOKEN_KEY invalidates every outstanding token
"""

import json
from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken

from framebrew.exceptions import AuthenticationError, ConfigurationError


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    user_id: str
    org_id: str


class StreamTokenService:
    """Issue and verify principal tokens.

    Args:
        key: Fernet key (44 URL-safe base64 characters).
        ttl_seconds: Maximum token age accepted by ``verify``.

    Raises:
        ConfigurationError: If the key is not a valid Fernet key.
    """

    def __init__(self, key: str, ttl_seconds: int = 3600) -> None:
        try:
            self._cipher = Fernet(key.encode())
        except ValueError as e:
            raise ConfigurationError(
                "Invalid STREAM_TOKEN_KEY format: Fernet key must be 32 url-safe "
                "base64-encoded bytes"
            ) from e
        self.ttl_seconds = ttl_seconds

    def issue(self, user_id: str, org_id: str) -> str:
        payload = json.dumps({"user_id": user_id, "org_id": org_id})
        return self._cipher.encrypt(payload.encode()).decode()

    def verify(self, token: str | None) -> Principal:
        """Decrypt a token and return its principal.

        Raises:
            AuthenticationError: Missing, expired, tampered or malformed token.
        """
        if not token:
            raise AuthenticationError("Missing token")
        try:
            raw = self._cipher.decrypt(token.encode(), ttl=self.ttl_seconds)
            data = json.loads(raw)
            return Principal(user_id=str(data["user_id"]), org_id=str(data["org_id"]))
        except InvalidToken as e:
            raise AuthenticationError("Invalid or expired token") from e
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError("Malformed token payload") from e
