"""
Credential helpers.

The realtime core treats a credential as an opaque token paired with the
user id it was issued for. Tokens are normally issued by the application
backend; these helpers cover server-side signing and development tokens.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any

import jwt

from chat_common.utils.exceptions import AuthError

# Header of every HS256 token, precomputed for dev tokens
_DEV_TOKEN_HEADER = "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9"
_DEV_TOKEN_SIGNATURE = "devtoken"


@dataclass(frozen=True, slots=True)
class Credentials:
    """
    Opaque credential blob handed to the connection manager.

    Attributes:
        user_id: Id of the user the token was issued for.
        token: Signed user token or dev token.
        user: Extra user fields sent with the connect request.
    """

    user_id: str
    token: str
    user: dict[str, Any] = field(default_factory=dict)

    @property
    def is_dev_token(self) -> bool:
        return self.token.endswith(f".{_DEV_TOKEN_SIGNATURE}")

    def user_payload(self) -> dict[str, Any]:
        """User object for the connect request, always carrying the id."""
        return {**self.user, "id": self.user_id}


def create_user_token(
    secret: str,
    user_id: str,
    exp: int | None = None,
    iat: int | None = None,
) -> str:
    """
    Sign a user token with the application secret.

    Args:
        secret: Application API secret.
        user_id: Id of the user the token authenticates.
        exp: Optional expiration as a unix timestamp.
        iat: Optional issued-at as a unix timestamp.

    Returns:
        HS256 JWT string.
    """
    if not secret:
        raise AuthError("An API secret is required to sign user tokens")
    if not user_id:
        raise AuthError("user_id is required to sign a user token")

    payload: dict[str, Any] = {"user_id": user_id}
    if exp is not None:
        payload["exp"] = int(exp)
    if iat is not None:
        payload["iat"] = int(iat)
    return jwt.encode(payload, secret, algorithm="HS256")


def create_server_token(secret: str) -> str:
    """Sign the token used by server-side clients."""
    if not secret:
        raise AuthError("An API secret is required to sign the server token")
    return jwt.encode({"server": True}, secret, algorithm="HS256")


def dev_token(user_id: str) -> str:
    """
    Build an unsigned development token.

    Accepted only by applications with auth checks disabled.
    """
    if not user_id:
        raise AuthError("user_id is required to build a dev token")
    payload = json.dumps({"user_id": user_id}, separators=(",", ":")).encode()
    encoded = base64.urlsafe_b64encode(payload).rstrip(b"=").decode()
    return ".".join((_DEV_TOKEN_HEADER, encoded, _DEV_TOKEN_SIGNATURE))


def decode_user_id(token: str) -> str:
    """
    Read the user id from a token without verifying its signature.

    Verification is the backend's job; this only lets the client check that
    a token matches the user it is about to connect as.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise AuthError("Token is not a valid JWT", reason=str(e)) from e

    user_id = claims.get("user_id")
    if not isinstance(user_id, str) or not user_id:
        raise AuthError("Token does not carry a user_id claim")
    return user_id


def is_expired(token: str, leeway: float = 0.0) -> bool:
    """Whether the token's exp claim is in the past. Tokens without exp never expire."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return True
    exp = claims.get("exp")
    if exp is None:
        return False
    return time.time() - leeway >= float(exp)


def build_credentials(
    user_id: str,
    token: str,
    user: dict[str, Any] | None = None,
) -> Credentials:
    """
    Validate that a token belongs to user_id and wrap both as Credentials.

    Raises:
        AuthError: If the token is malformed, expired or issued for another user.
    """
    token_user_id = decode_user_id(token)
    if token_user_id != user_id:
        raise AuthError(
            "Token was issued for a different user",
            user_id=user_id,
            token_user_id=token_user_id,
        )
    if is_expired(token):
        raise AuthError("Token is expired", user_id=user_id)
    return Credentials(user_id=user_id, token=token, user=dict(user or {}))
