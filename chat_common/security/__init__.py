"""
Security: credential helpers.
"""

from chat_common.security.tokens import (
    Credentials,
    build_credentials,
    create_server_token,
    create_user_token,
    decode_user_id,
    dev_token,
    is_expired,
)

__all__ = [
    "Credentials",
    "build_credentials",
    "create_server_token",
    "create_user_token",
    "decode_user_id",
    "dev_token",
    "is_expired",
]
