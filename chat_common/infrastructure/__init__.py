"""
Cross-cutting infrastructure: log correlation.
"""

from chat_common.infrastructure.correlation import (
    ConnectionIdFilter,
    connection_id_var,
    get_connection_id,
)

__all__ = [
    "ConnectionIdFilter",
    "connection_id_var",
    "get_connection_id",
]
