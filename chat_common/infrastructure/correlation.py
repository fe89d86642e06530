"""
Connection correlation for logging.

Every frame is processed inside the receive loop of one connection epoch;
that loop sets ``connection_id_var`` so log lines emitted while applying an
event can be traced back to the connection that delivered it.
"""

from contextvars import ContextVar

# Context variable for the active connection epoch (task-local)
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")


def get_connection_id() -> str:
    """Get the connection id bound to the current task."""
    return connection_id_var.get()


class ConnectionIdFilter:
    """
    Logging filter that adds connection_id to log records.

    Usage:
        import logging
        handler = logging.StreamHandler()
        handler.addFilter(ConnectionIdFilter())
    """

    def filter(self, record) -> bool:
        record.connection_id = connection_id_var.get() or "-"
        return True
