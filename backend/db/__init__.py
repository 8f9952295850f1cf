from .sqlite_client import SQLiteClient, close_sqlite_client, get_sqlite_client
from .routing import ContextRouter, get_context_router

__all__ = [
    "SQLiteClient",
    "ContextRouter",
    "get_sqlite_client",
    "close_sqlite_client",
    "get_context_router",
]
