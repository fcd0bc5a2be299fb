"""Core infrastructure: config, database, logging, middleware, exceptions."""

from app.core.config import Settings, get_settings
from app.core.database import Base, get_engine, read_connection
from app.core.logging import get_logger, request_id_ctx, tenant_ctx, user_id_ctx

__all__ = [
    "Base",
    "Settings",
    "get_engine",
    "get_logger",
    "get_settings",
    "read_connection",
    "request_id_ctx",
    "tenant_ctx",
    "user_id_ctx",
]
