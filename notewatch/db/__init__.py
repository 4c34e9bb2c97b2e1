"""Database helpers for notewatch."""

from __future__ import annotations

from .models import Base
from .session import create_engine_from_settings, create_memory_engine, init_schema, session_scope

__all__ = [
    "Base",
    "create_engine_from_settings",
    "create_memory_engine",
    "init_schema",
    "session_scope",
]
