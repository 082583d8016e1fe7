from .config import settings, get_settings, Settings
from .database import Base, ConnectionState, DatabaseManager, classify_error, create_db_engine

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "Base",
    "ConnectionState",
    "DatabaseManager",
    "classify_error",
    "create_db_engine",
]
