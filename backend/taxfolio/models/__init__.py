from .database import Base, SessionLocal, create_db_engine, create_session_factory, engine, init_db
from .entities import CachedResult, Transaction, Upload

__all__ = [
    "Base",
    "SessionLocal",
    "create_db_engine",
    "create_session_factory",
    "engine",
    "init_db",
    "CachedResult",
    "Transaction",
    "Upload",
]
