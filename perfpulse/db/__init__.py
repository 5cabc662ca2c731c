"""Database package."""

from perfpulse.db.session import Base, SessionLocal, engine, get_db, store_operation

__all__ = ["Base", "SessionLocal", "engine", "get_db", "store_operation"]
