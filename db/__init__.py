"""Database package for the conversation policy engine."""
from db.connection import dispose_engine, get_db, get_engine, get_sessionmaker

__all__ = ["get_engine", "get_sessionmaker", "get_db", "dispose_engine"]
