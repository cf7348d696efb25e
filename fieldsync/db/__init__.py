"""Database access for the SQL-backed source store."""

from fieldsync.db.client import close_db, get_db_session, init_db

__all__ = ["close_db", "get_db_session", "init_db"]
