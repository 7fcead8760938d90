import sqlite3
from contextlib import contextmanager
from typing import Optional

from evidentia.config import settings


def get_connection(database_path: Optional[str] = None):
    """Get a database connection"""
    conn = sqlite3.connect(database_path or settings.database_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db(database_path: Optional[str] = None):
    """Context manager for database connections"""
    conn = get_connection(database_path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
