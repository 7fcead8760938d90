"""
Database initialization for the Evidentia pipeline service.

Creates the paper registry and stage cache tables. With `--reset` every
table is dropped and recreated.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from evidentia.config import settings
from evidentia.schema import SCHEMA_SQL, TABLES

logger = logging.getLogger(__name__)


def init_database(drop_tables: bool = False, database_path: Optional[str] = None):
    """
    Initialize the database schema.

    Args:
        drop_tables: If True, drop and recreate all tables. If False, only create missing tables.
        database_path: Override for settings.database_path
    """
    db_path = Path(database_path or settings.database_path)
    logger.info(f"Initializing database at: {db_path}")

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        existing_tables = {row[0] for row in cursor.fetchall()}
        logger.info(f"Found {len(existing_tables)} existing tables")

        if drop_tables:
            for table in TABLES:
                if table in existing_tables:
                    logger.info(f"Dropping table: {table}")
                    cursor.execute(f"DROP TABLE IF EXISTS {table}")
            conn.commit()

        cursor.executescript(SCHEMA_SQL)
        conn.commit()

        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        final_tables = [row[0] for row in cursor.fetchall()]
        logger.info(f"Database now has {len(final_tables)} tables: {', '.join(final_tables)}")

    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "--reset":
        print("WARNING: This will delete ALL cached stage results and registered papers!")
        response = input("Type 'yes' to confirm: ")
        if response.lower() == 'yes':
            init_database(drop_tables=True)
        else:
            print("Reset cancelled")
    else:
        init_database()
