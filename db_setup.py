import sqlite3
from typing import Iterator, Optional

from settings import get_settings

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        deletedAt DATETIME,
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    );
    CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email);
    CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber);
    CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId);
'''


def create_schema(conn: sqlite3.Connection):
    conn.executescript(SCHEMA)


def init_db(db_path: Optional[str] = None):
    conn = get_db_connection(db_path)
    try:
        create_schema(conn)
    finally:
        conn.close()


def get_db_connection(db_path: Optional[str] = None, timeout: Optional[float] = None) -> sqlite3.Connection:
    settings = get_settings()
    # isolation_level=None leaves transaction control to ContactStore.transaction()
    conn = sqlite3.connect(
        db_path or settings.database_path,
        timeout=settings.database_timeout if timeout is None else timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    return conn


def get_db() -> Iterator[sqlite3.Connection]:
    """Yield one connection per request and close it afterwards."""
    conn = get_db_connection()
    try:
        yield conn
    finally:
        conn.close()
