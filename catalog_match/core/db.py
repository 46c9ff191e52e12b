"""
SQLite persistence for index versions, index entries and the embedding cache.
"""

import sqlite3
from pathlib import Path


def ensure_db_directory(db_path: str):
    """Ensure the database directory exists."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection shareable across threads; callers serialize writes."""
    ensure_db_directory(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(conn: sqlite3.Connection):
    """Initialize the database with required tables."""
    cursor = conn.cursor()

    # One row per index generation; status is building|active|retired|failed
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS index_versions (
            version INTEGER PRIMARY KEY,
            status TEXT NOT NULL,
            dimension INTEGER NOT NULL,
            base_version INTEGER,
            created_at TEXT NOT NULL,
            activated_at TEXT,
            retired_at TEXT
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS index_entries (
            version INTEGER NOT NULL REFERENCES index_versions(version) ON DELETE CASCADE,
            record_id TEXT NOT NULL,
            catalog_item_id TEXT NOT NULL,
            vector BLOB NOT NULL,
            metadata TEXT NOT NULL,
            timestamp TEXT,
            PRIMARY KEY (version, record_id)
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS embedding_cache (
            cache_key TEXT PRIMARY KEY,
            dimension INTEGER NOT NULL,
            vector BLOB NOT NULL,
            created_at TEXT NOT NULL
        )
    ''')

    cursor.execute('CREATE INDEX IF NOT EXISTS idx_index_versions_status ON index_versions(status)')

    conn.commit()


def health_check(conn: sqlite3.Connection) -> bool:
    """Check database health."""
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
        table_names = [row[0] for row in cursor.fetchall()]
        required_tables = ['index_versions', 'index_entries', 'embedding_cache']
        return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
