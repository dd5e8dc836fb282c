import os
import sqlite3

SCHEMA = """
    CREATE TABLE IF NOT EXISTS message_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT UNIQUE NOT NULL,
        channel_id TEXT NOT NULL,
        channel_name TEXT,
        thread_id TEXT,
        ts TEXT,
        user_id TEXT,
        text TEXT,
        file_paths JSON,
        fetched_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        claimed_at TEXT,
        claimed_by INTEGER,
        processed_at TEXT,
        error_message TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_queue_status ON message_queue(status, fetched_at);

    CREATE TABLE IF NOT EXISTS response_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        thread_id TEXT,
        response_text TEXT NOT NULL,
        created_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        claimed_at TEXT,
        claimed_by INTEGER,
        sent_at TEXT,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        not_before TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_response_status ON response_queue(status, created_at);

    CREATE TABLE IF NOT EXISTS responded_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT UNIQUE NOT NULL,
        channel_id TEXT NOT NULL,
        thread_id TEXT,
        response_text TEXT,
        responded_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS bot_threads (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_id TEXT NOT NULL,
        thread_id TEXT NOT NULL,
        last_checked TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(channel_id, thread_id)
    );

    CREATE TABLE IF NOT EXISTS bot_responses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_id TEXT NOT NULL,
        thread_id TEXT,
        response_text TEXT NOT NULL,
        posted_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_bot_responses_lookup ON bot_responses(channel_id, thread_id, posted_at);
"""


# Columns added after the first release: (table, column, declaration).
MIGRATIONS = [
    ("response_queue", "not_before", "TEXT"),
]


def _migrate(db):
    for table, column, declaration in MIGRATIONS:
        existing = {row["name"] for row in db.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")


def init_db(path):
    """Open the queue database, creating the schema on first use.

    The connection runs in autocommit mode; multi-statement updates open
    their own ``BEGIN IMMEDIATE`` transaction so concurrent daemons serialize
    on the SQLite write lock instead of racing.
    """
    if path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    db = sqlite3.connect(path, timeout=30, check_same_thread=False, isolation_level=None)
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA busy_timeout=30000")
    db.execute("PRAGMA synchronous=NORMAL")
    db.executescript(SCHEMA)
    _migrate(db)
    return db
