import json
import logging
import os
import sqlite3

logger = logging.getLogger(__name__)

DATABASE = os.environ.get('RIDEHUB_DATABASE', 'ridehub.db')

BOOKINGS_KEY = 'bookings'
MESSAGES_KEY = 'messages'
USERS_KEY = 'users'
CHAT_MESSAGES_KEY = 'chatMessages'


class ConflictError(Exception):
    code = 'CONFLICT'

    def __init__(self, key, expected_revision, current_revision):
        super().__init__(
            f'{key} changed since it was read (revision {expected_revision}, now {current_revision})'
        )
        self.key = key
        self.expected_revision = expected_revision
        self.current_revision = current_revision
        self.message = 'The data changed while you were working. Reload and try again.'


KV_STORE_SCHEMA = '''
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        revision INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
'''


def get_db_connection():
    """Create a database connection, creating the store table on first use"""
    conn = sqlite3.connect(DATABASE)
    conn.row_factory = sqlite3.Row
    conn.execute(KV_STORE_SCHEMA)
    conn.commit()
    return conn


def init_store():
    """Create the key-value table used for every collection."""
    conn = get_db_connection()
    conn.close()
    logger.info('Key-value store ready at %s', DATABASE)


def read_key(key, default=None):
    """Return (value, revision) for a key; absent keys read as (default, 0)."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('SELECT value, revision FROM kv_store WHERE key = ?', (key,))
    row = cursor.fetchone()
    conn.close()

    if not row:
        return default, 0
    try:
        return json.loads(row['value']), row['revision']
    except ValueError:
        logger.warning('Discarding unreadable value stored under %s', key)
        return default, row['revision']


def write_key(key, value, expected_revision=None):
    """Replace the value stored under key and return the new revision.

    With expected_revision, the write only lands if nobody else wrote the
    key since that revision was read.
    """
    payload = json.dumps(value)
    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        cursor.execute('BEGIN IMMEDIATE')
        cursor.execute('SELECT revision FROM kv_store WHERE key = ?', (key,))
        row = cursor.fetchone()
        current_revision = row['revision'] if row else 0

        if expected_revision is not None and expected_revision != current_revision:
            conn.rollback()
            logger.warning(
                'Rejected stale write to %s (expected revision %s, found %s)',
                key, expected_revision, current_revision,
            )
            raise ConflictError(key, expected_revision, current_revision)

        if row:
            cursor.execute(
                '''
                UPDATE kv_store
                SET value = ?, revision = revision + 1, updated_at = CURRENT_TIMESTAMP
                WHERE key = ? AND revision = ?
                ''',
                (payload, key, current_revision),
            )
        else:
            cursor.execute(
                'INSERT INTO kv_store (key, value, revision) VALUES (?, ?, 1)',
                (key, payload),
            )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()

    return current_revision + 1


class Collection:
    """An ordered list of JSON records stored under one key."""

    def __init__(self, key):
        self.key = key

    def snapshot(self):
        records, revision = read_key(self.key, default=[])
        if not isinstance(records, list):
            records = []
        return records, revision

    def load(self):
        return self.snapshot()[0]

    def save(self, records, revision=None):
        return write_key(self.key, list(records), expected_revision=revision)

    def append(self, record):
        records, revision = self.snapshot()
        records.append(record)
        self.save(records, revision=revision)
        return record


class BookingStore(Collection):
    """Bookings, looked up by their id (or createdAt for older records)."""

    def __init__(self):
        super().__init__(BOOKINGS_KEY)

    @staticmethod
    def matches(booking, key):
        if not key:
            return False
        return booking.get('id') == key or booking.get('createdAt') == key

    def find_by_key(self, key):
        for booking in self.load():
            if self.matches(booking, key):
                return booking
        return None

    def delete(self, key):
        bookings, revision = self.snapshot()
        remaining = [booking for booking in bookings if not self.matches(booking, key)]
        if len(remaining) == len(bookings):
            return False
        self.save(remaining, revision=revision)
        return True
