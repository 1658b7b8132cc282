"""
Idempotency ledger: records which external events already produced effects.

Two tiers:

- ExpiringCache: in-process, capacity- and TTL-bounded. Advisory only. A hit
  short-circuits; a miss means nothing.
- SqliteLedgerStore: append-only durable tables in the data repository.
  Authoritative and never expires.

Every irreversible action (sending an email, creating a task, appending to a
document) must call has_processed_durable() right before executing, because
cache entries can be evicted or simply absent after a restart.

Durable layout:

    generated_agendas(event_id, title, client, timestamp)
    processing_log(timestamp, action_type, client, details, status)
    unmatched(id, timestamp, item_type, details, participant_emails, resolved)
    processed_events(namespace, external_id, client, metadata, status, created_at)

There are no uniqueness constraints; at most one row per key is enforced by
checking before writing.
"""

import json
import logging
import sqlite3
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

PROCESSED_MESSAGE = 'processed-message'
GENERATED_AGENDA = 'generated-agenda'
PENDING_DRAFT = 'pending-draft'
PROCESSED_MEETING = 'processed-meeting'
CREATED_TASK = 'created-task'
NOTIFIED = 'notified'

STATUS_PENDING = 'pending'
STATUS_PROCESSED = 'processed'


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class LedgerKey:
    namespace: str
    external_id: str

    def __str__(self) -> str:
        return f"{self.namespace}:{self.external_id}"


@dataclass
class LedgerEntry:
    key: LedgerKey
    client: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_utcnow)
    status: str = STATUS_PROCESSED


class ExpiringCache:
    """Bounded in-memory map of key -> expiry time.

    Oldest entries are evicted first when capacity is reached. Expired
    entries are dropped lazily on lookup and in bulk by compact().
    """

    def __init__(self, capacity: int = 1000, default_ttl: float = 3600.0,
                 ttl_by_namespace: dict[str, float] | None = None, clock=time.monotonic):
        self.capacity = capacity
        self.default_ttl = default_ttl
        self.ttl_by_namespace = dict(ttl_by_namespace or {})
        self._clock = clock
        self._entries: OrderedDict[LedgerKey, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def ttl_for(self, key: LedgerKey) -> float:
        return self.ttl_by_namespace.get(key.namespace, self.default_ttl)

    def put(self, key: LedgerKey) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = self._clock() + self.ttl_for(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def contains(self, key: LedgerKey) -> bool:
        expires_at = self._entries.get(key)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            del self._entries[key]
            return False
        return True

    def invalidate(self, key: LedgerKey | None = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def compact(self) -> int:
        """Remove expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, expires_at in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


class SqliteLedgerStore:
    """Durable repository over SQLite: append, find_by_key, list, get."""

    TABLES = ('generated_agendas', 'processing_log', 'unmatched', 'processed_events')

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        if str(db_path) != ':memory:':
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._memory_conn = sqlite3.connect(':memory:') if str(db_path) == ':memory:' else None
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        if self._memory_conn is not None:
            return self._memory_conn
        conn = sqlite3.connect(self.db_path, timeout=30)
        return conn

    def _close(self, conn: sqlite3.Connection) -> None:
        if conn is not self._memory_conn:
            conn.close()

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS generated_agendas (
                    event_id TEXT NOT NULL,
                    title TEXT,
                    client TEXT,
                    timestamp TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_agendas_event ON generated_agendas(event_id);

                CREATE TABLE IF NOT EXISTS processing_log (
                    timestamp TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    client TEXT,
                    details TEXT,
                    status TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS unmatched (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    item_type TEXT NOT NULL,
                    details TEXT,
                    participant_emails TEXT,
                    resolved INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS processed_events (
                    namespace TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    client TEXT,
                    metadata TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_events_key ON processed_events(namespace, external_id);
            """)
            conn.commit()
        finally:
            self._close(conn)

    def append(self, table: str, row: dict) -> int:
        """Insert one row. Returns the new rowid."""
        if table not in self.TABLES:
            raise ValueError(f"Unknown ledger table: {table}")
        columns = ', '.join(row)
        placeholders = ', '.join('?' for _ in row)
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            conn.commit()
            return cursor.lastrowid
        finally:
            self._close(conn)

    def list(self, table: str, where: dict | None = None, order_by: str = 'rowid') -> list[dict]:
        if table not in self.TABLES:
            raise ValueError(f"Unknown ledger table: {table}")
        where = where or {}
        sql = f"SELECT rowid AS _rowid, * FROM {table}"
        if where:
            sql += " WHERE " + ' AND '.join(f"{column} = ?" for column in where)
        sql += f" ORDER BY {order_by}"
        conn = self._connect()
        try:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(sql, tuple(where.values())).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.row_factory = None
            self._close(conn)

    def find_by_key(self, table: str, **key) -> dict | None:
        rows = self.list(table, where=key)
        return rows[0] if rows else None

    def get(self, table: str, rowid: int) -> dict | None:
        return self.find_by_key(table, rowid=rowid)

    def update(self, table: str, rowid: int, values: dict) -> None:
        if table not in self.TABLES:
            raise ValueError(f"Unknown ledger table: {table}")
        assignments = ', '.join(f"{column} = ?" for column in values)
        conn = self._connect()
        try:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE rowid = ?", (*values.values(), rowid))
            conn.commit()
        finally:
            self._close(conn)


class IdempotencyLedger:
    def __init__(self, store: SqliteLedgerStore, cache: ExpiringCache | None = None):
        self.store = store
        self.cache = cache if cache is not None else ExpiringCache()

    @classmethod
    def from_settings(cls, settings) -> 'IdempotencyLedger':
        cache = ExpiringCache(
            capacity=settings.cache_capacity,
            default_ttl=settings.message_ttl_days * 86400,
            ttl_by_namespace={
                NOTIFIED: settings.notified_ttl_hours * 3600,
                PROCESSED_MESSAGE: settings.message_ttl_days * 86400,
            },
        )
        return cls(SqliteLedgerStore(settings.ledger_path), cache)

    def has_processed(self, key: LedgerKey) -> bool:
        """Fast check: cache first, then the durable tier."""
        if self.cache.contains(key):
            return True
        if self.has_processed_durable(key):
            self.cache.put(key)
            return True
        return False

    def has_processed_durable(self, key: LedgerKey) -> bool:
        """Authoritative check against the durable tier only."""
        if key.namespace == GENERATED_AGENDA:
            return self.store.find_by_key('generated_agendas', event_id=key.external_id) is not None
        return self.store.find_by_key(
            'processed_events',
            namespace=key.namespace,
            external_id=key.external_id,
            status=STATUS_PROCESSED,
        ) is not None

    def mark_processed(self, key: LedgerKey, client: str | None = None, metadata: dict | None = None) -> None:
        """Commit the key as processed. Repeated calls add no further rows."""
        metadata = metadata or {}
        if self.has_processed_durable(key):
            self.cache.put(key)
            return

        if key.namespace == GENERATED_AGENDA:
            self.store.append('generated_agendas', {
                'event_id': key.external_id,
                'title': metadata.get('title'),
                'client': client,
                'timestamp': _utcnow(),
            })
        else:
            self.store.append('processed_events', {
                'namespace': key.namespace,
                'external_id': key.external_id,
                'client': client,
                'metadata': json.dumps(metadata, default=str),
                'status': STATUS_PROCESSED,
                'created_at': _utcnow(),
            })
        self.cache.put(key)
        logger.debug(f"Ledger: marked {key} processed")

    def mark_pending(self, key: LedgerKey, client: str | None = None, metadata: dict | None = None) -> None:
        """Record that work for `key` was started but is not yet complete."""
        existing = self.store.find_by_key('processed_events', namespace=key.namespace, external_id=key.external_id)
        if existing is not None:
            return
        self.store.append('processed_events', {
            'namespace': key.namespace,
            'external_id': key.external_id,
            'client': client,
            'metadata': json.dumps(metadata or {}, default=str),
            'status': STATUS_PENDING,
            'created_at': _utcnow(),
        })

    def get_pending(self, namespace: str) -> list[LedgerKey]:
        """Keys marked pending in `namespace` that were never marked processed."""
        rows = self.store.list('processed_events', where={'namespace': namespace})
        processed = {row['external_id'] for row in rows if row['status'] == STATUS_PROCESSED}
        pending = []
        for row in rows:
            if row['status'] == STATUS_PENDING and row['external_id'] not in processed:
                key = LedgerKey(namespace, row['external_id'])
                if key not in pending:
                    pending.append(key)
        return pending

    def get_entry(self, key: LedgerKey) -> LedgerEntry | None:
        if key.namespace == GENERATED_AGENDA:
            row = self.store.find_by_key('generated_agendas', event_id=key.external_id)
            if row is None:
                return None
            return LedgerEntry(key, row['client'], {'title': row['title']}, row['timestamp'])

        rows = self.store.list('processed_events', where={'namespace': key.namespace, 'external_id': key.external_id})
        if not rows:
            return None
        row = next((r for r in rows if r['status'] == STATUS_PROCESSED), rows[0])
        return LedgerEntry(key, row['client'], json.loads(row['metadata'] or '{}'), row['created_at'], row['status'])


class ProcessingLog:
    """Durable operational log. The system's only observability channel."""

    def __init__(self, store: SqliteLedgerStore):
        self.store = store

    def record(self, action_type: str, client: str | None, details: str, status: str = 'success') -> None:
        self.store.append('processing_log', {
            'timestamp': _utcnow(),
            'action_type': action_type,
            'client': client,
            'details': details[:2000] if details else details,
            'status': status,
        })

    def recent(self, limit: int = 50) -> list[dict]:
        rows = self.store.list('processing_log', order_by='rowid DESC')
        return rows[:limit]


class UnmatchedLog:
    """Audit sink for items no client could be matched to."""

    def __init__(self, store: SqliteLedgerStore):
        self.store = store

    def record(self, item_type: str, details: str, emails) -> int:
        return self.store.append('unmatched', {
            'timestamp': _utcnow(),
            'item_type': item_type,
            'details': details,
            'participant_emails': ', '.join(e for e in (emails or []) if isinstance(e, str)),
            'resolved': 0,
        })

    def resolve(self, row_id: int) -> bool:
        row = self.store.get('unmatched', row_id)
        if row is None:
            return False
        self.store.update('unmatched', row_id, {'resolved': 1})
        return True

    def list_open(self) -> list[dict]:
        return self.store.list('unmatched', where={'resolved': 0})
