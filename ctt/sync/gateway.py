# -*- coding: utf-8 -*-
"""
Remote Gateway

Talks to the shared remote database. Any SQLAlchemy URL works; production
uses PostgreSQL (psycopg2), tests use SQLite files.

Remote shape: one table, sync_records, holding the latest version of every
synced row keyed by (table_name, record_id). Deletes are kept as tombstones
so other instances learn about them.
"""

import json
import logging
import socket
from typing import Optional, List, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from sqlalchemy import (
    MetaData, Table, Column, Index, String, Text, Boolean,
    create_engine, inspect, select, update, and_, or_, text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import (
    ArgumentError, DisconnectionError, InterfaceError, NoSuchTableError,
    OperationalError, ProgrammingError, TimeoutError as PoolTimeoutError,
)

from ctt.settings import settings
from .errors import SyncError, ConnectivityFailure, AuthFailure, SchemaFailure
from .models import ChangeRecord, SyncOperation, utc_now

logger = logging.getLogger(__name__)

REMOTE_TABLE = 'sync_records'

metadata = MetaData()

sync_records = Table(
    REMOTE_TABLE, metadata,
    Column('table_name', String(64), primary_key=True),
    Column('record_id', String(64), primary_key=True),
    Column('payload', Text),
    Column('is_deleted', Boolean, nullable=False, default=False),
    Column('updated_at', String(32), nullable=False),
    Column('origin_instance_id', String(36), nullable=False),
    Column('synced_at', String(32), nullable=False),
    Index('idx_sync_records_synced_at', 'synced_at'),
)


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

AUTH_MARKERS = (
    'password authentication failed',
    'no pg_hba.conf entry',
    'permission denied',
    'authentication failed',
    'invalid api key',
)

CONNECTIVITY_MARKERS = (
    'timeout',
    'timed out',
    'could not connect',
    'connection refused',
    'could not translate host name',
    'name or service not known',
    'server closed the connection',
    'connection reset',
    'unable to open database file',
    'network is unreachable',
    'connection terminated',
    'database is locked',
)

SCHEMA_MARKERS = (
    'no such table',
    'does not exist',
    'no such column',
    'undefined column',
)


def classify_error(exc: BaseException) -> SyncError:
    """Map a driver or HTTP exception onto the sync error hierarchy."""
    if isinstance(exc, SyncError):
        return exc

    message = str(exc)
    lowered = message.lower()

    if any(marker in lowered for marker in AUTH_MARKERS):
        return AuthFailure(f"Remote rejected the credentials: {message}")

    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                        PoolTimeoutError, DisconnectionError, socket.timeout)):
        return ConnectivityFailure(f"Remote unreachable: {message}")

    if any(marker in lowered for marker in CONNECTIVITY_MARKERS):
        return ConnectivityFailure(f"Remote unreachable: {message}")

    if isinstance(exc, (ProgrammingError, NoSuchTableError)) or \
            any(marker in lowered for marker in SCHEMA_MARKERS):
        return SchemaFailure(f"Remote schema mismatch: {message}")

    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return ConnectivityFailure(f"Remote unreachable: {message}")

    if isinstance(exc, ArgumentError):
        return SyncError(f"Invalid database URL: {message}")

    return SyncError(message)


# ============================================================
# GATEWAY
# ============================================================

class RemoteGateway:
    """
    Remote store client.

    Usage:
        gateway = RemoteGateway(config.database_url, config.remote_endpoint,
                                config.credentials.restricted_key)
        ok, message = gateway.verify_schema()
        gateway.push(records)
    """

    def __init__(self, database_url: str, remote_endpoint: str = "",
                 restricted_key: str = "", timeout: int = None,
                 statement_timeout_ms: int = None, batch_size: int = None):
        """
        Args:
            database_url: SQLAlchemy URL of the remote database
            remote_endpoint: REST endpoint checked by test_connection (optional)
            restricted_key: Key sent with the REST endpoint check
            timeout: Connect/request timeout (seconds)
            statement_timeout_ms: Per-statement timeout (PostgreSQL)
            batch_size: Records per push transaction
        """
        self.database_url = database_url
        self.remote_endpoint = remote_endpoint
        self.restricted_key = restricted_key
        self.timeout = timeout or settings.REMOTE_TIMEOUT_SECONDS
        self.statement_timeout_ms = statement_timeout_ms or settings.REMOTE_STATEMENT_TIMEOUT_MS
        self.batch_size = batch_size or settings.PUSH_BATCH_SIZE

        self._engine: Optional[Engine] = None
        self._session = self._create_session()

    def _create_session(self) -> requests.Session:
        """Session with retries for the REST endpoint check"""
        session = requests.Session()

        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset(['GET']),
            raise_on_status=False,
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({'Accept': 'application/json'})
        return session

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        url = make_url(self.database_url)
        backend = url.get_backend_name()
        kwargs = {'pool_pre_ping': True}

        if backend == 'postgresql':
            kwargs['connect_args'] = {
                'connect_timeout': self.timeout,
                'options': f'-c statement_timeout={self.statement_timeout_ms}',
            }
            kwargs.update(pool_size=2, max_overflow=2, pool_timeout=self.timeout)
        elif backend == 'sqlite':
            kwargs['connect_args'] = {'timeout': self.timeout, 'check_same_thread': False}

        return create_engine(url, **kwargs)

    def close(self):
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._session.close()

    def _insert(self):
        """Dialect insert supporting ON CONFLICT, or None."""
        name = self.engine.dialect.name
        if name == 'postgresql':
            return pg_insert(sync_records)
        if name == 'sqlite':
            return sqlite_insert(sync_records)
        return None

    def _remote_now(self, conn) -> str:
        """Current time on the remote clock, in the sync timestamp format."""
        name = self.engine.dialect.name
        if name == 'postgresql':
            return conn.execute(text(
                "SELECT to_char(now() AT TIME ZONE 'UTC', "
                "'YYYY-MM-DD\"T\"HH24:MI:SS.MS\"Z\"')"
            )).scalar()
        if name == 'sqlite':
            return conn.execute(text("SELECT strftime('%Y-%m-%dT%H:%M:%fZ', 'now')")).scalar()
        return utc_now()

    # ============================================================
    # CONNECTION / SCHEMA
    # ============================================================

    def test_connection(self) -> Tuple[bool, str]:
        """
        Lightweight round trip. Never mutates anything.

        Returns:
            (ok, message)
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Remote database test failed: {error}")
            return False, f"Database connection failed: {error}"

        if self.remote_endpoint:
            ok, message = self._check_endpoint()
            if not ok:
                return False, message

        return True, f"Connection successful ({self.engine.dialect.name})"

    def _check_endpoint(self) -> Tuple[bool, str]:
        url = self.remote_endpoint.rstrip('/') + '/rest/v1/'
        try:
            response = self._session.get(
                url,
                headers={
                    'apikey': self.restricted_key,
                    'Authorization': f'Bearer {self.restricted_key}',
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Endpoint check failed: {e}")
            return False, f"Remote endpoint unreachable: {e}"

        if response.status_code in (401, 403):
            return False, "Remote endpoint rejected the credentials"
        if response.status_code >= 500:
            return False, f"Remote endpoint error: HTTP {response.status_code}"
        return True, "Endpoint reachable"

    def verify_schema(self) -> Tuple[bool, str]:
        """
        Create missing remote structures. Safe to call repeatedly.

        Returns:
            (ok, message)
        """
        try:
            return True, self.ensure_schema()
        except SyncError as e:
            return False, str(e)

    def ensure_schema(self) -> str:
        """
        Like verify_schema() but raises.

        Raises:
            SchemaFailure: a key column is missing and cannot be added
            ConnectivityFailure, AuthFailure: remote unusable
        """
        try:
            inspector = inspect(self.engine)
            if not inspector.has_table(REMOTE_TABLE):
                metadata.create_all(self.engine, tables=[sync_records])
                logger.info(f"Remote table {REMOTE_TABLE} created")
                return f"Created table {REMOTE_TABLE}"

            changes = []
            existing = {col['name'] for col in inspector.get_columns(REMOTE_TABLE)}
            missing = [col for col in sync_records.columns if col.name not in existing]

            missing_keys = [col.name for col in missing if col.primary_key]
            if missing_keys:
                raise SchemaFailure(
                    f"Remote table {REMOTE_TABLE} lacks key columns: {', '.join(missing_keys)}"
                )

            if missing:
                with self.engine.begin() as conn:
                    for col in missing:
                        type_sql = col.type.compile(dialect=self.engine.dialect)
                        conn.execute(text(
                            f'ALTER TABLE {REMOTE_TABLE} ADD COLUMN {col.name} {type_sql}'
                        ))
                        changes.append(f"column {col.name}")
                        logger.info(f"Remote column added: {col.name}")

            index_names = {ix['name'] for ix in inspector.get_indexes(REMOTE_TABLE)}
            for index in sync_records.indexes:
                if index.name not in index_names:
                    index.create(self.engine)
                    changes.append(f"index {index.name}")
                    logger.info(f"Remote index added: {index.name}")

        except SyncError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        if changes:
            return f"Schema repaired: added {', '.join(changes)}"
        return "Schema is up to date"

    # ============================================================
    # PUSH / PULL
    # ============================================================

    def push(self, records: List[ChangeRecord],
             superseded: Optional[List[ChangeRecord]] = None) -> int:
        """
        Write local versions to the remote.

        A remote version that is newer or equal is left untouched, so pushing
        the same record again changes nothing. Each batch is one transaction;
        records of a committed batch get ``synced_at`` set.

        Args:
            records: Local versions
            superseded: If given, receives the remote versions that won over
                a pushed record (an identical version is not included)

        Returns:
            Number of records accepted

        Raises:
            SyncError subclass with ``accepted`` set
        """
        accepted = 0
        try:
            for start in range(0, len(records), self.batch_size):
                batch = records[start:start + self.batch_size]
                winners = []
                with self.engine.begin() as conn:
                    stamp = self._remote_now(conn)
                    for record in batch:
                        winner = self._push_one(conn, record, stamp)
                        if winner is not None:
                            winners.append(winner)
                for record in batch:
                    record.synced_at = stamp
                accepted += len(batch)
                if superseded is not None:
                    superseded.extend(winners)
        except Exception as e:
            error = classify_error(e)
            error.accepted = accepted
            logger.error(f"Push failed after {accepted} records: {error}")
            raise error from e

        if accepted:
            logger.info(f"{accepted} records pushed")
        return accepted

    def _push_one(self, conn, record: ChangeRecord, stamp: str) -> Optional[ChangeRecord]:
        """Write one version. Returns the stored remote version if it won."""
        values = {
            'payload': None if record.is_tombstone else json.dumps(record.payload, sort_keys=True, default=str),
            'is_deleted': record.is_tombstone,
            'updated_at': record.updated_at,
            'origin_instance_id': record.origin_instance_id,
            'synced_at': stamp,
        }
        key = and_(
            sync_records.c.table_name == record.table,
            sync_records.c.record_id == record.record_id,
        )
        newer = or_(
            sync_records.c.updated_at < record.updated_at,
            and_(
                sync_records.c.updated_at == record.updated_at,
                sync_records.c.origin_instance_id < record.origin_instance_id,
            ),
        )

        insert = self._insert()
        if insert is not None:
            result = conn.execute(
                insert.values(table_name=record.table, record_id=record.record_id, **values)
                .on_conflict_do_nothing(index_elements=['table_name', 'record_id'])
            )
            if result.rowcount == 1:
                return None
            result = conn.execute(update(sync_records).where(key).where(newer).values(**values))
            if result.rowcount == 1:
                return None
            stored = conn.execute(select(sync_records).where(key)).mappings().first()
        else:
            result = conn.execute(update(sync_records).where(key).where(newer).values(**values))
            if result.rowcount == 1:
                return None
            stored = conn.execute(select(sync_records).where(key)).mappings().first()
            if stored is None:
                conn.execute(sync_records.insert().values(
                    table_name=record.table, record_id=record.record_id, **values
                ))
                return None

        winner = self._to_record(stored)
        if winner.version == record.version:
            return None
        logger.debug(f"Remote keeps newer version of {record.table}:{record.record_id}")
        return winner

    def pull(self, since: Optional[str], exclude_origin: str) -> List[ChangeRecord]:
        """
        Remote versions received after ``since`` from other instances,
        ordered by receive stamp.
        """
        query = select(sync_records).where(sync_records.c.origin_instance_id != exclude_origin)
        if since:
            query = query.where(sync_records.c.synced_at > since)
        records = self._fetch(query)
        if records:
            logger.info(f"{len(records)} records pulled")
        return records

    def pull_all(self) -> List[ChangeRecord]:
        """Every remote version, own ones included."""
        return self._fetch(select(sync_records))

    def _fetch(self, query) -> List[ChangeRecord]:
        query = query.order_by(
            sync_records.c.synced_at, sync_records.c.table_name, sync_records.c.record_id
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Pull failed: {error}")
            raise error from e
        return [self._to_record(row) for row in rows]

    def _to_record(self, row) -> ChangeRecord:
        try:
            payload = json.loads(row['payload']) if row['payload'] else {}
        except ValueError as e:
            raise SchemaFailure(
                f"Unreadable payload for {row['table_name']}:{row['record_id']}"
            ) from e

        return ChangeRecord(
            table=row['table_name'],
            record_id=row['record_id'],
            operation=SyncOperation.DELETE if row['is_deleted'] else SyncOperation.UPDATE,
            payload=payload,
            updated_at=row['updated_at'],
            origin_instance_id=row['origin_instance_id'],
            synced_at=row['synced_at'],
        )
