"""Persistence helpers backed by a MySQL database."""
from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple
from urllib.parse import urlparse, unquote

import pymysql
from pymysql.connections import Connection

from .data import Reading, Session, format_ts, parse_ts
from .patterns import ClusterStore

logger = logging.getLogger(__name__)

# Superseded pattern snapshots kept around for manual recovery
KEEP_SNAPSHOTS = 3


@dataclass
class MySQLConfig:
    """Connection details for the Charge Watcher database."""

    host: str
    port: int
    user: str
    password: str | None
    database: str

    @classmethod
    def from_env(cls) -> "MySQLConfig":
        url = os.getenv("CHARGE_DB_URL")
        if not url:
            raise RuntimeError("CHARGE_DB_URL environment variable is required")
        return cls.from_url(url)

    @classmethod
    def from_url(cls, url: str) -> "MySQLConfig":
        parsed = urlparse(url)
        if parsed.scheme not in {"mysql", "mysql+pymysql"}:
            raise ValueError(f"Unsupported MySQL URL scheme: {parsed.scheme}")
        if parsed.username is None:
            raise ValueError("MySQL URL must include a username")
        if parsed.hostname is None:
            raise ValueError("MySQL URL must include a hostname")
        database = parsed.path.lstrip("/")
        if not database:
            raise ValueError("MySQL URL must include a database name")
        password = unquote(parsed.password) if parsed.password else None
        return cls(
            host=parsed.hostname,
            port=parsed.port or 3306,
            user=parsed.username,
            password=password,
            database=database,
        )


SCHEMA_STATEMENTS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id TINYINT PRIMARY KEY,
        version INT NOT NULL
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS charging_sessions (
        id VARCHAR(64) PRIMARY KEY,
        charger_id VARCHAR(64) NOT NULL,
        charger_name VARCHAR(128) NULL,
        device_name VARCHAR(128) NULL,
        start_ts VARCHAR(64) NULL,
        end_ts VARCHAR(64) NULL,
        INDEX idx_sessions_start (start_ts),
        INDEX idx_sessions_charger (charger_id, start_ts)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS power_readings (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        session_id VARCHAR(64) NOT NULL,
        seq INT NOT NULL,
        ts VARCHAR(64) NULL,
        watts DOUBLE NOT NULL,
        UNIQUE KEY uniq_session_seq (session_id, seq)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS pattern_snapshots (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        generated VARCHAR(64) NOT NULL,
        pattern_count INT NOT NULL,
        data LONGTEXT NOT NULL
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
)

CURRENT_SCHEMA_VERSION = 1


@contextmanager
def _with_cursor(conn: Connection) -> Iterator[pymysql.cursors.Cursor]:
    cursor = conn.cursor()
    try:
        yield cursor
    finally:
        cursor.close()


def _ensure_schema(conn: Connection) -> None:
    for statement in SCHEMA_STATEMENTS:
        with _with_cursor(conn) as cur:
            cur.execute(statement)
    with _with_cursor(conn) as cur:
        cur.execute("SELECT version FROM schema_version WHERE id = 1")
        row = cur.fetchone()
        if row is None:
            cur.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, %s)",
                (CURRENT_SCHEMA_VERSION,),
            )
            conn.commit()
        elif row[0] != CURRENT_SCHEMA_VERSION:
            cur.execute(
                "UPDATE schema_version SET version = %s WHERE id = 1",
                (CURRENT_SCHEMA_VERSION,),
            )
            conn.commit()


def connect(config: MySQLConfig | str | None = None) -> Connection:
    if config is None:
        config = MySQLConfig.from_env()
    if isinstance(config, str):
        config = MySQLConfig.from_url(config)
    conn = pymysql.connect(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        database=config.database,
        autocommit=False,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.Cursor,
    )
    _ensure_schema(conn)
    return conn


def db_stats(conn: Connection) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for key, table in (
        ("sessions", "charging_sessions"),
        ("readings", "power_readings"),
        ("snapshots", "pattern_snapshots"),
    ):
        with _with_cursor(conn) as cur:
            cur.execute(f"SELECT COUNT(*) FROM {table}")
            counts[key] = int(cur.fetchone()[0])
    with _with_cursor(conn) as cur:
        cur.execute(
            """
            SELECT COALESCE(SUM(data_length + index_length), 0)
            FROM information_schema.tables
            WHERE table_schema = DATABASE()
              AND table_name IN ('charging_sessions', 'power_readings', 'pattern_snapshots')
            """
        )
        counts["size_bytes"] = int(cur.fetchone()[0] or 0)
    logger.debug("Database stats: %s", counts)
    return counts


def save_sessions(conn: Connection, sessions: Iterable[Session]) -> int:
    """Insert or replace sessions together with their readings."""
    session_rows: List[Tuple[Any, ...]] = []
    reading_rows: List[Tuple[Any, ...]] = []
    ids: List[str] = []
    for s in sessions:
        ids.append(s.id)
        session_rows.append(
            (
                s.id,
                s.charger_id,
                s.charger_name,
                s.device_name,
                format_ts(s.start),
                format_ts(s.end),
            )
        )
        for seq, r in enumerate(s.readings):
            reading_rows.append((s.id, seq, format_ts(r.timestamp), r.watts))
    if not session_rows:
        return 0
    with _with_cursor(conn) as cur:
        cur.executemany(
            """
            INSERT INTO charging_sessions (id, charger_id, charger_name, device_name, start_ts, end_ts)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON DUPLICATE KEY UPDATE
                charger_id = VALUES(charger_id),
                charger_name = VALUES(charger_name),
                device_name = VALUES(device_name),
                start_ts = VALUES(start_ts),
                end_ts = VALUES(end_ts)
            """,
            session_rows,
        )
        for start in range(0, len(ids), 1000):
            chunk = ids[start : start + 1000]
            placeholders = ", ".join(["%s"] * len(chunk))
            cur.execute(
                f"DELETE FROM power_readings WHERE session_id IN ({placeholders})",
                tuple(chunk),
            )
        if reading_rows:
            cur.executemany(
                "INSERT INTO power_readings (session_id, seq, ts, watts) VALUES (%s, %s, %s, %s)",
                reading_rows,
            )
    conn.commit()
    logger.debug("Saved %d sessions with %d readings", len(session_rows), len(reading_rows))
    return len(session_rows)


def _sessions_from_rows(
    session_rows: Sequence[Tuple[Any, ...]],
    reading_rows: Sequence[Tuple[Any, ...]],
) -> List[Session]:
    readings: Dict[str, List[Reading]] = {}
    for session_id, rows in groupby(reading_rows, key=lambda row: row[0]):
        readings[session_id] = [Reading(parse_ts(ts), float(watts)) for _, ts, watts in rows]
    return [
        Session(
            id=sid,
            charger_id=charger_id,
            charger_name=charger_name,
            device_name=device_name,
            start=parse_ts(start),
            end=parse_ts(end),
            readings=readings.get(sid, []),
        )
        for sid, charger_id, charger_name, device_name, start, end in session_rows
    ]


def load_sessions(conn: Connection, *, completed_only: bool = False) -> List[Session]:
    query = "SELECT id, charger_id, charger_name, device_name, start_ts, end_ts FROM charging_sessions"
    if completed_only:
        query += " WHERE end_ts IS NOT NULL"
    query += " ORDER BY start_ts, id"
    with _with_cursor(conn) as cur:
        cur.execute(query)
        session_rows = cur.fetchall()
    with _with_cursor(conn) as cur:
        cur.execute("SELECT session_id, ts, watts FROM power_readings ORDER BY session_id, seq")
        reading_rows = cur.fetchall()
    sessions = _sessions_from_rows(session_rows, reading_rows)
    logger.debug("Loaded %d sessions", len(sessions))
    return sessions


def load_session(conn: Connection, session_id: str) -> Session | None:
    with _with_cursor(conn) as cur:
        cur.execute(
            """
            SELECT id, charger_id, charger_name, device_name, start_ts, end_ts
            FROM charging_sessions WHERE id = %s
            """,
            (session_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    with _with_cursor(conn) as cur:
        cur.execute(
            "SELECT session_id, ts, watts FROM power_readings WHERE session_id = %s ORDER BY seq",
            (session_id,),
        )
        reading_rows = cur.fetchall()
    return _sessions_from_rows([row], reading_rows)[0]


def update_session_names(conn: Connection, names: Mapping[str, str | None]) -> int:
    """Write device names for several sessions in one transaction."""
    if not names:
        return 0
    with _with_cursor(conn) as cur:
        cur.executemany(
            "UPDATE charging_sessions SET device_name = %s WHERE id = %s",
            [(name, sid) for sid, name in names.items()],
        )
    conn.commit()
    return len(names)


def update_session_name(conn: Connection, session_id: str, name: str | None) -> None:
    update_session_names(conn, {session_id: name})


def save_patterns_snapshot(
    conn: Connection,
    store: ClusterStore,
    *,
    generated: datetime | None = None,
    keep: int = KEEP_SNAPSHOTS,
) -> int:
    """Persist the collection as a new snapshot row.

    The new row becomes the latest snapshot only when the transaction
    commits, so readers never see a half-written collection.
    """
    if generated is None:
        generated = datetime.now().astimezone()
    payload = json.dumps(store.to_dicts(), separators=(",", ":"))
    try:
        with _with_cursor(conn) as cur:
            cur.execute(
                "INSERT INTO pattern_snapshots (generated, pattern_count, data) VALUES (%s, %s, %s)",
                (generated.isoformat(timespec="seconds"), len(store), payload),
            )
            snapshot_id = int(cur.lastrowid)
        _prune_snapshots(conn, keep)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("Saved %d charging patterns as snapshot %d", len(store), snapshot_id)
    return snapshot_id


def load_patterns_snapshot(conn: Connection) -> ClusterStore:
    """Return the latest snapshot, or an empty collection."""
    with _with_cursor(conn) as cur:
        cur.execute("SELECT id, data FROM pattern_snapshots ORDER BY id DESC LIMIT 1")
        row = cur.fetchone()
    if row is None:
        return ClusterStore()
    try:
        data = json.loads(row[1])
    except (TypeError, json.JSONDecodeError):
        logger.error("Pattern snapshot %s is not valid JSON", row[0])
        raise
    store = ClusterStore.from_dicts(data)
    logger.info("Loaded %d charging patterns from snapshot %s", len(store), row[0])
    return store


def _prune_snapshots(conn: Connection, keep: int) -> int:
    keep = max(keep, 1)
    with _with_cursor(conn) as cur:
        cur.execute(
            "SELECT id FROM pattern_snapshots ORDER BY id DESC LIMIT 1 OFFSET %s",
            (keep - 1,),
        )
        row = cur.fetchone()
        if row is None:
            return 0
        cur.execute("DELETE FROM pattern_snapshots WHERE id < %s", (row[0],))
        return cur.rowcount


def prune_snapshots(conn: Connection, keep: int = KEEP_SNAPSHOTS) -> int:
    deleted = _prune_snapshots(conn, keep)
    conn.commit()
    if deleted:
        logger.debug("Pruned %d old pattern snapshots", deleted)
    return deleted
