from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DB_VERSION = 2
MEMORY_DB = ":memory:"

SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS file_metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_path TEXT UNIQUE NOT NULL,
    file_hash TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    file_mtime INTEGER NOT NULL,
    indexed_at INTEGER NOT NULL,
    game_version TEXT,
    track_venue TEXT,
    track_course TEXT,
    track_event TEXT,
    track_length REAL,
    date_time INTEGER,
    time_string TEXT
);
CREATE INDEX IF NOT EXISTS idx_file_hash ON file_metadata(file_hash);
CREATE INDEX IF NOT EXISTS idx_track_venue ON file_metadata(track_venue);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id INTEGER NOT NULL,
    session_name TEXT NOT NULL,
    session_type TEXT NOT NULL,
    date_time INTEGER,
    time_string TEXT,
    laps INTEGER,
    minutes INTEGER,
    has_drivers INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (file_id) REFERENCES file_metadata(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_session_file_id ON sessions(file_id);
CREATE INDEX IF NOT EXISTS idx_session_type ON sessions(session_type);

CREATE TABLE IF NOT EXISTS drivers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    is_player INTEGER DEFAULT 0,
    position INTEGER,
    class_position INTEGER,
    finish_status TEXT,
    laps INTEGER,
    best_lap_time REAL,
    best_lap_num INTEGER,
    vehicle_name TEXT,
    vehicle_class TEXT,
    vehicle_number TEXT,
    team_name TEXT,
    aliases_json TEXT,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_driver_session_id ON drivers(session_id);
CREATE INDEX IF NOT EXISTS idx_driver_name ON drivers(name);
CREATE INDEX IF NOT EXISTS idx_driver_vehicle_class ON drivers(vehicle_class);

CREATE TABLE IF NOT EXISTS laps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    driver_id INTEGER NOT NULL,
    lap_num INTEGER NOT NULL,
    lap_time REAL,
    sector1 REAL,
    sector2 REAL,
    sector3 REAL,
    fuel_used REAL,
    FOREIGN KEY (driver_id) REFERENCES drivers(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_lap_driver_id ON laps(driver_id);

CREATE TABLE IF NOT EXISTS stream_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    stream_json TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_stream_session_id ON stream_data(session_id);

CREATE TABLE IF NOT EXISTS db_version (
    version INTEGER PRIMARY KEY
);
"""

# Columns added after the first release; older databases get them on open.
MIGRATIONS = (
    ("sessions", "has_drivers", "INTEGER NOT NULL DEFAULT 1"),
    ("drivers", "aliases_json", "TEXT"),
)


def _migrate(conn: sqlite3.Connection) -> None:
    for table, column, definition in MIGRATIONS:
        existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if column not in existing:
            logger.info("Adding column %s.%s to result store", table, column)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


@dataclass
class LapRecord:
    lap_num: int
    lap_time: Optional[float] = None
    sector1: Optional[float] = None
    sector2: Optional[float] = None
    sector3: Optional[float] = None
    fuel_used: Optional[float] = None


@dataclass
class DriverRecord:
    name: str
    is_player: bool = False
    position: Optional[int] = None
    class_position: Optional[int] = None
    finish_status: Optional[str] = None
    laps_count: Optional[int] = None
    best_lap_time: Optional[float] = None
    best_lap_num: Optional[int] = None
    vehicle_name: Optional[str] = None
    vehicle_class: Optional[str] = None
    vehicle_number: Optional[str] = None
    team_name: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    laps: List[LapRecord] = field(default_factory=list)


@dataclass
class SessionRecord:
    name: str
    session_type: str
    date_time: Optional[int] = None
    time_string: Optional[str] = None
    laps_configured: Optional[int] = None
    minutes_configured: Optional[int] = None
    has_drivers: bool = True
    drivers: List[DriverRecord] = field(default_factory=list)
    stream: Any = None


@dataclass
class FileRecord:
    path: str
    fingerprint: str
    size: int
    mtime_ms: int
    indexed_at_ms: int
    game_version: Optional[str] = None
    track_venue: Optional[str] = None
    track_course: Optional[str] = None
    track_event: Optional[str] = None
    track_length: Optional[float] = None
    date_time: Optional[int] = None
    time_string: Optional[str] = None


@dataclass
class StoreResult:
    """Outcome of a store operation; failures never raise past the store."""

    ok: bool
    error: Optional[str] = None
    file_id: Optional[int] = None
    deleted: int = 0
    skipped: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok}
        if self.error is not None:
            data["error"] = self.error
        if self.file_id is not None:
            data["fileId"] = self.file_id
        if self.deleted:
            data["deleted"] = self.deleted
        if self.skipped:
            data["skipped"] = True
        if self.message:
            data["message"] = self.message
        return data


class ResultStore:
    """SQLite backed store for indexed result files.

    One connection is shared by every caller; a re-entrant lock serialises
    all access so that concurrent indexers never interleave inside a
    delete-and-reinsert transaction.  When the database file cannot be
    opened the store falls back to an in-memory database and reports
    ``degraded``.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        reset_attempts: int = 8,
        reset_backoff: float = 0.05,
    ) -> None:
        self.db_path: Optional[Path] = None if db_path in (None, MEMORY_DB) else Path(db_path)
        self.reset_attempts = reset_attempts
        self.reset_backoff = reset_backoff
        self.degraded = False
        self.open_error: Optional[str] = None
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self.open()

    # ------------------------------------------------------------------
    # Lifecycle

    def open(self) -> StoreResult:
        with self._lock:
            if self._conn is not None:
                return StoreResult(ok=True)
            if self.db_path is None:
                self._conn = self._connect(MEMORY_DB)
                return StoreResult(ok=True)
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = self._connect(str(self.db_path))
                self.degraded = False
                self.open_error = None
                logger.info("Opened result store at %s", self.db_path)
                return StoreResult(ok=True)
            except (OSError, sqlite3.Error) as exc:
                logger.warning("Cannot open result store %s (%s); using in-memory store", self.db_path, exc)
                self._conn = self._connect(MEMORY_DB)
                self.degraded = True
                self.open_error = str(exc)
                return StoreResult(ok=False, error=self.open_error)

    def _connect(self, target: str) -> sqlite3.Connection:
        conn = sqlite3.connect(target, check_same_thread=False)
        try:
            conn.row_factory = sqlite3.Row
            if target != MEMORY_DB:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA foreign_keys = ON;")
            _migrate(conn)
            conn.execute("DELETE FROM db_version")
            conn.execute("INSERT INTO db_version (version) VALUES (?)", (DB_VERSION,))
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
                if self.db_path is not None and not self.degraded:
                    self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            except sqlite3.Error as exc:
                logger.warning("Failed to flush result store before closing: %s", exc)
            finally:
                self._conn.close()
                self._conn = None
                logger.debug("Closed result store")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "ResultStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Result store is closed")
        return self._conn

    # ------------------------------------------------------------------
    # Writes

    def get_fingerprint(self, path: str) -> Optional[str]:
        with self._lock:
            try:
                row = self._require_conn().execute(
                    "SELECT file_hash FROM file_metadata WHERE file_path = ?", (path,)
                ).fetchone()
            except (sqlite3.Error, RuntimeError) as exc:
                logger.warning("Fingerprint lookup failed for %s: %s", path, exc)
                return None
        return row["file_hash"] if row else None

    def replace_file(self, record: FileRecord, sessions: List[SessionRecord]) -> StoreResult:
        """Upsert a file row and replace all of its derived rows in one transaction.

        Individual session, driver and lap rows that fail to insert are logged
        and skipped; any other failure rolls the whole file back.
        """

        with self._lock:
            try:
                conn = self._require_conn()
                with conn:
                    conn.execute(
                        """
                        INSERT INTO file_metadata (
                            file_path, file_hash, file_size, file_mtime, indexed_at,
                            game_version, track_venue, track_course, track_event, track_length,
                            date_time, time_string
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(file_path) DO UPDATE SET
                            file_hash = excluded.file_hash,
                            file_size = excluded.file_size,
                            file_mtime = excluded.file_mtime,
                            indexed_at = excluded.indexed_at,
                            game_version = excluded.game_version,
                            track_venue = excluded.track_venue,
                            track_course = excluded.track_course,
                            track_event = excluded.track_event,
                            track_length = excluded.track_length,
                            date_time = excluded.date_time,
                            time_string = excluded.time_string
                        """,
                        (
                            record.path,
                            record.fingerprint,
                            record.size,
                            record.mtime_ms,
                            record.indexed_at_ms,
                            record.game_version,
                            record.track_venue,
                            record.track_course,
                            record.track_event,
                            record.track_length,
                            record.date_time,
                            record.time_string,
                        ),
                    )
                    file_id = conn.execute(
                        "SELECT id FROM file_metadata WHERE file_path = ?", (record.path,)
                    ).fetchone()["id"]
                    conn.execute("DELETE FROM sessions WHERE file_id = ?", (file_id,))
                    for session in sessions:
                        self._insert_session(conn, file_id, session)
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error("Failed to index %s: %s", record.path, exc)
                return StoreResult(ok=False, error=str(exc))

        logger.debug("Indexed %s (id %s, %s sessions)", record.path, file_id, len(sessions))
        return StoreResult(ok=True, file_id=file_id)

    def _insert_session(self, conn: sqlite3.Connection, file_id: int, session: SessionRecord) -> None:
        try:
            cursor = conn.execute(
                """
                INSERT INTO sessions (
                    file_id, session_name, session_type, date_time, time_string, laps, minutes, has_drivers
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    file_id,
                    session.name,
                    session.session_type,
                    session.date_time,
                    session.time_string,
                    session.laps_configured,
                    session.minutes_configured,
                    1 if session.has_drivers else 0,
                ),
            )
        except sqlite3.Error as exc:
            logger.warning("Skipping session %s of file %s: %s", session.name, file_id, exc)
            return
        session_id = cursor.lastrowid

        for driver in session.drivers:
            self._insert_driver(conn, session_id, driver)

        if session.stream is not None:
            try:
                conn.execute(
                    "INSERT INTO stream_data (session_id, stream_json) VALUES (?, ?)",
                    (session_id, json.dumps(session.stream)),
                )
            except (sqlite3.Error, TypeError, ValueError) as exc:
                logger.warning("Skipping stream of session %s: %s", session.name, exc)

    def _insert_driver(self, conn: sqlite3.Connection, session_id: int, driver: DriverRecord) -> None:
        try:
            cursor = conn.execute(
                """
                INSERT INTO drivers (
                    session_id, name, is_player, position, class_position, finish_status, laps,
                    best_lap_time, best_lap_num, vehicle_name, vehicle_class,
                    vehicle_number, team_name, aliases_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    driver.name,
                    1 if driver.is_player else 0,
                    driver.position,
                    driver.class_position,
                    driver.finish_status,
                    driver.laps_count,
                    driver.best_lap_time,
                    driver.best_lap_num,
                    driver.vehicle_name,
                    driver.vehicle_class,
                    driver.vehicle_number,
                    driver.team_name,
                    json.dumps(driver.aliases) if driver.aliases else None,
                ),
            )
        except sqlite3.Error as exc:
            logger.warning("Skipping driver %s: %s", driver.name, exc)
            return
        driver_id = cursor.lastrowid

        for lap in driver.laps:
            try:
                conn.execute(
                    """
                    INSERT INTO laps (
                        driver_id, lap_num, lap_time, sector1, sector2, sector3, fuel_used
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (driver_id, lap.lap_num, lap.lap_time, lap.sector1, lap.sector2, lap.sector3, lap.fuel_used),
                )
            except sqlite3.Error as exc:
                logger.warning("Skipping lap %s of driver %s: %s", lap.lap_num, driver.name, exc)

    # ------------------------------------------------------------------
    # Reads

    def get_file_data(self, path: str) -> Optional[Dict[str, Any]]:
        """Full nested record (file, sessions, drivers, laps, stream) for ``path``."""

        with self._lock:
            try:
                conn = self._require_conn()
                file_row = conn.execute("SELECT * FROM file_metadata WHERE file_path = ?", (path,)).fetchone()
                if file_row is None:
                    return None
                result: Dict[str, Any] = {"metadata": dict(file_row), "sessions": []}
                sessions = conn.execute(
                    "SELECT * FROM sessions WHERE file_id = ? ORDER BY id", (file_row["id"],)
                ).fetchall()
                for session in sessions:
                    stream_row = conn.execute(
                        "SELECT stream_json FROM stream_data WHERE session_id = ?", (session["id"],)
                    ).fetchone()
                    session_data = dict(session)
                    session_data["has_drivers"] = bool(session_data.get("has_drivers", 1))
                    session_data["stream"] = json.loads(stream_row["stream_json"]) if stream_row else None
                    session_data["drivers"] = []
                    drivers = conn.execute(
                        "SELECT * FROM drivers WHERE session_id = ? ORDER BY id", (session["id"],)
                    ).fetchall()
                    for driver in drivers:
                        driver_data = dict(driver)
                        aliases_json = driver_data.pop("aliases_json", None)
                        driver_data["aliases"] = json.loads(aliases_json) if aliases_json else [driver["name"]]
                        driver_data["laps"] = [
                            dict(lap)
                            for lap in conn.execute(
                                "SELECT * FROM laps WHERE driver_id = ? ORDER BY lap_num", (driver["id"],)
                            ).fetchall()
                        ]
                        session_data["drivers"].append(driver_data)
                    result["sessions"].append(session_data)
                return result
            except (sqlite3.Error, RuntimeError, ValueError) as exc:
                logger.error("Failed to read indexed data for %s: %s", path, exc)
                return None

    def list_files(self) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                rows = self._require_conn().execute(
                    "SELECT * FROM file_metadata ORDER BY date_time DESC, file_mtime DESC"
                ).fetchall()
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error("Failed to list indexed files: %s", exc)
                return []
        return [dict(row) for row in rows]

    def get_file_dates(self, path: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                row = self._require_conn().execute(
                    "SELECT date_time, time_string, file_mtime FROM file_metadata WHERE file_path = ?",
                    (path,),
                ).fetchone()
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error("Failed to read dates for %s: %s", path, exc)
                return None
        return dict(row) if row else None

    def get_stats(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                conn = self._require_conn()
                stats: Dict[str, Any] = {
                    table_key: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                    for table_key, table in (
                        ("files", "file_metadata"),
                        ("sessions", "sessions"),
                        ("drivers", "drivers"),
                        ("laps", "laps"),
                    )
                }
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error("Failed to collect store statistics: %s", exc)
                return None
        stats["dbSize"] = self.storage_size()
        stats["degraded"] = self.degraded
        return stats

    def storage_size(self) -> int:
        total = 0
        for path in self._backing_files():
            try:
                total += path.stat().st_size
            except OSError:
                continue
        return total

    # ------------------------------------------------------------------
    # Maintenance

    def prune_missing(self, exists: Callable[[str], bool] = os.path.exists) -> StoreResult:
        """Delete every file row whose backing file no longer exists."""

        with self._lock:
            try:
                rows = self._require_conn().execute("SELECT id, file_path FROM file_metadata").fetchall()
            except (sqlite3.Error, RuntimeError) as exc:
                logger.error("Prune failed while listing files: %s", exc)
                return StoreResult(ok=False, error=str(exc))

        logger.info("Pruning: checking %s indexed files", len(rows))
        deleted = 0
        for row in rows:
            if exists(row["file_path"]):
                continue
            with self._lock:
                try:
                    conn = self._require_conn()
                    with conn:
                        cursor = conn.execute("DELETE FROM file_metadata WHERE id = ?", (row["id"],))
                except (sqlite3.Error, RuntimeError) as exc:
                    logger.error("Prune failed for %s: %s", row["file_path"], exc)
                    return StoreResult(ok=False, error=str(exc), deleted=deleted)
            if cursor.rowcount:
                deleted += cursor.rowcount
                logger.info("Removed missing file from index: %s", row["file_path"])

        logger.info("Pruning finished: %s file(s) removed", deleted)
        return StoreResult(ok=True, deleted=deleted)

    def reset(self) -> StoreResult:
        """Drop every stored row by deleting the database files and reopening."""

        with self._lock:
            logger.info("Resetting result store")
            self.close()
            if self.db_path is not None:
                for path in self._backing_files():
                    if not self._remove_with_retry(path):
                        error = f"Could not delete {path}: file is still locked"
                        self.open()
                        return StoreResult(ok=False, error=error)
            opened = self.open()
            if not opened.ok:
                return StoreResult(ok=False, error=opened.error)
        return StoreResult(ok=True, message="Result store reset")

    def _backing_files(self) -> List[Path]:
        if self.db_path is None:
            return []
        base = str(self.db_path)
        return [Path(base), Path(base + "-wal"), Path(base + "-shm")]

    def _remove_with_retry(self, path: Path) -> bool:
        delay = self.reset_backoff
        for attempt in range(1, self.reset_attempts + 1):
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return True
            except OSError as exc:
                if attempt == self.reset_attempts:
                    logger.error("Giving up deleting %s after %s attempts: %s", path, attempt, exc)
                    return False
                logger.debug("Waiting for lock release on %s (attempt %s): %s", path, attempt, exc)
                time.sleep(delay)
                delay = min(delay * 2, 1.0)
        return False
