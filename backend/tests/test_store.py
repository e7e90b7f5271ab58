from __future__ import annotations

import math
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List

import pytest  # type: ignore

from lmu_core.store import SCHEMA, DriverRecord, FileRecord, LapRecord, ResultStore, SessionRecord, StoreResult


def _file_record(path: str, fingerprint: str = "abc", date_time: int | None = 1718000000) -> FileRecord:
    return FileRecord(
        path=path,
        fingerprint=fingerprint,
        size=100,
        mtime_ms=1_700_000_000_000,
        indexed_at_ms=1_700_000_000_500,
        track_venue="Monza",
        track_course="Monza GP",
        date_time=date_time,
    )


def _sessions(names: List[str], laps: int = 2) -> List[SessionRecord]:
    sessions = []
    for name in names:
        driver = DriverRecord(
            name="Alice",
            position=1,
            class_position=1,
            best_lap_time=100.0,
            laps=[LapRecord(lap_num=index + 1, lap_time=100.0 + index) for index in range(laps)],
        )
        sessions.append(SessionRecord(name=name, session_type="race", drivers=[driver], stream={"Score": ["x"]}))
    return sessions


def test_replace_file_stores_nested_record(store: ResultStore) -> None:
    result = store.replace_file(_file_record("/r/a.xml"), _sessions(["Qualifying1", "Race"]))

    assert result.ok
    data = store.get_file_data("/r/a.xml")
    assert data["metadata"]["track_venue"] == "Monza"
    assert [session["session_name"] for session in data["sessions"]] == ["Qualifying1", "Race"]
    assert data["sessions"][0]["stream"] == {"Score": ["x"]}
    assert [lap["lap_num"] for lap in data["sessions"][1]["drivers"][0]["laps"]] == [1, 2]
    assert store.get_fingerprint("/r/a.xml") == "abc"


def test_replace_file_drops_previous_children(store: ResultStore) -> None:
    store.replace_file(_file_record("/r/a.xml"), _sessions(["Practice1", "Qualifying1", "Race"], laps=5))
    store.replace_file(_file_record("/r/a.xml", fingerprint="def"), _sessions(["Race"], laps=1))

    stats = store.get_stats()
    assert stats["files"] == 1
    assert stats["sessions"] == 1
    assert stats["drivers"] == 1
    assert stats["laps"] == 1
    assert store.get_fingerprint("/r/a.xml") == "def"


def test_invalid_lap_rows_are_skipped_not_fatal(store: ResultStore) -> None:
    sessions = _sessions(["Race"], laps=1)
    sessions[0].drivers[0].laps.append(LapRecord(lap_num=None))  # type: ignore[arg-type]

    result = store.replace_file(_file_record("/r/a.xml"), sessions)

    assert result.ok
    assert store.get_stats()["laps"] == 1


def test_failed_write_rolls_back_whole_file(store: ResultStore, monkeypatch: pytest.MonkeyPatch) -> None:
    store.replace_file(_file_record("/r/a.xml"), _sessions(["Race"], laps=3))

    def _explode(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "_insert_session", _explode)
    result = store.replace_file(_file_record("/r/a.xml", fingerprint="new"), _sessions(["Race"], laps=1))

    assert not result.ok
    assert "disk I/O error" in result.error
    assert store.get_fingerprint("/r/a.xml") == "abc"
    assert store.get_stats()["laps"] == 3


def test_list_files_orders_by_event_date(store: ResultStore) -> None:
    store.replace_file(_file_record("/r/old.xml", date_time=1_600_000_000), [])
    store.replace_file(_file_record("/r/new.xml", date_time=1_700_000_000), [])

    assert [row["file_path"] for row in store.list_files()] == ["/r/new.xml", "/r/old.xml"]
    assert store.get_file_dates("/r/old.xml")["date_time"] == 1_600_000_000
    assert store.get_file_dates("/r/unknown.xml") is None
    assert store.get_file_data("/r/unknown.xml") is None


def test_prune_deletes_exactly_missing_files(store: ResultStore) -> None:
    paths = [f"/r/{index}.xml" for index in range(5)]
    for path in paths:
        store.replace_file(_file_record(path), _sessions(["Race"]))
    missing = {paths[1], paths[3]}

    result = store.prune_missing(exists=lambda path: path not in missing)

    assert result.ok
    assert result.deleted == 2
    stats = store.get_stats()
    assert stats["files"] == 3
    assert stats["sessions"] == 3
    assert stats["laps"] == 6

    again = store.prune_missing(exists=lambda path: path not in missing)
    assert again.deleted == 0


def test_reset_removes_backing_files_and_reopens(store: ResultStore) -> None:
    store.replace_file(_file_record("/r/a.xml"), _sessions(["Race"]))

    result = store.reset()

    assert result.ok
    assert store.is_open
    assert store.get_stats()["files"] == 0
    store.replace_file(_file_record("/r/b.xml"), [])
    assert store.get_stats()["files"] == 1


def test_reset_retries_locked_files(store: ResultStore, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}
    real_unlink = Path.unlink

    def _sticky_unlink(self, *args, **kwargs):
        if self.name.endswith(".db") and calls["count"] < 2:
            calls["count"] += 1
            raise PermissionError("locked")
        return real_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", _sticky_unlink)
    store.reset_backoff = 0.001

    assert store.reset().ok
    assert calls["count"] == 2


def test_reset_gives_up_when_lock_never_clears(store: ResultStore, monkeypatch: pytest.MonkeyPatch) -> None:
    def _locked(self, *args, **kwargs):
        raise PermissionError("locked")

    monkeypatch.setattr(Path, "unlink", _locked)
    store.reset_attempts = 3
    store.reset_backoff = 0.001

    result = store.reset()

    assert not result.ok
    assert "locked" in result.error
    assert store.is_open


def test_unopenable_path_degrades_to_memory(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    degraded = ResultStore(blocker / "sub" / "results.db")

    assert degraded.degraded
    assert degraded.open_error
    assert degraded.replace_file(_file_record("/r/a.xml"), []).ok
    assert degraded.get_stats()["degraded"] is True
    degraded.close()


def test_closed_store_reports_errors_instead_of_raising(tmp_path: Path) -> None:
    closed = ResultStore(tmp_path / "results.db")
    closed.close()

    assert closed.get_fingerprint("/r/a.xml") is None
    assert closed.list_files() == []
    assert closed.get_stats() is None
    result = closed.replace_file(_file_record("/r/a.xml"), [])
    assert not result.ok
    assert math.isfinite(closed.storage_size())


def test_concurrent_replace_and_prune_leave_no_orphans(store: ResultStore) -> None:
    paths = [f"/r/{index % 6}.xml" for index in range(24)]
    missing = {"/r/1.xml", "/r/4.xml"}

    def _replace(path: str) -> StoreResult:
        return store.replace_file(_file_record(path, fingerprint=path), _sessions(["Practice1", "Race"]))

    with ThreadPoolExecutor(max_workers=6) as pool:
        writes = [pool.submit(_replace, path) for path in paths]
        prunes = [pool.submit(store.prune_missing, lambda path: path not in missing) for _ in range(6)]
        results = [future.result() for future in writes + prunes]

    assert all(result.ok for result in results)
    conn = store._require_conn()
    orphan_queries = (
        "SELECT COUNT(*) FROM sessions WHERE file_id NOT IN (SELECT id FROM file_metadata)",
        "SELECT COUNT(*) FROM drivers WHERE session_id NOT IN (SELECT id FROM sessions)",
        "SELECT COUNT(*) FROM laps WHERE driver_id NOT IN (SELECT id FROM drivers)",
        "SELECT COUNT(*) FROM stream_data WHERE session_id NOT IN (SELECT id FROM sessions)",
    )
    for query in orphan_queries:
        assert conn.execute(query).fetchone()[0] == 0

    files = conn.execute("SELECT COUNT(*) FROM file_metadata").fetchone()[0]
    paths_stored = [row[0] for row in conn.execute("SELECT file_path FROM file_metadata")]
    assert len(paths_stored) == len(set(paths_stored))
    assert conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0] == files * 2
    assert conn.execute("SELECT COUNT(*) FROM drivers").fetchone()[0] == files * 2
    assert conn.execute("SELECT COUNT(*) FROM laps").fetchone()[0] == files * 4


def test_older_database_gains_new_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "old.db"
    old_schema = SCHEMA.replace("has_drivers INTEGER NOT NULL DEFAULT 1,", "").replace("aliases_json TEXT,", "")
    legacy = sqlite3.connect(db_path)
    legacy.executescript(old_schema)
    legacy.execute("INSERT INTO db_version (version) VALUES (1)")
    legacy.commit()
    legacy.close()

    store = ResultStore(db_path)
    try:
        conn = store._require_conn()
        session_columns = {row[1] for row in conn.execute("PRAGMA table_info(sessions)")}
        driver_columns = {row[1] for row in conn.execute("PRAGMA table_info(drivers)")}
        assert "has_drivers" in session_columns
        assert "aliases_json" in driver_columns
        assert [row[0] for row in conn.execute("SELECT version FROM db_version")] == [2]

        store.replace_file(_file_record("/r/a.xml"), _sessions(["Race"]))
        driver = store.get_file_data("/r/a.xml")["sessions"][0]["drivers"][0]
        assert driver["aliases"] == ["Alice"]
    finally:
        store.close()
