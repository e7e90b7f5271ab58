from __future__ import annotations

import hashlib
import logging
import math
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .extractor import DriverResult, extract_drivers, get_race_results_root
from .scanner import DEFAULT_WORKERS, ScannedFile, list_result_files, parse_files, read_result_file
from .store import DriverRecord, FileRecord, LapRecord, ResultStore, SessionRecord, StoreResult
from .utils import SESSION_TYPES, session_type, split_names, to_float, to_int
from .xmltree import child_text, is_node

logger = logging.getLogger(__name__)

# Session blocks a result file may carry, in the order they are indexed.
SESSION_KEYS = (
    "Practice1",
    "Practice2",
    "Practice3",
    "Practice4",
    "Qualifying1",
    "Qualifying2",
    "Qualifying3",
    "Qualifying4",
    "Warmup",
    "Race1",
    "Race2",
    "Race",
)


def compute_fingerprint(path: str, size: int, mtime_ns: int) -> str:
    """Cheap change detector over path, size and modification time.

    Not a content hash: a rewrite that keeps the size and lands in the same
    mtime tick is not detected.
    """

    digest = hashlib.md5()
    digest.update(f"{path}:{size}:{mtime_ns}".encode("utf-8"))
    return digest.hexdigest()


class Indexer:
    """Keeps the result store in sync with result files on disk."""

    def __init__(
        self,
        store: ResultStore,
        pilot_names: str | Iterable[str] | None = None,
        session_types: Sequence[str] | None = None,
    ) -> None:
        self.store = store
        self.pilot_names = split_names(pilot_names)
        self.session_types = tuple(session_types) if session_types else SESSION_TYPES

    # ------------------------------------------------------------------
    # Change detection

    def needs_indexing(self, path: str, size: int, mtime_ns: int) -> bool:
        stored = self.store.get_fingerprint(path)
        return stored != compute_fingerprint(path, size, mtime_ns)

    # ------------------------------------------------------------------
    # Indexing

    def index_file(self, path: str | Path, scanned: ScannedFile | None = None) -> StoreResult:
        """Index one file if its fingerprint changed.

        ``scanned`` may carry an already decoded document (the scan fast
        path); otherwise the file is read here.
        """

        file_path = str(path)
        try:
            stat = os.stat(file_path)
        except OSError as exc:
            logger.warning("Cannot index %s: %s", file_path, exc)
            return StoreResult(ok=False, error=str(exc))

        fingerprint = compute_fingerprint(file_path, stat.st_size, stat.st_mtime_ns)
        if self.store.get_fingerprint(file_path) == fingerprint:
            logger.debug("Skipping unchanged file %s", file_path)
            return StoreResult(ok=True, skipped=True)

        if scanned is None or scanned.parsed is None:
            scanned = read_result_file(file_path)
        if scanned.error is not None or scanned.parsed is None:
            return StoreResult(ok=False, error=scanned.error or "No parsed data")

        root = get_race_results_root(scanned.parsed)
        if root is None:
            return StoreResult(ok=False, error="RaceResults root not found")

        record = self._file_record(file_path, fingerprint, stat.st_size, stat.st_mtime_ns, root)
        sessions = self.build_session_records(root)
        return self.store.replace_file(record, sessions)

    def index_scanned(self, files: Iterable[ScannedFile], cancel_event: threading.Event | None = None) -> Dict[str, Any]:
        """Index a batch of scanned files; one bad file never stops the batch."""

        summary: Dict[str, Any] = {"indexed": 0, "skipped": 0, "failed": 0, "errors": []}
        for scanned in files:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Indexing cancelled")
                break
            if scanned.error is not None:
                summary["failed"] += 1
                summary["errors"].append(f"{scanned.file_path}: {scanned.error}")
                continue
            try:
                result = self.index_file(scanned.file_path, scanned)
            except Exception as exc:
                logger.exception("Unexpected failure indexing %s", scanned.file_path)
                result = StoreResult(ok=False, error=str(exc))
            if not result.ok:
                summary["failed"] += 1
                summary["errors"].append(f"{scanned.file_path}: {result.error}")
            elif result.skipped:
                summary["skipped"] += 1
            else:
                summary["indexed"] += 1
        logger.info(
            "Indexing finished: %s indexed, %s unchanged, %s failed",
            summary["indexed"],
            summary["skipped"],
            summary["failed"],
        )
        return summary

    def index_folder(
        self,
        folder: str | Path,
        max_workers: int = DEFAULT_WORKERS,
        cancel_event: threading.Event | None = None,
    ) -> Dict[str, Any]:
        """Scan ``folder`` and index every changed file.

        Unchanged files are not even read.  Changed files are decoded on a
        worker pool, then written one at a time through the store lock.
        """

        metas = list_result_files(folder)
        changed = [meta.file_path for meta in metas if self.needs_indexing(meta.file_path, meta.size, meta.mtime_ns)]
        logger.info("%s of %s result files need indexing", len(changed), len(metas))
        scanned = parse_files(changed, max_workers=max_workers, cancel_event=cancel_event)
        summary = self.index_scanned(scanned, cancel_event=cancel_event)
        summary["skipped"] += len(metas) - len(changed)
        return summary

    # ------------------------------------------------------------------
    # Maintenance

    def prune(self) -> StoreResult:
        return self.store.prune_missing()

    def reset(self) -> StoreResult:
        return self.store.reset()

    # ------------------------------------------------------------------
    # Record building

    def _file_record(self, path: str, fingerprint: str, size: int, mtime_ns: int, root: Dict[str, Any]) -> FileRecord:
        return FileRecord(
            path=path,
            fingerprint=fingerprint,
            size=size,
            mtime_ms=mtime_ns // 1_000_000,
            indexed_at_ms=int(time.time() * 1000),
            game_version=child_text(root, "GameVersion") or None,
            track_venue=child_text(root, "TrackVenue") or None,
            track_course=child_text(root, "TrackCourse") or None,
            track_event=child_text(root, "TrackEvent") or None,
            track_length=to_float(child_text(root, "TrackLength")),
            date_time=to_int(child_text(root, "DateTime")),
            time_string=child_text(root, "TimeString") or None,
        )

    def build_session_records(self, root: Dict[str, Any]) -> List[SessionRecord]:
        records: List[SessionRecord] = []
        for key in SESSION_KEYS:
            node = root.get(key)
            if not is_node(node):
                continue
            kind = session_type(key)
            if kind not in self.session_types:
                logger.debug("Session %s skipped: type %s disabled", key, kind)
                continue
            try:
                records.append(self._session_record(key, kind, node))
            except Exception:
                logger.warning("Skipping session %s", key, exc_info=True)
        return records

    def _session_record(self, key: str, kind: str, node: Dict[str, Any]) -> SessionRecord:
        drivers: List[DriverRecord] = []
        has_drivers = "Driver" in node
        if has_drivers:
            for driver in extract_drivers(node):
                if not driver.matches(self.pilot_names):
                    continue
                drivers.append(self._driver_record(driver))
        stream = node.get("Stream")
        return SessionRecord(
            name=key,
            session_type=kind,
            date_time=to_int(child_text(node, "DateTime")),
            time_string=child_text(node, "TimeString") or None,
            laps_configured=to_int(child_text(node, "Laps")),
            minutes_configured=to_int(child_text(node, "Minutes")),
            drivers=drivers,
            has_drivers=has_drivers,
            stream=stream if stream not in (None, "") else None,
        )

    @staticmethod
    def _driver_record(driver: DriverResult) -> DriverRecord:
        laps: List[LapRecord] = []
        for lap in driver.laps:
            # Stored lap numbers are whole numbers; anything else is unparseable.
            if not math.isfinite(lap.num) or not float(lap.num).is_integer():
                continue
            laps.append(
                LapRecord(
                    lap_num=int(lap.num),
                    lap_time=_finite(lap.time_sec),
                    sector1=_finite(lap.s1),
                    sector2=_finite(lap.s2),
                    sector3=_finite(lap.s3),
                    fuel_used=_finite(lap.fuel),
                )
            )
        return DriverRecord(
            name=driver.name,
            is_player=driver.is_player,
            position=_finite_int(driver.position),
            class_position=_finite_int(driver.class_position),
            finish_status=driver.finish_status,
            laps_count=_finite_int(driver.laps_count),
            best_lap_time=_finite(driver.best_lap_sec),
            best_lap_num=_finite_int(driver.best_lap_num),
            vehicle_name=driver.car or None,
            vehicle_class=driver.car_class or None,
            vehicle_number=driver.number or None,
            team_name=driver.team or None,
            aliases=list(driver.all_drivers),
            laps=laps,
        )


def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def _finite_int(value: float) -> Optional[int]:
    return int(value) if math.isfinite(value) else None
