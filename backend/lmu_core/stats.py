"""Driver, track and vehicle aggregates over scanned or stored result files.

Every aggregate is computed in two steps.  First each result file is turned
into at most one :class:`Observation`: the tracked pilot's entry in the
session picked for display, plus the file level facts the aggregates need.
Then observations are folded into accumulators.  Observations can come from
a freshly scanned file set (single pass over decoded documents) or from the
result store.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .extractor import extract_session, get_race_results_root, has_race_block
from .scanner import ScannedFile
from .store import ResultStore
from .utils import (
    NAN,
    event_timestamp,
    format_date_time,
    game_mode,
    is_valid_time,
    normalise_name,
    session_priority,
    session_type,
    split_names,
    to_number,
)
from .xmltree import child_text

logger = logging.getLogger(__name__)

UNKNOWN_TRACK = "Unknown track"
UNKNOWN_CLASS = "Unknown"
UNKNOWN_VEHICLE = "Unknown vehicle"


@dataclass
class Observation:
    """The tracked pilot's result in one file."""

    file_path: str
    track: str
    venue: str
    event: str
    session: str
    is_race: bool
    timestamp: float
    date: str
    game_mode: Optional[str]
    position: float
    class_position: float
    car_class: str
    vehicle: str
    best_lap: float
    top_speed: float
    lap_times: List[float] = field(default_factory=list)
    lap_count: int = 0


def _track_key(course: str, venue: str) -> str:
    return course or venue or UNKNOWN_TRACK


def _vehicle_key(car: str, team: str, number: str) -> str:
    return car or team or number or UNKNOWN_VEHICLE


def observations_from_scanned(files: Iterable[ScannedFile], pilot: Sequence[str]) -> List[Observation]:
    observations: List[Observation] = []
    for scanned in files or ():
        if scanned.error is not None or scanned.parsed is None:
            continue
        try:
            observation = _observe_scanned(scanned, pilot)
        except Exception:
            logger.warning("Skipping %s while computing statistics", scanned.file_path, exc_info=True)
            continue
        if observation is not None:
            observations.append(observation)
    return observations


def _observe_scanned(scanned: ScannedFile, pilot: Sequence[str]) -> Optional[Observation]:
    session = extract_session(scanned.parsed)
    if session is None:
        return None
    driver = session.find_driver(pilot)
    if driver is None:
        return None
    root = get_race_results_root(scanned.parsed) or {}
    course = child_text(root, "TrackCourse")
    venue = child_text(root, "TrackVenue")
    return Observation(
        file_path=scanned.file_path,
        track=_track_key(course, venue),
        venue=session.meta.track,
        event=session.meta.event or "Session",
        session=session.meta.session,
        is_race=has_race_block(root),
        timestamp=event_timestamp(root, scanned.mtime),
        date=format_date_time(root, scanned.mtime),
        game_mode=game_mode(root),
        position=driver.position,
        class_position=driver.class_position,
        car_class=driver.car_class,
        vehicle=_vehicle_key(driver.car, driver.team, driver.number),
        best_lap=driver.best_lap_sec,
        top_speed=driver.top_speed_max,
        lap_times=driver.valid_lap_times(),
        lap_count=len(driver.laps),
    )


def observations_from_store(store: ResultStore, pilot: Sequence[str]) -> List[Observation]:
    """Rebuild observations from indexed rows (durable path).

    The store keeps no per-lap top speed, so ``top_speed`` is NaN here.
    Laps without a whole lap number are never stored, so ``lap_count`` can
    be lower than on the scan path for files with bare lap entries.
    """

    wanted = {normalise_name(name) for name in pilot if normalise_name(name)}
    observations: List[Observation] = []
    for meta in store.list_files():
        path = meta.get("file_path")
        try:
            data = store.get_file_data(path)
            observation = _observe_stored(data, wanted) if data else None
        except Exception:
            logger.warning("Skipping stored file %s while computing statistics", path, exc_info=True)
            continue
        if observation is not None:
            observations.append(observation)
    return observations


def _stored_driver_matches(row: Dict[str, Any], wanted: set) -> bool:
    names = [row.get("name")] + list(row.get("aliases") or [])
    return any(normalise_name(name) in wanted for name in names)


def _observe_stored(data: Dict[str, Any], wanted: set) -> Optional[Observation]:
    meta = data["metadata"]
    # Only blocks that carried Driver entries are candidates, as on the scan path.
    sessions = [session for session in data["sessions"] if session.get("has_drivers", True)]
    if not sessions:
        return None
    ranked = sorted(sessions, key=lambda session: -session_priority(session["session_name"]))
    picked = ranked[0]
    driver = next((row for row in picked["drivers"] if _stored_driver_matches(row, wanted)), None)
    if driver is None:
        return None

    lap_times = [lap["lap_time"] for lap in driver["laps"] if is_valid_time(to_number(lap["lap_time"]))]
    best = to_number(driver.get("best_lap_time"))
    if not math.isfinite(best):
        best = min(lap_times) if lap_times else NAN
    mtime = meta["file_mtime"] / 1000 if meta.get("file_mtime") is not None else None
    root = {"DateTime": meta.get("date_time"), "TimeString": meta.get("time_string")}
    course = meta.get("track_course") or ""
    venue = meta.get("track_venue") or ""
    return Observation(
        file_path=meta["file_path"],
        track=_track_key(course, venue),
        venue=venue or course,
        event=meta.get("track_event") or "Session",
        session=picked["session_name"],
        is_race=any(session_type(session["session_name"]) == "race" for session in data["sessions"]),
        timestamp=event_timestamp(root, mtime),
        date=format_date_time(root, mtime),
        game_mode=None,
        position=to_number(driver.get("position")),
        class_position=to_number(driver.get("class_position")),
        car_class=driver.get("vehicle_class") or "",
        vehicle=_vehicle_key(driver.get("vehicle_name") or "", driver.get("team_name") or "", driver.get("vehicle_number") or ""),
        best_lap=best,
        top_speed=NAN,
        lap_times=lap_times,
        lap_count=len(driver["laps"]),
    )


# ----------------------------------------------------------------------
# Accumulators


@dataclass
class _Aggregate:
    sessions: int = 0
    best_lap: float = math.inf
    top_speed: float = -math.inf
    last_session: float = 0.0
    total_laps: int = 0
    lap_times: List[float] = field(default_factory=list)

    def add(self, observation: Observation) -> None:
        self.sessions += 1
        if is_valid_time(observation.best_lap) and observation.best_lap < self.best_lap:
            self.best_lap = observation.best_lap
        if is_valid_time(observation.top_speed) and observation.top_speed > self.top_speed:
            self.top_speed = observation.top_speed
        if observation.timestamp > self.last_session:
            self.last_session = observation.timestamp
        self.lap_times.extend(observation.lap_times)
        self.total_laps += observation.lap_count

    def to_dict(self) -> Dict[str, Any]:
        # Pooled mean over every valid lap, not a mean of per-session means.
        return {
            "sessions": self.sessions,
            "bestLap": self.best_lap if math.isfinite(self.best_lap) else NAN,
            "avgLap": sum(self.lap_times) / len(self.lap_times) if self.lap_times else NAN,
            "topSpeed": self.top_speed if math.isfinite(self.top_speed) else NAN,
            "totalLaps": self.total_laps,
        }


def _track_stats(observations: Iterable[Observation]) -> Dict[str, Dict[str, Any]]:
    tracks: Dict[str, _Aggregate] = {}
    classes: Dict[str, Dict[str, _Aggregate]] = {}
    for observation in observations:
        tracks.setdefault(observation.track, _Aggregate()).add(observation)
        per_class = classes.setdefault(observation.track, {})
        if observation.car_class and observation.car_class != UNKNOWN_CLASS:
            per_class.setdefault(observation.car_class, _Aggregate()).add(observation)

    result: Dict[str, Dict[str, Any]] = {}
    for track, aggregate in tracks.items():
        data = aggregate.to_dict()
        data["trackName"] = track
        data["lastSession"] = aggregate.last_session
        data["classStats"] = {name: item.to_dict() for name, item in classes[track].items()}
        result[track] = data
    return result


def calculate_driver_stats(observations: Iterable[Observation]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        "totalSessions": 0,
        "totalRaces": 0,
        "bestLap": NAN,
        "topSpeed": NAN,
        "recentSessions": [],
        "podiumsByClass": {},
        "totalWins": 0,
        "totalPodiums": 0,
    }
    best = math.inf
    top = -math.inf

    for observation in observations:
        stats["totalSessions"] += 1
        if observation.is_race:
            stats["totalRaces"] += 1
            # A file may hold a race block while the pilot only shows up in qualifying.
            position = observation.class_position if session_type(observation.session) == "race" else NAN
            if math.isfinite(position) and 0 < position <= 3:
                car_class = observation.car_class or UNKNOWN_CLASS
                tally = stats["podiumsByClass"].setdefault(car_class, {"wins": 0, "podiums": 0})
                tally["podiums"] += 1
                stats["totalPodiums"] += 1
                if position == 1:
                    tally["wins"] += 1
                    stats["totalWins"] += 1

        if is_valid_time(observation.best_lap) and observation.best_lap < best:
            best = observation.best_lap
        if is_valid_time(observation.top_speed) and observation.top_speed > top:
            top = observation.top_speed

        stats["recentSessions"].append(
            {
                "filePath": observation.file_path,
                "event": observation.event,
                "track": observation.venue,
                "date": observation.date,
                "timestamp": observation.timestamp,
                "bestLap": observation.best_lap,
                "position": observation.position,
                "classPosition": observation.class_position,
                "carClass": observation.car_class,
                "session": observation.session,
                "gameMode": observation.game_mode,
            }
        )

    stats["recentSessions"].sort(key=lambda item: (item["timestamp"], item["date"]), reverse=True)
    if math.isfinite(best):
        stats["bestLap"] = best
    if math.isfinite(top):
        stats["topSpeed"] = top
    return stats


def calculate_track_stats(observations: Iterable[Observation]) -> Dict[str, Dict[str, Any]]:
    return _track_stats(observations)


def calculate_vehicle_stats(observations: Iterable[Observation]) -> Dict[str, Dict[str, Dict[str, Any]]]:
    """``{class: {vehicle: aggregate}}`` with vehicles ordered by session count, descending."""

    grouped: Dict[str, Dict[str, _Aggregate]] = {}
    for observation in observations:
        car_class = observation.car_class or UNKNOWN_CLASS
        grouped.setdefault(car_class, {}).setdefault(observation.vehicle, _Aggregate()).add(observation)

    result: Dict[str, Dict[str, Dict[str, Any]]] = {}
    for car_class, vehicles in grouped.items():
        ordered = sorted(vehicles.items(), key=lambda item: item[1].sessions, reverse=True)
        result[car_class] = {}
        for vehicle, aggregate in ordered:
            data = aggregate.to_dict()
            data["vehicle"] = vehicle
            data["carClass"] = car_class
            data["lastSession"] = aggregate.last_session
            result[car_class][vehicle] = data
    return result


def calculate_vehicle_track_stats(
    observations: Iterable[Observation], vehicle: str, car_class: str
) -> Dict[str, Dict[str, Any]]:
    wanted_class = car_class or UNKNOWN_CLASS
    selected = [
        observation
        for observation in observations
        if observation.vehicle == vehicle and (observation.car_class or UNKNOWN_CLASS) == wanted_class
    ]
    return _track_stats(selected)


# ----------------------------------------------------------------------
# Memoisation


def count_fingerprint(files: Sequence[Any]) -> Hashable:
    """Number of files in the set; callers must ``invalidate()`` after each scan."""

    return len(files or ())


def content_fingerprint(files: Sequence[ScannedFile]) -> Hashable:
    """Digest of every file's path, mtime and error state."""

    digest = hashlib.sha1()
    for scanned in sorted(files or (), key=lambda item: item.file_path):
        digest.update(f"{scanned.file_path}|{scanned.mtime_ns or scanned.mtime}|{scanned.error is None}\n".encode("utf-8"))
    return digest.hexdigest()


class StatsCache:
    """Single-slot-per-kind memo keyed on (pilot, file-set fingerprint, selector)."""

    def __init__(self, fingerprint: Callable[[Sequence[Any]], Hashable] = count_fingerprint) -> None:
        self.fingerprint = fingerprint
        self._entries: Dict[str, Tuple[Hashable, Any]] = {}

    def get_or_compute(
        self,
        kind: str,
        pilot: Sequence[str],
        files: Sequence[Any],
        compute: Callable[[], Any],
        extra: Hashable = None,
    ) -> Any:
        key = (tuple(pilot), self.fingerprint(files), extra)
        cached = self._entries.get(kind)
        if cached is not None and cached[0] == key:
            return cached[1]
        value = compute()
        self._entries[kind] = (key, value)
        return value

    def invalidate(self) -> None:
        self._entries.clear()


class StatsAggregator:
    """Memoised aggregates for one tracked pilot over a scanned file set."""

    def __init__(self, pilot: str | Iterable[str] | None, cache: StatsCache | None = None) -> None:
        self.pilot: Tuple[str, ...] = tuple(split_names(pilot))
        self.cache = cache or StatsCache()

    def _observations(self, files: Sequence[ScannedFile]) -> List[Observation]:
        return observations_from_scanned(files, self.pilot)

    def driver_stats(self, files: Sequence[ScannedFile]) -> Dict[str, Any]:
        return self.cache.get_or_compute(
            "driver", self.pilot, files, lambda: calculate_driver_stats(self._observations(files))
        )

    def track_stats(self, files: Sequence[ScannedFile]) -> Dict[str, Any]:
        return self.cache.get_or_compute(
            "tracks", self.pilot, files, lambda: calculate_track_stats(self._observations(files))
        )

    def vehicle_stats(self, files: Sequence[ScannedFile]) -> Dict[str, Any]:
        return self.cache.get_or_compute(
            "vehicles", self.pilot, files, lambda: calculate_vehicle_stats(self._observations(files))
        )

    def vehicle_track_stats(self, files: Sequence[ScannedFile], vehicle: str, car_class: str) -> Dict[str, Any]:
        return self.cache.get_or_compute(
            "vehicle_tracks",
            self.pilot,
            files,
            lambda: calculate_vehicle_track_stats(self._observations(files), vehicle, car_class),
            extra=(vehicle, car_class),
        )

    def invalidate(self) -> None:
        self.cache.invalidate()
