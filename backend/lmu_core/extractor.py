from __future__ import annotations

import functools
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .utils import (
    NAN,
    class_priority,
    format_date_time,
    is_valid_time,
    mean,
    normalise_name,
    session_priority,
    session_type,
    to_number,
)
from .xmltree import as_list, child_text, is_node, node_attr, node_text

logger = logging.getLogger(__name__)

_SLOT_RE = re.compile(r"Slot=(\d+)")
_VEHICLE_RE = re.compile(r'Vehicle="([^"]+)"')
_OLD_RE = re.compile(r'Old="([^"]+)"')
_NEW_RE = re.compile(r'New="([^"]+)"')


@dataclass
class Lap:
    """A single lap of one driver; unknown numeric values are NaN."""

    num: float = NAN
    time_sec: float = NAN
    s1: float = NAN
    s2: float = NAN
    s3: float = NAN
    top_speed: float = NAN
    fuel: float = NAN
    pit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num": self.num,
            "timeSec": self.time_sec,
            "s1": self.s1,
            "s2": self.s2,
            "s3": self.s3,
            "topSpeed": self.top_speed,
            "fuel": self.fuel,
            "pit": self.pit,
        }


@dataclass
class DriverResult:
    """One grid entry of a session, with lap data and derived metrics."""

    name: str
    all_drivers: List[str] = field(default_factory=list)
    display_name: str = ""
    position: float = NAN
    class_position: float = NAN
    car: str = ""
    car_class: str = ""
    number: str = ""
    team: str = ""
    laps_count: float = NAN
    pitstops: float = 0
    best_lap_sec: float = NAN
    best_lap_num: float = NAN
    avg_lap_sec: float = NAN
    top_speed_max: float = NAN
    laps: List[Lap] = field(default_factory=list)
    finish_status: str = "N/A"
    is_player: bool = False

    def matches(self, names: Iterable[str]) -> bool:
        """True when the driver or one of its swap aliases is in ``names``."""

        wanted = {normalise_name(name) for name in names if normalise_name(name)}
        if not wanted:
            return False
        if normalise_name(self.name) in wanted:
            return True
        return any(normalise_name(alias) in wanted for alias in self.all_drivers)

    def valid_lap_times(self) -> List[float]:
        return [lap.time_sec for lap in self.laps if is_valid_time(lap.time_sec)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "allDrivers": list(self.all_drivers),
            "displayName": self.display_name,
            "position": self.position,
            "classPosition": self.class_position,
            "car": self.car,
            "carClass": self.car_class,
            "number": self.number,
            "team": self.team,
            "lapsCount": self.laps_count,
            "pitstops": self.pitstops,
            "bestLapSec": self.best_lap_sec,
            "bestLapNum": self.best_lap_num,
            "avgLapSec": self.avg_lap_sec,
            "topSpeedMax": self.top_speed_max,
            "laps": [lap.to_dict() for lap in self.laps],
            "finishStatus": self.finish_status,
            "isPlayer": self.is_player,
        }


@dataclass
class StreamEvent:
    et: float
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"et": self.et, "text": self.text}


@dataclass
class SessionMeta:
    session: str
    session_type: str
    track: str = ""
    event: str = ""
    time: str = ""
    most_laps: float = NAN
    sectors: List[StreamEvent] = field(default_factory=list)
    scores: List[StreamEvent] = field(default_factory=list)
    incidents: List[StreamEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session,
            "sessionType": self.session_type,
            "track": self.track,
            "event": self.event,
            "time": self.time,
            "mostLaps": self.most_laps,
            "sectors": [item.to_dict() for item in self.sectors],
            "scores": [item.to_dict() for item in self.scores],
            "incidents": [item.to_dict() for item in self.incidents],
        }


@dataclass
class Session:
    meta: SessionMeta
    drivers: List[DriverResult] = field(default_factory=list)

    def find_driver(self, names: Iterable[str]) -> Optional[DriverResult]:
        names = list(names)
        for driver in self.drivers:
            if driver.matches(names):
                return driver
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"meta": self.meta.to_dict(), "drivers": [driver.to_dict() for driver in self.drivers]}


def get_race_results_root(parsed: Any) -> Optional[Dict[str, Any]]:
    """Locate the ``RaceResults`` node, or ``None`` when the document has none."""

    if not is_node(parsed):
        return None
    wrapper = parsed.get("rFactorXML")
    if is_node(wrapper) and is_node(wrapper.get("RaceResults")):
        return wrapper["RaceResults"]
    root = parsed.get("RaceResults")
    return root if is_node(root) else None


def session_blocks(root: Dict[str, Any] | None) -> List[Tuple[str, Dict[str, Any]]]:
    """All ``(key, node)`` pairs of the root that hold a ``Driver`` field, in document order."""

    if not is_node(root):
        return []
    return [(key, value) for key, value in root.items() if is_node(value) and "Driver" in value]


def pick_session(root: Dict[str, Any] | None) -> Optional[Tuple[str, Dict[str, Any]]]:
    blocks = session_blocks(root)
    if not blocks:
        return None
    # sorted() is stable, so equal priorities keep document order.
    ranked = sorted(blocks, key=lambda item: -session_priority(item[0]))
    return ranked[0]


def has_race_block(root: Dict[str, Any] | None) -> bool:
    if not is_node(root):
        return False
    return any(is_node(value) and session_type(key) == "race" for key, value in root.items())


def extract_driver_changes(session_node: Dict[str, Any]) -> Dict[str, List[str]]:
    """Map each vehicle to every name that drove it during the session.

    Combines the ``Stream/DriverChange`` log with per-driver ``Swap`` lists.
    """

    by_vehicle: Dict[str, Dict[str, None]] = {}
    stream = session_node.get("Stream") if is_node(session_node) else None

    if is_node(stream):
        for change in as_list(stream.get("DriverChange")):
            text = node_text(change)
            slot = _SLOT_RE.search(text)
            vehicle = _VEHICLE_RE.search(text)
            old = _OLD_RE.search(text)
            new = _NEW_RE.search(text)
            if not (slot and vehicle and old and new):
                logger.debug("Ignoring unparseable DriverChange entry: %r", text)
                continue
            names = by_vehicle.setdefault(vehicle.group(1), {})
            names[old.group(1)] = None
            names[new.group(1)] = None

    for driver in as_list(session_node.get("Driver") if is_node(session_node) else None):
        if not is_node(driver):
            continue
        vehicle_name = child_text(driver, "VehName")
        swaps = as_list(driver.get("Swap"))
        if not vehicle_name or not swaps:
            continue
        names = by_vehicle.setdefault(vehicle_name, {})
        driver_name = child_text(driver, "Name")
        if driver_name:
            names[driver_name] = None
        for swap in swaps:
            swap_name = node_text(swap).strip()
            if swap_name:
                names[swap_name] = None

    return {vehicle: list(names) for vehicle, names in by_vehicle.items()}


def normalise_lap(raw: Any) -> Optional[Lap]:
    """Turn a bare scalar or a structured ``Lap`` element into a :class:`Lap`."""

    if raw is None:
        return None
    if not is_node(raw):
        return Lap(time_sec=to_number(raw))
    return Lap(
        num=to_number(node_attr(raw, "num")),
        time_sec=to_number(node_text(raw)),
        s1=to_number(node_attr(raw, "s1")),
        s2=to_number(node_attr(raw, "s2")),
        s3=to_number(node_attr(raw, "s3")),
        top_speed=to_number(node_attr(raw, "topspeed")),
        fuel=to_number(node_attr(raw, "fuel")),
        pit=(node_attr(raw, "pit") or "") == "1",
    )


def _build_driver(raw: Dict[str, Any], index: int, driver_changes: Dict[str, List[str]]) -> DriverResult:
    laps: List[Lap] = []
    for raw_lap in as_list(raw.get("Lap")):
        try:
            lap = normalise_lap(raw_lap)
        except Exception:
            logger.warning("Skipping malformed lap entry %r", raw_lap, exc_info=True)
            continue
        if lap is not None:
            laps.append(lap)

    valid_times = [lap.time_sec for lap in laps if is_valid_time(lap.time_sec)]
    declared_best = to_number(child_text(raw, "BestLapTime"))
    if math.isfinite(declared_best):
        best_lap = declared_best
    else:
        best_lap = min(valid_times) if valid_times else NAN

    speeds = [lap.top_speed for lap in laps if is_valid_time(lap.top_speed)]

    name = child_text(raw, "Name") or f"Driver {index + 1}"
    vehicle_name = child_text(raw, "VehName")
    aliases = driver_changes.get(vehicle_name) if vehicle_name else None
    all_drivers = list(aliases) if aliases else [name]

    declared_laps = _truthy_number(child_text(raw, "Laps"))
    pitstops = to_number(child_text(raw, "Pitstops"))

    return DriverResult(
        name=name,
        all_drivers=all_drivers,
        display_name=" / ".join(all_drivers) if len(all_drivers) > 1 else name,
        position=to_number(child_text(raw, "Position")),
        class_position=to_number(child_text(raw, "ClassPosition")),
        car=child_text(raw, "CarType") or vehicle_name,
        car_class=child_text(raw, "CarClass") or child_text(raw, "VehClass"),
        number=child_text(raw, "CarNumber"),
        team=child_text(raw, "TeamName"),
        laps_count=declared_laps if declared_laps is not None else float(len(laps)),
        pitstops=pitstops if math.isfinite(pitstops) else 0,
        best_lap_sec=best_lap,
        best_lap_num=to_number(child_text(raw, "BestLapNum")),
        avg_lap_sec=mean(valid_times),
        top_speed_max=max(speeds) if speeds else NAN,
        laps=laps,
        finish_status=child_text(raw, "FinishStatus") or "N/A",
        is_player=child_text(raw, "isPlayer") == "1",
    )


def _truthy_number(value: Any) -> Optional[float]:
    """A parsed number, or ``None`` when it is NaN or zero."""

    number = to_number(value)
    if not math.isfinite(number) or number == 0:
        return None
    return number


def _compare_drivers(a: DriverResult, b: DriverResult) -> int:
    priority_a = class_priority(a.car_class)
    priority_b = class_priority(b.car_class)
    if priority_a != priority_b:
        return priority_a - priority_b
    if math.isfinite(a.class_position) and math.isfinite(b.class_position):
        return _sign(a.class_position - b.class_position)
    return _sign(a.best_lap_sec - b.best_lap_sec)


def _sign(value: float) -> int:
    if math.isnan(value) or value == 0:
        return 0
    return 1 if value > 0 else -1


def extract_drivers(session_node: Dict[str, Any]) -> List[DriverResult]:
    driver_changes = extract_driver_changes(session_node)
    drivers: List[DriverResult] = []
    for index, raw in enumerate(as_list(session_node.get("Driver"))):
        if not is_node(raw):
            logger.debug("Skipping non-element Driver entry at index %s", index)
            continue
        try:
            drivers.append(_build_driver(raw, index, driver_changes))
        except Exception:
            logger.warning("Skipping malformed driver entry at index %s", index, exc_info=True)
    drivers.sort(key=functools.cmp_to_key(_compare_drivers))
    return drivers


def _stream_events(stream: Any, key: str) -> List[StreamEvent]:
    if not is_node(stream):
        return []
    events: List[StreamEvent] = []
    for item in as_list(stream.get(key)):
        events.append(StreamEvent(et=to_number(node_attr(item, "et")), text=node_text(item)))
    return events


def extract_session_block(root: Dict[str, Any], name: str, node: Dict[str, Any]) -> Session:
    """Extract one named session block of a result root."""

    stream = node.get("Stream") if is_node(node.get("Stream")) else root.get("Stream")
    most_laps = _truthy_number(child_text(node, "MostLapsCompleted"))
    if most_laps is None:
        most_laps = _truthy_number(child_text(root, "MostLapsCompleted"))
    meta = SessionMeta(
        session=name,
        session_type=session_type(name),
        track=child_text(root, "TrackVenue") or child_text(root, "TrackCourse"),
        event=child_text(root, "TrackEvent"),
        time=format_date_time(root),
        most_laps=NAN if most_laps is None else most_laps,
        sectors=_stream_events(stream, "Sector"),
        scores=_stream_events(stream, "Score"),
        incidents=_stream_events(stream, "Incident"),
    )
    return Session(meta=meta, drivers=extract_drivers(node))


def extract_session(parsed: Any) -> Optional[Session]:
    """Extract the session to display from a decoded result document."""

    root = get_race_results_root(parsed)
    if root is None:
        return None
    picked = pick_session(root)
    if picked is None:
        return None
    name, node = picked
    return extract_session_block(root, name, node)
