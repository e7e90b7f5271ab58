from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import pytest  # type: ignore

from lmu_core.store import ResultStore


def build_lap(num: int, time: str, topspeed: str = "", pit: bool = False, s1: str = "", fuel: str = "") -> str:
    attrs = [f'num="{num}"']
    if s1:
        attrs.append(f's1="{s1}"')
    if topspeed:
        attrs.append(f'topspeed="{topspeed}"')
    if fuel:
        attrs.append(f'fuel="{fuel}"')
    if pit:
        attrs.append('pit="1"')
    return f"<Lap {' '.join(attrs)}>{time}</Lap>"


def build_driver(
    name: str,
    car_class: str = "Hyper",
    class_position: Optional[int] = 1,
    position: Optional[int] = 1,
    laps: Iterable[str] = (),
    best_lap: Optional[str] = None,
    veh_name: str = "",
    car_type: str = "",
    team: str = "",
    number: str = "",
    swaps: Sequence[str] = (),
    finish_status: str = "Finished Normally",
    is_player: bool = False,
) -> str:
    parts = [f"<Name>{name}</Name>", f"<CarClass>{car_class}</CarClass>"]
    if position is not None:
        parts.append(f"<Position>{position}</Position>")
    if class_position is not None:
        parts.append(f"<ClassPosition>{class_position}</ClassPosition>")
    if veh_name:
        parts.append(f"<VehName>{veh_name}</VehName>")
    if car_type:
        parts.append(f"<CarType>{car_type}</CarType>")
    if team:
        parts.append(f"<TeamName>{team}</TeamName>")
    if number:
        parts.append(f"<CarNumber>{number}</CarNumber>")
    if best_lap is not None:
        parts.append(f"<BestLapTime>{best_lap}</BestLapTime>")
    if finish_status:
        parts.append(f"<FinishStatus>{finish_status}</FinishStatus>")
    parts.append(f"<isPlayer>{1 if is_player else 0}</isPlayer>")
    parts.extend(f"<Swap>{swap}</Swap>" for swap in swaps)
    parts.extend(laps)
    return "<Driver>" + "".join(parts) + "</Driver>"


def build_result_xml(
    sessions: Dict[str, List[str]],
    track_venue: str = "Circuit de la Sarthe",
    track_course: str = "Le Mans 24h",
    track_event: str = "Le Mans",
    date_time: Optional[int] = 1718000000,
    setting: str = "Race Weekend",
    streams: Optional[Dict[str, str]] = None,
    wrapped: bool = True,
) -> str:
    streams = streams or {}
    blocks = []
    for name, drivers in sessions.items():
        stream = streams.get(name, "")
        stream_xml = f"<Stream>{stream}</Stream>" if stream else ""
        blocks.append(f"<{name}><DateTime>{date_time or ''}</DateTime><Laps>0</Laps>{stream_xml}{''.join(drivers)}</{name}>")
    header = [
        f"<Setting>{setting}</Setting>",
        "<GameVersion>1.0</GameVersion>",
        f"<TrackVenue>{track_venue}</TrackVenue>",
        f"<TrackCourse>{track_course}</TrackCourse>",
        f"<TrackEvent>{track_event}</TrackEvent>",
        "<TrackLength>13626.0</TrackLength>",
    ]
    if date_time is not None:
        header.append(f"<DateTime>{date_time}</DateTime>")
    body = "<RaceResults>" + "".join(header) + "".join(blocks) + "</RaceResults>"
    if wrapped:
        return f'<?xml version="1.0" encoding="utf-8"?><rFactorXML version="1.0">{body}</rFactorXML>'
    return body


@pytest.fixture()
def results_dir(tmp_path: Path) -> Path:
    folder = tmp_path / "results"
    folder.mkdir()
    return folder


@pytest.fixture()
def write_result(results_dir: Path) -> Callable[..., Path]:
    def _write(name: str, content: str, mtime: Optional[float] = None) -> Path:
        path = results_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _write


@pytest.fixture()
def store(tmp_path: Path):
    result_store = ResultStore(tmp_path / "db" / "results.db")
    yield result_store
    result_store.close()
