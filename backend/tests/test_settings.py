from __future__ import annotations

import json
from pathlib import Path

import pytest  # type: ignore

from lmu_core.settings import Settings


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LMU_DATA_DIR", str(tmp_path / "data"))
    for name in ("LMU_RESULTS_FOLDER", "LMU_DRIVER_NAME", "LMU_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = Settings.load()

    assert settings.results_folder == ""
    assert settings.selected_car_class == "Hyper"
    assert settings.session_types == ["race", "qualifying", "practice", "warmup"]
    assert settings.db_path == tmp_path / "data" / "lmu_results.db"
    assert settings.pilot_names() == []


def test_corrupt_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert Settings.load(path).driver_name == ""


def test_round_trip_and_pilot_aliases(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    Settings(results_folder="/games/results", driver_name="Alice, Bob ,", session_types=["race"]).save(path)

    loaded = Settings.load(path)

    assert json.loads(path.read_text(encoding="utf-8"))["driverName"] == "Alice, Bob ,"
    assert loaded.results_folder == "/games/results"
    assert loaded.session_types == ["race"]
    assert loaded.pilot_names() == ["Alice", "Bob"]


def test_unknown_session_types_are_dropped(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"sessionTypes": ["race", "hotlap"]}), encoding="utf-8")

    assert Settings.load(path).session_types == ["race"]


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"resultsFolder": "/from/file", "driverName": "Alice"}), encoding="utf-8")
    monkeypatch.setenv("LMU_RESULTS_FOLDER", "/from/env")
    monkeypatch.setenv("LMU_DB_PATH", str(tmp_path / "custom.db"))

    settings = Settings.load(path)

    assert settings.results_folder == "/from/env"
    assert settings.driver_name == "Alice"
    assert settings.db_path == tmp_path / "custom.db"


def test_save_failure_raises_runtime_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(RuntimeError):
        Settings().save(blocker / "settings.json")
