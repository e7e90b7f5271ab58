from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .utils import SESSION_TYPES, split_names

logger = logging.getLogger(__name__)

DEFAULT_CAR_CLASS = "Hyper"
SETTINGS_FILENAME = "settings.json"
DB_FILENAME = "lmu_results.db"


def data_dir() -> Path:
    raw = os.getenv("LMU_DATA_DIR")
    return Path(raw).expanduser() if raw else Path.home() / ".lmu_tracker"


@dataclass
class Settings:
    """User configuration: where results live and whose results to track."""

    results_folder: str = ""
    driver_name: str = ""
    selected_car_class: str = DEFAULT_CAR_CLASS
    session_types: List[str] = field(default_factory=lambda: list(SESSION_TYPES))
    db_path: Path = field(default_factory=lambda: data_dir() / DB_FILENAME)

    @classmethod
    def load(cls, path: Path | None = None) -> "Settings":
        """Read settings from JSON, then apply environment overrides.

        A missing or unreadable file falls back to the defaults.
        """

        path = path or data_dir() / SETTINGS_FILENAME
        raw = _read_json_file(path, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring settings file %s: expected an object", path)
            raw = {}

        settings = cls()
        settings.results_folder = str(raw.get("resultsFolder") or settings.results_folder)
        settings.driver_name = str(raw.get("driverName") or settings.driver_name)
        settings.selected_car_class = str(raw.get("selectedCarClass") or settings.selected_car_class)
        session_types = raw.get("sessionTypes")
        if isinstance(session_types, list):
            settings.session_types = [item for item in session_types if item in SESSION_TYPES]
        if raw.get("dbPath"):
            settings.db_path = Path(str(raw["dbPath"])).expanduser()

        settings.results_folder = os.getenv("LMU_RESULTS_FOLDER", settings.results_folder)
        settings.driver_name = os.getenv("LMU_DRIVER_NAME", settings.driver_name)
        if os.getenv("LMU_DB_PATH"):
            settings.db_path = Path(os.environ["LMU_DB_PATH"]).expanduser()
        return settings

    def save(self, path: Path | None = None) -> None:
        _write_json_file(path or data_dir() / SETTINGS_FILENAME, self.to_dict())

    def pilot_names(self) -> List[str]:
        return split_names(self.driver_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resultsFolder": self.results_folder,
            "driverName": self.driver_name,
            "selectedCarClass": self.selected_car_class,
            "sessionTypes": list(self.session_types),
            "dbPath": str(self.db_path),
        }


def _read_json_file(path: Path, default: Any) -> Any:
    try:
        if not path.exists():
            return default
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Falling back to default settings for %s due to read error: %s", path, exc)
        return default


def _write_json_file(path: Path, data: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
    except OSError as exc:
        raise RuntimeError(f"Failed to write settings file {path}") from exc
