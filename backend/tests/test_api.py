from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest  # type: ignore
from fastapi.testclient import TestClient

from app.main import AppContext, app, get_context
from conftest import build_driver, build_lap, build_result_xml
from lmu_core.settings import Settings


@pytest.fixture()
def ctx(tmp_path: Path, results_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[AppContext]:
    monkeypatch.setenv("LMU_DATA_DIR", str(tmp_path / "data"))
    settings = Settings(results_folder=str(results_dir), driver_name="Alice", db_path=tmp_path / "api.db")
    context = AppContext.from_settings(settings)
    yield context
    context.store.close()


@pytest.fixture()
def client(ctx: AppContext) -> Iterator[TestClient]:
    app.dependency_overrides[get_context] = lambda: ctx
    yield TestClient(app)
    app.dependency_overrides.clear()


def _race(class_position: int, laps=("100.0",), date_time: int = 1_718_000_000) -> str:
    lap_xml = [build_lap(index + 1, time) for index, time in enumerate(laps)]
    return build_result_xml(
        {"Race": [build_driver("Alice", class_position=class_position, car_type="Porsche 963", laps=lap_xml)]},
        date_time=date_time,
    )


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_scan_indexes_and_reports(client: TestClient, write_result) -> None:
    write_result("a.xml", _race(1))
    write_result("b.xml", _race(4, date_time=1_719_000_000))
    write_result("broken.xml", "<RaceResults>")

    response = client.post("/scan")

    assert response.status_code == 200
    body = response.json()
    assert body["scanned"] == 3
    assert body["failed"] == 1
    assert body["index"]["indexed"] == 2
    assert body["index"]["failed"] == 1

    files = client.get("/files").json()
    assert len(files["files"]) == 2
    assert files["files"][0]["file_path"].endswith("b.xml")
    assert files["scanErrors"][0]["filePath"].endswith("broken.xml")

    again = client.post("/scan", json={"maxWorkers": 2}).json()
    assert again["index"]["skipped"] == 2


def test_scan_requires_existing_folder(client: TestClient, tmp_path: Path) -> None:
    response = client.post("/scan", json={"folder": str(tmp_path / "missing")})

    assert response.status_code == 404


def test_stats_endpoints(client: TestClient, write_result) -> None:
    write_result("a.xml", _race(1, laps=("100.0", "0")))
    write_result("b.xml", _race(3, laps=("99.0",)))
    client.post("/scan")

    driver = client.get("/stats/driver").json()
    assert driver["totalRaces"] == 2
    assert driver["totalWins"] == 1
    assert driver["totalPodiums"] == 2
    assert driver["topSpeed"] is None

    tracks = client.get("/stats/tracks").json()
    assert tracks["Le Mans 24h"]["avgLap"] == pytest.approx(99.5)

    vehicles = client.get("/stats/vehicles").json()
    assert vehicles["Hyper"]["Porsche 963"]["sessions"] == 2

    per_track = client.get("/stats/vehicle-tracks", params={"vehicle": "Porsche 963", "carClass": "Hyper"}).json()
    assert list(per_track) == ["Le Mans 24h"]

    stored = client.get("/stats/driver", params={"source": "store"}).json()
    assert stored["totalPodiums"] == 2
    assert client.get("/stats/driver", params={"source": "cloud"}).status_code == 400


def test_stats_need_a_driver_name(client: TestClient, ctx: AppContext) -> None:
    ctx.apply_settings(Settings(results_folder=ctx.settings.results_folder, db_path=ctx.settings.db_path))

    assert client.get("/stats/driver").status_code == 400


def test_file_detail_and_dates(client: TestClient, write_result) -> None:
    path = write_result("a.xml", _race(1))
    client.post("/scan")

    detail = client.get("/files/detail", params={"path": str(path)})
    assert detail.status_code == 200
    assert detail.json()["sessions"][0]["drivers"][0]["name"] == "Alice"
    assert client.get("/files/dates", params={"path": str(path)}).json()["date_time"] == 1_718_000_000
    assert client.get("/files/detail", params={"path": "/nope.xml"}).status_code == 404
    assert client.get("/files/dates", params={"path": "/nope.xml"}).status_code == 404


def test_prune_reset_and_db_stats(client: TestClient, write_result) -> None:
    keep = write_result("keep.xml", _race(1))
    gone = write_result("gone.xml", _race(2))
    client.post("/scan")
    gone.unlink()

    pruned = client.post("/db/prune").json()
    assert pruned["ok"] is True
    assert pruned["deleted"] == 1
    assert client.get("/db/stats").json()["files"] == 1

    reset = client.post("/db/reset").json()
    assert reset["ok"] is True
    assert client.get("/db/stats").json()["files"] == 0
    assert keep.exists()


def test_settings_update_rebuilds_pilot(client: TestClient, ctx: AppContext, tmp_path: Path) -> None:
    payload = {"resultsFolder": ctx.settings.results_folder, "driverName": "Bob", "sessionTypes": ["race"]}

    response = client.put("/settings", json=payload)

    assert response.status_code == 200
    assert ctx.indexer.pilot_names == ["Bob"]
    assert ctx.aggregator.pilot == ("Bob",)
    assert (tmp_path / "data" / "settings.json").exists()
    assert client.get("/settings").json()["driverName"] == "Bob"

    bad = client.put("/settings", json={**payload, "sessionTypes": ["hotlap"]})
    assert bad.status_code == 400


def test_context_starts_with_configured_pilot(ctx: AppContext) -> None:
    assert ctx.indexer.pilot_names == ["Alice"]
    assert ctx.indexer.store is ctx.store
    assert ctx.aggregator.pilot == ("Alice",)
