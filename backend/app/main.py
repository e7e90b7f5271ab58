from __future__ import annotations

import logging
import math
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from lmu_core import Indexer, ResultStore, ScannedFile, Settings, StatsAggregator, StatsCache, content_fingerprint
from lmu_core.scanner import DEFAULT_WORKERS, scan_folder
from lmu_core.stats import (
    calculate_driver_stats,
    calculate_track_stats,
    calculate_vehicle_stats,
    calculate_vehicle_track_stats,
    observations_from_store,
)
from lmu_core.utils import SESSION_TYPES

logger = logging.getLogger(__name__)

SOURCE_SCAN = "scan"
SOURCE_STORE = "store"


@dataclass
class AppContext:
    """Process-wide state shared by the request handlers."""

    settings: Settings
    store: ResultStore
    indexer: Indexer
    aggregator: StatsAggregator
    files: List[ScannedFile] = field(default_factory=list)
    scan_lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_settings(cls, settings: Settings, store: ResultStore | None = None) -> "AppContext":
        store = store or ResultStore(settings.db_path)
        indexer, aggregator = _build_workers(settings, store)
        return cls(settings=settings, store=store, indexer=indexer, aggregator=aggregator)

    def apply_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.indexer, self.aggregator = _build_workers(settings, self.store)


def _build_workers(settings: Settings, store: ResultStore) -> tuple[Indexer, StatsAggregator]:
    pilot = settings.pilot_names()
    return Indexer(store, pilot, settings.session_types), StatsAggregator(pilot, StatsCache(content_fingerprint))


@lru_cache(maxsize=1)
def context() -> AppContext:
    return AppContext.from_settings(Settings.load())


def get_context() -> AppContext:
    return context()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if context.cache_info().currsize:
        context().store.close()


app = FastAPI(title="LMU Results API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ScanRequest(BaseModel):
    folder: Optional[str] = None
    max_workers: int = Field(default=DEFAULT_WORKERS, alias="maxWorkers", ge=1, le=32)

    model_config = ConfigDict(populate_by_name=True)


class IndexSummaryModel(BaseModel):
    indexed: int
    skipped: int
    failed: int
    errors: List[str] = Field(default_factory=list)


class ScanResponse(BaseModel):
    folder: str
    scanned: int
    failed: int
    index: IndexSummaryModel


class StoreResultModel(BaseModel):
    ok: bool
    error: Optional[str] = None
    deleted: int = 0
    message: Optional[str] = None


class SettingsModel(BaseModel):
    results_folder: str = Field(default="", alias="resultsFolder")
    driver_name: str = Field(default="", alias="driverName")
    selected_car_class: str = Field(default="Hyper", alias="selectedCarClass")
    session_types: List[str] = Field(default_factory=lambda: list(SESSION_TYPES), alias="sessionTypes")

    model_config = ConfigDict(populate_by_name=True)


def _clean(value: Any) -> Any:
    """Replace non-finite floats with ``None`` so the payload is valid JSON."""

    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _clean(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_clean(item) for item in value]
    return value


def _require_pilot(ctx: AppContext) -> List[str]:
    names = ctx.settings.pilot_names()
    if not names:
        raise HTTPException(status_code=400, detail="Driver name is not configured")
    return names


def _store_result(result) -> StoreResultModel:
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error or "Store operation failed")
    return StoreResultModel(ok=True, deleted=result.deleted, message=result.message)


@app.get("/health")
def health(ctx: AppContext = Depends(get_context)) -> dict:
    return {"status": "degraded" if ctx.store.degraded else "ok"}


@app.get("/settings", response_model=SettingsModel)
def read_settings(ctx: AppContext = Depends(get_context)):
    return SettingsModel(**ctx.settings.to_dict())


@app.put("/settings", response_model=SettingsModel)
def update_settings(payload: SettingsModel, ctx: AppContext = Depends(get_context)):
    unknown = [item for item in payload.session_types if item not in SESSION_TYPES]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown session types: {', '.join(unknown)}")
    settings = Settings(
        results_folder=payload.results_folder,
        driver_name=payload.driver_name,
        selected_car_class=payload.selected_car_class,
        session_types=list(payload.session_types),
        db_path=ctx.settings.db_path,
    )
    try:
        settings.save()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    ctx.apply_settings(settings)
    return SettingsModel(**settings.to_dict())


@app.post("/scan", response_model=ScanResponse)
def scan(payload: Optional[ScanRequest] = Body(default=None), ctx: AppContext = Depends(get_context)):
    payload = payload or ScanRequest()
    folder = payload.folder or ctx.settings.results_folder
    if not folder:
        raise HTTPException(status_code=400, detail="Results folder is not configured")

    if not ctx.scan_lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="A scan is already running")
    try:
        try:
            files = scan_folder(folder, max_workers=payload.max_workers)
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        summary = ctx.indexer.index_scanned(files)
        ctx.files = files
        ctx.aggregator.invalidate()
    finally:
        ctx.scan_lock.release()

    return ScanResponse(
        folder=str(folder),
        scanned=len(files),
        failed=sum(1 for item in files if item.error is not None),
        index=IndexSummaryModel(**summary),
    )


@app.get("/files")
def list_files(ctx: AppContext = Depends(get_context)) -> dict:
    return {
        "files": _clean(ctx.store.list_files()),
        "scanErrors": [item.to_dict() for item in ctx.files if item.error is not None],
    }


@app.get("/files/detail")
def file_detail(path: str = Query(...), ctx: AppContext = Depends(get_context)) -> dict:
    data = ctx.store.get_file_data(path)
    if data is None:
        raise HTTPException(status_code=404, detail=f"File not indexed: {path}")
    return jsonable_encoder(_clean(data))


@app.get("/files/dates")
def file_dates(path: str = Query(...), ctx: AppContext = Depends(get_context)) -> dict:
    data = ctx.store.get_file_dates(path)
    if data is None:
        raise HTTPException(status_code=404, detail=f"File not indexed: {path}")
    return data


def _check_source(source: str) -> str:
    if source not in (SOURCE_SCAN, SOURCE_STORE):
        raise HTTPException(status_code=400, detail=f"Unknown source '{source}'")
    return source


@app.get("/stats/driver")
def driver_stats(source: str = Query(default=SOURCE_SCAN), ctx: AppContext = Depends(get_context)) -> dict:
    names = _require_pilot(ctx)
    if _check_source(source) == SOURCE_STORE:
        return _clean(calculate_driver_stats(observations_from_store(ctx.store, names)))
    return _clean(ctx.aggregator.driver_stats(ctx.files))


@app.get("/stats/tracks")
def track_stats(source: str = Query(default=SOURCE_SCAN), ctx: AppContext = Depends(get_context)) -> dict:
    names = _require_pilot(ctx)
    if _check_source(source) == SOURCE_STORE:
        return _clean(calculate_track_stats(observations_from_store(ctx.store, names)))
    return _clean(ctx.aggregator.track_stats(ctx.files))


@app.get("/stats/vehicles")
def vehicle_stats(source: str = Query(default=SOURCE_SCAN), ctx: AppContext = Depends(get_context)) -> dict:
    names = _require_pilot(ctx)
    if _check_source(source) == SOURCE_STORE:
        return _clean(calculate_vehicle_stats(observations_from_store(ctx.store, names)))
    return _clean(ctx.aggregator.vehicle_stats(ctx.files))


@app.get("/stats/vehicle-tracks")
def vehicle_track_stats(
    vehicle: str = Query(...),
    car_class: str = Query(default="", alias="carClass"),
    source: str = Query(default=SOURCE_SCAN),
    ctx: AppContext = Depends(get_context),
) -> dict:
    names = _require_pilot(ctx)
    if _check_source(source) == SOURCE_STORE:
        observations = observations_from_store(ctx.store, names)
        return _clean(calculate_vehicle_track_stats(observations, vehicle, car_class))
    return _clean(ctx.aggregator.vehicle_track_stats(ctx.files, vehicle, car_class))


@app.get("/db/stats")
def db_stats(ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    stats = ctx.store.get_stats()
    if stats is None:
        raise HTTPException(status_code=500, detail="Failed to read store statistics")
    return stats


@app.post("/db/prune", response_model=StoreResultModel)
def prune(ctx: AppContext = Depends(get_context)):
    return _store_result(ctx.indexer.prune())


@app.post("/db/reset", response_model=StoreResultModel)
def reset(ctx: AppContext = Depends(get_context)):
    result = ctx.indexer.reset()
    ctx.aggregator.invalidate()
    return _store_result(result)
