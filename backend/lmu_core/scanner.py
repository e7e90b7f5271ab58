from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .xmltree import decode_xml

logger = logging.getLogger(__name__)

RESULT_EXTENSION = ".xml"
DEFAULT_WORKERS = 4


@dataclass
class FileMeta:
    file_path: str
    size: int
    mtime: float
    mtime_ns: int

    @property
    def mtime_iso(self) -> str:
        return _iso(self.mtime)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filePath": self.file_path,
            "size": self.size,
            "mtime": self.mtime,
            "mtimeIso": self.mtime_iso,
        }


@dataclass
class ScannedFile:
    """Outcome of reading and decoding one result file.

    Exactly one of ``parsed`` and ``error`` is set.  Metadata is filled in
    whenever the file could still be stat'ed, so failed files keep showing up
    in listings.
    """

    file_path: str
    parsed: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    size: Optional[int] = None
    mtime: Optional[float] = None
    mtime_ns: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.parsed is not None

    @property
    def mtime_iso(self) -> Optional[str]:
        return _iso(self.mtime) if self.mtime is not None else None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "filePath": self.file_path,
            "mtime": self.mtime,
            "mtimeIso": self.mtime_iso,
            "size": self.size,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def _iso(timestamp: float) -> str:
    moment = dt.datetime.fromtimestamp(timestamp, dt.timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def list_result_files(folder: str | Path, extension: str = RESULT_EXTENSION) -> List[FileMeta]:
    """Recursively list result files under ``folder``, newest first, without parsing."""

    root = Path(folder)
    if not root.is_dir():
        raise FileNotFoundError(f"Results folder not found: {root}")

    suffix = extension.lower()
    found: List[FileMeta] = []
    for current, _dirs, names in os.walk(root):
        for name in names:
            if not name.lower().endswith(suffix):
                continue
            path = os.path.join(current, name)
            try:
                stat = os.stat(path)
            except OSError as exc:
                logger.debug("Skipping %s: %s", path, exc)
                continue
            found.append(FileMeta(file_path=path, size=stat.st_size, mtime=stat.st_mtime, mtime_ns=stat.st_mtime_ns))
    found.sort(key=lambda meta: meta.mtime, reverse=True)
    return found


def read_result_file(path: str | Path) -> ScannedFile:
    """Read, stat and decode one file; failures are reported, never raised."""

    file_path = str(path)
    try:
        stat = os.stat(file_path)
        with open(file_path, "rb") as handle:
            content = handle.read()
        parsed = decode_xml(content)
    except (OSError, ValueError) as exc:
        result = ScannedFile(file_path=file_path, error=str(exc))
        try:
            stat = os.stat(file_path)
        except OSError:
            return result
        result.size = stat.st_size
        result.mtime = stat.st_mtime
        result.mtime_ns = stat.st_mtime_ns
        return result

    return ScannedFile(
        file_path=file_path,
        parsed=parsed,
        size=stat.st_size,
        mtime=stat.st_mtime,
        mtime_ns=stat.st_mtime_ns,
    )


def parse_files(
    paths: Iterable[str | Path],
    max_workers: int = DEFAULT_WORKERS,
    cancel_event: threading.Event | None = None,
) -> List[ScannedFile]:
    """Read and decode ``paths`` on a worker pool.

    Results come back in completion order.  Setting ``cancel_event`` stops
    the scan between files; files already being read still finish.
    """

    path_list = [str(path) for path in paths]
    if not path_list:
        return []

    def _work(file_path: str) -> Optional[ScannedFile]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        return read_result_file(file_path)

    results: List[ScannedFile] = []
    executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="lmu-scan")
    try:
        futures: Dict[Future, str] = {executor.submit(_work, path): path for path in path_list}
        for future in as_completed(futures):
            file_path = futures[future]
            try:
                scanned = future.result()
            except Exception as exc:
                logger.exception("Worker crashed while reading %s", file_path)
                scanned = ScannedFile(file_path=file_path, error=f"Worker failure: {exc}")
            if scanned is not None:
                results.append(scanned)
            if cancel_event is not None and cancel_event.is_set():
                break
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    if cancel_event is not None and cancel_event.is_set():
        logger.info("Scan cancelled after %s of %s files", len(results), len(path_list))
    return results


def scan_folder(
    folder: str | Path,
    max_workers: int = DEFAULT_WORKERS,
    cancel_event: threading.Event | None = None,
) -> List[ScannedFile]:
    metas = list_result_files(folder)
    logger.info("Scanning %s result files in %s", len(metas), folder)
    return parse_files((meta.file_path for meta in metas), max_workers=max_workers, cancel_event=cancel_event)
