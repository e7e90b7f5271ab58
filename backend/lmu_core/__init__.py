"""Result file ingestion, indexing and statistics for Le Mans Ultimate."""

from .extractor import DriverResult, Lap, Session, SessionMeta, extract_session, pick_session
from .indexer import Indexer, compute_fingerprint
from .scanner import ScannedFile, list_result_files, parse_files, read_result_file, scan_folder
from .settings import Settings
from .stats import StatsAggregator, StatsCache, content_fingerprint, count_fingerprint
from .store import ResultStore, StoreResult
from .xmltree import decode_xml

__all__ = [
    "DriverResult",
    "Lap",
    "Session",
    "SessionMeta",
    "extract_session",
    "pick_session",
    "Indexer",
    "compute_fingerprint",
    "ScannedFile",
    "list_result_files",
    "parse_files",
    "read_result_file",
    "scan_folder",
    "Settings",
    "StatsAggregator",
    "StatsCache",
    "content_fingerprint",
    "count_fingerprint",
    "ResultStore",
    "StoreResult",
    "decode_xml",
]
