#!/usr/bin/env python3
"""
Model Catalog Indexer
=====================

Keeps the models table in step with the model directories:
- Detection of new/changed/removed files per location
- Forensic analysis in bounded parallel batches
- Upserts keyed by content hash, keeping row ids stable across rescans
- Cleanup of rows whose files disappeared
"""

import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func

from database import DatabaseManager, ModelRecord, WorkflowDependency, ScanLog
from .civitai import CivitaiClient
from .config import (
    InventorySettings, MODEL_EXTENSIONS, LOCATIONS, DependencyStatus, HashStatus
)
from .exceptions import ScanInProgress
from .filesystem import list_files, is_within
from .forensics import ForensicsResult, analyze_model
from .resolver import DependencyResolver

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

_LOCKS_GUARD = threading.Lock()
_SCOPE_LOCKS: Dict[str, threading.Lock] = {}


def scope_lock(scope: str) -> threading.Lock:
    """Process-wide lock serialising catalog writes for one location or library."""
    with _LOCKS_GUARD:
        if scope not in _SCOPE_LOCKS:
            _SCOPE_LOCKS[scope] = threading.Lock()
        return _SCOPE_LOCKS[scope]


@contextmanager
def hold_scope(scope: str):
    """Take a scope lock without waiting.

    Raises ScanInProgress when another scan already holds it.
    """
    lock = scope_lock(scope)
    if not lock.acquire(blocking=False):
        raise ScanInProgress(scope)
    try:
        yield lock
    finally:
        lock.release()


@dataclass
class ScanResult:
    """Outcome of one directory scan."""
    root: str
    location: str
    scanned_count: int = 0
    new_models: int = 0
    updated_models: int = 0
    skipped_models: int = 0
    deleted_models: int = 0
    total_size: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'root': self.root,
            'location': self.location,
            'scanned_count': self.scanned_count,
            'new_models': self.new_models,
            'updated_models': self.updated_models,
            'skipped_models': self.skipped_models,
            'deleted_models': self.deleted_models,
            'total_size': self.total_size,
            'errors': list(self.errors),
            'duration': round(self.duration, 3),
            'aborted': self.aborted,
        }

    def print_summary(self):
        """Print a summary of the scan."""
        print(f"📊 Model Scan Summary ({self.location}: {self.root}):")
        print(f"   🔍 Files found: {self.scanned_count}")
        print(f"   🆕 New models: {self.new_models}")
        print(f"   📝 Updated models: {self.updated_models}")
        print(f"   ♻️ Unchanged: {self.skipped_models}")
        print(f"   🗑️ Removed: {self.deleted_models}")
        print(f"   ❌ Errors: {len(self.errors)}")
        print(f"   ⏱️ Duration: {self.duration:.1f}s")


def read_cm_info(model_path: Path) -> Optional[Dict[str, Any]]:
    """Load the StabilityMatrix .cm-info.json sidecar for a model, if present."""
    candidates = [
        model_path.with_suffix(".cm-info.json"),
        model_path.parent / f"{model_path.name}.cm-info.json",
    ]
    for candidate in candidates:
        if not candidate.is_file():
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"⚠️ Could not read sidecar {candidate.name}: {e}")
            return None
        if not isinstance(data, dict):
            return None
        hashes = data.get("Hashes") or {}
        return {
            "model_id": data.get("ModelId"),
            "version_id": data.get("VersionId"),
            "name": data.get("ModelName"),
            "base_model": data.get("BaseModel"),
            "expected_hash": (hashes.get("SHA256") or "").upper() or None,
        }
    return None


class ModelIndexer:
    """Indexes model directories into the catalog.

    Callers must hold ``location_lock(location)`` (or use ``hold_scope``) while
    a scan of that location runs; two concurrent scans of one location would
    race on upserts and eviction.
    """

    def __init__(self, db_manager: DatabaseManager, settings: Optional[InventorySettings] = None,
                 civitai: Optional[CivitaiClient] = None):
        self.db = db_manager
        self.settings = settings or InventorySettings()
        self.civitai = civitai

    @staticmethod
    def location_lock(location: str) -> threading.Lock:
        return scope_lock(f"models:{location}")

    def scan(self, root: Path, location: str = "local", validation_level: Optional[str] = None,
             force_rescan: bool = False, token=None,
             progress: Optional[ProgressCallback] = None) -> ScanResult:
        """Scan one directory tree and bring the catalog rows for it up to date.

        Args:
            root: Directory to walk
            location: Catalog location the files belong to ("local" or "warehouse")
            validation_level: quick, standard or full (defaults to settings)
            force_rescan: Re-analyze files even when their size is unchanged
            token: Cancellation token checked before each file
            progress: Called with (files processed, files found)

        Returns:
            ScanResult with per-outcome counts and collected errors
        """
        if location not in LOCATIONS:
            raise ValueError(f"Unknown location: {location}")
        level = validation_level or self.settings.validation_level
        root = Path(root).resolve()
        started = time.monotonic()
        result = ScanResult(root=str(root), location=location)

        logger.info(f"🔍 Scanning {location} models in: {root}")
        files = list_files(root, MODEL_EXTENSIONS)
        result.scanned_count = len(files)

        with self.db.get_session() as session:
            known = {
                row.filepath: row.file_size
                for row in session.query(ModelRecord.filepath, ModelRecord.file_size)
                .filter(ModelRecord.location == location)
            }

        seen = set()
        pending: List[Path] = []
        for path in files:
            seen.add(str(path))
            try:
                size = path.stat().st_size
            except OSError as e:
                result.errors.append(f"{path}: {e}")
                continue
            result.total_size += size
            if (not force_rescan and self.settings.size_only_change_detection
                    and known.get(str(path)) == size):
                result.skipped_models += 1
                continue
            pending.append(path)

        processed = result.skipped_models
        if progress:
            progress(processed, result.scanned_count)

        batch_size = max(1, self.settings.scan_batch_size)
        with ThreadPoolExecutor(max_workers=self.settings.scan_workers) as pool:
            for start in range(0, len(pending), batch_size):
                if token is not None and token.cancelled:
                    result.aborted = True
                    break
                batch = pending[start:start + batch_size]
                analyses = list(pool.map(lambda p: self._analyze(p, root, level, token), batch))

                with self.db.get_session() as session:
                    for path, (analysis, sidecar, remote, error) in zip(batch, analyses):
                        if error:
                            result.errors.append(f"{path}: {error}")
                            continue
                        if analysis is None:
                            # Cancelled before this file was analyzed
                            continue
                        is_new = self._upsert(session, location, analysis, sidecar, remote)
                        if is_new:
                            result.new_models += 1
                        else:
                            result.updated_models += 1
                    session.commit()

                processed += len(batch)
                if progress:
                    progress(processed, result.scanned_count)

        if token is not None and token.cancelled:
            result.aborted = True

        if not result.aborted:
            result.deleted_models = self._evict_stale(location, root, seen)
            with self.db.get_session() as session:
                session.add(ScanLog(path=str(root), location=location,
                                    file_count=result.scanned_count, total_size=result.total_size))
                session.commit()

        result.duration = time.monotonic() - started
        logger.info(
            f"✅ Scan of {root} finished: {result.new_models} new, {result.updated_models} updated, "
            f"{result.deleted_models} removed, {len(result.errors)} errors"
            + (" (aborted)" if result.aborted else "")
        )
        return result

    def scan_all(self, validation_level: Optional[str] = None, force_rescan: bool = False,
                 token=None, progress: Optional[ProgressCallback] = None) -> Dict[str, ScanResult]:
        """Scan the local models root, then the warehouse if one is configured and present."""
        results = {}
        results["local"] = self.scan(self.settings.models_root, "local", validation_level,
                                     force_rescan, token, progress)

        warehouse = self.settings.warehouse_root
        if warehouse is None:
            logger.info("ℹ️ No warehouse configured, skipping")
        elif not Path(warehouse).is_dir():
            logger.warning(f"⚠️ Warehouse directory not found, skipping: {warehouse}")
        elif not results["local"].aborted:
            results["warehouse"] = self.scan(warehouse, "warehouse", validation_level,
                                             force_rescan, token, progress)
        return results

    def index_file(self, path: Path, location: str = "local",
                   validation_level: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Analyze and upsert a single file, e.g. one that just finished downloading."""
        path = Path(path).resolve()
        root = self.settings.root_for(location)
        root = Path(root).resolve() if root else None
        analysis, sidecar, remote, error = self._analyze(
            path, root, validation_level or self.settings.validation_level, None)
        if error or analysis is None:
            logger.warning(f"⚠️ Could not index {path}: {error}")
            return None
        with self.db.get_session() as session:
            self._upsert(session, location, analysis, sidecar, remote)
            session.commit()
            row = session.query(ModelRecord).filter_by(location=location, filepath=str(path)).first()
            return row.to_dict() if row else None

    def _analyze(self, path: Path, root: Optional[Path], level: str,
                 token) -> Tuple[Optional[ForensicsResult], Optional[Dict], Optional[Dict], Optional[str]]:
        """Runs on a pool thread. Returns (analysis, sidecar, remote lookup, error)."""
        if token is not None and token.cancelled:
            return None, None, None, None
        sidecar = read_cm_info(path)
        try:
            analysis = analyze_model(path, level, root=root,
                                     expected_hash=sidecar.get("expected_hash") if sidecar else None)
        except Exception as e:
            logger.error(f"❌ Error analyzing {path.name}: {e}")
            return None, None, None, str(e)
        if analysis is None:
            return None, None, None, "analysis failed"

        remote = None
        if self.civitai and analysis.full_hash and not (sidecar and sidecar.get("model_id")):
            remote = self.civitai.lookup_by_hash(analysis.full_hash)
        return analysis, sidecar, remote, None

    def _upsert(self, session, location: str, analysis: ForensicsResult,
                sidecar: Optional[Dict], remote: Optional[Dict]) -> bool:
        """Write one analysis to the catalog. Returns True when a row was created."""
        row = (session.query(ModelRecord)
               .filter_by(location=location, filepath=analysis.filepath).first())
        is_new = row is None
        if is_new:
            model_id = analysis.identity
            if model_id and session.get(ModelRecord, model_id) is not None:
                logger.info(f"ℹ️ Duplicate content for {analysis.filename}, using a generated id")
                model_id = None
            row = ModelRecord(id=model_id or str(uuid.uuid4()),
                              location=location, filepath=analysis.filepath)
            session.add(row)

        row.filename = analysis.filename
        row.file_size = analysis.file_size
        row.detected_type = analysis.detected_type
        row.detected_architecture = analysis.detected_architecture
        row.detected_precision = analysis.detected_precision
        row.detection_confidence = analysis.detection_confidence
        row.hash_status = analysis.hash_status
        row.validation_message = analysis.validation_message
        row.partial_hash = analysis.partial_hash
        if analysis.full_hash or is_new:
            row.full_hash = analysis.full_hash
        row.embedded_metadata = analysis.embedded_metadata
        row.trigger_words = analysis.trigger_words
        if analysis.partial_hash or analysis.full_hash:
            row.last_verified_at = datetime.utcnow()

        if sidecar:
            row.civitai_model_id = sidecar.get("model_id") or row.civitai_model_id
            row.civitai_version_id = sidecar.get("version_id") or row.civitai_version_id
            row.civitai_name = sidecar.get("name") or row.civitai_name
            row.civitai_base_model = sidecar.get("base_model") or row.civitai_base_model
            row.expected_hash = sidecar.get("expected_hash") or row.expected_hash
        if remote:
            row.civitai_model_id = remote.get("model_id")
            row.civitai_version_id = remote.get("version_id")
            row.civitai_name = remote.get("name")
            row.civitai_base_model = remote.get("base_model")
            row.civitai_download_url = remote.get("download_url")
            if not row.trigger_words and remote.get("trained_words"):
                row.trigger_words = remote["trained_words"]

        session.flush()
        return is_new

    def _evict_stale(self, location: str, root: Path, seen: set) -> int:
        """Delete rows under root for files that were not observed this pass."""
        with self.db.get_session() as session:
            stale = [
                row for row in session.query(ModelRecord).filter(ModelRecord.location == location)
                if row.filepath not in seen and is_within(Path(row.filepath), root)
            ]
            if not stale:
                return 0

            stale_ids = [row.id for row in stale]
            affected = [
                workflow_id for (workflow_id,) in session.query(WorkflowDependency.workflow_id)
                .filter(WorkflowDependency.resolved_model_id.in_(stale_ids))
                .distinct()
            ]
            # Dependencies pointing at removed files go back to unresolved
            (session.query(WorkflowDependency)
             .filter(WorkflowDependency.resolved_model_id.in_(stale_ids))
             .update({WorkflowDependency.status: DependencyStatus.UNRESOLVED,
                      WorkflowDependency.resolved_model_id: None},
                     synchronize_session=False))
            for row in stale:
                logger.info(f"🗑️ Removing missing model: {row.filename}")
                session.delete(row)
            session.commit()

        # Workflow status and counters follow their dependencies
        resolver = DependencyResolver(self.db, self.settings)
        for workflow_id in affected:
            resolver.resolve_workflow(workflow_id)
        if affected:
            logger.info(f"🔗 Re-resolved {len(affected)} workflows that used removed models")
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        """Catalog totals grouped by type, architecture, location and hash status."""
        with self.db.get_session() as session:
            def grouped(column):
                return {
                    key or "unknown": count
                    for key, count in session.query(column, func.count(ModelRecord.id)).group_by(column)
                }

            return {
                'total_models': session.query(ModelRecord).count(),
                'total_size': session.query(func.coalesce(func.sum(ModelRecord.file_size), 0)).scalar(),
                'by_type': grouped(ModelRecord.detected_type),
                'by_architecture': grouped(ModelRecord.detected_architecture),
                'by_location': grouped(ModelRecord.location),
                'by_hash_status': grouped(ModelRecord.hash_status),
                'corrupt': session.query(ModelRecord)
                .filter(ModelRecord.hash_status.in_([HashStatus.CORRUPT, HashStatus.INCOMPLETE]))
                .count(),
            }
