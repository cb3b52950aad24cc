#!/usr/bin/env python3
"""
Workflow Library Scanner
========================

Keeps the workflows table in step with the workflow directories:
- New, modified and removed JSON files detected by modification time
- Dependencies re-extracted and replaced for every new or modified file
- Unparseable files stored with the scanned-error status
- Changed workflows resolved against the model catalog
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from database import DatabaseManager, WorkflowRecord, WorkflowDependency
from .config import InventorySettings, DependencyStatus, WorkflowStatus
from .filesystem import list_files, is_within
from .indexer import hold_scope
from .resolver import DependencyResolver
from .workflow_parser import FEATURE_FLAGS, ParsedWorkflow, display_name, parse_workflow_file

logger = logging.getLogger(__name__)

WORKFLOWS_SCOPE = "workflows"

METADATA_FIELDS = (
    "description", "author", "version", "tags",
    "steps", "cfg", "sampler", "scheduler", "denoise",
    "width", "height", "batch_size",
)


@dataclass
class WorkflowScanResult:
    scanned: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    errors: int = 0
    resolved: int = 0
    error_files: List[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scanned': self.scanned,
            'new': self.new,
            'updated': self.updated,
            'unchanged': self.unchanged,
            'deleted': self.deleted,
            'errors': self.errors,
            'resolved': self.resolved,
            'error_files': list(self.error_files),
            'aborted': self.aborted,
        }

    def print_summary(self):
        """Print a summary of the scan."""
        print("📊 Workflow Scan Summary:")
        print(f"   🔍 Files found: {self.scanned}")
        print(f"   🆕 New workflows: {self.new}")
        print(f"   📝 Updated workflows: {self.updated}")
        print(f"   ♻️ Unchanged: {self.unchanged}")
        print(f"   🗑️ Removed: {self.deleted}")
        print(f"   🔗 Resolved: {self.resolved}")
        print(f"   ❌ Errors: {self.errors}")


class WorkflowScanner:
    """Scans workflow directories into the workflows table."""

    def __init__(self, db_manager: DatabaseManager, settings: Optional[InventorySettings] = None,
                 resolver: Optional[DependencyResolver] = None):
        self.db = db_manager
        self.settings = settings or InventorySettings()
        self.resolver = resolver or DependencyResolver(db_manager, self.settings)

    def scan(self, roots: Optional[Iterable[Path]] = None, force_rescan: bool = False,
             resolve: bool = True, token=None,
             progress: Optional[Callable[[int, int], None]] = None) -> WorkflowScanResult:
        """Scan the workflow roots and update the library.

        Args:
            roots: Directories to scan (defaults to settings.workflow_roots)
            force_rescan: Re-parse files whose modification time did not change
            resolve: Resolve dependencies of new and updated workflows
            token: Cancellation token checked before each workflow
            progress: Called with (files processed, files found)

        Raises:
            ScanInProgress: another workflow scan holds the library lock
        """
        with hold_scope(WORKFLOWS_SCOPE):
            return self._scan(roots, force_rescan, resolve, token, progress)

    def _scan(self, roots, force_rescan, resolve, token, progress) -> WorkflowScanResult:
        roots = [Path(r).resolve() for r in (roots or self.settings.workflow_roots)]
        result = WorkflowScanResult()

        files: List[Path] = []
        for root in roots:
            logger.info(f"🔍 Scanning workflows in: {root}")
            files.extend(list_files(root, (".json",)))
        result.scanned = len(files)

        with self.db.get_session() as session:
            known = {
                row.filepath: (row.id, row.file_modified_at)
                for row in session.query(WorkflowRecord.id, WorkflowRecord.filepath,
                                         WorkflowRecord.file_modified_at)
            }

        seen = set()
        changed: List[str] = []
        for i, path in enumerate(files):
            if token is not None and token.cancelled:
                result.aborted = True
                break

            key = str(path)
            seen.add(key)
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime)
            except OSError as e:
                logger.warning(f"⚠️ Cannot stat {path}: {e}")
                result.errors += 1
                result.error_files.append(key)
                continue

            existing_id, stored_mtime = known.get(key, (None, None))
            if existing_id and not force_rescan and stored_mtime == mtime:
                result.unchanged += 1
            else:
                workflow_id, parsed_ok = self._store(path, mtime, existing_id)
                if existing_id:
                    result.updated += 1
                else:
                    result.new += 1
                if parsed_ok:
                    changed.append(workflow_id)
                else:
                    result.errors += 1
                    result.error_files.append(key)

            if progress:
                progress(i + 1, result.scanned)

        if not result.aborted:
            result.deleted = self._evict_stale(roots, seen)

        if resolve:
            for workflow_id in changed:
                if token is not None and token.cancelled:
                    result.aborted = True
                    break
                try:
                    self.resolver.resolve_workflow(workflow_id)
                    result.resolved += 1
                except Exception as e:
                    logger.error(f"❌ Error resolving workflow {workflow_id}: {e}")
                    result.errors += 1

        logger.info(
            f"✅ Workflow scan finished: {result.new} new, {result.updated} updated, "
            f"{result.deleted} removed, {result.errors} errors"
            + (" (aborted)" if result.aborted else "")
        )
        return result

    def _store(self, path: Path, mtime: datetime, existing_id: Optional[str]):
        """Parse one file into its row. Returns (workflow id, parsed successfully)."""
        parsed = parse_workflow_file(path)

        with self.db.get_session() as session:
            row = session.get(WorkflowRecord, existing_id) if existing_id else None
            if row is None:
                row = WorkflowRecord(filepath=str(path), filename=path.name)
                session.add(row)

            row.filename = path.name
            row.file_modified_at = mtime
            row.scanned_at = datetime.utcnow()
            # Replaced wholesale; the delete-orphan cascade removes the old rows
            row.dependencies.clear()
            session.flush()

            if parsed is None:
                self._apply_error(row, path)
            else:
                self._apply_parsed(row, parsed)
            session.commit()

            if parsed is None:
                logger.warning(f"⚠️ Stored {path.name} as {WorkflowStatus.ERROR}")
            else:
                logger.info(f"📄 Parsed {path.name}: {len(parsed.dependencies)} dependencies")
            return row.id, parsed is not None

    def _apply_parsed(self, row: WorkflowRecord, parsed: ParsedWorkflow):
        data = parsed.workflow
        row.name = data.get("name")
        row.raw_json = data.get("raw_json")
        for name in METADATA_FIELDS:
            setattr(row, name, data.get(name))
        for flag, _ in FEATURE_FLAGS:
            setattr(row, flag, bool(data.get(flag)))
        row.node_count = data.get("node_count", 0)
        row.connection_count = data.get("connection_count", 0)
        row.diagnostics = parsed.diagnostics
        row.status = WorkflowStatus.NEW

        for dep in parsed.dependencies:
            row.dependencies.append(WorkflowDependency(
                node_id=dep.node_id,
                node_type=dep.node_type,
                model_type=dep.model_type,
                model_name=dep.model_name,
                status=DependencyStatus.UNRESOLVED,
            ))
        self._reset_summary(row, len(parsed.dependencies))

    def _apply_error(self, row: WorkflowRecord, path: Path):
        row.name = display_name(path.name)
        row.raw_json = None
        for name in METADATA_FIELDS:
            setattr(row, name, None)
        for flag, _ in FEATURE_FLAGS:
            setattr(row, flag, False)
        row.node_count = 0
        row.connection_count = 0
        row.diagnostics = ["could not parse workflow JSON"]
        row.status = WorkflowStatus.ERROR
        self._reset_summary(row, 0)

    @staticmethod
    def _reset_summary(row: WorkflowRecord, total: int):
        row.total_dependencies = total
        row.resolved_local = 0
        row.resolved_warehouse = 0
        row.missing_count = 0
        row.ambiguous_count = 0
        row.incompatible_count = 0
        row.total_size_bytes = 0
        row.estimated_vram_gb = None
        row.vram_warnings = []

    def _evict_stale(self, roots: List[Path], seen: set) -> int:
        """Delete rows under the scanned roots whose files are gone."""
        with self.db.get_session() as session:
            stale = [
                row for row in session.query(WorkflowRecord)
                if row.filepath not in seen
                and any(is_within(Path(row.filepath), root) for root in roots)
            ]
            for row in stale:
                logger.info(f"🗑️ Removing missing workflow: {row.filename}")
                session.delete(row)
            session.commit()
            return len(stale)
