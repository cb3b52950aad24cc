"""
Task workers for the scheduler.

Blocking work (file walks, hashing, HTTP) runs in a thread through
``asyncio.to_thread``; progress callbacks from that thread go through the
task context, which raises TaskAborted once the task is paused or cancelled.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from database import DatabaseManager, DownloadQueueItem, ModelRecord
from .civitai import CivitaiClient
from .config import InventorySettings, DownloadStatus, HashStatus, TaskStatus, TaskType
from .downloader import Downloader
from .exceptions import InventoryError, TaskAborted
from .forensics import calculate_full_hash
from .indexer import ModelIndexer, hold_scope
from .resolver import DependencyResolver
from .scheduler import TaskContext, TaskScheduler
from .utils import calculate_progress, format_bytes
from .workflows import WorkflowScanner

logger = logging.getLogger(__name__)


class InventoryWorkers:
    """One async worker per task type, sharing the inventory services."""

    def __init__(self, db_manager: DatabaseManager, settings: InventorySettings,
                 indexer: ModelIndexer, scanner: WorkflowScanner,
                 resolver: DependencyResolver, downloader: Downloader):
        self.db = db_manager
        self.settings = settings
        self.indexer = indexer
        self.scanner = scanner
        self.resolver = resolver
        self.downloader = downloader

    def register(self, scheduler: TaskScheduler):
        scheduler.register_worker(TaskType.MODEL_SCAN, self.model_scan)
        scheduler.register_worker(TaskType.WORKFLOW_SCAN, self.workflow_scan)
        scheduler.register_worker(TaskType.DEPENDENCY_RESOLUTION, self.dependency_resolution)
        scheduler.register_worker(TaskType.DOWNLOAD, self.download, on_cancel=self.download_cancelled)
        scheduler.register_worker(TaskType.HASH_VALIDATION, self.hash_validation)

    @staticmethod
    def _item_progress(ctx: TaskContext):
        def report(done: int, total: int):
            ctx.update_progress(current_items=done, total_items=total)
        return report

    async def model_scan(self, ctx: TaskContext):
        """Scan one location (related_id) or every configured location."""
        if ctx.related_id:
            locations = [ctx.related_id]
        else:
            locations = ["local"] + (["warehouse"] if self.settings.warehouse_root else [])

        for location in locations:
            root = self.settings.root_for(location)
            if root is None or not Path(root).is_dir():
                ctx.log("warning", f"Skipping {location} models: directory not found ({root})")
                continue

            with hold_scope(f"models:{location}"):
                ctx.log("info", f"Scanning {location} models in {root}")
                result = await asyncio.to_thread(
                    self.indexer.scan, root, location, None, False, ctx.token, self._item_progress(ctx))
            ctx.check()
            ctx.log("info",
                    f"{location}: {result.new_models} new, {result.updated_models} updated, "
                    f"{result.deleted_models} removed, {len(result.errors)} errors",
                    **result.to_dict())

    async def workflow_scan(self, ctx: TaskContext):
        ctx.log("info", "Scanning workflow library")
        result = await asyncio.to_thread(
            self.scanner.scan, None, False, True, ctx.token, self._item_progress(ctx))
        ctx.check()
        ctx.log("info",
                f"{result.new} new, {result.updated} updated, {result.deleted} removed, "
                f"{result.errors} errors",
                **result.to_dict())

    async def dependency_resolution(self, ctx: TaskContext):
        """Resolve one workflow (related_id) or the whole library."""
        if ctx.related_id:
            summary = await asyncio.to_thread(self.resolver.resolve_workflow, ctx.related_id)
            ctx.update_progress(current_items=1, total_items=1)
            ctx.log("info", f"Workflow is {summary.status}",
                    missing=summary.missing_count, ambiguous=summary.ambiguous_count,
                    incompatible=summary.incompatible_count)
            return

        stats = await asyncio.to_thread(self.resolver.resolve_all, ctx.token, self._item_progress(ctx))
        ctx.check()
        ctx.log("info", f"Resolved {stats['resolved']} workflows, {stats['errors']} errors",
                by_status=stats['by_status'])

    def _update_queue_item(self, item_id: int, **fields) -> Optional[Dict[str, Any]]:
        with self.db.get_session() as session:
            item = session.get(DownloadQueueItem, item_id)
            if item is None:
                return None
            for name, value in fields.items():
                setattr(item, name, value)
            session.commit()
            return item.to_dict()

    def download_cancelled(self, task: Dict[str, Any]):
        """Close the queue item of a download cancelled while no worker ran it."""
        if task.get("related_id"):
            self._update_queue_item(int(task["related_id"]), status=DownloadStatus.CANCELLED)

    async def download(self, ctx: TaskContext):
        item_id = int(ctx.related_id)
        item = self._update_queue_item(item_id, status=DownloadStatus.DOWNLOADING,
                                       started_at=datetime.utcnow(), error_message=None)
        if item is None:
            raise InventoryError(f"Download queue item not found: {item_id}")
        ctx.log("info", f"Downloading {item['model_name']} from {item['source']}", url=item['url'])

        def on_progress(done: int, total: int, speed: float):
            ctx.update_progress(current_bytes=done, total_bytes=total, speed=int(speed))
            self._update_queue_item(item_id, downloaded_bytes=done,
                                    progress=calculate_progress(done, total))

        try:
            result = await asyncio.to_thread(
                self.downloader.download, item['url'], Path(item['destination_path']),
                item['expected_hash'], on_progress, ctx.token)
        except TaskAborted:
            # The task row knows whether this was a pause, even after a resume or cancel
            cancelled = ctx.scheduler.get_task(ctx.task_id)["status"] == TaskStatus.CANCELLED
            self._update_queue_item(item_id,
                                    status=DownloadStatus.CANCELLED if cancelled else DownloadStatus.QUEUED)
            raise

        if not result.success:
            self._update_queue_item(item_id, status=DownloadStatus.FAILED, error_message=result.error,
                                    downloaded_bytes=result.bytes_downloaded)
            raise InventoryError(f"Download failed: {result.error}")

        self._update_queue_item(item_id, status=DownloadStatus.VALIDATING, progress=100,
                                downloaded_bytes=result.bytes_downloaded)
        ctx.log("info", f"Downloaded {format_bytes(result.bytes_downloaded)}", sha256=result.sha256)
        self._update_queue_item(item_id, status=DownloadStatus.COMPLETE, completed_at=datetime.utcnow())

        record = await asyncio.to_thread(self.indexer.index_file, Path(result.filepath), "local")
        if record:
            ctx.log("info", f"Indexed {record['filename']} as {record['detected_type']}", model_id=record['id'])
        else:
            ctx.log("warning", f"Downloaded file could not be indexed: {result.filepath}")

    async def hash_validation(self, ctx: TaskContext):
        """Compute full hashes and check them against the expected hash."""
        with self.db.get_session() as session:
            query = session.query(ModelRecord.id, ModelRecord.filepath)
            if ctx.related_id:
                query = query.filter(ModelRecord.id == ctx.related_id)
            models = query.order_by(ModelRecord.filename).all()

        counts = {HashStatus.VALID: 0, HashStatus.CORRUPT: 0, HashStatus.INCOMPLETE: 0}
        for i, (model_id, filepath) in enumerate(models):
            ctx.check()
            full_hash = await asyncio.to_thread(calculate_full_hash, Path(filepath))

            with self.db.get_session() as session:
                row = session.get(ModelRecord, model_id)
                if row is None:
                    continue
                if full_hash is None:
                    row.hash_status = HashStatus.INCOMPLETE
                    row.validation_message = "File could not be read"
                elif row.expected_hash and full_hash != row.expected_hash.upper():
                    row.hash_status = HashStatus.CORRUPT
                    row.validation_message = f"Hash mismatch: expected {row.expected_hash.upper()}, got {full_hash}"
                else:
                    row.hash_status = HashStatus.VALID
                    row.validation_message = None
                if full_hash:
                    row.full_hash = full_hash
                row.last_verified_at = datetime.utcnow()
                counts[row.hash_status] += 1
                session.commit()

            ctx.update_progress(current_items=i + 1, total_items=len(models))

        ctx.log("info", f"Validated {len(models)} models: {counts[HashStatus.VALID]} valid, "
                        f"{counts[HashStatus.CORRUPT]} corrupt", **counts)


def build_workers(db_manager: DatabaseManager, settings: InventorySettings,
                  downloader: Optional[Downloader] = None,
                  civitai: Optional[CivitaiClient] = None) -> InventoryWorkers:
    """Wire the inventory services together the way the CLI runs them."""
    if civitai is None and settings.civitai_lookup_enabled:
        civitai = CivitaiClient(api_key=settings.civitai_api_key)
    resolver = DependencyResolver(db_manager, settings)
    return InventoryWorkers(
        db_manager,
        settings,
        indexer=ModelIndexer(db_manager, settings, civitai),
        scanner=WorkflowScanner(db_manager, settings, resolver),
        resolver=resolver,
        downloader=downloader or Downloader(timeout=settings.request_timeout),
    )


def register_default_workers(scheduler: TaskScheduler, db_manager: DatabaseManager,
                             settings: InventorySettings, **services) -> InventoryWorkers:
    workers = build_workers(db_manager, settings, **services)
    workers.register(scheduler)
    return workers
