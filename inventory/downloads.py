"""Download queue: turns missing dependencies and URLs into download tasks."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

from database import DatabaseManager, DownloadQueueItem, WorkflowDependency
from .config import InventorySettings, MODEL_TYPES, DownloadStatus, TaskType
from .downloader import part_path_for
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)


def source_for_url(url: str) -> str:
    host = urlparse(url).netloc.lower()
    if host.endswith("civitai.com"):
        return "civitai"
    if host.endswith("huggingface.co") or host == "hf.co":
        return "huggingface"
    return "direct"


def filename_from_reference(reference: str) -> str:
    return reference.replace("\\", "/").rsplit("/", 1)[-1].strip()


class DownloadService:
    def __init__(self, db_manager: DatabaseManager, scheduler: TaskScheduler,
                 settings: Optional[InventorySettings] = None):
        self.db = db_manager
        self.scheduler = scheduler
        self.settings = settings or InventorySettings()

    async def queue_from_dependency(self, dependency_id: int, priority: int = 0) -> Dict[str, Any]:
        """Queue the download of a missing workflow dependency.

        Raises:
            ValueError: unknown dependency, or no download URL is known for it
        """
        with self.db.get_session() as session:
            dep = session.get(WorkflowDependency, dependency_id)
            if dep is None:
                raise ValueError(f"Dependency not found: {dependency_id}")
            url = dep.huggingface_url or dep.civitai_url
            if not url:
                raise ValueError(f"No download source known for {dep.model_name}")

            filename = filename_from_reference(dep.model_name)
            destination = self.settings.destination_for(dep.model_type, filename)
            item = DownloadQueueItem(
                workflow_id=dep.workflow_id,
                dependency_id=dep.id,
                model_name=filename,
                model_type=dep.model_type,
                source=source_for_url(url),
                url=url,
                destination_path=str(destination),
                temp_file_path=str(part_path_for(destination)),
                expected_size=dep.estimated_size,
                status=DownloadStatus.QUEUED,
            )
            session.add(item)
            session.commit()
            item_id = item.id

        return await self._start(item_id, filename, priority)

    async def queue_from_url(self, url: str, filename: Optional[str] = None,
                             model_type: str = "checkpoint", expected_hash: Optional[str] = None,
                             priority: int = 0) -> Dict[str, Any]:
        """Queue the download of an arbitrary URL into the local models root."""
        if model_type not in MODEL_TYPES:
            raise ValueError(f"Unknown model type: {model_type}")
        filename = filename or unquote(Path(urlparse(url).path).name)
        if not filename:
            raise ValueError(f"Cannot work out a filename from {url}")

        destination = self.settings.destination_for(model_type, filename)
        with self.db.get_session() as session:
            item = DownloadQueueItem(
                model_name=Path(filename).name,
                model_type=model_type,
                source=source_for_url(url),
                url=url,
                destination_path=str(destination),
                temp_file_path=str(part_path_for(destination)),
                expected_hash=expected_hash.upper() if expected_hash else None,
                status=DownloadStatus.QUEUED,
            )
            session.add(item)
            session.commit()
            item_id = item.id

        return await self._start(item_id, Path(filename).name, priority)

    async def _start(self, item_id: int, name: str, priority: int) -> Dict[str, Any]:
        task = await self.scheduler.create_task(
            TaskType.DOWNLOAD,
            related_id=str(item_id),
            name=f"Download {name}",
            priority=priority,
            pausable=True,
        )
        with self.db.get_session() as session:
            item = session.get(DownloadQueueItem, item_id)
            item.task_id = task["id"]
            session.commit()
        logger.info(f"📥 Queued download of {name} (task {task['id']})")
        return self.get_download(item_id)

    def get_download(self, item_id: int) -> Dict[str, Any]:
        with self.db.get_session() as session:
            item = session.get(DownloadQueueItem, item_id)
            if item is None:
                raise ValueError(f"Download not found: {item_id}")
            return item.to_dict()

    def list_downloads(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.get_session() as session:
            query = session.query(DownloadQueueItem)
            if status:
                query = query.filter(DownloadQueueItem.status == status)
            return [item.to_dict() for item in query.order_by(DownloadQueueItem.created_at.desc())]
