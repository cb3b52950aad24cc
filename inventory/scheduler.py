"""
Task Scheduler
==============

Runs long operations (scans, downloads, resolution) as persisted background
tasks on the current asyncio loop:
- At most ``max_concurrent`` workers run at once; the rest wait as pending
- Pause, resume, cancel and retry with a cancellation token per run
- Progress and log events written to the tasks and task_logs tables
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func

from database import DatabaseManager, Task, TaskLog
from .config import TaskStatus
from .exceptions import (
    InvalidTaskTransition, RetryBudgetExceeded, TaskAborted, TaskNotFound, WorkerNotRegistered
)
from .utils import calculate_eta, calculate_progress

logger = logging.getLogger(__name__)

LOG_LEVELS = ("debug", "info", "warning", "error")

PROGRESS_FIELDS = (
    "progress", "current_bytes", "total_bytes", "current_items",
    "total_items", "speed", "eta", "description",
)


class CancellationToken:
    """Signals a running worker to stop. Safe to read from worker threads."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self):
        """Withdraw a pause signal the worker has not acted on."""
        self.reason = None
        self._event.clear()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TaskAborted(f"Task {self.reason}")


class TaskContext:
    """What a worker gets to talk to the scheduler about its own task."""

    def __init__(self, scheduler: "TaskScheduler", task: Dict[str, Any], token: CancellationToken):
        self.scheduler = scheduler
        self.task = task
        self.token = token

    @property
    def task_id(self) -> str:
        return self.task["id"]

    @property
    def related_id(self) -> Optional[str]:
        return self.task.get("related_id")

    def check(self):
        """Raise TaskAborted if the task was paused or cancelled."""
        self.token.raise_if_cancelled()

    def update_progress(self, **fields):
        """Persist progress fields for the task.

        ``progress`` is derived from bytes, then items, unless given, and
        ``eta`` from bytes and speed. Raises TaskAborted once the token fired.
        """
        self.check()
        unknown = set(fields) - set(PROGRESS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown progress fields: {', '.join(sorted(unknown))}")

        merged = dict(self.task)
        merged.update(fields)
        if "progress" not in fields:
            if merged.get("total_bytes"):
                fields["progress"] = calculate_progress(merged.get("current_bytes"), merged["total_bytes"])
            elif merged.get("total_items"):
                fields["progress"] = calculate_progress(merged.get("current_items"), merged["total_items"])
        if "eta" not in fields and fields.get("speed"):
            fields["eta"] = calculate_eta(merged.get("current_bytes"), merged.get("total_bytes"), fields["speed"])

        self.task.update(fields)
        self.scheduler._write_progress(self.task_id, fields)

    def log(self, level: str, message: str, **metadata):
        """Append a task log entry and mirror it to the module logger."""
        self.check()
        self.scheduler.add_log(self.task_id, level, message, metadata or None)


Worker = Callable[[TaskContext], Awaitable[None]]
CancelHook = Callable[[Dict[str, Any]], None]


class _ActiveRun:
    """Registry entry for one execution of a task."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.token = CancellationToken()
        self.future: Optional[asyncio.Future] = None


class TaskScheduler:
    """In-process scheduler for background tasks.

    Construct it, register a worker per task type, then ``await start()``.
    All public operations must be awaited from the loop that called start().
    """

    def __init__(self, db_manager: DatabaseManager, max_concurrent: int = 3):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.db = db_manager
        self.max_concurrent = max_concurrent
        self._workers: Dict[str, Worker] = {}
        self._cancel_hooks: Dict[str, CancelHook] = {}
        self._active: Dict[str, _ActiveRun] = {}
        self._accepting = False

    def register_worker(self, task_type: str, worker: Worker, on_cancel: Optional[CancelHook] = None):
        """Register the worker for a task type.

        ``on_cancel`` gets the task snapshot when a task of this type is
        cancelled while no worker is running it.
        """
        self._workers[task_type] = worker
        if on_cancel is not None:
            self._cancel_hooks[task_type] = on_cancel

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    # Lifecycle

    async def start(self):
        """Fail tasks a previous process left running, then start pending ones."""
        with self.db.get_session() as session:
            orphans = session.query(Task).filter(Task.status == TaskStatus.RUNNING).all()
            for task in orphans:
                task.status = TaskStatus.FAILED
                task.error_message = "Interrupted: the application stopped while this task was running"
                task.completed_at = datetime.utcnow()
                session.add(TaskLog(task_id=task.id, level="error", message=task.error_message))
            session.commit()
        if orphans:
            logger.warning(f"⚠️ Marked {len(orphans)} interrupted tasks as failed")

        self._accepting = True
        logger.info(f"🚀 Task scheduler started (max {self.max_concurrent} concurrent)")
        self._drain()

    async def shutdown(self, cancel_running: bool = False):
        """Stop starting tasks and wait for active ones to end.

        With ``cancel_running`` the active tasks are cancelled first.
        """
        self._accepting = False
        runs = list(self._active.values())
        if cancel_running:
            for run in runs:
                try:
                    await self.cancel(run.task_id)
                except (InvalidTaskTransition, TaskNotFound) as e:
                    logger.debug(f"Skipping cancel on shutdown: {e}")
        futures = [run.future for run in runs if run.future is not None]
        if futures:
            await asyncio.gather(*futures, return_exceptions=True)
        logger.info("🛑 Task scheduler stopped")

    # Task operations

    async def create_task(self, task_type: str, related_id: Optional[str] = None,
                          name: Optional[str] = None, description: Optional[str] = None,
                          priority: int = 0, total_bytes: Optional[int] = None,
                          total_items: Optional[int] = None, max_retries: int = 3,
                          cancellable: bool = True, pausable: bool = False) -> Dict[str, Any]:
        """Persist a pending task and start it if a slot is free.

        Returns:
            Snapshot of the task after the start attempt
        """
        with self.db.get_session() as session:
            task = Task(
                task_type=task_type,
                related_id=related_id,
                name=name or task_type.replace("_", " ").title(),
                description=description,
                status=TaskStatus.PENDING,
                priority=priority,
                total_bytes=total_bytes or 0,
                total_items=total_items or 0,
                max_retries=max_retries,
                cancellable=cancellable,
                pausable=pausable,
            )
            session.add(task)
            session.flush()
            session.add(TaskLog(task_id=task.id, level="info", message=f"Task created: {task.name}"))
            session.commit()
            task_id = task.id

        logger.info(f"📋 Created {task_type} task {task_id}")
        self._try_start(task_id)
        return self.get_task(task_id)

    async def pause(self, task_id: str) -> Dict[str, Any]:
        with self.db.get_session() as session:
            task = self._load(session, task_id)
            if task.status != TaskStatus.RUNNING:
                raise InvalidTaskTransition(task_id, task.status, "pause")
            if not task.pausable:
                raise InvalidTaskTransition(task_id, task.status, "pause", "task is not pausable")
            task.status = TaskStatus.PAUSED
            task.paused_at = datetime.utcnow()
            session.add(TaskLog(task_id=task_id, level="info", message="Task paused"))
            session.commit()

        self._signal(task_id, "paused")
        logger.info(f"⏸️ Paused task {task_id}")
        return self.get_task(task_id)

    async def resume(self, task_id: str) -> Dict[str, Any]:
        """Continue a paused task.

        If the paused worker is still running it carries on with a cleared
        token. Otherwise the task runs now if a slot is free, or waits as
        pending.
        """
        run = self._active.get(task_id)
        with self.db.get_session() as session:
            task = self._load(session, task_id)
            if task.status != TaskStatus.PAUSED:
                raise InvalidTaskTransition(task_id, task.status, "resume")
            task.status = TaskStatus.RUNNING if run is not None else TaskStatus.PENDING
            task.paused_at = None
            session.add(TaskLog(task_id=task_id, level="info", message="Task resumed"))
            session.commit()

        if run is not None:
            run.token.reset()
            logger.info(f"▶️ Resumed task {task_id} in its running worker")
        else:
            logger.info(f"▶️ Resumed task {task_id}")
            self._try_start(task_id)
        return self.get_task(task_id)

    async def cancel(self, task_id: str) -> Dict[str, Any]:
        with self.db.get_session() as session:
            task = self._load(session, task_id)
            if not task.cancellable:
                raise InvalidTaskTransition(task_id, task.status, "cancel", "task is not cancellable")
            if task.status not in (TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED):
                raise InvalidTaskTransition(task_id, task.status, "cancel")
            task.status = TaskStatus.CANCELLED
            task.completed_at = datetime.utcnow()
            session.add(TaskLog(task_id=task_id, level="info", message="Task cancelled"))
            session.commit()
            snapshot = task.to_dict()

        run = self._active.get(task_id)
        if run is not None:
            run.token.cancel("cancelled")
        else:
            hook = self._cancel_hooks.get(snapshot["task_type"])
            if hook is not None:
                hook(snapshot)
        logger.info(f"🚫 Cancelled task {task_id}")
        return self.get_task(task_id)

    async def retry(self, task_id: str) -> Dict[str, Any]:
        """Re-queue a failed task, consuming one retry.

        Raises:
            InvalidTaskTransition: the task is not failed
            RetryBudgetExceeded: retry_count already reached max_retries
        """
        with self.db.get_session() as session:
            task = self._load(session, task_id)
            if task.status != TaskStatus.FAILED:
                raise InvalidTaskTransition(task_id, task.status, "retry")
            if (task.retry_count or 0) >= (task.max_retries or 0):
                raise RetryBudgetExceeded(task_id, task.max_retries or 0)
            task.retry_count = (task.retry_count or 0) + 1
            task.status = TaskStatus.PENDING
            task.error_message = None
            task.progress = 0
            task.started_at = None
            task.completed_at = None
            session.add(TaskLog(task_id=task_id, level="info",
                                message=f"Retry {task.retry_count} of {task.max_retries}"))
            session.commit()

        logger.info(f"🔁 Retrying task {task_id}")
        self._try_start(task_id)
        return self.get_task(task_id)

    async def pause_all(self) -> int:
        ids = self._ids_where(Task.status == TaskStatus.RUNNING, Task.pausable.is_(True))
        return await self._apply_all(self.pause, ids)

    async def resume_all(self) -> int:
        ids = self._ids_where(Task.status == TaskStatus.PAUSED)
        return await self._apply_all(self.resume, ids)

    async def cancel_all(self) -> int:
        # Pending first, so freed slots never promote a task about to be cancelled
        ids = []
        for status in (TaskStatus.PENDING, TaskStatus.PAUSED, TaskStatus.RUNNING):
            ids.extend(self._ids_where(Task.status == status, Task.cancellable.is_(True)))
        return await self._apply_all(self.cancel, ids)

    async def clear_completed(self) -> int:
        """Delete completed, failed and cancelled tasks along with their logs."""
        with self.db.get_session() as session:
            count = (session.query(Task)
                     .filter(Task.status.in_(TaskStatus.TERMINAL))
                     .delete(synchronize_session=False))
            session.commit()
        logger.info(f"🧹 Cleared {count} finished tasks")
        return count

    # Queries

    def get_task(self, task_id: str, include_logs: bool = False) -> Dict[str, Any]:
        with self.db.get_session() as session:
            task = self._load(session, task_id)
            data = task.to_dict()
            data['is_active'] = task_id in self._active
            if include_logs:
                data['logs'] = [log.to_dict() for log in task.logs]
            return data

    def list_tasks(self, status: Optional[str] = None, task_type: Optional[str] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        with self.db.get_session() as session:
            query = session.query(Task)
            if status:
                query = query.filter(Task.status == status)
            if task_type:
                query = query.filter(Task.task_type == task_type)
            tasks = query.order_by(Task.created_at.desc()).limit(limit).all()
            return [task.to_dict() for task in tasks]

    def get_task_logs(self, task_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent log entries, oldest first."""
        with self.db.get_session() as session:
            self._load(session, task_id)
            logs = (session.query(TaskLog)
                    .filter(TaskLog.task_id == task_id)
                    .order_by(TaskLog.id.desc())
                    .limit(limit)
                    .all())
            return [log.to_dict() for log in reversed(logs)]

    def get_stats(self) -> Dict[str, Any]:
        with self.db.get_session() as session:
            by_status = dict(
                session.query(Task.status, func.count(Task.id)).group_by(Task.status).all()
            )
        return {
            'by_status': by_status,
            'total': sum(by_status.values()),
            'active': len(self._active),
            'max_concurrent': self.max_concurrent,
        }

    def add_log(self, task_id: str, level: str, message: str,
                metadata: Optional[Dict[str, Any]] = None):
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        with self.db.get_session() as session:
            session.add(TaskLog(task_id=task_id, level=level, message=message, log_metadata=metadata))
            session.commit()
        logger.log(getattr(logging, level.upper()), f"[{task_id[:8]}] {message}")

    # Internals

    def _load(self, session, task_id: str) -> Task:
        task = session.get(Task, task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _ids_where(self, *criteria) -> List[str]:
        with self.db.get_session() as session:
            return [row.id for row in session.query(Task.id).filter(*criteria)
                    .order_by(Task.priority.desc(), Task.created_at.desc())]

    async def _apply_all(self, operation, task_ids: List[str]) -> int:
        count = 0
        for task_id in task_ids:
            try:
                await operation(task_id)
                count += 1
            except (InvalidTaskTransition, TaskNotFound) as e:
                # State changed since the query
                logger.debug(f"Skipping {task_id}: {e}")
        return count

    def _signal(self, task_id: str, reason: str):
        run = self._active.get(task_id)
        if run is not None:
            run.token.cancel(reason)

    def _write_progress(self, task_id: str, fields: Dict[str, Any]):
        # Called from worker threads too; never touches status
        with self.db.get_session() as session:
            session.query(Task).filter(Task.id == task_id).update(fields, synchronize_session=False)
            session.commit()

    def _try_start(self, task_id: str) -> bool:
        """Start a pending task if capacity allows.

        Runs without awaiting, so the capacity check, the registry entry and
        the running status are one step as far as other coroutines can tell.
        """
        if not self._accepting or task_id in self._active:
            return False
        if len(self._active) >= self.max_concurrent:
            return False

        with self.db.get_session() as session:
            task = session.get(Task, task_id)
            if task is None or task.status != TaskStatus.PENDING:
                return False

            worker = self._workers.get(task.task_type)
            if worker is None:
                error = WorkerNotRegistered(task.task_type)
                task.status = TaskStatus.FAILED
                task.error_message = str(error)
                task.completed_at = datetime.utcnow()
                session.add(TaskLog(task_id=task_id, level="error", message=str(error)))
                session.commit()
                logger.error(f"❌ {error} (task {task_id})")
                return False

            run = _ActiveRun(task_id)
            self._active[task_id] = run
            try:
                task.status = TaskStatus.RUNNING
                task.started_at = datetime.utcnow()
                task.paused_at = None
                session.add(TaskLog(task_id=task_id, level="info", message="Task started"))
                session.commit()
                snapshot = task.to_dict()
            except Exception:
                self._active.pop(task_id, None)
                raise

        run.future = asyncio.ensure_future(self._run(run, worker, snapshot))
        return True

    async def _run(self, run: _ActiveRun, worker: Worker, snapshot: Dict[str, Any]):
        ctx = TaskContext(self, snapshot, run.token)
        try:
            await worker(ctx)
        except TaskAborted:
            if run.token.cancelled:
                logger.info(f"⏹️ Task {run.task_id} stopped ({run.token.reason})")
            else:
                # Resumed after the worker had already seen the pause
                self._requeue(run)
        except Exception as e:
            if run.token.cancelled:
                logger.info(f"⏹️ Task {run.task_id} stopped ({run.token.reason}): {e}")
            else:
                logger.error(f"❌ Task {run.task_id} failed: {e}")
                self._finish(run, TaskStatus.FAILED, str(e))
        else:
            if not run.token.cancelled:
                self._finish(run, TaskStatus.COMPLETED)
        finally:
            if self._active.get(run.task_id) is run:
                del self._active[run.task_id]
            self._drain()

    def _finish(self, run: _ActiveRun, status: str, error: Optional[str] = None):
        with self.db.get_session() as session:
            task = session.get(Task, run.task_id)
            if task is None or task.status != TaskStatus.RUNNING:
                return
            task.status = status
            task.completed_at = datetime.utcnow()
            if status == TaskStatus.COMPLETED:
                task.progress = 100
                session.add(TaskLog(task_id=task.id, level="info", message="Task completed"))
            else:
                task.error_message = error
                session.add(TaskLog(task_id=task.id, level="error", message=f"Task failed: {error}"))
            session.commit()
        if status == TaskStatus.COMPLETED:
            logger.info(f"✅ Task {run.task_id} completed")

    def _requeue(self, run: _ActiveRun):
        with self.db.get_session() as session:
            task = session.get(Task, run.task_id)
            if task is None or task.status != TaskStatus.RUNNING:
                return
            task.status = TaskStatus.PENDING
            session.add(TaskLog(task_id=task.id, level="info",
                                message="Worker stopped before the resume reached it, restarting"))
            session.commit()
        logger.info(f"🔁 Task {run.task_id} goes back to pending")

    def _drain(self):
        """Fill free slots with pending tasks, highest priority then newest first."""
        if not self._accepting:
            return
        for task_id in self._ids_where(Task.status == TaskStatus.PENDING):
            if len(self._active) >= self.max_concurrent:
                break
            self._try_start(task_id)
