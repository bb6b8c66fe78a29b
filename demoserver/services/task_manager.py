"""
Background Task Manager
Tracks long-running operations (golden image build, pool refill) so that
"is one already running" is a query against task state, and so operators
can see what the orchestrator is doing.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional, List, Callable, Any, Tuple
from enum import Enum
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Task execution statuses"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (TaskStatus.QUEUED, TaskStatus.RUNNING)


@dataclass
class TaskProgress:
    """Represents progress of a task"""
    current: int = 0
    total: int = 100
    message: str = ""

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 0
        return int((self.current / self.total) * 100)


@dataclass
class Task:
    """Represents a background task"""
    id: str
    type: str  # e.g., "golden_image_build", "pool_refill"
    status: TaskStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress: TaskProgress = field(default_factory=TaskProgress)
    result: Optional[Any] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def add_log(self, message: str):
        """Add a log message with timestamp"""
        timestamp = datetime.utcnow().isoformat()
        self.logs.append(f"[{timestamp}] {message}")

    def update_progress(self, current: int, total: int, message: str = ""):
        """Update task progress"""
        self.progress.current = current
        self.progress.total = total
        if message:
            self.progress.message = message
            self.add_log(message)

    def to_dict(self) -> Dict:
        """Convert task to dictionary for API responses"""
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "progress": {
                "current": self.progress.current,
                "total": self.progress.total,
                "percentage": self.progress.percentage,
                "message": self.progress.message
            },
            "result": self.result,
            "error": self.error,
            "logs": self.logs[-50:],  # Return last 50 log entries
            "metadata": self.metadata
        }


class TaskManager:
    """Manages background tasks with status tracking"""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._background_tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def create_task(
        self,
        task_type: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Task:
        """Create a new task and return it"""
        task_id = str(uuid.uuid4())
        task = Task(
            id=task_id,
            type=task_type,
            status=TaskStatus.QUEUED,
            created_at=datetime.utcnow(),
            metadata=metadata or {}
        )
        self._tasks[task_id] = task
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        """Get a task by ID"""
        return self._tasks.get(task_id)

    def list_tasks(self, task_type: Optional[str] = None, active_only: bool = False) -> List[Task]:
        """All tasks, most recent first"""
        tasks = list(self._tasks.values())
        if task_type:
            tasks = [t for t in tasks if t.type == task_type]
        if active_only:
            tasks = [t for t in tasks if t.is_active]
        return sorted(tasks, key=lambda t: t.created_at, reverse=True)

    def get_active_task(self, task_type: str) -> Optional[Task]:
        """The queued or running task of this type, if any"""
        for task in self._tasks.values():
            if task.type == task_type and task.is_active:
                return task
        return None

    def is_running(self, task_type: str) -> bool:
        return self.get_active_task(task_type) is not None

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error: Optional[str] = None,
        result: Optional[Any] = None
    ):
        """Update task status"""
        async with self._lock:
            task = self._tasks.get(task_id)
            if not task:
                return

            task.status = status

            if status == TaskStatus.RUNNING and not task.started_at:
                task.started_at = datetime.utcnow()

            if status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
                task.completed_at = datetime.utcnow()
                if error:
                    task.error = error
                if result is not None:
                    task.result = result

    async def run_task(
        self,
        task_id: str,
        coro: Callable,
        *args,
        **kwargs
    ):
        """Run a coroutine as a background task with status tracking"""
        task = self.get_task(task_id)
        if not task:
            raise ValueError(f"Task {task_id} not found")

        try:
            await self.update_task_status(task_id, TaskStatus.RUNNING)
            task.add_log(f"Starting {task.type}")

            result = await coro(*args, task=task, **kwargs)

            await self.update_task_status(
                task_id,
                TaskStatus.COMPLETED,
                result=result
            )
            task.add_log(f"Completed {task.type}")

            return result

        except asyncio.CancelledError:
            await self.update_task_status(task_id, TaskStatus.CANCELLED)
            task.add_log("Cancelled")
            raise

        except Exception as e:
            error_msg = str(e)
            await self.update_task_status(
                task_id,
                TaskStatus.FAILED,
                error=error_msg
            )
            task.add_log(f"Failed: {error_msg}")
            raise

    def start_background_task(
        self,
        task_id: str,
        coro: Callable,
        *args,
        **kwargs
    ) -> asyncio.Task:
        """Start a task in the background and return immediately"""
        logger.info(f"[TASK-MANAGER] Creating background task {task_id} for coroutine {coro.__name__}")

        async_task = asyncio.create_task(
            self.run_task(task_id, coro, *args, **kwargs)
        )
        self._background_tasks[task_id] = async_task
        async_task.add_done_callback(lambda t: self._on_background_done(task_id, t))
        return async_task

    def start_singleton_task(
        self,
        task_type: str,
        coro: Callable,
        *args,
        metadata: Optional[Dict[str, Any]] = None,
        **kwargs
    ) -> Tuple[Task, bool]:
        """
        Start a background task unless one of the same type is already active.

        Returns (task, started). The check and the registration happen
        without yielding to the event loop, so two callers can never both
        start one.
        """
        existing = self.get_active_task(task_type)
        if existing is not None:
            logger.info(f"[TASK-MANAGER] {task_type} already active ({existing.id}), not starting another")
            return existing, False

        task = self.create_task(task_type, metadata)
        self.start_background_task(task.id, coro, *args, **kwargs)
        return task, True

    def _on_background_done(self, task_id: str, async_task: asyncio.Task):
        self._background_tasks.pop(task_id, None)
        if async_task.cancelled():
            return
        exc = async_task.exception()
        if exc is not None:
            logger.error(f"[TASK-MANAGER] Background task {task_id} failed: {exc}")

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a queued or running task"""
        task = self.get_task(task_id)
        if not task or not task.is_active:
            return False
        background_task = self._background_tasks.get(task_id)
        if background_task:
            background_task.cancel()
        await self.update_task_status(task_id, TaskStatus.CANCELLED)
        return True

    async def cleanup_old_tasks(self, max_age_hours: int = 24):
        """Clean up old completed tasks"""
        async with self._lock:
            cutoff_time = datetime.utcnow() - timedelta(hours=max_age_hours)

            tasks_to_remove = [
                task_id for task_id, task in self._tasks.items()
                if not task.is_active
                and task.completed_at
                and task.completed_at < cutoff_time
            ]

            for task_id in tasks_to_remove:
                self._tasks.pop(task_id)
                self._background_tasks.pop(task_id, None)


# Global task manager instance
_task_manager: Optional[TaskManager] = None


def get_task_manager() -> TaskManager:
    """Get the global task manager instance"""
    global _task_manager
    if _task_manager is None:
        _task_manager = TaskManager()
    return _task_manager
