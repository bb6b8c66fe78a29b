"""
Task Status API
Endpoints for tracking background operations (golden image build, pool refill).
"""
from fastapi import APIRouter, HTTPException
from typing import Optional

from ..services.task_manager import get_task_manager

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(task_type: Optional[str] = None, active_only: bool = False, limit: int = 50):
    """All tracked tasks, most recent first"""
    tasks = get_task_manager().list_tasks(task_type=task_type, active_only=active_only)
    return [task.to_dict() for task in tasks[:limit]]


@router.get("/{task_id}")
async def get_task_status(task_id: str):
    """Get status of a specific task"""
    task = get_task_manager().get_task(task_id)

    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    return task.to_dict()


@router.delete("/{task_id}")
async def cancel_task(task_id: str):
    """Cancel a running task"""
    task_manager = get_task_manager()
    task = task_manager.get_task(task_id)

    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    if not await task_manager.cancel_task(task_id):
        raise HTTPException(status_code=400, detail="Task cannot be cancelled")

    return {"success": True}
