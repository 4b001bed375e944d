"""Task tracking for sync pipelines.

The coordinator runs each fetch and publish pipeline as a tracked asyncio
task so that shutdown and tests can wait for all pipelines to settle.
"""

from .context import task_service_context, get_task_service
from .service import TaskService

__all__ = ["get_task_service", "task_service_context", "TaskService"]
