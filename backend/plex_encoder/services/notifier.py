"""Fire-and-forget event channel from the core services to consumers."""
import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

# Event types
JOB_STATUS = "job_status"
JOB_PROGRESS = "job_progress"
SCAN_PROGRESS = "scan_progress"
SCHEDULE_STATUS = "schedule_status"
QUEUE_UPDATE = "queue_update"
QUEUE_STATUS = "queue_status"


class Notifier:
    """
    Publishes event dictionaries to any number of subscribers.

    Publishing never blocks: synchronous callbacks run inline, coroutine
    callbacks are scheduled as tasks on the running loop. A failing
    subscriber is logged and skipped. With no subscribers events are dropped.
    """

    def __init__(self):
        self._subscribers: List[Callable[[Dict[str, Any]], Any]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[[Dict[str, Any]], Any]):
        """Register a callback receiving every published event."""
        self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[Dict[str, Any]], Any]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event_type: str, **payload):
        """
        Publish an event.

        Args:
            event_type: One of the module level event type names
            **payload: Event fields
        """
        message = {"type": event_type, **payload}
        for callback in list(self._subscribers):
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(f"Error delivering {event_type} event: {e}")

    def _on_task_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error delivering event: {task.exception()}")


# Global notifier instance
notifier = Notifier()
