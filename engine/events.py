"""
Job lifecycle events.

Events are tagged variants (JobStarted, JobProgress, JobCompleted,
JobFailed, JobCancelled) delivered through an EventChannel owned by the job
manager. Consumers either subscribe a callback or drain a bounded queue.

Redis channels (when RedisEventPublisher is subscribed):
- streamvio:job:{job_id} - every event for one job
- streamvio:progress:{media_id} - progress for one media item
- streamvio:jobs:all - every event (for dashboards)
"""

import asyncio
import inspect
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Union

from config import REDIS_PUBSUB_PREFIX
from engine.enums import JobKind
from engine.redis_client import RedisClient

logger = logging.getLogger(__name__)


class JobEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobEvent:
    type: ClassVar[JobEventType]

    job_id: int
    media_id: int
    kind: JobKind

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["kind"] = self.kind.value
        data["timestamp"] = data["timestamp"].isoformat()
        return data


@dataclass(frozen=True)
class JobStarted(JobEvent):
    type: ClassVar[JobEventType] = JobEventType.STARTED
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class JobProgress(JobEvent):
    type: ClassVar[JobEventType] = JobEventType.PROGRESS
    percent: int = 0
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class JobCompleted(JobEvent):
    type: ClassVar[JobEventType] = JobEventType.COMPLETED
    output_path: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class JobFailed(JobEvent):
    type: ClassVar[JobEventType] = JobEventType.FAILED
    error: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class JobCancelled(JobEvent):
    type: ClassVar[JobEventType] = JobEventType.CANCELLED
    timestamp: datetime = field(default_factory=_now)


Listener = Callable[[JobEvent], Union[None, Awaitable[None]]]


class EventChannel:
    """Fan-out of job events to subscribed listeners.

    A failing listener is logged and skipped; it never affects the job.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def queue(self, maxsize: int = 100) -> "EventQueue":
        return EventQueue(self, maxsize)

    async def publish(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event listener failed for {event.type.value} job={event.job_id}: {e}")


class EventQueue:
    """
    Bounded buffer of events for pull-style consumers.

    When full, the oldest event is dropped so a slow consumer never blocks
    the job manager.
    """

    def __init__(self, channel: EventChannel, maxsize: int = 100):
        self._queue: "asyncio.Queue[JobEvent]" = asyncio.Queue(maxsize=maxsize)
        self._unsubscribe = channel.subscribe(self._put)
        self.dropped = 0

    def _put(self, event: JobEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> JobEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def get_nowait(self) -> JobEvent:
        return self._queue.get_nowait()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        self._unsubscribe()

    def __aiter__(self):
        return self

    async def __anext__(self) -> JobEvent:
        return await self._queue.get()


def channel_name(channel_type: str, entity_id: Optional[str] = None, prefix: str = REDIS_PUBSUB_PREFIX) -> str:
    """
    Generate consistent channel name.

    Returns:
        Full channel name (e.g., "streamvio:job:123")
    """
    if entity_id:
        return f"{prefix}:{channel_type}:{entity_id}"
    return f"{prefix}:{channel_type}"


class RedisEventPublisher:
    """EventChannel listener that mirrors events onto Redis Pub/Sub."""

    def __init__(self, client: RedisClient, prefix: str = REDIS_PUBSUB_PREFIX):
        self.client = client
        self.prefix = prefix

    async def __call__(self, event: JobEvent) -> None:
        payload = json.dumps(event.to_dict())
        await self.client.publish(channel_name("job", str(event.job_id), self.prefix), payload)
        if isinstance(event, JobProgress):
            await self.client.publish(channel_name("progress", str(event.media_id), self.prefix), payload)
        await self.client.publish(channel_name("jobs", "all", self.prefix), payload)
