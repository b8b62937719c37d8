"""In-process pub/sub for deployment job output.

The pipeline is the only producer: it appends chunks for the running job.
Any number of readers subscribe per job id; each gets its own bounded
queue (fan-out, not competing consumers). A reader that joins mid-build
first receives the accumulated log as replay, then live chunks, as one
ordered stream without gaps or duplicates, because the replay snapshot and
the registration happen under the same lock the producer appends under.

Delivery never blocks the producer. When a reader falls behind and its
queue is full the oldest undelivered chunk is dropped for that reader only
and counted in ``Subscription.dropped``; the job's own log is never
truncated.
"""

import asyncio
import logging
import threading
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000
DEFAULT_RETAINED_JOBS = 50


@dataclass(frozen=True)
class LogChunk:
    job_id: int
    seq: int
    text: str


@dataclass(frozen=True)
class StreamEnd:
    """Final item of every stream; carries the job's terminal status."""
    job_id: int
    status: str
    error_message: Optional[str] = None


StreamItem = Union[LogChunk, StreamEnd]

# Wakes a reader blocked in get() after unsubscribe.
_CLOSED = object()


class Subscription:
    """One reader's view of a job's log stream.

    Iterate with ``async for item in subscription`` or call ``get()``
    directly when the caller needs a timeout (e.g. SSE heartbeats).
    """

    def __init__(self, broker: "LogBroker", job_id: int, replay: List[StreamItem], maxsize: int):
        self.job_id = job_id
        self.dropped = 0
        self._broker = broker
        self._replay: deque = deque(replay)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, item: StreamItem) -> None:
        """Hand an item to this reader without ever blocking. Called under the broker lock."""
        if self._closed:
            return
        if self._queue.full():
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: Optional[float] = None) -> Optional[StreamItem]:
        """Next item in order, or None once the stream is over.

        Raises:
            asyncio.TimeoutError: if *timeout* elapses with nothing to deliver.
        """
        if self._finished:
            return None
        if self._replay:
            item = self._replay.popleft()
        else:
            if self._closed and self._queue.empty():
                self._finished = True
                return None
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._finished = True
            return None
        if isinstance(item, StreamEnd):
            self._finished = True
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StreamItem:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._broker.unsubscribe(self.job_id, self)


class _JobChannel:
    __slots__ = ("job_id", "chunks", "subscribers", "end")

    def __init__(self, job_id: int):
        self.job_id = job_id
        self.chunks: List[LogChunk] = []
        self.subscribers: List[Subscription] = []
        self.end: Optional[StreamEnd] = None

    @property
    def text(self) -> str:
        return "".join(chunk.text for chunk in self.chunks)


class LogBroker:
    """Per-job log channels with replay-then-live fan-out."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        retained_jobs: int = DEFAULT_RETAINED_JOBS,
    ):
        self.buffer_size = buffer_size
        self.retained_jobs = retained_jobs
        self._lock = threading.Lock()
        self._channels: Dict[int, _JobChannel] = {}
        # Closed channels in the order they finished, for eviction
        self._finished: "OrderedDict[int, None]" = OrderedDict()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def open(self, job_id: int) -> None:
        """Create the channel for a job. Opening an existing channel is a no-op."""
        with self._lock:
            self._channels.setdefault(job_id, _JobChannel(job_id))

    def append(self, job_id: int, text: str) -> Optional[LogChunk]:
        """Record a chunk and forward it to every current subscriber."""
        if not text:
            return None
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                channel = self._channels[job_id] = _JobChannel(job_id)
            if channel.end is not None:
                logger.warning("Dropping log output for finished job", extra={"job_id": job_id})
                return None
            chunk = LogChunk(job_id, len(channel.chunks), text)
            channel.chunks.append(chunk)
            for subscriber in channel.subscribers:
                subscriber._deliver(chunk)
            return chunk

    def close(self, job_id: int, status: str, error_message: Optional[str] = None) -> None:
        """Mark the job terminal and end every subscriber's stream."""
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                channel = self._channels[job_id] = _JobChannel(job_id)
            if channel.end is not None:
                return
            channel.end = StreamEnd(job_id, status, error_message)
            for subscriber in channel.subscribers:
                subscriber._deliver(channel.end)
            self._finished[job_id] = None
            self._evict_locked()

    def restore(self, job_id: int, logs: str, status: str, error_message: Optional[str] = None) -> None:
        """Rebuild a finished job's channel from its persisted log."""
        with self._lock:
            if job_id in self._channels:
                return
            channel = self._channels[job_id] = _JobChannel(job_id)
            if logs:
                channel.chunks.append(LogChunk(job_id, 0, logs))
            channel.end = StreamEnd(job_id, status, error_message)
            self._finished[job_id] = None
            self._evict_locked()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def subscribe(self, job_id: int) -> Optional[Subscription]:
        """Attach a reader. Returns None if the broker has no channel for the job."""
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                return None
            replay: List[StreamItem] = list(channel.chunks)
            if channel.end is not None:
                replay.append(channel.end)
            subscription = Subscription(self, job_id, replay, self.buffer_size)
            if channel.end is None:
                channel.subscribers.append(subscription)
            else:
                # Nothing more will arrive; the replay ends with the end marker
                subscription._closed = True
            return subscription

    def unsubscribe(self, job_id: int, subscription: Subscription) -> None:
        """Detach a reader. Safe to call repeatedly and after the job finished."""
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is not None and subscription in channel.subscribers:
                channel.subscribers.remove(subscription)
            subscription._close()
            self._evict_locked()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_channel(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._channels

    def get_logs(self, job_id: int) -> Optional[str]:
        with self._lock:
            channel = self._channels.get(job_id)
            return channel.text if channel is not None else None

    def subscriber_count(self, job_id: int) -> int:
        with self._lock:
            channel = self._channels.get(job_id)
            return len(channel.subscribers) if channel is not None else 0

    def _evict_locked(self) -> None:
        """Forget the oldest finished channels that nobody is reading."""
        excess = len(self._finished) - self.retained_jobs
        if excess <= 0:
            return
        for job_id in list(self._finished):
            if excess <= 0:
                break
            channel = self._channels.get(job_id)
            if channel is not None and channel.subscribers:
                continue
            self._channels.pop(job_id, None)
            del self._finished[job_id]
            excess -= 1
