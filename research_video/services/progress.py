"""
Server-sent progress events for long-running stages.

A stage runs as a detached task and pushes events into a ProgressStream; the
HTTP response drains `frames()`. If the client goes away the stream is
detached and later events are dropped, but the stage keeps running to
completion and still persists its results.
"""

import asyncio
from typing import Any, AsyncIterator, Coroutine, Dict, Optional, Set

from research_video import config
from research_video.models import EventType, ProgressEvent, Stage
from research_video.utils.logging import get_logger

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

TERMINAL_EVENTS = (EventType.COMPLETE, EventType.ERROR)

_background_tasks: Set[asyncio.Task] = set()


def sse_frame(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


def launch_detached(coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
    """Start a task that outlives the request that created it."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class ProgressStream:
    def __init__(self, stage: Stage, heartbeat_interval: float = config.HEARTBEAT_INTERVAL):
        self.stage = stage
        self.heartbeat_interval = heartbeat_interval
        self._queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue()
        self.detached = False
        self.finished = False
        self.task: Optional[asyncio.Task] = None

    def _push(self, event: ProgressEvent) -> None:
        if self.finished:
            return
        if event.type in TERMINAL_EVENTS:
            self.finished = True
        if not self.detached:
            self._queue.put_nowait(event)

    def progress(
        self,
        progress: int,
        message: Optional[str] = None,
        index: Optional[int] = None,
        total: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._push(ProgressEvent(
            type=EventType.PROGRESS,
            stage=self.stage,
            progress=max(0, min(100, int(progress))),
            message=message,
            index=index,
            total=total,
            data=data,
        ))

    def chunk(self, data: Dict[str, Any], index: Optional[int] = None, total: Optional[int] = None) -> None:
        self._push(ProgressEvent(type=EventType.CHUNK, stage=self.stage, index=index, total=total, data=data))

    def complete(self, data: Optional[Dict[str, Any]] = None, message: Optional[str] = None) -> None:
        self._push(ProgressEvent(type=EventType.COMPLETE, stage=self.stage, progress=100, message=message, data=data))

    def error(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._push(ProgressEvent(type=EventType.ERROR, stage=self.stage, message=message, data=data))

    def detach(self) -> None:
        if not self.detached:
            logger.info("Client left the %s stream; stage continues in background", self.stage.value)
        self.detached = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def frames(self) -> AsyncIterator[str]:
        """SSE frames until a terminal event; heartbeats while idle."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    yield sse_frame(ProgressEvent(type=EventType.HEARTBEAT))
                    continue
                yield sse_frame(event)
                if event.type in TERMINAL_EVENTS:
                    return
        finally:
            if not (self.finished and self._queue.empty()):
                self.detach()
