"""Activity feed: JSONL log on disk plus in-process subscribers.

Every entry is handed to any subscriber queues for the session and queued
for ``.ralph/activity.log``. A per-session ActivityWriter does the disk I/O
in a worker thread, flushing each batch, so a slow disk never holds up the
event loop.

Example output:
    {"timestamp": "...", "session_id": "...", "iteration": 2, "kind": "signal", "message": "WARN: ..."}
    {"timestamp": "...", "session_id": "...", "iteration": 2, "kind": "commit", "message": "..."}
"""

import asyncio
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import ActivityEntry


logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1000


class ActivityLog:
    """Append-only JSONL file of activity entries."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def write(self, entry: ActivityEntry) -> None:
        self.write_many([entry])

    def write_many(self, entries: list[ActivityEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("".join(e.model_dump_json() + "\n" for e in entries))
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError as e:
                logger.debug("fsync not supported for %s: %s", self.path, e)

    def read(self, limit: Optional[int] = None) -> list[ActivityEntry]:
        """Entries in file order; the last ``limit`` if given."""
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(ActivityEntry.model_validate_json(line))
            except ValidationError:
                logger.debug("Skipping unreadable activity line: %.200s", line)
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries


class ActivityWriter:
    """Background writer for one session's activity log.

    ``submit`` only queues the entry. A drain task, started on demand and
    finished once the queue is empty, writes batches from a worker thread.
    """

    def __init__(self, log: ActivityLog):
        self.log = log
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def submit(self, entry: ActivityEntry) -> None:
        self._queue.put_nowait(entry)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain(), name=f"activity-writer-{entry.session_id}")

    async def flush(self) -> None:
        """Wait until every submitted entry has been written (or failed)."""
        await self._queue.join()

    async def _drain(self) -> None:
        while not self._queue.empty():
            batch = []
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                await asyncio.to_thread(self.log.write_many, batch)
            except OSError as e:
                logger.warning("Could not write activity log %s: %s", self.log.path, e)
            finally:
                for _ in batch:
                    self._queue.task_done()


class ActivityHub:
    """Fans activity entries out to per-session subscriber queues.

    Publishing never blocks: a subscriber whose queue is full misses entries.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[session_id].append(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(session_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, []))

    def publish(self, entry: ActivityEntry) -> None:
        for queue in list(self._subscribers.get(entry.session_id, [])):
            try:
                queue.put_nowait(entry)
            except asyncio.QueueFull:
                logger.debug("Dropping activity entry for slow subscriber of %s", entry.session_id)

    def drop_session(self, session_id: str) -> None:
        self._subscribers.pop(session_id, None)
