"""
Message-driven worker loop.

The loop consumes request messages from an inbox queue and publishes
progress, result and error messages to an outbox queue. Compute tasks
(correlation, clustering, optimization) share ``max_concurrent_tasks``
slots; control messages (cache stats, cache clear, cancel) bypass the slots
so they are served while a long computation is running. Compute requests
are admitted as soon as they are read, so they can be cancelled while
queued.

Usage:
    loop = WorkerLoop()
    runner = asyncio.create_task(loop.run())
    await loop.submit({"type": "CACHE_STATS", "correlationId": "s1"})
    message = await loop.outbox.get()
    await loop.stop()
    await runner
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Dict, Optional, Set

from ..config import WorkerConfig, config as default_config
from ..progress import ProgressEvent
from ..utils.logging_config import get_logger
from .task_protocol import CONTROL_KINDS, AnalysisWorker, Task

logger = get_logger(__name__)

_STOP = object()

_CONTROL_TYPES = frozenset(kind.value for kind in CONTROL_KINDS)


class WorkerLoop:
    """
    Runs an AnalysisWorker behind an inbox/outbox queue pair.

    After ``stop()`` the loop finishes every accepted request, then puts
    ``None`` on the outbox to mark the end of the stream.
    """

    def __init__(
        self,
        worker: Optional[AnalysisWorker] = None,
        config: Optional[WorkerConfig] = None,
    ):
        self.config = config or (worker.config if worker is not None else default_config)
        self.worker = worker or AnalysisWorker(self.config)
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.config.max_concurrent_tasks)
        self._pending: Set[asyncio.Task] = set()

    async def submit(self, message: Any) -> None:
        await self.inbox.put(message)

    async def stop(self) -> None:
        await self.inbox.put(_STOP)

    def _emit_progress(self, event: ProgressEvent) -> None:
        self.outbox.put_nowait(event.to_message())

    @staticmethod
    def _is_control(message: Any) -> bool:
        return isinstance(message, Mapping) and message.get("type") in _CONTROL_TYPES

    async def _process(self, message: Any) -> None:
        response = await self.worker.handle(message, progress_sink=self._emit_progress)
        await self.outbox.put(response)

    async def _process_in_slot(self, task: Task) -> None:
        async with self._slots:
            response = await self.worker.execute(task, progress_sink=self._emit_progress)
            await self.outbox.put(response)

    async def run(self) -> None:
        """Serve the inbox until ``stop()`` is called."""
        logger.info(
            "Worker loop started (max_concurrent_tasks=%d)", self.config.max_concurrent_tasks
        )
        while True:
            message = await self.inbox.get()
            if message is _STOP:
                break
            if self._is_control(message):
                job = asyncio.create_task(self._process(message))
            else:
                # Registered before it waits for a slot
                admitted = self.worker.admit(message)
                if not isinstance(admitted, Task):
                    await self.outbox.put(admitted)
                    continue
                job = asyncio.create_task(self._process_in_slot(admitted))
            self._pending.add(job)
            job.add_done_callback(self._pending.discard)

        if self._pending:
            await asyncio.gather(*self._pending)
        await self.outbox.put(None)
        logger.info("Worker loop stopped")

    async def request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one message outside the queue pair and return its response.

        Progress events still go to the outbox.
        """
        if self._is_control(message):
            return await self.worker.handle(message, progress_sink=self._emit_progress)
        admitted = self.worker.admit(message)
        if not isinstance(admitted, Task):
            return admitted
        async with self._slots:
            return await self.worker.execute(admitted, progress_sink=self._emit_progress)
