"""Best-effort persistence side-channel.

The in-memory models are the source of truth for the running process;
persistence only mirrors them for crash recovery. Every mirror write goes
through ``BestEffortWriter.submit``: it lands in a bounded per-agent queue,
one drain task per agent runs the blocking write on a thread pool, and any
failure is counted and logged. Nothing is ever raised back to the caller.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Callable

logger = logging.getLogger("cult_sim.persistence")

GLOBAL_KEY = -1
"""Queue key for writes that belong to no single agent (alliances, betrayals)."""


@dataclass
class WriteStats:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0


class BestEffortWriter:
    _thread_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="persist")

    def __init__(self, max_pending_per_agent: int = 256) -> None:
        self._max_pending = max_pending_per_agent
        self._queues: dict[int, asyncio.Queue] = {}
        self._drainers: dict[int, asyncio.Task] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stats = WriteStats()

    def stats(self) -> dict[str, int]:
        return asdict(self._stats)

    def submit(self, key: int | None, fn: Callable[..., Any], *args: Any, label: str = "") -> None:
        self._stats.submitted += 1
        label = label or getattr(fn, "__name__", "write")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._run_inline(fn, args, label)
            return

        if self._loop is not loop:
            # Queues and drain tasks are bound to the loop that created them.
            self._queues.clear()
            self._drainers.clear()
            self._loop = loop

        qkey = GLOBAL_KEY if key is None else key
        queue = self._queues.get(qkey)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._max_pending)
            self._queues[qkey] = queue
        try:
            queue.put_nowait((fn, args, label))
        except asyncio.QueueFull:
            self._stats.dropped += 1
            logger.warning("persist DROP key=%s op=%s pending=%d", qkey, label, queue.qsize())
            return

        drainer = self._drainers.get(qkey)
        if drainer is None or drainer.done():
            self._drainers[qkey] = loop.create_task(
                self._drain(qkey, queue), name=f"persist_{qkey}"
            )

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        await self.flush()
        for task in self._drainers.values():
            task.cancel()
        self._drainers.clear()
        self._queues.clear()

    async def _drain(self, key: int, queue: asyncio.Queue) -> None:
        loop = asyncio.get_running_loop()
        while True:
            fn, args, label = await queue.get()
            try:
                await loop.run_in_executor(
                    self._thread_pool, functools.partial(fn, *args)
                )
                self._stats.succeeded += 1
            except Exception as exc:
                self._stats.failed += 1
                logger.warning(
                    "persist FAIL key=%s op=%s error=%s: %s",
                    key, label, exc.__class__.__name__, exc,
                )
            finally:
                queue.task_done()

    def _run_inline(self, fn: Callable[..., Any], args: tuple, label: str) -> None:
        try:
            fn(*args)
            self._stats.succeeded += 1
        except Exception as exc:
            self._stats.failed += 1
            logger.warning(
                "persist FAIL inline op=%s error=%s: %s",
                label, exc.__class__.__name__, exc,
            )
