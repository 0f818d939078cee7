"""Single-consumer FIFO that serializes every ledger-mutating call.

Exactly one operation is in flight at a time. A failed item is pushed back to
the *front* of the queue and retried after ``retry_delay_s * attempt``; later
items wait behind it (head-of-line blocking). After ``max_retries`` retries the
caller's future is rejected with the last error.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger("cult_sim.txqueue")

Operation = Callable[[], Awaitable[Any]]


@dataclass
class QueuedTx:
    id: str
    operation: Operation
    future: asyncio.Future
    retries: int = 0


@dataclass
class QueueStats:
    enqueued: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    history: deque = field(default_factory=lambda: deque(maxlen=50))


class TransactionQueue:
    def __init__(
        self,
        max_retries: int = 3,
        retry_delay_s: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep
        self._queue: deque[QueuedTx] = deque()
        self._worker: asyncio.Task | None = None
        self._stats = QueueStats()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def stats(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "enqueued": self._stats.enqueued,
            "succeeded": self._stats.succeeded,
            "retried": self._stats.retried,
            "failed": self._stats.failed,
            "recent": list(self._stats.history),
        }

    async def enqueue(self, tx_id: str, operation: Operation) -> Any:
        """Queue ``operation`` and wait for its final outcome."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append(QueuedTx(id=tx_id, operation=operation, future=future))
        self._stats.enqueued += 1
        if not self.processing:
            self._worker = loop.create_task(self._process(), name="txqueue_worker")
        return await future

    async def _process(self) -> None:
        while self._queue:
            tx = self._queue.popleft()
            try:
                logger.info("tx EXEC id=%s attempt=%d", tx.id, tx.retries + 1)
                result = await tx.operation()
            except asyncio.CancelledError:
                if not tx.future.done():
                    tx.future.cancel()
                raise
            except Exception as exc:
                if tx.retries < self.max_retries:
                    tx.retries += 1
                    self._stats.retried += 1
                    logger.warning(
                        "tx RETRY id=%s attempt=%d error=%s: %s",
                        tx.id, tx.retries, exc.__class__.__name__, exc,
                    )
                    self._queue.appendleft(tx)
                    await self._sleep(self.retry_delay_s * tx.retries)
                    continue
                self._stats.failed += 1
                self._stats.history.append((tx.id, "failed"))
                logger.error(
                    "tx FAILED id=%s retries=%d error=%s: %s",
                    tx.id, tx.retries, exc.__class__.__name__, exc,
                )
                if not tx.future.done():
                    tx.future.set_exception(exc)
                continue

            self._stats.succeeded += 1
            self._stats.history.append((tx.id, "ok"))
            if not tx.future.done():
                tx.future.set_result(result)

    async def drain(self) -> None:
        """Wait for the worker to empty the queue."""
        if self._worker is not None:
            await asyncio.shield(self._worker)
