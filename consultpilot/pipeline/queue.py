"""
Per-Consultation Message Queue — serialises messages for each consultation.

Duration and severity are first-match-wins, so a consultation's messages
must reach the collector in arrival order.  One asyncio.Queue and worker
per consultation id; different consultations run in parallel.

Callers that need the outcome await the future returned by enqueue().
Other per-consultation work (confirmations) goes through submit() so it
is ordered with the messages around it.
Idle queues are torn down after a configurable timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from consultpilot import settings
from consultpilot.pipeline.events import ConsultationMessage

logger = logging.getLogger("pipeline.queue")

MessageProcessor = Callable[[ConsultationMessage], Awaitable[Any]]
QueuedJob = Callable[[], Awaitable[Any]]

SLOW_MESSAGE_SECONDS = 30
CLEANUP_INTERVAL_SECONDS = 60


class ConsultationQueueManager:
    """
    Usage:
        mgr = ConsultationQueueManager(processor=pipeline.process_message)
        await mgr.start()
        outcome = await (await mgr.enqueue(message))
    """

    def __init__(
        self,
        processor: MessageProcessor,
        idle_timeout_seconds: int = settings.QUEUE_IDLE_TIMEOUT_SECONDS,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._processor = processor
        self._idle_timeout = idle_timeout_seconds
        self._cleanup_interval = cleanup_interval_seconds

        self._queues: dict[str, asyncio.Queue[tuple[str, QueuedJob, asyncio.Future]]] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._last_activity: dict[str, datetime] = {}
        self._cleanup_task: asyncio.Task | None = None
        self._running = False

    # ── Public API ──

    async def start(self) -> None:
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("ConsultationQueueManager started (idle timeout=%ds)", self._idle_timeout)

    async def stop(self) -> None:
        """Stop the cleanup loop and every worker."""
        self._running = False
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        for cid in list(self._workers.keys()):
            await self._destroy_queue(cid)

        logger.info("ConsultationQueueManager stopped")

    async def enqueue(self, message: ConsultationMessage) -> asyncio.Future:
        """Queue a message; the returned future resolves to the processor's result."""
        future = await self.submit(
            message.consultation_id,
            lambda: self._processor(message),
            label=f"message {message.message_id}",
        )
        logger.debug("Enqueued %s message for consultation %s",
                     message.sender_role.value, message.consultation_id)
        return future

    async def submit(
        self, consultation_id: str, job: QueuedJob, label: str = "job"
    ) -> asyncio.Future:
        """Queue arbitrary work behind the consultation's pending messages."""
        if consultation_id not in self._queues:
            self._create_queue(consultation_id)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._last_activity[consultation_id] = datetime.now(timezone.utc)
        await self._queues[consultation_id].put((label, job, future))
        return future

    async def remove(self, consultation_id: str) -> None:
        await self._destroy_queue(consultation_id)

    @property
    def active_consultations(self) -> list[str]:
        return list(self._queues.keys())

    @property
    def active_count(self) -> int:
        return len(self._queues)

    def queue_depth(self, consultation_id: str) -> int:
        q = self._queues.get(consultation_id)
        return q.qsize() if q else 0

    # ── Internal ──

    def _create_queue(self, consultation_id: str) -> None:
        q: asyncio.Queue = asyncio.Queue()
        self._queues[consultation_id] = q
        self._last_activity[consultation_id] = datetime.now(timezone.utc)
        self._workers[consultation_id] = asyncio.create_task(self._worker_loop(consultation_id))
        logger.debug("Created queue + worker for consultation %s", consultation_id)

    async def _worker_loop(self, consultation_id: str) -> None:
        q = self._queues.get(consultation_id)
        if q is None:
            return

        while self._running or not q.empty():
            try:
                label, job, future = await asyncio.wait_for(q.get(), timeout=5.0)
            except asyncio.TimeoutError:
                if not self._running:
                    break
                continue
            except asyncio.CancelledError:
                break

            try:
                self._last_activity[consultation_id] = datetime.now(timezone.utc)
                t0 = time.monotonic()
                result = await job()
                elapsed = time.monotonic() - t0
                logger.info(
                    "%s for %s processed in %.2fs",
                    label.capitalize(), consultation_id, elapsed,
                )
                if elapsed > SLOW_MESSAGE_SECONDS:
                    logger.warning(
                        "Slow %s for %s took %.1fs",
                        label, consultation_id, elapsed,
                    )
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                logger.error(
                    "Error processing %s for consultation %s: %s",
                    label, consultation_id, exc,
                    exc_info=True,
                )
                if not future.done():
                    future.set_exception(exc)
            finally:
                q.task_done()

    async def _destroy_queue(self, consultation_id: str) -> None:
        worker = self._workers.pop(consultation_id, None)
        if worker and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        q = self._queues.pop(consultation_id, None)
        while q is not None and not q.empty():
            _, _, pending = q.get_nowait()
            pending.cancel()
        self._last_activity.pop(consultation_id, None)
        logger.debug("Destroyed queue for consultation %s", consultation_id)

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.cleanup_idle()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Queue cleanup error: %s", exc)

    async def cleanup_idle(self) -> list[str]:
        """Destroy queues idle for longer than the timeout; returns their ids."""
        now = datetime.now(timezone.utc)
        idle = []
        for cid, last in list(self._last_activity.items()):
            q = self._queues.get(cid)
            if (now - last).total_seconds() > self._idle_timeout and (q is None or q.empty()):
                idle.append(cid)

        for cid in idle:
            logger.info("Cleaning up idle queue for consultation %s", cid)
            await self._destroy_queue(cid)
        return idle
