"""Batch orchestrator: a bounded-concurrency queue of parse tasks.

The queue owns its task list and is the only writer to it. Each running
task wraps one ``ParsePipeline.parse`` call; pipeline stage and progress
callbacks are mirrored into the task's ``status_text``/``progress`` while
the task status itself stays ``running``. A monotonically increasing
session id guards every completion so a reset cannot be overwritten by
stragglers from the previous run.
"""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from mdnote.batch.models import (
    RETRYABLE_STATUSES,
    AddResult,
    BatchSummary,
    ParseTask,
    QueueState,
)
from mdnote.core.config import normalize_concurrency
from mdnote.core.errors import ParseCancelled
from mdnote.parsers.models import ParseCallbacks
from mdnote.parsers.pipeline import ParsePipeline

logger = logging.getLogger(__name__)

TaskListener = Callable[[ParseTask], None]


def _noop(_task: ParseTask) -> None:
    return None


class BatchQueue:
    def __init__(
        self,
        pipeline: ParsePipeline,
        concurrency: int = 2,
        get_concurrency: Optional[Callable[[], int]] = None,
        on_task_change: Optional[TaskListener] = None,
        force: bool = False,
    ):
        self.pipeline = pipeline
        self.force = force
        self.on_task_change = on_task_change or _noop
        self.state: QueueState = "idle"
        self._concurrency = normalize_concurrency(concurrency)
        self._get_concurrency = get_concurrency
        self._tasks: dict[str, ParseTask] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._session = 0
        self._stop_requested = False

    # ── Introspection ────────────────────────────────────────

    @property
    def concurrency(self) -> int:
        if self._get_concurrency is not None:
            return normalize_concurrency(self._get_concurrency())
        return self._concurrency

    @concurrency.setter
    def concurrency(self, value: int) -> None:
        self._concurrency = normalize_concurrency(value)

    @property
    def tasks(self) -> list[ParseTask]:
        return list(self._tasks.values())

    @property
    def running_count(self) -> int:
        return len(self._running)

    def get_task(self, task_id: str) -> ParseTask | None:
        return self._tasks.get(task_id)

    def summary(self) -> BatchSummary:
        counts = {"queued": 0, "running": 0, "success": 0, "failed": 0, "stopped": 0}
        for task in self._tasks.values():
            counts[task.status] += 1
        return BatchSummary(total=len(self._tasks), state=self.state, **counts)

    # ── Task management ──────────────────────────────────────

    def add_tasks(self, tasks: Iterable[ParseTask]) -> AddResult:
        """Append tasks in order. A task whose id is already queued is skipped."""
        result = AddResult()
        for task in tasks:
            if task.id in self._tasks:
                result.skipped.append(task.id)
                continue
            self._tasks[task.id] = task
            result.added.append(task.id)
            self._notify(task)
        if result.skipped:
            logger.info("Skipped %d duplicate tasks", len(result.skipped))
        self._pump()
        return result

    def remove_task(self, task_id: str) -> bool:
        """Drop a finished task. Queued or running tasks stay."""
        task = self._tasks.get(task_id)
        if task is None or not task.is_terminal:
            return False
        del self._tasks[task_id]
        return True

    def clear_finished(self) -> int:
        finished = [tid for tid, t in self._tasks.items() if t.is_terminal]
        for tid in finished:
            del self._tasks[tid]
        return len(finished)

    # ── Queue control ────────────────────────────────────────

    def start(self) -> None:
        if self.state == "running":
            self._pump()
            return
        self._stop_requested = False
        self.state = "running"
        logger.info("Batch started (concurrency %d)", self.concurrency)
        self._pump()

    def pause(self) -> None:
        if self.state == "running":
            self.state = "paused"
            logger.info("Batch paused, %d tasks still running", len(self._running))

    def resume(self) -> None:
        if self.state == "paused":
            self.state = "running"
            logger.info("Batch resumed")
            self._pump()

    def stop_all(self) -> None:
        """Cancel running tasks and mark every queued task stopped. Never raises.

        The queue keeps its state until the cancelled tasks have drained, then
        goes idle.
        """
        self._stop_requested = True
        for task in self._tasks.values():
            if task.status == "running":
                task.cancel_requested = True
                task.status_text = "Stopping"
                self._notify(task)
            elif task.status == "queued":
                self._finalize(task, "stopped", "Stopped")
        if self._running:
            logger.info("Batch stop requested, %d tasks cancelling", len(self._running))
        else:
            self.state = "idle"
            logger.info("Batch stopped")

    def start_task(self, task_id: str) -> bool:
        """Run one task now, outside the concurrency cap."""
        task = self._tasks.get(task_id)
        if task is None or task.id in self._running:
            return False
        if task.status in RETRYABLE_STATUSES:
            self._requeue(task)
        if task.status != "queued":
            return False
        self._launch(task)
        return True

    def stop_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        if task.status == "running":
            task.cancel_requested = True
            task.status_text = "Stopping"
            self._notify(task)
            return True
        if task.status == "queued":
            self._finalize(task, "stopped", "Stopped")
            return True
        return False

    def retry(self, task_id: str) -> bool:
        """Requeue a failed or stopped task. Anything else is left untouched."""
        task = self._tasks.get(task_id)
        if task is None or task.status not in RETRYABLE_STATUSES:
            return False
        self._requeue(task)
        self._pump()
        return True

    def retry_failed(self) -> int:
        retried = [t for t in self._tasks.values() if t.status in RETRYABLE_STATUSES]
        for task in retried:
            self._requeue(task)
        self._pump()
        return len(retried)

    def reset(self) -> None:
        """Forget every task and invalidate in-flight completions."""
        self._session += 1
        for task in self._tasks.values():
            task.cancel_requested = True
        self._tasks.clear()
        self._running.clear()
        self._stop_requested = False
        self.state = "idle"
        logger.info("Batch reset (session %d)", self._session)

    async def wait_idle(self) -> None:
        """Wait until no task of the current session is running."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    # ── Scheduling ───────────────────────────────────────────

    def _pump(self) -> None:
        if self._stop_requested:
            if not self._running:
                self.state = "idle"
            return
        if self.state != "running":
            return
        limit = self.concurrency
        for task in list(self._tasks.values()):
            if len(self._running) >= limit:
                break
            if task.status == "queued" and task.id not in self._running:
                self._launch(task)

        if not self._running and not any(t.status == "queued" for t in self._tasks.values()):
            self.state = "idle"
            s = self.summary()
            logger.info(
                "Batch finished: %d succeeded, %d failed, %d stopped",
                s.success,
                s.failed,
                s.stopped,
            )

    def _launch(self, task: ParseTask) -> None:
        task.status = "running"
        task.status_text = "Starting"
        task.progress = 0
        task.error_message = None
        task.started_at = _now_ms()
        task.ended_at = None
        task.duration_ms = None
        self._notify(task)
        self._running[task.id] = asyncio.create_task(self._execute(task, self._session))

    async def _execute(self, task: ParseTask, session: int) -> None:
        def alive() -> bool:
            return session == self._session and self._tasks.get(task.id) is task

        def on_status(stage: str, text: str) -> None:
            if alive() and task.status == "running":
                task.status_text = text
                self._notify(task)

        def on_progress(value: int) -> None:
            if alive() and task.status == "running":
                task.progress = max(0, min(100, int(value)))
                self._notify(task)

        callbacks = ParseCallbacks(
            on_status_change=on_status,
            on_progress=on_progress,
            should_cancel=lambda: task.cancel_requested or not alive(),
        )

        try:
            outcome = await self.pipeline.parse(
                task.document_id, task.source_file_id, force=self.force, callbacks=callbacks
            )
            if alive():
                task.note_id = outcome.note_id
                task.progress = 100
                self._finalize(task, "success", outcome.status_text)
        except ParseCancelled:
            if alive():
                self._finalize(task, "stopped", "Stopped")
        except Exception as exc:
            logger.error("Task %s (%s) failed: %s", task.id, task.title or task.document_key, exc)
            if alive():
                task.error_message = str(exc)
                self._finalize(task, "failed", str(exc))
        finally:
            if self._running.get(task.id) is asyncio.current_task():
                del self._running[task.id]
            if session == self._session:
                self._pump()

    # ── Helpers ──────────────────────────────────────────────

    def _finalize(self, task: ParseTask, status: str, text: str) -> None:
        task.status = status
        task.status_text = text
        task.ended_at = _now_ms()
        if task.started_at is not None:
            task.duration_ms = task.ended_at - task.started_at
        self._notify(task)

    def _requeue(self, task: ParseTask) -> None:
        task.status = "queued"
        task.status_text = "Queued"
        task.progress = 0
        task.error_message = None
        task.note_id = None
        task.started_at = None
        task.ended_at = None
        task.duration_ms = None
        task.cancel_requested = False
        self._notify(task)

    def _notify(self, task: ParseTask) -> None:
        self.on_task_change(task)


def _now_ms() -> int:
    return int(time.time() * 1000)
