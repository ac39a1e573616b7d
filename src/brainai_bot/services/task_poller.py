"""
Task Poller - drives a remote generation job from submission to a terminal state

A run owns its own cancellation token. Ticks are strictly sequential: the next
status check is not issued until the previous one has resolved. Reaching a
terminal state sets the token, which stops the loop before another tick.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from .metrics import increment_counter, record_histogram
from ..exceptions import BotError, TaskTimeoutError, TerminalRemoteError, TransientRemoteError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSIENT_ERRORS = 5


class RemoteStatus(str, Enum):
    """Category-agnostic status reported by a provider"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StatusResponse:
    """Normalized status-check response"""
    status: RemoteStatus
    output: Optional[Any] = None
    progress: Optional[int] = None
    error: Optional[str] = None


class TaskState(str, Enum):
    """GenerationTask lifecycle states"""
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.TIMED_OUT)


@dataclass(frozen=True)
class PollOptions:
    """Per-category polling configuration"""
    interval: float
    max_attempts: int
    max_transient_errors: int = DEFAULT_MAX_TRANSIENT_ERRORS

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.max_transient_errors <= 0:
            raise ValueError("max_transient_errors must be positive")

    @property
    def max_duration(self) -> float:
        """Upper bound on polling time in seconds"""
        return self.interval * self.max_attempts


@dataclass
class GenerationTask:
    """One outstanding remote job, alive only while it is being polled"""
    remote_task_id: str
    category: str
    owning_user_id: int
    state: TaskState = TaskState.SUBMITTED
    attempts_made: int = 0
    transient_errors: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TerminalResult:
    """Outcome delivered once when a task ends"""
    state: TaskState
    user_id: int
    category: str
    remote_task_id: Optional[str] = None
    output: Optional[Any] = None
    reason: Optional[str] = None
    attempts: int = 0
    error: Optional[BotError] = None

    @property
    def succeeded(self) -> bool:
        return self.state == TaskState.SUCCEEDED


SubmitFn = Callable[[], Awaitable[str]]
CheckStatusFn = Callable[[str], Awaitable[StatusResponse]]
StatusCallback = Callable[[GenerationTask, StatusResponse], Awaitable[None]]
TerminalCallback = Callable[[TerminalResult], Awaitable[None]]


class TaskPoller:
    """Bounded polling state machine shared by every provider and category"""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """
        Initialize TaskPoller

        Args:
            sleep: Awaitable delay between ticks (injected so tests run without real time)
        """
        self._sleep = sleep

    async def run(
        self,
        submit: SubmitFn,
        check_status: CheckStatusFn,
        options: PollOptions,
        user_id: int,
        category: str,
        on_status: Optional[StatusCallback] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ) -> TerminalResult:
        """
        Submit a job and poll it until it succeeds, fails or times out

        Args:
            submit: Starts the remote job and returns its id
            check_status: Fetches the normalized status for a remote id
            options: Interval and attempt budgets
            user_id: Owner of the task
            category: Generation category ("image" or "video")
            on_status: Called when the in-progress status or progress changes
            on_terminal: Called exactly once with the terminal result

        Returns:
            TerminalResult for the single terminal state reached
        """
        started = time.monotonic()

        try:
            remote_task_id = await submit()
        except (TransientRemoteError, TerminalRemoteError) as e:
            logger.warning(f"Submit failed for user {user_id} ({category}): {e}")
            result = TerminalResult(TaskState.FAILED, user_id, category, reason=str(e), error=e)
            return await self._deliver(result, on_terminal, started)
        except Exception as e:
            logger.error(f"Submit raised unexpectedly for user {user_id} ({category}): {e}", exc_info=True)
            error = TerminalRemoteError(f"Submit failed: {e}")
            result = TerminalResult(TaskState.FAILED, user_id, category, reason=str(error), error=error)
            return await self._deliver(result, on_terminal, started)

        if not remote_task_id:
            logger.warning(f"Submit returned no task id for user {user_id} ({category})")
            error = TerminalRemoteError("No task id returned")
            result = TerminalResult(TaskState.FAILED, user_id, category, reason=str(error), error=error)
            return await self._deliver(result, on_terminal, started)

        task = GenerationTask(remote_task_id=remote_task_id, category=category, owning_user_id=user_id)
        logger.info(f"Submitted {category} task {remote_task_id} for user {user_id}")

        result = await self._poll(task, check_status, options, on_status)
        return await self._deliver(result, on_terminal, started)

    async def _poll(
        self,
        task: GenerationTask,
        check_status: CheckStatusFn,
        options: PollOptions,
        on_status: Optional[StatusCallback],
    ) -> TerminalResult:
        cancelled = asyncio.Event()
        result: Optional[TerminalResult] = None
        last_seen: Optional[Tuple[RemoteStatus, Optional[int]]] = None

        def finish(state: TaskState, output: Any = None, error: Optional[BotError] = None):
            nonlocal result
            if cancelled.is_set():
                return
            cancelled.set()
            task.state = state
            result = TerminalResult(
                state=state,
                user_id=task.owning_user_id,
                category=task.category,
                remote_task_id=task.remote_task_id,
                output=output,
                reason=str(error) if error is not None else None,
                attempts=task.attempts_made,
                error=error,
            )

        task.state = TaskState.POLLING

        while not cancelled.is_set():
            await self._sleep(options.interval)

            try:
                response = await check_status(task.remote_task_id)
            except TransientRemoteError as e:
                # Transient failures do not consume an attempt
                task.transient_errors += 1
                logger.warning(
                    f"Status check for {task.remote_task_id} failed "
                    f"({task.transient_errors}/{options.max_transient_errors}): {e}"
                )
                if task.transient_errors >= options.max_transient_errors:
                    finish(TaskState.FAILED, error=TransientRemoteError("Status check failing repeatedly"))
                continue
            except TerminalRemoteError as e:
                finish(TaskState.FAILED, error=e)
                continue
            except Exception as e:
                # Unexpected adapter errors end only this task
                logger.error(f"Status check for {task.remote_task_id} raised unexpectedly: {e}", exc_info=True)
                finish(TaskState.FAILED, error=TerminalRemoteError(f"Status check failed: {e}"))
                continue

            task.transient_errors = 0

            if response.status == RemoteStatus.COMPLETED:
                finish(TaskState.SUCCEEDED, output=response.output)
            elif response.status == RemoteStatus.FAILED:
                finish(TaskState.FAILED, error=TerminalRemoteError(response.error or "Generation failed"))
            else:
                seen = (response.status, response.progress)
                if seen != last_seen:
                    last_seen = seen
                    await self._notify(on_status, task, response)

                task.attempts_made += 1
                if task.attempts_made >= options.max_attempts:
                    finish(TaskState.TIMED_OUT, error=TaskTimeoutError(task.remote_task_id, task.attempts_made))

        return result

    async def _notify(self, on_status: Optional[StatusCallback], task: GenerationTask, response: StatusResponse):
        if on_status is None:
            return
        try:
            await on_status(task, response)
        except Exception as e:
            logger.warning(f"Status notification failed for task {task.remote_task_id}: {e}", exc_info=True)

    async def _deliver(
        self,
        result: TerminalResult,
        on_terminal: Optional[TerminalCallback],
        started: float,
    ) -> TerminalResult:
        """Deliver the terminal result once. A failing delivery is logged, never retried."""
        increment_counter("generation_tasks_total", labels={"category": result.category, "state": result.state.value})
        record_histogram(
            "generation_task_duration_seconds",
            time.monotonic() - started,
            labels={"category": result.category},
        )
        logger.info(
            f"{result.category} task {result.remote_task_id or '-'} for user {result.user_id} "
            f"ended {result.state.value} after {result.attempts} attempts"
        )

        if on_terminal is not None:
            try:
                await on_terminal(result)
            except Exception as e:
                logger.error(f"Terminal delivery failed for user {result.user_id}: {e}", exc_info=True)

        return result
