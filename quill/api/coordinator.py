"""Tool execution coordinator: permission-gated, dependency-aware scheduling.

Each model-requested tool call becomes a Task in a priority queue (higher
priority first, submission order on ties). schedule() starts every task
whose hard dependencies (`depends_on`) have COMPLETED and whose soft
ordering constraints (`after`) have reached any terminal state, up to
`max_concurrency` at a time.

A task's life:
    PENDING -> QUEUED -> RUNNING -> COMPLETED | FAILED
    QUEUED | RUNNING -> CANCELLED (abort)

Before a tool runs its input shape is validated and the PermissionEngine
is consulted. Denials (by rule, mode, approver or approval timeout) are
immediate error results and never retried. Exceptions thrown by the tool
(including timeouts) are retried with capped exponential backoff. Every
submitted call ends with exactly one ToolResultBlock.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import random
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any, Literal, Protocol

from quill.abort import AbortSignal
from quill.api.models import ToolCallRequest, ToolResultBlock
from quill.api.tools import ToolContext, ToolOutput, ToolRegistry
from quill.config import Settings
from quill.errors import PermissionDenied, ToolExecutionError, ValidationError
from quill.events import Event, EventHandler, EventType
from quill.permissions.engine import PermissionEngine
from quill.permissions.schemas import PermissionDecision, PermissionUpdate

logger = logging.getLogger(__name__)

CANCELLED_RESULT = "Tool use was cancelled"


class TaskState(StrEnum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class TaskPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@dataclass
class Task:
    """A scheduled tool call."""

    request: ToolCallRequest
    priority: TaskPriority = TaskPriority.NORMAL
    depends_on: tuple[str, ...] = ()
    after: tuple[str, ...] = ()
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    result: ToolResultBlock | None = None
    error: str | None = None
    sequence: int = 0
    started_at: float | None = None
    ended_at: float | None = None
    transitions: list[tuple[TaskState, float]] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES


class TaskHandle:
    """Awaitable view of a submitted task."""

    def __init__(self, task: Task, future: asyncio.Future[ToolResultBlock]) -> None:
        self._task = task
        self._future = future

    @property
    def id(self) -> str:
        return self._task.id

    @property
    def state(self) -> TaskState:
        return self._task.state

    @property
    def task(self) -> Task:
        return self._task

    def done(self) -> bool:
        return self._future.done()

    async def result(self) -> ToolResultBlock:
        return await asyncio.shield(self._future)

    def __await__(self):
        return self.result().__await__()


@dataclass
class ApprovalResponse:
    behavior: Literal["allow", "deny"]
    updates: list[PermissionUpdate] = field(default_factory=list)
    reason: str | None = None


class Approver(Protocol):
    """External collaborator that answers `ask` decisions (usually the user)."""

    async def request_approval(
        self,
        request: ToolCallRequest,
        decision: PermissionDecision,
    ) -> ApprovalResponse: ...


def error_result(tool_use_id: str, message: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=message, is_error=True)


class ToolExecutionCoordinator:
    """Schedules tool calls for one batch at a time.

    The engine submits calls as they stream in, runs schedule() until the
    batch drains, collects results(), then reset()s for the next batch.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        permissions: PermissionEngine,
        settings: Settings,
        approver: Approver | None = None,
        event_sink: EventHandler | None = None,
        session_id: str | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self._registry = registry
        self._permissions = permissions
        self._settings = settings
        self._approver = approver
        self._event_sink = event_sink
        self._session_id = session_id or settings.session_id
        self.max_concurrency = max_concurrency or settings.tool_max_concurrency

        self._signal = AbortSignal()
        self._tasks: dict[str, Task] = {}
        self._futures: dict[str, asyncio.Future[ToolResultBlock]] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._running: dict[str, asyncio.Task] = {}
        self._sequence = 0
        self._wakeup = asyncio.Event()
        self._schedule_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @property
    def signal(self) -> AbortSignal:
        return self._signal

    @property
    def tasks(self) -> list[Task]:
        """All tasks of the current batch in submission order."""
        return sorted(self._tasks.values(), key=lambda t: t.sequence)

    def set_approver(self, approver: Approver | None) -> None:
        self._approver = approver

    def submit(
        self,
        request: ToolCallRequest,
        priority: TaskPriority = TaskPriority.NORMAL,
        depends_on: Sequence[str] | None = None,
        after: Sequence[str] | None = None,
        max_attempts: int | None = None,
    ) -> TaskHandle:
        """Queue a tool call. Returns immediately with an awaitable handle.

        With neither depends_on nor after given, ordering is derived: a call
        that is not concurrency-safe runs after every earlier call of the
        batch, and a safe call runs after the most recent unsafe one.
        """
        if request.id in self._tasks:
            raise ValueError(f"Tool use {request.id} already submitted")

        if depends_on is None and after is None:
            after = self._derived_ordering(request)

        self._sequence += 1
        task = Task(
            request=request,
            priority=TaskPriority(priority),
            depends_on=tuple(depends_on or ()),
            after=tuple(after or ()),
            max_attempts=max_attempts or self._settings.tool_max_attempts,
            sequence=self._sequence,
        )
        self._set_state(task, TaskState.PENDING)
        future: asyncio.Future[ToolResultBlock] = asyncio.get_running_loop().create_future()
        self._tasks[task.id] = task
        self._futures[task.id] = future

        if request.name not in self._registry:
            logger.warning("Unknown tool requested: %s", request.name)
            self._finish(
                task,
                TaskState.FAILED,
                error_result(task.id, f"Error: Unknown tool: {request.name}"),
            )
            return TaskHandle(task, future)

        if self._signal.aborted:
            self._finish(task, TaskState.CANCELLED, error_result(task.id, CANCELLED_RESULT))
            return TaskHandle(task, future)

        heapq.heappush(self._heap, (-int(task.priority), task.sequence, task.id))
        self._set_state(task, TaskState.QUEUED)
        self._wakeup.set()
        logger.debug(
            "Queued tool %s (%s) priority=%s depends_on=%s after=%s",
            request.name,
            task.id,
            task.priority.name,
            task.depends_on,
            task.after,
        )
        return TaskHandle(task, future)

    def _derived_ordering(self, request: ToolCallRequest) -> tuple[str, ...]:
        earlier = [t for t in self.tasks if t.request.name in self._registry]
        if not earlier:
            return ()
        if not self._registry.is_concurrency_safe(request.name, request.input):
            return tuple(t.id for t in earlier)
        for prior in reversed(earlier):
            if not self._registry.is_concurrency_safe(prior.request.name, prior.request.input):
                return (prior.id,)
        return ()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule(self) -> list[ToolResultBlock]:
        """Run queued tasks until nothing is eligible and nothing is running."""
        async with self._schedule_lock:
            abort_waiter = asyncio.ensure_future(self._signal.wait())
            try:
                while True:
                    if self._signal.aborted:
                        await self.cancel(self._signal.reason or "aborted")
                        break

                    await self._fail_blocked(final=False)
                    self._dispatch_eligible()

                    if not self._running:
                        if not self._heap:
                            break
                        # Nothing can ever become eligible
                        await self._fail_blocked(final=True)
                        continue

                    self._wakeup.clear()
                    wakeup_waiter = asyncio.ensure_future(self._wakeup.wait())
                    try:
                        await asyncio.wait(
                            {*self._running.values(), wakeup_waiter, abort_waiter},
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                    finally:
                        wakeup_waiter.cancel()
                    self._reap()
            finally:
                abort_waiter.cancel()
        return self.results()

    def _eligible(self, task: Task) -> bool:
        for dep in task.depends_on:
            dep_task = self._tasks.get(dep)
            if dep_task is None or dep_task.state != TaskState.COMPLETED:
                return False
        for dep in task.after:
            dep_task = self._tasks.get(dep)
            if dep_task is not None and not dep_task.done:
                return False
        return True

    def _dispatch_eligible(self) -> None:
        if not self._heap or len(self._running) >= self.max_concurrency:
            return
        started: set[str] = set()
        for _, _, task_id in sorted(self._heap):
            if len(self._running) >= self.max_concurrency:
                break
            task = self._tasks[task_id]
            if task.state != TaskState.QUEUED or not self._eligible(task):
                continue
            self._start(task)
            started.add(task_id)
        if started:
            self._heap = [entry for entry in self._heap if entry[2] not in started]
            heapq.heapify(self._heap)

    def _start(self, task: Task) -> None:
        task.started_at = time.monotonic()
        self._set_state(task, TaskState.RUNNING)
        self._running[task.id] = asyncio.create_task(
            self._run_task(task), name=f"tool-{task.request.name}-{task.id}"
        )

    def _reap(self) -> None:
        for task_id, runner in list(self._running.items()):
            if not runner.done():
                continue
            del self._running[task_id]
            if runner.cancelled():
                continue
            exc = runner.exception()
            if exc is not None:
                # _run_task turns tool errors into results; this is a coordinator bug
                logger.error("Tool task %s crashed: %r", task_id, exc)
                task = self._tasks[task_id]
                if not task.done:
                    self._finish(task, TaskState.FAILED, error_result(task_id, f"Error: {exc}"))

    async def _fail_blocked(self, final: bool) -> None:
        """Fail queued tasks whose hard dependencies can never complete.

        With final=True every task still queued is failed, since nothing
        is running that could unblock it.
        """
        failed: list[str] = []
        for _, _, task_id in list(self._heap):
            task = self._tasks[task_id]
            reason = self._blocked_reason(task, final)
            if reason is None:
                continue
            failed.append(task_id)
            logger.warning("Tool %s (%s) not run: %s", task.request.name, task_id, reason)
            self._finish(task, TaskState.FAILED, error_result(task_id, f"Error: {reason}"))
            await self._emit(EventType.TOOL_RESULT, task)
        if failed:
            self._heap = [entry for entry in self._heap if entry[2] not in failed]
            heapq.heapify(self._heap)

    def _blocked_reason(self, task: Task, final: bool) -> str | None:
        for dep in task.depends_on:
            dep_task = self._tasks.get(dep)
            if dep_task is None:
                if final:
                    return f"dependency {dep} was never submitted"
                continue
            if dep_task.state in (TaskState.FAILED, TaskState.CANCELLED):
                return f"dependency {dep} {dep_task.state.value}"
        if final:
            return "dependencies could not be satisfied"
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_task(self, task: Task) -> None:
        request = task.request
        tool = self._registry.get(request.name)
        if tool is None:
            await self._complete(
                task, TaskState.FAILED, error_result(task.id, f"Error: Unknown tool: {request.name}")
            )
            return

        try:
            self._registry.validate_input(request.name, request.input)
        except ValidationError as e:
            logger.info("Rejected %s (%s): %s", request.name, task.id, e)
            await self._complete(task, TaskState.FAILED, error_result(task.id, f"Error: {e}"))
            return

        try:
            await self._authorize(task)
        except PermissionDenied as e:
            logger.info("Denied %s (%s): %s", request.name, task.id, e)
            await self._complete(
                task, TaskState.FAILED, error_result(task.id, f"Tool use denied: {e}")
            )
            return

        context = ToolContext(
            session_id=self._session_id,
            signal=self._signal,
            permission_context=self._permissions.context,
            working_directory=self._settings.working_directory,
            tool_use_id=task.id,
        )
        timeout = getattr(tool, "timeout", None) or self._settings.tool_timeout

        while True:
            task.attempts += 1
            await self._emit(EventType.TOOL_START, task, attempt=task.attempts)
            try:
                output = await asyncio.wait_for(tool.execute(request.input, context), timeout=timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                error = ToolExecutionError(request.name, f"timed out after {timeout}s")
            except Exception as e:
                error = ToolExecutionError(request.name, f"{type(e).__name__}: {e}")
            else:
                if not isinstance(output, ToolOutput):
                    output = ToolOutput(content=str(output))
                await self._complete(
                    task,
                    TaskState.COMPLETED,
                    ToolResultBlock(
                        tool_use_id=task.id, content=output.content, is_error=output.is_error
                    ),
                )
                return

            task.error = str(error)
            if task.attempts >= task.max_attempts:
                logger.warning(
                    "Tool %s (%s) failed after %d attempts: %s",
                    request.name,
                    task.id,
                    task.attempts,
                    error,
                )
                await self._complete(task, TaskState.FAILED, error_result(task.id, f"Error: {error}"))
                return

            delay = self.retry_delay(task.attempts)
            logger.warning(
                "Tool %s (%s) attempt %d/%d failed, retrying in %.2fs: %s",
                request.name,
                task.id,
                task.attempts,
                task.max_attempts,
                delay,
                error,
            )
            await self._emit(EventType.TOOL_RETRY, task, error=str(error), delay=delay)
            await asyncio.sleep(delay)

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next attempt, given attempts made so far (>= 1)."""
        settings = self._settings
        delay = min(settings.tool_retry_base_delay * (2 ** (attempts - 1)), settings.tool_retry_max_delay)
        if settings.tool_retry_jitter > 0:
            delay += random.uniform(0, delay * settings.tool_retry_jitter)
        return delay

    async def _authorize(self, task: Task) -> None:
        """Raise PermissionDenied unless the call may run."""
        request = task.request
        decision = self._permissions.decide(request.name, request.input)
        if decision.behavior == "allow":
            return
        if decision.behavior == "deny":
            raise PermissionDenied(decision.reason)

        if self._approver is None:
            raise PermissionDenied(f"{decision.reason}; no approver available")

        await self._emit(EventType.PERMISSION_REQUEST, task, reason=decision.reason)
        timeout = self._settings.permission_ask_timeout
        try:
            response = await asyncio.wait_for(
                self._approver.request_approval(request, decision), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise PermissionDenied(f"Permission request timed out after {timeout}s") from None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Approver failed for %s", request.name)
            raise PermissionDenied(f"Approval failed: {e}") from e

        if response.updates:
            try:
                await self._permissions.apply_updates(response.updates)
            except ValidationError:
                logger.exception("Ignoring invalid permission updates from approver")

        if response.behavior != "allow":
            raise PermissionDenied(response.reason or "Denied by user")

    # ------------------------------------------------------------------
    # Cancellation and results
    # ------------------------------------------------------------------

    async def cancel(self, reason: str = "aborted") -> int:
        """Cancel every queued or running task. Returns the number cancelled."""
        self._signal.abort(reason)
        cancelled: list[Task] = []
        for task in self.tasks:
            if task.state in (TaskState.QUEUED, TaskState.RUNNING, TaskState.PENDING):
                self._finish(
                    task,
                    TaskState.CANCELLED,
                    error_result(task.id, f"{CANCELLED_RESULT}: {reason}"),
                )
                cancelled.append(task)
        self._heap.clear()

        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self._running.clear()

        for task in cancelled:
            await self._emit(EventType.TOOL_RESULT, task)
        if cancelled:
            logger.info("Cancelled %d tool tasks: %s", len(cancelled), reason)
        return len(cancelled)

    def results(self) -> list[ToolResultBlock]:
        """ToolResult blocks of finished tasks, in submission order."""
        return [t.result for t in self.tasks if t.result is not None]

    @property
    def idle(self) -> bool:
        return not self._running and not self._heap

    def reset(self, signal: AbortSignal | None = None) -> None:
        """Start a new batch. Outstanding work must be finished or cancelled first."""
        if self._running:
            raise RuntimeError("Cannot reset coordinator while tools are running")
        self._tasks.clear()
        self._futures.clear()
        self._heap.clear()
        self._sequence = 0
        self._wakeup.clear()
        self._signal = signal or AbortSignal()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _set_state(self, task: Task, state: TaskState) -> None:
        task.state = state
        task.transitions.append((state, time.monotonic()))

    def _finish(self, task: Task, state: TaskState, result: ToolResultBlock) -> bool:
        """Move a task to a terminal state once. Returns False if already terminal."""
        if task.done:
            return False
        task.result = result
        if result.is_error and task.error is None:
            task.error = result.text
        task.ended_at = time.monotonic()
        self._set_state(task, state)
        future = self._futures.get(task.id)
        if future is not None and not future.done():
            future.set_result(result)
        return True

    async def _complete(self, task: Task, state: TaskState, result: ToolResultBlock) -> None:
        if self._finish(task, state, result):
            await self._emit(EventType.TOOL_RESULT, task)

    async def _emit(self, event_type: EventType, task: Task, **extra: Any) -> None:
        if self._event_sink is None:
            return
        data: dict[str, Any] = {
            "tool_use_id": task.id,
            "tool_name": task.request.name,
            "state": task.state.value,
            "attempts": task.attempts,
        }
        if event_type == EventType.TOOL_RESULT and task.result is not None:
            data["is_error"] = task.result.is_error
            data["content"] = task.result.text[:500]
        data.update(extra)
        try:
            await self._event_sink(Event(type=event_type, session_id=self._session_id, data=data))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event sink failed for %s", event_type)
