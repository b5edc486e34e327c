"""ConversationEngine: the turn loop.

One user turn may take several model requests. Each request:

1. compacts history if it crossed the budget,
2. streams the model's reply (PROCESSING -> STREAMING), surfacing text
   deltas as they arrive and submitting each tool call to the coordinator
   the moment its block closes,
3. appends the finished assistant message, and if it requested tools
   (AWAITING_TOOLS) waits for every result, appends them as one user
   message and goes round again.

The turn ends in IDLE once a reply requests no tools. Abort preserves the
partial reply and pairs every outstanding tool use with a cancellation
result. Protocol failures do the same repair and leave the engine in
ERROR until the next turn (or recover()).

History is owned by the engine and only changes between model requests.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from quill.abort import AbortSignal
from quill.api.assembler import (
    ContentAssembler,
    TextDelta,
    ThinkingComplete,
    ToolCallReady,
    TurnComplete,
    UsageUpdate,
)
from quill.api.client import ModelClient
from quill.api.compaction import ContextCompactor
from quill.api.coordinator import (
    CANCELLED_RESULT,
    Approver,
    ToolExecutionCoordinator,
    error_result,
)
from quill.api.models import (
    CompactionReport,
    Conversation,
    ConversationState,
    MediaBlock,
    Message,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
)
from quill.api.stream import StreamDecoder
from quill.api.tokens import TokenEstimator, UsageTracker
from quill.api.tools import ToolRegistry
from quill.config import Settings
from quill.errors import CompactionError, EngineClosedError, ProtocolError, QuillError
from quill.events import Event, EventBus, EventType
from quill.permissions.engine import PermissionEngine
from quill.permissions.schemas import ToolPermissionContext

logger = logging.getLogger(__name__)

INTERRUPT_MARKER = "[Request interrupted by user]"
CONVERSATION_PREFACE = "[Earlier conversation was summarized. Continue from here.]"
MAX_TURNS_NOTICE = "Tool use limit reached for this turn"
NO_TOOL_CHOICE = {"type": "none"}

_END_OF_TURN = object()


@dataclass
class TurnOutcome:
    """What one user turn produced."""

    text: str = ""
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResultBlock] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    state: ConversationState = ConversationState.IDLE
    stop_reason: str | None = None
    model_requests: int = 0
    aborted: bool = False
    error: str | None = None
    compactions: list[CompactionReport] = field(default_factory=list)


class ConversationEngine:
    """Runs conversational turns against the streaming Messages API."""

    def __init__(
        self,
        settings: Settings,
        client: ModelClient | None = None,
        registry: ToolRegistry | None = None,
        permissions: PermissionEngine | None = None,
        approver: Approver | None = None,
        bus: EventBus | None = None,
        system_prompt: str = "",
        conversation: Conversation | None = None,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or ModelClient(settings)
        self.registry = registry or ToolRegistry()
        self.permissions = permissions or PermissionEngine(
            ToolPermissionContext(mode=settings.permission_mode)
        )
        if bus is None and settings.event_bus_enabled:
            bus = EventBus(max_queue=settings.event_bus_max_queue)
        self._bus = bus
        self.system_prompt = system_prompt
        self.conversation = conversation or Conversation(session_id=settings.session_id)
        self.estimator = estimator or TokenEstimator()
        self.compactor = ContextCompactor(settings, self.estimator)
        self.usage_tracker = UsageTracker(model=settings.model, usage=self.conversation.usage)
        self.coordinator = ToolExecutionCoordinator(
            self.registry,
            self.permissions,
            settings,
            approver=approver,
            event_sink=self._publish_event,
            session_id=self.conversation.session_id,
        )

        self._state = ConversationState.IDLE
        self._signal: AbortSignal | None = None
        self._outbox: asyncio.Queue[Any] | None = None
        self._turn_task: asyncio.Task | None = None
        self.last_outcome: TurnOutcome | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def session_id(self) -> str:
        return self.conversation.session_id

    @property
    def bus(self) -> EventBus | None:
        """Observer bus; None when event_bus_enabled is off and none was given."""
        return self._bus

    async def start(self) -> None:
        await self._client.start()
        if self._bus is not None:
            await self._bus.start()

    async def close(self) -> None:
        """Terminate the engine. Further turns raise EngineClosedError."""
        if self._state == ConversationState.TERMINATED:
            return
        if self._turn_task is not None and not self._turn_task.done():
            self.abort("engine closed")
            await asyncio.wait({self._turn_task})
        await self._set_state(ConversationState.TERMINATED)
        await self._client.close()
        if self._bus is not None:
            await self._bus.stop()
        logger.info("Engine closed for session %s", self.session_id)

    async def __aenter__(self) -> ConversationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def abort(self, reason: str = "user interrupt") -> None:
        """Abort the turn in progress, if any."""
        if self._signal is not None:
            logger.info("Aborting turn: %s", reason)
            self._signal.abort(reason)

    def recover(self) -> None:
        """Return from ERROR to IDLE after the failure was surfaced."""
        if self._state == ConversationState.ERROR:
            self._state = ConversationState.IDLE
            logger.info("Recovered from error state")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def stream_turn(
        self,
        user_input: str,
        attachments: list[MediaBlock] | None = None,
    ) -> AsyncIterator[Event]:
        """Run one user turn, yielding events in the order they happen."""
        if self._state == ConversationState.TERMINATED:
            raise EngineClosedError("Engine is closed")
        if self._turn_task is not None:
            raise QuillError("A turn is already in progress")
        self.recover()

        signal = AbortSignal()
        outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._signal = signal
        self._outbox = outbox
        driver = asyncio.create_task(
            self._drive_turn(user_input, attachments, signal),
            name=f"quill-turn-{self.session_id}",
        )
        driver.add_done_callback(lambda _: outbox.put_nowait(_END_OF_TURN))
        self._turn_task = driver

        try:
            while True:
                item = await outbox.get()
                if item is _END_OF_TURN:
                    break
                yield item
            self.last_outcome = await driver
        finally:
            if not driver.done():
                signal.abort("event stream closed")
                await asyncio.wait({driver})
            self._turn_task = None
            self._outbox = None
            self._signal = None

    async def run_turn(
        self,
        user_input: str,
        attachments: list[MediaBlock] | None = None,
    ) -> TurnOutcome:
        """Run one user turn to completion and return its outcome."""
        async for _ in self.stream_turn(user_input, attachments):
            pass
        assert self.last_outcome is not None
        return self.last_outcome

    async def compact_now(self) -> CompactionReport | None:
        """Compact history immediately, regardless of the threshold."""
        if self._turn_task is not None:
            raise QuillError("Cannot compact while a turn is in progress")
        return await self._compact()

    # ------------------------------------------------------------------
    # Turn driver
    # ------------------------------------------------------------------

    async def _drive_turn(
        self,
        user_input: str,
        attachments: list[MediaBlock] | None,
        signal: AbortSignal,
    ) -> TurnOutcome:
        outcome = TurnOutcome()
        self._append(Message.user(user_input, attachments), outcome)
        max_turns = self._settings.max_turns

        try:
            for request_number in range(max_turns + 1):
                use_tools = request_number < max_turns
                if not use_tools:
                    logger.warning("Tool loop reached max_turns=%d", max_turns)

                if self._settings.compaction_enabled and self.compactor.needs_compaction(
                    self.conversation.messages
                ):
                    report = await self._compact()
                    if report is not None:
                        outcome.compactions.append(report)

                await self._set_state(ConversationState.PROCESSING)
                finished = await self._request_once(outcome, signal, use_tools)
                if finished:
                    break
        except asyncio.CancelledError:
            signal.abort("cancelled")
            await self._stop_tools(None, "cancelled")
            self._repair_pairing(None, INTERRUPT_MARKER, outcome)
            outcome.aborted = True
            self._state = ConversationState.IDLE
            raise
        except Exception as e:
            logger.exception("Unexpected error during turn")
            self._repair_pairing(None, None, outcome)
            outcome.error = f"{type(e).__name__}: {e}"
            await self._fail(outcome)
            raise

        outcome.state = self._state
        await self._publish(
            EventType.TURN_COMPLETE,
            state=self._state.value,
            aborted=outcome.aborted,
            error=outcome.error,
            model_requests=outcome.model_requests,
            usage=outcome.usage.as_dict(),
        )
        return outcome

    async def _request_once(
        self,
        outcome: TurnOutcome,
        signal: AbortSignal,
        use_tools: bool,
    ) -> bool:
        """One model request plus its tool batch. Returns True when the turn is over."""
        system_prompt, api_messages = self.build_request()
        # The final request keeps tool definitions for the tool blocks in
        # history but forbids new calls
        payload = self._client.build_payload(
            system_prompt,
            api_messages,
            self.registry.definitions() if len(self.registry) else None,
            tool_choice=None if use_tools else NO_TOOL_CHOICE,
        )
        outcome.model_requests += 1

        assembler = ContentAssembler(message_index=len(self.conversation.messages))
        self.coordinator.reset(signal)
        scheduler: asyncio.Task | None = None
        completed: TurnComplete | None = None

        await self._set_state(ConversationState.STREAMING)
        try:
            decoder = StreamDecoder()
            async with contextlib.aclosing(self._client.stream_bytes(payload, signal)) as byte_stream:
                async for output in assembler.assemble(decoder.decode(byte_stream)):
                    if isinstance(output, TextDelta):
                        await self._publish(EventType.TEXT_DELTA, text=output.text)
                    elif isinstance(output, ThinkingComplete):
                        await self._publish(EventType.THINKING, text=output.text)
                    elif isinstance(output, ToolCallReady):
                        request = output.request
                        await self._publish(
                            EventType.TOOL_CALL,
                            tool_use_id=request.id,
                            tool_name=request.name,
                            input=request.input,
                        )
                        if not use_tools:
                            continue
                        self.coordinator.submit(request)
                        if scheduler is None or scheduler.done():
                            scheduler = asyncio.create_task(self.coordinator.schedule())
                    elif isinstance(output, UsageUpdate):
                        await self._publish(EventType.USAGE, usage=output.usage)
                    elif isinstance(output, TurnComplete):
                        completed = output
        except ProtocolError as e:
            logger.error("Protocol error during stream: %s", e)
            await self._stop_tools(scheduler, "request failed")
            self._repair_pairing(assembler, None, outcome)
            outcome.error = str(e)
            await self._fail(outcome)
            return True

        if not signal.aborted and completed is None:
            await self._stop_tools(scheduler, "request failed")
            self._repair_pairing(assembler, None, outcome)
            outcome.error = "Stream ended before message_stop"
            await self._fail(outcome)
            return True

        if signal.aborted:
            await self._stop_tools(scheduler, signal.reason or "aborted")
            self._repair_pairing(assembler, INTERRUPT_MARKER, outcome)
            outcome.aborted = True
            await self._set_state(ConversationState.IDLE)
            return True

        message = completed.message
        outcome.stop_reason = completed.stop_reason
        self._append(message, outcome)
        self._record_usage(message, payload, outcome)
        await self._publish(
            EventType.MESSAGE_COMPLETE,
            text=message.text,
            tool_uses=len(message.tool_uses),
            stop_reason=completed.stop_reason,
        )
        outcome.text = message.text

        if not message.tool_uses:
            await self._set_state(ConversationState.IDLE)
            return True

        if not use_tools:
            # The final request carries no tool definitions; any call it makes goes unanswered
            self._answer_pending(MAX_TURNS_NOTICE, outcome)
            await self._set_state(ConversationState.IDLE)
            return True

        await self._set_state(ConversationState.AWAITING_TOOLS)
        if scheduler is not None:
            await scheduler
        await self.coordinator.schedule()

        results = {r.tool_use_id: r for r in self.coordinator.results()}
        blocks: list[Any] = []
        for use in message.tool_uses:
            result = results.get(use.id) or error_result(use.id, "Error: No result produced")
            blocks.append(result)
        outcome.tool_results.extend(blocks)

        if signal.aborted:
            blocks.append(TextBlock(text=INTERRUPT_MARKER))
            self._append(Message(role="user", content=blocks), outcome)
            outcome.aborted = True
            await self._set_state(ConversationState.IDLE)
            return True

        self._append(Message(role="user", content=blocks), outcome)
        return False

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def build_request(self) -> tuple[str, list[dict[str, Any]]]:
        """System prompt and API messages for the current history.

        System-role messages (compaction summaries) are folded into the
        system prompt. Consecutive messages of the same role are merged,
        and a history that starts with the assistant gets a user preface.
        """
        system_parts = [self.system_prompt] if self.system_prompt else []
        api_messages: list[dict[str, Any]] = []
        for message in self.conversation.messages:
            if message.role == "system":
                if message.text:
                    system_parts.append(message.text)
                continue
            content = [block.to_api() for block in message.content]
            if not content:
                continue
            if api_messages and api_messages[-1]["role"] == message.role:
                api_messages[-1]["content"].extend(content)
            else:
                api_messages.append({"role": message.role, "content": content})

        if api_messages and api_messages[0]["role"] == "assistant":
            api_messages.insert(
                0, {"role": "user", "content": [{"type": "text", "text": CONVERSATION_PREFACE}]}
            )
        return "\n\n".join(system_parts), api_messages

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _append(self, message: Message, outcome: TurnOutcome) -> None:
        self.conversation.append(message)
        outcome.messages.append(message)

    def _record_usage(self, message: Message, payload: dict[str, Any], outcome: TurnOutcome) -> None:
        usage = message.usage
        if not usage:
            return
        self.usage_tracker.update(usage)
        outcome.usage.add(usage)

        actual = sum(
            int(usage.get(key) or 0)
            for key in ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens")
        )
        input_chars = len(json.dumps(payload.get("messages", []), default=str))
        input_chars += sum(len(part.get("text", "")) for part in payload.get("system", []))
        self.estimator.calibrate(input_chars, actual)

    def _answer_pending(self, text: str, outcome: TurnOutcome) -> None:
        pending = self.conversation.pending_tool_use_ids()
        if not pending:
            return
        blocks = [error_result(tool_use_id, f"Error: {text}") for tool_use_id in pending]
        outcome.tool_results.extend(blocks)
        self._append(Message(role="user", content=blocks), outcome)

    def _repair_pairing(
        self,
        assembler: ContentAssembler | None,
        marker: str | None,
        outcome: TurnOutcome,
    ) -> None:
        """Keep partial output and give every unanswered tool use a result."""
        if assembler is not None and not assembler.complete:
            partial = assembler.partial_message()
            if partial.content:
                self._append(partial, outcome)

        finished = {r.tool_use_id: r for r in self.coordinator.results()}
        blocks: list[Any] = []
        for tool_use_id in self.conversation.pending_tool_use_ids():
            result = finished.get(tool_use_id) or error_result(
                tool_use_id, CANCELLED_RESULT if marker else "Error: Request failed"
            )
            blocks.append(result)
        outcome.tool_results.extend(blocks)
        if marker:
            blocks.append(TextBlock(text=marker))
        if blocks:
            self._append(Message(role="user", content=blocks), outcome)

    async def _stop_tools(self, scheduler: asyncio.Task | None, reason: str) -> None:
        await self.coordinator.cancel(reason)
        if scheduler is not None:
            await asyncio.gather(scheduler, return_exceptions=True)

    async def _compact(self) -> CompactionReport | None:
        try:
            result = self.compactor.compact(self.conversation.messages)
        except CompactionError:
            logger.exception("Compaction failed; continuing uncompacted")
            return None
        if result is None:
            logger.info("Compaction skipped: no acceptable boundary")
            return None
        self.conversation.replace_history(result.messages, result.report)
        report = result.report
        await self._publish(
            EventType.COMPACTION,
            original_count=report.original_count,
            compacted_count=report.compacted_count,
            token_savings=report.token_savings,
            boundary=report.boundary.index,
        )
        return report

    async def _fail(self, outcome: TurnOutcome) -> None:
        await self._set_state(ConversationState.ERROR)
        await self._publish(EventType.ERROR, error=outcome.error)

    async def _set_state(self, state: ConversationState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("State %s -> %s", previous, state)
        await self._publish(EventType.STATE_CHANGE, previous=previous.value, state=state.value)

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        await self._publish_event(Event(type=event_type, session_id=self.session_id, data=data))

    async def _publish_event(self, event: Event) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(event)
        if self._bus is not None:
            await self._bus.emit(event)
