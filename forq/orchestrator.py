"""Orchestration loop: drives model turns and tool execution for one conversation.

One call to :meth:`Orchestrator.run_turn` takes a user utterance through

    Idle -> AwaitingModel -> ProcessingToolCalls -> AwaitingModel ... -> Idle

Tool calls run strictly one after another in the order the model emitted
them. A permission denial ends the batch; the turn ends there unless some other
call in the batch already ran, in which case the model still sees those
results. Any other tool failure is recorded for the model and the batch
carries on. The loop re-queries the model after each batch until it stops
asking for tools, the round cap is hit, or the gateway fails.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable

from forq.config import LoopConfig
from forq.conversation import Conversation
from forq.exceptions import ConversationError, LLMError
from forq.llm import LLMProvider, ModelResponse, StopReason, ToolCall
from forq.logging import bind_turn_context, get_logger
from forq.permissions import PermissionLedger
from forq.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

TextCallback = Callable[[str], Any]


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    PROCESSING_TOOL_CALLS = "processing_tool_calls"


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    PERMISSION_DENIED = "permission_denied"
    GATEWAY_ERROR = "gateway_error"
    MAX_ROUNDS_EXCEEDED = "max_rounds_exceeded"
    TOOL_CYCLE_DISABLED = "tool_cycle_disabled"
    CANCELLED = "cancelled"


@dataclass
class ToolExecution:
    """One executed tool call as reported to the caller."""

    tool_name: str
    correlation_id: str
    parameters: dict[str, Any]
    success: bool
    error: str | None = None
    denied: bool = False
    result: Any = None

    @classmethod
    def from_result(cls, call: ToolCall, result: ToolResult) -> "ToolExecution":
        return cls(
            tool_name=call.name,
            correlation_id=call.correlation_id,
            parameters=dict(call.parameters),
            success=result.success,
            error=result.error,
            denied=result.denied,
            result=result.result,
        )


@dataclass
class TurnSummary:
    """Structured outcome of one user turn."""

    outcome: TurnOutcome = TurnOutcome.COMPLETED
    texts: list[str] = field(default_factory=list)
    tool_executions: list[ToolExecution] = field(default_factory=list)
    skipped_tool_calls: list[ToolCall] = field(default_factory=list)
    rounds: int = 0
    stop_reason: StopReason | None = None
    compactions: int = 0
    error: str | None = None

    @property
    def text(self) -> str:
        return "\n\n".join(text for text in self.texts if text)

    @property
    def completed(self) -> bool:
        return self.outcome == TurnOutcome.COMPLETED

    @property
    def denied(self) -> bool:
        return any(execution.denied for execution in self.tool_executions)


class Orchestrator:
    """State machine coordinating model turns and tool execution."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        conversation: Conversation,
        ledger: PermissionLedger | None = None,
        config: LoopConfig | None = None,
        on_state_change: Callable[[LoopState], Any] | None = None,
        on_tool_start: Callable[[ToolCall], Any] | None = None,
        on_tool_result: Callable[[ToolCall, ToolResult], Any] | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.conversation = conversation
        self.ledger = ledger or registry.ledger
        self.config = config or LoopConfig()
        self.on_state_change = on_state_change
        self.on_tool_start = on_tool_start
        self.on_tool_result = on_tool_result
        self._state = LoopState.IDLE
        self._turn_task: asyncio.Task[TurnSummary] | None = None
        self._abort_requested = False

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    def _set_state(self, state: LoopState) -> None:
        if state == self._state:
            return
        log.debug("Loop state", previous=self._state.value, state=state.value)
        self._state = state
        self._notify(self.on_state_change, state)

    @staticmethod
    def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
        """Forward an event to a UI callback; callback failures never reach the loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            log.debug("Loop callback failed", error=str(e))

    # ----- public API -----

    async def run_turn(self, user_input: str, on_text: TextCallback | None = None) -> TurnSummary:
        """Process one user utterance until the loop is back in Idle."""
        if self.busy:
            raise ConversationError("A turn is already in progress")

        summary = TurnSummary()
        self._abort_requested = False
        task = asyncio.create_task(self._run(user_input, summary, on_text))
        self._turn_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if not self._abort_requested:
                raise
            summary.outcome = TurnOutcome.CANCELLED
            return summary
        finally:
            self._turn_task = None
            self._abort_requested = False

    async def stream(self, user_input: str) -> AsyncIterator[str | TurnSummary]:
        """Yield text chunks as they arrive, then the turn summary."""
        queue: asyncio.Queue[str] = asyncio.Queue()
        task = asyncio.create_task(self.run_turn(user_input, on_text=queue.put_nowait))
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                yield task.result()
                return
        finally:
            if not task.done():
                if not self.abort():
                    task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    def abort(self) -> bool:
        """Cancel the running turn, if any. Returns False when idle."""
        task = self._turn_task
        if task is None or task.done():
            return False
        log.info("Aborting turn", state=self._state.value)
        self._abort_requested = True
        task.cancel()
        return True

    # ----- loop -----

    async def _run(
        self,
        user_input: str,
        summary: TurnSummary,
        on_text: TextCallback | None,
    ) -> TurnSummary:
        with bind_turn_context():
            self.conversation.append_user(user_input)
            try:
                await self._drive(summary, on_text)
            except asyncio.CancelledError:
                closed = self._close_dangling_tool_calls("Interrupted by user before this tool ran")
                cancelled = self.ledger.cancel_all()
                log.info("Turn cancelled", closed_tool_calls=closed, cancelled_requests=cancelled)
                summary.outcome = TurnOutcome.CANCELLED
                raise
            finally:
                self._set_state(LoopState.IDLE)
            log.info(
                "Turn finished",
                outcome=summary.outcome.value,
                rounds=summary.rounds,
                tools=len(summary.tool_executions),
            )
        return summary

    async def _drive(self, summary: TurnSummary, on_text: TextCallback | None) -> None:
        max_rounds = self.config.max_rounds
        while True:
            if summary.rounds >= max_rounds:
                log.warning("Max rounds exceeded", max_rounds=max_rounds)
                summary.outcome = TurnOutcome.MAX_ROUNDS_EXCEEDED
                self.conversation.append_error(
                    f"Stopped after {max_rounds} model rounds: max rounds exceeded.",
                    kind=TurnOutcome.MAX_ROUNDS_EXCEEDED.value,
                )
                return

            summary.rounds += 1
            self._set_state(LoopState.AWAITING_MODEL)
            log.info("Calling model", round=summary.rounds, message_count=len(self.conversation))
            try:
                response = await self._query_model(on_text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._record_gateway_error(summary, str(e) or type(e).__name__)
                return

            if response.stop_reason == StopReason.ERROR:
                self._record_gateway_error(summary, response.text or "Model stopped with an error")
                return

            self.conversation.append_assistant(response)
            summary.stop_reason = response.stop_reason
            if response.text:
                summary.texts.append(response.text)
            self._compact_if_needed(summary)

            if response.stop_reason != StopReason.TOOL_USE or not response.tool_calls:
                if response.tool_calls:
                    self._skip_tool_calls(
                        response.tool_calls,
                        f"Not executed: model stopped with reason {response.stop_reason.value}",
                        summary,
                    )
                summary.outcome = TurnOutcome.COMPLETED
                return

            self._set_state(LoopState.PROCESSING_TOOL_CALLS)
            denied, ran = await self._process_tool_calls(response.tool_calls, summary)
            if denied and ran == 0:
                summary.outcome = TurnOutcome.PERMISSION_DENIED
                return

            if not self.config.complete_tool_cycle:
                log.info("Tool cycle disabled, not sending results back to the model")
                summary.outcome = TurnOutcome.TOOL_CYCLE_DISABLED
                return

    async def _query_model(self, on_text: TextCallback | None) -> ModelResponse:
        """Ask the gateway for the next response. Streamed text is shown, not committed."""
        messages = self.conversation.messages
        tools = self.registry.schema() or None

        if not self.config.stream:
            response = await self.provider.send(messages, tools)
            if response.text:
                self._notify(on_text, response.text)
            return response

        final: ModelResponse | None = None
        async for event in self.provider.stream(messages, tools):
            if isinstance(event, ModelResponse):
                final = event
            elif event:
                self._notify(on_text, event)
        if final is None:
            raise LLMError("Model stream ended without a final response")
        return final

    async def _process_tool_calls(
        self,
        tool_calls: list[ToolCall],
        summary: TurnSummary,
    ) -> tuple[bool, int]:
        """Run a batch in order.

        Returns whether a denial interrupted it and how many calls ran
        without being denied.
        """
        ran = 0
        for index, call in enumerate(tool_calls):
            self._notify(self.on_tool_start, call)
            result = await self._invoke(call)
            self.conversation.append_tool_result(call, result)
            summary.tool_executions.append(ToolExecution.from_result(call, result))
            self._notify(self.on_tool_result, call, result)

            if result.denied:
                log.info("Tool call denied, interrupting batch", tool=call.name)
                self._skip_tool_calls(
                    tool_calls[index + 1:],
                    "Skipped: an earlier tool call in this batch was denied permission",
                    summary,
                )
                return True, ran
            ran += 1
            if not result.success:
                log.info("Tool call failed", tool=call.name, error=result.error)
        return False, ran

    async def _invoke(self, call: ToolCall) -> ToolResult:
        try:
            return await self.registry.invoke(call, self.registry.make_context())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool invocation raised", tool=call.name, error=str(e))
            return ToolResult.failure(call.name, f"Internal error: {e}")

    def _skip_tool_calls(self, calls: list[ToolCall], reason: str, summary: TurnSummary) -> None:
        for call in calls:
            self.conversation.append_tool_result(
                call, ToolResult.failure(call.name, reason), skipped=True
            )
            summary.skipped_tool_calls.append(call)

    def _close_dangling_tool_calls(self, reason: str) -> int:
        """Give unanswered tool calls a result so the transcript stays well formed."""
        pending = self.conversation.pending_tool_uses()
        for block in pending:
            call = ToolCall(name=block.name, parameters=block.input, correlation_id=block.id)
            self.conversation.append_tool_result(
                call, ToolResult.failure(block.name, reason), skipped=True
            )
        return len(pending)

    def _record_gateway_error(self, summary: TurnSummary, error: str) -> None:
        log.error("Model gateway failed", error=error)
        self.conversation.append_error(f"Error: {error}", kind=TurnOutcome.GATEWAY_ERROR.value)
        summary.outcome = TurnOutcome.GATEWAY_ERROR
        summary.error = error

    def _compact_if_needed(self, summary: TurnSummary) -> None:
        if not self.conversation.should_compact():
            return
        result = self.conversation.compact(trigger="auto")
        if result.compacted:
            summary.compactions += 1
