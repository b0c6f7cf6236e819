"""Direct Messages API provider with a local tool-execution loop.

Each send runs up to ``max_tool_iterations`` request rounds. A round
streams one response; if the model stopped for tool use, every requested
tool is run through the ToolExecutor (after an automatic git checkpoint
when the batch writes two or more files) and the results feed the next
round. The ConversationState is mutated and persisted only at round
boundaries, so a cancelled or failed round never leaves a tool_use
without its results. A send that ends cancelled or failed rolls the state
back to its pre-send snapshot, so persisted history only holds complete
turns.
"""
from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from grove.adapters.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    ProviderEvent,
    TextEvent,
    TokenUsage,
    ToolEndEvent,
    ToolStartEvent,
)
from grove.engine.errors import AnthropicAPIError, OverloadedError, RateLimitedError
from grove.engine.identity import build_overlay
from grove.engine.providers.anthropic_client import AnthropicClient
from grove.engine.providers.base import (
    ALL_CAPABILITIES,
    HealthStatus,
    Provider,
    ProviderCapability,
    ProviderHealth,
    SendContext,
)
from grove.engine.providers.cli_stream_parser import truncate_result
from grove.engine.providers.conversation_state import (
    ConversationState,
    ConversationStateManager,
)
from grove.engine.tools import (
    CHECKPOINT_TOOL,
    WRITE_TOOLS,
    ToolCallContext,
    ToolExecutor,
)
from grove.shared.models.message import MessageRole
from grove.shared.services.message_store import MessageStore

logger = logging.getLogger(__name__)


class _Cancelled(Exception):
    pass


@dataclass
class _RoundResult:
    blocks: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


class AnthropicAPIProvider(Provider):
    """Provider that talks to the Messages API directly."""

    def __init__(
        self,
        client: AnthropicClient,
        state_manager: ConversationStateManager,
        message_store: MessageStore,
        tool_executor: ToolExecutor | None = None,
        *,
        default_model: str = "claude-sonnet-4-5",
        max_tokens: int = 8192,
        max_tool_iterations: int = 25,
        result_display_length: int = 200,
        provider_id: str = "anthropic-api",
    ) -> None:
        super().__init__()
        self._client = client
        self._state_manager = state_manager
        self._message_store = message_store
        self._tool_executor = tool_executor
        self._default_model = default_model
        self._max_tokens = max_tokens
        self._max_iterations = max_tool_iterations
        self._display_length = result_display_length
        self._provider_id = provider_id
        self._states: dict[str, ConversationState] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()

    @property
    def identifier(self) -> str:
        return self._provider_id

    @property
    def display_name(self) -> str:
        return "Anthropic API"

    @property
    def capabilities(self) -> ProviderCapability:
        return ALL_CAPABILITIES

    @property
    def is_running(self) -> bool:
        return bool(self._cancel_events)

    # ── State lookup ──

    def _stored_history(self, session_id: str, before_id: int | None) -> list:
        history = self._message_store.get_messages(session_id, limit=-1)
        if before_id is not None:
            history = [m for m in history if m.id != before_id]
        return history

    def _resolve_state(
        self,
        session_id: str,
        parent_session_id: str | None,
        user_message_id: int | None = None,
    ) -> ConversationState:
        """Cached state, else persisted, else forked, else rebuilt, else fresh."""
        cached = self._states.get(session_id)
        if cached is not None:
            return cached
        restored = self._state_manager.load(session_id)
        if restored is not None:
            logger.debug("API state restored session=%s", session_id)
            return restored

        history = self._stored_history(session_id, user_message_id)
        if parent_session_id:
            parent_state = self._states.get(parent_session_id) or self._state_manager.load(
                parent_session_id
            )
            if parent_state is not None and self._is_prefix_of_parent(history, parent_session_id):
                logger.debug(
                    "API state forked session=%s parent=%s", session_id, parent_session_id,
                )
                return parent_state.fork(session_id)
        if history:
            logger.debug("API state rebuilt from %d stored messages session=%s", len(history), session_id)
            return ConversationStateManager.build_from_messages(session_id, history)
        return ConversationState(session_id=session_id)

    def _is_prefix_of_parent(self, child_history: list, parent_session_id: str) -> bool:
        """True when the child's copied history is the parent's whole history,
        i.e. the fork was taken at the parent's tip."""
        parent_history = self._message_store.get_messages(parent_session_id, limit=-1)
        child = [(m.role, m.content) for m in child_history if m.role != MessageRole.SYSTEM]
        parent = [(m.role, m.content) for m in parent_history if m.role != MessageRole.SYSTEM]
        return child == parent

    # ── Send ──

    async def send(self, context: SendContext) -> AsyncIterator[ProviderEvent]:
        session_id = context.session_id
        async with self._lock:
            busy = session_id in self._cancel_events
            if not busy:
                cancel_event = asyncio.Event()
                self._cancel_events[session_id] = cancel_event
                state = self._resolve_state(
                    session_id, context.parent_session_id, context.user_message_id,
                )
                self._states[session_id] = state
        if busy:
            yield ErrorEvent(
                message=f"A request is already running for session {session_id}",
                kind=ErrorKind.DOMAIN,
            )
            return

        model = context.model or self._default_model
        overlay = build_overlay(context)
        tool_context = ToolCallContext(
            working_directory=context.working_directory or ".",
            session_id=session_id,
            branch_id=context.branch_id,
        )
        send_usage = TokenUsage()
        snapshot = (copy.deepcopy(state.messages), copy.copy(state.usage))
        state.add_user_text(context.message)
        completed = False
        try:
            for iteration in range(self._max_iterations):
                if cancel_event.is_set():
                    raise _Cancelled()
                body = self._request_body(state, model, overlay)
                round_result = _RoundResult()
                async for event in self._stream_round(body, round_result, cancel_event):
                    yield event
                send_usage.add(round_result.usage)
                state.usage.add(round_result.usage)

                if round_result.stop_reason != "tool_use":
                    state.add_assistant_blocks(round_result.blocks)
                    self._state_manager.save(state)
                    break

                tool_blocks = [b for b in round_result.blocks if b.get("type") == "tool_use"]
                results: list[dict[str, Any]] = []
                async for event in self._run_tools(tool_blocks, tool_context, cancel_event, results):
                    yield event
                state.add_assistant_blocks(round_result.blocks)
                state.add_tool_results(results)
                self._state_manager.save(state)
            else:
                logger.warning(
                    "Tool loop hit %d iterations session=%s", self._max_iterations, session_id,
                )

            completed = True
            self._state_manager.record_usage(session_id, self.identifier, model, send_usage)
            yield DoneEvent(usage=send_usage)
        except _Cancelled:
            logger.info("API send cancelled session=%s", session_id)
            yield CancelledEvent()
        except AnthropicAPIError as exc:
            logger.warning("API error session=%s: %s", session_id, exc)
            yield ErrorEvent(message=str(exc), kind=_error_kind(exc))
        except asyncio.TimeoutError:
            yield ErrorEvent(message="Messages API request timed out", kind=ErrorKind.TIMEOUT)
        except aiohttp.ClientError as exc:
            logger.warning("API transport error session=%s: %s", session_id, exc)
            yield ErrorEvent(message=f"Connection error: {exc}", kind=ErrorKind.TRANSPORT)
        finally:
            if not completed:
                state.messages, state.usage = snapshot
            self._state_manager.save(state)
            async with self._lock:
                self._cancel_events.pop(session_id, None)

    def _request_body(
        self, state: ConversationState, model: str, overlay: str,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens,
            "system": state.system_blocks(overlay),
            "messages": state.prepared_messages(),
        }
        if self._tool_executor is not None:
            tools = [dict(t) for t in self._tool_executor.definitions()]
            if tools:
                tools[-1]["cache_control"] = {"type": "ephemeral"}
                body["tools"] = tools
        return body

    async def _stream_round(
        self,
        body: dict[str, Any],
        result: _RoundResult,
        cancel_event: asyncio.Event,
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one response, yielding text and filling *result*."""
        blocks: dict[int, dict[str, Any]] = {}
        json_buffers: dict[int, str] = {}
        stream = self._client.stream(body)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            while True:
                try:
                    name, data = await _next_or_cancel(stream, cancel_waiter)
                except StopAsyncIteration:
                    break
                if cancel_event.is_set():
                    raise _Cancelled()
                event_type = data.get("type", name)
                if event_type == "message_start":
                    usage = (data.get("message") or {}).get("usage") or {}
                    result.usage.input_tokens += int(usage.get("input_tokens") or 0)
                    result.usage.cache_creation_input_tokens += int(
                        usage.get("cache_creation_input_tokens") or 0
                    )
                    result.usage.cache_read_input_tokens += int(
                        usage.get("cache_read_input_tokens") or 0
                    )
                elif event_type == "content_block_start":
                    index = int(data.get("index", len(blocks)))
                    block = data.get("content_block") or {}
                    if block.get("type") == "tool_use":
                        blocks[index] = {
                            "type": "tool_use",
                            "id": block.get("id", ""),
                            "name": block.get("name", ""),
                            "input": {},
                        }
                        json_buffers[index] = ""
                    elif block.get("type") == "text":
                        blocks[index] = {"type": "text", "text": block.get("text", "")}
                elif event_type == "content_block_delta":
                    index = int(data.get("index", 0))
                    delta = data.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        text = delta.get("text", "")
                        block = blocks.setdefault(index, {"type": "text", "text": ""})
                        block["text"] = block.get("text", "") + text
                        if text:
                            yield TextEvent(text=text)
                    elif delta.get("type") == "input_json_delta":
                        json_buffers[index] = json_buffers.get(index, "") + delta.get("partial_json", "")
                elif event_type == "content_block_stop":
                    index = int(data.get("index", 0))
                    if index in json_buffers and index in blocks:
                        raw = json_buffers.pop(index)
                        try:
                            blocks[index]["input"] = json.loads(raw) if raw else {}
                        except json.JSONDecodeError:
                            logger.debug("Malformed tool input JSON: %.200s", raw)
                            blocks[index]["input"] = {}
                elif event_type == "message_delta":
                    delta = data.get("delta") or {}
                    if delta.get("stop_reason"):
                        result.stop_reason = delta["stop_reason"]
                    usage = data.get("usage") or {}
                    result.usage.output_tokens += int(usage.get("output_tokens") or 0)
                elif event_type == "error":
                    error = data.get("error") or {}
                    if error.get("type") == "overloaded_error":
                        raise OverloadedError(error.get("message", "API overloaded"))
                    raise AnthropicAPIError(None, error.get("message", "stream error"))
        finally:
            cancel_waiter.cancel()
            await stream.aclose()
        result.blocks = [
            blocks[i] for i in sorted(blocks)
            if not (blocks[i]["type"] == "text" and not blocks[i]["text"])
        ]

    async def _run_tools(
        self,
        tool_blocks: list[dict[str, Any]],
        tool_context: ToolCallContext,
        cancel_event: asyncio.Event,
        results: list[dict[str, Any]],
    ) -> AsyncIterator[ProviderEvent]:
        if self._tool_executor is None:
            raise AnthropicAPIError(None, "Model requested tools but no tool executor is configured")
        writes = sum(1 for b in tool_blocks if b["name"] in WRITE_TOOLS)
        if writes >= 2:
            if cancel_event.is_set():
                raise _Cancelled()
            checkpoint = await self._tool_executor.execute(
                CHECKPOINT_TOOL,
                {"message": f"grove auto-checkpoint before {writes} file writes"},
                tool_context,
            )
            logger.info(
                "Auto-checkpoint session=%s error=%s: %s",
                tool_context.session_id, checkpoint.is_error, checkpoint.content[:200],
            )
        for block in tool_blocks:
            if cancel_event.is_set():
                raise _Cancelled()
            yield ToolStartEvent(
                name=block["name"],
                input=json.dumps(block.get("input") or {}),
                tool_use_id=block["id"],
            )
            outcome = await self._tool_executor.execute(
                block["name"], block.get("input") or {}, tool_context,
            )
            yield ToolEndEvent(
                name=block["name"],
                result=truncate_result(outcome.content, self._display_length),
                is_error=outcome.is_error,
                tool_use_id=block["id"],
            )
            results.append({
                "type": "tool_result",
                "tool_use_id": block["id"],
                "content": outcome.content,
                "is_error": outcome.is_error,
            })

    # ── Control ──

    async def cancel(self, session_id: str | None = None) -> None:
        async with self._lock:
            if session_id is None:
                events = list(self._cancel_events.values())
            else:
                event = self._cancel_events.get(session_id)
                events = [event] if event else []
        for event in events:
            event.set()

    async def warm_up(self, context: SendContext) -> None:
        async with self._lock:
            if context.session_id in self._states or context.session_id in self._cancel_events:
                return
            self._states[context.session_id] = self._resolve_state(
                context.session_id, context.parent_session_id,
            )
        logger.debug("API state warm session=%s", context.session_id)

    def forget(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    async def check_health(self) -> ProviderHealth:
        if self._client.config.api_key:
            self._health = ProviderHealth(HealthStatus.HEALTHY, "API key configured")
        else:
            self._health = ProviderHealth(HealthStatus.UNAVAILABLE, "No API key")
        return self._health

    async def shutdown(self) -> None:
        await self.cancel()
        await self._client.close()


async def _next_or_cancel(
    stream: AsyncIterator[tuple[str, dict[str, Any]]],
    cancel_waiter: asyncio.Future,
) -> tuple[str, dict[str, Any]]:
    """Next stream item, or _Cancelled as soon as cancel fires.

    A stalled read is abandoned mid-await; cancelling the pending step
    closes the HTTP response inside the client's generator.
    """
    if cancel_waiter.done():
        raise _Cancelled()
    step = asyncio.ensure_future(stream.__anext__())
    try:
        await asyncio.wait({step, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        step.cancel()
        raise
    if step.done():
        return step.result()
    step.cancel()
    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
        await step
    raise _Cancelled()


def _error_kind(exc: AnthropicAPIError) -> ErrorKind:
    if exc.status in (401, 403):
        return ErrorKind.AUTHORIZATION
    if isinstance(exc, (RateLimitedError, OverloadedError)):
        return ErrorKind.SERVER
    if exc.status is None:
        return ErrorKind.PROTOCOL
    return ErrorKind.SERVER
