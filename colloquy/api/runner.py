"""Turn orchestrator -- drives one chat turn through the tool-calling loop.

A turn is one user input, zero or more model steps that call tools, and a
final assistant message. Work is split in two:

- ``prepare_turn()`` validates, takes the chat's write lease and makes the
  user message durable. Every rejection happens here, before any streaming.
- ``run()`` is an async generator of TurnEvent values. Each tool
  invocation walks its state machine and every transition is yielded the
  moment it happens. The assistant message is appended once, at the end,
  with every part in emission order. If the model call fails nothing from
  the turn is written (the user message stays).

The lease is released when ``run()`` finishes, however it finishes.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from colloquy.agents.manager import AgentManager
from colloquy.agents.resolver import AgentResolver, AgentRuntime
from colloquy.api.approvals import ApprovalBroker
from colloquy.api.leases import ChatLeases
from colloquy.api.model_client import ModelDelta
from colloquy.chats.parts import (
    FilePart,
    MessagePart,
    TextPart,
    ToolInvocationPart,
    dump_part,
    text_of,
)
from colloquy.chats.schemas import EditResult, MessageDetail, MessageInput
from colloquy.chats.store import ConversationStore
from colloquy.config import Settings
from colloquy.errors import (
    ConfirmationRequiredError,
    ModelCallError,
    NotFoundError,
    ToolExecutionError,
    ValidationError,
)
from colloquy.events import TURN_COMPLETED, Event, EventBus

logger = logging.getLogger(__name__)

DENIED_TEXT = "The user denied this tool call."


class ModelStream(Protocol):
    def stream(
        self,
        model: str,
        system: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ModelDelta, None]: ...


@dataclass
class TurnEvent:
    """One item of the live turn stream."""

    type: str  # turn-start, text-delta, tool-state, turn-complete, turn-error
    chat_id: str
    turn_id: str
    text: str = ""
    part: ToolInvocationPart | None = None
    message_id: str | None = None
    finish_reason: str = ""
    steps: int = 0

    def to_dict(self) -> dict[str, Any]:
        if self.type == "turn-start":
            return {"type": self.type, "chat_id": self.chat_id, "turn_id": self.turn_id, "message_id": self.message_id}
        if self.type == "text-delta":
            return {"type": self.type, "delta": self.text}
        if self.type == "tool-state" and self.part is not None:
            return {"type": self.type, "part": dump_part(self.part)}
        if self.type == "turn-complete":
            return {
                "type": self.type,
                "message_id": self.message_id,
                "finish_reason": self.finish_reason,
                "steps": self.steps,
            }
        return {"type": self.type, "error": self.text}


@dataclass
class TurnPlan:
    """Everything run() needs. Produced by prepare_turn() with the lease held."""

    chat_id: str
    user_id: str
    turn_id: str
    lease: str
    runtime: AgentRuntime
    history: list[MessageDetail]
    user_message: MessageDetail
    needs_title: bool = False


class TurnEvents:
    """Event stream of a prepared turn, as returned by ``send()``.

    An async generator that is never started never runs its ``finally``,
    so the lease taken by prepare_turn() is released here instead when the
    stream is closed or collected before its first event.
    """

    def __init__(self, plan: TurnPlan, events: AsyncGenerator[TurnEvent, None], leases: ChatLeases) -> None:
        self.plan = plan
        self._events = events
        self._leases = leases
        self._started = False

    def __aiter__(self) -> TurnEvents:
        return self

    async def __anext__(self) -> TurnEvent:
        self._started = True
        return await self._events.__anext__()

    async def aclose(self) -> None:
        self._release_unstarted()
        await self._events.aclose()

    def _release_unstarted(self) -> None:
        if not self._started:
            self._started = True
            self._leases.release(self.plan.chat_id, self.plan.lease)

    def __del__(self) -> None:
        self._release_unstarted()


@dataclass
class _PendingCall:
    """Tool call being assembled from streamed argument fragments."""

    position: int  # index into the turn's parts list
    arg_chunks: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# History -> model messages
# ---------------------------------------------------------------------------


def _tool_result_text(part: ToolInvocationPart) -> str:
    if part.state == "output-available":
        return part.output if isinstance(part.output, str) else json.dumps(part.output)
    if part.state == "output-denied":
        return DENIED_TEXT
    return f"Error: {part.error_text or 'tool failed'}"


def _format_assistant_parts(parts: list[MessagePart]) -> list[dict[str, Any]]:
    """Assistant parts -> assistant/tool messages, preserving their order.

    Consecutive tool invocations become one assistant message with
    ``tool_calls`` (carrying any text emitted just before them), followed
    by one ``tool`` message per result. Unfinished invocations are left out.
    """
    messages: list[dict[str, Any]] = []
    text: list[str] = []
    calls: list[ToolInvocationPart] = []

    def flush_calls() -> None:
        if not calls:
            return
        messages.append(
            {
                "role": "assistant",
                "content": "".join(text) or None,
                "tool_calls": [
                    {
                        "id": c.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": c.tool_name,
                            "arguments": json.dumps(c.input if isinstance(c.input, dict) else {}),
                        },
                    }
                    for c in calls
                ],
            }
        )
        messages.extend({"role": "tool", "tool_call_id": c.tool_call_id, "content": _tool_result_text(c)} for c in calls)
        text.clear()
        calls.clear()

    for part in parts:
        if isinstance(part, ToolInvocationPart):
            if part.is_terminal:
                calls.append(part)
        elif isinstance(part, TextPart):
            flush_calls()
            text.append(part.text)
    flush_calls()
    if text and "".join(text):
        messages.append({"role": "assistant", "content": "".join(text)})
    return messages


def _format_user_parts(parts: list[MessagePart]) -> dict[str, Any]:
    images = [p for p in parts if isinstance(p, FilePart) and p.media_type.startswith("image/")]
    if not images:
        return {"role": "user", "content": text_of(parts)}
    content: list[dict[str, Any]] = [{"type": "text", "text": text_of(parts)}]
    content.extend({"type": "image_url", "image_url": {"url": p.url}} for p in images)
    return {"role": "user", "content": content}


def _format_messages(history: list[MessageDetail]) -> list[dict[str, Any]]:
    """Persisted history -> chat-completions messages (system prompt excluded)."""
    messages: list[dict[str, Any]] = []
    for message in history:
        if message.role == "user":
            messages.append(_format_user_parts(message.parts))
        elif message.role == "assistant":
            messages.extend(_format_assistant_parts(message.parts))
        else:
            messages.append({"role": "system", "content": text_of(message.parts)})
    return messages


# ---------------------------------------------------------------------------
# TurnOrchestrator
# ---------------------------------------------------------------------------


class TurnOrchestrator:
    """Runs turns and guards every write to a chat with its lease."""

    def __init__(
        self,
        store: ConversationStore,
        agents: AgentManager,
        resolver: AgentResolver,
        model: ModelStream,
        settings: Settings,
        leases: ChatLeases | None = None,
        approvals: ApprovalBroker | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._agents = agents
        self._resolver = resolver
        self._model = model
        self._settings = settings
        self.leases = leases or ChatLeases()
        self.approvals = approvals or ApprovalBroker()
        self._bus = bus

    # ------------------------------------------------------------------
    # Preparing a turn
    # ------------------------------------------------------------------

    async def prepare_turn(self, chat_id: str, user_id: str, text: str | None) -> TurnPlan:
        """Validate, take the lease and append the user message.

        With ``text`` omitted the chat must already end with a user message
        (e.g. right after an edit); a reply is generated for it.
        """
        if text is not None:
            text = text.strip()
            if not text:
                raise ValidationError("message must not be empty")

        chat = await self._store.get_chat(chat_id, user_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")

        turn_id = uuid4().hex
        lease = self.leases.acquire(chat_id, turn_id)
        try:
            return await self._plan(chat_id, chat.agent_id, chat.title, user_id, turn_id, lease, text)
        except BaseException:
            self.leases.release(chat_id, lease)
            raise

    async def prepare_retry(self, chat_id: str, user_id: str, message_id: str, confirm: bool = False) -> TurnPlan:
        """Re-issue the user message at or before ``message_id`` as a new turn.

        The anchor and everything after it are deleted, then its text is sent
        again, so both the user and the assistant message get fresh ids.
        """
        chat = await self._store.get_chat(chat_id, user_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")

        turn_id = uuid4().hex
        lease = self.leases.acquire(chat_id, turn_id)
        try:
            anchor = await self._store.user_message_at_or_before(chat_id, message_id)
            text = text_of(anchor.parts).strip()
            if not text:
                raise ValidationError("The message being retried has no text")
            await self._confirm_destructive(chat_id, anchor.id, confirm, include_anchor=True)
            await self._store.delete_from_message(chat_id, anchor.id)
            return await self._plan(chat_id, chat.agent_id, chat.title, user_id, turn_id, lease, text)
        except BaseException:
            self.leases.release(chat_id, lease)
            raise

    async def _plan(
        self,
        chat_id: str,
        agent_id: str,
        title: str | None,
        user_id: str,
        turn_id: str,
        lease: str,
        text: str | None,
    ) -> TurnPlan:
        history = await self._store.list_ordered(chat_id)
        if text is not None:
            user_message = await self._store.append(chat_id, MessageInput(role="user", parts=[TextPart(text=text)]))
            history.append(user_message)
        elif history and history[-1].role == "user":
            user_message = history[-1]
        else:
            raise ValidationError("Nothing to reply to: the chat does not end with a user message")

        agent = await self._agents.get(agent_id)
        if agent is None:
            logger.warning("Agent %s for chat %s is gone, using defaults", agent_id, chat_id)
            runtime = self._resolver.default_runtime()
        else:
            runtime = self._resolver.resolve(agent)

        return TurnPlan(
            chat_id=chat_id,
            user_id=user_id,
            turn_id=turn_id,
            lease=lease,
            runtime=runtime,
            history=history,
            user_message=user_message,
            needs_title=title is None and not any(m.role == "assistant" for m in history),
        )

    # ------------------------------------------------------------------
    # Running a turn
    # ------------------------------------------------------------------

    async def run(self, plan: TurnPlan) -> AsyncGenerator[TurnEvent, None]:
        """Drive the plan to completion, yielding events in order."""
        try:
            async for event in self._run(plan):
                yield event
        finally:
            self.leases.release(plan.chat_id, plan.lease)

    async def send(self, chat_id: str, user_id: str, text: str | None) -> TurnEvents:
        """prepare_turn() + run(). Validation errors raise before the first event.

        The returned stream holds the chat lease. Iterate it to the end, or
        aclose() it; a stream dropped before its first event frees the lease
        when collected.
        """
        plan = await self.prepare_turn(chat_id, user_id, text)
        return TurnEvents(plan, self.run(plan), self.leases)

    async def _run(self, plan: TurnPlan) -> AsyncGenerator[TurnEvent, None]:
        chat_id, turn_id, runtime = plan.chat_id, plan.turn_id, plan.runtime

        def event(type: str, **kwargs: Any) -> TurnEvent:
            return TurnEvent(type=type, chat_id=chat_id, turn_id=turn_id, **kwargs)

        yield event("turn-start", message_id=plan.user_message.id)

        parts: list[MessagePart] = []
        messages = _format_messages(plan.history)
        tools = runtime.tool_definitions() or None
        finish_reason = "stop"
        usage: dict[str, int] = {}
        steps = 0

        try:
            while steps < runtime.max_steps:
                steps += 1
                step_start = len(parts)
                pending: dict[int, _PendingCall] = {}  # open call per stream index
                calls: list[_PendingCall] = []
                text_open = False

                async for delta in self._model.stream(runtime.model, runtime.system_instructions, messages, tools):
                    if delta.type == "error":
                        raise ModelCallError(delta.text or "model stream failed")

                    if delta.type == "text_delta":
                        if text_open:
                            parts[-1].text += delta.text
                        else:
                            parts.append(TextPart(text=delta.text))
                            text_open = True
                        yield event("text-delta", text=delta.text)

                    elif delta.type == "tool_call_start":
                        open_call = pending.get(delta.index)
                        if open_call is not None and parts[open_call.position].tool_call_id == delta.tool_call_id:
                            # Some upstreams repeat the call header on every argument chunk
                            continue
                        text_open = False
                        part = ToolInvocationPart(
                            tool_call_id=delta.tool_call_id,
                            tool_name=delta.tool_name,
                            state="input-streaming",
                        )
                        call = _PendingCall(position=len(parts))
                        pending[delta.index] = call
                        calls.append(call)
                        parts.append(part)
                        yield event("tool-state", part=part)

                    elif delta.type == "tool_call_delta":
                        call = pending.get(delta.index)
                        if call is not None:
                            call.arg_chunks.append(delta.text)

                    elif delta.type == "finish":
                        finish_reason = delta.finish_reason

                    elif delta.type == "usage":
                        for key, value in delta.usage.items():
                            usage[key] = usage.get(key, 0) + value

                if not calls:
                    break  # text-only step: natural completion

                for call in calls:
                    async for part in self._settle_call(plan, parts[call.position], "".join(call.arg_chunks)):
                        parts[call.position] = part
                        yield event("tool-state", part=part)

                messages.extend(_format_assistant_parts(parts[step_start:]))
            else:
                finish_reason = "max-steps"
                logger.info("Turn %s in chat %s reached max_steps=%d", turn_id, chat_id, runtime.max_steps)

        except ModelCallError as e:
            logger.warning("Turn %s in chat %s aborted: %s", turn_id, chat_id, e)
            yield event("turn-error", text=str(e))
            return
        except Exception as e:
            logger.exception("Turn %s in chat %s failed", turn_id, chat_id)
            yield event("turn-error", text=f"Model call failed: {e}")
            return

        message_id: str | None = None
        if parts:
            try:
                saved = await self._store.append(
                    chat_id,
                    MessageInput(
                        role="assistant",
                        parts=parts,
                        metadata={
                            "model": runtime.model,
                            "agent_id": runtime.agent_id,
                            "finish_reason": finish_reason,
                            "steps": steps,
                            "usage": usage,
                        },
                    ),
                )
                message_id = saved.id
            except Exception as e:
                logger.exception("Could not commit assistant message for chat %s", chat_id)
                yield event("turn-error", text=f"The reply could not be saved: {e}")
                return

            if plan.needs_title:
                await self._emit_turn_completed(plan, parts)
        else:
            logger.warning("Turn %s in chat %s produced no output", turn_id, chat_id)
            finish_reason = "empty"

        yield event("turn-complete", message_id=message_id, finish_reason=finish_reason, steps=steps)

    async def _settle_call(
        self,
        plan: TurnPlan,
        part: ToolInvocationPart,
        raw_args: str,
    ) -> AsyncGenerator[ToolInvocationPart, None]:
        """Walk one invocation from input-streaming to a terminal state."""
        try:
            args = json.loads(raw_args) if raw_args.strip() else {}
        except json.JSONDecodeError:
            part = part.advance("input-available", input=raw_args)
            yield part
            yield part.advance("output-error", error_text="Tool arguments were not valid JSON")
            return

        part = part.advance("input-available", input=args)
        yield part

        resolved = plan.runtime.tool(part.tool_name)
        if resolved is None:
            yield part.advance("output-error", error_text=f"Unknown tool: {part.tool_name}")
            return

        if resolved.requires_approval:
            self.approvals.register(plan.chat_id, part.tool_call_id)
            part = part.advance("requires-approval")
            yield part
            approved = await self.approvals.request(
                plan.chat_id, part.tool_call_id, timeout=self._settings.approval_timeout
            )
            if not approved:
                yield part.advance("output-denied", error_text=DENIED_TEXT)
                return

        try:
            output = await resolved.capability.execute(args)
        except ToolExecutionError as e:
            yield part.advance("output-error", error_text=str(e))
            return
        except Exception as e:
            logger.exception("Tool %s raised outside its contract", part.tool_name)
            yield part.advance("output-error", error_text=f"{type(e).__name__}: {e}")
            return
        yield part.advance("output-available", output=output)

    async def _emit_turn_completed(self, plan: TurnPlan, parts: list[MessagePart]) -> None:
        if self._bus is None or not self._settings.title_generation_enabled:
            return
        await self._bus.emit(
            Event(
                type=TURN_COMPLETED,
                chat_id=plan.chat_id,
                user_id=plan.user_id,
                data={
                    "user_text": text_of(plan.user_message.parts),
                    "assistant_text": text_of(parts),
                },
            )
        )

    # ------------------------------------------------------------------
    # Edits and deletes (lease-guarded)
    # ------------------------------------------------------------------

    async def edit_message(
        self,
        chat_id: str,
        user_id: str,
        message_id: str,
        content: str,
        confirm: bool = False,
    ) -> EditResult:
        """Rewrite a user message, dropping what follows it."""
        if await self._store.get_chat(chat_id, user_id) is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        with self.leases.hold(chat_id):
            await self._confirm_destructive(chat_id, message_id, confirm, include_anchor=False)
            return await self._store.edit_user_message(chat_id, message_id, content)

    async def delete_from(self, chat_id: str, user_id: str, message_id: str, confirm: bool = False) -> int:
        """Delete a message and everything after it."""
        if await self._store.get_chat(chat_id, user_id) is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        with self.leases.hold(chat_id):
            await self._confirm_destructive(chat_id, message_id, confirm, include_anchor=True)
            return await self._store.delete_from_message(chat_id, message_id)

    async def _confirm_destructive(self, chat_id: str, message_id: str, confirm: bool, include_anchor: bool) -> None:
        """Reaching past the latest exchange needs an explicit confirm."""
        if confirm:
            return
        if await self._store.later_user_messages(chat_id, message_id) == 0:
            return
        count = await self._store.count_after(chat_id, message_id)
        raise ConfirmationRequiredError(count + 1 if include_anchor else count)
