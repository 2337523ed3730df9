"""Chat turn state machine.

A turn runs in two phases. :meth:`Orchestrator.start_turn` authenticates,
rate-limits and assembles the prompt; anything that goes wrong there raises a
:class:`ServiceError` before a single byte reaches the client.
:meth:`Turn.events` then drives the provider/tool loop and yields stream
events::

    {"event": "token", "data": {"text": ...}}
    {"event": "tool_call", "data": {"id", "name", "arguments"}}
    {"event": "tool_result", "data": {"id", "name", "ok", "result" | "error"}}
    {"event": "error", "data": {"code", "message", "request_id"}}
    {"event": "done", "data": {"request_id", "conversation_id", "model", ...}}

Failures after streaming starts never raise; they end the stream with one
``error`` event. Text already sent stays sent and is persisted as an
incomplete assistant message.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from chatcore.config import Settings
from chatcore.logging import get_logger, log_turn_trace, sanitize_error_message, sanitize_response_data
from chatcore.service.auth import AuthContext, AuthService
from chatcore.service.context import ContextAssembler, ContextMessage, ConversationContext
from chatcore.service.errors import (
    AuthenticationError,
    MessageTooLargeError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    ServiceError,
    ToolLoopExceededError,
    TurnCancelledError,
    TurnTimeoutError,
    ValidationError,
)
from chatcore.service.providers import ProviderChain, ProviderCursor, TextDelta, ToolCallRequest
from chatcore.service.rate_limit import (
    CHAT_SCOPE,
    RateLimitDecision,
    RateLimiter,
    RateLimitPolicy,
    tool_scope,
)
from chatcore.service.retrieval import rank_by_relevance
from chatcore.service.sandbox_manager import SandboxManager
from chatcore.service.session import TurnSession
from chatcore.service.tools import (
    ToolCall,
    ToolContext,
    ToolDescriptor,
    ToolExecutionError,
    ToolRegistry,
    ToolResult,
    parse_tool_arguments,
)
from chatcore.storage.models import (
    AuditRecord,
    Conversation,
    DocumentSnippet,
    MemorySnippet,
    Message,
)

logger = get_logger(__name__)

LOOP_EXCEEDED_MESSAGE = "Sorry, I was unable to complete this request."
INTERRUPTED_TOOL_ERROR = "tool call interrupted"
MEMORY_CANDIDATES = 50
DOCUMENT_CANDIDATES = 20


class TurnState(str, Enum):
    AUTHENTICATING = "authenticating"
    RATE_LIMITING = "rate_limiting"
    ASSEMBLING_CONTEXT = "assembling_context"
    CALLING_PROVIDER = "calling_provider"
    TOOL_DISPATCH = "tool_dispatch"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


class ChatStore(Protocol):
    def get_conversation(self, conversation_id: str, *, user_id: Optional[str] = None) -> Optional[Conversation]:
        ...

    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        ...

    def list_messages(
        self, conversation_id: str, limit: Optional[int] = None, *, user_id: Optional[str] = None
    ) -> List[Message]:
        ...

    def get_conversation_summary(self, conversation_id: str) -> Optional[str]:
        ...

    def list_memories(self, user_id: str) -> List[MemorySnippet]:
        ...

    def list_documents(self, user_id: str, *, conversation_id: Optional[str] = None) -> List[DocumentSnippet]:
        ...

    def append_message(self, conversation_id: str, role: str, content: str, **kwargs: Any) -> Message:
        ...

    def append_audit(self, record: AuditRecord) -> None:
        ...


def _error_event(code: str, message: str, request_id: str, details: Optional[dict] = None) -> dict:
    return {
        "event": "error",
        "data": {"code": code, "message": message, "request_id": request_id, "details": details or {}},
    }


_END_OF_STREAM = object()


async def _next_event(stream: AsyncIterator[Any]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END_OF_STREAM


def _safe_summary(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.user_message()
    if isinstance(exc, ServiceError):
        return sanitize_error_message(exc.message)
    return "internal server error"


class Turn:
    """One in-flight chat turn; :meth:`events` may be consumed once."""

    def __init__(
        self,
        orchestrator: "Orchestrator",
        *,
        session: TurnSession,
        conversation: Conversation,
        context: ConversationContext,
        tools: List[Dict[str, Any]],
        rate_limit: RateLimitDecision,
        cursor: ProviderCursor,
    ) -> None:
        self.orchestrator = orchestrator
        self.session = session
        self.conversation = conversation
        self.context = context
        self.tools = tools
        self.rate_limit = rate_limit
        self.cursor = cursor
        self.state = TurnState.ASSEMBLING_CONTEXT
        self.trace: List[Dict[str, Any]] = []
        self.answer_parts: List[str] = []
        self.error: Optional[ServiceError] = None
        self.failure: Optional[dict] = None
        self.tool_calls = 0
        self.rounds = 0
        self._pending_text: List[str] = []
        # call id -> tool name, for assistant tool_calls not yet answered by a tool message
        self._unanswered: Dict[str, str] = {}
        self._consumed = False
        self._deadline = session.started_monotonic + orchestrator.settings.turn_timeout_seconds

    @property
    def request_id(self) -> str:
        return self.session.request_id

    @property
    def answer(self) -> str:
        return "".join(self.answer_parts)

    @property
    def model_used(self) -> str:
        return self.cursor.label

    def transition(self, state: TurnState, **info: Any) -> None:
        self.state = state
        entry = {"state": state.value, "elapsed_ms": self.session.elapsed_ms(), **info}
        self.trace.append(entry)
        logger.debug("turn_state", request_id=self.request_id, **entry)

    async def _step(self, awaitable: Any) -> Any:
        """Await ``awaitable`` unless the turn is cancelled or out of time first."""
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise TurnTimeoutError("turn exceeded its time limit")
        step = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self.session.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {step, cancelled}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            step.cancel()
            raise
        finally:
            cancelled.cancel()
        if step in done:
            return step.result()
        step.cancel()
        await asyncio.gather(step, return_exceptions=True)
        if self.session.cancelled:
            raise TurnCancelledError("request cancelled")
        raise TurnTimeoutError("turn exceeded its time limit")

    async def events(self) -> AsyncIterator[dict]:
        if self._consumed:
            raise RuntimeError("turn events were already consumed")
        self._consumed = True
        orch = self.orchestrator
        settings = orch.settings
        try:
            for round_no in range(settings.max_tool_rounds + 1):
                self.rounds = round_no + 1
                self.transition(TurnState.CALLING_PROVIDER, round=round_no, provider=self.cursor.label)
                calls: List[ToolCallRequest] = []
                stream = orch.providers.stream(self.cursor, self.context.to_provider_messages(), self.tools)
                try:
                    while True:
                        event = await self._step(_next_event(stream))
                        if event is _END_OF_STREAM:
                            break
                        if not isinstance(event, TextDelta):
                            calls.append(event)
                            continue
                        if self.state is not TurnState.STREAMING:
                            self.transition(TurnState.STREAMING, provider=self.cursor.label)
                        self._pending_text.append(event.text)
                        self.answer_parts.append(event.text)
                        yield {"event": "token", "data": {"text": event.text}}
                finally:
                    await stream.aclose()

                round_text = "".join(self._pending_text)
                if not calls:
                    self._pending_text = []
                    orch.store.append_message(
                        self.conversation.id,
                        "assistant",
                        round_text,
                        meta={"status": "complete", "model": self.cursor.label, "request_id": self.request_id},
                    )
                    self.transition(TurnState.DONE)
                    orch.audit(
                        self.session,
                        "turn_completed",
                        success=True,
                        detail={"model": self.cursor.label, "rounds": self.rounds, "tool_calls": self.tool_calls},
                    )
                    yield {
                        "event": "done",
                        "data": {
                            "request_id": self.request_id,
                            "conversation_id": self.conversation.id,
                            "model": self.cursor.label,
                            "rounds": self.rounds,
                            "tool_calls": self.tool_calls,
                        },
                    }
                    return

                if round_no >= settings.max_tool_rounds:
                    raise ToolLoopExceededError(
                        "tool loop limit reached", detail={"max_tool_rounds": settings.max_tool_rounds}
                    )

                assistant_calls = [call.as_assistant_tool_call() for call in calls]
                self._pending_text = []
                orch.store.append_message(
                    self.conversation.id,
                    "assistant",
                    round_text,
                    tool_calls=assistant_calls,
                    meta={"status": "tool_calls", "model": self.cursor.label, "request_id": self.request_id},
                )
                self._unanswered = {call.id: call.name for call in calls}
                self.context = self.context.with_messages(
                    ContextMessage(
                        role="assistant",
                        content=round_text,
                        kind="turn",
                        tool_calls=tuple(assistant_calls),
                    )
                )

                self.transition(TurnState.TOOL_DISPATCH, calls=[c.name for c in calls])
                for call in calls:
                    yield {
                        "event": "tool_call",
                        "data": {"id": call.id, "name": call.name, "arguments": call.arguments},
                    }
                    result = await orch.dispatch_tool(self, call)
                    self.tool_calls += 1
                    self._record_tool_result(result)
                    yield {"event": "tool_result", "data": self._tool_result_data(result)}

                self.context = orch.assembler.refit(self.context)
                self.session.token_budget_remaining = self.context.remaining_tokens
        except ServiceError as exc:
            yield self._fail(exc)
        except (asyncio.CancelledError, GeneratorExit):
            if self.state is not TurnState.DONE:
                self._fail(TurnCancelledError("client disconnected"))
            raise
        except Exception as exc:
            logger.exception("turn_unhandled_error", request_id=self.request_id, error=str(exc))
            failure = ServiceError("internal server error", status_code=500, error_code="server_error")
            yield self._fail(failure)
        finally:
            await orch.finish_turn(self)

    def _record_tool_result(self, result: ToolResult) -> None:
        orch = self.orchestrator
        tool_message = orch.assembler.tool_result_message(result)
        self.context = self.context.with_messages(tool_message)
        orch.store.append_message(
            self.conversation.id,
            "tool",
            tool_message.content,
            tool_call_id=result.call_id,
            name=result.name,
            meta={"success": result.success, "request_id": self.request_id},
        )
        self._unanswered.pop(result.call_id, None)

    def _close_unanswered_calls(self) -> None:
        """Answer every outstanding tool call with a failure so history stays well formed."""
        for call_id, name in list(self._unanswered.items()):
            self._record_tool_result(
                ToolResult(call_id=call_id, name=name, success=False, error=INTERRUPTED_TOOL_ERROR)
            )
        self._unanswered = {}

    def _tool_result_data(self, result: ToolResult) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": result.call_id,
            "name": result.name,
            "ok": result.success,
            "duration_ms": result.duration_ms,
        }
        if result.success:
            data["result"] = sanitize_response_data(result.payload)
        else:
            data["error"] = result.error
            if result.payload is not None:
                data["result"] = sanitize_response_data(result.payload)
        return data

    def _failure_event(self, exc: ServiceError) -> dict:
        if isinstance(exc, ToolLoopExceededError):
            message = LOOP_EXCEEDED_MESSAGE
        else:
            message = f"Sorry, an error occurred: {_safe_summary(exc)}"
        details: Dict[str, Any] = {}
        if isinstance(exc, ProviderError):
            details["kind"] = exc.kind
            if exc.retry_after is not None:
                details["retry_after"] = exc.retry_after
        return _error_event(exc.error_code, message, self.request_id, details)

    def _fail(self, exc: ServiceError) -> dict:
        """Record the failure, persist any partial answer and return the error event."""
        self.error = exc
        self.failure = self._failure_event(exc)
        self.transition(TurnState.FAILED, error=exc.error_code)
        interrupted = len(self._unanswered)
        self._close_unanswered_calls()
        partial = "".join(self._pending_text)
        self._pending_text = []
        if partial:
            self.orchestrator.store.append_message(
                self.conversation.id,
                "assistant",
                partial,
                meta={
                    "status": "incomplete",
                    "error_code": exc.error_code,
                    "model": self.cursor.label,
                    "request_id": self.request_id,
                },
            )
        log = logger.info if isinstance(exc, TurnCancelledError) else logger.warning
        log(
            "turn_failed",
            request_id=self.request_id,
            error_code=exc.error_code,
            error=sanitize_error_message(exc.message),
            partial_chars=len(partial),
            interrupted_tool_calls=interrupted,
        )
        self.orchestrator.audit(
            self.session,
            "turn_failed",
            success=False,
            detail={"error_code": exc.error_code, "model": self.cursor.label, "partial_chars": len(partial)},
        )
        return self.failure

    async def collect(self) -> "Turn":
        """Drain :meth:`events` for callers that want one final answer."""
        async for _ in self.events():
            pass
        return self


class Orchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        store: ChatStore,
        auth: AuthService,
        rate_limiter: RateLimiter,
        registry: ToolRegistry,
        sandboxes: SandboxManager,
        providers: ProviderChain,
        assembler: ContextAssembler,
    ) -> None:
        self.settings = settings
        self.store = store
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.registry = registry
        self.sandboxes = sandboxes
        self.providers = providers
        self.assembler = assembler
        self._active: Dict[str, Turn] = {}

    @property
    def active_turns(self) -> int:
        return len(self._active)

    def chat_policy(self, auth: AuthContext) -> RateLimitPolicy:
        base = RateLimitPolicy(self.settings.chat_rate_limit, self.settings.chat_rate_limit_window_seconds)
        return base.scaled(self.settings.rate_limit_multiplier(auth.plan_tier))

    async def start_turn(
        self,
        *,
        message: str,
        authorization: Optional[str] = None,
        session_cookie: Optional[str] = None,
        conversation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        tenant_hint: Optional[str] = None,
        model: Optional[str] = None,
    ) -> Turn:
        request_id = request_id or str(uuid.uuid4())
        if request_id in self._active:
            raise ValidationError("request id is already in use", detail={"request_id": request_id})
        trace: List[Dict[str, Any]] = [{"state": TurnState.AUTHENTICATING.value}]
        auth = await self.auth.authenticate(authorization, session_cookie, tenant_hint=tenant_hint)
        if auth is None:
            raise AuthenticationError("authentication required")

        if not message or not message.strip():
            raise ValidationError("message must not be empty", detail={"field": "message"})
        if len(message) > self.settings.max_message_chars:
            raise MessageTooLargeError(
                "message is too long",
                detail={"max_chars": self.settings.max_message_chars, "chars": len(message)},
            )
        # Provider choice is validated before anything is counted or created
        cursor = self.providers.open(model)

        trace.append({"state": TurnState.RATE_LIMITING.value})
        decision = await self.rate_limiter.check_policy(
            tenant_id=auth.tenant_id, user_id=auth.user_id, scope=CHAT_SCOPE, policy=self.chat_policy(auth)
        )
        if not decision.allowed:
            logger.info(
                "chat_rate_limited",
                user_id=auth.user_id,
                tenant_id=auth.tenant_id,
                reason=decision.reason,
            )
            raise RateLimitedError(decision=decision)

        trace.append({"state": TurnState.ASSEMBLING_CONTEXT.value})
        if conversation_id:
            conversation = self.store.get_conversation(conversation_id, user_id=auth.user_id)
            if conversation is None:
                raise NotFoundError("conversation not found", detail={"conversation_id": conversation_id})
        else:
            conversation = self.store.create_conversation(auth.user_id, title=message.strip()[:80])

        history = self.store.list_messages(
            conversation.id, self.settings.history_message_limit, user_id=auth.user_id
        )
        memories = rank_by_relevance(
            message, self.store.list_memories(auth.user_id), lambda m: m.content, limit=MEMORY_CANDIDATES
        )
        documents = rank_by_relevance(
            message,
            self.store.list_documents(auth.user_id, conversation_id=conversation.id),
            lambda d: d.content,
            limit=DOCUMENT_CANDIDATES,
        )
        context = self.assembler.assemble(
            user_message=message,
            history=history,
            memories=memories,
            documents=documents,
            summary=self.store.get_conversation_summary(conversation.id),
        )

        session = TurnSession(
            auth=auth,
            conversation_id=conversation.id,
            request_id=request_id,
            token_budget_remaining=context.remaining_tokens,
        )
        turn = Turn(
            self,
            session=session,
            conversation=conversation,
            context=context,
            tools=self.registry.tool_schemas(),
            rate_limit=decision,
            cursor=cursor,
        )
        turn.trace[:0] = trace
        self.store.append_message(conversation.id, "user", message, meta={"request_id": request_id})
        self._active[request_id] = turn
        logger.info(
            "turn_started",
            request_id=request_id,
            user_id=auth.user_id,
            tenant_id=auth.tenant_id,
            conversation_id=conversation.id,
            context_tokens=context.estimated_tokens,
            tools=len(turn.tools),
        )
        return turn

    def cancel(self, request_id: str, auth: AuthContext) -> bool:
        """Cancel an active turn owned by ``auth``; unknown or foreign ids return False."""
        turn = self._active.get(request_id)
        if turn is None or turn.session.user_id != auth.user_id or turn.session.tenant_id != auth.tenant_id:
            return False
        turn.session.cancel()
        logger.info("turn_cancel_requested", request_id=request_id, user_id=auth.user_id)
        return True

    async def dispatch_tool(self, turn: Turn, call: ToolCallRequest) -> ToolResult:
        session = turn.session
        started = time.monotonic()
        descriptor: Optional[ToolDescriptor] = None
        try:
            descriptor = self.registry.resolve(call.name)
            arguments = self.registry.validate_arguments(descriptor, parse_tool_arguments(call.arguments))
            if descriptor.rate_limit is not None:
                decision = await self.rate_limiter.check_policy(
                    tenant_id=session.tenant_id,
                    user_id=session.user_id,
                    scope=tool_scope(descriptor.name),
                    policy=descriptor.rate_limit,
                )
                if not decision.allowed:
                    logger.info("tool_rate_limited", tool=descriptor.name, user_id=session.user_id)
                    raise RateLimitedError(f"rate limit exceeded for tool {descriptor.name}", decision=decision)
            tool_call = ToolCall(name=descriptor.name, arguments=arguments, session_id=session.id, id=call.id)
            sandbox = None
            if descriptor.requires_sandbox:
                sandbox = await turn._step(self.sandboxes.acquire(session))
            ctx = ToolContext(
                session=session,
                settings=self.settings,
                sandbox=sandbox,
                sandbox_manager=self.sandboxes,
                call=tool_call,
            )
            payload = await turn._step(
                asyncio.wait_for(
                    descriptor.handler(tool_call.arguments, ctx), timeout=self.settings.tool_timeout_seconds
                )
            )
            result = ToolResult(
                call_id=call.id,
                name=call.name,
                success=True,
                payload=payload,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
        except (TurnCancelledError, TurnTimeoutError):
            raise
        except asyncio.TimeoutError:
            result = self._failed_result(call, started, "tool timed out")
        except ToolExecutionError as exc:
            result = self._failed_result(
                call, started, sanitize_error_message(exc.message), payload=exc.payload
            )
        except ServiceError as exc:
            result = self._failed_result(call, started, sanitize_error_message(exc.message))
        except Exception as exc:
            logger.warning("tool_call_error", tool=call.name, error_type=type(exc).__name__, error=str(exc))
            result = self._failed_result(call, started, sanitize_error_message(str(exc) or type(exc).__name__))

        detail: Dict[str, Any] = {"call_id": call.id, "session_id": session.id}
        if result.error:
            detail["error"] = result.error
        turn.trace.append(
            {"state": TurnState.TOOL_DISPATCH.value, "elapsed_ms": session.elapsed_ms(), "tool": call.name, "ok": result.success}
        )
        logger.info(
            "tool_call",
            request_id=session.request_id,
            tool=call.name,
            success=result.success,
            duration_ms=result.duration_ms,
        )
        self.audit(
            session,
            "tool_call",
            tool_name=call.name,
            success=result.success,
            duration_ms=result.duration_ms,
            cost=descriptor.cost if descriptor is not None else 0.0,
            detail=detail,
        )
        return result

    @staticmethod
    def _failed_result(call: ToolCallRequest, started: float, error: str, payload: Any = None) -> ToolResult:
        return ToolResult(
            call_id=call.id,
            name=call.name,
            success=False,
            payload=payload,
            error=error,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )

    def audit(self, session: TurnSession, kind: str, **fields: Any) -> None:
        self.store.append_audit(
            AuditRecord(
                kind=kind,
                user_id=session.user_id,
                tenant_id=session.tenant_id,
                request_id=session.request_id,
                conversation_id=session.conversation_id,
                **fields,
            )
        )

    async def finish_turn(self, turn: Turn) -> None:
        session = turn.session
        self._active.pop(session.request_id, None)
        session.closed = True
        await self.sandboxes.release(session, reason="turn_end")
        log_turn_trace(turn.trace, logger)
