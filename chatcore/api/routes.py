from __future__ import annotations

import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Cookie, Depends, Header
from fastapi.responses import JSONResponse, StreamingResponse

from chatcore.api.schemas import (
    CancelRequest,
    CancelResult,
    ChatRequest,
    ChatResult,
    Envelope,
    ToolInfo,
    ToolList,
)
from chatcore.logging import get_correlation_id, get_logger
from chatcore.service.auth import AuthContext
from chatcore.service.errors import AuthenticationError
from chatcore.service.orchestrator import Turn
from chatcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Cookie(None),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id, tenant_hint=x_tenant_id)
    if not ctx:
        raise AuthenticationError("invalid session")
    return ctx


def _sse_frame(event: dict) -> str:
    payload = json.dumps(event["data"], default=str, ensure_ascii=False)
    return f"event: {event['event']}\ndata: {payload}\n\n"


async def _sse_stream(turn: Turn) -> AsyncIterator[str]:
    async for event in turn.events():
        yield _sse_frame(event)


@router.post("/chat", response_model=Envelope, tags=["chat"])
async def chat(
    body: ChatRequest,
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Cookie(None),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
):
    """Run one chat turn.

    Authentication, rate limiting and prompt assembly happen before any
    output, so those failures come back as a single JSON error. With
    ``stream`` set, the turn is sent as server-sent events; otherwise the
    final text is returned in the envelope.

    Raises:
        400: If the message is empty or too large
        401: If authentication fails
        404: If the conversation does not belong to the caller
        429: If the chat rate limit is exhausted
    """
    runtime = get_runtime()
    turn = await runtime.orchestrator.start_turn(
        message=body.message,
        authorization=authorization,
        session_cookie=session_id,
        conversation_id=body.conversation_id,
        request_id=get_correlation_id(),
        tenant_hint=x_tenant_id,
        model=body.model,
    )
    headers = turn.rate_limit.headers()

    if body.stream:
        headers["Cache-Control"] = "no-cache"
        headers["X-Accel-Buffering"] = "no"
        return StreamingResponse(_sse_stream(turn), media_type="text/event-stream", headers=headers)

    await turn.collect()
    headers["X-Model-Used"] = turn.model_used
    result = ChatResult(
        conversation_id=turn.conversation.id,
        model=turn.model_used,
        rounds=turn.rounds,
        tool_calls=turn.tool_calls,
    )
    if turn.error is not None:
        failure = turn.failure["data"] if turn.failure else {}
        envelope = Envelope(
            ok=False,
            answer=turn.answer or None,
            output=turn.answer or None,
            error=failure.get("message"),
            code=turn.error.error_code,
            details=failure.get("details") or None,
            request_id=turn.request_id,
            data=result.model_dump(),
        )
        return JSONResponse(status_code=turn.error.status_code, content=envelope.model_dump(), headers=headers)

    envelope = Envelope(
        ok=True,
        answer=turn.answer,
        output=turn.answer,
        request_id=turn.request_id,
        data=result.model_dump(),
    )
    return JSONResponse(content=envelope.model_dump(), headers=headers)


@router.post("/chat/cancel", response_model=Envelope, tags=["chat"])
async def cancel_chat(body: CancelRequest, principal: AuthContext = Depends(get_user)):
    """Cancel an in-flight turn started by the caller.

    Unknown request ids and turns owned by someone else both report
    ``cancelled: false``.
    """
    runtime = get_runtime()
    cancelled = runtime.orchestrator.cancel(body.request_id, principal)
    result = CancelResult(request_id=body.request_id, cancelled=cancelled)
    return Envelope(ok=True, data=result.model_dump(), request_id=get_correlation_id())


@router.get("/tools", response_model=Envelope, tags=["tools"])
async def list_tools(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    tools = [
        ToolInfo(
            name=d.name,
            description=d.description,
            input_schema=d.input_schema,
            cost=d.cost,
            requires_sandbox=d.requires_sandbox,
            rate_limit=(
                {"limit": d.rate_limit.limit, "window_seconds": d.rate_limit.window_seconds}
                if d.rate_limit
                else None
            ),
        )
        for d in runtime.tools.list_available()
    ]
    return Envelope(ok=True, data=ToolList(tools=tools).model_dump(), request_id=get_correlation_id())
