from __future__ import annotations

import unicodedata
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound enforced before the configurable per-message character limit
MAX_MESSAGE_LENGTH = 1_000_000
_ZERO_WIDTH = frozenset({"\u200b", "\u200c", "\u200d", "\ufeff"})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if ch not in _ZERO_WIDTH)


class Envelope(BaseModel):
    """Response envelope shared by every JSON endpoint.

    ``answer`` and ``output`` carry the same final text on chat responses.
    """

    ok: bool
    answer: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    details: Optional[Any] = None
    request_id: Optional[str] = None
    data: Optional[Any] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)
    conversation_id: Optional[str] = Field(None, max_length=128)
    stream: bool = False
    model: Optional[str] = Field(None, max_length=128)

    @field_validator("message")
    @classmethod
    def _normalize_message(cls, value: str) -> str:
        value = _normalize_unicode(value)
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatResult(BaseModel):
    conversation_id: str
    model: str
    rounds: int
    tool_calls: int


class CancelRequest(BaseModel):
    request_id: str = Field(..., min_length=1, max_length=128)


class CancelResult(BaseModel):
    request_id: str
    cancelled: bool


class ToolInfo(BaseModel):
    name: str
    description: str
    input_schema: dict
    cost: float
    requires_sandbox: bool = False
    rate_limit: Optional[dict] = None


class ToolList(BaseModel):
    tools: List[ToolInfo] = Field(default_factory=list)
