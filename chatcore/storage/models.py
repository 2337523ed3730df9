from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    tenant_id: str = "public"
    created_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True
    plan_tier: str = "free"
    meta: Dict | None = None


@dataclass
class Session:
    """Authenticated login session; the id doubles as the bearer token."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    tenant_id: str = "public"
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        tenant_id: str = "public",
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            tenant_id=tenant_id,
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at


@dataclass
class Conversation:
    id: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    title: Optional[str] = None
    summary: Optional[str] = None
    summary_through_seq: int = -1
    meta: Dict | None = None


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    seq: int
    created_at: datetime = field(default_factory=datetime.utcnow)
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list] = None
    name: Optional[str] = None
    meta: Dict | None = None


@dataclass
class MemorySnippet:
    """Long-term fact remembered about a user across conversations."""

    id: str
    user_id: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class DocumentSnippet:
    """Retrieved chunk of a user document, scoped to one conversation or global."""

    id: str
    user_id: str
    source: str
    content: str
    conversation_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class AuditRecord:
    kind: str
    user_id: str
    tenant_id: str
    request_id: Optional[str] = None
    conversation_id: Optional[str] = None
    tool_name: Optional[str] = None
    success: Optional[bool] = None
    duration_ms: Optional[float] = None
    cost: Optional[float] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SandboxRecord:
    """Backing-store claim tying a sandbox handle to exactly one session."""

    handle_id: str
    session_id: str
    user_id: str
    tenant_id: str
    created_at: float
    last_used_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle_id": self.handle_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SandboxRecord":
        return cls(
            handle_id=str(raw["handle_id"]),
            session_id=str(raw["session_id"]),
            user_id=str(raw["user_id"]),
            tenant_id=str(raw.get("tenant_id") or "public"),
            created_at=float(raw["created_at"]),
            last_used_at=float(raw.get("last_used_at") or raw["created_at"]),
        )
