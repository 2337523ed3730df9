from __future__ import annotations

import asyncio
import math
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from chatcore.logging import get_logger
from chatcore.storage.errors import ConstraintViolation
from chatcore.storage.models import (
    AuditRecord,
    Conversation,
    DocumentSnippet,
    MemorySnippet,
    Message,
    SandboxRecord,
    Session,
    User,
)

logger = get_logger(__name__)


class MemoryStore:
    """In-process conversation/session/audit store.

    Stands in for the relational store in development and tests. Methods are
    synchronous and guarded by one re-entrant lock so request handlers on
    different threads see consistent data.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.memories: Dict[str, List[MemorySnippet]] = {}
        self.documents: Dict[str, List[DocumentSnippet]] = {}
        self.audit_log: List[AuditRecord] = []
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # users and sessions
    def create_user(
        self,
        email: str,
        *,
        tenant_id: str = "public",
        role: str = "user",
        plan_tier: str = "free",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                tenant_id=tenant_id,
                role=role,
                plan_tier=plan_tier,
                is_active=is_active,
                meta=dict(meta or {}),
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                tenant_id=tenant_id or user.tenant_id,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    # conversations
    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
            now = datetime.utcnow()
            conv = Conversation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                updated_at=now,
                title=title,
            )
            self.conversations[conv.id] = conv
            self.messages[conv.id] = []
            return conv

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                return None
            if user_id and conv.user_id != user_id:
                return None
            return conv

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        tool_call_id: Optional[str] = None,
        tool_calls: Optional[list] = None,
        name: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Message:
        with self._data_lock:
            if conversation_id not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            history = self.messages.setdefault(conversation_id, [])
            msg = Message(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                role=role,
                content=content,
                seq=len(history),
                tool_call_id=tool_call_id,
                tool_calls=tool_calls,
                name=name,
                meta=meta,
            )
            history.append(msg)
            self.conversations[conversation_id].updated_at = msg.created_at
            return msg

    def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        *,
        user_id: Optional[str] = None,
    ) -> List[Message]:
        with self._data_lock:
            conv = self.get_conversation(conversation_id, user_id=user_id)
            if not conv:
                return []
            msgs = self.messages.get(conversation_id, [])
            if conv.summary_through_seq >= 0:
                msgs = [m for m in msgs if m.seq > conv.summary_through_seq]
            if limit is None:
                return list(msgs)
            return msgs[-limit:]

    def set_conversation_summary(
        self, conversation_id: str, summary: str, *, through_seq: int
    ) -> None:
        """Replace messages up to ``through_seq`` with ``summary`` in future history reads."""
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            if not conv:
                raise ConstraintViolation(
                    "conversation not found", {"conversation_id": conversation_id}
                )
            conv.summary = summary
            conv.summary_through_seq = through_seq

    def get_conversation_summary(self, conversation_id: str) -> Optional[str]:
        with self._data_lock:
            conv = self.conversations.get(conversation_id)
            return conv.summary if conv else None

    # long-term memory and documents
    def add_memory(self, user_id: str, content: str, *, meta: Optional[Dict] = None) -> MemorySnippet:
        with self._data_lock:
            snippet = MemorySnippet(id=str(uuid.uuid4()), user_id=user_id, content=content, meta=meta)
            self.memories.setdefault(user_id, []).append(snippet)
            return snippet

    def list_memories(self, user_id: str) -> List[MemorySnippet]:
        with self._data_lock:
            return list(reversed(self.memories.get(user_id, [])))

    def add_document(
        self,
        user_id: str,
        source: str,
        content: str,
        *,
        conversation_id: Optional[str] = None,
    ) -> DocumentSnippet:
        with self._data_lock:
            doc = DocumentSnippet(
                id=str(uuid.uuid4()),
                user_id=user_id,
                source=source,
                content=content,
                conversation_id=conversation_id,
            )
            self.documents.setdefault(user_id, []).append(doc)
            return doc

    def list_documents(
        self, user_id: str, *, conversation_id: Optional[str] = None
    ) -> List[DocumentSnippet]:
        with self._data_lock:
            docs = self.documents.get(user_id, [])
            return [d for d in docs if d.conversation_id in (None, conversation_id)]

    # audit
    def append_audit(self, record: AuditRecord) -> None:
        with self._data_lock:
            self.audit_log.append(record)

    def list_audit(
        self,
        *,
        user_id: Optional[str] = None,
        kind: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> List[AuditRecord]:
        with self._data_lock:
            return [
                r
                for r in self.audit_log
                if (user_id is None or r.user_id == user_id)
                and (kind is None or r.kind == kind)
                and (request_id is None or r.request_id == request_id)
            ]


class MemoryCache:
    """Single-process stand-in for :class:`RedisCache`.

    Implements the same coroutine interface for rate-limit windows and the
    sandbox registry. Every operation runs under one asyncio.Lock so a
    read-modify-write is indivisible with respect to other coroutines.
    """

    def __init__(self, *, sweep_every: int = 256) -> None:
        self._lock = asyncio.Lock()
        # key -> (window start, hits, window length)
        self._windows: Dict[str, Tuple[float, int, int]] = {}
        self._sweep_every = max(1, sweep_every)
        self._hits_since_sweep = 0
        self._sandboxes: Dict[str, Tuple[SandboxRecord, float]] = {}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    async def hit_window(
        self, key: str, limit: int, window_seconds: int, now: float
    ) -> Tuple[bool, int, int]:
        async with self._lock:
            self._sweep_windows(now)
            start, count, _ = self._windows.get(key, (now, 0, window_seconds))
            if now - start > window_seconds:
                start, count = now, 0
            reset = max(0, math.ceil(start + window_seconds - now))
            if count >= limit:
                self._windows[key] = (start, count, window_seconds)
                return False, count, reset
            count += 1
            self._windows[key] = (start, count, window_seconds)
            return True, count, reset

    def _sweep_windows(self, now: float) -> None:
        """Forget windows that have already closed; runs every ``sweep_every`` hits."""
        self._hits_since_sweep += 1
        if self._hits_since_sweep < self._sweep_every:
            return
        self._hits_since_sweep = 0
        expired = [key for key, (start, _, window) in self._windows.items() if now - start > window]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("rate_windows_swept", expired=len(expired), live=len(self._windows))

    def _live(self, session_id: str) -> Optional[SandboxRecord]:
        entry = self._sandboxes.get(session_id)
        if not entry:
            return None
        record, expires_at = entry
        if expires_at <= time.monotonic():
            self._sandboxes.pop(session_id, None)
            return None
        return record

    async def claim_sandbox(self, record: SandboxRecord, ttl_seconds: int) -> SandboxRecord:
        async with self._lock:
            existing = self._live(record.session_id)
            if existing:
                return existing
            self._sandboxes[record.session_id] = (record, time.monotonic() + ttl_seconds)
            return record

    async def get_sandbox(self, session_id: str) -> Optional[SandboxRecord]:
        async with self._lock:
            return self._live(session_id)

    async def touch_sandbox(self, session_id: str, last_used_at: float, ttl_seconds: int) -> None:
        async with self._lock:
            record = self._live(session_id)
            if record:
                record.last_used_at = last_used_at
                self._sandboxes[session_id] = (record, time.monotonic() + ttl_seconds)

    async def delete_sandbox(self, session_id: str, handle_id: str) -> bool:
        async with self._lock:
            record = self._live(session_id)
            if record and record.handle_id == handle_id:
                self._sandboxes.pop(session_id, None)
                return True
            return False
