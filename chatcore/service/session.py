from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from chatcore.service.auth import AuthContext

if TYPE_CHECKING:
    from chatcore.service.sandbox_manager import SandboxHandle


@dataclass
class TurnSession:
    """Execution context of one chat turn, owned by the orchestrator."""

    auth: AuthContext
    conversation_id: str
    request_id: str
    token_budget_remaining: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=datetime.utcnow)
    started_monotonic: float = field(default_factory=time.monotonic)
    sandbox: Optional["SandboxHandle"] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    closed: bool = False

    @property
    def user_id(self) -> str:
        return self.auth.user_id

    @property
    def tenant_id(self) -> str:
        return self.auth.tenant_id

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_monotonic) * 1000, 2)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()
