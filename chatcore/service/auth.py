from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from chatcore.logging import get_logger
from chatcore.storage.models import Session, User

# Anything else found in the store is treated as the least-privileged role
KNOWN_ROLES = frozenset({"user", "admin"})


class AuthStore(Protocol):
    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    tenant_id: str
    session_id: Optional[str] = None
    plan_tier: str = "free"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthService:
    """Resolves a bearer token or session cookie to an :class:`AuthContext`.

    Session issuance lives elsewhere; this service only verifies. Every
    doubtful case (malformed header, unknown or expired session, inactive
    user) resolves to ``None`` so the caller rejects the request.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _now(self) -> datetime:
        return datetime.utcnow()

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
        *,
        tenant_hint: Optional[str] = None,
    ) -> Optional[AuthContext]:
        if authorization and not self._extract_bearer(authorization):
            self.logger.info("auth_malformed_authorization_header")
            return None
        token = self._extract_bearer(authorization) or session_id
        if not token:
            return None
        return self.resolve_session(token, tenant_hint=tenant_hint)

    def resolve_session(
        self, token: str, *, tenant_hint: Optional[str] = None
    ) -> Optional[AuthContext]:
        sess = self.store.get_session(token)
        # Constant-time compare guards against a store that matches loosely
        if not sess or not hmac.compare_digest(sess.id, token):
            self.logger.info("auth_session_unknown")
            return None
        if sess.is_expired(self._now()):
            self.logger.info("auth_session_expired", session_user=sess.user_id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            self.logger.warning("auth_user_inactive_or_missing", user_id=sess.user_id)
            return None
        tenant_id = sess.tenant_id or user.tenant_id
        if tenant_hint and tenant_hint != tenant_id:
            self.logger.warning(
                "auth_tenant_mismatch", user_id=user.id, tenant_id=tenant_id, tenant_hint=tenant_hint
            )
            return None
        role = user.role if user.role in KNOWN_ROLES else "user"
        return AuthContext(
            user_id=user.id,
            role=role,
            tenant_id=tenant_id,
            session_id=sess.id,
            plan_tier=user.plan_tier or "free",
        )
