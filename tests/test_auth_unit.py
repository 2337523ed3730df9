"""Unit tests for session verification."""
from datetime import datetime, timedelta

import pytest

from chatcore.service.auth import AuthService


@pytest.fixture
def auth(store):
    return AuthService(store)


class TestAuthenticate:
    async def test_bearer_token(self, auth, user_session):
        user, session = user_session

        ctx = await auth.authenticate(f"Bearer {session.id}", None)

        assert ctx.user_id == user.id
        assert ctx.tenant_id == "acme"
        assert ctx.session_id == session.id
        assert ctx.plan_tier == "free"
        assert not ctx.is_admin

    async def test_cookie_fallback(self, auth, user_session):
        user, session = user_session
        ctx = await auth.authenticate(None, session.id)
        assert ctx.user_id == user.id

    async def test_malformed_header_is_not_rescued_by_cookie(self, auth, user_session):
        _, session = user_session
        assert await auth.authenticate(f"Basic {session.id}", session.id) is None

    async def test_missing_credentials(self, auth):
        assert await auth.authenticate(None, None) is None
        assert await auth.authenticate("Bearer ", None) is None

    async def test_unknown_token(self, auth, user_session):
        assert await auth.authenticate("Bearer not-a-session", None) is None

    async def test_expired_session(self, auth, store, user_session):
        _, session = user_session
        store.sessions[session.id].expires_at = datetime.utcnow() - timedelta(seconds=1)

        assert await auth.authenticate(f"Bearer {session.id}", None) is None

    async def test_inactive_user(self, auth, store, user_session):
        user, session = user_session
        store.users[user.id].is_active = False

        assert await auth.authenticate(f"Bearer {session.id}", None) is None

    async def test_tenant_hint_must_match(self, auth, user_session):
        _, session = user_session

        assert await auth.authenticate(f"Bearer {session.id}", None, tenant_hint="acme") is not None
        assert await auth.authenticate(f"Bearer {session.id}", None, tenant_hint="globex") is None

    async def test_unrecognized_role_downgraded(self, auth, store):
        user = store.create_user("odd@example.com", role="superuser")
        session = store.create_session(user.id)

        ctx = await auth.authenticate(f"Bearer {session.id}", None)

        assert ctx.role == "user"

    async def test_admin_role(self, auth, store):
        user = store.create_user("root@example.com", role="admin", plan_tier="enterprise")
        session = store.create_session(user.id)

        ctx = await auth.authenticate(f"Bearer {session.id}", None)

        assert ctx.is_admin
        assert ctx.plan_tier == "enterprise"
