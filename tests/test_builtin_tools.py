"""Built-in tool handlers exercised against fakes for their upstreams."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatcore.config import Settings
from chatcore.service import builtin_tools
from chatcore.service.auth import AuthContext
from chatcore.service.sandbox import SandboxError
from chatcore.service.sandbox_manager import LocalProcessBackend, SandboxManager
from chatcore.service.session import TurnSession
from chatcore.service.tools import ToolContext, ToolExecutionError
from chatcore.storage.memory import MemoryCache

_RealAsyncClient = httpx.AsyncClient
_RealFetcher = builtin_tools.AllowlistedFetcher


def _session():
    auth = AuthContext(user_id="u1", role="user", tenant_id="acme")
    return TurnSession(auth=auth, conversation_id="c1", request_id="r1", token_budget_remaining=1000)


def _ctx(settings, **kwargs):
    return ToolContext(session=_session(), settings=settings, **kwargs)


class TestRunCode:
    async def test_success(self, tmp_path):
        settings = Settings(test_mode=True, tool_timeout_seconds=20)
        manager = SandboxManager(LocalProcessBackend(tmp_path, allow_unjailed=True), MemoryCache())
        session = _session()
        handle = await manager.acquire(session)
        ctx = ToolContext(session=session, settings=settings, sandbox=handle, sandbox_manager=manager)

        result = await builtin_tools.run_code({"code": "print(6 * 7)"}, ctx)

        assert result == {"exit_code": 0, "stdout": "42\n", "stderr": ""}
        await manager.close()

    async def test_failing_script_is_a_failure_with_output(self, tmp_path):
        settings = Settings(test_mode=True, tool_timeout_seconds=20)
        manager = SandboxManager(LocalProcessBackend(tmp_path, allow_unjailed=True), MemoryCache())
        session = _session()
        handle = await manager.acquire(session)
        ctx = ToolContext(session=session, settings=settings, sandbox=handle, sandbox_manager=manager)

        with pytest.raises(ToolExecutionError) as excinfo:
            await builtin_tools.run_code({"code": "raise SystemExit('bad input')"}, ctx)

        assert excinfo.value.message == "script exited with status 1"
        assert excinfo.value.payload["exit_code"] == 1
        assert "bad input" in excinfo.value.payload["stderr"]
        await manager.close()

    async def test_without_sandbox(self):
        with pytest.raises(SandboxError):
            await builtin_tools.run_code({"code": "print(1)"}, _ctx(Settings(test_mode=True)))


class TestWebSearch:
    async def test_results_mapped(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["token"] = request.headers.get("x-subscription-token")
            captured["params"] = dict(request.url.params)
            return httpx.Response(
                200,
                json={
                    "web": {
                        "results": [
                            {"title": "Python", "url": "https://python.org", "description": "Home"},
                            {"title": "Docs", "url": "https://docs.python.org", "description": "Docs"},
                        ]
                    }
                },
            )

        def client_factory(**kwargs):
            return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

        settings = Settings(test_mode=True, search_api_key="brave-key")
        with patch.object(builtin_tools.httpx, "AsyncClient", client_factory):
            result = await builtin_tools.web_search({"query": "python", "count": 1}, _ctx(settings))

        assert result == {
            "query": "python",
            "results": [{"title": "Python", "url": "https://python.org", "snippet": "Home"}],
        }
        assert captured["token"] == "brave-key"
        assert captured["params"] == {"q": "python", "count": "1"}

    async def test_upstream_error(self):
        def client_factory(**kwargs):
            return _RealAsyncClient(
                transport=httpx.MockTransport(lambda request: httpx.Response(503)), **kwargs
            )

        settings = Settings(test_mode=True, search_api_key="brave-key")
        with patch.object(builtin_tools.httpx, "AsyncClient", client_factory):
            with pytest.raises(SandboxError):
                await builtin_tools.web_search({"query": "python"}, _ctx(settings))


class TestFetchUrl:
    async def test_blocked_host(self):
        settings = Settings(test_mode=True, tool_network_allowlist="example.com")

        with pytest.raises(SandboxError):
            await builtin_tools.fetch_url({"url": "https://internal.corp/secrets"}, _ctx(settings))

    async def test_truncates_content(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                text="a" * (builtin_tools.FETCH_MAX_CHARS * 5),
                headers={"content-type": "text/plain"},
            )

        def fetcher_factory(policy):
            return _RealFetcher(
                policy, resolver=lambda host: ["93.184.216.34"], transport=httpx.MockTransport(handler)
            )

        settings = Settings(test_mode=True, tool_network_allowlist="example.com")
        with patch.object(builtin_tools, "AllowlistedFetcher", fetcher_factory):
            result = await builtin_tools.fetch_url({"url": "https://example.com/page"}, _ctx(settings))

        assert result["truncated"] is True
        assert len(result["content"]) == builtin_tools.FETCH_MAX_CHARS
        assert result["content_type"] == "text/plain"
        assert result["status_code"] == 200

    async def test_allowlisted_name_pointing_inward_is_blocked(self):
        def fetcher_factory(policy):
            return _RealFetcher(policy, resolver=lambda host: ["10.1.2.3"])

        settings = Settings(test_mode=True, tool_network_allowlist="example.com")
        with patch.object(builtin_tools, "AllowlistedFetcher", fetcher_factory):
            with pytest.raises(SandboxError, match="non-public"):
                await builtin_tools.fetch_url({"url": "https://example.com/"}, _ctx(settings))


class TestSandboxConfigured:
    def test_local_without_jail_is_unavailable_outside_dev(self):
        settings = Settings(test_mode=False, sandbox_jail_binary="definitely-missing-jail")

        assert builtin_tools.sandbox_configured(settings) is False

    def test_local_unjailed_allowed_in_dev(self):
        settings = Settings(
            test_mode=False,
            sandbox_jail_binary="definitely-missing-jail",
            sandbox_allow_unjailed_dev=True,
        )

        assert builtin_tools.sandbox_configured(settings) is True

    def test_local_with_jail_binary(self):
        settings = Settings(test_mode=False, sandbox_jail_binary="/usr/bin/bwrap")

        with patch("chatcore.service.builtin_tools.resolve_jail", return_value="/usr/bin/bwrap"):
            assert builtin_tools.sandbox_configured(settings) is True

    def test_remote_needs_url_and_key(self):
        settings = Settings(test_mode=True, sandbox_backend="remote", sandbox_api_url="https://sbx.test")

        assert builtin_tools.sandbox_configured(settings) is False


class TestGenerateImage:
    async def test_returns_url(self):
        images = MagicMock()
        images.generate = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(url="https://img.test/1.png", revised_prompt="a cat")])
        )
        client = MagicMock(images=images, close=AsyncMock())
        settings = Settings(test_mode=True, image_api_key="img-key")

        with patch.object(builtin_tools, "AsyncOpenAI", return_value=client) as factory:
            result = await builtin_tools.generate_image({"prompt": "a cat"}, _ctx(settings))

        assert result == {"url": "https://img.test/1.png", "revised_prompt": "a cat"}
        assert factory.call_args.kwargs["api_key"] == "img-key"
        client.close.assert_awaited_once()
