from __future__ import annotations

import asyncio
from typing import Any, Dict

import httpx
from openai import AsyncOpenAI

from chatcore.config import SandboxBackend, Settings
from chatcore.logging import get_logger
from chatcore.service.rate_limit import RateLimitPolicy
from chatcore.service.sandbox import (
    MATH_CALLABLES,
    MATH_NAMES,
    AllowlistedFetcher,
    SandboxError,
    SandboxExecutionError,
    build_tool_network_policy,
    safe_eval_expr,
)
from chatcore.service.sandbox_manager import SandboxCommand, resolve_jail
from chatcore.service.tools import (
    ToolContext,
    ToolDescriptor,
    ToolExecutionError,
    ToolRegistry,
    always_available,
    requires_settings,
)

logger = get_logger(__name__)

HOUR = 3600
FETCH_MAX_CHARS = 20000
SEARCH_MAX_RESULTS = 10


def sandbox_configured(settings: Settings) -> bool:
    if settings.sandbox_backend is SandboxBackend.REMOTE:
        return bool(settings.sandbox_api_url and settings.sandbox_api_key)
    if settings.sandbox_allow_unjailed:
        return True
    return resolve_jail(settings.sandbox_jail_binary) is not None


async def calculator(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    expression = args["expression"]
    try:
        value = safe_eval_expr(expression, MATH_NAMES, MATH_CALLABLES)
    except (ValueError, TypeError, ZeroDivisionError, OverflowError) as exc:
        raise SandboxError(f"cannot evaluate expression: {exc}") from exc
    return {"expression": expression, "result": value}


async def run_code(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    if ctx.sandbox is None or ctx.sandbox_manager is None:
        raise SandboxError("no sandbox attached to this call")
    command = SandboxCommand(code=args["code"], language=args.get("language", "python"))
    try:
        result = await ctx.sandbox_manager.execute(
            ctx.sandbox, command, timeout=ctx.settings.tool_timeout_seconds
        )
    except SandboxExecutionError as exc:
        if exc.exit_code is None:
            raise
        raise ToolExecutionError(
            f"script exited with status {exc.exit_code}",
            payload={"exit_code": exc.exit_code, "stdout": exc.stdout, "stderr": exc.stderr},
        ) from exc
    return {"exit_code": result.exit_code, "stdout": result.stdout, "stderr": result.stderr}


async def web_search(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    settings = ctx.settings
    count = min(int(args.get("count", 5)), SEARCH_MAX_RESULTS)
    async with httpx.AsyncClient(timeout=settings.tool_timeout_seconds) as client:
        response = await client.get(
            settings.search_api_url,
            params={"q": args["query"], "count": count},
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.search_api_key or "",
            },
        )
    if response.status_code != 200:
        raise SandboxError(f"search provider returned status {response.status_code}")
    body = response.json()
    results = [
        {
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "snippet": item.get("description", ""),
        }
        for item in (body.get("web") or {}).get("results", [])[:count]
    ]
    return {"query": args["query"], "results": results}


async def fetch_url(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    settings = ctx.settings
    policy = build_tool_network_policy(
        allowlist=settings.tool_network_allowlist,
        proxy_url=settings.tool_network_proxy_url,
        total_timeout=settings.tool_timeout_seconds,
    )
    fetcher = AllowlistedFetcher(policy)
    page = await asyncio.to_thread(fetcher.fetch_text, args["url"], max_chars=FETCH_MAX_CHARS)
    return {
        "url": page.url,
        "status_code": page.status_code,
        "content_type": page.content_type,
        "content": page.text,
        "truncated": page.truncated,
    }


async def generate_image(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    settings = ctx.settings
    client = AsyncOpenAI(
        api_key=settings.image_api_key, timeout=settings.tool_timeout_seconds, max_retries=0
    )
    try:
        response = await client.images.generate(
            model=settings.image_model,
            prompt=args["prompt"],
            size=args.get("size", "1024x1024"),
            n=1,
        )
    finally:
        await client.close()
    image = response.data[0] if response.data else None
    if image is None:
        raise SandboxError("image provider returned no image")
    return {"url": image.url, "revised_prompt": getattr(image, "revised_prompt", None)}


def builtin_tools() -> list[ToolDescriptor]:
    return [
        ToolDescriptor(
            name="calculator",
            description="Evaluate an arithmetic expression. Supports + - * / ** %, "
            "parentheses, and sqrt, log, exp, sin, cos, tan, floor, ceil, abs, round, min, max.",
            input_schema={
                "type": "object",
                "properties": {"expression": {"type": "string", "minLength": 1, "maxLength": 1000}},
                "required": ["expression"],
                "additionalProperties": False,
            },
            handler=calculator,
            is_available=always_available,
        ),
        ToolDescriptor(
            name="run_code",
            description="Run a Python or shell snippet in an isolated sandbox and return "
            "stdout, stderr and the exit code. Files persist between calls in the same turn.",
            input_schema={
                "type": "object",
                "properties": {
                    "code": {"type": "string", "minLength": 1, "maxLength": 100000},
                    "language": {"type": "string", "enum": ["python", "shell"]},
                },
                "required": ["code"],
                "additionalProperties": False,
            },
            handler=run_code,
            cost=0.001,
            rate_limit=RateLimitPolicy(100, HOUR),
            is_available=sandbox_configured,
            requires_sandbox=True,
        ),
        ToolDescriptor(
            name="web_search",
            description="Search the web and return the top results with title, URL and snippet.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "minLength": 1, "maxLength": 400},
                    "count": {"type": "integer", "minimum": 1, "maximum": SEARCH_MAX_RESULTS},
                },
                "required": ["query"],
                "additionalProperties": False,
            },
            handler=web_search,
            cost=0.005,
            rate_limit=RateLimitPolicy(60, HOUR),
            required_credentials=("search_api_key",),
        ),
        ToolDescriptor(
            name="fetch_url",
            description="Fetch a web page by URL and return its text content.",
            input_schema={
                "type": "object",
                "properties": {"url": {"type": "string", "format": "uri", "maxLength": 2048}},
                "required": ["url"],
                "additionalProperties": False,
            },
            handler=fetch_url,
            rate_limit=RateLimitPolicy(60, HOUR),
            is_available=requires_settings("tool_network_allowlist"),
        ),
        ToolDescriptor(
            name="generate_image",
            description="Generate an image from a text prompt and return its URL.",
            input_schema={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string", "minLength": 1, "maxLength": 4000},
                    "size": {"type": "string", "enum": ["1024x1024", "1792x1024", "1024x1792"]},
                },
                "required": ["prompt"],
                "additionalProperties": False,
            },
            handler=generate_image,
            cost=0.04,
            rate_limit=RateLimitPolicy(30, HOUR),
            required_credentials=("image_api_key",),
        ),
    ]


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    for descriptor in builtin_tools():
        registry.register(descriptor)
    logger.debug("builtin_tools_registered", count=len(registry))
    return registry
