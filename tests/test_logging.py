"""Log processors and the client-facing scrubbers."""
from unittest.mock import MagicMock

from chatcore.logging import (
    MAX_ERROR_CHARS,
    _inject_correlation_id,
    _mask_secrets,
    log_turn_trace,
    sanitize_error_message,
    sanitize_response_data,
    set_correlation_id,
)


class TestProcessors:
    def test_secret_keys_masked(self):
        event = _mask_secrets(None, "info", {"event": "login", "api_key": "sk-abcdef123456", "user": "u1"})

        assert event["api_key"] == "sk***56"
        assert event["user"] == "u1"

    def test_token_counts_left_alone(self):
        event = _mask_secrets(None, "info", {"prompt_tokens": "12345", "token_budget": "99999"})

        assert event == {"prompt_tokens": "12345", "token_budget": "99999"}

    def test_correlation_id_added_once(self):
        cid = set_correlation_id("req-7")

        assert _inject_correlation_id(None, "info", {})["correlation_id"] == cid
        assert _inject_correlation_id(None, "info", {"correlation_id": "own"})["correlation_id"] == "own"


class TestScrubbers:
    def test_error_text_scrubbed_and_capped(self):
        text = "connection to redis://:pw@cache:6379 failed at /var/lib/app/x.py with Bearer abc.def " + "z" * 900
        cleaned = sanitize_error_message(text)

        assert "redis://" not in cleaned
        assert "/var/lib" not in cleaned
        assert "abc.def" not in cleaned
        assert len(cleaned) == MAX_ERROR_CHARS

    def test_nested_secret_fields_keep_their_type(self):
        data = {"tool": "search", "config": {"Api-Key": "k", "retries": 3, "auth": {"x": 1}}, "rows": [{"password": 5}]}

        cleaned = sanitize_response_data(data)

        assert cleaned["config"] == {"Api-Key": "[REDACTED]", "retries": 3, "auth": "[REDACTED]"}
        assert cleaned["rows"] == [{"password": 0}]
        assert data["config"]["Api-Key"] == "k"

    def test_depth_limit(self):
        nested = {}
        cursor = nested
        for _ in range(30):
            cursor["next"] = {}
            cursor = cursor["next"]

        cleaned = sanitize_response_data(nested, max_depth=3)

        assert cleaned["next"]["next"]["next"]["next"] == "[max depth exceeded]"


def test_turn_trace_summary():
    logger = MagicMock()
    trace = [
        {"state": "model_call", "elapsed_ms": 12, "prompt": "secret prompt text"},
        {"state": "tool", "elapsed_ms": 30, "tool": "fetch_url", "error": "password=hunter2 rejected"},
        "not a dict",
    ]

    log_turn_trace(trace, logger)

    event, kwargs = logger.info.call_args[0][0], logger.info.call_args.kwargs
    assert event == "turn_trace"
    assert kwargs["trace"][0] == {"state": "model_call", "elapsed_ms": 12}
    assert kwargs["trace"][1]["tool"] == "fetch_url"
    assert "hunter2" not in kwargs["trace"][1]["error"]
    assert len(kwargs["trace"]) == 2
