from __future__ import annotations

import json
import math
import re
from typing import Any

# Role markers and separators the provider adds around every message
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_token_count(text: str) -> int:
    """Lightweight token estimate for enforcing model window limits.

    Avoids tokenizer dependencies while staying conservative: the estimate is
    the larger of the whitespace-delimited word count and a character-based
    count rounded up, so text without spaces or with long tokens is not
    undercounted.
    """

    if not text:
        return 0
    normalized = text.strip()
    wordish = len(re.findall(r"\S+", normalized))
    char_estimate = math.ceil(len(normalized) / 4)
    return max(wordish, char_estimate)


def estimate_message_tokens(content: str, extra: Any = None) -> int:
    """Estimate one chat message, including tool-call payloads in ``extra``."""
    total = MESSAGE_OVERHEAD_TOKENS + estimate_token_count(content)
    if extra:
        total += estimate_token_count(json.dumps(extra, default=str, sort_keys=True))
    return total


def truncate_to_tokens(text: str, max_tokens: int, *, marker: str = "\n[truncated]") -> str:
    """Cut ``text`` so its estimate, marker included, stays within ``max_tokens``."""
    if max_tokens <= 0:
        return ""
    if estimate_token_count(text) <= max_tokens:
        return text
    budget_chars = max(0, (max_tokens - estimate_token_count(marker)) * 4)
    cut = text[:budget_chars]
    while cut and estimate_token_count(cut + marker) > max_tokens:
        cut = cut[: max(0, len(cut) - max(1, len(cut) // 10))]
    return cut + marker if cut else ""
