"""Bounded prompt assembly.

The assembled context always satisfies::

    estimated_tokens(context) + reserved_output_tokens <= context_window_tokens

System instructions are never dropped or cut; everything else gives way,
oldest first.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from chatcore.config import Settings
from chatcore.logging import get_logger
from chatcore.service.errors import ContextBudgetExceededError, MessageTooLargeError
from chatcore.service.tokenizer_utils import estimate_message_tokens, truncate_to_tokens
from chatcore.service.tools import ToolResult
from chatcore.storage.models import DocumentSnippet, MemorySnippet, Message

logger = get_logger(__name__)

# Droppable kinds, in the order refit gives them up
_DROP_ORDER = ("history", "summary", "document", "memory")


@dataclass(frozen=True)
class ContextMessage:
    role: str
    content: str
    kind: str
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[Tuple[Dict[str, Any], ...]] = None
    tokens: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if not self.tokens:
            object.__setattr__(
                self, "tokens", estimate_message_tokens(self.content, self.tool_calls)
            )

    def to_provider(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [dict(call) for call in self.tool_calls]
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.name and self.role == "tool":
            msg["name"] = self.name
        return msg


@dataclass(frozen=True)
class ConversationContext:
    messages: Tuple[ContextMessage, ...]
    ceiling_tokens: int

    @property
    def estimated_tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    @property
    def remaining_tokens(self) -> int:
        return self.ceiling_tokens - self.estimated_tokens

    def with_messages(self, *extra: ContextMessage) -> "ConversationContext":
        return replace(self, messages=self.messages + tuple(extra))

    def to_provider_messages(self) -> List[Dict[str, Any]]:
        return [m.to_provider() for m in self.messages]

    def count(self, kind: str) -> int:
        return sum(1 for m in self.messages if m.kind == kind)


def _history_entry(message: Message) -> ContextMessage:
    tool_calls = tuple(message.tool_calls) if message.tool_calls else None
    return ContextMessage(
        role=message.role,
        content=message.content or "",
        kind="history",
        name=message.name,
        tool_call_id=message.tool_call_id,
        tool_calls=tool_calls,
    )


def _pair_tool_messages(entries: List[ContextMessage]) -> List[ContextMessage]:
    """Keep tool calls and tool results only where both halves are present.

    Providers reject an assistant ``tool_calls`` message unless the tool
    messages directly after it answer every id, and reject a tool message
    whose call was not requested right before it. Unpaired assistant entries
    lose their calls (and vanish if they carried no text); unpaired tool
    results are dropped.
    """
    paired: List[ContextMessage] = []
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if entry.role == "tool":
            continue
        if not (entry.role == "assistant" and entry.tool_calls):
            paired.append(entry)
            continue
        results: List[ContextMessage] = []
        while index < len(entries) and entries[index].role == "tool":
            results.append(entries[index])
            index += 1
        ids = {call.get("id") for call in entry.tool_calls}
        if ids <= {r.tool_call_id for r in results}:
            paired.append(entry)
            paired.extend(r for r in results if r.tool_call_id in ids)
        elif entry.content:
            paired.append(replace(entry, tool_calls=None, tokens=0))
    return paired


class ContextAssembler:
    def __init__(
        self,
        *,
        system_prompt: str,
        context_window_tokens: int,
        reserved_output_tokens: int,
        memory_token_budget: int,
        document_token_budget: int,
        tool_result_token_limit: int,
    ) -> None:
        self.system_prompt = system_prompt
        self.context_window_tokens = context_window_tokens
        self.reserved_output_tokens = reserved_output_tokens
        self.memory_token_budget = memory_token_budget
        self.document_token_budget = document_token_budget
        self.tool_result_token_limit = tool_result_token_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextAssembler":
        return cls(
            system_prompt=settings.system_prompt,
            context_window_tokens=settings.context_window_tokens,
            reserved_output_tokens=settings.reserved_output_tokens,
            memory_token_budget=settings.memory_token_budget,
            document_token_budget=settings.document_token_budget,
            tool_result_token_limit=settings.tool_result_token_limit,
        )

    @property
    def ceiling_tokens(self) -> int:
        return self.context_window_tokens - self.reserved_output_tokens

    def system_message(self) -> ContextMessage:
        system = ContextMessage(role="system", content=self.system_prompt, kind="system")
        if system.tokens > self.ceiling_tokens:
            raise ContextBudgetExceededError(
                "system instructions exceed the context ceiling",
                detail={"system_tokens": system.tokens, "ceiling_tokens": self.ceiling_tokens},
            )
        return system

    @staticmethod
    def _fill_block(
        header: str, lines: Iterable[str], budget: int, kind: str
    ) -> Optional[ContextMessage]:
        """Greedily add lines to one system message without exceeding ``budget``."""
        kept: List[str] = []
        block: Optional[ContextMessage] = None
        for line in lines:
            candidate = ContextMessage(
                role="system", content="\n".join([header, *kept, line]), kind=kind
            )
            if candidate.tokens > budget:
                continue
            kept.append(line)
            block = candidate
        return block

    def assemble(
        self,
        *,
        user_message: str,
        history: Sequence[Message] = (),
        memories: Sequence[MemorySnippet] = (),
        documents: Sequence[DocumentSnippet] = (),
        summary: Optional[str] = None,
    ) -> ConversationContext:
        system = self.system_message()
        remaining = self.ceiling_tokens - system.tokens

        memory_block = self._fill_block(
            "What you remember about this user:",
            (f"- {m.content.strip()}" for m in memories if m.content.strip()),
            min(self.memory_token_budget, remaining),
            "memory",
        )
        if memory_block:
            remaining -= memory_block.tokens

        document_block = self._fill_block(
            "Excerpts from the user's documents:",
            (f"[{d.source}] {d.content.strip()}" for d in documents if d.content.strip()),
            min(self.document_token_budget, remaining),
            "document",
        )
        if document_block:
            remaining -= document_block.tokens

        current = ContextMessage(role="user", content=user_message, kind="current")
        if current.tokens > remaining:
            raise MessageTooLargeError(
                "message is too long for the model context window",
                detail={"message_tokens": current.tokens, "available_tokens": max(0, remaining)},
            )
        remaining -= current.tokens

        summary_msg: Optional[ContextMessage] = None
        if summary:
            candidate = ContextMessage(
                role="system",
                content=f"Summary of the earlier conversation:\n{summary}",
                kind="summary",
            )
            if candidate.tokens <= remaining:
                summary_msg = candidate
                remaining -= candidate.tokens

        kept_reversed: List[ContextMessage] = []
        for message in reversed(list(history)):
            entry = _history_entry(message)
            if entry.tokens > remaining:
                break
            kept_reversed.append(entry)
            remaining -= entry.tokens
        kept_history = _pair_tool_messages(list(reversed(kept_reversed)))

        dropped = len(history) - len(kept_history)
        if dropped:
            logger.info("context_history_truncated", dropped=dropped, kept=len(kept_history))

        ordered: List[ContextMessage] = [system]
        ordered.extend(m for m in (memory_block, document_block, summary_msg) if m)
        ordered.extend(kept_history)
        ordered.append(current)
        context = ConversationContext(messages=tuple(ordered), ceiling_tokens=self.ceiling_tokens)
        logger.debug(
            "context_assembled",
            estimated_tokens=context.estimated_tokens,
            ceiling_tokens=self.ceiling_tokens,
            history_kept=len(kept_history),
        )
        return context

    def tool_result_message(self, result: ToolResult) -> ContextMessage:
        content = truncate_to_tokens(result.as_message_content(), self.tool_result_token_limit)
        return ContextMessage(
            role="tool",
            content=content,
            kind="turn",
            name=result.name,
            tool_call_id=result.call_id,
        )

    def refit(self, context: ConversationContext) -> ConversationContext:
        """Drop oldest droppable entries until ``context`` fits its ceiling again."""
        if context.estimated_tokens <= context.ceiling_tokens:
            return context
        messages = list(context.messages)
        total = context.estimated_tokens
        for kind in _DROP_ORDER:
            while total > context.ceiling_tokens:
                index = next((i for i, m in enumerate(messages) if m.kind == kind), None)
                if index is None:
                    break
                total -= messages.pop(index).tokens
                # Tool results orphaned by the drop go with it
                while index < len(messages) and messages[index].kind == kind and messages[index].role == "tool":
                    total -= messages.pop(index).tokens
            if total <= context.ceiling_tokens:
                break
        if total > context.ceiling_tokens:
            raise ContextBudgetExceededError(
                "turn content exceeds the context ceiling",
                detail={"estimated_tokens": total, "ceiling_tokens": context.ceiling_tokens},
            )
        logger.info(
            "context_refit",
            before_tokens=context.estimated_tokens,
            after_tokens=total,
            ceiling_tokens=context.ceiling_tokens,
        )
        return replace(context, messages=tuple(messages))
