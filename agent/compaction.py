"""Conversation compaction -- summarize old turns to free context space.

The history is split at a *cut point*: everything before it is sent to the
model for a structured summary, everything from it on is kept verbatim.
The cut is chosen by walking backward from the newest message until
``keep_recent_tokens`` worth of text has been collected, and never lands
on a tool result (those stay with the assistant turn that requested them).

The compacted history is one system message carrying the summary followed
by the preserved recent messages.

Token counts are the same rough ~4 chars/token estimate used elsewhere;
they decide *when* to compact, not how the provider bills.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from agent.model_metadata import estimate_tokens_rough

logger = logging.getLogger(__name__)

DEFAULT_RESERVE_TOKENS = 16384
DEFAULT_KEEP_RECENT_TOKENS = 20000

SUMMARY_HEADER = "[Conversation summary - earlier messages were compacted]"

SUMMARY_SYSTEM_PROMPT = (
    "You are a context summarization assistant. Your task is to read a conversation "
    "between a user and an AI assistant that uses tools, then produce a structured "
    "summary following the exact format specified.\n\n"
    "Do NOT continue the conversation. Do NOT respond to any questions in the "
    "conversation. ONLY output the structured summary."
)

SUMMARY_PROMPT = """The messages above are a conversation to summarize. Create a structured context checkpoint summary that another LLM will use to continue the work.

Use this EXACT format:

## Goal
[What is the user trying to accomplish? Can be multiple items if the session covers different tasks.]

## Constraints & Preferences
- [Any constraints, preferences, or requirements mentioned by user]
- [Or "(none)" if none were mentioned]

## Progress
### Done
- [x] [Completed tasks/changes]

### In Progress
- [ ] [Current work]

### Blocked
- [Issues preventing progress, if any]

## Key Decisions
- **[Decision]**: [Brief rationale]

## Next Steps
1. [Ordered list of what should happen next]

## Critical Context
- [Any data, examples, or references needed to continue]
- [Or "(none)" if not applicable]

Keep each section concise. Preserve exact file paths, function names, and error messages."""

_ROLE_LABELS = {
    "user": "[User]",
    "assistant": "[Assistant]",
    "tool": "[Tool result]",
    "system": "[System]",
}


class CompactionError(Exception):
    """The summary could not be produced; the history is left unchanged."""


@dataclass
class CompactionOptions:
    """``reserve_tokens`` is the headroom kept free for the model's reply.

    ``auto`` compacts before a step once the history no longer fits in
    ``context_length - reserve_tokens``.
    """

    auto: bool = False
    reserve_tokens: int = DEFAULT_RESERVE_TOKENS
    keep_recent_tokens: int = DEFAULT_KEEP_RECENT_TOKENS
    summary_prompt: Optional[str] = None
    max_summary_tokens: Optional[int] = None


@dataclass
class CompactionResult:
    summary: str
    original_tokens: int
    compacted_tokens: int
    messages_removed: int


def message_text(message: Dict[str, Any]) -> str:
    """The text a message puts in front of the model, tool-call arguments included."""
    content = message.get("content")
    if isinstance(content, list):
        text = "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    else:
        text = content or ""
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        text += (function.get("name") or "") + (function.get("arguments") or "")
    return text


def estimate_message_tokens(messages: List[Dict[str, Any]]) -> int:
    return sum(estimate_tokens_rough(message_text(m)) for m in messages)


def should_compact(messages: List[Dict[str, Any]], context_length: int, reserve_tokens: int) -> bool:
    """True once the history no longer leaves ``reserve_tokens`` free.

    The reserve is capped at a quarter of the window so a small model is not
    compacted on every turn.
    """
    if context_length <= 0 or reserve_tokens <= 0:
        return False
    reserve = min(reserve_tokens, context_length // 4)
    return estimate_message_tokens(messages) > context_length - reserve


def _valid_cut(message: Dict[str, Any]) -> bool:
    return message.get("role") != "tool"


def find_cut_point(messages: List[Dict[str, Any]], keep_recent_tokens: int = DEFAULT_KEEP_RECENT_TOKENS) -> int:
    """Index splitting summarized messages (before) from kept ones (from).

    Returns 0 when everything fits in the keep budget, or when fewer than two
    messages would be summarized.
    """
    if len(messages) < 2:
        return 0
    if keep_recent_tokens <= 0:
        keep_recent_tokens = DEFAULT_KEEP_RECENT_TOKENS

    accumulated = 0
    for i in range(len(messages) - 1, -1, -1):
        accumulated += estimate_tokens_rough(message_text(messages[i]))
        if accumulated <= keep_recent_tokens:
            continue
        # The newest message is always kept, even when it alone is over budget
        cut = min(i + 1, len(messages) - 1)
        while cut < len(messages) and not _valid_cut(messages[cut]):
            cut += 1
        if cut >= len(messages) or cut < 2:
            return 0
        return cut
    return 0


def force_cut_point(messages: List[Dict[str, Any]]) -> int:
    """Cut that keeps only the last non-tool message; 0 if there is none."""
    for i in range(len(messages) - 1, 1, -1):
        if _valid_cut(messages[i]):
            return i
    return 0


def serialize_messages(messages: List[Dict[str, Any]]) -> str:
    parts = []
    for message in messages:
        role = message.get("role", "")
        label = _ROLE_LABELS.get(role, f"[{role}]")
        parts.append(f"{label}:\n{message_text(message)}\n\n")
    return "".join(parts)


def compact(
    client,
    model: str,
    messages: List[Dict[str, Any]],
    options: Optional[CompactionOptions] = None,
    custom_instructions: str = "",
    force: bool = True,
    timeout: float = 120.0,
) -> Tuple[Optional[CompactionResult], List[Dict[str, Any]]]:
    """Summarize the older part of ``messages``.

    Returns ``(None, messages)`` when there is nothing to summarize.  With
    ``force`` (a user-requested compaction) a history that fits the keep
    budget is still cut just before its last message.
    """
    options = options or CompactionOptions()
    if len(messages) < 2:
        return None, messages

    cut = find_cut_point(messages, options.keep_recent_tokens)
    if cut == 0 and force:
        cut = force_cut_point(messages)
    if cut == 0:
        return None, messages

    old, recent = messages[:cut], messages[cut:]
    original_tokens = estimate_message_tokens(messages)

    prompt = options.summary_prompt or SUMMARY_PROMPT
    if custom_instructions:
        prompt += "\n\nAdditional instructions: " + custom_instructions

    api_kwargs: Dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": serialize_messages(old) + "\n\n" + prompt},
        ],
        "timeout": timeout,
    }
    if options.max_summary_tokens:
        api_kwargs["max_tokens"] = options.max_summary_tokens

    try:
        response = client.chat.completions.create(**api_kwargs)
    except Exception as e:
        raise CompactionError(f"compaction summarisation failed: {e}") from e

    summary = ""
    if response.choices:
        summary = (response.choices[0].message.content or "").strip()
    if not summary:
        raise CompactionError("compaction produced an empty summary")

    compacted = [{"role": "system", "content": f"{SUMMARY_HEADER}\n\n{summary}"}] + list(recent)
    result = CompactionResult(
        summary=summary,
        original_tokens=original_tokens,
        compacted_tokens=estimate_message_tokens(compacted),
        messages_removed=len(old),
    )
    logger.info(
        "Compacted %d messages: ~%d -> ~%d tokens",
        result.messages_removed, result.original_tokens, result.compacted_tokens,
    )
    return result, compacted
