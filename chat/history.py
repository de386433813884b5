"""
Conversation history curation.

Pure functions that validate, sanitize and trim the message history sent with
every document-chat request. Entries are ``{"role", "content"}`` dicts with
role ``user`` or ``assistant``.
"""

import math
import re
from typing import Any, Dict, List, Optional, Sequence
from pydantic import BaseModel

from utils.errors import ValidationFailure
import config

VALID_ROLES = ("user", "assistant")
BACKEND_MODEL_ROLE = "model"

_WHITESPACE_RUN = re.compile(r"\s+")
_ROLE_LABEL = re.compile(r"(system|assistant|user):\s*", re.IGNORECASE)


class HistoryValidation(BaseModel):
    is_valid: bool
    error: Optional[str] = None
    too_long: bool = False


class ConversationSummary(BaseModel):
    message_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    total_characters: int = 0
    estimated_tokens: int = 0


class PromptPayload(BaseModel):
    contents: List[Dict[str, Any]]
    total_tokens: int


def validate_history(messages: Any) -> HistoryValidation:
    """Check a history against the request limits.

    Returns the first violation found rather than an aggregate.
    """
    if not isinstance(messages, (list, tuple)):
        return HistoryValidation(is_valid=False, error="Messages must be an array")

    if len(messages) > config.MAX_HISTORY_MESSAGES:
        return HistoryValidation(
            is_valid=False,
            error=f"Conversation history too long (max {config.MAX_HISTORY_MESSAGES} messages)",
            too_long=True,
        )

    for i, message in enumerate(messages):
        if not isinstance(message, dict) or not message.get("role") or not message.get("content"):
            return HistoryValidation(is_valid=False, error=f"Message {i} missing role or content")

        role = message["role"]
        content = message["content"]

        if role not in VALID_ROLES:
            return HistoryValidation(is_valid=False, error=f"Message {i} has invalid role: {role}")

        if not isinstance(content, str):
            return HistoryValidation(is_valid=False, error=f"Message {i} content must be a string")

        if len(content) > config.MAX_MESSAGE_LENGTH:
            return HistoryValidation(
                is_valid=False,
                error=f"Message {i} too long (max {config.MAX_MESSAGE_LENGTH} characters)",
            )

    return HistoryValidation(is_valid=True)


def trim_history(messages: Any, max_messages: int = config.MAX_CONVERSATION_HISTORY) -> List[Dict[str, Any]]:
    """Keep the most recent ``max_messages`` entries.

    If the kept window has an odd length greater than one, the oldest entry is
    dropped too so the window tends to start on a user/assistant pair. This is
    a heuristic: an unbalanced history still yields an unbalanced window.
    A ``max_messages`` of zero or less keeps nothing.
    """
    if not isinstance(messages, (list, tuple)) or max_messages <= 0:
        return []

    trimmed = list(messages[-max_messages:])
    if len(trimmed) % 2 != 0 and len(trimmed) > 1:
        return trimmed[1:]
    return trimmed


def estimate_tokens(text: Any) -> int:
    """Rough token count, one token per four characters."""
    if not text or not isinstance(text, str):
        return 0
    return math.ceil(len(text) / 4)


def estimate_history_tokens(messages: Any) -> int:
    if not isinstance(messages, (list, tuple)):
        return 0
    return sum(estimate_tokens(message.get("content")) for message in messages)


def is_history_balanced(messages: Sequence[Dict[str, Any]]) -> bool:
    """True when user and assistant counts differ by at most one."""
    if not messages:
        return True
    user_count = sum(1 for m in messages if m.get("role") == "user")
    assistant_count = sum(1 for m in messages if m.get("role") == "assistant")
    return abs(user_count - assistant_count) <= 1


def conversation_summary(messages: Any) -> ConversationSummary:
    if not isinstance(messages, (list, tuple)):
        return ConversationSummary()

    return ConversationSummary(
        message_count=len(messages),
        user_messages=sum(1 for m in messages if m.get("role") == "user"),
        assistant_messages=sum(1 for m in messages if m.get("role") == "assistant"),
        total_characters=sum(len(m.get("content") or "") for m in messages),
        estimated_tokens=estimate_history_tokens(messages),
    )


def sanitize_content(content: Any) -> str:
    """Collapse whitespace, strip role labels and cap the length.

    Role labels (``system:``, ``assistant:``, ``user:``) are removed anywhere
    in the text so stored content cannot impersonate another speaker.
    """
    if not content or not isinstance(content, str):
        return ""

    sanitized = _WHITESPACE_RUN.sub(" ", content.strip())
    sanitized = _ROLE_LABEL.sub("", sanitized)
    return sanitized[:config.MAX_MESSAGE_LENGTH]


def prepare_for_storage(messages: Any) -> List[Dict[str, Any]]:
    """Sanitized copies of messages with token metadata attached."""
    if not isinstance(messages, (list, tuple)):
        return []

    return [
        {
            "role": message.get("role"),
            "content": sanitize_content(message.get("content")),
            "message_metadata": {"tokens": estimate_tokens(message.get("content"))},
        }
        for message in messages
    ]


def format_history_for_backend(messages: Any) -> List[Dict[str, Any]]:
    """Map stored turns to backend turns; ``assistant`` becomes ``model``."""
    if not isinstance(messages, (list, tuple)):
        return []

    return [
        {
            "role": "user" if message.get("role") == "user" else BACKEND_MODEL_ROLE,
            "parts": [{"text": message.get("content")}],
        }
        for message in messages
    ]


def build_prompt(user_message: str, history: Any) -> PromptPayload:
    """Ordered backend turns with the new user message last."""
    if not user_message:
        raise ValidationFailure("User message is required")

    contents = format_history_for_backend(history)
    contents.append({"role": "user", "parts": [{"text": user_message}]})

    return PromptPayload(
        contents=contents,
        total_tokens=estimate_history_tokens(history) + estimate_tokens(user_message),
    )
