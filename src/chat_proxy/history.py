"""Conversation history: message records, serialization and prompt windows."""
from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Optional, TypedDict

from .errors import InvalidRequestError

ROLES = ("system", "user", "assistant")
REPLACE_ROLES = ("user", "assistant")

DEFAULT_WINDOW = 15

DEFAULT_SYSTEM_PROMPT = (
    "You are a highly intelligent AI assistant with expertise in various fields. "
    "You provide clear, helpful, and engaging responses. You can assist with coding, "
    "research, creative tasks, and general inquiries. Always be truthful and direct."
)


class Message(TypedDict):
    """A single conversation message as persisted."""

    role: str        # "user" | "assistant" | "system"
    content: str
    timestamp: int   # epoch milliseconds


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def make_message(role: str, content: str, timestamp: Optional[int] = None) -> Message:
    return {
        "role": role,
        "content": content,
        "timestamp": now_ms() if timestamp is None else timestamp,
    }


def stamp_replacement(entries: Iterable[Dict[str, Any]]) -> List[Message]:
    """Turn a caller-supplied transcript into history, stamped with the current time.

    Only ``user`` and ``assistant`` entries are accepted; order is preserved.
    """
    out: List[Message] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise InvalidRequestError(f"replaceHistory[{i}] must be an object")
        role = entry.get("role")
        content = entry.get("content")
        if role not in REPLACE_ROLES:
            raise InvalidRequestError(f"replaceHistory[{i}] has invalid role {role!r}")
        if not isinstance(content, str):
            raise InvalidRequestError(f"replaceHistory[{i}] content must be a string")
        out.append(make_message(role, content))
    return out


def build_window(
    history: List[Message],
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    size: int = DEFAULT_WINDOW,
) -> List[Dict[str, str]]:
    """System instruction followed by the last ``size`` history entries, oldest first."""
    recent = history[-size:] if size > 0 else []
    window = [{"role": "system", "content": system_prompt}]
    window.extend({"role": m["role"], "content": m["content"]} for m in recent)
    return window


def estimate_tokens(window: List[Dict[str, str]]) -> int:
    # Rough whitespace word count; only used for logging.
    return sum(len(m["content"].split(" ")) for m in window)


def dumps(history: List[Message]) -> str:
    return json.dumps(history, ensure_ascii=False)


def loads(raw: Optional[str]) -> List[Message]:
    if raw is None:
        return []
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("stored conversation history must be a JSON list")
    return data
