"""Error taxonomy for the chat proxy.

Provider failures are mapped to a small, stable set of kinds by matching
substrings of the provider's error text. The matching happens once, where
the provider adapter raises, so callers only ever see an :class:`ErrorKind`.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    MODEL_UNAVAILABLE = "model_unavailable"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorKind.MODEL_UNAVAILABLE: (
        "AI model not available. This might be due to usage limits "
        "or model access restrictions."
    ),
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a moment before trying again.",
    ErrorKind.QUOTA_EXCEEDED: "Usage limit reached. Please check your Cloudflare Workers AI plan.",
    ErrorKind.UNKNOWN: "Sorry, I encountered an error processing your request.",
}

# Checked in order; first match wins.
_RULES = (
    (ErrorKind.MODEL_UNAVAILABLE, ("5007",)),
    (ErrorKind.RATE_LIMITED, ("rate limit", "429")),
    (ErrorKind.QUOTA_EXCEEDED, ("usage", "quota")),
)


def classify(detail: Optional[str]) -> ErrorKind:
    """Return the error kind for a provider error message."""
    text = (detail or "").lower()
    for kind, needles in _RULES:
        if any(n in text for n in needles):
            return kind
    return ErrorKind.UNKNOWN


class ChatProxyError(Exception):
    """Base class for errors raised by the chat proxy core."""


class InvalidRequestError(ChatProxyError, ValueError):
    """Malformed input, rejected before touching the store or the provider."""


class ProviderError(ChatProxyError):
    """The inference provider failed; carries a classified :class:`ErrorKind`."""

    def __init__(self, detail: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.kind = kind if kind is not None else classify(detail)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]
