"""Per-conversation actors: one owner of each conversation's history.

Every public operation on a :class:`ConversationActor` runs under that
actor's lock, so a load -> provider call -> persist sequence for one
conversation id never interleaves with another operation on the same id.
Actors for different ids share nothing mutable and run in parallel.

The registry only holds actors weakly: an actor lives while some caller is
using it and is dropped once the last operation on its id returns.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import weakref
from typing import Any, Dict, List, Optional, Sequence

from . import history as hist
from .errors import InvalidRequestError, ProviderError
from .provider import GenerationConfig, Provider
from .store import Store

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I apologize, but I couldn't generate a response right now."


class ConversationActor:
    """Owns the history for a single conversation id."""

    def __init__(
        self,
        conversation_id: str,
        store: Store,
        provider: Provider,
        *,
        generation: Optional[GenerationConfig] = None,
        system_prompt: str = hist.DEFAULT_SYSTEM_PROMPT,
        window_size: int = hist.DEFAULT_WINDOW,
    ) -> None:
        self.conversation_id = conversation_id
        self.store = store
        self.provider = provider
        self.generation = generation or GenerationConfig()
        self.system_prompt = system_prompt
        self.window_size = window_size
        self._lock = threading.Lock()
        # Async callers wait here instead of parking a worker thread on _lock.
        self.queue = asyncio.Lock()

    # --------- persistence ----------
    def _load(self) -> List[hist.Message]:
        return hist.loads(self.store.get(self.conversation_id))

    def _save(self, history: List[hist.Message]) -> None:
        self.store.put(self.conversation_id, hist.dumps(history))

    # --------- public API ----------
    def chat(
        self,
        message: str,
        replace_history: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, str]:
        """Run one turn and return ``{"response", "conversationId"}``.

        Raises :class:`InvalidRequestError` before any I/O on bad input and
        :class:`ProviderError` if the provider fails. History is written only
        when the whole turn succeeds.
        """
        if not isinstance(message, str) or not message.strip():
            raise InvalidRequestError("Message cannot be empty.")
        replacement = None
        if replace_history is not None:
            replacement = hist.stamp_replacement(replace_history)

        with self._lock:
            preview = message[:100] + ("..." if len(message) > 100 else "")
            logger.info("[%s] user message: %s", self.conversation_id, preview)

            if replacement is not None:
                logger.info("[%s] replacing history with %d messages", self.conversation_id, len(replacement))
                history = replacement
            else:
                history = self._load()
                logger.debug("[%s] current history length: %d", self.conversation_id, len(history))

            history.append(hist.make_message("user", message))

            window = hist.build_window(history, self.system_prompt, self.window_size)
            logger.debug(
                "[%s] sending %d messages (roles: %s, ~%d tokens)",
                self.conversation_id,
                len(window),
                ", ".join(m["role"] for m in window),
                hist.estimate_tokens(window),
            )

            start = time.perf_counter()
            try:
                text = self.provider.generate(window, self.generation)
            except ProviderError as e:
                logger.exception(
                    "[%s] provider error (%s): %s", self.conversation_id, e.kind.value, e.detail
                )
                raise
            logger.info("[%s] provider call took %.0fms", self.conversation_id, (time.perf_counter() - start) * 1000)

            reply = text or FALLBACK_REPLY
            history.append(hist.make_message("assistant", reply))
            self._save(history)
            logger.info("[%s] saved history with %d messages", self.conversation_id, len(history))

            return {"response": reply, "conversationId": self.conversation_id}

    def get_history(self) -> Dict[str, List[hist.Message]]:
        with self._lock:
            history = self._load()
        logger.debug("[%s] history length: %d", self.conversation_id, len(history))
        return {"history": history}

    def clear(self) -> Dict[str, bool]:
        with self._lock:
            self.store.delete(self.conversation_id)
        logger.info("[%s] cleared conversation history", self.conversation_id)
        return {"success": True}


class ActorRegistry:
    """Hands out exactly one :class:`ConversationActor` per conversation id."""

    def __init__(
        self,
        store: Store,
        provider: Provider,
        *,
        generation: Optional[GenerationConfig] = None,
        system_prompt: str = hist.DEFAULT_SYSTEM_PROMPT,
        window_size: int = hist.DEFAULT_WINDOW,
    ) -> None:
        self.store = store
        self.provider = provider
        self.generation = generation or GenerationConfig()
        self.system_prompt = system_prompt
        self.window_size = window_size
        self._actors: weakref.WeakValueDictionary[str, ConversationActor] = weakref.WeakValueDictionary()
        self._lock = threading.Lock()

    def get(self, conversation_id: str) -> ConversationActor:
        if not isinstance(conversation_id, str) or not conversation_id:
            raise InvalidRequestError("conversation id is required")
        with self._lock:
            actor = self._actors.get(conversation_id)
            if actor is None:
                actor = ConversationActor(
                    conversation_id,
                    self.store,
                    self.provider,
                    generation=self.generation,
                    system_prompt=self.system_prompt,
                    window_size=self.window_size,
                )
                self._actors[conversation_id] = actor
            return actor

    def __len__(self) -> int:
        """Number of actors currently in use."""
        return len(self._actors)

    # --------- convenience ----------
    def chat(
        self,
        conversation_id: str,
        message: str,
        replace_history: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, str]:
        return self.get(conversation_id).chat(message, replace_history)

    def get_history(self, conversation_id: str) -> Dict[str, List[hist.Message]]:
        return self.get(conversation_id).get_history()

    def clear(self, conversation_id: str) -> Dict[str, bool]:
        return self.get(conversation_id).clear()
