from __future__ import annotations

import gc
import threading
import time
from pathlib import Path

import pytest

from chat_proxy.actor import FALLBACK_REPLY, ActorRegistry
from chat_proxy.errors import ErrorKind, InvalidRequestError, ProviderError
from chat_proxy.provider import GenerationConfig
from chat_proxy.store import DiskStore, MemoryStore

from conftest import EchoProvider, FailingProvider


def test_unseen_conversation_is_empty_and_clearable():
    reg = ActorRegistry(MemoryStore(), EchoProvider())
    assert reg.get_history("never-seen") == {"history": []}
    assert reg.clear("never-seen") == {"success": True}
    assert reg.get_history("never-seen") == {"history": []}


def test_chat_appends_user_then_assistant(tmp_data_dir: Path, echo_provider):
    reg = ActorRegistry(DiskStore(str(tmp_data_dir)), echo_provider)

    result = reg.chat("c1", "hi")
    assert result == {"response": "echo: hi", "conversationId": "c1"}

    history = reg.get_history("c1")["history"]
    assert [(m["role"], m["content"]) for m in history] == [
        ("user", "hi"),
        ("assistant", "echo: hi"),
    ]
    assert history[0]["timestamp"] <= history[1]["timestamp"]


def test_window_is_system_prompt_plus_history(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider, system_prompt="be brief")
    reg.chat("c", "one")
    reg.chat("c", "two")

    window = echo_provider.calls[-1]
    assert window[0] == {"role": "system", "content": "be brief"}
    assert window[1:] == [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "echo: one"},
        {"role": "user", "content": "two"},
    ]
    assert all("timestamp" not in m for m in window)


def test_window_caps_at_sixteen_after_many_turns(echo_provider):
    store = MemoryStore()
    reg = ActorRegistry(store, echo_provider)
    for i in range(100):
        reg.chat("long", f"turn {i}")

    assert all(len(w) <= 16 for w in echo_provider.calls)
    last = echo_provider.calls[-1]
    assert len(last) == 16
    assert last[0]["role"] == "system"
    assert last[-1] == {"role": "user", "content": "turn 99"}
    # Full transcript is kept untruncated.
    assert len(reg.get_history("long")["history"]) == 200


def test_generation_config_is_passed_through(echo_provider):
    gen = GenerationConfig(temperature=0.2, max_tokens=64)
    reg = ActorRegistry(MemoryStore(), echo_provider, generation=gen)
    reg.chat("c", "hello")
    assert echo_provider.configs == [gen]


def test_replace_history_discards_prior_content(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    reg.chat("c", "old message")

    supplied = [
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
    ]
    reg.chat("c", "new", replace_history=supplied)

    history = reg.get_history("c")["history"]
    assert len(history) == len(supplied) + 2
    assert [{"role": m["role"], "content": m["content"]} for m in history[:3]] == supplied
    assert history[3]["role"] == "user" and history[3]["content"] == "new"
    assert history[4]["role"] == "assistant"
    assert all("old message" not in m["content"] for m in history)


def test_empty_replace_history_still_resets(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    reg.chat("c", "first")
    reg.chat("c", "second", replace_history=[])
    history = reg.get_history("c")["history"]
    assert [m["content"] for m in history] == ["second", "echo: second"]


def test_clear_removes_history(tmp_data_dir: Path, echo_provider):
    store = DiskStore(str(tmp_data_dir))
    reg = ActorRegistry(store, echo_provider)
    reg.chat("c", "hi")
    assert reg.clear("c") == {"success": True}
    assert reg.get_history("c") == {"history": []}
    assert store.keys() == []


def test_rate_limit_leaves_history_untouched():
    store = MemoryStore()
    ok = ActorRegistry(store, EchoProvider())
    ok.chat("c", "hi")
    before = store.get("c")

    failing = FailingProvider("429: 3040: Capacity temporarily exceeded")
    reg = ActorRegistry(store, failing)
    with pytest.raises(ProviderError) as excinfo:
        reg.chat("c", "again")

    assert excinfo.value.kind is ErrorKind.RATE_LIMITED
    assert failing.calls == 1
    assert store.get("c") == before


def test_failure_on_new_conversation_writes_nothing():
    store = MemoryStore()
    reg = ActorRegistry(store, FailingProvider("boom"))
    with pytest.raises(ProviderError) as excinfo:
        reg.chat("fresh", "hello")
    assert excinfo.value.kind is ErrorKind.UNKNOWN
    assert store.get("fresh") is None


class _SilentProvider:
    def generate(self, messages, config):
        return ""


def test_empty_reply_uses_fallback_text():
    reg = ActorRegistry(MemoryStore(), _SilentProvider())
    assert reg.chat("c", "hi")["response"] == FALLBACK_REPLY
    assert reg.get_history("c")["history"][-1]["content"] == FALLBACK_REPLY


@pytest.mark.parametrize("message", ["", "   ", None])
def test_empty_message_rejected_before_io(message):
    store = MemoryStore()
    provider = EchoProvider()
    reg = ActorRegistry(store, provider)
    with pytest.raises(InvalidRequestError):
        reg.chat("c", message)
    assert provider.calls == []
    assert store.keys() == []


def test_invalid_replace_role_rejected(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    with pytest.raises(InvalidRequestError):
        reg.chat("c", "hi", replace_history=[{"role": "system", "content": "x"}])
    assert echo_provider.calls == []


def test_registry_requires_conversation_id(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    with pytest.raises(InvalidRequestError):
        reg.get("")


def test_registry_returns_one_actor_per_id(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    assert reg.get("a") is reg.get("a")
    a = reg.get("a")
    b = reg.get("b")
    assert a is not b
    assert len(reg) == 2


def test_registry_drops_idle_actors(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    for i in range(2000):
        reg.get_history(f"visitor-{i}")
        reg.clear(f"visitor-{i}")
    reg.chat("kept", "hi")
    gc.collect()
    assert len(reg) == 0
    # History outlives the actor that wrote it.
    assert len(reg.get_history("kept")["history"]) == 2


def test_actor_in_use_is_shared(echo_provider):
    reg = ActorRegistry(MemoryStore(), echo_provider)
    held = reg.get("busy")
    gc.collect()
    assert reg.get("busy") is held
    assert len(reg) == 1


class _TrackingProvider:
    """Sleeps briefly and records how many calls overlap."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def generate(self, messages, config):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return f"echo: {messages[-1]['content']}"


def test_same_conversation_is_never_interleaved():
    provider = _TrackingProvider()
    reg = ActorRegistry(MemoryStore(), provider)
    errors = []

    def worker(i: int) -> None:
        try:
            reg.chat("shared", f"msg {i}")
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert provider.max_active == 1
    history = reg.get_history("shared")["history"]
    assert len(history) == 20
    for user, assistant in zip(history[::2], history[1::2]):
        assert user["role"] == "user"
        assert assistant["role"] == "assistant"
        assert assistant["content"] == f"echo: {user['content']}"


class _BarrierProvider:
    """Blocks until two calls are in flight at once."""

    def __init__(self) -> None:
        self.barrier = threading.Barrier(2, timeout=5)

    def generate(self, messages, config):
        self.barrier.wait()
        return f"echo: {messages[-1]['content']}"


def test_different_conversations_run_in_parallel():
    reg = ActorRegistry(MemoryStore(), _BarrierProvider())
    errors = []

    def worker(cid: str) -> None:
        try:
            reg.chat(cid, f"hello from {cid}")
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(cid,)) for cid in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    for cid in ("a", "b"):
        contents = [m["content"] for m in reg.get_history(cid)["history"]]
        assert contents == [f"hello from {cid}", f"echo: hello from {cid}"]
