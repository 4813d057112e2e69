"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_proxy.errors import ProviderError  # noqa: E402
from chat_proxy.provider import GenerationConfig  # noqa: E402


class EchoProvider:
    """Spy provider that records every window and echoes the last user message."""

    model = "echo"

    def __init__(self) -> None:
        self.calls: List[List[Dict[str, str]]] = []
        self.configs: List[GenerationConfig] = []
        self._lock = threading.Lock()

    def generate(self, messages: List[Dict[str, str]], config: GenerationConfig) -> str:
        with self._lock:
            self.calls.append(messages)
            self.configs.append(config)
        return f"echo: {messages[-1]['content']}"


class FailingProvider:
    """Provider that always fails with the given error text."""

    model = "failing"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        self.calls = 0

    def generate(self, messages: List[Dict[str, str]], config: GenerationConfig) -> str:
        self.calls += 1
        raise ProviderError(self.detail)


@pytest.fixture(scope="function")
def echo_provider() -> EchoProvider:
    return EchoProvider()


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for conversation files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("CHAT_PROXY_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_PROXY__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def config_file(tmp_path: Path, tmp_data_dir: Path, clean_env) -> Path:
    """Minimal config pointing the disk store at a temp directory."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "memory:\n"
        "  backend: disk\n"
        f"  data_dir: {tmp_data_dir.as_posix()}\n"
        "server:\n"
        "  cors_origins: ['*']\n",
        encoding="utf-8",
    )
    return path
