"""Inference provider adapter for Cloudflare Workers AI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "@cf/meta/llama-3.3-70b-instruct-fp8-fast"
DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"
UA = "chat-proxy/0.1"


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass
class GenerationConfig:
    temperature: float = 0.8
    max_tokens: int = 1000


class Provider(Protocol):
    def generate(self, messages: List[Dict[str, str]], config: GenerationConfig) -> str: ...


def _describe_failure(status: Optional[int], body: Any) -> str:
    """Flatten an error payload into one string, e.g. ``"429: 3040: Capacity exceeded"``."""
    parts: List[str] = []
    if status is not None:
        parts.append(str(status))
    if isinstance(body, dict):
        for err in body.get("errors") or []:
            if isinstance(err, dict):
                code = err.get("code")
                msg = err.get("message", "")
                parts.append(f"{code}: {msg}" if code is not None else str(msg))
            else:
                parts.append(str(err))
    elif body:
        parts.append(str(body))
    return ": ".join(parts) or "unknown provider error"


# -----------------------------
# Workers AI wrapper
# -----------------------------

class WorkersAIProvider:
    """Thin wrapper around the Workers AI REST ``ai/run`` endpoint."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Parameters
        ----------
        account_id : str
            Cloudflare account owning the Workers AI binding.
        api_token : str
            API token with Workers AI read permission.
        timeout : float
            Upper bound in seconds for one call; expiry raises ProviderError.
        client : httpx.Client | None
            Pre-built client (tests inject one with a MockTransport).
        """
        self.model = model
        self.url = f"{base_url.rstrip('/')}/accounts/{account_id}/ai/run/{model}"
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            headers={"User-Agent": UA},
        )
        self._headers = {"Authorization": f"Bearer {api_token}"}

    def generate(self, messages: List[Dict[str, str]], config: GenerationConfig) -> str:
        payload = {
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        try:
            r = self._client.post(self.url, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            raise ProviderError(f"provider call timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"provider request failed: {e}") from e

        try:
            body = r.json()
        except ValueError:
            body = r.text

        if r.is_error or not isinstance(body, dict) or not body.get("success", True):
            raise ProviderError(_describe_failure(r.status_code, body))

        result = body.get("result") or {}
        text = result.get("response") if isinstance(result, dict) else None
        return text if isinstance(text, str) else ""

    def close(self) -> None:
        self._client.close()


# -----------------------------
# Convenience factory
# -----------------------------

def create_from_config(cfg: Dict[str, Any]) -> WorkersAIProvider:
    """Create a provider from a config dict (e.g., loaded YAML)."""
    p_cfg = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    account_id = p_cfg.get("account_id")
    api_token = p_cfg.get("api_token")
    if not account_id or not api_token:
        raise RuntimeError(
            "provider.account_id and provider.api_token must be configured "
            "(e.g. CHAT_PROXY__PROVIDER__ACCOUNT_ID / CHAT_PROXY__PROVIDER__API_TOKEN)."
        )
    return WorkersAIProvider(
        str(account_id),
        str(api_token),
        model=str(p_cfg.get("model") or DEFAULT_MODEL),
        base_url=str(p_cfg.get("base_url") or DEFAULT_BASE_URL),
        timeout=float(p_cfg.get("timeout", 60.0)),
    )


def generation_from_config(cfg: Dict[str, Any]) -> GenerationConfig:
    p_cfg = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    return GenerationConfig(
        temperature=float(p_cfg.get("temperature", 0.8)),
        max_tokens=int(p_cfg.get("max_tokens", 1000)),
    )
