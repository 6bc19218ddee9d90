"""Chat-completions client for the external text-completion service."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import EmptyCompletion, HttpError, NetworkError, NoApiConfig

logger = logging.getLogger(__name__)


# -----------------------------
# Config
# -----------------------------
@dataclass
class ApiConfig:
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float = 0.7
    timeout: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.base_url.strip() and self.model.strip())

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ApiConfig":
        api = (cfg or {}).get("api", {}) or {}
        return cls(
            base_url=str(api.get("base_url") or ""),
            api_key=str(api.get("api_key") or ""),
            model=str(api.get("model") or ""),
            temperature=float(api.get("temperature", 0.7)),
            timeout=float(api.get("timeout", 60.0)),
        )


def chat_url(base_url: str) -> str:
    """Normalise a configured base URL to its ``/chat/completions`` endpoint."""
    trimmed = re.sub(r"\s+", "", base_url)
    root = re.sub(r"/+(chat/completions|completions)/*$", "", trimmed, flags=re.IGNORECASE)
    return root.rstrip("/") + "/chat/completions"


def extract_content(data: Any) -> str:
    """Pull the reply text out of the many response shapes vendors use."""
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") if isinstance(data.get("choices"), list) else []
    first = choices[0] if choices and isinstance(choices[0], dict) else {}
    candidates = [
        (first.get("message") or {}).get("content") if isinstance(first.get("message"), dict) else None,
        first.get("text"),
    ]
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        msg = choice.get("message")
        if isinstance(msg, dict):
            candidates.append(msg.get("content"))
        candidates.append(choice.get("text"))
    msg = data.get("message")
    if isinstance(msg, dict):
        candidates.append(msg.get("content"))
    candidates += [data.get("content"), data.get("text")]
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return ""


# -----------------------------
# Client
# -----------------------------
class CompletionClient:
    """One POST per call, never retried here.

    ``transport`` is forwarded to :class:`httpx.AsyncClient` so tests can plug
    in :class:`httpx.MockTransport`.
    """

    def __init__(self, config: ApiConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.config = config
        self._transport = transport

    async def complete(self, system_prompt: str, user_message: str) -> str:
        cfg = self.config
        if not cfg.configured:
            raise NoApiConfig("API base_url and model must be configured")

        headers = {"Content-Type": "application/json"}
        if cfg.api_key:
            headers["Authorization"] = f"Bearer {cfg.api_key}"
        body = {
            "model": cfg.model,
            "temperature": cfg.temperature,
            "messages": self._build_messages(system_prompt, user_message),
        }
        url = chat_url(cfg.base_url)

        try:
            async with httpx.AsyncClient(timeout=cfg.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Completion request to %s failed: %s", url, e)
            raise NetworkError(str(e)) from e

        if resp.status_code >= 400:
            logger.error("Completion service returned %s: %s", resp.status_code, resp.text[:200])
            raise HttpError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise EmptyCompletion() from e

        text = extract_content(data)
        if not text:
            finish = None
            choices = data.get("choices") if isinstance(data, dict) else None
            if isinstance(choices, list) and choices and isinstance(choices[0], dict):
                finish = choices[0].get("finish_reason")
            raise EmptyCompletion(finish)
        return text

    def _build_messages(self, system_prompt: str, user_message: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
