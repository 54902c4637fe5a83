from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol
import re
import time

import httpx

from taskpilot.cancellation import CancelToken


ChatMessage = dict[str, str]

_THINK_PATTERN = re.compile(r"<(think|thinking)>.*?</\1>", re.DOTALL | re.IGNORECASE)


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


def strip_thinking_tags(text: str) -> str:
    return _THINK_PATTERN.sub("", text or "").strip()


@dataclass(frozen=True)
class LLMResponse:
    content: str
    model: str


class LLMClient(Protocol):
    def chat(
        self,
        messages: list[ChatMessage],
        *,
        cancel: CancelToken | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        ...


@dataclass(frozen=True)
class OpenAIClient:
    base_url: str
    api_key: str
    model: str
    timeout_s: float = 60.0
    default_temperature: float = 0.2

    def chat(
        self,
        messages: list[ChatMessage],
        *,
        cancel: CancelToken | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        if cancel is not None:
            cancel.raise_if_cancelled()
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        chosen = model or self.model
        payload = {
            "model": chosen,
            "messages": messages,
            "temperature": temperature if temperature is not None else self.default_temperature,
        }
        client = _shared_http_client()
        response = client.post(url, headers=headers, json=payload, timeout=self.timeout_s)
        response.raise_for_status()
        data = response.json()
        content = data["choices"][0]["message"]["content"]
        if cancel is not None:
            cancel.raise_if_cancelled()
        return LLMResponse(content=content or "", model=chosen)


@dataclass(frozen=True)
class OllamaClient:
    base_url: str
    model: str
    timeout_s: float = 300.0
    default_temperature: float = 0.2
    max_retries: int = 2
    retry_delay_s: float = 1.0

    def chat(
        self,
        messages: list[ChatMessage],
        *,
        cancel: CancelToken | None = None,
        model: str | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        url = f"{self.base_url.rstrip('/')}/api/chat"
        temp = temperature if temperature is not None else self.default_temperature
        chosen = model or self.model
        payload = {
            "model": chosen,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temp},
        }
        client = _shared_http_client()
        attempts = max(0, self.max_retries) + 1
        last_timeout: httpx.TimeoutException | None = None
        for attempt in range(attempts):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                response = client.post(url, json=payload, timeout=self.timeout_s)
                response.raise_for_status()
                data = response.json()
                content = data["message"]["content"]
                if cancel is not None:
                    cancel.raise_if_cancelled()
                return LLMResponse(content=content or "", model=chosen)
            except httpx.TimeoutException as exc:
                last_timeout = exc
                if attempt >= attempts - 1:
                    raise
                if self.retry_delay_s > 0:
                    delay = self.retry_delay_s * (attempt + 1)
                    if cancel is not None:
                        if cancel.wait(delay):
                            cancel.raise_if_cancelled()
                    else:
                        time.sleep(delay)
        if last_timeout is not None:
            raise last_timeout
        raise RuntimeError("Ollama request failed without response")


def format_llm_http_error(exc: httpx.HTTPStatusError) -> str:
    status = exc.response.status_code
    detail = ""
    try:
        payload = exc.response.json()
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                detail = error.get("message") or ""
            detail = detail or payload.get("message") or ""
    except ValueError:
        detail = exc.response.text.strip()
    detail = detail[:500] if detail else ""
    if status in {401, 403}:
        return f"HTTP {status}. Authentication failed; check the configured API key. {detail}".strip()
    return f"HTTP {status}. {detail}".strip()
