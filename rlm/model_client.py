# -*- coding: utf-8 -*-

import os
import time
import requests
from .config import (
    COST_PER_1K_TOKENS,
    DEFAULT_TIMEOUT,
    MODEL_BACKOFF_S,
    MODEL_MAX_TOKENS,
    MODEL_RETRIES,
    RETRY_STATUS_CODES,
)
from .errors import CompletionError


class OpenAICompatClient:
    """
    Completion-service collaborator for any OpenAI-compatible /chat/completions endpoint.

    complete() returns {"text", "tokens", "cost", "latency_s", "finish_reason", "model"}.
    Transport errors and retryable HTTP statuses are retried with exponential backoff;
    anything else (or exhausted retries) raises CompletionError.
    """

    def __init__(
        self,
        base_url: str,
        model: str | None = None,
        api_key: str | None = None,
        retries: int = MODEL_RETRIES,
        backoff_s: float = MODEL_BACKOFF_S,
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = (model or "").strip()
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self.retries = max(0, int(retries))
        self.backoff_s = backoff_s
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def normalize_base_url(base_url: str) -> str:
        """
        Accept either:
        - http://host:port/v1  (OpenAI-style base)
        - http://host:port     (LM Studio default), and normalize to /v1
        """
        base_url = (base_url or "").strip().rstrip("/")
        if not base_url:
            return base_url
        if base_url.endswith("/v1"):
            return base_url
        return base_url + "/v1"

    def _post(self, url: str, headers: dict, payload: dict) -> requests.Response:
        attempt = 0
        while True:
            try:
                r = self.session.post(url, headers=headers, json=payload, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.retries:
                    raise CompletionError(f"transport error after {attempt + 1} attempts: {e}") from e
            else:
                if r.status_code < 400:
                    return r
                if r.status_code not in RETRY_STATUS_CODES or attempt >= self.retries:
                    raise CompletionError(
                        f"HTTP {r.status_code}: {r.text[:500]}",
                        status=r.status_code,
                    )
            time.sleep(self.backoff_s * (2 ** attempt))
            attempt += 1

    def chat_raw(self, messages, temperature=0.2, max_tokens=MODEL_MAX_TOKENS, model: str | None = None) -> dict:
        base = self.normalize_base_url(self.base_url)
        url = f"{base}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {"messages": messages, "temperature": temperature, "max_tokens": max_tokens}
        model = (model or self.model or "").strip()
        if model:
            payload["model"] = model

        t0 = time.perf_counter()
        r = self._post(url, headers, payload)
        dt = time.perf_counter() - t0
        try:
            data = r.json()
        except ValueError as e:
            raise CompletionError(f"non-JSON response: {r.text[:200]}") from e
        data["_latency_s"] = dt
        return data

    def complete(self, messages, model: str | None = None, temperature=0.2, max_tokens=MODEL_MAX_TOKENS, **_options) -> dict:
        data = self.chat_raw(messages, temperature=temperature, max_tokens=max_tokens, model=model)
        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"malformed response: {str(data)[:200]}") from e
        usage = data.get("usage") or {}
        tokens = int(usage.get("total_tokens") or 0)
        return {
            "text": text,
            "tokens": tokens,
            "cost": tokens / 1000.0 * COST_PER_1K_TOKENS,
            "latency_s": float(data.get("_latency_s") or 0.0),
            "finish_reason": choice.get("finish_reason"),
            "model": data.get("model") or model or self.model,
        }

    def chat(self, messages, temperature=0.2, max_tokens=MODEL_MAX_TOKENS) -> str:
        return self.complete(messages, temperature=temperature, max_tokens=max_tokens)["text"]
