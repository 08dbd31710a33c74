"""OpenRouter adapter — OpenAI-compatible chat completions over httpx.

Protocol notes:
  - POST {base_url}/chat/completions with Bearer auth
  - HTTP-Referer / X-Title identify the app to OpenRouter
  - Streaming responses are server-sent events: "data: {json}" lines,
    terminated by "data: [DONE]"
  - Errors come back as {"error": {"message": ..., "code": ...}}
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence

import httpx

from promptforge.core.config import settings
from promptforge.gateway.invoker import BaseModelInvoker
from promptforge.gateway.types import (
    ChatMessage,
    GenerationParams,
    InvokerErrorKind,
    ModelInvokerError,
)

logger = logging.getLogger(__name__)


def _error_message(resp: httpx.Response) -> str:
    """Extract a readable error message from an OpenRouter error body."""
    try:
        body = resp.json()
        detail = body.get("error", {}).get("message") or resp.text[:500]
    except (ValueError, AttributeError):
        detail = resp.text[:500]
    return f"OpenRouter API error: {resp.status_code} {resp.reason_phrase}\n{detail}"


class OpenRouterInvoker(BaseModelInvoker):
    """Chat completions against OpenRouter (or any OpenAI-compatible endpoint)."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str = "",
        base_url: str | None = None,
        timeout: float | None = None,
        app_title: str | None = None,
        referer: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            api_key: OpenRouter API key
            base_url: API root, defaults to settings.openrouter_base_url
            timeout: Client timeout in seconds
            app_title: Sent as X-Title for OpenRouter attribution
            referer: Sent as HTTP-Referer, defaults to settings.openrouter_referer
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        super().__init__(api_key=api_key)
        self.base_url = (base_url or settings.openrouter_base_url).rstrip("/")
        self.timeout = timeout or settings.openrouter_timeout_seconds
        self.app_title = app_title or settings.openrouter_app_title
        self.referer = referer or settings.openrouter_referer
        self._transport = transport

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _payload(self, messages: Sequence[ChatMessage], params: GenerationParams, stream: bool) -> dict:
        payload = params.to_payload()
        payload["messages"] = [m.to_dict() for m in messages]
        payload["stream"] = stream
        return payload

    async def invoke(self, messages: Sequence[ChatMessage], params: GenerationParams) -> str:
        payload = self._payload(messages, params, stream=False)

        try:
            async with self._client() as client:
                resp = await client.post(self.completions_url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ModelInvokerError(InvokerErrorKind.TIMEOUT, f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.TransportError as e:
            raise ModelInvokerError(InvokerErrorKind.NETWORK, f"Network error: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error("OpenRouter %d for model=%s: %s", resp.status_code, params.model, message)
            raise ModelInvokerError.from_status(resp.status_code, message)

        try:
            data = resp.json()
        except ValueError as e:
            raise ModelInvokerError(InvokerErrorKind.OTHER, "Malformed JSON in OpenRouter response") from e

        # OpenRouter reports upstream provider failures inside a 200 body
        if "error" in data:
            error = data["error"] or {}
            code = error.get("code", 0)
            status_code = code if isinstance(code, int) else 0
            raise ModelInvokerError.from_status(status_code, f"OpenRouter API error: {error.get('message', '')}")

        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    async def stream(self, messages: Sequence[ChatMessage], params: GenerationParams) -> AsyncIterator[str]:
        payload = self._payload(messages, params, stream=True)

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.completions_url, json=payload, headers=self._headers()
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise ModelInvokerError.from_status(resp.status_code, _error_message(resp))

                    async for line in resp.aiter_lines():
                        chunk = self._parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk == "[DONE]":
                            break
                        yield chunk
        except httpx.TimeoutException as e:
            raise ModelInvokerError(InvokerErrorKind.TIMEOUT, f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.TransportError as e:
            raise ModelInvokerError(InvokerErrorKind.NETWORK, f"Network error: {e}") from e

    @staticmethod
    def _parse_sse_line(line: str) -> str | None:
        """Return the content delta of one SSE line, "[DONE]", or None to skip."""
        line = line.strip()
        if not line.startswith("data:"):
            return None  # comments (": OPENROUTER PROCESSING") and blank keep-alives
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return data
        try:
            event = json.loads(data)
        except ValueError:
            logger.debug("Skipping malformed SSE payload: %s", data[:200])
            return None
        choices = event.get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("delta") or {}).get("content")
        return content or None
