"""
Anthropic adapter.

Messages API with a forced tool call, over httpx.
"""

from typing import Any, Dict

from ..core.token_counter import TokenUsage
from ..core.types import ProviderIdentity
from .base import HttpProviderAdapter, RawReply
from .prompts import SYSTEM_PROMPT, ToolSpec

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicAdapter(HttpProviderAdapter):
    identity = ProviderIdentity.ANTHROPIC

    @property
    def url(self) -> str:
        return (self.settings.base_url or ANTHROPIC_BASE_URL).rstrip("/") + "/v1/messages"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.settings.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _body(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }

    async def _send_tool(self, prompt: str, tool: ToolSpec, max_tokens: int, temperature: float) -> RawReply:
        body = self._body(prompt, max_tokens, temperature)
        body["tools"] = [{
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }]
        body["tool_choice"] = {"type": "tool", "name": tool.name}
        data = await self._post_json(self.url, self._headers(), body)
        with self._decoding(data):
            return self._reply(data)

    async def _send_text(self, prompt: str, max_tokens: int, temperature: float) -> RawReply:
        body = self._body(prompt, max_tokens, temperature)
        data = await self._post_json(self.url, self._headers(), body)
        with self._decoding(data):
            return self._reply(data)

    def _reply(self, data: Dict[str, Any]) -> RawReply:
        payload = None
        texts = []
        for block in data.get("content") or []:
            if block.get("type") == "tool_use" and payload is None:
                payload = block.get("input")
            elif block.get("type") == "text":
                texts.append(block.get("text", ""))

        usage = data.get("usage") or {}
        return RawReply(
            payload=payload,
            text="".join(texts),
            usage=TokenUsage.from_counts(usage.get("input_tokens"), usage.get("output_tokens")),
            model=data.get("model") or self.model,
        )
