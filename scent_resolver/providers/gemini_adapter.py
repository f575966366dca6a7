"""
Gemini adapter.

Generative Language API with function declarations, over httpx.
"""

from typing import Any, Dict

from ..core.token_counter import TokenUsage
from ..core.types import ProviderIdentity
from ..errors import MalformedResponse
from .base import HttpProviderAdapter, RawReply
from .prompts import SYSTEM_PROMPT, ToolSpec

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_SCHEMA_KEYS = ("description", "enum", "required", "nullable", "format")


def to_gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Convert JSON Schema to Gemini's OpenAPI subset (upper-case types)."""
    converted: Dict[str, Any] = {}
    if "type" in schema:
        converted["type"] = str(schema["type"]).upper()
    for key in _SCHEMA_KEYS:
        if key in schema:
            converted[key] = schema[key]
    if "properties" in schema:
        converted["properties"] = {
            name: to_gemini_schema(value) for name, value in schema["properties"].items()
        }
    if "items" in schema:
        converted["items"] = to_gemini_schema(schema["items"])
    return converted


class GeminiAdapter(HttpProviderAdapter):
    identity = ProviderIdentity.GEMINI

    @property
    def url(self) -> str:
        base = (self.settings.base_url or GEMINI_BASE_URL).rstrip("/")
        return f"{base}/models/{self.model}:generateContent"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self.settings.api_key or "",
            "content-type": "application/json",
        }

    def _body(self, prompt: str, max_tokens: int, temperature: float) -> Dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }

    async def _send_tool(self, prompt: str, tool: ToolSpec, max_tokens: int, temperature: float) -> RawReply:
        body = self._body(prompt, max_tokens, temperature)
        body["tools"] = [{
            "functionDeclarations": [{
                "name": tool.name,
                "description": tool.description,
                "parameters": to_gemini_schema(tool.parameters),
            }],
        }]
        body["toolConfig"] = {
            "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [tool.name]},
        }
        data = await self._post_json(self.url, self._headers(), body)
        with self._decoding(data):
            return self._reply(data)

    async def _send_text(self, prompt: str, max_tokens: int, temperature: float) -> RawReply:
        body = self._body(prompt, max_tokens, temperature)
        data = await self._post_json(self.url, self._headers(), body)
        with self._decoding(data):
            return self._reply(data)

    def _reply(self, data: Dict[str, Any]) -> RawReply:
        candidates = data.get("candidates") or []
        if not candidates:
            # blocked prompts come back without candidates
            raise MalformedResponse(self.provider_name, data.get("promptFeedback"))

        payload = None
        texts = []
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            if "functionCall" in part and payload is None:
                payload = part["functionCall"].get("args")
            elif "text" in part:
                texts.append(part["text"])

        usage = data.get("usageMetadata") or {}
        return RawReply(
            payload=payload,
            text="".join(texts),
            usage=TokenUsage.from_counts(usage.get("promptTokenCount"), usage.get("candidatesTokenCount")),
            model=self.model,
        )
