"""
OpenAI adapter.

Chat completions with forced function calling through the official SDK.
"""

import json
import logging
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from ..config.loader import ProviderSettings
from ..core.backoff import BackoffPolicy
from ..core.pricing import RateTable
from ..core.token_counter import TokenUsage
from ..core.types import ProviderIdentity
from ..errors import MalformedResponse, RateLimited, UpstreamError
from .base import ProviderAdapter, RawReply, _retry_after
from .prompts import SYSTEM_PROMPT, PromptBuilder, ToolSpec

logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    """OpenAI client wrapper implementing the adapter contract.

    SDK-level retries are disabled so HTTP 429 handling follows the
    adapter's own backoff policy.
    """

    identity = ProviderIdentity.OPENAI

    def __init__(
        self,
        settings: ProviderSettings,
        rates: RateTable,
        backoff: Optional[BackoffPolicy] = None,
        prompts: Optional[PromptBuilder] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        super().__init__(settings, rates, backoff, prompts)
        self._owns_client = client is None
        self.client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout,
            max_retries=0,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.close()

    async def _create(self, **kwargs: Any) -> Any:
        try:
            return await self.client.chat.completions.create(model=self.model, **kwargs)
        except openai.RateLimitError as exc:
            raise RateLimited(self.provider_name, _retry_after(exc.response.headers)) from exc
        except openai.APIStatusError as exc:
            logger.debug("openai returned %s: %s", exc.status_code, exc.body)
            raise UpstreamError(self.provider_name, exc.status_code, str(exc.body)) from exc
        except openai.APIError as exc:
            raise UpstreamError(self.provider_name, None, str(exc)) from exc

    async def _send_tool(self, prompt: str, tool: ToolSpec, max_tokens: int, temperature: float) -> RawReply:
        response = await self._create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            tools=[{
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }],
            tool_choice={"type": "function", "function": {"name": tool.name}},
            temperature=temperature,
            max_tokens=max_tokens,
        )
        with self._decoding(response):
            return self._reply(response)

    async def _send_text(self, prompt: str, max_tokens: int, temperature: float) -> RawReply:
        response = await self._create(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        with self._decoding(response):
            return self._reply(response)

    def _reply(self, response: Any) -> RawReply:
        if not response.choices:
            raise MalformedResponse(self.provider_name, "no choices")
        message = response.choices[0].message
        text = message.content or ""
        payload = None
        if message.tool_calls:
            arguments = message.tool_calls[0].function.arguments
            try:
                payload = json.loads(arguments)
            except ValueError:
                # fall back to extracting JSON from the raw argument string
                text = arguments

        usage = response.usage
        return RawReply(
            payload=payload,
            text=text,
            usage=TokenUsage.from_counts(
                getattr(usage, "prompt_tokens", 0),
                getattr(usage, "completion_tokens", 0),
            ),
            model=response.model or self.model,
        )
