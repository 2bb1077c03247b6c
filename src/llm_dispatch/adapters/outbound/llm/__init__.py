"""LLM provider adapters — invokers for the ProviderGateway and the LLMPort.

Each provider-specific HTTP call is a pure function of (descriptor, API key,
request).  The gateway handles selection, failover, circuit breaking,
retries and health tracking.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from llm_dispatch.ports.outbound import LLMPort, ProviderInvoker
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.providers.gateway import ProviderGateway
from llm_dispatch.shared.providers.types import (
    ProviderDescriptor,
    ProviderRequest,
    ProviderResponse,
    SelectionContext,
    SelectionStrategy,
)

logger = structlog.get_logger(__name__)


class HttpProviderInvoker(ProviderInvoker):
    """Calls hosted LLM APIs over HTTP.

    ``descriptor.metadata["api"]`` selects the wire dialect (``openai``,
    ``anthropic`` or ``google``); the registry handle is the API key.
    Non-2xx responses surface as ``httpx.HTTPStatusError`` so the retry
    policy can classify them.
    """

    def __init__(self, *, timeout: float = 60.0, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._dialects = {
            "openai": self._invoke_openai,
            "anthropic": self._invoke_anthropic,
            "google": self._invoke_google,
        }

    async def invoke(
        self,
        descriptor: ProviderDescriptor,
        handle: Any,
        request: ProviderRequest,
        cancellation: CancellationToken,
    ) -> ProviderResponse:
        cancellation.raise_if_cancelled()
        api = str(descriptor.metadata.get("api", descriptor.name)).lower()
        call = self._dialects.get(api)
        if call is None:
            raise ValueError(f"Unknown provider API {api!r} for {descriptor.name!r}")
        return await call(descriptor, str(handle or ""), request)

    # ── Provider HTTP calls (pure, no retry logic) ───────────
    async def _invoke_openai(
        self, descriptor: ProviderDescriptor, api_key: str, request: ProviderRequest
    ) -> ProviderResponse:
        base_url = descriptor.metadata.get("base_url", "https://api.openai.com/v1")
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        response = await self._client.post(
            f"{base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": descriptor.metadata.get("model", "gpt-4o"),
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
                "messages": messages,
            },
        )
        response.raise_for_status()
        data = response.json()
        usage = data.get("usage", {})
        return ProviderResponse(
            text=data["choices"][0]["message"]["content"] or "",
            provider_name=descriptor.name,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            raw=data,
        )

    async def _invoke_anthropic(
        self, descriptor: ProviderDescriptor, api_key: str, request: ProviderRequest
    ) -> ProviderResponse:
        body: dict[str, Any] = {
            "model": descriptor.metadata.get("model", "claude-sonnet-4-20250514"),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            body["system"] = request.system_prompt

        response = await self._client.post(
            descriptor.metadata.get("base_url", "https://api.anthropic.com/v1") + "/messages",
            headers={
                "x-api-key": api_key,
                "anthropic-version": descriptor.metadata.get("api_version", "2023-06-01"),
                "content-type": "application/json",
            },
            json=body,
        )
        response.raise_for_status()
        data = response.json()
        usage = data.get("usage", {})
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        return ProviderResponse(
            text=text,
            provider_name=descriptor.name,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            raw=data,
        )

    async def _invoke_google(
        self, descriptor: ProviderDescriptor, api_key: str, request: ProviderRequest
    ) -> ProviderResponse:
        model = descriptor.metadata.get("model", "gemini-2.0-flash")
        body: dict[str, Any] = {
            "contents": [{"parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system_prompt:
            body["system_instruction"] = {"parts": [{"text": request.system_prompt}]}

        response = await self._client.post(
            f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json=body,
        )
        response.raise_for_status()
        data = response.json()
        usage = data.get("usageMetadata", {})
        text = (
            data.get("candidates", [{}])[0]
            .get("content", {})
            .get("parts", [{}])[0]
            .get("text", "")
        )
        return ProviderResponse(
            text=text,
            provider_name=descriptor.name,
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
            raw=data,
        )

    async def close(self) -> None:
        await self._client.aclose()


class EchoProviderInvoker(ProviderInvoker):
    """Offline invoker that answers every request locally.

    Used when no provider credentials are configured (development, demos,
    tests of the HTTP surface).
    """

    async def invoke(
        self,
        descriptor: ProviderDescriptor,
        handle: Any,
        request: ProviderRequest,
        cancellation: CancellationToken,
    ) -> ProviderResponse:
        cancellation.raise_if_cancelled()
        return ProviderResponse(
            text=f"[{descriptor.name}] {request.prompt}",
            provider_name=descriptor.name,
            input_tokens=len(request.prompt.split()),
            output_tokens=len(request.prompt.split()),
        )


class GatewayLLMAdapter(LLMPort):
    """``LLMPort`` backed by the ProviderGateway.

    Selection strategy and constraints are fixed per adapter, so different
    callers (task steps, agents, synthesis) can hold differently-tuned
    adapters over the same gateway.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        strategy: SelectionStrategy | None = None,
        context: SelectionContext | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> None:
        self._gateway = gateway
        self._strategy = strategy
        self._context = context
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def gateway(self) -> ProviderGateway:
        return self._gateway

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> str:
        response = await self._gateway.invoke(
            ProviderRequest(
                prompt=prompt,
                system_prompt=system_prompt,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            ),
            strategy=self._strategy,
            context=self._context,
            cancellation=cancellation,
        )
        logger.debug(
            "llm_completion",
            provider=response.provider_name,
            latency_ms=response.latency_ms,
            output_tokens=response.output_tokens,
        )
        return response.text
