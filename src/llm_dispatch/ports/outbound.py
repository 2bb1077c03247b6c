"""Outbound ports — interfaces that collaborators must implement.

These are the *driven* ports in hexagonal architecture.  The orchestration
core depends only on these abstractions, never on a concrete provider SDK
or HTTP client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from llm_dispatch.domain.entities import AgentResponse
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.providers.types import (
    ProviderDescriptor,
    ProviderRequest,
    ProviderResponse,
)


# ═══════════════════════════════════════════════════════════════
#  Provider invocation port
# ═══════════════════════════════════════════════════════════════
class ProviderInvoker(ABC):
    """Performs the actual call to one provider.

    Opaque to the core beyond success (a response) or failure (an
    exception).  Raise ``TransientProviderError`` (or let a timeout or
    transport error escape) for failures worth retrying.
    """

    @abstractmethod
    async def invoke(
        self,
        descriptor: ProviderDescriptor,
        handle: Any,
        request: ProviderRequest,
        cancellation: CancellationToken,
    ) -> ProviderResponse: ...

    async def close(self) -> None:
        """Release connections held by the invoker."""
        return None


# ═══════════════════════════════════════════════════════════════
#  LLM port
# ═══════════════════════════════════════════════════════════════
class LLMPort(ABC):
    """Text completion as seen by task steps and agents."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> str:
        """Send a prompt and return the completion text."""
        ...


# ═══════════════════════════════════════════════════════════════
#  Agent port
# ═══════════════════════════════════════════════════════════════
class AgentPort(ABC):
    """A collaborator that executes an instruction and reports back.

    Implementations should report failures through ``AgentResponse``;
    the coordinator downgrades any exception that still escapes.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def execute(
        self,
        instruction: str,
        context: dict[str, Any],
        cancellation: CancellationToken,
    ) -> AgentResponse: ...
