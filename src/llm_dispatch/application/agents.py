"""Agents backed by the LLM port."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from llm_dispatch.domain.entities import AgentResponse
from llm_dispatch.domain.exceptions import OperationCancelledError
from llm_dispatch.ports.outbound import AgentPort, LLMPort
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import AGENT_INVOCATIONS

logger = structlog.get_logger(__name__)


class LLMAgent(AgentPort):
    """An agent that answers instructions with a single LLM completion.

    The agent's description and the shared coordination context become the
    system prompt; failures are reported in the response, never raised.
    """

    def __init__(self, name: str, llm: LLMPort, *, description: str = "") -> None:
        if not name:
            raise ValueError("agent name must not be empty")
        self._name = name
        self._llm = llm
        self._description = description

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any],
        cancellation: CancellationToken,
    ) -> AgentResponse:
        response = AgentResponse(agent_name=self._name, instruction=instruction)
        log = logger.bind(agent=self._name)
        try:
            response.result = await self._llm.complete(
                instruction,
                system_prompt=self._system_prompt(context),
                cancellation=cancellation,
            )
            response.success = True
            AGENT_INVOCATIONS.labels(agent=self._name, status="success").inc()
        except OperationCancelledError:
            raise
        except Exception as exc:
            response.error = f"{type(exc).__name__}: {exc}"
            AGENT_INVOCATIONS.labels(agent=self._name, status="failure").inc()
            log.warning("agent_execution_failed", error=response.error)
        finally:
            response.completed_at = datetime.now(timezone.utc)
        return response

    def _system_prompt(self, context: dict[str, Any]) -> str:
        lines = [f"You are {self._name}."]
        if self._description:
            lines.append(self._description)
        if context:
            lines.append("Shared context:")
            lines.extend(f"- {key}: {value}" for key, value in context.items())
        return "\n".join(lines)
