"""In-memory stand-ins for the outbound ports."""

from __future__ import annotations

from typing import Any

from llm_dispatch.domain.entities import AgentResponse
from llm_dispatch.ports.outbound import AgentPort, LLMPort, ProviderInvoker
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.providers import ProviderDescriptor, ProviderRequest, ProviderResponse


class ScriptedLLM(LLMPort):
    """Answers from a script; an Exception in the script is raised instead."""

    def __init__(self, *answers: str | Exception, default: str = "ok") -> None:
        self.answers = list(answers)
        self.default = default
        self.prompts: list[str] = []
        self.system_prompts: list[str | None] = []

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> str:
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        answer = self.answers.pop(0) if self.answers else self.default
        if isinstance(answer, Exception):
            raise answer
        return answer


class ScriptedAgent(AgentPort):
    """Agent that replies from a script and records every instruction."""

    def __init__(self, name: str, *replies: str | None, default: str = "done") -> None:
        self._name = name
        self.replies = list(replies)
        self.default = default
        self.instructions: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    async def execute(
        self,
        instruction: str,
        context: dict[str, Any],
        cancellation: CancellationToken,
    ) -> AgentResponse:
        self.instructions.append(instruction)
        reply = self.replies.pop(0) if self.replies else self.default
        if reply is None:
            return AgentResponse.failed(self._name, instruction, "agent refused")
        response = AgentResponse(
            agent_name=self._name, instruction=instruction, success=True, result=reply
        )
        response.completed_at = response.started_at
        return response


class RecordingInvoker(ProviderInvoker):
    """Invoker whose per-provider behaviour is a list of outcomes.

    Each call pops the next outcome for the provider; an Exception is
    raised, a string becomes the response text.  Exhausted scripts answer
    with ``"<name> ok"``.  Every response reports ``tokens`` as its
    (input, output) usage.
    """

    def __init__(
        self,
        script: dict[str, list[str | Exception]] | None = None,
        *,
        tokens: tuple[int, int] = (0, 0),
    ) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.tokens = tokens
        self.calls: list[str] = []
        self.requests: list[ProviderRequest] = []

    async def invoke(
        self,
        descriptor: ProviderDescriptor,
        handle: Any,
        request: ProviderRequest,
        cancellation: CancellationToken,
    ) -> ProviderResponse:
        self.calls.append(descriptor.name)
        self.requests.append(request)
        outcomes = self.script.get(descriptor.name, [])
        outcome = outcomes.pop(0) if outcomes else f"{descriptor.name} ok"
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderResponse(
            text=outcome,
            provider_name=descriptor.name,
            input_tokens=self.tokens[0],
            output_tokens=self.tokens[1],
        )

