"""Multi-agent coordinator — one task, several cooperating agents.

Strategies:
    SEQUENTIAL   — each agent refines the previous agent's output.
    PARALLEL     — all agents answer independently; answers are synthesised.
    DEBATE       — agents answer in rounds, seeing the previous round, until
                   they agree or the round limit is reached.
    HIERARCHICAL — the first agent plans subtasks, the others execute them,
                   the first agent synthesises.
"""

from __future__ import annotations

import asyncio
import itertools
import re
import threading
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from llm_dispatch.domain.entities import AgentResponse, CoordinationResult
from llm_dispatch.domain.enums import CoordinationStrategy
from llm_dispatch.domain.exceptions import OperationCancelledError
from llm_dispatch.ports.outbound import AgentPort, LLMPort
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import COORDINATION_RUNS

logger = structlog.get_logger(__name__)

_SUBTASK_LINE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(?P<text>.*\S)\s*$")
_WORD = re.compile(r"\w+")

_StrategyHandler = Callable[
    [CoordinationResult, list[AgentPort], dict[str, Any], CancellationToken],
    Awaitable[None],
]


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard index of two texts (case-insensitive)."""
    words_a = set(_WORD.findall(a.lower()))
    words_b = set(_WORD.findall(b.lower()))
    union = words_a | words_b
    if not union:
        return 1.0
    return len(words_a & words_b) / len(union)


def parse_subtasks(plan: str) -> list[str]:
    """Bullet or numbered lines of a plan; the whole plan if none parse."""
    subtasks = [
        m.group("text")
        for m in (_SUBTASK_LINE.match(line) for line in plan.splitlines())
        if m
    ]
    if subtasks:
        return subtasks
    return [plan.strip()] if plan.strip() else []


class MultiAgentCoordinator:
    """Runs a task across the registered agents with one coordination strategy."""

    def __init__(
        self,
        synthesizer: LLMPort,
        *,
        strategy: CoordinationStrategy = CoordinationStrategy.SEQUENTIAL,
        max_debate_rounds: int = 3,
        consensus_threshold: float = 0.7,
    ) -> None:
        if max_debate_rounds < 1:
            raise ValueError("max_debate_rounds must be at least 1")
        self._synthesizer = synthesizer
        self._strategy = strategy
        self._max_rounds = max_debate_rounds
        self._threshold = consensus_threshold
        self._agents: list[AgentPort] = []
        self._lock = threading.Lock()

        self._handlers: dict[CoordinationStrategy, _StrategyHandler] = {
            CoordinationStrategy.SEQUENTIAL: self._run_sequential,
            CoordinationStrategy.PARALLEL: self._run_parallel,
            CoordinationStrategy.DEBATE: self._run_debate,
            CoordinationStrategy.HIERARCHICAL: self._run_hierarchical,
        }

    @property
    def strategy(self) -> CoordinationStrategy:
        return self._strategy

    @property
    def agents(self) -> tuple[AgentPort, ...]:
        with self._lock:
            return tuple(self._agents)

    def register_agent(self, agent: AgentPort) -> bool:
        """Append an agent; returns False if one with that name is registered."""
        with self._lock:
            if any(a.name == agent.name for a in self._agents):
                return False
            self._agents.append(agent)
        logger.info("agent_registered", agent=agent.name)
        return True

    def unregister_agent(self, name: str) -> bool:
        with self._lock:
            before = len(self._agents)
            self._agents = [a for a in self._agents if a.name != name]
            return len(self._agents) < before

    # ── Entry-point ──────────────────────────────────────────
    async def execute(
        self,
        task: str,
        context: dict[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
        *,
        strategy: CoordinationStrategy | None = None,
    ) -> CoordinationResult:
        """Run ``task`` across the agents. Never raises for agent failures."""
        strategy = strategy or self._strategy
        token = cancellation or CancellationToken.none()
        agents = list(self.agents)
        result = CoordinationResult(task=task, strategy=strategy)
        log = logger.bind(strategy=strategy.value, agents=[a.name for a in agents])
        log.info("coordination_started")

        if not agents:
            result.finish(error="No agents registered")
        else:
            try:
                await self._handlers[strategy](result, agents, dict(context or {}), token)
            except OperationCancelledError:
                result.finish(error="Cancelled")

        COORDINATION_RUNS.labels(
            strategy=strategy.value, status="success" if result.success else "failure"
        ).inc()
        log.info(
            "coordination_finished",
            success=result.success,
            error=result.error,
            responses=len(result.agent_responses),
            rounds=result.rounds,
        )
        return result

    # ── Strategies ───────────────────────────────────────────
    async def _run_sequential(
        self,
        result: CoordinationResult,
        agents: list[AgentPort],
        context: dict[str, Any],
        token: CancellationToken,
    ) -> None:
        current = result.task
        for agent in agents:
            token.raise_if_cancelled()
            response = await self._invoke(agent, current, context, token)
            result.agent_responses.append(response)
            if not response.success:
                result.finish(error=f"Agent {agent.name} failed: {response.error}")
                return
            current = response.result or ""
        result.finish(final_answer=current)

    async def _run_parallel(
        self,
        result: CoordinationResult,
        agents: list[AgentPort],
        context: dict[str, Any],
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        responses = await self._fan_out([(a, result.task) for a in agents], context, token)
        result.agent_responses.extend(responses)

        failures = [r for r in responses if not r.success]
        if failures:
            result.finish(
                error="; ".join(f"Agent {r.agent_name} failed: {r.error}" for r in failures)
            )
            return

        listing = "\n\n".join(
            f"Agent {i} ({r.agent_name}):\n{r.result}" for i, r in enumerate(responses, 1)
        )
        await self._synthesize(
            result,
            f"Aggregate these agent responses for the task '{result.task}':\n\n{listing}",
            token,
        )

    async def _run_debate(
        self,
        result: CoordinationResult,
        agents: list[AgentPort],
        context: dict[str, Any],
        token: CancellationToken,
    ) -> None:
        transcript: list[list[AgentResponse]] = []

        for round_no in range(1, self._max_rounds + 1):
            token.raise_if_cancelled()
            instruction = result.task
            if transcript:
                instruction = self._debate_prompt(result.task, transcript[-1])

            responses = await self._fan_out([(a, instruction) for a in agents], context, token)
            result.agent_responses.extend(responses)
            result.rounds = round_no

            successful = [r for r in responses if r.success]
            if not successful:
                errors = "; ".join(f"Agent {r.agent_name} failed: {r.error}" for r in responses)
                result.finish(error=f"All agents failed in round {round_no}: {errors}")
                return
            transcript.append(successful)

            if self._has_consensus(successful):
                logger.info("debate_consensus_reached", round=round_no)
                break

        rounds = "\n\n".join(
            f"Round {n}:\n" + "\n".join(f"[{r.agent_name}]: {r.result}" for r in responses)
            for n, responses in enumerate(transcript, 1)
        )
        await self._synthesize(
            result,
            f"Synthesize the final answer from this debate on '{result.task}':\n\n{rounds}",
            token,
        )

    async def _run_hierarchical(
        self,
        result: CoordinationResult,
        agents: list[AgentPort],
        context: dict[str, Any],
        token: CancellationToken,
    ) -> None:
        if len(agents) < 2:
            result.finish(
                error="Hierarchical coordination needs a coordinator and at least one worker"
            )
            return
        coordinator, workers = agents[0], agents[1:]

        token.raise_if_cancelled()
        plan = await self._invoke(
            coordinator,
            f"Break down this task into subtasks for {len(workers)} workers:\n{result.task}",
            context,
            token,
        )
        result.agent_responses.append(plan)
        if not plan.success:
            result.finish(error=f"Agent {coordinator.name} failed: {plan.error}")
            return

        subtasks = parse_subtasks(plan.result or "")
        if not subtasks:
            result.finish(error=f"Agent {coordinator.name} produced no subtasks")
            return
        if len(subtasks) > len(workers):
            # Fold the overflow into the last worker's assignment
            head = subtasks[: len(workers) - 1]
            subtasks = head + ["\n".join(subtasks[len(workers) - 1 :])]

        token.raise_if_cancelled()
        worker_responses = await self._fan_out(list(zip(workers, subtasks)), context, token)
        result.agent_responses.extend(worker_responses)

        failures = [r for r in worker_responses if not r.success]
        if failures:
            result.finish(
                error="; ".join(f"Agent {r.agent_name} failed: {r.error}" for r in failures)
            )
            return

        listing = "\n".join(
            f"Worker {i} ({r.agent_name}): {r.result}" for i, r in enumerate(worker_responses, 1)
        )
        token.raise_if_cancelled()
        synthesis = await self._invoke(
            coordinator,
            f"Synthesize these worker results for the task '{result.task}':\n{listing}",
            context,
            token,
        )
        result.agent_responses.append(synthesis)
        if not synthesis.success:
            result.finish(error=f"Agent {coordinator.name} failed: {synthesis.error}")
            return
        result.finish(final_answer=synthesis.result)

    # ── Helpers ──────────────────────────────────────────────
    async def _invoke(
        self,
        agent: AgentPort,
        instruction: str,
        context: dict[str, Any],
        token: CancellationToken,
    ) -> AgentResponse:
        """Run one agent, downgrading any escaping exception into a failed response."""
        try:
            response = await agent.execute(instruction, context, token)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.warning("agent_raised", agent=agent.name, error=str(exc))
            return AgentResponse.failed(agent.name, instruction, f"{type(exc).__name__}: {exc}")
        if not response.agent_name:
            response.agent_name = agent.name
        return response

    async def _fan_out(
        self,
        assignments: Sequence[tuple[AgentPort, str]],
        context: dict[str, Any],
        token: CancellationToken,
    ) -> list[AgentResponse]:
        """Run agents concurrently; results keep the order of ``assignments``."""
        outcomes = await asyncio.gather(
            *(self._invoke(agent, instruction, context, token) for agent, instruction in assignments),
            return_exceptions=True,
        )
        responses: list[AgentResponse] = []
        for outcome in outcomes:
            # _invoke only lets cancellation escape
            if isinstance(outcome, BaseException):
                raise outcome
            responses.append(outcome)
        return responses

    async def _synthesize(
        self, result: CoordinationResult, prompt: str, token: CancellationToken
    ) -> None:
        token.raise_if_cancelled()
        try:
            answer = await self._synthesizer.complete(prompt, cancellation=token)
        except OperationCancelledError:
            raise
        except Exception as exc:
            logger.warning("coordination_synthesis_failed", error=str(exc))
            result.finish(error=f"Synthesis failed: {type(exc).__name__}: {exc}")
            return
        result.finish(final_answer=answer)

    def _has_consensus(self, responses: list[AgentResponse]) -> bool:
        if len(responses) < 2:
            return False
        return all(
            jaccard_similarity(a.result or "", b.result or "") > self._threshold
            for a, b in itertools.combinations(responses, 2)
        )

    @staticmethod
    def _debate_prompt(task: str, previous: list[AgentResponse]) -> str:
        transcript = "\n".join(f"[{r.agent_name}]: {r.result}" for r in previous)
        return (
            f"Task: {task}\n\n"
            f"Previous round responses:\n{transcript}\n\n"
            "Provide your perspective considering the above responses."
        )
