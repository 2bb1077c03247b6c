"""Domain entities — objects with identity and lifecycle.

Task definitions are immutable once a run starts; the orchestrator only
produces result records keyed by step id.  Result records are *mutable*
but expose controlled mutation methods that enforce the lifecycle rules.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from llm_dispatch.domain.enums import (
    CoordinationStrategy,
    StepExecutionStatus,
    TaskExecutionStatus,
    TaskStepType,
)
from llm_dispatch.domain.exceptions import InvalidTaskTransitionError, TaskDefinitionError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _elapsed(start: datetime | None, end: datetime | None) -> timedelta | None:
    if start is None or end is None:
        return None
    return end - start


# ═══════════════════════════════════════════════════════════════
#  Task definition
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class TaskStep:
    """One unit of work within a task.

    ``prompt`` may reference the results of declared dependencies through
    ``{step name}`` or ``{step id}`` placeholders.
    """

    id: str = field(default_factory=_new_id)
    name: str = ""
    order: int = 0
    prompt: str = ""
    type: TaskStepType = TaskStepType.LLM_QUERY
    depends_on: tuple[str, ...] = ()
    parameters: dict[str, Any] = field(default_factory=dict)
    requires_human_approval: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(slots=True)
class TaskDefinition:
    """An ordered list of steps with declared dependencies."""

    id: str = field(default_factory=_new_id)
    name: str = ""
    description: str = ""
    steps: list[TaskStep] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    def execution_order(self) -> list[TaskStep]:
        """Steps sorted by ``order``; declaration order breaks ties."""
        return sorted(self.steps, key=lambda s: s.order)

    def step_by_id(self, step_id: str) -> TaskStep | None:
        return next((s for s in self.steps if s.id == step_id), None)

    def validate(self, *, strict_dependency_order: bool = True) -> None:
        """Reject malformed definitions before anything runs.

        Raises:
            TaskDefinitionError: on blank or duplicate step ids, dependencies
                on unknown steps, cyclic dependencies, or (in strict mode)
                dependencies on steps that execute later.
        """
        seen: set[str] = set()
        for step in self.steps:
            if not step.id:
                raise TaskDefinitionError(self.id, "step ids must not be empty")
            if step.id in seen:
                raise TaskDefinitionError(self.id, f"duplicate step id {step.id!r}")
            seen.add(step.id)

        for step in self.steps:
            missing = [dep for dep in step.depends_on if dep not in seen]
            if missing:
                raise TaskDefinitionError(
                    self.id,
                    f"step {step.label!r} depends on unknown step(s) {', '.join(missing)}",
                )

        cycle = self._find_cycle()
        if cycle:
            raise TaskDefinitionError(
                self.id, f"cyclic dependency: {' -> '.join(cycle)}"
            )

        if strict_dependency_order:
            position = {s.id: i for i, s in enumerate(self.execution_order())}
            for step in self.steps:
                for dep in step.depends_on:
                    if position[dep] > position[step.id]:
                        raise TaskDefinitionError(
                            self.id,
                            f"step {step.label!r} depends on {dep!r} which runs after it",
                        )

    def _find_cycle(self) -> list[str] | None:
        graph = {s.id: s.depends_on for s in self.steps}
        visiting: list[str] = []
        done: set[str] = set()

        def visit(node: str) -> list[str] | None:
            if node in done:
                return None
            if node in visiting:
                return visiting[visiting.index(node):] + [node]
            visiting.append(node)
            for dep in graph.get(node, ()):
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            done.add(node)
            return None

        for step_id in graph:
            found = visit(step_id)
            if found:
                return found
        return None


# ═══════════════════════════════════════════════════════════════
#  Task execution results
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class StepResult:
    """Outcome of one step within a task run."""

    step_id: str
    step_name: str = ""
    step_type: TaskStepType = TaskStepType.LLM_QUERY
    status: StepExecutionStatus = StepExecutionStatus.PENDING
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta | None:
        return _elapsed(self.started_at, self.completed_at)

    def start(self) -> None:
        self.status = StepExecutionStatus.IN_PROGRESS
        self.started_at = _utcnow()

    def complete(self, result: str | None) -> None:
        self.status = StepExecutionStatus.COMPLETED
        self.result = result
        self.completed_at = _utcnow()

    def fail(self, error: str) -> None:
        self.status = StepExecutionStatus.FAILED
        self.error = error
        self.completed_at = _utcnow()

    def skip(self, reason: str) -> None:
        self.status = StepExecutionStatus.SKIPPED
        self.result = reason
        self.completed_at = _utcnow()

    def reset(self) -> None:
        """Back to PENDING, e.g. when a run is cancelled mid-step."""
        self.status = StepExecutionStatus.PENDING
        self.result = None
        self.error = None
        self.started_at = None
        self.completed_at = None


@dataclass(slots=True)
class TaskExecutionResult:
    """Mutable record of a task run, keyed by step id."""

    task_id: str
    task_name: str = ""
    status: TaskExecutionStatus = TaskExecutionStatus.NOT_STARTED
    step_results: dict[str, StepResult] = field(default_factory=dict)
    final_result: str | None = None
    errors: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta | None:
        return _elapsed(self.started_at, self.completed_at)

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    # ── State transitions ────────────────────────────────────
    def transition_to(self, new_status: TaskExecutionStatus) -> None:
        if not self.status.can_transition_to(new_status):
            raise InvalidTaskTransitionError(self.status.value, new_status.value)
        self.status = new_status
        if new_status == TaskExecutionStatus.IN_PROGRESS:
            self.started_at = self.started_at or _utcnow()
            self.completed_at = None
        else:
            self.completed_at = _utcnow()

    def fail(self, error: str) -> None:
        self.errors.append(error)
        self.transition_to(TaskExecutionStatus.FAILED)

    def step(self, step_id: str) -> StepResult | None:
        return self.step_results.get(step_id)

    def is_step_completed(self, step_id: str) -> bool:
        step = self.step_results.get(step_id)
        return step is not None and step.status == StepExecutionStatus.COMPLETED

    def completed_result(self, step_id: str) -> str | None:
        """Result of ``step_id`` if that step completed, else ``None``."""
        step = self.step_results.get(step_id)
        if step is None or step.status != StepExecutionStatus.COMPLETED:
            return None
        return step.result


# ═══════════════════════════════════════════════════════════════
#  Agent coordination
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class AgentResponse:
    """What one agent produced for one instruction."""

    agent_name: str
    instruction: str = ""
    success: bool = False
    result: str | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta | None:
        return _elapsed(self.started_at, self.completed_at)

    @classmethod
    def failed(cls, agent_name: str, instruction: str, error: str) -> AgentResponse:
        now = _utcnow()
        return cls(
            agent_name=agent_name,
            instruction=instruction,
            success=False,
            error=error,
            started_at=now,
            completed_at=now,
        )


@dataclass(slots=True)
class CoordinationResult:
    """Uniform outcome of a multi-agent run."""

    task: str
    strategy: CoordinationStrategy
    agent_responses: list[AgentResponse] = field(default_factory=list)
    final_answer: str | None = None
    success: bool = False
    error: str | None = None
    rounds: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def duration(self) -> timedelta | None:
        return _elapsed(self.started_at, self.completed_at)

    def finish(self, *, final_answer: str | None = None, error: str | None = None) -> None:
        self.final_answer = final_answer
        self.error = error
        self.success = error is None
        self.completed_at = _utcnow()
