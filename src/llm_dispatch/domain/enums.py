"""Domain enumerations for task orchestration and agent coordination."""

from __future__ import annotations

import enum


class TaskStepType(str, enum.Enum):
    """What a single step of a task does."""

    LLM_QUERY = "llm_query"
    DATA_RETRIEVAL = "data_retrieval"
    VALIDATION = "validation"
    TRANSFORMATION = "transformation"
    HUMAN_APPROVAL = "human_approval"


class TaskExecutionStatus(str, enum.Enum):
    """Lifecycle state machine for a task run."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING_APPROVAL = "pending_approval"

    # ── Allowed transitions ──
    def can_transition_to(self, target: TaskExecutionStatus) -> bool:
        return target in _TASK_TRANSITIONS.get(self, set())

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATES


_TASK_TRANSITIONS: dict[TaskExecutionStatus, set[TaskExecutionStatus]] = {
    TaskExecutionStatus.NOT_STARTED: {
        TaskExecutionStatus.IN_PROGRESS,
        TaskExecutionStatus.CANCELLED,
    },
    TaskExecutionStatus.IN_PROGRESS: {
        TaskExecutionStatus.COMPLETED,
        TaskExecutionStatus.FAILED,
        TaskExecutionStatus.CANCELLED,
        TaskExecutionStatus.PENDING_APPROVAL,
    },
    # Approval resumes are caller-driven re-entries
    TaskExecutionStatus.PENDING_APPROVAL: {
        TaskExecutionStatus.IN_PROGRESS,
        TaskExecutionStatus.CANCELLED,
    },
}

_TERMINAL_TASK_STATES = frozenset(
    {
        TaskExecutionStatus.COMPLETED,
        TaskExecutionStatus.FAILED,
        TaskExecutionStatus.CANCELLED,
    }
)


class StepExecutionStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CoordinationStrategy(str, enum.Enum):
    """How several agents cooperate on one task."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    DEBATE = "debate"
    HIERARCHICAL = "hierarchical"
