"""Task orchestrator — runs multi-step task definitions.

Steps run in their declared order (sorted by ``order``); dependencies are
checked, not scheduled.  Each step type is handled by one handler method,
resolved through a lookup table.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from llm_dispatch.domain.entities import (
    StepResult,
    TaskDefinition,
    TaskExecutionResult,
    TaskStep,
)
from llm_dispatch.domain.enums import StepExecutionStatus, TaskExecutionStatus, TaskStepType
from llm_dispatch.domain.exceptions import OperationCancelledError, TaskDefinitionError
from llm_dispatch.ports.outbound import LLMPort
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import TASK_RUNS, TASK_STEP_DURATION

logger = structlog.get_logger(__name__)

NOT_IMPLEMENTED = "Step type not implemented"

StepCallback = Callable[[StepResult], Awaitable[None] | None]


@dataclass(frozen=True)
class _StepOutcome:
    status: StepExecutionStatus
    value: str | None = None
    error: str | None = None

    @classmethod
    def completed(cls, value: str | None) -> _StepOutcome:
        return cls(StepExecutionStatus.COMPLETED, value=value)

    @classmethod
    def failed(cls, error: str) -> _StepOutcome:
        return cls(StepExecutionStatus.FAILED, error=error)

    @classmethod
    def skipped(cls, reason: str) -> _StepOutcome:
        return cls(StepExecutionStatus.SKIPPED, value=reason)


_StepHandler = Callable[
    [TaskStep, TaskDefinition, TaskExecutionResult, CancellationToken],
    Awaitable[_StepOutcome],
]

_FINISHED_STEP_STATES = frozenset({StepExecutionStatus.COMPLETED, StepExecutionStatus.SKIPPED})


@dataclass
class _Run:
    result: TaskExecutionResult
    token: CancellationToken


class TaskOrchestrator:
    """Executes task definitions step by step against the LLM port.

    Run records are retained until :meth:`discard_task` is called, so
    callers can inspect finished runs or resume a run halted for approval.
    """

    def __init__(self, llm: LLMPort, *, strict_dependency_order: bool = True) -> None:
        self._llm = llm
        self._strict = strict_dependency_order
        self._runs: dict[str, _Run] = {}
        self._lock = threading.Lock()

        self._handlers: dict[TaskStepType, _StepHandler] = {
            TaskStepType.LLM_QUERY: self._run_llm_query,
            TaskStepType.VALIDATION: self._run_validation,
            TaskStepType.DATA_RETRIEVAL: self._run_not_implemented,
            TaskStepType.TRANSFORMATION: self._run_not_implemented,
            TaskStepType.HUMAN_APPROVAL: self._run_not_implemented,
        }

    # ── Public API ───────────────────────────────────────────
    async def execute_task(
        self,
        task: TaskDefinition,
        on_step_completed: StepCallback | None = None,
        cancellation: CancellationToken | None = None,
        previous: TaskExecutionResult | None = None,
    ) -> TaskExecutionResult:
        """Run ``task`` and return its execution record.

        Pass the record of a run halted in PENDING_APPROVAL as ``previous``
        to resume it; completed and skipped steps are not re-run.

        Raises:
            TaskDefinitionError: the definition is malformed, or the task is
                already running.  Nothing has run in that case.
            InvalidTaskTransitionError: ``previous`` cannot be resumed.
        """
        task.validate(strict_dependency_order=self._strict)
        order = task.execution_order()

        if previous is not None:
            if previous.task_id != task.id:
                raise TaskDefinitionError(
                    task.id, f"cannot resume a run of task {previous.task_id!r}"
                )
            result = previous
        else:
            result = TaskExecutionResult(
                task_id=task.id,
                task_name=task.name,
                step_results={
                    s.id: StepResult(step_id=s.id, step_name=s.name, step_type=s.type)
                    for s in order
                },
            )

        token = cancellation.linked() if cancellation else CancellationToken()
        with self._lock:
            current = self._runs.get(task.id)
            if current is not None and current.result.status == TaskExecutionStatus.IN_PROGRESS:
                raise TaskDefinitionError(task.id, "a run of this task is already in progress")
            result.transition_to(TaskExecutionStatus.IN_PROGRESS)
            self._runs[task.id] = _Run(result, token)

        log = logger.bind(task_id=task.id, task_name=task.name)
        log.info("task_started", steps=len(order), resumed=previous is not None)

        try:
            await self._run_steps(task, order, result, token, on_step_completed)
        except asyncio.CancelledError:
            result.transition_to(TaskExecutionStatus.CANCELLED)
            raise
        finally:
            TASK_RUNS.labels(status=result.status.value).inc()
            log.info(
                "task_finished",
                status=result.status.value,
                errors=result.errors,
                duration_s=result.duration.total_seconds() if result.duration else None,
            )
        return result

    def get_task_status(self, task_id: str) -> TaskExecutionResult | None:
        with self._lock:
            run = self._runs.get(task_id)
        return run.result if run else None

    def cancel_task(self, task_id: str) -> bool:
        """Request cooperative cancellation; takes effect before the next step."""
        with self._lock:
            run = self._runs.get(task_id)
        if run is None or run.result.status != TaskExecutionStatus.IN_PROGRESS:
            return False
        run.token.cancel("cancel requested")
        logger.info("task_cancel_requested", task_id=task_id)
        return True

    def discard_task(self, task_id: str) -> bool:
        """Forget a run record. Runs still in progress are kept."""
        with self._lock:
            run = self._runs.get(task_id)
            if run is None or run.result.status == TaskExecutionStatus.IN_PROGRESS:
                return False
            del self._runs[task_id]
        return True

    def running_task_ids(self) -> list[str]:
        with self._lock:
            return [
                task_id
                for task_id, run in self._runs.items()
                if run.result.status == TaskExecutionStatus.IN_PROGRESS
            ]

    # ── Step loop ────────────────────────────────────────────
    async def _run_steps(
        self,
        task: TaskDefinition,
        order: list[TaskStep],
        result: TaskExecutionResult,
        token: CancellationToken,
        on_step_completed: StepCallback | None,
    ) -> None:
        log = logger.bind(task_id=task.id)
        last_value: str | None = result.final_result

        for step in order:
            step_result = result.step_results[step.id]
            # Finished on an earlier pass of a resumed run
            if step_result.status in _FINISHED_STEP_STATES:
                if step_result.status == StepExecutionStatus.COMPLETED:
                    last_value = step_result.result
                continue

            if token.is_cancelled:
                result.transition_to(TaskExecutionStatus.CANCELLED)
                log.info("task_cancelled", before_step=step.id)
                return

            unmet = [d for d in step.depends_on if not result.is_step_completed(d)]
            if unmet:
                error = f"Step {step.label}: dependencies not met"
                step_result.fail(f"Dependencies not met: {', '.join(unmet)}")
                await self._notify(on_step_completed, step_result)
                result.fail(error)
                log.warning("task_step_blocked", step_id=step.id, unmet=unmet)
                return

            step_result.start()
            try:
                outcome = await self._handlers[step.type](step, task, result, token)
            except OperationCancelledError:
                step_result.reset()
                result.transition_to(TaskExecutionStatus.CANCELLED)
                log.info("task_cancelled", during_step=step.id)
                return

            self._apply(step_result, outcome)
            if step_result.duration is not None:
                TASK_STEP_DURATION.labels(step_type=step.type.value).observe(
                    step_result.duration.total_seconds()
                )
            log.info(
                "task_step_finished",
                step_id=step.id,
                step_name=step.name,
                status=step_result.status.value,
            )
            await self._notify(on_step_completed, step_result)

            if step_result.status == StepExecutionStatus.FAILED:
                result.fail(f"Step {step.label}: {step_result.error}")
                return
            if step_result.status == StepExecutionStatus.COMPLETED:
                last_value = step_result.result

            if step.requires_human_approval:
                result.transition_to(TaskExecutionStatus.PENDING_APPROVAL)
                log.info("task_pending_approval", step_id=step.id)
                return

        result.final_result = last_value
        result.transition_to(TaskExecutionStatus.COMPLETED)

    @staticmethod
    def _apply(step_result: StepResult, outcome: _StepOutcome) -> None:
        if outcome.status == StepExecutionStatus.COMPLETED:
            step_result.complete(outcome.value)
        elif outcome.status == StepExecutionStatus.SKIPPED:
            step_result.skip(outcome.value or NOT_IMPLEMENTED)
        else:
            step_result.fail(outcome.error or "step failed")

    @staticmethod
    async def _notify(callback: StepCallback | None, step_result: StepResult) -> None:
        if callback is None:
            return
        try:
            maybe = callback(step_result)
            if inspect.isawaitable(maybe):
                await maybe
        except Exception:
            logger.exception("task_step_callback_failed", step_id=step_result.step_id)

    # ── Step handlers ────────────────────────────────────────
    async def _run_llm_query(
        self,
        step: TaskStep,
        task: TaskDefinition,
        result: TaskExecutionResult,
        token: CancellationToken,
    ) -> _StepOutcome:
        prompt = step.prompt
        for dep_id in step.depends_on:
            value = result.completed_result(dep_id) or ""
            dep = task.step_by_id(dep_id)
            if dep is not None and dep.name:
                prompt = prompt.replace("{" + dep.name + "}", value)
            prompt = prompt.replace("{" + dep_id + "}", value)

        try:
            text = await self._llm.complete(
                prompt,
                system_prompt=step.parameters.get("system_prompt"),
                cancellation=token,
            )
        except OperationCancelledError:
            raise
        except Exception as exc:
            return _StepOutcome.failed(f"{type(exc).__name__}: {exc}")
        return _StepOutcome.completed(text)

    async def _run_validation(
        self,
        step: TaskStep,
        task: TaskDefinition,
        result: TaskExecutionResult,
        token: CancellationToken,
    ) -> _StepOutcome:
        target = step.parameters.get("target_step") or (
            step.depends_on[0] if step.depends_on else None
        )
        if target is None:
            return _StepOutcome.failed("Validation step has no target step")

        target_step = task.step_by_id(target) or next(
            (s for s in task.steps if s.name == target), None
        )
        if target_step is None:
            return _StepOutcome.failed(f"Validation target {target!r} does not exist")

        value = result.completed_result(target_step.id)
        if value is None or not value.strip():
            return _StepOutcome.failed("Previous step result is empty")
        return _StepOutcome.completed("Validation passed")

    async def _run_not_implemented(
        self,
        step: TaskStep,
        task: TaskDefinition,
        result: TaskExecutionResult,
        token: CancellationToken,
    ) -> _StepOutcome:
        return _StepOutcome.skipped(NOT_IMPLEMENTED)
