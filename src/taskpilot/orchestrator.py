from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import httpx

from taskpilot.architect import Architect, PlanningOutcome
from taskpilot.cancellation import CancelToken, TaskCancelled, ensure_token
from taskpilot.checkpoints import create_checkpoint
from taskpilot.config import AgentSettings, PermissionSettings
from taskpilot.llm import ChatMessage, LLMClient, format_llm_http_error
from taskpilot.models import Plan, PlanStatus, Task, TaskStatus
from taskpilot.params import resolve_parameters
from taskpilot.plan_store import PlanStore
from taskpilot.planning import adopt_tasks, build_plan, summarize_tasks
from taskpilot.prompts import replan_instruction, revision_instruction
from taskpilot.run_logs import append_run_log
from taskpilot.session import SessionState
from taskpilot.supervisor import Supervisor
from taskpilot.tools.policy import PermissionGate
from taskpilot.tools.protocol import ToolExecutionEnv, ToolResult
from taskpilot.tools.registry import ToolRegistry
from taskpilot.tools.runner import ToolRunner


DecisionFn = Callable[[str, Task], str | None]
PromptFn = Callable[[str], str | None]

_NEXT = "next"
_RETRY = "retry"
_HALT = "halt"
_STOP = "stop"

_OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


def _unsettled_failure(task: Task) -> bool:
    """A failed task whose retry-or-ask handling never finished."""
    return task.status == TaskStatus.FAILED and task.can_retry is None


@dataclass
class RunResult:
    status: str
    message: str
    plan: Plan | None = None
    plan_id: str | None = None
    final_messages: list[str] = field(default_factory=list)


class Orchestrator:
    """Owns the live plan and session for one conversation and drives execution."""

    def __init__(
        self,
        llm: LLMClient,
        registry: ToolRegistry,
        workspace_root: Path,
        agent_settings: AgentSettings | None = None,
        permissions: PermissionSettings | None = None,
        plan_store: PlanStore | None = None,
        logs_dir: Path | None = None,
        status_fn: Callable[[str], None] | None = None,
        decision_fn: DecisionFn | None = None,
        prompt_fn: PromptFn | None = None,
        log_fn: Callable[[str, str], None] | None = None,
        supervisor_llm: LLMClient | None = None,
        supervisor_model: str | None = None,
        architect_model: str | None = None,
        context_fn: Callable[[], str] | None = None,
        session: SessionState | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.workspace_root = workspace_root
        self.settings = agent_settings or AgentSettings()
        self.runner = ToolRunner(registry, PermissionGate(permissions or PermissionSettings()), self._make_env)
        self.architect = Architect(
            llm,
            registry,
            self.runner,
            settings=self.settings,
            model=architect_model,
            status_fn=status_fn,
        )
        self.supervisor = Supervisor(supervisor_llm or llm, model=supervisor_model)
        self.plan_store = plan_store
        self.logs_dir = logs_dir
        self.status_fn = status_fn
        self.decision_fn = decision_fn
        self.prompt_fn = prompt_fn
        self.log_fn = log_fn
        self.context_fn = context_fn
        self.session = session or SessionState.create(self.settings.working_memory_size)
        self.history: list[ChatMessage] = []
        self.plan: Plan | None = None
        self.plan_id: str | None = None
        self.final_messages: list[str] = []
        self._current_index = -1

    # Entry points

    def run(self, message: str, cancel: CancelToken | None = None) -> RunResult:
        cancel = ensure_token(cancel)
        prior_history = list(self.history)
        self.history.append({"role": "user", "content": message})
        self.final_messages = []
        try:
            if self.has_live_plan():
                assert self.plan is not None
                self._status("Live plan found; applying the message as a plan change")
                self._reopen_interrupted()
                self._current_index = self._first_open_index() - 1
                result = self.replan(message, cancel)
                if not result.success:
                    return self._result("planning_failed", result.output)
                return self.execute_plan(cancel, start_index=self._current_index + 1)

            self.session.reset_for_new_objective()
            self.plan = None
            self.plan_id = PlanStore.new_plan_id()
            self._status("Generating the initial plan")
            self._log("planning_started", objective=message)
            outcome = self.architect.generate_plan(
                message,
                self.session,
                cancel,
                self._make_env,
                history=prior_history,
            )
            if not outcome.ok:
                self._log("planning_failed", error=outcome.error)
                detail = f"Could not generate a valid plan: {outcome.error}"
                if outcome.raw_response:
                    detail += f"\n\nLast model response:\n{outcome.raw_response[:2000]}"
                return self._result("planning_failed", detail)
            assert outcome.tasks is not None
            plan = build_plan(message, outcome.tasks, outcome.scratchpad)
            plan.investigation = list(outcome.investigation)
            self.plan = plan
            self._log("plan_created", tasks=len(plan.tasks))
            self._persist()
            return self.execute_plan(cancel)
        except TaskCancelled:
            return self._cancelled()
        except httpx.HTTPStatusError as exc:
            self._log("llm_error", error=format_llm_http_error(exc))
            return self._result("planning_failed", f"LLM request failed: {format_llm_http_error(exc)}")
        except httpx.HTTPError as exc:
            self._log("llm_error", error=str(exc))
            return self._result("planning_failed", f"LLM request failed: {exc}")

    def resume(self, plan_id: str | None = None, cancel: CancelToken | None = None) -> RunResult:
        cancel = ensure_token(cancel)
        if plan_id is not None and plan_id != self.plan_id:
            if not self.load_plan(plan_id):
                return RunResult(status="planning_failed", message=f"Plan not found: {plan_id}")
        if self.plan is None:
            return RunResult(status="planning_failed", message="No plan to resume.")
        self._reopen_interrupted()
        self.plan.status = PlanStatus.ACTIVE
        self._log("resumed")
        return self.execute_plan(cancel, start_index=self._first_open_index())

    def load_plan(self, plan_id: str) -> bool:
        if self.plan_store is None:
            return False
        plan = self.plan_store.load(plan_id)
        if plan is None:
            return False
        self.plan = plan
        self.plan_id = plan_id
        return True

    def has_live_plan(self) -> bool:
        if self.plan is None or self.plan.status != PlanStatus.ACTIVE:
            return False
        return any(task.status in _OPEN_STATUSES or _unsettled_failure(task) for task in self.plan.tasks)

    # Execution loop

    def execute_plan(self, cancel: CancelToken | None = None, start_index: int = 0) -> RunResult:
        cancel = ensure_token(cancel)
        plan = self.plan
        if plan is None:
            raise RuntimeError("execute_plan called without a plan")
        index = start_index
        try:
            while index < len(plan.tasks):
                cancel.raise_if_cancelled()
                task = plan.tasks[index]
                self._current_index = index
                if _unsettled_failure(task):
                    self._log("failure_resumed", task_id=task.id)
                    outcome = self._settle_failure(task, cancel)
                elif task.status != TaskStatus.PENDING:
                    index += 1
                    continue
                else:
                    outcome = self._run_task(index, task, cancel)
                if outcome == _RETRY:
                    continue
                if outcome == _HALT:
                    message = (
                        f"Giving up: the step at position {index + 1} failed "
                        f"{self.settings.max_consecutive_failures} times in a row."
                    )
                    plan.status = PlanStatus.FAILED
                    plan.note(message)
                    self._status(message)
                    self._log("hard_stop", index=index, task_id=task.id)
                    self._persist()
                    return self._result("halted", message)
                if outcome == _STOP:
                    message = f"Execution stopped by user after task {task.id} failed."
                    plan.status = PlanStatus.FAILED
                    plan.note(message)
                    self._status(message)
                    self._log("stopped", task_id=task.id)
                    self._persist()
                    return self._result("stopped", message)
                index += 1
        except TaskCancelled:
            return self._cancelled()
        plan.status = PlanStatus.COMPLETED
        plan.note("Plan complete: all tasks have been executed.")
        self._status("Plan complete")
        self._log("plan_completed")
        self._persist()
        return self._result("completed", "All tasks have been executed.")

    def _run_task(self, index: int, task: Task, cancel: CancelToken) -> str:
        plan = self.plan
        assert plan is not None
        if self.settings.checkpoints_enabled and task.action in self.settings.mutating_actions:
            self._checkpoint(task)
        task.status = TaskStatus.IN_PROGRESS
        self._status(f"Running task {task.id}: {task.description}")
        self._log("task_started", task_id=task.id, action=task.action)
        self._persist()

        params = resolve_parameters(task, plan, self.session)
        blocked = self.session.failure_memory.has_failed_before(task.action, params)
        if blocked:
            result = ToolResult(
                success=False,
                output=(
                    f"Blocked: '{task.action}' was already called with these exact parameters and failed. "
                    "Change strategy: use a different tool or different parameters."
                ),
            )
        else:
            try:
                result = self.runner.execute_task(task.action, params, cancel, env_override=self._make_env())
            except TaskCancelled:
                raise
            except Exception as exc:
                result = ToolResult(success=False, output=str(exc))

        task.result = result.output
        task.status = TaskStatus.COMPLETED if result.success else TaskStatus.FAILED
        excerpt = result.output if len(result.output) <= 1000 else result.output[:1000] + "..."
        plan.note(f"Task {task.id} ({task.action}) {task.status.value}. Result:\n{excerpt}")

        if result.success:
            return self._after_success(index, task, result, cancel)
        return self._after_failure(index, task, params, result, blocked, cancel)

    def _after_success(self, index: int, task: Task, result: ToolResult, cancel: CancelToken) -> str:
        plan = self.plan
        assert plan is not None
        if task.save_as:
            self.session.store_variable(task.save_as, result.output)
        self.session.reset_failure(index)
        self.session.remember_output(
            f"[task {task.id}] {task.action}",
            result.output,
            self.settings.working_memory_min_chars,
            self.settings.working_memory_excerpt_chars,
        )
        self._log("task_completed", task_id=task.id, action=task.action)
        self._persist()
        if self.settings.supervisor_enabled and (
            task.action in self.settings.significant_actions or task.action == "request_user_input"
        ):
            decision = self.supervisor.decide(plan, task, result.output, cancel)
            self._log("supervisor", task_id=task.id, decision=decision.decision, reasoning=decision.reasoning)
            if decision.wants_replan:
                self._status(f"Supervisor requested a replan: {decision.reasoning}")
                self._current_index = index
                self.replan(decision.new_instruction or decision.reasoning, cancel)
        return _NEXT

    def _after_failure(
        self,
        index: int,
        task: Task,
        params: dict[str, Any],
        result: ToolResult,
        blocked: bool,
        cancel: CancelToken,
    ) -> str:
        if not blocked:
            self.session.failure_memory.record_failure(task.action, params, result.output)
        count = self.session.bump_failure(index)
        self._status(f"Task {task.id} failed ({count}/{self.settings.max_consecutive_failures})")
        self._log("task_failed", task_id=task.id, action=task.action, consecutive=count, blocked=blocked)
        self._persist()
        if count >= self.settings.max_consecutive_failures:
            task.can_retry = False
            return _HALT
        return self._settle_failure(task, cancel)

    def _settle_failure(self, task: Task, cancel: CancelToken) -> str:
        """Self-correct within the retry budget, otherwise ask the user.

        Also used on resume for a failure whose handling was interrupted.
        """
        if task.retries < self.settings.max_retries and self.revise_plan_for_failure(task, cancel):
            return _RETRY
        task.can_retry = True
        self._persist()
        return _NEXT if self._ask_failure_decision(task) == "continue" else _STOP

    def _ask_failure_decision(self, task: Task) -> str:
        if self.decision_fn is None:
            return "stop"
        message = (
            f'Task "{task.description}" failed after {task.retries} self-correction attempt(s). '
            "What should I do?"
        )
        while True:
            choice = self.decision_fn(message, task)
            if choice == "view_log":
                self._show_failure_log(task)
                continue
            if choice == "continue":
                self._log("continue_anyway", task_id=task.id)
                return "continue"
            return "stop"

    def _show_failure_log(self, task: Task) -> None:
        body = f"## Task Description\n{task.description}\n\n## Failure Log\n{task.result or 'No output available.'}"
        title = f"Log for failed task {task.id}"
        if self.log_fn:
            self.log_fn(title, body)
        else:
            self._status(f"{title}\n{body}")

    # Replan and archive

    def archive_current_plan_state(self, reason: str) -> Plan | None:
        if self.plan is None:
            return None
        snapshot = self.plan.snapshot(reason)
        self.plan.attempts.append(snapshot)
        self._log("archived", reason=reason, attempts=len(self.plan.attempts))
        return snapshot

    def revise_plan_for_failure(self, task: Task, cancel: CancelToken | None = None) -> bool:
        cancel = ensure_token(cancel)
        plan = self.plan
        if plan is None:
            return False
        index = plan.index_of(task.id)
        if index < 0:
            return False
        self.archive_current_plan_state(f"Task {task.id} ({task.action}) failed")
        task.retries += 1
        plan.note(f"Task {task.id} failed. Attempting to self-correct (attempt {task.retries}).")
        self._status(f"Revising plan after failure of task {task.id}")
        instruction = revision_instruction(
            plan.objective,
            task.id,
            task.action,
            task.result or "",
            summarize_tasks(plan.tasks[:index]),
            plan.next_id,
            self.session.failure_memory.get_memory_context(),
        )
        outcome = self._plan_fragment(instruction, cancel)
        if not outcome.ok:
            plan.note(f"Self-correction failed: {outcome.error}")
            self._log("revision_failed", task_id=task.id, error=outcome.error)
            self._persist()
            return False
        assert outcome.tasks is not None
        del plan.tasks[index:]
        new_tasks = adopt_tasks(plan, outcome.tasks)
        plan.tasks.extend(new_tasks)
        plan.investigation.extend(outcome.investigation)
        plan.note(f"PLAN REVISED after failure of task {task.id}.")
        self._log("revised", task_id=task.id, new_task_ids=[item.id for item in new_tasks])
        self._persist()
        return True

    def replan(self, instruction: str, cancel: CancelToken | None = None) -> ToolResult:
        cancel = ensure_token(cancel)
        plan = self.plan
        if plan is None:
            return ToolResult(success=False, output="No active plan to edit.")
        index = self._current_index
        self.archive_current_plan_state(f"Replan requested: {instruction[:200]}")
        self._status("Replanning remaining work")
        prompt = replan_instruction(
            plan.objective,
            instruction,
            summarize_tasks(plan.tasks[: index + 1]),
            plan.next_id,
            self.session.failure_memory.get_memory_context(),
            remaining_tasks=summarize_tasks(plan.tasks[index + 1 :]),
        )
        outcome = self._plan_fragment(prompt, cancel)
        if not outcome.ok:
            plan.note(f"Replanning failed: {outcome.error}")
            self._log("replan_failed", error=outcome.error)
            self._persist()
            return ToolResult(success=False, output=f"Replanning failed: {outcome.error}")
        assert outcome.tasks is not None
        del plan.tasks[index + 1 :]
        new_tasks = adopt_tasks(plan, outcome.tasks)
        plan.tasks.extend(new_tasks)
        plan.investigation.extend(outcome.investigation)
        plan.status = PlanStatus.ACTIVE
        plan.note(f"PLAN UPDATED: {instruction[:200]}")
        self._log("replanned", new_task_ids=[item.id for item in new_tasks])
        self._persist()
        return ToolResult(success=True, output=f"Plan updated with {len(new_tasks)} new task(s).")

    def _plan_fragment(self, instruction: str, cancel: CancelToken) -> PlanningOutcome:
        assert self.plan is not None
        try:
            return self.architect.generate_plan(
                self.plan.objective,
                self.session,
                cancel,
                self._make_env,
                history=self.history,
                instruction=instruction,
            )
        except httpx.HTTPStatusError as exc:
            return PlanningOutcome(tasks=None, raw_response="", error=format_llm_http_error(exc))
        except httpx.HTTPError as exc:
            return PlanningOutcome(tasks=None, raw_response="", error=str(exc))

    # Tool callbacks

    def ask_user(self, question: str) -> str | None:
        if self.prompt_fn is None:
            return None
        return self.prompt_fn(question)

    def submit_final_message(self, text: str) -> None:
        self.final_messages.append(text)
        self.history.append({"role": "assistant", "content": text})
        self._log("final_message", chars=len(text))

    # Helpers

    def _make_env(self) -> ToolExecutionEnv:
        return ToolExecutionEnv(
            workspace_root=self.workspace_root,
            llm=self.llm,
            session=self.session,
            plan=self.plan,
            orchestrator=self,
            context=self.context_fn,
        )

    def _reopen_interrupted(self) -> None:
        assert self.plan is not None
        for task in self.plan.tasks:
            if task.status == TaskStatus.IN_PROGRESS:
                task.status = TaskStatus.PENDING

    def _first_open_index(self) -> int:
        if self.plan is None:
            return 0
        for idx, task in enumerate(self.plan.tasks):
            if task.status == TaskStatus.PENDING or _unsettled_failure(task):
                return idx
        return len(self.plan.tasks)

    def _checkpoint(self, task: Task) -> None:
        status = create_checkpoint(self.workspace_root, f"taskpilot: before task {task.id} ({task.action})")
        if status.message:
            self._status(status.message)
        self._log("checkpoint", task_id=task.id, ok=status.ok, ref=status.ref, message=status.message)

    def _cancelled(self) -> RunResult:
        self._status("Execution cancelled")
        self._log("cancelled")
        self._persist()
        return self._result("cancelled", "Execution cancelled.")

    def _result(self, status: str, message: str) -> RunResult:
        return RunResult(
            status=status,
            message=message,
            plan=self.plan,
            plan_id=self.plan_id,
            final_messages=list(self.final_messages),
        )

    def _status(self, message: str) -> None:
        if self.status_fn:
            self.status_fn(message)

    def _log(self, event: str, **fields: Any) -> None:
        if self.logs_dir is None:
            return
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "plan_id": self.plan_id,
            "event": event,
        }
        entry.update(fields)
        try:
            append_run_log(self.logs_dir, entry)
        except OSError as exc:
            self._status(f"Run log write failed: {exc}")

    def _persist(self) -> None:
        if self.plan_store is None or self.plan is None or self.plan_id is None:
            return
        try:
            self.plan_store.save(self.plan_id, self.plan)
        except OSError as exc:
            self._status(f"Plan save failed: {exc}")
