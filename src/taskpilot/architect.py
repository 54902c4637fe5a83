from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from taskpilot.cancellation import CancelToken, TaskCancelled
from taskpilot.config import AgentSettings
from taskpilot.llm import ChatMessage, LLMClient, strip_thinking_tags
from taskpilot.models import InvestigationStep, Task, TaskStatus
from taskpilot.planning import (
    extract_json,
    is_plan_payload,
    parse_tasks,
    parse_tool_request,
    submit_response_task,
)
from taskpilot.prompts import (
    agentic_investigation_message,
    architect_system_prompt,
    augmented_objective,
    blocked_retry_message,
    format_history,
    invalid_plan_message,
    nudge_message,
    tool_result_message,
)
from taskpilot.session import SessionState
from taskpilot.tools.protocol import ToolExecutionEnv, ToolResult
from taskpilot.tools.registry import ToolRegistry
from taskpilot.tools.runner import ToolRunner


@dataclass
class PlanningOutcome:
    tasks: list[Task] | None
    raw_response: str
    error: str | None = None
    scratchpad: str = ""
    investigation: list[InvestigationStep] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.tasks is not None


class Architect:
    """Investigation-then-plan loop.

    The model may call one tool per turn to learn about the workspace and
    must finish with a JSON object holding a non-empty ``tasks`` array.
    """

    def __init__(
        self,
        llm: LLMClient,
        registry: ToolRegistry,
        runner: ToolRunner,
        settings: AgentSettings | None = None,
        model: str | None = None,
        status_fn: Callable[[str], None] | None = None,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.runner = runner
        self.settings = settings or AgentSettings()
        self.model = model
        self.status_fn = status_fn

    def generate_plan(
        self,
        objective: str,
        session: SessionState,
        cancel: CancelToken,
        env_factory: Callable[[], ToolExecutionEnv],
        history: list[ChatMessage] | None = None,
        instruction: str | None = None,
    ) -> PlanningOutcome:
        """Run the bounded loop. ``instruction`` replaces the objective message for revisions."""
        messages = self._initial_messages(objective, session, history or [], instruction)
        investigation: list[InvestigationStep] = []
        raw = ""
        limit = max(1, self.settings.max_architect_iterations)
        for iteration in range(1, limit + 1):
            cancel.raise_if_cancelled()
            if self.status_fn:
                self.status_fn(f"Architect iteration {iteration}/{limit}")
            response = self.llm.chat(messages, cancel=cancel, model=self.model)
            raw = response.content
            text = strip_thinking_tags(raw)
            messages.append({"role": "assistant", "content": raw})
            payload = extract_json(text)

            if payload is not None and is_plan_payload(payload):
                tasks, error = parse_tasks(payload, self.registry.enabled_names())
                if tasks is None:
                    if self.status_fn:
                        self.status_fn(f"Architect plan rejected: {error}")
                    messages.append({"role": "user", "content": invalid_plan_message(str(error))})
                    continue
                if (
                    self.settings.append_submit_response
                    and tasks[-1].action != "submit_response"
                    and self.registry.is_enabled("submit_response")
                ):
                    tasks.append(submit_response_task())
                scratchpad = payload.get("scratchpad")
                return PlanningOutcome(
                    tasks=tasks,
                    raw_response=raw,
                    scratchpad=scratchpad.strip() if isinstance(scratchpad, str) else "",
                    investigation=investigation,
                )

            if payload is not None and "tool" in payload:
                request, error = parse_tool_request(payload)
                if request is None:
                    messages.append({"role": "user", "content": f"SYSTEM: Invalid tool call ({error})."})
                    continue
                if session.failure_memory.has_failed_before(request.tool, request.params):
                    if self.status_fn:
                        self.status_fn(f"Blocked repeat of failed call: {request.tool}")
                    messages.append({"role": "system", "content": blocked_retry_message(request.tool)})
                    continue
                definition = self.registry.get(request.tool)
                if definition is not None and definition.is_agentic:
                    if self.status_fn:
                        self.status_fn(f"Refused agentic tool during investigation: {request.tool}")
                    messages.append({"role": "system", "content": agentic_investigation_message(request.tool)})
                    continue
                result = self._investigate(request.tool, request.params, cancel, env_factory)
                step = InvestigationStep(
                    action=request.tool,
                    parameters=request.params,
                    status=TaskStatus.COMPLETED if result.success else TaskStatus.FAILED,
                    result=result.output,
                )
                investigation.append(step)
                if result.success:
                    session.remember_output(
                        f"[investigation] {request.tool}",
                        result.output,
                        self.settings.working_memory_min_chars,
                        self.settings.working_memory_excerpt_chars,
                    )
                else:
                    session.failure_memory.record_failure(request.tool, request.params, result.output)
                messages.append(
                    {"role": "user", "content": tool_result_message(request.tool, result.success, result.output)}
                )
                continue

            force = iteration >= self.settings.force_plan_after_iteration
            messages.append({"role": "system", "content": nudge_message(force)})

        return PlanningOutcome(
            tasks=None,
            raw_response=raw,
            error=f"Architect did not produce a valid plan after {limit} iterations.",
            investigation=investigation,
        )

    def _initial_messages(
        self,
        objective: str,
        session: SessionState,
        history: list[ChatMessage],
        instruction: str | None,
    ) -> list[ChatMessage]:
        system = architect_system_prompt(self.registry.describe_tools())
        if instruction is not None:
            body = instruction
        else:
            body = augmented_objective(
                objective,
                session.environment_summary(),
                session.working_memory_summary(),
                session.failure_memory.get_memory_context(),
            )
        history_block = format_history(history)
        content = f"{history_block}\n\n{body}" if history_block else body
        return [{"role": "system", "content": system}, {"role": "user", "content": content}]

    def _investigate(
        self,
        tool: str,
        params: dict[str, Any],
        cancel: CancelToken,
        env_factory: Callable[[], ToolExecutionEnv],
    ) -> ToolResult:
        if self.status_fn:
            self.status_fn(f"Investigating with {tool}")
        try:
            return self.runner.execute_task(tool, params, cancel, env_override=env_factory())
        except TaskCancelled:
            raise
        except Exception as exc:
            return ToolResult(success=False, output=f"Error: {exc}")
