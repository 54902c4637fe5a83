from __future__ import annotations

from dataclasses import dataclass

from taskpilot.cancellation import CancelToken, TaskCancelled
from taskpilot.llm import LLMClient, strip_thinking_tags
from taskpilot.models import Plan, Task, TaskStatus
from taskpilot.planning import parse_supervisor_decision, summarize_tasks
from taskpilot.prompts import supervisor_prompt


@dataclass(frozen=True)
class SupervisorDecision:
    decision: str
    reasoning: str
    new_instruction: str | None = None

    @property
    def wants_replan(self) -> bool:
        return self.decision == "replan"


class Supervisor:
    def __init__(self, llm: LLMClient, model: str | None = None) -> None:
        self.llm = llm
        self.model = model

    def decide(self, plan: Plan, task: Task, output: str, cancel: CancelToken) -> SupervisorDecision:
        """Judge a task output. Any failure other than cancellation means continue."""
        remaining = [item for item in plan.tasks if item.id != task.id and item.status == TaskStatus.PENDING]
        prompt = supervisor_prompt(
            plan.objective,
            task.description,
            task.action,
            output,
            summarize_tasks(remaining),
        )
        try:
            cancel.raise_if_cancelled()
            response = self.llm.chat([{"role": "user", "content": prompt}], cancel=cancel, model=self.model)
        except TaskCancelled:
            raise
        except Exception as exc:
            return SupervisorDecision("continue", f"Supervisor unavailable ({exc}); continuing.")
        verdict, error = parse_supervisor_decision(strip_thinking_tags(response.content))
        if verdict is None:
            return SupervisorDecision("continue", f"Supervisor reply unusable ({error}); continuing.")
        return SupervisorDecision(verdict.decision, verdict.reasoning, verdict.new_instruction)
