import json
import sys
import tempfile
import unittest
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.cancellation import CancelToken, TaskCancelled
from taskpilot.config import AgentSettings, PermissionSettings
from taskpilot.llm import LLMResponse
from taskpilot.models import PlanStatus, TaskStatus
from taskpilot.orchestrator import Orchestrator
from taskpilot.plan_store import PlanStore
from taskpilot.run_logs import latest_events_for_plan
from taskpilot.tools.protocol import ToolDefinition, ToolResult
from taskpilot.tools.registry import build_default_registry


class ScriptedLLM:
    def __init__(self, script: list[object]) -> None:
        self.script = list(script)
        self.calls = 0
        self.messages: list[list[dict]] = []

    def chat(self, messages, *, cancel=None, model=None, temperature=None) -> LLMResponse:
        self.messages.append([dict(message) for message in messages])
        if self.calls >= len(self.script):
            raise AssertionError("LLM called more than expected")
        item = self.script[self.calls]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return LLMResponse(content=str(item), model="fake")


def _plan(*tasks: dict) -> str:
    return "```json\n" + json.dumps({"scratchpad": "notes", "tasks": list(tasks)}) + "\n```"


def _command(command: str, task_id: int = 1) -> dict:
    return {"id": task_id, "action": "execute_command", "description": command, "parameters": {"command": command}}


class OrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.workspace = self.root / "workspace"
        self.workspace.mkdir()
        self.logs_dir = self.root / "logs"
        self.store = PlanStore(self.root / "plans")
        self.registry = build_default_registry()
        self.commands: list[str] = []
        self.failing_commands: set[str] = set()
        self.statuses: list[str] = []

        def execute_command(params, env, cancel):
            command = params.get("command", "")
            self.commands.append(command)
            if command in self.failing_commands or command.startswith("fail"):
                return ToolResult(False, f"Command failed with exit code 1: {command}\nerror: boom")
            return ToolResult(True, f"Command succeeded: {command}")

        self.registry.register(
            ToolDefinition(
                "execute_command",
                "Run a shell command.",
                execute_command,
                permission_group="shell_execution",
            )
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _orchestrator(self, llm, supervisor_llm=None, settings=None, **kwargs) -> Orchestrator:
        return Orchestrator(
            llm=llm,
            registry=self.registry,
            workspace_root=self.workspace,
            agent_settings=settings or AgentSettings(checkpoints_enabled=False, supervisor_enabled=False),
            plan_store=self.store,
            logs_dir=self.logs_dir,
            status_fn=self.statuses.append,
            supervisor_llm=supervisor_llm,
            **kwargs,
        )

    def test_list_then_summarize(self) -> None:
        (self.workspace / "a.py").write_text("print('a')\n")
        (self.workspace / "b.py").write_text("print('b')\n")
        llm = ScriptedLLM(
            [
                _plan(
                    {"id": 1, "action": "list_files", "description": "List files", "parameters": {"path": "."}},
                    {
                        "id": 2,
                        "action": "summarize_text",
                        "description": "Summarize listing",
                        "parameters": {"text": "{{tasks[1].result}}", "objective": "python files"},
                    },
                ),
                "Two python files: a.py and b.py.",
            ]
        )
        result = self._orchestrator(llm).run("List the python files and summarize them", CancelToken())
        self.assertEqual(result.status, "completed")
        assert result.plan is not None
        self.assertEqual([task.status for task in result.plan.tasks], [TaskStatus.COMPLETED] * 2)
        self.assertEqual(result.plan.tasks[1].result, "Two python files: a.py and b.py.")
        summary_prompt = llm.messages[1][0]["content"]
        self.assertIn("a.py", summary_prompt)
        self.assertIn("b.py", summary_prompt)
        self.assertNotIn("{{tasks[1].result}}", summary_prompt)
        self.assertEqual(result.plan.status, PlanStatus.COMPLETED)

    def test_gives_up_after_three_consecutive_failures(self) -> None:
        llm = ScriptedLLM(
            [
                _plan(_command("fail v1")),
                _plan(_command("fail v2")),
                _plan(_command("fail v3")),
            ]
        )
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Run the app", CancelToken())
        self.assertEqual(result.status, "halted")
        self.assertIn("Giving up", result.message)
        self.assertEqual(self.commands, ["fail v1", "fail v2", "fail v3"])
        self.assertEqual(llm.calls, 3)
        assert result.plan is not None
        self.assertEqual(result.plan.status, PlanStatus.FAILED)
        self.assertEqual(len(result.plan.attempts), 2)
        self.assertEqual(len(orchestrator.session.failure_memory), 3)

    def test_archived_attempts_are_independent_of_live_plan(self) -> None:
        llm = ScriptedLLM([_plan(_command("fail first")), _plan(_command("echo fixed"))])
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Run it", CancelToken())
        self.assertEqual(result.status, "completed")
        assert result.plan is not None
        archived = result.plan.attempts[0]
        self.assertEqual(archived.status, PlanStatus.STALE)
        self.assertEqual(archived.tasks[0].parameters["command"], "fail first")
        self.assertEqual(archived.tasks[0].status, TaskStatus.FAILED)
        result.plan.tasks[0].parameters["command"] = "changed"
        result.plan.tasks[0].result = "changed"
        self.assertEqual(archived.tasks[0].parameters["command"], "fail first")
        self.assertIn("exit code 1", archived.tasks[0].result or "")
        self.assertEqual([task.id for task in result.plan.tasks], [2])

    def test_identical_revised_call_is_blocked(self) -> None:
        llm = ScriptedLLM(
            [
                _plan(_command("fail same")),
                _plan(_command("fail same")),
                _plan(_command("fail same")),
            ]
        )
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Run it", CancelToken())
        self.assertEqual(self.commands, ["fail same"])
        self.assertEqual(result.status, "halted")
        self.assertEqual(len(orchestrator.session.failure_memory), 1)
        assert result.plan is not None
        self.assertIn("Blocked", result.plan.tasks[0].result or "")

    def test_revision_prompt_lists_failure(self) -> None:
        llm = ScriptedLLM([_plan(_command("fail first")), _plan(_command("echo fixed"))])
        self._orchestrator(llm).run("Run it", CancelToken())
        revision_message = llm.messages[1][1]["content"]
        self.assertIn("ACTIONS PREVIOUSLY FAILED", revision_message)
        self.assertIn("fail first", revision_message)
        self.assertIn("starting at id 2", revision_message)

    def test_save_as_variable_flows_into_later_task(self) -> None:
        (self.workspace / "config.json").write_text('{"port": 8080}')
        llm = ScriptedLLM(
            [
                _plan(
                    {"id": 1, "action": "read_file", "parameters": {"path": "config.json"}, "save_as": "cfg"},
                    {"id": 2, "action": "write_file", "parameters": {"path": "copy.json", "content": "{{cfg}}"}},
                )
            ]
        )
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Copy the config", CancelToken())
        self.assertEqual(result.status, "completed")
        self.assertEqual(orchestrator.session.repl_variables["cfg"], {"port": 8080})
        self.assertEqual((self.workspace / "copy.json").read_text(), json.dumps({"port": 8080}, indent=2))

    def test_supervisor_replan_splices_after_current_task(self) -> None:
        llm = ScriptedLLM(
            [
                _plan(_command("pip install app", 1), _command("run app", 2)),
                _plan(_command("python -m ensurepip", 1)),
            ]
        )
        supervisor_llm = ScriptedLLM(
            [
                '{"decision": "replan", "reasoning": "pip is missing", "new_instruction": "bootstrap pip first"}',
                '{"decision": "continue", "reasoning": "ok"}',
            ]
        )
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=True)
        result = self._orchestrator(llm, supervisor_llm=supervisor_llm, settings=settings).run(
            "Install and run the app", CancelToken()
        )
        self.assertEqual(result.status, "completed")
        assert result.plan is not None
        self.assertEqual([task.id for task in result.plan.tasks], [1, 3])
        self.assertEqual(self.commands, ["pip install app", "python -m ensurepip"])
        self.assertEqual(len(result.plan.attempts), 1)
        self.assertEqual([task.id for task in result.plan.attempts[0].tasks], [1, 2])
        self.assertIn("bootstrap pip first", llm.messages[1][1]["content"])

    def test_supervisor_skipped_for_insignificant_actions(self) -> None:
        llm = ScriptedLLM([_plan({"id": 1, "action": "list_files", "parameters": {"path": "."}})])
        supervisor_llm = ScriptedLLM([])
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=True)
        result = self._orchestrator(llm, supervisor_llm=supervisor_llm, settings=settings).run(
            "List", CancelToken()
        )
        self.assertEqual(result.status, "completed")
        self.assertEqual(supervisor_llm.calls, 0)

    def test_edit_plan_tool_replaces_remaining_tasks(self) -> None:
        llm = ScriptedLLM(
            [
                _plan(
                    {"id": 1, "action": "edit_plan", "parameters": {"instruction": "reply instead of listing"}},
                    {"id": 2, "action": "list_files", "parameters": {"path": "."}},
                ),
                _plan({"id": 1, "action": "submit_response", "parameters": {"response": "Hello!"}}),
            ]
        )
        result = self._orchestrator(llm).run("Say hello", CancelToken())
        self.assertEqual(result.status, "completed")
        assert result.plan is not None
        self.assertEqual([task.action for task in result.plan.tasks], ["edit_plan", "submit_response"])
        self.assertEqual([task.id for task in result.plan.tasks], [1, 3])
        self.assertEqual(result.plan.tasks[0].result, "Plan updated with 1 new task(s).")
        self.assertEqual(result.final_messages, ["Hello!"])

    def test_failure_decision_view_log_then_continue(self) -> None:
        choices = ["view_log", "continue"]
        shown: list[tuple[str, str]] = []

        def decide(message, task):
            return choices.pop(0)

        llm = ScriptedLLM(
            [_plan(_command("fail build", 1), {"id": 2, "action": "list_files", "parameters": {"path": "."}})]
        )
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=False, max_retries=0)
        orchestrator = self._orchestrator(
            llm,
            settings=settings,
            decision_fn=decide,
            log_fn=lambda title, body: shown.append((title, body)),
        )
        result = orchestrator.run("Build", CancelToken())
        self.assertEqual(result.status, "completed")
        assert result.plan is not None
        first, second = result.plan.tasks
        self.assertEqual(first.status, TaskStatus.FAILED)
        self.assertTrue(first.can_retry)
        self.assertEqual(second.status, TaskStatus.COMPLETED)
        self.assertEqual(len(shown), 1)
        self.assertIn("Log for failed task 1", shown[0][0])
        self.assertIn("boom", shown[0][1])

    def test_failure_without_decision_callback_stops(self) -> None:
        llm = ScriptedLLM([_plan(_command("fail build", 1), _command("echo later", 2))])
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=False, max_retries=0)
        result = self._orchestrator(llm, settings=settings).run("Build", CancelToken())
        self.assertEqual(result.status, "stopped")
        self.assertEqual(self.commands, ["fail build"])
        assert result.plan is not None
        self.assertEqual(result.plan.status, PlanStatus.FAILED)
        self.assertEqual(result.plan.tasks[1].status, TaskStatus.PENDING)

    def test_permission_denied_is_a_task_failure(self) -> None:
        llm = ScriptedLLM([_plan(_command("echo hi"))])
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=False, max_retries=0)
        result = self._orchestrator(
            llm,
            settings=settings,
            permissions=PermissionSettings(can_execute=False),
        ).run("Say hi", CancelToken())
        self.assertEqual(result.status, "stopped")
        self.assertEqual(self.commands, [])
        assert result.plan is not None
        self.assertIn("Permission denied", result.plan.tasks[0].result or "")

    def test_cancellation_leaves_task_in_progress_and_resume_finishes(self) -> None:
        calls: list[str] = []

        def interrupting(params, env, cancel):
            calls.append(params["command"])
            if len(calls) == 1:
                cancel.cancel("user interrupt")
                cancel.raise_if_cancelled()
            return ToolResult(True, "done")

        self.registry.register(
            ToolDefinition("execute_command", "Run.", interrupting, permission_group="shell_execution")
        )
        llm = ScriptedLLM([_plan(_command("long job", 1), {"id": 2, "action": "list_files", "parameters": {}})])
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Run the job", CancelToken())
        self.assertEqual(result.status, "cancelled")
        assert result.plan is not None and result.plan_id is not None
        self.assertEqual(result.plan.tasks[0].status, TaskStatus.IN_PROGRESS)
        self.assertEqual(result.plan.tasks[1].status, TaskStatus.PENDING)

        saved = self.store.load(result.plan_id)
        assert saved is not None
        self.assertEqual(saved.tasks[0].status, TaskStatus.IN_PROGRESS)

        fresh = self._orchestrator(ScriptedLLM([]))
        resumed = fresh.resume(result.plan_id, CancelToken())
        self.assertEqual(resumed.status, "completed")
        self.assertEqual(calls, ["long job", "long job"])

    def test_resume_settles_failure_interrupted_during_revision(self) -> None:
        llm = ScriptedLLM([_plan(_command("fail a", 1), _command("echo b", 2)), TaskCancelled("user interrupt")])
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=False, max_retries=1)
        result = self._orchestrator(llm, settings=settings).run("Run a then b", CancelToken())
        self.assertEqual(result.status, "cancelled")
        assert result.plan_id is not None
        saved = self.store.load(result.plan_id)
        assert saved is not None
        self.assertEqual(saved.tasks[0].status, TaskStatus.FAILED)
        self.assertIsNone(saved.tasks[0].can_retry)

        asked: list[int] = []

        def decide(message, task):
            asked.append(task.id)
            return "continue"

        fresh = self._orchestrator(ScriptedLLM([]), settings=settings, decision_fn=decide)
        resumed = fresh.resume(result.plan_id, CancelToken())
        self.assertEqual(resumed.status, "completed")
        self.assertEqual(asked, [1])
        assert resumed.plan is not None
        self.assertTrue(resumed.plan.tasks[0].can_retry)
        self.assertEqual(resumed.plan.tasks[1].status, TaskStatus.COMPLETED)
        self.assertEqual(self.commands, ["fail a", "echo b"])

    def test_new_message_after_cancel_replaces_interrupted_task(self) -> None:
        calls: list[str] = []

        def interrupting(params, env, cancel):
            calls.append(params["command"])
            if len(calls) == 1:
                cancel.cancel("user interrupt")
                cancel.raise_if_cancelled()
            return ToolResult(True, f"ran {params['command']}")

        self.registry.register(
            ToolDefinition("execute_command", "Run.", interrupting, permission_group="shell_execution")
        )
        llm = ScriptedLLM(
            [
                _plan(_command("slow", 1), _command("echo b", 2)),
                _plan(_command("slow", 3), _command("echo c", 4)),
            ]
        )
        orchestrator = self._orchestrator(llm)
        first = orchestrator.run("Run slow then b", CancelToken())
        self.assertEqual(first.status, "cancelled")
        self.assertTrue(orchestrator.has_live_plan())

        result = orchestrator.run("also do c", CancelToken())
        self.assertEqual(result.status, "completed")
        self.assertEqual(calls, ["slow", "slow", "echo c"])
        assert result.plan is not None
        self.assertNotIn(TaskStatus.IN_PROGRESS, [task.status for task in result.plan.tasks])
        self.assertEqual([task.description for task in result.plan.tasks], ["slow", "echo c"])
        replan_prompt = "\n".join(message["content"] for message in llm.messages[1])
        self.assertIn("Remaining work that will be replaced:", replan_prompt)
        self.assertIn("slow", replan_prompt)

    def test_resume_unknown_plan(self) -> None:
        result = self._orchestrator(ScriptedLLM([])).resume("missing", CancelToken())
        self.assertEqual(result.status, "planning_failed")
        self.assertIn("missing", result.message)

    def test_planning_failure_reports_last_response(self) -> None:
        llm = ScriptedLLM(["no idea", "still no idea"])
        settings = AgentSettings(checkpoints_enabled=False, max_architect_iterations=2)
        result = self._orchestrator(llm, settings=settings).run("Do something", CancelToken())
        self.assertEqual(result.status, "planning_failed")
        self.assertIn("still no idea", result.message)
        self.assertIsNone(result.plan)

    def test_llm_transport_error_is_planning_failure(self) -> None:
        llm = ScriptedLLM([httpx.ConnectError("connection refused")])
        result = self._orchestrator(llm).run("Do something", CancelToken())
        self.assertEqual(result.status, "planning_failed")
        self.assertIn("connection refused", result.message)

    def test_cancel_before_planning(self) -> None:
        cancel = CancelToken()
        cancel.cancel()
        result = self._orchestrator(ScriptedLLM([])).run("Do something", cancel)
        self.assertEqual(result.status, "cancelled")

    def test_submit_response_collects_final_messages_and_history(self) -> None:
        llm = ScriptedLLM([_plan({"id": 1, "action": "submit_response", "parameters": {"response": "All set."}})])
        orchestrator = self._orchestrator(llm)
        result = orchestrator.run("Greet me", CancelToken())
        self.assertEqual(result.final_messages, ["All set."])
        self.assertEqual(orchestrator.history[-1], {"role": "assistant", "content": "All set."})

    def test_second_message_sees_history(self) -> None:
        llm = ScriptedLLM(
            [
                _plan({"id": 1, "action": "submit_response", "parameters": {"response": "First answer."}}),
                _plan({"id": 1, "action": "submit_response", "parameters": {"response": "Second answer."}}),
            ]
        )
        orchestrator = self._orchestrator(llm)
        orchestrator.run("First question", CancelToken())
        result = orchestrator.run("Second question", CancelToken())
        self.assertEqual(result.final_messages, ["Second answer."])
        second_prompt = llm.messages[1][1]["content"]
        self.assertIn("First question", second_prompt)
        self.assertIn("First answer.", second_prompt)

    def test_plan_is_persisted_and_events_logged(self) -> None:
        llm = ScriptedLLM([_plan({"id": 1, "action": "list_files", "parameters": {"path": "."}})])
        result = self._orchestrator(llm).run("List", CancelToken())
        assert result.plan_id is not None
        saved = self.store.load(result.plan_id)
        assert saved is not None
        self.assertEqual(saved.status, PlanStatus.COMPLETED)
        self.assertEqual(saved.scratchpad.split("\n\n")[0], "notes")
        events = [entry["event"] for entry in latest_events_for_plan(self.logs_dir, result.plan_id)]
        self.assertEqual(
            events,
            ["planning_started", "plan_created", "task_started", "task_completed", "plan_completed"],
        )

    def test_tool_exception_becomes_failure(self) -> None:
        def broken(params, env, cancel):
            raise RuntimeError("handler exploded")

        self.registry.register(ToolDefinition("execute_command", "Run.", broken, permission_group="shell_execution"))
        llm = ScriptedLLM([_plan(_command("anything"))])
        settings = AgentSettings(checkpoints_enabled=False, supervisor_enabled=False, max_retries=0)
        result = self._orchestrator(llm, settings=settings).run("Run", CancelToken())
        self.assertEqual(result.status, "stopped")
        assert result.plan is not None
        self.assertIn("handler exploded", result.plan.tasks[0].result or "")

    def test_archive_and_replan_without_plan(self) -> None:
        orchestrator = self._orchestrator(ScriptedLLM([]))
        self.assertIsNone(orchestrator.archive_current_plan_state("nothing"))
        self.assertFalse(orchestrator.replan("anything").success)

    def test_cancelled_tool_propagates_from_runner(self) -> None:
        def cancels(params, env, cancel):
            raise TaskCancelled("stop")

        self.registry.register(ToolDefinition("execute_command", "Run.", cancels, permission_group="shell_execution"))
        llm = ScriptedLLM([_plan(_command("anything"))])
        result = self._orchestrator(llm).run("Run", CancelToken())
        self.assertEqual(result.status, "cancelled")


if __name__ == "__main__":
    unittest.main()
