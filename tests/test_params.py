import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.models import Plan, Task, TaskStatus
from taskpilot.params import format_variable, regex_search, resolve_parameters
from taskpilot.session import SessionState


def _plan_with(*tasks: Task) -> Plan:
    plan = Plan(objective="test")
    plan.tasks = list(tasks)
    plan.next_id = max(task.id for task in tasks) + 1
    return plan


class ResolveParametersTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = SessionState.create()

    def test_requires_plan(self) -> None:
        task = Task(id=1, action="read_file", description="read")
        with self.assertRaises(RuntimeError):
            resolve_parameters(task, None, self.session)

    def test_task_result_round_trip(self) -> None:
        source = Task(id=1, action="list_files", description="list", status=TaskStatus.COMPLETED, result="a.py\nb.py")
        consumer = Task(
            id=2,
            action="summarize_text",
            description="summarize",
            parameters={"text": "{{tasks[1].result}}", "detail_level": "brief", "limit": 3},
        )
        resolved = resolve_parameters(consumer, _plan_with(source, consumer), self.session)
        self.assertEqual(resolved["text"], "a.py\nb.py")
        self.assertEqual(resolved["detail_level"], "brief")
        self.assertEqual(resolved["limit"], 3)

    def test_regex_transform_extracts_group(self) -> None:
        source = Task(
            id=4,
            action="execute_command",
            description="version",
            status=TaskStatus.COMPLETED,
            result="tool 1.2\nversion: 3.11.4\n",
        )
        consumer = Task(
            id=5,
            action="write_file",
            description="write",
            parameters={"content": "v={{tasks[4].result | regex_search('^version: (\\S+)$', 1)}}"},
        )
        resolved = resolve_parameters(consumer, _plan_with(source, consumer), self.session)
        self.assertEqual(resolved["content"], "v=3.11.4")

    def test_unresolvable_placeholders_stay(self) -> None:
        pending = Task(id=1, action="list_files", description="list")
        consumer = Task(
            id=2,
            action="write_file",
            description="write",
            parameters={
                "a": "{{tasks[1].result}}",
                "b": "{{tasks[9].result}}",
                "c": "{{tasks[1].result | regex_search('(', 1)}}",
                "d": "{{unknown_var}}",
            },
        )
        resolved = resolve_parameters(consumer, _plan_with(pending, consumer), self.session)
        self.assertEqual(resolved["a"], "{{tasks[1].result}}")
        self.assertEqual(resolved["b"], "{{tasks[9].result}}")
        self.assertEqual(resolved["c"], "{{tasks[1].result | regex_search('(', 1)}}")
        self.assertEqual(resolved["d"], "{{unknown_var}}")

    def test_regex_without_match_keeps_placeholder(self) -> None:
        source = Task(id=1, action="read_file", description="read", status=TaskStatus.COMPLETED, result="abc")
        consumer = Task(
            id=2,
            action="write_file",
            description="write",
            parameters={"content": "{{tasks[1].result | regex_search('xyz')}}"},
        )
        resolved = resolve_parameters(consumer, _plan_with(source, consumer), self.session)
        self.assertEqual(resolved["content"], "{{tasks[1].result | regex_search('xyz')}}")

    def test_session_variables_are_formatted(self) -> None:
        self.session.repl_variables["names"] = ["a", "b"]
        self.session.repl_variables["raw"] = '{"k": 1}'
        self.session.repl_variables["plain"] = "hello"
        consumer = Task(
            id=1,
            action="write_file",
            description="write",
            parameters={"content": "{{names}}|{{raw}}|{{plain}}"},
        )
        resolved = resolve_parameters(consumer, _plan_with(consumer), self.session)
        self.assertEqual(resolved["content"], '[\n  "a",\n  "b"\n]|{\n  "k": 1\n}|hello')


class HelperTests(unittest.TestCase):
    def test_regex_search_bad_group(self) -> None:
        self.assertIsNone(regex_search("abc", "a(b)", 2))
        self.assertEqual(regex_search("abc", "a(b)", 1), "b")

    def test_format_variable(self) -> None:
        self.assertEqual(format_variable("42"), "42")
        self.assertEqual(format_variable({"a": 1}), '{\n  "a": 1\n}')


if __name__ == "__main__":
    unittest.main()
