import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.session import SessionState


class SessionStateTests(unittest.TestCase):
    def test_working_memory_is_bounded(self) -> None:
        session = SessionState.create()
        for idx in range(15):
            session.remember(f"entry {idx}")
        self.assertEqual(len(session.working_memory), 10)
        self.assertEqual(session.working_memory[0], "entry 5")

    def test_remember_output_skips_short_and_truncates_long(self) -> None:
        session = SessionState.create()
        self.assertFalse(session.remember_output("task", "ok"))
        self.assertTrue(session.remember_output("task", "y" * 800))
        self.assertEqual(session.working_memory[-1], "task: " + "y" * 500 + "...")

    def test_store_variable_parses_json(self) -> None:
        session = SessionState.create()
        self.assertEqual(session.store_variable("data", '{"a": [1, 2]}'), {"a": [1, 2]})
        self.assertEqual(session.store_variable("text", "not json"), "not json")

    def test_failure_counters(self) -> None:
        session = SessionState.create()
        self.assertEqual(session.bump_failure(0), 1)
        self.assertEqual(session.bump_failure(0), 2)
        session.reset_failure(0)
        self.assertEqual(session.bump_failure(0), 1)

    def test_reset_for_new_objective(self) -> None:
        session = SessionState.create()
        session.failure_memory.record_failure("wait", {}, "err")
        session.bump_failure(2)
        session.store_variable("keep", "1")
        session.reset_for_new_objective()
        self.assertEqual(len(session.failure_memory), 0)
        self.assertEqual(session.task_failure_counts, {})
        self.assertIn("keep", session.repl_variables)

    def test_environment_summary(self) -> None:
        session = SessionState.create()
        session.record_environment("venv")
        session.record_packages(["httpx", "httpx", "rich"])
        summary = session.environment_summary()
        self.assertIn("active_env: venv", summary)
        self.assertIn("installed_packages: httpx, rich", summary)


if __name__ == "__main__":
    unittest.main()
