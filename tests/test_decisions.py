import sys
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from taskpilot.decisions import DecisionPrompter, normalize_choice
from taskpilot.models import Task


class DecisionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.task = Task(id=4, action="execute_command", description="Build")

    def test_fixed_modes_answer_without_asking(self) -> None:
        asked: list[str] = []
        prompter = DecisionPrompter(mode="continue", interactive=False, prompt_fn=asked.append)
        self.assertEqual(prompter.decide_failure("failed", self.task), "continue")
        self.assertEqual(DecisionPrompter(mode="stop").decide_failure("failed", self.task), "stop")
        self.assertIsNone(prompter.ask_text("name?"))
        self.assertEqual(asked, [])

    def test_plain_prompt(self) -> None:
        prompts: list[str] = []

        def answer(text: str) -> str:
            prompts.append(text)
            return "v"

        prompter = DecisionPrompter(interactive=False, prompt_fn=answer)
        self.assertEqual(prompter.decide_failure("Task failed", self.task), "view_log")
        self.assertIn("task 4: execute_command", prompts[0])

    def test_plain_prompt_without_callback(self) -> None:
        prompter = DecisionPrompter(interactive=False)
        self.assertIsNone(prompter.decide_failure("failed", self.task))
        self.assertIsNone(prompter.ask_text("name?"))

    def test_interactive_select(self) -> None:
        with patch("taskpilot.decisions.questionary.select") as select:
            select.return_value.ask.return_value = "continue"
            choice = DecisionPrompter().decide_failure("failed", self.task)
        self.assertEqual(choice, "continue")

    def test_interactive_select_cancelled(self) -> None:
        with patch("taskpilot.decisions.questionary.select") as select:
            select.return_value.ask.return_value = None
            self.assertIsNone(DecisionPrompter().decide_failure("failed", self.task))

    def test_interactive_text(self) -> None:
        with patch("taskpilot.decisions.questionary.text") as text:
            text.return_value.ask.return_value = "blue"
            self.assertEqual(DecisionPrompter().ask_text("Favourite colour?"), "blue")

    def test_normalize_choice(self) -> None:
        self.assertEqual(normalize_choice(" Stop "), "stop")
        self.assertEqual(normalize_choice("continue anyway"), "continue")
        self.assertEqual(normalize_choice("view log"), "view_log")
        self.assertIsNone(normalize_choice("maybe"))
        self.assertIsNone(normalize_choice(None))


if __name__ == "__main__":
    unittest.main()
