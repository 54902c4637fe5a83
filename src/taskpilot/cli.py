from __future__ import annotations

import signal
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape

from taskpilot.cancellation import CancelToken
from taskpilot.cli_format import format_logs, format_plan, format_result, format_tools
from taskpilot.config import (
    AppConfig,
    LLMSettings,
    Paths,
    PermissionSettings,
    load_config,
    load_paths,
    save_config,
)
from taskpilot.decisions import DecisionPrompter
from taskpilot.llm import OllamaClient, OpenAIClient
from taskpilot.orchestrator import Orchestrator, RunResult
from taskpilot.plan_store import PlanStore
from taskpilot.run_logs import latest_events_for_plan, read_recent_logs
from taskpilot.tools.registry import build_default_registry

app = typer.Typer(help="taskpilot autonomous task runner")
console = Console()


def _load_or_raise_config(paths: Paths) -> AppConfig:
    if not paths.config_path.exists():
        typer.echo("Config not found. Run `taskpilot setup` to configure the LLM.")
        raise typer.Exit(code=1)
    return load_config(paths.config_path)


def _build_llm_client(settings: LLMSettings):
    if settings.provider == "openai":
        if not settings.api_key:
            typer.echo("OpenAI API key is required.")
            raise typer.Exit(code=1)
        return OpenAIClient(base_url=settings.base_url, api_key=settings.api_key, model=settings.model)
    if settings.provider == "ollama":
        return OllamaClient(base_url=settings.base_url, model=settings.model)
    typer.echo(f"Unsupported LLM provider: {settings.provider}")
    raise typer.Exit(code=1)


def _list_ollama_models() -> list[str]:
    try:
        result = subprocess.run(
            ["ollama", "list"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        return []
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if not lines:
        return []
    if "name" in lines[0].lower():
        lines = lines[1:]
    return [line.split()[0] for line in lines if line.split()]


def _prompt_ollama_model(label: str, default: str) -> str:
    models = _list_ollama_models()
    if models:
        typer.echo("Available Ollama models:")
        for idx, name in enumerate(models, start=1):
            typer.echo(f"  {idx}. {name}")
        choice = typer.prompt(f"{label} (name or number)", default=default)
        if choice.isdigit():
            index = int(choice)
            if 1 <= index <= len(models):
                return models[index - 1]
        return choice
    return typer.prompt(label, default=default)


def _build_orchestrator(
    paths: Paths,
    config: AppConfig,
    workspace: Path,
    on_failure: str,
    interactive: bool,
) -> Orchestrator:
    llm = _build_llm_client(config.llm)
    registry = build_default_registry(config.tools)
    prompter = DecisionPrompter(
        mode=on_failure,
        interactive=interactive,
        prompt_fn=lambda text: typer.prompt(text, default="", show_default=False),
    )

    def show_log(title: str, body: str) -> None:
        console.rule(escape(title))
        console.print(escape(body))
        console.rule()

    return Orchestrator(
        llm=llm,
        registry=registry,
        workspace_root=workspace.resolve(),
        agent_settings=config.agent,
        permissions=config.permissions,
        plan_store=PlanStore(paths.plans_dir),
        logs_dir=paths.logs_dir,
        status_fn=lambda message: console.print(f"[dim]{escape(message)}[/dim]"),
        decision_fn=prompter.decide_failure,
        prompt_fn=prompter.ask_text,
        log_fn=show_log,
        supervisor_model=config.llm.supervisor_model,
    )


@contextmanager
def _interruptible() -> Iterator[CancelToken]:
    """Turn Ctrl-C into a cooperative cancel for the duration of a run."""
    cancel = CancelToken()

    def handler(signum, frame) -> None:
        console.print("[bold yellow]Cancelling...[/bold yellow]")
        cancel.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_result(result: RunResult, show_plan: bool) -> None:
    if show_plan and result.plan is not None:
        console.print(format_plan(result.plan))
    console.print(format_result(result.status, result.message, result.final_messages))
    if result.plan_id:
        console.print(f"[dim]plan id: {result.plan_id}[/dim]")


def _execute(run: Callable[[CancelToken], RunResult], show_plan: bool) -> RunResult:
    with _interruptible() as cancel:
        result = run(cancel)
    _print_result(result, show_plan)
    return result


_WORKSPACE_OPTION = typer.Option(Path("."), "--workspace", "-w", help="Workspace root the tools operate in.")
_ON_FAILURE_OPTION = typer.Option(
    "prompt", "--on-failure", help="What to do when a task exhausts its retries: prompt, stop or continue."
)
_PLAIN_OPTION = typer.Option(False, "--plain", help="Use plain text prompts instead of interactive menus.")


def _check_on_failure(on_failure: str) -> None:
    if on_failure not in {"prompt", "stop", "continue"}:
        typer.echo("--on-failure must be 'prompt', 'stop' or 'continue'.")
        raise typer.Exit(code=1)


@app.command()
def run(
    objective: str = typer.Argument(..., help="Objective for the agent."),
    workspace: Path = _WORKSPACE_OPTION,
    on_failure: str = _ON_FAILURE_OPTION,
    plain: bool = _PLAIN_OPTION,
    show_plan: bool = typer.Option(True, "--show-plan/--no-show-plan", help="Print the plan at the end."),
) -> None:
    """Plan and execute a single objective."""
    _check_on_failure(on_failure)
    paths = load_paths()
    config = _load_or_raise_config(paths)
    orchestrator = _build_orchestrator(paths, config, workspace, on_failure, interactive=not plain)
    result = _execute(lambda cancel: orchestrator.run(objective, cancel), show_plan)
    if result.status not in {"completed", "cancelled"}:
        raise typer.Exit(code=1)


@app.command()
def chat(
    workspace: Path = _WORKSPACE_OPTION,
    on_failure: str = _ON_FAILURE_OPTION,
    plain: bool = _PLAIN_OPTION,
) -> None:
    """Interactive loop. Messages sent while a plan is unfinished change that plan."""
    _check_on_failure(on_failure)
    paths = load_paths()
    config = _load_or_raise_config(paths)
    orchestrator = _build_orchestrator(paths, config, workspace, on_failure, interactive=not plain)
    console.print("[dim]taskpilot chat (type 'exit' to quit, 'plan' to show the current plan)[/dim]")
    while True:
        try:
            user_input = console.input("[bold cyan]You[/bold cyan]: ")
        except (EOFError, KeyboardInterrupt):
            break
        text = user_input.strip()
        if not text:
            continue
        if text.lower() in {"exit", "quit"}:
            break
        if text.lower() == "plan":
            if orchestrator.plan is None:
                console.print("[dim]No plan yet.[/dim]")
            else:
                console.print(format_plan(orchestrator.plan, show_scratchpad=True))
            continue
        _execute(lambda cancel: orchestrator.run(text, cancel), show_plan=False)


@app.command()
def resume(
    plan_id: Optional[str] = typer.Argument(None, help="Plan id to resume. Defaults to the latest plan."),
    workspace: Path = _WORKSPACE_OPTION,
    on_failure: str = _ON_FAILURE_OPTION,
    plain: bool = _PLAIN_OPTION,
) -> None:
    """Continue a saved plan from its first pending task."""
    _check_on_failure(on_failure)
    paths = load_paths()
    config = _load_or_raise_config(paths)
    store = PlanStore(paths.plans_dir)
    if plan_id is None:
        latest = store.latest()
        if latest is None:
            typer.echo("No saved plans found.")
            raise typer.Exit(code=1)
        plan_id = latest[0]
    orchestrator = _build_orchestrator(paths, config, workspace, on_failure, interactive=not plain)
    result = _execute(lambda cancel: orchestrator.resume(plan_id, cancel), show_plan=True)
    if result.status not in {"completed", "cancelled"}:
        raise typer.Exit(code=1)


@app.command()
def tools() -> None:
    """List built-in tools and whether they are enabled."""
    paths = load_paths()
    settings = load_config(paths.config_path).tools if paths.config_path.exists() else None
    console.print(format_tools(build_default_registry(settings)))


@app.command()
def plan(
    plan_id: Optional[str] = typer.Argument(None, help="Plan id. Defaults to the latest plan."),
    attempts: bool = typer.Option(False, "--attempts", help="Show archived attempts."),
    scratchpad: bool = typer.Option(False, "--scratchpad", help="Show the plan scratchpad."),
) -> None:
    """Show a saved plan."""
    paths = load_paths()
    store = PlanStore(paths.plans_dir)
    if plan_id is None:
        latest = store.latest()
        if latest is None:
            typer.echo("No saved plans found.")
            raise typer.Exit(code=1)
        plan_id, loaded = latest
    else:
        loaded = store.load(plan_id)
        if loaded is None:
            typer.echo(f"Plan not found: {plan_id}")
            raise typer.Exit(code=1)
    console.print(f"[dim]plan id: {plan_id}[/dim]")
    console.print(format_plan(loaded, show_scratchpad=scratchpad, show_attempts=attempts))


@app.command()
def logs(
    plan_id: Optional[str] = typer.Option(None, "--plan-id", help="Only show events for this plan."),
    limit: int = typer.Option(50, "--limit", help="Number of entries to show."),
) -> None:
    """Show recent run log entries."""
    paths = load_paths()
    if plan_id:
        entries = latest_events_for_plan(paths.logs_dir, plan_id, limit=limit)
    else:
        entries = read_recent_logs(paths.logs_dir, limit=limit)
    console.print(format_logs(entries))


@app.command()
def setup() -> None:
    """Walk through configuration."""
    paths = load_paths()
    typer.echo("Setting up taskpilot configuration.")
    provider = typer.prompt("LLM provider (openai/ollama)", default="ollama")
    if provider not in {"openai", "ollama"}:
        typer.echo("Provider must be 'openai' or 'ollama'.")
        raise typer.Exit(code=1)
    if provider == "openai":
        model = typer.prompt("LLM model", default="gpt-4o-mini")
    else:
        model = _prompt_ollama_model("LLM model", default="llama3")
    base_url = typer.prompt(
        "LLM base URL", default="https://api.openai.com/v1" if provider == "openai" else "http://localhost:11434"
    )
    api_key = None
    if provider == "openai":
        api_key = typer.prompt("OpenAI API key", hide_input=True)
    supervisor_model = typer.prompt("Supervisor model (blank for same model)", default="", show_default=False)
    can_execute = typer.confirm("Allow shell commands and file writes?", default=True)
    can_read = typer.confirm("Allow file reads and web access?", default=True)
    config = AppConfig(
        llm=LLMSettings(
            provider=provider,
            model=model,
            base_url=base_url,
            api_key=api_key,
            supervisor_model=supervisor_model or None,
        ),
        permissions=PermissionSettings(can_execute=can_execute, can_read=can_read),
    )
    save_config(paths.config_path, config)
    typer.echo(f"Config saved to {paths.config_path}")


def main() -> None:
    app(prog_name="taskpilot")


if __name__ == "__main__":
    main()
