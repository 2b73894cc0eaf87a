from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import click

from automata.backends import BACKENDS, AgentBackend, BackendExecutionError, create_backend
from automata.config import (
    CONFIG_FILE_NAME,
    AutomataConfig,
    ConfigError,
    load_config,
    save_config,
)
from automata.gateway import BackendGateway
from automata.prompts import PlanningAnswer
from automata.service import (
    InvalidTaskStateError,
    OrchestratorBusyError,
    TaskNotFoundError,
    TaskService,
)
from automata.state import TaskLog, TaskStore, TaskStoreError, ThreadIndex
from automata.tasks import WORKFLOW_PHASES, PhaseTransitionError, Task

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_KINDS = ("planning", "development", "review")

config_option = click.option(
    "--config", "config_value", default=CONFIG_FILE_NAME, show_default=True
)


@dataclass(slots=True)
class Runtime:
    project_dir: Path
    config_path: Path
    config: AutomataConfig
    gateway: BackendGateway
    service: TaskService


def _resolve_config_path(project_dir: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    return config_path.resolve()


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (
        TaskNotFoundError,
        OrchestratorBusyError,
        InvalidTaskStateError,
        PhaseTransitionError,
        TaskStoreError,
        ConfigError,
        BackendExecutionError,
    ) as exc:
        raise click.ClickException(str(exc)) from exc


def _build_backend(config: AutomataConfig, project_dir: Path) -> AgentBackend:
    return create_backend(
        config.backend.name,
        binary=config.backend.binary,
        working_directory=project_dir,
        timeout_seconds=config.backend.timeout_seconds,
    )


def _load_runtime(config_value: str) -> Runtime:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    with _domain_errors():
        config = load_config(config_path)
    gateway = BackendGateway(
        _build_backend(config, project_dir),
        thread_index=ThreadIndex(project_dir),
        models=config.agents.models(),
    )
    service = TaskService(project_dir, gateway, config=config)
    return Runtime(
        project_dir=project_dir,
        config_path=config_path,
        config=config,
        gateway=gateway,
        service=service,
    )


def _task_line(task: Task) -> str:
    agent = "" if task.assigned_agent.is_idle else f" [{task.assigned_agent}]"
    done = sum(1 for subtask in task.subtasks if subtask.status == "completed")
    return (
        f"{task.id}  {task.phase:<12} {task.status:<11} "
        f"{done}/{len(task.subtasks)}  {task.title}{agent}"
    )


def _parse_answers(values: tuple[str, ...]) -> list[PlanningAnswer]:
    answers: list[PlanningAnswer] = []
    for value in values:
        question, separator, answer = value.partition("=")
        if not separator or not question.strip():
            raise click.BadParameter(f"Expected QUESTION=ANSWER, got {value!r}", param_hint="--answer")
        answers.append(PlanningAnswer(question=question.strip(), answer=answer.strip()))
    return answers


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Code automata: plan, develop, review and rework tasks with coding agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(sorted(BACKENDS)), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    project_dir = Path.cwd().resolve()
    config_path = _resolve_config_path(project_dir, config_value)
    with _domain_errors():
        config = load_config(config_path)
    if backend:
        config.backend.name = backend  # type: ignore[assignment]
    save_config(config_path, config)
    TaskStore(project_dir).tasks_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized code automata in {project_dir}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.name}")


@cli.command("create")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--worktree", "worktree_path", default=None, help="Working tree for the agents.")
@config_option
def create_command(title: str, description: str, worktree_path: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        task = runtime.service.create_task(title, description, worktree_path=worktree_path)
    click.echo(task.id)


@cli.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@config_option
def list_command(as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        tasks = runtime.service.list_tasks()
    if as_json:
        click.echo(json.dumps([task.to_dict() for task in tasks], ensure_ascii=False, indent=2))
        return
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(_task_line(task))


@cli.command("show")
@click.argument("task_id")
@click.option("--logs", "log_kind", type=click.Choice(LOG_KINDS), default=None)
@config_option
def show_command(task_id: str, log_kind: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        task = runtime.service.get_task(task_id)
    if log_kind:
        log = TaskLog.for_task(runtime.service.store.task_dir(task_id), task_id, log_kind)
        click.echo(log.read() or f"No {log_kind} logs yet.")
        return
    click.echo(json.dumps(task.to_dict(), ensure_ascii=False, indent=2))


@cli.command("plan")
@click.argument("task_id")
@click.option("--answer", "answers", multiple=True, help="Planning answer as QUESTION=ANSWER.")
@config_option
def plan_command(task_id: str, answers: tuple[str, ...], config_value: str) -> None:
    runtime = _load_runtime(config_value)
    parsed = _parse_answers(answers)
    with _domain_errors():
        ok = asyncio.run(runtime.service.generate_plan(task_id, parsed or None))
        task = runtime.service.get_task(task_id)
    if not ok:
        raise click.ClickException(
            f"Plan generation failed for {task_id} (status: {task.status}). "
            f"See: automata show {task_id} --logs planning"
        )
    click.echo(task.plan_content or "")


@cli.command("approve")
@click.argument("task_id")
@config_option
def approve_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        runtime.service.approve_plan(task_id)
    click.echo(f"Plan approved for {task_id}")


def _report_run(runtime: Runtime, task_id: str, result: object) -> None:
    task = runtime.service.store.load_task(task_id)
    if task is None:
        click.echo(f"Task {task_id} no longer exists.")
        return
    status = getattr(result, "status", None) or "stopped"
    click.echo(f"Run finished: {status}")
    click.echo(_task_line(task))
    if task.last_qa_result is not None:
        click.echo(f"Last QA result: {task.last_qa_result.overall} ({task.last_qa_result.summary})")


@cli.command("start")
@click.argument("task_id")
@config_option
def start_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)

    async def _start() -> object:
        runner = await runtime.service.start_development(task_id)
        return await runner

    with _domain_errors():
        result = asyncio.run(_start())
    _report_run(runtime, task_id, result)


@cli.command("resume")
@click.argument("task_id")
@config_option
def resume_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)

    async def _resume() -> object:
        runner = await runtime.service.resume_task(task_id)
        return await runner

    with _domain_errors():
        result = asyncio.run(_resume())
    _report_run(runtime, task_id, result)


@cli.command("pause")
@click.argument("task_id")
@config_option
def pause_command(task_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        runtime.service.pause_task(task_id)
    click.echo(f"Task {task_id} paused.")


@cli.command("skip")
@click.argument("task_id")
@click.argument("subtask_id")
@config_option
def skip_command(task_id: str, subtask_id: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        task = runtime.service.skip_subtask(task_id, subtask_id)
    click.echo(f"Skipped {subtask_id} (phase: {task.phase})")


@cli.command("delete")
@click.argument("task_id")
@click.option("--subtask", "subtask_id", default=None, help="Delete one subtask instead.")
@config_option
def delete_command(task_id: str, subtask_id: str | None, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        if subtask_id:
            runtime.service.delete_subtask(task_id, subtask_id)
            click.echo(f"Deleted subtask {subtask_id} from {task_id}")
            return
        runtime.service.delete_task(task_id)
    click.echo(f"Deleted task {task_id}")


@cli.command("move")
@click.argument("task_id")
@click.argument("phase", type=click.Choice(WORKFLOW_PHASES))
@config_option
def move_command(task_id: str, phase: str, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        task = runtime.service.move_task(task_id, phase)
    click.echo(f"Moved {task_id} to {task.phase}")


@cli.command("check")
@click.argument("task_id", required=False)
@click.option("--verbose", is_flag=True, default=False)
@config_option
def check_command(task_id: str | None, verbose: bool, config_value: str) -> None:
    runtime = _load_runtime(config_value)
    with _domain_errors():
        result = asyncio.run(runtime.service.run_checks(task_id))
    click.echo(f"{result.overall}: {result.summary}")
    if verbose or not result.passed:
        click.echo(result.details)
    if not result.passed:
        raise SystemExit(1)
