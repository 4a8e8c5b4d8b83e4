from __future__ import annotations

import json
import sys
from typing import List, NoReturn, Optional

import typer
from dotenv import load_dotenv

from codex_tasks.core.config import Settings
from codex_tasks.core.errors import TaskError
from codex_tasks.core.logging_config import log_command, setup_logging
from codex_tasks.core.service import TaskService
from codex_tasks.core.tasks import TaskMetadata, TaskState
from codex_tasks.core.transcript import render_line

app = typer.Typer(add_completion=False, help="Run Codex CLI sessions as background tasks.")


def _load_env() -> Settings:
    load_dotenv()
    return Settings.from_env()


def _setup_logging(settings: Settings, *, console: bool = False) -> None:
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, console=console)


def _service() -> TaskService:
    settings = _load_env()
    _setup_logging(settings)
    return TaskService.from_settings(settings)


def _fail(operation: str, exc: TaskError, task_id: str | None = None) -> NoReturn:
    log_command(operation, task_id, outcome=exc.kind, detail=str(exc))
    typer.echo(exc.describe(), err=True)
    raise typer.Exit(code=1)


def _read_prompt(prompt: str) -> str:
    if prompt == "-":
        return sys.stdin.read()
    return prompt


def _fmt_ts(record: TaskMetadata, attr: str) -> str:
    return getattr(record, attr).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@app.command()
def start(
    prompt: str = typer.Argument(..., help="Prompt text, or - to read it from stdin"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Human label for the task"),
    working_dir: Optional[str] = typer.Option(None, "--working-dir", "-C", help="Directory the engine runs in"),
    config: Optional[List[str]] = typer.Option(None, "--config", "-c", help="Engine override key=value (repeatable)"),
    repo: Optional[str] = typer.Option(None, "--repo", help="Git repository to clone into --working-dir first"),
    repo_ref: Optional[str] = typer.Option(None, "--repo-ref", help="Branch, tag or commit to check out after cloning"),
) -> None:
    """Start a new task and print its id."""
    try:
        service = _service()
        task_id = service.start(
            _read_prompt(prompt),
            title=title,
            working_dir=working_dir,
            config_overrides=config,
            repo_url=repo,
            repo_ref=repo_ref,
        )
    except TaskError as exc:
        _fail("start", exc)
    log_command("start", task_id)
    typer.echo(task_id)


@app.command()
def send(
    task_id: str = typer.Argument(..., help="Task id"),
    prompt: str = typer.Argument(..., help="Prompt text, or - to read it from stdin"),
) -> None:
    """Send a follow-up prompt to a STOPPED task."""
    try:
        service = _service()
        service.send(task_id, _read_prompt(prompt))
    except TaskError as exc:
        _fail("send", exc, task_id)
    log_command("send", task_id)


@app.command()
def status(
    task_id: str = typer.Argument(..., help="Task id"),
    json_output: bool = typer.Option(False, "--json", help="Print the metadata record as JSON"),
) -> None:
    """Show one task's state and last result."""
    try:
        service = _service()
        record = service.status(task_id)
    except TaskError as exc:
        _fail("status", exc, task_id)
    if json_output:
        _echo_json(record.to_dict())
        return
    typer.echo(f"Task:        {record.id}")
    if record.title:
        typer.echo(f"Title:       {record.title}")
    typer.echo(f"State:       {record.state.value}")
    if record.pid:
        typer.echo(f"Worker pid:  {record.pid}")
    typer.echo(f"Created:     {_fmt_ts(record, 'created_at')}")
    typer.echo(f"Updated:     {_fmt_ts(record, 'updated_at')}")
    typer.echo(f"Working dir: {record.working_dir}")
    if record.note:
        typer.echo(f"Note:        {record.note}")
    if record.last_prompt:
        typer.echo(f"\nLast prompt:\n{record.last_prompt.rstrip()}")
    if record.last_result:
        typer.echo(f"\nLast result:\n{record.last_result.rstrip()}")


@app.command()
def log(
    task_id: str = typer.Argument(..., help="Task id"),
    lines: Optional[int] = typer.Option(None, "--lines", "-n", help="Only show the last N log lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing until the task stops"),
    forever: bool = typer.Option(False, "--forever", help="Keep printing even after the task stops"),
    json_output: bool = typer.Option(False, "--json", help="Print raw JSON lines"),
) -> None:
    """Print a task's transcript."""
    try:
        service = _service()
        for line in service.log(task_id, lines=lines, follow=follow, forever=forever):
            if json_output:
                sys.stdout.write(line)
            else:
                for rendered in render_line(line):
                    sys.stdout.write(rendered + "\n")
            sys.stdout.flush()
    except TaskError as exc:
        _fail("log", exc, task_id)
    except KeyboardInterrupt:
        raise typer.Exit(code=130)


@app.command()
def stop(
    task_id: Optional[str] = typer.Argument(None, help="Task id"),
    all_tasks: bool = typer.Option(False, "--all", help="Stop every running task"),
) -> None:
    """Stop a running task (SIGTERM, then SIGKILL after the grace period)."""
    if bool(task_id) == all_tasks:
        typer.echo("error: give a task id or --all", err=True)
        raise typer.Exit(code=2)
    try:
        service = _service()
        outcomes = service.stop_all() if all_tasks else [service.stop(task_id)]
    except TaskError as exc:
        _fail("stop", exc, task_id)
    if all_tasks and not outcomes:
        typer.echo("No running tasks.")
    failed = False
    for outcome in outcomes:
        log_command("stop", outcome.task_id, outcome=outcome.action)
        if outcome.action == "failed":
            failed = True
            typer.echo(f"{outcome.task_id}: {outcome.message}", err=True)
        elif outcome.action == "already_stopped":
            typer.echo(f"Task {outcome.task_id} is already {outcome.state}.")
        elif outcome.action == "died":
            typer.echo(f"Task {outcome.task_id} had already died; marked DIED.")
        else:
            typer.echo(f"Task {outcome.task_id} {outcome.action}; now {outcome.state}.")
    if failed:
        raise typer.Exit(code=1)


@app.command("ls")
def list_tasks(
    state: Optional[List[str]] = typer.Option(None, "--state", "-s", help="Only show tasks in this state (repeatable)"),
    include_archived: bool = typer.Option(False, "--all", "-a", help="Include archived tasks"),
    json_output: bool = typer.Option(False, "--json", help="Print records as JSON"),
) -> None:
    """List tasks, most recently updated first."""
    try:
        states = [TaskState.parse(s) for s in state] if state else None
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    try:
        service = _service()
        records = service.list(states, include_archived=include_archived)
    except TaskError as exc:
        _fail("ls", exc)
    if json_output:
        _echo_json([r.to_dict() for r in records])
        return
    if not records:
        typer.echo("No tasks.")
        return
    width = max(len(r.id) for r in records)
    typer.echo(f"{'ID':<{width}}  {'STATE':<8}  {'UPDATED':<19}  TITLE")
    for r in records:
        typer.echo(f"{r.id:<{width}}  {r.state.value:<8}  {_fmt_ts(r, 'updated_at'):<19}  {r.title or ''}")


@app.command()
def archive(
    task_id: Optional[str] = typer.Argument(None, help="Task id"),
    all_tasks: bool = typer.Option(False, "--all", help="Archive every STOPPED or DIED task"),
) -> None:
    """Move finished tasks into the dated archive."""
    if bool(task_id) == all_tasks:
        typer.echo("error: give a task id or --all", err=True)
        raise typer.Exit(code=2)
    try:
        service = _service()
        outcomes = service.archive_all() if all_tasks else [service.archive(task_id)]
    except TaskError as exc:
        _fail("archive", exc, task_id)
    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
        log_command("archive", outcome.task_id, outcome=outcome.status, detail=outcome.message or "")
        if outcome.status == "archived":
            typer.echo(f"Archived {outcome.task_id} -> {outcome.path}")
        elif outcome.status == "already_archived":
            typer.echo(f"Task {outcome.task_id} is already archived.")
        elif outcome.status == "skipped":
            typer.echo(f"Skipped {outcome.task_id} ({outcome.state}): {outcome.message}")
        else:
            typer.echo(f"Failed {outcome.task_id}: {outcome.message}", err=True)
    if all_tasks:
        summary = ", ".join(f"{n} {status}" for status, n in sorted(counts.items())) or "nothing to archive"
        typer.echo(summary)
    if counts.get("failed"):
        raise typer.Exit(code=1)


@app.command(hidden=True)
def worker(
    task_id: Optional[str] = typer.Option(None, "--task-id"),
    working_dir: Optional[str] = typer.Option(None, "--working-dir"),
    title: Optional[str] = typer.Option(None, "--title"),
    config: Optional[List[str]] = typer.Option(None, "--config"),
) -> None:
    """Detached worker body; the prompt arrives on stdin."""
    from codex_tasks.core.worker import run_worker

    settings = _load_env()
    _setup_logging(settings)
    prompt = sys.stdin.read()
    code = run_worker(
        settings,
        prompt=prompt,
        task_id=task_id,
        title=title,
        working_dir=working_dir,
        config_overrides=config or [],
    )
    raise typer.Exit(code=code)


@app.command()
def mcp() -> None:
    """Serve the task tools over MCP on stdin/stdout."""
    from codex_tasks.mcp.protocol import MCPProtocolHandler, serve_stdio

    try:
        service = _service()
    except TaskError as exc:
        _fail("mcp", exc)
    serve_stdio(MCPProtocolHandler(service), sys.stdin, sys.stdout)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the task tools over MCP (streamable HTTP) and a small REST API."""
    import uvicorn

    settings = _load_env()
    _setup_logging(settings, console=True)
    uvicorn.run(
        "codex_tasks.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        factory=True,
    )


@app.command()
def version() -> None:
    from codex_tasks import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
