"""fieldflow CLI: run workers and operate the computed-field outbox."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import typer

from fieldflow.app import FieldflowApp
from fieldflow.engine.errors import NotFoundError
from fieldflow.shared.settings import get_settings

app = typer.Typer(add_completion=False, help="fieldflow: asynchronous computed-field propagation")


def _build_app() -> FieldflowApp:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return FieldflowApp(db_path=settings.sqlite_path, settings=settings)


def _echo(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _not_found(exc: NotFoundError) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1) from exc


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Run a single claim/execute pass and exit."),
    limit: int = typer.Option(0, "--limit", help="Tasks per pass (default from settings)."),
    worker_id: str = typer.Option("", "--worker-id"),
) -> None:
    """Process due outbox tasks."""

    fieldflow = _build_app()
    if worker_id:
        fieldflow.worker_id = worker_id
    if once:
        _echo(fieldflow.run_worker_once(limit=limit or None))
        return
    loop = fieldflow.worker_loop()
    if limit:
        loop.limit = limit
    try:
        totals = loop.run()
    except KeyboardInterrupt:
        loop.stop()
        return
    _echo(totals)


@app.command()
def outbox(
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """List outstanding outbox tasks, newest first."""

    _echo(_build_app().operator.list_outbox_tasks(limit=limit, offset=offset))


@app.command("dead-letters")
def dead_letters(
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """List dead-lettered tasks, newest first."""

    _echo(_build_app().operator.list_dead_letters(limit=limit, offset=offset))


@app.command("dead-letter-delete")
def dead_letter_delete(dead_letter_id: str = typer.Argument(...)) -> None:
    try:
        _echo(_build_app().operator.delete_dead_letter(dead_letter_id))
    except NotFoundError as exc:
        _not_found(exc)


@app.command("dead-letter-retry")
def dead_letter_retry(dead_letter_id: str = typer.Argument(...)) -> None:
    try:
        _echo(_build_app().operator.retry_dead_letter(dead_letter_id))
    except NotFoundError as exc:
        _not_found(exc)


@app.command("retry-now")
def retry_now(task_id: str = typer.Argument(...)) -> None:
    try:
        _echo(_build_app().operator.retry_now(task_id))
    except NotFoundError as exc:
        _not_found(exc)


@app.command("explain-task")
def explain_task(
    task_id: str = typer.Argument(...),
    analyze: bool = typer.Option(False, "--analyze"),
    sql: bool = typer.Option(True, "--sql/--no-sql"),
    graph: bool = typer.Option(True, "--graph/--no-graph"),
    locks: bool = typer.Option(True, "--locks/--no-locks"),
) -> None:
    """Explain what a queued task will recompute."""

    options = {"analyze": analyze, "includeSql": sql, "includeGraph": graph, "includeLocks": locks}
    try:
        _echo(_build_app().explain_task(task_id, options))
    except NotFoundError as exc:
        _not_found(exc)


@app.command("apply-schema")
def apply_schema(file: Path = typer.Option(..., "--file")) -> None:
    """Save every field of a YAML/JSON base schema file."""

    try:
        result = _build_app().apply_schema_file(file)
    except (FileNotFoundError, ValueError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    _echo(result)


@app.command()
def audit(
    event_type: str = typer.Option("", "--type"),
    task_id: str = typer.Option("", "--task"),
) -> None:
    """Print audit events, oldest first."""

    _echo(_build_app().list_audit_events(event_type=event_type or None, task_id=task_id or None))


if __name__ == "__main__":
    app()
