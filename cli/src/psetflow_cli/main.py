from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Annotated, Any, cast

import typer
from psetflow import PsetFlow, PsetFlowError, SchedulerConfig, SolveResult
from psetflow.client import OpenAIApi
from psetflow.schemas.problems import DependencyGraph, Problem
from psetflow.services.dependency_graph import (
    build_dependency_graph,
    detect_dependencies_heuristic,
    flatten_problems,
    sanitize_dependencies,
)
from pydantic import ValidationError

app = typer.Typer(add_completion=False, help="psetflow CLI: solve problem sets into LaTeX.")

_LOG_LEVELS = frozenset({"debug", "info", "warning", "error"})


def _require_api_key(provided: str | None) -> str:
    if provided and provided.strip():
        return provided.strip()
    for name in ("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY"):
        env = os.getenv(name, "").strip()
        if env:
            return env
    raise typer.BadParameter(
        "Missing OpenAI API key. Provide --openai-api-key or set OPENAI_API_KEY."
    )


def _print_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.callback()
def configure(
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="debug|info|warning|error"),
    ] = "warning",
) -> None:
    """Configure process-wide logging before running a command."""

    normalized = log_level.strip().lower()
    if normalized not in _LOG_LEVELS:
        raise typer.BadParameter("Invalid --log-level. Use one of: debug, info, warning, error.")
    logging.basicConfig(
        level=getattr(logging, normalized.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _solve_payload(result: SolveResult, *, out: Path | None, pdf_out: Path | None) -> dict[str, Any]:
    return {
        "job_id": result.job_id,
        "status": result.status,
        "error": result.error,
        "solved": result.solved_count,
        "total": len(result.solver_statuses),
        "solver_statuses": result.solver_statuses,
        "solver_errors": result.solver_errors,
        "document_path": str(out) if out is not None and result.document is not None else None,
        "pdf_path": str(pdf_out) if pdf_out is not None and result.pdf is not None else None,
    }


@app.command()
def solve(
    document: Annotated[
        Path,
        typer.Argument(
            exists=True,
            readable=True,
            dir_okay=False,
            help="Problem set to solve (PDF or LaTeX source).",
        ),
    ],
    out: Annotated[
        Path | None,
        typer.Option("--out", "-o", dir_okay=False, help="Write the LaTeX document here."),
    ] = None,
    pdf_out: Annotated[
        Path | None,
        typer.Option("--pdf-out", dir_okay=False, help="Write the compiled PDF here."),
    ] = None,
    message: Annotated[
        str | None,
        typer.Option("--message", "-m", help="Optional note passed to the transcriber."),
    ] = None,
    max_attempts: Annotated[
        int | None,
        typer.Option("--max-attempts", min=1, help="Solve/compile attempts per problem."),
    ] = None,
    max_concurrency: Annotated[
        int | None,
        typer.Option("--max-concurrency", min=1, help="Problems solved at once per level."),
    ] = None,
    compiler: Annotated[
        str | None,
        typer.Option("--compiler", help="local|remote LaTeX compilation."),
    ] = None,
    openai_api_key: Annotated[
        str | None,
        typer.Option("--openai-api-key", envvar="OPENAI_API_KEY", help="OpenAI API key."),
    ] = None,
    openai_base_url: Annotated[
        str | None,
        typer.Option(
            "--openai-base-url",
            envvar="OPENAI_BASE_URL",
            help="OpenAI-compatible base URL (e.g. Azure OpenAI /openai/v1/).",
        ),
    ] = None,
    openai_api: Annotated[
        str | None,
        typer.Option(
            "--openai-api",
            envvar="PSETFLOW_OPENAI_API",
            help="Agents SDK API mode: responses|chat_completions.",
        ),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="Override PSETFLOW_SOLVER_MODEL for this run."),
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
) -> None:
    """Run the full pipeline on DOCUMENT and write the synthesized solutions."""

    key = _require_api_key(openai_api_key)
    if model is not None:
        os.environ["PSETFLOW_SOLVER_MODEL"] = model

    try:
        config = SchedulerConfig.from_env()
        overrides: dict[str, Any] = {}
        if max_attempts is not None:
            overrides["max_compilation_attempts"] = max_attempts
        if max_concurrency is not None:
            overrides["max_concurrent_solvers"] = max_concurrency
        if compiler is not None:
            overrides["latex_compiler"] = compiler.strip().lower()
        if overrides:
            config = dataclasses.replace(config, **overrides)
        client = PsetFlow(
            openai_api_key=key,
            openai_base_url=openai_base_url,
            openai_api=cast(OpenAIApi | None, openai_api),
            config=config,
        )
    except PsetFlowError as exc:
        raise typer.BadParameter(str(exc)) from exc

    result = client.solve(document, message=message)

    if out is not None and result.document is not None:
        out.write_text(result.document, encoding="utf-8")
    if pdf_out is not None and result.pdf is not None:
        pdf_out.write_bytes(result.pdf)

    if json_output:
        _print_json(_solve_payload(result, out=out, pdf_out=pdf_out))
    else:
        typer.echo(f"Job {result.job_id}: {result.status}")
        typer.echo(f"Solved {result.solved_count}/{len(result.solver_statuses)} problem(s)")
        for problem_id, error in result.solver_errors.items():
            typer.echo(f"  {problem_id}: {error}")
        if result.error:
            typer.echo(f"Error: {result.error}")
        if out is None and result.document is not None:
            typer.echo(result.document)

    if not result.succeeded:
        raise typer.Exit(code=1)


def _load_problems(path: Path) -> list[Problem]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc}") from exc

    items = payload.get("problems") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise typer.BadParameter('Expected a JSON list of problems or {"problems": [...]}')
    try:
        return [Problem.model_validate(item) for item in items]
    except ValidationError as exc:
        raise typer.BadParameter(f"Invalid problem definition: {exc}") from exc


def _graph_payload(graph: DependencyGraph) -> dict[str, Any]:
    return {
        "levels": graph.levels,
        "edges": {node_id: deps for node_id, deps in graph.edges.items() if deps},
        "unscheduled": graph.unscheduled,
        "has_cycle": graph.has_cycle,
    }


@app.command()
def graph(
    problems_file: Annotated[
        Path,
        typer.Argument(
            exists=True,
            readable=True,
            dir_okay=False,
            help="JSON list of problems with ids, numbers, text and dependencies.",
        ),
    ],
    detect: Annotated[
        bool,
        typer.Option("--detect", help="Infer dependencies from problem text references."),
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
) -> None:
    """Show the leveled execution order for a problem list, offline."""

    flat = flatten_problems(_load_problems(problems_file))
    if detect:
        detect_dependencies_heuristic(flat)
    sanitize_dependencies(flat)
    dependency_graph = build_dependency_graph(flat)

    if json_output:
        _print_json(_graph_payload(dependency_graph))
        return

    for index, level in enumerate(dependency_graph.levels):
        typer.echo(f"Level {index}: {', '.join(level)}")
    if dependency_graph.unscheduled:
        typer.echo(f"Unscheduled (cycle): {', '.join(dependency_graph.unscheduled)}")


if __name__ == "__main__":
    app()
