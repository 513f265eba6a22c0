from __future__ import annotations

from collections.abc import Mapping, Sequence

from psetflow.schemas.jobs import SolverStatus
from psetflow.schemas.problems import Problem
from psetflow.services.dependency_graph import flatten_problems
from psetflow.services.latex_preamble import DOCUMENT_END, LATEX_PREAMBLE, format_problem_header

FAILED_PLACEHOLDER = r"\textit{Solution not available: the solver could not produce a valid solution.}"
BLOCKED_PLACEHOLDER = r"\textit{Solution not available: blocked by an unsolved dependency.}"
MISSING_PLACEHOLDER = r"\textit{Solution not available.}"


def _placeholder(status: SolverStatus | None) -> str:
    if status == "failed":
        return FAILED_PLACEHOLDER
    if status in ("waiting", "solving"):
        return BLOCKED_PLACEHOLDER
    return MISSING_PLACEHOLDER


def synthesize_document(
    problems: Sequence[Problem],
    solutions: Mapping[str, str],
    *,
    statuses: Mapping[str, SolverStatus] | None = None,
    preamble: str = LATEX_PREAMBLE,
) -> str:
    """Assemble the final LaTeX document from a problem tree and its solutions.

    Problems appear in tree order with a sectioning header per level; each
    top-level problem starts a new page. Items without a solution get a
    placeholder that tells a failed item apart from one blocked by a failed
    dependency.
    """

    statuses = statuses or {}
    parts: list[str] = []

    def render(problem: Problem) -> None:
        parts.append(format_problem_header(problem.number, problem.level))
        if problem.text.strip():
            parts.append(r"\textbf{Problem Statement:}")
            parts.append(problem.text)
            parts.append("")

        solution = solutions.get(problem.id)
        parts.append(solution if solution else _placeholder(statuses.get(problem.id)))
        parts.append("")

        for child in problem.children:
            render(child)

    for problem in problems:
        render(problem)
        parts.append(r"\newpage")

    body = "\n".join(parts)
    return f"{preamble}\n{body}\n{DOCUMENT_END}\n"


def synthesis_summary(problems: Sequence[Problem], solutions: Mapping[str, str]) -> str:
    flat = flatten_problems(problems)
    solved = sum(1 for problem in flat if solutions.get(problem.id))
    return (
        f"Synthesized document with {len(flat)} problems: "
        f"{solved} solved, {len(flat) - solved} failed."
    )
