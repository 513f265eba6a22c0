from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from agents import Agent, Runner
from agents.model_settings import ModelSettings
from openai.types.shared import Reasoning
from pydantic import ValidationError

from psetflow.errors import PsetFlowConfigurationError, StageError
from psetflow.schemas.problems import (
    ChunkingOutput,
    DependencyDetectionOutput,
    Problem,
)
from psetflow.services.dependency_graph import (
    build_problem_hierarchy,
    detect_dependencies_heuristic,
)
from psetflow.services.document_validation import ValidatedDocument
from psetflow.services.latex_preamble import LATEX_PREAMBLE

logger = logging.getLogger(__name__)

_DEFAULT_CHAT_MODEL = "gpt-5.2"
_CHAT_MODEL_ENV = "PSETFLOW_CHAT_MODEL"
_SOLVER_MODEL_ENV = "PSETFLOW_SOLVER_MODEL"
_OPENAI_API_KEY_ENV = "OPENAI_API_KEY"
_AZURE_OPENAI_API_KEY_ENV = "AZURE_OPENAI_API_KEY"

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_SOLUTION_ENV_RE = re.compile(r"\\begin\{solution\}(.*?)\\end\{solution\}", re.DOTALL)
_CODE_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\n")
_CODE_FENCE_CLOSE_RE = re.compile(r"\n```$")


class Transcriber(Protocol):
    async def transcribe(self, document: ValidatedDocument, *, message: str | None = None) -> str: ...


class ProblemChunker(Protocol):
    async def chunk(self, transcript: str) -> list[Problem]: ...


class DependencyDetector(Protocol):
    async def detect(self, problems: Sequence[Problem]) -> dict[str, list[str]]: ...


class SolveAgent(Protocol):
    async def solve(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str: ...


@dataclass(frozen=True)
class ProblemAgents:
    transcriber: Transcriber
    chunker: ProblemChunker
    dependency_detector: DependencyDetector
    solver: SolveAgent


def _chat_model() -> str:
    return os.getenv(_CHAT_MODEL_ENV, _DEFAULT_CHAT_MODEL)


def _solver_model() -> str:
    return os.getenv(_SOLVER_MODEL_ENV, "").strip() or _chat_model()


def _require_api_key() -> None:
    for name in (_OPENAI_API_KEY_ENV, _AZURE_OPENAI_API_KEY_ENV):
        value = os.getenv(name, "").strip()
        if value:
            os.environ[_OPENAI_API_KEY_ENV] = value
            return
    raise PsetFlowConfigurationError(
        "Missing OpenAI API key. Provide PsetFlow(openai_api_key=...) or set "
        "OPENAI_API_KEY / AZURE_OPENAI_API_KEY."
    )


def _output_text(result: Any) -> str:
    return str(result.final_output).strip() if result.final_output else ""


def _extract_json(text: str) -> dict[str, Any]:
    # Responses may wrap the JSON in prose or code fences.
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        raise ValueError("Agent response did not contain a JSON object")
    payload = json.loads(match.group())
    if not isinstance(payload, dict):
        raise ValueError("Agent response JSON must be an object")
    return payload


def strip_code_fences(response: str) -> str:
    """Remove one pair of Markdown code fences wrapping a response."""

    text = response.strip()
    text = _CODE_FENCE_OPEN_RE.sub("", text, count=1)
    text = _CODE_FENCE_CLOSE_RE.sub("", text, count=1)
    return text.strip()


def extract_solution(response: str) -> str:
    """Reduce a solver response to the LaTeX fragment to insert.

    A ``solution`` environment is kept verbatim when present; otherwise code
    fences around the response are removed.
    """

    match = _SOLUTION_ENV_RE.search(response)
    if match:
        return f"\\begin{{solution}}{match.group(1)}\\end{{solution}}"

    return strip_code_fences(response)


class LatexTranscriptionAgent:
    """Turn extracted PDF page text into a LaTeX transcription of the problem set."""

    _INSTRUCTIONS = (
        "You transcribe problem sets into LaTeX. Reproduce every problem and "
        "subproblem faithfully, keeping the original numbering. Write mathematics "
        "in proper LaTeX math mode. Return only the LaTeX body, without a preamble."
    )

    async def transcribe(self, document: ValidatedDocument, *, message: str | None = None) -> str:
        if document.source is not None:
            return document.source

        _require_api_key()
        pages = "\n\n".join(
            f"--- Page {index} ---\n{text}" for index, text in enumerate(document.pages, start=1)
        )
        prompt = f"Transcribe this problem set ({document.filename}) into LaTeX.\n\n{pages}"
        if message:
            prompt += f"\n\nNote from the user: {message}"

        agent = Agent(
            name="psetflow_transcriber",
            instructions=self._INSTRUCTIONS,
            model=_chat_model(),
        )
        result = await Runner.run(agent, input=prompt)
        transcript = strip_code_fences(_output_text(result))
        if not transcript:
            raise StageError("Transcription agent returned an empty document")
        return transcript


class ProblemChunkingAgent:
    """Split a LaTeX transcript into a hierarchical problem list."""

    _INSTRUCTIONS = (
        "You parse mathematical problem sets. Identify every problem and subproblem. "
        'Give each an id from its position ("1", "1.a", "1.a.i"), its parent_id '
        "(null for top-level problems), its display number (\"1(a)(i)\"), its full "
        "LaTeX text and its level (0 for top-level, 1 for parts, 2 for subparts). "
        "Do not infer dependencies. Respond with a JSON object ONLY:\n"
        '{"problems": [{"id": "1", "parent_id": null, "number": "1", '
        '"text": "...", "level": 0}]}'
    )

    async def chunk(self, transcript: str) -> list[Problem]:
        _require_api_key()
        agent = Agent(
            name="psetflow_chunker",
            instructions=self._INSTRUCTIONS,
            model=_chat_model(),
        )
        result = await Runner.run(agent, input=transcript)

        try:
            output = ChunkingOutput.model_validate(_extract_json(_output_text(result)))
        except (ValueError, ValidationError) as exc:
            raise StageError(f"Problem chunking returned invalid output: {exc}") from exc

        flat = [Problem(**chunked.model_dump()) for chunked in output.problems]
        return build_problem_hierarchy(flat)


class DependencyDetectionAgent:
    """Find explicit cross-problem references, falling back to text heuristics."""

    _INSTRUCTIONS = (
        "You analyze a problem set to detect EXPLICIT dependencies between problems. "
        'Only mark a dependency when a problem refers to another one ("using your '
        'result from Problem 1"). Topic similarity, difficulty and parent/child '
        "structure are NOT dependencies. Respond with a JSON object ONLY:\n"
        '{"dependencies": [{"problem_id": "2", "depends_on": ["1"], '
        '"reasoning": "..."}]}'
    )

    def __init__(self, *, reasoning_effort: str = "low") -> None:
        self._reasoning_effort = reasoning_effort

    async def detect(self, problems: Sequence[Problem]) -> dict[str, list[str]]:
        _require_api_key()
        listing = "\n\n".join(
            f"[{problem.id}] Problem {problem.number}:\n{problem.text}" for problem in problems
        )
        agent = Agent(
            name="psetflow_dependency_detector",
            instructions=self._INSTRUCTIONS,
            model=_chat_model(),
            model_settings=ModelSettings(
                reasoning=Reasoning(effort=self._reasoning_effort),  # type: ignore[arg-type]
            ),
        )

        try:
            result = await Runner.run(agent, input=listing)
            output = DependencyDetectionOutput.model_validate(
                _extract_json(_output_text(result))
            )
        except Exception:
            logger.warning("Dependency detection agent failed; using text heuristics", exc_info=True)
            copies = [problem.model_copy() for problem in problems]
            detect_dependencies_heuristic(copies)
            return {problem.id: list(problem.dependencies) for problem in copies}

        return {entry.problem_id: list(entry.depends_on) for entry in output.dependencies}


class ProblemSolverAgent:
    """Write a LaTeX solution for one problem, honoring previous compiler errors."""

    def __init__(self, *, preamble: str = LATEX_PREAMBLE, reasoning_effort: str = "medium") -> None:
        self._preamble = preamble
        self._reasoning_effort = reasoning_effort

    def _instructions(self) -> str:
        return (
            "You are an expert mathematics problem solver. Provide complete, rigorous, "
            "step-by-step solutions.\n\n"
            "The following preamble is already defined and cannot be modified:\n\n"
            f"{self._preamble}\n"
            "Your solution is inserted into this document. Do not include "
            "\\documentclass, \\usepackage, \\begin{document} or \\end{document}. "
            "Only use packages and commands from the preamble, keep all math in math "
            "mode and close every environment. Return ONLY the LaTeX solution content."
        )

    @staticmethod
    def build_prompt(
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str:
        prompt = f"Solve the following problem:\n\n**Problem {problem.number}:**\n{problem.text}\n\n"
        if dependency_context:
            prompt += f"**Context from previous problems:**\n{dependency_context}\n\n"
        if previous_errors:
            prompt += "**IMPORTANT: Your previous solution had compilation errors. Please fix them:**\n\n"
            prompt += "".join(f"{error}\n\n" for error in previous_errors)
            prompt += "Please provide a corrected solution that compiles successfully.\n\n"
        prompt += "Provide a complete, rigorous solution in LaTeX format."
        return prompt

    async def solve(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        previous_errors: Sequence[str] = (),
    ) -> str:
        _require_api_key()
        agent = Agent(
            name="psetflow_solver",
            instructions=self._instructions(),
            model=_solver_model(),
            model_settings=ModelSettings(
                reasoning=Reasoning(effort=self._reasoning_effort),  # type: ignore[arg-type]
            ),
        )
        result = await Runner.run(
            agent,
            input=self.build_prompt(
                problem,
                dependency_context=dependency_context,
                previous_errors=previous_errors,
            ),
        )
        solution = extract_solution(_output_text(result))
        if not solution:
            raise StageError(f"Solver returned an empty solution for problem {problem.id}")
        return solution


def default_agents() -> ProblemAgents:
    return ProblemAgents(
        transcriber=LatexTranscriptionAgent(),
        chunker=ProblemChunkingAgent(),
        dependency_detector=DependencyDetectionAgent(),
        solver=ProblemSolverAgent(),
    )
