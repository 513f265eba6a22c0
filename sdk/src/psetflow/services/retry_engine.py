from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from psetflow.schemas.problems import Problem
from psetflow.services.latex_compiler import SolutionValidator, format_errors_for_llm
from psetflow.services.problem_agents import SolveAgent

logger = logging.getLogger(__name__)

AttemptPhase = Literal["solving", "validating"]
AttemptCallback = Callable[[int, AttemptPhase], None]


@dataclass(frozen=True)
class SolveOutcome:
    solution: str | None
    attempts: int
    feedback: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    last_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.solution is not None


class SolveRetryEngine:
    """Bounded solve -> validate loop for a single problem.

    Each attempt asks the solve agent for a candidate (passing every validator
    error seen so far), then validates it. The first candidate that validates
    wins. Agent or validator exceptions and attempt timeouts consume an attempt
    but are not fed back to the agent.
    """

    def __init__(
        self,
        solver: SolveAgent,
        validator: SolutionValidator,
        *,
        attempt_timeout_seconds: float | None = None,
    ) -> None:
        self._solver = solver
        self._validator = validator
        self._attempt_timeout_seconds = attempt_timeout_seconds

    async def solve_with_retry(
        self,
        problem: Problem,
        *,
        dependency_context: str | None = None,
        max_attempts: int = 5,
        on_attempt: AttemptCallback | None = None,
    ) -> SolveOutcome:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        feedback: list[str] = []
        failures: list[str] = []

        for attempt in range(1, max_attempts + 1):
            try:
                solution, errors = await asyncio.wait_for(
                    self._attempt(
                        problem,
                        attempt=attempt,
                        dependency_context=dependency_context,
                        feedback=list(feedback),
                        on_attempt=on_attempt,
                    ),
                    timeout=self._attempt_timeout_seconds,
                )
            except TimeoutError:
                message = f"Attempt {attempt} timed out after {self._attempt_timeout_seconds}s"
                logger.warning("Problem %s: %s", problem.id, message)
                failures.append(message)
                continue
            except Exception as exc:
                message = f"Attempt {attempt} failed: {exc}"
                logger.warning("Problem %s: %s", problem.id, message)
                failures.append(message)
                continue

            if errors is None:
                logger.info("Problem %s solved on attempt %d", problem.id, attempt)
                return SolveOutcome(
                    solution=solution,
                    attempts=attempt,
                    feedback=feedback,
                    failures=failures,
                    last_error=failures[-1] if failures else None,
                )

            formatted = format_errors_for_llm(errors)
            logger.info(
                "Problem %s failed validation on attempt %d (%d error(s))",
                problem.id,
                attempt,
                len(errors),
            )
            feedback.append(formatted)
            failures.append(formatted)

        return SolveOutcome(
            solution=None,
            attempts=max_attempts,
            feedback=feedback,
            failures=failures,
            last_error=failures[-1] if failures else None,
        )

    async def _attempt(
        self,
        problem: Problem,
        *,
        attempt: int,
        dependency_context: str | None,
        feedback: list[str],
        on_attempt: AttemptCallback | None,
    ) -> tuple[str, list[str] | None]:
        if on_attempt is not None:
            on_attempt(attempt, "solving")
        solution = await self._solver.solve(
            problem,
            dependency_context=dependency_context,
            previous_errors=feedback,
        )

        if on_attempt is not None:
            on_attempt(attempt, "validating")
        result = await self._validator.validate(solution)
        if result.success:
            return solution, None
        return solution, list(result.errors)
