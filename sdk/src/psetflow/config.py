from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, cast

from psetflow.errors import PsetFlowConfigurationError

LatexCompilerKind = Literal["local", "remote"]

_SUPPORTED_COMPILERS = frozenset({"local", "remote"})
_SUPPORTED_ENGINES = frozenset({"pdflatex", "xelatex", "lualatex"})

_MAX_CONCURRENT_SOLVERS_ENV = "PSETFLOW_MAX_CONCURRENT_SOLVERS"
_SOLVER_TIMEOUT_ENV = "PSETFLOW_SOLVER_TIMEOUT_SECONDS"
_MAX_ATTEMPTS_ENV = "PSETFLOW_MAX_COMPILATION_ATTEMPTS"
_COMPILE_TIMEOUT_ENV = "PSETFLOW_COMPILE_TIMEOUT_SECONDS"
_LATEX_ENGINE_ENV = "PSETFLOW_LATEX_ENGINE"
_LATEX_COMPILER_ENV = "PSETFLOW_LATEX_COMPILER"
_REMOTE_COMPILER_URL_ENV = "PSETFLOW_REMOTE_COMPILER_URL"

DEFAULT_REMOTE_COMPILER_URL = "https://latexonline.cc"


def _read_non_empty_env(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _read_positive_int(name: str, default: int) -> int:
    raw = _read_non_empty_env(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise PsetFlowConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise PsetFlowConfigurationError(f"{name} must be greater than zero")
    return value


def _read_positive_float(name: str, default: float) -> float:
    raw = _read_non_empty_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise PsetFlowConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise PsetFlowConfigurationError(f"{name} must be greater than zero")
    return value


def _normalize_choice(name: str, value: str, supported: frozenset[str]) -> str:
    normalized = value.strip().lower()
    if normalized not in supported:
        options = ", ".join(sorted(supported))
        raise PsetFlowConfigurationError(f"Invalid {name} {value!r}. Use one of: {options}.")
    return normalized


@dataclass(frozen=True)
class SchedulerConfig:
    """Tunables for job scheduling, solving and compilation.

    ``max_concurrent_solvers`` caps the number of retry-engine tasks running at
    once inside a single dependency level.
    """

    max_concurrent_solvers: int = 10
    solver_timeout_seconds: float = 300.0
    max_compilation_attempts: int = 5
    compile_timeout_seconds: float = 30.0
    latex_engine: str = "pdflatex"
    latex_compiler: LatexCompilerKind = "local"
    remote_compiler_url: str = DEFAULT_REMOTE_COMPILER_URL

    def __post_init__(self) -> None:
        if self.max_concurrent_solvers < 1:
            raise PsetFlowConfigurationError("max_concurrent_solvers must be at least 1")
        if self.max_compilation_attempts < 1:
            raise PsetFlowConfigurationError("max_compilation_attempts must be at least 1")
        if self.solver_timeout_seconds <= 0:
            raise PsetFlowConfigurationError("solver_timeout_seconds must be greater than zero")
        if self.compile_timeout_seconds <= 0:
            raise PsetFlowConfigurationError("compile_timeout_seconds must be greater than zero")
        _normalize_choice("LaTeX engine", self.latex_engine, _SUPPORTED_ENGINES)
        _normalize_choice("LaTeX compiler", self.latex_compiler, _SUPPORTED_COMPILERS)

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        engine = _read_non_empty_env(_LATEX_ENGINE_ENV) or "pdflatex"
        compiler = _read_non_empty_env(_LATEX_COMPILER_ENV) or "local"
        return cls(
            max_concurrent_solvers=_read_positive_int(_MAX_CONCURRENT_SOLVERS_ENV, 10),
            solver_timeout_seconds=_read_positive_float(_SOLVER_TIMEOUT_ENV, 300.0),
            max_compilation_attempts=_read_positive_int(_MAX_ATTEMPTS_ENV, 5),
            compile_timeout_seconds=_read_positive_float(_COMPILE_TIMEOUT_ENV, 30.0),
            latex_engine=_normalize_choice("LaTeX engine", engine, _SUPPORTED_ENGINES),
            latex_compiler=cast(
                LatexCompilerKind,
                _normalize_choice("LaTeX compiler", compiler, _SUPPORTED_COMPILERS),
            ),
            remote_compiler_url=(
                _read_non_empty_env(_REMOTE_COMPILER_URL_ENV) or DEFAULT_REMOTE_COMPILER_URL
            ),
        )
