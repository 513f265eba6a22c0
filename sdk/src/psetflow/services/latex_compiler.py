from __future__ import annotations

import asyncio
import logging
import re
import tempfile
from pathlib import Path
from typing import Protocol

import httpx

from psetflow.config import DEFAULT_REMOTE_COMPILER_URL, SchedulerConfig
from psetflow.schemas.jobs import CompilationResult
from psetflow.services.latex_preamble import LATEX_PREAMBLE, create_test_document

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10

_ENGINE_ARGS = ("-interaction=nonstopmode", "-halt-on-error", "-file-line-error")
_FILE_LINE_ERROR_RE = re.compile(r"^(.+?):(\d+):\s*(.+)$")
_ERROR_CONTEXT_LINES = 4
_VERSION_CHECK_TIMEOUT_SECONDS = 5.0


class LatexCompilerBackend(Protocol):
    async def compile(self, document: str) -> CompilationResult: ...


class SolutionValidator(Protocol):
    async def validate(self, solution: str) -> CompilationResult: ...


def parse_latex_errors(log: str) -> list[str]:
    """Extract the most relevant error messages from a LaTeX log.

    Recognizes ``!`` error lines (with a few lines of context), the
    ``file:line: message`` format, and a handful of common messages. Falls back
    to any line mentioning "error". Results are de-duplicated, keep first-seen
    order, and are capped at ``MAX_REPORTED_ERRORS``.
    """

    lines = log.splitlines()
    errors: list[str] = []

    for index, line in enumerate(lines):
        if line.startswith("!"):
            context = [line[1:].strip()]
            for follow in lines[index + 1 : index + 1 + _ERROR_CONTEXT_LINES]:
                stripped = follow.strip()
                if not stripped or stripped.startswith("!"):
                    break
                context.append(stripped)
            errors.append("\n".join(context))

        match = _FILE_LINE_ERROR_RE.match(line)
        if match:
            errors.append(f"Line {match.group(2)}: {match.group(3)}")

        if "Undefined control sequence" in line or "Missing $" in line:
            errors.append(line)
        if "\\begin" in line and "ended by" in line:
            errors.append(line)

    if not errors:
        errors = [line.strip() for line in lines if "error" in line.lower() and line.strip()]

    return list(dict.fromkeys(errors))[:MAX_REPORTED_ERRORS]


def format_errors_for_llm(errors: list[str]) -> str:
    """Render compiler errors as actionable feedback for the solve agent."""

    if not errors:
        return (
            "Compilation failed but no specific errors were found. "
            "Please check your LaTeX syntax."
        )

    error_list = "\n\n".join(f"{index}. {error}" for index, error in enumerate(errors, start=1))
    return (
        "Your LaTeX solution failed to compile with the following errors:\n\n"
        f"{error_list}\n\n"
        "Please fix these errors and provide a corrected solution. Remember:\n"
        "- You can only use packages and commands defined in the preamble\n"
        "- All math must be in proper math mode ($...$ or \\[...\\])\n"
        "- All environments must be properly closed\n"
        "- Check for typos in command names"
    )


def _failure(message: str, *, log: str | None = None) -> CompilationResult:
    return CompilationResult(success=False, log=log if log is not None else message, errors=[message])


class LatexCompiler:
    """Compile documents with a locally installed LaTeX engine."""

    def __init__(self, engine: str = "pdflatex", timeout_seconds: float = 30.0) -> None:
        self._engine = engine
        self._timeout_seconds = timeout_seconds

    @property
    def engine(self) -> str:
        return self._engine

    async def compile(self, document: str) -> CompilationResult:
        with tempfile.TemporaryDirectory(prefix="psetflow-latex-") as work_dir:
            workspace = Path(work_dir)
            (workspace / "document.tex").write_text(document, encoding="utf-8")

            try:
                process = await asyncio.create_subprocess_exec(
                    self._engine,
                    *_ENGINE_ARGS,
                    "document.tex",
                    cwd=work_dir,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                return _failure(f"LaTeX engine {self._engine!r} is not installed")
            except OSError as exc:
                return _failure(f"Failed to run {self._engine}: {exc}")

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self._timeout_seconds
                )
            except TimeoutError:
                process.kill()
                await process.wait()
                logger.warning("%s timed out after %ss", self._engine, self._timeout_seconds)
                return _failure(f"LaTeX compilation timed out after {self._timeout_seconds}s")

            log = (
                stdout.decode("utf-8", errors="replace")
                + "\n"
                + stderr.decode("utf-8", errors="replace")
            )
            pdf_path = workspace / "document.pdf"

            if process.returncode == 0:
                if pdf_path.exists():
                    return CompilationResult(success=True, pdf=pdf_path.read_bytes(), log=log)
                errors = parse_latex_errors(log) or ["PDF file was not created"]
                return CompilationResult(success=False, log=log, errors=errors)

            errors = parse_latex_errors(log) or ["Compilation failed with unknown error"]
            return CompilationResult(success=False, log=log, errors=errors)


class RemoteLatexCompiler:
    """Compile documents through a LaTeX.Online-compatible HTTP service."""

    def __init__(
        self,
        base_url: str = DEFAULT_REMOTE_COMPILER_URL,
        *,
        engine: str = "pdflatex",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._engine = engine
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def compile(self, document: str) -> CompilationResult:
        params = {"text": document, "force": "true"}
        if self._engine != "pdflatex":
            params["command"] = self._engine

        try:
            if self._client is not None:
                response = await self._request(self._client, params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await self._request(client, params)
        except httpx.HTTPError as exc:
            logger.warning("Remote LaTeX compilation failed: %s", exc)
            return _failure(f"Remote compilation failed: {exc}")

        content_type = response.headers.get("content-type", "")
        if response.is_success and "application/pdf" in content_type:
            return CompilationResult(
                success=True, pdf=response.content, log="Compiled using LaTeX.Online"
            )

        log = response.text
        errors = parse_latex_errors(log) or ["LaTeX.Online compilation failed"]
        return CompilationResult(success=False, log=log, errors=errors)

    async def _request(self, client: httpx.AsyncClient, params: dict[str, str]) -> httpx.Response:
        return await client.get(
            f"{self._base_url}/compile",
            params=params,
            headers={"Accept": "application/pdf"},
        )


class LatexSolutionValidator:
    """Validate a solution fragment by compiling it inside the shared preamble."""

    def __init__(self, compiler: LatexCompilerBackend, *, preamble: str = LATEX_PREAMBLE) -> None:
        self._compiler = compiler
        self._preamble = preamble

    async def validate(self, solution: str) -> CompilationResult:
        return await self._compiler.compile(create_test_document(solution, preamble=self._preamble))


async def check_latex_installed(engine: str = "pdflatex") -> bool:
    try:
        process = await asyncio.create_subprocess_exec(
            engine,
            "--version",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return False
    try:
        return await asyncio.wait_for(process.wait(), timeout=_VERSION_CHECK_TIMEOUT_SECONDS) == 0
    except TimeoutError:
        process.kill()
        await process.wait()
        return False


def create_compiler(config: SchedulerConfig) -> LatexCompilerBackend:
    if config.latex_compiler == "remote":
        return RemoteLatexCompiler(
            config.remote_compiler_url,
            engine=config.latex_engine,
            timeout_seconds=config.compile_timeout_seconds,
        )
    return LatexCompiler(config.latex_engine, config.compile_timeout_seconds)
