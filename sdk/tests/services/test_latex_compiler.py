from __future__ import annotations

import httpx
import pytest

from psetflow.config import SchedulerConfig
from psetflow.schemas.jobs import CompilationResult
from psetflow.services.latex_compiler import (
    MAX_REPORTED_ERRORS,
    LatexCompiler,
    LatexSolutionValidator,
    RemoteLatexCompiler,
    check_latex_installed,
    create_compiler,
    format_errors_for_llm,
    parse_latex_errors,
)
from psetflow.services.latex_preamble import (
    LATEX_PREAMBLE,
    create_test_document,
    format_problem_header,
)

_MISSING_ENGINE = "psetflow-missing-latex-engine"

_SAMPLE_LOG = """This is pdfTeX, Version 3.141592653
(./document.tex
./document.tex:42: Undefined control sequence.
l.42 \\foo
          {bar}
! Missing $ inserted.
<inserted text>
                $
l.57 x^2

No pages of output.
"""


def test_parse_latex_errors_extracts_known_patterns() -> None:
    errors = parse_latex_errors(_SAMPLE_LOG)

    assert "Line 42: Undefined control sequence." in errors
    assert any(error.startswith("Missing $ inserted.") for error in errors)
    assert len(errors) == len(set(errors))


def test_parse_latex_errors_falls_back_to_error_lines() -> None:
    errors = parse_latex_errors("all good\nFatal error occurred, no output PDF file produced!\n")

    assert errors == ["Fatal error occurred, no output PDF file produced!"]


def test_parse_latex_errors_caps_and_dedupes() -> None:
    log = "\n".join(f"! Problem number {index}." for index in range(25))
    log += "\n! Problem number 0."

    errors = parse_latex_errors(log)

    assert len(errors) == MAX_REPORTED_ERRORS
    assert errors[0] == "Problem number 0."


def test_parse_latex_errors_of_clean_log_is_empty() -> None:
    assert parse_latex_errors("Output written on document.pdf (1 page).") == []


def test_format_errors_for_llm_numbers_each_error() -> None:
    text = format_errors_for_llm(["first", "second"])

    assert "1. first" in text
    assert "2. second" in text
    assert "failed to compile" in text


def test_format_errors_for_llm_without_errors_has_generic_message() -> None:
    assert "no specific errors" in format_errors_for_llm([])


def test_test_document_wraps_solution_in_preamble() -> None:
    document = create_test_document("$x$")

    assert document.startswith(LATEX_PREAMBLE)
    assert "$x$" in document
    assert document.rstrip().endswith("\\end{document}")


def test_problem_headers_follow_hierarchy_depth() -> None:
    assert format_problem_header("1", 0) == "\\section*{Problem 1}"
    assert format_problem_header("1(a)", 1) == "\\subsection*{Part 1(a)}"
    assert format_problem_header("1(a)(i)", 2) == "\\subsubsection*{Part 1(a)(i)}"
    assert format_problem_header("1(a)(i)(x)", 5) == "\\subsubsection*{Part 1(a)(i)(x)}"


@pytest.mark.asyncio
async def test_missing_engine_returns_failure_instead_of_raising() -> None:
    compiler = LatexCompiler(engine=_MISSING_ENGINE, timeout_seconds=5)

    result = await compiler.compile(create_test_document("x"))

    assert result.success is False
    assert result.pdf is None
    assert "not installed" in result.errors[0]


@pytest.mark.asyncio
async def test_check_latex_installed_is_false_for_missing_engine() -> None:
    assert await check_latex_installed(_MISSING_ENGINE) is False


@pytest.mark.asyncio
async def test_remote_compiler_returns_pdf_on_success() -> None:
    seen: dict[str, str] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["text"] = request.url.params["text"]
        seen["command"] = request.url.params.get("command", "")
        return httpx.Response(200, content=b"%PDF-1.7", headers={"content-type": "application/pdf"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        compiler = RemoteLatexCompiler("https://latex.example", engine="xelatex", client=client)
        result = await compiler.compile("\\documentclass{article}")

    assert result.success is True
    assert result.pdf == b"%PDF-1.7"
    assert seen["path"] == "/compile"
    assert seen["text"] == "\\documentclass{article}"
    assert seen["command"] == "xelatex"


@pytest.mark.asyncio
async def test_remote_compiler_parses_error_log() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="! Undefined control sequence.\nl.3 \\foo")

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await RemoteLatexCompiler("https://latex.example", client=client).compile("x")

    assert result.success is False
    assert result.errors[0].startswith("Undefined control sequence.")


@pytest.mark.asyncio
async def test_remote_compiler_reports_transport_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as client:
        result = await RemoteLatexCompiler("https://latex.example", client=client).compile("x")

    assert result.success is False
    assert "Remote compilation failed" in result.errors[0]


@pytest.mark.asyncio
async def test_solution_validator_compiles_fragment_inside_preamble() -> None:
    documents: list[str] = []

    class _RecordingCompiler:
        async def compile(self, document: str) -> CompilationResult:
            documents.append(document)
            return CompilationResult(success=True, pdf=b"%PDF")

    result = await LatexSolutionValidator(_RecordingCompiler()).validate("$y$")

    assert result.success is True
    assert documents == [create_test_document("$y$")]


def test_create_compiler_follows_config() -> None:
    assert isinstance(create_compiler(SchedulerConfig()), LatexCompiler)
    assert isinstance(
        create_compiler(SchedulerConfig(latex_compiler="remote")), RemoteLatexCompiler
    )
