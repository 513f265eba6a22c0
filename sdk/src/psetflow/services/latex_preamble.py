from __future__ import annotations

LATEX_PREAMBLE = r"""\documentclass[11pt]{article}
\usepackage[margin=1in]{geometry}
\usepackage{amsmath}
\usepackage{amssymb}
\usepackage{amsthm}
\usepackage{mathtools}
\usepackage{enumitem}
\usepackage{graphicx}
\usepackage{hyperref}

\newtheorem{theorem}{Theorem}
\newtheorem{lemma}[theorem]{Lemma}
\newtheorem{proposition}[theorem]{Proposition}
\newtheorem{corollary}[theorem]{Corollary}
\theoremstyle{definition}
\newtheorem{definition}[theorem]{Definition}
\theoremstyle{remark}
\newtheorem*{remark}{Remark}

\newenvironment{solution}{\begin{proof}[Solution]}{\end{proof}}

\newcommand{\R}{\mathbb{R}}
\newcommand{\N}{\mathbb{N}}
\newcommand{\Z}{\mathbb{Z}}
\newcommand{\Q}{\mathbb{Q}}
\newcommand{\C}{\mathbb{C}}
\DeclareMathOperator{\Var}{Var}
\DeclareMathOperator{\E}{\mathbb{E}}

\begin{document}
"""

DOCUMENT_END = r"\end{document}"

_HEADER_COMMANDS = ("section*", "subsection*", "subsubsection*")


def create_test_document(solution: str, *, preamble: str = LATEX_PREAMBLE) -> str:
    """Wrap a solution fragment in the shared preamble so it can be compiled alone."""

    return f"{preamble}\n{solution}\n\n{DOCUMENT_END}\n"


def format_problem_header(number: str, level: int) -> str:
    """Sectioning command for a problem at the given hierarchy depth."""

    command = _HEADER_COMMANDS[min(max(level, 0), len(_HEADER_COMMANDS) - 1)]
    label = "Problem" if level <= 0 else "Part"
    return f"\\{command}{{{label} {number}}}"
