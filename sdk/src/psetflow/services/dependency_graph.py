from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence

from psetflow.schemas.problems import DependencyGraph, Problem

logger = logging.getLogger(__name__)

_REFERENCE_PATTERNS = ("problem {number}", "part {number}", "from {number}", "using {number}")


def flatten_problems(problems: Iterable[Problem]) -> list[Problem]:
    """Flatten a problem tree depth-first, parents before their children."""

    flat: list[Problem] = []

    def traverse(problem: Problem) -> None:
        flat.append(problem)
        for child in problem.children:
            traverse(child)

    for problem in problems:
        traverse(problem)
    return flat


def build_problem_hierarchy(flat: Sequence[Problem]) -> list[Problem]:
    """Link a flat problem list into a tree and return the roots.

    Children are rebuilt from ``parent_id`` and dependencies are reset, in
    place. A problem whose parent is unknown, or that sits on a parent cycle,
    is promoted to a root rather than dropped.
    """

    by_id: dict[str, Problem] = {}
    for problem in flat:
        problem.children = []
        problem.dependencies = []
        by_id.setdefault(problem.id, problem)

    roots: list[Problem] = []
    for problem in by_id.values():
        parent = by_id.get(problem.parent_id) if problem.parent_id else None
        if parent is None or parent is problem:
            if problem.parent_id:
                logger.warning(
                    "Problem %s references unknown parent %s; treating it as top-level",
                    problem.id,
                    problem.parent_id,
                )
            roots.append(problem)
            continue
        parent.children.append(problem)

    # Parent cycles leave their members unreachable from any root.
    reachable = {problem.id for problem in flatten_problems(roots)}
    for problem in by_id.values():
        if problem.id in reachable:
            continue
        logger.warning(
            "Problem %s is part of a parent cycle through %s; treating it as top-level",
            problem.id,
            problem.parent_id,
        )
        parent = by_id[problem.parent_id] if problem.parent_id else None
        if parent is not None:
            parent.children = [child for child in parent.children if child is not problem]
        problem.parent_id = None
        roots.append(problem)
        reachable.update(item.id for item in flatten_problems([problem]))
    return roots


def sanitize_dependencies(problems: Sequence[Problem]) -> list[Problem]:
    """Drop dependency ids that would break the graph, in place.

    Removed: unknown ids, self references, duplicates, and references to the
    problem's own parent or direct children (structure, not dependency).
    """

    known = {problem.id for problem in problems}
    for problem in problems:
        structural = {child.id for child in problem.children}
        if problem.parent_id:
            structural.add(problem.parent_id)

        cleaned: list[str] = []
        for dep in problem.dependencies:
            if dep == problem.id or dep in cleaned:
                continue
            if dep not in known:
                logger.debug("Dropping unknown dependency %s -> %s", problem.id, dep)
                continue
            if dep in structural:
                logger.debug("Dropping structural dependency %s -> %s", problem.id, dep)
                continue
            cleaned.append(dep)
        problem.dependencies = cleaned
    return list(problems)


def detect_dependencies_heuristic(problems: Sequence[Problem]) -> list[Problem]:
    """Detect explicit cross references from problem text, in place.

    Used when the dependency agent is unavailable. A problem depends on another
    when its text mentions e.g. ``"problem 1"`` or ``"using 1(a)"``.
    """

    for problem in problems:
        text = problem.text.lower()
        deps: list[str] = []
        for other in problems:
            if other.id == problem.id:
                continue
            number = other.number.lower()
            if any(pattern.format(number=number) in text for pattern in _REFERENCE_PATTERNS):
                deps.append(other.id)
        problem.dependencies = deps
    return list(problems)


def build_dependency_graph(problems: Sequence[Problem]) -> DependencyGraph:
    """Build a leveled execution order for a flat, dependency-annotated list.

    Level ``k`` holds every problem whose dependencies all sit in levels
    ``< k``; members of a level keep their input order. Problems on or behind a
    dependency cycle never reach a level and are reported in ``unscheduled``.
    """

    nodes: dict[str, Problem] = {}
    for problem in problems:
        if problem.id in nodes:
            logger.warning("Duplicate problem id %s; keeping the first occurrence", problem.id)
            continue
        nodes[problem.id] = problem

    position = {node_id: index for index, node_id in enumerate(nodes)}
    edges: dict[str, list[str]] = {}
    for node_id, problem in nodes.items():
        deps: list[str] = []
        for dep in problem.dependencies:
            if dep not in nodes:
                logger.warning("Problem %s depends on unknown problem %s; ignoring", node_id, dep)
                continue
            if dep not in deps:
                deps.append(dep)
        edges[node_id] = deps

    unresolved = {node_id: len(deps) for node_id, deps in edges.items()}
    dependents: dict[str, list[str]] = defaultdict(list)
    for node_id, deps in edges.items():
        for dep in deps:
            dependents[dep].append(node_id)

    levels: list[list[str]] = []
    frontier = [node_id for node_id in nodes if unresolved[node_id] == 0]
    while frontier:
        levels.append(frontier)
        next_frontier: list[str] = []
        for node_id in frontier:
            for dependent in dependents.get(node_id, []):
                unresolved[dependent] -= 1
                if unresolved[dependent] == 0:
                    next_frontier.append(dependent)
        frontier = sorted(next_frontier, key=position.__getitem__)

    scheduled = {node_id for level in levels for node_id in level}
    unscheduled = [node_id for node_id in nodes if node_id not in scheduled]
    if unscheduled:
        logger.warning(
            "Circular dependency detected; %d problem(s) will not be scheduled: %s",
            len(unscheduled),
            ", ".join(unscheduled),
        )

    return DependencyGraph(nodes=nodes, edges=edges, levels=levels, unscheduled=unscheduled)
