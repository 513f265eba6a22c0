from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Problem(BaseModel):
    """One unit of work in a problem set.

    ``id`` encodes the hierarchical position (``"1"``, ``"1.a"``, ``"1.a.i"``)
    and ``number`` is the display form (``"1(a)(i)"``).
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    parent_id: str | None = None
    number: str
    text: str = ""
    level: int = Field(default=0, ge=0)
    children: list[Problem] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class DependencyGraph(BaseModel):
    model_config = ConfigDict(extra="forbid")

    nodes: dict[str, Problem]
    edges: dict[str, list[str]]
    levels: list[list[str]]
    unscheduled: list[str] = Field(default_factory=list)

    @property
    def has_cycle(self) -> bool:
        return bool(self.unscheduled)

    @property
    def scheduled_count(self) -> int:
        return sum(len(level) for level in self.levels)


class ChunkedProblem(BaseModel):
    """Flat problem record as emitted by the chunking agent."""

    model_config = ConfigDict(extra="ignore")

    id: str
    parent_id: str | None = None
    number: str
    text: str
    level: int = Field(default=0, ge=0)


class ChunkingOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    problems: list[ChunkedProblem]


class DetectedDependency(BaseModel):
    model_config = ConfigDict(extra="ignore")

    problem_id: str
    depends_on: list[str] = Field(default_factory=list)
    reasoning: str | None = None


class DependencyDetectionOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dependencies: list[DetectedDependency]
