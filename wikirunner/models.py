from dataclasses import dataclass
from enum import Enum
from typing import Tuple


class SolverType(str, Enum):
    VECTORS = "VECTORS"
    GEMINI = "GEMINI"
    OPENAI = "OPENAI"
    CLAUDE = "CLAUDE"
    TINKER = "TINKER"


class RunStatus(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    PLAYING = "PLAYING"
    LOADING_STEP = "LOADING_STEP"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


def canonical_title(title: str) -> str:
    """
    Fold a page title to the key used for equality checks: underscores count as
    spaces, whitespace runs collapse, surrounding whitespace goes and case is folded.
    """
    return " ".join(title.replace("_", " ").split()).casefold()


@dataclass(frozen=True)
class Node:
    title: str
    label: str
    summary: str
    links: Tuple[str, ...]


@dataclass(frozen=True)
class SolverMove:
    link: str
    rationale: str


@dataclass(frozen=True)
class Step:
    from_title: str
    link: str  # as spelled on from_title
    title: str  # destination, after redirects
    rationale: str
    timestamp: float
    duration: float  # seconds spent inside the solver
    solver: SolverType

    def to_dict(self) -> dict:
        return {
            "from_title": self.from_title,
            "link": self.link,
            "title": self.title,
            "rationale": self.rationale,
            "timestamp": self.timestamp,
            "duration_ms": round(self.duration * 1000, 1),
            "solver": self.solver.value,
        }
