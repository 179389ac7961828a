"""
Issues: non-fatal problems attached to pipeline artifacts.

An *error* issue marks input the pipeline cannot realise (an unsolvable
constraint, a region that would need a split or merge); a *warning* marks a
marginal case.  Stages keep going after reporting issues and produce partial
artifacts where possible.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional


class IssueKind(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class Issue:
    """A single reported problem.

    Attributes:
        kind: Error or warning.
        message: Human-readable description.
        center: Sketch-space point (mm) the issue is centred on, if any.
        source: Pipeline component that reported it (``"mesh"``, ``"regions"``...).
        sketch_id: Scene id of the sketch the issue belongs to, if any.
    """

    kind: IssueKind
    message: str
    center: Optional[tuple[float, float]] = None
    source: str = ""
    sketch_id: Optional[int] = None

    @classmethod
    def error(cls, message: str, **kwargs: Any) -> Issue:
        return cls(IssueKind.ERROR, message, **kwargs)

    @classmethod
    def warning(cls, message: str, **kwargs: Any) -> Issue:
        return cls(IssueKind.WARNING, message, **kwargs)

    @property
    def is_error(self) -> bool:
        return self.kind == IssueKind.ERROR

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "message": self.message,
            "center": list(self.center) if self.center is not None else None,
            "source": self.source,
            "sketch": self.sketch_id,
        }


@dataclass
class IssueLog:
    """Ordered, append-only collection of issues."""

    issues: list[Issue] = field(default_factory=list)

    def add(self, issue: Issue) -> None:
        self.issues.append(issue)

    def extend(self, issues: Iterable[Issue]) -> None:
        self.issues.extend(issues)

    def errors(self) -> list[Issue]:
        return [i for i in self.issues if i.is_error]

    def warnings(self) -> list[Issue]:
        return [i for i in self.issues if not i.is_error]

    def has_errors(self) -> bool:
        return any(i.is_error for i in self.issues)

    def __len__(self) -> int:
        return len(self.issues)

    def __iter__(self):
        return iter(self.issues)


class InvariantError(AssertionError):
    """A broken internal invariant (a bug, not bad input)."""


def check(condition: bool, message: str) -> None:
    """Raise :class:`InvariantError` with *message* unless *condition* holds."""
    if not condition:
        raise InvariantError(message)
