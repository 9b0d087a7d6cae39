import dataclasses
import re
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set

from .state import LabelConfig, State

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_len: int = 30) -> str:
    slug = _NON_ALNUM_RE.sub("-", (text or "").lower()).strip("-")
    if len(slug) <= max_len:
        return slug
    truncated = slug[:max_len]
    # Cut at the last word boundary when one exists.
    cut = truncated.rfind("-")
    return truncated[:cut] if cut > 0 else truncated


@dataclasses.dataclass
class Job:
    number: int
    title: str
    body: str = ""
    labels: List[str] = dataclasses.field(default_factory=list)
    html_url: str = ""

    def state(self, labels: LabelConfig) -> Optional[State]:
        return labels.state_for_labels(self.labels)

    @classmethod
    def from_issue_payload(cls, payload: dict[str, Any]) -> "Job":
        raw_labels = payload.get("labels") or []
        names: List[str] = []
        for label in raw_labels:
            if isinstance(label, dict):
                name = label.get("name")
            else:
                name = label
            if isinstance(name, str) and name:
                names.append(name)
        return cls(
            number=int(payload["number"]),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            labels=names,
            html_url=str(payload.get("html_url") or ""),
        )


def branch_name_for(job: Job, username: str, suffix: str) -> str:
    """Branch and worktree directory name: ``{number}-{slug}_{user}_{suffix}``."""
    slug = slugify(job.title) or "issue"
    return f"{job.number}-{slug}_{username}_{suffix}"


@dataclasses.dataclass(frozen=True)
class ResourceHandle:
    job_number: int
    worktree_path: Path
    branch: str
    window_name: str
    window_index: int


class SeenSet:
    """Job numbers already reported as "skipping" during this process lifetime.

    Only used to keep logs quiet; dropping it loses nothing but log lines.
    """

    def __init__(self) -> None:
        self._numbers: Set[int] = set()

    def __contains__(self, number: object) -> bool:
        return number in self._numbers

    def __len__(self) -> int:
        return len(self._numbers)

    def mark(self, number: int) -> bool:
        """Record ``number``; returns True only the first time."""
        if number in self._numbers:
            return False
        self._numbers.add(number)
        return True

    def discard(self, number: int) -> None:
        self._numbers.discard(number)

    def retain(self, current: Iterable[int]) -> None:
        self._numbers &= set(current)

    def clear(self) -> None:
        self._numbers.clear()
