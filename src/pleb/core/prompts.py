import dataclasses
import logging
import re
from pathlib import Path
from typing import Dict, Mapping

from .errors import PromptError
from .jobs import Job

logger = logging.getLogger("pleb.prompts")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

DEFAULT_NEW_ISSUE_PROMPT = """\
You are working on GitHub issue #{{issue_number}}: {{title}}

{{body}}

Issue: {{html_url}}
Branch: {{branch_name}}
Worktree: {{worktree_path}}

When the work is ready, run /pleb-shipit.
"""


@dataclasses.dataclass(frozen=True)
class IssueContext:
    issue_number: int
    title: str
    body: str
    branch_name: str
    worktree_path: str
    html_url: str
    repo_path: str

    @classmethod
    def from_job(
        cls, job: Job, branch_name: str, worktree_path: Path, repo_path: Path
    ) -> "IssueContext":
        return cls(
            issue_number=job.number,
            title=job.title,
            body=job.body,
            branch_name=branch_name,
            worktree_path=str(worktree_path),
            html_url=job.html_url,
            repo_path=str(repo_path),
        )

    def as_dict(self) -> Dict[str, str]:
        return {k: str(v) for k, v in dataclasses.asdict(self).items()}


def render_template(template: str, context: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` markers; an unknown key is an error, not an empty string."""
    missing = sorted(
        {m.group(1) for m in _PLACEHOLDER_RE.finditer(template)} - set(context)
    )
    if missing:
        raise PromptError(f"Unknown template variables: {', '.join(missing)}")
    return _PLACEHOLDER_RE.sub(lambda m: str(context[m.group(1)]), template)


class PromptRenderer:
    def __init__(self, prompts_dir: Path) -> None:
        self.prompts_dir = Path(prompts_dir)
        self._templates: Dict[str, str] = {}

    def load(self, name: str) -> str:
        path = self.prompts_dir / name
        try:
            template = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PromptError(f"Failed to load template '{name}' from {path}: {exc}") from exc
        self._templates[name] = template
        logger.debug("Loaded template '%s' from %s", name, path)
        return template

    def render(self, name: str, context: IssueContext) -> str:
        template = self._templates.get(name)
        if template is None:
            template = self.load(name)
        try:
            return render_template(template, context.as_dict())
        except PromptError as exc:
            raise PromptError(
                f"Failed to render template '{name}' for job #{context.issue_number}: {exc}"
            ) from exc
