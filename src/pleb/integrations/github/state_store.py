import logging
from typing import List, Optional, Protocol

from ...core.jobs import Job
from ...core.state import LabelConfig, State, validate_transition
from .client import GitHubClient

logger = logging.getLogger("pleb.state_store")


class StateStore(Protocol):
    async def verify_connection(self) -> None: ...

    async def get_authenticated_user(self) -> str: ...

    async def get_job(self, number: int) -> Job: ...

    async def get_state(self, number: int) -> Optional[State]: ...

    async def list_jobs_with(self, state: State) -> List[Job]: ...

    async def replace_label(
        self, number: int, from_state: State, to_state: State
    ) -> None: ...


class LabelStateStore:
    """Job state kept as exactly one label per issue.

    Nothing is cached: every read goes to GitHub so the poll loop and the hook
    path always see the same, current state.
    """

    def __init__(self, client: GitHubClient, labels: LabelConfig) -> None:
        self.client = client
        self.labels = labels

    async def verify_connection(self) -> None:
        await self.client.verify_connection()

    async def get_authenticated_user(self) -> str:
        return await self.client.get_authenticated_user()

    async def get_job(self, number: int) -> Job:
        return await self.client.get_issue(number)

    async def get_state(self, number: int) -> Optional[State]:
        job = await self.client.get_issue(number)
        return job.state(self.labels)

    async def list_jobs_with(self, state: State) -> List[Job]:
        return await self.client.list_issues_with_label(self.labels.label_for(state))

    async def replace_label(
        self, number: int, from_state: State, to_state: State
    ) -> None:
        """Remove-then-add; not atomic on the remote side."""
        validate_transition(from_state, to_state)
        await self.client.remove_label(number, self.labels.label_for(from_state))
        await self.client.add_label(number, self.labels.label_for(to_state))
        logger.info(
            "Transitioned job #%s: %s -> %s", number, from_state.value, to_state.value
        )

    async def force_state(self, number: int, target: State) -> Optional[State]:
        """Manual transition; returns the state the job was in."""
        current = await self.get_state(number)
        if current is None:
            await self.client.add_label(number, self.labels.label_for(target))
        elif current != target:
            await self.replace_label(number, current, target)
        return current

    async def clear(self, number: int) -> None:
        for label in self.labels.all_labels():
            await self.client.remove_label(number, label)
