import dataclasses
import enum
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .errors import InvalidTransitionError


class State(str, enum.Enum):
    READY = "ready"
    PROVISIONING = "provisioning"
    WAITING = "waiting"
    WORKING = "working"
    DONE = "done"
    FINISHED = "finished"


TRANSITIONS: Dict[State, FrozenSet[State]] = {
    State.READY: frozenset({State.PROVISIONING}),
    State.PROVISIONING: frozenset({State.WAITING, State.WORKING}),
    State.WAITING: frozenset({State.WORKING, State.FINISHED}),
    State.WORKING: frozenset({State.WAITING, State.DONE, State.FINISHED}),
    State.DONE: frozenset({State.FINISHED}),
    State.FINISHED: frozenset(),
}


def valid_transitions(state: State) -> List[State]:
    # Declaration order keeps error messages stable.
    return [s for s in State if s in TRANSITIONS[state]]


def is_terminal(state: State) -> bool:
    return not TRANSITIONS[state]


def can_transition(from_state: State, to_state: State) -> bool:
    return to_state in TRANSITIONS[from_state]


def validate_transition(from_state: State, to_state: State) -> None:
    if can_transition(from_state, to_state):
        return
    allowed = ", ".join(s.value for s in valid_transitions(from_state)) or "none"
    raise InvalidTransitionError(
        f"Cannot transition from {from_state.value} to {to_state.value} "
        f"(valid: {allowed})"
    )


def parse_state(raw: str) -> State:
    value = (raw or "").strip().lower()
    try:
        return State(value)
    except ValueError:
        valid = ", ".join(s.value for s in State)
        raise InvalidTransitionError(
            f"Invalid state '{raw}'. Valid states: {valid}"
        ) from None


@dataclasses.dataclass(frozen=True)
class LabelConfig:
    """Label string used on the issue tracker for each state."""

    ready: str = "pleb:ready"
    provisioning: str = "pleb:provisioning"
    waiting: str = "pleb:waiting"
    working: str = "pleb:working"
    done: str = "pleb:done"
    finished: str = "pleb:finished"

    def label_for(self, state: State) -> str:
        return str(getattr(self, state.value))

    def items(self) -> Iterator[Tuple[State, str]]:
        for state in State:
            yield state, self.label_for(state)

    def all_labels(self) -> List[str]:
        return [label for _, label in self.items()]

    def duplicates(self) -> List[str]:
        seen: set[str] = set()
        dupes: List[str] = []
        for label in self.all_labels():
            if label in seen and label not in dupes:
                dupes.append(label)
            seen.add(label)
        return dupes

    def state_for_labels(self, labels: Iterable[str]) -> Optional[State]:
        present = set(labels)
        for state, label in self.items():
            if label in present:
                return state
        return None
