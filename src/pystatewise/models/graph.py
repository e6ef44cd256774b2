"""State graph model: the lifecycle an organization defines for an entity type.

A StateGraph is owned per (organization, module, entity_type). It is flat:
one initial state, any number of intermediate states, one or more final
states, and explicit transitions between them. There is no implicit
any-to-any transition; a final state only has outgoing edges when the
domain models reopening (e.g. cancelled -> pending).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pystatewise.errors import InvalidConfiguration


class StateType(Enum):
    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class State:
    id: str
    name: str
    state_type: StateType = StateType.INTERMEDIATE
    display_name: str | None = None


@dataclass(frozen=True)
class Transition:
    id: str
    from_state_id: str
    to_state_id: str
    name: str = ""


@dataclass
class StateGraph:
    """Per-organization, per-entity-type set of states and transitions.

    Invariants (checked by validate()):
        - exactly one INITIAL state
        - state names are unique within the graph
        - every transition references states of this graph

    Graphs for different entity types are disjoint: states are never shared
    between graphs.
    """

    id: str
    organization_id: str
    module: str
    entity_type: str
    name: str = ""
    states: list[State] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)
    is_active: bool = True

    def validate(self) -> None:
        """Check graph invariants.

        Raises:
            InvalidConfiguration: If any invariant is violated
        """
        initial = [s for s in self.states if s.state_type == StateType.INITIAL]
        if len(initial) != 1:
            raise InvalidConfiguration(
                f"graph {self.id} must have exactly one initial state, found {len(initial)}"
            )

        names = [s.name for s in self.states]
        if len(names) != len(set(names)):
            raise InvalidConfiguration(f"graph {self.id} has duplicate state names")

        ids = {s.id for s in self.states}
        for t in self.transitions:
            if t.from_state_id not in ids or t.to_state_id not in ids:
                raise InvalidConfiguration(
                    f"transition {t.id} references a state outside graph {self.id}"
                )

    def initial_state(self) -> State:
        for s in self.states:
            if s.state_type == StateType.INITIAL:
                return s
        raise InvalidConfiguration(f"graph {self.id} has no initial state")

    def state_by_name(self, name: str) -> State | None:
        for s in self.states:
            if s.name == name:
                return s
        return None

    def state_by_id(self, state_id: str) -> State | None:
        for s in self.states:
            if s.id == state_id:
                return s
        return None

    def find_transition(self, from_state: str, to_state: str) -> Transition | None:
        """Return the explicit edge between two states (by name), if any."""
        source = self.state_by_name(from_state)
        target = self.state_by_name(to_state)
        if source is None or target is None:
            return None

        for t in self.transitions:
            if t.from_state_id == source.id and t.to_state_id == target.id:
                return t
        return None

    def outgoing(self, from_state: str) -> list[State]:
        """States reachable in one transition from ``from_state``."""
        source = self.state_by_name(from_state)
        if source is None:
            return []

        targets = []
        for t in self.transitions:
            if t.from_state_id == source.id:
                target = self.state_by_id(t.to_state_id)
                if target is not None:
                    targets.append(target)
        return targets
