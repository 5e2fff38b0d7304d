"""
Transition tables for workflow state machines.

WHAT: Explicit (state, guard, next state) tables
WHY: Edges are data that tests can check without running a whole workflow
HOW: Ordered transitions per source state; first passing guard wins
"""

from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Iterable, TypeVar

S = TypeVar("S", bound=Hashable)
C = TypeVar("C")


def always(_context) -> bool:
    return True


@dataclass(frozen=True)
class Transition(Generic[S, C]):
    source: S
    guard: Callable[[C], bool]
    target: S


class NoTransitionError(RuntimeError):
    """No guard matched from a non-terminal state."""


class TransitionTable(Generic[S, C]):
    """Ordered transition table with terminal states."""

    def __init__(self, transitions: Iterable[Transition[S, C]], terminal: Iterable[S]):
        self.terminal = frozenset(terminal)
        self._by_source: dict[S, list[Transition[S, C]]] = {}
        for transition in transitions:
            if transition.source in self.terminal:
                raise ValueError(f"Terminal state {transition.source} cannot have outgoing transitions")
            self._by_source.setdefault(transition.source, []).append(transition)

    def is_terminal(self, state: S) -> bool:
        return state in self.terminal

    def targets(self, source: S) -> set[S]:
        return {t.target for t in self._by_source.get(source, [])}

    def next_step(self, current: S, context: C) -> S:
        """
        Resolve the next state.

        Raises:
            NoTransitionError: current is not terminal and no guard passes
        """
        if current in self.terminal:
            return current
        for transition in self._by_source.get(current, []):
            if transition.guard(context):
                return transition.target
        raise NoTransitionError(f"No transition from {current}")
