from __future__ import annotations
"""Simple finite state machine utility for enforcing allowed status transitions.

Used for the flow stage lifecycle (waiting -> in_progress -> completed).
Usage:
    from repairdesk.utils.fsm import TransitionValidator
    STAGE_FSM = TransitionValidator({
        'waiting': {'in_progress'},
        'in_progress': {'completed'},
        'completed': set(),
    }, field_name='stage status')
    STAGE_FSM.assert_can_transition(current_status, target_status)

Raises InvalidTransition (409) if invalid.
"""
from typing import Dict, Set
from repairdesk.errors import InvalidTransition


class TransitionValidator:
    def __init__(self, graph: Dict[str, Set[str]], field_name: str = 'status'):
        self.graph = graph
        self.field_name = field_name

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.graph.get(current, set())

    def assert_can_transition(self, current: str, target: str):
        if not self.can_transition(current, target):
            raise InvalidTransition(f"Invalid {self.field_name} transition {current} -> {target}")
        return True

    def states(self):
        return list(self.graph.keys())

__all__ = ['TransitionValidator']
