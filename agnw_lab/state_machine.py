"""
Experiment lifecycle state machine.

All lifecycle changes go through ``ExperimentStateMachine.fire``; the transition
table below is the single place that decides what is legal.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, FrozenSet, List, Tuple

from .data_types import Status
from .errors import InvalidTransition

logger = logging.getLogger(__name__)

ALL_STATES: FrozenSet[Status] = frozenset(Status)

# event -> (allowed source states, target state)
TRANSITIONS: Dict[str, Tuple[FrozenSet[Status], Status]] = {
    "start": (frozenset({Status.IDLE}), Status.RUNNING),
    "pause": (frozenset({Status.RUNNING}), Status.PAUSED),
    "resume": (frozenset({Status.PAUSED}), Status.RUNNING),
    "complete": (frozenset({Status.RUNNING}), Status.COMPLETED),
    "stop": (
        frozenset({Status.IDLE, Status.RUNNING, Status.PAUSED, Status.COMPLETED}),
        Status.IDLE,
    ),
    "finish": (frozenset({Status.COMPLETED}), Status.IDLE),
    "fault": (ALL_STATES, Status.ERROR),
    "acknowledge": (frozenset({Status.ERROR}), Status.IDLE),
}


class ExperimentStateMachine:
    def __init__(self, initial: Status = Status.IDLE, history_size: int = 100):
        self._state = Status(initial)
        self._lock = threading.Lock()
        self._transitions: Deque[Tuple[datetime, str, Status, Status]] = deque(
            maxlen=history_size
        )

    @property
    def state(self) -> Status:
        return self._state

    @property
    def transitions(self) -> List[Tuple[datetime, str, Status, Status]]:
        with self._lock:
            return list(self._transitions)

    def can_fire(self, event: str) -> bool:
        rule = TRANSITIONS.get(event)
        return rule is not None and self._state in rule[0]

    def fire(self, event: str) -> Status:
        """
        Apply a lifecycle event.

        Args:
            event: One of the keys of ``TRANSITIONS``

        Returns:
            The new state

        Raises:
            InvalidTransition: If the event is unknown or not allowed from the
                current state. The state is left unchanged.
        """
        with self._lock:
            rule = TRANSITIONS.get(event)
            if rule is None:
                raise InvalidTransition(f"Unknown lifecycle event '{event}'")
            sources, target = rule
            previous = self._state
            if previous not in sources:
                raise InvalidTransition(
                    f"Cannot {event} while {previous.value} "
                    f"(allowed from: {', '.join(sorted(s.value for s in sources))})"
                )
            self._state = target
            self._transitions.append((datetime.now(timezone.utc), event, previous, target))

        if previous != target:
            logger.info(f"[STATE] {previous.value} → {target.value} ({event})")
        return target
