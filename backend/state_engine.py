"""
Chair occupancy state machine
"""

import logging
from typing import List, Optional

from database import ChairStore
from errors import ConcurrencyViolation, PersistenceError
from event_log import EventLog
from models import ChairState, Classification, EventType, Position
from utils import best_effort

logger = logging.getLogger(__name__)


# Typed events for leaving / entering a state. Unknown has none.
EXIT_EVENTS = {
    ChairState.SITTING: EventType.PERSON_LEFT,
    ChairState.OBJECT_PLACED: EventType.OBJECT_REMOVED,
    ChairState.ABSENT: EventType.EMPTY_REMOVED,
}

ENTRY_EVENTS = {
    ChairState.SITTING: EventType.PERSON_SITTING,
    ChairState.OBJECT_PLACED: EventType.OBJECT_PLACED,
    ChairState.ABSENT: EventType.EMPTY,
}

# process() outcomes
DROPPED = "dropped"
POSITION_CHANGE = "positionChange"
DUPLICATE = "duplicate"
PERSIST_RETRY = "persistRetry"
TRANSITION = "transition"


class TransitionListener:
    """Hooks run by the engine; override what you need"""

    def on_exit(self, state: ChairState, position: Position):
        pass

    def on_enter(self, state: ChairState, position: Position):
        pass

    def on_position_change(self, old: Position, new: Position):
        pass


class StateTransitionEngine:
    """
    Turns classifier output into state transitions for one chair.

    At most one transition is in flight: a call made while another is
    running (e.g. from inside a listener) is dropped, not queued, and the
    next sensor update re-evaluates. Persistence is best effort and never
    blocks the local state from moving on.
    """

    def __init__(self, chair_id: str, store: ChairStore, event_log: EventLog):
        self.chair_id = chair_id
        self.store = store
        self.event_log = event_log
        self.listeners: List[TransitionListener] = []

        self.last_observed_state: Optional[ChairState] = None
        self.last_observed_position: Optional[Position] = None
        self.last_persisted_state: Optional[ChairState] = None
        self.position_changes: int = 0
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def state(self) -> ChairState:
        return self.last_observed_state or ChairState.UNKNOWN

    @property
    def position(self) -> Position:
        return self.last_observed_position or Position.UNKNOWN

    def add_listener(self, listener: TransitionListener):
        self.listeners.append(listener)

    def restore(self, position_changes: int = 0, persisted_state: Optional[ChairState] = None):
        self.position_changes = position_changes
        self.last_persisted_state = persisted_state

    def reset_position_changes(self):
        self.position_changes = 0
        best_effort(
            "Position change counter reset",
            self.store.update_chair, self.chair_id, {"position_changes": 0},
        )

    def process(self, result: Classification) -> str:
        if self._in_flight:
            violation = ConcurrencyViolation(
                f"chair {self.chair_id}: {result.state.value} dropped while a transition is in flight"
            )
            logger.debug("%s", violation)
            return DROPPED

        self._in_flight = True
        try:
            return self._process(result)
        finally:
            self._in_flight = False

    def _process(self, result: Classification) -> str:
        state, position = result.state, result.position

        if (
            state == self.last_observed_state
            and state == ChairState.SITTING
            and position != self.last_observed_position
        ):
            self._position_changed(position)
            return POSITION_CHANGE

        if state == self.last_observed_state:
            if state == self.last_persisted_state:
                return DUPLICATE
            # Local state already moved on; only the write is outstanding
            self._persist(state, self.last_observed_position or position)
            return PERSIST_RETRY

        previous_state = self.last_observed_state
        previous_position = self.last_observed_position

        if previous_state is not None:
            self._exit(previous_state, previous_position or Position.UNKNOWN)

        self.last_observed_state = state
        self.last_observed_position = position
        self._enter(state, position)
        self._persist(state, position)

        logger.info(
            "Chair %s: %s -> %s (%s)",
            self.chair_id,
            previous_state.value if previous_state else "none",
            state.value,
            position.value,
        )
        return TRANSITION

    def _position_changed(self, position: Position):
        old = self.last_observed_position or Position.UNKNOWN
        self.position_changes += 1
        self.last_observed_position = position

        self.event_log.append(EventType.POSITION_CHANGE, {
            "from": old.value,
            "to": position.value,
            "count": self.position_changes,
        })
        best_effort(
            "Position change persist",
            self._write_position, position,
        )
        for listener in self.listeners:
            self._notify(listener.on_position_change, old, position)

    def _write_position(self, position: Position):
        self.store.update_chair(self.chair_id, {"position_changes": self.position_changes})
        self.store.set_state(self.chair_id, ChairState.SITTING, position)

    def _exit(self, state: ChairState, position: Position):
        event_type = EXIT_EVENTS.get(state)
        if event_type is not None:
            self.event_log.append(event_type, {"position": position.value})
        for listener in self.listeners:
            self._notify(listener.on_exit, state, position)

    def _enter(self, state: ChairState, position: Position):
        event_type = ENTRY_EVENTS.get(state)
        if event_type is not None:
            self.event_log.append(event_type, {"position": position.value})
        for listener in self.listeners:
            self._notify(listener.on_enter, state, position)

    def _persist(self, state: ChairState, position: Position):
        try:
            self.store.set_state(self.chair_id, state, position)
        except PersistenceError as e:
            logger.warning("State %s for chair %s not persisted: %s", state.value, self.chair_id, e)
            return
        self.last_persisted_state = state

    @staticmethod
    def _notify(hook, *args):
        try:
            hook(*args)
        except Exception:
            logger.exception("Transition listener %s failed", getattr(hook, "__qualname__", hook))
