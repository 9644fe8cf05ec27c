"""The peer server's model of a room it hosts."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional

from loguru import logger

from fedharness.federation.events import CREATE, Event, StateKeyTuple


class ServerRoom:
    """Append-only event history for one room.

    The timeline is the only stored state. Current state is recomputed from a
    snapshot of it on every read, so it can never drift from the timeline.
    All access goes through one re-entrant lock: appends are mutually
    exclusive, and readers only ever see whole appends.

    ``add_event`` does no authorization or signature checks; callers verify
    requests before they get here.
    """

    def __init__(self, room_id: str, version: str) -> None:
        self.room_id = room_id
        self.version = version
        self._timeline: List[Event] = []
        self._lock = threading.RLock()

    def add_event(self, event: Event) -> None:
        with self._lock:
            if self._timeline:
                tail = self._timeline[-1].event_id
                if tail not in event.prev_events:
                    logger.warning(
                        "Event {} in {} does not follow the timeline tail {} (prev_events={})",
                        event.event_id,
                        self.room_id,
                        tail,
                        event.prev_events,
                    )
            self._timeline.append(event)
            logger.debug("Appended {} ({}) to {}", event.event_id, event.type, self.room_id)

    @property
    def lock(self) -> threading.RLock:
        """Hold this to read the tail and append without interleaving."""
        return self._lock

    @property
    def timeline(self) -> List[Event]:
        with self._lock:
            return list(self._timeline)

    @property
    def latest_event(self) -> Optional[Event]:
        with self._lock:
            return self._timeline[-1] if self._timeline else None

    @property
    def depth(self) -> int:
        """Depth of the newest event, or 0 for an empty room."""
        latest = self.latest_event
        return latest.depth if latest is not None else 0

    def event(self, event_id: str) -> Optional[Event]:
        for event in self.timeline:
            if event.event_id == event_id:
                return event
        return None

    def _current_state_map(self) -> Dict[StateKeyTuple, Event]:
        return self._project(self.timeline)

    def current_state(self, event_type: str, state_key: str) -> Optional[Event]:
        return self._current_state_map().get((event_type, state_key))

    def all_current_state(self) -> List[Event]:
        """Return the latest event per (type, state_key), in timeline order."""
        with self._lock:
            timeline = list(self._timeline)
        winners = {id(event) for event in self._project(timeline).values()}
        return [event for event in timeline if id(event) in winners]

    @staticmethod
    def _project(timeline: Iterable[Event]) -> Dict[StateKeyTuple, Event]:
        state: Dict[StateKeyTuple, Event] = {}
        for event in timeline:
            key = event.state_tuple
            if key is not None:
                state[key] = event
        return state

    def auth_events(self, needed: Iterable[StateKeyTuple]) -> List[str]:
        """Return the IDs of the current-state events matching ``needed``.

        Pairs with no matching state are skipped.
        """
        state = self._current_state_map()
        return [state[key].event_id for key in needed if key in state]

    def auth_chain(self) -> List[Event]:
        """Return the auth chain of the room's current state."""
        return self.auth_chain_for_events(self.all_current_state())

    def auth_chain_for_events(self, events: Iterable[Event]) -> List[Event]:
        """Return every event reachable from ``events`` through auth_events.

        The room's create event roots every chain and is always included when
        it is among ``events``. The result is in timeline order with no
        duplicates.
        """
        timeline = self.timeline
        by_id = {event.event_id: event for event in timeline}
        chain_ids = set()
        queue = list(events)
        for event in queue:
            if event.type == CREATE and event.state_key == "":
                chain_ids.add(event.event_id)

        while queue:
            event = queue.pop()
            for auth_id in event.auth_events:
                if auth_id in chain_ids:
                    continue
                chain_ids.add(auth_id)
                auth_event = by_id.get(auth_id)
                if auth_event is None:
                    logger.warning("Auth event {} is not in room {}", auth_id, self.room_id)
                    continue
                queue.append(auth_event)

        return [event for event in timeline if event.event_id in chain_ids]
