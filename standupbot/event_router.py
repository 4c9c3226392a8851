import logging
from typing import Dict, Optional, Tuple

from .events import ACTION_ANSWER, InteractionEvent
from .models import PHASE_ANSWERING, PHASE_INIT, MessageReference

logger = logging.getLogger(__name__)


class EventRouter:
    """
    Index from live message reference to the (member, phase) owning it.

    Writers must hold the owning member's lock. Lookups are dict reads, so
    routing stays O(1) in the number of members.
    """

    def __init__(self):
        self._owners: Dict[MessageReference, Tuple[str, str]] = {}
        self._live: Dict[Tuple[str, str], MessageReference] = {}

    def __len__(self):
        return len(self._owners)

    def index(self, member_id: str, phase: str, reference: MessageReference):
        previous = self._live.get((member_id, phase))
        if previous is not None and previous != reference:
            # Only one live reference per (member, phase)
            self._owners.pop(previous, None)
        self._owners[reference] = (member_id, phase)
        self._live[(member_id, phase)] = reference

    def unindex(self, reference: MessageReference):
        owner = self._owners.pop(reference, None)
        if owner is not None and self._live.get(owner) == reference:
            del self._live[owner]

    def live_reference(self, member_id: str, phase: str) -> Optional[MessageReference]:
        return self._live.get((member_id, phase))

    def route(self, event: InteractionEvent) -> Optional[str]:
        """Return the member whose live message the event targets, or None for stale/foreign events."""
        owner = self._owners.get(event.message_reference)
        if owner is None:
            logger.debug(f"No live message {event.channel}/{event.message_ts}")
            return None
        member_id, phase = owner
        if member_id != event.acting_member:
            logger.warning(f"{event.acting_member} acted on a message owned by {member_id}")
            return None
        expected_phase = PHASE_ANSWERING if event.action_id == ACTION_ANSWER else PHASE_INIT
        if phase != expected_phase:
            return None
        return member_id
