"""
Typed inbound interaction events.

Chat adapters turn platform interactions into a plain payload dict, and
parse_event validates it at the boundary. Everything past this module only
ever sees ButtonClicked or AnswerSubmitted.

Payload format:
    {"type": "button" | "answer", "acting_member": str, "channel": str,
     "message_ts": str, "action_id": str, "text": str (answers only)}
"""
from dataclasses import dataclass
from typing import Union

from .errors import MalformedEventError
from .models import MessageReference

ACTION_NOT_WORKING = "standup:not_working"
ACTION_START = "standup:start"
ACTION_ANSWER = "standup:answer"

CHOICE_ACTIONS = (ACTION_NOT_WORKING, ACTION_START)
KNOWN_ACTIONS = CHOICE_ACTIONS + (ACTION_ANSWER,)

# Discord caps modal text inputs at 4000 chars, keep answers below that
MAX_ANSWER_LENGTH = 4000


@dataclass(frozen=True)
class ButtonClicked:
    acting_member: str
    channel: str
    message_ts: str
    action_id: str

    @property
    def message_reference(self) -> MessageReference:
        return MessageReference(channel=self.channel, ts=self.message_ts)


@dataclass(frozen=True)
class AnswerSubmitted:
    acting_member: str
    channel: str
    message_ts: str
    text: str
    action_id: str = ACTION_ANSWER

    @property
    def message_reference(self) -> MessageReference:
        return MessageReference(channel=self.channel, ts=self.message_ts)


InteractionEvent = Union[ButtonClicked, AnswerSubmitted]


def _required(payload: dict, key: str) -> str:
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MalformedEventError(f"Interaction payload is missing '{key}'")
    return str(value)


def parse_event(payload: dict) -> InteractionEvent:
    """Validate a raw interaction payload and build the matching event.

    :raises MalformedEventError: if the payload is not a dict, has an unknown
        type or action, or lacks a required field.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Interaction payload must be a dict, got {type(payload).__name__}")

    kind = payload.get("type")
    acting_member = _required(payload, "acting_member")
    channel = _required(payload, "channel")
    message_ts = _required(payload, "message_ts")
    action_id = _required(payload, "action_id")

    if kind == "button":
        if action_id not in CHOICE_ACTIONS:
            raise MalformedEventError(f"Unknown button action '{action_id}'")
        return ButtonClicked(acting_member=acting_member, channel=channel,
                             message_ts=message_ts, action_id=action_id)

    if kind == "answer":
        if action_id != ACTION_ANSWER:
            raise MalformedEventError(f"Unexpected answer action '{action_id}'")
        text = payload.get("text")
        if not isinstance(text, str) or not text.strip():
            raise MalformedEventError("Answer payload has no text")
        return AnswerSubmitted(acting_member=acting_member, channel=channel, message_ts=message_ts,
                               text=text.strip()[:MAX_ANSWER_LENGTH])

    raise MalformedEventError(f"Unknown interaction type '{kind}'")
