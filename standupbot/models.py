import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

# Phase names, each with its own message-reference slot per member
PHASE_INIT = "init"
PHASE_ANSWERING = "answering"
PHASES = (PHASE_INIT, PHASE_ANSWERING)

# Reasons attached to a conversation that ended without answers
REASON_NOT_WORKING = "not_working"
REASON_DELIVERY_FAILED = "delivery_failed"
REASON_NO_RESPONSE = "no_response"
REASON_ABORTED = "aborted"


class MemberState(str, Enum):
    NOT_STARTED = "not_started"
    INITIATING = "initiating"
    AWAITING_CHOICE = "awaiting_choice"
    ANSWERING = "answering"
    OPTED_OUT = "opted_out"
    COMPLETED = "completed"

    @property
    def terminal(self) -> bool:
        return self in (MemberState.OPTED_OUT, MemberState.COMPLETED)


class RunState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_RESPONSES = "awaiting_responses"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunState.DONE, RunState.FAILED)


class OutcomeStatus(str, Enum):
    OPTED_OUT = "OptedOut"
    COMPLETED = "Completed"
    ERRORED = "Errored"


@dataclass(frozen=True)
class MessageReference:
    """Handle of a posted message: the channel it lives in and its id."""
    channel: str
    ts: str

    def to_dict(self) -> dict:
        return {"channel": self.channel, "ts": self.ts}

    @classmethod
    def from_dict(cls, data: dict) -> "MessageReference":
        return cls(channel=str(data["channel"]), ts=str(data["ts"]))


@dataclass
class MessageRecord:
    reference: MessageReference
    superseded: bool = False

    def to_dict(self) -> dict:
        return {"reference": self.reference.to_dict(), "superseded": self.superseded}

    @classmethod
    def from_dict(cls, data: dict) -> "MessageRecord":
        superseded = data["superseded"]
        if not isinstance(superseded, bool):
            raise TypeError(f"superseded must be a bool, got {superseded!r}")
        return cls(reference=MessageReference.from_dict(data["reference"]), superseded=superseded)


@dataclass(frozen=True)
class Answer:
    prompt: str
    response: str

    def to_dict(self) -> dict:
        return {"prompt": self.prompt, "response": self.response}

    @classmethod
    def from_dict(cls, data: dict) -> "Answer":
        return cls(prompt=str(data["prompt"]), response=str(data["response"]))


@dataclass(frozen=True)
class StandupRun:
    """One invocation of a standup cycle across all of its members."""
    run_id: str
    channel: str
    members: Tuple[str, ...]
    prompts: Tuple[str, ...] = ()
    name: str = "Standup"
    created_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))
    # calendar date of the cycle in the standup's timezone
    local_date: Optional[datetime.date] = None

    def __post_init__(self):
        if not self.run_id:
            raise ValueError("run_id must not be empty")
        members = tuple(str(m) for m in self.members)
        if len(set(members)) != len(members):
            raise ValueError(f"Run {self.run_id} has duplicate members: {list(members)}")
        object.__setattr__(self, "members", members)
        object.__setattr__(self, "prompts", tuple(self.prompts))


@dataclass
class MemberOutcome:
    member_id: str
    status: OutcomeStatus
    answers: Optional[List[Answer]] = None
    reason: Optional[str] = None


@dataclass
class RunResult:
    """Aggregated answers handed to the summarizer once every member is done."""
    run_id: str
    channel: str
    per_member: List[MemberOutcome]
    local_date: Optional[datetime.date] = None

    def completed(self) -> List[MemberOutcome]:
        return [o for o in self.per_member if o.status == OutcomeStatus.COMPLETED]

    def without_answer(self) -> List[MemberOutcome]:
        # Opted-out and errored members look the same to readers of the summary
        return [o for o in self.per_member if o.status != OutcomeStatus.COMPLETED]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "per_member": [
                {
                    "member_id": o.member_id,
                    "status": o.status.value,
                    "answers": [a.to_dict() for a in o.answers] if o.answers is not None else None,
                }
                for o in self.per_member
            ],
        }


@dataclass
class RunStatus:
    run_id: Optional[str]
    state: RunState
    members: Dict[str, MemberState]
    failure_reason: Optional[str] = None

    @property
    def pending(self) -> List[str]:
        return [m for m, s in self.members.items() if not s.terminal]
