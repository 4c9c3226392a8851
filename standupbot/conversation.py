import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from . import messages
from .errors import AlreadyTerminalError, InvalidTransitionError, StaleReferenceError, TransportError
from .event_router import EventRouter
from .events import ACTION_ANSWER, ACTION_NOT_WORKING, ACTION_START, AnswerSubmitted, InteractionEvent
from .gateway.base_gateway import MessageContent, MessagingGateway, RetryPolicy
from .models import (PHASE_ANSWERING, PHASE_INIT, PHASES, REASON_DELIVERY_FAILED, REASON_NOT_WORKING, Answer,
                     MemberOutcome, MemberState, MessageRecord, MessageReference, OutcomeStatus, StandupRun)

logger = logging.getLogger(__name__)

# Opting out (with or without an error reason) is reachable from every non-terminal state,
# so a silent or unreachable member can always be closed.
ALLOWED_TRANSITIONS = {
    MemberState.NOT_STARTED: {MemberState.INITIATING, MemberState.OPTED_OUT},
    MemberState.INITIATING: {MemberState.AWAITING_CHOICE, MemberState.OPTED_OUT},
    MemberState.AWAITING_CHOICE: {MemberState.ANSWERING, MemberState.OPTED_OUT},
    MemberState.ANSWERING: {MemberState.COMPLETED, MemberState.OPTED_OUT},
}


class MemberConversation:
    """
    Progress of one member within a run.

    All methods are synchronous; the message I/O that drives them lives in
    MemberWorkflow. messages_by_phase keeps every message ever posted per
    phase, only the last one of a phase can be live.
    """

    def __init__(self, member_id: str, state: MemberState = MemberState.NOT_STARTED,
                 messages_by_phase: Dict[str, List[MessageRecord]] = None,
                 answers: Optional[List[Answer]] = None, target: str = None,
                 error_reason: str = None, opted_out: bool = False):
        self.member_id = member_id
        self.state = state
        self.messages_by_phase = messages_by_phase or {}
        # None is the opted-out sentinel
        self._answers = None if opted_out else list(answers or [])
        self.target = target
        self.error_reason = error_reason

    def __repr__(self):
        return f"MemberConversation({self.member_id!r}, {self.state.value})"

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def answers(self) -> Optional[List[Answer]]:
        return None if self._answers is None else list(self._answers)

    @property
    def opted_out(self) -> bool:
        return self._answers is None

    def _move(self, new_state: MemberState):
        if self.terminal:
            raise AlreadyTerminalError(f"{self.member_id} is already {self.state.value}")
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.member_id}: {self.state.value} -> {new_state.value} is not allowed")
        logger.debug(f"{self.member_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    # Message slots

    def live_reference(self, phase: str) -> Optional[MessageReference]:
        records = self.messages_by_phase.get(phase)
        if records and not records[-1].superseded:
            return records[-1].reference
        return None

    def live_references(self) -> List[Tuple[str, MessageReference]]:
        live = []
        for phase in self.messages_by_phase:
            ref = self.live_reference(phase)
            if ref is not None:
                live.append((phase, ref))
        return live

    def record_message(self, phase: str, reference: MessageReference):
        if self.live_reference(phase) is not None:
            raise InvalidTransitionError(f"{self.member_id} still has a live '{phase}' message, supersede it first")
        self.messages_by_phase.setdefault(phase, []).append(MessageRecord(reference))

    def supersede(self, phase: str) -> Optional[MessageReference]:
        """Mark the live message of a phase as superseded and return its reference."""
        ref = self.live_reference(phase)
        if ref is not None:
            self.messages_by_phase[phase][-1].superseded = True
        return ref

    def release_live_references(self) -> List[MessageReference]:
        """Supersede every live message, e.g. the ones left behind by an interrupted attempt."""
        return [self.supersede(phase) for phase, _ in self.live_references()]

    # Transitions

    def start_initiating(self):
        self._move(MemberState.INITIATING)

    def prompt_delivered(self, reference: MessageReference):
        if self.state != MemberState.INITIATING:
            raise InvalidTransitionError(f"{self.member_id} is not initiating")
        self.record_message(PHASE_INIT, reference)
        self._move(MemberState.AWAITING_CHOICE)

    def start_answering(self):
        self._move(MemberState.ANSWERING)

    @property
    def next_prompt_index(self) -> int:
        return len(self._answers or [])

    def record_answer(self, prompt: str, response: str):
        if self.state != MemberState.ANSWERING:
            raise InvalidTransitionError(f"{self.member_id} is not answering ({self.state.value})")
        self._answers.append(Answer(prompt=prompt, response=response))

    def complete(self):
        self._move(MemberState.COMPLETED)

    def opt_out(self, reason: str = REASON_NOT_WORKING):
        self._move(MemberState.OPTED_OUT)
        self._answers = None
        if reason != REASON_NOT_WORKING:
            self.error_reason = reason

    def reset_for_recovery(self):
        """Send an unfinished conversation of an interrupted attempt back to the start."""
        if self.terminal:
            raise AlreadyTerminalError(f"{self.member_id} is already {self.state.value}")
        self.state = MemberState.NOT_STARTED
        self._answers = []
        self.error_reason = None

    def outcome(self) -> MemberOutcome:
        if self.state == MemberState.COMPLETED:
            return MemberOutcome(self.member_id, OutcomeStatus.COMPLETED, answers=self.answers)
        if self.error_reason == REASON_DELIVERY_FAILED:
            return MemberOutcome(self.member_id, OutcomeStatus.ERRORED, reason=self.error_reason)
        return MemberOutcome(self.member_id, OutcomeStatus.OPTED_OUT, reason=self.error_reason)

    # Persistence

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "state": self.state.value,
            "messages_by_phase": {phase: [r.to_dict() for r in records]
                                  for phase, records in self.messages_by_phase.items()},
            "answers": None if self._answers is None else [a.to_dict() for a in self._answers],
            "target": self.target,
            "error_reason": self.error_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemberConversation":
        answers = data["answers"]
        return cls(
            member_id=str(data["member_id"]),
            state=MemberState(data["state"]),
            messages_by_phase={str(phase): [MessageRecord.from_dict(r) for r in records]
                               for phase, records in data["messages_by_phase"].items()},
            answers=None if answers is None else [Answer.from_dict(a) for a in answers],
            target=data["target"],
            error_reason=data["error_reason"],
            opted_out=answers is None,
        )


class MemberWorkflow:
    """
    Drives one MemberConversation against the gateway.

    Every public coroutine takes the member lock for the whole transition,
    so transitions of one member never interleave. The router index is only
    touched while that lock is held.
    """

    def __init__(self, run: StandupRun, conversation: MemberConversation, gateway: MessagingGateway,
                 router: EventRouter, retry: RetryPolicy, abort_event: asyncio.Event):
        self.run = run
        self.conversation = conversation
        self.gateway = gateway
        self.router = router
        self.retry = retry
        self.lock = asyncio.Lock()
        self._abort_event = abort_event

    @property
    def member_id(self) -> str:
        return self.conversation.member_id

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    # Gateway helpers

    async def _post(self, phase: str, content: MessageContent) -> MessageReference:
        ref = await self.retry.call(
            f"Posting '{phase}' message to {self.member_id}",
            lambda: self.gateway.post_message(self.conversation.target, content))
        self.conversation.record_message(phase, ref)
        self.router.index(self.member_id, phase, ref)
        return ref

    async def _neutralize(self, ref: MessageReference, content: MessageContent):
        try:
            await self.retry.call(f"Updating message {ref.ts} of {self.member_id}",
                                  lambda: self.gateway.update_message(ref.channel, ref, content))
        except TransportError as e:
            # The reference is dropped from the index either way, clicks on it are stale from now on
            logger.warning(f"Could not neutralize message {ref.ts} of {self.member_id}: {e}")

    async def _supersede(self, phase: str, content: MessageContent = messages.SUPERSEDED):
        ref = self.conversation.supersede(phase)
        if ref is None:
            return
        self.router.unindex(ref)
        await self._neutralize(ref, content)

    async def _notify(self, content: MessageContent):
        try:
            await self.retry.call(f"Notifying {self.member_id}",
                                  lambda: self.gateway.post_message(self.conversation.target, content))
        except TransportError as e:
            logger.warning(f"Could not notify {self.member_id}: {e}")

    def _fail(self, error: Exception):
        logger.warning(f"Giving up on {self.member_id} in run {self.run.run_id}: {error}")
        self.conversation.opt_out(REASON_DELIVERY_FAILED)

    # Transitions

    async def initiate(self, stale_references: Iterable[MessageReference] = ()):
        """NotStarted -> Initiating -> AwaitingChoice, or OptedOut with an error if delivery fails."""
        async with self.lock:
            # Leftover prompts are already marked superseded, edit them first. They only need their own channel.
            for ref in stale_references:
                self.router.unindex(ref)
                await self._neutralize(ref, messages.SUPERSEDED)

            if self.aborted or self.conversation.state != MemberState.NOT_STARTED:
                return
            self.conversation.start_initiating()
            try:
                if self.conversation.target is None:
                    self.conversation.target = await self.retry.call(
                        f"Opening conversation with {self.member_id}",
                        lambda: self.gateway.open_conversation(self.member_id))

                ref = await self.retry.call(
                    f"Posting init prompt to {self.member_id}",
                    lambda: self.gateway.post_message(self.conversation.target, messages.init_prompt(self.run.name)))
            except TransportError as e:
                self._fail(e)
                return

            self.conversation.prompt_delivered(ref)
            self.router.index(self.member_id, PHASE_INIT, ref)
            logger.info(f"Standup prompt delivered to {self.member_id}")

    async def handle(self, event: InteractionEvent):
        """Apply an interaction event.

        :raises AlreadyTerminalError: the conversation is already finished.
        :raises StaleReferenceError: the event's message is not the live one.
        """
        async with self.lock:
            conversation = self.conversation
            if conversation.terminal:
                raise AlreadyTerminalError(f"{self.member_id} is already {conversation.state.value}")
            if self.aborted:
                logger.info(f"Run {self.run.run_id} was aborted, ignoring {event.action_id} from {self.member_id}")
                return

            phase = PHASE_ANSWERING if event.action_id == ACTION_ANSWER else PHASE_INIT
            if conversation.live_reference(phase) != event.message_reference:
                raise StaleReferenceError(f"{event.message_ts} is not the live '{phase}' message of {self.member_id}")

            if event.action_id == ACTION_NOT_WORKING:
                await self._not_working()
            elif event.action_id == ACTION_START:
                await self._start_standup()
            elif isinstance(event, AnswerSubmitted):
                await self._answer(event.text)

    async def _not_working(self):
        await self._supersede(PHASE_INIT, messages.not_working_ack())
        self.conversation.opt_out(REASON_NOT_WORKING)
        logger.info(f"{self.member_id} is not working today")

    async def _start_standup(self):
        await self._supersede(PHASE_INIT, messages.standup_started())
        self.conversation.start_answering()
        logger.info(f"{self.member_id} started the standup")
        await self._ask_next()

    async def _ask_next(self):
        prompts = self.run.prompts
        index = self.conversation.next_prompt_index
        if index >= len(prompts):
            self.conversation.complete()
            logger.info(f"{self.member_id} completed the standup")
            await self._notify(messages.standup_completed())
            return
        try:
            await self._post(PHASE_ANSWERING, messages.question_prompt(prompts[index], index + 1, len(prompts)))
        except TransportError as e:
            self._fail(e)

    async def _answer(self, text: str):
        prompts = self.run.prompts
        index = self.conversation.next_prompt_index
        question = prompts[index]
        self.conversation.record_answer(question, text)
        await self._supersede(PHASE_ANSWERING, messages.answered_question(question, index + 1, len(prompts), text))
        await self._ask_next()

    async def close(self, reason: str):
        """Close a conversation that is still waiting on the member."""
        async with self.lock:
            if self.conversation.terminal:
                return
            for phase in PHASES:
                await self._supersede(phase, messages.standup_closed())
            self.conversation.opt_out(reason)
            logger.info(f"Closed conversation with {self.member_id}: {reason}")
