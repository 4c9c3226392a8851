import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from . import messages
from .conversation import MemberConversation, MemberWorkflow
from .errors import AlreadyTerminalError, InvalidTransitionError, StaleReferenceError, StateStoreError, TransportError
from .event_router import EventRouter
from .events import InteractionEvent
from .gateway.base_gateway import MessagingGateway, RetryPolicy
from .models import (REASON_ABORTED, REASON_DELIVERY_FAILED, REASON_NO_RESPONSE, MessageReference, RunResult,
                     RunState, RunStatus, StandupRun)
from .run_state import RunStateMachine
from .state_store import ConversationStateStore, JsonFileCheckpoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ack:
    """Answer to every inbound interaction. handled is False for events that changed nothing."""
    handled: bool
    reason: Optional[str] = None


class StandupOrchestrator:
    """
    Drives one standup run: one MemberWorkflow per member, a RunStateMachine
    for the whole round and an EventRouter for inbound interactions.

    An orchestrator instance handles a single run. begin() seeds the state
    store (optionally from a recovered snapshot), posts the initial prompts
    concurrently and then waits for interactions. Once every member is
    terminal the aggregated RunResult goes to the summarizer.
    """

    def __init__(self, gateway: MessagingGateway, summarizer=None, retry: RetryPolicy = None,
                 checkpoint: JsonFileCheckpoint = None):
        self.gateway = gateway
        self.summarizer = summarizer
        self.retry = retry or RetryPolicy()
        self.checkpoint = checkpoint

        self.run: Optional[StandupRun] = None
        self.run_state = RunStateMachine()
        self.store = ConversationStateStore()
        self.router = EventRouter()
        self._workflows: Dict[str, MemberWorkflow] = {}
        self._abort_event = asyncio.Event()
        self._result: Optional[RunResult] = None

    # Run lifecycle

    async def begin(self, run: StandupRun, snapshot: dict = None) -> RunStatus:
        """Start a run, recovering from `snapshot` or, if none is given, from the checkpoint.

        :raises InvalidTransitionError: if this orchestrator already started a run.
        :raises StateStoreError: if the snapshot is corrupt; the run is Failed.
        """
        if self.run_state.state != RunState.IDLE:
            raise InvalidTransitionError(f"Orchestrator already drives run {self.run_state.run_id}")
        self.run = run
        self.run_state.run_id = run.run_id
        self.run_state.advance(RunState.IDLE)

        try:
            if snapshot is None and self.checkpoint is not None:
                snapshot = self.checkpoint.load(run.name)
            stale, orphans = self._seed_store(run, snapshot)
        except StateStoreError as e:
            self.run_state.fail(str(e))
            raise

        self._workflows = {
            member_id: MemberWorkflow(run, self.store.get(member_id), self.gateway, self.router, self.retry,
                                      self._abort_event)
            for member_id in run.members
        }
        logger.info(f"Starting run {run.run_id} for {len(run.members)} members")

        await self._neutralize(orphans)
        results = await asyncio.gather(
            *(wf.initiate(stale.get(member_id, [])) for member_id, wf in self._workflows.items()),
            return_exceptions=True)
        for member_id, result in zip(self._workflows, results):
            if isinstance(result, Exception):
                logger.error(f"Initiating {member_id} failed unexpectedly: {result!r}", exc_info=result)
                conversation = self.store.get(member_id)
                if not conversation.terminal:
                    conversation.opt_out(REASON_DELIVERY_FAILED)

        if self._abort_event.is_set():
            # prompts that were in flight went out, keep them in the checkpoint
            self._save_checkpoint()
            return self.status()

        self.run_state.advance(RunState.INITIALIZING)
        self._save_checkpoint()
        await self._summarize_if_done()
        return self.status()

    def _seed_store(self, run: StandupRun, snapshot: Optional[dict]):
        """Fill the store for `run` and collect the live references a previous attempt left behind."""
        self.store = ConversationStateStore(run.run_id)
        stale: Dict[str, List[MessageReference]] = {}
        orphans: List[MessageReference] = []

        if snapshot is not None:
            recovered = ConversationStateStore()
            recovered.restore(snapshot)
            same_run = recovered.run_id == run.run_id
            leftovers = len(recovered.live_references())
            for conversation in recovered.conversations():
                member_id = conversation.member_id
                if member_id not in run.members:
                    orphans.extend(conversation.release_live_references())
                elif same_run and conversation.terminal:
                    self.store.put(member_id, conversation)
                elif same_run:
                    stale[member_id] = conversation.release_live_references()
                    conversation.reset_for_recovery()
                    self.store.put(member_id, conversation)
                else:
                    stale[member_id] = conversation.release_live_references()
            logger.info(f"Recovered snapshot of run {recovered.run_id} "
                        f"({'same run' if same_run else 'previous run'}), {leftovers} live prompts to supersede")

        for member_id in run.members:
            if member_id not in self.store:
                self.store.put(member_id, MemberConversation(member_id))
        return stale, orphans

    async def _neutralize(self, references: Iterable[MessageReference]):
        for ref in references:
            try:
                await self.retry.call(f"Updating orphaned message {ref.ts}",
                                      lambda: self.gateway.update_message(ref.channel, ref, messages.SUPERSEDED))
            except TransportError as e:
                logger.warning(f"Could not neutralize orphaned message {ref.ts}: {e}")

    async def expire(self) -> RunStatus:
        """Close every conversation still waiting on its member, then summarize."""
        if self.run is None or self.run_state.terminal:
            return self.status()
        logger.info(f"Expiring run {self.run.run_id}, pending: {self.status().pending}")
        await asyncio.gather(*(wf.close(REASON_NO_RESPONSE) for wf in self._workflows.values()))
        self._save_checkpoint()
        await self._summarize_if_done()
        return self.status()

    def abort(self):
        """Stop initiating transitions. Posts already in flight are allowed to finish.

        A run that is already summarizing is left to finish its summary.
        """
        self._abort_event.set()
        if self.run_state.state == RunState.SUMMARIZING:
            logger.info(f"Run {self.run_state.run_id} is summarizing, letting it finish")
            return
        if not self.run_state.terminal:
            self.run_state.fail(REASON_ABORTED)
        self._save_checkpoint()

    async def _summarize_if_done(self):
        # No await between the check and the transition, so only one caller gets past it
        if self.run_state.state != RunState.AWAITING_RESPONSES:
            return
        if not all(c.terminal for c in self.store.conversations()):
            return
        self.run_state.advance(RunState.AWAITING_RESPONSES)

        self._result = RunResult(run_id=self.run.run_id, channel=self.run.channel,
                                 per_member=[self.store.get(m).outcome() for m in self.run.members],
                                 local_date=self.run.local_date)
        logger.debug(f"Result of run {self.run.run_id}: {self._result.to_dict()}")
        self._save_checkpoint()
        error = None
        if self.summarizer is not None:
            try:
                await self.summarizer.summarize(self._result)
            except Exception as e:
                logger.exception(f"Summarizer failed for run {self.run.run_id}")
                error = e

        if self.run_state.state != RunState.SUMMARIZING:
            return
        if error is not None:
            self.run_state.fail(f"summarizer failed: {error!r}")
        else:
            self.run_state.advance(RunState.SUMMARIZING)
        self._save_checkpoint()

    # Interactions

    def owns(self, event: InteractionEvent) -> bool:
        return self.router.route(event) is not None

    async def handle_interaction(self, event: InteractionEvent) -> Ack:
        if self.run is None or self.run_state.terminal:
            return Ack(False, "inactive")

        member_id = self.router.route(event)
        if member_id is None:
            reason = "stale" if event.acting_member in self.store else "unknown_member"
            logger.info(f"Ignoring {event.action_id} from {event.acting_member}: {reason}")
            return Ack(False, reason)

        try:
            await self._workflows[member_id].handle(event)
        except (StaleReferenceError, AlreadyTerminalError) as e:
            logger.info(f"Ignoring {event.action_id} from {member_id}: {e}")
            return Ack(False, "stale" if isinstance(e, StaleReferenceError) else "terminal")

        self._save_checkpoint()
        await self._summarize_if_done()
        return Ack(True)

    # Introspection

    def status(self) -> RunStatus:
        return RunStatus(
            run_id=self.run.run_id if self.run else None,
            state=self.run_state.state,
            members={c.member_id: c.state for c in self.store.conversations()},
            failure_reason=self.run_state.failure_reason,
        )

    def result(self) -> Optional[RunResult]:
        return self._result

    def _save_checkpoint(self):
        if self.checkpoint is None or self.run is None:
            return
        try:
            self.checkpoint.save(self.run.name, self.store.snapshot())
        except OSError as e:
            logger.error(f"Could not checkpoint run {self.run.run_id}: {e}")
