import asyncio
import datetime
import os
import sys
import tempfile
import unittest
from unittest.mock import AsyncMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../")))
sys.path.append(os.path.dirname(__file__))

from fake_gateway import FakeGateway, gate

from standupbot import messages
from standupbot.errors import CorruptSnapshotError, InvalidTransitionError, StaleReferenceError, TransportError
from standupbot.events import ACTION_NOT_WORKING, ACTION_START, AnswerSubmitted, ButtonClicked
from standupbot.gateway.base_gateway import RetryPolicy
from standupbot.models import (PHASE_ANSWERING, PHASE_INIT, REASON_DELIVERY_FAILED, REASON_NO_RESPONSE,
                               MemberState, OutcomeStatus, RunState, StandupRun)
from standupbot.orchestrator import StandupOrchestrator
from standupbot.state_store import JsonFileCheckpoint

PROMPTS = ("Yesterday?", "Today?", "Blockers?")
NO_WAIT = RetryPolicy(attempts=3, base_delay=0, max_delay=0)


def make_run(members=("A", "B"), run_id="daily-2024-05-06", prompts=PROMPTS):
    return StandupRun(run_id=run_id, channel="standup-channel", members=members, prompts=prompts, name="daily",
                      local_date=datetime.date(2024, 5, 6))


class ClosedDMGateway(FakeGateway):
    """Members who do not accept direct messages."""

    async def open_conversation(self, member_id: str) -> str:
        self.calls.append(("open", member_id))
        raise TransportError(f"{member_id} does not accept direct messages", retryable=False)


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.summarizer = AsyncMock()
        self.orchestrator = StandupOrchestrator(self.gateway, summarizer=self.summarizer, retry=NO_WAIT)

    async def click(self, member, action_id, orchestrator=None):
        orchestrator = orchestrator or self.orchestrator
        ref = orchestrator.router.live_reference(member, PHASE_INIT)
        event = ButtonClicked(acting_member=member, channel=ref.channel, message_ts=ref.ts, action_id=action_id)
        return await orchestrator.handle_interaction(event)

    async def answer(self, member, text):
        ref = self.orchestrator.router.live_reference(member, PHASE_ANSWERING)
        event = AnswerSubmitted(acting_member=member, channel=ref.channel, message_ts=ref.ts, text=text)
        return await self.orchestrator.handle_interaction(event)

    async def complete_standup(self, member):
        await self.click(member, ACTION_START)
        for i in range(len(PROMPTS)):
            await self.answer(member, f"answer {i}")

    def member_state(self, member):
        return self.orchestrator.status().members[member]

    def assert_single_live_reference(self, orchestrator=None):
        orchestrator = orchestrator or self.orchestrator
        for conversation in orchestrator.store.conversations():
            for phase, records in conversation.messages_by_phase.items():
                self.assertLessEqual(len([r for r in records if not r.superseded]), 1)
                self.assertEqual(orchestrator.router.live_reference(conversation.member_id, phase),
                                 conversation.live_reference(phase))


class TestBegin(OrchestratorTestCase):
    async def test_begin_posts_one_init_prompt_per_member(self):
        status = await self.orchestrator.begin(make_run())

        self.assertEqual(status.state, RunState.AWAITING_RESPONSES)
        self.assertEqual(status.members, {"A": MemberState.AWAITING_CHOICE, "B": MemberState.AWAITING_CHOICE})
        for member in ("A", "B"):
            posts = self.gateway.posts_to(f"dm-{member}")
            self.assertEqual(len(posts), 1)
            content, ref = posts[0]
            self.assertEqual([a.action_id for a in content.actions], [ACTION_NOT_WORKING, ACTION_START])
            self.assertEqual(self.orchestrator.router.live_reference(member, PHASE_INIT), ref)
        self.summarizer.summarize.assert_not_called()

    async def test_begin_twice_is_rejected(self):
        await self.orchestrator.begin(make_run())
        with self.assertRaises(InvalidTransitionError):
            await self.orchestrator.begin(make_run())

    async def test_slow_member_does_not_block_others(self):
        release = gate(self.gateway, "dm-A")
        task = asyncio.create_task(self.orchestrator.begin(make_run()))
        for _ in range(10):
            await asyncio.sleep(0)

        self.assertEqual(len(self.gateway.posts_to("dm-B")), 1)
        self.assertEqual(self.gateway.posts_to("dm-A"), [])
        self.assertEqual(self.orchestrator.run_state.state, RunState.INITIALIZING)

        release.set()
        status = await task
        self.assertEqual(status.state, RunState.AWAITING_RESPONSES)


class TestInteractions(OrchestratorTestCase):
    async def asyncSetUp(self):
        await self.orchestrator.begin(make_run())

    async def test_not_working_opts_out_and_neutralizes_prompt(self):
        init_ref = self.orchestrator.router.live_reference("A", PHASE_INIT)

        ack = await self.click("A", ACTION_NOT_WORKING)

        self.assertTrue(ack.handled)
        self.assertEqual(self.member_state("A"), MemberState.OPTED_OUT)
        self.assertIsNone(self.orchestrator.store.get("A").answers)
        self.assertEqual(self.gateway.updates_of(init_ref), [messages.not_working_ack()])
        self.assertIsNone(self.orchestrator.router.live_reference("A", PHASE_INIT))

    async def test_start_standup_asks_prompts_in_order(self):
        await self.click("A", ACTION_START)
        self.assertEqual(self.member_state("A"), MemberState.ANSWERING)

        await self.answer("A", "fixed the build")
        await self.answer("A", "reviews")

        questions = [content.text for content, _ in self.gateway.posts_to("dm-A")[1:]]
        self.assertEqual(len(questions), 3)
        for question, prompt in zip(questions, PROMPTS):
            self.assertIn(prompt, question)
        answers = self.orchestrator.store.get("A").answers
        self.assertEqual([(a.prompt, a.response) for a in answers],
                         [("Yesterday?", "fixed the build"), ("Today?", "reviews")])
        self.assert_single_live_reference()

    async def test_run_summarizes_only_after_every_member_is_terminal(self):
        seen_states = []
        self.summarizer.summarize.side_effect = lambda result: seen_states.append(
            self.orchestrator.run_state.state)

        await self.click("A", ACTION_NOT_WORKING)
        self.assertEqual(self.orchestrator.run_state.state, RunState.AWAITING_RESPONSES)

        await self.click("B", ACTION_START)
        await self.answer("B", "one")
        await self.answer("B", "two")
        self.assertEqual(self.orchestrator.run_state.state, RunState.AWAITING_RESPONSES)
        self.summarizer.summarize.assert_not_called()

        await self.answer("B", "three")

        self.assertEqual(seen_states, [RunState.SUMMARIZING])
        result = self.summarizer.summarize.call_args.args[0]
        self.assertEqual({o.member_id: o.status for o in result.per_member},
                         {"A": OutcomeStatus.OPTED_OUT, "B": OutcomeStatus.COMPLETED})
        self.assertEqual(len(result.completed()[0].answers), 3)
        self.assertEqual(result.local_date, datetime.date(2024, 5, 6))
        self.assertEqual(self.orchestrator.run_state.state, RunState.DONE)

    async def test_duplicate_click_is_acknowledged_without_change(self):
        init_ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        await self.click("A", ACTION_NOT_WORKING)
        snapshot = self.orchestrator.store.snapshot()
        calls = list(self.gateway.calls)

        ack = await self.orchestrator.handle_interaction(ButtonClicked(
            acting_member="A", channel=init_ref.channel, message_ts=init_ref.ts, action_id=ACTION_START))

        self.assertFalse(ack.handled)
        self.assertEqual(ack.reason, "stale")
        self.assertEqual(self.orchestrator.store.snapshot(), snapshot)
        self.assertEqual(self.gateway.calls, calls)

    async def test_unknown_reference_routes_nowhere(self):
        snapshot = self.orchestrator.store.snapshot()
        event = ButtonClicked(acting_member="A", channel="dm-A", message_ts="999", action_id=ACTION_START)

        self.assertIsNone(self.orchestrator.router.route(event))
        ack = await self.orchestrator.handle_interaction(event)

        self.assertEqual(ack.reason, "stale")
        self.assertEqual(self.orchestrator.store.snapshot(), snapshot)

    async def test_click_on_someone_elses_prompt_is_ignored(self):
        ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        outsider = ButtonClicked(acting_member="Z", channel=ref.channel, message_ts=ref.ts,
                                 action_id=ACTION_NOT_WORKING)
        member_b = ButtonClicked(acting_member="B", channel=ref.channel, message_ts=ref.ts,
                                 action_id=ACTION_NOT_WORKING)

        self.assertEqual((await self.orchestrator.handle_interaction(outsider)).reason, "unknown_member")
        self.assertEqual((await self.orchestrator.handle_interaction(member_b)).reason, "stale")
        self.assertEqual(self.member_state("A"), MemberState.AWAITING_CHOICE)

    async def test_answer_on_init_message_is_stale(self):
        ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        ack = await self.orchestrator.handle_interaction(
            AnswerSubmitted(acting_member="A", channel=ref.channel, message_ts=ref.ts, text="hi"))
        self.assertFalse(ack.handled)
        self.assertEqual(self.member_state("A"), MemberState.AWAITING_CHOICE)

    async def test_terminal_state_is_never_left(self):
        await self.complete_standup("A")
        self.assertEqual(self.member_state("A"), MemberState.COMPLETED)

        for content, ref in self.gateway.posts_to("dm-A"):
            for action_id in (ACTION_NOT_WORKING, ACTION_START):
                await self.orchestrator.handle_interaction(ButtonClicked(
                    acting_member="A", channel=ref.channel, message_ts=ref.ts, action_id=action_id))
        self.assertEqual(self.member_state("A"), MemberState.COMPLETED)
        self.assertEqual(len(self.orchestrator.store.get("A").answers), 3)
        self.assert_single_live_reference()

    async def test_concurrent_duplicate_clicks_apply_once(self):
        ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        event = ButtonClicked(acting_member="A", channel=ref.channel, message_ts=ref.ts, action_id=ACTION_START)
        release = gate(self.gateway, "dm-A")
        first = asyncio.create_task(self.orchestrator.handle_interaction(event))
        await asyncio.sleep(0)
        second = asyncio.create_task(self.orchestrator.handle_interaction(event))
        for _ in range(5):
            await asyncio.sleep(0)
        release.set()

        acks = await asyncio.gather(first, second)

        self.assertEqual(sorted(a.handled for a in acks), [False, True])
        self.assertEqual(len(self.gateway.posts_to("dm-A")), 2)
        self.assert_single_live_reference()

    async def test_member_transitions_are_serialized(self):
        ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        event = ButtonClicked(acting_member="A", channel=ref.channel, message_ts=ref.ts, action_id=ACTION_START)
        workflow = self.orchestrator._workflows["A"]
        release = gate(self.gateway, "dm-A")

        # Both calls get past routing, the second one waits for the member lock
        first = asyncio.create_task(workflow.handle(event))
        second = asyncio.create_task(workflow.handle(event))
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertTrue(workflow.lock.locked())
        release.set()

        await first
        with self.assertRaises(StaleReferenceError):
            await second
        self.assertEqual(self.member_state("A"), MemberState.ANSWERING)

    async def test_expire_closes_pending_members(self):
        await self.complete_standup("B")
        init_ref = self.orchestrator.router.live_reference("A", PHASE_INIT)

        status = await self.orchestrator.expire()

        self.assertEqual(status.state, RunState.DONE)
        self.assertEqual(self.orchestrator.store.get("A").error_reason, REASON_NO_RESPONSE)
        self.assertEqual(self.gateway.updates_of(init_ref), [messages.standup_closed()])
        self.assertEqual(self.orchestrator.result().per_member[0].status, OutcomeStatus.OPTED_OUT)

    async def test_abort_stops_further_transitions(self):
        self.orchestrator.abort()

        ack = await self.click("A", ACTION_START)

        self.assertEqual(ack.reason, "inactive")
        self.assertEqual(self.orchestrator.status().state, RunState.FAILED)
        self.assertEqual(self.member_state("A"), MemberState.AWAITING_CHOICE)

    async def test_failing_summarizer_fails_the_run(self):
        self.summarizer.summarize.side_effect = RuntimeError("channel gone")
        await self.click("A", ACTION_NOT_WORKING)
        await self.click("B", ACTION_NOT_WORKING)

        status = self.orchestrator.status()
        self.assertEqual(status.state, RunState.FAILED)
        self.assertIn("channel gone", status.failure_reason)


class TestAbort(OrchestratorTestCase):
    async def test_abort_during_begin_lets_posts_in_flight_finish(self):
        with tempfile.TemporaryDirectory() as state_dir:
            checkpoint = JsonFileCheckpoint(state_dir)
            orchestrator = StandupOrchestrator(self.gateway, retry=NO_WAIT, checkpoint=checkpoint)
            release = gate(self.gateway, "dm-A")
            task = asyncio.create_task(orchestrator.begin(make_run()))
            for _ in range(10):
                await asyncio.sleep(0)

            orchestrator.abort()
            release.set()
            status = await task

            self.assertEqual(status.state, RunState.FAILED)
            self.assertEqual(len(self.gateway.posts_to("dm-A")), 1)
            self.assertEqual(status.members["A"], MemberState.AWAITING_CHOICE)
            ref = orchestrator.router.live_reference("A", PHASE_INIT)
            self.assertEqual((await self.click("A", ACTION_START, orchestrator)).reason, "inactive")
            self.assertEqual(len(self.gateway.posts_to("dm-A")), 1)
            # the prompt that went out is known to the next run
            saved = checkpoint.load("daily")["members"]["A"]["messages_by_phase"][PHASE_INIT]
            self.assertEqual(saved[-1], {"reference": ref.to_dict(), "superseded": False})

    async def test_abort_leaves_finished_members_alone(self):
        await self.orchestrator.begin(make_run())
        await self.click("A", ACTION_NOT_WORKING)

        self.orchestrator.abort()
        status = await self.orchestrator.expire()

        self.assertEqual(status.state, RunState.FAILED)
        self.assertEqual(status.members, {"A": MemberState.OPTED_OUT, "B": MemberState.AWAITING_CHOICE})
        self.assertIsNone(self.orchestrator.store.get("A").error_reason)

    async def test_abort_while_summarizing_lets_summary_finish(self):
        release = asyncio.Event()

        async def slow_summary(result):
            await release.wait()

        self.summarizer.summarize.side_effect = slow_summary
        await self.orchestrator.begin(make_run(members=("A",)))
        task = asyncio.create_task(self.click("A", ACTION_NOT_WORKING))
        for _ in range(5):
            await asyncio.sleep(0)
        self.assertEqual(self.orchestrator.run_state.state, RunState.SUMMARIZING)

        self.orchestrator.abort()
        self.assertEqual(self.orchestrator.run_state.state, RunState.SUMMARIZING)
        release.set()
        ack = await task

        self.assertTrue(ack.handled)
        self.assertEqual(self.orchestrator.run_state.state, RunState.DONE)
        self.assertIsNotNone(self.orchestrator.result())

    async def test_abort_while_summary_fails(self):
        release = asyncio.Event()

        async def failing_summary(result):
            await release.wait()
            raise RuntimeError("channel gone")

        self.summarizer.summarize.side_effect = failing_summary
        await self.orchestrator.begin(make_run(members=("A",)))
        task = asyncio.create_task(self.click("A", ACTION_NOT_WORKING))
        for _ in range(5):
            await asyncio.sleep(0)

        self.orchestrator.abort()
        release.set()
        await task

        status = self.orchestrator.status()
        self.assertEqual(status.state, RunState.FAILED)
        self.assertIn("channel gone", status.failure_reason)


class TestDeliveryFailures(OrchestratorTestCase):
    async def test_exhausted_retries_mark_only_that_member(self):
        self.gateway.failing_posts["dm-A"] = 100

        status = await self.orchestrator.begin(make_run())

        self.assertEqual(self.gateway.post_attempts["dm-A"], NO_WAIT.attempts)
        self.assertEqual(status.members["A"], MemberState.OPTED_OUT)
        self.assertEqual(self.orchestrator.store.get("A").error_reason, REASON_DELIVERY_FAILED)
        self.assertEqual(status.members["B"], MemberState.AWAITING_CHOICE)

        await self.complete_standup("B")

        result = self.orchestrator.result()
        self.assertEqual([(o.member_id, o.status) for o in result.per_member],
                         [("A", OutcomeStatus.ERRORED), ("B", OutcomeStatus.COMPLETED)])
        self.assertEqual(self.orchestrator.run_state.state, RunState.DONE)

    async def test_transient_failures_are_retried(self):
        self.gateway.failing_posts["dm-A"] = NO_WAIT.attempts - 1

        status = await self.orchestrator.begin(make_run())

        self.assertEqual(status.members["A"], MemberState.AWAITING_CHOICE)
        self.assertEqual(self.gateway.post_attempts["dm-A"], NO_WAIT.attempts)

    async def test_all_members_unreachable_goes_straight_to_summary(self):
        self.gateway.failing_posts = {"dm-A": 100, "dm-B": 100}

        status = await self.orchestrator.begin(make_run())

        self.assertEqual(status.state, RunState.DONE)
        self.summarizer.summarize.assert_awaited_once()

    async def test_failed_follow_up_prompt_closes_member(self):
        await self.orchestrator.begin(make_run())
        self.gateway.failing_posts["dm-A"] = 100

        await self.click("A", ACTION_START)

        conversation = self.orchestrator.store.get("A")
        self.assertEqual(conversation.state, MemberState.OPTED_OUT)
        self.assertEqual(conversation.error_reason, REASON_DELIVERY_FAILED)


class TestRecovery(OrchestratorTestCase):
    async def test_recovered_live_prompt_is_superseded_before_new_prompt(self):
        await self.orchestrator.begin(make_run())
        old_ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        snapshot = self.orchestrator.store.snapshot()

        gateway = FakeGateway(first_ts=100)
        recovered = StandupOrchestrator(gateway, summarizer=AsyncMock(), retry=NO_WAIT)
        await recovered.begin(make_run(), snapshot=snapshot)

        self.assertEqual(gateway.updates_of(old_ref), [messages.SUPERSEDED])
        new_ref = recovered.router.live_reference("A", PHASE_INIT)
        self.assertNotEqual(new_ref, old_ref)
        self.assertLess(gateway.calls.index(("update", old_ref)), gateway.calls.index(("post", new_ref)))

        stale = await recovered.handle_interaction(ButtonClicked(
            acting_member="A", channel=old_ref.channel, message_ts=old_ref.ts, action_id=ACTION_START))
        self.assertEqual(stale.reason, "stale")
        self.assert_single_live_reference(recovered)

    async def test_recovery_keeps_finished_members(self):
        await self.orchestrator.begin(make_run())
        await self.click("A", ACTION_NOT_WORKING)
        await self.click("B", ACTION_START)
        await self.answer("B", "half way")
        answering_ref = self.orchestrator.router.live_reference("B", PHASE_ANSWERING)
        snapshot = self.orchestrator.store.snapshot()

        gateway = FakeGateway(first_ts=100)
        recovered = StandupOrchestrator(gateway, retry=NO_WAIT)
        status = await recovered.begin(make_run(), snapshot=snapshot)

        self.assertEqual(status.members["A"], MemberState.OPTED_OUT)
        self.assertEqual(gateway.posts_to("dm-A"), [])
        self.assertEqual(status.members["B"], MemberState.AWAITING_CHOICE)
        self.assertEqual(recovered.store.get("B").answers, [])
        self.assertEqual(gateway.updates_of(answering_ref), [messages.SUPERSEDED])

    async def test_previous_run_leftovers_are_neutralized(self):
        await self.orchestrator.begin(make_run(members=("A", "C")))
        ref_a = self.orchestrator.router.live_reference("A", PHASE_INIT)
        ref_c = self.orchestrator.router.live_reference("C", PHASE_INIT)
        snapshot = self.orchestrator.store.snapshot()

        gateway = FakeGateway(first_ts=100)
        next_day = StandupOrchestrator(gateway, retry=NO_WAIT)
        status = await next_day.begin(make_run(run_id="daily-2024-05-07"), snapshot=snapshot)

        self.assertEqual(set(status.members), {"A", "B"})
        self.assertEqual(gateway.updates_of(ref_a), [messages.SUPERSEDED])
        self.assertEqual(gateway.updates_of(ref_c), [messages.SUPERSEDED])
        self.assertEqual(len(next_day.store.get("A").messages_by_phase[PHASE_INIT]), 1)

    async def test_leftover_prompt_is_neutralized_when_member_is_unreachable(self):
        await self.orchestrator.begin(make_run(members=("A",)))
        old_ref = self.orchestrator.router.live_reference("A", PHASE_INIT)
        snapshot = self.orchestrator.store.snapshot()

        gateway = ClosedDMGateway(first_ts=100)
        next_day = StandupOrchestrator(gateway, retry=NO_WAIT)
        status = await next_day.begin(make_run(members=("A",), run_id="daily-2024-05-07"), snapshot=snapshot)

        self.assertEqual(gateway.updates_of(old_ref), [messages.SUPERSEDED])
        self.assertLess(gateway.calls.index(("update", old_ref)), gateway.calls.index(("open", "A")))
        self.assertEqual(status.members["A"], MemberState.OPTED_OUT)
        self.assertEqual(next_day.store.get("A").error_reason, REASON_DELIVERY_FAILED)

    async def test_corrupt_snapshot_fails_the_run(self):
        with self.assertRaises(CorruptSnapshotError):
            await self.orchestrator.begin(make_run(), snapshot={"run_id": "daily-2024-05-06"})

        self.assertEqual(self.orchestrator.status().state, RunState.FAILED)
        self.assertEqual(self.gateway.posts, [])

    async def test_checkpoint_is_written_and_recovered(self):
        with tempfile.TemporaryDirectory() as state_dir:
            checkpoint = JsonFileCheckpoint(state_dir)
            first = StandupOrchestrator(self.gateway, retry=NO_WAIT, checkpoint=checkpoint)
            await first.begin(make_run())
            old_ref = first.router.live_reference("A", PHASE_INIT)
            self.assertEqual(checkpoint.load("daily"), first.store.snapshot())

            gateway = FakeGateway(first_ts=100)
            second = StandupOrchestrator(gateway, retry=NO_WAIT, checkpoint=checkpoint)
            await second.begin(make_run())

            self.assertEqual(gateway.updates_of(old_ref), [messages.SUPERSEDED])
            self.assertEqual(checkpoint.load("daily"), second.store.snapshot())


if __name__ == '__main__':
    unittest.main()
