from unittest.mock import AsyncMock

import httpx
import pytest

from actiongate.checklist import CHECKLIST_QUESTION, CHECKLIST_SENTINEL
from actiongate.config_loader import ActionGateConfig
from actiongate.controller import Controller
from actiongate.event_bus import EventBus
from actiongate.executor import ExecutionFailure, ExecutionResult, HttpExecutionClient
from actiongate.gate import CANCELLED_REPLY
from actiongate.router import OracleUnavailable, RateLimitExceeded
from actiongate.session import InMemoryMessageStore
from actiongate.state import Action, ConversationContext, Section, Step

UPDATE_ACTORS = {
    "step": "analyze_actors",
    "action": "update",
    "confidence": 0.92,
    "explanation": "User wants the actor list edited",
    "isActionable": True,
}
NOT_ACTIONABLE = {"step": "unknown", "action": "unknown", "confidence": 0.3, "isActionable": False}
PROPOSAL = f"""{CHECKLIST_SENTINEL}

- Remove the admin role from the actor summary

{CHECKLIST_QUESTION}"""


@pytest.fixture
def scripted(router):
    return router


@pytest.fixture
def executor():
    client = AsyncMock()
    client.execute.return_value = ExecutionResult(success=True, message="Run 42 queued.", run_id="42")
    return client


@pytest.fixture
def events():
    recorded = []
    event_bus = EventBus()
    event_bus.subscribe(recorded.append)
    event_bus.recorded = recorded
    return event_bus


@pytest.fixture
def controller(scripted, executor, events):
    return Controller(
        config=ActionGateConfig(),
        router=scripted,
        store=InMemoryMessageStore(),
        executor=executor,
        event_bus=events,
    )


@pytest.fixture
def context():
    return ConversationContext(submission_id="sub-1", section=Section.ACTOR_SUMMARY, project_name="Predify")


async def _propose(controller, scripted, context):
    scripted.add("classifier", UPDATE_ACTORS)
    scripted.add("responder", "I can remove the admin role from the actor summary.")
    scripted.add("checklist", PROPOSAL)
    return await controller.handle_turn(context, "please update the actor summary to remove the admin role")


def _event_types(events):
    return [e.event_type for e in events.recorded]


# ---------------------------------------------------------------------------
# Propose, then confirm
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_significant_request_proposes_checklist(controller, scripted, context, executor, events):
    result = await _propose(controller, scripted, context)

    assert result.reply_text.startswith(CHECKLIST_SENTINEL)
    assert "- Remove the admin role from the actor summary" in result.reply_text
    assert result.reply_text.endswith(CHECKLIST_QUESTION)
    assert result.classification.needs_confirmation
    assert not result.classification.action_taken
    executor.execute.assert_not_awaited()
    # First turn of a thread: no continuity check
    assert "continuity" not in scripted.roles_called()
    assert "confirmation_requested" in _event_types(events)

    history = await controller.sessions.load_history(result.conversation_id)
    assert [m.role for m in history] == ["user", "assistant"]
    assert history[1].classification.needs_confirmation


@pytest.mark.asyncio
async def test_confirmation_executes_pending_action(controller, scripted, context, executor, events):
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    scripted.add("classifier", NOT_ACTIONABLE)
    result = await controller.handle_turn(context, "yes, proceed")

    assert result.reply_text == (
        "I'll proceed with that right away. Remove the admin role from the actor summary. Run 42 queued."
    )
    assert CHECKLIST_SENTINEL not in result.reply_text
    assert result.classification.action_taken
    assert not result.classification.needs_confirmation
    assert result.conversation_id == proposed.conversation_id

    executor.execute.assert_awaited_once()
    descriptor = executor.execute.await_args.args[0]
    assert descriptor.step == Step.ANALYZE_ACTORS
    assert descriptor.action == Action.UPDATE
    assert descriptor.instructions == ["Remove the admin role from the actor summary"]
    assert descriptor.submission_id == "sub-1"

    # Confirm turns skip the continuity check and the responder
    assert scripted.roles_called().count("continuity") == 0
    assert scripted.roles_called().count("responder") == 1
    assert "action_executed" in _event_types(events)


@pytest.mark.asyncio
async def test_second_confirmation_does_not_execute_again(controller, scripted, context, executor):
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})
    await controller.handle_turn(context, "yes")

    scripted.add("continuity", {"type": "continue_conversation", "confidence": 0.9})
    result = await controller.handle_turn(context, "yes")

    executor.execute.assert_awaited_once()
    assert not result.classification.needs_confirmation


@pytest.mark.asyncio
async def test_cancellation_drops_pending_action(controller, scripted, context, executor, events):
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    result = await controller.handle_turn(context, "no, hold off")

    assert result.reply_text == CANCELLED_REPLY
    assert not result.classification.needs_confirmation
    assert not result.classification.action_taken
    executor.execute.assert_not_awaited()
    assert "action_cancelled" in _event_types(events)


@pytest.mark.asyncio
async def test_execution_failure_is_reported(controller, scripted, context, executor, events):
    executor.execute.side_effect = ExecutionFailure("the analysis service returned HTTP 500")
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    result = await controller.handle_turn(context, "yes")

    assert "wasn't able to apply those changes" in result.reply_text
    assert not result.classification.action_taken
    assert not result.classification.needs_confirmation
    assert "action_failed" in _event_types(events)


@pytest.mark.asyncio
async def test_execution_rejected_by_result(controller, scripted, context, executor):
    executor.execute.return_value = ExecutionResult(success=False, message="step locked")
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    result = await controller.handle_turn(context, "go ahead")

    assert "step locked" in result.reply_text
    assert not result.classification.action_taken


# ---------------------------------------------------------------------------
# Plain replies
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_question_reply_drops_checklist_framing(controller, scripted, context):
    scripted.add("classifier", {
        "step": "analyze_actors", "action": "clarify", "confidence": 0.95, "isActionable": False,
    })
    scripted.add("responder", f"{CHECKLIST_SENTINEL}\n\n- The resolver actor settles markets\n\n{CHECKLIST_QUESTION}")

    result = await controller.handle_turn(context, "What does the resolver actor do?")

    assert result.reply_text == "The resolver actor settles markets."
    assert not result.classification.needs_confirmation
    assert "checklist" not in scripted.roles_called()


@pytest.mark.asyncio
async def test_classifier_outage_still_replies(controller, scripted, context):
    scripted.add("classifier", OracleUnavailable("timeout"))
    scripted.add("responder", "The deployment script deploys three contracts.")

    result = await controller.handle_turn(context, "what does the deployment script do?")

    assert result.reply_text == "The deployment script deploys three contracts."
    assert result.classification.step == Step.UNKNOWN
    assert result.classification.action == Action.UNKNOWN
    assert result.classification.confidence == 0.0
    assert not result.classification.is_actionable
    assert not result.classification.needs_confirmation


@pytest.mark.asyncio
async def test_responder_outage_uses_oracle_error(controller, scripted, context):
    scripted.add("classifier", NOT_ACTIONABLE)
    result = await controller.handle_turn(context, "hello")
    assert result.reply_text == controller.config.messages.oracle_error


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_topic_change_starts_new_conversation(controller, scripted, context, events):
    scripted.add("classifier", NOT_ACTIONABLE)
    scripted.add("responder", "It settles markets.")
    first = await controller.handle_turn(context, "what does the resolver do?")
    context = context.model_copy(update={"conversation_id": first.conversation_id})

    scripted.add("continuity", {"type": "new_conversation", "confidence": 0.95, "explanation": "Unrelated"})
    scripted.add("classifier", NOT_ACTIONABLE)
    scripted.add("responder", "I can only help with your project.")
    second = await controller.handle_turn(context, "what's the weather like?")

    assert second.started_new_conversation
    assert second.conversation_id != first.conversation_id
    assert len(await controller.sessions.load_history(first.conversation_id)) == 2
    assert len(await controller.sessions.load_history(second.conversation_id)) == 2
    assert "conversation_split" in _event_types(events)


@pytest.mark.asyncio
async def test_low_confidence_topic_change_stays(controller, scripted, context):
    scripted.add("classifier", NOT_ACTIONABLE)
    scripted.add("responder", "It settles markets.")
    first = await controller.handle_turn(context, "what does the resolver do?")
    context = context.model_copy(update={"conversation_id": first.conversation_id})

    scripted.add("continuity", {"type": "new_conversation", "confidence": 0.4})
    second = await controller.handle_turn(context, "and the keeper?")

    assert not second.started_new_conversation
    assert second.conversation_id == first.conversation_id


@pytest.mark.asyncio
async def test_explicit_conversation_id_is_used(controller, scripted):
    context = ConversationContext(submission_id="sub-1", conversation_id="chat-7")
    scripted.add("classifier", NOT_ACTIONABLE)
    result = await controller.handle_turn(context, "hello")
    assert result.conversation_id == "chat-7"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limit_returns_upgrade_message(controller, scripted, context):
    scripted.add("classifier", RateLimitExceeded("quota"))

    result = await controller.handle_turn(context, "update the fee")

    assert result.reply_text == controller.config.messages.upgrade
    assert await controller.sessions.load_history(result.conversation_id) == []


@pytest.mark.asyncio
async def test_rate_limit_keeps_pending_action(controller, scripted, context, executor):
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    scripted.add("classifier", RateLimitExceeded("quota"))
    limited = await controller.handle_turn(context, "yes")
    assert limited.reply_text == controller.config.messages.upgrade
    executor.execute.assert_not_awaited()

    result = await controller.handle_turn(context, "yes")
    assert result.classification.action_taken
    executor.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_unexpected_error_leaves_history_untouched(controller, scripted, context, events):
    scripted.add("classifier", NOT_ACTIONABLE)
    scripted.add("responder", RuntimeError("boom"))

    result = await controller.handle_turn(context, "hello")

    assert result.reply_text == controller.config.messages.generic_error
    assert await controller.sessions.load_history(result.conversation_id) == []
    assert "turn_failed" in _event_types(events)


# ---------------------------------------------------------------------------
# Exactly once
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_accepted_action_with_null_message_runs_once(scripted, context, events):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"success": True, "message": None, "run_id": 7})

    config = ActionGateConfig()
    controller = Controller(
        config=config,
        router=scripted,
        store=InMemoryMessageStore(),
        executor=HttpExecutionClient(config.execution, transport=httpx.MockTransport(handler)),
        event_bus=events,
    )
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    first = await controller.handle_turn(context, "yes")
    second = await controller.handle_turn(context, "yes")

    assert first.classification.action_taken
    assert first.reply_text != config.messages.generic_error
    assert second.reply_text != config.messages.generic_error
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_unreadable_execution_outcome_is_resolved(controller, scripted, context, executor):
    executor.execute.side_effect = RuntimeError("unexpected payload")
    proposed = await _propose(controller, scripted, context)
    context = context.model_copy(update={"conversation_id": proposed.conversation_id})

    result = await controller.handle_turn(context, "yes")
    await controller.handle_turn(context, "yes")

    assert "check the analysis" in result.reply_text
    assert not result.classification.needs_confirmation
    assert not result.classification.action_taken
    executor.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_oracle_calls_are_charged_to_their_conversation(controller, scripted, context):
    first = await _propose(controller, scripted, context)
    scripted.add("classifier", NOT_ACTIONABLE)
    second = await controller.handle_turn(context, "hello again")

    assert second.conversation_id != first.conversation_id
    assert set(scripted.conversation_ids) == {first.conversation_id, second.conversation_id}


class FailingTurnStore(InMemoryMessageStore):
    async def append_many(self, conversation_id, messages):
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_failed_persist_leaves_no_half_turn(scripted, executor, events, context):
    store = FailingTurnStore()
    controller = Controller(
        config=ActionGateConfig(), router=scripted, store=store, executor=executor, event_bus=events
    )
    scripted.add("classifier", NOT_ACTIONABLE)
    scripted.add("responder", "Hello!")

    result = await controller.handle_turn(context, "hello")

    assert result.reply_text == controller.config.messages.generic_error
    assert await store.list(result.conversation_id) == []
