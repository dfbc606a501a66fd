"""
ACTIONGATE Controller: The Turn Loop

It is NOT smart. It is deterministic.

Responsibilities, once per user turn and strictly in this order:
  - Resolve (or create) the conversation id
  - Load history and rebuild any pending confirmation
  - Check topical continuity (not on the first turn, not on confirm/cancel)
  - Classify the message
  - Let the gate decide: propose, execute, cancel, or reply
  - Call the checklist generator or the execution service if the gate says so
  - Append the user turn and the reply to history

It never classifies, summarizes or decides anything itself. It only
coordinates. History is written only once the reply exists, so a failed
turn leaves no trace.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from actiongate.agents.checklist import ChecklistGenerator
from actiongate.agents.classifier import ClassifierContext, RequestClassifier
from actiongate.agents.continuity import ContinuityClassifier
from actiongate.agents.responder import ResponderAgent
from actiongate.checklist import parse_checklist
from actiongate.config_loader import ActionGateConfig, load_config
from actiongate.event_bus import EventBus, bus
from actiongate.executor import ActionDescriptor, ExecutionClient, ExecutionFailure, HttpExecutionClient
from actiongate.gate import ConfirmationGate, GateDecision, TurnOutcome
from actiongate.router import RateLimitExceeded, Router
from actiongate.session import MessageStore, SessionManager, build_store
from actiongate.state import (
    ChatMessage,
    Classification,
    ConversationContext,
    PendingConfirmation,
    TurnResult,
)

EXECUTION_SUBMITTED = (
    "I've sent this to the analysis pipeline; the results will refresh once it finishes."
)


class Controller:
    """
    The ACTIONGATE turn engine.

    Collaborators are injected so tests and hosts can swap the oracle,
    the message store and the execution service independently.
    """

    def __init__(
        self,
        config: ActionGateConfig | None = None,
        router: Router | None = None,
        store: MessageStore | None = None,
        executor: ExecutionClient | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config or load_config()
        self.router = router or Router(self.config)
        self.sessions = SessionManager(
            store or build_store(self.config.storage.backend, self.config.storage.directory),
            greeting=self.config.messages.greeting,
        )
        self.executor = executor or HttpExecutionClient(self.config.execution)
        self.gate = ConfirmationGate(self.config.gate)
        self.bus = event_bus or bus

        # Agents
        self.classifier = RequestClassifier(self.router)
        self.continuity = ContinuityClassifier(self.router)
        self.checklist = ChecklistGenerator(self.router)
        self.responder = ResponderAgent(self.router)

    async def handle_turn(self, context: ConversationContext, user_text: str) -> TurnResult:
        """Process one user message and return the reply to show."""
        conversation_id = await self.sessions.resolve_session(
            context.submission_id, context.section, context.conversation_id
        )
        self._emit("turn_started", conversation_id, {"section": context.section.value})

        try:
            return await self._run_turn(context, conversation_id, user_text)
        except RateLimitExceeded as e:
            logger.warning(f"[CONTROLLER] Usage limit reached: {e}")
            self._emit("rate_limited", conversation_id, {"error": str(e)})
            return TurnResult(reply_text=self.config.messages.upgrade, conversation_id=conversation_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Turn boundary: nothing was appended, so history stays consistent
            logger.exception(f"[CONTROLLER] Turn failed: {e}")
            self._emit("turn_failed", conversation_id, {"error": str(e)})
            return TurnResult(reply_text=self.config.messages.generic_error, conversation_id=conversation_id)

    async def start_new_conversation(self, context: ConversationContext) -> str:
        return await self.sessions.start_new_conversation(context.submission_id, context.section)

    # -----------------------------------------------------------------------
    # Turn pipeline
    # -----------------------------------------------------------------------

    async def _run_turn(self, context: ConversationContext, conversation_id: str, user_text: str) -> TurnResult:
        history = await self.sessions.load_history(conversation_id)
        pending = PendingConfirmation.from_history(history)
        resolution = self.gate.resolve_pending(user_text, pending)
        started_new = False

        # ── 1. Continuity ──
        if history and resolution is None:
            continuity = await self.continuity.classify_continuity(user_text, history)
            if continuity.is_new and continuity.confidence >= self.config.gate.new_conversation_threshold:
                conversation_id = await self.sessions.start_new_conversation(
                    context.submission_id, context.section
                )
                history = []
                started_new = True
                self._emit("conversation_split", conversation_id, {"reason": continuity.explanation})

        # ── 2. Classify ──
        classification = await self.classifier.classify(
            user_text,
            ClassifierContext(
                project_name=context.project_name,
                section=context.section.value,
                current_step=context.current_step,
            ),
            conversation_id=conversation_id,
        )
        self._emit("classified", conversation_id, classification.to_wire())

        user_message = ChatMessage(role="user", content=user_text, conversation_id=conversation_id)

        # ── 3. Gate ──
        if resolution is not None and resolution.outcome == TurnOutcome.EXECUTE:
            decision = await self._execute(resolution, context, conversation_id, user_text)
        elif resolution is not None:
            decision = resolution
            self._emit("action_cancelled", conversation_id, resolution.classification.to_wire())
        else:
            raw_reply = await self.responder.reply(
                history,
                user_text,
                context,
                fallback=self.config.messages.oracle_error,
                conversation_id=conversation_id,
            )
            decision = self.gate.decide(classification, user_text, raw_reply)
            if decision.needs_checklist:
                checklist = await self.checklist.summarize_checklist(
                    history + [user_message], context, conversation_id
                )
                decision = self.gate.with_checklist(decision, checklist)
            if decision.outcome == TurnOutcome.PROPOSE:
                self._emit("confirmation_requested", conversation_id, decision.classification.to_wire())

        # ── 4. Persist ──
        assistant_message = ChatMessage(
            role="assistant",
            content=decision.reply_text,
            conversation_id=conversation_id,
            classification=decision.classification,
        )
        await self.sessions.append_turn(conversation_id, [user_message, assistant_message])

        logger.info(
            f"[CONTROLLER] {conversation_id} → {decision.outcome.value} "
            f"(needsConfirmation={decision.classification.needs_confirmation}, "
            f"actionTaken={decision.classification.action_taken})"
        )

        return TurnResult(
            reply_text=decision.reply_text,
            classification=decision.classification,
            conversation_id=conversation_id,
            started_new_conversation=started_new,
        )

    async def _execute(
        self,
        decision: GateDecision,
        context: ConversationContext,
        conversation_id: str,
        user_text: str,
    ) -> GateDecision:
        """Run a confirmed action against the analysis service."""
        pending = decision.pending
        classification: Classification = decision.classification
        descriptor = ActionDescriptor(
            submission_id=context.submission_id,
            conversation_id=conversation_id,
            step=classification.step,
            action=classification.action,
            instructions=parse_checklist(pending.checklist_text).items if pending else [],
            explanation=classification.explanation,
        )

        try:
            # Shielded: if the caller goes away mid-call the request still
            # completes on the service side and its result is dropped here.
            result = await asyncio.shield(self.executor.execute(descriptor))
        except ExecutionFailure as e:
            logger.error(f"[CONTROLLER] Execution failed: {e}")
            self._emit("action_failed", conversation_id, {"error": str(e)})
            return self.gate.acknowledge_execution(decision, user_text, succeeded=False, status_message=str(e))
        except RateLimitExceeded:
            raise
        except Exception as e:
            # The service may already have acted; the pending action is closed either way
            logger.exception(f"[CONTROLLER] Execution outcome unknown: {e}")
            self._emit("action_failed", conversation_id, {"error": str(e)})
            return self.gate.acknowledge_execution(
                decision,
                user_text,
                succeeded=False,
                status_message="the analysis service returned a response I could not read",
                outcome_known=False,
            )

        if not result.success:
            self._emit("action_failed", conversation_id, {"error": result.message})
            return self.gate.acknowledge_execution(
                decision, user_text, succeeded=False, status_message=result.message
            )

        self._emit("action_executed", conversation_id, {"run_id": result.run_id, **descriptor.model_dump(mode="json")})
        return self.gate.acknowledge_execution(
            decision, user_text, succeeded=True, status_message=result.message or EXECUTION_SUBMITTED
        )

    def _emit(self, event_type: str, conversation_id: str, payload: dict[str, Any]) -> None:
        self.bus.emit(event_type, conversation_id, payload)
