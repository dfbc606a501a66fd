"""
ACTIONGATE Confirmation Gate

Decides, for every user turn, whether the assistant's reply proposes an
action and waits, executes a previously proposed action, drops it, or is a
plain reply. It never performs I/O: the controller runs whatever the
decision asks for.

States:
  IDLE                    nothing pending
  AWAITING_CONFIRMATION   the last assistant turn proposed a mutating action
  RESOLVED                executed or cancelled this turn; IDLE again next turn

Rules, in precedence order:
  1. Cancellation phrase while awaiting      → CANCEL, nothing executes
  2. Confirmation phrase while awaiting      → EXECUTE the pending action
  3. Checklist framing in the reply with no
     confirmation being requested            → rewrite the reply as prose
  4. Significant, actionable, not exempt,
     not a confirmation, not already taken   → PROPOSE and wait
  5. Anything else                           → REPLY

Confirm and cancel detection is a narrow lexical allow-list on purpose.
Paraphrases such as "sure, go for it" are not recognised and the action
stays pending.
The whole-word cancellation tokens also fire inside approvals: "yes, and
don't forget the fee" contains "don't" and cancels. The user has to confirm
again, and nothing runs by mistake.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from loguru import logger
from pydantic import BaseModel

from actiongate.checklist import CHECKLIST_SENTINEL, Checklist, parse_checklist, to_prose
from actiongate.config_loader import GateConfig
from actiongate.state import Classification, PendingConfirmation


CANCELLED_REPLY = "Okay, I won't make those changes. Let me know what you'd like to do instead."


class GateState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RESOLVED = "resolved"


class TurnOutcome(str, Enum):
    REPLY = "reply"
    PROPOSE = "propose"
    EXECUTE = "execute"
    CANCEL = "cancel"


@dataclass(frozen=True)
class LexicalSignal:
    is_confirmation: bool = False
    is_cancellation: bool = False


class GateDecision(BaseModel):
    outcome: TurnOutcome
    state: GateState
    classification: Classification
    reply_text: str = ""
    # PROPOSE without a usable checklist in the raw reply: the controller
    # must ask the checklist generator before replying.
    needs_checklist: bool = False
    pending: PendingConfirmation | None = None


class ConfirmationGate:
    def __init__(self, config: GateConfig | None = None):
        self.config = config or GateConfig()
        self._confirmation_tokens = [t.lower() for t in self.config.confirmation_tokens]
        self._cancellation_patterns = [
            re.compile(rf"(?<![\w']){re.escape(t.lower())}(?![\w'])")
            for t in self.config.cancellation_tokens
        ]

    # -----------------------------------------------------------------------
    # Signals
    # -----------------------------------------------------------------------

    def is_confirmation_phrase(self, text: str) -> bool:
        """Case-insensitive substring match against the confirmation tokens."""
        lowered = text.lower()
        return any(token in lowered for token in self._confirmation_tokens)

    def is_cancellation_phrase(self, text: str) -> bool:
        """Whole-word match: "no" must not fire on "know" or "now"."""
        lowered = text.lower()
        return any(pattern.search(lowered) for pattern in self._cancellation_patterns)

    def detect_signal(self, text: str) -> LexicalSignal:
        return LexicalSignal(
            is_confirmation=self.is_confirmation_phrase(text),
            is_cancellation=self.is_cancellation_phrase(text),
        )

    def is_significant_action(self, classification: Classification) -> bool:
        return (
            classification.action.value in self.config.significant_actions
            and classification.confidence >= self.config.significance_threshold
        )

    def is_exempt_action(self, classification: Classification) -> bool:
        return classification.action.value in self.config.exempt_actions or classification.needs_guidance

    def requires_confirmation(self, classification: Classification, signal: LexicalSignal) -> bool:
        return (
            self.is_significant_action(classification)
            and not self.is_exempt_action(classification)
            and classification.is_actionable
            and not signal.is_confirmation
            and not classification.action_taken
        )

    @staticmethod
    def state_of(pending: PendingConfirmation | None) -> GateState:
        return GateState.AWAITING_CONFIRMATION if pending else GateState.IDLE

    # -----------------------------------------------------------------------
    # Decision
    # -----------------------------------------------------------------------

    def resolve_pending(
        self,
        user_text: str,
        pending: PendingConfirmation | None,
    ) -> GateDecision | None:
        """Settle a pending action from the user's words alone.

        Returns None when the turn neither confirms nor cancels anything; the
        controller then generates a reply and calls `decide`. A new request
        in that case replaces the pending one rather than stacking on it.
        """
        if pending is None:
            return None

        signal = self.detect_signal(user_text)
        cleared = pending.classification.model_copy(
            update={"needs_confirmation": False, "action_taken": False}
        )

        # Cancellation wins when both match: never execute on a mixed signal
        if signal.is_cancellation:
            logger.info("[GATE] Pending action cancelled by user")
            return GateDecision(
                outcome=TurnOutcome.CANCEL,
                state=GateState.RESOLVED,
                classification=cleared,
                reply_text=CANCELLED_REPLY,
                pending=pending,
            )

        if signal.is_confirmation:
            logger.info(
                f"[GATE] Confirmation received for "
                f"{cleared.action.value} on {cleared.step.value}"
            )
            return GateDecision(
                outcome=TurnOutcome.EXECUTE,
                state=GateState.RESOLVED,
                classification=cleared,
                pending=pending,
            )

        return None

    def decide(
        self,
        classification: Classification,
        user_text: str,
        raw_reply: str,
    ) -> GateDecision:
        """Settle a turn that did not resolve a pending action."""
        signal = self.detect_signal(user_text)
        checklist = parse_checklist(raw_reply)
        has_framing = checklist.is_checklist or CHECKLIST_SENTINEL.lower() in raw_reply.lower()
        needs_confirmation = self.requires_confirmation(classification, signal)

        final = classification.model_copy(update={"needs_confirmation": needs_confirmation})

        if needs_confirmation:
            if checklist.is_checklist:
                logger.info(
                    f"[GATE] {final.action.value} on {final.step.value} "
                    f"needs confirmation — using oracle checklist"
                )
                return GateDecision(
                    outcome=TurnOutcome.PROPOSE,
                    state=GateState.AWAITING_CONFIRMATION,
                    classification=final,
                    reply_text=checklist.render(),
                )
            logger.info(
                f"[GATE] {final.action.value} on {final.step.value} "
                f"needs confirmation — checklist required"
            )
            return GateDecision(
                outcome=TurnOutcome.PROPOSE,
                state=GateState.AWAITING_CONFIRMATION,
                classification=final,
                needs_checklist=True,
            )

        reply_text = raw_reply
        if has_framing:
            # Nothing is pending, so no checklist may reach the user
            logger.debug("[GATE] Removing checklist framing from reply")
            reply_text = to_prose(checklist, user_text, signal.is_confirmation)

        return GateDecision(
            outcome=TurnOutcome.REPLY,
            state=GateState.IDLE,
            classification=final,
            reply_text=reply_text,
        )

    # -----------------------------------------------------------------------
    # Resolution
    # -----------------------------------------------------------------------

    @staticmethod
    def with_checklist(decision: GateDecision, checklist: Checklist) -> GateDecision:
        """Attach a generated checklist to a PROPOSE decision."""
        return decision.model_copy(update={"reply_text": checklist.render(), "needs_checklist": False})

    @staticmethod
    def acknowledge_execution(
        decision: GateDecision,
        user_text: str,
        succeeded: bool,
        status_message: str = "",
        outcome_known: bool = True,
    ) -> GateDecision:
        """Fold the execution collaborator's outcome into an EXECUTE decision.

        `outcome_known=False` means the request went out but its answer was
        unusable; the action is resolved all the same and never re-sent.
        """
        pending_checklist = parse_checklist(decision.pending.checklist_text if decision.pending else "")

        if succeeded:
            reply = to_prose(pending_checklist, user_text, is_confirmation=True)
            if status_message:
                reply = f"{reply} {status_message}"
        elif not outcome_known:
            reply = (
                f"I sent those changes to the analysis service, but {status_message}. "
                "Please check the analysis before asking me again."
            )
        else:
            reason = status_message or "the analysis service reported a failure"
            reply = (
                f"I wasn't able to apply those changes: {reason}. "
                "Nothing was changed, so you can ask me to try again."
            )

        classification = decision.classification.model_copy(
            update={"needs_confirmation": False, "action_taken": succeeded}
        )
        return decision.model_copy(
            update={"classification": classification, "reply_text": reply}
        )
