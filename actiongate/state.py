"""
Conversation state: the values that flow between classifier, gate and store.

Classification field names are part of the wire contract with the
presentation layer, so they serialize with their camelCase aliases.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Step(str, Enum):
    """Stage of the analysis pipeline a request pertains to."""
    ANALYZE_ACTORS = "analyze_actors"
    ANALYZE_PROJECT = "analyze_project"
    ANALYZE_DEPLOYMENT = "analyze_deployment"
    VERIFY_DEPLOYMENT_SCRIPT = "verify_deployment_script"
    UNKNOWN = "unknown"


class Action(str, Enum):
    """Kind of operation the user wants."""
    REFINE = "refine"
    CLARIFY = "clarify"
    EXPLAIN = "explain"
    UPDATE = "update"
    RUN = "run"
    NEEDS_FOLLOWUP = "needs_followup"
    UNKNOWN = "unknown"


class Section(str, Enum):
    PROJECT_SUMMARY = "project_summary"
    ACTOR_SUMMARY = "actor_summary"
    DEPLOYMENT_INSTRUCTIONS = "deployment_instructions"
    IMPLEMENTATION = "implementation"
    VALIDATION_RULES = "validation_rules"
    GENERAL = "general"


class Classification(BaseModel):
    """Typed intent attached to an assistant message."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    step: Step = Step.UNKNOWN
    action: Action = Action.UNKNOWN
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    explanation: str = ""
    is_actionable: bool = Field(default=False, alias="isActionable")
    needs_confirmation: bool = Field(default=False, alias="needsConfirmation")
    action_taken: bool = Field(default=False, alias="actionTaken")
    needs_guidance: bool = Field(default=False, alias="needsGuidance")

    @model_validator(mode="after")
    def _pending_and_taken_are_exclusive(self) -> "Classification":
        if self.needs_confirmation and self.action_taken:
            raise ValueError("needsConfirmation and actionTaken cannot both be true")
        return self

    @classmethod
    def safe_default(cls, explanation: str = "") -> "Classification":
        """The non-actionable classification used whenever classifying fails."""
        return cls(
            step=Step.UNKNOWN,
            action=Action.UNKNOWN,
            confidence=0.0,
            explanation=explanation,
            is_actionable=False,
        )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ChatMessage(BaseModel):
    """A single turn. Never mutated once stored."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    conversation_id: str = Field(alias="conversationId")
    classification: Classification | None = None

    def as_prompt_line(self) -> str:
        speaker = "User" if self.role == "user" else "Assistant"
        return f"{speaker}: {self.content}"


class ConversationSession(BaseModel):
    id: str
    submission_id: str
    section: Section = Section.GENERAL
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    messages: list[ChatMessage] = Field(default_factory=list)

    def replay_order(self) -> list[ChatMessage]:
        return sorted(self.messages, key=lambda m: m.timestamp)

    def display_order(self) -> list[ChatMessage]:
        return sorted(self.messages, key=lambda m: m.timestamp, reverse=True)


class ContinuityResult(BaseModel):
    type: Literal["continue_conversation", "new_conversation"]
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: str = ""

    @property
    def is_new(self) -> bool:
        return self.type == "new_conversation"


class PendingConfirmation(BaseModel):
    """
    An action proposed by the last assistant turn and awaiting the user.

    Derived from history on every turn; never stored on its own.
    """

    message_id: str
    classification: Classification
    checklist_text: str

    @classmethod
    def from_history(cls, history: list[ChatMessage]) -> PendingConfirmation | None:
        """Rebuild the pending action from the most recent assistant turn, if any."""
        for message in reversed(history):
            if message.role != "assistant":
                continue
            classification = message.classification
            if classification is not None and classification.needs_confirmation:
                return cls(
                    message_id=message.id,
                    classification=classification,
                    checklist_text=message.content,
                )
            # Only the latest assistant turn can hold a pending action
            return None
        return None


class ConversationContext(BaseModel):
    """Everything the caller knows about the chat surface for this turn."""

    submission_id: str
    section: Section = Section.GENERAL
    conversation_id: str | None = None
    project_name: str | None = None
    current_step: str | None = None
    project_metadata: dict[str, str] = Field(default_factory=dict)


class TurnResult(BaseModel):
    reply_text: str
    classification: Classification | None = None
    conversation_id: str
    started_new_conversation: bool = False
