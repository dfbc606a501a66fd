"""
🧵 Thread Theo: The Continuity Classifier

Decides whether a new message carries on the open thread
or starts a different conversation.

Energy: tailor who hates loose ends.
"""

from __future__ import annotations

from loguru import logger
from pydantic import ValidationError

from actiongate.agents import BaseAgent, MalformedOracleOutput, extract_json_object, format_transcript
from actiongate.router import OracleUnavailable
from actiongate.state import ChatMessage, ContinuityResult


class ContinuityClassifier(BaseAgent):
    role = "continuity"

    system_prompt = """You are Thread Theo, the conversation continuity judge inside the Ilumina assistant.

You are given the transcript of an ongoing conversation and one new user message.
Decide whether the new message continues the same topic (follow-ups, answers to
the assistant's questions, confirmations, refinements of earlier requests) or
starts an unrelated conversation.

You MUST respond with a single valid JSON object ONLY. No markdown, no commentary.

Output schema:
{
  "type": "continue_conversation|new_conversation",
  "confidence": 0.0,
  "explanation": "One sentence on why"
}
"""

    def build_messages(self, new_message: str, prior_messages: list[ChatMessage]) -> list[dict[str, str]]:
        transcript = format_transcript([(m.role, m.content) for m in prior_messages])
        user_content = f"""Conversation so far:
{transcript}

New message:
User: {new_message}

Does the new message continue this conversation? Answer as JSON."""
        return [self._system_msg(), self._user_msg(user_content)]

    async def classify_continuity(
        self,
        new_message: str,
        prior_messages: list[ChatMessage],
    ) -> ContinuityResult:
        """Judge topical continuity. Errs toward keeping the thread on failure."""
        if not prior_messages:
            return ContinuityResult(
                type="new_conversation",
                confidence=1.0,
                explanation="No prior messages",
            )

        messages = self.build_messages(new_message, prior_messages)
        try:
            response = await self._ask(
                messages,
                temperature=0.0,
                max_tokens=256,
                conversation_id=prior_messages[-1].conversation_id,
            )
            result = ContinuityResult.model_validate(extract_json_object(response.content))
        except (OracleUnavailable, MalformedOracleOutput, ValidationError, TimeoutError) as e:
            logger.warning(f"[THEO] Continuity check fell back to continue: {e}")
            return ContinuityResult(
                type="continue_conversation",
                confidence=0.5,
                explanation=f"Continuity unavailable: {e}",
            )

        logger.info(f"[THEO] {result.type} (confidence={result.confidence:.2f})")
        return result
