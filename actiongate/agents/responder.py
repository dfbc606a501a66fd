"""
💬 Echo: The Responder

Writes the assistant's actual reply, scoped to the user's project and
the section of the analysis they are looking at.
The gate decides later whether this reply is shown as-is.

Energy: patient TA who only answers questions about your homework.
"""

from __future__ import annotations

from loguru import logger

from actiongate.agents import BaseAgent
from actiongate.router import OracleUnavailable
from actiongate.state import ChatMessage, ConversationContext, Section

SECTION_FOCUS = {
    Section.PROJECT_SUMMARY: (
        "You are now focusing on the project summary. Help the user understand "
        "the overall project, its purpose, and architecture."
    ),
    Section.ACTOR_SUMMARY: (
        "You are now focusing on actor analysis. Help the user understand different "
        "actors in the smart contract ecosystem and their interactions."
    ),
    Section.DEPLOYMENT_INSTRUCTIONS: (
        "You are now focusing on deployment instructions. Help the user understand how "
        "to deploy the contracts and any potential issues they might face."
    ),
    Section.IMPLEMENTATION: (
        "You are now focusing on implementation details. Help the user understand the "
        "code implementation and suggest best practices."
    ),
    Section.VALIDATION_RULES: (
        "You are now focusing on validation rules. Help the user understand how to "
        "validate their smart contracts and what security measures to take."
    ),
}


class ResponderAgent(BaseAgent):
    role = "responder"

    system_prompt = """You are Echo, a blockchain smart contract analysis assistant for Ilumina,
a platform that helps users analyze their blockchain projects.

You must only answer questions related to the user's current project. Do not answer
questions unrelated to blockchain, smart contracts, or the user's current project.

When the user asks for a change to the analysis, restate the change briefly; you do
not perform changes yourself."""

    def build_system_prompt(self, context: ConversationContext) -> str:
        prompt = (
            f"{self.system_prompt}\n\n"
            f"User's current project: {context.project_name or 'Unknown'}\n"
            f"Current section: {context.section.value}\n"
            f"Current analysis step: {context.current_step or 'Unknown'}"
        )
        if context.project_metadata:
            prompt += "\n\nProject metadata:\n"
            for key, value in context.project_metadata.items():
                prompt += f"{key}: {value}\n"
        focus = SECTION_FOCUS.get(context.section)
        if focus:
            prompt += f"\n\n{focus}"
        return prompt

    def build_messages(
        self,
        history: list[ChatMessage],
        user_text: str,
        context: ConversationContext,
    ) -> list[dict[str, str]]:
        messages = [{"role": "system", "content": self.build_system_prompt(context)}]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        messages.append(self._user_msg(user_text))
        return messages

    async def reply(
        self,
        history: list[ChatMessage],
        user_text: str,
        context: ConversationContext,
        fallback: str,
        conversation_id: str | None = None,
    ) -> str:
        """Generate the raw reply; `fallback` is returned when the oracle is down."""
        messages = self.build_messages(history, user_text, context)
        try:
            response = await self._ask(messages, temperature=0.4, conversation_id=conversation_id)
        except (OracleUnavailable, TimeoutError) as e:
            logger.error(f"[ECHO] Reply generation failed: {e}")
            return fallback

        logger.debug(f"[ECHO] Reply: {response.content[:200]}")
        return response.content.strip() or fallback
