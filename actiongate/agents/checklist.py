"""
📋 Ledger Lou: The Checklist Generator

Reads the whole thread and restates every change the user asked for
as a bullet list the user can approve or reject.

Energy: stage manager with a clipboard and zero patience for ambiguity.
"""

from __future__ import annotations

from loguru import logger

from actiongate.agents import BaseAgent, format_transcript
from actiongate.checklist import (
    CHECKLIST_QUESTION,
    CHECKLIST_SENTINEL,
    Checklist,
    build_local_checklist,
    parse_checklist,
)
from actiongate.router import OracleUnavailable
from actiongate.state import ChatMessage, ConversationContext


class ChecklistGenerator(BaseAgent):
    role = "checklist"

    system_prompt = f"""You are Ledger Lou, the checklist writer inside the Ilumina assistant.

You summarize what a user has asked to change in their smart-contract analysis,
so they can approve it before anything is executed.

Output format, exactly:
{CHECKLIST_SENTINEL}

- first requested change
- second requested change

{CHECKLIST_QUESTION}

Rules:
- Start with the title line above, verbatim.
- One "- " bullet per distinct request, across the ENTIRE conversation, not only the last message.
- Merge duplicates. Keep each bullet to one short imperative sentence.
- End with the question line above, verbatim.
- Output nothing else.
"""

    def build_messages(self, all_messages: list[ChatMessage], context: ConversationContext) -> list[dict[str, str]]:
        transcript = format_transcript([("user", m.content) for m in all_messages if m.role == "user"])
        user_content = f"""Project: {context.project_name or 'Unknown'}
Section: {context.section.value}

User requests in this conversation:
{transcript}

Write the checklist."""
        return [self._system_msg(), self._user_msg(user_content)]

    async def summarize(
        self,
        all_messages: list[ChatMessage],
        context: ConversationContext,
        conversation_id: str | None = None,
    ) -> str:
        """Build the confirmation checklist for a thread. Always returns a checklist."""
        return (await self.summarize_checklist(all_messages, context, conversation_id)).render()

    async def summarize_checklist(
        self,
        all_messages: list[ChatMessage],
        context: ConversationContext,
        conversation_id: str | None = None,
    ) -> Checklist:
        user_texts = [m.content for m in all_messages if m.role == "user"]
        messages = self.build_messages(all_messages, context)

        try:
            response = await self._ask(
                messages, temperature=0.1, max_tokens=1024, conversation_id=conversation_id
            )
            checklist = parse_checklist(response.content)
        except (OracleUnavailable, TimeoutError) as e:
            logger.warning(f"[LOU] Oracle failed, building checklist locally: {e}")
            return build_local_checklist(user_texts)

        if not checklist.is_checklist:
            logger.warning("[LOU] Oracle output missing title or bullets, building checklist locally")
            logger.debug(f"[LOU] Raw response: {response.content[:500]}")
            return build_local_checklist(user_texts)

        logger.info(f"[LOU] Checklist ready — {len(checklist.items)} items")
        return checklist
