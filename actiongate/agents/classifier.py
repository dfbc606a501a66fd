"""
🧭 Triage Tess: The Request Classifier

Reads one user message and names the pipeline step it touches,
the action it asks for, and whether fulfilling it changes anything.
Never answers the user. Only sorts.

Energy: air-traffic controller with a label maker.
"""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, ValidationError

from actiongate.agents import BaseAgent, MalformedOracleOutput, extract_json_object
from actiongate.router import OracleUnavailable
from actiongate.state import Action, Classification, Step


class ClassifierContext(BaseModel):
    project_name: str | None = None
    section: str | None = None
    current_step: str | None = None


_STEPS = " | ".join(s.value for s in Step)
_ACTIONS = " | ".join(a.value for a in Action)


class RequestClassifier(BaseAgent):
    role = "classifier"

    system_prompt = f"""You are Triage Tess, the request classifier inside the Ilumina assistant.

Ilumina analyzes smart-contract projects in a pipeline of steps. Your job is to
classify one user chat message. You never answer the message itself.

You MUST respond with a single valid JSON object ONLY. No markdown, no commentary.

Output schema:
{{
  "step": "{_STEPS}",
  "action": "{_ACTIONS}",
  "confidence": 0.0,
  "explanation": "One sentence on why",
  "isActionable": false,
  "needsGuidance": false
}}

Vocabulary:
- step: analyze_project = project summary; analyze_actors = actors and their actions;
  analyze_deployment = deployment instructions; verify_deployment_script = the
  generated deployment script; unknown = none of these.
- action: refine = adjust an existing analysis result; update = change specific
  content; run = start or re-run a pipeline step; clarify / explain = the user
  wants information; needs_followup = the user is asking what they could do next
  or needs guidance; unknown = cannot tell.
- confidence: 0.0 to 1.0.
- isActionable: true ONLY if fulfilling the request requires changing state
  (editing analysis content or running a step). Questions are never actionable.
- needsGuidance: true if the user is unsure what to ask for and wants suggestions.
"""

    def build_messages(self, message: str, context: ClassifierContext) -> list[dict[str, str]]:
        user_content = f"""Project: {context.project_name or 'Unknown'}
Current section: {context.section or 'general'}
Current analysis step: {context.current_step or 'unknown'}

Message to classify:
\"\"\"{message}\"\"\"

Return the classification as JSON."""
        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, content: str) -> Classification:
        """Validate the oracle payload against the closed Classification shape."""
        raw = extract_json_object(content)
        # The gate owns these two flags; the oracle never sets them.
        for key in ("needsConfirmation", "needs_confirmation", "actionTaken", "action_taken"):
            raw.pop(key, None)
        try:
            return Classification.model_validate(raw)
        except ValidationError as e:
            raise MalformedOracleOutput(f"Classification failed validation: {e}") from e

    async def classify(
        self,
        message: str,
        context: ClassifierContext | None = None,
        conversation_id: str | None = None,
    ) -> Classification:
        """Classify a message. Never raises for oracle or parse failures."""
        context = context or ClassifierContext()
        messages = self.build_messages(message, context)

        try:
            response = await self._ask(
                messages, temperature=0.0, max_tokens=512, conversation_id=conversation_id
            )
            classification = self.parse_response(response.content)
        except (OracleUnavailable, MalformedOracleOutput, TimeoutError) as e:
            logger.warning(f"[TESS] Classification fell back to safe default: {e}")
            return Classification.safe_default(explanation=f"Classification unavailable: {e}")

        logger.info(
            f"[TESS] step={classification.step.value}, "
            f"action={classification.action.value}, "
            f"confidence={classification.confidence:.2f}, "
            f"actionable={classification.is_actionable}"
        )
        return classification
