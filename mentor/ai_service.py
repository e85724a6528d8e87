"""
Tutor service using Pydantic AI with Logfire integration.

Wraps the Gemini model behind the three calls the session orchestrator makes:
sentence correction, coach lesson generation and deep-dive explanations.
Pydantic AI errors are translated into the session exception family so the
orchestrator can decide what to retry.
"""

import logging
from typing import List, Optional, Sequence

from pydantic_ai import Agent
from pydantic_ai.exceptions import (
    AgentRunError,
    ModelHTTPError,
    UnexpectedModelBehavior,
    UserError,
)
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.providers.google import GoogleProvider

from .exceptions import ConfigurationFault, MalformedTutorPayload, TutorUnavailable
from .schemas import CorrectionPayload, LessonDraft, Message, MistakeRecord, Role

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = 'gemini-2.5-flash'

# HTTP statuses that mean the credential or project setup is wrong
FATAL_STATUS_CODES = {401, 403}

CORRECTION_SYSTEM_PROMPT = (
    "You are \"FrenchMentor\", an elite French language tutor. You help users "
    "improve their French through correction or translation.\n\n"
    "1. The user picks a [Response Language]. Every 'explanation' in "
    "'corrections' and the 'notes' MUST be written in that language.\n"
    "2. If the input is French, silently fix capitalization and missing ending "
    "punctuation in 'corrected_text'. Only list substantive errors in "
    "'corrections', with a category such as Grammar, Conjugation, Vocabulary, "
    "Prepositions or Gender.\n"
    "3. If the input is English or Arabic, translate it into natural French.\n"
    "4. 'translation' is always a natural English translation; 'notes' is 2-4 "
    "sentences."
)


class TutorService:
    """Gemini-backed tutor used by the session orchestrator."""

    def __init__(
        self, api_key: Optional[str] = None, model_name: str = DEFAULT_MODEL_NAME
    ) -> None:
        """
        Prepare the tutor. The model is created lazily on first use.

        Args:
            api_key: Gemini API key; a missing key surfaces as ConfigurationFault
            model_name: Gemini model to use
        """
        self.api_key = api_key
        self.model_name = model_name
        self._model: Optional[GoogleModel] = None
        self._correction_agent: Optional[Agent] = None

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    def _get_model(self) -> GoogleModel:
        if not self.api_key or self.api_key == 'undefined':
            raise ConfigurationFault("GEMINI_API_KEY is missing")
        if self._model is None:
            self._model = GoogleModel(
                self.model_name, provider=GoogleProvider(api_key=self.api_key)
            )
        return self._model

    def _get_correction_agent(self) -> Agent:
        if self._correction_agent is None:
            self._correction_agent = Agent(
                model=self._get_model(),
                output_type=CorrectionPayload,
                system_prompt=CORRECTION_SYSTEM_PROMPT,
            )
        return self._correction_agent

    def reset(self) -> None:
        """Drop the cached agent so the next call starts a fresh session."""
        self._correction_agent = None

    # -------------------------------------------------------------------------
    # Error translation
    # -------------------------------------------------------------------------

    def _translate_error(self, exc: Exception) -> Exception:
        logger.warning("Gemini call failed: %s: %s", type(exc).__name__, exc)
        if isinstance(exc, UserError):
            return ConfigurationFault(str(exc))
        if isinstance(exc, ModelHTTPError) and exc.status_code in FATAL_STATUS_CODES:
            return ConfigurationFault(f"Gemini rejected the credentials: {exc}")
        if isinstance(exc, UnexpectedModelBehavior):
            return MalformedTutorPayload(str(exc))
        return TutorUnavailable(str(exc))

    @staticmethod
    def _build_history(history: Sequence[Message]) -> List[ModelMessage]:
        """Convert conversation messages into Pydantic AI message history."""
        messages: List[ModelMessage] = []
        for msg in history:
            if msg.is_error:
                continue
            if msg.role == Role.USER:
                messages.append(ModelRequest(parts=[UserPromptPart(content=msg.content)]))
            elif msg.payload is not None:
                messages.append(
                    ModelResponse(parts=[TextPart(content=msg.payload.model_dump_json())])
                )
            else:
                messages.append(ModelResponse(parts=[TextPart(content=msg.content)]))
        return messages

    # -------------------------------------------------------------------------
    # Tutor calls
    # -------------------------------------------------------------------------

    async def correct(
        self, text: str, language: str, history: Sequence[Message] = ()
    ) -> CorrectionPayload:
        """
        Correct or translate one learner sentence.

        Args:
            text: The learner's input
            language: Language for explanations and notes
            history: Earlier messages of the same conversation

        Returns:
            Structured correction payload

        Raises:
            ConfigurationFault: If the API key is missing or rejected
            MalformedTutorPayload: If the model output does not fit the schema
            TutorUnavailable: For any other model failure
        """
        agent = self._get_correction_agent()
        prompt = f'Input: "{text}"\n\n[Response Language]: {language}'
        try:
            if history:
                result = await agent.run(
                    prompt, message_history=self._build_history(history)
                )
            else:
                result = await agent.run(prompt)
        except (AgentRunError, UserError) as e:
            raise self._translate_error(e) from e
        return result.output

    async def create_lesson(
        self, category: str, mistakes: Sequence[MistakeRecord], language: str
    ) -> LessonDraft:
        """Generate a coach lesson for a recurring mistake category."""
        examples = ", ".join(
            f'"{m.original_text}" corrected to "{m.corrected_text}"' for m in mistakes
        )
        lesson_agent = Agent(
            model=self._get_model(),
            output_type=LessonDraft,
            system_prompt=(
                "You are an elite French coach. Generate a laser-focused report. "
                "Use a simple, indicative title (e.g. \"Le verbe 'Aller' au passé\"). "
                "Give a brief insight into why the mistake happened, a clear simple "
                "rule, and a mnemonic. If a verb is central, provide its present "
                f"tense forms. All text content MUST be in {language}."
            ),
        )
        try:
            result = await lesson_agent.run(
                f'The user has repetitive errors in the category: "{category}".\n'
                f"Mistakes: {examples}."
            )
        except (AgentRunError, UserError) as e:
            raise self._translate_error(e) from e
        return result.output

    async def deep_dive(self, context: str, language: str) -> str:
        """Produce a structured explanation of a correction."""
        dive_agent = Agent(
            model=self._get_model(),
            system_prompt=(
                f"Write a structured 'Deep Dive' lesson in {language}. Start with a "
                "clear bold title, use a numbered list for key points, give exactly "
                "3 examples (French with English translation) and end with one "
                "'Actionable Tip'. Respond with the lesson content only."
            ),
        )
        try:
            result = await dive_agent.run(f'Analyze this correction context: "{context}".')
        except (AgentRunError, UserError) as e:
            raise self._translate_error(e) from e
        return str(result.output)
