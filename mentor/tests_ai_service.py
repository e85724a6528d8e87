"""
Tests for the Gemini tutor service with mocked Pydantic AI agents.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from django.test import SimpleTestCase
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior, UserError
from pydantic_ai.messages import ModelRequest, ModelResponse

from mentor.ai_service import TutorService
from mentor.exceptions import ConfigurationFault, MalformedTutorPayload, TutorUnavailable
from mentor.localization import fallback_payload
from mentor.schemas import CorrectionPayload, LessonDraft, Message, MistakeRecord, Role

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def agent_returning(output) -> AsyncMock:
    mock_agent_instance = AsyncMock()
    mock_result = MagicMock()
    mock_result.output = output
    mock_agent_instance.run.return_value = mock_result
    return mock_agent_instance


@patch('mentor.ai_service.GoogleProvider')
@patch('mentor.ai_service.GoogleModel')
class TutorServiceTest(SimpleTestCase):
    """Tutor calls with mocked agents."""

    def setUp(self) -> None:
        self.payload = CorrectionPayload(
            corrected_text="Je suis allé au cinéma hier.",
            translation="I went to the cinema yesterday.",
            corrections=[],
        )

    @patch('mentor.ai_service.Agent')
    async def test_correct(self, MockAgent: MagicMock, *_: MagicMock) -> None:
        """Test a correction with no history."""
        mock_agent_instance = agent_returning(self.payload)
        MockAgent.return_value = mock_agent_instance

        service = TutorService(api_key='test-key')
        result = await service.correct("j'ai aller au cinema hier", "French")

        self.assertEqual(result, self.payload)
        mock_agent_instance.run.assert_called_once_with(
            'Input: "j\'ai aller au cinema hier"\n\n[Response Language]: French'
        )
        self.assertIs(MockAgent.call_args.kwargs['output_type'], CorrectionPayload)

    @patch('mentor.ai_service.Agent')
    async def test_correct_passes_history(self, MockAgent: MagicMock, *_: MagicMock) -> None:
        """Test that earlier turns are sent as message history."""
        mock_agent_instance = agent_returning(self.payload)
        MockAgent.return_value = mock_agent_instance
        history = [
            Message(id=1, role=Role.USER, content="Bonjour", created_at=NOW),
            Message(
                id=2, role=Role.MODEL, content="Bonjour.", payload=self.payload, created_at=NOW
            ),
            Message(
                id=3,
                role=Role.MODEL,
                content="error",
                payload=fallback_payload("English"),
                is_error=True,
                created_at=NOW,
            ),
        ]

        service = TutorService(api_key='test-key')
        await service.correct("Ça va", "English", history)

        message_history = mock_agent_instance.run.call_args.kwargs['message_history']
        self.assertEqual(len(message_history), 2)
        self.assertIsInstance(message_history[0], ModelRequest)
        self.assertIsInstance(message_history[1], ModelResponse)
        self.assertIn("Je suis allé", message_history[1].parts[0].content)

    @patch('mentor.ai_service.Agent')
    async def test_correction_agent_is_cached_until_reset(
        self, MockAgent: MagicMock, *_: MagicMock
    ) -> None:
        """Test caching of the correction agent."""
        MockAgent.return_value = agent_returning(self.payload)
        service = TutorService(api_key='test-key')
        await service.correct("Bonjour", "English")
        await service.correct("Salut", "English")
        self.assertEqual(MockAgent.call_count, 1)

        service.reset()
        await service.correct("Coucou", "English")
        self.assertEqual(MockAgent.call_count, 2)

    async def test_missing_api_key(self, *_: MagicMock) -> None:
        """Test that a missing API key is a configuration fault."""
        for api_key in (None, '', 'undefined'):
            service = TutorService(api_key=api_key)
            with self.assertRaises(ConfigurationFault):
                await service.correct("Bonjour", "English")

    @patch('mentor.ai_service.Agent')
    async def test_error_translation(self, MockAgent: MagicMock, *_: MagicMock) -> None:
        """Test mapping of Pydantic AI errors onto tutor exceptions."""
        cases = [
            (ModelHTTPError(status_code=401, model_name='gemini'), ConfigurationFault),
            (ModelHTTPError(status_code=403, model_name='gemini'), ConfigurationFault),
            (ModelHTTPError(status_code=503, model_name='gemini'), TutorUnavailable),
            (ModelHTTPError(status_code=429, model_name='gemini'), TutorUnavailable),
            (UnexpectedModelBehavior("output validation failed"), MalformedTutorPayload),
            (UserError("bad setup"), ConfigurationFault),
        ]
        service = TutorService(api_key='test-key')
        for error, expected in cases:
            with self.subTest(error=type(error).__name__):
                mock_agent_instance = AsyncMock()
                mock_agent_instance.run.side_effect = error
                MockAgent.return_value = mock_agent_instance
                service.reset()
                with self.assertRaises(expected):
                    await service.correct("Bonjour", "English")

    @patch('mentor.ai_service.Agent')
    async def test_create_lesson(self, MockAgent: MagicMock, *_: MagicMock) -> None:
        """Test coach lesson generation with mocked agent."""
        draft = LessonDraft(
            title="Le verbe 'Aller' au passé",
            why_you_made_it="Habit from English.",
            the_rule="Aller takes être.",
            mental_trick="DR MRS VANDERTRAMP",
        )
        mock_agent_instance = agent_returning(draft)
        MockAgent.return_value = mock_agent_instance
        mistakes = [
            MistakeRecord(
                original_text="j'ai aller",
                corrected_text="je suis allé",
                category="Conjugation",
                timestamp=NOW,
            )
        ]

        service = TutorService(api_key='test-key')
        result = await service.create_lesson("Conjugation", mistakes, "French")

        self.assertEqual(result, draft)
        prompt = mock_agent_instance.run.call_args[0][0]
        self.assertIn('"Conjugation"', prompt)
        self.assertIn('"j\'ai aller" corrected to "je suis allé"', prompt)
        self.assertIn("French", MockAgent.call_args.kwargs['system_prompt'])

    @patch('mentor.ai_service.Agent')
    async def test_deep_dive(self, MockAgent: MagicMock, *_: MagicMock) -> None:
        """Test deep dive generation with mocked agent."""
        mock_agent_instance = agent_returning("**Le passé composé**")
        MockAgent.return_value = mock_agent_instance

        service = TutorService(api_key='test-key')
        result = await service.deep_dive("j'ai aller -> je suis allé", "English")

        self.assertEqual(result, "**Le passé composé**")
        mock_agent_instance.run.assert_called_once_with(
            'Analyze this correction context: "j\'ai aller -> je suis allé".'
        )
