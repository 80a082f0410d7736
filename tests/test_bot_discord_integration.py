"""
Unit tests for the Discord presentation layer with mocked Discord objects.
"""
import asyncio
import unittest
from unittest.mock import Mock

import discord

from studymate.bot import (
    COLOR_GREEN,
    COLOR_RED,
    ExamPresenter,
    ExamView,
    StudyMateBot,
    build_idle_embed,
    build_question_embed,
    build_results_embed,
)
from studymate.config_manager import ConfigManager
from studymate.models import Phase, QuestionKind, Session
from studymate.quiz_controller import QuizController
from studymate.quiz_engine import ExamEngine, QuestionSetHolder, ScoreKeeper
from tests.test_fixtures import ErrorScenarios, FakeStudyMateClient, MockDiscordObjects, TestFixtures


def field_names(embed: discord.Embed):
    return [field.name for field in embed.fields]


class TestEmbedBuilders(unittest.TestCase):
    """Test cases for rendering sessions as embeds."""

    def make_session(self, kind, questions):
        session = Session(kind=kind, topic="Science", difficulty="easy")
        QuestionSetHolder(session).load(questions)
        return session

    def test_question_embed_multiple_choice(self):
        session = self.make_session(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())
        session.answers[0] = "B"

        embed = build_question_embed(session)

        self.assertEqual(embed.title, "🎯 Question 1/3")
        self.assertEqual(embed.description, "Which planet is known as the red planet?")
        self.assertEqual(embed.color.value, COLOR_GREEN)
        self.assertIn("👉 **B.** Mars", embed.fields[0].value)
        self.assertIn("⏱️ Time Remaining", field_names(embed))

    def test_question_embed_final_seconds(self):
        session = self.make_session(QuestionKind.TRUE_FALSE, TestFixtures.create_true_false_questions())
        session.remaining_seconds = 1

        embed = build_question_embed(session)

        self.assertEqual(embed.color.value, COLOR_RED)
        self.assertEqual(embed.footer.text, "🚨 Final seconds!")
        self.assertIn("1 second", [field.value for field in embed.fields])

    def test_question_embed_short_revealed(self):
        session = self.make_session(QuestionKind.SHORT, TestFixtures.create_short_questions())
        session.revealed = True

        embed = build_question_embed(session)

        self.assertIn("✅ Answer", field_names(embed))
        self.assertNotIn("⏱️ Time Remaining", field_names(embed))

    def test_results_embed(self):
        session = self.make_session(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())
        session.answers = {0: "B", 1: "A", 2: "D"}
        session.score = 2
        session.phase = Phase.COMPLETED
        session.result = ScoreKeeper().build_result(session)

        embed = build_results_embed(session)

        self.assertEqual(embed.title, "🎉 Quiz Completed!")
        self.assertEqual(embed.fields[0].value, "2/3 (67%)")
        self.assertIn("3. ❌ D (correct: C)", embed.fields[1].value)

    def test_idle_embed_while_loading(self):
        session = Session(kind=QuestionKind.TRUE_FALSE, topic="Physics", loading=True)

        embed = build_idle_embed(session)

        self.assertEqual(embed.title, "⏳ Generating questions...")
        self.assertIn("Physics", embed.description)


class TestExamViewAndPresenter(unittest.IsolatedAsyncioTestCase):
    """Test cases for buttons and message updates."""

    async def asyncSetUp(self):
        self.client = FakeStudyMateClient()
        self.engine = ExamEngine(self.client, settings=TestFixtures.create_settings(), tick_interval=None)
        self.channel = MockDiscordObjects.create_mock_channel()
        self.message = self.channel.send.return_value
        self.presenter = ExamPresenter(self.channel)
        self.presenter.engine = self.engine

    async def load(self, kind, questions):
        await self.engine.set_kind(kind)
        self.engine.change_hook = self.presenter.on_change
        await self.engine.load(questions)

    def button_labels(self, view):
        return [item.label for item in view.children]

    async def test_view_for_multiple_choice(self):
        await self.load(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())

        view = ExamView(self.engine)

        self.assertEqual(self.button_labels(view), ["A", "B", "C", "D", "◀ Previous", "Next ▶", "New quiz"])
        self.assertTrue(view.children[4].disabled)

    async def test_view_for_true_false_last_question(self):
        await self.load(QuestionKind.TRUE_FALSE, TestFixtures.create_true_false_questions())
        await self.engine.next()

        view = ExamView(self.engine)

        self.assertEqual(
            self.button_labels(view),
            ["True", "False", "Show answer", "◀ Previous", "Finish", "New quiz"]
        )

    async def test_button_click_records_answer(self):
        await self.load(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())
        view = ExamView(self.engine)
        interaction = MockDiscordObjects.create_mock_interaction()

        await view.children[1].callback(interaction)

        interaction.response.defer.assert_awaited_once()
        self.assertEqual(self.engine.session.answers, {0: "B"})

    async def test_presenter_sends_then_edits(self):
        await self.load(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())

        self.channel.send.assert_awaited_once()
        self.assertIsInstance(self.channel.send.call_args.kwargs['view'], ExamView)

        # A tick only changes the embed
        await self.engine.tick()
        self.assertNotIn('view', self.message.edit.call_args.kwargs)

        # An answer changes the buttons
        await self.engine.handle_key("C")
        self.assertIsInstance(self.message.edit.call_args.kwargs['view'], ExamView)

    async def test_presenter_removes_buttons_on_completion(self):
        await self.load(QuestionKind.TRUE_FALSE, TestFixtures.create_true_false_questions())

        await self.engine.next()
        await self.engine.next()

        kwargs = self.message.edit.call_args.kwargs
        self.assertIsNone(kwargs['view'])
        self.assertIn("Quiz Completed", kwargs['embed'].title)

    async def test_presenter_survives_discord_errors(self):
        self.channel.send.side_effect = ErrorScenarios.get_discord_http_error()

        await self.load(QuestionKind.SHORT, TestFixtures.create_short_questions())

        self.assertIsNone(self.presenter.message)
        self.assertEqual(self.engine.session.phase, Phase.IN_PROGRESS)

    async def test_reset_retires_previous_quiz_buttons(self):
        await self.load(QuestionKind.MULTIPLE_CHOICE, TestFixtures.create_mcq_questions())
        old_view = self.channel.send.call_args.kwargs['view']

        await self.presenter.reset()

        self.message.edit.assert_awaited_with(view=None)
        self.assertIsNone(self.presenter.message)

        # A new set is posted as a fresh message
        await self.engine.load(TestFixtures.create_mcq_questions())
        self.assertEqual(self.channel.send.await_count, 2)

        # Clicking "Next ▶" on the old message must not drive the new quiz
        interaction = MockDiscordObjects.create_mock_interaction()
        await old_view.children[5].callback(interaction)

        interaction.response.defer.assert_awaited_once()
        self.assertEqual(self.engine.session.current_index, 0)

    async def test_reset_survives_discord_errors(self):
        await self.load(QuestionKind.SHORT, TestFixtures.create_short_questions())
        self.message.edit.side_effect = ErrorScenarios.get_discord_http_error()

        await self.presenter.reset()

        self.assertIsNone(self.presenter.message)

    async def test_overlapping_renders_post_one_message(self):
        async def slow_send(**kwargs):
            await asyncio.sleep(0.01)
            return self.message

        self.channel.send.side_effect = slow_send
        session = self.engine.session

        await asyncio.gather(self.presenter.on_change(session), self.presenter.on_change(session))

        self.channel.send.assert_awaited_once()
        self.message.edit.assert_awaited_once()

    async def test_presenter_notify(self):
        await self.presenter.notify("error", "Something broke")

        self.channel.send.assert_awaited_once_with("❌ Something broke")


class TestStudyMateBotCommands(unittest.IsolatedAsyncioTestCase):
    """Test cases for slash command handlers."""

    async def asyncSetUp(self):
        self.bot = StudyMateBot({"bot": {"text_answers": True}})
        self.client = FakeStudyMateClient(TestFixtures.create_mcq_questions())
        self.bot.config_manager = ConfigManager()
        self.bot.quiz_controller = QuizController(self.client, self.bot.config_manager, tick_interval=None)
        self.interaction = MockDiscordObjects.create_mock_interaction()

    async def asyncTearDown(self):
        self.bot.quiz_controller.shutdown()

    def sent_embed(self):
        return self.interaction.response.send_message.call_args.kwargs['embed']

    async def test_intents_follow_text_answers(self):
        self.assertTrue(self.bot.intents.message_content)
        self.assertFalse(StudyMateBot().intents.message_content)

    async def test_help_command(self):
        await self.bot.handle_help(self.interaction)

        embed = self.sent_embed()
        self.assertEqual(embed.title, "📚 StudyMate Exam Quiz")
        self.assertIn("`/exam`", embed.fields[0].value)

    async def test_exam_command_starts_quiz(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq", "hard")

        self.interaction.response.defer.assert_awaited_once()
        self.interaction.followup.send.assert_awaited_once_with("✅ Q&A generated successfully!", ephemeral=True)
        engine = self.bot.quiz_controller.get_engine(self.interaction.channel_id)
        self.assertEqual(engine.session.phase, Phase.IN_PROGRESS)
        self.assertEqual(engine.session.difficulty, "hard")
        self.interaction.channel.send.assert_awaited()

    async def test_exam_command_rejects_bad_count(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq", count=50)

        embed = self.sent_embed()
        self.assertEqual(embed.title, "❌ Invalid Question Count")
        self.client.generate_questions.assert_not_called()

    async def test_typed_answers_are_routed(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq")
        message = MockDiscordObjects.create_mock_message(content="b")
        message.author = Mock()
        message.author.bot = False
        message.channel = self.interaction.channel

        await self.bot.on_message(message)

        engine = self.bot.quiz_controller.get_engine(self.interaction.channel_id)
        self.assertEqual(engine.session.answers, {0: "B"})

    async def test_bot_messages_are_ignored(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq")
        message = MockDiscordObjects.create_mock_message(content="b")
        message.author = Mock()
        message.author.bot = True
        message.channel = self.interaction.channel

        await self.bot.on_message(message)

        engine = self.bot.quiz_controller.get_engine(self.interaction.channel_id)
        self.assertEqual(engine.session.answers, {})

    async def test_status_without_quiz(self):
        await self.bot.handle_status(self.interaction)

        self.assertEqual(self.sent_embed().title, "ℹ️ No Active Quiz")

    async def test_status_during_quiz(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq")
        self.interaction.response.send_message.reset_mock()

        await self.bot.handle_status(self.interaction)

        embed = self.sent_embed()
        self.assertEqual(embed.title, "📊 Quiz Status")
        self.assertIn("Question 1/3", embed.fields[0].value)

    async def test_stop_command(self):
        await self.bot.handle_exam(self.interaction, "Astronomy", "mcq")

        await self.bot.handle_stop(self.interaction)

        self.assertEqual(self.sent_embed().title, "🛑 Quiz Stopped")
        self.assertIsNone(self.bot.quiz_controller.get_engine(self.interaction.channel_id))
        self.assertNotIn(self.interaction.channel_id, self.bot.presenters)

    async def test_set_timer_command_validation(self):
        await self.bot.handle_setting(self.interaction, self.bot.config_manager.set_timer_duration(2))

        embed = self.sent_embed()
        self.assertEqual(embed.title, "❌ Invalid Setting")
        self.assertIn("Minimum is 5 seconds", embed.description)

    async def test_set_questions_command(self):
        await self.bot.handle_setting(self.interaction, self.bot.config_manager.set_question_count(10))

        self.assertEqual(self.sent_embed().title, "⚙️ Settings Updated")
        self.assertEqual(self.bot.config_manager.get_question_count(), 10)


if __name__ == '__main__':
    unittest.main()
