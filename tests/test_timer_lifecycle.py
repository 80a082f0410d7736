"""
Unit tests for countdown timer lifecycle: task cancellation on navigation,
stale tick rejection and cleanup on completion.
"""
import unittest
import asyncio
from unittest.mock import AsyncMock, patch

from studymate.models import Phase, QuestionKind
from studymate.quiz_engine import ExamEngine, QuizTimer, TimerLifecycleLogger
from tests.test_fixtures import FakeStudyMateClient, TestFixtures

TICK = 0.01


class TestQuizTimer(unittest.IsolatedAsyncioTestCase):
    """Test cases for the recurring tick task."""

    async def test_timer_stops_when_callback_returns_false(self):
        timer = QuizTimer("session-1", tick_interval=TICK)
        on_tick = AsyncMock(side_effect=[True, False])

        timer.start(7, 30, on_tick)
        task = timer._task
        await asyncio.wait_for(task, timeout=1.0)

        self.assertEqual(on_tick.await_count, 2)
        on_tick.assert_awaited_with(7)
        self.assertFalse(timer.is_running)
        self.assertIsNone(timer.epoch)

    async def test_restart_cancels_previous_task(self):
        timer = QuizTimer("session-1", tick_interval=TICK)
        on_tick = AsyncMock(return_value=True)

        timer.start(1, 30, on_tick)
        first_task = timer._task
        timer.start(2, 30, on_tick)

        await asyncio.gather(first_task, return_exceptions=True)
        self.assertTrue(first_task.cancelled())
        self.assertTrue(timer.is_running)
        self.assertEqual(timer.epoch, 2)

        self.assertTrue(timer.cancel())
        self.assertFalse(timer.cancel())

    async def test_cancel_without_task(self):
        timer = QuizTimer("session-1")

        self.assertFalse(timer.cancel())
        self.assertFalse(timer.is_running)

    @patch('studymate.quiz_engine.TimerLifecycleLogger.log_timer_error')
    async def test_callback_error_is_logged(self, mock_log_error):
        timer = QuizTimer("session-1", tick_interval=TICK)
        on_tick = AsyncMock(side_effect=RuntimeError("boom"))

        timer.start(1, 30, on_tick)
        task = timer._task
        await asyncio.gather(task, return_exceptions=True)

        mock_log_error.assert_called_once()
        self.assertEqual(mock_log_error.call_args.args[1], "countdown_execution_error")
        self.assertFalse(timer.is_running)


class TestEngineTimerLifecycle(unittest.IsolatedAsyncioTestCase):
    """Test cases for the engine running its own countdown task."""

    async def asyncSetUp(self):
        self.client = FakeStudyMateClient()
        self.engine = ExamEngine(
            self.client,
            settings=TestFixtures.create_settings(timer_duration=2),
            tick_interval=TICK
        )

    async def asyncTearDown(self):
        self.engine.shutdown()

    async def wait_for_phase(self, phase, timeout=2.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while self.engine.session.phase is not phase:
            if asyncio.get_running_loop().time() > deadline:
                self.fail(f"Session did not reach {phase} in time")
            await asyncio.sleep(TICK)

    async def test_timed_question_starts_timer(self):
        await self.engine.set_kind(QuestionKind.MULTIPLE_CHOICE)
        await self.engine.load(TestFixtures.create_mcq_questions())

        self.assertTrue(self.engine.timer.is_running)
        self.assertEqual(self.engine.timer.epoch, self.engine.session.question_epoch)

    async def test_short_question_has_no_timer(self):
        await self.engine.load(TestFixtures.create_short_questions())

        self.assertFalse(self.engine.timer.is_running)

    async def test_navigation_replaces_timer_task(self):
        await self.engine.set_kind(QuestionKind.MULTIPLE_CHOICE)
        await self.engine.load(TestFixtures.create_mcq_questions())
        first_task = self.engine.timer._task

        await self.engine.next()
        second_task = self.engine.timer._task

        await asyncio.gather(first_task, return_exceptions=True)
        self.assertTrue(first_task.cancelled())
        self.assertIsNot(first_task, second_task)
        self.assertFalse(second_task.done())

    async def test_expiry_runs_through_whole_quiz_once(self):
        await self.engine.set_kind(QuestionKind.TRUE_FALSE)
        await self.engine.load(TestFixtures.create_true_false_questions())

        await self.wait_for_phase(Phase.COMPLETED)
        # Give any leftover task a chance to misbehave
        await asyncio.sleep(TICK * 5)

        self.assertEqual(self.engine.session.score, 0)
        self.client.save_result.assert_awaited_once()
        self.assertFalse(self.engine.timer.is_running)

    async def test_auto_advance_keeps_single_timer(self):
        await self.engine.set_kind(QuestionKind.MULTIPLE_CHOICE)
        await self.engine.load(TestFixtures.create_mcq_questions())

        while self.engine.session.current_index == 0:
            await asyncio.sleep(TICK)

        self.assertEqual(self.engine.session.phase, Phase.IN_PROGRESS)
        self.assertTrue(self.engine.timer.is_running)
        self.assertEqual(self.engine.timer.epoch, self.engine.session.question_epoch)

    async def test_start_new_quiz_stops_timer(self):
        await self.engine.set_kind(QuestionKind.MULTIPLE_CHOICE)
        await self.engine.load(TestFixtures.create_mcq_questions())
        task = self.engine.timer._task

        await self.engine.start_new_quiz()

        await asyncio.gather(task, return_exceptions=True)
        self.assertFalse(self.engine.timer.is_running)
        self.assertEqual(self.engine.session.phase, Phase.IDLE)
        self.client.save_result.assert_not_called()

    async def test_shutdown_stops_timer_without_touching_session(self):
        await self.engine.set_kind(QuestionKind.MULTIPLE_CHOICE)
        await self.engine.load(TestFixtures.create_mcq_questions())

        self.engine.shutdown()

        self.assertFalse(self.engine.timer.is_running)
        self.assertEqual(self.engine.session.phase, Phase.IN_PROGRESS)


class TestTimerLifecycleLogger(unittest.TestCase):
    """Test cases for timer setup outside a loop and structured logging."""

    def test_start_requires_running_loop(self):
        timer = QuizTimer("session-1")

        with self.assertRaises(RuntimeError):
            timer.start(1, 30, AsyncMock())

    def test_log_timer_start_includes_extra_fields(self):
        with self.assertLogs('studymate.quiz_engine', level='INFO') as captured:
            TimerLifecycleLogger.log_timer_start("session-1", 30, 4)

        record = captured.records[0]
        self.assertEqual(record.event_type, 'timer_countdown_start')
        self.assertEqual(record.session_id, "session-1")
        self.assertEqual(record.epoch, 4)

    def test_log_stale_tick_is_warning(self):
        with self.assertLogs('studymate.quiz_engine', level='WARNING') as captured:
            TimerLifecycleLogger.log_stale_tick("session-1", 2, 3)

        self.assertIn("stale tick", captured.output[0])
        self.assertEqual(captured.records[0].event_type, 'timer_race_condition')


if __name__ == '__main__':
    unittest.main()
