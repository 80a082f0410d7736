"""
Quiz session controller for StudyMate.
Owns one exam engine per Discord channel and turns engine operations into
user-facing result dictionaries.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from .api_client import StudyMateClient
from .config_manager import ConfigManager
from .models import Phase, QuestionKind, UserContext
from .quiz_engine import ChangeHook, ExamEngine, NotifyHook


class QuizControllerError(Exception):
    """Base exception for quiz controller errors."""
    pass


class SessionNotFoundError(QuizControllerError):
    """Raised when attempting to operate on a non-existent session."""
    pass


class GenerationInProgressError(QuizControllerError):
    """Raised when a new quiz is requested while questions are still being generated."""
    pass


class QuizController:
    """
    Orchestrates exam sessions across Discord channels.

    Each channel has at most one engine. Engines are created on first use and
    keep their session until the quiz is stopped.
    """

    def __init__(
        self,
        client: StudyMateClient,
        config_manager: ConfigManager,
        tick_interval: Optional[float] = 1.0
    ):
        """
        Initialize the quiz controller.

        Args:
            client: Backend client used by every engine
            config_manager: Source of settings for new sessions
            tick_interval: Seconds between timer ticks, None for manual ticking
        """
        self.logger = logging.getLogger(__name__)
        self.client = client
        self.config_manager = config_manager
        self.tick_interval = tick_interval

        # Engines mapped by channel ID
        self._engines: Dict[int, ExamEngine] = {}

        # Error tracking per channel
        self._session_errors: Dict[int, List[str]] = {}

        self.logger.info("QuizController initialized")

    def get_engine(self, channel_id: int) -> Optional[ExamEngine]:
        return self._engines.get(channel_id)

    def ensure_engine(
        self,
        channel_id: int,
        notify: Optional[NotifyHook] = None,
        on_change: Optional[ChangeHook] = None
    ) -> ExamEngine:
        """
        Get the channel's engine, creating it with current settings if needed.

        Hooks passed here replace the engine's presentation hooks.
        """
        engine = self._engines.get(channel_id)
        if engine is None:
            engine = ExamEngine(
                self.client,
                settings=self.config_manager.get_exam_settings(),
                notify=notify,
                on_change=on_change,
                tick_interval=self.tick_interval
            )
            self._engines[channel_id] = engine
            self.logger.info(f"Created exam engine for channel {channel_id} (session {engine.session.session_id})")
        else:
            if notify is not None:
                engine.notify_hook = notify
            if on_change is not None:
                engine.change_hook = on_change
        return engine

    def has_active_session(self, channel_id: int) -> bool:
        engine = self._engines.get(channel_id)
        return engine is not None and engine.session.phase is Phase.IN_PROGRESS

    def get_session_state(self, channel_id: int) -> Phase:
        engine = self._engines.get(channel_id)
        if engine is None:
            return Phase.IDLE
        return engine.session.phase

    async def start_quiz(
        self,
        channel_id: int,
        topic: str,
        kind,
        user: UserContext,
        difficulty: Optional[str] = None,
        count: Optional[int] = None,
        language: Optional[str] = None,
        notify: Optional[NotifyHook] = None,
        on_change: Optional[ChangeHook] = None
    ) -> Dict[str, Any]:
        """
        Generate a new question set for a channel and start the quiz.

        Returns:
            Dictionary with operation results and error information
        """
        try:
            question_kind = QuestionKind.from_value(kind)
            engine = self.ensure_engine(channel_id, notify=notify, on_change=on_change)

            if engine.session.loading:
                raise GenerationInProgressError(f"Generation already running in channel {channel_id}")

            # Settings may have changed since the engine was created
            self._refresh_settings(engine)
            await engine.set_kind(question_kind)

            outcome = await engine.generate(
                topic,
                difficulty=difficulty,
                count=count,
                language=language,
                user=user
            )

            if not outcome.success:
                self.logger.warning(f"Quiz start failed for channel {channel_id}: {outcome.message}")
                return {
                    'success': False,
                    'message': outcome.message,
                    'user_message': f"❌ {outcome.message}",
                    'session_info': self.get_session_progress(channel_id)
                }

            self._cleanup_session_errors(channel_id)
            return {
                'success': True,
                'message': outcome.message,
                'user_message': f"✅ {outcome.message}",
                'session_info': self.get_session_progress(channel_id)
            }

        except Exception as e:
            return self._handle_session_error(channel_id, e, "start_quiz")

    async def start_new_quiz(self, channel_id: int) -> Dict[str, Any]:
        """Reset the channel's session to idle."""
        try:
            engine = self._engines.get(channel_id)
            if engine is None:
                raise SessionNotFoundError(f"No quiz session in channel {channel_id}")

            await engine.start_new_quiz()
            return {
                'success': True,
                'message': "Session reset for a new quiz",
                'user_message': "🆕 Ready for a new quiz! Use `/exam` to generate questions.",
                'session_info': self.get_session_progress(channel_id)
            }

        except Exception as e:
            return self._handle_session_error(channel_id, e, "start_new_quiz")

    async def stop_quiz(self, channel_id: int) -> Dict[str, Any]:
        """
        Stop a channel's quiz and discard its engine.

        Returns:
            Dictionary with operation result and final session info
        """
        try:
            session_info = self.get_session_progress(channel_id)
            engine = self._engines.pop(channel_id, None)

            if engine is None:
                return {
                    'success': False,
                    'message': "No quiz session to stop in this channel",
                    'user_message': "ℹ️ No active quiz found in this channel",
                    'session_info': None
                }

            engine.shutdown()
            await engine.start_new_quiz()
            self._cleanup_session_errors(channel_id)

            self.logger.info(
                f"Stopped and cleaned up session for channel {channel_id}",
                extra={
                    'event_type': 'session_stopped',
                    'channel_id': channel_id,
                    'timestamp': time.time()
                }
            )
            return {
                'success': True,
                'message': "Quiz stopped successfully",
                'user_message': "🛑 Quiz stopped",
                'session_info': session_info
            }

        except Exception as e:
            return self._handle_session_error(channel_id, e, "stop_quiz")

    def get_session_progress(self, channel_id: int) -> Optional[Dict[str, Any]]:
        """
        Get progress information for a channel's session.

        Returns:
            Dictionary with progress info, None if the channel has no engine
        """
        engine = self._engines.get(channel_id)
        if engine is None:
            return None

        progress = engine.get_status()
        progress['settings'] = {
            'timer_duration': engine.navigation.timer_duration,
            'question_count': engine.settings.question_count,
            'language': engine.settings.language,
        }
        return progress

    def validate_session_state(self, channel_id: int) -> Dict[str, Any]:
        """
        Validate the state of a session and return diagnostic information.

        Returns:
            Dictionary with validation results and session state info
        """
        engine = self._engines.get(channel_id)

        if engine is None:
            return {
                'valid': True,
                'state': Phase.IDLE.value,
                'issues': []
            }

        session = engine.session
        issues = []

        if session.phase is Phase.IN_PROGRESS:
            if not session.questions:
                issues.append("Session in progress has no questions")
            elif not 0 <= session.current_index < len(session.questions):
                issues.append("Current question index is out of bounds")
            if session.kind.is_timed and engine.tick_interval is not None and not engine.timer.is_running:
                issues.append("Timed question has no running timer")

        if session.phase is not Phase.IN_PROGRESS and engine.timer.is_running:
            issues.append("Timer running outside an in-progress session")

        if session.phase is Phase.IDLE and (session.questions or session.answers):
            issues.append("Idle session still holds questions or answers")

        for index in session.answers:
            if not 0 <= index < len(session.questions):
                issues.append(f"Answer recorded for missing question {index}")

        return {
            'valid': len(issues) == 0,
            'state': session.phase.value,
            'issues': issues,
            'session_info': self.get_session_progress(channel_id)
        }

    def get_all_active_sessions(self) -> Dict[int, Dict[str, Any]]:
        """
        Get information about all in-progress sessions.

        Returns:
            Dictionary mapping channel IDs to session progress info
        """
        return {
            channel_id: self.get_session_progress(channel_id)
            for channel_id, engine in self._engines.items()
            if engine.session.phase is Phase.IN_PROGRESS
        }

    def get_error_summary(self, channel_id: int) -> Dict[str, Any]:
        return {
            'channel_id': channel_id,
            'errors': self._session_errors.get(channel_id, []),
            'error_count': len(self._session_errors.get(channel_id, [])),
            'has_errors': channel_id in self._session_errors
        }

    def shutdown(self) -> None:
        """Stop every running timer."""
        for engine in self._engines.values():
            engine.shutdown()
        self.logger.info(f"Shut down {len(self._engines)} exam engines")

    def _refresh_settings(self, engine: ExamEngine) -> None:
        settings = self.config_manager.get_exam_settings()
        engine.settings = settings
        engine.navigation.timer_duration = settings.timer_duration

    def _handle_session_error(self, channel_id: int, error: Exception, operation: str) -> Dict[str, Any]:
        """
        Handle session errors with logging.

        Returns:
            Dictionary with error handling results
        """
        error_msg = f"Error in {operation} for channel {channel_id}: {error}"
        self.logger.error(error_msg, exc_info=True)

        self._session_errors.setdefault(channel_id, []).append(f"{operation}: {error}")
        # Keep only the last 10 errors
        self._session_errors[channel_id] = self._session_errors[channel_id][-10:]

        return {
            'success': False,
            'error': str(error),
            'operation': operation,
            'user_message': self._get_user_friendly_error_message(error, operation),
            'session_info': self.get_session_progress(channel_id)
        }

    def _get_user_friendly_error_message(self, error: Exception, operation: str) -> str:
        if isinstance(error, GenerationInProgressError):
            return "⏳ Questions are still being generated for this channel. Please wait."

        elif isinstance(error, SessionNotFoundError):
            return "❌ No quiz found in this channel. Start one with `/exam`."

        elif isinstance(error, ValueError) and "kind" in str(error).lower():
            return "❌ Unknown question type. Choose short, mcq or truefalse."

        else:
            return f"❌ An unexpected error occurred during {operation}. Please try again."

    def _cleanup_session_errors(self, channel_id: int) -> None:
        if channel_id in self._session_errors:
            del self._session_errors[channel_id]
