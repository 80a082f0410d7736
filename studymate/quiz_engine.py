"""
Quiz engine core logic for StudyMate exam sessions.
Handles the question set, navigation, countdown timing, input routing and scoring
of a single quiz session.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .api_client import GenerationError, PersistenceError
from .models import (
    ExamSettings,
    GenerationRequest,
    Phase,
    Question,
    QuestionKind,
    QuizResult,
    Session,
    UserContext,
)

# Set up logger for timer operations
logger = logging.getLogger(__name__)

GENERATION_SUCCESS_MESSAGE = "Q&A generated successfully!"
GENERATION_FAILURE_MESSAGE = "Failed to generate Q&A. Please try again."
EMPTY_TOPIC_MESSAGE = "Please enter a topic to generate Q&A."
GENERATION_BUSY_MESSAGE = "Questions are already being generated. Please wait."
SHORT_SET_COMPLETE_MESSAGE = "You've completed this set of short questions!"
PERSISTENCE_FAILURE_MESSAGE = "Quiz finished, but your score could not be saved."


class TimerLifecycleLogger:
    """Structured logging for timer lifecycle events."""

    @staticmethod
    def log_timer_start(session_id: str, duration: int, epoch: int) -> None:
        """Log countdown start for a question."""
        logger.info(
            f"Timer lifecycle: COUNTDOWN_START - Session {session_id}, Duration {duration}s, Epoch {epoch}",
            extra={
                'event_type': 'timer_countdown_start',
                'session_id': session_id,
                'duration': duration,
                'epoch': epoch,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_update(session_id: str, remaining_time: int, total_duration: int) -> None:
        """Log timer update events (throttled to avoid spam)."""
        if remaining_time % 10 == 0 or remaining_time <= 5:
            progress_percent = ((total_duration - remaining_time) / total_duration) * 100 if total_duration else 100.0
            logger.debug(
                f"Timer lifecycle: UPDATE - Session {session_id}, Remaining {remaining_time}s ({progress_percent:.1f}% complete)",
                extra={
                    'event_type': 'timer_update',
                    'session_id': session_id,
                    'remaining_time': remaining_time,
                    'total_duration': total_duration,
                    'progress_percent': progress_percent,
                    'timestamp': time.time()
                }
            )

    @staticmethod
    def log_timer_completion(session_id: str, completion_type: str) -> None:
        """Log timer completion (natural expiry, stop or cancellation)."""
        logger.info(
            f"Timer lifecycle: COMPLETED - Session {session_id}, Type {completion_type}",
            extra={
                'event_type': 'timer_completed',
                'session_id': session_id,
                'completion_type': completion_type,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_state_transition(session_id: str, from_state: str, to_state: str, reason: str = None) -> None:
        """Log timer state transitions."""
        logger.debug(
            f"Timer lifecycle: STATE_TRANSITION - Session {session_id}, {from_state} -> {to_state}" +
            (f" ({reason})" if reason else ""),
            extra={
                'event_type': 'timer_state_transition',
                'session_id': session_id,
                'from_state': from_state,
                'to_state': to_state,
                'reason': reason,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_timer_error(session_id: str, error_type: str, error_message: str, operation: str) -> None:
        """Log timer-related errors with context."""
        logger.error(
            f"Timer lifecycle: ERROR - Session {session_id}, Operation {operation}, Type {error_type}: {error_message}",
            extra={
                'event_type': 'timer_error',
                'session_id': session_id,
                'error_type': error_type,
                'error_message': error_message,
                'operation': operation,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_stale_tick(session_id: str, tick_epoch: int, current_epoch: int) -> None:
        """Log a tick that arrived for a question that is no longer current."""
        logger.warning(
            f"Timer lifecycle: RACE_CONDITION - Session {session_id}: stale tick for epoch {tick_epoch}, current epoch {current_epoch}",
            extra={
                'event_type': 'timer_race_condition',
                'session_id': session_id,
                'tick_epoch': tick_epoch,
                'current_epoch': current_epoch,
                'timestamp': time.time()
            }
        )


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class QuizTimer:
    """
    Cancellable recurring tick task for the current question.

    The timer does not count by itself: every ``tick_interval`` seconds it calls
    ``on_tick(epoch)`` and stops as soon as the callback returns False. Each
    ``start`` cancels the previous task first, so at most one recurring task
    exists per session.
    """

    def __init__(self, session_id: str, tick_interval: float = 1.0):
        self._session_id = session_id
        self._tick_interval = tick_interval
        self._task: Optional[asyncio.Task] = None
        self._epoch: Optional[int] = None

    def start(self, epoch: int, duration: int, on_tick: Callable[[int], Awaitable[bool]]) -> None:
        """
        Start ticking for the question identified by ``epoch``.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        self.cancel(reason="restart")
        loop = asyncio.get_running_loop()
        self._epoch = epoch
        self._task = loop.create_task(self._run(epoch, on_tick))
        TimerLifecycleLogger.log_timer_start(self._session_id, duration, epoch)

    def cancel(self, reason: str = "cancel requested") -> bool:
        """
        Cancel the recurring task.

        A task that cancels itself from inside its own tick callback is only
        detached; it ends on its own once the callback returns.

        Returns:
            True if a running task was cancelled or detached
        """
        task, self._task = self._task, None
        self._epoch = None
        if task is None or task.done():
            return False
        if task is not _current_task():
            task.cancel()
        TimerLifecycleLogger.log_timer_state_transition(self._session_id, "running", "cancelled", reason)
        return True

    async def _run(self, epoch: int, on_tick: Callable[[int], Awaitable[bool]]) -> None:
        try:
            while True:
                await asyncio.sleep(self._tick_interval)
                if not await on_tick(epoch):
                    break
            TimerLifecycleLogger.log_timer_completion(self._session_id, "stopped")
        except asyncio.CancelledError:
            TimerLifecycleLogger.log_timer_completion(self._session_id, "asyncio_cancelled")
            raise
        except Exception as e:
            TimerLifecycleLogger.log_timer_error(self._session_id, "countdown_execution_error", str(e), "tick")
            raise
        finally:
            if self._task is _current_task():
                self._task = None
                self._epoch = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def epoch(self) -> Optional[int]:
        return self._epoch


class QuestionSetHolder:
    """Stores the generated question set and the user's answers."""

    def __init__(self, session: Session):
        self.session = session

    def load(self, questions: List[Question]) -> None:
        """
        Replace the current question set.

        An empty list leaves the session idle, which signals a failed generation.
        """
        session = self.session
        session.questions = list(questions)
        session.answers = {}
        session.current_index = 0
        session.revealed = False
        session.score = 0
        session.result = None
        session.phase = Phase.IN_PROGRESS if session.questions else Phase.IDLE
        session.started_at = datetime.now() if session.questions else None

    def record_answer(self, index: int, value: str) -> None:
        """
        Record (or overwrite) the answer for a question.

        Raises:
            IndexError: If index does not refer to a loaded question
        """
        if not 0 <= index < len(self.session.questions):
            raise IndexError(f"No question at index {index}")
        self.session.answers[index] = value

    def clear(self) -> None:
        """Discard questions, answers and score and return to idle."""
        session = self.session
        session.questions = []
        session.answers = {}
        session.current_index = 0
        session.revealed = False
        session.score = 0
        session.result = None
        session.phase = Phase.IDLE
        session.started_at = None


class Position(Enum):
    ON_FIRST = "onFirst"
    ON_MIDDLE = "onMiddle"
    ON_LAST = "onLast"


class NavigationOutcome(Enum):
    ADVANCED = "advanced"
    RETREATED = "retreated"
    WRAPPED = "wrapped"
    FINISH = "finish"
    UNCHANGED = "unchanged"


class NavigationController:
    """Moves through the question set and controls answer reveal."""

    def __init__(self, session: Session, timer_duration: int = 30):
        self.session = session
        self.timer_duration = timer_duration

    @property
    def position(self) -> Position:
        session = self.session
        if session.current_index >= len(session.questions) - 1:
            return Position.ON_LAST
        if session.current_index == 0:
            return Position.ON_FIRST
        return Position.ON_MIDDLE

    def next(self) -> NavigationOutcome:
        """
        Advance to the next question.

        On the last question short sets wrap back to the first question, while
        timed kinds report FINISH and leave completion to the caller.
        """
        session = self.session
        if session.phase is not Phase.IN_PROGRESS:
            return NavigationOutcome.UNCHANGED
        if self.position is Position.ON_LAST:
            if session.kind is QuestionKind.SHORT:
                self._enter(0)
                return NavigationOutcome.WRAPPED
            return NavigationOutcome.FINISH
        self._enter(session.current_index + 1)
        return NavigationOutcome.ADVANCED

    def previous(self) -> NavigationOutcome:
        session = self.session
        if session.phase is not Phase.IN_PROGRESS or session.current_index == 0:
            return NavigationOutcome.UNCHANGED
        self._enter(session.current_index - 1)
        return NavigationOutcome.RETREATED

    def toggle_reveal(self) -> bool:
        """
        Show or hide the answer of the current question.

        Returns:
            True if the reveal state changed
        """
        session = self.session
        if session.phase is not Phase.IN_PROGRESS or session.kind is QuestionKind.MULTIPLE_CHOICE:
            return False
        session.revealed = not session.revealed
        return True

    def reset_timer(self) -> None:
        self.session.remaining_seconds = self.timer_duration

    def _enter(self, index: int) -> None:
        self.session.current_index = index
        self.session.revealed = False
        self.reset_timer()


class RouterAction(Enum):
    SELECT = "select"
    NEXT = "next"
    PREVIOUS = "previous"


@dataclass(frozen=True)
class RoutedInput:
    """A routed user input; ``value`` is set for SELECT actions."""
    action: RouterAction
    value: Optional[str] = None


class InputRouter:
    """Maps keyboard and pointer input to session actions."""

    MULTIPLE_CHOICE_KEYS = {
        'A': 'A', 'B': 'B', 'C': 'C', 'D': 'D',
        '1': 'A', '2': 'B', '3': 'C', '4': 'D',
    }
    TRUE_FALSE_KEYS = {
        'T': 'true', 'F': 'false',
        '1': 'true', '2': 'false',
        'TRUE': 'true', 'FALSE': 'false',
    }
    NAVIGATION_KEYS = {
        'ENTER': RouterAction.NEXT,
        'ARROWRIGHT': RouterAction.NEXT,
        'ARROWLEFT': RouterAction.PREVIOUS,
        # Text aliases for chat front-ends
        'NEXT': RouterAction.NEXT,
        'RIGHT': RouterAction.NEXT,
        'PREV': RouterAction.PREVIOUS,
        'PREVIOUS': RouterAction.PREVIOUS,
        'BACK': RouterAction.PREVIOUS,
        'LEFT': RouterAction.PREVIOUS,
    }

    def route_key(self, session: Session, key: str) -> Optional[RoutedInput]:
        """
        Resolve a key press against the current session state.

        Returns:
            The routed input, or None when the key is not accepted right now
        """
        if session.phase is not Phase.IN_PROGRESS or session.current_question is None:
            return None
        normalized = str(key or "").strip().upper()
        if not normalized:
            return None

        if normalized in self.NAVIGATION_KEYS:
            return RoutedInput(self.NAVIGATION_KEYS[normalized])

        if session.kind is QuestionKind.MULTIPLE_CHOICE:
            letter = self.MULTIPLE_CHOICE_KEYS.get(normalized)
            return self._select_option(session, letter)

        if session.kind is QuestionKind.TRUE_FALSE:
            value = self.TRUE_FALSE_KEYS.get(normalized)
            if value is not None:
                return RoutedInput(RouterAction.SELECT, value)
        return None

    def route_click(self, session: Session, value: str) -> Optional[RoutedInput]:
        """Resolve a pointer click on an option or a True/False control."""
        if session.phase is not Phase.IN_PROGRESS or session.current_question is None:
            return None
        normalized = str(value or "").strip()
        if session.kind is QuestionKind.MULTIPLE_CHOICE:
            return self._select_option(session, normalized.upper())
        if session.kind is QuestionKind.TRUE_FALSE and normalized.lower() in ('true', 'false'):
            return RoutedInput(RouterAction.SELECT, normalized.lower())
        return None

    @staticmethod
    def _select_option(session: Session, letter: Optional[str]) -> Optional[RoutedInput]:
        if letter is None or session.current_question.get_option(letter) is None:
            return None
        return RoutedInput(RouterAction.SELECT, letter)


class ScoreKeeper:
    """Computes correctness and builds the result of a finished quiz."""

    @staticmethod
    def is_correct(answer: Optional[str], question: Question) -> bool:
        if answer is None:
            return False
        return answer.strip().casefold() == question.correct_answer.strip().casefold()

    def compute_score(self, session: Session) -> int:
        return sum(
            1 for index, question in enumerate(session.questions)
            if self.is_correct(session.answers.get(index), question)
        )

    @staticmethod
    def percentage(score: int, total: int) -> int:
        """Percentage rounded half up."""
        if total <= 0:
            return 0
        return (score * 200 + total) // (2 * total)

    def build_result(self, session: Session) -> QuizResult:
        total = len(session.questions)
        return QuizResult(
            topic=session.topic,
            score=session.score,
            total_questions=total,
            percentage=self.percentage(session.score, total),
            kind=session.kind,
            difficulty=session.difficulty,
            celebrate=session.score > total / 2,
        )


@dataclass
class GenerationOutcome:
    """Result of a generation request as reported to the caller."""
    success: bool
    message: str
    stale: bool = False


NotifyHook = Callable[[str, str], Any]
ChangeHook = Callable[[Session], Any]


class ExamEngine:
    """
    Drives one quiz session.

    The engine owns the Session and coordinates the question set holder,
    navigation, countdown timer, input router and scoring. Presentation layers
    observe it through two hooks: ``on_change(session)`` after every state
    mutation and ``notify(level, message)`` for user-facing notices. Either
    hook may be a coroutine function.

    Pass ``tick_interval=None`` to drive the countdown manually through
    :meth:`tick` instead of a background task.
    """

    def __init__(
        self,
        client,
        user: Optional[UserContext] = None,
        settings: Optional[ExamSettings] = None,
        notify: Optional[NotifyHook] = None,
        on_change: Optional[ChangeHook] = None,
        tick_interval: Optional[float] = 1.0
    ):
        self.client = client
        self.user = user
        self.settings = settings or ExamSettings()
        self.notify_hook = notify
        self.change_hook = on_change
        self.tick_interval = tick_interval

        self.session = Session(
            difficulty=self.settings.difficulty,
            remaining_seconds=self.settings.timer_duration
        )
        self.holder = QuestionSetHolder(self.session)
        self.navigation = NavigationController(self.session, self.settings.timer_duration)
        self.router = InputRouter()
        self.scorer = ScoreKeeper()
        self.timer = QuizTimer(self.session.session_id, tick_interval or 1.0)

    # Generation and lifecycle

    async def generate(
        self,
        topic: str,
        difficulty: Optional[str] = None,
        count: Optional[int] = None,
        language: Optional[str] = None,
        user: Optional[UserContext] = None
    ) -> GenerationOutcome:
        """
        Request a new question set and load it.

        Backend failures never raise: the session stays idle and the outcome
        carries the message to show. Any other error propagates, with the
        loading flag already cleared. A response that arrives after the user
        started a new quiz or switched kind is discarded.
        """
        session = self.session
        if session.loading:
            logger.warning(f"Generation already in progress for session {session.session_id}")
            return GenerationOutcome(False, GENERATION_BUSY_MESSAGE)

        topic = (topic or "").strip()
        if not topic:
            return GenerationOutcome(False, EMPTY_TOPIC_MESSAGE)

        if user is not None:
            self.user = user

        self._discard_question_set()
        session.generation_token += 1
        token = session.generation_token
        session.loading = True
        session.topic = topic
        session.difficulty = difficulty or self.settings.difficulty
        await self._emit_change()

        request = GenerationRequest(
            topic=topic,
            difficulty=session.difficulty,
            kind=session.kind,
            count=count or self.settings.question_count,
            language=language or self.settings.language,
        )
        logger.info(
            f"Requesting {request.count} {session.kind.value} questions on '{topic}' for session {session.session_id}",
            extra={
                'event_type': 'generation_requested',
                'session_id': session.session_id,
                'token': token,
                'timestamp': time.time()
            }
        )

        try:
            questions = await self.client.generate_questions(request, self.user)
        except GenerationError as e:
            if token != session.generation_token:
                logger.info(f"Ignoring failed generation {token} for session {session.session_id}: superseded")
                return GenerationOutcome(False, GENERATION_FAILURE_MESSAGE, stale=True)
            logger.error(f"Error generating Q&A for session {session.session_id}: {e}")
            session.loading = False
            await self._emit_change()
            return GenerationOutcome(False, GENERATION_FAILURE_MESSAGE)
        finally:
            # Unexpected errors and cancellation propagate, but must not leave the session busy
            if token == session.generation_token:
                session.loading = False

        if token != session.generation_token:
            logger.info(
                f"Discarding stale generation response {token} for session {session.session_id}",
                extra={
                    'event_type': 'generation_discarded',
                    'session_id': session.session_id,
                    'token': token,
                    'current_token': session.generation_token,
                    'timestamp': time.time()
                }
            )
            return GenerationOutcome(False, GENERATION_FAILURE_MESSAGE, stale=True)

        await self.load(questions)
        if session.phase is not Phase.IN_PROGRESS:
            return GenerationOutcome(False, GENERATION_FAILURE_MESSAGE)
        return GenerationOutcome(True, GENERATION_SUCCESS_MESSAGE)

    async def load(self, questions: List[Question]) -> None:
        """Replace the question set and start the first question."""
        self.timer.cancel(reason="question set loaded")
        self.holder.load(questions)
        await self._enter_question()
        logger.info(f"Loaded {len(questions)} questions into session {self.session.session_id}")

    async def start_new_quiz(self) -> None:
        """Reset the session to idle, discarding any outstanding generation."""
        self._discard_question_set()
        self.session.generation_token += 1
        self.session.loading = False
        self.session.topic = ""
        logger.info(f"Session {self.session.session_id} reset for a new quiz")
        await self._emit_change()

    async def set_kind(self, kind) -> bool:
        """
        Change the question kind. Any change discards the current set.

        Returns:
            True if the kind changed
        """
        kind = QuestionKind.from_value(kind)
        if kind is self.session.kind:
            return False
        self._discard_question_set()
        self.session.kind = kind
        self.session.generation_token += 1
        self.session.loading = False
        logger.info(f"Session {self.session.session_id} switched to {kind.value} questions")
        await self._emit_change()
        return True

    def shutdown(self) -> None:
        """Stop the countdown without touching the session."""
        self.timer.cancel(reason="engine shutdown")

    # Answers and navigation

    async def record_answer(self, index: int, value: str) -> None:
        self.holder.record_answer(index, value)
        await self._emit_change()

    async def select(self, value: str) -> bool:
        """Handle a pointer click on an answer control."""
        routed = self.router.route_click(self.session, value)
        if routed is None:
            return False
        return await self._apply(routed)

    async def handle_key(self, key: str) -> bool:
        """
        Handle a key press against the state at the time of the event.

        Returns:
            False when the key was ignored
        """
        routed = self.router.route_key(self.session, key)
        if routed is None:
            logger.debug(f"Ignored key {key!r} for session {self.session.session_id}")
            return False
        return await self._apply(routed)

    async def next(self) -> bool:
        return await self._advance(auto=False)

    async def previous(self) -> bool:
        outcome = self.navigation.previous()
        if outcome is NavigationOutcome.UNCHANGED:
            return False
        await self._enter_question()
        return True

    async def toggle_reveal(self) -> bool:
        if not self.navigation.toggle_reveal():
            return False
        await self._emit_change()
        return True

    async def tick(self, epoch: Optional[int] = None) -> bool:
        """
        Count one elapsed second for the current question.

        ``epoch`` identifies the question the tick was scheduled for; ticks for
        any other question are ignored. On reaching zero the session advances
        exactly as an explicit ``next()`` would.

        Returns:
            True while the countdown for the question keeps running
        """
        session = self.session
        if session.phase is not Phase.IN_PROGRESS or not session.kind.is_timed:
            return False
        if epoch is not None and epoch != session.question_epoch:
            TimerLifecycleLogger.log_stale_tick(session.session_id, epoch, session.question_epoch)
            return False
        if session.remaining_seconds <= 0:
            return False

        session.remaining_seconds -= 1
        TimerLifecycleLogger.log_timer_update(
            session.session_id, session.remaining_seconds, self.navigation.timer_duration
        )
        await self._emit_change()

        if session.remaining_seconds == 0:
            TimerLifecycleLogger.log_timer_completion(session.session_id, "natural_expiry")
            await self._advance(auto=True)
            return False
        return True

    # Internals

    async def _apply(self, routed: RoutedInput) -> bool:
        if routed.action is RouterAction.SELECT:
            await self.record_answer(self.session.current_index, routed.value)
            return True
        if routed.action is RouterAction.NEXT:
            return await self.next()
        return await self.previous()

    async def _advance(self, auto: bool) -> bool:
        outcome = self.navigation.next()
        if outcome is NavigationOutcome.UNCHANGED:
            return False
        if outcome is NavigationOutcome.FINISH:
            await self._complete()
            return True
        logger.debug(
            f"Session {self.session.session_id} moved to question {self.session.current_index + 1}"
            + (" (timer expired)" if auto else "")
        )
        await self._enter_question()
        if outcome is NavigationOutcome.WRAPPED:
            await self._notify("info", SHORT_SET_COMPLETE_MESSAGE)
        return True

    async def _enter_question(self) -> None:
        session = self.session
        session.question_epoch += 1
        self.navigation.reset_timer()
        if session.phase is Phase.IN_PROGRESS and session.kind.is_timed and self.tick_interval is not None:
            self.timer.start(session.question_epoch, self.navigation.timer_duration, self.tick)
        else:
            self.timer.cancel(reason="untimed question")
        await self._emit_change()

    async def _complete(self) -> None:
        session = self.session
        self.timer.cancel(reason="quiz completed")
        session.score = self.scorer.compute_score(session)
        session.phase = Phase.COMPLETED
        session.revealed = False
        session.result = self.scorer.build_result(session)
        result = session.result
        logger.info(
            f"Quiz completed for session {session.session_id}: {result.score}/{result.total_questions} ({result.percentage}%)",
            extra={
                'event_type': 'quiz_completed',
                'session_id': session.session_id,
                'score': result.score,
                'total_questions': result.total_questions,
                'timestamp': time.time()
            }
        )
        await self._emit_change()

        try:
            await self.client.save_result(result, self.user)
        except PersistenceError as e:
            logger.error(f"Failed to save quiz result for session {session.session_id}: {e}")
            await self._notify("error", PERSISTENCE_FAILURE_MESSAGE)

    def _discard_question_set(self) -> None:
        self.timer.cancel(reason="question set discarded")
        self.holder.clear()
        self.session.question_epoch += 1
        self.navigation.reset_timer()

    async def _emit_change(self) -> None:
        await self._call_hook(self.change_hook, self.session)

    async def _notify(self, level: str, message: str) -> None:
        await self._call_hook(self.notify_hook, level, message)

    async def _call_hook(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Log error but don't raise to avoid breaking the session flow
            logger.error(f"Presentation hook failed for session {self.session.session_id}: {e}", exc_info=True)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the session for status displays."""
        session = self.session
        return {
            'session_id': session.session_id,
            'phase': session.phase.value,
            'kind': session.kind.value,
            'topic': session.topic,
            'difficulty': session.difficulty,
            'current_question': session.current_index + 1 if session.questions else 0,
            'total_questions': session.total_questions,
            'answered': len(session.answers),
            'remaining_seconds': session.remaining_seconds if session.kind.is_timed else None,
            'timer_running': self.timer.is_running,
            'loading': session.loading,
            'score': session.score if session.phase is Phase.COMPLETED else None,
            'started_at': session.started_at,
        }
