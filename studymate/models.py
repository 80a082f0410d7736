"""
Core data models for the StudyMate exam quiz engine.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
import uuid


class QuestionKind(Enum):
    """Question formats supported by a quiz session."""
    SHORT = "short"
    MULTIPLE_CHOICE = "multipleChoice"
    TRUE_FALSE = "trueFalse"

    @property
    def wire_name(self) -> str:
        """Name used by the question generation service."""
        return _WIRE_NAMES[self]

    @property
    def is_timed(self) -> bool:
        """Timed kinds run a per-question countdown and are scored."""
        return self is not QuestionKind.SHORT

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_value(cls, value) -> "QuestionKind":
        """
        Resolve a kind from its engine name, wire name or a common alias.

        Raises:
            ValueError: If the value does not name a known kind
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("-", "").replace("_", "").replace(" ", "")
        if key in _ALIASES:
            return _ALIASES[key]
        raise ValueError(f"Unknown question kind: {value!r}")


_WIRE_NAMES = {
    QuestionKind.SHORT: "short",
    QuestionKind.MULTIPLE_CHOICE: "mcq",
    QuestionKind.TRUE_FALSE: "truefalse",
}

_LABELS = {
    QuestionKind.SHORT: "Short Questions",
    QuestionKind.MULTIPLE_CHOICE: "Multiple Choice",
    QuestionKind.TRUE_FALSE: "True / False",
}

_ALIASES = {
    "short": QuestionKind.SHORT,
    "shortanswer": QuestionKind.SHORT,
    "multiplechoice": QuestionKind.MULTIPLE_CHOICE,
    "mcq": QuestionKind.MULTIPLE_CHOICE,
    "truefalse": QuestionKind.TRUE_FALSE,
    "tf": QuestionKind.TRUE_FALSE,
}


class Phase(Enum):
    """Coarse lifecycle stage of a quiz session."""
    IDLE = "idle"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"


DIFFICULTIES = ("easy", "medium", "hard")


@dataclass
class Option:
    """A labeled choice of a multiple-choice question."""
    label: str
    text: str


@dataclass
class Question:
    """Represents a single generated question."""
    kind: QuestionKind
    prompt: str
    correct_answer: str
    options: List[Option] = field(default_factory=list)
    explanation: Optional[str] = None
    id: str = field(default_factory=lambda: f"q-{uuid.uuid4().hex}")

    def option_labels(self) -> List[str]:
        return [option.label for option in self.options]

    def get_option(self, label: str) -> Optional[Option]:
        for option in self.options:
            if option.label.upper() == str(label).upper():
                return option
        return None


@dataclass
class UserContext:
    """Identity of the user a session acts on behalf of."""
    user_id: str
    access_token: Optional[str] = None
    display_name: Optional[str] = None


@dataclass
class ExamSettings:
    """Configuration settings applied to new quiz sessions."""
    timer_duration: int = 30
    question_count: int = 5
    difficulty: str = "medium"
    language: str = "en"


@dataclass
class GenerationRequest:
    """Parameters sent to the question generation service."""
    topic: str
    difficulty: str
    kind: QuestionKind
    count: int
    language: str

    def to_payload(self) -> Dict[str, object]:
        return {
            "topic": self.topic,
            "difficulty": self.difficulty,
            "type": self.kind.wire_name,
            "kind": self.kind.wire_name,
            "count": self.count,
            "language": self.language,
        }


@dataclass
class QuizResult:
    """Outcome of a completed, scored quiz."""
    topic: str
    score: int
    total_questions: int
    percentage: int
    kind: QuestionKind
    difficulty: str
    celebrate: bool = False
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self, user: Optional[UserContext] = None) -> Dict[str, object]:
        payload = {
            "topic": self.topic,
            "score": self.score,
            "totalQuestions": self.total_questions,
            "percentage": self.percentage,
            "kind": self.kind.wire_name,
            "difficulty": self.difficulty,
            "completedAt": self.completed_at.isoformat(),
        }
        if user is not None:
            payload["userId"] = user.user_id
        return payload


@dataclass
class Session:
    """Mutable state of one quiz attempt."""
    kind: QuestionKind = QuestionKind.SHORT
    topic: str = ""
    difficulty: str = "medium"
    questions: List[Question] = field(default_factory=list)
    answers: Dict[int, str] = field(default_factory=dict)
    current_index: int = 0
    revealed: bool = False
    remaining_seconds: int = 30
    phase: Phase = Phase.IDLE
    score: int = 0
    result: Optional[QuizResult] = None
    loading: bool = False
    # Bumped on every generation request, new quiz and kind change
    generation_token: int = 0
    # Bumped whenever a question is (re)entered; ticks carry the epoch they were scheduled for
    question_epoch: int = 0
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: Optional[datetime] = None

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def total_questions(self) -> int:
        return len(self.questions)
