"""
Data manager for generated question records: validation and parsing.
"""
import logging
import re
from typing import Any, List, Optional

from .models import Option, Question, QuestionKind

PROMPT_FIELDS = ("question", "prompt", "text")
ANSWER_FIELDS = ("answer", "correctAnswer", "correct_answer")

# "A) Paris", "B. Rome", "c: Madrid"
_LABELED_OPTION = re.compile(r"^\s*([A-Za-z])\s*[\)\.:]\s+(.+?)\s*$")

_TRUE_FALSE_VALUES = {
    "true": "true", "t": "true",
    "false": "false", "f": "false",
}


class DataManager:
    """Validates generated question records and turns them into Question objects."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def validate_question_records(self, records: Any, kind: QuestionKind) -> bool:
        """
        Validate that generated data has a usable question structure.

        Expected structure (one record per question):
        [
            {
                "question": str,          # or "prompt" / "text"
                "answer": str,            # or "correctAnswer"
                "options": list,          # multiple choice only
                "explanation": str,       # optional
                "id": str                 # optional
            }
        ]

        Args:
            records: Parsed JSON data to validate
            kind: Question kind the records were requested for

        Returns:
            True if structure is valid, False otherwise
        """
        if not isinstance(records, list):
            self.logger.error("Question data must be an array")
            return False

        if not records:
            self.logger.error("Question array cannot be empty")
            return False

        for i, record in enumerate(records):
            if not isinstance(record, dict):
                self.logger.error(f"Question {i} must be an object")
                return False

            prompt = self._first_field(record, PROMPT_FIELDS)
            if not isinstance(prompt, str) or not prompt.strip():
                self.logger.error(f"Question {i} missing 'question' text")
                return False

            answer = self._first_field(record, ANSWER_FIELDS)
            if answer is None or (isinstance(answer, str) and not answer.strip()):
                self.logger.error(f"Question {i} missing 'answer' field")
                return False

            explanation = record.get("explanation")
            if explanation is not None and not isinstance(explanation, str):
                self.logger.error(f"Question {i} 'explanation' field must be a string")
                return False

            if kind is QuestionKind.MULTIPLE_CHOICE:
                options = self.normalize_options(record.get("options"))
                if not options:
                    self.logger.error(f"Question {i} must have a non-empty 'options' array")
                    return False
                labels = [option.label for option in options]
                if len(set(labels)) != len(labels):
                    self.logger.error(f"Question {i} has duplicate option labels")
                    return False
                if self.resolve_option_answer(answer, options) is None:
                    self.logger.error(f"Question {i} answer does not match any option")
                    return False

            elif kind is QuestionKind.TRUE_FALSE:
                if self.normalize_true_false(answer) is None:
                    self.logger.error(f"Question {i} answer must be true or false")
                    return False

            elif not isinstance(answer, str):
                self.logger.error(f"Question {i} 'answer' field must be a string")
                return False

        return True

    def parse_questions(self, records: List[dict], kind: QuestionKind) -> List[Question]:
        """
        Parse validated records into Question objects.

        Records without an id get one assigned here.
        """
        questions = []

        for record in records:
            answer = self._first_field(record, ANSWER_FIELDS)
            options: List[Option] = []

            if kind is QuestionKind.MULTIPLE_CHOICE:
                options = self.normalize_options(record.get("options"))
                correct_answer = self.resolve_option_answer(answer, options)
            elif kind is QuestionKind.TRUE_FALSE:
                correct_answer = self.normalize_true_false(answer)
            else:
                correct_answer = str(answer).strip()

            question = Question(
                kind=kind,
                prompt=self._first_field(record, PROMPT_FIELDS).strip(),
                correct_answer=correct_answer,
                options=options,
                explanation=record.get("explanation") or None,
            )
            if record.get("id") not in (None, ""):
                question.id = str(record["id"])
            questions.append(question)

        return questions

    @staticmethod
    def normalize_options(raw_options: Any) -> List[Option]:
        """
        Turn raw options into labeled Option objects.

        Strings get positional letters unless they carry their own "A) " style
        label; objects must provide "text" and may provide "label".
        """
        if not isinstance(raw_options, list):
            return []

        options = []
        for position, raw in enumerate(raw_options):
            default_label = chr(ord('A') + position)
            if isinstance(raw, str):
                match = _LABELED_OPTION.match(raw)
                if match:
                    options.append(Option(label=match.group(1).upper(), text=match.group(2)))
                else:
                    options.append(Option(label=default_label, text=raw.strip()))
            elif isinstance(raw, dict) and isinstance(raw.get("text"), str):
                label = str(raw.get("label") or default_label).strip().upper()
                options.append(Option(label=label, text=raw["text"].strip()))
            else:
                return []
        return options

    @staticmethod
    def resolve_option_answer(answer: Any, options: List[Option]) -> Optional[str]:
        """Resolve an answer given as a label, a labeled option or option text to its label."""
        if not isinstance(answer, str):
            return None
        value = answer.strip()
        labels = {option.label.upper() for option in options}

        if value.upper() in labels:
            return value.upper()

        match = _LABELED_OPTION.match(value)
        if match and match.group(1).upper() in labels:
            return match.group(1).upper()

        for option in options:
            if option.text.casefold() == value.casefold():
                return option.label
        return None

    @staticmethod
    def normalize_true_false(answer: Any) -> Optional[str]:
        if isinstance(answer, bool):
            return "true" if answer else "false"
        if isinstance(answer, str):
            return _TRUE_FALSE_VALUES.get(answer.strip().lower())
        return None

    @staticmethod
    def _first_field(record: dict, names) -> Any:
        for name in names:
            if name in record:
                return record[name]
        return None
