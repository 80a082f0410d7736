"""
Configuration manager for StudyMate exam quiz settings and backend parameters.
"""
import logging
import os
from typing import Any, Dict, Optional

from .models import DIFFICULTIES, ExamSettings


class ConfigManager:
    """Manages exam quiz settings and API connection parameters."""

    # Default configuration values
    DEFAULT_TIMER_DURATION = 30
    DEFAULT_QUESTION_COUNT = 5
    DEFAULT_DIFFICULTY = "medium"
    DEFAULT_LANGUAGE = "en"
    DEFAULT_API_BASE_URL = "http://localhost:5000"
    DEFAULT_REQUEST_TIMEOUT = 30.0

    # Validation limits
    MIN_TIMER_DURATION = 5
    MAX_TIMER_DURATION = 300  # 5 minutes
    MIN_QUESTION_COUNT = 1
    MAX_QUESTION_COUNT = 20
    MAX_LANGUAGE_LENGTH = 16
    MIN_REQUEST_TIMEOUT = 1.0
    MAX_REQUEST_TIMEOUT = 120.0

    API_URL_ENV = "STUDYMATE_API_URL"

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = ExamSettings(
            timer_duration=self.DEFAULT_TIMER_DURATION,
            question_count=self.DEFAULT_QUESTION_COUNT,
            difficulty=self.DEFAULT_DIFFICULTY,
            language=self.DEFAULT_LANGUAGE
        )
        self._api_base_url = self.DEFAULT_API_BASE_URL
        self._request_timeout = self.DEFAULT_REQUEST_TIMEOUT

    def get_exam_settings(self) -> ExamSettings:
        """
        Get current exam settings.

        Returns:
            A copy of the settings applied to new sessions
        """
        return ExamSettings(
            timer_duration=self._settings.timer_duration,
            question_count=self._settings.question_count,
            difficulty=self._settings.difficulty,
            language=self._settings.language
        )

    @staticmethod
    def _failure(error_msg: str, user_message: str) -> Dict[str, Any]:
        return {
            'success': False,
            'error': error_msg,
            'user_message': user_message
        }

    @staticmethod
    def _success(message: str, user_message: str) -> Dict[str, Any]:
        return {
            'success': True,
            'message': message,
            'user_message': user_message
        }

    def set_timer_duration(self, duration: int) -> Dict[str, Any]:
        """
        Set the countdown length for timed questions.

        Args:
            duration: Timer duration in seconds

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(duration, int) or isinstance(duration, bool):
            error_msg = f"Timer duration must be an integer, got {type(duration).__name__}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Invalid input: Expected a number, got {type(duration).__name__}")

        if duration < self.MIN_TIMER_DURATION:
            error_msg = f"Timer duration must be at least {self.MIN_TIMER_DURATION} seconds"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Timer too short: Minimum is {self.MIN_TIMER_DURATION} seconds")

        if duration > self.MAX_TIMER_DURATION:
            error_msg = f"Timer duration cannot exceed {self.MAX_TIMER_DURATION} seconds"
            self.logger.error(error_msg)
            return self._failure(
                error_msg,
                f"❌ Timer too long: Maximum is {self.MAX_TIMER_DURATION} seconds ({self.MAX_TIMER_DURATION // 60} minutes)"
            )

        self._settings.timer_duration = duration
        self.logger.info(f"Timer duration set to {duration} seconds")
        return self._success(f"Timer duration set to {duration} seconds", f"✅ Timer set to {duration} seconds")

    def get_timer_duration(self) -> int:
        return self._settings.timer_duration

    def set_question_count(self, count: int) -> Dict[str, Any]:
        """
        Set the number of questions requested per quiz.

        Args:
            count: Number of questions to generate

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(count, int) or isinstance(count, bool):
            error_msg = f"Question count must be an integer, got {type(count).__name__}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Invalid input: Expected a number, got {type(count).__name__}")

        if count < self.MIN_QUESTION_COUNT:
            error_msg = f"Question count must be at least {self.MIN_QUESTION_COUNT}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Too few questions: Minimum is {self.MIN_QUESTION_COUNT}")

        if count > self.MAX_QUESTION_COUNT:
            error_msg = f"Question count cannot exceed {self.MAX_QUESTION_COUNT}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Too many questions: Maximum is {self.MAX_QUESTION_COUNT}")

        self._settings.question_count = count
        self.logger.info(f"Question count set to {count}")
        return self._success(f"Question count set to {count}", f"✅ Question count set to {count}")

    def get_question_count(self) -> int:
        return self._settings.question_count

    def set_difficulty(self, difficulty: str) -> Dict[str, Any]:
        """Set the default difficulty for generated questions."""
        if not isinstance(difficulty, str) or difficulty.strip().lower() not in DIFFICULTIES:
            error_msg = f"Difficulty must be one of {', '.join(DIFFICULTIES)}, got {difficulty!r}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Invalid difficulty: choose {', '.join(DIFFICULTIES)}")

        self._settings.difficulty = difficulty.strip().lower()
        self.logger.info(f"Difficulty set to {self._settings.difficulty}")
        return self._success(
            f"Difficulty set to {self._settings.difficulty}",
            f"✅ Difficulty set to {self._settings.difficulty}"
        )

    def set_language(self, language: str) -> Dict[str, Any]:
        """Set the language questions are generated in."""
        if not isinstance(language, str) or not language.strip():
            error_msg = "Language cannot be empty"
            self.logger.error(error_msg)
            return self._failure(error_msg, "❌ Language cannot be empty")

        if len(language.strip()) > self.MAX_LANGUAGE_LENGTH:
            error_msg = f"Language cannot exceed {self.MAX_LANGUAGE_LENGTH} characters"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Language too long: Maximum is {self.MAX_LANGUAGE_LENGTH} characters")

        self._settings.language = language.strip()
        self.logger.info(f"Language set to {self._settings.language}")
        return self._success(f"Language set to {self._settings.language}", f"✅ Language set to {self._settings.language}")

    def set_api_base_url(self, url: str) -> Dict[str, Any]:
        """Set the StudyMate API base URL."""
        if not isinstance(url, str) or not url.strip().startswith(("http://", "https://")):
            error_msg = f"API base URL must start with http:// or https://, got {url!r}"
            self.logger.error(error_msg)
            return self._failure(error_msg, "❌ Invalid API URL: it must start with http:// or https://")

        self._api_base_url = url.strip().rstrip("/")
        self.logger.info(f"API base URL set to {self._api_base_url}")
        return self._success(f"API base URL set to {self._api_base_url}", f"✅ API URL set to {self._api_base_url}")

    def get_api_base_url(self) -> str:
        return self._api_base_url

    def set_request_timeout(self, timeout: float) -> Dict[str, Any]:
        """Set the HTTP request timeout in seconds."""
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool):
            error_msg = f"Request timeout must be a number, got {type(timeout).__name__}"
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Invalid input: Expected a number, got {type(timeout).__name__}")

        if not self.MIN_REQUEST_TIMEOUT <= timeout <= self.MAX_REQUEST_TIMEOUT:
            error_msg = (
                f"Request timeout must be between {self.MIN_REQUEST_TIMEOUT} and {self.MAX_REQUEST_TIMEOUT} seconds"
            )
            self.logger.error(error_msg)
            return self._failure(error_msg, f"❌ Timeout out of range: {error_msg.lower()}")

        self._request_timeout = float(timeout)
        self.logger.info(f"Request timeout set to {self._request_timeout} seconds")
        return self._success(
            f"Request timeout set to {self._request_timeout} seconds",
            f"✅ Request timeout set to {self._request_timeout} seconds"
        )

    def get_request_timeout(self) -> float:
        return self._request_timeout

    def apply_config(self, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Apply the 'exam' and 'api' sections of a configuration file.

        Invalid values are logged and skipped so that defaults stay in effect.

        Returns:
            Dictionary with overall success and the list of rejected settings
        """
        config = config or {}
        exam_config = config.get('exam', {})
        api_config = config.get('api', {})
        rejected = []

        setters = [
            (exam_config, 'timer_duration', self.set_timer_duration),
            (exam_config, 'question_count', self.set_question_count),
            (exam_config, 'difficulty', self.set_difficulty),
            (exam_config, 'language', self.set_language),
            (api_config, 'base_url', self.set_api_base_url),
            (api_config, 'timeout', self.set_request_timeout),
        ]
        for section, key, setter in setters:
            if key in section:
                result = setter(section[key])
                if not result['success']:
                    rejected.append(f"{key}: {result['error']}")

        env_url = os.getenv(self.API_URL_ENV)
        if env_url:
            result = self.set_api_base_url(env_url)
            if not result['success']:
                rejected.append(f"{self.API_URL_ENV}: {result['error']}")

        if rejected:
            self.logger.warning(f"Ignored {len(rejected)} invalid configuration values")
        else:
            self.logger.info("Configuration applied successfully")
        return {'success': not rejected, 'rejected': rejected}

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings = ExamSettings(
            timer_duration=self.DEFAULT_TIMER_DURATION,
            question_count=self.DEFAULT_QUESTION_COUNT,
            difficulty=self.DEFAULT_DIFFICULTY,
            language=self.DEFAULT_LANGUAGE
        )
        self._api_base_url = self.DEFAULT_API_BASE_URL
        self._request_timeout = self.DEFAULT_REQUEST_TIMEOUT
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }
        settings = self._settings

        if (not isinstance(settings.timer_duration, int) or
                not self.MIN_TIMER_DURATION <= settings.timer_duration <= self.MAX_TIMER_DURATION):
            validation_result["issues"].append(f"Invalid timer duration: {settings.timer_duration}")

        if (not isinstance(settings.question_count, int) or
                not self.MIN_QUESTION_COUNT <= settings.question_count <= self.MAX_QUESTION_COUNT):
            validation_result["issues"].append(f"Invalid question count: {settings.question_count}")

        if settings.difficulty not in DIFFICULTIES:
            validation_result["issues"].append(f"Invalid difficulty: {settings.difficulty}")

        if not isinstance(settings.language, str) or not settings.language.strip():
            validation_result["issues"].append(f"Invalid language: {settings.language}")

        if not self._api_base_url.startswith(("http://", "https://")):
            validation_result["issues"].append(f"Invalid API base URL: {self._api_base_url}")

        validation_result["valid"] = not validation_result["issues"]
        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        settings = self._settings
        return (
            f"Exam Settings:\n"
            f"• Questions: {settings.question_count}\n"
            f"• Difficulty: {settings.difficulty}\n"
            f"• Language: {settings.language}\n"
            f"• Timer: {settings.timer_duration} seconds\n"
            f"• API: {self._api_base_url}"
        )
