"""
HTTP client for the StudyMate backend: question generation and result persistence.
"""
import logging
from typing import Dict, List, Optional

import httpx

from .data_manager import DataManager
from .models import GenerationRequest, Question, QuizResult, UserContext

logger = logging.getLogger(__name__)

FALLBACK_USER_ID = "dev-fallback-user"


class StudyMateError(Exception):
    """Base exception for StudyMate backend errors."""
    pass


class GenerationError(StudyMateError):
    """Raised when questions cannot be generated or the response is unusable."""
    pass


class PersistenceError(StudyMateError):
    """Raised when a quiz result cannot be saved."""
    pass


class StudyMateClient:
    """Calls the question generation and result persistence endpoints."""

    GENERATE_PATH = "/generate-qa"
    RESULTS_PATH = "/quiz-results"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        data_manager: Optional[DataManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Root URL of the StudyMate API
            timeout: Request timeout in seconds
            data_manager: Parser for generated question records
            transport: Optional httpx transport, used to stub the backend in tests
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.data_manager = data_manager or DataManager()
        self._transport = transport

    @staticmethod
    def build_headers(user: Optional[UserContext]) -> Dict[str, str]:
        """
        Build request headers for the given user.

        A bearer token is only sent when it looks like a JWT; otherwise the
        request falls back to identifying the user by id.
        """
        headers = {
            'Cache-Control': 'no-cache',
            'Pragma': 'no-cache',
            'x-user-id': user.user_id if user and user.user_id else FALLBACK_USER_ID,
        }
        token = user.access_token if user else None
        if token:
            if len(token.split('.')) == 3:
                headers['Authorization'] = f"Bearer {token}"
            else:
                logger.warning("Invalid token format, sending user id only")
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def generate_questions(self, request: GenerationRequest, user: Optional[UserContext] = None) -> List[Question]:
        """
        Request a question set from the generation service.

        Raises:
            GenerationError: On transport errors, non-success responses or invalid data
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    self.GENERATE_PATH,
                    json=request.to_payload(),
                    headers=self.build_headers(user)
                )
        except httpx.HTTPError as e:
            raise GenerationError(f"Question generation request failed: {e}") from e

        if not response.is_success:
            logger.warning(f"Question generation returned {response.status_code}: {response.text[:200]}")
            raise GenerationError(f"Question generation returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise GenerationError(f"Question generation returned invalid JSON: {e}") from e

        records = data.get("questions") if isinstance(data, dict) else data
        if not self.data_manager.validate_question_records(records, request.kind):
            raise GenerationError("Question generation returned an invalid question set")

        questions = self.data_manager.parse_questions(records, request.kind)
        logger.info(f"Received {len(questions)} generated questions for topic '{request.topic}'")
        return questions

    async def save_result(self, result: QuizResult, user: Optional[UserContext] = None) -> None:
        """
        Persist a completed quiz result.

        Raises:
            PersistenceError: On transport errors or non-success responses
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    self.RESULTS_PATH,
                    json=result.to_payload(user),
                    headers=self.build_headers(user)
                )
        except httpx.HTTPError as e:
            raise PersistenceError(f"Saving quiz result failed: {e}") from e

        if not response.is_success:
            logger.warning(f"Saving quiz result returned {response.status_code}: {response.text[:200]}")
            raise PersistenceError(f"Saving quiz result returned HTTP {response.status_code}")

        logger.info(f"Saved quiz result for topic '{result.topic}': {result.score}/{result.total_questions}")
