"""
Per-video question quota.
"""

import logging

from aispeaker.core.constants import MAX_QUESTIONS_PER_VIDEO
from aispeaker.core.error_codes import QuotaExceededError
from aispeaker.core.session_store import SessionStore

logger = logging.getLogger(__name__)


class QuotaGuard:

    def __init__(self, sessions: SessionStore, limit: int = MAX_QUESTIONS_PER_VIDEO):
        self.sessions = sessions
        self.limit = limit

    def allow(self, video_id: str) -> bool:
        return self.sessions.get_question_count(video_id) < self.limit

    def acquire(self, video_id: str) -> int:
        """Consume one conversational turn. Check and increment are one step."""
        count = self.sessions.try_increment_question_count(video_id, self.limit)
        if count is None:
            logger.info("Quota exceeded for %s (limit %d)", video_id, self.limit)
            raise QuotaExceededError(self.limit)
        return count

    def remaining(self, video_id: str) -> int:
        return max(0, self.limit - self.sessions.get_question_count(video_id))
