"""
Process-local working state per video.

Bounded LRU of SessionState. All mutation goes through the methods below,
each of which holds the store lock for its whole read-modify-write; readers
only ever get detached snapshots.
"""

import logging
import threading
from collections import OrderedDict

from aispeaker.core.constants import SESSION_MAX_ENTRIES, CONTEXT_WINDOW_BUCKET_SEC
from aispeaker.core.models import SessionState, TranscriptSegment

logger = logging.getLogger(__name__)


class SessionStore:
    """Thread-safe, bounded map of video_id → SessionState."""

    def __init__(self, max_entries: int = SESSION_MAX_ENTRIES,
                 bucket_sec: float = CONTEXT_WINDOW_BUCKET_SEC):
        self.max_entries = max_entries
        self.bucket_sec = bucket_sec
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, SessionState] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ── Internal (lock must be held) ──────────────────────────────────

    def _touch(self, video_id: str) -> SessionState:
        state = self._entries.get(video_id)
        if state is None:
            state = SessionState(video_id=video_id)
            self._entries[video_id] = state
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.info("Session evicted (LRU): %s", evicted)
        else:
            self._entries.move_to_end(video_id)
        return state

    def _bucket(self, paused_time: float):
        if self.bucket_sec <= 0:
            return float(paused_time)
        return round(float(paused_time) / self.bucket_sec)

    # ── Reads ─────────────────────────────────────────────────────────

    def get_or_create(self, video_id: str) -> SessionState:
        with self._lock:
            return self._touch(video_id).snapshot()

    def get(self, video_id: str) -> SessionState | None:
        with self._lock:
            state = self._entries.get(video_id)
            return state.snapshot() if state else None

    def get_transcript(self, video_id: str) -> list[TranscriptSegment] | None:
        with self._lock:
            state = self._entries.get(video_id)
            if state is None or not state.transcript:
                return None
            return list(state.transcript)

    def get_agent_id(self, video_id: str) -> str | None:
        with self._lock:
            state = self._entries.get(video_id)
            return state.agent_id if state else None

    def find_video_for_agent(self, agent_id: str) -> str | None:
        with self._lock:
            for video_id, state in self._entries.items():
                if state.agent_id == agent_id:
                    return video_id
            return None

    def get_question_count(self, video_id: str) -> int:
        with self._lock:
            state = self._entries.get(video_id)
            return state.question_count if state else 0

    # ── Idempotent setters ────────────────────────────────────────────

    def set_transcript(self, video_id: str, transcript: list[TranscriptSegment]):
        ordered = sorted(transcript, key=lambda s: s.start)
        with self._lock:
            state = self._touch(video_id)
            state.transcript = ordered
            # windows computed from the previous transcript are stale
            state.context_window_cache.clear()

    def set_voice_id(self, video_id: str, voice_id: str):
        with self._lock:
            self._touch(video_id).voice_id = voice_id

    def set_agent_id(self, video_id: str, agent_id: str):
        with self._lock:
            self._touch(video_id).agent_id = agent_id

    def set_speaker_name(self, video_id: str, speaker_name: str):
        with self._lock:
            self._touch(video_id).speaker_name = speaker_name

    # ── Counters ──────────────────────────────────────────────────────

    def increment_question_count(self, video_id: str) -> int:
        with self._lock:
            state = self._touch(video_id)
            state.question_count += 1
            return state.question_count

    def try_increment_question_count(self, video_id: str, limit: int) -> int | None:
        """
        Atomic compare-and-increment.
        Returns the new count, or None when the count already reached `limit`.
        """
        with self._lock:
            state = self._touch(video_id)
            if state.question_count >= limit:
                return None
            state.question_count += 1
            return state.question_count

    # ── Context-window cache ──────────────────────────────────────────

    def cache_context_window(self, video_id: str, paused_time: float, text: str):
        with self._lock:
            self._touch(video_id).context_window_cache[self._bucket(paused_time)] = text

    def get_cached_context_window(self, video_id: str, paused_time: float) -> str | None:
        with self._lock:
            state = self._entries.get(video_id)
            if state is None:
                return None
            return state.context_window_cache.get(self._bucket(paused_time))
