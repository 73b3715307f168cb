"""
Data models (plain dataclasses) for AI Speaker.
"""

import copy
from dataclasses import dataclass, field, asdict
from typing import Optional

from aispeaker.core.constants import JobState


@dataclass(frozen=True)
class TranscriptSegment:
    start: float                     # seconds
    end: float                       # seconds
    text: str


@dataclass
class CacheEntry:
    """Per-video artifacts shared across processes. Every field is optional."""
    voice_id: Optional[str] = None
    speaker_name: Optional[str] = None
    voice_sample_path: Optional[str] = None

    def as_fields(self) -> dict:
        """Only the fields that are set, so a merge never clobbers the rest."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_fields(cls, fields: dict) -> "CacheEntry":
        known = {k: fields[k] for k in ('voice_id', 'speaker_name', 'voice_sample_path')
                 if fields.get(k)}
        return cls(**known)


@dataclass
class SessionState:
    video_id: str
    transcript: list[TranscriptSegment] = field(default_factory=list)
    voice_id: Optional[str] = None
    agent_id: Optional[str] = None
    speaker_name: Optional[str] = None
    question_count: int = 0
    context_window_cache: dict = field(default_factory=dict)

    def snapshot(self) -> "SessionState":
        return copy.deepcopy(self)


@dataclass
class Job:
    id: str                          # UUID
    video_url: str
    video_id: Optional[str] = None
    speaker_name: Optional[str] = None
    state: str = JobState.QUEUED
    stage: Optional[str] = None
    progress: int = 0
    result: Optional[dict] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None  # claiming worker
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class ConversationTurn:
    video_id: str
    agent_id: str
    input_text: str
    response: list = field(default_factory=list)
