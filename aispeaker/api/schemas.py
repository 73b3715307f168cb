"""
Request and response models for the HTTP surface.
Wire names are camelCase; Python attributes are snake_case.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# Requests

class PrepareContextRequest(_Model):
    """Enqueue the full derivation for one video."""
    video_url: str = Field(..., alias="videoUrl", min_length=1, max_length=2048)
    speaker_name: Optional[str] = Field(None, alias="speakerName", max_length=200)


class InstantContextRequest(_Model):
    video_url: str = Field(..., alias="videoUrl", min_length=1, max_length=2048)
    paused_time: float = Field(..., alias="pausedTime", ge=0)
    speaker_name: str = Field(..., alias="speakerName", min_length=1, max_length=200)


class CloneVoiceRequest(_Model):
    video_id: str = Field(..., alias="videoId", min_length=1, max_length=64)
    speaker_name: str = Field(..., alias="speakerName", min_length=1, max_length=200)
    sample_url: str = Field(..., alias="sampleUrl", min_length=1, max_length=2048)


class ContextWindowRequest(_Model):
    video_id: str = Field(..., alias="videoId", min_length=1, max_length=64)
    paused_time: float = Field(..., alias="pausedTime", ge=0)


class BuildConversationRequest(_Model):
    video_id: str = Field(..., alias="videoId", min_length=1, max_length=64)
    voice_id: str = Field(..., alias="voiceId", min_length=1)
    speaker_name: str = Field(..., alias="speakerName", min_length=1, max_length=200)
    context_window: str = Field(..., alias="contextWindow")
    user_question_text: str = Field(..., alias="userQuestionText", min_length=1, max_length=2000)


class CreateAgentRequest(_Model):
    video_id: str = Field(..., alias="videoId", min_length=1, max_length=64)
    speaker_name: str = Field(..., alias="speakerName", min_length=1, max_length=200)


class StreamConversationRequest(_Model):
    video_id: str = Field(..., alias="videoId", min_length=1, max_length=64)
    text: str = Field(..., min_length=1, max_length=2000)


class SpeakRequest(_Model):
    voice_id: str = Field(..., alias="voiceId", min_length=1)
    text: str = Field(..., min_length=1, max_length=5000)


# Responses

class PrepareContextResponse(BaseModel):
    message: str
    jobId: str


class JobStatusResponse(BaseModel):
    id: str
    state: str
    progress: int
    stage: Optional[str] = None
    returnValue: Optional[dict] = None


class InstantContextResponse(BaseModel):
    videoId: str
    voiceId: str
    contextWindow: str


class CloneVoiceResponse(BaseModel):
    videoId: str
    voiceId: str
    message: str


class ContextWindowResponse(BaseModel):
    contextWindow: str


class ConversationResponse(BaseModel):
    conversation: dict


class CreateAgentResponse(BaseModel):
    agent_id: str


class StreamingUrlResponse(BaseModel):
    url: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    environment: str
    cache: str
    tools: Optional[dict] = None
