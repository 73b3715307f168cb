"""
Duplex channel message types.

Client → server: audio, text, mute, unmute.
Server → client: user-transcript, agent-transcript, agent-audio,
relay-terminated, error.
"""

from dataclasses import dataclass
from typing import Optional, Union

from aispeaker.core.error_codes import ValidationError


# ── Client messages ───────────────────────────────────────────────────

@dataclass(frozen=True)
class AudioMessage:
    audio: str                       # base64
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class TextMessage:
    text: str
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class MuteMessage:
    pass


@dataclass(frozen=True)
class UnmuteMessage:
    pass


ClientMessage = Union[AudioMessage, TextMessage, MuteMessage, UnmuteMessage]


def _required_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"'{key}' is required for message type {data.get('type')!r}",
                              details=[{'field': key}])
    return value


def parse_client_message(data) -> ClientMessage:
    if not isinstance(data, dict):
        raise ValidationError("Message must be a JSON object")
    kind = data.get('type')
    voice_id = data.get('voiceId')
    if kind == 'audio':
        return AudioMessage(audio=_required_str(data, 'audio'), voice_id=voice_id)
    if kind == 'text':
        return TextMessage(text=_required_str(data, 'text'), voice_id=voice_id)
    if kind == 'mute':
        return MuteMessage()
    if kind == 'unmute':
        return UnmuteMessage()
    raise ValidationError(f"Unknown message type: {kind!r}", details=[{'field': 'type'}])


# ── Server events ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class UserTranscript:
    text: str

    def to_dict(self) -> dict:
        return {'type': 'user-transcript', 'text': self.text}


@dataclass(frozen=True)
class AgentTranscript:
    text: str

    def to_dict(self) -> dict:
        return {'type': 'agent-transcript', 'text': self.text}


@dataclass(frozen=True)
class AgentAudio:
    audio: str                       # base64

    def to_dict(self) -> dict:
        return {'type': 'agent-audio', 'audio': self.audio}


@dataclass(frozen=True)
class RelayTerminated:
    reason: str

    def to_dict(self) -> dict:
        return {'type': 'relay-terminated', 'reason': self.reason}


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {'type': 'error', 'code': self.code, 'message': self.message}


ServerEvent = Union[UserTranscript, AgentTranscript, AgentAudio, RelayTerminated, ErrorEvent]


@dataclass(frozen=True)
class ProviderPing:
    event_id: Optional[int]


def parse_provider_event(data: dict):
    """
    Translate one ConvAI frame into a ServerEvent or ProviderPing.
    Frames the client has no use for (metadata, VAD scores…) give None.
    """
    kind = data.get('type')
    if kind == 'user_transcript':
        text = (data.get('user_transcription_event') or {}).get('user_transcript') or ''
        return UserTranscript(text) if text else None
    if kind == 'agent_response':
        text = (data.get('agent_response_event') or {}).get('agent_response') or ''
        return AgentTranscript(text) if text else None
    if kind == 'audio':
        audio = (data.get('audio_event') or {}).get('audio_base_64') or ''
        return AgentAudio(audio) if audio else None
    if kind == 'ping':
        return ProviderPing((data.get('ping_event') or {}).get('event_id'))
    return None
