"""
ElevenLabs integration: voice cloning, agents, speech and the ConvAI socket.

REST calls are synchronous (requests) and bounded by explicit timeouts.
The conversation socket is asynchronous (websockets) because it is relayed
frame by frame to a client connection.
"""

import asyncio
import json
import logging
from pathlib import Path

import requests
import websockets

from aispeaker.core.error_codes import CollaboratorError
from aispeaker.core.constants import (
    ErrorCode, ELEVENLABS_API_BASE, ELEVENLABS_WS_BASE, ELEVENLABS_TTS_MODEL,
    ELEVENLABS_AGENT_LLM, HTTP_TIMEOUT_SEC, CLONE_TIMEOUT_SEC, RELAY_OPEN_TIMEOUT_SEC,
)
from aispeaker.core.messages import ProviderPing, parse_provider_event

logger = logging.getLogger(__name__)

_AGENT_TTS_MODEL = "eleven_flash_v2"


def speaker_prompt(speaker_name: str, context_window: str) -> str:
    """System prompt that keeps the agent in character and on the transcript."""
    return (
        f"You are {speaker_name}, the speaker in a video the user is watching. "
        f"Answer the user's questions in your own voice and style, in two or three "
        f"spoken sentences. Ground every answer in what you said around this point "
        f"of the video:\n\n\"\"\"{context_window}\"\"\"\n\n"
        f"If the transcript does not cover the question, say so briefly instead of "
        f"inventing details."
    )


def build_conversation_config(voice_id: str, speaker_name: str, context_window: str,
                              user_question: str) -> dict:
    """Conversation override for a single question, ready for the ConvAI client."""
    return {
        'agent': {
            'prompt': {'prompt': speaker_prompt(speaker_name, context_window)},
            'first_message': f"You asked: {user_question}",
            'language': 'en',
        },
        'tts': {'voice_id': voice_id},
        'user_input': user_question,
        'speaker_name': speaker_name,
    }


class ElevenLabsClient:
    """Voice-synthesis collaborator."""

    def __init__(self, api_key: str, session: requests.Session | None = None,
                 api_base: str = ELEVENLABS_API_BASE, ws_base: str = ELEVENLABS_WS_BASE):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.api_base = api_base
        self.ws_base = ws_base

    def _headers(self, **extra) -> dict:
        if not self.api_key:
            raise CollaboratorError(ErrorCode.RELAY_FAILED,
                                    "ElevenLabs API key not configured", retryable=False)
        headers = {"xi-api-key": self.api_key}
        headers.update(extra)
        return headers

    def _request(self, method: str, path: str, error_code: str, timeout: int,
                 **kwargs) -> requests.Response:
        url = f"{self.api_base}{path}"
        try:
            resp = self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise CollaboratorError(ErrorCode.COLLABORATOR_TIMEOUT,
                                    f"ElevenLabs {path} timed out after {timeout}s")
        except requests.exceptions.RequestException as e:
            raise CollaboratorError(ErrorCode.NETWORK_TRANSIENT,
                                    f"Network error calling ElevenLabs {path}: {e}")

        if resp.status_code >= 400:
            error_body = resp.text[:300] if resp.text else "No response body"
            raise CollaboratorError(error_code,
                                    f"ElevenLabs {path} returned {resp.status_code}: {error_body}",
                                    retryable=False)
        return resp

    # ── Voices ────────────────────────────────────────────────────────

    def clone_voice(self, speaker_name: str, sample_path: Path) -> str:
        """Create an instant voice clone from one audio sample. Returns voice_id."""
        with open(sample_path, 'rb') as f:
            resp = self._request(
                "POST", "/voices/add", ErrorCode.VOICE_CLONE_FAILED, CLONE_TIMEOUT_SEC,
                headers=self._headers(),
                data={
                    'name': speaker_name,
                    'description': f"Cloned from video audio for {speaker_name}",
                    'remove_background_noise': 'true',
                },
                files=[('files', (sample_path.name, f, 'audio/mpeg'))],
            )
        voice_id = resp.json().get('voice_id')
        if not voice_id:
            raise CollaboratorError(ErrorCode.VOICE_CLONE_FAILED,
                                    "ElevenLabs response did not include a voice_id",
                                    retryable=False)
        logger.info("Cloned voice %s for speaker %r", voice_id, speaker_name)
        return voice_id

    def generate_speech(self, voice_id: str, text: str) -> bytes:
        resp = self._request(
            "POST", f"/text-to-speech/{voice_id}", ErrorCode.SPEECH_FAILED, HTTP_TIMEOUT_SEC,
            headers=self._headers(Accept="audio/mpeg"),
            params={'output_format': 'mp3_44100_128'},
            json={'text': text, 'model_id': ELEVENLABS_TTS_MODEL},
        )
        return resp.content

    # ── Agents ────────────────────────────────────────────────────────

    def create_agent(self, speaker_name: str, voice_id: str, context_window: str) -> str:
        """Create a ConvAI agent speaking with `voice_id`. Returns agent_id."""
        body = {
            'name': f"{speaker_name} (video speaker)",
            'conversation_config': {
                'agent': {
                    'prompt': {
                        'prompt': speaker_prompt(speaker_name, context_window),
                        'llm': ELEVENLABS_AGENT_LLM,
                    },
                    'first_message': f"Hi, I'm {speaker_name}. What would you like to know?",
                    'language': 'en',
                },
                'tts': {'voice_id': voice_id, 'model_id': _AGENT_TTS_MODEL},
            },
        }
        resp = self._request(
            "POST", "/convai/agents/create", ErrorCode.AGENT_CREATE_FAILED, HTTP_TIMEOUT_SEC,
            headers=self._headers(), json=body,
        )
        agent_id = resp.json().get('agent_id')
        if not agent_id:
            raise CollaboratorError(ErrorCode.AGENT_CREATE_FAILED,
                                    "ElevenLabs response did not include an agent_id",
                                    retryable=False)
        logger.info("Created agent %s for speaker %r", agent_id, speaker_name)
        return agent_id

    def get_signed_url(self, agent_id: str) -> str:
        resp = self._request(
            "GET", "/convai/conversation/get-signed-url", ErrorCode.RELAY_FAILED,
            HTTP_TIMEOUT_SEC, headers=self._headers(), params={'agent_id': agent_id},
        )
        return resp.json()['signed_url']

    def conversation_url(self, agent_id: str) -> str:
        return f"{self.ws_base}/convai/conversation?agent_id={agent_id}"

    def open_conversation(self, agent_id: str) -> "ConvAIConversation":
        return ConvAIConversation(self, agent_id)


class ConvAIConversation:
    """
    One ConvAI websocket session.

    Use as `async with client.open_conversation(agent_id) as conv:`; then
    `send_audio`, `send_text` and `receive()`, which returns the next client
    facing event or None once the provider closed the socket. Provider pings
    are answered here and never surface.
    """

    def __init__(self, client: ElevenLabsClient, agent_id: str,
                 open_timeout: float = RELAY_OPEN_TIMEOUT_SEC):
        self.client = client
        self.agent_id = agent_id
        self.open_timeout = open_timeout
        self._ws = None

    async def __aenter__(self):
        if self.client.api_key:
            url = await asyncio.to_thread(self.client.get_signed_url, self.agent_id)
        else:
            url = self.client.conversation_url(self.agent_id)
        try:
            self._ws = await websockets.connect(url, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise CollaboratorError(ErrorCode.RELAY_FAILED,
                                    f"Could not open conversation for agent {self.agent_id}: {e}")
        logger.info("Conversation opened for agent %s", self.agent_id)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._ws is not None:
            await self._ws.close()
            logger.info("Conversation closed for agent %s", self.agent_id)
        return False

    async def _send(self, payload: dict):
        try:
            await self._ws.send(json.dumps(payload))
        except websockets.exceptions.ConnectionClosed as e:
            raise CollaboratorError(ErrorCode.RELAY_FAILED,
                                    f"Provider closed conversation for agent {self.agent_id}: {e}",
                                    retryable=False)

    async def send_audio(self, audio_b64: str):
        await self._send({'user_audio_chunk': audio_b64})

    async def send_text(self, text: str):
        await self._send({'type': 'user_message', 'text': text})

    async def receive(self):
        while True:
            try:
                raw = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed as e:
                logger.info("Provider closed conversation for agent %s: %s", self.agent_id, e)
                return None
            try:
                data = json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                logger.debug("Ignoring non-JSON provider frame")
                continue
            event = parse_provider_event(data)
            if isinstance(event, ProviderPing):
                try:
                    await self._ws.send(json.dumps({'type': 'pong', 'event_id': event.event_id}))
                except websockets.exceptions.ConnectionClosed as e:
                    logger.info("Provider closed conversation for agent %s: %s", self.agent_id, e)
                    return None
                continue
            if event is not None:
                return event
