"""
Conversation relay.

Text turns are streamed from the provider to the caller event by event.
The duplex relay bridges a client socket and a provider conversation, two
pumps running until either side closes.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, assert_never

from aispeaker.core.constants import (
    ErrorCode, RELAY_IDLE_TIMEOUT_SEC, RELAY_RESPONSE_TIMEOUT_SEC,
)
from aispeaker.core.elevenlabs import build_conversation_config
from aispeaker.core.error_codes import (
    CollaboratorError, NotFoundError, QuotaExceededError, ValidationError,
)
from aispeaker.core.messages import (
    AudioMessage, TextMessage, MuteMessage, UnmuteMessage,
    UserTranscript, RelayTerminated, ErrorEvent, parse_client_message,
)
from aispeaker.core.models import ConversationTurn
from aispeaker.core.quota import QuotaGuard
from aispeaker.core.session_store import SessionStore

logger = logging.getLogger(__name__)


class ConversationRelay:
    """Quota-checked conversational turns against the video's agent."""

    def __init__(self, sessions: SessionStore, quota: QuotaGuard, voices,
                 idle_timeout: float = RELAY_IDLE_TIMEOUT_SEC,
                 response_timeout: float = RELAY_RESPONSE_TIMEOUT_SEC):
        self.sessions = sessions
        self.quota = quota
        self.voices = voices
        self.idle_timeout = idle_timeout
        self.response_timeout = response_timeout

    def require_agent(self, video_id: str) -> str:
        agent_id = self.sessions.get_agent_id(video_id)
        if not agent_id:
            raise NotFoundError("Agent not found. Please create agent first.",
                                code=ErrorCode.AGENT_NOT_FOUND)
        return agent_id

    def begin_text_turn(self, video_id: str, text: str) -> ConversationTurn:
        """Check preconditions and consume one turn. Raises before anything is sent."""
        agent_id = self.require_agent(video_id)
        count = self.quota.acquire(video_id)
        logger.info("Turn %d/%d for video %s", count, self.quota.limit, video_id)
        return ConversationTurn(video_id=video_id, agent_id=agent_id, input_text=text)

    async def stream_turn(self, turn: ConversationTurn) -> AsyncIterator[dict]:
        """
        Send the turn's text and yield provider events as dicts while they
        arrive. The turn ends when the provider goes quiet for
        `idle_timeout` after answering, or closes; the last event is always
        relay-terminated.
        """
        reason = "completed"
        try:
            async with self.voices.open_conversation(turn.agent_id) as conv:
                await conv.send_text(turn.input_text)
                timeout = self.response_timeout
                while True:
                    try:
                        event = await asyncio.wait_for(conv.receive(), timeout)
                    except asyncio.TimeoutError:
                        if timeout == self.response_timeout:
                            reason = "timeout"
                        break
                    if event is None:
                        reason = "provider-closed"
                        break
                    payload = event.to_dict()
                    turn.response.append(payload)
                    yield payload
                    if not isinstance(event, UserTranscript):
                        timeout = self.idle_timeout
        except CollaboratorError as e:
            logger.warning("Relay failed for agent %s: %s", turn.agent_id, e.message)
            reason = "provider-error"
            yield ErrorEvent(e.code, e.message).to_dict()
        yield RelayTerminated(reason).to_dict()

    def build_conversation(self, video_id: str, voice_id: str, speaker_name: str,
                           context_window: str, user_question: str) -> dict:
        self.quota.acquire(video_id)
        return build_conversation_config(voice_id, speaker_name, context_window, user_question)


class DuplexRelay:
    """
    One client connection bridged to one provider conversation.

    `receive_client` returns the next decoded client message, or None once the
    client disconnected; `send_client` delivers a server event dict.
    """

    def __init__(self, video_id: str, agent_id: str, quota: QuotaGuard, voices,
                 receive_client: Callable[[], Awaitable[dict | None]],
                 send_client: Callable[[dict], Awaitable[None]]):
        self.video_id = video_id
        self.agent_id = agent_id
        self.quota = quota
        self.voices = voices
        self.receive_client = receive_client
        self.send_client = send_client
        self.muted = False
        self._send_lock = asyncio.Lock()

    async def _send(self, event):
        async with self._send_lock:
            await self.send_client(event.to_dict())

    async def _consume_turn(self) -> bool:
        try:
            self.quota.acquire(self.video_id)
        except QuotaExceededError as e:
            await self._send(ErrorEvent(e.code, e.message))
            return False
        return True

    async def run(self) -> str:
        """Relay until either side closes. Returns the termination reason."""
        if not self.quota.allow(self.video_id):
            await self._send(ErrorEvent(ErrorCode.QUOTA_EXCEEDED,
                                        f"Maximum questions per video exceeded ({self.quota.limit})"))
            return "quota-exceeded"

        try:
            async with self.voices.open_conversation(self.agent_id) as conv:
                client_task = asyncio.create_task(self._pump_client(conv))
                provider_task = asyncio.create_task(self._pump_provider(conv))
                done, pending = await asyncio.wait(
                    {client_task, provider_task}, return_when=asyncio.FIRST_COMPLETED)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                reason = done.pop().result()
        except CollaboratorError as e:
            logger.warning("Duplex relay for agent %s failed: %s", self.agent_id, e.message)
            await self._send(ErrorEvent(e.code, e.message))
            reason = "provider-error"
        except Exception as e:
            logger.error("Duplex relay for agent %s crashed: %s", self.agent_id, e, exc_info=True)
            await self._send(ErrorEvent(ErrorCode.RELAY_FAILED, "Conversation relay failed"))
            reason = "provider-error"

        logger.info("Duplex relay for agent %s ended: %s", self.agent_id, reason)
        if reason != "client-closed":
            await self._send(RelayTerminated(reason))
        return reason

    async def _pump_client(self, conv) -> str:
        while True:
            data = await self.receive_client()
            if data is None:
                return "client-closed"
            try:
                message = parse_client_message(data)
            except ValidationError as e:
                await self._send(ErrorEvent(e.code, e.message))
                continue

            match message:
                case AudioMessage(audio=audio):
                    if not self.muted:
                        await conv.send_audio(audio)
                case TextMessage(text=text):
                    if not await self._consume_turn():
                        return "quota-exceeded"
                    await conv.send_text(text)
                case MuteMessage():
                    self.muted = True
                case UnmuteMessage():
                    self.muted = False
                case _:
                    assert_never(message)

    async def _pump_provider(self, conv) -> str:
        while True:
            event = await conv.receive()
            if event is None:
                return "provider-closed"
            await self._send(event)
            # a spoken question is one turn
            if isinstance(event, UserTranscript) and not await self._consume_turn():
                return "quota-exceeded"
