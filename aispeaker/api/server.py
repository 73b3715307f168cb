"""
HTTP and websocket surface.

Blocking endpoints are plain `def` handlers and run on the threadpool; the
streamed turn and the duplex socket are `async` and run on the event loop.
Every ServiceError maps to `{error, code, details?}` with its own status.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse

from aispeaker.api.schemas import (
    PrepareContextRequest, PrepareContextResponse, JobStatusResponse,
    InstantContextRequest, InstantContextResponse, CloneVoiceRequest, CloneVoiceResponse,
    ContextWindowRequest, ContextWindowResponse, BuildConversationRequest,
    ConversationResponse, CreateAgentRequest, CreateAgentResponse,
    StreamConversationRequest, StreamingUrlResponse, SpeakRequest, HealthResponse,
)
from aispeaker.core.cache_store import CacheStore, create_cache_store
from aispeaker.core.config import AppConfig
from aispeaker.core.constants import APP_DISPLAY_NAME, APP_VERSION, ErrorCode
from aispeaker.core.db_sqlite import Database
from aispeaker.core.diagnostics import get_diagnostics
from aispeaker.core.elevenlabs import ElevenLabsClient
from aispeaker.core.error_codes import NotFoundError, ServiceError
from aispeaker.core.instant_context import InstantContext
from aispeaker.core.job_queue import JobQueueManager
from aispeaker.core.messages import ErrorEvent
from aispeaker.core.pipeline import PipelineStages
from aispeaker.core.quota import QuotaGuard
from aispeaker.core.relay import ConversationRelay, DuplexRelay
from aispeaker.core.session_store import SessionStore
from aispeaker.core.transcribe_deepgram import DeepgramTranscriber

logger = logging.getLogger(__name__)

MSG_CLONED = "Voice cloned successfully."
MSG_CLONE_CACHE_HIT = "Voice already cloned for this video (from cache)."
MSG_AGENT_NOT_FOUND = "Agent not found. Please create agent first."


@dataclass
class Services:
    config: dict
    cache: CacheStore
    sessions: SessionStore
    stages: PipelineStages
    quota: QuotaGuard
    relay: ConversationRelay
    instant: InstantContext
    jobs: JobQueueManager
    db: Database
    voices: object


def build_services(config: dict, cache=None, sessions=None, transcriber=None, voices=None,
                   db=None, **stage_overrides) -> Services:
    """Wire the stores, collaborators and orchestration objects for one process."""
    if cache is None:
        cache = create_cache_store(config)
    if sessions is None:
        sessions = SessionStore(config['session_max_entries'], config['context_window_bucket_sec'])
    if transcriber is None:
        transcriber = DeepgramTranscriber(config['deepgram_api_key'])
    if voices is None:
        voices = ElevenLabsClient(config['elevenlabs_api_key'])
    if db is None:
        db = Database(config['db_path'])

    stages = PipelineStages(cache, sessions, transcriber, voices, config, **stage_overrides)
    quota = QuotaGuard(sessions, config['max_questions_per_video'])
    relay = ConversationRelay(sessions, quota, voices,
                              idle_timeout=config['relay_idle_timeout_sec'],
                              response_timeout=config['relay_response_timeout_sec'])
    return Services(
        config=config, cache=cache, sessions=sessions, stages=stages, quota=quota,
        relay=relay, instant=InstantContext(stages, config),
        jobs=JobQueueManager(db, stages, config), db=db, voices=voices,
    )


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get('loc', ()) if part != 'body']
        details.append({'field': '.'.join(loc) or 'body', 'message': err.get('msg', '')})
    return details


def create_app(config: AppConfig | None = None, start_worker: bool | None = None,
               **service_overrides) -> FastAPI:
    """
    Build the application. Collaborators and stores can be injected through
    `service_overrides` (see build_services); anything not given is built
    from the configuration.
    """
    config = config or AppConfig()
    settings = config.as_dict()
    services = build_services(settings, **service_overrides)
    if start_worker is None:
        start_worker = settings['embedded_worker']

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s (%s)", APP_DISPLAY_NAME, settings['environment'])
        if start_worker:
            services.jobs.start_processing()
        yield
        logger.info("Shutting down %s...", APP_DISPLAY_NAME)
        if start_worker:
            services.jobs.stop_processing()

    app = FastAPI(title=APP_DISPLAY_NAME, version=APP_VERSION, lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.http_status >= 500:
            logger.error("%s %s failed: [%s] %s", request.method, request.url.path,
                         exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            'error': "Invalid request data",
            'code': ErrorCode.INVALID_REQUEST,
            'details': _validation_details(exc),
        })

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path,
                     exc_info=exc)
        return JSONResponse(status_code=500, content={
            'error': "Internal server error", 'code': ErrorCode.INTERNAL,
        })

    # ── Durable lane ──────────────────────────────────────────────────

    @app.post("/prepare-context", status_code=202, response_model=PrepareContextResponse)
    def prepare_context(body: PrepareContextRequest):
        job = services.jobs.submit(body.video_url, body.speaker_name)
        return PrepareContextResponse(message="Context preparation started", jobId=job.id)

    @app.get("/status/{job_id}", response_model=JobStatusResponse)
    def job_status(job_id: str):
        job = services.jobs.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found", code=ErrorCode.JOB_NOT_FOUND)
        return JobStatusResponse(id=job.id, state=job.state, progress=job.progress,
                                 stage=job.stage, returnValue=job.result)

    # ── Fast lane and pipeline steps ──────────────────────────────────

    @app.post("/instant-context", response_model=InstantContextResponse)
    def instant_context(body: InstantContextRequest):
        return services.instant.run(body.video_url, body.paused_time, body.speaker_name)

    @app.post("/clone-voice", response_model=CloneVoiceResponse)
    def clone_voice(body: CloneVoiceRequest):
        voice_id, cache_hit = services.stages.clone_voice_from_source(
            body.video_id, body.speaker_name, body.sample_url)
        return CloneVoiceResponse(videoId=body.video_id, voiceId=voice_id,
                                  message=MSG_CLONE_CACHE_HIT if cache_hit else MSG_CLONED)

    @app.post("/get-context-window", response_model=ContextWindowResponse)
    def get_context_window(body: ContextWindowRequest):
        text = services.stages.context_window_for(body.video_id, body.paused_time)
        return ContextWindowResponse(contextWindow=text)

    @app.post("/build-conversation", response_model=ConversationResponse)
    def build_conversation(body: BuildConversationRequest):
        conversation = services.relay.build_conversation(
            body.video_id, body.voice_id, body.speaker_name,
            body.context_window, body.user_question_text)
        return ConversationResponse(conversation=conversation)

    @app.post("/create-agent", response_model=CreateAgentResponse)
    def create_agent(body: CreateAgentRequest):
        agent_id = services.stages.create_agent(body.video_id, body.speaker_name)
        return CreateAgentResponse(agent_id=agent_id)

    # ── Conversation ──────────────────────────────────────────────────

    @app.post("/stream-conversation")
    async def stream_conversation(body: StreamConversationRequest):
        # preconditions raise here, before the response starts
        turn = services.relay.begin_text_turn(body.video_id, body.text)

        async def ndjson():
            async for event in services.relay.stream_turn(turn):
                yield json.dumps(event) + "\n"

        return StreamingResponse(ndjson(), media_type="application/x-ndjson")

    @app.get("/streaming-url/{agent_id}", response_model=StreamingUrlResponse)
    def streaming_url(agent_id: str):
        if services.sessions.find_video_for_agent(agent_id) is None:
            raise NotFoundError(MSG_AGENT_NOT_FOUND, code=ErrorCode.AGENT_NOT_FOUND)
        base = settings['public_ws_base'].rstrip('/')
        return StreamingUrlResponse(url=f"{base}/ws/conversation/{agent_id}")

    @app.websocket("/ws/conversation/{agent_id}")
    async def conversation_socket(websocket: WebSocket, agent_id: str):
        """
        Duplex audio/text channel.

        Client sends: {"type": "audio"|"text"|"mute"|"unmute", ...}
        Server sends: user-transcript, agent-transcript, agent-audio,
        error and a final relay-terminated event.
        """
        await websocket.accept()
        video_id = services.sessions.find_video_for_agent(agent_id)
        if video_id is None:
            await websocket.send_json(
                ErrorEvent(ErrorCode.AGENT_NOT_FOUND, MSG_AGENT_NOT_FOUND).to_dict())
            await websocket.close(code=4404)
            return

        async def receive_client():
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                return None
            try:
                return json.loads(message.get('text') or '')
            except ValueError:
                return {}

        async def send_client(payload: dict):
            try:
                await websocket.send_json(payload)
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("Client gone, dropped %s event", payload.get('type'))

        relay = DuplexRelay(video_id, agent_id, services.quota, services.voices,
                            receive_client, send_client)
        reason = await relay.run()
        if reason != "client-closed":
            await websocket.close()

    # ── Fallback speech and health ────────────────────────────────────

    @app.post("/speak")
    def speak(body: SpeakRequest):
        audio = services.voices.generate_speech(body.voice_id, body.text)
        return Response(content=audio, media_type="audio/mpeg")

    @app.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
    def health(verbose: bool = False):
        cache_ok = services.cache.ping()
        return HealthResponse(
            status="ok" if cache_ok else "degraded",
            timestamp=datetime.now(timezone.utc).isoformat(),
            environment=settings['environment'],
            cache="connected" if cache_ok else "unavailable",
            tools=get_diagnostics(settings) if verbose else None,
        )

    return app
