"""
Shared constants for AI Speaker.
Single source of truth, imported by every other module.
"""

import pathlib
import tempfile

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "aispeaker"
APP_DISPLAY_NAME = "AI Speaker"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
DATA_ROOT = pathlib.Path(tempfile.gettempdir()) / APP_NAME
DB_PATH = DATA_ROOT / "jobs.db"
WORK_DIR = DATA_ROOT / "work"          # scoped, transient per-request workspaces
SAMPLES_DIR = DATA_ROOT / "samples"    # voice samples kept for re-cloning
LOG_FILE = DATA_ROOT / "aispeaker.log"

CONFIG_ENV_VAR = "AISPEAKER_CONFIG"
ENV_PREFIX = "AISPEAKER_"


# ── Job state values ──────────────────────────────────────────────────
class JobState:
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = {JobState.COMPLETED, JobState.FAILED}

# Allowed source states for each target state
JOB_TRANSITIONS = {
    JobState.ACTIVE: {JobState.QUEUED},
    JobState.COMPLETED: {JobState.ACTIVE},
    JobState.FAILED: {JobState.QUEUED, JobState.ACTIVE},
}


# ── Job stage values (ordered, full derivation) ───────────────────────
class JobStage:
    RESOLVING_VIDEO_ID = "RESOLVING_VIDEO_ID"
    DOWNLOADING_AUDIO = "DOWNLOADING_AUDIO"
    TRANSCRIBING = "TRANSCRIBING"
    EXTRACTING_VOICE_SAMPLE = "EXTRACTING_VOICE_SAMPLE"
    CLONING_VOICE = "CLONING_VOICE"
    BUILDING_CONTEXT_WINDOW = "BUILDING_CONTEXT_WINDOW"


FULL_DERIVATION_STAGES = [
    JobStage.RESOLVING_VIDEO_ID,
    JobStage.DOWNLOADING_AUDIO,
    JobStage.TRANSCRIBING,
    JobStage.EXTRACTING_VOICE_SAMPLE,
    JobStage.CLONING_VOICE,
    JobStage.BUILDING_CONTEXT_WINDOW,
]


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Client errors (never retried)
    INVALID_URL = "ERR_INVALID_URL"
    INVALID_REQUEST = "ERR_INVALID_REQUEST"
    MISSING_PREREQUISITE = "ERR_MISSING_PREREQUISITE"
    NOT_FOUND = "ERR_NOT_FOUND"
    TRANSCRIPT_NOT_FOUND = "ERR_TRANSCRIPT_NOT_FOUND"
    AGENT_NOT_FOUND = "ERR_AGENT_NOT_FOUND"
    JOB_NOT_FOUND = "ERR_JOB_NOT_FOUND"
    QUOTA_EXCEEDED = "ERR_QUOTA_EXCEEDED"

    # Collaborator errors, non-retryable
    VIDEO_UNAVAILABLE = "ERR_VIDEO_UNAVAILABLE"
    FFMPEG_SAMPLE = "ERR_FFMPEG_SAMPLE"
    VOICE_CLONE_FAILED = "ERR_VOICE_CLONE_FAILED"
    AGENT_CREATE_FAILED = "ERR_AGENT_CREATE_FAILED"
    SPEECH_FAILED = "ERR_SPEECH_FAILED"
    RELAY_FAILED = "ERR_RELAY_FAILED"

    # Collaborator errors, retryable
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    DEEPGRAM_TRANSCRIBE_FAILED = "ERR_DEEPGRAM_TRANSCRIBE_FAILED"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    DEEPGRAM_TIMEOUT = "ERR_DEEPGRAM_TIMEOUT"
    COLLABORATOR_TIMEOUT = "ERR_COLLABORATOR_TIMEOUT"

    # Internal
    CACHE_UNAVAILABLE = "ERR_CACHE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


RETRYABLE_ERRORS = {
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.DEEPGRAM_TIMEOUT,
    ErrorCode.COLLABORATOR_TIMEOUT,
}


# ── Pipeline defaults ─────────────────────────────────────────────────
MAX_QUESTIONS_PER_VIDEO = 10
MAX_CONTEXT_WINDOW_SECONDS = 120
VOICE_SAMPLE_SEC = 30              # enough audio for an instant clone
INSTANT_SEGMENT_SEC = 60           # seconds before the paused position
INSTANT_LOOKAHEAD_SEC = 5          # seconds after the paused position
CONTEXT_WINDOW_BUCKET_SEC = 2.0    # tolerance for the context-window cache
SESSION_MAX_ENTRIES = 500
MAX_STAGE_RETRIES = 2
STAGE_RETRY_DELAY_SEC = 1.0
WORKER_POLL_INTERVAL_SEC = 1.0
WORKER_THREADS = 1
WORKER_HEARTBEAT_SEC = 15.0        # how often a worker touches the jobs it runs
JOB_STALE_AFTER_SEC = 120          # active job untouched this long has lost its worker
DB_WRITE_ATTEMPTS = 3              # terminal job writes
DB_WRITE_RETRY_DELAY_SEC = 0.5
TRANSCRIPT_SUMMARY_CHARS = 200

# ── Collaborator timeouts (seconds) ───────────────────────────────────
DOWNLOAD_TIMEOUT_SEC = 900
SEGMENT_DOWNLOAD_TIMEOUT_SEC = 120
FFMPEG_TIMEOUT_SEC = 120
HTTP_TIMEOUT_SEC = 60
CLONE_TIMEOUT_SEC = 120
RELAY_OPEN_TIMEOUT_SEC = 10
RELAY_IDLE_TIMEOUT_SEC = 2.5         # quiet period that ends a streamed turn
RELAY_RESPONSE_TIMEOUT_SEC = 30      # wait for the first agent event of a turn

# Voice sample extraction
SAMPLE_CHANNELS = 1
SAMPLE_RATE = 44100
SAMPLE_BITRATE = "128k"
SAMPLE_FORMAT = "mp3"

# ── Cache store ───────────────────────────────────────────────────────
CACHE_KEY_PREFIX = "aispeaker:video:"
DEFAULT_REDIS_URL = ""             # empty → in-process memory store

# ── Deepgram ──────────────────────────────────────────────────────────
DEEPGRAM_API_BASE = "https://api.deepgram.com/v1"
DEEPGRAM_MODEL = "nova-3"
DEEPGRAM_LANGUAGE = "en"

# ── ElevenLabs ────────────────────────────────────────────────────────
ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"
ELEVENLABS_WS_BASE = "wss://api.elevenlabs.io/v1"
ELEVENLABS_TTS_MODEL = "eleven_multilingual_v2"
ELEVENLABS_AGENT_LLM = "gpt-4o-mini"

# ── HTTP surface ──────────────────────────────────────────────────────
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
DEFAULT_PUBLIC_WS_BASE = "ws://localhost:3001"

# ── Misc ──────────────────────────────────────────────────────────────
VIDEO_ID_RE = r'^[a-zA-Z0-9_-]{11}$'
YOUTUBE_URL_PATTERNS = [
    r'(?:https?://)?(?:www\.)?youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?youtu\.be/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/embed/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/v/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/shorts/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube\.com/live/([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?m\.youtube\.com/watch\?(?:.*&)?v=([a-zA-Z0-9_-]{11})',
    r'(?:https?://)?(?:www\.)?youtube-nocookie\.com/embed/([a-zA-Z0-9_-]{11})',
]
