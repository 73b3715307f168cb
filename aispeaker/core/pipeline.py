"""
Pipeline stages.

Each stage wraps one collaborator call. Before calling out, a stage reads the
shared cache (or the session store for process-local artifacts) and returns
what is already there. Download and transcription are idempotent reads and
are retried a bounded number of times; cloning and agent creation are not
retried, they re-check the cache instead.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable

import requests

from aispeaker.core.audio_sample import extract_voice_sample
from aispeaker.core.cache_store import CacheStore
from aispeaker.core.cleanup import scoped_workspace
from aispeaker.core.constants import (
    ErrorCode, MAX_CONTEXT_WINDOW_SECONDS, MAX_STAGE_RETRIES, STAGE_RETRY_DELAY_SEC,
    VOICE_SAMPLE_SEC, WORK_DIR, SAMPLES_DIR, HTTP_TIMEOUT_SEC,
)
from aispeaker.core.context_window import build_context_window, middle_timestamp
from aispeaker.core.download_audio import download_audio
from aispeaker.core.error_codes import (
    CollaboratorError, NotFoundError, PrerequisiteError,
)
from aispeaker.core.models import CacheEntry, TranscriptSegment
from aispeaker.core.session_store import SessionStore
from aispeaker.core.url_parse import extract_video_id, validate_video_url

logger = logging.getLogger(__name__)


class PipelineStages:
    """The composable stages shared by the durable job and the fast lane."""

    def __init__(self, cache: CacheStore, sessions: SessionStore,
                 transcriber, voices, config: dict | None = None,
                 downloader: Callable = download_audio,
                 sampler: Callable = extract_voice_sample):
        self.cache = cache
        self.sessions = sessions
        self.transcriber = transcriber
        self.voices = voices
        self.config = config or {}
        self.downloader = downloader
        self.sampler = sampler
        self._agent_locks: dict[str, threading.Lock] = {}
        self._agent_locks_guard = threading.Lock()

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def work_dir(self) -> Path:
        return Path(self.config.get('work_dir', str(WORK_DIR)))

    @property
    def samples_dir(self) -> Path:
        return Path(self.config.get('samples_dir', str(SAMPLES_DIR)))

    @property
    def voice_sample_sec(self) -> int:
        return self.config.get('voice_sample_sec', VOICE_SAMPLE_SEC)

    @property
    def max_window_sec(self) -> float:
        return self.config.get('max_context_window_sec', MAX_CONTEXT_WINDOW_SECONDS)

    @property
    def keep_debug(self) -> bool:
        return self.config.get('keep_debug_artifacts', False)

    def _with_retries(self, label: str, fn: Callable, *args, **kwargs):
        """Call fn, retrying retryable CollaboratorErrors with linear backoff."""
        retries = self.config.get('max_stage_retries', MAX_STAGE_RETRIES)
        delay = self.config.get('stage_retry_delay_sec', STAGE_RETRY_DELAY_SEC)
        for attempt in range(retries + 1):
            try:
                return fn(*args, **kwargs)
            except CollaboratorError as e:
                if not e.retryable or attempt >= retries:
                    raise
                wait = delay * (attempt + 1)
                logger.warning("%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                               label, e.code, wait, attempt + 1, retries)
                time.sleep(wait)

    # ── Stage 1: video id ─────────────────────────────────────────────

    def extract_video_id(self, raw_url: str) -> str:
        return validate_video_url(raw_url)

    # ── Stage 2: download ─────────────────────────────────────────────

    def download_segment(self, video_url: str, workspace: Path,
                         window: tuple[float, float] | None = None) -> Path:
        """Audio for `window` (fast lane) or the whole video (durable lane)."""
        return self._with_retries("Download", self.downloader, video_url,
                                  workspace / "source", window=window)

    # ── Stage 3: transcribe ───────────────────────────────────────────

    def transcribe(self, audio_path: Path, offset: float = 0.0) -> list[TranscriptSegment]:
        return self._with_retries("Transcription", self.transcriber.transcribe,
                                  audio_path, offset=offset)

    # ── Stage 4: voice sample ─────────────────────────────────────────

    def extract_voice_sample(self, audio_path: Path, duration_sec: int | None = None,
                             output_dir: Path | None = None) -> Path:
        return self.sampler(audio_path, duration_sec or self.voice_sample_sec, output_dir)

    def prepare_voice_sample(self, video_id: str, audio_path: Path) -> Path:
        """Durable sample for a video, reused while the recorded file still exists."""
        cached = self.cache.get(video_id)
        if cached and cached.voice_sample_path and Path(cached.voice_sample_path).exists():
            logger.info("CACHE HIT: voice sample for %s", video_id)
            return Path(cached.voice_sample_path)

        sample = self.extract_voice_sample(audio_path, output_dir=self.samples_dir / video_id)
        self.cache.merge(video_id, CacheEntry(voice_sample_path=str(sample)))
        return sample

    # ── Stage 5: clone ────────────────────────────────────────────────

    def clone_voice(self, video_id: str, speaker_name: str,
                    sample_path: Path) -> tuple[str, bool]:
        """
        Voice id for the video, cloning only on a cache miss.
        Returns (voice_id, cache_hit). The session records the canonical
        merged value; the return value is what this call itself computed.
        """
        cached = self.cache.get(video_id)
        if cached and cached.voice_id:
            logger.info("CACHE HIT: Found existing voiceId (%s) for video %s. Skipping clone.",
                        cached.voice_id, video_id)
            self.sessions.set_voice_id(video_id, cached.voice_id)
            return cached.voice_id, True

        logger.info("CACHE MISS: No voiceId found for video %s. Cloning a new voice.", video_id)
        voice_id = self.voices.clone_voice(speaker_name, Path(sample_path))
        merged = self.cache.merge(video_id, CacheEntry(voice_id=voice_id,
                                                       speaker_name=speaker_name))
        self.sessions.set_voice_id(video_id, merged.voice_id or voice_id)
        self.sessions.set_speaker_name(video_id, speaker_name)
        return voice_id, False

    def clone_voice_from_source(self, video_id: str, speaker_name: str,
                                sample_url: str) -> tuple[str, bool]:
        """
        Clone for an explicit request: cached voice, else the recorded
        sample, else a sample fetched from `sample_url`.
        """
        cached = self.cache.get(video_id)
        if cached and cached.voice_id:
            return self.clone_voice(video_id, speaker_name, Path())

        if cached and cached.voice_sample_path and Path(cached.voice_sample_path).exists():
            return self.clone_voice(video_id, speaker_name, Path(cached.voice_sample_path))

        with scoped_workspace(self.work_dir, f"clone-{video_id}", keep=self.keep_debug) as ws:
            sample = self.fetch_sample(sample_url, ws)
            return self.clone_voice(video_id, speaker_name, sample)

    def fetch_sample(self, sample_url: str, workspace: Path) -> Path:
        """A video URL is cut to its opening seconds; anything else is fetched as audio."""
        if extract_video_id(sample_url):
            audio = self.download_segment(sample_url, workspace, window=(0, self.voice_sample_sec))
            return self.extract_voice_sample(audio, output_dir=workspace / "sample")

        target = workspace / "sample_download.mp3"
        try:
            with requests.get(sample_url, stream=True, timeout=HTTP_TIMEOUT_SEC) as resp:
                resp.raise_for_status()
                with open(target, 'wb') as f:
                    for chunk in resp.iter_content(chunk_size=64 * 1024):
                        f.write(chunk)
        except requests.exceptions.Timeout:
            raise CollaboratorError(ErrorCode.COLLABORATOR_TIMEOUT,
                                    f"Sample download timed out: {sample_url}")
        except requests.exceptions.RequestException as e:
            raise CollaboratorError(ErrorCode.DOWNLOAD_FAILED, f"Sample download failed: {e}")
        return self.extract_voice_sample(target, output_dir=workspace / "sample")

    def resolve_voice_id(self, video_id: str) -> str | None:
        """Session first; on a miss the shared cache, copied back into the session."""
        state = self.sessions.get(video_id)
        if state and state.voice_id:
            return state.voice_id
        voice_id = self.cache.get_voice_id(video_id)
        if voice_id:
            self.sessions.set_voice_id(video_id, voice_id)
        return voice_id

    # ── Stage 6: context window ───────────────────────────────────────

    def build_context_window(self, transcript: list[TranscriptSegment], paused_time: float,
                             max_window_sec: float | None = None) -> str:
        return build_context_window(transcript, paused_time,
                                    self.max_window_sec if max_window_sec is None else max_window_sec)

    def context_window_for(self, video_id: str, paused_time: float) -> str:
        cached = self.sessions.get_cached_context_window(video_id, paused_time)
        if cached is not None:
            return cached

        transcript = self.sessions.get_transcript(video_id)
        if not transcript:
            raise NotFoundError("Video transcript not found. Please prepare context first.",
                                code=ErrorCode.TRANSCRIPT_NOT_FOUND)

        text = self.build_context_window(transcript, paused_time)
        self.sessions.cache_context_window(video_id, paused_time, text)
        return text

    # ── Stage 7: agent ────────────────────────────────────────────────

    def _agent_lock(self, video_id: str) -> threading.Lock:
        with self._agent_locks_guard:
            return self._agent_locks.setdefault(video_id, threading.Lock())

    def create_agent(self, video_id: str, speaker_name: str) -> str:
        """Agent for the video, created at most once per process."""
        existing = self.sessions.get_agent_id(video_id)
        if existing:
            return existing

        with self._agent_lock(video_id):
            existing = self.sessions.get_agent_id(video_id)
            if existing:
                return existing

            transcript = self.sessions.get_transcript(video_id)
            if not transcript:
                raise PrerequisiteError(
                    "Transcript is missing or empty. Please prepare context first.",
                    details=[{'missing': 'transcript', 'step': '/prepare-context'}])

            voice_id = self.resolve_voice_id(video_id)
            if not voice_id:
                raise PrerequisiteError(
                    "Voice not found. Please clone voice first.",
                    details=[{'missing': 'voiceId', 'step': '/clone-voice'}])

            anchor = middle_timestamp(transcript)
            context = self.build_context_window(transcript, anchor)
            agent_id = self.voices.create_agent(speaker_name, voice_id, context)
            self.sessions.set_agent_id(video_id, agent_id)
            logger.info("Agent %s bound to video %s", agent_id, video_id)
            return agent_id
