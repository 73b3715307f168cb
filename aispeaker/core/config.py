"""
Application configuration manager.
Defaults, overlaid by an optional JSON file, overlaid by environment variables.
"""

import json
import logging
import os
from pathlib import Path

from aispeaker.core.constants import (
    CONFIG_ENV_VAR, ENV_PREFIX, DB_PATH, WORK_DIR, SAMPLES_DIR,
    MAX_QUESTIONS_PER_VIDEO, MAX_CONTEXT_WINDOW_SECONDS, VOICE_SAMPLE_SEC,
    INSTANT_SEGMENT_SEC, INSTANT_LOOKAHEAD_SEC, CONTEXT_WINDOW_BUCKET_SEC,
    SESSION_MAX_ENTRIES, MAX_STAGE_RETRIES, STAGE_RETRY_DELAY_SEC,
    WORKER_THREADS, DEFAULT_REDIS_URL, DEFAULT_HOST, DEFAULT_PORT,
    DEFAULT_PUBLIC_WS_BASE, RELAY_IDLE_TIMEOUT_SEC, RELAY_RESPONSE_TIMEOUT_SEC,
    WORKER_POLL_INTERVAL_SEC, WORKER_HEARTBEAT_SEC, JOB_STALE_AFTER_SEC,
    DB_WRITE_RETRY_DELAY_SEC,
)

# Validation bounds
_INT_BOUNDS = {
    'max_questions_per_video': (1, 1000),
    'max_context_window_sec': (10, 3600),
    'voice_sample_sec': (5, 300),
    'instant_segment_sec': (10, 600),
    'instant_lookahead_sec': (0, 60),
    'session_max_entries': (1, 100000),
    'max_stage_retries': (0, 5),
    'worker_threads': (1, 16),
    'cache_ttl_sec': (0, 60 * 60 * 24 * 365),
    'port': (1, 65535),
    'job_stale_after_sec': (10, 60 * 60 * 24),
}
_FLOAT_BOUNDS = {
    'context_window_bucket_sec': (0.0, 60.0),
    'stage_retry_delay_sec': (0.0, 30.0),
    'relay_idle_timeout_sec': (0.5, 30.0),
    'relay_response_timeout_sec': (1.0, 300.0),
    'worker_poll_interval_sec': (0.05, 60.0),
    'worker_heartbeat_sec': (0.05, 600.0),
    'db_write_retry_delay_sec': (0.0, 10.0),
}
_BOOL_KEYS = {'embedded_worker', 'keep_debug_artifacts'}

# Well-known environment names that don't carry the AISPEAKER_ prefix
_ENV_ALIASES = {
    'ELEVENLABS_API_KEY': 'elevenlabs_api_key',
    'DEEPGRAM_API_KEY': 'deepgram_api_key',
    'REDIS_URL': 'redis_url',
    'NODE_ENV': 'environment',
    'PORT': 'port',
}

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'environment': 'development',
    'host': DEFAULT_HOST,
    'port': DEFAULT_PORT,
    'public_ws_base': DEFAULT_PUBLIC_WS_BASE,
    'db_path': str(DB_PATH),
    'work_dir': str(WORK_DIR),
    'samples_dir': str(SAMPLES_DIR),
    'redis_url': DEFAULT_REDIS_URL,
    'cache_ttl_sec': 0,
    'elevenlabs_api_key': '',
    'deepgram_api_key': '',
    'max_questions_per_video': MAX_QUESTIONS_PER_VIDEO,
    'max_context_window_sec': MAX_CONTEXT_WINDOW_SECONDS,
    'voice_sample_sec': VOICE_SAMPLE_SEC,
    'instant_segment_sec': INSTANT_SEGMENT_SEC,
    'instant_lookahead_sec': INSTANT_LOOKAHEAD_SEC,
    'context_window_bucket_sec': CONTEXT_WINDOW_BUCKET_SEC,
    'session_max_entries': SESSION_MAX_ENTRIES,
    'max_stage_retries': MAX_STAGE_RETRIES,
    'stage_retry_delay_sec': STAGE_RETRY_DELAY_SEC,
    'relay_idle_timeout_sec': RELAY_IDLE_TIMEOUT_SEC,
    'relay_response_timeout_sec': RELAY_RESPONSE_TIMEOUT_SEC,
    'worker_poll_interval_sec': WORKER_POLL_INTERVAL_SEC,
    'worker_threads': WORKER_THREADS,
    'worker_heartbeat_sec': WORKER_HEARTBEAT_SEC,
    'job_stale_after_sec': JOB_STALE_AFTER_SEC,
    'db_write_retry_delay_sec': DB_WRITE_RETRY_DELAY_SEC,
    'embedded_worker': True,
    'keep_debug_artifacts': False,
    'log_file': '',
}


class AppConfig:
    """Manages application configuration from defaults, JSON and environment."""

    def __init__(self, config_path: Path | None = None, environ: dict | None = None,
                 overrides: dict | None = None):
        env_path = (environ if environ is not None else os.environ).get(CONFIG_ENV_VAR)
        self.path = config_path or (Path(env_path) if env_path else None)
        self._environ = environ if environ is not None else os.environ
        self._data: dict = {}
        self.load()
        for key, value in (overrides or {}).items():
            self.set(key, value)

    def load(self):
        """Load config: defaults, then JSON file, then environment."""
        self._data = dict(_DEFAULTS)
        if self.path and self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config %s: %s", self.path, e)

        for env_name, value in self._environ.items():
            if env_name in _ENV_ALIASES:
                key = _ENV_ALIASES[env_name]
            elif env_name.startswith(ENV_PREFIX) and env_name != CONFIG_ENV_VAR:
                key = env_name[len(ENV_PREFIX):].lower()
            else:
                continue
            if key in _DEFAULTS:
                self._data[key] = self._validate(key, value)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        self._data[key] = self._validate(key, value)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_BOUNDS:
            lo, hi = _INT_BOUNDS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key in _FLOAT_BOUNDS:
            lo, hi = _FLOAT_BOUNDS[key]
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key in _BOOL_KEYS:
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def max_questions_per_video(self) -> int:
        return self._data['max_questions_per_video']

    @property
    def redis_url(self) -> str:
        return self._data.get('redis_url', '')

    @property
    def environment(self) -> str:
        return self._data.get('environment', 'development')
