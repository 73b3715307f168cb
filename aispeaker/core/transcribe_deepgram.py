"""
Deepgram Speech-to-Text integration.
Uses Nova-3 (English), pre-recorded mode, with utterance timestamps.
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import mimetypes
import time
import random
import requests
from pathlib import Path

from aispeaker.core.error_codes import CollaboratorError
from aispeaker.core.constants import (
    ErrorCode, DEEPGRAM_API_BASE, DEEPGRAM_MODEL, DEEPGRAM_LANGUAGE,
)
from aispeaker.core.models import TranscriptSegment

logger = logging.getLogger(__name__)

DEEPGRAM_PRERECORDED_URL = f"{DEEPGRAM_API_BASE}/listen"

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter


class DeepgramTranscriber:
    """Transcription collaborator: audio file → ordered TranscriptSegments."""

    def __init__(self, api_key: str, session: requests.Session | None = None):
        self.api_key = api_key
        self.session = session or requests.Session()

    def transcribe(self, audio_path: Path, offset: float = 0.0) -> list[TranscriptSegment]:
        result = self.transcribe_raw(audio_path)
        segments = extract_segments(result, offset=offset)
        logger.info("Transcribed %s: %d segments", audio_path.name, len(segments))
        return segments

    def transcribe_raw(self, audio_path: Path) -> dict:
        """
        Transcribe an audio file using Deepgram Nova-3 (pre-recorded).
        Retries up to 4 times with exponential backoff on 429 rate-limit responses.
        Returns the Deepgram response dict.
        """
        if not self.api_key:
            raise CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
                                    "Deepgram API key not configured", retryable=False)

        content_type = mimetypes.guess_type(audio_path.name)[0] or "audio/mpeg"
        headers = {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": content_type,
        }

        params = {
            "model": DEEPGRAM_MODEL,
            "language": DEEPGRAM_LANGUAGE,
            "smart_format": "true",
            "punctuate": "true",
            "paragraphs": "true",
            "utterances": "true",
        }

        file_size = audio_path.stat().st_size
        # Adaptive timeout: ~1 min per 10MB, minimum 120s
        timeout_sec = max(120, int(file_size / (10 * 1024 * 1024) * 60) + 60)

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            try:
                with open(audio_path, 'rb') as f:
                    resp = self.session.post(
                        DEEPGRAM_PRERECORDED_URL,
                        headers=headers,
                        params=params,
                        data=f,
                        timeout=timeout_sec,
                    )
            except requests.exceptions.Timeout:
                raise CollaboratorError(ErrorCode.DEEPGRAM_TIMEOUT,
                                        "Deepgram request timed out", retryable=True)
            except requests.exceptions.ConnectionError:
                raise CollaboratorError(ErrorCode.NETWORK_TRANSIENT,
                                        "Network error connecting to Deepgram", retryable=True)
            except requests.exceptions.RequestException as e:
                raise CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
                                        f"Deepgram request failed: {e}", retryable=True)

            if resp.status_code == 504:
                raise CollaboratorError(ErrorCode.DEEPGRAM_TIMEOUT,
                                        "Deepgram returned 504 Gateway Timeout", retryable=True)

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Deepgram rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    time.sleep(delay)
                    continue
                raise CollaboratorError(ErrorCode.NETWORK_TRANSIENT,
                                        f"Deepgram rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries",
                                        retryable=True)

            if resp.status_code != 200:
                # Sanitize error message (never log API key)
                error_body = resp.text[:300] if resp.text else "No response body"
                raise CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
                                        f"Deepgram returned {resp.status_code}: {error_body}",
                                        retryable=resp.status_code >= 500)

            try:
                return resp.json()
            except json.JSONDecodeError:
                raise CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
                                        "Failed to parse Deepgram response JSON")

        # Should never reach here
        raise CollaboratorError(ErrorCode.NETWORK_TRANSIENT,
                                "Deepgram request exhausted retries", retryable=True)


def extract_segments(deepgram_response: dict, offset: float = 0.0) -> list[TranscriptSegment]:
    """
    Timestamped segments from a Deepgram response, ordered by start.
    Uses utterances if available, falls back to paragraph sentences,
    then to a single segment spanning the plain transcript.
    """
    results = deepgram_response.get('results') or {}
    segments: list[TranscriptSegment] = []

    for utt in results.get('utterances') or []:
        text = (utt.get('transcript') or '').strip()
        if text:
            segments.append(TranscriptSegment(
                start=float(utt.get('start', 0.0)) + offset,
                end=float(utt.get('end', 0.0)) + offset,
                text=text,
            ))

    if not segments:
        try:
            alternative = results.get('channels', [{}])[0].get('alternatives', [{}])[0]
        except (IndexError, AttributeError):
            alternative = {}

        paragraphs = (alternative.get('paragraphs') or {}).get('paragraphs') or []
        for para in paragraphs:
            for sentence in para.get('sentences', []):
                text = (sentence.get('text') or '').strip()
                if text:
                    segments.append(TranscriptSegment(
                        start=float(sentence.get('start', 0.0)) + offset,
                        end=float(sentence.get('end', 0.0)) + offset,
                        text=text,
                    ))

        if not segments:
            transcript = (alternative.get('transcript') or '').strip()
            if transcript:
                words = alternative.get('words') or []
                end = float(words[-1].get('end', 0.0)) if words else 0.0
                segments.append(TranscriptSegment(start=offset, end=end + offset, text=transcript))

    segments.sort(key=lambda s: s.start)
    return segments
