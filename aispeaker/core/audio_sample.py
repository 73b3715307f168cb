"""
Voice sample extraction using ffmpeg.
Target: mono, 44.1kHz, MP3 128kbps, the first N seconds of the input.
"""

import logging
import subprocess
from pathlib import Path

from aispeaker.core.security_utils import run_subprocess_capture
from aispeaker.core.error_codes import CollaboratorError
from aispeaker.core.constants import (
    ErrorCode, SAMPLE_CHANNELS, SAMPLE_RATE, SAMPLE_BITRATE, SAMPLE_FORMAT,
    FFMPEG_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def sample_filename(input_path: Path, duration_sec: int) -> str:
    return f"{input_path.stem}.sample{int(duration_sec)}s.{SAMPLE_FORMAT}"


def extract_voice_sample(input_path: Path, duration_sec: int,
                         output_dir: Path | None = None) -> Path:
    """
    Cut the first `duration_sec` seconds into a clone-ready sample.
    Deterministic: same input and duration always produce the same file.
    Returns path to the sample.
    """
    output_dir = output_dir or input_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / sample_filename(input_path, duration_sec)

    args = [
        "ffmpeg",
        "-y",                           # overwrite
        "-i", str(input_path),
        "-t", str(int(duration_sec)),
        "-ar", str(SAMPLE_RATE),
        "-ac", str(SAMPLE_CHANNELS),
        "-b:a", SAMPLE_BITRATE,
        "-codec:a", "libmp3lame",
        "-map_metadata", "-1",          # strip tags so output bytes are stable
        str(output_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=FFMPEG_TIMEOUT_SEC)
    except subprocess.TimeoutExpired:
        raise CollaboratorError(ErrorCode.COLLABORATOR_TIMEOUT,
                                f"ffmpeg sample extraction timed out after {FFMPEG_TIMEOUT_SEC}s")
    except OSError as e:
        raise CollaboratorError(ErrorCode.FFMPEG_SAMPLE, f"ffmpeg sample extraction failed: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise CollaboratorError(ErrorCode.FFMPEG_SAMPLE,
                                f"ffmpeg failed (rc={result.returncode}): {stderr[:300]}")

    if not output_path.exists():
        raise CollaboratorError(ErrorCode.FFMPEG_SAMPLE, "Voice sample file not created")

    logger.info("Extracted voice sample: %s", output_path)
    return output_path

