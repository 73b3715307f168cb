"""
Audio download via yt-dlp, whole video or a bounded time window.
"""

import logging
import subprocess
from pathlib import Path

from aispeaker.core.security_utils import run_subprocess_capture
from aispeaker.core.error_codes import CollaboratorError
from aispeaker.core.constants import (
    ErrorCode, DOWNLOAD_TIMEOUT_SEC, SEGMENT_DOWNLOAD_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def format_section(start_sec: float, end_sec: float) -> str:
    """yt-dlp --download-sections argument for a time range."""
    return f"*{max(0.0, start_sec):.2f}-{end_sec:.2f}"


def _classify_failure(stderr: str) -> CollaboratorError:
    if "Video unavailable" in stderr or "is not available" in stderr or "Private video" in stderr:
        return CollaboratorError(ErrorCode.VIDEO_UNAVAILABLE, f"Video unavailable: {stderr[:200]}")
    return CollaboratorError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp download failed: {stderr[:300]}")


def download_audio(video_url: str, output_dir: Path,
                   window: tuple[float, float] | None = None,
                   timeout: int | None = None) -> Path:
    """
    Download the audio track using yt-dlp and convert it to mp3.
    With `window=(start, end)` only that time range is fetched.
    Returns path to the downloaded file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    output_template = str(output_dir / "source.%(ext)s")
    # leftovers (.part files) of an earlier attempt would be picked up below
    for stale in output_dir.glob("source.*"):
        stale.unlink()
    if timeout is None:
        timeout = SEGMENT_DOWNLOAD_TIMEOUT_SEC if window else DOWNLOAD_TIMEOUT_SEC

    args = [
        "yt-dlp",
        "--no-playlist",
        "--quiet",
        "-f", "bestaudio/best",
        "-x", "--audio-format", "mp3",
        "-o", output_template,
    ]

    if window is not None:
        start, end = window
        args.extend([
            "--download-sections", format_section(start, end),
            "--force-keyframes-at-cuts",
        ])

    args.append(video_url)

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise CollaboratorError(ErrorCode.COLLABORATOR_TIMEOUT,
                                f"yt-dlp timed out after {timeout}s")
    except OSError as e:
        raise CollaboratorError(ErrorCode.DOWNLOAD_FAILED, f"Audio download failed: {e}")

    if result.returncode != 0:
        raise _classify_failure(result.stderr or "")

    # Find the downloaded file
    source_files = sorted(output_dir.glob("source.*"))
    if not source_files:
        raise CollaboratorError(ErrorCode.DOWNLOAD_FAILED, "No audio file found after download")

    downloaded = source_files[0]
    logger.info("Downloaded audio%s: %s",
                f" [{window[0]:.0f}s-{window[1]:.0f}s]" if window else "", downloaded)
    return downloaded
