"""
Diagnostics: tool version detection and start-up checks.
"""

import logging
import shutil

from aispeaker.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("yt-dlp", "ffmpeg")


def get_ytdlp_version() -> str:
    """Return yt-dlp version string, or error message."""
    try:
        result = run_subprocess_capture(["yt-dlp", "--version"], timeout=10)
        if result.returncode == 0:
            return result.stdout.strip()
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def get_ffmpeg_version() -> str:
    """Return ffmpeg version string, or error message."""
    try:
        result = run_subprocess_capture(["ffmpeg", "-version"], timeout=10)
        if result.returncode == 0:
            return result.stdout.strip().splitlines()[0]
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"


def missing_tools() -> list[str]:
    return [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]


def get_diagnostics(config: dict | None = None) -> dict:
    """Gather tool versions and which provider keys are configured (never the keys)."""
    config = config or {}
    return {
        "ytdlp_version": get_ytdlp_version(),
        "ffmpeg_version": get_ffmpeg_version(),
        "elevenlabs_key_configured": bool(config.get('elevenlabs_api_key')),
        "deepgram_key_configured": bool(config.get('deepgram_api_key')),
    }
