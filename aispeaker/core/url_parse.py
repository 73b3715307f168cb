"""
YouTube URL parsing and validation.
"""

import re
from urllib.parse import urlparse, parse_qs

from aispeaker.core.constants import YOUTUBE_URL_PATTERNS, VIDEO_ID_RE, ErrorCode
from aispeaker.core.error_codes import ValidationError


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL.
    Every URL form of one video yields the same id.
    Returns None if the URL is not a valid YouTube URL.
    """
    if not isinstance(url, str):
        return None
    url = url.strip()
    if not url:
        return None

    # Try regex patterns
    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: parse query string for 'v' parameter
    parsed = urlparse(url)
    if 'youtube.com' in parsed.netloc or 'youtu.be' in parsed.netloc:
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and re.match(VIDEO_ID_RE, v):
            return v

    return None


def validate_video_url(url: str) -> str:
    """
    Validate a YouTube URL and return the video_id.
    Raises ValidationError if invalid.
    """
    video_id = extract_video_id(url)
    if not video_id:
        raise ValidationError("Invalid YouTube URL", code=ErrorCode.INVALID_URL,
                              details=[{'field': 'videoUrl', 'value': str(url)[:200]}])
    return video_id


def is_video_id(value: str) -> bool:
    """Quick check if a string is already a canonical video id."""
    return bool(value) and re.match(VIDEO_ID_RE, value) is not None


def canonical_watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"
