"""
Context window selection over a timestamped transcript.
"""

from aispeaker.core.models import TranscriptSegment


def build_context_window(transcript: list[TranscriptSegment], paused_time: float,
                         max_window_sec: float) -> str:
    """
    Text of the segments overlapping [paused_time - max_window_sec, paused_time],
    joined in timestamp order.

    If paused_time precedes every segment, the earliest segments starting within
    max_window_sec of the first one are used instead. Empty transcript → "".
    """
    if not transcript:
        return ""

    segments = sorted(transcript, key=lambda s: (s.start, s.end))
    window_start = paused_time - max_window_sec

    if paused_time < segments[0].start:
        bound = segments[0].start + max_window_sec
        selected = [s for s in segments if s.start < bound]
    else:
        selected = [s for s in segments
                    if s.start <= paused_time and s.end >= window_start]

    return ' '.join(s.text.strip() for s in selected if s.text.strip())


def middle_timestamp(transcript: list[TranscriptSegment]) -> float:
    """Start time of the middle segment; the default anchor for agent context."""
    if not transcript:
        return 0.0
    segments = sorted(transcript, key=lambda s: s.start)
    return segments[len(segments) // 2].start


def summarize_transcript(transcript: list[TranscriptSegment], max_chars: int = 200) -> dict:
    text = ' '.join(s.text.strip() for s in transcript if s.text.strip())
    duration = max((s.end for s in transcript), default=0.0)
    preview = text if len(text) <= max_chars else text[:max_chars].rstrip() + '…'
    return {
        'segments': len(transcript),
        'durationSec': round(duration, 2),
        'preview': preview,
    }
