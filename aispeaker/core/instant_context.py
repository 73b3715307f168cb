"""
Instant-context fast lane.

A reduced pipeline that answers within one request: only a short window of
audio around the paused position is downloaded and transcribed, and a voice
is cloned from that same window when the cache has none yet.
"""

import logging

from aispeaker.core.cleanup import scoped_workspace
from aispeaker.core.constants import INSTANT_SEGMENT_SEC, INSTANT_LOOKAHEAD_SEC
from aispeaker.core.pipeline import PipelineStages
from aispeaker.core.url_parse import canonical_watch_url

logger = logging.getLogger(__name__)


def segment_window(paused_time: float, before_sec: float, after_sec: float) -> tuple[float, float]:
    """Download window around the paused position, clipped at the start of the video."""
    start = max(0.0, paused_time - before_sec)
    return start, max(start + 1.0, paused_time + after_sec)


class InstantContext:

    def __init__(self, stages: PipelineStages, config: dict | None = None):
        self.stages = stages
        self.config = config or {}

    @property
    def segment_sec(self) -> float:
        return self.config.get('instant_segment_sec', INSTANT_SEGMENT_SEC)

    @property
    def lookahead_sec(self) -> float:
        return self.config.get('instant_lookahead_sec', INSTANT_LOOKAHEAD_SEC)

    def run(self, video_url: str, paused_time: float, speaker_name: str) -> dict:
        """Returns {videoId, voiceId, contextWindow} for the paused position."""
        stages = self.stages
        video_id = stages.extract_video_id(video_url)
        cached_voice = stages.cache.get_voice_id(video_id)
        window = segment_window(paused_time, self.segment_sec, self.lookahead_sec)
        logger.info("Instant context for %s at %.1fs (window %.0f-%.0fs, cached voice: %s)",
                    video_id, paused_time, window[0], window[1], bool(cached_voice))

        with scoped_workspace(stages.work_dir, f"instant-{video_id}",
                              keep=stages.keep_debug) as workspace:
            audio_path = stages.download_segment(canonical_watch_url(video_id), workspace,
                                                 window=window)
            segments = stages.transcribe(audio_path, offset=window[0])
            context_window = ' '.join(s.text.strip() for s in segments if s.text.strip())

            if cached_voice:
                voice_id = cached_voice
                stages.sessions.set_voice_id(video_id, voice_id)
            else:
                sample_path = stages.extract_voice_sample(audio_path,
                                                          output_dir=workspace / "sample")
                voice_id, _ = stages.clone_voice(video_id, speaker_name, sample_path)

        stages.sessions.set_speaker_name(video_id, speaker_name)
        return {
            'videoId': video_id,
            'voiceId': voice_id,
            'contextWindow': context_window,
        }
