#!/usr/bin/env python3
"""
Tests for the pipeline stages, the SQLite job store, the job queue worker
and the instant-context fast lane, all against in-process fakes.
"""

import sys
import sqlite3
import time
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

# Add project root (and this directory, for the fakes) to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from aispeaker.core.cache_store import MemoryCacheStore
from aispeaker.core.constants import ErrorCode, JobState, JobStage
from aispeaker.core.db_sqlite import Database
from aispeaker.core.error_codes import (
    CollaboratorError, NotFoundError, PrerequisiteError, ValidationError,
)
from aispeaker.core.instant_context import InstantContext, segment_window
from aispeaker.core.job_queue import JobQueueManager, stage_progress
from aispeaker.core.models import CacheEntry
from aispeaker.core.pipeline import PipelineStages
from aispeaker.core.session_store import SessionStore

from fakes import (
    VIDEO_ID, VIDEO_URL, SEGMENTS, FakeDownloader, FakeSampler, FakeTranscriber,
    FakeVoiceClient, make_config, temp_dir, transient_error,
)


class PipelineTestCase(unittest.TestCase):
    """Fresh stores, fakes and a temporary data root per test."""

    def setUp(self):
        self._tmp = temp_dir()
        self.tmpdir = Path(self._tmp.name)
        self.config = make_config(self._tmp.name).as_dict()
        self.cache = MemoryCacheStore()
        self.sessions = SessionStore()
        self.downloader = FakeDownloader()
        self.sampler = FakeSampler()
        self.transcriber = FakeTranscriber()
        self.voices = FakeVoiceClient()
        self.stages = self.make_stages()

    def tearDown(self):
        self._tmp.cleanup()

    def make_stages(self):
        return PipelineStages(self.cache, self.sessions, self.transcriber, self.voices,
                              self.config, downloader=self.downloader, sampler=self.sampler)

    def work_dir_entries(self):
        work_dir = Path(self.config['work_dir'])
        return list(work_dir.iterdir()) if work_dir.exists() else []


class TestCloneStage(PipelineTestCase):

    def test_second_clone_is_a_cache_hit(self):
        sample = self.tmpdir / "sample.mp3"
        sample.write_bytes(b"x")
        first, hit1 = self.stages.clone_voice(VIDEO_ID, "Ann", sample)
        second, hit2 = self.stages.clone_voice(VIDEO_ID, "Ann", sample)
        self.assertEqual(first, second)
        self.assertEqual((hit1, hit2), (False, True))
        self.assertEqual(self.voices.clone_calls, 1)
        self.assertEqual(self.cache.get_voice_id(VIDEO_ID), first)
        self.assertEqual(self.sessions.get(VIDEO_ID).voice_id, first)

    def test_clone_from_shared_cache_of_another_process(self):
        self.cache.merge(VIDEO_ID, CacheEntry(voice_id="voice-elsewhere"))
        voice_id, hit = self.stages.clone_voice_from_source(VIDEO_ID, "Ann", VIDEO_URL)
        self.assertEqual((voice_id, hit), ("voice-elsewhere", True))
        self.assertEqual(self.voices.clone_calls, 0)
        self.assertEqual(self.downloader.calls, [])

    def test_clone_from_recorded_sample(self):
        sample = self.tmpdir / "recorded.mp3"
        sample.write_bytes(b"x")
        self.cache.merge(VIDEO_ID, CacheEntry(voice_sample_path=str(sample)))
        voice_id, hit = self.stages.clone_voice_from_source(VIDEO_ID, "Ann", VIDEO_URL)
        self.assertFalse(hit)
        self.assertEqual(voice_id, "voice-1")
        self.assertEqual(self.downloader.calls, [])

    def test_clone_from_video_sample_url(self):
        voice_id, hit = self.stages.clone_voice_from_source(VIDEO_ID, "Ann", VIDEO_URL)
        self.assertEqual((voice_id, hit), ("voice-1", False))
        self.assertEqual(self.downloader.calls[0]['window'], (0, 30))
        self.assertEqual(self.work_dir_entries(), [])

    def test_clone_from_audio_sample_url(self):
        resp = MagicMock()
        resp.iter_content.return_value = [b"ID3", b"audio"]
        with patch("aispeaker.core.pipeline.requests.get") as get:
            get.return_value.__enter__.return_value = resp
            voice_id, _ = self.stages.clone_voice_from_source(
                VIDEO_ID, "Ann", "https://cdn.example.com/ann.mp3")
        self.assertEqual(voice_id, "voice-1")
        self.assertEqual(get.call_args[0][0], "https://cdn.example.com/ann.mp3")
        self.assertEqual(self.sampler.calls, 1)
        self.assertEqual(self.work_dir_entries(), [])

    def test_failed_clone_leaves_cache_untouched(self):
        self.voices.clone_error = CollaboratorError(ErrorCode.VOICE_CLONE_FAILED, "rejected")
        with self.assertRaises(CollaboratorError):
            self.stages.clone_voice_from_source(VIDEO_ID, "Ann", VIDEO_URL)
        self.assertIsNone(self.cache.get_voice_id(VIDEO_ID))
        self.assertEqual(self.voices.clone_calls, 1)
        self.assertEqual(self.work_dir_entries(), [])


class TestRetries(PipelineTestCase):

    def test_download_retried_until_success(self):
        self.downloader.failures = [transient_error(), transient_error()]
        path = self.stages.download_segment(VIDEO_URL, self.tmpdir)
        self.assertTrue(path.exists())
        self.assertEqual(len(self.downloader.calls), 3)

    def test_download_gives_up_after_max_retries(self):
        self.downloader.failures = [transient_error() for _ in range(3)]
        with self.assertRaises(CollaboratorError):
            self.stages.download_segment(VIDEO_URL, self.tmpdir)
        self.assertEqual(len(self.downloader.calls), 3)

    def test_non_retryable_fails_fast(self):
        self.transcriber.failures = [
            CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED, "bad audio", retryable=False)]
        with self.assertRaises(CollaboratorError):
            self.stages.transcribe(self.tmpdir / "source.mp3")
        self.assertEqual(self.transcriber.calls, 1)


class TestContextAndAgent(PipelineTestCase):

    def test_context_window_requires_transcript(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.stages.context_window_for(VIDEO_ID, 10.0)
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPT_NOT_FOUND)

    def test_context_window_is_cached(self):
        self.sessions.set_transcript(VIDEO_ID, SEGMENTS)
        text = self.stages.context_window_for(VIDEO_ID, 16.0)
        self.assertIn("Because cloning a voice is slow.", text)
        self.assertEqual(self.sessions.get_cached_context_window(VIDEO_ID, 16.0), text)
        self.assertEqual(self.stages.context_window_for(VIDEO_ID, 16.4), text)

    def test_agent_needs_transcript_then_voice(self):
        with self.assertRaises(PrerequisiteError) as ctx:
            self.stages.create_agent(VIDEO_ID, "Ann")
        self.assertIn("Transcript", ctx.exception.message)

        self.sessions.set_transcript(VIDEO_ID, SEGMENTS)
        with self.assertRaises(PrerequisiteError) as ctx:
            self.stages.create_agent(VIDEO_ID, "Ann")
        self.assertIn("Voice", ctx.exception.message)
        self.assertEqual(self.voices.agent_calls, 0)

    def test_agent_voice_rebuilt_from_cache(self):
        self.sessions.set_transcript(VIDEO_ID, SEGMENTS)
        self.cache.merge(VIDEO_ID, CacheEntry(voice_id="voice-shared"))
        self.assertEqual(self.stages.create_agent(VIDEO_ID, "Ann"), "agent-1")
        self.assertEqual(self.sessions.get(VIDEO_ID).voice_id, "voice-shared")

    def test_agent_created_once_under_concurrency(self):
        self.sessions.set_transcript(VIDEO_ID, SEGMENTS)
        self.sessions.set_voice_id(VIDEO_ID, "voice-1")
        results = []
        threads = [threading.Thread(
            target=lambda: results.append(self.stages.create_agent(VIDEO_ID, "Ann")))
            for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(set(results), {"agent-1"})
        self.assertEqual(self.voices.agent_calls, 1)
        # anchored on the middle of the transcript
        self.assertIn("First, why memoize at all?", self.voices.agent_contexts[0])


class TestDatabase(unittest.TestCase):
    """Test the SQLite job store and its state machine."""

    def setUp(self):
        self._tmp = temp_dir()
        self.db_path = Path(self._tmp.name) / "jobs.db"
        self.db = Database(self.db_path)

    def tearDown(self):
        self.db.close()
        self._tmp.cleanup()

    def test_create_and_get_job(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID, "Ann")
        fetched = self.db.get_job(job.id)
        self.assertEqual(fetched.state, JobState.QUEUED)
        self.assertEqual(fetched.video_url, VIDEO_URL)
        self.assertEqual(fetched.progress, 0)
        self.assertIsNone(self.db.get_job("missing"))

    def test_happy_path_transitions(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        claimed = self.db.claim_next_job()
        self.assertEqual((claimed.id, claimed.state), (job.id, JobState.ACTIVE))
        self.assertTrue(self.db.update_progress(job.id, JobStage.TRANSCRIBING, 33))
        self.assertTrue(self.db.transition_job(job.id, JobState.COMPLETED, progress=100,
                                               result={'videoId': VIDEO_ID}))
        done = self.db.get_job(job.id)
        self.assertEqual(done.result, {'videoId': VIDEO_ID})
        self.assertIsNotNone(done.completed_at)

    def test_terminal_states_are_final(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.db.claim_next_job()
        self.db.transition_job(job.id, JobState.COMPLETED, progress=100)
        self.assertFalse(self.db.transition_job(job.id, JobState.ACTIVE))
        self.assertFalse(self.db.transition_job(job.id, JobState.FAILED))
        self.assertFalse(self.db.update_progress(job.id, JobStage.CLONING_VOICE, 67))
        with self.assertRaises(ValueError):
            self.db.transition_job(job.id, JobState.QUEUED)
        self.assertEqual(self.db.get_job(job.id).state, JobState.COMPLETED)

    def test_queued_cannot_complete(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.assertFalse(self.db.transition_job(job.id, JobState.COMPLETED))
        self.assertTrue(self.db.transition_job(job.id, JobState.FAILED))

    def test_each_job_claimed_once(self):
        for _ in range(6):
            self.db.create_job(VIDEO_URL, VIDEO_ID)
        other = Database(self.db_path)          # a second process' connection
        claimed, lock = [], threading.Lock()

        def claim(db):
            while True:
                job = db.claim_next_job()
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=claim, args=(db,))
                   for db in (self.db, other, self.db, other)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        other.close()
        self.assertEqual(len(claimed), 6)
        self.assertEqual(len(set(claimed)), 6)

    def backdate(self, job_id, seconds):
        self.db.conn.execute("UPDATE jobs SET updated_at = ? WHERE id = ?",
                             (Database._now(seconds), job_id))
        self.db.conn.commit()

    def test_claim_records_worker(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.assertEqual(self.db.claim_next_job("worker-a").worker_id, "worker-a")
        self.assertEqual(self.db.get_job(job.id).worker_id, "worker-a")

    def test_recover_stale_jobs(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        queued = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.db.claim_next_job("worker-a")
        self.backdate(job.id, 600)
        self.assertEqual(self.db.recover_stale_jobs(ErrorCode.INTERNAL, "worker died", 120), 1)
        failed = self.db.get_job(job.id)
        self.assertEqual(failed.state, JobState.FAILED)
        self.assertEqual(failed.result, {'error': "worker died", 'code': ErrorCode.INTERNAL,
                                         'retryable': False})
        self.assertEqual(self.db.get_job(queued.id).state, JobState.QUEUED)

    def test_live_job_survives_recovery_from_other_process(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.db.claim_next_job("worker-a")
        other = Database(self.db_path)
        try:
            self.assertEqual(other.recover_stale_jobs(ErrorCode.INTERNAL, "worker died", 120), 0)
        finally:
            other.close()
        self.assertTrue(self.db.transition_job(job.id, JobState.COMPLETED, progress=100))
        self.assertEqual(self.db.get_job(job.id).state, JobState.COMPLETED)

    def test_heartbeat_keeps_job_fresh(self):
        job = self.db.create_job(VIDEO_URL, VIDEO_ID)
        done = self.db.create_job(VIDEO_URL, VIDEO_ID)
        self.db.claim_next_job("worker-a")
        self.backdate(job.id, 600)
        self.assertEqual(self.db.heartbeat([job.id, done.id]), 1)     # queued job untouched
        self.assertEqual(self.db.heartbeat([]), 0)
        self.assertEqual(self.db.recover_stale_jobs(ErrorCode.INTERNAL, "worker died", 120), 0)
        self.assertEqual(self.db.get_job(job.id).state, JobState.ACTIVE)


class TestJobQueue(PipelineTestCase):

    def setUp(self):
        super().setUp()
        self.db = Database(self.config['db_path'])
        self.jobs = JobQueueManager(self.db, self.stages, self.config)
        self.updates = []
        self.jobs.on_job_updated = lambda job: self.updates.append((job.state, job.progress))

    def tearDown(self):
        self.jobs.stop_processing()
        self.db.close()
        super().tearDown()

    def test_progress_values(self):
        self.assertEqual([stage_progress(k) for k in range(7)], [0, 17, 33, 50, 67, 83, 100])

    def test_full_derivation(self):
        job = self.jobs.submit(VIDEO_URL)
        self.assertTrue(self.jobs.process_next())
        self.assertFalse(self.jobs.process_next())

        done = self.jobs.get_job(job.id)
        self.assertEqual(done.state, JobState.COMPLETED)
        self.assertEqual(done.progress, 100)
        self.assertEqual(done.result['videoId'], VIDEO_ID)
        self.assertEqual(done.result['voiceId'], "voice-1")
        self.assertEqual(done.result['transcriptSummary']['segments'], len(SEGMENTS))

        progress = [p for _, p in self.updates]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(self.updates[-1], (JobState.COMPLETED, 100))

        # artifacts land in the stores, transient audio is gone
        self.assertEqual(self.sessions.get(VIDEO_ID).speaker_name, f"Speaker for {VIDEO_ID}")
        self.assertEqual(len(self.sessions.get_transcript(VIDEO_ID)), len(SEGMENTS))
        entry = self.cache.get(VIDEO_ID)
        self.assertEqual(entry.voice_id, "voice-1")
        self.assertTrue(Path(entry.voice_sample_path).exists())
        self.assertEqual(self.work_dir_entries(), [])

    def test_second_job_reuses_voice_and_sample(self):
        self.jobs.submit(VIDEO_URL, "Ann")
        second = self.jobs.submit("https://youtu.be/" + VIDEO_ID, "Ann")
        self.jobs.process_next()
        self.jobs.process_next()
        self.assertEqual(self.jobs.get_job(second.id).result['voiceCacheHit'], True)
        self.assertEqual(self.voices.clone_calls, 1)
        self.assertEqual(self.sampler.calls, 1)

    def test_failure_is_recorded_in_result(self):
        self.transcriber.failures = [
            CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED, "rejected", retryable=False)]
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        failed = self.jobs.get_job(job.id)
        self.assertEqual(failed.state, JobState.FAILED)
        self.assertEqual(failed.stage, JobStage.TRANSCRIBING)
        self.assertEqual(failed.result, {'error': "rejected",
                                         'code': ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED,
                                         'retryable': False})
        self.assertEqual(self.work_dir_entries(), [])

    def test_transient_failure_retried_inside_stage(self):
        self.transcriber.failures = [transient_error()]
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.COMPLETED)
        self.assertEqual(self.transcriber.calls, 2)

    def test_unexpected_error_becomes_internal(self):
        self.transcriber.transcribe = MagicMock(side_effect=KeyError("results"))
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        failed = self.jobs.get_job(job.id)
        self.assertEqual(failed.state, JobState.FAILED)
        self.assertEqual(failed.error_code, ErrorCode.INTERNAL)

    def test_invalid_url_rejected_on_submit(self):
        with self.assertRaises(ValidationError):
            self.jobs.submit("https://example.com/video")
        self.assertEqual(self.db.get_jobs_by_state(JobState.QUEUED), [])

    def test_background_worker(self):
        self.config['worker_poll_interval_sec'] = 0.05
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.start_processing()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if self.jobs.get_job(job.id).state == JobState.COMPLETED:
                break
            time.sleep(0.02)
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.COMPLETED)

    def test_second_worker_leaves_running_job_alone(self):
        job = self.jobs.submit(VIDEO_URL)
        claimed = self.db.claim_next_job(self.jobs.worker_id)
        other_db = Database(self.config['db_path'])
        other = JobQueueManager(other_db, self.stages, self.config)
        try:
            other.start_processing()
        finally:
            other.stop_processing()
            other_db.close()
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.ACTIVE)

        self.jobs._process_job(claimed)
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.COMPLETED)

    def test_running_job_is_heart_beaten(self):
        beats = []
        self.jobs.on_job_updated = lambda job: beats.append(self.jobs.heartbeat())
        self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        self.assertEqual(beats[0], 1)
        self.assertEqual(beats[-1], 0)        # finished jobs are no longer tracked

    def flaky_transitions(self, failing):
        """Make transition_job raise 'database is locked' while failing(to_state, call) is true."""
        original = self.db.transition_job
        calls = []

        def transition(job_id, to_state, **fields):
            calls.append(to_state)
            if failing(to_state, len(calls)):
                raise sqlite3.OperationalError("database is locked")
            return original(job_id, to_state, **fields)

        self.db.transition_job = transition
        return calls

    def test_busy_database_retried_on_completion(self):
        calls = self.flaky_transitions(lambda state, n: n == 1)
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        self.assertEqual(calls, [JobState.COMPLETED, JobState.COMPLETED])
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.COMPLETED)

    def test_unrecordable_completion_fails_job(self):
        self.flaky_transitions(lambda state, n: state == JobState.COMPLETED)
        job = self.jobs.submit(VIDEO_URL)
        self.jobs.process_next()
        failed = self.jobs.get_job(job.id)
        self.assertEqual(failed.state, JobState.FAILED)
        self.assertEqual(failed.error_code, ErrorCode.INTERNAL)

    def test_unrecordable_outcome_left_for_recovery(self):
        self.flaky_transitions(lambda state, n: True)
        job = self.jobs.submit(VIDEO_URL)
        self.assertTrue(self.jobs.process_next())
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.ACTIVE)

        self.db.conn.execute("UPDATE jobs SET updated_at = ? WHERE id = ?",
                             (Database._now(600), job.id))
        self.db.conn.commit()
        self.assertEqual(self.jobs.recover_stale_jobs(), 1)
        self.assertEqual(self.jobs.get_job(job.id).state, JobState.FAILED)


class TestInstantContext(PipelineTestCase):

    def setUp(self):
        super().setUp()
        self.instant = InstantContext(self.stages, self.config)

    def test_segment_window(self):
        self.assertEqual(segment_window(100, 60, 5), (40, 105))
        self.assertEqual(segment_window(10, 60, 5), (0.0, 15))

    def test_fast_lane(self):
        result = self.instant.run(VIDEO_URL, 100.0, "Ann")
        self.assertEqual(result['videoId'], VIDEO_ID)
        self.assertEqual(result['voiceId'], "voice-1")
        self.assertIn("Welcome to the talk.", result['contextWindow'])
        self.assertEqual(self.downloader.calls[0]['window'], (40.0, 105.0))
        self.assertEqual(self.voices.clone_calls, 1)
        self.assertEqual(self.cache.get_voice_id(VIDEO_ID), "voice-1")
        self.assertEqual(self.work_dir_entries(), [])

    def test_cached_voice_skips_clone(self):
        self.cache.merge(VIDEO_ID, CacheEntry(voice_id="voice-cached"))
        result = self.instant.run(VIDEO_URL, 5.0, "Ann")
        self.assertEqual(result['voiceId'], "voice-cached")
        self.assertEqual(self.voices.clone_calls, 0)
        self.assertEqual(self.sampler.calls, 0)
        self.assertEqual(self.sessions.get(VIDEO_ID).voice_id, "voice-cached")

    def test_cleanup_on_failure(self):
        self.transcriber.failures = [
            CollaboratorError(ErrorCode.DEEPGRAM_TRANSCRIBE_FAILED, "nope", retryable=False)]
        with self.assertRaises(CollaboratorError):
            self.instant.run(VIDEO_URL, 30.0, "Ann")
        self.assertEqual(self.work_dir_entries(), [])

    def test_invalid_reference(self):
        with self.assertRaises(ValidationError):
            self.instant.run("not-a-video", 30.0, "Ann")
        self.assertEqual(self.downloader.calls, [])


if __name__ == "__main__":
    unittest.main()
