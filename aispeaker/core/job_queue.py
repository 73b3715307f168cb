"""
Job Queue Manager and Worker.
Runs the full derivation (URL to ready voice and context) for one video per
job, on background worker threads polling the SQLite job table.
"""

import logging
import os
import socket
import sqlite3
import threading
import time
import uuid
from typing import Callable, Optional

from aispeaker.core.cleanup import scoped_workspace
from aispeaker.core.constants import (
    JobState, ErrorCode, FULL_DERIVATION_STAGES,
    WORKER_POLL_INTERVAL_SEC, WORKER_THREADS, TRANSCRIPT_SUMMARY_CHARS,
    WORKER_HEARTBEAT_SEC, JOB_STALE_AFTER_SEC, DB_WRITE_ATTEMPTS, DB_WRITE_RETRY_DELAY_SEC,
)
from aispeaker.core.context_window import middle_timestamp, summarize_transcript
from aispeaker.core.db_sqlite import Database
from aispeaker.core.error_codes import ServiceError
from aispeaker.core.models import Job
from aispeaker.core.pipeline import PipelineStages

logger = logging.getLogger(__name__)

MSG_WORKER_LOST = "Worker stopped before the job finished"


def default_speaker_name(video_id: str) -> str:
    return f"Speaker for {video_id}"


def stage_progress(completed: int, total: int = len(FULL_DERIVATION_STAGES)) -> int:
    """Percentage after `completed` of `total` stages."""
    return round(100 * completed / total)


class JobQueueManager:
    """
    Manages the job table and the workers that drain it.
    Emits an optional callback on every job update.

    Jobs this manager is running are heart-beaten so that another process
    starting a worker on the same database never mistakes them for orphans.
    """

    def __init__(self, db: Database, stages: PipelineStages, config: dict | None = None):
        self.db = db
        self.stages = stages
        self.config = config or {}
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self._workers: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._running = False
        self._active_jobs: set[str] = set()
        self._active_lock = threading.Lock()

        # Callbacks
        self.on_job_updated: Optional[Callable[[Job], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def worker_threads(self) -> int:
        return self.config.get('worker_threads', WORKER_THREADS)

    @property
    def poll_interval(self) -> float:
        return self.config.get('worker_poll_interval_sec', WORKER_POLL_INTERVAL_SEC)

    @property
    def heartbeat_interval(self) -> float:
        return self.config.get('worker_heartbeat_sec', WORKER_HEARTBEAT_SEC)

    @property
    def stale_after_sec(self) -> float:
        return self.config.get('job_stale_after_sec', JOB_STALE_AFTER_SEC)

    # ── Queue management ──────────────────────────────────────────────

    def submit(self, video_url: str, speaker_name: str | None = None) -> Job:
        """Validate the URL and enqueue a job. Raises ValidationError."""
        video_id = self.stages.extract_video_id(video_url)
        job = self.db.create_job(video_url=video_url, video_id=video_id,
                                 speaker_name=speaker_name)
        logger.info("Queued job %s for video %s", job.id, video_id)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.db.get_job(job_id)

    def start_processing(self):
        """Start the worker and heartbeat threads, failing jobs whose worker is gone."""
        if self._running:
            return
        self.recover_stale_jobs()

        self._stop_event.clear()
        self._running = True
        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"job-worker-{i}", daemon=True)
            for i in range(self.worker_threads)
        ]
        self._workers.append(threading.Thread(target=self._heartbeat_loop,
                                              name="job-heartbeat", daemon=True))
        for worker in self._workers:
            worker.start()
        logger.info("Started %d job worker(s) as %s", self.worker_threads, self.worker_id)

    def stop_processing(self, timeout: float | None = 5.0):
        """Stop polling; a job already running finishes its current stage call."""
        self._stop_event.set()
        for worker in self._workers:
            worker.join(timeout)
        self._workers = []
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def recover_stale_jobs(self) -> int:
        recovered = self.db.recover_stale_jobs(ErrorCode.INTERNAL, MSG_WORKER_LOST,
                                               self.stale_after_sec)
        if recovered:
            logger.warning("Marked %d interrupted job(s) as failed", recovered)
        return recovered

    # ── Worker loop ───────────────────────────────────────────────────

    def _worker_loop(self):
        """Claim and process jobs until stopped, sleeping while the queue is empty."""
        while not self._stop_event.is_set():
            try:
                processed = self.process_next()
            except Exception as e:
                logger.error("Worker loop error: %s", e, exc_info=True)
                processed = False
            if not processed:
                self._stop_event.wait(self.poll_interval)

    def _heartbeat_loop(self):
        """Keep this worker's active jobs fresh and fail jobs other workers abandoned."""
        while not self._stop_event.wait(self.heartbeat_interval):
            try:
                self.heartbeat()
                self.recover_stale_jobs()
            except sqlite3.Error as e:
                logger.warning("Job heartbeat failed: %s", e)

    def heartbeat(self) -> int:
        with self._active_lock:
            job_ids = list(self._active_jobs)
        return self.db.heartbeat(job_ids)

    def process_next(self) -> bool:
        """Claim the oldest queued job and run it. Returns False if none was queued."""
        job = self.db.claim_next_job(self.worker_id)
        if job is None:
            return False
        with self._active_lock:
            self._active_jobs.add(job.id)
        try:
            self._notify_job_updated(job.id)
            self._process_job(job)
        finally:
            with self._active_lock:
                self._active_jobs.discard(job.id)
        self._notify_job_updated(job.id)
        return True

    def _notify_job_updated(self, job_id: str):
        if self.on_job_updated:
            job = self.db.get_job(job_id)
            if job:
                self.on_job_updated(job)

    def _begin_stage(self, job_id: str, index: int):
        """Mark stage `index` (0-based) as running; progress reflects completed stages."""
        self.db.update_progress(job_id, FULL_DERIVATION_STAGES[index], stage_progress(index))
        self._notify_job_updated(job_id)

    # ── Job processing pipeline ───────────────────────────────────────

    def _process_job(self, job: Job):
        job_id = job.id
        try:
            result = self._run_full_derivation(job)
        except ServiceError as e:
            self._handle_job_error(job_id, e)
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job_id, e, exc_info=True)
            self._handle_job_error(job_id, ServiceError(ErrorCode.INTERNAL, str(e),
                                                        retryable=False))
        else:
            self._complete_job(job_id, result)

    def _run_full_derivation(self, job: Job) -> dict:
        stages = self.stages
        job_id = job.id

        # ── Stage 1: Resolve video id ──
        self._begin_stage(job_id, 0)
        video_id = stages.extract_video_id(job.video_url)
        speaker_name = job.speaker_name or default_speaker_name(video_id)
        stages.sessions.set_speaker_name(video_id, speaker_name)

        with scoped_workspace(stages.work_dir, f"job-{job_id[:8]}",
                              keep=stages.keep_debug) as workspace:
            # ── Stage 2: Download audio ──
            self._begin_stage(job_id, 1)
            audio_path = stages.download_segment(job.video_url, workspace)

            # ── Stage 3: Transcribe ──
            self._begin_stage(job_id, 2)
            transcript = stages.transcribe(audio_path)
            stages.sessions.set_transcript(video_id, transcript)

            # ── Stage 4: Voice sample ──
            self._begin_stage(job_id, 3)
            sample_path = stages.prepare_voice_sample(video_id, audio_path)

            # ── Stage 5: Clone voice ──
            self._begin_stage(job_id, 4)
            voice_id, cache_hit = stages.clone_voice(video_id, speaker_name, sample_path)

        # ── Stage 6: Context window around the middle of the video ──
        self._begin_stage(job_id, 5)
        anchor = middle_timestamp(transcript)
        context = stages.build_context_window(transcript, anchor)
        stages.sessions.cache_context_window(video_id, anchor, context)

        return {
            'videoId': video_id,
            'voiceId': voice_id,
            'voiceCacheHit': cache_hit,
            'transcriptSummary': summarize_transcript(transcript, TRANSCRIPT_SUMMARY_CHARS),
        }

    def _write_outcome(self, job_id: str, to_state: str, **fields) -> bool:
        """Terminal transition, retried while the database is busy. Raises the last error."""
        delay = self.config.get('db_write_retry_delay_sec', DB_WRITE_RETRY_DELAY_SEC)
        for attempt in range(DB_WRITE_ATTEMPTS):
            try:
                return self.db.transition_job(job_id, to_state, **fields)
            except sqlite3.Error as e:
                if attempt + 1 >= DB_WRITE_ATTEMPTS:
                    raise
                logger.warning("Recording job %s as %s failed (%s), retrying (attempt %d/%d)",
                               job_id, to_state, e, attempt + 1, DB_WRITE_ATTEMPTS)
                time.sleep(delay * (attempt + 1))

    def _complete_job(self, job_id: str, result: dict):
        try:
            self._write_outcome(job_id, JobState.COMPLETED, progress=100, result=result)
        except sqlite3.Error as e:
            logger.error("Could not record completion of job %s: %s", job_id, e)
            self._handle_job_error(job_id, ServiceError(
                ErrorCode.INTERNAL, f"Could not record job result: {e}", retryable=False))
            return
        logger.info("Job %s completed for video %s", job_id, result['videoId'])

    def _handle_job_error(self, job_id: str, error: ServiceError):
        """Record the failure; retries already happened inside the stages."""
        logger.warning("Job %s failed: [%s] %s", job_id, error.code, error.message)
        try:
            self._write_outcome(
                job_id, JobState.FAILED,
                error_code=error.code,
                error_message=error.message[:2000],
                result={'error': error.message[:2000], 'code': error.code,
                        'retryable': error.retryable},
            )
        except sqlite3.Error as e:
            # no longer heart-beaten, so stale-job recovery fails it later
            logger.error("Could not record failure of job %s: %s", job_id, e)
