#!/usr/bin/env python3
"""
Tests for the HTTP and websocket surface, end to end against in-process fakes.
Queued jobs are drained synchronously with JobQueueManager.process_next().
"""

import sys
import json
from pathlib import Path
from unittest.mock import patch

# Add project root (and this directory, for the fakes) to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import unittest

from fastapi.testclient import TestClient

from aispeaker.api.server import create_app
from aispeaker.core.cache_store import MemoryCacheStore
from aispeaker.core.constants import ErrorCode

from fakes import (
    VIDEO_ID, VIDEO_URL, FakeDownloader, FakeSampler, FakeTranscriber,
    FakeVoiceClient, make_config, temp_dir,
)


class UnreachableCache(MemoryCacheStore):

    def ping(self) -> bool:
        return False


class APITestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = temp_dir()
        self.voices = FakeVoiceClient()
        self.cache = MemoryCacheStore()
        self.app = create_app(
            make_config(self._tmp.name), start_worker=False,
            cache=self.cache, transcriber=FakeTranscriber(), voices=self.voices,
            downloader=FakeDownloader(), sampler=FakeSampler(),
        )
        self.services = self.app.state.services
        self.client = TestClient(self.app)

    def tearDown(self):
        self.client.close()
        self.services.db.close()
        self._tmp.cleanup()

    def prepare(self, speaker_name="Ann") -> str:
        resp = self.client.post("/prepare-context",
                                json={'videoUrl': VIDEO_URL, 'speakerName': speaker_name})
        self.assertEqual(resp.status_code, 202)
        self.services.jobs.process_next()
        return resp.json()['jobId']

    def create_agent(self) -> str:
        self.prepare()
        resp = self.client.post("/create-agent", json={'videoId': VIDEO_ID, 'speakerName': "Ann"})
        self.assertEqual(resp.status_code, 200)
        return resp.json()['agent_id']


class TestDurableLane(APITestCase):

    def test_prepare_then_clone_is_cache_hit(self):
        resp = self.client.post("/prepare-context", json={'videoUrl': VIDEO_URL})
        self.assertEqual(resp.status_code, 202)
        body = resp.json()
        self.assertEqual(body['message'], "Context preparation started")

        status = self.client.get(f"/status/{body['jobId']}").json()
        self.assertEqual((status['state'], status['progress']), ("queued", 0))

        self.services.jobs.process_next()
        status = self.client.get(f"/status/{body['jobId']}").json()
        self.assertEqual(status['state'], "completed")
        self.assertEqual(status['progress'], 100)
        self.assertEqual(status['returnValue']['voiceId'], "voice-1")

        resp = self.client.post("/clone-voice", json={
            'videoId': VIDEO_ID, 'speakerName': "Ann", 'sampleUrl': VIDEO_URL})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            'videoId': VIDEO_ID, 'voiceId': "voice-1",
            'message': "Voice already cloned for this video (from cache).",
        })
        self.assertEqual(self.voices.clone_calls, 1)

    def test_invalid_video_url(self):
        resp = self.client.post("/prepare-context", json={'videoUrl': "https://example.com/x"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['code'], ErrorCode.INVALID_URL)

    def test_malformed_body(self):
        resp = self.client.post("/prepare-context", json={'speakerName': "Ann"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body['error'], "Invalid request data")
        self.assertEqual(body['code'], ErrorCode.INVALID_REQUEST)
        self.assertEqual(body['details'][0]['field'], "videoUrl")

    def test_unknown_job(self):
        resp = self.client.get("/status/no-such-job")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {'error': "Job not found", 'code': ErrorCode.JOB_NOT_FOUND})

    def test_failed_job_status(self):
        self.services.stages.transcriber.failures = [
            ValueError("unexpected payload")]
        resp = self.client.post("/prepare-context", json={'videoUrl': VIDEO_URL})
        self.services.jobs.process_next()
        status = self.client.get(f"/status/{resp.json()['jobId']}").json()
        self.assertEqual(status['state'], "failed")
        self.assertEqual(status['returnValue']['code'], ErrorCode.INTERNAL)


class TestPipelineSteps(APITestCase):

    def test_context_window_needs_transcript(self):
        resp = self.client.post("/get-context-window",
                                json={'videoId': VIDEO_ID, 'pausedTime': 12})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['code'], ErrorCode.TRANSCRIPT_NOT_FOUND)

        self.prepare()
        resp = self.client.post("/get-context-window",
                                json={'videoId': VIDEO_ID, 'pausedTime': 12})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['contextWindow'],
                         "Welcome to the talk. Today we look at caching. First, why memoize at all?")

    def test_negative_paused_time(self):
        resp = self.client.post("/get-context-window",
                                json={'videoId': VIDEO_ID, 'pausedTime': -1})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['details'][0]['field'], "pausedTime")

    def test_instant_context(self):
        resp = self.client.post("/instant-context", json={
            'videoUrl': VIDEO_URL, 'pausedTime': 100, 'speakerName': "Ann"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual((body['videoId'], body['voiceId']), (VIDEO_ID, "voice-1"))
        self.assertTrue(body['contextWindow'].startswith("Welcome to the talk."))

    def test_build_conversation_quota(self):
        payload = {'videoId': VIDEO_ID, 'voiceId': "voice-1", 'speakerName': "Ann",
                   'contextWindow': "context", 'userQuestionText': "why?"}
        for _ in range(10):
            resp = self.client.post("/build-conversation", json=payload)
            self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['conversation']['tts']['voice_id'], "voice-1")

        resp = self.client.post("/build-conversation", json=payload)
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(resp.json()['code'], ErrorCode.QUOTA_EXCEEDED)
        self.assertEqual(self.services.sessions.get_question_count(VIDEO_ID), 10)

    def test_create_agent_prerequisites(self):
        resp = self.client.post("/create-agent", json={'videoId': VIDEO_ID, 'speakerName': "Ann"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body['code'], ErrorCode.MISSING_PREREQUISITE)
        self.assertEqual(body['details'][0]['step'], "/prepare-context")

        self.assertEqual(self.create_agent(), "agent-1")
        self.assertEqual(self.create_agent(), "agent-1")
        self.assertEqual(self.voices.agent_calls, 1)


class TestConversation(APITestCase):

    def test_stream_without_agent(self):
        resp = self.client.post("/stream-conversation", json={'videoId': VIDEO_ID, 'text': "hi"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['code'], ErrorCode.AGENT_NOT_FOUND)

    def test_stream_conversation(self):
        self.create_agent()
        resp = self.client.post("/stream-conversation", json={'videoId': VIDEO_ID, 'text': "hi"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.headers['content-type'].startswith("application/x-ndjson"))
        events = [json.loads(line) for line in resp.text.splitlines() if line]
        self.assertEqual([e['type'] for e in events],
                         ['agent-transcript', 'agent-audio', 'relay-terminated'])
        self.assertEqual(events[0]['text'], "Answer to: hi")
        self.assertEqual(self.services.sessions.get_question_count(VIDEO_ID), 1)

    def test_streaming_url(self):
        self.assertEqual(self.client.get("/streaming-url/agent-1").status_code, 404)
        agent_id = self.create_agent()
        resp = self.client.get(f"/streaming-url/{agent_id}")
        self.assertEqual(resp.json(), {'url': "ws://localhost:3001/ws/conversation/agent-1"})

    def test_socket_unknown_agent(self):
        with self.client.websocket_connect("/ws/conversation/agent-404") as ws:
            event = ws.receive_json()
        self.assertEqual(event['code'], ErrorCode.AGENT_NOT_FOUND)

    def test_socket_duplex(self):
        self.voices.close_after_reply = True
        agent_id = self.create_agent()
        with self.client.websocket_connect(f"/ws/conversation/{agent_id}") as ws:
            ws.send_json({'type': 'audio', 'audio': "A1"})
            ws.send_json({'type': 'mute'})
            ws.send_json({'type': 'audio', 'audio': "A2"})
            ws.send_json({'type': 'text', 'text': "hi"})
            events = [ws.receive_json() for _ in range(3)]
        self.assertEqual(events, [
            {'type': 'agent-transcript', 'text': "Answer to: hi"},
            {'type': 'agent-audio', 'audio': "QUJD"},
            {'type': 'relay-terminated', 'reason': "provider-closed"},
        ])
        self.assertEqual(self.voices.conversations[0].sent_audio, ["A1"])
        self.assertEqual(self.services.sessions.get_question_count(VIDEO_ID), 1)

    def test_socket_bad_message(self):
        self.voices.close_after_reply = True
        agent_id = self.create_agent()
        with self.client.websocket_connect(f"/ws/conversation/{agent_id}") as ws:
            ws.send_text("not json")
            error = ws.receive_json()
            ws.send_json({'type': 'text', 'text': "hi"})
            events = [ws.receive_json() for _ in range(3)]
        self.assertEqual(error['type'], "error")
        self.assertEqual(events[-1]['type'], "relay-terminated")


class TestSpeakAndHealth(APITestCase):

    def test_speak(self):
        resp = self.client.post("/speak", json={'voiceId': "voice-1", 'text': "Hello there"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers['content-type'], "audio/mpeg")
        self.assertEqual(resp.content, b"ID3-speech")
        self.assertEqual(self.voices.speech_calls, [("voice-1", "Hello there")])

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body['status'], "ok")
        self.assertEqual(body['cache'], "connected")
        self.assertNotIn('tools', body)

    def test_health_verbose(self):
        diagnostics = {'ytdlp_version': "2025.01.01", 'ffmpeg_version': "ffmpeg 7",
                       'elevenlabs_key_configured': False, 'deepgram_key_configured': False}
        with patch("aispeaker.api.server.get_diagnostics", return_value=diagnostics):
            body = self.client.get("/health", params={'verbose': "true"}).json()
        self.assertEqual(body['tools'], diagnostics)

    def test_health_degraded(self):
        tmp = temp_dir()
        app = create_app(make_config(tmp.name), start_worker=False, cache=UnreachableCache(),
                         transcriber=FakeTranscriber(), voices=FakeVoiceClient())
        with TestClient(app) as client:
            body = client.get("/health").json()
        app.state.services.db.close()
        tmp.cleanup()
        self.assertEqual((body['status'], body['cache']), ("degraded", "unavailable"))


if __name__ == "__main__":
    unittest.main()
