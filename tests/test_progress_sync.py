import json
import unittest
import httpx
from absplayer.clients.progress_sync import (
    Outcome, ProgressSyncClient, ProgressUpdate, classify_status, PROGRESS_ENDPOINTS
)
from absplayer.config import settings

BASE = "http://abs.local"


class RecordingTransport:
    """Answers each request with the next status in line and records it."""

    def __init__(self, *statuses, error_on=()):
        self.statuses = list(statuses)
        self.error_on = set(error_on)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) in self.error_on:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.statuses.pop(0) if self.statuses else 404
        return httpx.Response(status, json={})


class TestProgressUpdate(unittest.TestCase):
    def setUp(self):
        settings.FINISHED_THRESHOLD = 0.99
        settings.ABS_CLIENT_NAME = "absplayer"
        settings.ABS_DEVICE_ID = "test-device"

    def test_progress_fraction(self):
        u = ProgressUpdate.build("li_1", 50, 200, now_ms=1000)
        self.assertEqual(u.progress, 0.25)
        self.assertFalse(u.is_finished)

    def test_zero_duration(self):
        u = ProgressUpdate.build("li_1", 50, 0, now_ms=1000)
        self.assertEqual(u.progress, 0.0)
        self.assertFalse(u.is_finished)

    def test_finished_threshold(self):
        self.assertFalse(ProgressUpdate.build("li_1", 0.985 * 1000, 1000, now_ms=1).is_finished)
        self.assertTrue(ProgressUpdate.build("li_1", 0.995 * 1000, 1000, now_ms=1).is_finished)

    def test_prefix_stripped(self):
        self.assertEqual(ProgressUpdate.build("abs-li_1", 1, 2, now_ms=1).item_id, "li_1")

    def test_payload_shapes(self):
        u = ProgressUpdate.build("li_1", 10, 100, now_ms=5000, started_at_ms=4000)
        full = u.media_progress()
        self.assertEqual(full["libraryItemId"], "li_1")
        self.assertIsNone(full["episodeId"])
        self.assertIsNone(full["finishedAt"])
        self.assertFalse(full["hideFromContinueListening"])
        self.assertEqual(full["lastUpdate"], 5000)
        self.assertEqual(full["startedAt"], 4000)

        simple = u.simple_progress()
        self.assertEqual(simple["deviceInfo"], {"clientName": "absplayer", "deviceId": "test-device"})
        self.assertEqual(simple["currentTime"], 10)
        self.assertNotIn("libraryItemId", simple)

    def test_classify_status(self):
        self.assertIs(classify_status(200), Outcome.SUCCESS)
        self.assertIs(classify_status(204), Outcome.SUCCESS)
        self.assertIs(classify_status(404), Outcome.RETRYABLE)
        self.assertIs(classify_status(500), Outcome.RETRYABLE)
        self.assertIs(classify_status(401), Outcome.FATAL)
        self.assertIs(classify_status(403), Outcome.FATAL)


class TestEndpointNegotiation(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        settings.DRY_RUN = False
        settings.FINISHED_THRESHOLD = 0.99

    async def push(self, transport, item_id="abs-li_1", current=30.0, total=120.0):
        client = ProgressSyncClient(httpx.AsyncClient(transport=httpx.MockTransport(transport)))
        await client.push_progress(BASE, "tok", item_id, current, total)
        await client.http.aclose()
        return transport.requests

    async def test_first_success_stops(self):
        requests = await self.push(RecordingTransport(200))
        self.assertEqual(len(requests), 1)
        self.assertEqual(requests[0].method, "PATCH")
        self.assertEqual(requests[0].url.path, "/api/me/progress/batch/update")
        body = json.loads(requests[0].content)
        self.assertIsInstance(body, list)
        self.assertEqual(body[0]["libraryItemId"], "li_1")
        self.assertEqual(body[0]["currentTime"], 30.0)
        self.assertEqual(body[0]["progress"], 0.25)

    async def test_404_falls_through_to_next(self):
        requests = await self.push(RecordingTransport(404, 200))
        self.assertEqual(len(requests), 2)
        self.assertEqual(requests[1].method, "POST")
        self.assertEqual(requests[1].url.path, "/api/me/sync-local-progress")
        body = json.loads(requests[1].content)
        self.assertEqual(body["localMediaProgress"][0]["libraryItemId"], "li_1")

    async def test_auth_failure_aborts(self):
        requests = await self.push(RecordingTransport(401, 200))
        self.assertEqual(len(requests), 1)

    async def test_forbidden_aborts_midway(self):
        requests = await self.push(RecordingTransport(404, 403, 200))
        self.assertEqual(len(requests), 2)

    async def test_server_and_network_errors_continue(self):
        transport = RecordingTransport(500, 200, error_on={2})
        requests = await self.push(transport)
        self.assertEqual(len(requests), 3)
        self.assertEqual(requests[2].url.path, "/api/me/progress/li_1")

    async def test_all_candidates_exhausted(self):
        requests = await self.push(RecordingTransport(404, 404, 404, 404))
        self.assertEqual([r.url.path for r in requests], [
            "/api/me/progress/batch/update",
            "/api/me/sync-local-progress",
            "/api/me/progress/li_1",
            "/api/items/li_1/progress",
        ])
        self.assertEqual(len(PROGRESS_ENDPOINTS), 4)

    async def test_bearer_header(self):
        requests = await self.push(RecordingTransport(200))
        self.assertEqual(requests[0].headers["Authorization"], "Bearer tok")

    async def test_missing_credentials_sends_nothing(self):
        transport = RecordingTransport(200)
        client = ProgressSyncClient(httpx.AsyncClient(transport=httpx.MockTransport(transport)))
        await client.push_progress(BASE, None, "li_1", 10, 100)
        await client.push_progress("", "tok", "li_1", 10, 100)
        await client.http.aclose()
        self.assertEqual(transport.requests, [])

    async def test_dry_run(self):
        settings.DRY_RUN = True
        try:
            requests = await self.push(RecordingTransport(200))
        finally:
            settings.DRY_RUN = False
        self.assertEqual(requests, [])

    async def test_started_at_kept_between_pushes(self):
        transport = RecordingTransport(200, 200)
        client = ProgressSyncClient(httpx.AsyncClient(transport=httpx.MockTransport(transport)))
        await client.push_progress(BASE, "tok", "li_1", 10, 100)
        await client.push_progress(BASE, "tok", "abs-li_1", 20, 100)
        await client.http.aclose()
        first = json.loads(transport.requests[0].content)[0]
        second = json.loads(transport.requests[1].content)[0]
        self.assertEqual(first["startedAt"], second["startedAt"])
        self.assertEqual(second["currentTime"], 20)

if __name__ == '__main__':
    unittest.main()
