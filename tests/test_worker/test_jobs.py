"""
Tests for job enqueueing.
"""

from types import SimpleNamespace

from app.worker import jobs


class FakeQueue:
    def __init__(self):
        self.calls = []

    def enqueue(self, func, *args, **kwargs):
        self.calls.append((func, args, kwargs))
        return SimpleNamespace(id=f"job-{len(self.calls)}")


class TestEnqueue:

    def test_bulk_auto_match(self, monkeypatch):
        queue = FakeQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        job_id = jobs.enqueue_bulk_auto_match("c-1", threshold=75.0)

        assert job_id == "job-1"
        func, args, kwargs = queue.calls[0]
        assert func is jobs.bulk_auto_match_job
        assert args == ("c-1", 75.0)
        assert kwargs["result_ttl"] == 86400

    def test_duplicate_scan(self, monkeypatch):
        queue = FakeQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        jobs.enqueue_duplicate_scan("c-1", limit=50)

        func, args, _ = queue.calls[0]
        assert func is jobs.duplicate_scan_job
        assert args == ("c-1", 50)

    def test_api_enqueue_returns_202(self, monkeypatch):
        from fastapi.testclient import TestClient

        from app.main import app

        queue = FakeQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        response = TestClient(app).post(
            "/api/v1/duplicates/batch/enqueue",
            headers={"X-Company-ID": "00000000-0000-0000-0000-000000000001"},
            json={"limit": 10},
        )

        assert response.status_code == 202
        assert response.json() == {"job_id": "job-1", "status": "queued"}
