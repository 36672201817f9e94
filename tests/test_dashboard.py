# tests/test_dashboard.py
"""
HTTP layer over the scheduler, with a fake engine and a temp storage dir.
"""

import pytest
from fastapi.testclient import TestClient

from dashboard import create_app
from fakes import FakeEngine, ManualRunner, inline_runner
from intervals import Interval
from scheduler import Scheduler
from storage import FileStorage


def make_client(tmp_path, engine=None, runner=inline_runner, busy_load_threshold=1e9):
    files = FileStorage(tmp_path)
    scheduler = Scheduler(engine or FakeEngine(), files=files, runner=runner)
    app = create_app(scheduler, files, busy_load_threshold=busy_load_threshold)
    return TestClient(app), scheduler, files


def add_video(tmp_path, video_id, ext="mp4"):
    path = tmp_path / f"{video_id}.{ext}"
    path.write_bytes(b"fake video")
    return path


def test_process_unknown_video_is_404(tmp_path):
    client, _, _ = make_client(tmp_path)
    resp = client.post("/api/videos/nope/process")
    assert resp.status_code == 404
    assert resp.json()["videoId"] == "nope"


def test_process_then_status(tmp_path):
    engine = FakeEngine(silences=[Interval(2, 4)], duration=10.0)
    client, _, _ = make_client(tmp_path, engine)
    add_video(tmp_path, "talk")

    resp = client.post("/api/videos/talk/process")
    assert resp.status_code == 200
    assert resp.json()["videoId"] == "talk"

    status = client.get("/api/videos/talk/status").json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["result"]["timeSaved"] == pytest.approx(2.0)

    again = client.post("/api/videos/talk/process").json()
    assert again["status"] == "already_completed"


def test_process_while_queued_reports_progress(tmp_path):
    client, _, _ = make_client(tmp_path, runner=ManualRunner())
    add_video(tmp_path, "talk")

    client.post("/api/videos/talk/process")
    resp = client.post("/api/videos/talk/process").json()

    assert resp["status"] == "processing"
    assert resp["message"] == "Video is already being processed"


def test_invalid_video_is_rejected(tmp_path):
    client, scheduler, _ = make_client(tmp_path, FakeEngine(invalid=["Invalid codec: hevc. Expected H.264"]))
    add_video(tmp_path, "talk")

    resp = client.post("/api/videos/talk/process")

    assert resp.status_code == 400
    assert resp.json()["details"] == ["Invalid codec: hevc. Expected H.264"]
    assert scheduler.get_status("talk") is None


def test_overloaded_server_answers_503(tmp_path, monkeypatch):
    client, scheduler, _ = make_client(tmp_path, busy_load_threshold=90)
    monkeypatch.setattr(scheduler, "load", lambda: 97.5)
    add_video(tmp_path, "talk")

    resp = client.post("/api/videos/talk/process")

    assert resp.status_code == 503
    assert resp.json()["cpuLoad"] == "97.5%"


def test_status_unknown_is_404(tmp_path):
    client, _, _ = make_client(tmp_path)
    assert client.get("/api/videos/nope/status").status_code == 404


def test_download_before_completion_is_400(tmp_path):
    client, _, _ = make_client(tmp_path, runner=ManualRunner())
    add_video(tmp_path, "talk")
    client.post("/api/videos/talk/process")

    resp = client.get("/api/videos/talk/download")

    assert resp.status_code == 400
    assert resp.json()["status"] == "processing"


def test_download_completed_video(tmp_path):
    client, _, _ = make_client(tmp_path)
    add_video(tmp_path, "talk")
    client.post("/api/videos/talk/process")
    (tmp_path / "talk_cut.mp4").write_bytes(b"cut video")

    resp = client.get("/api/videos/talk/download")

    assert resp.status_code == 200
    assert resp.content == b"cut video"
    assert resp.headers["content-type"] == "video/mp4"


def test_delete_cancels_and_removes_files(tmp_path):
    client, scheduler, _ = make_client(tmp_path, runner=ManualRunner())
    add_video(tmp_path, "talk")
    client.post("/api/videos/talk/process")

    resp = client.delete("/api/videos/talk")

    assert resp.status_code == 200
    assert scheduler.get_status("talk") is None
    assert not (tmp_path / "talk.mp4").exists()


def test_health_and_pages(tmp_path):
    client, _, _ = make_client(tmp_path)
    add_video(tmp_path, "talk")
    client.post("/api/videos/talk/process")

    health = client.get("/api/health").json()
    assert health["canAdmit"] is True
    assert health["jobs"]["completed"] == 1

    home = client.get("/")
    assert home.status_code == 200
    assert "talk" in home.text

    assert client.get("/job/talk").status_code == 200
    assert client.get("/job/nope").status_code == 404
