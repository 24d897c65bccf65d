"""
녹화 제어 API 단위 테스트

검증 항목:
- GET /api/health, /api/status, /api/resolution 응답
- POST /api/recording/start -> sound-log -> save 흐름 (오디오 전용 프로필, 서브프로세스 없음)
- 에러 매핑: busy/전이 오류 409, 사운드 로그 형식 오류 422, 트랜스코더 없음 503
- WebSocket /ws/recording 상태 전이 푸시
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from avpublish.api.recording_api import RecordingApi, status_code_for
from avpublish.errors import (
    CaptureFailedError,
    InvalidTransitionError,
    SessionBusyError,
    SoundLogFormatError,
    TimingDefectError,
    TranscoderNotFoundError,
)
from avpublish.session.controller import SessionController
from avpublish.transcoder.driver import TranscoderDriver

START_MP3 = {
    "profile": "mp3",
    "landscape": True,
    "screen_width": 1920,
    "screen_height": 1080,
}


# =========================================================================
# 픽스처
# =========================================================================

@pytest.fixture
def config(make_config):
    return make_config(transcoder={"ffmpeg_path": "/nonexistent/bin/ffmpeg"})


@pytest.fixture
def api(config):
    controller = SessionController(config, driver=TranscoderDriver(config))
    return RecordingApi(controller, config, host="127.0.0.1", port=18089)


@pytest.fixture
def client(api):
    """요청 사이에 같은 이벤트 루프를 유지하는 TestClient."""
    with TestClient(api.app) as test_client:
        yield test_client


def _wait_for_state(client, state: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        data = client.get("/api/status").json()
        if data["state"] == state or time.monotonic() > deadline:
            return data
        time.sleep(0.02)


# =========================================================================
# 조회 엔드포인트
# =========================================================================

class TestQueryEndpoints:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_status_idle_without_session(self, client):
        assert client.get("/api/status").json() == {"state": "idle", "session_id": None}

    def test_resolution_with_warning(self, client):
        response = client.get(
            "/api/resolution",
            params={"profile": "youtube", "landscape": "true", "screen_width": 1366, "screen_height": 768},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["actual"] == "854 x 480"
        assert data["aspect_ratio"] == "16:9"
        assert "1920 x 1080" in data["warning"]

    def test_resolution_requires_screen(self, client):
        assert client.get("/api/resolution", params={"profile": "facebook"}).status_code == 422


# =========================================================================
# 녹화 흐름
# =========================================================================

class TestRecordingFlow:
    def test_audio_only_flow(self, client, tmp_path):
        response = client.post("/api/recording/start", json=START_MP3)
        assert response.status_code == 200
        assert response.json()["state"] == "recording"
        assert response.json()["codec"] == "mp3"

        response = client.post("/api/recording/sound-log", content=b"[]")
        assert response.status_code == 202

        data = _wait_for_state(client, "ready")
        assert data["state"] == "ready"
        assert data["has_output"] is False

        response = client.post("/api/recording/save", json={"destination": str(tmp_path / "book.mp3")})
        assert response.status_code == 200
        assert response.json()["status"] == "nothing_to_save"

        response = client.post("/api/recording/cleanup")
        assert response.json()["state"] == "idle"

    def test_start_twice_is_busy(self, client):
        assert client.post("/api/recording/start", json=START_MP3).status_code == 200
        response = client.post("/api/recording/start", json=START_MP3)
        assert response.status_code == 409
        assert response.json()["error"] == "SessionBusyError"

    def test_abort_then_invalid_abort(self, client):
        client.post("/api/recording/start", json=START_MP3)
        response = client.post("/api/recording/abort")
        assert response.status_code == 200
        assert response.json()["state"] == "aborted"
        assert client.post("/api/recording/abort").status_code == 409

    def test_bad_sound_log_is_422(self, client):
        client.post("/api/recording/start", json=START_MP3)
        response = client.post("/api/recording/sound-log", content=b'{"not": "a list"}')
        assert response.status_code == 422
        assert response.json()["error"] == "SoundLogFormatError"
        assert _wait_for_state(client, "failed")["state"] == "failed"

    def test_sound_log_without_session_is_409(self, client):
        assert client.post("/api/recording/sound-log", content=b"[]").status_code == 409

    def test_missing_transcoder_is_503(self, client):
        body = dict(START_MP3, profile="facebook", window_title="Bloom Recording")
        response = client.post("/api/recording/start", json=body)
        assert response.status_code == 503
        assert response.json()["error"] == "TranscoderNotFoundError"
        assert client.get("/api/status").json()["state"] == "failed"

    def test_start_body_validated(self, client):
        assert client.post("/api/recording/start", json={"profile": "mp3"}).status_code == 422


# =========================================================================
# WebSocket
# =========================================================================

class TestWebSocket:
    def test_state_changes_pushed(self, client):
        with client.websocket_connect("/ws/recording") as websocket:
            assert websocket.receive_json()["state"] == "idle"
            client.post("/api/recording/start", json=START_MP3)
            event = websocket.receive_json()
            assert event["state"] == "recording"
            assert event["has_output"] is False

            client.post("/api/recording/abort")
            assert websocket.receive_json()["state"] == "aborted"


@pytest.mark.parametrize("error,status_code", [
    (SessionBusyError("x"), 409),
    (InvalidTransitionError("x"), 409),
    (TimingDefectError("x"), 422),
    (SoundLogFormatError("x"), 422),
    (TranscoderNotFoundError("x"), 503),
    (CaptureFailedError("x"), 500),
])
def test_status_code_mapping(error, status_code):
    assert status_code_for(error) == status_code
