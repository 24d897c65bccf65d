"""
타임라인 기록 모듈 단위 테스트

검증 항목:
- 사운드 로그 JSON 파싱 (startTime/endTime 별칭, volume 기본값)
- 형식 오류는 SoundLogFormatError
- 로컬 서버 URL -> 파일 경로 변환 (쿼리 제거, URL 디코딩, 서버 접두어 제거)
- 녹화 시작 기준 오프셋 계산 (밀리초 반올림)
- 음수 오프셋 / 종료 < 시작은 TimingDefectError (보정하지 않음)
- 보고 순서 유지
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from avpublish.config.schema import AppConfig
from avpublish.errors import SoundLogFormatError, TimingDefectError
from avpublish.timeline.recorder import TimelineRecorder, parse_sound_log, url_to_file

SESSION_START = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _iso(seconds: float) -> str:
    return (SESSION_START + timedelta(seconds=seconds)).isoformat()


@pytest.fixture
def recorder():
    return TimelineRecorder(AppConfig(), clock=lambda: SESSION_START)


# =========================================================================
# 페이로드 파싱
# =========================================================================

class TestParseSoundLog:
    def test_parses_json_with_aliases(self):
        payload = json.dumps([
            {"src": "/a.mp3", "volume": 0.5, "startTime": _iso(1), "endTime": _iso(3)},
        ])
        entries = parse_sound_log(payload)
        assert entries[0].volume == 0.5
        assert entries[0].start_time == SESSION_START + timedelta(seconds=1)
        assert entries[0].end_time == SESSION_START + timedelta(seconds=3)

    def test_volume_defaults_to_one(self):
        entries = parse_sound_log([{"src": "/a.mp3", "startTime": _iso(0), "volume": None}])
        assert entries[0].volume == 1.0

    def test_empty_list(self):
        assert parse_sound_log("[]") == []

    def test_missing_start_time_rejected(self):
        with pytest.raises(SoundLogFormatError):
            parse_sound_log('[{"src": "/a.mp3"}]')

    def test_invalid_json_rejected(self):
        with pytest.raises(SoundLogFormatError):
            parse_sound_log("not json")

    def test_negative_volume_rejected(self):
        with pytest.raises(SoundLogFormatError):
            parse_sound_log([{"src": "/a.mp3", "startTime": _iso(0), "volume": -1}])

    def test_naive_time_becomes_aware(self):
        entries = parse_sound_log([{"src": "/a.mp3", "startTime": "2024-03-01T10:00:00"}])
        assert entries[0].start_time.tzinfo is not None


# =========================================================================
# URL -> 파일 경로
# =========================================================================

class TestUrlToFile:
    def test_strips_cache_busting_query(self):
        assert url_to_file("/books/a.mp3?nocache=123") == "/books/a.mp3"

    def test_local_server_url(self):
        src = "http://localhost:8089/bloom/C%3A/Books/My%20Book/audio/a.mp3"
        assert url_to_file(src) == "C:/Books/My Book/audio/a.mp3"

    def test_local_server_url_posix_path(self):
        src = "http://127.0.0.1:8089/bloom/home/user/book/audio/a.mp3?t=5"
        assert url_to_file(src) == "/home/user/book/audio/a.mp3"

    def test_file_url(self):
        assert url_to_file("file:///tmp/audio/x%20y.mp3") == "/tmp/audio/x y.mp3"

    def test_plain_path_unchanged(self):
        assert url_to_file("/tmp/a.mp3") == "/tmp/a.mp3"

    def test_custom_prefix(self):
        assert url_to_file("http://localhost/srv/tmp/a.mp3", server_path_prefix="srv/") == "/tmp/a.mp3"


# =========================================================================
# 오프셋 계산
# =========================================================================

class TestToOffsets:
    def test_begin_uses_clock(self, recorder):
        assert recorder.begin() == SESSION_START

    def test_begin_makes_naive_clock_aware(self):
        recorder = TimelineRecorder(clock=lambda: datetime(2024, 1, 1, 12, 0, 0))
        assert recorder.begin().tzinfo is not None

    def test_now_with_naive_clock_subtracts_from_begin(self):
        """naive 시계라도 now() - begin()이 TypeError 없이 계산된다."""
        ticks = iter([datetime(2024, 1, 1, 12, 0, 0), datetime(2024, 1, 1, 12, 0, 5)])
        recorder = TimelineRecorder(clock=lambda: next(ticks))
        start = recorder.begin()
        later = recorder.now()
        assert later.tzinfo is not None
        assert later - start == timedelta(seconds=5)

    def test_offsets_in_milliseconds(self, recorder):
        items = recorder.to_offsets(SESSION_START, [
            {"src": "/a.mp3", "startTime": _iso(1.5)},
            {"src": "/b.mp3", "startTime": _iso(0.0004)},
        ])
        assert items[0].start_offset_ms == 1500
        assert items[1].start_offset_ms == 0

    def test_preserves_report_order(self, recorder):
        items = recorder.to_offsets(SESSION_START, [
            {"src": "/late.mp3", "startTime": _iso(10)},
            {"src": "/early.mp3", "startTime": _iso(2)},
        ])
        assert [item.src for item in items] == ["/late.mp3", "/early.mp3"]

    def test_duration_from_end_time(self, recorder):
        items = recorder.to_offsets(SESSION_START, [
            {"src": "/music.mp3", "startTime": _iso(0), "endTime": _iso(42.25)},
        ])
        assert items[0].duration == timedelta(seconds=42.25)

    def test_duration_none_without_end(self, recorder):
        items = recorder.to_offsets(SESSION_START, [{"src": "/a.mp3", "startTime": _iso(1)}])
        assert items[0].duration is None

    def test_src_converted_to_file_path(self, recorder):
        items = recorder.to_offsets(SESSION_START, [
            {"src": "http://localhost:8089/bloom/tmp/a.mp3?x=1", "startTime": _iso(1)},
        ])
        assert items[0].src == "/tmp/a.mp3"

    def test_negative_offset_is_timing_defect(self, recorder):
        """녹화 시작보다 이른 이벤트는 0으로 보정하지 않고 실패한다."""
        with pytest.raises(TimingDefectError):
            recorder.to_offsets(SESSION_START, [{"src": "/a.mp3", "startTime": _iso(-0.5)}])

    def test_end_before_start_is_timing_defect(self, recorder):
        with pytest.raises(TimingDefectError):
            recorder.to_offsets(SESSION_START, [
                {"src": "/a.mp3", "startTime": _iso(5), "endTime": _iso(4)},
            ])

    def test_items_are_immutable(self, recorder):
        items = recorder.to_offsets(SESSION_START, [{"src": "/a.mp3", "startTime": _iso(1)}])
        with pytest.raises(AttributeError):
            items[0].volume = 2.0
