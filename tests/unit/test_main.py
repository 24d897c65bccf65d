"""
실행 진입점 단위 테스트

검증 항목:
- WxH[+X+Y] 화면 크기 인자 파싱
- profile 하위 명령 출력 (목표/실제 해상도, 경고)
- 설정 파일 오류 시 종료 코드 2
- record: --duration 없이 첫 종료 시그널은 녹화 종료 후 병합/저장, 두 번째 시그널은 취소
- record: 시간 지정 녹화 중 시그널은 취소 (종료 코드 130)
- merge: 사운드 로그 파일이 없으면 종료 코드 2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from avpublish.profile import ScreenBounds
from main import _main, _parse_args, _parse_geometry, _run_record


@pytest.fixture(autouse=True)
def reset_root_logger():
    yield
    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
        h.close()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"system:\n  log_format: text\n  log_dir: {tmp_path / 'logs'}\n",
        encoding="utf-8",
    )
    return str(path)


class TestParseGeometry:
    def test_size_only(self):
        assert _parse_geometry("1920x1080") == ScreenBounds(1920, 1080)

    def test_size_with_offset(self):
        assert _parse_geometry("1280x720+100+-20") == ScreenBounds(1280, 720, 100, -20)

    def test_invalid(self):
        with pytest.raises(argparse.ArgumentTypeError):
            _parse_geometry("wide")


class TestProfileCommand:
    @pytest.mark.asyncio
    async def test_prints_resolution_and_warning(self, config_path, capsys):
        exit_code = await _main(["--config", config_path, "profile", "--profile", "youtube", "--screen", "1366x768"])
        assert exit_code == 0
        out = capsys.readouterr().out
        assert "desired : 1920 x 1080 (16:9)" in out
        assert "actual  : 854 x 480 (16:9)" in out
        assert "warning : Ideally" in out

    @pytest.mark.asyncio
    async def test_invalid_config_returns_2(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("capture:\n  framerate: 0\n", encoding="utf-8")
        assert await _main(["--config", str(path), "profile", "--screen", "1920x1080"]) == 2


# =========================================================================
# record / merge 하위 명령 (가짜 트랜스코더)
# =========================================================================

@pytest.fixture
def ffmpeg_wrapper(tmp_path, fake_transcoder):
    """설정의 ffmpeg_path로 쓸 수 있는 실행 파일 (가짜 트랜스코더를 실행)."""
    wrapper = tmp_path / "ffmpeg"
    wrapper.write_text(
        "#!/bin/sh\n" + f'exec "{fake_transcoder[0]}" "{fake_transcoder[1]}" "$@"\n',
        encoding="utf-8",
    )
    wrapper.chmod(0o755)
    return str(wrapper)


@pytest.fixture
def record_config(make_config, ffmpeg_wrapper):
    return make_config(transcoder={"ffmpeg_path": ffmpeg_wrapper})


def _future_sound_log(tmp_path, seconds_ahead: float = 60.0):
    """녹화 시작 이후 시각에 재생된 사운드 하나를 담은 사운드 로그 파일."""
    start = datetime.now(timezone.utc) + timedelta(seconds=seconds_ahead)
    path = tmp_path / "sound_log.json"
    path.write_text(json.dumps([{"src": "/book/n1.mp3", "startTime": start.isoformat()}]), encoding="utf-8")
    return path


def _record_args(tmp_path, *extra: str) -> argparse.Namespace:
    return _parse_args([
        "record", "--profile", "facebook", "--screen", "1920x1080",
        "--window-title", "Bloom Recording",
        "--sound-log", str(_future_sound_log(tmp_path)),
        "--output", str(tmp_path / "out" / "book.mp4"),
        *extra,
    ])


class TestRecordCommand:
    @pytest.mark.asyncio
    async def test_interrupt_without_duration_merges_and_saves(self, tmp_path, record_config, argv_records):
        """--duration 없이 녹화하면 첫 Ctrl+C는 녹화 종료이고 병합 후 저장한다."""
        shutdown = asyncio.Event()
        asyncio.get_running_loop().call_later(0.5, shutdown.set)

        exit_code = await _run_record(_record_args(tmp_path), record_config, shutdown)

        assert exit_code == 0
        output = tmp_path / "out" / "book.mp4"
        assert output.stat().st_size == 4096
        assert len(argv_records()) == 2  # 캡처 + 병합

    @pytest.mark.asyncio
    async def test_second_interrupt_cancels_merge(self, tmp_path, record_config, monkeypatch):
        monkeypatch.setenv("FAKE_MERGE_DELAY", "30")
        shutdown = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.5, shutdown.set)
        loop.call_later(2.0, shutdown.set)

        exit_code = await _run_record(_record_args(tmp_path), record_config, shutdown)

        assert exit_code == 130
        assert not (tmp_path / "out" / "book.mp4").exists()

    @pytest.mark.asyncio
    async def test_interrupt_during_timed_recording_aborts(self, tmp_path, record_config):
        shutdown = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, shutdown.set)

        exit_code = await _run_record(_record_args(tmp_path, "--duration", "30"), record_config, shutdown)

        assert exit_code == 130
        assert not (tmp_path / "out" / "book.mp4").exists()

    @pytest.mark.asyncio
    async def test_timed_recording_saves(self, tmp_path, record_config):
        exit_code = await _run_record(
            _record_args(tmp_path, "--duration", "0.3"), record_config, asyncio.Event()
        )
        assert exit_code == 0
        assert (tmp_path / "out" / "book.mp4").exists()


class TestMergeCommand:
    @pytest.mark.asyncio
    async def test_missing_sound_log_returns_2(self, config_path, tmp_path):
        exit_code = await _main([
            "--config", config_path, "merge", "--profile", "mp3",
            "--sound-log", str(tmp_path / "missing.json"),
            "--session-start", "2024-01-01T00:00:00",
            "--output", str(tmp_path / "book.mp3"),
        ])
        assert exit_code == 2
