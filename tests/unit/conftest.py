"""
단위 테스트 공용 픽스처

가짜 트랜스코더:
    실제 ffmpeg 대신 [sys.executable, fake_transcoder.py]를 실행합니다.
    - 인자에 -draw_mouse가 있으면 캡처 모드: stdin에서 "q"를 받을 때까지 대기 후 출력 파일 기록
    - 그 외에는 병합 모드: 지연 후 출력 파일 기록 (-progress 파일도 기록)
    - 출력 경로는 항상 마지막 인자
    - 동작은 환경변수로 조절
        FAKE_CAPTURE_BYTES   캡처 출력 크기 (기본 2048)
        FAKE_CAPTURE_EXIT    캡처 종료 코드 (기본 0)
        FAKE_IGNORE_QUIT     설정 시 종료 토큰을 무시하고 계속 실행
        FAKE_MERGE_DELAY     병합 지연 (초, 기본 0)
        FAKE_MERGE_BYTES     병합 출력 크기 (기본 4096, 0이면 파일을 만들지 않음)
        FAKE_MERGE_EXIT      병합 종료 코드 (기본 0)
        FAKE_ARGV_LOG        설정 시 실행 인자를 JSON 줄로 추가 기록
"""

from __future__ import annotations

import json
import sys
import textwrap
from pathlib import Path

import pytest

from avpublish.config.schema import AppConfig
from avpublish.transcoder.driver import TranscoderDriver

_FAKE_TRANSCODER = textwrap.dedent('''
    import json
    import os
    import sys
    import time

    args = sys.argv[1:]
    argv_log = os.environ.get("FAKE_ARGV_LOG")
    if argv_log:
        with open(argv_log, "a", encoding="utf-8") as log_file:
            log_file.write(json.dumps(args) + "\\n")

    output = args[-1]
    sys.stderr.write("fake transcoder started\\n")
    sys.stderr.write("frame=    1 fps=30 size=0kB\\r")
    sys.stderr.flush()

    if "-draw_mouse" in args:
        if os.environ.get("FAKE_IGNORE_QUIT"):
            time.sleep(3600)
        sys.stdin.readline()
        size = int(os.environ.get("FAKE_CAPTURE_BYTES", "2048"))
        with open(output, "wb") as out:
            out.write(b"\\0" * size)
        sys.stderr.write("capture finished\\n")
        sys.exit(int(os.environ.get("FAKE_CAPTURE_EXIT", "0")))

    time.sleep(float(os.environ.get("FAKE_MERGE_DELAY", "0")))
    if "-progress" in args:
        progress_path = args[args.index("-progress") + 1]
        with open(progress_path, "w", encoding="utf-8") as progress:
            progress.write("frame=10\\nprogress=continue\\nframe=30\\nprogress=end\\n")
    size = int(os.environ.get("FAKE_MERGE_BYTES", "4096"))
    if size:
        with open(output, "wb") as out:
            out.write(b"\\1" * size)
    sys.stderr.write("merge finished\\n")
    sys.exit(int(os.environ.get("FAKE_MERGE_EXIT", "0")))
''')


def _make_config(tmp_path: Path, **sections) -> AppConfig:
    """임시 디렉토리를 쓰는 테스트용 설정을 만듭니다."""
    temp_root = tmp_path / "sessions"
    temp_root.mkdir(exist_ok=True)
    raw = {
        "system": {"log_dir": str(tmp_path / "logs"), "temp_dir": str(temp_root)},
        "transcoder": {"stop_timeout_sec": 10.0, "min_output_bytes": 100},
        "merge": {"progress_interval_sec": 0.05},
    }
    for section, values in sections.items():
        raw.setdefault(section, {}).update(values)
    return AppConfig(**raw)


@pytest.fixture
def fake_transcoder(tmp_path) -> list[str]:
    """가짜 트랜스코더 실행 명령을 반환합니다."""
    script = tmp_path / "fake_transcoder.py"
    script.write_text(_FAKE_TRANSCODER, encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.fixture
def argv_log(tmp_path, monkeypatch) -> Path:
    """가짜 트랜스코더가 실행 인자를 기록할 파일."""
    path = tmp_path / "argv.jsonl"
    monkeypatch.setenv("FAKE_ARGV_LOG", str(path))
    return path


@pytest.fixture
def make_config(tmp_path):
    """섹션별 덮어쓰기를 받아 테스트용 설정을 만드는 팩토리."""
    def _factory(**sections) -> AppConfig:
        return _make_config(tmp_path, **sections)
    return _factory


@pytest.fixture
def make_driver(fake_transcoder):
    """가짜 트랜스코더를 실행하는 드라이버 팩토리."""
    def _factory(config: AppConfig) -> TranscoderDriver:
        return TranscoderDriver(config, executable=fake_transcoder)
    return _factory


@pytest.fixture
def argv_records(argv_log):
    """가짜 트랜스코더 실행 인자 기록을 읽는 함수를 반환합니다."""
    def _read() -> list[list[str]]:
        if not argv_log.exists():
            return []
        return [json.loads(line) for line in argv_log.read_text(encoding="utf-8").splitlines() if line]
    return _read
