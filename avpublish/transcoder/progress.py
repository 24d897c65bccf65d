"""
병합 진행률 추정 모듈입니다.

역할:
- ffmpeg -progress 출력 파일에서 마지막 frame / progress 값 읽기
- 녹화 길이 x 프레임레이트를 전체 프레임 수로 보고 배치 단위 진행률 계산
- "<1%", ">99%" 경계 처리와 남은 시간 추정 문구 생성
- 병합 중 주기적으로 진행률을 로그에 남기는 asyncio 리포터

진행률이 프레임에 따라 선형적으로 늘지 않으므로 남은 시간은
배치(iteration) 하나가 끝날 때만 다시 계산합니다.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


def parse_progress_text(text: str) -> dict[str, str]:
    """
    -progress 출력 텍스트에서 키별 마지막 값을 추출합니다.

    파라미터:
        text: key=value 줄들의 텍스트 (같은 키가 여러 번 나올 수 있음)

    반환값:
        dict[str, str]: 키별 마지막 값
    """
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def iteration_fraction(progress_path: Optional[str], total_duration_sec: float, framerate: int) -> float:
    """
    현재 배치 실행의 진행 비율(0.0~1.0)을 추정합니다.

    파일이 없거나 비어 있거나 progress=end이면 0을 반환합니다
    (끝난 배치는 완료 횟수로 따로 셉니다).
    """
    if not progress_path or total_duration_sec <= 0:
        return 0.0
    try:
        text = Path(progress_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0.0

    values = parse_progress_text(text)
    if values.get("progress") == "end":
        return 0.0
    try:
        frames_so_far = int(values.get("frame", "0"))
    except ValueError:
        return 0.0
    if frames_so_far < 1:
        return 0.0

    frames_total = total_duration_sec * framerate
    return min(frames_so_far / frames_total, 1.0)


def progress_message(iterations_so_far: float, total_iterations: int) -> str:
    """진행률 문구 ("37%", "<1%", ">99%")를 만듭니다."""
    percent = round(iterations_so_far / total_iterations * 100)
    if percent == 0 and iterations_so_far > 0:
        return "<1%"
    if percent == 100 and iterations_so_far < total_iterations:
        return ">99%"
    return f"{percent}%"


def estimate_message(millis_remaining: float) -> str:
    """남은 시간 추정 문구를 만듭니다."""
    if millis_remaining < 60000:
        estimate = "less than one minute"
    else:
        estimate = f"about {math.ceil(millis_remaining / 60000)} minutes"
    return f"Estimated time remaining: {estimate}"


class MergeProgressReporter:
    """
    병합 중 주기적으로 진행률을 계산해 로그와 콜백으로 알리는 리포터입니다.

    사용 예시:
        >>> reporter = MergeProgressReporter(total_iterations=2, total_duration_sec=60.0, framerate=30)
        >>> await reporter.start()
        >>> reporter.set_current(progress_path)
        >>> reporter.iteration_done()
        >>> await reporter.stop()
    """

    def __init__(
        self,
        total_iterations: int,
        total_duration_sec: float,
        framerate: int,
        interval_sec: float = 1.0,
        on_message: Optional[ProgressCallback] = None,
    ) -> None:
        self._total_iterations = max(total_iterations, 1)
        self._total_duration_sec = total_duration_sec
        self._framerate = framerate
        self._interval_sec = interval_sec
        self._on_message = on_message
        self._iterations_done = 0
        self._last_iteration_estimated = 0
        self._current_progress_path: Optional[str] = None
        self._started_at = time.monotonic()
        self._task: Optional[asyncio.Task] = None
        self.last_message = ""

    @property
    def iterations_done(self) -> int:
        return self._iterations_done

    def set_current(self, progress_path: Optional[str]) -> None:
        """현재 실행 중인 배치의 -progress 파일 경로를 지정합니다."""
        self._current_progress_path = progress_path

    def iteration_done(self) -> None:
        """배치 하나가 끝났음을 기록합니다."""
        self._iterations_done += 1
        self._current_progress_path = None

    async def start(self) -> None:
        """주기 보고 태스크를 시작합니다."""
        self._started_at = time.monotonic()
        self._task = asyncio.create_task(self._report_loop(), name="merge-progress")

    async def stop(self) -> None:
        """주기 보고 태스크를 중지하고 완료 여부에 따라 마지막 문구를 남깁니다."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._iterations_done >= self._total_iterations:
            self.last_message = "Progress: 100%"
            self._emit(self.last_message)

    def report_once(self) -> Optional[str]:
        """
        현재 진행률을 한 번 계산해 보고합니다.

        반환값:
            Optional[str]: 보고한 진행률 문구 (아직 의미 있는 값이 없으면 None)
        """
        fraction = iteration_fraction(
            self._current_progress_path, self._total_duration_sec, self._framerate
        )
        iterations_so_far = self._iterations_done + fraction
        if iterations_so_far == 0:
            return None

        message = f"Progress: {progress_message(iterations_so_far, self._total_iterations)}"
        self.last_message = message
        self._emit(message)

        if self._iterations_done > self._last_iteration_estimated:
            elapsed_ms = (time.monotonic() - self._started_at) * 1000
            remaining = self._total_iterations - iterations_so_far
            if remaining > 0:
                self._emit(estimate_message(elapsed_ms / iterations_so_far * remaining))
        self._last_iteration_estimated = self._iterations_done
        return message

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    async def _report_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_sec)
            self.report_once()

    def _emit(self, message: str) -> None:
        logger.info(f"병합 진행: {message}")
        if self._on_message is not None:
            self._on_message(message)
