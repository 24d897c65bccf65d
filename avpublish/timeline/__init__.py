"""
타임라인 패키지

공통 데이터 타입 정의:
- SoundLogItem: 녹화 시작 시각 기준 오프셋이 계산된 사운드 재생 이벤트
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class SoundLogItem:
    """
    프레젠테이션 계층이 보고한 사운드 재생 이벤트 하나입니다.

    보고 배치 단위로 한 번 생성되어 병합 계획에서 한 번 소비되며 변경되지 않습니다.

    필드:
        src: 사운드 파일 절대 경로
        volume: 볼륨 배율 (1.0 = 원본 그대로)
        start_time: 재생 시작 시각 (timezone-aware)
        end_time: 재생 종료 시각 (None이면 파일 끝까지 재생)
        start_offset: 녹화 시작 시각 기준 재생 시작 오프셋 (항상 0 이상)
    """
    src: str
    volume: float
    start_time: datetime
    end_time: Optional[datetime]
    start_offset: timedelta

    @property
    def start_offset_ms(self) -> int:
        """재생 시작 오프셋 (밀리초, 반올림)."""
        return round(self.start_offset / timedelta(milliseconds=1))

    @property
    def duration(self) -> Optional[timedelta]:
        """명시적 종료 시각이 있을 때 재생 길이. 없으면 None."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time
