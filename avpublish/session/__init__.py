"""
캡처 세션 패키지

공통 데이터 타입 정의:
- CaptureState: 캡처 세션 상태
- CaptureRequest: 녹화 시작 요청
- CaptureSession: 녹화부터 병합/저장까지 한 번의 시도를 나타내는 집합 루트
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from avpublish.profile import Codec, ResolvedFormat, ScreenBounds
from avpublish.timeline import SoundLogItem


class CaptureState(Enum):
    """
    캡처 세션 상태입니다.

    전이:
        IDLE -> RECORDING -> STOPPING -> MERGING -> READY | FAILED
        RECORDING | STOPPING -> ABORTED (사용자 취소)
        READY -> SAVED
    """
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    MERGING = "merging"
    READY = "ready"
    SAVED = "saved"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """세션 슬롯을 해제하는 종료 상태인지 여부."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    CaptureState.READY,
    CaptureState.SAVED,
    CaptureState.FAILED,
    CaptureState.ABORTED,
})


@dataclass(frozen=True)
class CaptureRequest:
    """
    녹화 시작 요청입니다.

    필드:
        profile: 출력 프로필 이름 ("facebook" | "feature" | "youtube" | "mp3")
        is_landscape: 콘텐츠가 가로 방향인지 여부
        screen: 녹화 창이 놓일 화면 영역
        is_square: 콘텐츠가 정사각형인지 여부
        window_title: 캡처할 창 제목 (region이 없을 때 사용)
        region: 캡처할 화면 영역 (주어지면 창 제목보다 우선)
        rotate: 책을 회전해서 녹화했는지 여부 (결정기가 회전을 정하면 자동으로 켜짐)
    """
    profile: str
    is_landscape: bool
    screen: ScreenBounds
    is_square: bool = False
    window_title: Optional[str] = None
    region: Optional[ScreenBounds] = None
    rotate: bool = False


@dataclass
class CaptureSession:
    """
    캡처 세션 한 번의 상태입니다. SessionController만 변경합니다.

    필드:
        session_id: 세션 식별자
        request: 녹화 시작 요청
        resolved: 결정된 해상도/코덱 (불변)
        work_dir: 임시 파일 디렉토리
        state: 현재 상태
        session_start: 녹화 시작 시각 (서브프로세스 시작 확인 후 기록)
        raw_path: 원본 캡처 파일 경로 (비디오 코덱일 때만)
        final_path: 최종 산출물 경로 (만들어졌을 때만)
        recorded_duration: 녹화 시작부터 완료 보고까지의 시간
        sound_log: 오프셋이 계산된 사운드 이벤트 목록
        diagnostics: 가장 최근 서브프로세스 실행의 진단 텍스트
        error: 실패 메시지
        saved_to: 마지막으로 저장한 경로
        progress: 병합 진행률 문구
    """
    session_id: str
    request: CaptureRequest
    resolved: ResolvedFormat
    work_dir: str
    state: CaptureState = CaptureState.IDLE
    session_start: Optional[datetime] = None
    raw_path: Optional[str] = None
    final_path: Optional[str] = None
    recorded_duration: Optional[timedelta] = None
    sound_log: list[SoundLogItem] = field(default_factory=list)
    diagnostics: str = ""
    error: Optional[str] = None
    saved_to: Optional[str] = None
    progress: str = ""

    @property
    def codec(self) -> Codec:
        return self.resolved.codec

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def has_output(self) -> bool:
        """저장할 최종 산출물이 있는지 여부."""
        return self.final_path is not None and self.state in (CaptureState.READY, CaptureState.SAVED)

    def to_dict(self) -> dict[str, Any]:
        """API 응답/WebSocket 전송용 스냅샷."""
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "profile": self.resolved.profile,
            "codec": self.codec.value,
            "extension": self.codec.extension,
            "desired": {"width": self.resolved.desired.width, "height": self.resolved.desired.height},
            "actual": {"width": self.resolved.actual.width, "height": self.resolved.actual.height},
            "aspect_ratio": self.resolved.actual.aspect_ratio,
            "warning": self.resolved.warning,
            "use_full_screen": self.resolved.use_full_screen,
            "use_original_page_size": self.resolved.use_original_page_size,
            "should_rotate_book": self.resolved.should_rotate_book,
            "session_start": self.session_start.isoformat() if self.session_start else None,
            "sound_count": len(self.sound_log),
            "has_output": self.has_output,
            "saved_to": self.saved_to,
            "progress": self.progress,
            "error": self.error,
        }
