"""
avpublish 에러 분류 모듈입니다.

역할:
- 캡처/병합 엔진 전체가 공유하는 예외 계층 정의
- 트랜스코더 진단 텍스트를 예외에 그대로 첨부하여 사용자에게 전달

분류:
    CaptureError                    모든 엔진 에러의 기본 클래스
    ├── TranscoderNotFoundError     트랜스코더 실행 파일 없음 (기능 전체 치명적)
    ├── TranscoderTimeoutError      종료/병합 대기 시간 초과
    ├── CaptureFailedError          캡처 결과가 없거나 너무 작음
    ├── MergeFailedError            병합 결과가 없거나 너무 작음, 또는 비정상 종료
    ├── TimingDefectError           음수 오프셋 (프레젠테이션 계층 타임스탬프 불일치)
    ├── SoundLogFormatError         사운드 로그 페이로드 형식 오류
    ├── SessionBusyError            다른 세션이 진행 중일 때 시작 요청
    └── InvalidTransitionError      현재 상태에서 허용되지 않는 요청

사용자 취소(abort)는 에러가 아니므로 예외로 표현하지 않습니다.
"""

from __future__ import annotations

from typing import Optional


class CaptureError(Exception):
    """캡처/병합 엔진 에러의 기본 클래스입니다."""
    pass


class TranscoderNotFoundError(CaptureError):
    """트랜스코더 실행 파일을 찾을 수 없을 때 발생하는 에러입니다."""
    pass


class TranscoderTimeoutError(CaptureError):
    """트랜스코더가 제한 시간 안에 종료되지 않았을 때 발생하는 에러입니다."""

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class CaptureFailedError(CaptureError):
    """캡처 프로세스가 종료됐지만 유효한 출력을 만들지 못했을 때 발생하는 에러입니다."""

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class MergeFailedError(CaptureError):
    """병합 프로세스가 실패했을 때 발생하는 에러입니다."""

    def __init__(
        self,
        message: str,
        diagnostics: str = "",
        exit_code: Optional[int] = None,
        filter_graph: str = "",
    ) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics
        self.exit_code = exit_code
        self.filter_graph = filter_graph


class TimingDefectError(CaptureError):
    """사운드 이벤트 오프셋이 음수일 때 발생하는 내부 일관성 에러입니다."""
    pass


class SoundLogFormatError(CaptureError):
    """사운드 로그 페이로드를 해석할 수 없을 때 발생하는 에러입니다."""
    pass


class SessionBusyError(CaptureError):
    """다른 캡처 세션이 진행 중일 때 새 세션을 시작하려 하면 발생합니다."""
    pass


class InvalidTransitionError(CaptureError):
    """현재 세션 상태에서 허용되지 않는 요청일 때 발생합니다."""
    pass
