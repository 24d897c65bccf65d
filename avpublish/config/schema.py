"""
avpublish 설정 스키마 정의 모듈입니다.

역할:
- Pydantic v2 BaseModel 기반으로 config.yaml의 전체 구조를 타입 안전하게 정의
- 각 섹션(system, transcoder, capture, timeline, merge, api)을
  독립적인 중첩 모델로 분리하여 유지보수성 확보
- 필드별 기본값, 허용 범위, 유효성 검증(validator)을 포함

사용 예시:
    >>> from avpublish.config.schema import AppConfig
    >>> config = AppConfig(**yaml_data)
    >>> print(config.transcoder.ffmpeg_path)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

# 모듈 로거 설정
logger = logging.getLogger(__name__)


# =============================================================================
# system 섹션: 시스템 전역 설정
# =============================================================================

class SystemConfig(BaseModel):
    """
    시스템 전역 설정을 정의하는 모델입니다.

    역할:
    - 로깅 레벨 및 포맷 지정
    - 세션 식별자 관리
    - 녹화 임시 파일 위치 지정
    """
    # 로그 출력 레벨
    log_level: str = Field(default="INFO", description="로그 레벨 (DEBUG | INFO | WARNING | ERROR)")
    # 로그 출력 포맷
    log_format: str = Field(default="json", description="로그 포맷 (json | text)")
    # 로그 파일 저장 디렉토리 경로
    log_dir: str = Field(default="output/logs", description="로그 저장 디렉토리")
    # 세션 고유 식별자 (빈 문자열이면 UUID로 자동 생성)
    session_id: str = Field(default="", description="세션 ID (비어있으면 UUID 자동생성)")
    # 녹화 임시 디렉토리 상위 경로 (빈 문자열이면 OS 기본 임시 디렉토리)
    temp_dir: str = Field(default="", description="임시 파일 상위 디렉토리 (비어있으면 OS 기본값)")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """로그 레벨이 유효한 Python 로깅 레벨인지 검증합니다."""
        allowed_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        # 대소문자 구분 없이 비교 후 대문자로 정규화
        upper_value = value.upper()
        if upper_value not in allowed_levels:
            error_message = f"log_level은 {allowed_levels} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return upper_value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """로그 포맷이 지원되는 형식인지 검증합니다."""
        allowed_formats = ("json", "text")
        if value not in allowed_formats:
            error_message = f"log_format은 {allowed_formats} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# transcoder 섹션: 외부 트랜스코더(ffmpeg) 실행 설정
# =============================================================================

class TranscoderConfig(BaseModel):
    """
    외부 트랜스코더 실행 설정입니다.

    역할:
    - ffmpeg 실행 파일 경로 지정
    - 정상 종료 대기/병합 대기 타임아웃 설정
    - 출력 파일 유효성 판정 기준(최소 바이트) 지정
    """
    # ffmpeg 실행 파일 경로 (PATH에서 찾을 이름 또는 절대 경로)
    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg 실행 파일 경로")
    # ffmpeg -loglevel 값
    loglevel: str = Field(default="info", description="ffmpeg 로그 레벨")
    # 'q' 전송 후 캡처 프로세스 종료 대기 시간 (초)
    stop_timeout_sec: float = Field(default=30.0, description="정상 종료 대기 타임아웃 (초)")
    # 병합 프로세스 최대 실행 시간 (초, 0=무제한)
    merge_timeout_sec: float = Field(default=0.0, description="병합 타임아웃 (초, 0=무제한)")
    # 이보다 작은 출력 파일은 실패로 간주 (바이트)
    min_output_bytes: int = Field(default=100, description="유효 출력 최소 크기 (bytes)")

    @field_validator("stop_timeout_sec")
    @classmethod
    def validate_stop_timeout(cls, value: float) -> float:
        """정상 종료 타임아웃은 양수여야 합니다."""
        if value <= 0:
            error_message = f"stop_timeout_sec는 0보다 커야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("merge_timeout_sec")
    @classmethod
    def validate_merge_timeout(cls, value: float) -> float:
        """병합 타임아웃은 0(무제한) 이상이어야 합니다."""
        if value < 0:
            error_message = f"merge_timeout_sec는 0 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("min_output_bytes")
    @classmethod
    def validate_min_output_bytes(cls, value: int) -> int:
        """최소 출력 크기는 음수일 수 없습니다."""
        if value < 0:
            error_message = f"min_output_bytes는 0 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# capture 섹션: 화면 캡처 설정
# =============================================================================

class CaptureConfig(BaseModel):
    """
    화면 캡처 입력 설정을 정의하는 모델입니다.

    역할:
    - 캡처 입력 포맷(gdigrab 등)과 프레임레이트 지정
    - 녹화 창 외곽(타이틀바/테두리) 여유 공간 지정
    - H.263 세로 영상 회전 여부 제어
    """
    # ffmpeg 화면 캡처 입력 포맷 (Windows: gdigrab)
    input_format: str = Field(default="gdigrab", description="캡처 입력 포맷")
    # 캡처 프레임레이트
    framerate: int = Field(default=30, description="캡처 프레임레이트 (fps)")
    # 마우스 커서 포함 여부
    draw_mouse: bool = Field(default=False, description="마우스 커서 캡처 여부")
    # 녹화 창 외곽 가로 여유 (픽셀)
    chrome_width_px: int = Field(default=16, description="창 외곽 가로 여유 (px)")
    # 녹화 창 외곽 세로 여유 (픽셀, 타이틀바 + 작업표시줄 포함)
    chrome_height_px: int = Field(default=100, description="창 외곽 세로 여유 (px)")
    # H.263 세로 영상을 가로로 회전할지 여부
    rotate_portrait_h263: bool = Field(default=False, description="H.263 세로 영상 회전 여부")

    @field_validator("framerate")
    @classmethod
    def validate_framerate(cls, value: int) -> int:
        """프레임레이트가 1~120 범위인지 검증합니다."""
        if not 1 <= value <= 120:
            error_message = f"framerate는 1~120 범위여야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("chrome_width_px", "chrome_height_px")
    @classmethod
    def validate_chrome(cls, value: int) -> int:
        """외곽 여유값은 음수일 수 없습니다."""
        if value < 0:
            error_message = f"창 외곽 여유값은 0 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# timeline 섹션: 사운드 로그 해석 설정
# =============================================================================

class TimelineConfig(BaseModel):
    """
    프레젠테이션 계층이 보고한 사운드 로그 해석 설정입니다.

    역할:
    - 로컬 서버 URL을 파일 경로로 바꿀 때 제거할 경로 접두어 지정
    """
    # 로컬 서버 URL 경로 접두어 (예: http://localhost:8089/bloom/C:/... 의 "bloom/")
    server_path_prefix: str = Field(default="bloom/", description="로컬 서버 경로 접두어")


# =============================================================================
# merge 섹션: 병합 단계 설정
# =============================================================================

class MergeConfig(BaseModel):
    """
    오디오/비디오 병합 단계 설정입니다.

    역할:
    - 한 번의 트랜스코더 실행에 넣을 최대 입력 수(배치 크기) 지정
    - 긴 필터 그래프를 스크립트 파일로 넘기는 기준 길이 지정
    - 진행률 로깅 주기 및 배경음악 페이드아웃 길이 지정
    """
    # 한 번의 병합 실행에 포함할 최대 사운드 입력 수
    batch_size: int = Field(default=1000, description="병합 배치 크기 (입력 수)")
    # 이 길이(문자 수)를 넘는 필터 그래프는 -filter_complex_script 파일로 전달
    filter_script_threshold: int = Field(default=8000, description="필터 스크립트 전환 기준 (문자 수)")
    # 병합 진행률 로깅 주기 (초)
    progress_interval_sec: float = Field(default=1.0, description="진행률 로깅 주기 (초)")
    # 마지막 배경음악의 최대 페이드아웃 길이 (초)
    music_fade_sec: float = Field(default=2.0, description="배경음악 페이드아웃 (초)")

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, value: int) -> int:
        """배치 크기는 최소 2 이상이어야 합니다 (이전 배치 출력 + 새 입력)."""
        if value < 2:
            error_message = f"batch_size는 2 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("progress_interval_sec")
    @classmethod
    def validate_progress_interval(cls, value: float) -> float:
        """진행률 로깅 주기는 양수여야 합니다."""
        if value <= 0:
            error_message = f"progress_interval_sec는 0보다 커야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# api 섹션: 녹화 제어 HTTP API 설정
# =============================================================================

class ApiConfig(BaseModel):
    """
    녹화 제어 HTTP/WebSocket 서버 설정입니다.

    역할:
    - API 서버 바인드 주소 및 포트 지정
    """
    # API 서버 바인드 호스트 주소
    host: str = Field(default="127.0.0.1", description="API 서버 호스트")
    # API 서버 포트
    port: int = Field(default=8089, description="API 서버 포트")


# =============================================================================
# 최상위 AppConfig: 모든 섹션을 통합하는 루트 모델
# =============================================================================

class AppConfig(BaseModel):
    """
    애플리케이션 전체 설정을 통합하는 최상위 모델입니다.

    역할:
    - config.yaml의 모든 섹션을 하나의 타입 안전한 객체로 통합
    - Pydantic v2 유효성 검증을 통해 설정 무결성 보장
    - 각 섹션이 누락된 경우 기본값으로 자동 생성

    사용 예시:
        >>> import yaml
        >>> with open("config.yaml") as f:
        ...     raw = yaml.safe_load(f)
        >>> config = AppConfig(**raw)
        >>> print(config.capture.framerate)
        30
        >>> print(config.transcoder.min_output_bytes)
        100
    """
    # 시스템 전역 설정
    system: SystemConfig = Field(default_factory=SystemConfig, description="시스템 설정")
    # 외부 트랜스코더 설정
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig, description="트랜스코더 설정")
    # 화면 캡처 설정
    capture: CaptureConfig = Field(default_factory=CaptureConfig, description="캡처 설정")
    # 사운드 로그 해석 설정
    timeline: TimelineConfig = Field(default_factory=TimelineConfig, description="타임라인 설정")
    # 병합 설정
    merge: MergeConfig = Field(default_factory=MergeConfig, description="병합 설정")
    # 녹화 제어 API 설정
    api: ApiConfig = Field(default_factory=ApiConfig, description="API 설정")
