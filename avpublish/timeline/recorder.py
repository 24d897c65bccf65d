"""
타임라인 기록 모듈입니다.

역할:
- 녹화 시작 시각 기록 (주입 가능한 시계 사용)
- 프레젠테이션 계층의 사운드 로그 JSON 페이로드 파싱 (Pydantic)
- 로컬 서버 URL을 실제 파일 경로로 변환 (캐시 방지 쿼리 제거 포함)
- 각 사운드 이벤트의 녹화 시작 기준 오프셋 계산
- 음수 오프셋은 보정하지 않고 TimingDefectError로 즉시 실패

사용 예시:
    >>> recorder = TimelineRecorder(config)
    >>> session_start = recorder.begin()
    >>> items = recorder.to_offsets(session_start, sound_log_json)
    >>> print(items[0].start_offset_ms)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union
from urllib.parse import unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from avpublish.config.schema import AppConfig
from avpublish.errors import SoundLogFormatError, TimingDefectError
from avpublish.timeline import SoundLogItem

logger = logging.getLogger(__name__)

# 로컬 서버로 간주하는 호스트 이름
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

# Windows 드라이브 경로 (예: "C:/..." 또는 "C:\...")
_DRIVE_PATH_PATTERN = re.compile(r"^[A-Za-z]:[/\\]")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SoundLogEntry(BaseModel):
    """
    프레젠테이션 계층이 보고한 사운드 로그 항목 하나입니다 (원본 페이로드 형식).

    필드:
        src: 사운드 위치 (로컬 서버 URL, file:// URL, 또는 파일 경로)
        volume: 볼륨 배율 (기본 1.0)
        start_time: 재생 시작 시각 (ISO-8601, 페이로드 키 "startTime")
        end_time: 재생 종료 시각 (선택, 페이로드 키 "endTime")
    """
    model_config = ConfigDict(populate_by_name=True)

    src: str
    volume: float = 1.0
    start_time: datetime = Field(alias="startTime")
    end_time: Optional[datetime] = Field(default=None, alias="endTime")

    @field_validator("volume", mode="before")
    @classmethod
    def validate_volume(cls, value: Any) -> Any:
        """볼륨이 없으면 1.0, 음수는 거부합니다."""
        if value is None:
            return 1.0
        if isinstance(value, (int, float)) and value < 0:
            raise ValueError(f"volume은 0 이상이어야 합니다. 입력값: {value}")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        """시간대 정보가 없는 시각은 로컬 시간으로 해석합니다."""
        if value is not None and value.tzinfo is None:
            return value.astimezone()
        return value


_SOUND_LOG_ADAPTER = TypeAdapter(list[SoundLogEntry])

SoundLogPayload = Union[str, bytes, Iterable[Union[SoundLogEntry, dict]]]


def parse_sound_log(payload: SoundLogPayload) -> list[SoundLogEntry]:
    """
    사운드 로그 페이로드를 SoundLogEntry 목록으로 파싱합니다.

    파라미터:
        payload: JSON 문자열/바이트, 또는 dict/SoundLogEntry 목록

    반환값:
        list[SoundLogEntry]: 파싱된 항목 (보고 순서 유지)

    예외:
        SoundLogFormatError: JSON 형식이나 필드 값이 올바르지 않을 때
    """
    try:
        if isinstance(payload, (str, bytes)):
            return _SOUND_LOG_ADAPTER.validate_json(payload)
        return _SOUND_LOG_ADAPTER.validate_python(
            [entry.model_dump(by_alias=True) if isinstance(entry, SoundLogEntry) else entry
             for entry in payload]
        )
    except ValidationError as validation_error:
        error_message = f"사운드 로그 형식 오류: {validation_error.error_count()}개 항목"
        logger.error(f"{error_message}\n{validation_error}")
        raise SoundLogFormatError(error_message) from validation_error


def url_to_file(src: str, server_path_prefix: str = "bloom/") -> str:
    """
    사운드 로그의 src 값을 실제 파일 경로로 변환합니다.

    처리 순서:
    1. 강제 새로고침용 쿼리(?...)를 제거
    2. 로컬 서버 URL이면 스킴/호스트/서버 경로 접두어를 제거하고 URL 디코딩
    3. file:// URL이면 경로 부분만 디코딩
    4. 그 외에는 그대로 반환

    파라미터:
        src: 원본 src 문자열
        server_path_prefix: 로컬 서버 URL 경로 접두어 (예: "bloom/")

    반환값:
        str: 파일 경로
    """
    result = src
    query_index = result.find("?")
    if query_index >= 0:
        result = result[:query_index]

    parts = urlsplit(result)
    scheme = parts.scheme.lower()

    if scheme in ("http", "https") and (parts.hostname or "") in LOOPBACK_HOSTS:
        path = unquote(parts.path).lstrip("/")
        if server_path_prefix and path.startswith(server_path_prefix):
            path = path[len(server_path_prefix):]
        return _restore_absolute(path)

    if scheme == "file":
        return _restore_absolute(unquote(parts.path).lstrip("/"))

    return result


def _restore_absolute(path: str) -> str:
    if _DRIVE_PATH_PATTERN.match(path):
        return path
    return "/" + path.lstrip("/")


class TimelineRecorder:
    """
    녹화 시작 시각을 기록하고 사운드 이벤트를 오프셋으로 변환하는 클래스입니다.

    사용 예시:
        >>> recorder = TimelineRecorder(config, clock=lambda: fixed_time)
        >>> start = recorder.begin()
        >>> items = recorder.to_offsets(start, [{"src": "a.mp3", "startTime": "..."}])
    """

    def __init__(self, config: Optional[AppConfig] = None, clock: Optional[Clock] = None) -> None:
        self._config = config or AppConfig()
        self._clock: Clock = clock or _utc_now

    def begin(self) -> datetime:
        """
        현재 시각을 녹화 시작 시각으로 반환합니다.

        반환값:
            datetime: timezone-aware 녹화 시작 시각
        """
        session_start = self.now()
        logger.debug(f"녹화 시작 시각 기록: {session_start.isoformat()}")
        return session_start

    def now(self) -> datetime:
        """주입된 시계 기준 현재 시각. naive 값은 로컬 시간대로 해석합니다."""
        current = self._clock()
        if current.tzinfo is None:
            current = current.astimezone()
        return current

    def to_offsets(self, session_start: datetime, raw_events: SoundLogPayload) -> list[SoundLogItem]:
        """
        사운드 로그를 녹화 시작 기준 오프셋이 계산된 SoundLogItem 목록으로 변환합니다.

        파라미터:
            session_start: begin()이 반환한 녹화 시작 시각
            raw_events: 사운드 로그 페이로드 (JSON 또는 항목 목록)

        반환값:
            list[SoundLogItem]: 보고 순서를 유지한 사운드 이벤트 목록

        예외:
            SoundLogFormatError: 페이로드 형식 오류
            TimingDefectError: 오프셋이 음수이거나 종료 시각이 시작 시각보다 이를 때
        """
        entries = parse_sound_log(raw_events)
        prefix = self._config.timeline.server_path_prefix
        items: list[SoundLogItem] = []

        for index, entry in enumerate(entries):
            start_offset = entry.start_time - session_start
            if start_offset.total_seconds() < 0:
                error_message = (
                    f"사운드 이벤트 #{index}의 시작 시각이 녹화 시작보다 이릅니다: "
                    f"src={entry.src}, startTime={entry.start_time.isoformat()}, "
                    f"sessionStart={session_start.isoformat()}, "
                    f"offset={start_offset.total_seconds() * 1000:.0f}ms"
                )
                logger.error(error_message)
                raise TimingDefectError(error_message)

            if entry.end_time is not None and entry.end_time < entry.start_time:
                error_message = (
                    f"사운드 이벤트 #{index}의 종료 시각이 시작 시각보다 이릅니다: "
                    f"src={entry.src}, startTime={entry.start_time.isoformat()}, "
                    f"endTime={entry.end_time.isoformat()}"
                )
                logger.error(error_message)
                raise TimingDefectError(error_message)

            items.append(SoundLogItem(
                src=url_to_file(entry.src, prefix),
                volume=entry.volume,
                start_time=entry.start_time,
                end_time=entry.end_time,
                start_offset=start_offset,
            ))

        logger.info(f"사운드 로그 변환 완료: {len(items)}개 이벤트")
        return items
