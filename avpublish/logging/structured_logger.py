"""
구조화 JSON 로깅 모듈입니다.

역할:
- python-json-logger를 사용한 JSON 포맷 로그 출력
- RotatingFileHandler로 로그 파일 자동 순환 (10MB, 5개 보존)
- session_id, capture_session, module, level 등 공통 필드 자동 추가
- 로그 레벨 및 포맷(json/text)을 설정에서 제어

프로세스 세션 ID는 setup_logging() 시점에 한 번 정해지고,
캡처 세션 ID는 녹화가 시작될 때마다 bind_capture_session()으로 교체됩니다.

사용 예시:
    >>> setup_logging(config)
    >>> logger = StructuredLogger.get("my_module")
    >>> StructuredLogger.bind_capture_session("a1b2c3d4")
    >>> logger.info("녹화 시작", extra={"profile": "facebook"})
"""

from __future__ import annotations

import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from avpublish.config.schema import AppConfig

_SESSION_ID: str = ""
_CAPTURE_SESSION_ID: str = ""

# 로그 파일 이름
LOG_FILENAME = "avpublish.log"


def setup_logging(config: AppConfig, session_id: Optional[str] = None) -> None:
    """
    애플리케이션 전체 로깅 설정을 초기화합니다.

    파라미터:
        config: AppConfig 인스턴스
        session_id: 세션 식별자. None이면 config.system.session_id 또는 UUID 사용
    """
    global _SESSION_ID

    _SESSION_ID = (
        session_id
        or config.system.session_id
        or str(uuid.uuid4())
    )

    log_level = getattr(logging, config.system.log_level, logging.INFO)
    log_format = config.system.log_format
    log_dir = Path(config.system.log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 기존 핸들러 제거 (중복 방지)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers: list[logging.Handler] = []

    # 콘솔 핸들러
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    # 파일 핸들러 (RotatingFileHandler: 10MB, 5개 보존)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_dir / LOG_FILENAME,
            maxBytes=10 * 1024 * 1024,   # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        handlers.append(file_handler)
    except OSError as exc:
        logging.warning(f"로그 파일 핸들러 생성 실패: {exc}")

    for handler in handlers:
        if log_format == "json":
            formatter: logging.Formatter = _JsonFormatter()
        else:
            formatter = _TextFormatter()
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    logging.getLogger(__name__).info(
        f"로깅 초기화: level={config.system.log_level}, "
        f"format={log_format}, session={_SESSION_ID}"
    )


class _JsonFormatter(jsonlogger.JsonFormatter):
    """
    session_id, capture_session, module 필드를 자동 추가하는 JSON 포맷터입니다.
    한글 메시지는 \\uXXXX로 이스케이프하지 않고 그대로 기록합니다.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            json_ensure_ascii=False,
        )

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["session_id"] = _SESSION_ID
        log_record["capture_session"] = _CAPTURE_SESSION_ID or None
        log_record["module"] = record.name
        log_record["level"] = record.levelname


class _TextFormatter(logging.Formatter):
    """
    session_id와 캡처 세션 ID를 접두어로 포함하는 텍스트 포맷터입니다.
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(sid)s/%(csid)s] %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        record.sid = _SESSION_ID[:8] if _SESSION_ID else "no-sid"
        record.csid = _CAPTURE_SESSION_ID[:8] if _CAPTURE_SESSION_ID else "-"
        return super().format(record)


class StructuredLogger:
    """
    모듈별 구조화 로거를 반환하는 팩토리 클래스입니다.

    get() 메서드는 표준 logging.Logger를 직접 반환하여
    기존 logging API와 완전히 호환됩니다.
    """

    @staticmethod
    def get(name: str) -> logging.Logger:
        """
        지정된 이름의 로거를 반환합니다.

        파라미터:
            name: 모듈/컴포넌트 이름 (일반적으로 __name__ 사용)

        반환값:
            logging.Logger: 표준 로거 인스턴스
        """
        return logging.getLogger(name)

    @staticmethod
    def get_session_id() -> str:
        """현재 프로세스 세션 ID를 반환합니다."""
        return _SESSION_ID

    @staticmethod
    def bind_capture_session(capture_session_id: Optional[str]) -> None:
        """
        이후 로그 레코드에 붙일 캡처 세션 ID를 설정합니다.

        파라미터:
            capture_session_id: 캡처 세션 ID. None이면 바인딩 해제
        """
        global _CAPTURE_SESSION_ID
        _CAPTURE_SESSION_ID = capture_session_id or ""

    @staticmethod
    def get_capture_session_id() -> str:
        """현재 바인딩된 캡처 세션 ID를 반환합니다 (없으면 빈 문자열)."""
        return _CAPTURE_SESSION_ID
