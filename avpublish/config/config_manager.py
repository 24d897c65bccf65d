"""
avpublish 설정 로드 모듈입니다.

역할:
- YAML 설정 파일을 읽어 AppConfig 스키마로 검증
- AVP_ 접두사 환경변수로 섹션 필드 덮어쓰기
- 설정 파일 없이 기본값 + 환경변수만으로 구성

환경변수 규칙:
    AVP_<섹션>_<필드>, 첫 번째 언더스코어가 섹션 구분자
    AVP_TRANSCODER_FFMPEG_PATH -> transcoder.ffmpeg_path
    AVP_MERGE_BATCH_SIZE=50    -> merge.batch_size (문자열 -> 타입 변환은 스키마가 담당)

사용 예시:
    >>> config = ConfigManager().load("config.yaml")
    >>> config.transcoder.ffmpeg_path
    'ffmpeg'
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from avpublish.config.schema import AppConfig

logger = logging.getLogger(__name__)

# 환경변수 오버라이드 접두사
ENV_PREFIX = "AVP_"


class ConfigLoadError(Exception):
    """설정을 만들 수 없을 때 발생하는 에러의 기본 클래스입니다."""
    pass


class ConfigValidationError(ConfigLoadError):
    """설정 값이 스키마를 위반할 때 발생하는 에러입니다."""
    pass


class ConfigFileNotFoundError(ConfigLoadError):
    """설정 파일이 없을 때 발생하는 에러입니다."""
    pass


class ConfigManager:
    """
    설정 파일과 환경변수로 AppConfig를 만드는 로더입니다.

    environ을 주면 os.environ 대신 그 매핑에서 AVP_ 변수를 읽습니다.

    사용 예시:
        >>> manager = ConfigManager()
        >>> config = manager.load("config.yaml")
        >>> defaults = manager.load_defaults()
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def load(self, filepath: str | Path) -> AppConfig:
        """
        YAML 설정 파일을 읽고 환경변수를 적용해 검증된 설정을 반환합니다.

        파라미터:
            filepath: YAML 설정 파일 경로

        반환값:
            AppConfig: 검증된 설정

        예외:
            ConfigFileNotFoundError: 파일이 없을 때
            ConfigLoadError: YAML 파싱 실패 또는 최상위가 매핑이 아닐 때
            ConfigValidationError: 스키마 위반
        """
        filepath = Path(filepath)
        if not filepath.is_file():
            error_message = f"설정 파일을 찾을 수 없습니다: {filepath}"
            logger.error(error_message)
            raise ConfigFileNotFoundError(error_message)

        sections = self._read_yaml(filepath)
        config = self._build(sections)
        logger.info(
            f"설정 로드 완료: {filepath} (ffmpeg={config.transcoder.ffmpeg_path}, "
            f"capture={config.capture.input_format}@{config.capture.framerate}fps)"
        )
        return config

    def load_defaults(self) -> AppConfig:
        """
        설정 파일 없이 기본값과 환경변수만으로 설정을 만듭니다.

        예외:
            ConfigValidationError: 환경변수 값이 스키마를 위반할 때
        """
        logger.info("설정 파일 없음: 기본 설정 사용")
        return self._build({})

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    def _read_yaml(self, filepath: Path) -> dict[str, Any]:
        try:
            raw = yaml.safe_load(filepath.read_text(encoding="utf-8"))
        except yaml.YAMLError as yaml_error:
            error_message = f"YAML 파싱 에러: {filepath} ({yaml_error})"
            logger.error(error_message)
            raise ConfigLoadError(error_message) from yaml_error
        except OSError as file_error:
            error_message = f"설정 파일 읽기 에러: {filepath} ({file_error})"
            logger.error(error_message)
            raise ConfigLoadError(error_message) from file_error

        if raw is None:
            logger.warning(f"설정 파일이 비어 있습니다: {filepath}")
            return {}
        if not isinstance(raw, dict):
            raise ConfigLoadError(
                f"설정 파일의 최상위는 섹션 매핑이어야 합니다: {type(raw).__name__}"
            )
        return raw

    def _build(self, sections: dict[str, Any]) -> AppConfig:
        merged = self._merge_env_overrides(sections)
        try:
            return AppConfig(**merged)
        except ValidationError as validation_error:
            for detail in validation_error.errors():
                location = ".".join(str(part) for part in detail["loc"])
                logger.error(
                    f"설정 검증 실패: {location} = {detail.get('input', 'N/A')!r} ({detail['msg']})"
                )
            raise ConfigValidationError(
                f"설정 스키마 검증 실패: {validation_error.error_count()}개 항목"
            ) from validation_error

    def _merge_env_overrides(self, sections: dict[str, Any]) -> dict[str, Any]:
        """AVP_ 환경변수를 섹션 사본에 덮어씁니다. 알 수 없는 섹션/필드는 무시합니다."""
        merged = {
            name: dict(values) if isinstance(values, dict) else values
            for name, values in sections.items()
        }

        for env_key in sorted(self._environ):
            if not env_key.startswith(ENV_PREFIX):
                continue
            section_name, _, field_name = env_key[len(ENV_PREFIX):].lower().partition("_")

            section_field = AppConfig.model_fields.get(section_name)
            if section_field is None or not field_name:
                logger.debug(f"환경변수 무시 (알 수 없는 섹션): {env_key}")
                continue
            if field_name not in section_field.annotation.model_fields:
                logger.warning(f"환경변수 무시 (알 수 없는 필드 {section_name}.{field_name}): {env_key}")
                continue

            section = merged.setdefault(section_name, {})
            if not isinstance(section, dict):
                logger.warning(f"환경변수 무시 (섹션 '{section_name}'이 매핑이 아님): {env_key}")
                continue
            section[field_name] = self._environ[env_key]
            logger.info(f"환경변수 오버라이드: {env_key} -> {section_name}.{field_name}")

        return merged
