"""
외부 트랜스코더 패키지

공통 데이터 타입 정의:
- TranscoderRecipe: 트랜스코더 한 번 실행에 필요한 인자 목록과 실행 환경
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class TranscoderRecipe:
    """
    트랜스코더 한 번 실행에 필요한 명령 구성입니다.

    필드:
        args: 실행 파일 뒤에 붙을 인자 목록 (순서 유지, 출력 경로가 마지막)
        output_path: 이 실행이 만들어낼 출력 파일 경로
        working_dir: 프로세스 작업 디렉토리 (None이면 현재 디렉토리)
        description: 로그에 남길 짧은 설명 (예: "capture", "merge 1/3")
        progress_path: -progress 출력 파일 경로 (없으면 None)
        extra_files: 실행에 딸린 부가 파일 (필터 스크립트, -progress 파일). 실행이 끝나면 세션 컨트롤러가 삭제
    """
    args: list[str]
    output_path: str
    working_dir: Optional[str] = None
    description: str = ""
    progress_path: Optional[str] = None
    extra_files: list[str] = field(default_factory=list)
