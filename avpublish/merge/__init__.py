"""
병합 계획 패키지

공통 데이터 타입 정의:
- MergeRecipe: 사운드 입력 + (선택) 원본 캡처를 하나의 산출물로 합치는 병합 명령 구성
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class MergeRecipe:
    """
    병합 단계 트랜스코더 실행 한 번의 구성입니다.

    필드:
        inputs: 입력 파일 경로 목록 (사운드 이벤트 순서, 비디오/이전 배치 출력은 마지막)
        filter_graph: -filter_complex 필터 그래프 문자열
        output_path: 병합 결과 파일 경로
        audio_args: 코덱별 오디오 인코딩 인자
        video_index: 비디오를 그대로 복사할 입력 인덱스 (비디오가 없으면 None)
        carried_index: 이전 배치 오디오를 가져올 입력 인덱스 (첫 배치는 None)
        sound_count: 사운드 이벤트 입력 개수
    """
    inputs: list[str]
    filter_graph: str
    output_path: str
    audio_args: list[str] = field(default_factory=list)
    video_index: Optional[int] = None
    carried_index: Optional[int] = None
    sound_count: int = 0

    @property
    def has_video(self) -> bool:
        return self.video_index is not None

    def to_args(self, filter_script_path: Optional[str] = None, progress_path: Optional[str] = None) -> list[str]:
        """
        트랜스코더 인자 목록을 만듭니다.

        filter_script_path가 주어지면 필터 그래프를 인자 대신
        -filter_complex_script 파일로 전달합니다 (파일 내용은 호출자가 기록).
        출력 경로는 항상 마지막 인자입니다.
        """
        args: list[str] = []
        for input_path in self.inputs:
            args += ["-i", input_path]

        if filter_script_path:
            args += ["-filter_complex_script", filter_script_path]
        else:
            args += ["-filter_complex", self.filter_graph]

        if self.video_index is not None:
            args += ["-map", f"{self.video_index}:v", "-vcodec", "copy"]

        args += self.audio_args
        args += ["-map", "[out]"]

        if progress_path:
            args += ["-progress", progress_path]

        args.append(self.output_path)
        return args
