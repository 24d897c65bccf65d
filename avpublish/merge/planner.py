"""
오디오/비디오 병합 계획 모듈입니다.

역할:
- 사운드 이벤트마다 입력 하나와 스트림 필터(자르기 -> 페이드 -> 지연 -> 볼륨)를 구성
- 모든 스트림을 amix로 합치되 normalize=0 으로 스트림 수 나눗셈을 끔
  (내레이션은 대부분 겹치지 않고 배경음악은 이미 의도한 볼륨으로 보고됨)
- 원본 캡처가 있으면 마지막 입력으로 추가하고 비디오는 재인코딩 없이 복사
- 입력이 많으면 배치로 나누고, 다음 배치가 이전 배치 출력을 이어받도록 연결
- 긴 필터 그래프는 -filter_complex_script 파일로 기록

사용 예시:
    >>> planner = MergePlanner(config)
    >>> recipe = planner.plan(items, True, Codec.H264, video_path="raw.mp4", output_path="final.mp4")
    >>> print(recipe.filter_graph)
    [0:a]adelay=1500:all=1[a0]; [a0]amix=inputs=1:normalize=0[out]
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from avpublish.config.schema import AppConfig
from avpublish.merge import MergeRecipe
from avpublish.profile import Codec
from avpublish.timeline import SoundLogItem
from avpublish.transcoder import TranscoderRecipe

logger = logging.getLogger(__name__)

# 페이드 시작점이 항상 양수가 되도록 재생 길이에서 빼는 여유 (초)
_FADE_MARGIN_SEC = 0.001


def _format_number(value: float) -> str:
    """소수점 최대 3자리, 불필요한 0 제거 (예: 2.5, 0.001, 3)."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def last_music_index(events: Sequence[SoundLogItem]) -> Optional[int]:
    """
    명시적 종료 시각을 가진 마지막 이벤트(끝에서 잘린 배경음악)의 인덱스를 찾습니다.

    내레이션은 잘리지 않으므로 종료 시각이 있는 항목은 배경음악으로 봅니다.
    """
    for index in range(len(events) - 1, -1, -1):
        if events[index].end_time is not None:
            return index
    return None


class MergePlanner:
    """
    사운드 로그와 원본 캡처로 병합 레시피를 만드는 클래스입니다.

    역할:
    - 단일 병합 레시피 생성 (plan)
    - 대용량 사운드 로그의 배치 분할 및 연결 (plan_batches)
    - 병합 레시피를 트랜스코더 레시피로 변환 (필터 스크립트 파일/진행률 파일 포함)
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config or AppConfig()

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    def plan(
        self,
        sound_events: Sequence[SoundLogItem],
        has_video: bool,
        codec: Codec,
        *,
        video_path: Optional[str] = None,
        output_path: str,
        carried_path: Optional[str] = None,
        fade_index: Optional[int] = -1,
    ) -> MergeRecipe:
        """
        병합 레시피 하나를 만듭니다.

        파라미터:
            sound_events: 사운드 이벤트 목록 (한 개 이상)
            has_video: 원본 캡처 비디오를 포함할지 여부
            codec: 출력 코덱 (오디오 인코딩 인자 결정)
            video_path: 원본 캡처 경로 (has_video일 때 필수)
            output_path: 병합 결과 경로
            carried_path: 이전 배치 출력 경로. 비디오가 있으면 video_path 대신
                이 파일을 비디오 입력으로 쓰고 그 오디오도 함께 섞음
            fade_index: 페이드아웃할 이벤트 인덱스. -1이면 자동 (마지막 배경음악),
                None이면 페이드 없음

        반환값:
            MergeRecipe: 병합 레시피

        예외:
            ValueError: 사운드 이벤트가 없거나 비디오 경로가 없을 때
        """
        if not sound_events:
            raise ValueError("병합할 사운드 이벤트가 없습니다")

        if fade_index == -1:
            fade_index = last_music_index(sound_events)

        sound_count = len(sound_events)
        inputs = [event.src for event in sound_events]
        stream_filters = [
            self._stream_filter(index, event, index == fade_index)
            for index, event in enumerate(sound_events)
        ]
        mix_inputs = "".join(f"[a{index}]" for index in range(sound_count))

        video_index: Optional[int] = None
        carried_index: Optional[int] = None

        if has_video:
            source = carried_path or video_path
            if not source:
                raise ValueError("비디오를 포함하려면 video_path가 필요합니다")
            inputs.append(source)
            video_index = sound_count
            if carried_path:
                carried_index = video_index
        elif carried_path:
            inputs.append(carried_path)
            carried_index = sound_count

        mix_count = sound_count
        if carried_index is not None:
            mix_inputs += f"[{carried_index}:a]"
            mix_count += 1

        mix = f"{mix_inputs}amix=inputs={mix_count}:normalize=0[out]"
        filter_graph = "; ".join(stream_filters + [mix])

        return MergeRecipe(
            inputs=inputs,
            filter_graph=filter_graph,
            output_path=output_path,
            audio_args=codec.merge_audio_args,
            video_index=video_index,
            carried_index=carried_index,
            sound_count=sound_count,
        )

    def plan_batches(
        self,
        sound_events: Sequence[SoundLogItem],
        has_video: bool,
        codec: Codec,
        *,
        video_path: Optional[str] = None,
        output_path: str,
        work_dir: str,
    ) -> list[MergeRecipe]:
        """
        사운드 이벤트를 배치 크기 단위로 나눠 연결된 병합 레시피 목록을 만듭니다.

        중간 배치 출력은 work_dir 아래 임시 파일에 기록되고,
        다음 배치가 그 파일을 이어받으며 마지막 배치만 output_path에 기록합니다.

        반환값:
            list[MergeRecipe]: 실행 순서대로 나열된 레시피
        """
        batch_size = self._config.merge.batch_size
        fade_index = last_music_index(sound_events)
        recipes: list[MergeRecipe] = []
        carried_path: Optional[str] = None

        for batch_start in range(0, len(sound_events), batch_size):
            batch = sound_events[batch_start:batch_start + batch_size]
            is_final = batch_start + batch_size >= len(sound_events)
            batch_number = len(recipes) + 1
            batch_output = output_path if is_final else str(
                Path(work_dir) / f"merge_pass{batch_number}{codec.extension}"
            )
            local_fade = None
            if fade_index is not None and batch_start <= fade_index < batch_start + len(batch):
                local_fade = fade_index - batch_start

            recipes.append(self.plan(
                batch,
                has_video,
                codec,
                video_path=video_path,
                output_path=batch_output,
                carried_path=carried_path,
                fade_index=local_fade,
            ))
            carried_path = batch_output

        if len(recipes) > 1:
            logger.info(f"병합을 {len(recipes)}개 배치로 분할 (배치 크기 {batch_size})")
        return recipes

    def to_transcoder_recipe(
        self,
        recipe: MergeRecipe,
        work_dir: str,
        *,
        pass_number: int = 1,
        total_passes: int = 1,
    ) -> TranscoderRecipe:
        """
        병합 레시피를 트랜스코더 레시피로 변환합니다.

        필터 그래프가 설정된 길이를 넘으면 work_dir에 스크립트 파일로 기록하고,
        진행률 추정을 위한 -progress 파일 경로도 함께 지정합니다.
        """
        work = Path(work_dir)
        extra_files: list[str] = []

        filter_script_path: Optional[str] = None
        if len(recipe.filter_graph) > self._config.merge.filter_script_threshold:
            script = work / f"filter_pass{pass_number}.txt"
            script.write_text(recipe.filter_graph, encoding="utf-8")
            filter_script_path = str(script)
            extra_files.append(filter_script_path)
            logger.debug(f"필터 그래프를 스크립트 파일로 전달: {script} ({len(recipe.filter_graph)}자)")

        progress_path = str(work / f"progress_pass{pass_number}.txt")
        extra_files.append(progress_path)

        return TranscoderRecipe(
            args=recipe.to_args(filter_script_path=filter_script_path, progress_path=progress_path),
            output_path=recipe.output_path,
            description=f"merge {pass_number}/{total_passes}",
            progress_path=progress_path,
            extra_files=extra_files,
        )

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    def _stream_filter(self, index: int, event: SoundLogItem, fade_out: bool) -> str:
        """이벤트 하나의 스트림 필터 체인을 만듭니다: 자르기 -> 페이드 -> 지연 -> 볼륨."""
        steps: list[str] = []

        duration = event.duration
        if duration is not None:
            seconds = duration.total_seconds()
            steps.append(f"atrim=end={_format_number(seconds)}")
            if fade_out:
                fade = min(self._config.merge.music_fade_sec, seconds - _FADE_MARGIN_SEC)
                if fade > 0:
                    steps.append(
                        f"afade=t=out:st={_format_number(seconds - fade)}:d={_format_number(fade)}"
                    )

        # all=1: 스테레오 입력의 모든 채널을 같은 만큼 지연
        steps.append(f"adelay={event.start_offset_ms}:all=1")

        if event.volume != 1.0:
            steps.append(f"volume={event.volume:g}")

        return f"[{index}:a]{','.join(steps)}[a{index}]"
