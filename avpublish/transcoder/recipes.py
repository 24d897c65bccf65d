"""
캡처 단계 트랜스코더 레시피 생성 모듈입니다.

역할:
- 화면 캡처 입력 인자 구성 (창 제목 캡처 또는 화면 영역 캡처)
- 코덱별 비디오 인코딩 인자 구성 (H264: libx264 main, H263: CIF 352x288)
- 세로 영상 회전(transpose=1) 옵션 처리

인자 순서 (순서가 의미를 가짐):
    -f <source> -framerate <fps> -draw_mouse 0 <target> <codec video args> <raw output>

사용 예시:
    >>> recipe = build_capture_recipe(config, resolved, "/tmp/raw.mp4", window_title="Recording")
    >>> print(recipe.args[:6])
    ['-f', 'gdigrab', '-framerate', '30', '-draw_mouse', '0']
"""

from __future__ import annotations

import logging
from typing import Optional

from avpublish.config.schema import AppConfig
from avpublish.profile import Codec, ResolvedFormat, ScreenBounds
from avpublish.transcoder import TranscoderRecipe

logger = logging.getLogger(__name__)

# H.263 1차 규격 CIF 해상도
H263_SCALE = "scale=352:288"

# 시계 방향 90도 회전 필터
ROTATE_FILTER = "transpose=1"


def capture_target_args(window_title: Optional[str], region: Optional[ScreenBounds]) -> list[str]:
    """
    캡처 대상 입력 인자를 만듭니다.

    화면 영역이 주어지면 영역 캡처(가로/세로는 짝수로 내림)를,
    아니면 창 제목 캡처를 사용합니다.

    예외:
        ValueError: 창 제목과 영역이 모두 없을 때
    """
    if region is not None:
        width = region.width - region.width % 2
        height = region.height - region.height % 2
        return [
            "-video_size", f"{width}x{height}",
            "-offset_x", str(region.x),
            "-offset_y", str(region.y),
            "-i", "desktop",
        ]
    if window_title:
        return ["-i", f"title={window_title}"]
    raise ValueError("캡처 대상이 없습니다: window_title 또는 region 중 하나가 필요합니다")


def video_codec_args(codec: Codec, portrait: bool, rotate: bool, rotate_portrait_h263: bool) -> list[str]:
    """코덱별 비디오 인코딩 인자를 만듭니다."""
    if codec is Codec.H264:
        args = ["-vcodec", "libx264", "-profile:v", "main", "-pix_fmt", "yuv420p"]
        if rotate:
            args += ["-vf", ROTATE_FILTER]
        return args

    if codec is Codec.H263:
        # H.263은 352x288만 허용하므로 항상 CIF로 스케일
        transpose = (rotate_portrait_h263 and portrait) or rotate
        video_filter = f"{ROTATE_FILTER},{H263_SCALE}" if transpose else H263_SCALE
        return ["-vcodec", "h263", "-vf", video_filter]

    raise ValueError(f"비디오를 만들지 않는 코덱입니다: {codec.name}")


def build_capture_recipe(
    config: AppConfig,
    resolved: ResolvedFormat,
    output_path: str,
    *,
    window_title: Optional[str] = None,
    region: Optional[ScreenBounds] = None,
    rotate: bool = False,
) -> TranscoderRecipe:
    """
    화면 캡처용 트랜스코더 레시피를 만듭니다.

    파라미터:
        config: 애플리케이션 설정 (캡처 입력 포맷, 프레임레이트 등)
        resolved: 해상도 결정 결과 (코덱, 실제 해상도)
        output_path: 원본 캡처 파일 경로
        window_title: 캡처할 창 제목
        region: 캡처할 화면 영역 (주어지면 창 제목보다 우선)
        rotate: 책을 회전해서 녹화했는지 여부 (출력에서 되돌림)

    반환값:
        TranscoderRecipe: 캡처 레시피

    예외:
        ValueError: 오디오 전용 코덱이거나 캡처 대상이 없을 때
    """
    capture = config.capture
    portrait = resolved.actual.width < resolved.actual.height

    args = [
        "-f", capture.input_format,
        "-framerate", str(capture.framerate),
        "-draw_mouse", "1" if capture.draw_mouse else "0",
        *capture_target_args(window_title, region),
        *video_codec_args(resolved.codec, portrait, rotate, capture.rotate_portrait_h263),
        output_path,
    ]
    logger.debug(f"캡처 레시피 생성: codec={resolved.codec.name}, actual={resolved.actual}")
    return TranscoderRecipe(args=args, output_path=output_path, description="capture")
