"""
출력 프로필 패키지

공통 데이터 타입 정의:
- Codec: 출력 코덱 계열 (H264 / H263 / MP3)
- Resolution: (가로, 세로) 해상도 값 타입
- ScreenBounds: 녹화 창이 놓일 화면 영역
- OutputProfile: 게시 대상별 고정 해상도/코덱 정의
- ResolvedFormat: 해상도 결정 결과 (세션에 그대로 전달되는 불변 값)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# 표준 화면비 표 (라벨, 가로/세로 비율)
CANONICAL_ASPECT_RATIOS: tuple[tuple[str, float], ...] = (
    ("16:9", 16 / 9),
    ("3:2", 3 / 2),
    ("5:4", 5 / 4),
    ("1:1", 1.0),
    ("4:5", 4 / 5),
    ("2:3", 2 / 3),
    ("9:16", 9 / 16),
)

# 표준 화면비 일치 허용 오차 (±5%)
ASPECT_RATIO_TOLERANCE = 0.05


class Codec(Enum):
    """
    출력 코덱 계열입니다.

    각 코덱은 하나의 확장자와 병합 단계 오디오 인코딩 인자를 가집니다.
    H263은 피처폰 호환을 위해 8kHz 샘플레이트를 고정합니다.
    """
    H264 = "h264"
    H263 = "h263"
    MP3 = "mp3"

    @property
    def extension(self) -> str:
        """최종 산출물 파일 확장자 (점 포함)."""
        return _CODEC_EXTENSIONS[self]

    @property
    def has_video(self) -> bool:
        """비디오 트랙을 만드는 코덱인지 여부."""
        return self is not Codec.MP3

    @property
    def merge_audio_args(self) -> list[str]:
        """병합 단계에서 사용할 오디오 인코딩 인자 목록."""
        return list(_CODEC_AUDIO_ARGS[self])


_CODEC_EXTENSIONS = {
    Codec.H264: ".mp4",
    Codec.H263: ".3gp",
    Codec.MP3: ".mp3",
}

# H264는 컨테이너 기본값(AAC)을 그대로 사용
_CODEC_AUDIO_ARGS: dict[Codec, tuple[str, ...]] = {
    Codec.H264: (),
    Codec.H263: ("-acodec", "aac", "-ar", "8000"),
    Codec.MP3: ("-acodec", "libmp3lame", "-b:a", "64k"),
}


@dataclass(frozen=True)
class Resolution:
    """
    (가로, 세로) 해상도 값 타입입니다.

    필드:
        width: 가로 픽셀 수
        height: 세로 픽셀 수
    """
    width: int
    height: int

    @property
    def aspect_ratio(self) -> str:
        """표준 화면비 라벨 (예: "16:9"). 표에 없으면 "W:1" 또는 "1:H" 형식."""
        return aspect_ratio_label(self.width, self.height)

    @property
    def is_landscape(self) -> bool:
        return self.width > self.height

    def inverse(self) -> Resolution:
        """가로/세로를 뒤바꾼 해상도를 반환합니다."""
        return Resolution(self.height, self.width)

    def fits_within(self, width: int, height: int) -> bool:
        """주어진 가로/세로 안에 들어가는지 여부."""
        return self.width <= width and self.height <= height

    def __str__(self) -> str:
        return f"{self.width} x {self.height}"


@dataclass(frozen=True)
class ScreenBounds:
    """
    녹화 창이 놓일 화면 영역입니다.

    필드:
        width: 화면 가로 픽셀 수
        height: 화면 세로 픽셀 수
        x: 화면 좌상단 X 좌표 (다중 모니터에서 0이 아닐 수 있음)
        y: 화면 좌상단 Y 좌표
    """
    width: int
    height: int
    x: int = 0
    y: int = 0


@dataclass(frozen=True)
class OutputProfile:
    """
    게시 대상별 출력 프로필입니다. 빌드 시점에 고정됩니다.

    필드:
        name: 프로필 이름 ("facebook" | "feature" | "youtube" | "mp3")
        codec: 코덱 계열
        landscape: 가로 콘텐츠의 목표 해상도
        portrait: 세로 콘텐츠의 목표 해상도
        square: 정사각형 콘텐츠 전용 목표 해상도 (None이면 가로로 취급)
        ladder: 표준 해상도 사다리 (높은 것부터, 가로 기준). None이면 비율 축소 사용
        rotated_portrait: 세로 영상 회전 설정이 켜졌을 때 세로 콘텐츠의 목표 해상도
        can_rotate_book: 화면 방향과 맞지 않는 책을 돌려서 녹화할 수 있는지 여부
    """
    name: str
    codec: Codec
    landscape: Resolution
    portrait: Resolution
    square: Optional[Resolution] = None
    ladder: Optional[tuple[Resolution, ...]] = None
    rotated_portrait: Optional[Resolution] = None
    can_rotate_book: bool = True


@dataclass(frozen=True)
class ResolvedFormat:
    """
    해상도 결정 결과입니다. 세션 생성자에 그대로 전달되는 불변 값입니다.

    필드:
        profile: 사용된 프로필 이름
        desired: 프로필이 원하는 해상도
        actual: 실제로 녹화할 해상도
        codec: 코덱 계열
        warning: 축소가 일어난 경우 사용자에게 보여줄 경고 (없으면 빈 문자열)
        use_full_screen: 테두리 없는 전체 화면 창으로 녹화해야 하는지 여부
        use_original_page_size: 프레젠테이션 계층이 원래 페이지 크기를 써야 하는지 여부
        should_rotate_book: 책을 90도 돌려 녹화하고 캡처 단계에서 되돌려야 하는지 여부
    """
    profile: str
    desired: Resolution
    actual: Resolution
    codec: Codec
    warning: str = ""
    use_full_screen: bool = False
    use_original_page_size: bool = False
    should_rotate_book: bool = False

    @property
    def was_clamped(self) -> bool:
        return self.actual != self.desired


def aspect_ratio_label(width: int, height: int) -> str:
    """
    해상도의 화면비 라벨을 계산합니다.

    표준 화면비 표와 ±5% 이내로 일치하면 가장 가까운 라벨을,
    그렇지 않으면 "1.85:1" / "1:2.4" 형식(소수점 최대 2자리)을 반환합니다.

    파라미터:
        width: 가로 픽셀 수 (양수)
        height: 세로 픽셀 수 (양수)

    반환값:
        str: 화면비 라벨

    예외:
        ValueError: 가로 또는 세로가 0 이하일 때
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"해상도는 양수여야 합니다: {width}x{height}")

    ratio = width / height
    best_label = ""
    best_error = ASPECT_RATIO_TOLERANCE
    for label, canonical in CANONICAL_ASPECT_RATIOS:
        relative_error = abs(ratio / canonical - 1.0)
        if relative_error <= best_error:
            best_label = label
            best_error = relative_error

    if best_label:
        return best_label

    if ratio >= 1.0:
        return f"{_format_ratio(ratio)}:1"
    return f"1:{_format_ratio(height / width)}"


def _format_ratio(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text
