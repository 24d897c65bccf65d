"""
출력 해상도/포맷 결정 모듈입니다.

역할:
- 게시 대상 프로필과 콘텐츠 방향(가로/세로/정사각형)으로 목표 해상도 결정
- 화면 크기(창 외곽 여유 제외)에 맞게 짝수 픽셀로 비율 축소
- youtube 프로필은 표준 해상도 사다리에서 화면에 맞는 가장 큰 값 선택
- 책과 화면의 방향이 달라 축소되면 책을 90도 돌려서 녹화 (feature, mp3 제외)
- 화면 원본 크기로는 목표 해상도가 들어가면 전체 화면 녹화로 대체
- 축소가 남으면 목표/실제 해상도를 포함한 경고 문자열 생성

부작용이 없는 순수 함수이므로 같은 입력에 항상 같은 결과를 반환합니다.

사용 예시:
    >>> fmt = resolve("facebook", True, ScreenBounds(1920, 1080))
    >>> print(fmt.actual, fmt.codec)
    1280 x 720 Codec.H264
"""

from __future__ import annotations

import logging
from typing import Optional

from avpublish.profile import (
    Codec,
    OutputProfile,
    Resolution,
    ResolvedFormat,
    ScreenBounds,
)

logger = logging.getLogger(__name__)

# 프로필 이름이 없거나 알 수 없을 때 사용하는 기본 프로필
DEFAULT_PROFILE = "facebook"

# youtube 표준 해상도 사다리 (1080p ~ 144p, 가로 기준, 높은 것부터)
YOUTUBE_LADDER: tuple[Resolution, ...] = (
    Resolution(1920, 1080),
    Resolution(1280, 720),
    Resolution(854, 480),
    Resolution(640, 360),
    Resolution(426, 240),
    Resolution(256, 144),
)

PROFILES: dict[str, OutputProfile] = {
    # 세로 4:5, 정사각형 책은 원래 페이지 크기로 720x720
    "facebook": OutputProfile(
        name="facebook",
        codec=Codec.H264,
        landscape=Resolution(1280, 720),
        portrait=Resolution(720, 900),
        square=Resolution(720, 720),
    ),
    # H.263 1차 규격은 CIF(352x288)만 허용, 가로로 고정되므로 책을 돌리지 않음
    "feature": OutputProfile(
        name="feature",
        codec=Codec.H263,
        landscape=Resolution(352, 288),
        portrait=Resolution(352, 288),
        rotated_portrait=Resolution(288, 352),
        can_rotate_book=False,
    ),
    "youtube": OutputProfile(
        name="youtube",
        codec=Codec.H264,
        landscape=Resolution(1920, 1080),
        portrait=Resolution(1080, 1920),
        ladder=YOUTUBE_LADDER,
    ),
    # 오디오 전용이지만 프레젠테이션 창 크기는 필요
    "mp3": OutputProfile(
        name="mp3",
        codec=Codec.MP3,
        landscape=Resolution(1280, 720),
        portrait=Resolution(720, 1280),
        can_rotate_book=False,
    ),
}

# 화면이 목표 해상도보다 작을 때 사용자에게 보여줄 경고 문구
SCREEN_TOO_SMALL_WARNING = (
    "Ideally, this video target should be {desired}. "
    "However that is larger than your screen, so the video will be {actual}."
)

# 짝수 반올림 후 허용되는 최소 한 변 길이
_MIN_DIMENSION = 2


def get_profile(name: Optional[str]) -> OutputProfile:
    """
    이름으로 출력 프로필을 조회합니다.

    알 수 없는 이름이면 경고를 남기고 기본 프로필(facebook)을 반환합니다.
    """
    profile = PROFILES.get(name or DEFAULT_PROFILE)
    if profile is None:
        logger.warning(f"알 수 없는 프로필 '{name}', 기본 프로필 '{DEFAULT_PROFILE}' 사용")
        profile = PROFILES[DEFAULT_PROFILE]
    return profile


def desired_resolution(
    profile: OutputProfile,
    is_landscape: bool,
    is_square: bool = False,
    rotate_portrait_h263: bool = False,
) -> Resolution:
    """
    프로필과 콘텐츠 방향으로 목표 해상도를 결정합니다.

    정사각형 콘텐츠는 가로로 취급하되, 정사각형 전용 해상도를 가진 프로필은
    세로 구성(원래 페이지 크기)을 사용합니다.
    세로 영상 회전 설정이 켜져 있으면 세로 콘텐츠는 회전용 해상도로 녹화하고
    캡처 단계에서 가로로 돌립니다.
    """
    if is_square and profile.square is not None:
        return profile.square
    if is_landscape or is_square:
        return profile.landscape
    if rotate_portrait_h263 and profile.rotated_portrait is not None:
        return profile.rotated_portrait
    return profile.portrait


def resolve(
    profile_name: Optional[str],
    is_landscape: bool,
    screen_bounds: ScreenBounds,
    *,
    is_square: bool = False,
    chrome_width: int = 16,
    chrome_height: int = 100,
    rotate_portrait_h263: bool = False,
) -> ResolvedFormat:
    """
    게시 대상과 화면 크기로 녹화 해상도와 코덱을 결정합니다.

    처리 순서:
    1. 프로필의 목표 해상도 조회 (방향/정사각형/세로 회전 설정 반영)
    2. 화면 크기에서 창 외곽 여유를 뺀 가용 영역 계산
    3. youtube는 사다리, 그 외는 짝수 비율 축소로 가용 영역에 맞춤
    4. 책과 화면의 방향이 달라 축소됐으면 책을 돌려 뒤집은 가용 영역에 다시 맞춤
    5. 축소됐지만 원본 화면에는 목표 해상도가 들어가면 전체 화면 녹화
       (책을 돌린 경우 화면 방향을 뒤집어서도 비교)
    6. 축소가 남으면 경고 문자열 생성

    파라미터:
        profile_name: 프로필 이름 (None/알 수 없으면 facebook)
        is_landscape: 콘텐츠가 가로 방향인지 여부
        screen_bounds: 녹화 창이 놓일 화면 영역
        is_square: 콘텐츠가 정사각형인지 여부
        chrome_width: 창 외곽 가로 여유 (픽셀)
        chrome_height: 창 외곽 세로 여유 (픽셀)
        rotate_portrait_h263: 세로 H.263 영상을 회전해서 만들지 여부

    반환값:
        ResolvedFormat: 목표/실제 해상도, 코덱, 경고, 책 회전 여부

    예외:
        ValueError: 화면 크기가 최소 크기(2x2)보다 작을 때
    """
    if screen_bounds.width < _MIN_DIMENSION or screen_bounds.height < _MIN_DIMENSION:
        raise ValueError(
            f"화면 크기가 너무 작습니다: {screen_bounds.width}x{screen_bounds.height}"
        )

    profile = get_profile(profile_name)
    desired = desired_resolution(profile, is_landscape, is_square, rotate_portrait_h263)
    use_original_page_size = is_square and profile.square is not None

    available = Resolution(
        max(screen_bounds.width - chrome_width, _MIN_DIMENSION),
        max(screen_bounds.height - chrome_height, _MIN_DIMENSION),
    )

    actual = _best_resolution(profile, desired, available)
    should_rotate_book = should_rotate_book_for_recording(profile, desired, actual, available)
    if should_rotate_book:
        actual = _best_resolution(profile, desired, available.inverse())
        logger.info(
            f"책 방향과 화면 방향이 달라 책을 돌려서 녹화: desired={desired}, actual={actual}"
        )

    if actual == desired:
        return ResolvedFormat(
            profile=profile.name,
            desired=desired,
            actual=actual,
            codec=profile.codec,
            use_original_page_size=use_original_page_size,
            should_rotate_book=should_rotate_book,
        )

    screen = Resolution(screen_bounds.width, screen_bounds.height)
    fits_screen = desired.fits_within(screen.width, screen.height) or (
        should_rotate_book and desired.inverse().fits_within(screen.width, screen.height)
    )
    if fits_screen:
        # 창 외곽 때문에만 모자라면 테두리 없는 전체 화면으로 목표 해상도 녹화
        logger.info(
            f"창 외곽 여유 때문에 {desired}가 들어가지 않아 전체 화면 녹화 사용 "
            f"(화면: {screen_bounds.width}x{screen_bounds.height})"
        )
        return ResolvedFormat(
            profile=profile.name,
            desired=desired,
            actual=desired,
            codec=profile.codec,
            use_full_screen=True,
            use_original_page_size=use_original_page_size,
            should_rotate_book=should_rotate_book,
        )

    warning = SCREEN_TOO_SMALL_WARNING.format(desired=desired, actual=actual)
    logger.warning(
        f"화면이 목표 해상도보다 작음: profile={profile.name}, "
        f"desired={desired}, actual={actual}"
    )
    return ResolvedFormat(
        profile=profile.name,
        desired=desired,
        actual=actual,
        codec=profile.codec,
        warning=warning,
        use_original_page_size=use_original_page_size,
        should_rotate_book=should_rotate_book,
    )


def should_rotate_book_for_recording(
    profile: OutputProfile,
    desired: Resolution,
    actual: Resolution,
    available: Resolution,
) -> bool:
    """
    책을 90도 돌려서 녹화하면 목표 해상도에 더 가까워지는지 판단합니다.

    세로 책이 가로 화면에서, 또는 가로 책이 세로 화면에서 축소된 경우에만 돌립니다.
    feature(H.263, 가로 고정)와 mp3(오디오 전용)는 돌리지 않습니다.
    정사각형은 가로로 취급합니다.
    """
    if not profile.can_rotate_book:
        return False
    too_small = actual.width < desired.width or actual.height < desired.height
    if not too_small:
        return False
    book_landscape = desired.width >= desired.height
    screen_landscape = available.width > available.height
    return book_landscape != screen_landscape


def _best_resolution(profile: OutputProfile, desired: Resolution, available: Resolution) -> Resolution:
    if profile.ladder is not None:
        return best_ladder_resolution(profile.ladder, available, desired.width >= desired.height)
    return best_arbitrary_resolution(desired, available)


def best_arbitrary_resolution(desired: Resolution, available: Resolution) -> Resolution:
    """
    목표 화면비를 유지하며 가용 영역에 들어가는 가장 큰 해상도를 구합니다.

    세로가 넘치면 세로를 먼저 맞추고, 그래도 가로가 넘치면 가로를 맞춥니다.
    모든 값은 짝수로 내림합니다 (트랜스코더가 홀수 크기를 거부).
    """
    width, height = desired.width, desired.height

    if height > available.height:
        height = _floor_even(available.height)
        width = _floor_even(height * desired.width // desired.height)

    if width > available.width:
        width = _floor_even(available.width)
        height = _floor_even(width * desired.height // desired.width)

    return Resolution(width, height)


def best_ladder_resolution(
    ladder: tuple[Resolution, ...],
    available: Resolution,
    landscape: bool,
) -> Resolution:
    """
    표준 해상도 사다리에서 가용 영역에 들어가는 가장 큰 값을 고릅니다.

    사다리는 가로 기준으로 정의되며 세로 콘텐츠는 뒤집어서 비교합니다.
    어느 것도 들어가지 않으면 가용 영역을 짝수로 내림해 사용합니다.
    """
    for rung in ladder:
        candidate = rung if landscape else rung.inverse()
        if candidate.fits_within(available.width, available.height):
            return candidate

    logger.debug(f"사다리에 맞는 해상도 없음, 가용 영역 사용: {available}")
    return Resolution(_floor_even(available.width), _floor_even(available.height))


def _floor_even(value: int) -> int:
    return max(value // 2 * 2, _MIN_DIMENSION)
