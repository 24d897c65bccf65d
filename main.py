"""
avpublish 실행 진입점

역할:
- 설정 로드 (config.yaml 또는 기본값 + AVP_ 환경변수) 및 구조화 로깅 초기화
- 하위 명령별 실행
    profile: 게시 대상/화면 크기로 결정되는 녹화 해상도와 경고 출력
    record : 창(또는 화면 영역)을 녹화하고 사운드 로그와 병합해 저장
    merge  : 이미 녹화된 원본 캡처와 사운드 로그를 다시 병합
    serve  : 녹화 제어 API 서버 실행
- SIGINT/SIGTERM 핸들러로 진행 중인 서브프로세스 정리

실행 예시:
    해상도 확인:
        python main.py profile --profile youtube --screen 1366x768

    60초 녹화 후 병합:
        python main.py record --profile facebook --screen 1920x1080 \\
            --window-title "Bloom Recording" --duration 60 \\
            --sound-log sound_log.json --output book.mp4

    API 서버:
        python main.py serve --port 8089
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import signal
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from avpublish.api.recording_api import RecordingApi
from avpublish.config.config_manager import ConfigLoadError, ConfigManager
from avpublish.config.schema import AppConfig
from avpublish.errors import CaptureError, MergeFailedError
from avpublish.logging import setup_logging
from avpublish.merge.planner import MergePlanner
from avpublish.profile import ScreenBounds
from avpublish.profile.resolver import PROFILES, get_profile, resolve
from avpublish.session import CaptureRequest, CaptureState
from avpublish.session.controller import SessionController
from avpublish.timeline.recorder import TimelineRecorder
from avpublish.transcoder.driver import TranscoderDriver

logger = logging.getLogger(__name__)

# "1920x1080" 또는 "1280x720+100+50" (너비x높이[+x+y])
_GEOMETRY_PATTERN = re.compile(r"^(\d+)x(\d+)(?:\+(-?\d+)\+(-?\d+))?$")


def _parse_geometry(text: str) -> ScreenBounds:
    """argparse type: "WxH[+X+Y]" 문자열을 ScreenBounds로 변환합니다."""
    match = _GEOMETRY_PATTERN.match(text.strip())
    if match is None:
        raise argparse.ArgumentTypeError(f"'WxH' 또는 'WxH+X+Y' 형식이어야 합니다: {text}")
    width, height, x, y = match.groups()
    return ScreenBounds(int(width), int(height), int(x or 0), int(y or 0))


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """커맨드라인 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="avpublish: 화면 녹화와 내레이션 오디오 동기화 병합 엔진"
    )
    parser.add_argument(
        "--config", default="config.yaml", help="설정 파일 경로 (없으면 기본값 사용)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_format_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--profile", default="facebook", choices=sorted(PROFILES), help="게시 대상 프로필"
        )
        sub.add_argument("--portrait", action="store_true", help="세로 방향 콘텐츠")
        sub.add_argument("--square", action="store_true", help="정사각형 콘텐츠")

    profile_cmd = subparsers.add_parser("profile", help="녹화 해상도 확인")
    add_format_args(profile_cmd)
    profile_cmd.add_argument("--screen", type=_parse_geometry, required=True, help="화면 크기 WxH")

    record_cmd = subparsers.add_parser("record", help="녹화 후 병합")
    add_format_args(record_cmd)
    record_cmd.add_argument("--screen", type=_parse_geometry, required=True, help="화면 크기 WxH")
    target = record_cmd.add_mutually_exclusive_group()
    target.add_argument("--window-title", help="캡처할 창 제목")
    target.add_argument("--region", type=_parse_geometry, help="캡처할 화면 영역 WxH+X+Y")
    record_cmd.add_argument("--rotate", action="store_true", help="회전된 책 녹화")
    record_cmd.add_argument(
        "--duration", type=float, default=0.0,
        help="녹화 시간 (초, 0이면 Ctrl+C까지)",
    )
    record_cmd.add_argument("--sound-log", help="사운드 로그 JSON 파일 (없으면 빈 로그)")
    record_cmd.add_argument("--output", required=True, help="최종 산출물 저장 경로")

    merge_cmd = subparsers.add_parser("merge", help="원본 캡처와 사운드 로그 재병합")
    merge_cmd.add_argument(
        "--profile", default="facebook", choices=sorted(PROFILES), help="게시 대상 프로필"
    )
    merge_cmd.add_argument("--video", help="원본 캡처 파일 (오디오 전용 프로필이면 생략)")
    merge_cmd.add_argument("--sound-log", required=True, help="사운드 로그 JSON 파일")
    merge_cmd.add_argument(
        "--session-start", required=True, type=datetime.fromisoformat,
        help="녹화 시작 시각 (ISO-8601)",
    )
    merge_cmd.add_argument("--output", required=True, help="병합 결과 저장 경로")

    serve_cmd = subparsers.add_parser("serve", help="녹화 제어 API 서버 실행")
    serve_cmd.add_argument("--host", help="바인드 주소 (설정 오버라이드)")
    serve_cmd.add_argument("--port", type=int, help="포트 (설정 오버라이드)")

    return parser.parse_args(argv)


def _load_config(path: str) -> AppConfig:
    """설정 파일이 있으면 로드하고, 없으면 기본값을 사용합니다."""
    manager = ConfigManager()
    if Path(path).exists():
        return manager.load(path)
    return manager.load_defaults()


# =============================================================================
# 하위 명령
# =============================================================================

def _run_profile(args: argparse.Namespace, config: AppConfig) -> int:
    """해상도 결정 결과를 출력합니다."""
    resolved = resolve(
        args.profile,
        not args.portrait,
        args.screen,
        is_square=args.square,
        chrome_width=config.capture.chrome_width_px,
        chrome_height=config.capture.chrome_height_px,
        rotate_portrait_h263=config.capture.rotate_portrait_h263,
    )
    print(f"profile : {resolved.profile} ({resolved.codec.name}, {resolved.codec.extension})")
    print(f"desired : {resolved.desired} ({resolved.desired.aspect_ratio})")
    print(f"actual  : {resolved.actual} ({resolved.actual.aspect_ratio})")
    if resolved.use_full_screen:
        print("mode    : full screen")
    if resolved.should_rotate_book:
        print("rotate  : book is recorded rotated 90 degrees")
    if resolved.warning:
        print(f"warning : {resolved.warning}")
    return 0


async def _run_record(args: argparse.Namespace, config: AppConfig, shutdown: asyncio.Event) -> int:
    """
    녹화 -> 완료 보고 -> 병합 -> 저장을 한 번 실행합니다.

    --duration이 0이면 첫 번째 종료 시그널(Ctrl+C)을 녹화 종료로 받아 병합/저장까지
    진행하고, 그 이후의 시그널은 취소로 처리합니다.
    --duration이 주어지면 녹화 중 시그널은 바로 취소입니다.
    """
    controller = SessionController(config)
    request = CaptureRequest(
        profile=args.profile,
        is_landscape=not args.portrait,
        screen=args.screen,
        is_square=args.square,
        window_title=args.window_title,
        region=args.region,
        rotate=args.rotate,
    )
    try:
        session = await controller.start(request)
        if session.resolved.warning:
            logger.warning(session.resolved.warning)

        if args.duration:
            # 녹화 시간 경과 또는 종료 시그널까지 대기
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=args.duration)
                logger.info("종료 시그널 수신: 녹화 취소")
                await controller.abort()
                return 130
            except asyncio.TimeoutError:
                logger.info(f"{args.duration}초 녹화 완료")
        else:
            logger.info("녹화 중: Ctrl+C로 녹화를 끝내고 병합합니다 (다시 누르면 취소)")
            await shutdown.wait()
            shutdown.clear()
            logger.info("녹화 종료 요청 수신")

        try:
            sound_log = Path(args.sound_log).read_bytes() if args.sound_log else b"[]"
        except OSError as exc:
            logger.error(f"사운드 로그를 읽을 수 없습니다: {exc}")
            await controller.abort()
            return 2

        await controller.report_completion(sound_log)
        if await _interrupted(controller.wait_until_settled(), shutdown):
            logger.info("종료 시그널 수신: 병합 취소")
            return 130

        session = controller.session
        if session.state is not CaptureState.READY:
            logger.error(f"녹화 실패: {session.error}")
            return 1

        saved_to = await controller.save(args.output)
        if saved_to is None:
            logger.info("저장할 산출물이 없습니다 (오디오 전용 + 빈 사운드 로그)")
        else:
            print(saved_to)
        return 0
    except CaptureError as exc:
        logger.error(f"녹화 실패: {exc}")
        return 1
    except ValueError as exc:
        logger.error(f"녹화를 시작할 수 없습니다: {exc}")
        return 2
    finally:
        await controller.shutdown()


async def _interrupted(awaitable, shutdown: asyncio.Event) -> bool:
    """awaitable이 끝나기 전에 종료 시그널이 오면 True를 반환합니다."""
    work = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(shutdown.wait())
    done, pending = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    if work in done:
        work.result()
        return False
    return True


async def _run_merge(args: argparse.Namespace, config: AppConfig) -> int:
    """녹화된 원본 캡처와 사운드 로그로 병합만 다시 실행합니다."""
    codec = get_profile(args.profile).codec
    if codec.has_video and not args.video:
        logger.error(f"{args.profile} 프로필은 --video가 필요합니다")
        return 2

    recorder = TimelineRecorder(config)
    planner = MergePlanner(config)
    driver = TranscoderDriver(config)

    session_start = args.session_start
    if session_start.tzinfo is None:
        session_start = session_start.astimezone()

    try:
        sound_log = Path(args.sound_log).read_bytes()
    except OSError as exc:
        logger.error(f"사운드 로그를 읽을 수 없습니다: {exc}")
        return 2

    try:
        items = recorder.to_offsets(session_start, sound_log)
        if not items:
            logger.error("사운드 로그가 비어 있어 병합할 것이 없습니다")
            return 1

        with tempfile.TemporaryDirectory(prefix="avpublish_merge_", dir=config.system.temp_dir or None) as work_dir:
            recipes = planner.plan_batches(
                items, codec.has_video, codec,
                video_path=args.video, output_path=args.output, work_dir=work_dir,
            )
            for pass_number, merge_recipe in enumerate(recipes, start=1):
                recipe = planner.to_transcoder_recipe(
                    merge_recipe, work_dir, pass_number=pass_number, total_passes=len(recipes),
                )
                exit_code, diagnostics = await driver.run(
                    recipe, timeout=config.transcoder.merge_timeout_sec or None,
                )
                output = Path(merge_recipe.output_path)
                if exit_code != 0 or not output.is_file() or output.stat().st_size < config.transcoder.min_output_bytes:
                    raise MergeFailedError(
                        f"병합 실패 (pass {pass_number}/{len(recipes)}, rc={exit_code})",
                        diagnostics=diagnostics,
                        exit_code=exit_code,
                        filter_graph=merge_recipe.filter_graph,
                    )
    except MergeFailedError as exc:
        logger.error(f"{exc}\n{exc.diagnostics}")
        return 1
    except CaptureError as exc:
        logger.error(f"병합 실패: {exc}")
        return 1

    print(args.output)
    return 0


async def _run_serve(args: argparse.Namespace, config: AppConfig, shutdown: asyncio.Event) -> int:
    """녹화 제어 API 서버를 종료 시그널까지 실행합니다."""
    controller = SessionController(config)
    api = RecordingApi(controller, config, host=args.host, port=args.port)
    await api.start()
    try:
        await shutdown.wait()
    finally:
        await api.stop()
        await controller.shutdown()
    return 0


# =============================================================================
# 진입점
# =============================================================================

async def _main(argv: Optional[list[str]] = None) -> int:
    """비동기 메인 함수입니다."""
    args = _parse_args(argv)

    try:
        config = _load_config(args.config)
    except ConfigLoadError as exc:
        print(f"설정 로드 실패: {exc}", file=sys.stderr)
        return 2

    setup_logging(config)
    logger.info(f"avpublish 시작: command={args.command}")

    if args.command == "profile":
        return _run_profile(args, config)
    if args.command == "merge":
        return await _run_merge(args, config)

    # SIGINT/SIGTERM 핸들러 등록 (asyncio-safe 방식)
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("종료 시그널 수신")
        shutdown.set()

    loop.add_signal_handler(signal.SIGINT, _signal_handler)
    loop.add_signal_handler(signal.SIGTERM, _signal_handler)

    if args.command == "record":
        return await _run_record(args, config, shutdown)
    return await _run_serve(args, config, shutdown)


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))
