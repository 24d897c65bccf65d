"""
캡처 세션 상태 머신 모듈입니다.

역할:
- 한 번에 하나의 캡처 세션만 소유하는 asyncio 액터
- 모든 상태 전이를 asyncio.Lock으로 직렬화
- 녹화 시작: 해상도 결정 -> 캡처 프로세스 시작 -> 시작 확인 후 녹화 시작 시각 기록
- 완료 보고: 정상 종료 요청 -> 제한 시간 대기 -> 원본 검증 -> 병합 -> 결과 검증
- 병합 중 저장 요청은 보관했다가 READY 도달 즉시 처리
- 녹화/종료 중 취소: 서브프로세스 강제 종료, 임시 파일 삭제, 슬롯 해제
- 상태 전이마다 구독자에게 통보 (API WebSocket 스트림 등)

상태 흐름:
    IDLE -> RECORDING -> STOPPING -> MERGING -> READY -> SAVED
                    \\-> ABORTED  \\-> FAILED

사용 예시:
    >>> controller = SessionController(config)
    >>> await controller.start(CaptureRequest("facebook", True, ScreenBounds(1920, 1080), window_title="Rec"))
    >>> await controller.report_completion(sound_log_json)
    >>> session = await controller.wait_until_settled()
    >>> await controller.save("/home/user/book.mp4")
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Callable, Optional

from avpublish.config.schema import AppConfig
from avpublish.errors import (
    CaptureError,
    CaptureFailedError,
    InvalidTransitionError,
    MergeFailedError,
    SessionBusyError,
)
from avpublish.logging import StructuredLogger
from avpublish.merge.planner import MergePlanner
from avpublish.profile.resolver import resolve
from avpublish.session import CaptureRequest, CaptureSession, CaptureState
from avpublish.timeline.recorder import SoundLogPayload, TimelineRecorder
from avpublish.transcoder.driver import TranscoderDriver, TranscoderHandle
from avpublish.transcoder.progress import MergeProgressReporter
from avpublish.transcoder.recipes import build_capture_recipe

logger = logging.getLogger(__name__)

# 상태 전이 구독 콜백 타입: (세션) -> None
StateListener = Callable[[CaptureSession], None]


class SessionController:
    """
    캡처 세션의 수명 주기를 관리하는 단일 소유자입니다.

    역할:
    - 세션 슬롯 관리 (동시에 하나)
    - 상태 전이 직렬화 및 구독자 통보
    - 캡처/병합 서브프로세스 감독
    - 보류 중인 저장 요청 처리

    전역 상태를 쓰지 않으므로 필요한 곳(API, CLI)에 인스턴스를 직접 전달합니다.
    """

    def __init__(
        self,
        config: AppConfig,
        driver: Optional[TranscoderDriver] = None,
        recorder: Optional[TimelineRecorder] = None,
        planner: Optional[MergePlanner] = None,
    ) -> None:
        self._config = config
        self._driver = driver or TranscoderDriver(config)
        self._recorder = recorder or TimelineRecorder(config)
        self._planner = planner or MergePlanner(config)

        # 모든 상태 전이를 직렬화하는 락
        self._lock = asyncio.Lock()
        # 현재 세션 (없으면 None)
        self._session: Optional[CaptureSession] = None
        # 캡처 서브프로세스 핸들
        self._capture_handle: Optional[TranscoderHandle] = None
        # 병합 서브프로세스 핸들 (실행 중일 때만)
        self._merge_handle: Optional[TranscoderHandle] = None
        # 완료 보고 이후의 처리 태스크
        self._processing_task: Optional[asyncio.Task] = None
        # READY 도달 시 처리할 저장 요청 (목적지, 결과 Future)
        self._pending_save: Optional[tuple[str, asyncio.Future]] = None
        # 상태 전이 구독자
        self._listeners: list[StateListener] = []

        logger.debug("SessionController 인스턴스 생성 완료")

    @property
    def session(self) -> Optional[CaptureSession]:
        """현재 세션 (없으면 None)."""
        return self._session

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    def subscribe(self, listener: StateListener) -> None:
        """상태 전이마다 호출될 콜백을 등록합니다."""
        self._listeners.append(listener)
        logger.debug(f"상태 구독자 등록 (총 {len(self._listeners)}개)")

    def unsubscribe(self, listener: StateListener) -> None:
        """등록된 콜백을 제거합니다."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            logger.warning("제거할 상태 구독자를 찾을 수 없습니다")

    async def start(self, request: CaptureRequest) -> CaptureSession:
        """
        새 캡처 세션을 시작합니다 (IDLE -> RECORDING).

        이전 세션이 종료 상태면 정리하고 교체합니다.

        파라미터:
            request: 녹화 시작 요청

        반환값:
            CaptureSession: RECORDING 상태의 새 세션

        예외:
            SessionBusyError: 진행 중인 세션이 있을 때
            TranscoderNotFoundError: 트랜스코더를 실행할 수 없을 때 (세션은 FAILED)
            ValueError: 캡처 대상이나 화면 크기가 잘못됐을 때
        """
        async with self._lock:
            previous = self._session
            if previous is not None and not previous.is_terminal:
                error_message = (
                    f"진행 중인 캡처 세션이 있습니다: {previous.session_id} "
                    f"(state={previous.state.value})"
                )
                logger.warning(error_message)
                raise SessionBusyError(error_message)
            if previous is not None:
                self._discard(previous)

            resolved = resolve(
                request.profile,
                request.is_landscape,
                request.screen,
                is_square=request.is_square,
                chrome_width=self._config.capture.chrome_width_px,
                chrome_height=self._config.capture.chrome_height_px,
                rotate_portrait_h263=self._config.capture.rotate_portrait_h263,
            )

            session_id = uuid.uuid4().hex[:8]
            work_dir = tempfile.mkdtemp(
                prefix=f"avpublish_{session_id}_",
                dir=self._config.system.temp_dir or None,
            )
            session = CaptureSession(
                session_id=session_id,
                request=request,
                resolved=resolved,
                work_dir=work_dir,
            )
            self._session = session
            self._pending_save = None
            StructuredLogger.bind_capture_session(session_id)
            logger.info(
                f"캡처 세션 생성: profile={resolved.profile}, codec={resolved.codec.name}, "
                f"desired={resolved.desired}, actual={resolved.actual}, work_dir={work_dir}"
            )

            if resolved.codec.has_video:
                raw_path = str(Path(work_dir) / f"capture{resolved.codec.extension}")
                session.raw_path = raw_path
                try:
                    recipe = build_capture_recipe(
                        self._config,
                        resolved,
                        raw_path,
                        window_title=request.window_title,
                        region=request.region,
                        rotate=request.rotate or resolved.should_rotate_book,
                    )
                    self._capture_handle = await self._driver.start(recipe)
                except (CaptureError, ValueError) as exc:
                    self._fail(session, f"캡처를 시작할 수 없습니다: {exc}")
                    raise
            else:
                logger.info("오디오 전용 코덱: 화면 캡처 없이 타임라인만 기록")

            # 서브프로세스 시작이 확인된 뒤에만 시작 시각 기록
            session.session_start = self._recorder.begin()
            self._transition(session, CaptureState.RECORDING)
            return session

    async def report_completion(self, sound_log: SoundLogPayload) -> CaptureSession:
        """
        프레젠테이션 계층의 재생 완료 보고를 받습니다 (RECORDING -> STOPPING).

        캡처 종료/검증/병합은 백그라운드 태스크에서 진행되며
        wait_until_settled()로 완료를 기다릴 수 있습니다.

        파라미터:
            sound_log: 사운드 로그 페이로드 (JSON 또는 항목 목록)

        반환값:
            CaptureSession: STOPPING 상태의 세션

        예외:
            InvalidTransitionError: RECORDING 상태가 아닐 때
            SoundLogFormatError: 페이로드 형식 오류 (세션은 캡처 종료 후 FAILED)
            TimingDefectError: 음수 오프셋 (세션은 캡처 종료 후 FAILED)
        """
        async with self._lock:
            session = self._require(CaptureState.RECORDING)
            session.recorded_duration = self._recorder.now() - session.session_start
            self._transition(session, CaptureState.STOPPING)

            try:
                session.sound_log = self._recorder.to_offsets(session.session_start, sound_log)
            except CaptureError as exc:
                self._processing_task = asyncio.create_task(
                    self._stop_and_fail(session, exc),
                    name=f"capture-fail-{session.session_id}",
                )
                raise

            self._processing_task = asyncio.create_task(
                self._process(session),
                name=f"capture-process-{session.session_id}",
            )
            return session

    async def wait_until_settled(self) -> Optional[CaptureSession]:
        """
        완료 보고 이후 처리(종료/병합/저장)가 끝날 때까지 기다립니다.

        반환값:
            Optional[CaptureSession]: 현재 세션 (없으면 None)
        """
        task = self._processing_task
        if task is not None:
            await asyncio.wait({task})
        return self._session

    async def request_save(self, destination: str) -> asyncio.Future:
        """
        최종 산출물 저장을 요청합니다.

        READY/SAVED면 즉시 복사하고, STOPPING/MERGING처럼 아직 준비 전이면
        요청을 보관했다가 READY에 도달하는 순간 처리합니다.
        반환된 Future는 저장 경로(저장할 것이 없으면 None)로 완료되거나,
        세션이 실패하면 그 에러로 완료됩니다.

        예외:
            InvalidTransitionError: 세션이 없거나 FAILED/ABORTED일 때
        """
        loop = asyncio.get_running_loop()
        async with self._lock:
            session = self._session
            if session is None:
                raise InvalidTransitionError("저장할 캡처 세션이 없습니다")

            if session.state in (CaptureState.READY, CaptureState.SAVED):
                future: asyncio.Future = loop.create_future()
                await self._fulfil_save(session, destination, future)
                return future

            if session.state in (CaptureState.RECORDING, CaptureState.STOPPING, CaptureState.MERGING):
                if self._pending_save is not None:
                    _, future = self._pending_save
                    logger.info(f"보류 중인 저장 요청의 목적지 변경: {destination}")
                else:
                    future = loop.create_future()
                    logger.info(
                        f"세션이 아직 준비되지 않아 저장 요청 보류: "
                        f"state={session.state.value}, destination={destination}"
                    )
                self._pending_save = (destination, future)
                return future

            error_message = f"현재 상태에서는 저장할 수 없습니다: state={session.state.value}"
            logger.warning(error_message)
            raise InvalidTransitionError(error_message)

    async def save(self, destination: str) -> Optional[str]:
        """저장을 요청하고 완료될 때까지 기다립니다. 저장할 것이 없으면 None."""
        future = await self.request_save(destination)
        return await future

    async def abort(self) -> CaptureSession:
        """
        녹화/종료 중인 세션을 취소합니다 (RECORDING | STOPPING -> ABORTED).

        실행 중인 서브프로세스를 강제 종료하고 임시 파일을 지운 뒤 슬롯을 해제합니다.

        예외:
            InvalidTransitionError: RECORDING/STOPPING 상태가 아닐 때
        """
        async with self._lock:
            session = self._require(CaptureState.RECORDING, CaptureState.STOPPING)
            self._transition(session, CaptureState.ABORTED)
            await self._terminate_processes()
            self._reject_pending_save(InvalidTransitionError("세션이 취소되어 저장하지 않았습니다"))
            self._remove_work_dir(session)
            logger.info(f"캡처 세션 취소 완료: {session.session_id}")
            return session

    async def cleanup(self) -> None:
        """
        종료 상태 세션의 임시 파일을 지우고 슬롯을 비웁니다.

        예외:
            InvalidTransitionError: 세션이 아직 진행 중일 때
        """
        async with self._lock:
            session = self._session
            if session is None:
                return
            if not session.is_terminal:
                raise InvalidTransitionError(
                    f"진행 중인 세션은 정리할 수 없습니다: state={session.state.value}"
                )
            self._discard(session)
            self._session = None

    async def shutdown(self) -> None:
        """프로세스 종료 시 호출: 상태와 무관하게 서브프로세스를 정리합니다."""
        async with self._lock:
            session = self._session
            await self._terminate_processes()
            if session is not None and not session.is_terminal:
                self._transition(session, CaptureState.ABORTED)
                self._reject_pending_save(InvalidTransitionError("종료 중이라 저장하지 않았습니다"))
                self._remove_work_dir(session)
        logger.info("SessionController 종료 완료")

    # =========================================================================
    # 내부 처리 흐름
    # =========================================================================

    async def _process(self, session: CaptureSession) -> None:
        """STOPPING 이후 흐름: 캡처 종료 -> 검증 -> (병합) -> READY/FAILED."""
        try:
            if session.codec.has_video:
                await self._stop_capture(session)
                self._validate_output(
                    session.raw_path, session.diagnostics, "화면 캡처 결과가 없거나 너무 작습니다",
                    CaptureFailedError,
                )

            if not session.sound_log:
                await self._finish_without_merge(session)
                return

            async with self._lock:
                if session.state is not CaptureState.STOPPING:
                    return
                self._transition(session, CaptureState.MERGING)

            final_path = str(Path(session.work_dir) / f"final{session.codec.extension}")
            await self._merge(session, final_path)

            async with self._lock:
                if session.state is not CaptureState.MERGING:
                    return
                session.final_path = final_path
                await self._become_ready(session)

        except CaptureError as exc:
            async with self._lock:
                if not session.is_terminal:
                    self._fail(session, str(exc), getattr(exc, "diagnostics", ""))
        except asyncio.CancelledError:
            logger.info(f"세션 처리 태스크 취소: {session.session_id}")
            raise
        except Exception as exc:
            logger.error(f"세션 처리 중 예상치 못한 에러: {exc}", exc_info=True)
            async with self._lock:
                if not session.is_terminal:
                    self._fail(session, f"예상치 못한 에러: {exc}")

    async def _stop_and_fail(self, session: CaptureSession, error: CaptureError) -> None:
        """잘못된 사운드 로그로 실패할 때도 캡처 프로세스는 정상 종료시킵니다."""
        try:
            if self._capture_handle is not None:
                await self._stop_capture(session)
        except CaptureError as stop_error:
            logger.warning(f"실패 처리 중 캡처 종료 에러: {stop_error}")
        async with self._lock:
            if not session.is_terminal:
                self._fail(session, str(error))

    async def _stop_capture(self, session: CaptureSession) -> None:
        """캡처 프로세스에 정상 종료를 요청하고 제한 시간 안에 종료를 기다립니다."""
        handle = self._capture_handle
        if handle is None:
            raise CaptureFailedError("캡처 프로세스가 없습니다")

        timeout = self._config.transcoder.stop_timeout_sec
        await self._driver.request_graceful_stop(handle)
        try:
            exit_code = await self._driver.wait(handle, timeout=timeout)
        finally:
            session.diagnostics = self._driver.diagnostics(handle)
            self._capture_handle = None
        if exit_code != 0:
            logger.warning(f"캡처 프로세스 비정상 종료 코드: {exit_code} (출력 파일로 판정)")

    async def _finish_without_merge(self, session: CaptureSession) -> None:
        """사운드가 없을 때: 비디오면 원본을 그대로 최종본으로, 오디오 전용이면 산출물 없음."""
        async with self._lock:
            if session.state is not CaptureState.STOPPING:
                return
            if session.codec.has_video:
                final_path = str(Path(session.work_dir) / f"final{session.codec.extension}")
                await asyncio.to_thread(shutil.copyfile, session.raw_path, final_path)
                session.final_path = final_path
                logger.info("사운드 이벤트 없음: 원본 캡처를 그대로 최종본으로 사용")
            else:
                logger.info("사운드 이벤트 없음 (오디오 전용): 만들 산출물이 없습니다")
            await self._become_ready(session)

    async def _merge(self, session: CaptureSession, final_path: str) -> None:
        """병합 배치를 순서대로 실행하고 각 결과를 검증합니다."""
        recipes = self._planner.plan_batches(
            session.sound_log,
            session.codec.has_video,
            session.codec,
            video_path=session.raw_path,
            output_path=final_path,
            work_dir=session.work_dir,
        )
        duration_sec = session.recorded_duration.total_seconds() if session.recorded_duration else 0.0

        def _on_progress(message: str) -> None:
            session.progress = message

        reporter = MergeProgressReporter(
            total_iterations=len(recipes),
            total_duration_sec=duration_sec,
            framerate=self._config.capture.framerate,
            interval_sec=self._config.merge.progress_interval_sec,
            on_message=_on_progress,
        )
        merge_timeout = self._config.transcoder.merge_timeout_sec or None

        await reporter.start()
        try:
            for pass_number, merge_recipe in enumerate(recipes, start=1):
                recipe = self._planner.to_transcoder_recipe(
                    merge_recipe,
                    session.work_dir,
                    pass_number=pass_number,
                    total_passes=len(recipes),
                )
                handle = await self._driver.start(recipe)
                self._merge_handle = handle
                reporter.set_current(recipe.progress_path)
                try:
                    exit_code = await self._driver.wait(handle, timeout=merge_timeout)
                finally:
                    session.diagnostics = self._driver.diagnostics(handle)
                    self._merge_handle = None
                    self._remove_extra_files(recipe.extra_files)

                if exit_code != 0 or not self._output_is_valid(merge_recipe.output_path):
                    error_message = f"오디오/비디오 병합 실패 (pass {pass_number}/{len(recipes)}, rc={exit_code})"
                    logger.error(
                        f"{error_message}\n명령: {' '.join(recipe.args)}\n"
                        f"필터 그래프: {merge_recipe.filter_graph}\n진단:\n{session.diagnostics}"
                    )
                    raise MergeFailedError(
                        error_message,
                        diagnostics=session.diagnostics,
                        exit_code=exit_code,
                        filter_graph=merge_recipe.filter_graph,
                    )
                reporter.iteration_done()
        finally:
            await reporter.stop()

    async def _become_ready(self, session: CaptureSession) -> None:
        """READY로 전이하고 보류 중인 저장 요청이 있으면 바로 처리합니다. 락 안에서 호출."""
        self._transition(session, CaptureState.READY)
        if self._pending_save is not None:
            destination, future = self._pending_save
            self._pending_save = None
            logger.info(f"보류 중이던 저장 요청 처리: {destination}")
            await self._fulfil_save(session, destination, future)

    async def _fulfil_save(self, session: CaptureSession, destination: str, future: asyncio.Future) -> None:
        """최종 산출물을 목적지로 복사하고 Future를 완료합니다. 락 안에서 호출."""
        if future.done():
            return
        if session.final_path is None:
            logger.info("저장할 산출물이 없습니다")
            future.set_result(None)
            return
        try:
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, session.final_path, destination)
        except OSError as exc:
            error_message = f"최종 산출물 저장 실패: {destination} ({exc})"
            logger.error(error_message, exc_info=True)
            future.set_exception(exc)
            return
        session.saved_to = destination
        if session.state is not CaptureState.SAVED:
            self._transition(session, CaptureState.SAVED)
        logger.info(f"최종 산출물 저장 완료: {destination}")
        future.set_result(destination)

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    def _require(self, *states: CaptureState) -> CaptureSession:
        session = self._session
        if session is None or session.state not in states:
            current = session.state.value if session else "none"
            allowed = ", ".join(state.value for state in states)
            error_message = f"허용되지 않는 요청입니다: 현재 상태={current}, 필요 상태={allowed}"
            logger.warning(error_message)
            raise InvalidTransitionError(error_message)
        return session

    def _transition(self, session: CaptureSession, new_state: CaptureState) -> None:
        previous = session.state
        session.state = new_state
        logger.info(f"세션 상태 전이: {previous.value} -> {new_state.value} ({session.session_id})")
        self._notify_listeners(session)

    def _fail(self, session: CaptureSession, message: str, diagnostics: str = "") -> None:
        """FAILED로 전이하고 임시 파일을 지웁니다. 진단 텍스트는 세션에 보존합니다."""
        if diagnostics:
            session.diagnostics = diagnostics
        session.error = message
        logger.error(f"캡처 세션 실패: {message}\n진단:\n{session.diagnostics}")
        self._transition(session, CaptureState.FAILED)
        self._reject_pending_save(CaptureFailedError(message, diagnostics=session.diagnostics))
        self._remove_work_dir(session)

    def _validate_output(
        self,
        path: Optional[str],
        diagnostics: str,
        message: str,
        error_type: type[CaptureError],
    ) -> None:
        if not self._output_is_valid(path):
            raise error_type(f"{message}: {path}", diagnostics=diagnostics)

    def _output_is_valid(self, path: Optional[str]) -> bool:
        if not path:
            return False
        output = Path(path)
        return output.is_file() and output.stat().st_size >= self._config.transcoder.min_output_bytes

    def _reject_pending_save(self, error: Exception) -> None:
        if self._pending_save is None:
            return
        _, future = self._pending_save
        self._pending_save = None
        if not future.done():
            future.set_exception(error)

    async def _terminate_processes(self) -> None:
        """실행 중인 서브프로세스를 강제 종료하고 처리 태스크를 취소합니다."""
        for handle in (self._capture_handle, self._merge_handle):
            if handle is not None:
                await self._driver.request_graceful_stop(handle)
                await self._driver.kill(handle)
        self._capture_handle = None
        self._merge_handle = None

        task = self._processing_task
        self._processing_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    def _remove_extra_files(self, paths: list[str]) -> None:
        """배치 실행에 딸린 필터 스크립트/진행률 파일을 지웁니다."""
        for path in paths:
            Path(path).unlink(missing_ok=True)

    def _remove_work_dir(self, session: CaptureSession) -> None:
        shutil.rmtree(session.work_dir, ignore_errors=True)
        session.final_path = None
        logger.debug(f"임시 디렉토리 삭제: {session.work_dir}")

    def _discard(self, session: CaptureSession) -> None:
        self._remove_work_dir(session)
        StructuredLogger.bind_capture_session(None)
        logger.info(f"이전 캡처 세션 정리: {session.session_id} (state={session.state.value})")

    def _notify_listeners(self, session: CaptureSession) -> None:
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception as callback_error:
                # 개별 구독자 에러가 상태 전이를 막지 않도록 격리
                logger.error(f"상태 구독자 실행 중 에러: {callback_error}", exc_info=True)
