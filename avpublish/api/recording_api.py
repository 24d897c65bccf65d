"""
녹화 제어 API 모듈입니다.

역할:
- FastAPI 기반으로 프레젠테이션 계층/호스트 UI가 캡처 세션 하나를 제어
- 세션 상태 전이를 WebSocket으로 실시간 푸시
- 엔진 에러를 HTTP 상태 코드로 변환 (busy/전이 오류 409, 형식/타이밍 오류 422,
  트랜스코더 없음 503)

엔드포인트:
    GET  /api/health               헬스체크
    GET  /api/status               현재 세션 스냅샷
    GET  /api/resolution           해상도 결정 결과 (경고 포함)
    POST /api/recording/start      녹화 시작
    POST /api/recording/sound-log  재생 완료 보고 + 사운드 로그
    POST /api/recording/save       최종 산출물 저장 (병합 중이면 보류)
    POST /api/recording/abort      녹화 취소
    POST /api/recording/cleanup    종료된 세션 정리
    WS   /ws/recording             상태 전이 스트림
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional, Set

import uvicorn
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from avpublish.config.schema import AppConfig
from avpublish.errors import (
    CaptureError,
    InvalidTransitionError,
    SessionBusyError,
    SoundLogFormatError,
    TimingDefectError,
    TranscoderNotFoundError,
)
from avpublish.profile import ScreenBounds
from avpublish.profile.resolver import resolve
from avpublish.session import CaptureRequest, CaptureSession
from avpublish.session.controller import SessionController

logger = logging.getLogger(__name__)


# =========================================================================
# 요청 본문 모델
# =========================================================================

class RegionBody(BaseModel):
    """캡처할 화면 영역."""
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    x: int = 0
    y: int = 0


class StartBody(BaseModel):
    """녹화 시작 요청 본문."""
    profile: str = "facebook"
    landscape: bool = True
    square: bool = False
    screen_width: int = Field(gt=0)
    screen_height: int = Field(gt=0)
    screen_x: int = 0
    screen_y: int = 0
    window_title: Optional[str] = None
    region: Optional[RegionBody] = None
    rotate: bool = False


class SaveBody(BaseModel):
    """저장 요청 본문."""
    destination: str = Field(min_length=1)


# 엔진 에러 -> HTTP 상태 코드
_ERROR_STATUS: list[tuple[type[CaptureError], int]] = [
    (SessionBusyError, 409),
    (InvalidTransitionError, 409),
    (TimingDefectError, 422),
    (SoundLogFormatError, 422),
    (TranscoderNotFoundError, 503),
]


def status_code_for(error: CaptureError) -> int:
    """엔진 에러에 대응하는 HTTP 상태 코드 (분류에 없으면 500)."""
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def _error_response(error: Exception) -> JSONResponse:
    status_code = status_code_for(error) if isinstance(error, CaptureError) else 422
    return JSONResponse(
        status_code=status_code,
        content={"error": type(error).__name__, "message": str(error)},
    )


# =========================================================================
# RecordingApi 클래스
# =========================================================================

class RecordingApi:
    """
    FastAPI 기반 녹화 제어 API입니다.

    SessionController의 상태 전이를 구독해 연결된 WebSocket 클라이언트에게
    세션 스냅샷을 브로드캐스트합니다.

    사용 예시:
        >>> api = RecordingApi(controller, config)
        >>> await api.start()
        >>> ...
        >>> await api.stop()
    """

    def __init__(
        self,
        controller: SessionController,
        config: Optional[AppConfig] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        self._controller = controller
        self._config = config or AppConfig()
        self._host = host or self._config.api.host
        self._port = port or self._config.api.port
        self._clients: Set[WebSocket] = set()
        self._send_tasks: Set[asyncio.Task] = set()
        self._server_task: Optional[asyncio.Task] = None
        self._app: Optional[FastAPI] = None

        self._controller.subscribe(self._on_state_change)
        self._build_app()

    @property
    def app(self) -> FastAPI:
        return self._app

    def _build_app(self) -> None:
        """FastAPI 앱과 라우트를 구성합니다."""
        app = FastAPI(title="avpublish Recording API", docs_url=None, redoc_url=None)
        controller = self._controller
        config = self._config

        @app.get("/api/health")
        async def health():
            return JSONResponse(content={"status": "ok", "ts": time.time()})

        @app.get("/api/status")
        async def session_status():
            session = controller.session
            if session is None:
                return JSONResponse(content={"state": "idle", "session_id": None})
            return JSONResponse(content=session.to_dict())

        @app.get("/api/resolution")
        async def resolution(
            profile: str = "facebook",
            landscape: bool = True,
            square: bool = False,
            screen_width: int = Query(gt=0),
            screen_height: int = Query(gt=0),
        ):
            try:
                resolved = resolve(
                    profile,
                    landscape,
                    ScreenBounds(screen_width, screen_height),
                    is_square=square,
                    chrome_width=config.capture.chrome_width_px,
                    chrome_height=config.capture.chrome_height_px,
                    rotate_portrait_h263=config.capture.rotate_portrait_h263,
                )
            except ValueError as exc:
                return _error_response(exc)
            return JSONResponse(content={
                "profile": resolved.profile,
                "codec": resolved.codec.value,
                "desired": str(resolved.desired),
                "actual": str(resolved.actual),
                "aspect_ratio": resolved.actual.aspect_ratio,
                "warning": resolved.warning,
                "use_full_screen": resolved.use_full_screen,
                "use_original_page_size": resolved.use_original_page_size,
                "should_rotate_book": resolved.should_rotate_book,
            })

        @app.post("/api/recording/start")
        async def start_recording(body: StartBody):
            region = None
            if body.region is not None:
                region = ScreenBounds(body.region.width, body.region.height, body.region.x, body.region.y)
            request = CaptureRequest(
                profile=body.profile,
                is_landscape=body.landscape,
                screen=ScreenBounds(body.screen_width, body.screen_height, body.screen_x, body.screen_y),
                is_square=body.square,
                window_title=body.window_title,
                region=region,
                rotate=body.rotate,
            )
            try:
                session = await controller.start(request)
            except (CaptureError, ValueError) as exc:
                logger.warning(f"녹화 시작 요청 실패: {exc}")
                return _error_response(exc)
            return JSONResponse(content=session.to_dict())

        @app.post("/api/recording/sound-log")
        async def report_sound_log(request: Request):
            payload = await request.body()
            try:
                session = await controller.report_completion(payload or b"[]")
            except CaptureError as exc:
                logger.warning(f"재생 완료 보고 처리 실패: {exc}")
                return _error_response(exc)
            return JSONResponse(status_code=202, content=session.to_dict())

        @app.post("/api/recording/save")
        async def save_recording(body: SaveBody):
            try:
                future = await controller.request_save(body.destination)
            except CaptureError as exc:
                return _error_response(exc)

            if not future.done():
                future.add_done_callback(self._log_deferred_save)
                return JSONResponse(
                    status_code=202,
                    content={"status": "pending", "destination": body.destination},
                )
            try:
                saved_to = future.result()
            except (CaptureError, OSError) as exc:
                logger.error(f"저장 실패: {exc}")
                return JSONResponse(
                    status_code=500,
                    content={"error": type(exc).__name__, "message": str(exc)},
                )
            if saved_to is None:
                return JSONResponse(content={"status": "nothing_to_save", "saved_to": None})
            return JSONResponse(content={"status": "saved", "saved_to": saved_to})

        @app.post("/api/recording/abort")
        async def abort_recording():
            try:
                session = await controller.abort()
            except CaptureError as exc:
                return _error_response(exc)
            return JSONResponse(content=session.to_dict())

        @app.post("/api/recording/cleanup")
        async def cleanup_recording():
            try:
                await controller.cleanup()
            except CaptureError as exc:
                return _error_response(exc)
            return JSONResponse(content={"state": "idle", "session_id": None})

        @app.websocket("/ws/recording")
        async def ws_endpoint(websocket: WebSocket):
            await websocket.accept()
            self._clients.add(websocket)
            logger.debug(f"WebSocket 클라이언트 연결: {websocket.client}")
            # 연결 직후 현재 상태를 한 번 보냄
            session = controller.session
            if session is not None:
                await websocket.send_text(json.dumps(self._event(session)))
            else:
                await websocket.send_text(json.dumps(
                    {"state": "idle", "session_id": None, "has_output": False, "error": None}
                ))
            try:
                while True:
                    # 클라이언트 메시지는 무시 (연결 유지용 루프)
                    try:
                        await asyncio.wait_for(websocket.receive_text(), timeout=30)
                    except asyncio.TimeoutError:
                        pass
            except WebSocketDisconnect:
                pass
            finally:
                self._clients.discard(websocket)
                logger.debug("WebSocket 클라이언트 연결 종료")

        self._app = app

    async def start(self) -> None:
        """uvicorn 서버를 백그라운드 태스크로 시작합니다."""
        server_config = uvicorn.Config(
            app=self._app,
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(server_config)
        self._server_task = asyncio.create_task(server.serve(), name="recording-api")
        logger.info(f"녹화 제어 API 시작: http://{self._host}:{self._port}")

    async def stop(self) -> None:
        """서버와 진행 중인 전송 태스크를 종료합니다."""
        self._controller.unsubscribe(self._on_state_change)
        for task in list(self._send_tasks):
            task.cancel()
        if self._server_task:
            self._server_task.cancel()
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
        logger.info("녹화 제어 API 종료")

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    @staticmethod
    def _event(session: CaptureSession) -> dict[str, Any]:
        return {
            "state": session.state.value,
            "session_id": session.session_id,
            "has_output": session.has_output,
            "error": session.error,
        }

    def _on_state_change(self, session: CaptureSession) -> None:
        """상태 전이 콜백: 연결된 클라이언트에게 보낼 전송 태스크를 예약합니다."""
        if not self._clients:
            return
        payload = json.dumps(self._event(session))
        task = asyncio.get_running_loop().create_task(self._broadcast(payload))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _broadcast(self, payload: str) -> None:
        dead = set()
        for client in list(self._clients):
            try:
                await client.send_text(payload)
            except Exception as exc:
                logger.debug(f"WebSocket 전송 실패, 연결 제거: {exc!r}")
                dead.add(client)
        self._clients -= dead

    @staticmethod
    def _log_deferred_save(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"보류된 저장 요청이 완료되지 않았습니다: {error}")
        else:
            logger.info(f"보류된 저장 요청 완료: {future.result()}")
