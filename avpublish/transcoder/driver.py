"""
외부 트랜스코더(ffmpeg) 실행 드라이버 모듈입니다.

역할:
- TranscoderRecipe로 서브프로세스 한 개를 시작하고 감독
- 실행 중 stdout/stderr를 계속 비워 진단 버퍼에 누적 (파이프 버퍼 포화로 인한 교착 방지)
- 정상 종료 요청: stdin에 "q\\n" 기록 (강제 종료하지 않아야 컨테이너가 마무리됨)
- 제한 시간 대기, 시간 초과 시 강제 종료 후 TranscoderTimeoutError
- 실행 파일이 없으면 TranscoderNotFoundError (드라이버당 한 번만 에러 로그)

사용 예시:
    >>> driver = TranscoderDriver(config)
    >>> handle = await driver.start(recipe)
    >>> await driver.request_graceful_stop(handle)
    >>> exit_code = await driver.wait(handle, timeout=30)
    >>> print(driver.diagnostics(handle))
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from typing import Optional, Sequence

from avpublish.config.schema import AppConfig
from avpublish.errors import TranscoderNotFoundError, TranscoderTimeoutError
from avpublish.transcoder import TranscoderRecipe

logger = logging.getLogger(__name__)

# 진단 버퍼 최대 크기 (바이트). 초과 시 앞부분을 버리고 최신 출력만 유지
MAX_DIAGNOSTIC_BYTES = 1024 * 1024

# 스트림 한 번 읽기 크기 (ffmpeg 진행 표시는 \r로 끝나므로 줄 단위로 읽지 않음)
_READ_CHUNK_BYTES = 4096

# 정상 종료 요청 토큰
QUIT_TOKEN = b"q\n"


class TranscoderHandle:
    """
    실행 중인 트랜스코더 프로세스 하나에 대한 핸들입니다.

    드라이버만 내부 상태를 변경하며, 호출자는 속성을 읽기만 합니다.
    """

    def __init__(self, recipe: TranscoderRecipe, process: asyncio.subprocess.Process) -> None:
        self.recipe = recipe
        self.process = process
        self.started_at = time.monotonic()
        self.stop_requested = False
        self.killed = False
        self._buffer = bytearray()
        self._drain_tasks: list[asyncio.Task] = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def _append(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        overflow = len(self._buffer) - MAX_DIAGNOSTIC_BYTES
        if overflow > 0:
            del self._buffer[:overflow]

    def _text(self) -> str:
        return self._buffer.decode("utf-8", errors="replace")


class TranscoderDriver:
    """
    외부 트랜스코더 서브프로세스를 시작/종료/대기하는 드라이버입니다.

    executable을 주면 설정의 ffmpeg_path 대신 그 명령을 사용합니다
    (예: 테스트용 가짜 트랜스코더 스크립트 [sys.executable, "fake.py"]).
    """

    def __init__(self, config: AppConfig, executable: Optional[Sequence[str]] = None) -> None:
        self._config = config
        self._executable: Optional[list[str]] = list(executable) if executable else None
        self._missing_reported = False

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    def resolve_executable(self) -> list[str]:
        """
        실행할 트랜스코더 명령(실행 파일 + 선행 인자)을 결정합니다.

        반환값:
            list[str]: 명령 앞부분

        예외:
            TranscoderNotFoundError: 실행 파일을 찾을 수 없을 때
        """
        if self._executable is not None:
            return list(self._executable)

        configured = self._config.transcoder.ffmpeg_path
        found = shutil.which(configured)
        if found is None:
            error_message = f"트랜스코더 실행 파일을 찾을 수 없습니다: {configured}"
            if not self._missing_reported:
                logger.error(error_message)
                self._missing_reported = True
            raise TranscoderNotFoundError(error_message)
        return [found]

    def build_command(self, recipe: TranscoderRecipe) -> list[str]:
        """공통 전역 옵션을 붙인 전체 명령 목록을 반환합니다."""
        return [
            *self.resolve_executable(),
            "-hide_banner",
            "-loglevel", self._config.transcoder.loglevel,
            "-y",
            *recipe.args,
        ]

    async def start(self, recipe: TranscoderRecipe) -> TranscoderHandle:
        """
        레시피로 트랜스코더 프로세스를 시작합니다.

        반환값은 프로세스가 실제로 생성된 뒤에만 돌려주므로,
        호출자는 반환 직후를 "서브프로세스 시작 확인" 시점으로 사용할 수 있습니다.

        파라미터:
            recipe: 실행할 레시피

        반환값:
            TranscoderHandle: 실행 핸들

        예외:
            TranscoderNotFoundError: 실행 파일이 없거나 실행할 수 없을 때
        """
        command = self.build_command(recipe)
        logger.info(f"트랜스코더 시작 ({recipe.description or 'run'}): {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=recipe.working_dir,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            error_message = f"트랜스코더를 실행할 수 없습니다: {command[0]} ({exc})"
            if not self._missing_reported:
                logger.error(error_message)
                self._missing_reported = True
            raise TranscoderNotFoundError(error_message) from exc

        handle = TranscoderHandle(recipe, process)
        handle._drain_tasks = [
            asyncio.create_task(self._drain(handle, process.stdout), name=f"transcoder-stdout-{process.pid}"),
            asyncio.create_task(self._drain(handle, process.stderr), name=f"transcoder-stderr-{process.pid}"),
        ]
        logger.debug(f"트랜스코더 프로세스 생성: pid={process.pid}")
        return handle

    async def request_graceful_stop(self, handle: TranscoderHandle) -> None:
        """
        stdin에 종료 토큰("q\\n")을 보내 정상 종료를 요청합니다.

        이미 종료된 프로세스거나 파이프가 닫혀 있으면 조용히 넘어갑니다 (멱등).
        """
        handle.stop_requested = True
        stdin = handle.process.stdin
        if not handle.running or stdin is None or stdin.is_closing():
            logger.debug(f"정상 종료 요청 생략: pid={handle.pid}, returncode={handle.returncode}")
            return

        try:
            stdin.write(QUIT_TOKEN)
            await stdin.drain()
            logger.info(f"트랜스코더 정상 종료 요청 전송: pid={handle.pid}")
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug(f"종료 토큰 전송 중 파이프 닫힘: pid={handle.pid}, {exc!r}")

    async def wait(self, handle: TranscoderHandle, timeout: Optional[float] = None) -> int:
        """
        프로세스 종료를 기다리고 종료 코드를 반환합니다.

        파라미터:
            handle: 실행 핸들
            timeout: 최대 대기 시간 (초). None 또는 0 이하면 무제한

        반환값:
            int: 종료 코드

        예외:
            TranscoderTimeoutError: 제한 시간 안에 종료되지 않아 강제 종료했을 때
        """
        try:
            if timeout is not None and timeout > 0:
                await asyncio.wait_for(handle.process.wait(), timeout=timeout)
            else:
                await handle.process.wait()
        except asyncio.TimeoutError:
            await self.kill(handle)
            error_message = (
                f"트랜스코더가 {timeout:.1f}초 안에 종료되지 않아 강제 종료했습니다 "
                f"({handle.recipe.description or 'run'}, pid={handle.pid})"
            )
            logger.error(error_message)
            raise TranscoderTimeoutError(error_message, diagnostics=self.diagnostics(handle))

        await self._finish_drain(handle)
        exit_code = handle.process.returncode
        elapsed = time.monotonic() - handle.started_at
        logger.info(
            f"트랜스코더 종료 ({handle.recipe.description or 'run'}): "
            f"pid={handle.pid}, rc={exit_code}, elapsed={elapsed:.1f}s"
        )
        return exit_code

    async def kill(self, handle: TranscoderHandle) -> None:
        """프로세스를 강제 종료하고 종료될 때까지 기다립니다 (멱등)."""
        if handle.running:
            try:
                handle.process.kill()
                handle.killed = True
                logger.warning(f"트랜스코더 강제 종료: pid={handle.pid}")
            except ProcessLookupError:
                logger.debug(f"강제 종료 대상 프로세스가 이미 없음: pid={handle.pid}")
        await handle.process.wait()
        await self._finish_drain(handle)

    async def run(self, recipe: TranscoderRecipe, timeout: Optional[float] = None) -> tuple[int, str]:
        """
        레시피를 끝까지 실행하고 (종료 코드, 진단 텍스트)를 반환합니다.

        예외:
            TranscoderNotFoundError: 실행 파일이 없을 때
            TranscoderTimeoutError: 제한 시간 초과
        """
        handle = await self.start(recipe)
        try:
            exit_code = await self.wait(handle, timeout=timeout)
        except asyncio.CancelledError:
            await self.kill(handle)
            raise
        return exit_code, self.diagnostics(handle)

    def diagnostics(self, handle: TranscoderHandle) -> str:
        """지금까지 누적된 stdout/stderr 텍스트를 반환합니다."""
        return handle._text()

    # =========================================================================
    # 내부 헬퍼 메서드
    # =========================================================================

    async def _drain(self, handle: TranscoderHandle, stream: Optional[asyncio.StreamReader]) -> None:
        """스트림이 닫힐 때까지 읽어 진단 버퍼에 누적합니다."""
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            handle._append(chunk)

    async def _finish_drain(self, handle: TranscoderHandle) -> None:
        """드레인 태스크가 남은 출력을 모두 읽을 때까지 기다립니다."""
        if handle._drain_tasks:
            results = await asyncio.gather(*handle._drain_tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"트랜스코더 출력 읽기 실패: pid={handle.pid}, {result!r}")
        stdin = handle.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
