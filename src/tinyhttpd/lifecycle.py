"""LifecycleController - 서버 프로세스 생명주기 관리

상태: IDLE → STARTING → SERVING → DRAINING → STOPPED

- start(): 소켓 바인딩 → PID 파일 기록 → uvicorn 서버 스레드 시작
- request_shutdown(): 단 한 번만 동작하는 종료 게이트 (시그널 / 원격 /stop)
- await_termination(): 메인 스레드에서 종료 트리거를 기다리고, 서버 스레드 종료 후
  PID 파일을 지운다.

시그널 핸들러는 락을 잡지 않고 SimpleQueue 에 트리거만 넣는다. 큐는 메인 스레드가
소비한다.
"""

from __future__ import annotations

import logging
import os
import queue
import shutil
import signal
import socket
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request

import uvicorn

from .app import ALREADY_STOPPING_RESPONSE, STOP_RESPONSE, create_app
from .cgi import CGIGateway
from .config import ServerConfig
from .errors import BindError, ConfigError, HttpdError, SpawnError
from .models import IDLE_TIMEOUT, ServerState, ServerStatus, ShutdownTrigger
from .pidfile import remove_pid_file, write_pid_file
from .timeouts import ReadTimeoutH11Protocol

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0  # 초
FORCE_EXIT_MARGIN = 2.0  # grace period 이후 강제 종료까지 추가 대기 (초)
STOP_REQUEST_TIMEOUT = 5.0
# 트리거 큐 대기 주기 (시그널 핸들러는 메인 스레드에서만 실행됨)
TRIGGER_POLL_INTERVAL = 0.5
SPAWN_CHECK_DELAY = 0.5  # 자식이 바로 죽었는지 확인하는 대기 시간 (초)


class LifecycleController:
    """서버 시작/종료/PID 파일 관리. 서버 상태의 유일한 소유자."""

    def __init__(self, config: ServerConfig) -> None:
        self.config = config
        self.state = ServerState(
            document_root=config.document_root,
            listen_address=config.listen_address,
            pid_file=config.pid_file,
        )
        self.port: int | None = None
        self.grace_exceeded = False

        self._lock = threading.Lock()
        self._triggers: queue.SimpleQueue = queue.SimpleQueue()
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._serve_thread: threading.Thread | None = None
        self._shutdown_thread: threading.Thread | None = None
        self._pid_written = False
        self._finished = False
        self._previous_handlers: dict[int, object] = {}

    # --- 상태 ---

    @property
    def status(self) -> ServerStatus:
        with self._lock:
            return self.state.status

    @property
    def running(self) -> bool:
        with self._lock:
            return self.state.running

    @property
    def control_host(self) -> str:
        if self.config.control_address:
            return self.config.control_address
        return f"localhost:{self.port if self.port is not None else self.config.port}"

    def _transition(self, expected: ServerStatus, new: ServerStatus) -> bool:
        with self._lock:
            if self.state.status != expected:
                return False
            self.state.status = new
            return True

    # --- 시작 ---

    def _bind(self) -> socket.socket:
        host = self.config.bind_address
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, self.config.port))
        except OSError as e:
            sock.close()
            raise BindError(f"cannot bind {self.config.listen_address}: {e}") from e
        sock.set_inheritable(True)
        return sock

    def _build_server(self) -> uvicorn.Server:
        gateway = CGIGateway(
            self.config.cgi_dir,
            timeout=self.config.cgi_timeout,
            max_concurrent=self.config.cgi_max_concurrent,
        )
        app = create_app(
            document_root=self.config.document_root,
            gateway=gateway,
            control_host=self.control_host,
            request_stop=self.request_remote_stop,
        )
        uv_config = uvicorn.Config(
            app,
            http=ReadTimeoutH11Protocol,
            timeout_keep_alive=IDLE_TIMEOUT,
            log_config=None,
            lifespan="off",
            server_header=False,
        )
        return uvicorn.Server(uv_config)

    def start(self) -> None:
        """서버를 시작하고 요청 수락이 가능해질 때까지 기다린다.

        Raises:
            ConfigError: DocumentRoot 가 디렉토리가 아닐 때
            BindError: 주소 바인딩 실패
            PIDWriteError: PID 파일 기록 실패
            HttpdError: 서버 스레드가 준비되기 전에 종료됨
        """
        if not self._transition(ServerStatus.IDLE, ServerStatus.STARTING):
            raise HttpdError(f"cannot start from state {self.status.value}")

        try:
            if not self.config.document_root.is_dir():
                raise ConfigError(f"invalid document root: {self.config.document_root}")

            self._socket = self._bind()
            self.port = self._socket.getsockname()[1]
            self.state.listen_address = f"{self.config.bind_address}:{self.port}"
            self._server = self._build_server()

            write_pid_file(self.config.pid_file)
            self._pid_written = True
            self._transition(ServerStatus.STARTING, ServerStatus.SERVING)

            self._serve_thread = threading.Thread(
                target=self._serve, name="tinyhttpd-server", daemon=True,
            )
            self._serve_thread.start()
            self._wait_ready()
        except BaseException:
            self._abort_start()
            raise

        logger.info(
            "서버 시작: http://localhost:%d (document_root=%s, pid_file=%s)",
            self.port, self.config.document_root, self.config.pid_file,
        )

    def _wait_ready(self) -> None:
        deadline = time.monotonic() + STARTUP_TIMEOUT
        while not self._server.started:
            if not self._serve_thread.is_alive():
                raise HttpdError("server thread exited during startup")
            if time.monotonic() > deadline:
                raise HttpdError(f"server not ready within {STARTUP_TIMEOUT}s")
            time.sleep(0.05)

    def _abort_start(self) -> None:
        """시작 실패 시 정리. PID 파일을 썼다면 지운다."""
        logger.error("서버 시작 실패, 정리 중")
        if self._server is not None and self._serve_thread is not None:
            self._server.should_exit = True
            self._server.force_exit = True
            self._serve_thread.join(timeout=FORCE_EXIT_MARGIN)
        self._finish()

    def _serve(self) -> None:
        try:
            self._server.run(sockets=[self._socket])
        except (Exception, SystemExit):
            logger.exception("서버 스레드 비정상 종료")
        finally:
            logger.info("서버 스레드 종료")
            self._triggers.put((ShutdownTrigger.SERVER_EXITED, None))

    # --- 종료 ---

    def request_shutdown(self, trigger: ShutdownTrigger) -> bool:
        """종료 시퀀스를 시작한다. 첫 트리거만 유효하고 이후는 False."""
        with self._lock:
            if self.state.status != ServerStatus.SERVING:
                return False
            self.state.status = ServerStatus.DRAINING
            self.state.trigger = trigger
            # _finish 는 락 안에서 이 스레드를 읽는다
            shutdown_thread = threading.Thread(
                target=self._drain, args=(trigger,), name="tinyhttpd-shutdown", daemon=True,
            )
            self._shutdown_thread = shutdown_thread
            shutdown_thread.start()

        logger.info("종료 시작: trigger=%s, grace=%.0fs", trigger.value, trigger.grace_period)
        return True

    def request_remote_stop(self) -> bool:
        """/stop 핸들러에서 호출"""
        return self.request_shutdown(ShutdownTrigger.REMOTE)

    def _drain(self, trigger: ShutdownTrigger) -> None:
        """새 연결 수락 중지 → grace period 동안 대기 → 남은 연결 강제 종료"""
        server = self._server
        thread = self._serve_thread
        if server is None or thread is None:
            return

        grace = trigger.grace_period
        started = time.monotonic()
        server.config.timeout_graceful_shutdown = grace
        server.should_exit = True

        thread.join(timeout=grace + FORCE_EXIT_MARGIN)
        if thread.is_alive():
            self.grace_exceeded = True
            logger.warning("grace period(%.0fs) 초과, 남은 연결 강제 종료", grace)
            server.force_exit = True
            thread.join(timeout=FORCE_EXIT_MARGIN)
            if thread.is_alive():
                logger.error("강제 종료 후에도 서버 스레드가 남아있음")
            return

        elapsed = time.monotonic() - started
        if grace and elapsed >= grace:
            self.grace_exceeded = True
            logger.warning("grace period(%.0fs) 초과, 남은 요청 취소됨", grace)
        logger.info("graceful shutdown 완료 (%.2fs)", elapsed)

    def handle_signal(self, signum, frame=None) -> None:
        """시그널 핸들러. 락/로깅 없이 큐에만 넣는다."""
        self._triggers.put((ShutdownTrigger.SIGNAL, signum))

    def install_signal_handlers(self) -> None:
        """SIGINT/SIGTERM (Windows: SIGBREAK) 을 종료 트리거로 연결. 중복 설치하지 않는다."""
        if self._previous_handlers:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("메인 스레드가 아니므로 시그널 핸들러를 설치하지 않음")
            return
        signums = [signal.SIGINT, signal.SIGTERM]
        if os.name == "nt":
            signums.append(signal.SIGBREAK)
        for signum in signums:
            self._previous_handlers[signum] = signal.signal(signum, self.handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def await_termination(self) -> int:
        """종료 트리거(시그널 또는 /stop)를 기다리고 정리 후 종료 코드 반환."""
        self.install_signal_handlers()
        try:
            while True:
                try:
                    trigger, signum = self._triggers.get(timeout=TRIGGER_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if trigger is ShutdownTrigger.SERVER_EXITED:
                    if self.request_shutdown(trigger):
                        logger.warning("서버가 종료 요청 없이 멈춤")
                    break

                sig_name = signal.Signals(signum).name if signum is not None else "-"
                if self.request_shutdown(trigger):
                    logger.info("시그널 수신: %s, 서버 종료 중", sig_name)
                else:
                    logger.info("시그널 수신: %s, 이미 종료 중이므로 무시", sig_name)
        finally:
            self.restore_signal_handlers()
            self._finish()
        return 0

    def _finish(self) -> None:
        """서버 스레드 종료 대기 → 소켓 닫기 → PID 파일 삭제 (한 번만)"""
        with self._lock:
            if self._finished:
                return
            self._finished = True
            shutdown_thread = self._shutdown_thread

        try:
            if shutdown_thread is not None:
                shutdown_thread.join()
            if self._serve_thread is not None and self._serve_thread.is_alive():
                self._serve_thread.join()
            if self._socket is not None:
                self._socket.close()
        finally:
            with self._lock:
                self.state.status = ServerStatus.STOPPED
            if self._pid_written:
                remove_pid_file(self.config.pid_file)
            logger.info("서버 종료")


def run_foreground(config: ServerConfig) -> int:
    """start 명령: 포그라운드로 실행하고 종료될 때까지 블록."""
    controller = LifecycleController(config)
    # 시작 중에 온 시그널도 큐에 쌓였다가 await_termination 에서 처리된다
    controller.install_signal_handlers()
    try:
        controller.start()
    except HttpdError as e:
        controller.restore_signal_handlers()
        logger.error("시작 실패: %s", e)
        return 1
    return controller.await_termination()


def stop_remote(config: ServerConfig, timeout: float = STOP_REQUEST_TIMEOUT) -> str:
    """실행 중인 인스턴스에 GET /stop 을 보내고 응답 본문을 반환.

    Raises:
        ConnectionError: 인스턴스에 연결할 수 없을 때
    """
    url = config.stop_url
    logger.info("/stop 요청 전송: %s", url)
    # 로컬 컨트롤 주소는 프록시를 거치지 않는다
    opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
    try:
        with opener.open(url, timeout=timeout) as resp:
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("/stop 요청 실패 응답: status=%d", e.code)
    except OSError as e:
        raise ConnectionError(f"cannot reach {url}: {e}") from e

    if body not in (STOP_RESPONSE, ALREADY_STOPPING_RESPONSE):
        logger.warning("예상하지 못한 /stop 응답 (ControlAddress 확인 필요): %r", body)
    return body


def detached_command() -> list[str]:
    """백그라운드 인스턴스 실행 명령"""
    cmd = [sys.executable, "-m", "tinyhttpd", "start"]
    if os.name != "nt":
        nohup = shutil.which("nohup")
        if nohup:
            cmd = [nohup, *cmd]
    return cmd


def start_detached(cmd: list[str] | None = None) -> int:
    """start 명령을 분리된 자식 프로세스로 실행하고 PID 반환.

    stdout/stderr 는 부모로부터 상속한다.

    Raises:
        SpawnError: 자식 프로세스를 만들 수 없거나 바로 종료됐을 때
    """
    cmd = cmd or detached_command()
    if os.name == "nt":
        kwargs = {
            "creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP,
        }
    else:
        kwargs = {"start_new_session": True}

    try:
        proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, **kwargs)
    except OSError as e:
        raise SpawnError(f"failed to start server in background: {e}") from e

    try:
        returncode = proc.wait(timeout=SPAWN_CHECK_DELAY)
    except subprocess.TimeoutExpired:
        pass
    else:
        raise SpawnError(f"background server exited immediately with code {returncode}")

    logger.info("백그라운드 서버 시작: pid=%d", proc.pid)
    return proc.pid
