"""LifecycleController 테스트

실제 소켓(임시 포트)과 uvicorn 서버 스레드를 띄워 시작/종료/PID 파일 동작을 검증한다.
"""

import os
import signal
import socket
import threading
import time
import urllib.request
from unittest.mock import MagicMock, patch

import psutil
import pytest

from tinyhttpd.app import STOP_RESPONSE
from tinyhttpd.errors import BindError, ConfigError, HttpdError, PIDWriteError
from tinyhttpd.lifecycle import LifecycleController
from tinyhttpd.models import ServerStatus, ShutdownTrigger
from tinyhttpd.static import DEFAULT_RESPONSE
from tinyhttpd.timeouts import ReadTimeoutH11Protocol

_opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))


def _get(controller: LifecycleController, path: str, host: str | None = None, timeout: float = 15):
    req = urllib.request.Request(f"http://127.0.0.1:{controller.port}{path}")
    req.add_header("Host", host or controller.control_host)
    with _opener.open(req, timeout=timeout) as resp:
        return resp.status, resp.read()


def _later(delay: float, fn, *args):
    timer = threading.Timer(delay, fn, args=args)
    timer.daemon = True
    timer.start()
    return timer


@pytest.fixture
def controller(server_config):
    ctl = LifecycleController(server_config)
    yield ctl
    if ctl.status in (ServerStatus.SERVING, ServerStatus.DRAINING):
        ctl.request_shutdown(ShutdownTrigger.REMOTE)
        ctl.await_termination()


class TestStart:
    def test_start_writes_pid_and_serves(self, controller, server_config):
        controller.start()

        assert controller.status == ServerStatus.SERVING
        assert controller.running
        assert server_config.pid_file.read_text() == str(os.getpid())

        status, body = _get(controller, "/index.html")
        assert status == 200
        assert body == (server_config.document_root / "index.html").read_bytes()

    def test_start_twice(self, controller):
        controller.start()
        with pytest.raises(HttpdError, match="cannot start"):
            controller.start()

    def test_missing_document_root(self, controller, server_config, tmp_path):
        server_config.document_root = tmp_path / "nope"
        with pytest.raises(ConfigError):
            controller.start()
        assert controller.status == ServerStatus.STOPPED
        assert not server_config.pid_file.exists()

    def test_pid_write_error(self, controller, server_config, tmp_path):
        server_config.pid_file = tmp_path / "no-such-dir" / "httpd.pid"
        with pytest.raises(PIDWriteError):
            controller.start()
        assert controller.status == ServerStatus.STOPPED

    def test_bind_conflict(self, controller, server_config):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            server_config.port = blocker.getsockname()[1]
            with pytest.raises(BindError):
                controller.start()
            assert not server_config.pid_file.exists()
        finally:
            blocker.close()

    def test_pid_file_removed_when_startup_fails_after_write(self, controller, server_config):
        with patch.object(LifecycleController, "_wait_ready", side_effect=HttpdError("not ready")):
            with pytest.raises(HttpdError, match="not ready"):
                controller.start()
        assert not server_config.pid_file.exists()
        assert controller.status == ServerStatus.STOPPED


class TestRemoteStop:
    def test_stop_request_shuts_down(self, controller, server_config):
        controller.start()
        responses = []
        _later(0.2, lambda: responses.append(_get(controller, "/stop")))

        assert controller.await_termination() == 0

        assert responses == [(200, STOP_RESPONSE.encode())]
        assert controller.status == ServerStatus.STOPPED
        assert controller.state.trigger == ShutdownTrigger.REMOTE
        assert not server_config.pid_file.exists()

    def test_stop_with_other_host_keeps_serving(self, controller):
        controller.start()
        status, body = _get(controller, "/stop", host="example.com")
        assert status == 200
        assert body == DEFAULT_RESPONSE.encode()
        assert controller.status == ServerStatus.SERVING

    def test_stopped_server_refuses_connections(self, controller):
        controller.start()
        port = controller.port
        _later(0.1, controller.request_remote_stop)
        controller.await_termination()

        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1).close()


class TestSingleShutdown:
    def test_only_first_trigger_wins(self, controller):
        controller.start()
        results = []
        barrier = threading.Barrier(8)

        def fire(trigger):
            barrier.wait()
            results.append(controller.request_shutdown(trigger))

        threads = [
            threading.Thread(target=fire, args=(ShutdownTrigger.SIGNAL if i % 2 else ShutdownTrigger.REMOTE,))
            for i in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        controller.await_termination()
        assert controller.status == ServerStatus.STOPPED

    def test_signal_and_remote_stop_run_one_sequence(self, controller, server_config):
        controller.start()
        drain = MagicMock(wraps=controller._drain)
        controller._drain = drain

        def both():
            controller.handle_signal(signal.SIGTERM)
            try:
                _get(controller, "/stop")
            except OSError:
                pass  # 시그널 쪽이 먼저 소켓을 닫은 경우

        _later(0.1, both)
        assert controller.await_termination() == 0

        assert drain.call_count == 1
        assert not server_config.pid_file.exists()

    def test_shutdown_thread_registered_and_started_with_gate(self, controller):
        controller.start()
        with patch.object(controller, "_drain") as drain:
            assert controller.request_shutdown(ShutdownTrigger.REMOTE) is True
            thread = controller._shutdown_thread
            assert thread is not None
            assert thread.ident is not None
            thread.join(timeout=5)
        drain.assert_called_once_with(ShutdownTrigger.REMOTE)
        # _drain 을 막았으므로 서버는 직접 종료
        controller._server.should_exit = True
        controller.await_termination()
        assert controller.status == ServerStatus.STOPPED

    def test_request_after_stop_is_noop(self, controller):
        controller.start()
        assert controller.request_shutdown(ShutdownTrigger.REMOTE) is True
        controller.await_termination()
        assert controller.request_shutdown(ShutdownTrigger.SIGNAL) is False
        assert controller.state.trigger == ShutdownTrigger.REMOTE


@pytest.mark.skipif(os.name == "nt", reason="POSIX 시그널 필요")
class TestSignal:
    def test_sigterm_lets_in_flight_request_finish(self, controller, cgi_dir, write_script, server_config):
        write_script(cgi_dir / "slow.sh", "sleep 1\necho done\n")
        controller.start()
        responses = []

        def request():
            responses.append(_get(controller, "/cgi-bin/slow.sh"))

        controller.install_signal_handlers()
        client = threading.Thread(target=request)
        client.start()
        _later(0.3, os.kill, os.getpid(), signal.SIGTERM)

        started = time.monotonic()
        assert controller.await_termination() == 0
        client.join(timeout=5)

        assert responses == [(200, b"done\n")]
        assert controller.state.trigger == ShutdownTrigger.SIGNAL
        assert not controller.grace_exceeded
        assert time.monotonic() - started < 10
        assert not server_config.pid_file.exists()

    def test_signal_handlers_restored(self, controller):
        before = signal.getsignal(signal.SIGTERM)
        controller.start()
        _later(0.1, controller.request_remote_stop)
        controller.await_termination()
        assert signal.getsignal(signal.SIGTERM) is before


def _sleep_children() -> list[psutil.Process]:
    result = []
    for child in psutil.Process().children(recursive=True):
        try:
            if child.name() == "sleep":
                result.append(child)
        except psutil.NoSuchProcess:
            pass
    return result


@pytest.mark.skipif(os.name == "nt", reason="셸 CGI 스크립트 필요")
class TestGraceExceeded:
    def test_stuck_request_is_cut_off_and_pid_file_removed(
        self, controller, cgi_dir, write_script, server_config,
    ):
        write_script(cgi_dir / "stuck.sh", "sleep 25\necho late\n")
        controller.start()
        outcome = []

        def request():
            try:
                outcome.append(_get(controller, "/cgi-bin/stuck.sh", timeout=30))
            except Exception as e:  # 강제 종료로 연결이 끊김
                outcome.append(e)

        client = threading.Thread(target=request, daemon=True)
        client.start()
        try:
            deadline = time.monotonic() + 5
            while not _sleep_children() and time.monotonic() < deadline:
                time.sleep(0.05)
            assert _sleep_children(), "CGI 스크립트가 시작되지 않음"

            started = time.monotonic()
            assert controller.request_shutdown(ShutdownTrigger.REMOTE) is True
            assert controller.await_termination() == 0
            elapsed = time.monotonic() - started

            assert elapsed < 8
            assert controller.grace_exceeded is True
            assert controller.status == ServerStatus.STOPPED
            assert not server_config.pid_file.exists()
            assert outcome != [(200, b"late\n")]
        finally:
            for proc in _sleep_children():
                proc.kill()
            client.join(timeout=5)


def _recv_until(sock: socket.socket, marker: bytes) -> bytes:
    data = b""
    while marker not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


class TestHeaderReadTimeout:
    @pytest.fixture(autouse=True)
    def _short_read_timeout(self, monkeypatch):
        monkeypatch.setattr(ReadTimeoutH11Protocol, "read_timeout", 0.5)

    def test_incomplete_headers_close_connection(self, controller):
        controller.start()
        with socket.create_connection(("127.0.0.1", controller.port), timeout=10) as sock:
            sock.sendall(b"GET / HTTP/1.1\r\nHost: x\r\n")
            started = time.monotonic()
            assert sock.recv(1024) == b""
        assert time.monotonic() - started < 5

    def test_silent_connection_closed(self, controller):
        controller.start()
        with socket.create_connection(("127.0.0.1", controller.port), timeout=10) as sock:
            assert sock.recv(1024) == b""

    def test_keep_alive_connection_not_cut_between_requests(self, controller):
        controller.start()
        request = b"GET / HTTP/1.1\r\nHost: x\r\n\r\n"
        with socket.create_connection(("127.0.0.1", controller.port), timeout=10) as sock:
            sock.sendall(request)
            assert DEFAULT_RESPONSE.encode() in _recv_until(sock, DEFAULT_RESPONSE.encode())

            time.sleep(1.0)
            sock.sendall(request)
            assert DEFAULT_RESPONSE.encode() in _recv_until(sock, DEFAULT_RESPONSE.encode())

    def test_headers_completed_in_pieces_are_served(self, controller):
        controller.start()
        with socket.create_connection(("127.0.0.1", controller.port), timeout=10) as sock:
            sock.sendall(b"GET / HTTP/1.1\r\n")
            time.sleep(0.2)
            sock.sendall(b"Host: x\r\n\r\n")
            assert DEFAULT_RESPONSE.encode() in _recv_until(sock, DEFAULT_RESPONSE.encode())


class _FakeThread:
    def __init__(self, alive_for: int):
        self._alive_checks = alive_for
        self.joins = []

    def join(self, timeout=None):
        self.joins.append(timeout)

    def is_alive(self):
        if self._alive_checks > 0:
            self._alive_checks -= 1
            return True
        return False


class TestDrain:
    def _controller(self, server_config, thread):
        ctl = LifecycleController(server_config)
        ctl._server = MagicMock()
        ctl._serve_thread = thread
        return ctl

    def test_drain_sets_grace_and_exit(self, server_config):
        ctl = self._controller(server_config, _FakeThread(alive_for=0))
        ctl._drain(ShutdownTrigger.REMOTE)

        assert ctl._server.config.timeout_graceful_shutdown == 5.0
        assert ctl._server.should_exit is True
        assert ctl.grace_exceeded is False

    def test_signal_grace_period(self, server_config):
        ctl = self._controller(server_config, _FakeThread(alive_for=0))
        ctl._drain(ShutdownTrigger.SIGNAL)
        assert ctl._server.config.timeout_graceful_shutdown == 10.0

    def test_force_exit_after_grace(self, server_config):
        thread = _FakeThread(alive_for=1)
        ctl = self._controller(server_config, thread)
        ctl._drain(ShutdownTrigger.REMOTE)

        assert ctl.grace_exceeded is True
        assert ctl._server.force_exit is True
        assert len(thread.joins) == 2
