"""CGI 실행 게이트웨이

/cgi-bin/<name> 요청을 CGI 디렉토리의 실행 파일로 넘기고, 출력(stdout+stderr)을
그대로 응답 본문으로 돌려준다. CGI 헤더 블록은 파싱하지 않는다.

요청마다 새 서브프로세스를 띄우고 종료까지 기다린다. 기본값은 타임아웃/동시 실행
제한이 없으며, CgiTimeout / CgiMaxConcurrent 설정으로 켤 수 있다.
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
import subprocess
import threading
from dataclasses import replace
from pathlib import Path

import psutil

from .errors import CGIExecutionError, Forbidden, NotFound
from .models import CGIInvocation
from .paths import resolve_within

logger = logging.getLogger(__name__)

CGI_PREFIX = "/cgi-bin/"
SERVER_SOFTWARE = "tinyhttpd/1.0"

# 게이트웨이가 주입하는 환경변수 (이 외의 키는 만들지 않는다)
CGI_ENV_KEYS = (
    "REQUEST_METHOD",
    "QUERY_STRING",
    "CONTENT_LENGTH",
    "REQUEST_URI",
    "SCRIPT_NAME",
    "SCRIPT_FILENAME",
    "SERVER_PROTOCOL",
    "SERVER_SOFTWARE",
    "REMOTE_ADDR",
)


def is_cgi_path(url_path: str) -> bool:
    return url_path.startswith(CGI_PREFIX)


def script_name_from_path(url_path: str) -> str:
    """/cgi-bin/ 접두사를 떼어낸 스크립트 이름"""
    if not is_cgi_path(url_path):
        raise ValueError(f"not a CGI path: {url_path}")
    return url_path[len(CGI_PREFIX):]


def _clean(value) -> str:
    # 환경변수 값에 NUL 이 들어가면 exec 가 실패한다
    return str(value).replace("\0", "")


def cgi_variables(invocation: CGIInvocation) -> dict[str, str]:
    """요청 메타데이터로 CGI 환경변수를 만든다. 키는 CGI_ENV_KEYS 로 고정."""
    if invocation.content_length is not None:
        content_length = invocation.content_length
    else:
        content_length = len(invocation.body)
    values = {
        "REQUEST_METHOD": invocation.method,
        "QUERY_STRING": invocation.query_string,
        "CONTENT_LENGTH": content_length,
        "REQUEST_URI": invocation.request_uri,
        "SCRIPT_NAME": invocation.script_name,
        "SCRIPT_FILENAME": invocation.script_path or "",
        "SERVER_PROTOCOL": invocation.protocol,
        "SERVER_SOFTWARE": SERVER_SOFTWARE,
        "REMOTE_ADDR": invocation.remote_addr,
    }
    return {key: _clean(values[key]) for key in CGI_ENV_KEYS}


def build_environment(
    invocation: CGIInvocation,
    base_env: dict[str, str] | None = None,
) -> dict[str, str]:
    """호스트 환경변수 + CGI 메타데이터"""
    env = dict(os.environ if base_env is None else base_env)
    env.update(cgi_variables(invocation))
    return env


def _kill_process_tree(pid: int) -> None:
    """스크립트와 그 자손 프로세스를 강제 종료."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        parent.kill()
        psutil.wait_procs(children + [parent], timeout=3)
    except psutil.NoSuchProcess:
        pass


class CGIGateway:
    """CGI 스크립트 검증 및 실행"""

    def __init__(
        self,
        script_dir: Path,
        timeout: float | None = None,
        max_concurrent: int = 0,
    ) -> None:
        self.script_dir = Path(script_dir)
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(max_concurrent) if max_concurrent > 0 else None

    def resolve(self, script_name: str) -> Path:
        """스크립트 이름을 실행 가능한 절대 경로로 변환.

        Raises:
            NotFound: 스크립트가 없을 때
            Forbidden: CGI 디렉토리 밖이거나 실행 권한이 없을 때
            CGIExecutionError: stat 실패
        """
        if not script_name or "\0" in script_name:
            raise NotFound(f"CGI script not found: {script_name!r}")
        path = resolve_within(self.script_dir, script_name)
        try:
            st = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            logger.info("CGI 스크립트 없음: %s", path)
            raise NotFound(f"CGI script not found: {path}") from None
        except OSError as e:
            logger.error("CGI 스크립트 stat 오류: %s, error: %s", path, e)
            raise CGIExecutionError(f"cannot stat {path}: {e}") from e

        if not stat.S_ISREG(st.st_mode):
            raise NotFound(f"CGI script not found: {path}")
        if not st.st_mode & stat.S_IXUSR:
            logger.warning("CGI 스크립트 실행 권한 없음: %s", path)
            raise Forbidden(f"CGI script is not executable: {path}")
        return path

    def invoke(self, invocation: CGIInvocation) -> bytes:
        """스크립트를 실행하고 stdout+stderr 를 반환.

        Raises:
            NotFound, Forbidden: resolve() 참고
            CGIExecutionError: 실행 실패, 0 이 아닌 종료 코드, 타임아웃
        """
        path = self.resolve(invocation.script_name)
        invocation = replace(invocation, script_path=path)
        env = build_environment(invocation)

        slot = self._slots if self._slots is not None else contextlib.nullcontext()
        with slot:
            output = self._run(path, env, invocation.stdin)
        logger.info("CGI 스크립트 실행 완료: %s (%d bytes)", path, len(output))
        return output

    def _run(self, path: Path, env: dict[str, str], stdin: bytes | None) -> bytes:
        try:
            proc = subprocess.Popen(
                [str(path)],
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            logger.error("CGI 스크립트 실행 실패: %s, error: %s", path, e)
            raise CGIExecutionError(f"cannot execute {path}: {e}") from e

        try:
            output, _ = proc.communicate(input=stdin, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning("CGI 스크립트 타임아웃 (%.1fs), 프로세스 트리 종료: %s", self.timeout, path)
            _kill_process_tree(proc.pid)
            output, _ = proc.communicate()
            raise CGIExecutionError(
                f"CGI script timed out: {path}", output=output or b"", returncode=proc.returncode,
            ) from None

        if proc.returncode != 0:
            logger.error(
                "CGI 스크립트 오류: %s, exit_code=%s, output: %s",
                path, proc.returncode, output.decode("utf-8", errors="replace"),
            )
            raise CGIExecutionError(
                f"CGI script exited with {proc.returncode}: {path}",
                output=output,
                returncode=proc.returncode,
            )
        return output
