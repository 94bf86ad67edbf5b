"""PID 파일 관리"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import psutil

from .errors import PIDWriteError

logger = logging.getLogger(__name__)


def read_pid(pid_file: Path) -> int | None:
    """PID 파일 내용 반환. 없거나 숫자가 아니면 None."""
    try:
        text = Path(pid_file).read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    if not text.isdigit():
        return None
    return int(text)


def is_live_instance(pid: int) -> bool:
    """pid 가 살아있는 다른 tinyhttpd 프로세스인지 확인."""
    if pid == os.getpid():
        return False
    try:
        proc = psutil.Process(pid)
        cmdline = " ".join(proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
    return "tinyhttpd" in cmdline


def write_pid_file(pid_file: Path) -> int:
    """현재 프로세스 PID 를 기록하고 반환.

    이미 PID 파일이 있고 살아있는 인스턴스를 가리키면 덮어쓰지 않는다.
    죽은 프로세스를 가리키는 파일은 덮어쓴다.

    Raises:
        PIDWriteError: 파일을 쓸 수 없거나 다른 인스턴스가 실행 중일 때
    """
    pid_file = Path(pid_file)
    existing = read_pid(pid_file)
    if existing is not None:
        if is_live_instance(existing):
            raise PIDWriteError(
                f"another instance is running (pid {existing}, pid file {pid_file})"
            )
        logger.warning("오래된 PID 파일 덮어씀: %s (pid=%d)", pid_file, existing)

    pid = os.getpid()
    try:
        pid_file.write_text(str(pid), encoding="ascii")
        os.chmod(pid_file, 0o644)
    except OSError as e:
        raise PIDWriteError(f"failed to write PID to file {pid_file}: {e}") from e
    logger.info("PID 파일 기록: %s (pid=%d)", pid_file, pid)
    return pid


def remove_pid_file(pid_file: Path) -> bool:
    """PID 파일 삭제. 삭제했으면 True (멱등)."""
    try:
        Path(pid_file).unlink()
    except FileNotFoundError:
        return False
    except OSError:
        logger.exception("PID 파일 삭제 실패: %s", pid_file)
        return False
    logger.info("PID 파일 삭제: %s", pid_file)
    return True
