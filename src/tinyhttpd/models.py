"""데이터 모델: ServerState, ShutdownTrigger, CGIInvocation"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path


class ServerStatus(enum.Enum):
    """서버 생명주기 상태 (IDLE → STARTING → SERVING → DRAINING → STOPPED)"""
    IDLE = "idle"
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownTrigger(enum.Enum):
    """종료 트리거. 트리거마다 graceful 대기 시간이 다르다."""
    SIGNAL = "signal"
    REMOTE = "remote"
    SERVER_EXITED = "server_exited"

    @property
    def grace_period(self) -> float:
        return GRACE_PERIODS[self]


GRACE_PERIODS: dict[ShutdownTrigger, float] = {
    ShutdownTrigger.SIGNAL: 10.0,
    ShutdownTrigger.REMOTE: 5.0,
    ShutdownTrigger.SERVER_EXITED: 0.0,
}

# 연결 타임아웃 (초)
READ_TIMEOUT = 10.0
WRITE_TIMEOUT = 10.0
IDLE_TIMEOUT = 120


@dataclass
class ServerState:
    """서버 런타임 상태. LifecycleController 만 변경한다."""
    document_root: Path
    listen_address: str
    pid_file: Path
    status: ServerStatus = ServerStatus.IDLE
    trigger: ShutdownTrigger | None = None

    @property
    def running(self) -> bool:
        return self.status == ServerStatus.SERVING


@dataclass
class CGIInvocation:
    """CGI 요청 한 건의 실행 정보 (요청 처리 동안만 유효)"""
    script_name: str
    method: str
    query_string: str
    request_uri: str
    protocol: str
    remote_addr: str
    body: bytes = b""
    content_length: int | None = None
    script_path: Path | None = None  # gateway 가 해석한 절대 경로

    @property
    def stdin(self) -> bytes | None:
        """POST 일 때만 body 를 stdin 으로 넘긴다."""
        if self.method.upper() == "POST":
            return self.body
        return None
