"""설정 관리

httpd.conf 형식의 "Key value" 라인 파일을 읽어 ServerConfig 로 변환합니다.
- 설정 파일 경로: 환경변수 TINYHTTPD_CONF (기본값: ./httpd.conf)
- .env 파일이 있으면 먼저 로드 (기존 환경변수는 덮어쓰지 않음)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "TINYHTTPD_CONF"
DEFAULT_CONFIG_FILE = "httpd.conf"

DEFAULT_PORT = 8080
DEFAULT_BIND_ADDRESS = "0.0.0.0"
DEFAULT_DOCUMENT_ROOT = "."
DEFAULT_PID_FILE = "/var/run/tinyhttpd.pid"
DEFAULT_CGI_DIR = "cgi-bin"


def _parse_port(value: str) -> int:
    """Listen 값 검증. 0~65535 의 십진수만 허용"""
    if not (value.isascii() and value.isdigit()):
        raise ConfigError(f"invalid port format in config file: {value}")
    port = int(value)
    if port > 65535:
        raise ConfigError(f"invalid port format in config file: {value}")
    return port


def _parse_float(key: str, value: str) -> float:
    try:
        result = float(value)
    except ValueError:
        raise ConfigError(f"invalid {key} in config file: {value}") from None
    if result < 0:
        raise ConfigError(f"invalid {key} in config file: {value}")
    return result


def _parse_int(key: str, value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        raise ConfigError(f"invalid {key} in config file: {value}")
    return int(value)


@dataclass
class ServerConfig:
    """서버 설정"""
    port: int = DEFAULT_PORT
    bind_address: str = DEFAULT_BIND_ADDRESS
    document_root: Path = Path(DEFAULT_DOCUMENT_ROOT)
    pid_file: Path = Path(DEFAULT_PID_FILE)
    control_address: str | None = None
    cgi_dir: Path = Path(DEFAULT_CGI_DIR)
    cgi_timeout: float | None = None  # None = 무제한
    cgi_max_concurrent: int = 0  # 0 = 무제한
    log_dir: Path | None = None
    log_level: str = "INFO"

    @property
    def listen_address(self) -> str:
        return f"{self.bind_address}:{self.port}"

    @property
    def control_host(self) -> str:
        """/stop 요청을 허용하는 Host 헤더 값"""
        if self.control_address:
            return self.control_address
        return f"localhost:{self.port}"

    @property
    def stop_url(self) -> str:
        return f"http://{self.control_host}/stop"


def parse_config_lines(lines) -> ServerConfig:
    """설정 라인들을 ServerConfig 로 변환.

    각 라인은 첫 공백 기준으로 key/value 로 나뉘고, value 가 없는 라인과
    알 수 없는 key 는 무시한다. 같은 key 가 여러 번 나오면 마지막 값이 이긴다.

    Raises:
        ConfigError: Listen 이 포트 번호가 아니거나 DocumentRoot 가 없는 경로일 때
    """
    config = ServerConfig()
    for raw in lines:
        parts = raw.strip().split(" ", 1)
        if len(parts) < 2:
            continue
        key = parts[0].strip()
        value = parts[1].strip()
        if not value:
            continue

        if key == "Listen":
            config.port = _parse_port(value)
        elif key == "DocumentRoot":
            root = Path(value)
            if not root.is_dir():
                raise ConfigError(f"invalid document root in config file: {value}")
            config.document_root = root
        elif key == "PidFile":
            config.pid_file = Path(value)
        elif key == "BindAddress":
            config.bind_address = value
        elif key == "ControlAddress":
            config.control_address = value
        elif key == "CgiDir":
            config.cgi_dir = Path(value)
        elif key == "CgiTimeout":
            timeout = _parse_float(key, value)
            config.cgi_timeout = timeout or None
        elif key == "CgiMaxConcurrent":
            config.cgi_max_concurrent = _parse_int(key, value)
        elif key == "LogDir":
            config.log_dir = Path(value)
        elif key == "LogLevel":
            config.log_level = value.upper()
    return config


def resolve_config_path() -> Path:
    """설정 파일 경로 해석. TINYHTTPD_CONF 로 오버라이드 가능."""
    return Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE))


def load_config(path: str | Path | None = None) -> ServerConfig:
    """설정 파일을 읽어 ServerConfig 반환.

    Raises:
        ConfigError: 파일을 읽을 수 없거나 값이 유효하지 않을 때
    """
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)
    config_path = Path(path) if path is not None else resolve_config_path()
    try:
        with open(config_path, encoding="utf-8") as f:
            lines = f.readlines()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"cannot read {config_path}: {e}") from e

    config = parse_config_lines(lines)
    logger.debug("설정 로드 완료: %s", config_path)
    return config
