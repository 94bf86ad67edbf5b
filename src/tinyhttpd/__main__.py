"""tinyhttpd 진입점 - start | startnohup | stop"""

from __future__ import annotations

import logging
import sys

from .config import ServerConfig, load_config
from .errors import ConfigError, SpawnError
from .lifecycle import run_foreground, start_detached, stop_remote
from .logging_config import setup_logging

logger = logging.getLogger("tinyhttpd")

USAGE = "Usage: tinyhttpd start|startnohup|stop"
EXIT_USAGE = 2


def _cmd_start() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        logger.error("설정 오류: %s", e)
        return 1
    setup_logging(config)
    logger.info(
        "포트 %d, pid 파일 %s, document root %s 사용",
        config.port, config.pid_file, config.document_root,
    )
    return run_foreground(config)


def _cmd_startnohup() -> int:
    print("Starting server in background with nohup...")
    try:
        pid = start_detached()
    except SpawnError as e:
        logger.error("백그라운드 시작 실패: %s", e)
        return 1
    print(f"Server started in background, PID: {pid}")
    return 0


def _cmd_stop() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        logger.warning("설정 파일을 읽지 못해 기본값 사용: %s", e)
        config = ServerConfig()
    try:
        body = stop_remote(config)
    except ConnectionError as e:
        print(f"Error sending /stop request: {e}", file=sys.stderr)
        return 1
    print(f"Received response from /stop: {body}")
    return 0


COMMANDS = {
    "start": _cmd_start,
    "startnohup": _cmd_startnohup,
    "stop": _cmd_stop,
}


def main(argv: list[str] | None = None) -> int:
    """명령 실행 후 종료 코드 반환"""
    args = sys.argv[1:] if argv is None else argv
    setup_logging()

    command = COMMANDS.get(args[0]) if args else None
    if command is None:
        print(USAGE)
        return EXIT_USAGE
    return command()


if __name__ == "__main__":
    sys.exit(main())
