"""로깅 설정 모듈"""

import logging
from datetime import datetime
from pathlib import Path

from .config import ServerConfig

LOG_FORMAT = "[%(asctime)s] tinyhttpd: [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(config: ServerConfig | None = None) -> logging.Logger:
    """로깅 설정 및 로거 반환

    LogDir 가 설정되어 있으면 일자별 로그 파일에도 기록한다.
    """
    level_name = config.log_level if config is not None else "INFO"
    level = getattr(logging, level_name, logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config is not None and config.log_dir is not None:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"tinyhttpd_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    # uvicorn 접근 로그는 요청 로그와 중복되므로 경고 이상만
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logging.getLogger("tinyhttpd")
