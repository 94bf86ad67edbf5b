"""정적 파일 응답

확장자가 등록된 경로만 DocumentRoot 아래에서 찾아 그대로 스트리밍한다.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Iterator

from .errors import NotFound, StaticReadError
from .paths import resolve_within

logger = logging.getLogger(__name__)

# 확장자 → Content-Type (매칭 순서 유지)
CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".html": "text/html; charset=utf-8",
    ".gif": "image/gif",
    ".htm": "text/html; charset=utf-8",
    ".jpeg": "image/jpeg",
    ".css": "text/css; charset=utf-8",
    ".js": "application/javascript; charset=utf-8",
    ".png": "image/png",
}
FALLBACK_CONTENT_TYPE = "application/octet-stream"

DEFAULT_RESPONSE = "Hello, World!  This is the default response.\n"

CHUNK_SIZE = 64 * 1024


def content_type_for(url_path: str) -> str | None:
    """정적 파일로 처리할 경로면 Content-Type, 아니면 None"""
    for ext, content_type in CONTENT_TYPES.items():
        if url_path.endswith(ext):
            return content_type
    return None


def open_static(document_root: Path, url_path: str) -> tuple[BinaryIO, str]:
    """정적 파일을 열어 (파일 객체, Content-Type) 반환.

    Raises:
        NotFound: 파일이 없을 때
        Forbidden: 경로가 DocumentRoot 밖일 때
        StaticReadError: 그 외 열기 실패
    """
    content_type = content_type_for(url_path) or FALLBACK_CONTENT_TYPE
    file_path = resolve_within(document_root, url_path)
    try:
        f = open(file_path, "rb")
    except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
        logger.info("파일 없음: %s (document_root=%s)", file_path, document_root)
        raise NotFound(str(file_path)) from None
    except OSError as e:
        logger.error("파일 열기 오류: %s, error: %s", file_path, e)
        raise StaticReadError(str(file_path)) from e
    return f, content_type


def iter_file(f: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """파일을 chunk 단위로 읽고 끝나면 닫는다."""
    try:
        while True:
            try:
                chunk = f.read(chunk_size)
            except OSError as e:
                logger.error("파일 읽기 오류: %s, error: %s", getattr(f, "name", f), e)
                raise StaticReadError(str(getattr(f, "name", f))) from e
            if not chunk:
                break
            yield chunk
    finally:
        f.close()
