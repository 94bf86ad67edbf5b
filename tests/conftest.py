"""Pytest 설정"""

import os
import sys
from pathlib import Path

import pytest

# src 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tinyhttpd.config import ServerConfig  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01"


def _write_script(path: Path, body: str, executable: bool = True) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    os.chmod(path, 0o755 if executable else 0o644)
    return path


@pytest.fixture
def write_script():
    """셸 CGI 스크립트 생성 함수"""
    return _write_script


@pytest.fixture
def document_root(tmp_path):
    root = tmp_path / "public"
    root.mkdir()
    (root / "index.html").write_bytes(b"<html><body>hello</body></html>\n")
    (root / "logo.png").write_bytes(PNG_BYTES)
    (root / "style.css").write_text("body { color: red; }\n", encoding="utf-8")
    (root / "notes.txt").write_text("not served\n", encoding="utf-8")
    return root


@pytest.fixture
def cgi_dir(tmp_path):
    path = tmp_path / "cgi-bin"
    path.mkdir()
    _write_script(path / "hello.sh", 'printf "Content-Type: text/plain\\n\\nhello"\n')
    _write_script(path / "env.sh", "env\n")
    _write_script(path / "echo.sh", "cat\n")
    _write_script(path / "fail.sh", 'echo "boom" >&2\nexit 3\n')
    _write_script(path / "noexec.sh", 'echo "should not run"\n', executable=False)
    return path


@pytest.fixture
def server_config(tmp_path, document_root, cgi_dir):
    return ServerConfig(
        port=0,
        bind_address="127.0.0.1",
        document_root=document_root,
        pid_file=tmp_path / "tinyhttpd.pid",
        cgi_dir=cgi_dir,
    )
