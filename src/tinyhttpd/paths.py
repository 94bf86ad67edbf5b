"""요청 경로 → 파일 시스템 경로 변환"""

from __future__ import annotations

from pathlib import Path

from .errors import Forbidden


def resolve_within(root: Path, relative: str) -> Path:
    """root 아래로 relative 를 붙여 정규화한 절대 경로 반환.

    정규화 결과가 root 밖이면 Forbidden. root 자체도 거부한다.
    """
    base = Path(root).resolve()
    target = (base / relative.lstrip("/\\")).resolve()
    if target == base or not target.is_relative_to(base):
        raise Forbidden(f"path escapes {base}: {relative}")
    return target
