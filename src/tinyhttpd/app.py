"""요청 디스패치 - FastAPI 앱

모든 경로를 하나의 핸들러가 받아 다음 순서로 분기한다.
1. GET /stop (Host 가 컨트롤 주소일 때만) → 원격 종료
2. /cgi-bin/<name> → CGI 게이트웨이
3. 등록된 정적 확장자 → DocumentRoot 파일
4. 그 외 → 기본 텍스트 응답
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool

from .cgi import CGIGateway, is_cgi_path, script_name_from_path
from .errors import CGIExecutionError, Forbidden, NotFound, StaticReadError
from .models import CGIInvocation
from .static import DEFAULT_RESPONSE, content_type_for, iter_file, open_static
from .timeouts import TimeoutMiddleware

logger = logging.getLogger(__name__)

STOP_PATH = "/stop"
STOP_RESPONSE = "Server is shutting down..."
ALREADY_STOPPING_RESPONSE = "Server is already shutting down..."

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


def _dump_request(request: Request) -> str:
    lines = [f"{request.method} {_request_uri(request)} {_protocol(request)}"]
    for key, value in request.headers.items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


def _request_uri(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def _protocol(request: Request) -> str:
    return f"HTTP/{request.scope.get('http_version', '1.1')}"


def _remote_addr(request: Request) -> str:
    if request.client is None:
        return ""
    return f"{request.client.host}:{request.client.port}"


def _content_length(request: Request) -> int | None:
    value = request.headers.get("content-length")
    if value is not None and value.isdigit():
        return int(value)
    return None


async def build_invocation(request: Request) -> CGIInvocation:
    """요청에서 CGI 실행 정보를 추출. POST 일 때만 본문을 읽는다."""
    body = b""
    if request.method == "POST":
        body = await request.body()
    return CGIInvocation(
        script_name=script_name_from_path(request.url.path),
        method=request.method,
        query_string=request.scope.get("query_string", b"").decode("latin-1"),
        request_uri=_request_uri(request),
        protocol=_protocol(request),
        remote_addr=_remote_addr(request),
        body=body,
        content_length=_content_length(request),
    )


def create_app(
    *,
    document_root: Path,
    gateway: CGIGateway,
    control_host: str,
    request_stop: Callable[[], bool],
) -> FastAPI:
    """FastAPI 앱을 생성하고 catch-all 라우트를 등록한다.

    Args:
        document_root: 정적 파일 루트
        gateway: CGI 게이트웨이
        control_host: /stop 을 허용할 Host 헤더 값 (예: "localhost:8080")
        request_stop: 원격 종료 트리거. 첫 요청이면 True, 이미 종료 중이면 False
    """
    app = FastAPI(title="tinyhttpd", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(TimeoutMiddleware)

    # --- 에러 → 응답 ---

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return PlainTextResponse("404 page not found\n", status_code=404)

    @app.exception_handler(Forbidden)
    async def forbidden(request: Request, exc: Forbidden):
        logger.warning("접근 거부: %s (%s)", request.url.path, exc)
        return PlainTextResponse("Forbidden\n", status_code=403)

    @app.exception_handler(StaticReadError)
    @app.exception_handler(CGIExecutionError)
    async def internal_error(request: Request, exc: Exception):
        logger.error("요청 처리 실패: %s (%s)", request.url.path, exc)
        return PlainTextResponse("Internal Server Error\n", status_code=500)

    # --- 디스패치 ---

    @app.api_route("/{path:path}", methods=_ALL_METHODS)
    async def dispatch(request: Request):
        url_path = request.url.path
        logger.info("요청 수신: %s %s", request.method, url_path)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Request:\n%s", _dump_request(request))

        if (
            url_path == STOP_PATH
            and request.method == "GET"
            and request.headers.get("host") == control_host
        ):
            if request_stop():
                logger.info("/stop 요청 수신, 서버 종료 시작")
                return PlainTextResponse(STOP_RESPONSE)
            logger.info("/stop 요청 수신, 이미 종료 중")
            return PlainTextResponse(ALREADY_STOPPING_RESPONSE)

        if is_cgi_path(url_path):
            invocation = await build_invocation(request)
            output = await run_in_threadpool(gateway.invoke, invocation)
            return Response(content=output)

        if content_type_for(url_path) is not None:
            f, content_type = await run_in_threadpool(open_static, document_root, url_path)
            return StreamingResponse(iter_file(f), media_type=content_type)

        return PlainTextResponse(DEFAULT_RESPONSE)

    return app
