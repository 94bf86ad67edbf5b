"""연결 단위 read/write 타임아웃

uvicorn 은 idle(keep-alive) 타임아웃만 제공하므로 두 단계로 나눠 제한한다.
- ReadTimeoutH11Protocol: 연결 직후 또는 새 요청 시작부터 헤더 수신 완료까지
- TimeoutMiddleware: 요청 본문 수신과 응답 전송

본문 수신이 끝난 뒤의 receive()(연결 끊김 감지용)는 제한하지 않는다.
"""

from __future__ import annotations

import asyncio
import logging

import h11
from uvicorn.protocols.http.h11_impl import H11Protocol

from .errors import ClientReadTimeout, ClientWriteTimeout
from .models import READ_TIMEOUT, WRITE_TIMEOUT

logger = logging.getLogger(__name__)


class ReadTimeoutH11Protocol(H11Protocol):
    """요청 헤더를 READ_TIMEOUT 안에 다 받지 못하면 연결을 닫는 h11 프로토콜.

    연결 직후와, 요청 사이(IDLE)에 새 바이트가 들어올 때 타이머를 걸고
    헤더 파싱이 끝나면 해제한다. 요청 사이의 대기는 keep-alive 타임아웃이 맡는다.
    """

    read_timeout = READ_TIMEOUT
    _read_timer: asyncio.TimerHandle | None = None

    def connection_made(self, transport) -> None:
        super().connection_made(transport)
        self._arm_read_timer()

    def data_received(self, data: bytes) -> None:
        super().data_received(data)
        if self.conn.their_state is h11.IDLE:
            self._arm_read_timer()
        else:
            self._cancel_read_timer()

    def connection_lost(self, exc: Exception | None) -> None:
        self._cancel_read_timer()
        super().connection_lost(exc)

    def _arm_read_timer(self) -> None:
        if self._read_timer is None and not self.transport.is_closing():
            self._read_timer = self.loop.call_later(self.read_timeout, self._read_timeout_handler)

    def _cancel_read_timer(self) -> None:
        if self._read_timer is not None:
            self._read_timer.cancel()
            self._read_timer = None

    def _read_timeout_handler(self) -> None:
        self._read_timer = None
        if self.transport.is_closing() or self.conn.their_state is not h11.IDLE:
            return
        logger.warning("헤더 읽기 타임아웃 (%.0fs), 연결 종료: %s", self.read_timeout, self.client)
        self.conn.send(h11.ConnectionClosed())
        self.transport.close()


class TimeoutMiddleware:
    def __init__(self, app, read_timeout: float = READ_TIMEOUT, write_timeout: float = WRITE_TIMEOUT):
        self.app = app
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        body_done = False
        response_started = False

        async def timed_receive():
            nonlocal body_done
            if body_done:
                return await receive()
            try:
                message = await asyncio.wait_for(receive(), self.read_timeout)
            except asyncio.TimeoutError:
                raise ClientReadTimeout(f"no request body within {self.read_timeout}s") from None
            if message["type"] != "http.request" or not message.get("more_body", False):
                body_done = True
            return message

        async def timed_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            try:
                await asyncio.wait_for(send(message), self.write_timeout)
            except asyncio.TimeoutError:
                raise ClientWriteTimeout(f"response not sent within {self.write_timeout}s") from None

        try:
            await self.app(scope, timed_receive, timed_send)
        except ClientReadTimeout as e:
            logger.warning("읽기 타임아웃: %s (%s)", scope.get("path"), e)
            if response_started:
                raise
            await send({
                "type": "http.response.start",
                "status": 408,
                "headers": [
                    (b"content-type", b"text/plain; charset=utf-8"),
                    (b"connection", b"close"),
                ],
            })
            await send({"type": "http.response.body", "body": b"Request Timeout\n"})
        except ClientWriteTimeout as e:
            logger.warning("쓰기 타임아웃: %s (%s)", scope.get("path"), e)
            raise
