"""에러 분류

startup 단계 에러(ConfigError, PIDWriteError)는 치명적이고,
요청 단계 에러(NotFound, Forbidden, CGIExecutionError, StaticReadError)는
app 레이어에서 HTTP 응답으로 변환된다.
"""


class HttpdError(Exception):
    """tinyhttpd 에러 베이스"""


class ConfigError(HttpdError):
    """설정 파일을 읽을 수 없거나 값이 유효하지 않음"""


class PIDWriteError(HttpdError):
    """PID 파일 기록 실패"""


class SpawnError(HttpdError):
    """백그라운드 인스턴스 생성 실패"""


class NotFound(HttpdError):
    """요청한 정적 파일 또는 CGI 스크립트가 없음 (404)"""


class Forbidden(HttpdError):
    """실행 권한이 없거나 루트 밖을 가리키는 경로 (403)"""


class StaticReadError(HttpdError):
    """정적 파일을 열거나 읽는 중 I/O 오류 (500)"""


class CGIExecutionError(HttpdError):
    """CGI 스크립트 실행 실패 (500)

    Attributes:
        output: 스크립트가 남긴 stdout+stderr (서버 로그용, 클라이언트에는 보내지 않음)
        returncode: 종료 코드. 실행 자체가 실패하면 None
    """

    def __init__(self, message: str, output: bytes = b"", returncode: int | None = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class ClientReadTimeout(HttpdError):
    """요청 본문 수신이 READ_TIMEOUT 을 넘김"""


class ClientWriteTimeout(HttpdError):
    """응답 전송이 WRITE_TIMEOUT 을 넘김"""


class BindError(HttpdError):
    """리스닝 주소 바인딩 실패"""
