"""tinyhttpd - 정적 파일 + CGI 를 제공하는 경량 HTTP 서버"""

__version__ = "1.0.0"
